"""Simulation results storage and analysis.

This module provides the Trajectory class returned by the simulation
engine and the TrajectoryBuilder the engine uses to fill it.

A trajectory is stored as a list of continuous segments. A new segment
starts at every discontinuity (event, sample hit, noise hit, input
breakpoint), so the last sample of one segment and the first sample of the
next may share a time stamp with different values. Lookups are
right-continuous: at such a time the post-jump value is returned.
"""

import os
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy.interpolate import CubicHermiteSpline


@dataclass(frozen=True)
class Segment:
    """Samples of one continuous piece of a trajectory.

    Parameters
    ----------
    time : ndarray, shape (n,)
        Strictly increasing sample times
    states : ndarray, shape (n, n_states)
    derivatives : ndarray, shape (n, n_states)
        State time derivatives (zero for discrete states)
    outputs : ndarray, shape (n, n_outputs)
    inputs : ndarray, shape (n, n_inputs)
    """

    time: np.ndarray
    states: np.ndarray
    derivatives: np.ndarray
    outputs: np.ndarray
    inputs: np.ndarray

    @property
    def t_start(self) -> float:
        return float(self.time[0])

    @property
    def t_end(self) -> float:
        return float(self.time[-1])


def _frame(values: np.ndarray, time: np.ndarray, columns) -> pd.DataFrame:
    df = pd.DataFrame(values, index=pd.Index(time, name="time"), columns=columns)
    # Keep the post-jump sample where several share a time stamp
    return df[~df.index.duplicated(keep="last")]


class Trajectory:
    """Piecewise-continuous time history of a simulated model.

    Parameters
    ----------
    segments : list of Segment
        Continuous pieces in time order
    state_names, output_names, input_names : sequence of str
        Column labels

    Examples
    --------
    >>> traj = simulate(model, (0.0, 10.0), x0=[0.99])
    >>> traj(2.5)            # state at t = 2.5
    >>> traj.states.tail()   # pandas view of the recorded knots
    """

    def __init__(
        self,
        segments: Sequence[Segment],
        state_names: Sequence[str],
        output_names: Sequence[str],
        input_names: Sequence[str] = (),
    ):
        if not segments:
            raise ValueError("A trajectory needs at least one segment")
        for prev, seg in zip(segments[:-1], segments[1:]):
            if seg.t_start < prev.t_end:
                raise ValueError(
                    f"Segment starting at {seg.t_start} overlaps the previous "
                    f"one ending at {prev.t_end}"
                )
        for seg in segments:
            if np.any(np.diff(seg.time) <= 0):
                raise ValueError("Segment times must be strictly increasing")
        self.segments: List[Segment] = list(segments)
        self.state_names = list(state_names)
        self.output_names = list(output_names)
        self.input_names = list(input_names)
        self._starts = np.array([s.t_start for s in self.segments])
        self._splines = {}

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def t_span(self):
        return self.segments[0].t_start, self.segments[-1].t_end

    @property
    def time(self) -> np.ndarray:
        """Knot times, strictly increasing (jump times appear once)."""
        return self.states.index.to_numpy()

    @property
    def event_times(self) -> np.ndarray:
        """Times at which a new segment starts."""
        return self._starts[1:].copy()

    @property
    def n_segments(self) -> int:
        return len(self.segments)

    @property
    def n_states(self) -> int:
        return len(self.state_names)

    @property
    def n_outputs(self) -> int:
        return len(self.output_names)

    @property
    def n_inputs(self) -> int:
        return len(self.input_names)

    def _stack(self, attr):
        return np.vstack([getattr(s, attr) for s in self.segments])

    @property
    def _all_times(self):
        return np.concatenate([s.time for s in self.segments])

    @property
    def states(self) -> pd.DataFrame:
        return _frame(self._stack("states"), self._all_times, self.state_names)

    @property
    def outputs(self) -> pd.DataFrame:
        return _frame(self._stack("outputs"), self._all_times, self.output_names)

    @property
    def inputs(self) -> Optional[pd.DataFrame]:
        """Input samples (None if inputs were not saved)."""
        if not self.input_names:
            return None
        return _frame(self._stack("inputs"), self._all_times, self.input_names)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _segment_index(self, t: float) -> int:
        t0, tf = self.t_span
        if not t0 <= t <= tf:
            raise ValueError(f"t={t} is outside the trajectory span [{t0}, {tf}]")
        return int(np.searchsorted(self._starts, t, side="right")) - 1

    def _spline(self, k: int) -> CubicHermiteSpline:
        if k not in self._splines:
            seg = self.segments[k]
            self._splines[k] = CubicHermiteSpline(
                seg.time, seg.states, seg.derivatives, axis=0
            )
        return self._splines[k]

    def eval(self, t: float) -> np.ndarray:
        """State at time t.

        Cubic Hermite interpolation between knots using the recorded
        derivatives; recorded values are returned exactly at knots.
        """
        k = self._segment_index(t)
        seg = self.segments[k]
        i = int(np.searchsorted(seg.time, t))
        if i < len(seg.time) and seg.time[i] == t:
            return seg.states[i].copy()
        if len(seg.time) == 1 or t > seg.t_end or self.n_states == 0:
            return seg.states[-1].copy()
        return np.asarray(self._spline(k)(t), dtype=float)

    __call__ = eval

    def _linear(self, t: float, attr: str) -> np.ndarray:
        seg = self.segments[self._segment_index(t)]
        values = getattr(seg, attr)
        if len(seg.time) == 1 or t >= seg.t_end:
            return values[-1].copy()
        return np.array(
            [np.interp(t, seg.time, values[:, j]) for j in range(values.shape[1])]
        )

    def eval_output(self, t: float) -> np.ndarray:
        """Output at time t (linear interpolation between knots)."""
        return self._linear(t, "outputs")

    def eval_input(self, t: float) -> np.ndarray:
        return self._linear(t, "inputs")

    def resample(self, times) -> pd.DataFrame:
        """States and outputs evaluated at the given times.

        Examples
        --------
        >>> df = traj.resample(np.linspace(0.0, 1.0, 11))
        """
        times = np.asarray(times, dtype=float)
        states = np.array([self.eval(t) for t in times]).reshape(
            len(times), self.n_states
        )
        outputs = np.array([self.eval_output(t) for t in times]).reshape(
            len(times), self.n_outputs
        )
        index = pd.Index(times, name="time")
        return pd.concat(
            [
                pd.DataFrame(states, index=index, columns=self.state_names),
                pd.DataFrame(
                    outputs, index=index, columns=self.output_names
                ),
            ],
            axis=1,
        )

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def to_dataframe(self) -> pd.DataFrame:
        """Convert results to a single pandas DataFrame.

        Columns are time, inputs, states, outputs in that order, with one
        row per knot time (post-jump values at jump times).
        """
        dfs = []
        if self.inputs is not None:
            dfs.append(self.inputs)
        dfs.append(self.states)
        dfs.append(self.outputs)
        return pd.concat(dfs, axis=1).reset_index()

    def _segment_column(self):
        return np.concatenate(
            [np.full(len(s.time), k) for k, s in enumerate(self.segments)]
        )

    def save(self, filename: str):
        """Save results to file.

        Supports .npz (NumPy), .csv (via pandas), and .mat (MATLAB)
        formats. Only .npz keeps the segment structure and derivatives
        needed to rebuild the trajectory with load.

        Examples
        --------
        >>> traj.save('bouncing_ball.npz')
        >>> traj.save('bouncing_ball.csv')
        """
        ext = os.path.splitext(filename)[1].lower()

        if ext == ".npz":
            np.savez_compressed(
                filename,
                time=self._all_times,
                segment=self._segment_column(),
                states=self._stack("states"),
                derivatives=self._stack("derivatives"),
                outputs=self._stack("outputs"),
                inputs=self._stack("inputs"),
                state_columns=np.array(self.state_names, dtype=str),
                output_columns=np.array(self.output_names, dtype=str),
                input_columns=np.array(self.input_names, dtype=str),
            )

        elif ext == ".csv":
            self.to_dataframe().to_csv(filename, index=False)

        elif ext == ".mat":
            from scipy.io import savemat

            savemat(
                filename,
                {
                    "time": self._all_times,
                    "segment": self._segment_column(),
                    "states": self._stack("states"),
                    "outputs": self._stack("outputs"),
                    "inputs": self._stack("inputs"),
                },
            )

        else:
            raise ValueError(
                f"Unsupported file extension '{ext}'. Use .npz, .csv, or .mat"
            )

    @classmethod
    def load(cls, filename: str) -> "Trajectory":
        """Load a trajectory saved in .npz format."""
        ext = os.path.splitext(filename)[1].lower()
        if ext != ".npz":
            raise ValueError(
                f"Unsupported file extension '{ext}'. Use .npz"
            )
        with np.load(filename) as data:
            segment = data["segment"]
            bounds = np.flatnonzero(np.diff(segment)) + 1
            pieces = {
                key: np.split(data[key], bounds)
                for key in ("time", "states", "derivatives", "outputs", "inputs")
            }
            segments = [
                Segment(*(pieces[key][k] for key in (
                    "time", "states", "derivatives", "outputs", "inputs"
                )))
                for k in range(len(bounds) + 1)
            ]
            return cls(
                segments,
                data["state_columns"].tolist(),
                data["output_columns"].tolist(),
                data["input_columns"].tolist(),
            )

    def __repr__(self):
        t0, tf = self.t_span
        return (
            f"Trajectory(t_span=({t0}, {tf}), n_segments={self.n_segments}, "
            f"n_states={self.n_states}, n_outputs={self.n_outputs})"
        )


class TrajectoryBuilder:
    """Collects samples during a run and builds the Trajectory.

    Parameters
    ----------
    model : SystemModel
        Simulated model (used for derivatives, outputs and labels)
    input_func : callable
        u(t) -> input vector
    save_inputs : bool, default=True
    """

    def __init__(self, model, input_func, save_inputs: bool = True):
        self.model = model
        self.input_func = input_func
        self.save_inputs = save_inputs
        self._segments = []
        self._current = None

    def _sample(self, t, x):
        model = self.model
        u = self.input_func(t)
        xdot = np.zeros(model.num_states)
        xdot[: model.num_xc] = model.dynamics(t, x, u)
        y = model.output(t, x, u)
        return xdot, y, u

    def _new_segment(self):
        self._current = {k: [] for k in ("t", "x", "dx", "y", "u")}
        self._segments.append(self._current)

    def record(self, t: float, x):
        """Add a sample to the current segment (ignored if not after the last)."""
        if self._current is None:
            self._new_segment()
        seg = self._current
        if seg["t"] and t <= seg["t"][-1]:
            return
        xdot, y, u = self._sample(t, x)
        seg["t"].append(float(t))
        seg["x"].append(np.array(x, dtype=float))
        seg["dx"].append(xdot)
        seg["y"].append(np.asarray(y, dtype=float))
        seg["u"].append(np.asarray(u, dtype=float))

    def jump(self, t: float, x):
        """Start a new segment at t with the post-jump state x."""
        seg = self._current
        if seg is not None and len(seg["t"]) == 1 and seg["t"][0] == t:
            # Several jumps at one instant: keep the last value only
            self._segments.pop()
        self._new_segment()
        self.record(t, x)

    @property
    def last_time(self) -> Optional[float]:
        if self._current is None or not self._current["t"]:
            return None
        return self._current["t"][-1]

    def build(self) -> Trajectory:
        model = self.model
        n_u = model.num_u if self.save_inputs else 0
        segments = []
        for seg in self._segments:
            if not seg["t"]:
                continue
            n = len(seg["t"])
            inputs = np.array(seg["u"]).reshape(n, model.num_u)[:, :n_u]
            segments.append(
                Segment(
                    time=np.array(seg["t"]),
                    states=np.array(seg["x"]).reshape(n, model.num_states),
                    derivatives=np.array(seg["dx"]).reshape(
                        n, model.num_states
                    ),
                    outputs=np.array(seg["y"]).reshape(n, model.num_y),
                    inputs=inputs,
                )
            )
        input_names = model.input_frame.coordinates if self.save_inputs else ()
        return Trajectory(
            segments,
            model.state_frame.coordinates,
            model.output_frame.coordinates,
            input_names,
        )
