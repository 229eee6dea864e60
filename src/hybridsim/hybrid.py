"""Hybrid automata: mode-switching systems with guards and resets.

A HybridAutomaton owns a list of modes (each an ordinary SystemModel) and a
list of directed transitions between them. The active mode id is stored in
the state vector, so a running simulation owns it and every run starts
from the declared initial mode.

State layout::

    [continuous states padded to the largest mode,
     mode id,
     discrete states padded to the largest mode]

Zero-crossing layout: one entry per transition (the guard when its source
mode is active, +1 otherwise), followed by the internal zero-crossings of
the active mode padded to the largest mode.

Examples
--------
>>> falling = SystemModel(num_continuous_states=2,
...                       dynamics=lambda t, x, u: [x[1], -9.81])
>>> ball = HybridAutomaton(num_outputs=2, name="ball")
>>> air = ball.add_mode(falling, name="air")
>>> ball.add_transition(air, air, guard=lambda t, x, u: x[0],
...                     reset=lambda t, x, u: [0.0, -0.8 * x[1]])
0
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

import numpy as np

from hybridsim.constraints import saturate
from hybridsim.exceptions import (
    IncompatibleDimensionsError,
    SampleTimeError,
)
from hybridsim.signals import VectorSignal
from hybridsim.systems import StructureTag, SystemModel, as_vector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    """Directed edge of a hybrid automaton.

    Parameters
    ----------
    source, target : int
        Mode ids
    guard : callable
        phi(t, x, u) -> float evaluated on the source mode state. The
        transition fires when it crosses from positive to non-positive.
    reset : callable
        r(t, x, u) -> x+ mapping the source mode state to the target mode
        state
    name : str, optional
    """

    source: int
    target: int
    guard: Callable
    reset: Callable
    name: Optional[str] = None


def guard_and(*guards: Callable) -> Callable:
    """Guard that is non-positive only when all guards are (max)."""

    def guard(t, x, u):
        return max(float(g(t, x, u)) for g in guards)

    return guard


def guard_or(*guards: Callable) -> Callable:
    """Guard that is non-positive when any guard is (min)."""

    def guard(t, x, u):
        return min(float(g(t, x, u)) for g in guards)

    return guard


def guard_not(g: Callable) -> Callable:
    def guard(t, x, u):
        return -float(g(t, x, u))

    return guard


def _shared_coordinates(names, generic):
    """Coordinate names used by every mode, or the generic labels."""
    distinct = {tuple(n) for n in names}
    if len(distinct) == 1:
        (shared,) = distinct
        if len(shared) == len(generic):
            return list(shared)
    return list(generic)


def _identity_reset(t, x, u):
    return np.array(x, dtype=float)


class HybridAutomaton(SystemModel):
    """Finite set of modes connected by guarded transitions.

    Parameters
    ----------
    num_inputs : int, default=0
        Input dimension shared by all modes
    num_outputs : int, default=0
        Output dimension shared by all modes
    input_frame, output_frame : VectorSignal, optional
        Frames every mode must match
    name : str, optional
    """

    structure = StructureTag.HYBRID

    def __init__(
        self,
        num_inputs: int = 0,
        num_outputs: int = 0,
        input_frame: Optional[VectorSignal] = None,
        output_frame: Optional[VectorSignal] = None,
        name: Optional[str] = None,
    ):
        super().__init__(
            num_continuous_states=0,
            num_discrete_states=1,
            num_inputs=num_inputs,
            num_outputs=num_outputs,
            input_frame=input_frame,
            output_frame=output_frame,
            name=name,
        )
        self._user_modes: List[SystemModel] = []
        self._modes: List[SystemModel] = []
        self.mode_names: List[Optional[str]] = []
        self.transitions: List[Transition] = []
        self.initial_mode = 0
        self._refresh()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @property
    def modes(self) -> List[SystemModel]:
        """Modes as simulated (input limits realized)."""
        return list(self._modes)

    @property
    def num_modes(self) -> int:
        return len(self._modes)

    def add_mode(self, system: SystemModel, name: Optional[str] = None) -> int:
        """Register a mode and return its id."""
        if isinstance(system, HybridAutomaton):
            raise TypeError("Modes cannot themselves be hybrid automata")
        if system.num_u != self.num_u or system.num_y != self.num_y:
            raise IncompatibleDimensionsError(
                f"Mode {name or system.name} has {system.num_u} inputs and "
                f"{system.num_y} outputs, automaton {self.name} expects "
                f"{self.num_u} and {self.num_y}"
            )
        if not system.input_frame.matches(self.input_frame):
            raise IncompatibleDimensionsError(
                f"Mode {name or system.name} input frame "
                f"{system.input_frame.name!r} does not match "
                f"{self.input_frame.name!r}"
            )
        if not system.output_frame.matches(self.output_frame):
            raise IncompatibleDimensionsError(
                f"Mode {name or system.name} output frame "
                f"{system.output_frame.name!r} does not match "
                f"{self.output_frame.name!r}"
            )
        if self._modes:
            first = self._modes[0]
            for what in ("sample_time", "noise_period"):
                a, b = getattr(first, what), getattr(system, what)
                if (a is None) != (b is None) or (
                    a is not None and not np.isclose(a, b, rtol=1e-12, atol=0)
                ):
                    raise SampleTimeError(
                        f"All modes of {self.name} must share one {what} "
                        f"(got {a} and {b})"
                    )
        if name is not None and name in self.mode_names:
            raise ValueError(f"Duplicate mode name '{name}'")
        self._user_modes.append(system)
        self._modes.append(saturate(system))
        self.mode_names.append(name)
        self._refresh()
        return len(self._modes) - 1

    def add_transition(
        self,
        source: Union[int, str],
        target: Union[int, str],
        guard: Callable,
        reset: Optional[Callable] = None,
        name: Optional[str] = None,
    ) -> int:
        """Register a transition and return its index.

        Transitions registered earlier win when several guards cross at
        the same instant.
        """
        source = self.mode_id(source)
        target = self.mode_id(target)
        if not callable(guard):
            raise TypeError("guard must be callable")
        if reset is None:
            n_src = self._user_modes[source].num_states
            n_tgt = self._user_modes[target].num_states
            if n_src != n_tgt:
                raise ValueError(
                    f"Transition {name or ''} from mode {source} "
                    f"({n_src} states) to mode {target} ({n_tgt} states) "
                    "needs a reset function"
                )
            reset = _identity_reset
        self.transitions.append(Transition(source, target, guard, reset, name))
        return len(self.transitions) - 1

    def mode_id(self, mode: Union[int, str]) -> int:
        if isinstance(mode, str):
            try:
                return self.mode_names.index(mode)
            except ValueError:
                raise KeyError(f"{self.name} has no mode '{mode}'") from None
        mode = int(mode)
        if not 0 <= mode < len(self._modes):
            raise ValueError(
                f"Mode id {mode} out of range for {len(self._modes)} modes"
            )
        return mode

    def set_initial_mode(self, mode: Union[int, str]):
        self.initial_mode = self.mode_id(mode)

    def with_input_limits(self, lower, upper) -> "HybridAutomaton":
        """Copy of the automaton with every mode saturated."""
        new = HybridAutomaton(
            self.num_u, self.num_y, self.input_frame, self.output_frame,
            self.name,
        )
        for mode, name in zip(self._user_modes, self.mode_names):
            new.add_mode(mode.with_input_limits(lower, upper), name)
        new.transitions = list(self.transitions)
        new.initial_mode = self.initial_mode
        return new

    def _refresh(self):
        modes = self._modes
        self._nc = max((m.num_xc for m in modes), default=0)
        self._nd = max((m.num_xd for m in modes), default=0)
        self.num_xc = self._nc
        self.num_xd = self._nd + 1
        generic_c = [f"xc{i+1}" for i in range(self._nc)]
        generic_d = [f"xd{i+1}" for i in range(self._nd)]
        coords = (
            _shared_coordinates(
                [m.state_frame.coordinates[: m.num_xc] for m in modes],
                generic_c,
            )
            + ["mode"]
            + _shared_coordinates(
                [m.state_frame.coordinates[m.num_xc:] for m in modes],
                generic_d,
            )
        )
        if len(set(coords)) < len(coords):
            coords = generic_c + ["mode"] + generic_d
        self.state_frame = VectorSignal(len(coords), coordinates=coords)
        self.sample_time = modes[0].sample_time if modes else None
        self.noise_period = modes[0].noise_period if modes else None
        self.direct_feedthrough = any(m.direct_feedthrough for m in modes)
        self.time_invariant = all(m.time_invariant for m in modes)
        self.num_constraints = max(
            (m.num_constraints for m in modes), default=0
        )

    # ------------------------------------------------------------------
    # State layout
    # ------------------------------------------------------------------

    def active_mode(self, x) -> int:
        return int(round(float(x[self._nc])))

    def mode_state(self, x):
        """Split a full state into (mode id, mode state)."""
        x = np.asarray(x, dtype=float)
        m = self.active_mode(x)
        mode = self._modes[m]
        xm = np.concatenate(
            [x[: mode.num_xc], x[self._nc + 1:self._nc + 1 + mode.num_xd]]
        )
        return m, xm

    def state(self, mode: Union[int, str], x_mode) -> np.ndarray:
        """Full automaton state with the given mode active.

        x_mode is either the mode's own state or, for a saturated mode,
        the user state without saturation modes (those start free).
        """
        m = self.mode_id(mode)
        sys = self._modes[m]
        x_mode = np.asarray(x_mode, dtype=float).reshape(-1)
        if x_mode.size == self._user_modes[m].num_states < sys.num_states:
            x_mode = np.concatenate(
                [x_mode, np.zeros(sys.num_states - x_mode.size)]
            )
        x_mode = as_vector(x_mode, sys.num_states, f"mode {m} state")
        x = np.zeros(self.num_states)
        x[: sys.num_xc] = x_mode[: sys.num_xc]
        x[self._nc] = m
        x[self._nc + 1:self._nc + 1 + sys.num_xd] = x_mode[sys.num_xc:]
        return x

    # ------------------------------------------------------------------
    # System functions
    # ------------------------------------------------------------------

    def dynamics(self, t, x, u):
        m, xm = self.mode_state(x)
        xdot = np.zeros(self._nc)
        xdot[: self._modes[m].num_xc] = self._modes[m].dynamics(t, xm, u)
        return xdot

    def update(self, t, x, u):
        m, xm = self.mode_state(x)
        mode = self._modes[m]
        xd = np.array(x[self._nc:], dtype=float)
        if mode.sample_time is not None:
            xd[1:1 + mode.num_xd] = mode.update(t, xm, u)
        return xd

    def output(self, t, x, u):
        m, xm = self.mode_state(x)
        return self._modes[m].output(t, xm, u)

    @property
    def num_zero_crossings(self):
        inner = max((m.num_zero_crossings for m in self._modes), default=0)
        return len(self.transitions) + inner

    def zero_crossings(self, t, x, u):
        m, xm = self.mode_state(x)
        g = np.ones(self.num_zero_crossings)
        n_user = self._user_modes[m].num_states
        for k, tr in enumerate(self.transitions):
            if tr.source == m:
                g[k] = float(tr.guard(t, xm[:n_user], u))
        mode = self._modes[m]
        if mode.num_zero_crossings:
            start = len(self.transitions)
            g[start:start + mode.num_zero_crossings] = mode.zero_crossings(
                t, xm, u
            )
        return g

    def handle_events(self, t, x, u, active):
        active = np.asarray(active, dtype=bool)
        m, xm = self.mode_state(x)
        n_tr = len(self.transitions)
        fired = [
            k for k in np.flatnonzero(active[:n_tr])
            if self.transitions[k].source == m
        ]
        if fired:
            tr = self.transitions[min(fired)]
            source_user = self._user_modes[tr.source]
            target_user = self._user_modes[tr.target]
            target = self._modes[tr.target]
            x_user = as_vector(
                tr.reset(t, xm[: source_user.num_states], u),
                target_user.num_states,
                f"reset of transition {tr.name or min(fired)}",
            )
            x_target = np.concatenate(
                [x_user, np.zeros(target.num_states - x_user.size)]
            )
            x_target = target.init_modes(t, x_target, u)
            logger.debug(
                "%s: transition %s, mode %d -> %d at t=%.9g",
                self.name,
                tr.name or min(fired),
                tr.source,
                tr.target,
                t,
            )
            return self.state(tr.target, x_target)
        mode = self._modes[m]
        inner = active[n_tr:n_tr + mode.num_zero_crossings]
        if inner.any():
            return self.state(m, mode.handle_events(t, xm, u, inner))
        return np.array(x, dtype=float)

    def armed_at_zero(self, x):
        m, xm = self.mode_state(x)
        armed = np.zeros(self.num_zero_crossings, dtype=bool)
        mode = self._modes[m]
        start = len(self.transitions)
        armed[start:start + mode.num_zero_crossings] = mode.armed_at_zero(xm)
        return armed

    def init_modes(self, t, x, u):
        m, xm = self.mode_state(x)
        return self.state(m, self._modes[m].init_modes(t, xm, u))

    def resample_noise(self, x, rng):
        m, xm = self.mode_state(x)
        return self.state(m, self._modes[m].resample_noise(xm, rng))

    def state_constraints(self, x):
        m, xm = self.mode_state(x)
        values = np.zeros(self.num_constraints)
        phi = self._modes[m].state_constraints(xm)
        values[: phi.size] = phi
        return values

    def get_initial_state(self, t=0.0, u=None):
        if not self._modes:
            raise ValueError(f"{self.name} has no modes")
        if u is None:
            u = np.zeros(self.num_u)
        m = self.initial_mode
        return self.state(m, self._modes[m].get_initial_state(t, u))

    def __repr__(self):
        return (
            f"HybridAutomaton(name={self.name!r}, modes={self.num_modes}, "
            f"transitions={len(self.transitions)})"
        )
