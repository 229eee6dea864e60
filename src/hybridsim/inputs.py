"""Input signal classes for time-varying system inputs.

This module provides various input signal types that can be used
to drive dynamical systems during simulation.

Notes
-----
Input signals are evaluated by the SimulationEngine inside the ODE
right-hand side, so they may vary continuously within integration steps.
Signals with discontinuities (steps) or kinks (linear interpolation) list
the times at which these occur in a ``breakpoints`` attribute. The engine
stops and restarts the solver at every breakpoint instead of letting the
step-size controller resolve the jump.

A signal may return a scalar or an array. build_input_function assembles
the vector input of a model from one signal, from a mapping of input
coordinate names to signals, or from nothing (zero input).
"""

from typing import Any, Callable, Dict, Mapping, Union

import numpy as np


def breakpoints_of(signal) -> np.ndarray:
    """Breakpoint times of a signal (empty for smooth signals)."""
    return np.asarray(getattr(signal, "breakpoints", ()), dtype=float)


class ConstantInput:
    """Constant input signal.

    Returns the same value at all times.

    Parameters
    ----------
    value : scalar or array-like
        Constant value to return

    Examples
    --------
    >>> u = ConstantInput(5.0)
    >>> u(0.0)
    5.0
    >>> u(10.0)
    5.0
    """

    def __init__(self, value: Any):
        self.value = value

    def __call__(self, t: float) -> Any:
        """Return constant value."""
        return self.value

    def __repr__(self):
        return f"ConstantInput(value={self.value})"


class StepInput:
    """Step input signal with piecewise constant values.

    The input changes value at specified times. The signal is
    right-continuous: at a step time the new value applies.

    Parameters
    ----------
    times : array-like
        Times at which the input changes value
    values : array-like
        Values corresponding to each time interval.
        Length should be len(times) + 1 or len(times). Rows may be
        vectors.

    Examples
    --------
    >>> # Step from 0 to 1 at t=5
    >>> u = StepInput([5.0], [0.0, 1.0])
    >>> u(4.9)
    0.0
    >>> u(5.0)
    1.0

    >>> # Multiple steps
    >>> u = StepInput([0, 2, 5], [1.0, 2.0, 3.0])
    >>> u(1.0)  # t in [0, 2)
    1.0
    >>> u(6.0)  # t >= 5
    3.0
    """

    def __init__(
        self,
        times: Union[list, np.ndarray],
        values: Union[list, np.ndarray],
    ):
        self.times = np.asarray(times, dtype=float)
        self.values = np.asarray(values, dtype=float)

        if np.any(np.diff(self.times) <= 0):
            raise ValueError("Step times must be strictly increasing")
        if len(self.values) not in (len(self.times), len(self.times) + 1):
            raise ValueError(
                f"values must have length {len(self.times)} or "
                f"{len(self.times) + 1}, got {len(self.values)}"
            )

    @property
    def breakpoints(self) -> np.ndarray:
        return self.times

    def __call__(self, t: float) -> Any:
        """Return value at time t."""
        idx = np.searchsorted(self.times, t, side="right")
        if len(self.values) == len(self.times):
            idx = max(idx - 1, 0)
        return self.values[min(idx, len(self.values) - 1)]

    def __repr__(self):
        return (
            f"StepInput(times={self.times.tolist()}, "
            f"values={self.values.tolist()})"
        )


class RampInput:
    """Ramp input that changes linearly with time.

    Parameters
    ----------
    rate : float or array-like
        Rate of change (slope)
    offset : float or array-like, optional
        Initial value at t=0, by default 0.0

    Examples
    --------
    >>> u = RampInput(rate=2.0, offset=1.0)
    >>> u(1.0)
    3.0
    """

    def __init__(self, rate, offset=0.0):
        self.rate = rate
        self.offset = offset

    def __call__(self, t: float):
        """Return ramp value at time t."""
        return np.asarray(self.offset) + np.asarray(self.rate) * t

    def __repr__(self):
        return f"RampInput(rate={self.rate}, offset={self.offset})"


class InterpolatedInput:
    """Interpolated input from tabulated data.

    Parameters
    ----------
    times : array-like
        Time points for interpolation
    values : array-like, shape (n,) or (n, m)
        Values at each time point
    kind : str, optional
        Interpolation kind ('linear', 'cubic', etc.), by default 'linear'
    fill_value : str or float, optional
        How to handle extrapolation, by default 'extrapolate'

    Examples
    --------
    >>> u = InterpolatedInput([0.0, 1.0, 2.0], [0.0, 1.0, 0.5])
    >>> u(0.5)
    0.5
    """

    def __init__(
        self,
        times: Union[list, np.ndarray],
        values: Union[list, np.ndarray],
        kind: str = "linear",
        fill_value: Union[str, float] = "extrapolate",
    ):
        from scipy.interpolate import interp1d

        self.times = np.asarray(times, dtype=float)
        self.values = np.asarray(values, dtype=float)
        self.kind = kind

        self.interp = interp1d(
            self.times, self.values, kind=kind, fill_value=fill_value, axis=0
        )

    @property
    def breakpoints(self) -> np.ndarray:
        # Linear interpolation has a kink at every data point
        if self.kind in ("linear", "zero", "previous", "next", "nearest"):
            return self.times
        return np.empty(0)

    def __call__(self, t: float) -> Any:
        """Return interpolated value at time t."""
        value = self.interp(t)
        if value.ndim == 0:
            return float(value)
        return value

    def __repr__(self):
        return (
            f"InterpolatedInput(kind='{self.kind}', "
            f"n_points={len(self.times)})"
        )


class SinusoidalInput:
    """Sinusoidal input signal.

    u(t) = amplitude * sin(2*pi*frequency*t + phase) + offset

    Parameters
    ----------
    amplitude : float
        Amplitude of sine wave
    frequency : float
        Frequency in Hz
    phase : float, optional
        Phase offset in radians, by default 0.0
    offset : float, optional
        DC offset, by default 0.0
    """

    def __init__(
        self,
        amplitude: float,
        frequency: float,
        phase: float = 0.0,
        offset: float = 0.0,
    ):
        self.amplitude = amplitude
        self.frequency = frequency
        self.phase = phase
        self.offset = offset

    def __call__(self, t: float) -> float:
        """Return sinusoidal value at time t."""
        return (
            self.amplitude
            * np.sin(2 * np.pi * self.frequency * t + self.phase)
            + self.offset
        )

    def __repr__(self):
        return (
            f"SinusoidalInput(amplitude={self.amplitude}, "
            f"frequency={self.frequency}, phase={self.phase}, "
            f"offset={self.offset})"
        )


class FunctionInput:
    """Custom function-based input.

    Wraps any callable as an input signal.

    Parameters
    ----------
    func : callable
        Function that takes time t and returns input value
    breakpoints : array-like, optional
        Times at which func is discontinuous

    Examples
    --------
    >>> u = FunctionInput(lambda t: 0.0 if t < 1.0 else 2.0,
    ...                   breakpoints=[1.0])
    """

    def __init__(self, func: Callable[[float], Any], breakpoints=()):
        self.func = func
        self.breakpoints = np.asarray(breakpoints, dtype=float)

    def __call__(self, t: float) -> Any:
        """Return function value at time t."""
        return self.func(t)

    def __repr__(self):
        func_name = getattr(self.func, "__name__", repr(self.func))
        return f"FunctionInput(func={func_name})"


class CompositeInput:
    """Composite input formed by combining multiple signals.

    Supports addition, multiplication, and custom combinations. The
    breakpoints are the union of the breakpoints of the parts.

    Parameters
    ----------
    signals : list of InputSignal
        Input signals to combine
    operation : callable, optional
        Function to combine signals. Takes list of values, returns combined
        value. Default is sum.

    Examples
    --------
    >>> u1 = ConstantInput(1.0)
    >>> u2 = StepInput([1.0], [0.0, 1.0])
    >>> u_sum = CompositeInput([u1, u2])
    >>> u_sum(2.0)
    2.0
    """

    def __init__(self, signals: list, operation: Callable[[list], Any] = None):
        self.signals = signals
        self.operation = operation or sum

    @property
    def breakpoints(self) -> np.ndarray:
        return np.unique(
            np.concatenate([breakpoints_of(s) for s in self.signals] or [[]])
        )

    def __call__(self, t: float) -> Any:
        """Return combined value at time t."""
        values = [sig(t) for sig in self.signals]
        return self.operation(values)

    def __repr__(self):
        return f"CompositeInput(n_signals={len(self.signals)})"


class VectorInput:
    """Model input assembled from per-coordinate signals.

    Parameters
    ----------
    signals : dict
        Maps each input coordinate name to a signal or a constant
    frame : VectorSignal
        Input frame of the model

    Examples
    --------
    >>> u = VectorInput({"torque": StepInput([1.0], [0.0, 2.0])},
    ...                 VectorSignal(1, coordinates=["torque"]))
    >>> u(1.5)
    array([2.])
    """

    def __init__(self, signals: Mapping[str, Any], frame):
        unknown = set(signals) - set(frame.coordinates)
        if unknown:
            raise KeyError(
                f"Unknown input coordinates {sorted(unknown)}, "
                f"expected {list(frame.coordinates)}"
            )
        missing = [c for c in frame.coordinates if c not in signals]
        if missing:
            raise KeyError(f"No input signal given for {missing}")
        self.frame = frame
        self.signals = [
            s if callable(s) else ConstantInput(s)
            for s in (signals[c] for c in frame.coordinates)
        ]

    @property
    def breakpoints(self) -> np.ndarray:
        return np.unique(
            np.concatenate([breakpoints_of(s) for s in self.signals] or [[]])
        )

    def __call__(self, t: float) -> np.ndarray:
        return np.array([float(np.squeeze(s(t))) for s in self.signals])

    def __repr__(self):
        return f"VectorInput(coordinates={list(self.frame.coordinates)})"


class InputFunction:
    """Callable u(t) returning a validated model input vector."""

    def __init__(self, signal, frame):
        self.signal = signal
        self.frame = frame
        self.breakpoints = breakpoints_of(signal)

    def __call__(self, t: float) -> np.ndarray:
        if self.signal is None:
            return np.zeros(self.frame.dim)
        return self.frame.validate(self.signal(t), "input")


def build_input_function(
    inputs: Union[None, Callable, Dict[str, Any], Any], frame
) -> InputFunction:
    """Turn the inputs of a simulation configuration into u(t).

    Parameters
    ----------
    inputs : None, callable, dict or array-like
        None for zero input, a signal returning the whole input vector, a
        mapping from input coordinate names to signals or constants, or a
        constant vector
    frame : VectorSignal
        Input frame of the simulated model
    """
    if inputs is None:
        return InputFunction(None, frame)
    if isinstance(inputs, Mapping):
        return InputFunction(VectorInput(inputs, frame), frame)
    if callable(inputs):
        return InputFunction(inputs, frame)
    value = frame.validate(inputs, "input")
    return InputFunction(ConstantInput(value), frame)
