"""Dynamical system models.

A SystemModel bundles the three functions of a dynamical system,

    xdot_c = dynamics(t, x, u)      continuous part
    x_d+   = update(t, x, u)        discrete part, every sample period
    y      = output(t, x, u)

with the metadata the simulation and combination layers need: dimensions,
sample period, direct feedthrough, state constraints, input limits and a
structural tag. The full state is always laid out as
[continuous states, discrete states].

Models are immutable once constructed. Structural variants (linear,
polynomial, rigid-body, stochastic) are subclasses carrying an explicit
StructureTag; combining two models joins their tags with a lookup table
(see join_structure) instead of relying on class inheritance.

Examples
--------
>>> def cubic(t, x, u):
...     return -x + x**3
>>> sys = SystemModel(num_continuous_states=1, dynamics=cubic)
>>> sys.num_xc, sys.num_y
(1, 1)
"""

import copy
from enum import Enum
from typing import Any, Callable, Optional, Sequence, Union

import numpy as np

from hybridsim.exceptions import SampleTimeError
from hybridsim.signals import VectorSignal


class StructureTag(Enum):
    """Structural type of a system.

    LINEAR, POLYNOMIAL, RIGID_BODY and GENERAL form a chain, each one a
    special case of the next. STOCHASTIC absorbs the chain and HYBRID
    absorbs everything.
    """

    LINEAR = "linear"
    POLYNOMIAL = "polynomial"
    RIGID_BODY = "rigid_body"
    GENERAL = "general"
    STOCHASTIC = "stochastic"
    HYBRID = "hybrid"


_L = StructureTag.LINEAR
_P = StructureTag.POLYNOMIAL
_R = StructureTag.RIGID_BODY
_G = StructureTag.GENERAL
_S = StructureTag.STOCHASTIC
_H = StructureTag.HYBRID

# Most specific common structure of two operands
_JOIN = {
    _L: {_L: _L, _P: _P, _R: _R, _G: _G, _S: _S, _H: _H},
    _P: {_L: _P, _P: _P, _R: _R, _G: _G, _S: _S, _H: _H},
    _R: {_L: _R, _P: _R, _R: _R, _G: _G, _S: _S, _H: _H},
    _G: {_L: _G, _P: _G, _R: _G, _G: _G, _S: _S, _H: _H},
    _S: {_L: _S, _P: _S, _R: _S, _G: _S, _S: _S, _H: _H},
    _H: {_L: _H, _P: _H, _R: _H, _G: _H, _S: _H, _H: _H},
}


def join_structure(a: StructureTag, b: StructureTag) -> StructureTag:
    """Return the structural tag of a combination of a and b.

    Examples
    --------
    >>> join_structure(StructureTag.LINEAR, StructureTag.POLYNOMIAL)
    <StructureTag.POLYNOMIAL: 'polynomial'>
    """
    return _JOIN[a][b]


def common_period(a: Optional[float], b: Optional[float], what: str = "sample"):
    """Period shared by two systems (None means no periodic part).

    Only one period per model is supported, so two different periods are
    an error.
    """
    if a is None:
        return b
    if b is None or np.isclose(a, b, rtol=1e-12, atol=0.0):
        return a
    raise SampleTimeError(
        f"Cannot combine systems with different {what} periods ({a} and {b})"
    )


def as_vector(value: Any, size: int, what: str = "vector") -> np.ndarray:
    """Coerce value to a 1-D float array with the given number of elements."""
    arr = np.asarray(value, dtype=float).reshape(-1)
    if arr.size != size:
        raise ValueError(f"{what} has {arr.size} elements, expected {size}")
    return arr


def _frame(frame, dim, prefix, what):
    if frame is None:
        return VectorSignal(dim, prefix=prefix)
    if frame.dim != dim:
        raise ValueError(
            f"{what} frame has dimension {frame.dim}, expected {dim}"
        )
    return frame


def _check_limits(limits, num_inputs):
    if limits is None:
        return None
    lower, upper = limits
    lower = np.broadcast_to(np.asarray(lower, dtype=float), (num_inputs,))
    upper = np.broadcast_to(np.asarray(upper, dtype=float), (num_inputs,))
    if np.any(lower > upper):
        raise ValueError(
            f"Input lower limits {lower} exceed upper limits {upper}"
        )
    return lower.copy(), upper.copy()


class SystemModel:
    """General dynamical system defined by user functions.

    Parameters
    ----------
    num_continuous_states : int, default=0
        Number of continuous states
    num_discrete_states : int, default=0
        Number of discrete states. Without a sample_time these are
        event-driven (only changed by zero-crossing events).
    num_inputs : int, default=0
        Input dimension
    num_outputs : int, optional
        Output dimension. Required when output is given, otherwise the
        output is the full state.
    dynamics : callable, optional
        f(t, x, u) -> xdot_c, required when num_continuous_states > 0
    update : callable, optional
        g(t, x, u) -> x_d+, required when sample_time is given
    output : callable, optional
        h(t, x, u) -> y. Defaults to the full state.
    sample_time : float, optional
        Discrete sample period. Update is applied at t = k * sample_time.
    direct_feedthrough : bool, optional
        Whether output depends on u. Defaults to True when an output
        function is given and False otherwise.
    time_invariant : bool, default=False
        Whether the functions are independent of t
    state_constraints : callable or list of callable, optional
        Functions phi(x) -> vector that must stay at zero along any
        trajectory of the model
    num_constraints : int, optional
        Total number of constraint values. Defaults to one per function.
    input_limits : (array-like, array-like), optional
        Per-element (lower, upper) input bounds. Use +/-inf for unbounded
        elements.
    initial_state : array-like or callable, optional
        Default initial state, or a function returning it. Defaults to
        zeros.
    initial_condition : callable, optional
        Input-aware variant c(t, u) -> x0. Cannot be combined with
        initial_state.
    input_frame, state_frame, output_frame : VectorSignal, optional
        Coordinate frames. Anonymous frames are generated by default.
    name : str, optional
        Name used in messages and composite coordinate labels

    Examples
    --------
    >>> def update(t, x, u):
    ...     return x**3
    >>> sys = SystemModel(num_discrete_states=1, update=update,
    ...                   sample_time=1.0)
    >>> sys.is_discrete
    True
    """

    structure = StructureTag.GENERAL

    def __init__(
        self,
        num_continuous_states: int = 0,
        num_discrete_states: int = 0,
        num_inputs: int = 0,
        num_outputs: Optional[int] = None,
        dynamics: Optional[Callable] = None,
        update: Optional[Callable] = None,
        output: Optional[Callable] = None,
        sample_time: Optional[float] = None,
        direct_feedthrough: Optional[bool] = None,
        time_invariant: bool = False,
        state_constraints: Union[Callable, Sequence[Callable], None] = None,
        num_constraints: Optional[int] = None,
        input_limits=None,
        initial_state: Any = None,
        initial_condition: Optional[Callable] = None,
        input_frame: Optional[VectorSignal] = None,
        state_frame: Optional[VectorSignal] = None,
        output_frame: Optional[VectorSignal] = None,
        name: Optional[str] = None,
    ):
        self.num_xc = int(num_continuous_states)
        self.num_xd = int(num_discrete_states)
        self.num_u = int(num_inputs)
        if num_outputs is None:
            if output is not None:
                raise ValueError(
                    "num_outputs is required when an output function is given"
                )
            num_outputs = self.num_xc + self.num_xd
        self.num_y = int(num_outputs)
        if min(self.num_xc, self.num_xd, self.num_u, self.num_y) < 0:
            raise ValueError("System dimensions must be non-negative")

        self.name = name or type(self).__name__
        self._dynamics = dynamics
        self._update = update
        self._output = output

        if sample_time is not None:
            sample_time = float(sample_time)
            if not sample_time > 0:
                raise ValueError(
                    f"sample_time must be positive, got {sample_time}"
                )
            if self.num_xd == 0:
                raise ValueError(
                    "A sample_time requires at least one discrete state"
                )
        self.sample_time = sample_time
        self.noise_period = None

        overrides_dynamics = type(self).dynamics is not SystemModel.dynamics
        overrides_update = type(self).update is not SystemModel.update
        if self.num_xc > 0 and dynamics is None and not overrides_dynamics:
            raise ValueError(
                f"{self.name}: dynamics function required for "
                f"{self.num_xc} continuous states"
            )
        if sample_time is not None and update is None and not overrides_update:
            raise ValueError(
                f"{self.name}: update function required when sample_time "
                "is given"
            )
        if update is not None and sample_time is None:
            raise ValueError(
                f"{self.name}: update function given without a sample_time"
            )

        if direct_feedthrough is None:
            direct_feedthrough = output is not None
        self.direct_feedthrough = bool(direct_feedthrough)
        self.time_invariant = bool(time_invariant)

        if state_constraints is None:
            self._constraints = ()
        elif callable(state_constraints):
            self._constraints = (state_constraints,)
        else:
            self._constraints = tuple(state_constraints)
        if num_constraints is None:
            num_constraints = len(self._constraints)
        self.num_constraints = int(num_constraints)

        self.input_limits = _check_limits(input_limits, self.num_u)

        if initial_state is not None and initial_condition is not None:
            raise ValueError(
                "Provide either initial_state or initial_condition, not both"
            )
        self._initial_state = initial_state
        self._initial_condition = initial_condition

        self.input_frame = _frame(input_frame, self.num_u, "u", "input")
        self.state_frame = _frame(
            state_frame, self.num_xc + self.num_xd, "x", "state"
        )
        self.output_frame = _frame(output_frame, self.num_y, "y", "output")

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    @property
    def num_states(self) -> int:
        return self.num_xc + self.num_xd

    @property
    def is_discrete(self) -> bool:
        """True for discrete-only models (sampled, no continuous states)."""
        return self.sample_time is not None and self.num_xc == 0

    @property
    def is_mixed(self) -> bool:
        return self.sample_time is not None and self.num_xc > 0

    @property
    def is_hybrid(self) -> bool:
        return self.structure is StructureTag.HYBRID

    @property
    def is_stochastic(self) -> bool:
        return self.structure is StructureTag.STOCHASTIC

    @property
    def num_zero_crossings(self) -> int:
        return 0

    # ------------------------------------------------------------------
    # System functions
    # ------------------------------------------------------------------

    def dynamics(self, t: float, x, u) -> np.ndarray:
        """Time derivative of the continuous states."""
        if self.num_xc == 0:
            return np.zeros(0)
        return as_vector(
            self._dynamics(t, x, u), self.num_xc, f"{self.name} dynamics"
        )

    def update(self, t: float, x, u) -> np.ndarray:
        """Next value of the discrete states.

        Models without an update function keep their discrete states.
        """
        if self._update is None:
            return np.array(x[self.num_xc:], dtype=float)
        return as_vector(
            self._update(t, x, u), self.num_xd, f"{self.name} update"
        )

    def output(self, t: float, x, u) -> np.ndarray:
        if self._output is None:
            return np.array(x, dtype=float)
        return as_vector(
            self._output(t, x, u), self.num_y, f"{self.name} output"
        )

    # ------------------------------------------------------------------
    # Event hooks (no events by default)
    # ------------------------------------------------------------------

    def zero_crossings(self, t: float, x, u) -> np.ndarray:
        """Zero-crossing functions; an event fires when one goes from >0 to <=0."""
        return np.zeros(0)

    def armed_at_zero(self, x) -> np.ndarray:
        """Mask of zero-crossing entries that also fire when they start at
        exactly 0 and become negative."""
        return np.zeros(self.num_zero_crossings, dtype=bool)

    def handle_events(self, t: float, x, u, active) -> np.ndarray:
        """Apply the discontinuities of the active zero-crossing entries."""
        return np.array(x, dtype=float)

    def init_modes(self, t: float, x, u) -> np.ndarray:
        """Set event-driven modes consistent with the current signals."""
        return np.array(x, dtype=float)

    def resample_noise(self, x, rng: np.random.Generator) -> np.ndarray:
        return np.array(x, dtype=float)

    # ------------------------------------------------------------------
    # Constraints and initial conditions
    # ------------------------------------------------------------------

    def state_constraints(self, x) -> np.ndarray:
        """Evaluate all declared state constraints phi(x)."""
        if not self._constraints:
            return np.zeros(0)
        values = np.concatenate(
            [np.asarray(phi(x), dtype=float).reshape(-1)
             for phi in self._constraints]
        )
        return as_vector(
            values, self.num_constraints, f"{self.name} state constraints"
        )

    def _declared_initial_state(self, t, u, size):
        if self._initial_condition is not None:
            x0 = self._initial_condition(t, u)
        elif callable(self._initial_state):
            x0 = self._initial_state()
        elif self._initial_state is not None:
            x0 = self._initial_state
        else:
            x0 = np.zeros(size)
        return as_vector(x0, size, f"{self.name} initial state")

    def get_initial_state(self, t: float = 0.0, u=None) -> np.ndarray:
        """Initial state from the declared initial-condition contract."""
        if u is None:
            u = np.zeros(self.num_u)
        return self._declared_initial_state(t, u, self.num_states)

    def with_input_limits(self, lower, upper) -> "SystemModel":
        """Return a copy of this model with input saturation limits."""
        new = copy.copy(self)
        new.input_limits = _check_limits((lower, upper), self.num_u)
        return new

    def __repr__(self):
        parts = [
            f"{type(self).__name__}(name={self.name!r}",
            f"num_xc={self.num_xc}",
            f"num_xd={self.num_xd}",
            f"num_u={self.num_u}",
            f"num_y={self.num_y}",
        ]
        if self.sample_time is not None:
            parts.append(f"sample_time={self.sample_time}")
        return ", ".join(parts) + ")"


def _matrix(value, shape, name):
    if value is None:
        return np.zeros(shape)
    arr = np.asarray(value, dtype=float)
    if arr.size == 0:
        arr = arr.reshape(shape)
    arr = np.atleast_2d(arr)
    if arr.shape != shape:
        raise ValueError(f"{name} has shape {arr.shape}, expected {shape}")
    return arr


class LinearSystem(SystemModel):
    """Linear time-invariant system.

    Continuous:  xdot = A x + B u,     y = C x + D u
    Discrete:    x[n+1] = A x[n] + B u[n]

    Parameters
    ----------
    A : array-like, shape (n, n)
    B : array-like, shape (n, m), optional
        Defaults to no inputs.
    C : array-like, shape (p, n), optional
        Defaults to the identity (state output).
    D : array-like, shape (p, m), optional
        Defaults to zero. The system is direct-feedthrough iff D != 0.
    sample_time : float, optional
        If given the states are discrete.
    **kwargs
        Passed to SystemModel (frames, name, limits, initial state...)

    Examples
    --------
    >>> sys = LinearSystem([[-1.0]], [[1.0]], [[1.0]], [[0.0]])
    >>> sys.structure
    <StructureTag.LINEAR: 'linear'>
    >>> sys.direct_feedthrough
    False
    """

    structure = StructureTag.LINEAR

    def __init__(self, A, B=None, C=None, D=None, sample_time=None, **kwargs):
        A = np.asarray(A, dtype=float)
        n = int(np.sqrt(A.size))
        A = _matrix(A, (n, n), "A")
        if B is not None:
            B = np.atleast_2d(np.asarray(B, dtype=float))
        m = 0 if B is None else B.shape[1]
        C = np.eye(n) if C is None else np.atleast_2d(np.asarray(C, float))
        p = C.shape[0]
        self.A = A
        self.B = _matrix(B, (n, m), "B")
        self.C = _matrix(C, (p, n), "C")
        self.D = _matrix(D, (p, m), "D")

        if sample_time is None:
            nc, nd = n, 0
        else:
            nc, nd = 0, n
        super().__init__(
            num_continuous_states=nc,
            num_discrete_states=nd,
            num_inputs=m,
            num_outputs=p,
            sample_time=sample_time,
            direct_feedthrough=bool(np.any(self.D != 0)),
            time_invariant=True,
            **kwargs,
        )

    @classmethod
    def static_gain(cls, D, **kwargs) -> "LinearSystem":
        """Memoryless system y = D u."""
        D = np.atleast_2d(np.asarray(D, dtype=float))
        p, m = D.shape
        return cls(
            np.zeros((0, 0)), np.zeros((0, m)), np.zeros((p, 0)), D, **kwargs
        )

    @classmethod
    def identity(cls, n: int, **kwargs) -> "LinearSystem":
        """Memoryless system y = u with n channels."""
        return cls.static_gain(np.eye(n), **kwargs)

    def dynamics(self, t, x, u):
        if self.num_xc == 0:
            return np.zeros(0)
        return self.A @ np.asarray(x, float) + self.B @ np.asarray(u, float)

    def update(self, t, x, u):
        if self.sample_time is None:
            return np.zeros(0)
        return self.A @ np.asarray(x, float) + self.B @ np.asarray(u, float)

    def output(self, t, x, u):
        return self.C @ np.asarray(x, float) + self.D @ np.asarray(u, float)


class PolynomialSystem(SystemModel):
    """System whose functions are polynomial in (x, u).

    The polynomial structure is asserted by the model author; it is kept
    through combination so that downstream polynomial tooling can rely on
    it. Construction is identical to SystemModel.
    """

    structure = StructureTag.POLYNOMIAL


class ManipulatorSystem(SystemModel):
    """Rigid-body system in manipulator form.

        H(q) vdot + C(q, v) = B u,   qdot = v

    The state is [q, v] and the default output is the full state. Mass
    matrix, bias and input matrix are supplied by an external rigid-body
    model (e.g. a URDF loader).

    Parameters
    ----------
    num_positions : int
        Number of generalized positions q
    mass_matrix : callable
        H(q) -> (nq, nq) array
    bias : callable
        C(q, v) -> (nq,) array of Coriolis, gravity and damping terms
    input_matrix : array-like or callable
        B with shape (nq, nu), or B(q) returning it
    num_inputs : int, optional
        Required when input_matrix is callable
    **kwargs
        Passed to SystemModel

    Examples
    --------
    >>> pendulum = ManipulatorSystem(
    ...     1,
    ...     mass_matrix=lambda q: np.array([[1.0]]),
    ...     bias=lambda q, v: np.array([9.81 * np.sin(q[0])]),
    ...     input_matrix=[[1.0]],
    ... )
    >>> pendulum.num_xc
    2
    """

    structure = StructureTag.RIGID_BODY

    def __init__(
        self,
        num_positions: int,
        mass_matrix: Callable,
        bias: Callable,
        input_matrix,
        num_inputs: Optional[int] = None,
        **kwargs,
    ):
        nq = int(num_positions)
        if callable(input_matrix):
            if num_inputs is None:
                raise ValueError(
                    "num_inputs is required with a callable input_matrix"
                )
            self._input_matrix = input_matrix
        else:
            B = np.atleast_2d(np.asarray(input_matrix, dtype=float))
            if B.shape[0] != nq:
                raise ValueError(
                    f"input_matrix has {B.shape[0]} rows, expected {nq}"
                )
            num_inputs = B.shape[1]
            self._input_matrix = lambda q: B
        self.num_positions = nq
        self._mass_matrix = mass_matrix
        self._bias = bias
        kwargs.setdefault("time_invariant", True)
        super().__init__(
            num_continuous_states=2 * nq,
            num_inputs=num_inputs,
            **kwargs,
        )

    def dynamics(self, t, x, u):
        nq = self.num_positions
        q, v = x[:nq], x[nq:2 * nq]
        H = np.atleast_2d(self._mass_matrix(q))
        B = np.atleast_2d(self._input_matrix(q))
        rhs = B @ np.asarray(u, float) - np.asarray(
            self._bias(q, v), dtype=float
        )
        vdot = np.linalg.solve(H, rhs)
        return np.concatenate([v, vdot])


class StochasticSystem(SystemModel):
    """System driven by a white-noise vector w.

    The user functions take an extra noise argument,
    f(t, x, u, w), g(t, x, u, w), h(t, x, u, w). The noise is held in
    num_noise extra discrete states appended after the user states; the
    simulator draws a new standard-normal sample every noise_period and
    holds it in between.

    Parameters
    ----------
    num_noise : int
        Dimension of w
    noise_period : float
        Period at which w is redrawn
    dynamics, update, output : callable, optional
        Stochastic versions of the system functions
    **kwargs
        Dimensions and options as for SystemModel. num_discrete_states
        counts the user discrete states only.

    Examples
    --------
    >>> def ou(t, x, u, w):
    ...     return -x + 0.5 * w
    >>> sys = StochasticSystem(1, 0.01, num_continuous_states=1,
    ...                        dynamics=ou)
    >>> sys.num_xd
    1
    """

    structure = StructureTag.STOCHASTIC

    def __init__(
        self,
        num_noise: int,
        noise_period: float,
        num_continuous_states: int = 0,
        num_discrete_states: int = 0,
        num_inputs: int = 0,
        num_outputs: Optional[int] = None,
        dynamics: Optional[Callable] = None,
        update: Optional[Callable] = None,
        output: Optional[Callable] = None,
        direct_feedthrough: Optional[bool] = None,
        state_frame: Optional[VectorSignal] = None,
        **kwargs,
    ):
        self.num_noise = int(num_noise)
        if self.num_noise < 1:
            raise ValueError("num_noise must be at least 1")
        self._num_user_states = int(num_continuous_states) + int(
            num_discrete_states
        )
        if num_continuous_states and dynamics is None:
            raise ValueError(
                "dynamics function required for continuous states"
            )
        if update is not None and kwargs.get("sample_time") is None:
            raise ValueError("update function given without a sample_time")
        if kwargs.get("sample_time") is not None and update is None:
            raise ValueError("update function required with a sample_time")
        if num_outputs is None:
            if output is not None:
                raise ValueError(
                    "num_outputs is required when an output function is given"
                )
            num_outputs = self._num_user_states
        if direct_feedthrough is None:
            direct_feedthrough = output is not None
        self._stochastic_dynamics = dynamics
        self._stochastic_update = update
        self._stochastic_output = output
        if state_frame is not None:
            state_frame = VectorSignal.concat(
                [state_frame, VectorSignal(self.num_noise, prefix="w")],
                name=state_frame.name,
            )
        super().__init__(
            num_continuous_states=num_continuous_states,
            num_discrete_states=int(num_discrete_states) + self.num_noise,
            num_inputs=num_inputs,
            num_outputs=num_outputs,
            direct_feedthrough=direct_feedthrough,
            state_frame=state_frame,
            **kwargs,
        )
        noise_period = float(noise_period)
        if not noise_period > 0:
            raise ValueError(
                f"noise_period must be positive, got {noise_period}"
            )
        self.noise_period = noise_period

    def _split_noise(self, x):
        x = np.asarray(x, dtype=float)
        return x[: self._num_user_states], x[self._num_user_states:]

    def dynamics(self, t, x, u):
        if self.num_xc == 0:
            return np.zeros(0)
        xs, w = self._split_noise(x)
        return as_vector(
            self._stochastic_dynamics(t, xs, u, w),
            self.num_xc,
            f"{self.name} dynamics",
        )

    def update(self, t, x, u):
        xs, w = self._split_noise(x)
        if self._stochastic_update is None:
            return np.array(x[self.num_xc:], dtype=float)
        num_user_xd = self.num_xd - self.num_noise
        new = as_vector(
            self._stochastic_update(t, xs, u, w),
            num_user_xd,
            f"{self.name} update",
        )
        return np.concatenate([new, w])

    def output(self, t, x, u):
        xs, w = self._split_noise(x)
        if self._stochastic_output is None:
            return xs.copy()
        return as_vector(
            self._stochastic_output(t, xs, u, w),
            self.num_y,
            f"{self.name} output",
        )

    def resample_noise(self, x, rng):
        x = np.array(x, dtype=float)
        x[self._num_user_states:] = rng.standard_normal(self.num_noise)
        return x

    def state_constraints(self, x):
        xs, _ = self._split_noise(x)
        return super().state_constraints(xs)

    def get_initial_state(self, t=0.0, u=None):
        if u is None:
            u = np.zeros(self.num_u)
        xs = self._declared_initial_state(t, u, self._num_user_states)
        return np.concatenate([xs, np.zeros(self.num_noise)])
