"""Input saturation and state constraints.

Input limits are realized by wrapping a model in a SaturatedSystem. The
clamp is not evaluated blindly inside the dynamics: each input element
carries an event-driven mode (low, free, high) and two zero-crossing
functions, so the simulator locates the instant an input hits or leaves a
bound and switches the mode there. Between events the dynamics are smooth,
and the step-size controller never has to resolve the kink itself.

State constraints phi(x) = 0 are advisory. They are used to complete or
correct initial conditions and, optionally, to project the state back onto
the constraint manifold during integration.
"""

import logging
import warnings

import numpy as np
from scipy.optimize import minimize

from hybridsim.exceptions import ConstraintViolationWarning
from hybridsim.signals import VectorSignal
from hybridsim.systems import (
    StructureTag,
    SystemModel,
    as_vector,
    join_structure,
)

logger = logging.getLogger(__name__)

LOW, FREE, HIGH = -1.0, 0.0, 1.0


def clamp(u, lower, upper) -> np.ndarray:
    """Element-wise clamp of u to [lower, upper]."""
    return np.clip(np.asarray(u, dtype=float), lower, upper)


class SaturatedSystem(SystemModel):
    """Model whose input is clamped element-wise to [lower, upper].

    The state is [inner state, saturation modes]; one mode per input
    element, stored as a discrete state with value -1 (at lower bound),
    0 (free) or +1 (at upper bound).

    Zero-crossing functions, two per element:

    ======  ==============  ==============
    mode    upper slot      lower slot
    ======  ==============  ==============
    free    upper - u       u - lower
    high    u - upper       (inactive)
    low     (inactive)      lower - u
    ======  ==============  ==============

    Inactive slots and infinite bounds evaluate to +1 and never fire.

    Parameters
    ----------
    inner : SystemModel
        Model to saturate
    lower, upper : array-like, optional
        Bounds. Default to inner.input_limits.
    """

    def __init__(self, inner: SystemModel, lower=None, upper=None):
        if lower is None and upper is None:
            if inner.input_limits is None:
                raise ValueError(f"{inner.name} has no input limits")
            lower, upper = inner.input_limits
        nu = inner.num_u
        self.inner = inner
        self.lower = np.broadcast_to(
            np.asarray(-np.inf if lower is None else lower, float), (nu,)
        ).copy()
        self.upper = np.broadcast_to(
            np.asarray(np.inf if upper is None else upper, float), (nu,)
        ).copy()
        if np.any(self.lower > self.upper):
            raise ValueError("Lower input limits exceed upper limits")
        self._n_inner = inner.num_states
        super().__init__(
            num_continuous_states=inner.num_xc,
            num_discrete_states=inner.num_xd + nu,
            num_inputs=nu,
            num_outputs=inner.num_y,
            sample_time=inner.sample_time,
            direct_feedthrough=inner.direct_feedthrough,
            time_invariant=inner.time_invariant,
            num_constraints=inner.num_constraints,
            input_frame=inner.input_frame,
            state_frame=VectorSignal.concat(
                [inner.state_frame, VectorSignal(nu, prefix="sat")],
                name=inner.state_frame.name,
            ),
            output_frame=inner.output_frame,
            name=inner.name,
        )
        self.noise_period = inner.noise_period
        self.structure = join_structure(inner.structure, StructureTag.GENERAL)

    @property
    def num_zero_crossings(self):
        return 2 * self.num_u + self.inner.num_zero_crossings

    def split_state(self, x):
        """Split into (inner state, saturation modes)."""
        x = np.asarray(x, dtype=float)
        return x[: self._n_inner], x[self._n_inner:]

    def classify(self, u) -> np.ndarray:
        """Saturation modes implied by the raw input u."""
        u = as_vector(u, self.num_u, f"{self.name} input")
        return np.where(
            u > self.upper, HIGH, np.where(u < self.lower, LOW, FREE)
        )

    def saturated_input(self, x, u) -> np.ndarray:
        """Input seen by the inner model in the current modes."""
        _, modes = self.split_state(x)
        u = np.asarray(u, dtype=float)
        return np.where(
            modes > 0.5, self.upper, np.where(modes < -0.5, self.lower, u)
        )

    def dynamics(self, t, x, u):
        xi, _ = self.split_state(x)
        return self.inner.dynamics(t, xi, self.saturated_input(x, u))

    def update(self, t, x, u):
        xi, modes = self.split_state(x)
        new = self.inner.update(t, xi, self.saturated_input(x, u))
        return np.concatenate([new, modes])

    def output(self, t, x, u):
        xi, _ = self.split_state(x)
        return self.inner.output(t, xi, self.saturated_input(x, u))

    def zero_crossings(self, t, x, u):
        xi, modes = self.split_state(x)
        u = np.asarray(u, dtype=float)
        upper_slot = np.where(
            modes == FREE, self.upper - u,
            np.where(modes == HIGH, u - self.upper, 1.0),
        )
        lower_slot = np.where(
            modes == FREE, u - self.lower,
            np.where(modes == LOW, self.lower - u, 1.0),
        )
        upper_slot = np.where(np.isinf(self.upper), 1.0, upper_slot)
        lower_slot = np.where(np.isinf(self.lower), 1.0, lower_slot)
        g = np.empty(2 * self.num_u)
        g[0::2] = upper_slot
        g[1::2] = lower_slot
        inner_g = self.inner.zero_crossings(t, xi, self.saturated_input(x, u))
        return np.concatenate([g, inner_g])

    def handle_events(self, t, x, u, active):
        active = np.asarray(active, dtype=bool)
        xi, modes = self.split_state(x)
        modes = modes.copy()
        nu = self.num_u
        for i in range(nu):
            if active[2 * i]:
                modes[i] = HIGH if modes[i] == FREE else FREE
            elif active[2 * i + 1]:
                modes[i] = LOW if modes[i] == FREE else FREE
        logger.debug(
            "%s: saturation modes %s at t=%.9g", self.name, modes, t
        )
        x_new = np.concatenate([xi, modes])
        inner_active = active[2 * nu:]
        if inner_active.any():
            xi = self.inner.handle_events(
                t, xi, self.saturated_input(x_new, u), inner_active
            )
            x_new = np.concatenate([xi, modes])
        return x_new

    def armed_at_zero(self, x):
        # A bound reached exactly when the modes are set still switches
        # the mode once the input moves past it
        xi, _ = self.split_state(x)
        slots = np.ones(2 * self.num_u, dtype=bool)
        return np.concatenate([slots, self.inner.armed_at_zero(xi)])

    def init_modes(self, t, x, u):
        xi, _ = self.split_state(x)
        modes = self.classify(u)
        x_new = np.concatenate([xi, modes])
        xi = self.inner.init_modes(t, xi, self.saturated_input(x_new, u))
        return np.concatenate([xi, modes])

    def resample_noise(self, x, rng):
        xi, modes = self.split_state(x)
        return np.concatenate([self.inner.resample_noise(xi, rng), modes])

    def state_constraints(self, x):
        xi, _ = self.split_state(x)
        return self.inner.state_constraints(xi)

    def get_initial_state(self, t=0.0, u=None):
        if u is None:
            u = np.zeros(self.num_u)
        modes = self.classify(u)
        u_sat = clamp(u, self.lower, self.upper)
        xi = self.inner.get_initial_state(t, u_sat)
        return np.concatenate([xi, modes])

    def with_input_limits(self, lower, upper):
        return SaturatedSystem(self.inner, lower, upper)

    def __repr__(self):
        return (
            f"SaturatedSystem(inner={self.inner!r}, "
            f"lower={self.lower.tolist()}, upper={self.upper.tolist()})"
        )


def saturate(model: SystemModel) -> SystemModel:
    """Realize the input limits of a model.

    Models without limits are returned unchanged.
    """
    if model.input_limits is None or isinstance(model, SaturatedSystem):
        return model
    return SaturatedSystem(model)


def constraint_violation(model: SystemModel, x) -> float:
    """Largest absolute state-constraint value at x (0 if unconstrained)."""
    if model.num_constraints == 0:
        return 0.0
    values = model.state_constraints(x)
    return float(np.max(np.abs(values))) if values.size else 0.0


def project_state(model: SystemModel, x, free=None, tol=1e-10, max_iter=100):
    """Closest state to x on the manifold model.state_constraints(x) == 0.

    Parameters
    ----------
    model : SystemModel
        Model declaring the constraints
    x : array-like
        Starting state
    free : array-like of int or bool, optional
        Entries allowed to move. Defaults to the continuous states.
    tol : float, default=1e-10
        SLSQP function tolerance
    max_iter : int, default=100
        SLSQP iteration limit

    Returns
    -------
    x_proj : ndarray
        Projected state. If the optimizer does not converge a
        ConstraintViolationWarning is issued and its last iterate returned.
    """
    x = np.array(x, dtype=float)
    if model.num_constraints == 0:
        return x
    if free is None:
        free = np.arange(model.num_xc)
    free = np.asarray(free)
    if free.dtype == bool:
        free = np.flatnonzero(free)
    if free.size == 0:
        return x

    target = x[free].copy()

    def full(z):
        x_full = x.copy()
        x_full[free] = z
        return x_full

    result = minimize(
        lambda z: 0.5 * np.sum((z - target) ** 2),
        target,
        jac=lambda z: z - target,
        method="SLSQP",
        constraints=[
            {"type": "eq", "fun": lambda z: model.state_constraints(full(z))}
        ],
        options={"ftol": tol, "maxiter": max_iter},
    )
    if not result.success:
        warnings.warn(
            f"{model.name}: constraint projection did not converge "
            f"({result.message})",
            ConstraintViolationWarning,
            stacklevel=2,
        )
    return full(result.x)


def project_initial_state(model: SystemModel, x0=None, t=0.0, u=None):
    """Complete an initial state so that it satisfies the state constraints.

    If x0 is None the model's default initial state is projected, moving
    only continuous states. Entries of x0 given as NaN are free and filled
    from the model's default initial state before projection; all other
    entries are kept fixed.

    Examples
    --------
    >>> def circle(x):
    ...     return x[0]**2 + x[1]**2 - 1.0
    >>> sys = SystemModel(num_continuous_states=2,
    ...                   dynamics=lambda t, x, u: [x[1], -x[0]],
    ...                   state_constraints=circle,
    ...                   initial_state=[0.5, 0.5])
    >>> x0 = project_initial_state(sys, [1.0, np.nan])
    """
    default = model.get_initial_state(t, u)
    if x0 is None:
        return project_state(model, default)
    x0 = as_vector(x0, model.num_states, f"{model.name} initial state")
    free = np.isnan(x0)
    if not free.any():
        return x0
    x0 = np.where(free, default, x0)
    logger.debug(
        "%s: completing %d free initial state entries",
        model.name,
        int(free.sum()),
    )
    return project_state(model, x0, free=free)
