"""ODE solvers used by the simulation engine.

The engine steps a scipy.integrate.OdeSolver by hand so that it can check
zero-crossing functions after every accepted step and restart the solver
at events and scheduled instants. Any OdeSolver subclass works; the
adaptive scipy solvers are registered by name, together with two
fixed-step solvers that are useful for prototyping and for comparing
against hand calculations.
"""

from typing import Callable, Dict, Optional, Type, Union

import numpy as np
from scipy.integrate import (
    BDF,
    DOP853,
    LSODA,
    RK23,
    RK45,
    DenseOutput,
    OdeSolver,
    Radau,
)


class HermiteDenseOutput(DenseOutput):
    """Cubic Hermite interpolant over one step."""

    def __init__(self, t_old, t, y_old, y, f_old, f):
        super().__init__(t_old, t)
        self.h = t - t_old
        self.y_old = y_old
        self.y = y
        self.f_old = f_old
        self.f = f

    def _call_impl(self, t):
        s = (np.asarray(t) - self.t_old) / self.h
        h00 = 2 * s**3 - 3 * s**2 + 1
        h10 = s**3 - 2 * s**2 + s
        h01 = -2 * s**3 + 3 * s**2
        h11 = s**3 - s**2
        if np.ndim(t) == 0:
            return (
                h00 * self.y_old
                + h10 * self.h * self.f_old
                + h01 * self.y
                + h11 * self.h * self.f
            )
        return (
            np.outer(self.y_old, h00)
            + np.outer(self.h * self.f_old, h10)
            + np.outer(self.y, h01)
            + np.outer(self.h * self.f, h11)
        )


class FixedStepSolver(OdeSolver):
    """Base class for explicit fixed-step solvers.

    Parameters
    ----------
    fun : callable
        Right-hand side f(t, y)
    t0 : float
        Initial time
    y0 : array-like
        Initial state
    t_bound : float
        Boundary time. The last step is shortened to end exactly there.
    step : float
        Step size
    """

    def __init__(self, fun, t0, y0, t_bound, step, vectorized=False,
                 **extraneous):
        super().__init__(fun, t0, y0, t_bound, vectorized)
        step = float(step)
        if not np.isfinite(step) or step <= 0:
            raise ValueError(
                f"{type(self).__name__} needs a positive finite step, "
                f"got {step}"
            )
        self.step_size = step
        self.f = self.fun(self.t, self.y)
        self._f_old = None
        self._y_old = None

    def _advance(self, t, y, f, h):
        raise NotImplementedError

    def _step_impl(self):
        t, y, f = self.t, self.y, self.f
        h = min(self.step_size, abs(self.t_bound - t)) * self.direction
        y_new = self._advance(t, y, f, h)
        if not np.all(np.isfinite(y_new)):
            return False, f"Non-finite state at t={t + h}"
        self._y_old, self._f_old = y, f
        self.t = t + h
        self.y = y_new
        self.f = self.fun(self.t, self.y)
        return True, None

    def _dense_output_impl(self):
        return HermiteDenseOutput(
            self.t_old, self.t, self._y_old, self.y, self._f_old, self.f
        )


class ForwardEuler(FixedStepSolver):
    """Simple forward Euler integrator.

    Best for prototyping and testing. Not recommended for production use.
    """

    def _advance(self, t, y, f, h):
        return y + h * f

    def __repr__(self):
        return f"ForwardEuler(step={self.step_size})"


class RungeKutta4(FixedStepSolver):
    """Classic 4th-order Runge-Kutta integrator.

    Good for prototyping with moderate accuracy.
    """

    def _advance(self, t, y, f, h):
        k1 = f
        k2 = self.fun(t + h / 2, y + h / 2 * k1)
        k3 = self.fun(t + h / 2, y + h / 2 * k2)
        k4 = self.fun(t + h, y + h * k3)
        return y + h / 6 * (k1 + 2 * k2 + 2 * k3 + k4)

    def __repr__(self):
        return f"RungeKutta4(step={self.step_size})"


SOLVERS: Dict[str, Type[OdeSolver]] = {
    "RK45": RK45,
    "RK23": RK23,
    "DOP853": DOP853,
    "Radau": Radau,
    "BDF": BDF,
    "LSODA": LSODA,
    "Euler": ForwardEuler,
    "RK4": RungeKutta4,
}


def solver_class(method: Union[str, Type[OdeSolver]]) -> Type[OdeSolver]:
    """Look up a solver by name, or check an OdeSolver subclass."""
    if isinstance(method, str):
        try:
            return SOLVERS[method]
        except KeyError:
            raise ValueError(
                f"Unknown method '{method}', expected one of {list(SOLVERS)}"
            ) from None
    if isinstance(method, type) and issubclass(method, OdeSolver):
        return method
    raise TypeError(
        f"method must be a solver name or an OdeSolver subclass, got {method!r}"
    )


def make_solver(
    method: Union[str, Type[OdeSolver]],
    fun: Callable,
    t0: float,
    y0: np.ndarray,
    t_bound: float,
    rtol: float = 1e-6,
    atol: float = 1e-9,
    max_step: float = np.inf,
    first_step: Optional[float] = None,
) -> OdeSolver:
    """Create a solver instance for one integration segment.

    Fixed-step solvers use first_step as their step size, or max_step if
    first_step is not given.

    Examples
    --------
    >>> solver = make_solver("RK45", lambda t, y: -y, 0.0, np.ones(1), 1.0)
    >>> while solver.status == "running":
    ...     solver.step()
    """
    cls = solver_class(method)
    if issubclass(cls, FixedStepSolver):
        step = first_step if first_step is not None else max_step
        return cls(fun, t0, y0, t_bound, step=step)
    kwargs = {"rtol": rtol, "atol": atol, "max_step": max_step}
    if first_step is not None:
        kwargs["first_step"] = min(first_step, abs(t_bound - t0))
    return cls(fun, t0, y0, t_bound, **kwargs)
