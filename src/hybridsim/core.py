"""Core simulation engine for hybrid dynamical systems.

The engine advances the full state [continuous, discrete] of a SystemModel
from t0 to tf. Between scheduled instants (sample hits, noise hits, input
breakpoints and tf) an adaptive scipy OdeSolver integrates the continuous
states; discrete states get a zero derivative. After every accepted step
the zero-crossing functions of the model are compared with their previous
values and any crossing from >0 to <=0 is located on the solver's dense
output with brentq. The step is truncated at the earliest crossing, the
model handles the event and integration restarts from the event time.

At a sample hit t_k = k * dt > t0 the discrete states become
update(t_k, x(t_k-), u(t_k)): time, state and input are all taken at the
hit, so the discrete state recorded at t_k is x[k] = f(x[k-1]). No update is
applied at t0.
"""

import logging
import math
import warnings
from dataclasses import dataclass
from typing import Any, Optional, Tuple, Type, Union

import numpy as np
from scipy.integrate import OdeSolver
from scipy.optimize import brentq

from hybridsim.constraints import (
    SaturatedSystem,
    constraint_violation,
    project_initial_state,
    project_state,
    saturate,
)
from hybridsim.exceptions import ConstraintViolationWarning, IntegrationError
from hybridsim.inputs import build_input_function
from hybridsim.integrators import make_solver, solver_class
from hybridsim.results import Trajectory, TrajectoryBuilder
from hybridsim.systems import SystemModel, as_vector

logger = logging.getLogger(__name__)


@dataclass
class SimulationConfig:
    """Configuration for simulation.

    Parameters
    ----------
    t_span : (float, float)
        Start and end times (t0, tf)
    x0 : array-like, optional
        Initial state. If None the model's initial condition is used.
        NaN entries are free and are completed by projecting onto the
        state constraints.
    inputs : callable, dict or array-like, optional
        Input signal returning the input vector, mapping from input
        coordinate names to signals, or a constant vector. None means
        zero input.
    method : str or OdeSolver subclass, default='RK45'
        'RK45', 'RK23', 'DOP853', 'Radau', 'BDF', 'LSODA', 'Euler' or 'RK4'
    rtol, atol : float
        Solver tolerances
    max_step : float, default=inf
        Maximum solver step. Also the step size of fixed-step methods.
    first_step : float, optional
        Initial step size
    event_tol : float, default=1e-10
        Time tolerance when locating zero-crossings. Crossings within
        event_tol of the earliest one are handled together.
    max_steps : int, default=1_000_000
        Maximum number of accepted solver steps
    max_events_per_instant : int, default=100
        Maximum number of events at one instant before the run is
        aborted as Zeno
    project_constraints : bool, default=False
        Project the continuous states onto the state constraints after
        every accepted step
    constraint_tol : float, default=1e-6
        Constraint drift above which a warning is issued (or a projection
        triggered)
    seed : int, optional
        Seed of the noise generator for stochastic models
    save_inputs : bool, default=True
        Whether to save input trajectory

    Examples
    --------
    >>> config = SimulationConfig(
    ...     t_span=(0.0, 10.0),
    ...     x0=np.array([1.0, 0.0]),
    ...     inputs={'torque': StepInput([1.0], [0.0, 0.5])},
    ...     method='Radau',
    ... )
    """

    t_span: Tuple[float, float]
    x0: Any = None
    inputs: Any = None
    method: Union[str, Type[OdeSolver]] = "RK45"
    rtol: float = 1e-6
    atol: float = 1e-9
    max_step: float = np.inf
    first_step: Optional[float] = None
    event_tol: float = 1e-10
    max_steps: int = 1_000_000
    max_events_per_instant: int = 100
    project_constraints: bool = False
    constraint_tol: float = 1e-6
    seed: Optional[int] = None
    save_inputs: bool = True

    def __post_init__(self):
        """Validate configuration."""
        t0, tf = (float(t) for t in self.t_span)
        if not (np.isfinite(t0) and np.isfinite(tf)):
            raise ValueError(f"t_span must be finite, got {self.t_span}")
        if tf <= t0:
            raise ValueError(f"t_span must be increasing, got {self.t_span}")
        self.t_span = (t0, tf)
        solver_class(self.method)
        for name in ("rtol", "atol", "event_tol", "constraint_tol"):
            if not getattr(self, name) > 0:
                raise ValueError(f"{name} must be positive")
        if not self.max_step > 0:
            raise ValueError("max_step must be positive")
        if self.first_step is not None and not self.first_step > 0:
            raise ValueError("first_step must be positive")
        if self.max_steps < 1 or self.max_events_per_instant < 1:
            raise ValueError(
                "max_steps and max_events_per_instant must be at least 1"
            )


class _Schedule:
    """Scheduled restart instants of one run: sample hits, noise hits,
    input breakpoints and the final time."""

    def __init__(self, t0, tf, sample_time, noise_period, breakpoints):
        self.t0, self.tf = t0, tf
        self.sample_time = sample_time
        self.noise_period = noise_period
        self.breakpoints = np.unique(
            breakpoints[(breakpoints > t0) & (breakpoints < tf)]
        )
        self._k_sample = None
        self._k_noise = None
        if sample_time is not None:
            self._k_sample = math.floor(t0 / sample_time + 1e-9) + 1
        if noise_period is not None:
            self._k_noise = math.ceil(t0 / noise_period - 1e-9)
            if self.noise_time <= t0:
                self._k_noise += 1
        self._i_break = 0

    @property
    def sample_hit(self):
        if self._k_sample is None:
            return np.inf
        return self._k_sample * self.sample_time

    @property
    def noise_time(self):
        if self._k_noise is None:
            return np.inf
        return self._k_noise * self.noise_period

    @property
    def breakpoint(self):
        if self._i_break < len(self.breakpoints):
            return self.breakpoints[self._i_break]
        return np.inf

    def next_time(self) -> float:
        return min(self.sample_hit, self.noise_time, self.breakpoint, self.tf)

    def pop(self, t):
        """Advance past the instants at t; return which kinds occurred."""
        tol = 1e-12 * max(1.0, abs(t))
        is_sample = abs(self.sample_hit - t) <= tol
        is_noise = abs(self.noise_time - t) <= tol
        is_break = abs(self.breakpoint - t) <= tol
        if is_sample:
            self._k_sample += 1
        if is_noise:
            self._k_noise += 1
        if is_break:
            self._i_break += 1
        return is_sample, is_noise, is_break


class SimulationEngine:
    """Event-driven simulation engine for SystemModels.

    The engine handles:
    - adaptive integration of the continuous states between scheduled
      instants
    - discrete updates at sample hits and noise redraws at noise hits
    - location and handling of zero-crossing events (saturation modes,
      hybrid transitions, user events)
    - recording of the trajectory

    Models with input limits are simulated through their saturated form.

    Parameters
    ----------
    model : SystemModel
        Model to simulate

    Examples
    --------
    >>> engine = SimulationEngine(bouncing_ball())
    >>> traj = engine.simulate(SimulationConfig(t_span=(0.0, 2.0)))
    >>> first_contact = traj.event_times[0]
    """

    def __init__(self, model: SystemModel):
        if not isinstance(model, SystemModel):
            raise TypeError(f"Expected a SystemModel, got {type(model)}")
        self.user_model = model
        self.model = saturate(model)

    def initial_state(self, x0, t0, u0):
        """Full initial state of the simulated model."""
        model = self.model
        if x0 is None:
            if model.num_constraints:
                x = project_initial_state(model, None, t0, u0)
            else:
                x = model.get_initial_state(t0, u0)
        else:
            x0 = np.asarray(x0, dtype=float).reshape(-1)
            if (
                isinstance(model, SaturatedSystem)
                and x0.size == model.inner.num_states
            ):
                x0 = np.concatenate([x0, model.classify(u0)])
            x0 = as_vector(x0, model.num_states, "x0")
            if np.isnan(x0).any():
                x = project_initial_state(model, x0, t0, u0)
            else:
                x = x0
        return model.init_modes(t0, x, u0)

    def simulate(self, config: SimulationConfig) -> Trajectory:
        """Run simulation from t0 to tf.

        Parameters
        ----------
        config : SimulationConfig
            Simulation configuration including time span, initial
            conditions, inputs and solver options

        Returns
        -------
        trajectory : Trajectory

        Raises
        ------
        IntegrationError
            If the solver fails, max_steps is exceeded or events pile up
            at one instant. The partial trajectory is attached.
        """
        model = self.model
        t0, tf = config.t_span
        u_func = build_input_function(config.inputs, model.input_frame)
        rng = np.random.default_rng(config.seed)
        builder = TrajectoryBuilder(model, u_func, config.save_inputs)
        schedule = _Schedule(
            t0, tf, model.sample_time, model.noise_period, u_func.breakpoints
        )

        logger.info(
            "Simulating %s over [%g, %g] with %s",
            model.name,
            t0,
            tf,
            config.method,
        )

        t = t0
        x = self.initial_state(config.x0, t0, u_func(t0))
        if model.noise_period is not None and np.isclose(
            t0 / model.noise_period, round(t0 / model.noise_period)
        ):
            x = model.resample_noise(x, rng)
        builder.record(t, x)

        run = _Run(self, config, u_func, builder)
        while t < tf:
            t_next = schedule.next_time()
            t, x = run.integrate(t, x, t_next)
            is_sample, is_noise, is_break = schedule.pop(t)
            if t >= tf and not is_sample:
                break
            x_new = np.array(x)
            if is_sample:
                x_new[model.num_xc:] = model.update(t, x, u_func(t))
            if is_noise:
                x_new = model.resample_noise(x_new, rng)
            x_new = model.init_modes(t, x_new, u_func(t))
            logger.debug(
                "Scheduled instant t=%.9g (sample=%s, noise=%s, input=%s)",
                t,
                is_sample,
                is_noise,
                is_break,
            )
            x = x_new
            builder.jump(t, x)

        trajectory = builder.build()
        logger.info(
            "Finished %s: %d steps, %d events, %d segments",
            model.name,
            run.n_steps,
            run.n_events,
            trajectory.n_segments,
        )
        return trajectory


class _Run:
    """Mutable state of one simulation run."""

    def __init__(self, engine, config, u_func, builder):
        self.model = engine.model
        self.config = config
        self.u_func = u_func
        self.builder = builder
        self.n_steps = 0
        self.n_events = 0
        self._event_time = None
        self._events_at_instant = 0
        self._warned = False
        # Stateless models still need a solver state to step through time
        self._dummy = self.model.num_states == 0

    def _fail(self, message, t):
        raise IntegrationError(
            f"{message} (t={t:.9g})", time=t, trajectory=self.builder.build()
        )

    def _rhs(self, t, y):
        model = self.model
        x = y[:0] if self._dummy else y
        dy = np.zeros_like(y)
        if model.num_xc:
            dy[: model.num_xc] = model.dynamics(t, x, self.u_func(t))
        return dy

    def _zc(self, t, y):
        x = y[:0] if self._dummy else y
        return self.model.zero_crossings(t, x, self.u_func(t))

    def _check_constraints(self, t, x):
        model, config = self.model, self.config
        if model.num_constraints == 0:
            return x, False
        drift = constraint_violation(model, x)
        if drift <= config.constraint_tol:
            return x, False
        if config.project_constraints:
            logger.debug("Projecting state at t=%.9g (drift %.3g)", t, drift)
            return project_state(model, x), True
        if not self._warned:
            self._warned = True
            warnings.warn(
                f"{model.name}: state constraint drift {drift:.3g} exceeds "
                f"{config.constraint_tol:g} at t={t:.6g}",
                ConstraintViolationWarning,
                stacklevel=4,
            )
        return x, False

    def _count_event(self, t):
        tol = self.config.event_tol
        if self._event_time is not None and abs(t - self._event_time) <= tol:
            self._events_at_instant += 1
        else:
            self._event_time = t
            self._events_at_instant = 1
        self.n_events += 1
        if self._events_at_instant > self.config.max_events_per_instant:
            self._fail(
                f"More than {self.config.max_events_per_instant} events at "
                "one instant (Zeno behavior)",
                t,
            )

    def _locate(self, solver, g_prev, crossed):
        """Earliest crossing time and the mask of crossings near it."""
        dense = solver.dense_output()
        t_a, t_b = solver.t_old, solver.t
        tol = self.config.event_tol
        roots = np.full(g_prev.size, np.inf)
        for i in np.flatnonzero(crossed):

            def g(s, i=i):
                return self._zc(s, dense(s))[i]

            # Dense output may not reproduce the step ends to the last bit
            if g(t_a) <= 0:
                roots[i] = t_a
            elif g(t_b) > 0:
                roots[i] = t_b
            else:
                roots[i] = brentq(g, t_a, t_b, xtol=tol / 4)
        t_event = roots.min()
        return t_event, dense(t_event), roots <= t_event + tol

    def integrate(self, t, x, t_end):
        """Integrate from t to t_end, handling events on the way.

        Returns the time and state reached, which is t_end unless the run
        fails.
        """
        model, config = self.model, self.config
        if t_end <= t:
            return t, x
        if model.num_xc == 0 and model.num_zero_crossings == 0:
            self.builder.record(t_end, x)
            return t_end, x

        y = np.zeros(1) if self._dummy else np.array(x, dtype=float)
        while t < t_end:
            solver = make_solver(
                config.method,
                self._rhs,
                t,
                y,
                t_end,
                rtol=config.rtol,
                atol=config.atol,
                max_step=config.max_step,
                first_step=config.first_step,
            )
            g_prev = self._zc(t, y)
            armed = model.armed_at_zero(y[:0] if self._dummy else y)
            restart = False
            while solver.status == "running":
                message = solver.step()
                if solver.status == "failed":
                    self._fail(f"Solver failed: {message}", solver.t)
                self.n_steps += 1
                if self.n_steps > config.max_steps:
                    self._fail(
                        f"Exceeded max_steps={config.max_steps}", solver.t
                    )
                t_new, y_new = solver.t, solver.y
                g_new = self._zc(t_new, y_new)
                crossed = ((g_prev > 0) & (g_new <= 0)) | (
                    armed & (g_prev == 0) & (g_new < 0)
                )
                x_new = y_new[:0] if self._dummy else y_new
                if crossed.any():
                    t_ev, y_ev, active = self._locate(solver, g_prev, crossed)
                    x_ev = y_ev[:0] if self._dummy else y_ev
                    self.builder.record(t_ev, x_ev)
                    self._count_event(t_ev)
                    x_plus = model.handle_events(
                        t_ev, x_ev, self.u_func(t_ev), active
                    )
                    logger.debug(
                        "Event at t=%.9g, active zero-crossings %s",
                        t_ev,
                        np.flatnonzero(active).tolist(),
                    )
                    t = t_ev
                    y = np.zeros(1) if self._dummy else x_plus
                    self.builder.jump(t, x_plus)
                    restart = True
                    break
                x_new, projected = self._check_constraints(t_new, x_new)
                t = t_new
                if projected:
                    y = x_new
                    self.builder.jump(t, x_new)
                    restart = True
                    break
                y = y_new
                self.builder.record(t, x_new)
                g_prev = g_new
            if not restart:
                t = t_end
        x = y[:0] if self._dummy else y
        return t, np.array(x, dtype=float)


def simulate(
    model: SystemModel,
    t_span: Tuple[float, float],
    x0=None,
    **options,
) -> Trajectory:
    """Simulate a model over t_span.

    Shortcut for SimulationEngine(model).simulate(SimulationConfig(...)).

    Parameters
    ----------
    model : SystemModel
    t_span : (float, float)
    x0 : array-like, optional
    **options
        Any other SimulationConfig field

    Examples
    --------
    >>> def cubic(t, x, u):
    ...     return -x + x**3
    >>> sys = SystemModel(num_continuous_states=1, dynamics=cubic)
    >>> traj = simulate(sys, (0.0, 10.0), x0=[0.99])
    """
    config = SimulationConfig(t_span=t_span, x0=x0, **options)
    return SimulationEngine(model).simulate(config)
