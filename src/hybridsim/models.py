"""Example models.

Small reference systems used by the tests, the documentation examples and
the YAML simulation runner (see MODEL_BUILDERS). All parameters are plain
floats in SI units.
"""

import numpy as np

from hybridsim.hybrid import HybridAutomaton
from hybridsim.signals import VectorSignal
from hybridsim.systems import (
    LinearSystem,
    ManipulatorSystem,
    PolynomialSystem,
    StochasticSystem,
    SystemModel,
)


def cubic_decay(initial_value=0.99):
    """Scalar system xdot = -x + x**3.

    Trajectories starting in (-1, 1) decay to the origin; the origin's
    region of attraction ends at the unstable equilibria +/-1.
    """
    return PolynomialSystem(
        num_continuous_states=1,
        dynamics=lambda t, x, u: -x + x**3,
        time_invariant=True,
        initial_state=[initial_value],
        state_frame=VectorSignal(1, coordinates=["x"]),
        name="cubic_decay",
    )


def discrete_cubic(initial_value=0.99, sample_time=1.0):
    """Discrete system x[n+1] = x[n]**3."""
    return PolynomialSystem(
        num_discrete_states=1,
        update=lambda t, x, u: x**3,
        sample_time=sample_time,
        time_invariant=True,
        initial_state=[initial_value],
        state_frame=VectorSignal(1, coordinates=["x"]),
        name="discrete_cubic",
    )


def bouncing_ball(gravity=9.81, restitution=0.8, height=1.0):
    """Ball falling under gravity and bouncing on the ground.

    One mode (flight) with state [h, v] and a self-transition that fires
    when the height reaches zero and reverses the velocity, scaled by the
    coefficient of restitution.

    Parameters
    ----------
    gravity : float, default=9.81
        Gravitational acceleration (m/s**2)
    restitution : float, default=0.8
        Ratio of rebound to impact speed
    height : float, default=1.0
        Initial height (m), released at rest
    """
    frame = VectorSignal(2, name="ball", coordinates=["h", "v"])
    flight = SystemModel(
        num_continuous_states=2,
        dynamics=lambda t, x, u: [x[1], -gravity],
        time_invariant=True,
        initial_state=[height, 0.0],
        state_frame=frame,
        output_frame=frame,
        name="flight",
    )
    ball = HybridAutomaton(num_outputs=2, output_frame=frame, name="ball")
    mode = ball.add_mode(flight, name="flight")
    ball.add_transition(
        mode,
        mode,
        guard=lambda t, x, u: x[0],
        reset=lambda t, x, u: [0.0, -restitution * x[1]],
        name="bounce",
    )
    return ball


def saturated_integrator(lower=-1.0, upper=1.0):
    """Integrator xdot = clamp(u, lower, upper)."""
    return SystemModel(
        num_continuous_states=1,
        num_inputs=1,
        dynamics=lambda t, x, u: u,
        time_invariant=True,
        input_limits=(lower, upper),
        input_frame=VectorSignal(1, coordinates=["u"]),
        state_frame=VectorSignal(1, coordinates=["x"]),
        name="saturated_integrator",
    )


def pendulum(mass=1.0, length=1.0, gravity=9.81, damping=0.0):
    """Torque-driven pendulum in manipulator form, state [theta, omega]."""
    inertia = mass * length**2
    return ManipulatorSystem(
        1,
        mass_matrix=lambda q: np.array([[inertia]]),
        bias=lambda q, v: np.array(
            [mass * gravity * length * np.sin(q[0]) + damping * v[0]]
        ),
        input_matrix=[[1.0]],
        input_frame=VectorSignal(1, coordinates=["torque"]),
        state_frame=VectorSignal(2, coordinates=["theta", "omega"]),
        name="pendulum",
    )


def mass_spring_damper(mass=1.0, stiffness=1.0, damping=0.1):
    """Linear oscillator driven by a force, output position."""
    A = [[0.0, 1.0], [-stiffness / mass, -damping / mass]]
    B = [[0.0], [1.0 / mass]]
    C = [[1.0, 0.0]]
    return LinearSystem(
        A,
        B,
        C,
        input_frame=VectorSignal(1, coordinates=["force"]),
        state_frame=VectorSignal(2, coordinates=["position", "velocity"]),
        output_frame=VectorSignal(1, coordinates=["position"]),
        name="mass_spring_damper",
    )


def noisy_decay(rate=1.0, noise_gain=0.1, noise_period=0.01):
    """First-order decay driven by held white noise.

    xdot = -rate * x + noise_gain * w, with w redrawn every noise_period.
    """
    return StochasticSystem(
        1,
        noise_period,
        num_continuous_states=1,
        dynamics=lambda t, x, u, w: -rate * x + noise_gain * w,
        time_invariant=True,
        initial_state=[1.0],
        state_frame=VectorSignal(1, coordinates=["x"]),
        name="noisy_decay",
    )


MODEL_BUILDERS = {
    "cubic_decay": cubic_decay,
    "discrete_cubic": discrete_cubic,
    "bouncing_ball": bouncing_ball,
    "saturated_integrator": saturated_integrator,
    "pendulum": pendulum,
    "mass_spring_damper": mass_spring_damper,
    "noisy_decay": noisy_decay,
}
