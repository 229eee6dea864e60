"""Modeling and simulation of hybrid dynamical systems.

This package provides system models (continuous, discrete, stochastic,
rigid-body and hybrid), an algebra to combine them by feedback and
cascade while keeping their structural type, and an event-driven
simulation engine built on the scipy ODE solvers.

Main Components
---------------
SystemModel : General model defined by user functions
LinearSystem, PolynomialSystem, ManipulatorSystem, StochasticSystem :
    Structural variants
HybridAutomaton : Modes connected by guarded transitions
feedback, cascade : Combination operations
SimulationEngine, SimulationConfig, simulate : Simulation
Trajectory : Simulation results with interpolation and export

Input Signals
-------------
ConstantInput, StepInput, RampInput, InterpolatedInput, SinusoidalInput,
FunctionInput, CompositeInput

Examples
--------
>>> from hybridsim import HybridAutomaton, SystemModel, simulate
>>> falling = SystemModel(num_continuous_states=2,
...                       dynamics=lambda t, x, u: [x[1], -9.81])
>>> ball = HybridAutomaton(num_outputs=2)
>>> air = ball.add_mode(falling)
>>> ball.add_transition(air, air, guard=lambda t, x, u: x[0],
...                     reset=lambda t, x, u: [0.0, -0.8 * x[1]])
>>> traj = simulate(ball, (0.0, 2.0), x0=ball.state(air, [1.0, 0.0]))
>>> first_contact = traj.event_times[0]
"""

# Signals and exceptions
from hybridsim.signals import VectorSignal
from hybridsim.exceptions import (
    AlgebraicLoopError,
    ConstraintViolationWarning,
    HybridSimError,
    IncompatibleDimensionsError,
    IntegrationError,
    SampleTimeError,
)

# Models
from hybridsim.systems import (
    LinearSystem,
    ManipulatorSystem,
    PolynomialSystem,
    StochasticSystem,
    StructureTag,
    SystemModel,
    join_structure,
)
from hybridsim.constraints import (
    SaturatedSystem,
    clamp,
    constraint_violation,
    project_initial_state,
    project_state,
    saturate,
)
from hybridsim.hybrid import (
    HybridAutomaton,
    Transition,
    guard_and,
    guard_not,
    guard_or,
)
from hybridsim.combination import (
    CascadeSystem,
    CompositeSystem,
    FeedbackSystem,
    cascade,
    feedback,
)

# Simulation
from hybridsim.core import SimulationConfig, SimulationEngine, simulate
from hybridsim.results import Segment, Trajectory
from hybridsim.integrators import ForwardEuler, RungeKutta4, SOLVERS
from hybridsim.inputs import (
    CompositeInput,
    ConstantInput,
    FunctionInput,
    InterpolatedInput,
    RampInput,
    SinusoidalInput,
    StepInput,
    VectorInput,
)

# Configuration setup utilities
from hybridsim.setup import (
    param_magnitudes,
    read_param_values,
    read_param_values_pint,
)

__all__ = [
    # Signals and exceptions
    "VectorSignal",
    "HybridSimError",
    "IncompatibleDimensionsError",
    "AlgebraicLoopError",
    "SampleTimeError",
    "IntegrationError",
    "ConstraintViolationWarning",
    # Models
    "StructureTag",
    "join_structure",
    "SystemModel",
    "LinearSystem",
    "PolynomialSystem",
    "ManipulatorSystem",
    "StochasticSystem",
    "SaturatedSystem",
    "clamp",
    "saturate",
    "project_state",
    "project_initial_state",
    "constraint_violation",
    "HybridAutomaton",
    "Transition",
    "guard_and",
    "guard_or",
    "guard_not",
    "CompositeSystem",
    "FeedbackSystem",
    "CascadeSystem",
    "feedback",
    "cascade",
    # Simulation
    "SimulationEngine",
    "SimulationConfig",
    "simulate",
    "Trajectory",
    "Segment",
    "SOLVERS",
    "ForwardEuler",
    "RungeKutta4",
    # Inputs
    "ConstantInput",
    "StepInput",
    "RampInput",
    "InterpolatedInput",
    "SinusoidalInput",
    "FunctionInput",
    "CompositeInput",
    "VectorInput",
    # Setup utilities
    "read_param_values",
    "read_param_values_pint",
    "param_magnitudes",
]
