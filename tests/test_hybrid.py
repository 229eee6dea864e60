"""Tests for hybrid automata."""

import numpy as np
import pytest

from hybridsim import (
    ConstantInput,
    HybridAutomaton,
    IncompatibleDimensionsError,
    LinearSystem,
    SampleTimeError,
    SaturatedSystem,
    StructureTag,
    SystemModel,
    VectorSignal,
    guard_and,
    guard_not,
    guard_or,
    simulate,
)
from hybridsim.models import bouncing_ball


def _rate(rate, num_states=1):
    """Mode with xdot[0] = rate and the first state as output."""
    return SystemModel(
        num_continuous_states=num_states,
        num_outputs=1,
        dynamics=lambda t, x, u: [rate] + [0.0] * (num_states - 1),
        output=lambda t, x, u: [x[0]],
    )


def test_bouncing_ball():
    """Test contact times and rebound velocity of a bouncing ball."""
    g, e, h = 9.81, 0.8, 1.0
    ball = bouncing_ball(gravity=g, restitution=e, height=h)
    traj = simulate(ball, (0.0, 2.0), rtol=1e-10, atol=1e-12)

    assert ball.structure is StructureTag.HYBRID
    assert list(traj.states.columns) == ["h", "v", "mode"]
    assert list(traj.outputs.columns) == ["h", "v"]

    t1 = np.sqrt(2 * h / g)
    v1 = e * np.sqrt(2 * g * h)
    t2 = t1 + 2 * v1 / g
    assert traj.event_times[0] == pytest.approx(t1, rel=1e-6)
    assert traj.event_times[1] == pytest.approx(t2, rel=1e-6)

    # Post-jump state of the first bounce
    x_plus = traj.segments[1].states[0]
    assert x_plus[0] == 0.0
    assert x_plus[1] == pytest.approx(v1, rel=1e-6)
    assert x_plus[2] == 0

    # The ball never goes below the ground
    assert traj.states["h"].min() > -1e-9


def test_bouncing_ball_state():
    ball = bouncing_ball(height=2.0)
    np.testing.assert_array_equal(ball.get_initial_state(), [2.0, 0.0, 0.0])
    np.testing.assert_array_equal(ball.state("flight", [1.0, -1.0]),
                                  [1.0, -1.0, 0.0])
    mode, x_mode = ball.mode_state([1.0, -1.0, 0.0])
    assert mode == 0
    np.testing.assert_array_equal(x_mode, [1.0, -1.0])


def _thermostat():
    auto = HybridAutomaton(num_outputs=1, name="thermostat")
    heat = auto.add_mode(_rate(1.0), name="heat")
    cool = auto.add_mode(_rate(-1.0), name="cool")
    auto.add_transition(heat, cool, guard=lambda t, x, u: 0.5 - x[0])
    auto.add_transition(cool, heat, guard=lambda t, x, u: x[0] + 0.5)
    return auto


def test_thermostat_switching():
    """Test a two-mode automaton switching between thresholds."""
    auto = _thermostat()
    assert auto.num_modes == 2
    assert auto.num_zero_crossings == 2

    traj = simulate(auto, (0.0, 4.0), x0=auto.state("heat", [0.0]))

    np.testing.assert_allclose(traj.event_times, [0.5, 1.5, 2.5, 3.5],
                               atol=1e-8)
    assert traj(1.0)[1] == 1
    assert traj(2.0)[1] == 0
    assert traj(2.0)[0] == pytest.approx(0.0, abs=1e-8)
    assert traj.states["x1"].max() == pytest.approx(0.5, abs=1e-8)


def test_initial_mode():
    auto = _thermostat()
    auto.set_initial_mode("cool")
    traj = simulate(auto, (0.0, 1.0))
    assert traj(0.0)[1] == 1
    np.testing.assert_allclose(traj.event_times, [0.5], atol=1e-8)


def test_guard_active_at_start_does_not_fire():
    """Test a guard that starts non-positive waits for a crossing."""
    auto = _thermostat()
    traj = simulate(auto, (0.0, 0.5), x0=auto.state("heat", [1.0]))
    assert len(traj.event_times) == 0
    assert traj(0.5)[0] == pytest.approx(1.5)


@pytest.mark.parametrize("first, expected", [("b", 1), ("c", 2)])
def test_simultaneous_guards_first_registered_wins(first, expected):
    auto = HybridAutomaton(num_outputs=1)
    a = auto.add_mode(_rate(1.0), name="a")
    auto.add_mode(_rate(0.0), name="b")
    auto.add_mode(_rate(-1.0), name="c")
    other = "c" if first == "b" else "b"
    auto.add_transition(a, first, guard=lambda t, x, u: 1.0 - x[0])
    auto.add_transition(a, other, guard=lambda t, x, u: 1.0 - x[0])

    traj = simulate(auto, (0.0, 2.0), x0=auto.state(a, [0.0]))

    assert len(traj.event_times) == 1
    assert traj(2.0)[1] == expected


def test_reset_between_modes_of_different_size():
    auto = HybridAutomaton(num_outputs=1)
    small = auto.add_mode(_rate(1.0), name="small")
    big = SystemModel(
        num_continuous_states=2,
        num_outputs=1,
        dynamics=lambda t, x, u: [0.0, -1.0],
        output=lambda t, x, u: [x[0]],
    )
    large = auto.add_mode(big, name="large")
    with pytest.raises(ValueError, match="reset"):
        auto.add_transition(small, large, guard=lambda t, x, u: 1.0 - x[0])
    auto.add_transition(
        small,
        large,
        guard=lambda t, x, u: 1.0 - x[0],
        reset=lambda t, x, u: [x[0], 5.0],
    )

    assert auto.num_states == 3
    # Modes of different sizes fall back to generic labels
    assert auto.state_frame.coordinates == ("xc1", "xc2", "mode")
    traj = simulate(auto, (0.0, 2.0), x0=auto.state(small, [0.0]),
                    rtol=1e-9, atol=1e-12)

    x = traj(2.0)
    assert x[0] == pytest.approx(1.0, rel=1e-8)
    assert x[1] == pytest.approx(4.0, rel=1e-6)
    assert x[2] == large


def test_automaton_with_discrete_mode_state():
    auto = HybridAutomaton(num_outputs=1)
    counter = SystemModel(
        num_continuous_states=1,
        num_discrete_states=1,
        num_outputs=1,
        dynamics=lambda t, x, u: [1.0],
        update=lambda t, x, u: [x[1] + 1.0],
        output=lambda t, x, u: [x[0]],
        sample_time=0.25,
    )
    m = auto.add_mode(counter)
    assert auto.sample_time == 0.25
    assert auto.state_frame.coordinates == ("x1", "mode", "x2")

    traj = simulate(auto, (0.0, 1.0), x0=auto.state(m, [0.0, 0.0]))
    np.testing.assert_allclose(traj(1.0), [1.0, 0.0, 4.0])


def test_add_mode_checks():
    auto = HybridAutomaton(num_inputs=1, num_outputs=1,
                           output_frame=VectorSignal(1, name="temp"))
    with pytest.raises(IncompatibleDimensionsError):
        auto.add_mode(_rate(1.0))  # no inputs
    with pytest.raises(IncompatibleDimensionsError):
        auto.add_mode(LinearSystem(
            [[0.0]], [[1.0]], [[1.0]],
            output_frame=VectorSignal(1, name="pressure"),
        ))
    with pytest.raises(TypeError):
        auto.add_mode(HybridAutomaton(num_inputs=1, num_outputs=1))

    auto.add_mode(LinearSystem([[0.0]], [[1.0]], [[1.0]]), name="on")
    with pytest.raises(ValueError, match="Duplicate"):
        auto.add_mode(LinearSystem([[0.0]], [[1.0]], [[1.0]]), name="on")
    with pytest.raises(SampleTimeError):
        auto.add_mode(LinearSystem([[0.0]], [[1.0]], [[1.0]],
                                   sample_time=0.1))


def test_add_transition_checks():
    auto = _thermostat()
    with pytest.raises(KeyError):
        auto.add_transition("heat", "off", guard=lambda t, x, u: 1.0)
    with pytest.raises(ValueError):
        auto.add_transition(0, 5, guard=lambda t, x, u: 1.0)
    with pytest.raises(TypeError):
        auto.add_transition(0, 1, guard=1.0)


def test_automaton_without_modes():
    auto = HybridAutomaton(num_outputs=1)
    with pytest.raises(ValueError):
        auto.get_initial_state()


def test_guard_combinators():
    above = lambda t, x, u: x[0] - 1.0  # noqa: E731
    below = lambda t, x, u: 3.0 - x[0]  # noqa: E731

    both = guard_and(above, below)
    either = guard_or(above, below)
    assert both(0.0, [2.0], []) == 1.0
    assert both(0.0, [0.0], []) == 3.0
    assert either(0.0, [0.0], []) == -1.0
    assert either(0.0, [2.0], []) == 1.0
    assert guard_not(above)(0.0, [3.0], []) == -2.0


def test_with_input_limits():
    """Test that limits saturate every mode of an automaton."""
    auto = HybridAutomaton(num_inputs=1, num_outputs=1)
    auto.add_mode(LinearSystem([[0.0]], [[1.0]], [[1.0]]), name="run")
    limited = auto.with_input_limits(-1.0, 1.0)

    assert isinstance(limited.modes[0], SaturatedSystem)
    assert limited.num_states == 3
    assert limited.state_frame.coordinates == ("x1", "mode", "sat1")

    traj = simulate(limited, (0.0, 1.0), x0=limited.state("run", [0.0]),
                    inputs=ConstantInput(5.0))
    assert traj(1.0)[0] == pytest.approx(1.0, rel=1e-6)
