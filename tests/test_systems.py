"""Tests for system models and signals."""

import numpy as np
import pytest

from hybridsim import (
    LinearSystem,
    ManipulatorSystem,
    PolynomialSystem,
    SampleTimeError,
    StochasticSystem,
    StructureTag,
    SystemModel,
    VectorSignal,
    join_structure,
)
from hybridsim.systems import common_period


def test_vector_signal_defaults():
    frame = VectorSignal(3, prefix="u")
    assert frame.coordinates == ("u1", "u2", "u3")
    assert frame.is_anonymous
    assert len(frame) == 3


def test_vector_signal_validate():
    frame = VectorSignal(2, name="ball", coordinates=["h", "v"])
    np.testing.assert_array_equal(frame.validate([[1.0], [2.0]]), [1.0, 2.0])
    with pytest.raises(ValueError, match="ball"):
        frame.validate([1.0, 2.0, 3.0])


def test_vector_signal_dict_conversion():
    frame = VectorSignal(2, coordinates=["h", "v"])
    assert frame.to_dict([1.0, -2.0]) == {"h": 1.0, "v": -2.0}
    np.testing.assert_array_equal(frame.from_dict({"v": 3.0, "h": 4.0}),
                                  [4.0, 3.0])
    with pytest.raises(KeyError):
        frame.from_dict({"h": 1.0})
    assert frame.index("v") == 1
    with pytest.raises(KeyError):
        frame.index("w")


def test_vector_signal_matching():
    """Test that anonymous frames match any frame of the same size."""
    named = VectorSignal(2, name="ball", coordinates=["h", "v"])
    other = VectorSignal(2, name="cart", coordinates=["h", "v"])
    anonymous = VectorSignal(2)

    assert named.matches(named)
    assert named.matches(anonymous)
    assert anonymous.matches(other)
    assert not named.matches(other)
    assert not named.matches(VectorSignal(3))


def test_vector_signal_invalid():
    with pytest.raises(ValueError):
        VectorSignal(2, coordinates=["a"])
    with pytest.raises(ValueError):
        VectorSignal(2, coordinates=["a", "a"])


def test_vector_signal_concat_renames_duplicates():
    frame = VectorSignal.concat([VectorSignal(2), VectorSignal(1)])
    assert frame.coordinates == ("x1", "x2", "x1_2")


def test_system_dimensions():
    """Test dimensions and default output of a general system."""
    sys = SystemModel(
        num_continuous_states=2,
        num_inputs=1,
        dynamics=lambda t, x, u: [x[1], u[0]],
    )
    assert sys.num_states == 2
    assert sys.num_y == 2
    assert not sys.direct_feedthrough
    assert not sys.is_discrete
    np.testing.assert_array_equal(sys.output(0.0, [1.0, 2.0], [0.0]),
                                  [1.0, 2.0])
    np.testing.assert_array_equal(sys.dynamics(0.0, [1.0, 2.0], [3.0]),
                                  [2.0, 3.0])


def test_system_checks_function_results():
    sys = SystemModel(num_continuous_states=2,
                      dynamics=lambda t, x, u: [0.0])
    with pytest.raises(ValueError, match="dynamics"):
        sys.dynamics(0.0, [0.0, 0.0], [])


def test_system_argument_checks():
    with pytest.raises(ValueError):
        SystemModel(num_continuous_states=1)
    with pytest.raises(ValueError):
        SystemModel(num_discrete_states=1, update=lambda t, x, u: x)
    with pytest.raises(ValueError):
        SystemModel(num_continuous_states=0, num_discrete_states=0,
                    sample_time=1.0)
    with pytest.raises(ValueError):
        SystemModel(num_discrete_states=1, update=lambda t, x, u: x,
                    sample_time=-1.0)
    with pytest.raises(ValueError):
        SystemModel(num_inputs=1, output=lambda t, x, u: u)
    with pytest.raises(ValueError):
        SystemModel(num_inputs=1, input_limits=(1.0, -1.0))


def test_mixed_system():
    sys = SystemModel(
        num_continuous_states=1,
        num_discrete_states=1,
        dynamics=lambda t, x, u: -x[0],
        update=lambda t, x, u: x[1] + 1,
        sample_time=0.1,
    )
    assert sys.is_mixed
    np.testing.assert_array_equal(sys.update(0.0, [5.0, 1.0], []), [2.0])


def test_initial_condition_contract():
    """Test the three ways of declaring an initial state."""
    assert np.all(SystemModel(num_continuous_states=2,
                              dynamics=lambda t, x, u: x)
                  .get_initial_state() == 0.0)

    fixed = SystemModel(num_continuous_states=1, dynamics=lambda t, x, u: x,
                        initial_state=[3.0])
    np.testing.assert_array_equal(fixed.get_initial_state(), [3.0])

    aware = SystemModel(
        num_continuous_states=1,
        num_inputs=1,
        dynamics=lambda t, x, u: x,
        initial_condition=lambda t, u: [2.0 * u[0]],
    )
    np.testing.assert_array_equal(aware.get_initial_state(0.0, [1.5]), [3.0])

    with pytest.raises(ValueError):
        SystemModel(num_continuous_states=1, dynamics=lambda t, x, u: x,
                    initial_state=[1.0],
                    initial_condition=lambda t, u: [1.0])


def test_state_constraints():
    sys = SystemModel(
        num_continuous_states=2,
        dynamics=lambda t, x, u: [x[1], -x[0]],
        state_constraints=[lambda x: x[0] ** 2 + x[1] ** 2 - 1.0,
                           lambda x: [x[0] - x[1]]],
    )
    assert sys.num_constraints == 2
    np.testing.assert_allclose(sys.state_constraints([1.0, 0.0]), [0.0, 1.0])


def test_with_input_limits_copies():
    sys = SystemModel(num_continuous_states=1, num_inputs=1,
                      dynamics=lambda t, x, u: u)
    limited = sys.with_input_limits(-1.0, 1.0)
    assert sys.input_limits is None
    np.testing.assert_array_equal(limited.input_limits[0], [-1.0])
    np.testing.assert_array_equal(limited.input_limits[1], [1.0])


def test_linear_system():
    sys = LinearSystem([[0.0, 1.0], [-2.0, -3.0]], [[0.0], [1.0]],
                       [[1.0, 0.0]])
    assert sys.structure is StructureTag.LINEAR
    assert (sys.num_xc, sys.num_u, sys.num_y) == (2, 1, 1)
    assert not sys.direct_feedthrough
    np.testing.assert_array_equal(sys.dynamics(0.0, [1.0, 1.0], [1.0]),
                                  [1.0, -4.0])
    np.testing.assert_array_equal(sys.output(0.0, [2.0, 1.0], [5.0]), [2.0])


def test_linear_system_discrete():
    sys = LinearSystem([[0.5]], [[1.0]], sample_time=0.1)
    assert sys.is_discrete
    assert sys.num_xd == 1
    np.testing.assert_array_equal(sys.update(0.0, [2.0], [1.0]), [2.0])


def test_static_gain():
    gain = LinearSystem.static_gain([[2.0, 0.0], [0.0, 3.0]])
    assert gain.num_states == 0
    assert gain.direct_feedthrough
    np.testing.assert_array_equal(gain.output(0.0, [], [1.0, 1.0]),
                                  [2.0, 3.0])
    identity = LinearSystem.identity(3)
    np.testing.assert_array_equal(identity.D, np.eye(3))


def test_linear_system_bad_shapes():
    with pytest.raises(ValueError):
        LinearSystem([[0.0, 1.0], [0.0, 0.0]], [[1.0]])


def test_manipulator_pendulum():
    """Test H(q) vdot + C(q, v) = B u for a pendulum."""
    sys = ManipulatorSystem(
        1,
        mass_matrix=lambda q: np.array([[2.0]]),
        bias=lambda q, v: np.array([9.81 * np.sin(q[0])]),
        input_matrix=[[1.0]],
    )
    assert sys.structure is StructureTag.RIGID_BODY
    assert sys.num_xc == 2
    xdot = sys.dynamics(0.0, [np.pi / 2, 0.5], [1.0])
    np.testing.assert_allclose(xdot, [0.5, (1.0 - 9.81) / 2.0])


def test_manipulator_callable_input_matrix():
    with pytest.raises(ValueError):
        ManipulatorSystem(1, lambda q: [[1.0]], lambda q, v: [0.0],
                          input_matrix=lambda q: [[1.0]])
    sys = ManipulatorSystem(1, lambda q: [[1.0]], lambda q, v: [0.0],
                            input_matrix=lambda q: [[np.cos(q[0])]],
                            num_inputs=1)
    np.testing.assert_allclose(sys.dynamics(0.0, [0.0, 0.0], [2.0]),
                               [0.0, 2.0])


def test_stochastic_system_noise_slots():
    """Test that the noise is held in extra discrete states."""
    sys = StochasticSystem(
        2,
        0.01,
        num_continuous_states=1,
        dynamics=lambda t, x, u, w: -x + w[0] - w[1],
        state_frame=VectorSignal(1, coordinates=["x"]),
    )
    assert sys.structure is StructureTag.STOCHASTIC
    assert sys.num_xd == 2
    assert sys.num_y == 1
    assert sys.state_frame.coordinates == ("x", "w1", "w2")
    np.testing.assert_array_equal(sys.get_initial_state(), [0.0, 0.0, 0.0])
    np.testing.assert_allclose(sys.dynamics(0.0, [1.0, 2.0, 0.5], []), [0.5])
    np.testing.assert_array_equal(sys.output(0.0, [1.0, 2.0, 0.5], []),
                                  [1.0])

    rng = np.random.default_rng(0)
    x = sys.resample_noise([1.0, 0.0, 0.0], rng)
    assert x[0] == 1.0
    assert np.all(x[1:] != 0.0)


def test_stochastic_system_checks():
    with pytest.raises(ValueError):
        StochasticSystem(0, 0.01, num_continuous_states=1,
                         dynamics=lambda t, x, u, w: x)
    with pytest.raises(ValueError):
        StochasticSystem(1, 0.0, num_continuous_states=1,
                         dynamics=lambda t, x, u, w: x)


def test_polynomial_system_tag():
    sys = PolynomialSystem(num_continuous_states=1,
                           dynamics=lambda t, x, u: -x + x**3)
    assert sys.structure is StructureTag.POLYNOMIAL


def test_join_structure_table():
    L, P, R, G, S, H = (
        StructureTag.LINEAR,
        StructureTag.POLYNOMIAL,
        StructureTag.RIGID_BODY,
        StructureTag.GENERAL,
        StructureTag.STOCHASTIC,
        StructureTag.HYBRID,
    )
    assert join_structure(L, L) is L
    assert join_structure(L, P) is P
    assert join_structure(P, R) is R
    assert join_structure(R, G) is G
    assert join_structure(G, S) is S
    assert join_structure(S, H) is H
    for a in StructureTag:
        for b in StructureTag:
            assert join_structure(a, b) is join_structure(b, a)
        assert join_structure(a, H) is H


def test_common_period():
    assert common_period(None, None) is None
    assert common_period(0.1, None) == 0.1
    assert common_period(None, 0.2) == 0.2
    assert common_period(0.1, 0.1) == 0.1
    with pytest.raises(SampleTimeError):
        common_period(0.1, 0.2)
