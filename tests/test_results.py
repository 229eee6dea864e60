"""Tests for trajectories and their export."""

import numpy as np
import pandas as pd
import pytest

from hybridsim import LinearSystem, Segment, Trajectory, simulate
from hybridsim.inputs import build_input_function
from hybridsim.results import TrajectoryBuilder


def _segment(time, states, derivatives, outputs=None, inputs=None):
    time = np.asarray(time, dtype=float)
    n = len(time)
    states = np.asarray(states, dtype=float).reshape(n, -1)
    if outputs is None:
        outputs = states.copy()
    if inputs is None:
        inputs = np.zeros((n, 1))
    return Segment(
        time=time,
        states=states,
        derivatives=np.asarray(derivatives, dtype=float).reshape(n, -1),
        outputs=np.asarray(outputs, dtype=float).reshape(n, -1),
        inputs=np.asarray(inputs, dtype=float).reshape(n, -1),
    )


@pytest.fixture
def trajectory():
    """x = t**2 on [0, 2], then a jump to 10 and x = 10 - t + 2 on [2, 3]."""
    t1 = np.array([0.0, 1.0, 2.0])
    seg1 = _segment(t1, t1**2, 2 * t1, inputs=t1)
    t2 = np.array([2.0, 3.0])
    seg2 = _segment(t2, 12.0 - t2, [-1.0, -1.0], inputs=[5.0, 5.0])
    return Trajectory([seg1, seg2], ["x"], ["y"], ["u"])


def test_properties(trajectory):
    assert trajectory.t_span == (0.0, 3.0)
    assert trajectory.n_segments == 2
    np.testing.assert_array_equal(trajectory.event_times, [2.0])
    np.testing.assert_array_equal(trajectory.time, [0.0, 1.0, 2.0, 3.0])
    assert (trajectory.n_states, trajectory.n_outputs,
            trajectory.n_inputs) == (1, 1, 1)


def test_dataframes_keep_post_jump_values(trajectory):
    states = trajectory.states
    assert states.index.name == "time"
    assert states.loc[2.0, "x"] == 10.0
    assert trajectory.inputs.loc[2.0, "u"] == 5.0
    assert list(trajectory.outputs.columns) == ["y"]


def test_eval_exact_at_knots(trajectory):
    assert trajectory(1.0)[0] == 1.0
    assert trajectory(3.0)[0] == 9.0


def test_eval_right_continuous(trajectory):
    assert trajectory(2.0)[0] == 10.0
    assert trajectory(2.0 - 1e-9)[0] == pytest.approx(4.0, rel=1e-6)


def test_eval_hermite_interpolation(trajectory):
    """Test cubic Hermite interpolation reproduces a quadratic."""
    for t in [0.25, 0.5, 1.3, 1.9]:
        assert trajectory(t)[0] == pytest.approx(t**2, rel=1e-12)
    assert trajectory.eval(2.5)[0] == pytest.approx(9.5, rel=1e-12)


def test_eval_outside_span(trajectory):
    with pytest.raises(ValueError):
        trajectory(-0.1)
    with pytest.raises(ValueError):
        trajectory(3.5)


def test_eval_output_and_input(trajectory):
    # Linear between knots
    assert trajectory.eval_output(0.5)[0] == pytest.approx(0.5)
    assert trajectory.eval_input(1.5)[0] == pytest.approx(1.5)
    assert trajectory.eval_input(2.5)[0] == 5.0


def test_resample(trajectory):
    df = trajectory.resample([0.5, 2.5])
    assert list(df.columns) == ["x", "y"]
    np.testing.assert_allclose(df["x"].to_numpy(), [0.25, 9.5])


def test_to_dataframe(trajectory):
    df = trajectory.to_dataframe()
    assert list(df.columns) == ["time", "u", "x", "y"]
    assert len(df) == 4


def test_save_load_npz(trajectory, tmp_path):
    filename = str(tmp_path / "traj.npz")
    trajectory.save(filename)
    loaded = Trajectory.load(filename)

    assert loaded.n_segments == 2
    assert loaded.state_names == ["x"]
    assert loaded.input_names == ["u"]
    np.testing.assert_array_equal(loaded.event_times, trajectory.event_times)
    for t in [0.5, 2.0, 2.5]:
        np.testing.assert_array_equal(loaded(t), trajectory(t))


def test_save_csv(trajectory, tmp_path):
    filename = tmp_path / "traj.csv"
    trajectory.save(str(filename))
    df = pd.read_csv(filename)
    assert list(df.columns) == ["time", "u", "x", "y"]
    np.testing.assert_allclose(df["x"], [0.0, 1.0, 10.0, 9.0])


def test_save_mat(trajectory, tmp_path):
    from scipy.io import loadmat

    filename = tmp_path / "traj.mat"
    trajectory.save(str(filename))
    data = loadmat(str(filename))
    assert data["states"].shape == (5, 1)


def test_save_unsupported_extension(trajectory, tmp_path):
    with pytest.raises(ValueError):
        trajectory.save(str(tmp_path / "traj.xlsx"))
    with pytest.raises(ValueError):
        Trajectory.load(str(tmp_path / "traj.csv"))


def test_invalid_segments():
    with pytest.raises(ValueError):
        Trajectory([], ["x"], ["y"])
    seg1 = _segment([0.0, 2.0], [0.0, 0.0], [0.0, 0.0])
    seg2 = _segment([1.0, 3.0], [0.0, 0.0], [0.0, 0.0])
    with pytest.raises(ValueError):
        Trajectory([seg1, seg2], ["x"], ["y"])
    with pytest.raises(ValueError):
        Trajectory([_segment([1.0, 0.0], [0.0, 0.0], [0.0, 0.0])],
                   ["x"], ["y"])


def test_builder_segments():
    """Test that jumps start segments and repeated jumps collapse."""
    model = LinearSystem([[-1.0]], [[1.0]])
    u_func = build_input_function(lambda t: t, model.input_frame)
    builder = TrajectoryBuilder(model, u_func)

    builder.record(0.0, [1.0])
    builder.record(0.5, [0.5])
    builder.record(0.5, [99.0])  # ignored, not after the last sample
    builder.jump(0.5, [2.0])
    builder.jump(0.5, [3.0])
    builder.record(1.0, [2.5])
    assert builder.last_time == 1.0

    traj = builder.build()
    assert traj.n_segments == 2
    np.testing.assert_array_equal(traj.segments[0].states[:, 0], [1.0, 0.5])
    np.testing.assert_array_equal(traj.segments[1].states[:, 0], [3.0, 2.5])
    # Derivatives come from the model dynamics with the recorded input
    assert traj.segments[1].derivatives[0, 0] == pytest.approx(-3.0 + 0.5)
    np.testing.assert_array_equal(traj.segments[1].inputs[:, 0], [0.5, 1.0])


def test_without_inputs():
    model = LinearSystem([[-1.0]], [[1.0]])
    traj = simulate(model, (0.0, 1.0), x0=[1.0], save_inputs=False)
    assert traj.inputs is None
    assert traj.n_inputs == 0
    assert list(traj.to_dataframe().columns) == ["time", "x1", "y1"]
