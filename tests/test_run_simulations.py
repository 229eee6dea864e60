"""Tests for the YAML simulation runner."""

from pathlib import Path

import numpy as np
import pytest
import yaml

from hybridsim import HybridAutomaton, StepInput
from run_simulations import (
    create_model,
    initial_state,
    load_sim_spec,
    parse_input_spec,
    run_single_simulation,
    save_results,
)

SPEC_DIR = (
    Path(__file__).parent.parent / "simulations" / "examples" / "sim_specs"
)


def test_parse_step_input():
    spec = {
        "StepInput": {
            "initial_value": 0.0,
            "steps": [{"time": 1.0, "value": 2.0}, {"time": 3.0,
                                                   "value": -0.5}],
        }
    }
    u = parse_input_spec(spec)
    assert isinstance(u, StepInput)
    assert u(0.5) == 0.0
    assert u(1.0) == 2.0
    assert u(5.0) == -0.5


def test_parse_unknown_input():
    with pytest.raises(ValueError):
        parse_input_spec({"SquareWave": {"period": 1.0}})


def test_load_sim_spec_requires_sections(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text(yaml.dump({"system": {}, "simulation": {}}))
    with pytest.raises(ValueError, match="initial_conditions"):
        load_sim_spec(path)


def test_create_model_converts_units():
    model = create_model(
        {
            "model": {
                "name": "bouncing_ball",
                "params": {"height": {"value": 120.0, "units": "cm"}},
            }
        }
    )
    assert isinstance(model, HybridAutomaton)
    np.testing.assert_allclose(model.get_initial_state(), [1.2, 0.0, 0.0])

    with pytest.raises(ValueError):
        create_model({"model": {"name": "double_pendulum"}})


def test_initial_state_formats():
    model = create_model({"model": {"name": "pendulum"}})
    assert initial_state(model, {}) is None
    np.testing.assert_array_equal(
        initial_state(model, {"state": {"theta": 0.5, "omega": 0.0}}),
        [0.5, 0.0],
    )
    x0 = initial_state(model, {"x0": [0.5, None]})
    assert x0[0] == 0.5
    assert np.isnan(x0[1])


@pytest.mark.parametrize(
    "name", ["bouncing_ball", "saturated_integrator", "discrete_cubic"]
)
def test_example_specs_run(name):
    spec = load_sim_spec(SPEC_DIR / f"{name}.yaml")
    result = run_single_simulation(spec)
    traj = result["trajectory"]
    assert traj.t_span == (0.0, spec["simulation"]["t_final"])


def test_bouncing_ball_spec_contact_time():
    spec = load_sim_spec(SPEC_DIR / "bouncing_ball.yaml")
    traj = run_single_simulation(spec)["trajectory"]
    # Dropped from 120 cm
    assert traj.event_times[0] == pytest.approx(np.sqrt(2 * 1.2 / 9.81),
                                                rel=1e-6)


def test_unknown_simulation_option():
    spec = load_sim_spec(SPEC_DIR / "cubic_decay.yaml")
    spec["simulation"]["solver"] = "RK45"
    with pytest.raises(ValueError, match="solver"):
        run_single_simulation(spec)


def test_save_results(tmp_path):
    spec = load_sim_spec(SPEC_DIR / "saturated_integrator.yaml")
    result = run_single_simulation(spec)
    save_results(result, tmp_path, "saturated_integrator")

    for suffix in ["_states.csv", "_outputs.csv", ".npz", "_metadata.yaml"]:
        assert (tmp_path / f"saturated_integrator{suffix}").exists()
    with open(tmp_path / "saturated_integrator_metadata.yaml") as f:
        metadata = yaml.safe_load(f)
    assert metadata["model"] == "saturated_integrator"
    assert metadata["structure"] == "general"
    assert metadata["t_final"] == 6.0


def test_mass_spring_damper_force_input():
    """Test a critically damped oscillator settles at force / stiffness."""
    spec = {
        "system": {
            "model": {
                "name": "mass_spring_damper",
                "params": {
                    "mass": {"value": 1000.0, "units": "g"},
                    "stiffness": {"value": 4.0, "units": "N/m"},
                    "damping": {"value": 4.0, "units": "N*s/m"},
                },
            }
        },
        "simulation": {"t_final": 10.0},
        "initial_conditions": {"state": {"position": 0.0, "velocity": 0.0}},
        "inputs": {"force": {"ConstantInput": {"value": 1.0}}},
    }
    result = run_single_simulation(spec)
    traj = result["trajectory"]

    assert result["model"].structure.value == "linear"
    assert list(traj.outputs.columns) == ["position"]
    assert traj(10.0)[0] == pytest.approx(0.25, rel=1e-4)
