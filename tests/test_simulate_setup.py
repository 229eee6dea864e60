"""Tests for hybridsim.setup module."""

import pint
import pytest

from hybridsim.setup import (
    param_magnitudes,
    read_param_values,
    read_param_values_pint,
)


def test_read_param_values_basic():
    """Test basic flattening with two levels (units as strings)."""
    params = {
        "ball": {
            "height": {"value": 120.0, "units": "cm"},
            "mass": {"value": 50, "units": "g"},
        },
        "ground": {"restitution": {"value": 0.8}},
    }

    result = read_param_values(params)

    # Check keys
    assert "ball_height" in result
    assert "ball_mass" in result
    assert "ground_restitution" in result

    # Check structure and values (units should be strings)
    assert result["ball_height"]["value"] == 120.0
    assert result["ball_height"]["units"] == "cm"
    assert result["ball_mass"]["value"] == 50
    assert result["ball_mass"]["units"] == "g"
    assert result["ground_restitution"]["value"] == 0.8


def test_read_param_values_pint_basic():
    """Test basic flattening with two levels and pint units."""
    ureg = pint.UnitRegistry()
    params = {
        "pendulum": {
            "length": {"value": 0.8, "units": "m"},
            "damping": {"value": 0.05, "units": "N*m*s"},
        },
        "gravity": {"value": 9.81, "units": "m/s**2"},
    }

    result = read_param_values_pint(params, ureg)

    assert result["pendulum_length"]["value"] == 0.8
    assert result["pendulum_length"]["units"] == ureg("m").units
    assert result["pendulum_damping"]["units"] == ureg("N*m*s").units
    assert result["gravity"]["units"] == ureg("m/s**2").units


def test_read_param_values_three_levels():
    """Test flattening with three nested levels."""
    params = {
        "plant": {"pendulum": {"length": {"value": 0.8, "units": "m"}}}
    }

    result = read_param_values(params)

    assert "plant_pendulum_length" in result
    assert result["plant_pendulum_length"]["value"] == 0.8
    assert result["plant_pendulum_length"]["units"] == "m"


def test_read_param_values_mixed_types():
    """Test flattening with mixed value types (with and without units)."""
    params = {
        "ball": {"height": {"value": 1.0, "units": "m"}},
        "solver": {
            "max_steps": 1000,  # No 'value' key, just a plain integer
            "seed": 42,
        },
    }

    result = read_param_values(params)

    assert result["ball_height"]["value"] == 1.0
    assert result["ball_height"]["units"] == "m"

    # Parameters without 'value'/'units' structure have units=None
    assert result["solver_max_steps"]["value"] == 1000
    assert result["solver_max_steps"]["units"] is None
    assert result["solver_seed"]["value"] == 42
    assert result["solver_seed"]["units"] is None


def test_read_param_values_custom_separator():
    """Test flattening with custom separator."""
    params = {"ball": {"height": {"value": 1.0, "units": "m"}}}

    result = read_param_values(params, sep=".")

    assert "ball.height" in result
    assert result["ball.height"]["value"] == 1.0


def test_read_param_values_empty_dict():
    """Test flattening empty dictionary."""
    assert read_param_values({}) == {}


def test_read_param_values_no_units():
    """Test parameters with value but no units."""
    params = {"ground": {"restitution": {"value": 0.8}}}

    result = read_param_values(params)

    # Should not have 'units' key when no units specified
    assert result["ground_restitution"]["value"] == 0.8
    assert "units" not in result["ground_restitution"]

    # The pint variant fills in units=None
    result = read_param_values_pint(params)
    assert result["ground_restitution"]["units"] is None


def test_read_param_values_additional_fields():
    """Test that additional fields like 'name' and 'desc' are preserved."""
    params = {
        "ball": {
            "restitution": {
                "value": 0.8,
                "name": "Coefficient of restitution",
                "desc": "Ratio of rebound to impact speed",
            },
            "height": {"value": 1.0, "units": "m", "name": "Drop height"},
        }
    }

    result = read_param_values(params)

    assert result["ball_restitution"]["name"] == "Coefficient of restitution"
    assert (
        result["ball_restitution"]["desc"]
        == "Ratio of rebound to impact speed"
    )
    assert result["ball_height"]["name"] == "Drop height"
    assert "desc" not in result["ball_height"]


def test_param_magnitudes_si():
    """Test conversion of parameters to SI base-unit magnitudes."""
    params = {
        "mass": {"value": 500, "units": "g"},
        "length": {"value": 80.0, "units": "cm"},
        "noise_period": {"value": 50, "units": "ms"},
        "gravity": {"value": 9.81, "units": "m/s**2"},
        "restitution": {"value": 0.8},
        "n_bounces": 3,
    }

    result = param_magnitudes(params)

    assert result["mass"] == pytest.approx(0.5)
    assert result["length"] == pytest.approx(0.8)
    assert result["noise_period"] == pytest.approx(0.05)
    assert result["gravity"] == pytest.approx(9.81)
    assert result["restitution"] == 0.8
    assert result["n_bounces"] == 3


def test_param_magnitudes_nested():
    ureg = pint.UnitRegistry()
    params = {"ball": {"height": {"value": 120.0, "units": "cm"}}}
    assert param_magnitudes(params, ureg) == pytest.approx(
        {"ball_height": 1.2}
    )
