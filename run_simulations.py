#!/usr/bin/env python
"""Run simulations from YAML specification files.

This script runs simulations of the example models in hybridsim.models
defined by YAML spec files.

Usage:
    python run_simulations.py <experiment_name>

Example:
    python run_simulations.py examples

This will:
1. Look for simulations/<experiment_name>/sim_specs/*.yaml
2. Run each simulation defined in the YAML files
3. Save results to simulations/<experiment_name>/results/
"""

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path

import yaml

from hybridsim.core import SimulationConfig, SimulationEngine
from hybridsim.exceptions import IntegrationError
from hybridsim.inputs import (
    ConstantInput,
    InterpolatedInput,
    RampInput,
    SinusoidalInput,
    StepInput,
)
from hybridsim.models import MODEL_BUILDERS
from hybridsim.setup import param_magnitudes

# Registry of available input classes
INPUT_CLASSES = {
    "ConstantInput": ConstantInput,
    "StepInput": StepInput,
    "RampInput": RampInput,
    "InterpolatedInput": InterpolatedInput,
    "SinusoidalInput": SinusoidalInput,
}

# Solver options that may appear in the simulation section
SOLVER_OPTIONS = (
    "method",
    "rtol",
    "atol",
    "max_step",
    "first_step",
    "event_tol",
    "max_steps",
    "max_events_per_instant",
    "project_constraints",
    "constraint_tol",
    "seed",
)


def parse_input_spec(input_spec: dict) -> callable:
    """
    Parse an input specification from YAML and return a callable.

    Parameters
    ----------
    input_spec : dict
        Input specification from YAML, e.g.:
        {'ConstantInput': {'value': 0.5}}
        or
        {'StepInput': {'initial_value': 0, 'steps': [...]}}

    Returns
    -------
    callable
        An input function that takes time t and returns a value.
    """
    class_name = list(input_spec.keys())[0]
    params = input_spec[class_name]

    if class_name not in INPUT_CLASSES:
        raise ValueError(f"Unknown input class: {class_name}")

    input_class = INPUT_CLASSES[class_name]

    # Handle special case for StepInput with steps format
    if class_name == "StepInput" and "steps" in params:
        steps = params["steps"]
        times = [step["time"] for step in steps]
        values = [step["value"] for step in steps]
        initial_value = params.get("initial_value", 0.0)
        values = [initial_value] + values
        return StepInput(times=times, values=values)

    return input_class(**params)


def load_sim_spec(yaml_path: Path) -> dict:
    """Load and validate a simulation specification from YAML."""
    with open(yaml_path, "r") as f:
        spec = yaml.safe_load(f)

    required_sections = [
        "system",
        "simulation",
        "initial_conditions",
        "inputs",
    ]

    for section in required_sections:
        if section not in spec:
            raise ValueError(f"Missing required section: {section}")

    return spec


def create_model(system_spec: dict):
    """Build a registered example model with SI parameter values."""
    model_spec = system_spec.get("model", {})
    name = model_spec.get("name")
    if name not in MODEL_BUILDERS:
        raise ValueError(
            f"Unknown model '{name}', expected one of {list(MODEL_BUILDERS)}"
        )
    params = param_magnitudes(model_spec.get("params") or {})
    return MODEL_BUILDERS[name](**params)


def create_input_functions(inputs_spec: dict) -> dict:
    """Create input functions keyed by model input coordinate."""
    return {
        name: parse_input_spec(input_spec)
        for name, input_spec in (inputs_spec or {}).items()
    }


def initial_state(model, ic_spec: dict):
    """Initial state from the spec, or None for the model default."""
    ic_spec = ic_spec or {}
    if "x0" in ic_spec:
        return [float("nan") if v is None else v for v in ic_spec["x0"]]
    if "state" in ic_spec:
        return model.state_frame.from_dict(ic_spec["state"])
    return None


def run_single_simulation(spec: dict) -> dict:
    """
    Run a single simulation from a specification.

    Returns dict with model, trajectory and the spec.
    """
    sim_spec = dict(spec.get("simulation", {}))

    print("Creating model...")
    model = create_model(spec.get("system", {}))

    t_start = sim_spec.pop("t_start", 0.0)
    t_final = sim_spec.pop("t_final", 10.0)
    unknown = set(sim_spec) - set(SOLVER_OPTIONS)
    if unknown:
        raise ValueError(f"Unknown simulation options: {sorted(unknown)}")

    input_funcs = create_input_functions(spec.get("inputs"))
    config = SimulationConfig(
        t_span=(t_start, t_final),
        x0=initial_state(model, spec.get("initial_conditions")),
        inputs=input_funcs or None,
        **sim_spec,
    )

    print("Running simulation...")
    trajectory = SimulationEngine(model).simulate(config)
    print(
        f"Finished: {len(trajectory.time)} samples, "
        f"{len(trajectory.event_times)} discontinuities"
    )

    return {
        "model": model,
        "trajectory": trajectory,
        "spec": spec,
    }


def save_results(sim_result: dict, output_dir: Path, sim_name: str):
    """Save simulation results to files."""
    output_dir.mkdir(parents=True, exist_ok=True)

    trajectory = sim_result["trajectory"]
    trajectory.states.to_csv(output_dir / f"{sim_name}_states.csv")
    trajectory.outputs.to_csv(output_dir / f"{sim_name}_outputs.csv")
    trajectory.save(str(output_dir / f"{sim_name}.npz"))

    t0, tf = trajectory.t_span
    metadata = {
        "simulation_name": sim_name,
        "timestamp": datetime.now().isoformat(),
        "model": sim_result["model"].name,
        "structure": sim_result["model"].structure.value,
        "n_samples": int(len(trajectory.time)),
        "n_segments": trajectory.n_segments,
        "event_times": [float(t) for t in trajectory.event_times],
        "t_start": float(t0),
        "t_final": float(tf),
    }
    with open(output_dir / f"{sim_name}_metadata.yaml", "w") as f:
        yaml.dump(metadata, f, default_flow_style=False)

    print(f"Results saved to {output_dir}")


def main():
    parser = argparse.ArgumentParser(
        description="Run hybrid system simulations from YAML specs",
        epilog="""
Examples:
  python run_simulations.py examples                       # Run all
  python run_simulations.py examples --sim bouncing_ball   # Run one
  python run_simulations.py examples --sim "cubic_*"       # Run pattern
  python run_simulations.py examples --list                # List specs
""",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "experiment_name",
        help="Name of experiment (directory in simulations/)",
    )
    parser.add_argument(
        "--sim",
        "--spec",
        nargs="*",
        dest="simulations",
        metavar="NAME",
        help="Run specific simulation(s) by name (without .yaml). "
        "Supports glob patterns (e.g., 'cubic_*'). "
        "If not specified, runs all simulations.",
    )
    parser.add_argument(
        "--list",
        "-l",
        action="store_true",
        help="List available simulations and exit",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Parse specs but don't run simulations",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show log messages from the simulation engine",
    )

    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(name)s %(levelname)s: %(message)s",
        )

    # Find experiment directory
    base_dir = Path(__file__).parent / "simulations" / args.experiment_name
    spec_dir = base_dir / "sim_specs"
    results_dir = base_dir / "results"

    if not spec_dir.exists():
        print(f"Error: Spec directory not found: {spec_dir}")
        sys.exit(1)

    all_yaml_files = sorted(spec_dir.glob("*.yaml"))

    if not all_yaml_files:
        print(f"Error: No YAML files found in {spec_dir}")
        sys.exit(1)

    if args.list:
        print(f"Available simulations in '{args.experiment_name}':")
        for yaml_file in all_yaml_files:
            print(f"  {yaml_file.stem}")
        sys.exit(0)

    # Select YAML files based on --sim argument
    if args.simulations:
        yaml_files = []
        for pattern in args.simulations:
            if "*" in pattern or "?" in pattern or "[" in pattern:
                matched = list(spec_dir.glob(f"{pattern}.yaml"))
                if not matched:
                    print(f"Warning: No files match pattern '{pattern}'")
                yaml_files.extend(matched)
            else:
                yaml_path = spec_dir / f"{pattern}.yaml"
                if yaml_path.exists():
                    yaml_files.append(yaml_path)
                else:
                    print(f"Error: Spec file not found: {yaml_path}")
                    sys.exit(1)
        yaml_files = sorted(set(yaml_files))
    else:
        yaml_files = all_yaml_files

    if not yaml_files:
        print(f"Error: No YAML files found in {spec_dir}")
        sys.exit(1)

    print(f"Found {len(yaml_files)} simulation spec(s) in {spec_dir}")

    n_failed = 0
    for yaml_path in yaml_files:
        sim_name = yaml_path.stem
        print(f"\n{'=' * 60}")
        print(f"Simulation: {sim_name}")
        print(f"{'=' * 60}")

        spec = load_sim_spec(yaml_path)
        if args.dry_run:
            print(f"Spec OK: model {spec['system']['model']['name']}")
            continue

        try:
            sim_result = run_single_simulation(spec)
        except IntegrationError as err:
            n_failed += 1
            print(f"Simulation failed at t={err.time}: {err}")
            continue
        save_results(sim_result, results_dir, sim_name)

    if n_failed:
        print(f"\n{n_failed} simulation(s) failed")
        sys.exit(1)


if __name__ == "__main__":
    main()
