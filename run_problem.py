from __future__ import annotations

import argparse
import logging
import math
from pathlib import Path

import numpy as np

from dae.errors import DAEError
from dae.json_loader import analysis_enabled, build_problem_from_dict, load_config


def _configure_logging(verbose: bool, quiet: bool) -> None:
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.ERROR
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a JSON-defined DAE problem.")
    parser.add_argument("config", type=str, help="Path to JSON configuration file.")
    parser.add_argument(
        "--method",
        type=str,
        default=None,
        help="Solver to use (explicit_euler, implicit_euler, rk4, dassl); overrides JSON solver.method.",
    )
    parser.add_argument(
        "--analyze",
        action="store_true",
        help="Print the structural/numerical analysis before solving (overrides JSON analysis.enabled).",
    )
    parser.add_argument(
        "--no-output",
        action="store_true",
        help="Suppress detailed output; only exit code indicates success.",
    )
    parser.add_argument("--verbose", action="store_true", help="Log solver progress at debug level.")
    parser.add_argument("--quiet", action="store_true", help="Only log errors.")

    args = parser.parse_args()
    _configure_logging(args.verbose, args.quiet)

    config = load_config(Path(args.config))
    try:
        problem = build_problem_from_dict(config)
        if args.analyze or analysis_enabled(config):
            analysis = problem.analyze()
            if not args.no_output:
                print(analysis.report())
                print()
        result = problem.solve(args.method)
    except DAEError as exc:
        raise SystemExit(f"{type(exc).__name__}: {exc}") from exc

    if not result.success:
        raise SystemExit("Time integration did not complete.")

    if not args.no_output:
        y_final = result.final_state
        t_final = result.t[-1]
        l2 = math.sqrt(float(np.sum(y_final**2)) / y_final.size)

        label = problem.name or Path(args.config).stem
        print(f"Solved {label} with {result.solver_name} from t={problem.settings.start_time} to t={t_final}")
        print(f"Output points: {len(result)}")
        for name, value in zip(result.variable_names, y_final):
            print(f"  {name} = {value:.6e}")
        print(f"L2 norm of solution at final time: {l2:.6e}")
        stats = ", ".join(f"{k}={v}" for k, v in result.statistics.items())
        print(f"Statistics: {stats}")


if __name__ == "__main__":
    main()
