import json
from pathlib import Path

import numpy as np
import pytest

from dae import ParseError, SolverType
from dae.json_loader import build_problem_from_dict, load_from_json

ROOT = Path(__file__).resolve().parents[1]
EXAMPLES = ROOT / "examples"


def test_load_mass_spring_damper_json_and_compare_analytic():
    """
    x'' + c x' + k x = 0 with k=2, c=0.5, m=1, x(0)=1, v(0)=0:
        x(t) = exp(-c t / 2) (cos(wd t) + c / (2 wd) sin(wd t)),  wd = sqrt(k - c^2/4)
    """
    cfg_path = EXAMPLES / "mass_spring_damper.json"
    problem = load_from_json(str(cfg_path))

    assert problem.method is SolverType.RK4
    assert problem.system.parameters == {"k": 2.0, "c": 0.5, "m": 1.0}

    sol = problem.solve()
    assert sol.success
    assert len(sol) == 1001

    c, k = 0.5, 2.0
    wd = np.sqrt(k - c**2 / 4.0)
    t = sol.t
    exact = np.exp(-c * t / 2.0) * (np.cos(wd * t) + c / (2.0 * wd) * np.sin(wd * t))
    assert np.max(np.abs(sol.variable("x") - exact)) < 1e-6


def test_all_examples_load():
    for path in sorted(EXAMPLES.glob("*.json")):
        problem = load_from_json(path)
        assert problem.system.dimension == problem.initial_state().shape[0], path.name


def test_pendulum_example_is_high_index():
    problem = load_from_json(EXAMPLES / "pendulum.json")
    with open(EXAMPLES / "pendulum.json", "r", encoding="utf8") as f:
        cfg = json.load(f)
    assert cfg["analysis"]["enabled"]

    analysis = problem.analyze()
    assert analysis.index >= 2
    assert analysis.algebraic_count == 1


def test_stiff_decay_example():
    problem = load_from_json(EXAMPLES / "stiff_decay.json")
    assert problem.analyzer.stiffness_threshold == 100.0
    assert problem.analyze().is_stiff

    sol = problem.solve()
    assert abs(sol.final_state[0]) < 1e-3
    assert 0.3 < sol.final_state[1] < 0.4


def test_build_problem_from_dict_sections():
    cfg = {
        "equations": "der(x) = -k*x\nz = x - z",
        "parameters": "k = 3",
        "initial_conditions": {"x": 1.0, "z": 1.0},
        "time": {"t0": 1.0, "t1": 2.0},
        "solver": {"method": "implicit_euler", "intervals": 40, "rtol": 1e-5, "max_newton_iterations": 7},
        "analysis": {"enabled": False, "max_index": 3},
    }
    problem = build_problem_from_dict(cfg)

    assert problem.method is SolverType.IMPLICIT_EULER
    assert problem.settings.start_time == 1.0
    assert problem.settings.intervals == 40
    assert problem.settings.max_newton_iterations == 7
    assert problem.dassl.rtol == 1e-5
    assert problem.dassl.max_newton_iterations == 7
    assert problem.analyzer.max_index == 3

    sol = problem.solve()
    assert sol.t[0] == 1.0 and sol.t[-1] == 2.0
    assert len(sol) == 41


def test_build_problem_errors():
    base = {"equations": ["der(x) = -x"], "initial_conditions": [1.0], "time": {"t1": 1.0}}
    build_problem_from_dict(base)

    with pytest.raises(ValueError, match="requires 't1'"):
        build_problem_from_dict({**base, "time": {}})
    with pytest.raises(ValueError, match="'equations' or 'model'"):
        build_problem_from_dict({"time": {"t1": 1.0}})
    with pytest.raises(ValueError, match="initial_conditions"):
        build_problem_from_dict({"equations": ["der(x) = -x"], "time": {"t1": 1.0}})
    with pytest.raises(ValueError, match="Unknown solver"):
        build_problem_from_dict({**base, "solver": {"method": "magic"}})
    with pytest.raises(ValueError, match="Unknown SolverSettings keys: bogus"):
        build_problem_from_dict({**base, "solver": {"bogus": 1}})
    with pytest.raises(ParseError, match="Undefined symbols"):
        build_problem_from_dict({**base, "equations": ["der(x) = -k*x"]})
