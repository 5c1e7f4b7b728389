import numpy as np
import pytest

from dae import (
    DAEProblem,
    DasslSolver,
    ImplicitEulerSolver,
    InitialConditions,
    ParseError,
    SolverSettings,
    SolverType,
)


def test_solver_type_lookup():
    assert SolverType.from_name("dassl") is SolverType.DASSL
    assert SolverType.from_name("Implicit-Euler") is SolverType.IMPLICIT_EULER
    assert SolverType.from_name("bdf") is SolverType.DASSL
    assert SolverType.from_name("runge_kutta_4") is SolverType.RK4
    assert SolverType.IMPLICIT_EULER.solver_class is ImplicitEulerSolver
    with pytest.raises(ValueError, match="Unknown solver"):
        SolverType.from_name("leapfrog")


def test_problem_from_equations_solves_with_each_method():
    """
    Damped oscillator x'' + x = 0 written as a first-order system; all solvers
    must agree with cos(t) at t = 1 to within their expected accuracy.
    """
    problem = DAEProblem.from_equations(
        ["der(x) = v", "der(v) = -w*w*x"],
        "x = 1; v = 0",
        parameters={"w": 1.0},
        settings=SolverSettings(0.0, 1.0, 200),
    )
    assert problem.variables == ("x", "v")
    assert np.allclose(problem.initial_state(), [1.0, 0.0])

    tolerances = {"explicit_euler": 2e-2, "implicit_euler": 2e-2, "rk4": 1e-8, "dassl": 1e-3}
    for method, tol in tolerances.items():
        sol = problem.solve(method)
        assert sol.success
        assert abs(sol.variable("x")[-1] - np.cos(1.0)) < tol, method


def test_problem_from_model():
    problem = DAEProblem.from_model(
        """
        model Decay
        Real x;
        parameter Real k = 0.5;
        initial equation
        x = 2;
        equation
        der(x) = -k*x;
        end Decay;
        """,
        method="rk4",
        settings=SolverSettings(0.0, 2.0, 100),
    )
    assert problem.name == "Decay"
    assert problem.method is SolverType.RK4

    sol = problem.solve()
    assert sol.solver_name == "Runge-Kutta 4"
    assert abs(sol.final_state[0] - 2.0 * np.exp(-1.0)) < 1e-8


def test_problem_analyze():
    problem = DAEProblem.from_equations(
        ["der(x) = -x", "z = x - z"],
        {"x": 1.0, "z": 1.0},
    )
    analysis = problem.analyze()
    assert analysis.variable_names == ("x", "z")
    assert analysis.algebraic_variables.tolist() == [False, True]
    assert analysis.index == 1


def test_create_solver_uses_dassl_settings():
    problem = DAEProblem.from_equations(["der(x) = -x"], [1.0])
    solver = problem.create_solver()
    assert isinstance(solver, DasslSolver)
    assert solver.dassl is problem.dassl


def test_initial_condition_errors_surface():
    problem = DAEProblem(
        system=DAEProblem.from_equations(["der(x) = -x"], [1.0]).system,
        ic=InitialConditions.from_string("y = 1"),
    )
    with pytest.raises(ParseError, match="Unknown variable in initial conditions"):
        problem.solve()
