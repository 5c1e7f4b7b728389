import asyncio
import math

import numpy as np
import pytest

from dae import (
    AnalyzerSettings,
    CancellationToken,
    DAEAnalyzer,
    OperationCancelled,
    analyze,
    compile_equations,
)
from dae.analysis import find_cycles, strongly_connected_components, structural_index


def test_algebraic_classification_linear_system():
    """y0' = y1; 0 = y0 - 1"""

    def residual(t, y, yp):
        return np.array([yp[0] - y[1], y[0] - 1.0])

    result = analyze(residual, 2, [1.0, 0.0])

    assert result.algebraic_variables.tolist() == [False, True]
    assert result.algebraic_count == 1
    assert result.differential_count == 1
    assert result.index == 2
    assert "System contains 1 algebraic constraints." in result.warnings


def test_pure_ode_has_index_zero():
    system = compile_equations(["der(x) = v", "der(v) = -x"])
    result = analyze(system, 2, [1.0, 0.0], variable_names=system.variables)

    assert result.index == 0
    assert not result.algebraic_variables.any()
    # x depends on v and v on x
    assert result.variable_dependencies == {0: {1}, 1: {0}}
    assert result.has_circular_dependency
    assert result.circular_dependency_paths == ["x → v → x"]
    assert result.system_structure.blocks == [[0, 1]]
    eig = sorted(result.eigenvalues, key=lambda ev: ev.imag)
    assert np.allclose(eig, [-1j, 1j], atol=1e-5)


def test_pendulum_index_is_at_least_two():
    system = compile_equations(
        [
            "der(x) = vx",
            "der(y) = vy",
            "der(vx) = -T*x",
            "der(vy) = -T*y - g",
            "T = x^2 + y^2 - L^2",
        ],
        {"g": 9.81, "L": 1.0},
    )
    y0 = [0.6, -0.8, 0.0, 0.0, 7.848]
    result = analyze(system, 5, y0, variable_names=system.variables)

    assert result.index >= 2
    assert result.index == 3
    assert result.algebraic_variables.tolist() == [False, False, False, False, True]
    assert any("High index (3)" in w for w in result.warnings)


def test_index_algebraic_self_dependent_is_one():
    # z appears in its own constraint
    system = compile_equations(["der(x) = -z", "z = z - 2*x"])
    result = analyze(system, 2, [1.0, 2.0])
    assert result.index == 1


def test_index_bounded_by_max_index():
    system = compile_equations(
        ["der(a) = b", "der(b) = c", "der(c) = d", "der(d) = z", "z = a - 1"]
    )
    result = analyze(system, 5, [1, 0, 0, 0, 0], settings=AnalyzerSettings(max_index=3))
    assert result.index == 3


def test_stiffness_detection():
    def residual(t, y, yp):
        return np.array([yp[0] + 1e4 * y[0], yp[1] + y[1]])

    result = analyze(residual, 2, [1.0, 1.0])
    assert result.is_stiff
    assert result.stiffness_ratio == pytest.approx(1e4, rel=1e-3)
    assert "Stiff system detected. Implicit solvers recommended." in result.warnings

    mild = analyze(residual, 2, [1.0, 1.0], settings=AnalyzerSettings(stiffness_threshold=1e5))
    assert not mild.is_stiff


def test_stiffness_ratio_defaults_to_one():
    def residual(t, y, yp):
        return np.array([yp[0] + 2.0 * y[0]])

    result = analyze(residual, 1, [1.0])
    assert result.stiffness_ratio == 1.0
    assert not result.is_stiff
    assert np.isfinite(result.condition_number)


def test_near_singular_jacobian_warning():
    def residual(t, y, yp):
        return np.array([yp[0] + y[0], 0.0 * y[1]])

    result = analyze(residual, 2, [1.0, 1.0])
    assert math.isinf(result.condition_number)
    assert "Jacobian is near-singular." in result.warnings


def test_failed_numerics_degrade_gracefully():
    calls = {"n": 0}

    def residual(t, y, yp):
        calls["n"] += 1
        if calls["n"] > 8:
            raise ZeroDivisionError("late failure")
        return np.array([yp[0] + y[0], y[1] - y[0]])

    result = analyze(residual, 2, [1.0, 1.0])
    assert math.isnan(result.condition_number)
    assert result.eigenvalues == []
    assert not result.is_stiff
    assert any("Jacobian computation failed" in w for w in result.warnings)


def test_unexpected_residual_exception_degrades_jacobian():
    """
    The residual only fails once y0 moves further than the analysis
    perturbations do, i.e. at the finite-difference Jacobian points.
    """

    def residual(t, y, yp):
        if abs(y[0]) > 1.0005:
            raise KeyError("lookup outside table")
        return np.array([yp[0] + y[0]])

    result = analyze(residual, 1, [1.0])
    assert result.differential_count == 1
    assert math.isnan(result.condition_number)
    assert result.eigenvalues == []
    assert any("Jacobian computation failed" in w for w in result.warnings)


def test_cancellation_during_jacobian_still_propagates():
    token = CancellationToken()

    def residual(t, y, yp):
        if abs(y[0]) > 1.0005:
            token.cancel()
        return np.array([yp[0] + y[0]])

    with pytest.raises(OperationCancelled):
        DAEAnalyzer(AnalyzerSettings(max_workers=1)).analyze(residual, 1, [1.0], token=token)


def test_analysis_rejects_bad_input():
    def residual(t, y, yp):
        return yp - y

    with pytest.raises(ValueError, match="expected 3"):
        analyze(residual, 3, [1.0, 2.0])


def test_progress_reports_reach_completion():
    stages = []
    system = compile_equations(["der(x) = -x", "z = z - x"])
    DAEAnalyzer(progress=stages.append).analyze(system, 2, [1.0, 1.0])

    assert stages[0].percentage == 0.0
    assert stages[-1].stage == "Complete"
    assert stages[-1].percentage == 100.0
    percentages = [s.percentage for s in stages]
    assert percentages == sorted(percentages)


def test_report_and_to_dict():
    system = compile_equations(["der(x) = v", "der(v) = -x - z", "z = z - x"])
    result = analyze(system, 3, [1.0, 0.0, 1.0], variable_names=system.variables)

    data = result.to_dict()
    assert data["algebraic_variables"] == ["z"]
    assert data["index"] == result.index
    text = result.report()
    assert "index:" in text
    assert "1 algebraic" in text


def test_graph_helpers():
    deps = {0: {1}, 1: {2}, 2: {0}, 3: {3}, 4: set()}
    cycles = find_cycles(deps)
    assert [0, 1, 2, 0] in cycles
    assert [3, 3] in cycles

    sccs = strongly_connected_components(deps, 5)
    assert sorted(sccs) == [[0, 1, 2], [3], [4]]

    algebraic = np.array([False, True])
    assert structural_index(algebraic, {0: {1}, 1: {0}}, np.array([False, False]), 4) == 2
    assert structural_index(np.array([False]), {0: set()}, np.array([False]), 4) == 0


def test_async_analysis():
    system = compile_equations(["der(x) = -x", "z = z - x"])
    result = asyncio.run(DAEAnalyzer().analyze_async(system, 2, [1.0, 1.0]))
    assert result.algebraic_variables.tolist() == [False, True]


def test_async_analysis_cancelled_by_token():
    from dae import CancellationToken

    token = CancellationToken()
    token.cancel()
    system = compile_equations(["der(x) = -x"])
    with pytest.raises(OperationCancelled):
        asyncio.run(DAEAnalyzer().analyze_async(system, 1, [1.0], token=token))
