import re

import numpy as np
import pytest

from dae import (
    CancellationToken,
    DasslSettings,
    DasslSolver,
    SolverError,
    SolverSettings,
    StepSizeTooSmallError,
    TooManyFailuresError,
    compile_equations,
)
from dae.dassl import BDF_LEADING, pascal_predict


def _stiff(t, y, yp):
    return np.array([yp[0] + 1000.0 * y[0], yp[1] + y[1]])


def test_bdf_leading_coefficients():
    assert np.allclose(BDF_LEADING, [1.0, 1.5, 11.0 / 6.0, 25.0 / 12.0, 137.0 / 60.0])


def test_pascal_predict_is_taylor_extrapolation():
    # y = 1 + 2s + 3s^2 in units of the step: z = [1, 2, 3]
    z = np.array([[1.0, 2.0, 3.0]])
    zp = pascal_predict(z, 2)
    assert np.allclose(zp, [[6.0, 8.0, 3.0]])


def test_stiff_decay():
    solver = DasslSolver(_stiff, [1.0, 1.0], SolverSettings(0.0, 1.0))
    sol = solver.solve()

    assert sol.success
    assert sol.t[-1] == 1.0
    y0, y1 = sol.final_state
    assert abs(y0) < 1e-3
    assert 0.3 < abs(y1) < 0.4
    assert abs(y1 - np.exp(-1.0)) < 1e-3


def test_step_sizes_stay_within_bounds_and_land_on_end_time():
    dassl = DasslSettings(min_step=1e-8, max_step=0.05)
    sol = DasslSolver(_stiff, [1.0, 1.0], SolverSettings(0.0, 1.3), dassl).solve()

    steps = np.diff(sol.t)
    assert np.all(steps > 0.0)
    assert np.all(steps <= dassl.max_step * (1.0 + 1e-9))
    assert np.all(steps >= dassl.min_step * (1.0 - 1e-9))
    assert sol.t[-1] == 1.3
    assert np.all(sol.t <= 1.3)


def test_harmonic_oscillator_accuracy():
    system = compile_equations(["der(x) = v", "der(v) = -x"])
    sol = DasslSolver(system, [1.0, 0.0], SolverSettings(0.0, 2.0)).solve()

    assert abs(sol.variable("x")[-1] - np.cos(2.0)) < 1e-3
    assert abs(sol.variable("v")[-1] + np.sin(2.0)) < 1e-3


def test_algebraic_variable_follows_constraint():
    system = compile_equations(["der(x) = -x", "z = x - z"])
    sol = DasslSolver(system, [1.0, 0.0], SolverSettings(0.0, 1.0)).solve()

    x, z = sol.variable("x"), sol.variable("z")
    assert abs(x[-1] - np.exp(-1.0)) < 1e-3
    assert np.allclose(z, x, atol=1e-5)
    assert np.allclose(sol.yp[1], 0.0)


def test_order_is_limited_by_advanced_settings():
    events = []
    solver = DasslSolver(_stiff, [1.0, 1.0], SolverSettings(0.0, 0.5), progress=events.append)
    solver.set_advanced_settings(rtol=1e-4, atol=1e-6, max_order=2)
    sol = solver.solve()

    assert sol.success
    orders = [int(re.search(r"Order: (\d+)", e.status).group(1)) for e in events]
    assert max(orders) <= 2
    assert solver.dassl.rtol == 1e-4


def test_cancellation_returns_partial_solution():
    token = CancellationToken()

    def on_progress(event):
        if event.current_time >= 0.5:
            token.cancel()

    system = compile_equations(["der(x) = -x"])
    sol = DasslSolver(system, [1.0], SolverSettings(0.0, 1.0), progress=on_progress).solve(token)

    assert sol.cancelled
    assert 0.5 <= sol.t[-1] < 1.0


def _fails_after_start(t, y, yp):
    return np.array([yp[0] - (np.nan if t > 0.0 else 0.0)])


def test_too_many_failures():
    solver = DasslSolver(
        _fails_after_start, [1.0], SolverSettings(0.0, 1.0), DasslSettings(max_consecutive_failures=5)
    )
    with pytest.raises(TooManyFailuresError, match="Too many consecutive failures"):
        solver.solve()
    assert solver.stats["rejected_steps"] == 6


def test_step_size_too_small():
    dassl = DasslSettings(min_step=1e-5, max_consecutive_failures=50)
    solver = DasslSolver(_fails_after_start, [1.0], SolverSettings(0.0, 1.0), dassl)
    with pytest.raises(StepSizeTooSmallError, match="Step size too small"):
        solver.solve()


def test_span_shorter_than_min_step_is_rejected():
    solver = DasslSolver(_stiff, [1.0, 1.0], SolverSettings(0.0, 1e-11), DasslSettings(min_step=1e-10))
    with pytest.raises(ValueError, match="shorter than min_step"):
        solver.solve()

    ok = DasslSolver(_stiff, [1.0, 1.0], SolverSettings(0.0, 1e-10), DasslSettings(min_step=1e-10))
    assert ok.solve().t[-1] == 1e-10


def test_solver_errors_share_a_base_class():
    assert issubclass(TooManyFailuresError, SolverError)
    assert issubclass(StepSizeTooSmallError, RuntimeError)


def test_invalid_dassl_settings():
    with pytest.raises(ValueError, match="max_order"):
        DasslSettings(max_order=6)
    with pytest.raises(ValueError, match="Step bounds"):
        DasslSettings(min_step=1.0, max_step=0.1)
    assert DasslSettings().clamp_step(1.0) == 1e-2
    assert DasslSettings.from_dict({"rtol": 1e-3}).rtol == 1e-3
