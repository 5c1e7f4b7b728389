import numpy as np
import pytest

from dae import CancellationToken, OperationCancelled, SingularMatrixError
from dae.numerics import (
    ScratchPool,
    WorkerPool,
    classify_algebraic,
    finite_difference_jacobian,
    max_norm,
    solve_linear_system,
    wrms_norm,
)


def test_solve_linear_system_matches_numpy():
    rng = np.random.default_rng(1)
    a = rng.normal(size=(6, 6)) + 6.0 * np.eye(6)
    b = rng.normal(size=6)
    a_copy, b_copy = a.copy(), b.copy()

    x = solve_linear_system(a, b)

    assert np.allclose(x, np.linalg.solve(a, b))
    # inputs are left untouched
    assert np.array_equal(a, a_copy)
    assert np.array_equal(b, b_copy)


def test_solve_linear_system_pivots():
    a = np.array([[0.0, 1.0], [1.0, 0.0]])
    assert np.allclose(solve_linear_system(a, [2.0, 3.0]), [3.0, 2.0])


def test_singular_matrix_detected():
    a = np.array([[1.0, 2.0], [2.0, 4.0]])
    with pytest.raises(SingularMatrixError, match="singular"):
        solve_linear_system(a, [1.0, 1.0])
    with pytest.raises(SingularMatrixError):
        solve_linear_system(np.zeros((3, 3)), np.ones(3))
    with pytest.raises(SingularMatrixError, match="non-finite"):
        solve_linear_system(np.array([[np.nan]]), [1.0])


def test_relative_pivot_tolerance_accepts_scaled_matrices():
    a = 1e-9 * np.array([[2.0, 1.0], [1.0, 3.0]])
    x = solve_linear_system(a, 1e-9 * np.array([3.0, 4.0]))
    assert np.allclose(x, [1.0, 1.0])


def test_shape_mismatch_raises():
    with pytest.raises(ValueError, match="Incompatible shapes"):
        solve_linear_system(np.eye(2), np.ones(3))


def test_norms():
    assert max_norm([1.0, -3.0, 2.0]) == 3.0
    assert max_norm([]) == 0.0
    assert np.isclose(wrms_norm([1.0, 2.0], [1.0, 2.0]), 1.0)
    assert np.isclose(wrms_norm([3.0, 4.0], [1.0, 1.0]), np.sqrt(12.5))


def _residual(t, y, yp):
    return np.array([yp[0] - y[1], y[0] ** 2 + y[1]])


def test_finite_difference_jacobian():
    y = np.array([1.5, -0.5])
    yp = np.zeros(2)

    jac = finite_difference_jacobian(_residual, 0.0, y, yp, alpha=2.0)
    expected = np.array([[2.0, -1.0], [3.0, 1.0]])
    assert np.allclose(jac, expected, atol=1e-6)

    dfdy = finite_difference_jacobian(_residual, 0.0, y, yp, derivative_columns=False)
    assert np.allclose(dfdy, [[0.0, -1.0], [3.0, 1.0]], atol=1e-6)

    dfdyp = finite_difference_jacobian(_residual, 0.0, y, yp, state_columns=False)
    assert np.allclose(dfdyp, [[1.0, 0.0], [0.0, 0.0]], atol=1e-6)


def _chain(t, y, yp):
    # r_i = yp_i - y_{i+1} * y_i, last row algebraic
    r = np.empty_like(y)
    r[:-1] = yp[:-1] - y[1:] * y[:-1]
    r[-1] = y.sum() - 1.0
    return r


def test_parallel_jacobian_matches_serial():
    n = 12
    y = np.linspace(0.1, 1.2, n)
    yp = np.zeros(n)
    serial = finite_difference_jacobian(_chain, 0.0, y, yp, alpha=0.5)
    with WorkerPool(max_workers=3) as pool:
        parallel = finite_difference_jacobian(
            _chain, 0.0, y, yp, alpha=0.5, pool=pool, scratch=ScratchPool(n)
        )
    assert np.array_equal(serial, parallel)


def test_jacobian_progress_and_cancellation():
    seen = []
    finite_difference_jacobian(
        _chain, 0.0, np.ones(8), np.zeros(8), progress=lambda done, total: seen.append((done, total))
    )
    assert seen[-1] == (8, 8)

    token = CancellationToken()
    token.cancel()
    with pytest.raises(OperationCancelled):
        finite_difference_jacobian(_chain, 0.0, np.ones(8), np.zeros(8), token=token)


def test_classify_algebraic():
    y = np.array([0.5, 0.5, 0.0])
    algebraic = classify_algebraic(_chain, 0.0, y, np.zeros(3))
    assert algebraic.tolist() == [False, False, True]


def test_scratch_pool_reuses_buffers():
    pool = ScratchPool(4)
    with pool.borrow(2) as (a, b):
        assert a.shape == (4,) and b.shape == (4,)
    with pool.borrow(2):
        pass
    assert pool.allocated == 2
    with pytest.raises(ValueError):
        pool.release(np.empty(3))


def test_worker_pool_propagates_errors():
    def task(start, stop):
        if start > 0:
            raise RuntimeError("boom")

    with WorkerPool(max_workers=4) as pool:
        assert len(pool.batches(16)) == 4
        with pytest.raises(RuntimeError, match="boom"):
            pool.run(task, 16)
