"""
Dense numerical kernels shared by the analyzer and the solvers.

Everything here works on plain ``numpy`` arrays sized to the number of state
variables; there is no sparse storage.

Finite-difference work (Jacobian columns, algebraic classification) is split
into column batches that run on a :class:`WorkerPool`. Every in-flight batch
borrows its own scratch vectors from a :class:`ScratchPool` and writes only
its own output columns, so no locking is needed around the results.
"""

from __future__ import annotations

import math
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np

from .control import CancellationToken
from .errors import SingularMatrixError

Array = np.ndarray
Residual = Callable[[float, Array, Array], Array]

MIN_BATCH_SIZE = 4
PIVOT_TOLERANCE = 1e-12
DEFAULT_SENSITIVITY = 1e-3


# ----------------------------------------------------------------------
# Linear algebra
# ----------------------------------------------------------------------
def solve_linear_system(a: Array, b: Array, pivot_tolerance: float = PIVOT_TOLERANCE) -> Array:
    """
    Solve ``a @ x = b`` by Gaussian elimination with partial pivoting.

    ``a`` and ``b`` are not modified. A pivot whose magnitude falls below
    ``pivot_tolerance`` times the largest entry of ``a`` raises
    :class:`SingularMatrixError`.
    """
    m = np.array(a, dtype=float)
    x = np.array(b, dtype=float).reshape(-1)
    n = m.shape[0]
    if m.shape != (n, n) or x.shape[0] != n:
        raise ValueError(f"Incompatible shapes for linear solve: {m.shape} and {x.shape}")

    scale = float(np.max(np.abs(m))) if n else 0.0
    if not np.isfinite(scale):
        raise SingularMatrixError("Matrix contains non-finite entries")
    threshold = pivot_tolerance * max(scale, 1e-300)

    for k in range(n):
        p = k + int(np.argmax(np.abs(m[k:, k])))
        if abs(m[p, k]) <= threshold:
            raise SingularMatrixError(f"Matrix is singular (pivot {m[p, k]:.3e} in column {k})")
        if p != k:
            m[[k, p]] = m[[p, k]]
            x[[k, p]] = x[[p, k]]
        factors = m[k + 1:, k] / m[k, k]
        m[k + 1:, k:] -= np.outer(factors, m[k, k:])
        x[k + 1:] -= factors * x[k]

    for k in range(n - 1, -1, -1):
        x[k] = (x[k] - m[k, k + 1:] @ x[k + 1:]) / m[k, k]
    return x


def wrms_norm(v: Array, weights: Array) -> float:
    """Weighted root-mean-square norm ``sqrt(mean((v / w)**2))``."""
    v = np.asarray(v, dtype=float)
    if v.size == 0:
        return 0.0
    return float(np.sqrt(np.mean((v / weights) ** 2)))


def max_norm(v: Array) -> float:
    v = np.asarray(v, dtype=float)
    return float(np.max(np.abs(v))) if v.size else 0.0


# ----------------------------------------------------------------------
# Scratch buffers and workers
# ----------------------------------------------------------------------
class ScratchPool:
    """
    Freelist of fixed-size float buffers.

    Buffers are handed out to one task at a time and returned after use, so
    repeated Jacobian evaluations reuse the same arrays.
    """

    def __init__(self, size: int) -> None:
        self.size = int(size)
        self._free: List[Array] = []
        self._lock = threading.Lock()
        self.allocated = 0

    def acquire(self) -> Array:
        with self._lock:
            if self._free:
                return self._free.pop()
            self.allocated += 1
        return np.empty(self.size, dtype=float)

    def release(self, buf: Array) -> None:
        if buf.shape != (self.size,):
            raise ValueError("Buffer does not belong to this pool")
        with self._lock:
            self._free.append(buf)

    @contextmanager
    def borrow(self, count: int = 1) -> Iterator[Tuple[Array, ...]]:
        bufs = tuple(self.acquire() for _ in range(count))
        try:
            yield bufs
        finally:
            for buf in bufs:
                self.release(buf)


class WorkerPool:
    """
    Thin wrapper around :class:`ThreadPoolExecutor` for column batches.

    Work is split into contiguous batches of at least ``MIN_BATCH_SIZE``
    items. A single batch runs inline on the calling thread.
    """

    def __init__(self, max_workers: Optional[int] = None) -> None:
        self.max_workers = max_workers or min(32, os.cpu_count() or 1)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    def batches(self, n: int) -> List[Tuple[int, int]]:
        size = max(MIN_BATCH_SIZE, math.ceil(n / self.max_workers)) if n else 1
        return [(start, min(start + size, n)) for start in range(0, n, size)]

    def run(self, task: Callable[[int, int], None], n: int) -> None:
        """Run ``task(start, stop)`` for each batch and wait for all of them."""
        spans = self.batches(n)
        if len(spans) <= 1 or self.max_workers == 1:
            for start, stop in spans:
                task(start, stop)
            return

        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers, thread_name_prefix="dae-worker"
                )
            executor = self._executor
        futures = [executor.submit(task, start, stop) for start, stop in spans]
        # result() re-raises the first task exception after all have finished
        for future in futures:
            future.exception()
        for future in futures:
            future.result()

    def close(self) -> None:
        with self._lock:
            if self._executor is not None:
                self._executor.shutdown(wait=True)
                self._executor = None

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


# ----------------------------------------------------------------------
# Finite differences
# ----------------------------------------------------------------------
def default_steps(y: Array) -> Array:
    return math.sqrt(np.finfo(float).eps) * np.maximum(np.abs(y), 1.0)


def finite_difference_jacobian(
    residual: Residual,
    t: float,
    y: Array,
    yp: Array,
    alpha: float = 1.0,
    steps: Union[float, Array, None] = None,
    state_columns: bool = True,
    derivative_columns: Union[bool, Sequence[bool], Array] = True,
    base: Optional[Array] = None,
    pool: Optional[WorkerPool] = None,
    scratch: Optional[ScratchPool] = None,
    token: Optional[CancellationToken] = None,
    progress: Optional[Callable[[int, int], None]] = None,
) -> Array:
    """
    Dense forward-difference iteration matrix ``dF/dy + alpha * dF/dyp``.

    Parameters
    ----------
    residual:
        ``F(t, y, yp)``; must be safe to call from several threads.
    alpha:
        Weight of the derivative sensitivities (``1`` in the analyzer,
        ``1/dt`` for implicit Euler, ``l1/h`` for BDF).
    steps:
        Perturbation size, scalar or per column. Defaults to
        ``sqrt(machine eps) * max(|y_i|, 1)``.
    state_columns, derivative_columns:
        Which sensitivities to include; ``derivative_columns`` may be a
        per-column mask.
    base:
        ``F(t, y, yp)`` if already known.
    token, progress:
        Cancellation is checked before every column; ``progress(done, n)`` is
        called after each batch.
    """
    y = np.asarray(y, dtype=float)
    yp = np.asarray(yp, dtype=float)
    n = y.shape[0]
    if base is None:
        base = np.asarray(residual(t, y, yp), dtype=float)
    if steps is None:
        h = default_steps(y)
    else:
        h = np.broadcast_to(np.asarray(steps, dtype=float), (n,))
    if isinstance(derivative_columns, (bool, np.bool_)):
        der_mask = np.full(n, bool(derivative_columns))
    else:
        der_mask = np.asarray(derivative_columns, dtype=bool)

    jac = np.zeros((base.shape[0], n), dtype=float)
    pool = pool or WorkerPool(max_workers=1)
    scratch = scratch if scratch is not None and scratch.size == n else ScratchPool(n)
    done = [0]
    done_lock = threading.Lock()

    def task(start: int, stop: int) -> None:
        with scratch.borrow(2) as (y_work, yp_work):
            y_work[:] = y
            yp_work[:] = yp
            for i in range(start, stop):
                if token is not None:
                    token.raise_if_cancelled()
                hi = h[i]
                col = np.zeros(base.shape[0], dtype=float)
                if state_columns:
                    y_work[i] = y[i] + hi
                    col += (np.asarray(residual(t, y_work, yp)) - base) / hi
                    y_work[i] = y[i]
                if der_mask[i] and alpha != 0.0:
                    yp_work[i] = yp[i] + hi
                    col += alpha * (np.asarray(residual(t, y, yp_work)) - base) / hi
                    yp_work[i] = yp[i]
                jac[:, i] = col
        if progress is not None:
            with done_lock:
                done[0] += stop - start
                finished = done[0]
            progress(finished, n)

    pool.run(task, n)
    return jac


def classify_algebraic(
    residual: Residual,
    t: float,
    y: Array,
    yp: Array,
    perturbation: float = 1e-6,
    sensitivity: float = DEFAULT_SENSITIVITY,
    pool: Optional[WorkerPool] = None,
    token: Optional[CancellationToken] = None,
) -> Array:
    """
    Mark variables whose residual does not respond to their derivative.

    For each ``i``, ``yp[i]`` is perturbed by ``perturbation``; when the summed
    absolute residual change stays below ``perturbation * sensitivity`` the
    variable is algebraic. Returns a boolean array of length ``n``.
    """
    y = np.asarray(y, dtype=float)
    yp = np.asarray(yp, dtype=float)
    n = y.shape[0]
    base = np.asarray(residual(t, y, yp), dtype=float)
    threshold = perturbation * sensitivity
    algebraic = np.zeros(n, dtype=bool)
    pool = pool or WorkerPool(max_workers=1)
    scratch = ScratchPool(n)

    def task(start: int, stop: int) -> None:
        with scratch.borrow(1) as (yp_work,):
            yp_work[:] = yp
            for i in range(start, stop):
                if token is not None:
                    token.raise_if_cancelled()
                yp_work[i] = yp[i] + perturbation
                change = np.sum(np.abs(np.asarray(residual(t, y, yp_work)) - base))
                yp_work[i] = yp[i]
                algebraic[i] = change < threshold

    pool.run(task, n)
    return algebraic
