"""
Variable-order, variable-step BDF solver in the spirit of DASSL.

The method is written in Nordsieck form. For every variable the history array
holds the scaled derivatives

    z[:, j] = h**j * y^(j) / j!        j = 0 .. order

Each step runs through three phases:

Predict
    Multiply the history by the Pascal matrix (Taylor extrapolation to
    ``t + h``). Algebraic variables keep their last value and a zero
    derivative.
Correct
    Solve ``F(t + h, y_p + d, (h*y'_p + l1*d) / h) = 0`` for the correction
    ``d`` with a modified Newton iteration using the iteration matrix
    ``dF/dy + (l1/h) dF/dyp``. ``l1`` is the leading BDF coefficient of the
    current order (1, 3/2, 11/6, 25/12, 137/60).
Accept or reject
    The local error is estimated from the size of the correction. Rejected
    attempts halve the step and retry from the same time; accepted steps
    update the history with ``z += d * l`` and choose the next order and
    step size.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence, Tuple

import numpy as np

from .control import CancellationToken, ProgressCallback
from .errors import SingularMatrixError, StepSizeTooSmallError, TooManyFailuresError
from .numerics import (
    Residual,
    finite_difference_jacobian,
    max_norm,
    solve_linear_system,
    wrms_norm,
)
from .settings import DasslSettings, SolverSettings
from .solution import Solution
from .solver_base import SolverBase

logger = logging.getLogger(__name__)

Array = np.ndarray

MAX_ORDER = 5
NEWTON_CONVERGENCE = 0.33
NOMINAL_FLOOR = 1e-6


def _bdf_correction_vectors(max_order: int = MAX_ORDER) -> Tuple[Array, ...]:
    """
    Coefficients of ``prod_{j=1..q} (1 + x/j)`` for ``q = 1 .. max_order``.

    Entry ``q - 1`` has length ``q + 1``; element 1 is the leading BDF
    coefficient of order ``q``.
    """
    vectors = []
    poly = np.array([1.0])
    for q in range(1, max_order + 1):
        poly = np.convolve(poly, [1.0, 1.0 / q])
        vectors.append(poly.copy())
    return tuple(vectors)


BDF_L = _bdf_correction_vectors()
BDF_LEADING = tuple(float(l[1]) for l in BDF_L)


def pascal_predict(z: Array, order: int) -> Array:
    """Taylor-extrapolate a Nordsieck array one step ahead."""
    zp = z.copy()
    for k in range(order):
        for j in range(order, k, -1):
            zp[:, j - 1] += zp[:, j]
    return zp


class StepPhase(Enum):
    PREDICT = "predict"
    CORRECT = "correct"
    ACCEPT_OR_REJECT = "accept_or_reject"
    DONE = "done"


@dataclass
class IntegrationState:
    """Everything the stepping loop mutates, owned by one ``solve()`` call."""

    t: float
    h: float
    order: int
    z: Array
    algebraic: Array
    nominal: Array
    phase: StepPhase = StepPhase.PREDICT
    consecutive_failures: int = 0
    steps_at_order: int = 0
    rejected_this_step: bool = False
    last_error: float = 0.0
    z_pred: Optional[Array] = field(default=None, repr=False)
    delta: Optional[Array] = field(default=None, repr=False)

    @property
    def differential(self) -> Array:
        return ~self.algebraic

    def rescale(self, h_new: float) -> None:
        """Change the step size, rescaling the history columns by ``r**j``."""
        r = h_new / self.h
        self.z *= r ** np.arange(self.z.shape[1])
        self.h = h_new


@dataclass
class CorrectionResult:
    converged: bool
    delta: Array
    iterations: int
    reason: str = ""


class DasslSolver(SolverBase):
    """
    Variable-order (1 to 5), variable-step BDF solver.

    Parameters
    ----------
    system, initial_state, settings, variable_names, progress, max_workers:
        See :class:`SolverBase`. Only the time span of ``settings`` is used
        for stepping.
    dassl:
        Tolerances, order and step-size limits.
    """

    name = "DASSL"

    def __init__(
        self,
        system: Residual,
        initial_state: Sequence[float],
        settings: Optional[SolverSettings] = None,
        dassl: Optional[DasslSettings] = None,
        variable_names: Optional[Sequence[str]] = None,
        progress: Optional[ProgressCallback] = None,
        max_workers: Optional[int] = 1,
    ) -> None:
        super().__init__(system, initial_state, settings, variable_names, progress, max_workers)
        self.dassl = dassl or DasslSettings()
        self.stats.update({"rejected_steps": 0, "order_changes": 0})

    def set_advanced_settings(self, rtol: float, atol: float, max_order: int) -> None:
        self.dassl = DasslSettings(
            **{**self.dassl.to_dict(), "rtol": rtol, "atol": atol, "max_order": max_order}
        )

    def validate_inputs(self) -> None:
        super().validate_inputs()
        # every step, the last one included, must lie in [min_step, max_step]
        if self.end_time - self.start_time < self.dassl.min_step:
            raise ValueError(
                f"Integration span {self.end_time - self.start_time!r} is shorter than "
                f"min_step {self.dassl.min_step!r}."
            )

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------
    def _initial_derivative(self, t0: float, y0: Array, token: CancellationToken) -> Array:
        """
        Derivative consistent with ``F(t0, y0, yp0) = 0`` for the differential
        variables; zero for algebraic ones.
        """
        yp0 = self.derivative_estimate(t0, y0)
        diff = np.flatnonzero(~self.algebraic)
        if diff.size == 0:
            return yp0
        r = self.residual(t0, y0, yp0)
        for _ in range(self.dassl.max_newton_iterations):
            if max_norm(r[diff]) <= self.dassl.atol:
                return yp0
            token.raise_if_cancelled()
            dfdyp = finite_difference_jacobian(
                self.residual, t0, y0, yp0, base=r, state_columns=False
            )
            try:
                step = solve_linear_system(dfdyp[np.ix_(diff, diff)], -r[diff])
            except SingularMatrixError as exc:
                logger.debug("Initial derivative refinement skipped: %s", exc)
                return yp0
            yp0[diff] += step
            r = self.residual(t0, y0, yp0)
        return yp0

    def _new_state(self, token: CancellationToken) -> Tuple[IntegrationState, Array, Array]:
        t0 = self.start_time
        y0 = self.solve_algebraic(t0, self.initial_state.copy(), np.zeros(self.dimension), token)
        yp0 = self._initial_derivative(t0, y0, token)
        yp0[self.algebraic] = 0.0

        h0 = self.dassl.clamp_step(min(self.dassl.initial_step, self.end_time - t0))
        z = np.zeros((self.dimension, MAX_ORDER + 2))
        z[:, 0] = y0
        z[:, 1] = h0 * yp0
        state = IntegrationState(
            t=t0,
            h=h0,
            order=1,
            z=z,
            algebraic=self.algebraic.copy(),
            nominal=np.maximum(np.abs(y0), NOMINAL_FLOOR),
        )
        return state, y0, yp0

    def _weights(self, state: IntegrationState, y: Array) -> Array:
        return self.dassl.rtol * np.maximum(np.abs(y), state.nominal) + self.dassl.atol

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------
    def predict(self, state: IntegrationState) -> Array:
        z_pred = pascal_predict(state.z, state.order)
        z_pred[state.algebraic, 1:] = 0.0
        return z_pred

    def correct(
        self, state: IntegrationState, z_pred: Array, token: CancellationToken
    ) -> CorrectionResult:
        h = state.h
        t_new = state.t + h
        l1 = BDF_LEADING[state.order - 1]
        y_pred = z_pred[:, 0]
        hyp_pred = z_pred[:, 1]
        weights = self._weights(state, y_pred)
        delta = np.zeros(self.dimension)

        def point(d: Array) -> Tuple[Array, Array]:
            y = y_pred + d
            yp = (hyp_pred + l1 * d) / h
            yp[state.algebraic] = 0.0
            return y, yp

        y, yp = point(delta)
        r = self.residual(t_new, y, yp)
        matrix = self.iteration_matrix(
            t_new, y, yp, l1 / h, base=r, derivative_columns=state.differential, token=token
        )

        for it in range(1, self.dassl.max_newton_iterations + 1):
            if max_norm(r) < self.dassl.rtol * 1e-3:
                return CorrectionResult(True, delta, it - 1)
            try:
                update = solve_linear_system(matrix, -r)
            except SingularMatrixError as exc:
                return CorrectionResult(False, delta, it, str(exc))
            delta = delta + update
            token.raise_if_cancelled()
            if not np.all(np.isfinite(delta)):
                return CorrectionResult(False, delta, it, "correction diverged")
            y, yp = point(delta)
            r = self.residual(t_new, y, yp)
            if wrms_norm(update, weights) <= NEWTON_CONVERGENCE or max_norm(r) < self.dassl.rtol:
                return CorrectionResult(True, delta, it)
        return CorrectionResult(False, delta, self.dassl.max_newton_iterations, "no convergence")

    def error_norm(self, state: IntegrationState, delta: Array, y_new: Array) -> float:
        # Differential variables only. Algebraic predictions hold the last value,
        # so their correction is not a truncation error; weighting it by atol
        # would drive every step down to min_step.
        diff = state.differential
        if not np.any(diff):
            return 0.0
        weights = self._weights(state, y_new)
        return wrms_norm(delta[diff], weights[diff]) / (state.order + 1)

    def _limit_step(self, state: IntegrationState) -> None:
        """Shorten the step so the integration lands exactly on ``end_time``."""
        remaining = self.end_time - state.t
        h = state.h
        if h >= remaining:
            h = remaining
        elif remaining - h < self.dassl.min_step:
            h = remaining if remaining <= self.dassl.max_step else 0.5 * remaining
        if h != state.h:
            state.rescale(h)

    def _reject(self, state: IntegrationState, reason: str) -> None:
        state.consecutive_failures += 1
        state.rejected_this_step = True
        self.stats["rejected_steps"] += 1
        if state.consecutive_failures > self.dassl.max_consecutive_failures:
            raise TooManyFailuresError(
                f"Too many consecutive failures ({state.consecutive_failures}) at t = {state.t:g}: "
                f"{reason}"
            )
        h_new = 0.5 * state.h
        if h_new < self.dassl.min_step:
            raise StepSizeTooSmallError(
                f"Step size too small at t = {state.t:g} (h = {h_new:.3e}): {reason}"
            )
        logger.debug("Step rejected at t = %g (%s); h -> %.3e", state.t, reason, h_new)
        state.rescale(h_new)

    def _accept(self, state: IntegrationState, z_pred: Array, delta: Array, err: float) -> None:
        q = state.order
        l = BDF_L[q - 1]
        z = z_pred.copy()
        z[:, : q + 1] += np.outer(delta, l)
        z[state.algebraic, 1:] = 0.0
        z[:, q + 1:] = 0.0
        state.z = z
        state.t += state.h
        state.steps_at_order += 1

        new_order = q
        if (
            not state.rejected_this_step
            and err < 0.5
            and q < self.dassl.max_order
            and state.steps_at_order > q
        ):
            new_order = q + 1
            state.z[:, q + 1] = delta * l[q] / (q + 1)
            state.z[state.algebraic, q + 1] = 0.0
        elif err > 0.9 and q > 1:
            new_order = q - 1
            state.z[:, q] = 0.0
        if new_order != q:
            logger.debug("Order %d -> %d at t = %g", q, new_order, state.t)
            state.order = new_order
            state.steps_at_order = 0
            self.stats["order_changes"] += 1

        factor = self.dassl.safety_factor * (1.0 / max(err, 1e-10)) ** (1.0 / (new_order + 1))
        factor = min(max(factor, 0.5), 2.0)
        state.rescale(self.dassl.clamp_step(state.h * factor))
        state.consecutive_failures = 0
        state.rejected_this_step = False
        state.last_error = err

    # ------------------------------------------------------------------
    # Stepping loop
    # ------------------------------------------------------------------
    def _integrate(self, solution: Solution, token: CancellationToken) -> None:
        state, y0, yp0 = self._new_state(token)
        solution.add(state.t, y0, yp0)
        self.report_progress(state.t, self._status(state))

        while state.t < self.end_time:
            if state.phase is StepPhase.PREDICT:
                self.checkpoint(token)
                self._limit_step(state)
                state.z_pred = self.predict(state)
                state.phase = StepPhase.CORRECT

            elif state.phase is StepPhase.CORRECT:
                result = self.correct(state, state.z_pred, token)
                state.delta = result.delta
                if not result.converged:
                    self.stats["newton_failures"] += 1
                    self._reject(state, f"corrector failed ({result.reason})")
                    state.phase = StepPhase.PREDICT
                else:
                    state.phase = StepPhase.ACCEPT_OR_REJECT

            else:
                y_new = state.z_pred[:, 0] + state.delta
                err = self.error_norm(state, state.delta, y_new)
                if err > 1.0:
                    self._reject(state, f"error estimate {err:.3g}")
                    state.phase = StepPhase.PREDICT
                    continue
                h_used = state.h
                l1 = BDF_LEADING[state.order - 1]
                yp_new = (state.z_pred[:, 1] + l1 * state.delta) / h_used
                yp_new[state.algebraic] = 0.0
                self._accept(state, state.z_pred, state.delta, err)
                if self.end_time - state.t <= 1e-12 * max(1.0, abs(self.end_time)):
                    state.t = self.end_time
                solution.add(state.t, y_new, yp_new)
                self.stats["steps"] += 1
                self.report_progress(state.t, self._status(state, h_used))
                state.phase = StepPhase.PREDICT

        state.phase = StepPhase.DONE

    def _status(self, state: IntegrationState, h: Optional[float] = None) -> str:
        h = state.h if h is None else h
        return (
            f"Time: {state.t:.3f}/{self.end_time:.3f}, Step size: {h:.3e}, "
            f"Order: {state.order}"
        )
