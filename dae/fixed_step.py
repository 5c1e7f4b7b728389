"""
Fixed-step solvers: explicit Euler, implicit Euler and classical RK4.

All three log exactly ``intervals + 1`` points at ``t_k = t0 + k*dt``, with the
last point placed exactly on ``end_time``. Algebraic variables are held
during the explicit stages and then resolved by the algebraic Newton
sub-iteration of :class:`SolverBase` before a step is accepted.
"""

from __future__ import annotations

import logging
from abc import abstractmethod

import numpy as np

from .control import CancellationToken
from .errors import SingularMatrixError
from .solution import Solution
from .solver_base import SolverBase, newton_solve

logger = logging.getLogger(__name__)

Array = np.ndarray


class FixedStepSolver(SolverBase):
    """Common time loop of the fixed-step solvers."""

    def _integrate(self, solution: Solution, token: CancellationToken) -> None:
        times = self.settings.time_points
        dt = self.settings.dt

        y = self.solve_algebraic(times[0], self.initial_state.copy(), np.zeros(self.dimension), token)
        yp = self.derivative_estimate(times[0], y)
        solution.add(times[0], y, yp)
        self.report_progress(times[0], self._status(times[0], dt))

        for k in range(1, times.shape[0]):
            self.checkpoint(token)
            t_prev, t_next = times[k - 1], times[k]
            y_new = self.step(t_prev, y, yp, t_next - t_prev, token)
            y_new = self.solve_algebraic(t_next, y_new, yp, token)
            yp = self.logged_derivative(t_next, y, y_new, t_next - t_prev, yp)
            y = y_new
            self.stats["steps"] += 1
            solution.add(t_next, y, yp)
            self.report_progress(t_next, self._status(t_next, dt))

    def _status(self, t: float, dt: float) -> str:
        return f"Time: {t:.3f}/{self.end_time:.3f}, Step size: {dt:.3e}"

    @abstractmethod
    def step(self, t: float, y: Array, yp: Array, dt: float, token: CancellationToken) -> Array:
        """Advance one step from ``(t, y)`` and return the new state."""

    def logged_derivative(self, t: float, y_prev: Array, y_new: Array, dt: float, yp: Array) -> Array:
        return self.derivative_estimate(t, y_new, yp)


class ExplicitEulerSolver(FixedStepSolver):
    """``y_{n+1} = y_n + dt * f(t_n, y_n)``. Stable only for small ``dt``."""

    name = "Explicit Euler"

    def step(self, t, y, yp, dt, token):
        rate = self.derivative_estimate(t, y, yp)
        return y + dt * rate


class ImplicitEulerSolver(FixedStepSolver):
    """
    Backward Euler on the residual form.

    Each step predicts with one explicit Euler step and then Newton-iterates
    ``F(t + dt, y, (y - y_n) / dt) = 0`` using the iteration matrix
    ``dF/dy + dF/dyp / dt``. An unconverged or singular iteration is logged
    and the last iterate is kept.
    """

    name = "Implicit Euler"

    def step(self, t, y, yp, dt, token):
        t_new = t + dt
        rate = self.derivative_estimate(t, y, yp)
        y_pred = y + dt * rate
        y_prev = y

        def fun(x: Array) -> Array:
            return self.residual(t_new, x, (x - y_prev) / dt)

        def jac(x: Array) -> Array:
            return self.iteration_matrix(t_new, x, (x - y_prev) / dt, 1.0 / dt, token=token)

        try:
            result = newton_solve(
                fun,
                jac,
                y_pred,
                self.settings.newton_tolerance,
                self.settings.implicit_max_iterations,
                token,
            )
        except SingularMatrixError as exc:
            self.stats["newton_failures"] += 1
            logger.warning("Implicit Euler: singular iteration matrix at t = %g (%s)", t_new, exc)
            y_new = y_pred
        else:
            if not result.converged:
                self.stats["newton_failures"] += 1
                logger.warning(
                    "Implicit Euler: Newton did not converge at t = %g (residual %.3e)",
                    t_new,
                    result.residual_norm,
                )
            y_new = result.x

        return y_new

    def logged_derivative(self, t, y_prev, y_new, dt, yp):
        rate = (y_new - y_prev) / dt
        rate[self.algebraic] = 0.0
        return rate


class RungeKutta4Solver(FixedStepSolver):
    """Classical four-stage Runge-Kutta with weights ``(1, 2, 2, 1) / 6``."""

    name = "Runge-Kutta 4"

    def step(self, t, y, yp, dt, token):
        k1 = self.derivative_estimate(t, y, yp)
        k2 = self.derivative_estimate(t + 0.5 * dt, y + 0.5 * dt * k1, k1)
        k3 = self.derivative_estimate(t + 0.5 * dt, y + 0.5 * dt * k2, k2)
        k4 = self.derivative_estimate(t + dt, y + dt * k3, k3)
        return y + dt * (k1 + 2.0 * k2 + 2.0 * k3 + k4) / 6.0
