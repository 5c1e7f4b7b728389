"""
Shared solver machinery.

Every solver works on the residual form ``F(t, y, yp) = 0`` and follows the
same lifecycle::

    solver = ImplicitEulerSolver(system, y0, SolverSettings(0.0, 1.0, 100))
    solver.initialize()          # validate, classify variables
    solution = solver.solve()    # integrate
    solver.cleanup()

``pause()`` / ``resume()`` may be called from another thread; they take effect
at the next step boundary. Cancelling the token passed to :meth:`solve` stops
the integration at the next checkpoint and returns the partial solution with
status ``cancelled``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Mapping, Optional, Sequence

import numpy as np

from .control import CancellationToken, PauseGate, ProgressCallback, ProgressEvent
from .errors import OperationCancelled, SingularMatrixError, SolverError
from .numerics import (
    Residual,
    ScratchPool,
    WorkerPool,
    classify_algebraic,
    finite_difference_jacobian,
    max_norm,
    solve_linear_system,
)
from .settings import SolverSettings
from .solution import Solution

logger = logging.getLogger(__name__)

Array = np.ndarray


@dataclass
class NewtonResult:
    x: Array
    converged: bool
    iterations: int
    residual_norm: float


def newton_solve(
    fun: Callable[[Array], Array],
    jac: Callable[[Array], Array],
    x0: Array,
    tol: float,
    max_iterations: int,
    token: Optional[CancellationToken] = None,
) -> NewtonResult:
    """
    Plain Newton-Raphson iteration.

    Converged when the residual max-norm is below ``tol`` or the update is
    below ``tol * (1 + |x|)``. A singular Jacobian propagates as
    :class:`SingularMatrixError`.
    """
    x = np.array(x0, dtype=float)
    r = np.asarray(fun(x), dtype=float)
    norm = max_norm(r)
    for it in range(1, max_iterations + 1):
        if norm < tol:
            return NewtonResult(x, True, it - 1, norm)
        dx = solve_linear_system(jac(x), -r)
        x = x + dx
        r = np.asarray(fun(x), dtype=float)
        norm = max_norm(r)
        if token is not None:
            token.raise_if_cancelled()
        if norm < tol or max_norm(dx) <= tol * (1.0 + max_norm(x)):
            return NewtonResult(x, True, it, norm)
    return NewtonResult(x, norm < tol, max_iterations, norm)


class SolverBase(ABC):
    """
    Base class of all solvers.

    Parameters
    ----------
    system:
        Residual callable ``F(t, y, yp)``, typically a
        :class:`dae.equations.CompiledSystem`.
    initial_state:
        Consistent (or nearly consistent) initial state ``y(t0)``.
    settings:
        Time span and fixed-step configuration.
    variable_names:
        Names attached to the solution; taken from ``system.variables`` when
        available.
    progress:
        Optional callback receiving a :class:`ProgressEvent` per step.
    max_workers:
        Worker threads for finite-difference Jacobians.
    """

    name = "solver"

    def __init__(
        self,
        system: Residual,
        initial_state: Sequence[float],
        settings: Optional[SolverSettings] = None,
        variable_names: Optional[Sequence[str]] = None,
        progress: Optional[ProgressCallback] = None,
        max_workers: Optional[int] = 1,
    ) -> None:
        self.system = system
        self.initial_state = np.array(initial_state, dtype=float).reshape(-1)
        self.settings = settings or SolverSettings()
        if variable_names is None:
            variable_names = getattr(system, "variables", None)
        self.variable_names = tuple(variable_names or ())
        self.progress_callbacks: List[ProgressCallback] = []
        if progress is not None:
            self.progress_callbacks.append(progress)

        self.algebraic: Array = np.zeros(self.dimension, dtype=bool)
        self._gate = PauseGate()
        self._pool = WorkerPool(max_workers)
        self._scratch = ScratchPool(self.dimension)
        self._initialized = False
        self.current_solution: Optional[Solution] = None
        self.stats = {"steps": 0, "residual_evaluations": 0, "jacobians": 0, "newton_failures": 0}

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def dimension(self) -> int:
        return int(self.initial_state.shape[0])

    @property
    def start_time(self) -> float:
        return self.settings.start_time

    @property
    def end_time(self) -> float:
        return self.settings.end_time

    @property
    def intervals(self) -> int:
        return self.settings.intervals

    @property
    def is_paused(self) -> bool:
        return self._gate.paused

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def validate_inputs(self) -> None:
        if self.initial_state.size == 0:
            raise ValueError("Initial state is not set.")
        self.settings.validate()
        if self.variable_names and len(self.variable_names) != self.dimension:
            raise ValueError(
                f"{len(self.variable_names)} variable names given for "
                f"{self.dimension} state variables."
            )

    def initialize(self, parameters: Optional[Mapping[str, float]] = None) -> None:
        """
        Bind parameter values, validate the configuration and classify
        algebraic variables.
        """
        if parameters:
            with_parameters = getattr(self.system, "with_parameters", None)
            if with_parameters is None:
                raise ValueError("This residual function does not accept parameters.")
            self.system = with_parameters(parameters)
        self.validate_inputs()
        self.algebraic = classify_algebraic(
            self.residual,
            self.start_time,
            self.initial_state,
            np.zeros(self.dimension),
            pool=self._pool,
        )
        self._initialized = True
        logger.debug(
            "%s initialized: %d variables, %d algebraic",
            self.name,
            self.dimension,
            int(self.algebraic.sum()),
        )

    def solve(self, token: Optional[CancellationToken] = None) -> Solution:
        """
        Integrate from ``start_time`` to ``end_time``.

        Returns the solution with status ``completed``, or the partial
        solution with status ``cancelled`` when ``token`` is cancelled.
        Fatal integration failures raise :class:`SolverError`.
        """
        if not self._initialized:
            self.initialize()
        token = token or CancellationToken()
        solution = Solution(variable_names=self.variable_names, solver_name=self.name)
        self.current_solution = solution
        logger.info(
            "%s: integrating %d variables over [%g, %g]",
            self.name,
            self.dimension,
            self.start_time,
            self.end_time,
        )
        try:
            self._integrate(solution, token)
        except OperationCancelled:
            logger.info("%s: cancelled at t = %g", self.name, self._last_time(solution))
            solution.statistics = dict(self.stats)
            return solution.finalize(cancelled=True)
        except SolverError as exc:
            logger.error("%s failed at t = %g: %s", self.name, self._last_time(solution), exc)
            raise
        solution.statistics = dict(self.stats)
        logger.info("%s: finished with %d points", self.name, len(solution))
        return solution.finalize()

    def pause(self) -> None:
        self._gate.pause()

    def resume(self) -> None:
        self._gate.resume()

    def cleanup(self) -> None:
        self._pool.close()
        self._gate.resume()
        self.current_solution = None

    @abstractmethod
    def _integrate(self, solution: Solution, token: CancellationToken) -> None:
        """Run the time-stepping loop, appending accepted points to ``solution``."""

    # ------------------------------------------------------------------
    # Step-boundary plumbing
    # ------------------------------------------------------------------
    def checkpoint(self, token: CancellationToken) -> None:
        """Block while paused; raise :class:`OperationCancelled` if cancelled."""
        token.raise_if_cancelled()
        self._gate.wait(token)

    def add_progress_callback(self, callback: ProgressCallback) -> None:
        self.progress_callbacks.append(callback)

    def report_progress(self, t: float, status: str) -> None:
        event = ProgressEvent(float(t), self.end_time, status, self.start_time)
        for callback in self.progress_callbacks:
            callback(event)

    @staticmethod
    def _last_time(solution: Solution) -> float:
        return solution.time_points[-1] if solution.time_points else float("nan")

    # ------------------------------------------------------------------
    # Residual helpers
    # ------------------------------------------------------------------
    def residual(self, t: float, y: Array, yp: Array) -> Array:
        self.stats["residual_evaluations"] += 1
        return np.asarray(self.system(t, y, yp), dtype=float)

    def derivative_estimate(self, t: float, y: Array, yp: Optional[Array] = None) -> Array:
        """
        Explicit derivative read off the residual: ``yp - F(t, y, yp)``.

        Exact for equations written as ``yp = f(t, y)``. Algebraic components
        are set to zero.
        """
        if yp is None:
            yp = np.zeros(self.dimension)
        rate = yp - self.residual(t, y, yp)
        rate[self.algebraic] = 0.0
        return rate

    def iteration_matrix(
        self,
        t: float,
        y: Array,
        yp: Array,
        alpha: float,
        base: Optional[Array] = None,
        derivative_columns=True,
        token: Optional[CancellationToken] = None,
    ) -> Array:
        """``dF/dy + alpha * dF/dyp`` by forward differences."""
        self.stats["jacobians"] += 1
        return finite_difference_jacobian(
            self.residual,
            t,
            y,
            yp,
            alpha=alpha,
            derivative_columns=derivative_columns,
            base=base,
            pool=self._pool,
            scratch=self._scratch,
            token=token,
        )

    def solve_algebraic(
        self,
        t: float,
        y: Array,
        yp: Array,
        token: Optional[CancellationToken] = None,
    ) -> Array:
        """
        Newton sub-iteration on the algebraic variables only.

        Equation ``i`` is paired with variable ``i``. A singular or
        unconverged sub-problem is logged and the best iterate is returned.
        """
        alg = np.flatnonzero(self.algebraic)
        if alg.size == 0:
            return y
        y_full = np.array(y, dtype=float)
        dummy = np.zeros(alg.size)

        def sub_residual(_t: float, z: Array, _zp: Array) -> Array:
            work = y_full.copy()
            work[alg] = z
            return self.residual(t, work, yp)[alg]

        def fun(z: Array) -> Array:
            return sub_residual(t, z, dummy)

        def jac(z: Array) -> Array:
            return finite_difference_jacobian(sub_residual, t, z, dummy, derivative_columns=False)

        try:
            result = newton_solve(
                fun,
                jac,
                y_full[alg],
                self.settings.newton_tolerance,
                self.settings.max_newton_iterations,
                token,
            )
        except SingularMatrixError as exc:
            logger.debug("Algebraic sub-iteration at t = %g skipped: %s", t, exc)
            return y_full
        if not result.converged:
            self.stats["newton_failures"] += 1
            logger.warning(
                "Algebraic sub-iteration did not converge at t = %g (residual %.3e)",
                t,
                result.residual_norm,
            )
        y_full[alg] = result.x
        return y_full
