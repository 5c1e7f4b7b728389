"""
Structural and numerical analysis of a residual system ``F(t, y, yp) = 0``.

The analysis is purely perturbation based; it never looks at equation text.
Given one consistent-enough point ``(t0, y0, yp0)`` it reports

- which variables are algebraic (residual insensitive to ``yp[i]``),
- the variable dependency graph, circular dependencies and strongly
  connected components,
- a structural estimate of the DAE index,
- the Jacobian ``dF/dy + dF/dyp``, its condition number, eigenvalues of the
  linearised system and a stiffness ratio,
- human-readable warnings.

Numerical diagnostics are best effort: failures there are logged and replaced
by sentinel values instead of aborting the analysis.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

import numpy as np
from scipy import linalg

from .control import AnalysisProgress, AnalysisProgressCallback, CancellationToken
from .errors import OperationCancelled
from .numerics import Residual, WorkerPool, classify_algebraic, finite_difference_jacobian
from .settings import AnalyzerSettings

logger = logging.getLogger(__name__)

Array = np.ndarray


@dataclass
class SystemStructure:
    """Block decomposition of the dependency graph."""

    blocks: List[List[int]] = field(default_factory=list)
    strongly_connected_components: List[List[int]] = field(default_factory=list)
    single_equations: List[int] = field(default_factory=list)


@dataclass
class DAEAnalysis:
    index: int
    algebraic_variables: Array
    variable_dependencies: Dict[int, Set[int]]
    has_circular_dependency: bool
    circular_dependency_paths: List[str]
    is_stiff: bool
    condition_number: float
    stiffness_ratio: float
    eigenvalues: List[complex]
    warnings: List[str]
    system_structure: SystemStructure
    variable_names: Tuple[str, ...] = ()
    jacobian: Optional[Array] = field(default=None, repr=False)

    @property
    def dimension(self) -> int:
        return int(self.algebraic_variables.shape[0])

    @property
    def algebraic_count(self) -> int:
        return int(np.count_nonzero(self.algebraic_variables))

    @property
    def differential_count(self) -> int:
        return self.dimension - self.algebraic_count

    def name(self, idx: int) -> str:
        if idx < len(self.variable_names):
            return self.variable_names[idx]
        return f"y{idx}"

    # ------------------------------------------------------------------
    # Output helpers
    # ------------------------------------------------------------------
    def to_dict(self) -> Dict:
        """JSON-serialisable summary (complex eigenvalues as ``[re, im]``)."""
        return {
            "index": self.index,
            "algebraic_variables": [self.name(i) for i in np.flatnonzero(self.algebraic_variables)],
            "variable_dependencies": {
                self.name(i): sorted(self.name(j) for j in deps)
                for i, deps in self.variable_dependencies.items()
            },
            "has_circular_dependency": self.has_circular_dependency,
            "circular_dependency_paths": list(self.circular_dependency_paths),
            "is_stiff": self.is_stiff,
            "condition_number": self.condition_number,
            "stiffness_ratio": self.stiffness_ratio,
            "eigenvalues": [[ev.real, ev.imag] for ev in self.eigenvalues],
            "warnings": list(self.warnings),
            "blocks": [[self.name(i) for i in b] for b in self.system_structure.blocks],
        }

    def report(self) -> str:
        lines = [
            "DAE analysis",
            f"  variables:        {self.dimension} "
            f"({self.differential_count} differential, {self.algebraic_count} algebraic)",
            f"  index:            {self.index}",
            f"  stiff:            {self.is_stiff} (ratio {self.stiffness_ratio:.6g})",
            f"  condition number: {self.condition_number:.6g}",
        ]
        if self.eigenvalues:
            shown = ", ".join(f"{ev.real:.4g}{ev.imag:+.4g}j" for ev in self.eigenvalues)
            lines.append(f"  eigenvalues:      {shown}")
        if self.system_structure.blocks:
            for block in self.system_structure.blocks:
                lines.append("  coupled block:    " + ", ".join(self.name(i) for i in block))
        for warning in self.warnings:
            lines.append(f"  warning: {warning}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Graph helpers
# ----------------------------------------------------------------------
def find_cycles(dependencies: Dict[int, Set[int]]) -> List[List[int]]:
    """
    Depth-first search for back edges.

    Each returned list is a closed path ``[a, b, ..., a]``.
    """
    cycles: List[List[int]] = []
    seen_cycles: Set[Tuple[int, ...]] = set()
    visited: Set[int] = set()

    for root in sorted(dependencies):
        if root in visited:
            continue
        path: List[int] = [root]
        on_path: Set[int] = {root}
        stack = [iter(sorted(dependencies.get(root, ())))]
        visited.add(root)
        while stack:
            child = next(stack[-1], None)
            if child is None:
                stack.pop()
                on_path.discard(path.pop())
                continue
            if child in on_path:
                cycle = path[path.index(child):] + [child]
                key = tuple(sorted(set(cycle)))
                if key not in seen_cycles:
                    seen_cycles.add(key)
                    cycles.append(cycle)
            elif child not in visited:
                visited.add(child)
                path.append(child)
                on_path.add(child)
                stack.append(iter(sorted(dependencies.get(child, ()))))
    return cycles


def strongly_connected_components(dependencies: Dict[int, Set[int]], n: int) -> List[List[int]]:
    """Tarjan's algorithm, iterative. Components are returned sorted."""
    index_of: Dict[int, int] = {}
    lowlink: Dict[int, int] = {}
    on_stack: Set[int] = set()
    stack: List[int] = []
    components: List[List[int]] = []
    counter = 0

    for root in range(n):
        if root in index_of:
            continue
        work = [(root, iter(sorted(dependencies.get(root, ()))))]
        index_of[root] = lowlink[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        while work:
            node, children = work[-1]
            child = next(children, None)
            if child is not None:
                if child not in index_of:
                    index_of[child] = lowlink[child] = counter
                    counter += 1
                    stack.append(child)
                    on_stack.add(child)
                    work.append((child, iter(sorted(dependencies.get(child, ())))))
                elif child in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[child])
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
            if lowlink[node] == index_of[node]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                components.append(sorted(component))
    return components


def structural_index(
    algebraic: Array,
    dependencies: Dict[int, Set[int]],
    self_dependent: Array,
    max_index: int,
) -> int:
    """
    Estimate the DAE index from the dependency graph.

    A pure ODE has index 0. An algebraic variable whose own constraint
    depends on it can be solved for directly (index 1). Otherwise the
    constraint is differentiated repeatedly: each differentiation replaces the
    differential variables it mentions by the variables their equations
    depend on. The index is one more than the number of differentiations
    needed before the algebraic variable itself appears. The result never
    exceeds ``max_index``.
    """
    algebraic_idx = [int(i) for i in np.flatnonzero(algebraic)]
    if not algebraic_idx:
        return 0

    index = 1
    for a in algebraic_idx:
        if self_dependent[a]:
            continue
        frontier = set(dependencies.get(a, ()))
        level = 1
        expanded: Set[int] = set()
        found = False
        while level < max_index:
            level += 1
            nxt: Set[int] = set()
            for v in frontier:
                if algebraic[v] or v in expanded:
                    continue
                expanded.add(v)
                nxt |= dependencies.get(v, set())
                if self_dependent[v]:
                    nxt.add(v)
            if a in nxt:
                found = True
                break
            if not nxt - frontier:
                break
            frontier |= nxt
        index = max(index, level if found else max_index)
        if index >= max_index:
            return max_index
    return index


# ----------------------------------------------------------------------
# Analyzer
# ----------------------------------------------------------------------
class DAEAnalyzer:
    """
    Perturbation-based analyzer.

    Parameters
    ----------
    settings:
        Thresholds; defaults to :class:`AnalyzerSettings()`.
    progress:
        Optional callback receiving :class:`AnalysisProgress` records.
    """

    def __init__(
        self,
        settings: Optional[AnalyzerSettings] = None,
        progress: Optional[AnalysisProgressCallback] = None,
    ) -> None:
        self.settings = settings or AnalyzerSettings()
        self.progress = progress

    def _report(self, stage: str, percentage: float, message: str = "") -> None:
        if self.progress is not None:
            self.progress(AnalysisProgress(stage, float(percentage), message))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def analyze(
        self,
        residual: Residual,
        dimension: int,
        initial_state: Sequence[float],
        initial_time: float = 0.0,
        initial_derivatives: Optional[Sequence[float]] = None,
        variable_names: Optional[Sequence[str]] = None,
        token: Optional[CancellationToken] = None,
    ) -> DAEAnalysis:
        """Run the full analysis synchronously."""
        y0 = np.asarray(initial_state, dtype=float).reshape(-1)
        if y0.shape[0] != dimension:
            raise ValueError(
                f"Initial state has length {y0.shape[0]}, expected {dimension}."
            )
        if dimension == 0:
            raise ValueError("Initial state is empty.")
        if initial_derivatives is None:
            yp0 = np.zeros(dimension)
        else:
            yp0 = np.asarray(initial_derivatives, dtype=float).reshape(-1)
        t0 = float(initial_time)
        s = self.settings
        names = tuple(variable_names or ())

        with WorkerPool(s.max_workers) as pool:
            self._report("Classifying variables", 0.0)
            algebraic = classify_algebraic(
                residual, t0, y0, yp0, s.perturbation, s.sensitivity, pool=pool, token=token
            )
            logger.debug("Algebraic variables: %s", np.flatnonzero(algebraic).tolist())

            self._report("Building dependency graph", 10.0)
            dependencies, self_dependent = self._dependency_graph(residual, t0, y0, yp0, token)

            cycles = find_cycles(dependencies)
            paths = [" → ".join(self._name(names, i) for i in cycle) for cycle in cycles]

            self._report("Determining index", 20.0)
            index = structural_index(algebraic, dependencies, self_dependent, s.max_index)

            self._report("Calculating Jacobian", 25.0)
            (
                jac,
                condition_number,
                eigenvalues,
                stiffness_ratio,
                is_stiff,
                numeric_warnings,
            ) = self._numerical_diagnostics(residual, t0, y0, yp0, pool, token)

        self._report("Structure", 95.0)
        components = strongly_connected_components(dependencies, dimension)
        structure = SystemStructure(
            blocks=[c for c in components if len(c) > 1],
            strongly_connected_components=components,
            single_equations=[c[0] for c in components if len(c) == 1],
        )

        analysis = DAEAnalysis(
            index=index,
            algebraic_variables=algebraic,
            variable_dependencies=dependencies,
            has_circular_dependency=bool(cycles),
            circular_dependency_paths=paths,
            is_stiff=is_stiff,
            condition_number=condition_number,
            stiffness_ratio=stiffness_ratio,
            eigenvalues=eigenvalues,
            warnings=[],
            system_structure=structure,
            variable_names=names,
            jacobian=jac,
        )
        analysis.warnings = self._warnings(analysis, numeric_warnings)
        self._report("Complete", 100.0, "Analysis completed")
        logger.info(
            "Analysis finished: index %d, %d algebraic, stiff=%s, cond=%.3g",
            index,
            analysis.algebraic_count,
            is_stiff,
            condition_number,
        )
        return analysis

    async def analyze_async(
        self,
        residual: Residual,
        dimension: int,
        initial_state: Sequence[float],
        initial_time: float = 0.0,
        initial_derivatives: Optional[Sequence[float]] = None,
        variable_names: Optional[Sequence[str]] = None,
        token: Optional[CancellationToken] = None,
    ) -> DAEAnalysis:
        """
        Run :meth:`analyze` on a worker thread.

        Cancelling the awaiting task (or ``token``) stops the analysis at its
        next checkpoint and raises :class:`OperationCancelled`.
        """
        token = token or CancellationToken()
        loop = asyncio.get_running_loop()
        call = functools.partial(
            self.analyze,
            residual,
            dimension,
            initial_state,
            initial_time,
            initial_derivatives,
            variable_names,
            token,
        )
        try:
            return await loop.run_in_executor(None, call)
        except asyncio.CancelledError:
            token.cancel()
            logger.warning("Analysis cancelled")
            raise OperationCancelled("Analysis was cancelled") from None
        except OperationCancelled:
            logger.warning("Analysis cancelled")
            raise

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    @staticmethod
    def _name(names: Tuple[str, ...], idx: int) -> str:
        return names[idx] if idx < len(names) else f"y{idx}"

    def _dependency_graph(
        self,
        residual: Residual,
        t: float,
        y: Array,
        yp: Array,
        token: Optional[CancellationToken],
    ) -> Tuple[Dict[int, Set[int]], Array]:
        """
        ``deps[i]`` holds every ``j`` whose perturbation changes residual row
        ``i``. Self-dependence (``j == i``) is returned separately.
        """
        n = y.shape[0]
        eps = self.settings.perturbation
        threshold = eps * self.settings.sensitivity
        base = np.asarray(residual(t, y, yp), dtype=float)
        deps: Dict[int, Set[int]] = {i: set() for i in range(n)}
        self_dependent = np.zeros(n, dtype=bool)
        work = y.copy()
        for j in range(n):
            if token is not None:
                token.raise_if_cancelled()
            work[j] = y[j] + eps
            change = np.abs(np.asarray(residual(t, work, yp)) - base)
            work[j] = y[j]
            for i in np.flatnonzero(change > threshold):
                if i == j:
                    self_dependent[i] = True
                else:
                    deps[int(i)].add(j)
        return deps, self_dependent

    def _numerical_diagnostics(
        self,
        residual: Residual,
        t: float,
        y: Array,
        yp: Array,
        pool: WorkerPool,
        token: Optional[CancellationToken],
    ):
        s = self.settings
        warnings: List[str] = []
        eps = math.sqrt(s.jacobian_tolerance) * max(float(np.linalg.norm(y)), 1.0)

        def column_progress(offset: float):
            def report(done: int, total: int) -> None:
                pct = 25.0 + offset + 30.0 * done / total
                self._report("Calculating Jacobian", pct, f"{done}/{total} columns")
            return report

        try:
            base = np.asarray(residual(t, y, yp), dtype=float)
            dfdy = finite_difference_jacobian(
                residual, t, y, yp, steps=eps, derivative_columns=False,
                base=base, pool=pool, token=token, progress=column_progress(0.0),
            )
            dfdyp = finite_difference_jacobian(
                residual, t, y, yp, steps=eps, state_columns=False,
                base=base, pool=pool, token=token, progress=column_progress(30.0),
            )
        except OperationCancelled:
            raise
        except Exception as exc:
            logger.warning("Jacobian computation failed: %s", exc)
            warnings.append(f"Jacobian computation failed: {exc}")
            return None, math.nan, [], math.nan, False, warnings

        jac = dfdy + dfdyp
        if not np.all(np.isfinite(jac)):
            logger.warning("Jacobian contains non-finite entries")
            warnings.append("Jacobian contains non-finite entries.")
            return jac, math.nan, [], math.nan, False, warnings

        self._report("Computing eigenvalues", 85.0)
        try:
            singular_values = linalg.svdvals(jac)
            smax, smin = float(singular_values[0]), float(singular_values[-1])
            if smin < s.singular_threshold:
                condition_number = math.inf
                logger.warning("Jacobian is near-singular (smallest singular value %.3e)", smin)
                warnings.append("Jacobian is near-singular.")
            else:
                condition_number = smax / smin
        except Exception as exc:
            logger.warning("Condition number computation failed: %s", exc)
            condition_number = math.nan

        try:
            # modes of dF/dy dy + dF/dyp dyp = 0; algebraic rows give infinite eigenvalues
            raw = linalg.eigvals(-dfdy, dfdyp)
            eigenvalues = [complex(ev) for ev in raw if np.isfinite(ev.real) and np.isfinite(ev.imag)]
        except Exception as exc:
            logger.warning("Eigenvalue computation failed: %s", exc)
            eigenvalues = []

        scale = max((abs(ev) for ev in eigenvalues), default=1.0)
        # purely oscillatory modes carry round-off in their real parts
        decay_floor = 1e-10 * max(scale, 1.0)
        rates = sorted(-ev.real for ev in eigenvalues if ev.real < -decay_floor)
        if len(rates) >= 2 and rates[0] > 0.0:
            stiffness_ratio = rates[-1] / rates[0]
        else:
            stiffness_ratio = 1.0
        is_stiff = stiffness_ratio > s.stiffness_threshold
        logger.debug("Stiffness ratio %.6g over %d decaying modes", stiffness_ratio, len(rates))
        return jac, condition_number, eigenvalues, stiffness_ratio, is_stiff, warnings

    def _warnings(self, analysis: DAEAnalysis, numeric_warnings: List[str]) -> List[str]:
        warnings: List[str] = []
        if analysis.index > 2:
            warnings.append(
                f"High index ({analysis.index}) DAE detected. Consider index reduction."
            )
        if analysis.is_stiff:
            warnings.append("Stiff system detected. Implicit solvers recommended.")
        if analysis.algebraic_count:
            warnings.append(f"System contains {analysis.algebraic_count} algebraic constraints.")
        for path in analysis.circular_dependency_paths:
            warnings.append(f"Circular dependency: {path}")
        for block in analysis.system_structure.blocks:
            warnings.append(
                "Coupled equations (possible algebraic loop): "
                + ", ".join(analysis.name(i) for i in block)
            )
        warnings.extend(numeric_warnings)
        return warnings


def analyze(
    residual: Residual,
    dimension: int,
    initial_state: Sequence[float],
    initial_time: float = 0.0,
    settings: Optional[AnalyzerSettings] = None,
    **kwargs,
) -> DAEAnalysis:
    """Shorthand for ``DAEAnalyzer(settings).analyze(...)``."""
    return DAEAnalyzer(settings).analyze(residual, dimension, initial_state, initial_time, **kwargs)
