from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Mapping, Optional, Type, Union

import numpy as np

from .analysis import DAEAnalysis, DAEAnalyzer
from .conditions import InitialConditions
from .control import AnalysisProgressCallback, CancellationToken, ProgressCallback
from .dassl import DasslSolver
from .equations import CompiledSystem, compile_equations
from .fixed_step import ExplicitEulerSolver, ImplicitEulerSolver, RungeKutta4Solver
from .model_parser import parse_model
from .settings import AnalyzerSettings, DasslSettings, SolverSettings
from .solution import Solution
from .solver_base import SolverBase


Array = np.ndarray


class SolverType(Enum):
    EXPLICIT_EULER = "explicit_euler"
    IMPLICIT_EULER = "implicit_euler"
    RK4 = "rk4"
    DASSL = "dassl"

    @classmethod
    def from_name(cls, name: Union[str, "SolverType"]) -> "SolverType":
        if isinstance(name, cls):
            return name
        key = str(name).strip().lower().replace("-", "_").replace(" ", "_")
        key = _ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            choices = ", ".join(member.value for member in cls)
            raise ValueError(f"Unknown solver {name!r}. Choose one of: {choices}.") from None

    @property
    def solver_class(self) -> Type[SolverBase]:
        return _SOLVER_CLASSES[self]


_ALIASES = {
    "euler": "explicit_euler",
    "backward_euler": "implicit_euler",
    "runge_kutta_4": "rk4",
    "runge_kutta4": "rk4",
    "bdf": "dassl",
}

_SOLVER_CLASSES = {
    SolverType.EXPLICIT_EULER: ExplicitEulerSolver,
    SolverType.IMPLICIT_EULER: ImplicitEulerSolver,
    SolverType.RK4: RungeKutta4Solver,
    SolverType.DASSL: DasslSolver,
}


@dataclass
class DAEProblem:
    """
    A compiled DAE system together with everything needed to integrate it.

    This bundles together:
    - the compiled residual system (variable table, parameters)
    - the initial condition
    - time span / fixed-step settings, DASSL settings, analyzer settings

    and exposes ``analyze()`` and ``solve()``.
    """

    system: CompiledSystem
    ic: InitialConditions
    settings: SolverSettings = field(default_factory=SolverSettings)
    method: SolverType = SolverType.DASSL
    dassl: DasslSettings = field(default_factory=DasslSettings)
    analyzer: AnalyzerSettings = field(default_factory=AnalyzerSettings)
    name: Optional[str] = None

    def __post_init__(self) -> None:
        self.method = SolverType.from_name(self.method)

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------
    @classmethod
    def from_equations(
        cls,
        equations: Iterable[str],
        initial_conditions: Union[str, Mapping[str, float], Iterable[float]],
        parameters: Optional[Mapping[str, float]] = None,
        **kwargs,
    ) -> "DAEProblem":
        system = compile_equations(equations, parameters)
        return cls(system=system, ic=_as_initial_conditions(initial_conditions), **kwargs)

    @classmethod
    def from_model(cls, text: str, **kwargs) -> "DAEProblem":
        model = parse_model(text)
        kwargs.setdefault("name", model.name)
        return cls(
            system=model.compile(),
            ic=InitialConditions.from_values(model.initial_state()),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Initial data
    # ------------------------------------------------------------------
    @property
    def variables(self):
        return self.system.variables

    def initial_state(self) -> Array:
        return self.ic.evaluate(self.system.variables, self.system.parameters)

    # ------------------------------------------------------------------
    # Analysis and integration
    # ------------------------------------------------------------------
    def analyze(
        self,
        token: Optional[CancellationToken] = None,
        progress: Optional[AnalysisProgressCallback] = None,
    ) -> DAEAnalysis:
        analyzer = DAEAnalyzer(self.analyzer, progress)
        return analyzer.analyze(
            self.system,
            self.system.dimension,
            self.initial_state(),
            self.settings.start_time,
            variable_names=self.system.variables,
            token=token,
        )

    def create_solver(
        self,
        method: Union[str, SolverType, None] = None,
        progress: Optional[ProgressCallback] = None,
        max_workers: Optional[int] = 1,
    ) -> SolverBase:
        solver_type = SolverType.from_name(method) if method is not None else self.method
        if solver_type is SolverType.DASSL:
            return DasslSolver(
                self.system,
                self.initial_state(),
                self.settings,
                self.dassl,
                progress=progress,
                max_workers=max_workers,
            )
        return solver_type.solver_class(
            self.system,
            self.initial_state(),
            self.settings,
            progress=progress,
            max_workers=max_workers,
        )

    def solve(
        self,
        method: Union[str, SolverType, None] = None,
        token: Optional[CancellationToken] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> Solution:
        """
        Integrate the problem over ``settings.start_time .. settings.end_time``.

        Parameters
        ----------
        method:
            Overrides :attr:`method` for this call.
        token:
            Cancellation token; a cancelled run returns the partial solution.
        progress:
            Callback receiving a progress event per accepted step.
        """
        solver = self.create_solver(method, progress)
        try:
            solver.initialize()
            return solver.solve(token)
        finally:
            solver.cleanup()


def _as_initial_conditions(value) -> InitialConditions:
    if isinstance(value, InitialConditions):
        return value
    if isinstance(value, str):
        return InitialConditions.from_string(value)
    if isinstance(value, Mapping):
        return InitialConditions.from_mapping(value)
    return InitialConditions.from_values(value)
