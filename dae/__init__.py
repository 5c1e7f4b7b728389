"""
Core package for a text-driven DAE solver.

Equations of the form ``der(x) = ...`` (differential) and ``z = ...``
(algebraic) are compiled into a residual function ``F(t, y, yp) = 0`` which
can be analysed (index, stiffness, dependency structure) and integrated with:

- ExplicitEulerSolver, ImplicitEulerSolver, RungeKutta4Solver: fixed step
- DasslSolver: variable-step, variable-order BDF
"""

from .errors import (
    DAEError,
    ParseError,
    EvaluationError,
    DivisionByZeroError,
    SolverError,
    StepSizeTooSmallError,
    TooManyFailuresError,
    SingularMatrixError,
    OperationCancelled,
)
from .tokenizer import Token, TokenKind, Tokenizer, tokenize
from .expression import EvaluationContext, ExpressionEvaluator, evaluate
from .equations import CompiledSystem, Equation, compile_equations
from .conditions import InitialConditions, parse_initial_conditions
from .model_parser import ParsedModel, parse_model
from .control import AnalysisProgress, CancellationToken, ProgressEvent
from .settings import AnalyzerSettings, DasslSettings, SolverSettings
from .analysis import DAEAnalysis, DAEAnalyzer, analyze
from .solution import Solution, SolutionStatus
from .solver_base import SolverBase
from .fixed_step import ExplicitEulerSolver, ImplicitEulerSolver, RungeKutta4Solver
from .dassl import DasslSolver
from .problem import DAEProblem, SolverType
from .metrics import ErrorAnalysis, compare_solutions

__all__ = [
    "DAEError",
    "ParseError",
    "EvaluationError",
    "DivisionByZeroError",
    "SolverError",
    "StepSizeTooSmallError",
    "TooManyFailuresError",
    "SingularMatrixError",
    "OperationCancelled",
    "Token",
    "TokenKind",
    "Tokenizer",
    "tokenize",
    "EvaluationContext",
    "ExpressionEvaluator",
    "evaluate",
    "CompiledSystem",
    "Equation",
    "compile_equations",
    "InitialConditions",
    "parse_initial_conditions",
    "ParsedModel",
    "parse_model",
    "AnalysisProgress",
    "CancellationToken",
    "ProgressEvent",
    "AnalyzerSettings",
    "DasslSettings",
    "SolverSettings",
    "DAEAnalysis",
    "DAEAnalyzer",
    "analyze",
    "Solution",
    "SolutionStatus",
    "SolverBase",
    "ExplicitEulerSolver",
    "ImplicitEulerSolver",
    "RungeKutta4Solver",
    "DasslSolver",
    "DAEProblem",
    "SolverType",
    "ErrorAnalysis",
    "compare_solutions",
]
