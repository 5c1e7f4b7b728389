"""
Exception hierarchy shared by the parser, evaluator, analyzer and solvers.

- ParseError: problems in the equation / parameter / initial-condition text.
  These abort compilation and always carry the offending text.
- EvaluationError: a single expression evaluation failed (unknown symbol,
  mismatched parentheses, division by ~0, negative square root, ...).
- SolverError: unrecoverable failures of the time integration.
- OperationCancelled: cooperative cancellation. Not an error condition for
  ``solve()``, which returns the partial solution instead.
"""

from __future__ import annotations

from typing import Optional


class DAEError(Exception):
    """Base class for all errors raised by the ``dae`` package."""


class ParseError(DAEError, ValueError):
    """Invalid equation, parameter, model or initial-condition text."""

    def __init__(self, message: str, text: Optional[str] = None) -> None:
        super().__init__(message)
        self.text = text


class EvaluationError(DAEError, ValueError):
    """An expression could not be evaluated."""

    def __init__(self, message: str, expression: Optional[str] = None) -> None:
        if expression:
            message = f"{message} (in expression: {expression})"
        super().__init__(message)
        self.expression = expression


class DivisionByZeroError(EvaluationError, ZeroDivisionError):
    """Division by a value whose magnitude is below the evaluator's epsilon."""


class SolverError(DAEError, RuntimeError):
    """Fatal failure of a time integration."""


class StepSizeTooSmallError(SolverError):
    """The adaptive step size dropped below the configured minimum."""


class TooManyFailuresError(SolverError):
    """Too many consecutive rejected or failed steps."""


class SingularMatrixError(SolverError):
    """A dense linear system could not be solved (pivot below tolerance)."""


class OperationCancelled(DAEError):
    """Raised at a cancellation checkpoint once cancellation was requested."""
