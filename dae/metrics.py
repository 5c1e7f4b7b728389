"""
Error analysis between a computed solution and a reference solution.

Both solutions must have been sampled at the same number of points (for
example two fixed-step runs with equal ``intervals``, or a run compared
against an analytic solution evaluated on ``solution.t``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Union

import numpy as np

from .solution import Solution

Array = np.ndarray


@dataclass
class ErrorAnalysis:
    max_absolute_error: float = 0.0
    mean_absolute_error: float = 0.0
    root_mean_square_error: float = 0.0
    relative_error: float = 0.0
    normalized_error: float = 0.0
    local_errors: List[float] = field(default_factory=list)
    variable_errors: Dict[str, float] = field(default_factory=dict)

    def report(self) -> str:
        lines = [
            "Error Analysis Report",
            "====================",
            f"Maximum Absolute Error: {self.max_absolute_error:.6e}",
            f"Mean Absolute Error: {self.mean_absolute_error:.6e}",
            f"Root Mean Square Error: {self.root_mean_square_error:.6e}",
            f"Relative Error: {self.relative_error:.6e}",
            f"Normalized Error: {self.normalized_error:.6e}",
            "",
            "Variable-wise Errors:",
        ]
        lines.extend(f"{name}: {err:.6e}" for name, err in self.variable_errors.items())
        return "\n".join(lines)

    def __str__(self) -> str:
        return self.report()


def _states(value: Union[Solution, Array]) -> Array:
    """Return states as an ``(len, n)`` array."""
    if isinstance(value, Solution):
        if not value.states:
            return np.zeros((0, len(value.variable_names)))
        return np.vstack(value.states)
    arr = np.asarray(value, dtype=float)
    if arr.ndim == 1:
        arr = arr[:, None]
    return arr


def compare_solutions(solution: Solution, reference: Union[Solution, Array]) -> ErrorAnalysis:
    """
    Compare ``solution`` against ``reference`` point by point.

    Parameters
    ----------
    solution:
        The solution under test.
    reference:
        Either another :class:`Solution` or an array of reference states with
        shape ``(len(solution), n)``.

    Returns
    -------
    ErrorAnalysis
        Maximum/mean absolute and RMS error over all entries, the mean absolute
        error at each time point (``local_errors``), the mean absolute error of
        each variable over time, the relative error
        ``||e||_2 / ||y_ref||_2`` and the normalized error
        ``||e||_2 / sqrt(N)``.
    """
    y = _states(solution)
    y_ref = _states(reference)
    if y.shape[0] != y_ref.shape[0]:
        raise ValueError("Solutions must have the same number of time points.")
    if y.shape != y_ref.shape:
        raise ValueError(f"State shapes differ: {y.shape} vs {y_ref.shape}.")
    if y.size == 0:
        raise ValueError("Cannot compare empty solutions.")

    diff = np.abs(y - y_ref)
    error_norm = float(np.sum(diff**2))
    ref_norm = float(np.sum(y_ref**2))
    if ref_norm > 0.0:
        relative = float(np.sqrt(error_norm / ref_norm))
    else:
        relative = 0.0 if error_norm == 0.0 else float("inf")

    names = list(solution.variable_names) or [f"Variable_{j}" for j in range(y.shape[1])]
    if len(names) != y.shape[1]:
        names = [f"Variable_{j}" for j in range(y.shape[1])]

    return ErrorAnalysis(
        max_absolute_error=float(diff.max()),
        mean_absolute_error=float(diff.mean()),
        root_mean_square_error=float(np.sqrt(np.mean(diff**2))),
        relative_error=relative,
        normalized_error=float(np.sqrt(error_norm / diff.size)),
        local_errors=diff.mean(axis=1).tolist(),
        variable_errors={name: float(err) for name, err in zip(names, diff.mean(axis=0))},
    )
