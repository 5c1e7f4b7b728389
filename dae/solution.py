from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

Array = np.ndarray


class SolutionStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass
class Solution:
    """
    Time history produced by a solver.

    ``time_points``, ``states`` and ``derivatives`` are parallel lists. Entries
    are appended in strictly increasing time order while the solver runs; once
    :meth:`finalize` is called the solution no longer accepts new points.
    """

    variable_names: Tuple[str, ...] = ()
    time_points: List[float] = field(default_factory=list)
    states: List[Array] = field(default_factory=list)
    derivatives: List[Array] = field(default_factory=list)
    status: SolutionStatus = SolutionStatus.RUNNING
    solver_name: str = ""
    statistics: Dict[str, int] = field(default_factory=dict)

    def add(self, t: float, state: Array, derivative: Array) -> None:
        if self.status is not SolutionStatus.RUNNING:
            raise RuntimeError("Cannot add points to a finalized solution.")
        state = np.array(state, dtype=float)
        derivative = np.array(derivative, dtype=float)
        if self.states and state.shape != self.states[0].shape:
            raise ValueError(
                f"State has shape {state.shape}, expected {self.states[0].shape}."
            )
        if derivative.shape != state.shape:
            raise ValueError("State and derivative vectors must have the same length.")
        if self.time_points and not t > self.time_points[-1]:
            raise ValueError(
                f"Time points must increase strictly ({t!r} after {self.time_points[-1]!r})."
            )
        self.time_points.append(float(t))
        self.states.append(state)
        self.derivatives.append(derivative)

    def finalize(self, cancelled: bool = False) -> "Solution":
        self.status = SolutionStatus.CANCELLED if cancelled else SolutionStatus.COMPLETED
        for arr in self.states + self.derivatives:
            arr.setflags(write=False)
        return self

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    def __len__(self) -> int:
        return len(self.time_points)

    @property
    def success(self) -> bool:
        return self.status is SolutionStatus.COMPLETED

    @property
    def cancelled(self) -> bool:
        return self.status is SolutionStatus.CANCELLED

    @property
    def t(self) -> Array:
        return np.asarray(self.time_points, dtype=float)

    @property
    def y(self) -> Array:
        """States as an ``(n, len(self))`` array, like ``solve_ivp``'s ``sol.y``."""
        if not self.states:
            return np.zeros((len(self.variable_names), 0))
        return np.column_stack(self.states)

    @property
    def yp(self) -> Array:
        if not self.derivatives:
            return np.zeros((len(self.variable_names), 0))
        return np.column_stack(self.derivatives)

    @property
    def final_state(self) -> Optional[Array]:
        return self.states[-1] if self.states else None

    def variable(self, name: str) -> Array:
        """Trajectory of one named variable."""
        try:
            idx = self.variable_names.index(name)
        except ValueError:
            raise KeyError(f"Unknown variable: {name}") from None
        return self.y[idx]

    def rows(self) -> List[Sequence[float]]:
        """``[t, y0, y1, ...]`` rows, e.g. for tabular output."""
        return [[t, *state.tolist()] for t, state in zip(self.time_points, self.states)]
