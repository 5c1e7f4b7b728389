from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Dict, Optional

import numpy as np


def _known_fields(cls, data: Dict) -> Dict:
    names = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - names)
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {', '.join(unknown)}")
    return dict(data)


@dataclass
class SolverSettings:
    """
    Time span and fixed-step configuration shared by every solver.

    Parameters
    ----------
    start_time, end_time:
        Integration interval.
    intervals:
        Number of fixed steps (fixed-step solvers); the number of logged
        points is ``intervals + 1``. DASSL uses it only for progress text.
    newton_tolerance:
        Residual max-norm at which Newton iterations stop.
    max_newton_iterations:
        Cap for the algebraic Newton sub-iteration.
    implicit_max_iterations:
        Cap for the implicit Euler Newton loop.
    """

    start_time: float = 0.0
    end_time: float = 1.0
    intervals: int = 100
    newton_tolerance: float = 1e-6
    max_newton_iterations: int = 10
    implicit_max_iterations: int = 100

    def validate(self) -> None:
        if self.end_time <= self.start_time:
            raise ValueError("End time must be greater than start time.")
        if self.intervals <= 0:
            raise ValueError("Number of intervals must be positive.")
        if self.newton_tolerance <= 0:
            raise ValueError("newton_tolerance must be positive.")
        if self.max_newton_iterations < 1 or self.implicit_max_iterations < 1:
            raise ValueError("Newton iteration caps must be at least 1.")

    # ------------------------------------------------------------------
    # Grid helpers
    # ------------------------------------------------------------------
    @property
    def dt(self) -> float:
        return (self.end_time - self.start_time) / self.intervals

    @property
    def time_points(self) -> np.ndarray:
        """The ``intervals + 1`` fixed-step output times."""
        return np.linspace(self.start_time, self.end_time, self.intervals + 1)

    # ------------------------------------------------------------------
    # (De-)serialisation helpers
    # ------------------------------------------------------------------
    def to_dict(self) -> Dict:
        """Convert these settings into a JSON-serialisable dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "SolverSettings":
        data = _known_fields(cls, data)
        return cls(
            start_time=float(data.get("start_time", 0.0)),
            end_time=float(data.get("end_time", 1.0)),
            intervals=int(data.get("intervals", 100)),
            newton_tolerance=float(data.get("newton_tolerance", 1e-6)),
            max_newton_iterations=int(data.get("max_newton_iterations", 10)),
            implicit_max_iterations=int(data.get("implicit_max_iterations", 100)),
        )


@dataclass
class DasslSettings:
    """
    Advanced settings of the variable-order BDF solver.

    Parameters
    ----------
    rtol, atol:
        Relative and absolute error tolerances.
    max_order:
        Highest BDF order (1 to 5).
    max_newton_iterations:
        Corrector iteration cap per step attempt.
    initial_step, min_step, max_step:
        Step size bounds. Every proposed step lies in ``[min_step, max_step]``.
    safety_factor:
        Multiplier applied to the optimal step-size ratio.
    max_consecutive_failures:
        Rejected or failed step attempts tolerated in a row.
    """

    rtol: float = 1e-6
    atol: float = 1e-8
    max_order: int = 5
    max_newton_iterations: int = 10
    initial_step: float = 1e-4
    min_step: float = 1e-10
    max_step: float = 1e-2
    safety_factor: float = 0.6
    max_consecutive_failures: int = 10

    def __post_init__(self) -> None:
        if self.rtol <= 0 or self.atol <= 0:
            raise ValueError("rtol and atol must be positive.")
        if not 1 <= self.max_order <= 5:
            raise ValueError("max_order must be between 1 and 5.")
        if self.max_newton_iterations < 1:
            raise ValueError("max_newton_iterations must be at least 1.")
        if not 0 < self.min_step <= self.max_step:
            raise ValueError("Step bounds must satisfy 0 < min_step <= max_step.")
        if self.initial_step <= 0:
            raise ValueError("initial_step must be positive.")
        if not 0 < self.safety_factor <= 1:
            raise ValueError("safety_factor must be in (0, 1].")
        if self.max_consecutive_failures < 1:
            raise ValueError("max_consecutive_failures must be at least 1.")

    def clamp_step(self, h: float) -> float:
        return min(max(h, self.min_step), self.max_step)

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "DasslSettings":
        if not data:
            return cls()
        data = _known_fields(cls, data)
        defaults = cls()
        return cls(
            **{
                f.name: type(getattr(defaults, f.name))(data.get(f.name, getattr(defaults, f.name)))
                for f in fields(cls)
            }
        )


@dataclass
class AnalyzerSettings:
    """
    Thresholds of the structural/numerical analyzer.

    Parameters
    ----------
    perturbation:
        Finite perturbation used for classification and dependency tests.
    sensitivity:
        A residual change counts only if it exceeds
        ``perturbation * sensitivity``.
    jacobian_tolerance:
        ``tol`` in the Jacobian step ``sqrt(tol) * max(||y||, 1)``.
    singular_threshold:
        Smallest singular value below which the condition number is reported
        as infinite.
    stiffness_threshold:
        Stiffness ratio above which the system is flagged stiff.
    max_index:
        Upper bound of the DAE index search.
    max_workers:
        Worker threads for finite-difference batches (``None`` = CPU count).
    """

    perturbation: float = 1e-6
    sensitivity: float = 1e-3
    jacobian_tolerance: float = 1e-6
    singular_threshold: float = 1e-10
    stiffness_threshold: float = 1000.0
    max_index: int = 4
    max_workers: Optional[int] = None

    def __post_init__(self) -> None:
        if self.perturbation <= 0 or self.sensitivity <= 0:
            raise ValueError("perturbation and sensitivity must be positive.")
        if self.stiffness_threshold <= 1:
            raise ValueError("stiffness_threshold must be greater than 1.")
        if self.max_index < 1:
            raise ValueError("max_index must be at least 1.")

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "AnalyzerSettings":
        if not data:
            return cls()
        data = _known_fields(cls, data)
        max_workers = data.get("max_workers")
        return cls(
            perturbation=float(data.get("perturbation", 1e-6)),
            sensitivity=float(data.get("sensitivity", 1e-3)),
            jacobian_tolerance=float(data.get("jacobian_tolerance", 1e-6)),
            singular_threshold=float(data.get("singular_threshold", 1e-10)),
            stiffness_threshold=float(data.get("stiffness_threshold", 1000.0)),
            max_index=int(data.get("max_index", 4)),
            max_workers=None if max_workers is None else int(max_workers),
        )
