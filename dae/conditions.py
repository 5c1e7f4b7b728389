"""
Parameter and initial-condition input.

Both use the same ``name=value`` pair format, separated by ``;`` or newlines:

    k=2; c=0.5; m=1

Values are numeric literals. When a parameter table is supplied, a value may
also be an expression over those parameters (``T = m*g*1.414``).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Sequence, Union

import numpy as np

from .errors import EvaluationError, ParseError
from .expression import EvaluationContext, ExpressionEvaluator
from .tokenizer import Tokenizer, tokenize

ArrayLike = Union[np.ndarray, Iterable[float]]

_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SEPARATORS = re.compile(r"[;\n]")


def parse_value(name: str, text: str, pair: str, parameters: Optional[Mapping[str, float]]) -> float:
    try:
        return float(text)
    except ValueError:
        if parameters is None:
            raise ParseError(f"Invalid number for {name}: {text!r}", pair) from None
    try:
        return ExpressionEvaluator(parameters=parameters).evaluate(
            tokenize(text), EvaluationContext()
        )
    except (EvaluationError, ParseError) as exc:
        raise ParseError(f"Invalid value for {name}: {exc}", pair) from exc


def parse_assignments(
    text: str,
    parameters: Optional[Mapping[str, float]] = None,
) -> Dict[str, float]:
    """
    Parse ``name=value`` pairs into an ordered dictionary.

    Comments are allowed. Duplicate names, malformed pairs and invalid
    numbers raise :class:`ParseError`.
    """
    result: Dict[str, float] = {}
    if not text:
        return result

    cleaned = Tokenizer().strip_comments(text)
    for pair in _SEPARATORS.split(cleaned):
        pair = pair.strip()
        if not pair:
            continue
        parts = pair.split("=")
        if len(parts) != 2:
            raise ParseError(f"Invalid assignment format: {pair}", pair)
        name, value = parts[0].strip(), parts[1].strip()
        if not _NAME.match(name) or not value:
            raise ParseError(f"Invalid assignment format: {pair}", pair)
        if name in result:
            raise ParseError(f"Duplicate assignment for {name}", pair)
        result[name] = parse_value(name, value, pair, parameters)
    return result


@dataclass
class InitialConditions:
    """
    Initial state specified either as:

    - ``name=value`` text (``"x=1; v=0"``), or
    - a mapping from variable name to value, or
    - a concrete array-like in variable-table order.
    """

    text: Optional[str] = None
    mapping: Optional[Mapping[str, float]] = None
    values: Optional[ArrayLike] = None

    def __post_init__(self) -> None:
        modes = [self.text is not None, self.mapping is not None, self.values is not None]
        if sum(modes) != 1:
            raise ValueError(
                "InitialConditions expects exactly one of text, mapping, or values to be provided."
            )

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------
    @classmethod
    def from_string(cls, text: str) -> "InitialConditions":
        return cls(text=text)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, float]) -> "InitialConditions":
        return cls(mapping=dict(mapping))

    @classmethod
    def from_values(cls, values: ArrayLike) -> "InitialConditions":
        return cls(values=np.asarray(values, dtype=float))

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------
    def evaluate(
        self,
        variables: Sequence[str],
        parameters: Optional[Mapping[str, float]] = None,
    ) -> np.ndarray:
        """
        Map the initial condition onto the variable table ``variables``.

        Every variable must receive exactly one value.
        """
        if self.values is not None:
            arr = np.asarray(self.values, dtype=float)
            if arr.shape != (len(variables),):
                raise ValueError(
                    f"Initial condition values have shape {arr.shape}, "
                    f"but the system has {len(variables)} variables."
                )
            return arr.copy()

        if self.text is not None:
            assigned = parse_assignments(self.text, parameters)
        else:
            assigned = {}
            for name, value in self.mapping.items():
                if isinstance(value, str):
                    value = parse_value(name, value, f"{name}={value}", parameters)
                assigned[str(name)] = float(value)

        table = {name: idx for idx, name in enumerate(variables)}
        unknown = [name for name in assigned if name not in table]
        if unknown:
            raise ParseError(
                f"Unknown variable in initial conditions: {', '.join(unknown)}"
            )
        missing = [name for name in variables if name not in assigned]
        if missing:
            raise ParseError(
                f"Missing initial conditions for variables: {', '.join(missing)}"
            )

        y0 = np.empty(len(variables), dtype=float)
        for name, value in assigned.items():
            y0[table[name]] = value
        return y0


def parse_initial_conditions(
    text: str,
    variables: Sequence[str],
    parameters: Optional[Mapping[str, float]] = None,
) -> np.ndarray:
    """Parse ``name=value`` text into a state vector ordered like ``variables``."""
    return InitialConditions.from_string(text).evaluate(variables, parameters)
