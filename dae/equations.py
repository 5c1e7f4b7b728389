"""
Equation compiler.

Turns textual equations of the form

    der(x) = v          (differential)
    z = x^2 + y^2 - 1   (algebraic)

into a single residual function ``F(t, y, yp) -> r`` over the whole system.

Residual convention
-------------------
- differential equation for variable ``k``: ``r_k = yp[k] - rhs``
- algebraic equation for variable ``k``: ``r_k = rhs``

i.e. algebraic equations are read as ``g(y) = 0`` where ``g`` is the
right-hand side; the left-hand identifier only names the variable the
constraint is attached to. Row ``k`` of the residual always belongs to the
equation that defines variable ``k``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .errors import ParseError
from .expression import TIME_SYMBOL, EvaluationContext, ExpressionEvaluator
from .tokenizer import KNOWN_FUNCTIONS, Token, TokenKind, Tokenizer, tokenize

logger = logging.getLogger(__name__)

Array = np.ndarray

_IDENT = r"[A-Za-z_][A-Za-z0-9_]*"
_DERIVATIVE_LHS = re.compile(rf"^der\s*\(\s*({_IDENT})\s*\)$")
_ALGEBRAIC_LHS = re.compile(rf"^({_IDENT})$")


@dataclass(frozen=True)
class Equation:
    """One compiled ``lhs = rhs`` line."""

    variable: str
    index: int
    is_differential: bool
    tokens: Tuple[Token, ...]
    text: str

    @property
    def rhs(self) -> str:
        return self.text.split("=", 1)[1].strip()


class ResidualFunction:
    """
    Callable ``F(t, y, yp) -> np.ndarray`` for a compiled system.

    Instances hold only read-only tables and build a fresh
    :class:`EvaluationContext` per call, so one instance can be evaluated
    concurrently from several threads with distinct input buffers.
    """

    def __init__(
        self,
        equations: Sequence[Equation],
        variables: Sequence[str],
        parameters: Mapping[str, float],
    ) -> None:
        self._equations = tuple(equations)
        self._parameters = dict(parameters)
        self._evaluator = ExpressionEvaluator(variables, self._parameters)
        self.dimension = len(self._equations)

    def __call__(self, t: float, y: Array, yp: Array) -> Array:
        context = EvaluationContext(
            time=float(t), state=y, derivatives=yp, parameters=self._parameters
        )
        out = np.empty(self.dimension, dtype=float)
        for eq in self._equations:
            value = self._evaluator.evaluate(eq.tokens, context)
            if eq.is_differential:
                out[eq.index] = yp[eq.index] - value
            else:
                out[eq.index] = value
        return out


@dataclass
class CompiledSystem:
    """
    Result of :func:`compile_equations`.

    ``variables`` is the variable table in index order. The object is itself
    callable and forwards to :attr:`residual`.
    """

    variables: Tuple[str, ...]
    equations: Tuple[Equation, ...]
    parameters: Dict[str, float] = field(default_factory=dict)
    residual: ResidualFunction = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.variables = tuple(self.variables)
        self.equations = tuple(sorted(self.equations, key=lambda eq: eq.index))
        self.parameters = dict(self.parameters)
        self.residual = ResidualFunction(self.equations, self.variables, self.parameters)

    @property
    def dimension(self) -> int:
        return len(self.variables)

    @property
    def differential_mask(self) -> Array:
        """Boolean mask of variables defined by a ``der(...)`` equation."""
        return np.array([eq.is_differential for eq in self.equations], dtype=bool)

    def index_of(self, name: str) -> int:
        try:
            return self.variables.index(name)
        except ValueError:
            raise KeyError(f"Unknown variable: {name}") from None

    def with_parameters(self, parameters: Mapping[str, float]) -> "CompiledSystem":
        """Return a copy bound to updated parameter values."""
        unknown = sorted(set(parameters) - set(self.parameters))
        if unknown:
            raise ParseError(f"Unknown parameters: {', '.join(unknown)}")
        merged = dict(self.parameters)
        merged.update({k: float(v) for k, v in parameters.items()})
        return CompiledSystem(self.variables, self.equations, merged)

    def __call__(self, t: float, y: Array, yp: Array) -> Array:
        return self.residual(t, y, yp)


def _parse_lhs(lhs: str, line: str) -> Tuple[str, bool]:
    match = _DERIVATIVE_LHS.match(lhs)
    if match is not None:
        name, is_differential = match.group(1), True
    else:
        match = _ALGEBRAIC_LHS.match(lhs)
        if match is None:
            raise ParseError(f"Invalid variable name: {lhs!r} in equation: {line}", line)
        name, is_differential = match.group(1), False

    if name == TIME_SYMBOL or name in KNOWN_FUNCTIONS:
        raise ParseError(f"Invalid variable name: {name!r} is reserved", line)
    return name, is_differential


def _referenced_symbols(tokens: Iterable[Token]) -> Tuple[List[str], List[str]]:
    """Split identifiers of an rhs into plain references and der() targets."""
    plain: List[str] = []
    derived: List[str] = []
    toks = list(tokens)
    for i, tok in enumerate(toks):
        if tok.kind is not TokenKind.IDENTIFIER:
            continue
        if i >= 2 and toks[i - 1].kind is TokenKind.LEFT_PAREN and toks[i - 2].text == "der":
            derived.append(tok.text)
        else:
            plain.append(tok.text)
    return plain, derived


def compile_equations(
    lines: Iterable[str],
    parameters: Optional[Mapping[str, float]] = None,
    variables: Optional[Sequence[str]] = None,
) -> CompiledSystem:
    """
    Compile equation lines into a :class:`CompiledSystem`.

    Parameters
    ----------
    lines:
        Equation strings, one statement per entry. Entries may contain
        newlines, ``//`` / ``#`` comments, ``/* ... */`` comments spanning
        several entries and a trailing ``;``. Blank entries are skipped.
    parameters:
        Named constants available to every right-hand side. Parameter names
        cannot be used as variables.
    variables:
        Optional declared variable order. When given, every declared variable
        must have exactly one equation and no other variable may be defined.
        Otherwise variables are indexed in order of appearance.

    Raises
    ------
    ParseError
        On any malformed or inconsistent input; the message names the
        offending text.
    """
    if isinstance(lines, str):
        lines = lines.splitlines()
    params = {str(k): float(v) for k, v in (parameters or {}).items()}

    tokenizer = Tokenizer()
    parsed: List[Tuple[str, bool, Tuple[Token, ...], str]] = []
    seen: Dict[str, str] = {}

    for raw in lines:
        for line in tokenizer.strip_comments(raw).splitlines():
            line = line.strip().rstrip(";").strip()
            if not line:
                continue

            parts = line.split("=")
            if len(parts) != 2:
                raise ParseError(f"Invalid equation format: {line}", line)
            lhs, rhs = parts[0].strip(), parts[1].strip()
            if not lhs or not rhs:
                raise ParseError(f"Invalid equation format: {line}", line)

            name, is_differential = _parse_lhs(lhs, line)
            if name in params:
                raise ParseError(f"Cannot use parameter {name} as variable", line)
            if name in seen:
                raise ParseError(f"Variable {name} appears in multiple equations", line)

            tokens = tokenize(rhs)
            seen[name] = line
            parsed.append((name, is_differential, tokens, line))
            logger.debug(
                "Parsed %s equation for %s: %s",
                "differential" if is_differential else "algebraic",
                name,
                rhs,
            )

    if not parsed:
        raise ParseError("No equations provided")

    if variables is not None:
        declared = [str(v) for v in variables]
        duplicates = sorted({v for v in declared if declared.count(v) > 1})
        if duplicates:
            raise ParseError(f"Duplicate variable declarations: {', '.join(duplicates)}")
        extra = [name for name in seen if name not in declared]
        if extra:
            raise ParseError(f"Equations for undeclared variables: {', '.join(extra)}")
        if len(parsed) != len(declared):
            missing = [v for v in declared if v not in seen]
            raise ParseError(
                f"Number of equations ({len(parsed)}) does not match number of "
                f"variables ({len(declared)}). Missing equations for variables: "
                f"{', '.join(missing)}"
            )
        names = tuple(declared)
    else:
        names = tuple(name for name, _, _, _ in parsed)

    table = {name: idx for idx, name in enumerate(names)}
    equations: List[Equation] = []
    for name, is_differential, tokens, line in parsed:
        plain, derived = _referenced_symbols(tokens)
        undefined = sorted(
            {s for s in plain if s != TIME_SYMBOL and s not in table and s not in params}
        )
        if undefined:
            raise ParseError(
                f"Undefined symbols in equation '{line}': {', '.join(undefined)}", line
            )
        bad_der = sorted({s for s in derived if s not in table})
        if bad_der:
            raise ParseError(
                f"der() of undefined variables in equation '{line}': {', '.join(bad_der)}",
                line,
            )
        equations.append(Equation(name, table[name], is_differential, tokens, line))

    system = CompiledSystem(names, tuple(equations), params)
    logger.info(
        "Compiled %d equations (%d differential, %d algebraic)",
        system.dimension,
        int(system.differential_mask.sum()),
        system.dimension - int(system.differential_mask.sum()),
    )
    return system
