"""
Modelica-style model front end.

Accepts text such as::

    model Oscillator
      Real x, v;
      parameter Real k = 2.0;
      parameter Real m = 1.0;
    initial equation
      x = 1.0;
      v = 0.0;
    equation
      der(x) = v;
      der(v) = -k/m*x;
    end Oscillator;

and produces the equation lines, parameter table and initial state consumed
by :func:`dae.equations.compile_equations`. The ``model``/``end`` wrapper is
optional. Declarations may appear anywhere; statements end with ``;`` or a
newline.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import numpy as np

from .conditions import parse_value
from .equations import CompiledSystem, compile_equations
from .errors import ParseError
from .tokenizer import TokenKind, Tokenizer, tokenize

logger = logging.getLogger(__name__)

RESERVED_WORDS = frozenset({"Real", "parameter", "initial", "equation", "der", "t", "model", "end"})

_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_PARAMETER = re.compile(r"^parameter\s+Real\s+(.+?)\s*=\s*(.+)$")


class ModelSection(Enum):
    NONE = "none"
    INITIAL = "initial"
    EQUATIONS = "equations"


@dataclass
class ParsedModel:
    """Declarations, parameters, initial values and equations of one model."""

    variables: List[str] = field(default_factory=list)
    parameters: Dict[str, float] = field(default_factory=dict)
    initial_values: Dict[str, float] = field(default_factory=dict)
    equations: List[str] = field(default_factory=list)
    name: Optional[str] = None

    def initial_state(self) -> np.ndarray:
        missing = [v for v in self.variables if v not in self.initial_values]
        if missing:
            raise ParseError(f"Missing initial values for variables: {', '.join(missing)}")
        return np.array([self.initial_values[v] for v in self.variables], dtype=float)

    def compile(self) -> CompiledSystem:
        return compile_equations(self.equations, self.parameters, variables=self.variables)


def _statements(text: str) -> List[str]:
    cleaned = Tokenizer().strip_comments(text)
    out: List[str] = []
    for line in cleaned.splitlines():
        for stmt in line.split(";"):
            stmt = " ".join(stmt.split())
            if stmt:
                out.append(stmt)
    return out


def _check_name(name: str, stmt: str) -> None:
    if not _NAME.match(name):
        raise ParseError(f"Invalid name {name!r} in: {stmt}", stmt)
    if name in RESERVED_WORDS:
        raise ParseError(f"Cannot use reserved word '{name}' as a name", stmt)


def _parse_declaration(stmt: str, model: ParsedModel) -> None:
    names = [n.strip() for n in stmt[len("Real"):].split(",")]
    if not names or names == [""]:
        raise ParseError(f"Invalid variable declaration: {stmt}", stmt)
    for name in names:
        _check_name(name, stmt)
        if name in model.variables or name in model.parameters:
            raise ParseError(f"Duplicate declaration: {name}", stmt)
        model.variables.append(name)
        logger.debug("Declared variable %s", name)


def _parse_parameter(stmt: str, model: ParsedModel) -> None:
    match = _PARAMETER.match(stmt)
    if match is None:
        raise ParseError(f"Invalid parameter declaration: {stmt}", stmt)
    name, value = match.group(1).strip(), match.group(2).strip()
    _check_name(name, stmt)
    if name in model.variables or name in model.parameters:
        raise ParseError(f"Duplicate declaration: {name}", stmt)
    model.parameters[name] = parse_value(name, value, stmt, model.parameters)
    logger.debug("Declared parameter %s = %g", name, model.parameters[name])


def _parse_initial(stmt: str, model: ParsedModel) -> None:
    parts = stmt.split("=")
    if len(parts) != 2:
        raise ParseError(f"Invalid initial condition: {stmt}", stmt)
    name, value = parts[0].strip(), parts[1].strip()
    if name not in model.variables:
        raise ParseError(f"Undefined variable in initial condition: {name}", stmt)
    if name in model.initial_values:
        raise ParseError(f"Duplicate initial condition for {name}", stmt)
    model.initial_values[name] = parse_value(name, value, stmt, model.parameters)


def _check_equation(stmt: str, model: ParsedModel) -> None:
    known = set(model.variables) | set(model.parameters) | {"t"}
    undeclared = sorted(
        {
            tok.text
            for tok in tokenize(stmt.replace("=", " + "))
            if tok.kind is TokenKind.IDENTIFIER and tok.text not in known
        }
    )
    if undeclared:
        raise ParseError(f"Undeclared names in equation '{stmt}': {', '.join(undeclared)}", stmt)


def parse_model(text: str) -> ParsedModel:
    """Parse model text into a :class:`ParsedModel`."""
    statements = _statements(text)
    model = ParsedModel()

    # declarations first so sections may reference names declared later
    remaining: List[str] = []
    for stmt in statements:
        if stmt.startswith("Real ") or stmt == "Real":
            _parse_declaration(stmt, model)
        elif stmt.startswith("parameter "):
            _parse_parameter(stmt, model)
        else:
            remaining.append(stmt)

    section = ModelSection.NONE
    for stmt in remaining:
        if stmt == "initial equation":
            section = ModelSection.INITIAL
        elif stmt == "equation":
            section = ModelSection.EQUATIONS
        elif stmt.startswith("model "):
            model.name = stmt.split(None, 1)[1]
        elif stmt.startswith("end ") or stmt == "end":
            section = ModelSection.NONE
        elif section is ModelSection.INITIAL:
            _parse_initial(stmt, model)
        elif section is ModelSection.EQUATIONS:
            _check_equation(stmt, model)
            model.equations.append(stmt)
        else:
            raise ParseError(f"Statement outside of any section: {stmt}", stmt)

    if not model.variables:
        raise ParseError("Model declares no variables")
    if not model.equations:
        raise ParseError("Model has no equation section")
    logger.info(
        "Parsed model%s: %d variables, %d parameters, %d equations",
        f" {model.name}" if model.name else "",
        len(model.variables),
        len(model.parameters),
        len(model.equations),
    )
    return model
