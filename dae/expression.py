"""
Shunting-yard evaluator for tokenized expressions.

The evaluator keeps two stacks, one of operand values and one of pending
operators / functions / open parentheses, and reduces them as tokens arrive.
Identifiers are resolved against an :class:`EvaluationContext` in this order:

1. ``t``, the independent time variable,
2. a state variable, ``context.state[index]``,
3. a parameter, ``context.parameters[name]`` (falling back to the parameters
   the evaluator was constructed with),

and ``der(name)`` reads ``context.derivatives[index]``. Anything else is an
unknown symbol.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Union

from .errors import DivisionByZeroError, EvaluationError
from .tokenizer import Token, TokenKind, tokenize, tokens_to_text


DIVISION_EPSILON = 1e-10
TIME_SYMBOL = "t"


@dataclass
class EvaluationContext:
    """Bindings for one evaluation call."""

    time: float = 0.0
    state: Sequence[float] = field(default_factory=tuple)
    derivatives: Sequence[float] = field(default_factory=tuple)
    parameters: Mapping[str, float] = field(default_factory=dict)


def _divide(a: float, b: float) -> float:
    if abs(b) < DIVISION_EPSILON:
        raise DivisionByZeroError(f"Division by zero ({a!r} / {b!r})")
    return a / b


def _sqrt(a: float) -> float:
    if a < 0.0:
        raise EvaluationError(f"Square root of negative number ({a!r})")
    return math.sqrt(a)


BINARY_OPERATORS: Dict[str, Callable[[float, float], float]] = {
    "+": lambda a, b: a + b,
    "-": lambda a, b: a - b,
    "*": lambda a, b: a * b,
    "/": _divide,
    "^": math.pow,
}

FUNCTIONS: Dict[str, Callable[[float], float]] = {
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "exp": math.exp,
    "sqrt": _sqrt,
}


class ExpressionEvaluator:
    """
    Evaluate token streams against a fixed variable table.

    Parameters
    ----------
    variables:
        Mapping from state-variable name to its index in the state vector,
        or a sequence of names (index = position).
    parameters:
        Default parameter values. Values in ``context.parameters`` take
        precedence over these.
    """

    def __init__(
        self,
        variables: Union[Mapping[str, int], Sequence[str], None] = None,
        parameters: Optional[Mapping[str, float]] = None,
    ) -> None:
        if variables is None:
            variables = {}
        if not isinstance(variables, Mapping):
            variables = {name: idx for idx, name in enumerate(variables)}
        self.variables: Dict[str, int] = dict(variables)
        self.parameters: Dict[str, float] = dict(parameters or {})

    # ------------------------------------------------------------------
    # Symbol resolution
    # ------------------------------------------------------------------
    def resolve(self, name: str, context: EvaluationContext) -> float:
        if name == TIME_SYMBOL:
            return float(context.time)
        idx = self.variables.get(name)
        if idx is not None:
            return float(context.state[idx])
        if name in context.parameters:
            return float(context.parameters[name])
        if name in self.parameters:
            return float(self.parameters[name])
        raise EvaluationError(f"Unknown symbol: {name}")

    def resolve_derivative(self, name: str, context: EvaluationContext) -> float:
        idx = self.variables.get(name)
        if idx is None:
            raise EvaluationError(f"der() of unknown variable: {name}")
        return float(context.derivatives[idx])

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------
    def evaluate(self, tokens: Sequence[Token], context: EvaluationContext) -> float:
        """
        Evaluate ``tokens`` to a float.

        Raises
        ------
        EvaluationError
            Unknown symbol, mismatched parentheses, malformed operand count,
            negative square root or a math domain/overflow error.
        DivisionByZeroError
            Division by a value with magnitude below ``1e-10``.
        """
        try:
            return self._evaluate(tokens, context)
        except EvaluationError as exc:
            if exc.expression is not None:
                raise
            raise type(exc)(str(exc), tokens_to_text(tokens)) from exc
        except (ValueError, OverflowError) as exc:
            raise EvaluationError(f"Math error: {exc}", tokens_to_text(tokens)) from exc

    def evaluate_text(self, expression: str, context: Optional[EvaluationContext] = None) -> float:
        """Tokenize and evaluate ``expression`` in one go."""
        return self.evaluate(tokenize(expression), context or EvaluationContext())

    def _evaluate(self, tokens: Sequence[Token], context: EvaluationContext) -> float:
        values: List[float] = []
        pending: List[Token] = []

        i = 0
        n = len(tokens)
        while i < n:
            tok = tokens[i]
            kind = tok.kind

            if kind is TokenKind.NUMBER:
                values.append(float(tok.text))

            elif kind is TokenKind.IDENTIFIER:
                values.append(self.resolve(tok.text, context))

            elif kind is TokenKind.FUNCTION:
                if tok.text == "der":
                    # der ( name ) is a single operand
                    if (
                        i + 3 < n
                        and tokens[i + 1].kind is TokenKind.LEFT_PAREN
                        and tokens[i + 2].kind is TokenKind.IDENTIFIER
                        and tokens[i + 3].kind is TokenKind.RIGHT_PAREN
                    ):
                        values.append(self.resolve_derivative(tokens[i + 2].text, context))
                        i += 4
                        continue
                    raise EvaluationError("der() expects a single variable name")
                pending.append(tok)

            elif kind is TokenKind.LEFT_PAREN:
                pending.append(tok)

            elif kind is TokenKind.RIGHT_PAREN:
                while pending and pending[-1].kind is not TokenKind.LEFT_PAREN:
                    self._apply(pending.pop(), values)
                if not pending:
                    raise EvaluationError("Mismatched parentheses")
                pending.pop()
                if pending and pending[-1].kind is TokenKind.FUNCTION:
                    self._apply(pending.pop(), values)

            elif kind is TokenKind.OPERATOR:
                while (
                    not tok.unary
                    and pending
                    and pending[-1].kind is TokenKind.OPERATOR
                    and pending[-1].precedence >= tok.precedence
                ):
                    self._apply(pending.pop(), values)
                pending.append(tok)

            elif kind is TokenKind.COMMA:
                while pending and pending[-1].kind is not TokenKind.LEFT_PAREN:
                    self._apply(pending.pop(), values)

            i += 1

        while pending:
            top = pending.pop()
            if top.kind is TokenKind.LEFT_PAREN:
                raise EvaluationError("Mismatched parentheses")
            self._apply(top, values)

        if len(values) != 1:
            raise EvaluationError(
                f"Malformed expression: expected one result, found {len(values)}"
            )
        return values[0]

    @staticmethod
    def _apply(tok: Token, values: List[float]) -> None:
        if tok.kind is TokenKind.FUNCTION:
            if not values:
                raise EvaluationError(f"Missing argument for function {tok.text}")
            func = FUNCTIONS.get(tok.text)
            if func is None:
                raise EvaluationError(f"Unsupported function: {tok.text}")
            values.append(func(values.pop()))
            return

        if len(values) < 2:
            raise EvaluationError(f"Missing operand for operator {tok.text}")
        b = values.pop()
        a = values.pop()
        values.append(BINARY_OPERATORS[tok.text](a, b))


def evaluate(
    expression: Union[str, Sequence[Token]],
    context: Optional[EvaluationContext] = None,
    variables: Union[Mapping[str, int], Sequence[str], None] = None,
) -> float:
    """
    Convenience wrapper: evaluate a string or token sequence.

    ``variables`` names the entries of ``context.state``; parameters are taken
    from ``context.parameters``.
    """
    context = context or EvaluationContext()
    tokens = tokenize(expression) if isinstance(expression, str) else expression
    return ExpressionEvaluator(variables).evaluate(tokens, context)
