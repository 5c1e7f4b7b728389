"""
Lexer for the equation language.

Turns a right-hand-side expression such as ``(-k*x - c*v)/m`` into a flat
list of :class:`Token` objects that the shunting-yard evaluator in
:mod:`dae.expression` consumes.

Comments are stripped before lexing:

- ``// ...`` and ``# ...`` run to the end of the line,
- ``/* ... */`` may span several lines. A :class:`Tokenizer` instance keeps
  track of an unterminated block comment between calls, so equation files can
  be fed to it line by line.

A ``-`` that appears where an operand is expected (start of input, after an
operator, ``(`` or ``,``) is rewritten as ``-1 *``. The inserted ``*`` is
flagged ``unary``: it binds to the following operand only, tighter than
``*`` and ``/`` but looser than ``^``, so ``1/-2`` is ``-0.5``, ``2^-3`` is
``0.125`` and ``-x^2`` is ``-(x^2)``. A unary ``+`` is dropped.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Tuple

from .errors import ParseError


class TokenKind(Enum):
    NUMBER = "number"
    IDENTIFIER = "identifier"
    OPERATOR = "operator"
    FUNCTION = "function"
    LEFT_PAREN = "left_paren"
    RIGHT_PAREN = "right_paren"
    COMMA = "comma"


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    text: str
    precedence: int = 0
    # prefix operators bind to the next operand and never reduce the stack
    unary: bool = False

    def __str__(self) -> str:
        return self.text


KNOWN_FUNCTIONS = frozenset({"der", "sin", "cos", "exp", "sqrt", "tan"})

PRECEDENCE = {
    "^": 4,
    "*": 3,
    "/": 3,
    "+": 2,
    "-": 2,
}

_TOKEN_PATTERN = re.compile(
    r"""
    (?P<number>(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)
  | (?P<identifier>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<operator>[-+*/^])
  | (?P<comma>,)
  | (?P<left_paren>\()
  | (?P<right_paren>\))
  | (?P<space>\s+)
    """,
    re.VERBOSE,
)

_NEGATE = (
    Token(TokenKind.NUMBER, "-1"),
    Token(TokenKind.OPERATOR, "*", PRECEDENCE["*"], unary=True),
)


def tokens_to_text(tokens) -> str:
    """Render a token sequence back into a compact expression string."""
    return " ".join(tok.text for tok in tokens)


class Tokenizer:
    """
    Stateful tokenizer.

    The only state is whether the previous call ended inside an unterminated
    ``/* ... */`` comment. Use :meth:`reset` (or a fresh instance) when
    starting a new, unrelated input.
    """

    def __init__(self) -> None:
        self._in_block_comment = False

    @property
    def in_block_comment(self) -> bool:
        return self._in_block_comment

    def reset(self) -> None:
        self._in_block_comment = False

    # ------------------------------------------------------------------
    # Comment handling
    # ------------------------------------------------------------------
    def strip_comments(self, text: str) -> str:
        """
        Remove comments from ``text``.

        Multi-line input is processed line by line; the block-comment state is
        carried across lines and across calls.
        """
        if not text:
            return ""
        lines = [self._strip_line(line) for line in text.splitlines()]
        return "\n".join(line for line in lines if line.strip()).strip()

    def _strip_line(self, line: str) -> str:
        kept: List[str] = []
        pos = 0
        while pos < len(line):
            if self._in_block_comment:
                end = line.find("*/", pos)
                if end < 0:
                    return "".join(kept)
                self._in_block_comment = False
                pos = end + 2
                continue

            starts = [
                (idx, marker)
                for marker in ("//", "#", "/*")
                for idx in (line.find(marker, pos),)
                if idx >= 0
            ]
            if not starts:
                kept.append(line[pos:])
                break

            idx, marker = min(starts)
            kept.append(line[pos:idx])
            if marker == "/*":
                self._in_block_comment = True
                pos = idx + 2
            else:
                break
        return "".join(kept)

    # ------------------------------------------------------------------
    # Lexing
    # ------------------------------------------------------------------
    def tokenize(self, expression: str) -> Tuple[Token, ...]:
        """
        Lex ``expression`` into tokens.

        Returns an empty tuple for blank or comment-only input. Characters
        outside the grammar raise :class:`ParseError`. Parenthesis balance is
        not checked here; the evaluator reports it.
        """
        text = self.strip_comments(expression)
        if not text:
            return ()

        tokens: List[Token] = []
        expect_operand = True
        pos = 0
        while pos < len(text):
            match = _TOKEN_PATTERN.match(text, pos)
            if match is None:
                raise ParseError(
                    f"Unexpected character {text[pos]!r} at position {pos} in expression: {text}",
                    text,
                )
            pos = match.end()
            kind = match.lastgroup
            value = match.group(kind)

            if kind == "space":
                continue
            if kind == "number":
                tokens.append(Token(TokenKind.NUMBER, value))
                expect_operand = False
            elif kind == "identifier":
                if value in KNOWN_FUNCTIONS:
                    tokens.append(Token(TokenKind.FUNCTION, value))
                    expect_operand = True
                else:
                    tokens.append(Token(TokenKind.IDENTIFIER, value))
                    expect_operand = False
            elif kind == "operator":
                if expect_operand and value == "-":
                    tokens.extend(_NEGATE)
                elif expect_operand and value == "+":
                    pass
                else:
                    tokens.append(Token(TokenKind.OPERATOR, value, PRECEDENCE[value]))
                expect_operand = True
            elif kind == "comma":
                tokens.append(Token(TokenKind.COMMA, value))
                expect_operand = True
            elif kind == "left_paren":
                tokens.append(Token(TokenKind.LEFT_PAREN, value))
                expect_operand = True
            else:
                tokens.append(Token(TokenKind.RIGHT_PAREN, value))
                expect_operand = False

        return tuple(tokens)


def tokenize(expression: str) -> Tuple[Token, ...]:
    """Tokenize a single, self-contained expression."""
    return Tokenizer().tokenize(expression)
