import pytest

from dae import ParseError, TokenKind, Tokenizer, tokenize


def _texts(tokens):
    return [tok.text for tok in tokens]


def test_whitespace_does_not_change_tokens():
    assert tokenize("x + y") == tokenize("x+y")
    assert tokenize("  (a*b) /  c ") == tokenize("(a*b)/c")


def test_token_kinds_and_precedence():
    tokens = tokenize("sin(x) ^ 2.5e-1, y")
    kinds = [tok.kind for tok in tokens]
    assert kinds == [
        TokenKind.FUNCTION,
        TokenKind.LEFT_PAREN,
        TokenKind.IDENTIFIER,
        TokenKind.RIGHT_PAREN,
        TokenKind.OPERATOR,
        TokenKind.NUMBER,
        TokenKind.COMMA,
        TokenKind.IDENTIFIER,
    ]
    assert tokens[4].precedence == 4
    assert tokens[5].text == "2.5e-1"


def test_unary_minus_becomes_multiplication():
    assert _texts(tokenize("-x")) == ["-1", "*", "x"]
    assert _texts(tokenize("a * (-b)")) == ["a", "*", "(", "-1", "*", "b", ")"]
    # binary minus is left alone
    assert _texts(tokenize("a - b")) == ["a", "-", "b"]
    assert tokenize("-x")[1].unary
    assert not tokenize("a - b")[1].unary


def test_unary_plus_is_dropped():
    assert _texts(tokenize("+x")) == ["x"]


def test_line_comments_are_stripped():
    assert _texts(tokenize("x + 1 // trailing")) == ["x", "+", "1"]
    assert _texts(tokenize("x # hash comment")) == ["x"]
    assert tokenize("// only a comment") == ()


def test_block_comment_state_spans_calls():
    tok = Tokenizer()
    assert _texts(tok.tokenize("a + /* start")) == ["a", "+"]
    assert tok.in_block_comment
    assert tok.tokenize("still inside") == ()
    assert _texts(tok.tokenize("end */ b")) == ["b"]
    assert not tok.in_block_comment

    tok.tokenize("/* dangling")
    tok.reset()
    assert _texts(tok.tokenize("c")) == ["c"]


def test_unexpected_character_raises():
    with pytest.raises(ParseError, match="Unexpected character"):
        tokenize("x $ y")
