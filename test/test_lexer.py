from __future__ import annotations

from parser import COMMA, IDENT, LABEL, NEWLINE, NUMBER, STRING, tokenize

import pytest
from errors import InvalidToken, UnterminatedString


def _types(src: str) -> list[str]:
    return [t.type for t in tokenize(src)]


def test_instruction_line() -> None:
    toks = tokenize('LI X1, 5\nOUT "hi"')
    assert [t.type for t in toks] == [IDENT, IDENT, COMMA, NUMBER, NEWLINE, IDENT, STRING]
    assert toks[3].value == 5.0
    assert toks[6].value == "hi"


def test_comments_are_dropped() -> None:
    assert _types("; whole line\nEXIT ; trailing") == [NEWLINE, IDENT]


def test_label_definition() -> None:
    toks = tokenize("DONE: OUT X1")
    assert toks[0].type == LABEL
    assert toks[0].value == "DONE"
    assert toks[1].text == "OUT"


def test_fractional_number() -> None:
    (tok,) = tokenize("0.75")
    assert tok.type == NUMBER
    assert tok.value == 0.75


def test_string_escapes() -> None:
    (tok,) = tokenize(r'"say \"hi\"\nthen \\ bye"')
    assert tok.value == 'say "hi"\nthen \\ bye'


def test_semicolon_inside_string_is_not_a_comment() -> None:
    (tok,) = tokenize('"a; b"')
    assert tok.value == "a; b"


def test_multiline_string_keeps_line_numbers() -> None:
    toks = tokenize('LS X1, "one\ntwo"\nEXIT')
    assert toks[3].value == "one\ntwo"
    assert toks[-1].text == "EXIT"
    assert toks[-1].line == 3


def test_unterminated_string() -> None:
    with pytest.raises(UnterminatedString) as ei:
        tokenize('EXIT\nOUT "open')
    assert ei.value.line == 2
    assert ei.value.col == 5


def test_invalid_token_position() -> None:
    with pytest.raises(InvalidToken) as ei:
        tokenize("LI X1, #5")
    assert (ei.value.line, ei.value.col) == (1, 8)
    assert ei.value.kind == "InvalidToken"


def test_negative_numbers_are_rejected() -> None:
    with pytest.raises(InvalidToken):
        tokenize("LI X1, -1")
