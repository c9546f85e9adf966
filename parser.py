"""Module: tokenize assembly source and assemble it into a Program.

This module contains:
- tokenize(source) -> list of tokens
- split_statements(tokens) -> labelled statements, one per source line
- Assembler class that resolves labels in two passes and interns literals
- assemble_source / build_file entrypoints
"""

from __future__ import annotations

# ruff: noqa: A005
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from config import DEFAULTS
from errors import (
    DanglingLabel,
    DuplicateLabel,
    InvalidRegister,
    InvalidToken,
    OperandCountMismatch,
    OperandKindMismatch,
    UnexpectedToken,
    UnknownLabel,
    UnknownMnemonic,
    UnterminatedString,
)
from isa import (
    BY_MNEMONIC,
    OPCODES,
    ArgKind,
    Instruction,
    Operand,
    OpCode,
    Program,
    Role,
    Text,
    disassemble,
    encode_program,
)

IDENT = "IDENT"
NUMBER = "NUMBER"
STRING = "STRING"
COMMA = "COMMA"
LABEL = "LABEL"
NEWLINE = "NEWLINE"

TOKEN_RE = re.compile(
    r"""
    (?P<ws>[ \t\r\f\v]+)|                          # blanks inside a line
    (?P<comment>;[^\n]*)|                          # comment until end-of-line
    (?P<newline>\n)|
    (?P<string>"(?:[^"\\]|\\.)*")|                 # double-quoted, may span lines
    (?P<number>\d+(?:\.\d+)?(?![A-Za-z_]))|        # 5, 0.75
    (?P<label>[A-Za-z_][A-Za-z0-9_.]*:)|          # DONE:
    (?P<ident>[A-Za-z_][A-Za-z0-9_.]*)|           # mnemonic, register, label ref, role
    (?P<comma>,)
    """,
    re.VERBOSE | re.DOTALL,
)
REGISTER_RE = re.compile(r"^[Xx](\d+)$")

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", '"': '"', "\\": "\\"}


@dataclass(frozen=True)
class Token:
    type: str
    text: str
    line: int
    col: int
    value: str | float | None = None


def _decode_string_token(tok: str) -> str:
    """Decode a double-quoted token into a Python string."""
    body = tok[1:-1]
    out: list[str] = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\" and i + 1 < len(body):
            nxt = body[i + 1]
            out.append(_ESCAPES.get(nxt, "\\" + nxt))
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def tokenize(source: str) -> list[Token]:
    """Scan source text into tokens (comments and blanks skipped).

    Raises UnterminatedString or InvalidToken with line/column.
    """
    tokens: list[Token] = []
    pos, line, line_start = 0, 1, 0
    while pos < len(source):
        col = pos - line_start + 1
        m = TOKEN_RE.match(source, pos)
        if m is None:
            if source[pos] == '"':
                err = "string literal is never closed"
                raise UnterminatedString(err, line, col)
            err = f"unexpected character {source[pos]!r}"
            raise InvalidToken(err, line, col)
        kind = m.lastgroup
        text = m.group()
        if kind == "newline":
            tokens.append(Token(NEWLINE, text, line, col))
        elif kind == "string":
            tokens.append(Token(STRING, text, line, col, _decode_string_token(text)))
        elif kind == "number":
            tokens.append(Token(NUMBER, text, line, col, float(text)))
        elif kind == "label":
            tokens.append(Token(LABEL, text, line, col, text[:-1]))
        elif kind == "ident":
            tokens.append(Token(IDENT, text, line, col, text))
        elif kind == "comma":
            tokens.append(Token(COMMA, text, line, col))
        # strings may span lines; keep line/column tracking exact
        newlines = text.count("\n")
        if newlines:
            line += newlines
            line_start = pos + text.rfind("\n") + 1
        pos = m.end()
    return tokens


@dataclass
class Statement:
    """One source line: the labels it defines and an optional instruction."""

    line: int
    labels: list[str] = field(default_factory=list)
    mnemonic: Token | None = None
    operands: list[Token] = field(default_factory=list)


def _split_operands(toks: list[Token], line: int) -> list[Token]:
    """Check `a, b, c` shape and return the operand tokens."""
    operands: list[Token] = []
    expect_operand = True
    for tok in toks:
        if expect_operand:
            if tok.type not in (IDENT, NUMBER, STRING):
                err = f"expected operand, got {tok.text!r}"
                raise UnexpectedToken(err, line)
            operands.append(tok)
        elif tok.type != COMMA:
            err = f"expected ',' before {tok.text!r}"
            raise UnexpectedToken(err, line)
        expect_operand = not expect_operand
    if operands and expect_operand:
        err = "trailing ',' after last operand"
        raise UnexpectedToken(err, line)
    return operands


def split_statements(tokens: list[Token]) -> list[Statement]:
    """Group tokens into per-line statements."""
    statements: list[Statement] = []
    current: list[Token] = []
    for tok in [*tokens, Token(NEWLINE, "\n", -1, -1)]:
        if tok.type != NEWLINE:
            current.append(tok)
            continue
        if not current:
            continue
        st = Statement(line=current[0].line)
        rest = current
        while rest and rest[0].type == LABEL:
            st.labels.append(str(rest[0].value))
            rest = rest[1:]
        if rest:
            head = rest[0]
            if head.type != IDENT:
                err = f"expected mnemonic, got {head.text!r}"
                raise UnexpectedToken(err, st.line)
            st.mnemonic = head
            st.operands = _split_operands(rest[1:], st.line)
        statements.append(st)
        current = []
    return statements


class Assembler:
    """Assembler: resolves labels and literals into a Program."""

    def __init__(self, statements: list[Statement], register_count: int = int(DEFAULTS["register_count"])):
        self.statements = statements
        self.register_count = int(register_count)
        self.labels: dict[str, int] = {}
        self.consts: dict[str, int] = {}  # text -> pool index
        self.constants: list[Text] = []
        self.instructions: list[Instruction] = []
        self.program_len = 0
        self.pc = 0

    def add_const(self, s: str) -> int:
        """Intern text into the constant pool and return its index."""
        if s in self.consts:
            return self.consts[s]
        idx = len(self.constants)
        self.constants.append(Text(s))
        self.consts[s] = idx
        return idx

    def emit(self, opcode: OpCode, operands: list[Operand], line: int) -> int:
        addr = self.pc
        self.instructions.append(Instruction(opcode, tuple(operands), line))
        self.pc += 1
        return addr

    def assemble(self) -> Program:
        self._collect_labels()
        for st in self.statements:
            if st.mnemonic is not None:
                self._assemble_statement(st)
        logging.debug(
            "assembled %d instructions, %d constants, %d labels",
            len(self.instructions),
            len(self.constants),
            len(self.labels),
        )
        return Program(tuple(self.instructions), tuple(self.constants), self.register_count, dict(self.labels))

    # --- pass 1 ---
    def _collect_labels(self) -> None:
        addr = 0
        for st in self.statements:
            for name in st.labels:
                if REGISTER_RE.match(name):
                    err = f"label {name!r} collides with a register name"
                    raise UnexpectedToken(err, st.line)
                if name in self.labels:
                    err = f"label {name!r} is already defined"
                    raise DuplicateLabel(err, st.line)
                self.labels[name] = addr
            if st.mnemonic is not None:
                addr += 1
        self.program_len = addr

    # --- pass 2 ---
    def _assemble_statement(self, st: Statement) -> None:
        assert st.mnemonic is not None
        name = str(st.mnemonic.value).upper()
        opcode = BY_MNEMONIC.get(name)
        if opcode is None:
            err = f"unknown mnemonic {st.mnemonic.text!r}"
            raise UnknownMnemonic(err, st.line)
        info = OPCODES[opcode]
        n = len(st.operands)
        if not (info.min_args <= n <= info.max_args):
            want = str(info.max_args) if info.min_args == info.max_args else f"{info.min_args}..{info.max_args}"
            err = f"{info.mnemonic} takes {want} operands, got {n}"
            raise OperandCountMismatch(err, st.line)
        operands = [self._operand(info.mnemonic, kind, tok, st.line) for kind, tok in zip(info.args, st.operands)]
        self.emit(opcode, operands, st.line)

    def _register(self, tok: Token, line: int) -> Operand:
        m = REGISTER_RE.match(tok.text)
        assert m is not None
        n = int(m.group(1))
        if not (1 <= n <= self.register_count):
            err = f"register {tok.text} outside X1..X{self.register_count}"
            raise InvalidRegister(err, line)
        return Operand.register(n)

    def _label(self, tok: Token, line: int) -> Operand:
        name = str(tok.value)
        if name not in self.labels:
            err = f"label {name!r} is not defined"
            raise UnknownLabel(err, line)
        addr = self.labels[name]
        if addr >= self.program_len:
            err = f"label {name!r} points past the last instruction"
            raise DanglingLabel(err, line)
        return Operand.address(addr)

    def _operand(self, mnem: str, kind: ArgKind, tok: Token, line: int) -> Operand:  # noqa: C901
        is_reg = tok.type == IDENT and REGISTER_RE.match(tok.text) is not None
        is_name = tok.type == IDENT and not is_reg

        if kind in (ArgKind.REG, ArgKind.SRC) and is_reg:
            return self._register(tok, line)
        if kind in (ArgKind.SRC, ArgKind.IMM, ArgKind.NUM) and tok.type == NUMBER:
            return Operand.number(float(tok.value))  # type: ignore[arg-type]
        if kind in (ArgKind.SRC, ArgKind.IMM, ArgKind.STR) and tok.type == STRING:
            return Operand.const(self.add_const(str(tok.value)))
        if kind is ArgKind.LABEL and is_name:
            return self._label(tok, line)
        if kind is ArgKind.ROLE and is_name and tok.text.lower() in ("user", "assistant"):
            return Operand.role(Role[tok.text.upper()])

        err = f"{mnem} expects {kind.value}, got {tok.text!r}"
        raise OperandKindMismatch(err, line)


# --- helper entrypoints for using this module programmatically ---


def parse(tokens: list[Token], register_count: int = int(DEFAULTS["register_count"])) -> Program:
    """Validate tokens and return a fully resolved Program."""
    return Assembler(split_statements(tokens), register_count).assemble()


def assemble_source(source: str, register_count: int = int(DEFAULTS["register_count"])) -> Program:
    return parse(tokenize(source), register_count)


def build_file(
    input_path: str | Path,
    out: str | Path | None = None,
    build_dir: str | Path = str(DEFAULTS["build_dir"]),
    register_count: int = int(DEFAULTS["register_count"]),
    debug: bool = False,
) -> str:
    """Assemble a source file and write the bytecode file.

    Returns the bytecode path. Without `out` it is "<build_dir>/<stem>.lpu".
    With `debug` a "<out>.hex" listing is written next to it.
    """
    p = Path(input_path)
    if not p.exists():
        err = f"Source file not found: {input_path}"
        raise FileNotFoundError(err)

    raw = p.read_bytes()
    try:
        source = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        head = raw[: e.start]
        line = head.count(b"\n") + 1
        col = e.start - (head.rfind(b"\n") + 1) + 1
        err = f"source is not valid UTF-8 (byte 0x{raw[e.start]:02x})"
        raise InvalidToken(err, line, col) from e

    program = assemble_source(source, register_count)

    out_path = Path(build_dir) / (p.stem + ".lpu") if out is None else Path(out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_bytes(encode_program(program))
    logging.debug("wrote %s (%d instructions)", out_path, len(program))

    if debug:
        Path(str(out_path) + ".hex").write_text("\n".join(disassemble(program)) + "\n", encoding="utf-8")

    return str(out_path)
