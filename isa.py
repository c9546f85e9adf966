"""ISA: opcodes, operand shapes, values and the bytecode container."""

from __future__ import annotations

import math
import struct
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Union

from errors import BadMagic, MalformedRecord, Truncated, UnknownOpcode, VersionMismatch


class OpCode(IntEnum):
    """Keeps opcodes from all operations. Values are the on-disk ids."""

    # data movement
    LI = 1  # Xd = imm
    LS = 2  # Xd = "text"
    LF = 3  # Xd = contents of file
    MV = 4  # Xd = Xs
    DEC = 5  # Xd -= num

    # control flow
    BEQ = 10
    BLT = 11
    BLE = 12
    BGT = 13
    BGE = 14
    EXIT = 15

    # io
    OUT = 20

    # context stack
    PSH = 30
    POP = 31
    DRP = 32
    CLR = 33
    SNP = 34
    RST = 35
    SRL = 36

    # semantic: generative / cognitive
    MOR = 40  # transform
    PRJ = 41  # project
    DST = 42  # distill
    COR = 43  # correlate
    # semantic: guardrails
    AUD = 44  # audit -> 100/0
    SIM = 45  # embedding similarity -> 0..100
    ADT = 46  # explain non-compliance
    HAL = 47  # hallucination check -> 100/0
    # semantic: arithmetic analogues
    ADD = 50  # merge
    SUB = 51  # split
    MUL = 52  # scale
    DIV = 53  # partition
    INF = 54  # infer
    # semantic: heuristics
    EQV = 55  # equivalence -> 100/0
    INT = 56  # intent alignment -> 100/0


class ArgKind(Enum):
    """Source-level operand kinds used by the opcode table."""

    REG = "register"
    SRC = "register or literal"
    IMM = "literal"
    NUM = "number"
    STR = "string"
    LABEL = "label"
    ROLE = "role"


class Role(IntEnum):
    USER = 0
    ASSISTANT = 1

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class OpInfo:
    mnemonic: str
    args: tuple[ArgKind, ...] = ()
    optional: int = 0  # number of trailing args that may be omitted

    @property
    def min_args(self) -> int:
        return len(self.args) - self.optional

    @property
    def max_args(self) -> int:
        return len(self.args)


_R, _S = ArgKind.REG, ArgKind.SRC
_UNARY = (_R, _S)
_BINARY = (_R, _S, _S)
_BRANCH = (_S, _S, ArgKind.LABEL)

OPCODES: dict[OpCode, OpInfo] = {
    OpCode.LI: OpInfo("LI", (_R, ArgKind.IMM)),
    OpCode.LS: OpInfo("LS", (_R, ArgKind.STR)),
    OpCode.LF: OpInfo("LF", (_R, ArgKind.STR)),
    OpCode.MV: OpInfo("MV", (_R, _R)),
    OpCode.DEC: OpInfo("DEC", (_R, ArgKind.NUM)),
    OpCode.BEQ: OpInfo("BEQ", _BRANCH),
    OpCode.BLT: OpInfo("BLT", _BRANCH),
    OpCode.BLE: OpInfo("BLE", _BRANCH),
    OpCode.BGT: OpInfo("BGT", _BRANCH),
    OpCode.BGE: OpInfo("BGE", _BRANCH),
    OpCode.EXIT: OpInfo("EXIT"),
    OpCode.OUT: OpInfo("OUT", (_S,)),
    OpCode.PSH: OpInfo("PSH", (_S, ArgKind.ROLE), optional=1),
    OpCode.POP: OpInfo("POP", (_R,)),
    OpCode.DRP: OpInfo("DRP"),
    OpCode.CLR: OpInfo("CLR"),
    OpCode.SNP: OpInfo("SNP", (_R,)),
    OpCode.RST: OpInfo("RST", (_R,)),
    OpCode.SRL: OpInfo("SRL", (ArgKind.ROLE,)),
    OpCode.MOR: OpInfo("MOR", _UNARY),
    OpCode.PRJ: OpInfo("PRJ", _UNARY),
    OpCode.DST: OpInfo("DST", _UNARY),
    OpCode.COR: OpInfo("COR", _UNARY),
    OpCode.AUD: OpInfo("AUD", _UNARY),
    OpCode.HAL: OpInfo("HAL", _UNARY),
    OpCode.SIM: OpInfo("SIM", _BINARY),
    OpCode.ADT: OpInfo("ADT", _BINARY),
    OpCode.ADD: OpInfo("ADD", _BINARY),
    OpCode.SUB: OpInfo("SUB", _BINARY),
    OpCode.MUL: OpInfo("MUL", _BINARY),
    OpCode.DIV: OpInfo("DIV", _BINARY),
    OpCode.INF: OpInfo("INF", _BINARY),
    OpCode.EQV: OpInfo("EQV", _BINARY),
    OpCode.INT: OpInfo("INT", _BINARY),
}

BY_MNEMONIC: dict[str, OpCode] = {info.mnemonic: op for op, info in OPCODES.items()}

BRANCHES = frozenset({OpCode.BEQ, OpCode.BLT, OpCode.BLE, OpCode.BGT, OpCode.BGE})
SEMANTIC = frozenset(op for op in OpCode if op >= OpCode.MOR)

REGISTER_COUNTS = (8, 32)


# --- values ---
def format_number(x: float) -> str:
    """Render a number the way OUT prints it: integral values drop the '.0'."""
    if math.isfinite(x) and float(x).is_integer():
        return str(int(x))
    return repr(float(x))


@dataclass(frozen=True)
class Number:
    value: float

    def __str__(self) -> str:
        return format_number(self.value)


@dataclass(frozen=True)
class Text:
    value: str

    def __str__(self) -> str:
        return self.value


Value = Union[Number, Text]


@dataclass(frozen=True)
class Message:
    """One entry of the context stack."""

    role: Role
    content: str


# --- operands / instructions / program ---
class OperandKind(IntEnum):
    """Operand tags as stored in an instruction record."""

    NONE = 0
    REGISTER = 1
    NUMBER = 2
    CONST = 3
    ADDRESS = 4
    ROLE = 5


@dataclass(frozen=True)
class Operand:
    kind: OperandKind
    value: int | float

    @classmethod
    def register(cls, n: int) -> Operand:
        return cls(OperandKind.REGISTER, int(n))

    @classmethod
    def number(cls, x: float) -> Operand:
        return cls(OperandKind.NUMBER, float(x))

    @classmethod
    def const(cls, idx: int) -> Operand:
        return cls(OperandKind.CONST, int(idx))

    @classmethod
    def address(cls, addr: int) -> Operand:
        return cls(OperandKind.ADDRESS, int(addr))

    @classmethod
    def role(cls, role: Role) -> Operand:
        return cls(OperandKind.ROLE, int(role))


@dataclass(frozen=True)
class Instruction:
    opcode: OpCode
    operands: tuple[Operand, ...] = ()
    line: int | None = field(default=None, compare=False)


@dataclass(frozen=True)
class Program:
    """Fully resolved program: label operands are absolute instruction indices."""

    instructions: tuple[Instruction, ...]
    constants: tuple[Value, ...] = ()
    register_count: int = 32
    labels: dict[str, int] = field(default_factory=dict, compare=False)

    def __len__(self) -> int:
        return len(self.instructions)


def accepts(arg: ArgKind, operand: Operand, constants: tuple[Value, ...]) -> bool:
    """Check a resolved operand against the kind the opcode table expects."""
    k = operand.kind
    if arg is ArgKind.REG:
        return k == OperandKind.REGISTER
    if arg is ArgKind.SRC:
        return k in (OperandKind.REGISTER, OperandKind.NUMBER, OperandKind.CONST)
    if arg is ArgKind.IMM:
        return k in (OperandKind.NUMBER, OperandKind.CONST)
    if arg is ArgKind.NUM:
        return k == OperandKind.NUMBER
    if arg is ArgKind.STR:
        idx = int(operand.value)
        return k == OperandKind.CONST and 0 <= idx < len(constants) and isinstance(constants[idx], Text)
    if arg is ArgKind.LABEL:
        return k == OperandKind.ADDRESS
    return k == OperandKind.ROLE


# Container layout (little-endian):
#   header  : magic[4] version:u16 registers:u16 instructions:u32 constants:u32
#   records : opcode:u8 argc:u8 then MAX_OPERANDS x (tag:u8 payload[8])
#   pool    : tag:u8 then f64 (number) or u32 length + utf-8 bytes (text)
MAGIC = b"LPU\x00"
FORMAT_VERSION = 1
MAX_OPERANDS = 3

HEADER = struct.Struct("<4sHHII")
RECORD = struct.Struct("<BB" + "B8s" * MAX_OPERANDS)
INSTR_SIZE = RECORD.size

_POOL_NUMBER = 0
_POOL_TEXT = 1


def _payload(op: Operand) -> bytes:
    if op.kind == OperandKind.NUMBER:
        return struct.pack("<d", float(op.value))
    return struct.pack("<q", int(op.value))


def encode_instr(instr: Instruction) -> bytes:
    """Encode one instruction into a fixed-size record."""
    fields: list[int | bytes] = [int(instr.opcode), len(instr.operands)]
    for i in range(MAX_OPERANDS):
        if i < len(instr.operands):
            op = instr.operands[i]
            fields += [int(op.kind), _payload(op)]
        else:
            fields += [int(OperandKind.NONE), bytes(8)]
    return RECORD.pack(*fields)


def decode_instr(blob: bytes, offset: int) -> Instruction:
    """Decode the record at offset.

    Raises Truncated, UnknownOpcode or MalformedRecord.
    """
    if offset + INSTR_SIZE > len(blob):
        err = f"instruction record at byte {offset} is cut short"
        raise Truncated(err)
    fields = RECORD.unpack_from(blob, offset)
    raw_op, argc = fields[0], fields[1]
    try:
        opcode = OpCode(raw_op)
    except ValueError as e:
        err = f"opcode id {raw_op} at byte {offset} is not in the opcode table"
        raise UnknownOpcode(err) from e
    if argc > MAX_OPERANDS:
        err = f"record at byte {offset} claims {argc} operands"
        raise MalformedRecord(err)
    operands: list[Operand] = []
    for i in range(argc):
        tag, payload = fields[2 + 2 * i], fields[3 + 2 * i]
        try:
            kind = OperandKind(tag)
        except ValueError as e:
            err = f"unknown operand tag {tag} at byte {offset}"
            raise MalformedRecord(err) from e
        if kind == OperandKind.NONE:
            err = f"empty operand slot {i} inside operand count at byte {offset}"
            raise MalformedRecord(err)
        if kind == OperandKind.NUMBER:
            (value,) = struct.unpack("<d", payload)
            operands.append(Operand(kind, float(value)))
        else:
            (ivalue,) = struct.unpack("<q", payload)
            operands.append(Operand(kind, int(ivalue)))
    return Instruction(opcode, tuple(operands))


def _encode_constant(value: Value) -> bytes:
    if isinstance(value, Number):
        return struct.pack("<Bd", _POOL_NUMBER, value.value)
    data = value.value.encode("utf-8")
    return struct.pack("<BI", _POOL_TEXT, len(data)) + data


def encode_program(program: Program) -> bytes:
    """Serialize a program into the versioned container."""
    out = bytearray(
        HEADER.pack(
            MAGIC,
            FORMAT_VERSION,
            program.register_count,
            len(program.instructions),
            len(program.constants),
        )
    )
    for instr in program.instructions:
        out += encode_instr(instr)
    for value in program.constants:
        out += _encode_constant(value)
    return bytes(out)


def _read(blob: bytes, offset: int, fmt: str, what: str) -> tuple[tuple, int]:
    size = struct.calcsize(fmt)
    if offset + size > len(blob):
        err = f"{what} at byte {offset} is cut short"
        raise Truncated(err)
    return struct.unpack_from(fmt, blob, offset), offset + size


def _decode_pool(blob: bytes, offset: int, count: int) -> tuple[list[Value], int]:
    constants: list[Value] = []
    for i in range(count):
        (tag,), offset = _read(blob, offset, "<B", f"constant {i}")
        if tag == _POOL_NUMBER:
            (x,), offset = _read(blob, offset, "<d", f"constant {i}")
            constants.append(Number(float(x)))
        elif tag == _POOL_TEXT:
            (ln,), offset = _read(blob, offset, "<I", f"constant {i}")
            if offset + ln > len(blob):
                err = f"text constant {i} at byte {offset} is cut short"
                raise Truncated(err)
            try:
                constants.append(Text(blob[offset : offset + ln].decode("utf-8")))
            except UnicodeDecodeError as e:
                err = f"text constant {i} is not valid UTF-8"
                raise MalformedRecord(err) from e
            offset += ln
        else:
            err = f"unknown constant tag {tag} for constant {i}"
            raise MalformedRecord(err)
    return constants, offset


def _check_shape(addr: int, instr: Instruction, program_len: int, registers: int, constants: tuple[Value, ...]) -> None:
    info = OPCODES[instr.opcode]
    n = len(instr.operands)
    if not (info.min_args <= n <= info.max_args):
        err = f"record {addr}: {info.mnemonic} carries {n} operands"
        raise MalformedRecord(err)
    for arg, op in zip(info.args, instr.operands):
        if not accepts(arg, op, constants):
            err = f"record {addr}: {info.mnemonic} operand {op.kind.name} where {arg.value} expected"
            raise MalformedRecord(err)
        v = int(op.value) if op.kind != OperandKind.NUMBER else 0
        if op.kind == OperandKind.REGISTER and not (1 <= v <= registers):
            err = f"record {addr}: register X{v} outside X1..X{registers}"
            raise MalformedRecord(err)
        if op.kind == OperandKind.CONST and not (0 <= v < len(constants)):
            err = f"record {addr}: constant index {v} outside pool"
            raise MalformedRecord(err)
        if op.kind == OperandKind.ADDRESS and not (0 <= v < program_len):
            err = f"record {addr}: branch target {v} outside program"
            raise MalformedRecord(err)
        if op.kind == OperandKind.ROLE and v not in (r.value for r in Role):
            err = f"record {addr}: unknown role id {v}"
            raise MalformedRecord(err)


def decode_program(blob: bytes) -> Program:
    """Deserialize a program. Any malformed part voids the whole program."""
    if len(blob) >= len(MAGIC) and blob[: len(MAGIC)] != MAGIC:
        err = "not a bytecode program (bad magic)"
        raise BadMagic(err)
    if len(blob) < HEADER.size:
        err = f"header needs {HEADER.size} bytes, got {len(blob)}"
        raise Truncated(err)
    _magic, version, registers, n_instr, n_const = HEADER.unpack_from(blob, 0)
    if version != FORMAT_VERSION:
        err = f"format version {version} is not supported (expected {FORMAT_VERSION})"
        raise VersionMismatch(err)
    if registers not in REGISTER_COUNTS:
        err = f"register count {registers} is not one of {REGISTER_COUNTS}"
        raise MalformedRecord(err)

    offset = HEADER.size
    instructions: list[Instruction] = []
    for _ in range(n_instr):
        instructions.append(decode_instr(blob, offset))
        offset += INSTR_SIZE

    constants, offset = _decode_pool(blob, offset, n_const)
    if offset != len(blob):
        err = f"{len(blob) - offset} trailing bytes after constant pool"
        raise MalformedRecord(err)

    pool = tuple(constants)
    for addr, instr in enumerate(instructions):
        _check_shape(addr, instr, len(instructions), registers, pool)
    return Program(tuple(instructions), pool, registers)


# --- listing helpers ---
def format_operand(op: Operand, constants: tuple[Value, ...] = ()) -> str:
    if op.kind == OperandKind.REGISTER:
        return f"X{int(op.value)}"
    if op.kind == OperandKind.NUMBER:
        return format_number(float(op.value))
    if op.kind == OperandKind.ADDRESS:
        return f"@{int(op.value)}"
    if op.kind == OperandKind.ROLE:
        return Role(int(op.value)).label
    idx = int(op.value)
    if 0 <= idx < len(constants):
        c = constants[idx]
        return repr(c.value) if isinstance(c, Text) else str(c)
    return f"#{idx}"


def mnemonic(instr: Instruction, constants: tuple[Value, ...] = ()) -> str:
    """Get operation mnemonic with its operands."""
    name = OPCODES[instr.opcode].mnemonic
    if not instr.operands:
        return name
    return name + " " + ", ".join(format_operand(op, constants) for op in instr.operands)


def disassemble(program: Program) -> list[str]:
    """Return one '<addr> - <record hex> - <mnemonic>' line per instruction."""
    lines: list[str] = []
    for addr, instr in enumerate(program.instructions):
        hexbytes = encode_instr(instr).hex().upper()
        lines.append(f"{addr} - {hexbytes} - {mnemonic(instr, program.constants)}")
    return lines
