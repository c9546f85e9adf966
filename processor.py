"""Processor (Datapath + ControlUnit).

Provides VM execution over a decoded Program and logging initialization.
Semantic opcodes are delegated to a SemanticAdapter, LF to a file reader.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Sequence, TextIO

from config import load_config
from errors import (
    IoError,
    IoFailure,
    SemanticBackendFailure,
    SemanticError,
    StackUnderflow,
    TypeMismatch,
    UninitializedRegister,
    UnknownSnapshot,
    VmError,
)
from isa import (
    BRANCHES,
    OPCODES,
    SEMANTIC,
    Instruction,
    Message,
    Number,
    Operand,
    OperandKind,
    OpCode,
    Program,
    Role,
    Text,
    Value,
    decode_program,
    mnemonic,
)
from microcode import MICROCODE, Strategy
from semantic import LocalFileReader, OpenAISemanticAdapter, SemanticAdapter

LOGFILE = "processor.log"

HALTED = "halted"
ERROR = "error"
STOPPED = "stopped"


def init_logging(logfile: str = LOGFILE, debug: bool = False, console: bool = False) -> None:
    """Configure root logger to write to `logfile`.

    If debug=True set DEBUG level. If console=True also echo logs to stderr,
    stdout is reserved for program output.

    In debug mode the format is compact (no timestamp):
        DEBUG root:processor.py:301 STATE: RUNNING    STEP: FETCH ...
    """
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    lvl = logging.DEBUG if debug else logging.CRITICAL
    root.setLevel(lvl)

    if debug:
        file_fmt = "%(levelname)s %(name)s:%(filename)s:%(lineno)d %(message)s"
    else:
        file_fmt = "%(levelname)-5s %(message)s"

    # Indents all but the first record so one run reads as a block.
    class _IndentOnceFormatter(logging.Formatter):
        def __init__(self, fmt: str | None = None):
            super().__init__(fmt)
            self._seen_first = False

        def format(self, record: logging.LogRecord) -> str:
            s = super().format(record)
            if not self._seen_first:
                self._seen_first = True
                return s
            return "    " + s

    fh = logging.FileHandler(logfile, mode="w", encoding="utf-8")
    fh.setLevel(lvl)
    if debug:
        fh.setFormatter(_IndentOnceFormatter(file_fmt))
    else:
        fh.setFormatter(logging.Formatter(file_fmt))
    root.addHandler(fh)

    if debug and console:
        ch = logging.StreamHandler(sys.stderr)
        ch.setLevel(lvl)
        ch.setFormatter(logging.Formatter("%(levelname)5s %(message)s"))
        root.addHandler(ch)


class ContextStack:
    """Role-tagged messages; push/pop/drop all work on the most recent end."""

    def __init__(self, messages: Sequence[Message] = ()) -> None:
        self._messages: list[Message] = list(messages)

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def push(self, role: Role, content: str) -> None:
        self._messages.append(Message(role, content))

    def pop(self) -> Message:
        if not self._messages:
            err = "pop from empty context stack"
            raise StackUnderflow(err)
        return self._messages.pop()

    def drop(self) -> None:
        if not self._messages:
            err = "drop from empty context stack"
            raise StackUnderflow(err)
        del self._messages[-1]

    def clear(self) -> None:
        self._messages.clear()

    def snapshot(self) -> tuple[Message, ...]:
        # messages are frozen, a tuple copy is a deep copy
        return tuple(self._messages)

    def restore(self, snap: tuple[Message, ...]) -> None:
        self._messages = list(snap)


class Datapath:
    """Datapath (register file + context stack + snapshot table) for the VM."""

    registers: list[Value | None]
    pc: int
    stack: ContextStack
    snapshots: dict[int, tuple[Message, ...]]
    next_handle: int
    role: Role
    step: int
    step_limit: int | None
    lenient_log: bool
    output_buffer: list[str]
    out: TextIO | None
    error: VmError | None

    def __init__(
        self,
        register_count: int = 32,
        step_limit: int | None = None,
        lenient_log: bool = False,
        out: TextIO | None = None,
    ) -> None:
        self.registers = [None] * int(register_count)
        self.pc = 0
        self.stack = ContextStack()
        self.snapshots = {}
        self.next_handle = 1
        self.role = Role.USER
        self.step = 0
        self.step_limit = step_limit
        self.lenient_log = bool(lenient_log)
        self.output_buffer = []
        self.out = out
        self.error = None

    def read_reg(self, n: int) -> Value:
        v = self.registers[n - 1]
        if v is None:
            err = f"X{n} is read before it is written"
            raise UninitializedRegister(err)
        return v

    def write_reg(self, n: int, value: Value) -> None:
        self.registers[n - 1] = value
        logging.debug("X%d <- %r", n, value)

    def emit(self, text: str) -> None:
        line = text + "\n"
        self.output_buffer.append(line)
        if self.out is not None:
            self.out.write(line)
            self.out.flush()

    def take_snapshot(self) -> int:
        handle = self.next_handle
        self.next_handle += 1
        self.snapshots[handle] = self.stack.snapshot()
        logging.debug("snapshot %d taken, depth %d", handle, len(self.stack))
        return handle

    def restore_snapshot(self, handle: Value) -> None:
        if not isinstance(handle, Number):
            err = f"snapshot handle must be a number, got text {str(handle)!r}"
            raise TypeMismatch(err)
        key = int(handle.value) if float(handle.value).is_integer() else None
        if key not in self.snapshots:
            err = f"no snapshot with handle {handle}"
            raise UnknownSnapshot(err)
        self.stack.restore(self.snapshots[key])
        logging.debug("snapshot %d restored, depth %d", key, len(self.stack))


class ControlUnit:
    """Control unit implementing the FETCH-DECODE-EXEC loop for the Datapath."""

    dp: Datapath
    program: Program

    def __init__(
        self,
        dp: Datapath,
        program: Program,
        adapter: SemanticAdapter | None = None,
        reader: Any | None = None,
    ) -> None:
        """Create a ControlUnit bound to `dp` running `program`."""
        self.dp = dp
        self.program = program
        self.adapter = adapter
        self.reader = reader if reader is not None else LocalFileReader()

    def _log_step(self, state: str, step: str, instr: str) -> None:
        # skip verbose per-step logs in lenient mode to reduce log size
        if self.dp.lenient_log:
            return
        dp = self.dp
        left = f"STATE: {state:<10} STEP: {step:<10} TICK: {dp.step:4d} PC: {dp.pc:4d} "
        right = (
            f"DEPTH: {len(dp.stack):3d} SNAPSHOTS: {len(dp.snapshots):3d} ROLE: {dp.role.label:<9}\tINSTR: {instr}"
        )
        logging.debug(left + right)

    def run(self) -> tuple[str, int, str]:
        """Execute until halt, error or step limit. Returns (output, steps, state)."""
        dp = self.dp
        instructions = self.program.instructions
        state = HALTED
        while True:
            if not (0 <= dp.pc < len(instructions)):
                logging.debug("PC %d past end of program -> HALT", dp.pc)
                break
            if dp.step_limit is not None and dp.step >= dp.step_limit:
                logging.debug("step limit %d reached -> STOP", dp.step_limit)
                state = STOPPED
                break

            instr = instructions[dp.pc]
            instr_str = mnemonic(instr, self.program.constants)
            self._log_step("RUNNING", "FETCH", instr_str)
            try:
                exited = self.exec(instr)
            except VmError as e:
                e.address = dp.pc
                e.mnemonic = OPCODES[instr.opcode].mnemonic
                dp.error = e
                logging.error("%s %s", e.kind, e)
                self._log_step("ERROR", "EXECUTION", instr_str)
                state = ERROR
                break
            dp.step += 1
            self._log_step("RUNNING", "EXECUTION", instr_str)
            if exited:
                logging.debug("EXIT encountered")
                break

        return "".join(dp.output_buffer), dp.step, state

    # --- operand helpers ---
    def value(self, op: Operand) -> Value:
        if op.kind == OperandKind.REGISTER:
            return self.dp.read_reg(int(op.value))
        if op.kind == OperandKind.NUMBER:
            return Number(float(op.value))
        if op.kind == OperandKind.CONST:
            return self.program.constants[int(op.value)]
        err = f"operand {op.kind.name} has no value"
        raise TypeMismatch(err)

    def _branch_taken(self, opcode: OpCode, a: Value, b: Value) -> bool:
        if opcode == OpCode.BEQ:
            if type(a) is not type(b):
                err = f"cannot compare {type(a).__name__} with {type(b).__name__}"
                raise TypeMismatch(err)
            return a == b
        if not (isinstance(a, Number) and isinstance(b, Number)):
            err = "ordering branches need two numbers"
            raise TypeMismatch(err)
        x, y = a.value, b.value
        if opcode == OpCode.BLT:
            return x < y
        if opcode == OpCode.BLE:
            return x <= y
        if opcode == OpCode.BGT:
            return x > y
        return x >= y

    def _semantic(self, instr: Instruction) -> None:
        dp = self.dp
        if self.adapter is None:
            err = "no semantic backend configured"
            raise SemanticBackendFailure(err)
        dest = int(instr.operands[0].value)
        sources = [self.value(op) for op in instr.operands[1:]]
        try:
            result = self.adapter.evaluate(instr.opcode, dp.stack.messages, sources)
        except SemanticError as e:
            raise SemanticBackendFailure(str(e)) from e

        if MICROCODE[instr.opcode].strategy is Strategy.TEXT:
            ok = isinstance(result, Text)
        else:
            ok = isinstance(result, Number) and 0.0 <= result.value <= 100.0
        if not ok:
            err = f"backend returned {result!r} for {instr.opcode.name}"
            raise SemanticBackendFailure(err)
        dp.write_reg(dest, result)

    def exec(self, instr: Instruction) -> bool:  # noqa: C901
        """Execute a single instruction. Returns True on EXIT."""
        dp = self.dp
        opcode = instr.opcode
        ops = instr.operands

        if opcode == OpCode.EXIT:
            return True

        if opcode in BRANCHES:
            a, b = self.value(ops[0]), self.value(ops[1])
            if self._branch_taken(opcode, a, b):
                dp.pc = int(ops[2].value)
                logging.debug("%s taken -> %d", opcode.name, dp.pc)
                return False
            dp.pc += 1
            return False

        if opcode in (OpCode.LI, OpCode.LS):
            dp.write_reg(int(ops[0].value), self.value(ops[1]))
        elif opcode == OpCode.LF:
            path = str(self.value(ops[1]))
            try:
                content = self.reader.read_file(path)
            except IoError as e:
                raise IoFailure(str(e)) from e
            dp.write_reg(int(ops[0].value), content if isinstance(content, Text) else Text(str(content)))
        elif opcode == OpCode.MV:
            dp.write_reg(int(ops[0].value), dp.read_reg(int(ops[1].value)))
        elif opcode == OpCode.DEC:
            n = int(ops[0].value)
            v = dp.read_reg(n)
            if not isinstance(v, Number):
                err = f"DEC needs a number in X{n}"
                raise TypeMismatch(err)
            dp.write_reg(n, Number(v.value - float(ops[1].value)))
        elif opcode == OpCode.OUT:
            dp.emit(str(self.value(ops[0])))
        elif opcode == OpCode.PSH:
            role = Role(int(ops[1].value)) if len(ops) > 1 else dp.role
            dp.stack.push(role, str(self.value(ops[0])))
            logging.debug("PSH %s, depth %d", role.label, len(dp.stack))
        elif opcode == OpCode.POP:
            msg = dp.stack.pop()
            dp.write_reg(int(ops[0].value), Text(msg.content))
        elif opcode == OpCode.DRP:
            dp.stack.drop()
        elif opcode == OpCode.CLR:
            dp.stack.clear()
        elif opcode == OpCode.SNP:
            dp.write_reg(int(ops[0].value), Number(float(dp.take_snapshot())))
        elif opcode == OpCode.RST:
            dp.restore_snapshot(dp.read_reg(int(ops[0].value)))
        elif opcode == OpCode.SRL:
            dp.role = Role(int(ops[0].value))
            logging.debug("role -> %s", dp.role.label)
        elif opcode in SEMANTIC:
            self._semantic(instr)
        else:
            logging.debug("Unhandled opcode: %s", opcode)

        dp.pc += 1
        return False


# ---------- Public API ----------
def run_program(
    program: Program,
    config: dict[str, Any] | None = None,
    adapter: SemanticAdapter | None = None,
    reader: Any | None = None,
    out: TextIO | None = None,
) -> tuple[str, int, str, VmError | None]:
    """Run a decoded program. Returns (stdout, steps, state, error)."""
    cfg = load_config(config)
    if adapter is None:
        adapter = OpenAISemanticAdapter.from_config(cfg)
    if reader is None:
        reader = LocalFileReader(cfg["file_root"])

    dp = Datapath(
        register_count=program.register_count,
        step_limit=cfg["step_limit"],
        lenient_log=cfg["lenient_log"],
        out=out,
    )
    cu = ControlUnit(dp, program, adapter=adapter, reader=reader)
    output, steps, state = cu.run()
    return output, steps, state, dp.error


def run_bytes(
    code_bytes: bytes,
    config: dict[str, Any] | None = None,
    adapter: SemanticAdapter | None = None,
    reader: Any | None = None,
    out: TextIO | None = None,
) -> tuple[str, int, str, VmError | None]:
    """Decode bytecode and run it. FormatError propagates before any execution."""
    return run_program(decode_program(code_bytes), config, adapter=adapter, reader=reader, out=out)
