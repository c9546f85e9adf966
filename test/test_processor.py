from __future__ import annotations

import io
from parser import assemble_source
from typing import Any, Sequence

import pytest
from isa import Message, Number, OpCode, Role, Text, Value
from processor import ERROR, HALTED, ContextStack, ControlUnit, Datapath, run_program
from semantic import LocalFileReader, SemanticAdapter


def _machine(src: str, adapter: Any = None, **dp_kwargs: Any) -> ControlUnit:
    program = assemble_source(src)
    return ControlUnit(Datapath(program.register_count, **dp_kwargs), program, adapter=adapter)


def _run(src: str, adapter: Any = None) -> tuple[str, int, str, Any]:
    return run_program(assemble_source(src), {}, adapter=adapter, out=io.StringIO())


def test_context_stack_is_lifo() -> None:
    stack = ContextStack()
    for word in ("a", "b", "c"):
        stack.push(Role.USER, word)
    assert [stack.pop().content for _ in range(3)] == ["c", "b", "a"]
    assert len(stack) == 0


def test_push_pop_program_reverses_order() -> None:
    out, _steps, state, _err = _run(
        'PSH "one"\nPSH "two"\nPSH "three"\nPOP X1\nOUT X1\nPOP X1\nOUT X1\nPOP X1\nOUT X1\nDRP'
    )
    assert out == "three\ntwo\none\n"
    assert state == ERROR


def test_snapshot_restore_returns_to_checkpoint() -> None:
    cu = _machine(
        """
        PSH "system brief"
        PSH "draft", assistant
        SNP X1
        DRP
        PSH "noise"
        CLR
        PSH "other"
        RST X1
        """
    )
    cu.run()
    assert cu.dp.stack.messages == (
        Message(Role.USER, "system brief"),
        Message(Role.ASSISTANT, "draft"),
    )
    assert cu.dp.registers[0] == Number(1)


def test_restore_does_not_consume_snapshot() -> None:
    cu = _machine('PSH "a"\nSNP X1\nCLR\nRST X1\nPSH "b"\nRST X1\nRST X1')
    _out, _steps, state = cu.run()
    assert state == HALTED
    assert cu.dp.stack.messages == (Message(Role.USER, "a"),)
    assert list(cu.dp.snapshots) == [1]


def test_snapshot_handles_are_fresh() -> None:
    cu = _machine("SNP X1\nSNP X2")
    cu.run()
    assert cu.dp.registers[:2] == [Number(1), Number(2)]


@pytest.mark.parametrize("x", ["0", "5", "2.5", '"text"'])
def test_beq_is_reflexive(x: str) -> None:
    out, *_ = _run(f"LI X1, {x}\nBEQ X1, X1, YES\nOUT 0\nEXIT\nYES: OUT 1")
    assert out == "1\n"


@pytest.mark.parametrize("x", ["0", "5", "2.5"])
def test_blt_is_irreflexive(x: str) -> None:
    out, *_ = _run(f"LI X1, {x}\nBLT X1, X1, YES\nOUT 0\nEXIT\nYES: OUT 1")
    assert out == "0\n"


@pytest.mark.parametrize(
    ("op", "a", "b", "taken"),
    [
        ("BLT", 1, 2, True),
        ("BLE", 2, 2, True),
        ("BGT", 2, 2, False),
        ("BGE", 3, 2, True),
        ("BEQ", 1, 2, False),
    ],
)
def test_numeric_branches(op: str, a: int, b: int, taken: bool) -> None:
    out, *_ = _run(f"{op} {a}, {b}, T\nOUT 0\nEXIT\nT: OUT 1")
    assert out == ("1\n" if taken else "0\n")


def test_equal_numbers_scenario() -> None:
    out, steps, state, err = _run('LI X1, 5\nLI X2, 5\nBEQ X1, X2, DONE\nOUT "no"\nDONE: OUT "yes"')
    assert out == "yes\n"
    assert (steps, state, err) == (4, HALTED, None)


def test_beq_over_text_and_mixed_types() -> None:
    out, *_ = _run('LS X1, "cat"\nBEQ X1, "cat", Y\nOUT "n"\nEXIT\nY: OUT "y"')
    assert out == "y\n"
    _out, _steps, state, err = _run('LS X1, "5"\nBEQ X1, 5, Y\nY: EXIT')
    assert state == ERROR
    assert err.kind == "TypeMismatch"


def test_ordering_branch_rejects_text() -> None:
    _out, _steps, state, err = _run('BGE "b", "a", Y\nY: EXIT')
    assert state == ERROR
    assert err.kind == "TypeMismatch"
    assert err.address == 0


def test_running_off_the_end_halts_normally() -> None:
    out, steps, state, err = _run("OUT 1\nOUT 2")
    assert (out, steps, state, err) == ("1\n2\n", 2, HALTED, None)


def test_exit_stops_immediately() -> None:
    out, steps, state, _err = _run("EXIT\nOUT 1")
    assert (out, steps, state) == ("", 1, HALTED)


def test_pop_on_empty_stack() -> None:
    _out, _steps, state, err = _run("POP X1")
    assert state == ERROR
    assert err.kind == "StackUnderflow"
    assert str(err).startswith("at 0 (POP): ")


def test_drop_on_empty_stack() -> None:
    _out, _steps, _state, err = _run("DRP")
    assert err.kind == "StackUnderflow"


def test_uninitialized_register() -> None:
    _out, _steps, state, err = _run("LI X1, 1\nMV X2, X3")
    assert state == ERROR
    assert err.kind == "UninitializedRegister"
    assert err.address == 1
    assert err.mnemonic == "MV"


def test_restore_errors() -> None:
    _o, _s, _st, err = _run('LS X1, "1"\nRST X1')
    assert err.kind == "TypeMismatch"
    _o, _s, _st, err = _run("LI X1, 4\nRST X1")
    assert err.kind == "UnknownSnapshot"


def test_dec_counts_down_and_rejects_text() -> None:
    out, *_ = _run("LI X1, 3\nDEC X1, 1\nOUT X1\nDEC X1, 0.5\nOUT X1")
    assert out == "2\n1.5\n"
    _o, _s, _st, err = _run('LI X1, "3"\nDEC X1, 1')
    assert err.kind == "TypeMismatch"


def test_pop_stores_text() -> None:
    cu = _machine("PSH 42\nPOP X1")
    cu.run()
    assert cu.dp.registers[0] == Text("42")


def test_output_is_streamed() -> None:
    stream = io.StringIO()
    out, *_ = run_program(assemble_source("OUT 0.25\nOUT 10"), {}, out=stream, adapter=None)
    assert out == "0.25\n10\n"
    assert stream.getvalue() == out


def test_step_limit_stops_the_run() -> None:
    out, steps, state, err = run_program(
        assemble_source("L: OUT 1\nBEQ 1, 1, L"), {"step_limit": 3}, out=io.StringIO()
    )
    assert (out, steps, state, err) == ("1\n1\n", 3, "stopped", None)


class _Recorder(SemanticAdapter):
    def __init__(self, result: Value) -> None:
        self.result = result
        self.calls: list[tuple[OpCode, list[Message], list[Value]]] = []

    def evaluate(self, opcode: OpCode, messages: Sequence[Message], operands: Sequence[Value]) -> Value:
        self.calls.append((opcode, list(messages), list(operands)))
        return self.result


def test_roles_and_context_reach_the_backend() -> None:
    rec = _Recorder(Text("ok"))
    src = """
        PSH "question"
        SRL assistant
        PSH "answer"
        PSH "note", user
        LI  X2, "criteria"
        ADD X1, X2, 7
        OUT X1
    """
    out, *_ = _run(src, adapter=rec)
    assert out == "ok\n"
    ((opcode, messages, operands),) = rec.calls
    assert opcode == OpCode.ADD
    assert messages == [
        Message(Role.USER, "question"),
        Message(Role.ASSISTANT, "answer"),
        Message(Role.USER, "note"),
    ]
    assert operands == [Text("criteria"), Number(7)]


def test_verdict_ops_need_numbers_in_range() -> None:
    _o, _s, state, err = _run('AUD X1, "rule"', adapter=_Recorder(Text("YES")))
    assert state == ERROR
    assert err.kind == "SemanticBackendFailure"
    _o, _s, _st, err = _run('SIM X1, "a", "b"', adapter=_Recorder(Number(150)))
    assert err.kind == "SemanticBackendFailure"


def test_text_ops_need_text() -> None:
    _o, _s, _st, err = _run('MOR X1, "json"', adapter=_Recorder(Number(1)))
    assert err.kind == "SemanticBackendFailure"


def test_backend_error_becomes_vm_error(scripted: Any) -> None:
    _o, _s, state, err = _run('PRJ X1, "next year"', adapter=scripted(None))
    assert state == ERROR
    assert err.kind == "SemanticBackendFailure"
    assert err.mnemonic == "PRJ"


def test_missing_backend() -> None:
    cu = _machine('DST X1, "one word"')
    _out, _steps, state = cu.run()
    assert state == ERROR
    assert cu.dp.error is not None
    assert cu.dp.error.kind == "SemanticBackendFailure"


def test_load_file(tmp_path: Any) -> None:
    (tmp_path / "a.txt").write_text("hello file", encoding="utf-8")
    program = assemble_source('LF X1, "a.txt"\nOUT X1\nLF X2, "b.txt"')
    out, _steps, state, err = run_program(program, {}, reader=LocalFileReader(tmp_path), out=io.StringIO())
    assert out == "hello file\n"
    assert state == ERROR
    assert err.kind == "IoFailure"
    assert err.address == 2


def test_non_finite_similarity_halts_with_backend_failure(scripted: Any) -> None:
    _o, _s, state, err = _run('SIM X1, "a", "b"', adapter=scripted("nan"))
    assert state == ERROR
    assert err.kind == "SemanticBackendFailure"
    assert err.address == 0
