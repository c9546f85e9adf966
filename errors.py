"""Error taxonomy for the assembler, bytecode codec and virtual machine.

Every failure the toolchain can report is a subclass of `LpuError`. The
four families map to the pipeline stages:

- `LexError`       source text could not be tokenized
- `AssemblerError` tokens do not form a valid program
- `FormatError`    a persisted bytecode file could not be decoded
- `VmError`        an instruction failed while running

The concrete class name doubles as the error kind shown to the user.
"""

from __future__ import annotations


class LpuError(Exception):
    """Base class for all toolchain errors."""

    @property
    def kind(self) -> str:
        return type(self).__name__


# --- lexing ---
class LexError(LpuError):
    """Raised when source text cannot be tokenized."""

    def __init__(self, message: str, line: int, col: int) -> None:
        self.line = line
        self.col = col
        super().__init__(f"line {line} col {col}: {message}")


class UnterminatedString(LexError):
    pass


class InvalidToken(LexError):
    pass


# --- assembling ---
class AssemblerError(LpuError):
    """Raised when the token stream does not form a valid program."""

    def __init__(self, message: str, line: int | None = None) -> None:
        self.line = line
        prefix = f"line {line}: " if line is not None else ""
        super().__init__(prefix + message)


class DuplicateLabel(AssemblerError):
    pass


class UnknownLabel(AssemblerError):
    pass


class DanglingLabel(AssemblerError):
    pass


class UnknownMnemonic(AssemblerError):
    pass


class UnexpectedToken(AssemblerError):
    pass


class OperandCountMismatch(AssemblerError):
    pass


class OperandKindMismatch(AssemblerError):
    pass


class InvalidRegister(AssemblerError):
    pass


# --- decoding ---
class FormatError(LpuError):
    """Raised while decoding a persisted program; no partial program is kept."""


class BadMagic(FormatError):
    pass


class VersionMismatch(FormatError):
    pass


class Truncated(FormatError):
    pass


class UnknownOpcode(FormatError):
    pass


class MalformedRecord(FormatError):
    pass


# --- running ---
class VmError(LpuError):
    """Raised by an instruction; halts the run.

    `address` and `mnemonic` are filled in by the control unit.
    """

    address: int | None
    mnemonic: str | None

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message
        self.address = None
        self.mnemonic = None

    def __str__(self) -> str:
        if self.address is None:
            return self.message
        return f"at {self.address} ({self.mnemonic}): {self.message}"


class UninitializedRegister(VmError):
    pass


class TypeMismatch(VmError):
    pass


class StackUnderflow(VmError):
    pass


class UnknownSnapshot(VmError):
    pass


class IoFailure(VmError):
    pass


class SemanticBackendFailure(VmError):
    pass


# --- collaborators ---
class SemanticError(Exception):
    """Raised by a semantic adapter when the backend fails or answers badly."""


class IoError(Exception):
    """Raised by a file reader when content cannot be read."""
