"""
Exceptions raised by the DBV decoder and execute loop.

Decode errors abort loading before anything runs. Run-time errors abort the
execute loop; the loop records the failing instruction index in ``pc``.
"""


class VMError(Exception):
    """Base for every error the VM core raises."""
    pass


# ---------------------------------------------------------------------------
#  Decode-time errors
# ---------------------------------------------------------------------------

class DecodeError(VMError):
    """Raw program words that cannot be decoded."""

    def __init__(self, message: str, index: int = 0, word: int = 0):
        self.index = index
        self.word = word
        super().__init__(f"Word {index} (0x{word:08X}): {message}")


class InvalidOpcode(DecodeError):
    def __init__(self, index: int, word: int, opcode: int):
        self.opcode = opcode
        super().__init__(f"Invalid opcode: 0x{opcode:02X}", index, word)


class InvalidMode(DecodeError):
    def __init__(self, index: int, word: int, mode: int):
        self.mode = mode
        super().__init__(f"Invalid addressing mode: {mode}", index, word)


class TruncatedExtension(DecodeError):
    def __init__(self, index: int, word: int):
        super().__init__("Extension flag set but no extension word follows", index, word)


class InvalidOperandMode(DecodeError):
    """Opcode encoded with an addressing mode it does not accept."""

    def __init__(self, index: int, word: int, opcode, mode):
        self.opcode = opcode
        self.mode = mode
        super().__init__(f"{opcode.name} does not accept {mode.name} mode", index, word)


class TruncatedProgram(DecodeError):
    def __init__(self, length: int):
        self.length = length
        super().__init__(f"Program length {length} is not a multiple of 4 bytes",
                         length // 4, 0)


class CorruptImage(DecodeError):
    """zstd-framed image that fails to decompress."""

    def __init__(self, reason: str):
        self.reason = reason
        self.index = 0
        self.word = 0
        VMError.__init__(self, f"Corrupt compressed image: {reason}")


# ---------------------------------------------------------------------------
#  Run-time errors
# ---------------------------------------------------------------------------

class VMRuntimeError(VMError):
    """Failure while executing; ``pc`` is the failing instruction index."""

    pc = None

    def __str__(self) -> str:
        msg = super().__str__()
        if self.pc is not None:
            return f"{msg} (at instruction {self.pc})"
        return msg


class OutOfBoundsError(VMRuntimeError):
    def __init__(self, address: int, width: int, capacity: int):
        self.address = address
        self.width = width
        self.capacity = capacity
        super().__init__(
            f"Out of bounds {width * 8}-bit access at 0x{address:08X} "
            f"(capacity 0x{capacity:08X})")


class InvalidRegisterError(VMRuntimeError):
    def __init__(self, index: int):
        self.index = index
        super().__init__(f"Invalid register index: {index}")


class ProgramCounterOverrun(VMRuntimeError):
    def __init__(self, pc: int, length: int):
        self.length = length
        super().__init__(f"Program counter {pc} past end of program ({length} instructions)")
        self.pc = pc


class UnimplementedOpcodeError(VMRuntimeError):
    def __init__(self, opcode, mode=None):
        self.opcode = opcode
        self.mode = mode
        if mode is None:
            super().__init__(f"Unimplemented opcode: {opcode.name}")
        else:
            super().__init__(f"Unimplemented opcode: {opcode.name} in {mode.name} mode")


class DivisionByZero(VMRuntimeError):
    def __init__(self):
        super().__init__("Division by zero")
