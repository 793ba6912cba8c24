"""
Register file: 16 general-purpose 32-bit registers, program counter, stack
pointer and three status flag bytes.

Only the compare flag is consumed by control flow. The arithmetic and
interrupt flags are stored so a dump shows them, but no opcode writes them.
"""

from enum import IntEnum

from errors import InvalidRegisterError

NUM_REGISTERS = 16
MASK32 = 0xFFFFFFFF


class CompareFlag(IntEnum):
    """Compare flag codes. 6 and 7 are reserved."""
    EQ = 0
    NE = 1
    GT = 2
    LT = 3
    GE = 4
    LE = 5


# Arithmetic flag bit positions
ARITH_NEGATIVE = 0
ARITH_ZERO     = 1
ARITH_CARRY    = 2
ARITH_OVERFLOW = 3


class Registers:
    """DBV register file."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.regs = [0] * NUM_REGISTERS

        # Index into the decoded instruction stream, not a byte address
        self.pc = 0
        self.sp = 0

        self.cmp_flag = CompareFlag.EQ
        self.arith_flag = 0
        self.interrupt_flag = 0

    def _check(self, index: int):
        if not 0 <= index < NUM_REGISTERS:
            raise InvalidRegisterError(index)

    def get(self, index: int) -> int:
        self._check(index)
        return self.regs[index]

    def set(self, index: int, value: int):
        self._check(index)
        self.regs[index] = value & MASK32

    def get_pc(self) -> int:
        return self.pc

    def set_pc(self, value: int):
        self.pc = value

    def get_sp(self) -> int:
        return self.sp

    def set_sp(self, value: int):
        self.sp = value

    def get_cmp_flag(self) -> int:
        return self.cmp_flag

    def set_cmp_flag(self, value: int):
        # Not validated; codes 6 and 7 are stored as-is
        self.cmp_flag = value

    def __iter__(self):
        return iter(self.regs)

    def __len__(self) -> int:
        return NUM_REGISTERS
