#!/usr/bin/env python3
"""
DBV VM

Usage: python vm.py <program.dbv> [--trace] [--debug] [--max-cycles N]

Loads a program file, decodes it once into an instruction stream and runs
the fetch-execute loop until HLT, a run-time error, or the cycle limit.

The program counter indexes the decoded instruction stream. Jump targets are
byte addresses (4 bytes per instruction) and are divided by 4 before use.

Addressing modes, as seen by each instruction family:

  SET/MOV/NOT source       Register      R[src1]
                           Immediate     imm
                           Indirect      M32[R[src1]]
                           BaseOffset    M32[R[src1] + src2]

  ALU second operand,      Register      R[src2]
  jump target              Immediate     imm
                           Indirect      M32[R[src2]]
                           BaseOffset    M32[R[src2] + offset]

  LD*/SD* address          Immediate     imm
                           Indirect      R[src1]
                           BaseOffset    R[src1] + src2

Conditional jumps branch when their condition does NOT hold:
  IFN/IFNE   jump if CMP flag == EQ
  IFE        jump if CMP flag != EQ
  IFG        jump if CMP flag != GT
  IFL        jump if CMP flag != LT
  IF         jump if R[dst] == 0
"""

import sys
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from errors import (DecodeError, DivisionByZero, ProgramCounterOverrun,
                    UnimplementedOpcodeError, VMRuntimeError)
from executable import (INSTRUCTION_SIZE, Instruction, Mode, Opcode, Program,
                        disassemble, load_program)
from memory import FILL_BYTE, MEMORY_SIZE, Memory
from registers import MASK32, CompareFlag, Registers

DEFAULT_MAX_CYCLES = 1000000

# Memory word printed after every run when no --peek is given
DEFAULT_PEEK_ADDR = 0x2000

ALU_OPCODES = frozenset({
    Opcode.ADD, Opcode.SUB, Opcode.MUL, Opcode.DIV,
    Opcode.AND, Opcode.OR, Opcode.XOR, Opcode.SL, Opcode.SR,
})

LOAD_OPCODES = frozenset({
    Opcode.LD, Opcode.LD16, Opcode.LD8, Opcode.LD16S, Opcode.LD8S,
})

# opcode -> width in bytes
STORE_WIDTHS = {
    Opcode.SD: 4,
    Opcode.SD16: 2,
    Opcode.SD8: 1,
}

# Conditional jump -> predicate on the compare flag that takes the jump
BRANCH_TAKEN = {
    Opcode.IFN: lambda flag: flag == CompareFlag.EQ,
    Opcode.IFNE: lambda flag: flag == CompareFlag.EQ,
    Opcode.IFE: lambda flag: flag != CompareFlag.EQ,
    Opcode.IFG: lambda flag: flag != CompareFlag.GT,
    Opcode.IFL: lambda flag: flag != CompareFlag.LT,
}

# Opcodes that need a stack discipline the ISA does not define yet
STACK_OPCODES = frozenset({Opcode.PSH, Opcode.POP, Opcode.CALL, Opcode.RET})


class RunStatus(Enum):
    HALTED = 'halted'
    ERROR = 'error'
    STEP_LIMIT = 'step_limit'


@dataclass
class RunResult:
    """Outcome of VM.run()."""
    status: RunStatus
    cycles: int
    pc: int
    error: Optional[VMRuntimeError] = None

    @property
    def ok(self) -> bool:
        return self.status == RunStatus.HALTED


@dataclass
class MachineState:
    """Snapshot of registers, flags and an optional memory window."""
    registers: Tuple[int, ...]
    pc: int
    sp: int
    cmp_flag: int
    arith_flag: int
    interrupt_flag: int
    cycles: int
    halted: bool
    window_start: Optional[int] = None
    window: bytes = b''

    def words(self):
        """Memory window as (address, little-endian 32-bit word) pairs."""
        for off in range(0, len(self.window) - 3, 4):
            yield self.window_start + off, int.from_bytes(self.window[off:off + 4], 'little')


class VM:
    """DBV VM."""

    def __init__(self, memory_size: int = MEMORY_SIZE, fill: int = FILL_BYTE):
        self.memory = Memory(memory_size, fill)
        self.registers = Registers()
        self.program = Program()

        # Execution state
        self.halted = False
        self.jumped = False
        self.cycles = 0

        # Debug options
        self.trace = False
        self.debug = False

    def load(self, program: Program):
        """Install a decoded program and reset execution state."""
        self.program = program
        self.registers.reset()
        self.halted = False
        self.jumped = False
        self.cycles = 0

        if self.debug:
            print(f"Loaded program: {len(program.words)} words, {len(program)} instructions")
            print(disassemble(program))

    def load_words(self, words):
        """Decode raw words and load them. DecodeError leaves the VM untouched."""
        self.load(Program.from_words(words))

    def fetch(self) -> Instruction:
        """Fetch the decoded instruction at the current PC."""
        pc = self.registers.pc
        if not 0 <= pc < len(self.program):
            raise ProgramCounterOverrun(pc, len(self.program))
        return self.program[pc]

    # -- operand resolution -------------------------------------------------

    def read_source(self, instr: Instruction) -> int:
        """Source of SET/MOV/NOT: register, literal, or memory via src1."""
        ops = instr.operands
        mode = instr.mode
        if mode == Mode.REGISTER:
            return self.registers.get(ops[1])
        if mode == Mode.IMMEDIATE:
            return ops[2]
        if mode == Mode.REGISTER_INDIRECT:
            return self.memory.read32(self.registers.get(ops[1]))
        return self.memory.read32((self.registers.get(ops[1]) + ops[2]) & MASK32)

    def read_second(self, instr: Instruction) -> int:
        """Second ALU operand: register, literal, or memory via src2."""
        ops = instr.operands
        mode = instr.mode
        if mode == Mode.REGISTER:
            return self.registers.get(ops[2])
        if mode == Mode.IMMEDIATE:
            return ops[2]
        if mode == Mode.REGISTER_INDIRECT:
            return self.memory.read32(self.registers.get(ops[2]))
        return self.memory.read32((self.registers.get(ops[2]) + ops[3]) & MASK32)

    def effective_address(self, instr: Instruction) -> int:
        """Address used by loads and stores."""
        ops = instr.operands
        mode = instr.mode
        if mode == Mode.IMMEDIATE:
            return ops[2]
        if mode == Mode.REGISTER_INDIRECT:
            return self.registers.get(ops[1])
        if mode == Mode.BASE_OFFSET:
            return (self.registers.get(ops[1]) + ops[2]) & MASK32
        raise UnimplementedOpcodeError(instr.opcode, mode)

    # -- execution ----------------------------------------------------------

    def alu_execute(self, opcode: Opcode, a: int, b: int) -> int:
        """Execute ALU operation on unsigned 32-bit values; results wrap."""
        if opcode == Opcode.ADD:
            return (a + b) & MASK32
        elif opcode == Opcode.SUB:
            return (a - b) & MASK32
        elif opcode == Opcode.MUL:
            return (a * b) & MASK32
        elif opcode == Opcode.DIV:
            if b == 0:
                raise DivisionByZero()
            return a // b
        elif opcode == Opcode.AND:
            return a & b
        elif opcode == Opcode.OR:
            return a | b
        elif opcode == Opcode.XOR:
            return a ^ b
        elif opcode == Opcode.SL:
            return (a << b) & MASK32 if b < 32 else 0
        elif opcode == Opcode.SR:
            return a >> b if b < 32 else 0
        raise UnimplementedOpcodeError(opcode)

    def load_memory(self, opcode: Opcode, address: int) -> int:
        mem = self.memory
        if opcode == Opcode.LD:
            return mem.read32(address)
        elif opcode == Opcode.LD16:
            return mem.read16(address)
        elif opcode == Opcode.LD8:
            return mem.read8(address)
        elif opcode == Opcode.LD16S:
            return mem.read16_signed(address)
        return mem.read8_signed(address)

    def store_memory(self, width: int, address: int, value: int):
        if width == 4:
            self.memory.write32(address, value)
        elif width == 2:
            self.memory.write16(address, value)
        else:
            self.memory.write8(address, value)

    def compare(self, a: int, b: int) -> CompareFlag:
        if a == b:
            return CompareFlag.EQ
        if a > b:
            return CompareFlag.GT
        return CompareFlag.LT

    def jump(self, byte_address: int):
        """Set PC from a byte address and suppress this cycle's advance."""
        self.registers.pc = byte_address // INSTRUCTION_SIZE
        self.jumped = True

    def execute(self, instr: Instruction):
        """Execute a single decoded instruction."""
        opcode = instr.opcode
        ops = instr.operands
        regs = self.registers

        if opcode == Opcode.HLT:
            self.halted = True

        elif opcode in (Opcode.SET, Opcode.MOV):
            regs.set(ops[0], self.read_source(instr))

        elif opcode == Opcode.NOT:
            regs.set(ops[0], ~self.read_source(instr))

        elif opcode in ALU_OPCODES:
            a = regs.get(ops[1])
            b = self.read_second(instr)
            regs.set(ops[0], self.alu_execute(opcode, a, b))

        elif opcode in LOAD_OPCODES:
            address = self.effective_address(instr)
            regs.set(ops[0], self.load_memory(opcode, address))

        elif opcode in STORE_WIDTHS:
            value = regs.get(ops[0])
            address = self.effective_address(instr)
            self.store_memory(STORE_WIDTHS[opcode], address, value)

        elif opcode == Opcode.CMP:
            regs.cmp_flag = self.compare(regs.get(ops[0]), regs.get(ops[1]))

        elif opcode == Opcode.JMP:
            self.jump(self.read_second(instr))

        elif opcode in BRANCH_TAKEN:
            if BRANCH_TAKEN[opcode](regs.cmp_flag):
                self.jump(self.read_second(instr))

        elif opcode == Opcode.IF:
            if regs.get(ops[0]) == 0:
                self.jump(self.read_second(instr))

        elif opcode in STACK_OPCODES:
            raise UnimplementedOpcodeError(opcode)

        else:
            raise UnimplementedOpcodeError(opcode, instr.mode)

    def step(self) -> bool:
        """Execute one instruction. Returns False once halted."""
        if self.halted:
            return False

        pc = self.registers.pc
        try:
            instr = self.fetch()

            if self.trace:
                self.print_state(instr)

            self.jumped = False
            self.execute(instr)
        except VMRuntimeError as e:
            if e.pc is None:
                e.pc = pc
            raise

        self.cycles += 1

        if self.halted:
            return False

        if not self.jumped:
            self.registers.pc += 1
        self.jumped = False
        return True

    def run(self, max_cycles: Optional[int] = DEFAULT_MAX_CYCLES) -> RunResult:
        """Run until HLT, a run-time error, or max_cycles instructions.

        The limit counts instructions executed by this call, so a run that
        stopped on the limit can be resumed with another run().
        """
        start = self.cycles
        try:
            while max_cycles is None or self.cycles - start < max_cycles:
                if not self.step():
                    return RunResult(RunStatus.HALTED, self.cycles, self.registers.pc)
        except VMRuntimeError as e:
            return RunResult(RunStatus.ERROR, self.cycles, e.pc, e)

        print(f"Warning: Execution stopped after {max_cycles} cycles", file=sys.stderr)
        return RunResult(RunStatus.STEP_LIMIT, self.cycles, self.registers.pc)

    # -- inspection ---------------------------------------------------------

    def dump(self, start: Optional[int] = None, length: int = 16) -> MachineState:
        """Snapshot machine state, optionally with memory[start:start+length]."""
        regs = self.registers
        state = MachineState(
            registers=tuple(regs.regs),
            pc=regs.pc,
            sp=regs.sp,
            cmp_flag=int(regs.cmp_flag),
            arith_flag=regs.arith_flag,
            interrupt_flag=regs.interrupt_flag,
            cycles=self.cycles,
            halted=self.halted,
        )
        if start is not None:
            state.window_start = start
            state.window = self.memory.read_bytes(start, length)
        return state

    def print_state(self, instr: Optional[Instruction] = None):
        """Print current VM state on one line."""
        regs = self.registers
        regs_str = ' '.join(f"R{i}={v:08X}" for i, v in enumerate(regs.regs) if v)
        print(f"[{self.cycles:06d}] PC={regs.pc:04d} CMP={int(regs.cmp_flag)} {regs_str}")
        if instr:
            print(f"         {instr}")

    def print_registers(self):
        """Print the full register dump."""
        regs = self.registers
        print("Registers:")
        print(f"PC: 0x{regs.pc:04X}")
        print(f"SP: 0x{regs.sp:04X}")
        print(f"CMP: 0x{int(regs.cmp_flag):02X}")
        print(f"ARITH: 0x{regs.arith_flag:02X}")
        print(f"INT: 0x{regs.interrupt_flag:02X}")
        print()
        for i, value in enumerate(regs.regs):
            print(f"R{i}: 0x{value:08X}")

    def dump_memory(self, start: int, length: int):
        """Dump memory region."""
        for i in range(start, start + length, 16):
            chunk = self.memory.read_bytes(i, min(16, start + length - i))
            hex_str = ' '.join(f'{b:02X}' for b in chunk)
            ascii_str = ''.join(chr(b) if 32 <= b < 127 else '.' for b in chunk)
            print(f"0x{i:06X}: {hex_str}  {ascii_str}")


def parse_int(text: str) -> int:
    return int(text, 0)


def main():
    import argparse

    parser = argparse.ArgumentParser(description='DBV VM')
    parser.add_argument('--debug', '-d', action='store_true', help='Enable debug mode')
    parser.add_argument('--trace', '-t', action='store_true', help='Trace execution')
    parser.add_argument('--max-cycles', '-m', type=int, default=DEFAULT_MAX_CYCLES,
                        help='Maximum cycles (0 = unlimited)')
    parser.add_argument('--memory-size', type=parse_int, default=MEMORY_SIZE, help='Memory size in bytes')
    parser.add_argument('--strict', action='store_true',
                        help='Reject programs whose length is not a multiple of 4')
    parser.add_argument('--disasm', action='store_true', help='Disassemble and exit')
    parser.add_argument('--peek', type=parse_int, action='append', default=None,
                        help=f'Print the 32-bit word at ADDR after the run (default 0x{DEFAULT_PEEK_ADDR:04X})')
    parser.add_argument('--window', type=parse_int, nargs=2, metavar=('START', 'LENGTH'),
                        help='Hex dump a memory window after the run')
    parser.add_argument('program', help='Program file')

    args = parser.parse_args()

    # Load program
    try:
        program = load_program(args.program, args.strict)

    except FileNotFoundError:
        print(f"Error: Program not found: {args.program}", file=sys.stderr)
        sys.exit(1)

    except DecodeError as e:
        print(f"Error decoding program: {e}", file=sys.stderr)
        sys.exit(1)

    if args.disasm:
        print(disassemble(program))
        sys.exit(0)

    vm = VM(args.memory_size)
    vm.trace = args.trace
    vm.debug = args.debug
    vm.load(program)

    result = vm.run(args.max_cycles or None)

    if result.status == RunStatus.HALTED:
        print("Program exited successfully")
    elif result.status == RunStatus.ERROR:
        print(f"Program exited with error: {result.error}")
    else:
        print(f"Program stopped after {result.cycles} cycles")

    if args.debug:
        print(f"\nExecution finished after {vm.cycles} cycles")

    vm.print_registers()

    print()
    print("Data:")
    for addr in args.peek or [DEFAULT_PEEK_ADDR]:
        try:
            print(f"[0x{addr:06X}] = 0x{vm.memory.read32(addr):08X}")
        except VMRuntimeError as e:
            print(f"[0x{addr:06X}] {e}", file=sys.stderr)

    if args.window:
        try:
            vm.dump_memory(*args.window)
        except VMRuntimeError as e:
            print(f"Error: {e}", file=sys.stderr)

    sys.exit(0 if result.ok else 1)


if __name__ == '__main__':
    main()
