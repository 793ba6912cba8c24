#!/usr/bin/env python3
"""
DBV assembler

Usage: python assemble.py <infile> [outfile=<infile>.dbv] [--compress]

Assembly language syntax:
    ; comment
    label:
    instruction operands
    .equ NAME value

Instructions:
    Data:        set, mov, not
    Arithmetic:  add, sub, mul, div, and, or, xor, sl, sr
    Memory:      ld, ld16, ld8, ld16s, ld8s, sd, sd16, sd8
    Compare:     cmp
    Control:     jmp, if, ifn, ifne, ife, ifg, ifl, hlt
    Reserved:    psh, pop, call, ret  (assemble, but fault when executed)

Operands:
    r0-r15      Registers
    #imm / imm  Immediate value (extension word added when > 15)
    [rx]        Memory at address in rx
    [rx+off]    Memory at address rx + off (off 0-15)
    label       Label reference (forward references use an extension word)

Examples:
    set r0, #5          ; r0 = 5
    set r0, [r1+4]      ; r0 = M32[r1 + 4]
    sub r2, r0, r1      ; r2 = r0 - r1
    add r2, #1          ; r2 = r2 + 1
    sd r2, #0x2000      ; M32[0x2000] = r2
    cmp r0, r1
    ifn done            ; jump to done if r0 == r1
    if r3, done         ; jump to done if r3 == 0

A label's value is its instruction index times 4, the byte address the VM
divides by 4 when jumping. Extension words do not count towards it.
"""

import sys
from dataclasses import replace
from typing import Any, Dict, List, Tuple

from executable import (INSTRUCTION_SIZE, OPCODES, Instruction, Mode,
                        Opcode, Program)
from registers import MASK32

REGISTERS = {f'R{i}': i for i in range(16)}

ALU_MNEMONICS = ('add', 'sub', 'mul', 'div', 'and', 'or', 'xor', 'sl', 'sr')
LOAD_MNEMONICS = ('ld', 'ld16', 'ld8', 'ld16s', 'ld8s')
STORE_MNEMONICS = ('sd', 'sd16', 'sd8')
JUMP_MNEMONICS = ('jmp', 'ifn', 'ifne', 'ife', 'ifg', 'ifl', 'call')


def split_unquoted(text: str, sep: str) -> List[str]:
    """Split text on sep, leaving char literals such as ';' intact."""
    fields = []
    start = 0
    quoted = False
    for i, ch in enumerate(text):
        if ch == "'":
            quoted = not quoted
        elif ch == sep and not quoted:
            fields.append(text[start:i])
            start = i + 1
    fields.append(text[start:])
    return fields


class AssemblerError(Exception):
    """Assembler error with line information."""
    def __init__(self, message: str, line_num: int = 0, line: str = ""):
        self.message = message
        self.line_num = line_num
        self.line = line
        super().__init__(f"Line {line_num}: {message}\n  {line}")


class Assembler:
    """DBV assembler."""

    def __init__(self):
        self.labels: Dict[str, int] = {}
        self.code: List[Instruction] = []
        self.unresolved: List[Tuple[int, str, int, str]] = []  # (code_idx, label, line_num, line)
        self.line_num = 0
        self.current_line = ""

    def error(self, message: str):
        """Raise an assembler error."""
        raise AssemblerError(message, self.line_num, self.current_line)

    def parse_register(self, token: str) -> int:
        """Parse register name, return register number."""
        token = token.upper().strip()
        if token in REGISTERS:
            return REGISTERS[token]
        self.error(f"Invalid register: {token}")

    def parse_number(self, token: str) -> int:
        token = token.strip()
        if token.startswith('#'):
            token = token[1:]

        if token.startswith("'") and token.endswith("'") and len(token) == 3:
            return ord(token[1])

        try:
            return int(token, 0)
        except ValueError:
            if token in self.labels:
                return self.labels[token]
            self.error(f"Invalid immediate value or unknown constant: {token}")

    def parse_operand(self, token: str) -> Tuple[str, Any]:
        """Parse operand, return (type, value)."""
        token = token.strip()

        if not token:
            self.error("Empty operand")

        # Register
        if token.upper() in REGISTERS:
            return ('reg', self.parse_register(token))

        # Memory reference [rx] or [rx+off]
        if token.startswith('[') and token.endswith(']'):
            inner = token[1:-1].strip()
            offset = None
            if '+' in inner:
                inner, off = inner.split('+', 1)
                offset = self.parse_number(off)
                if not 0 <= offset <= 0xF:
                    self.error(f"Offset out of range (0-15): {offset}")
            return ('mem', (self.parse_register(inner), offset))

        # Immediate
        if token.startswith('#') or token[0].isdigit() or token[0] in "-'":
            return ('imm', self.parse_number(token))

        # Known constant or backward label
        if token in self.labels:
            return ('imm', self.labels[token])

        # Forward label
        return ('label', token)

    def emit(self, opcode: Opcode, mode: Mode, operands: Tuple[int, ...], extended: bool = False):
        """Emit an instruction."""
        self.code.append(Instruction(opcode, mode, operands, extended))

    def emit_immediate(self, opcode: Opcode, dst: int, src_1: int, value_type: str, value):
        """Emit an Immediate-mode instruction, extending when the value needs it."""
        if value_type == 'label':
            self.unresolved.append((len(self.code), value, self.line_num, self.current_line))
            self.emit(opcode, Mode.IMMEDIATE, (dst, src_1, 0), extended=True)
        elif 0 <= value <= 0xF:
            self.emit(opcode, Mode.IMMEDIATE, (dst, src_1, value))
        else:
            self.emit(opcode, Mode.IMMEDIATE, (dst, src_1, value & MASK32), extended=True)

    def current_addr(self) -> int:
        """Byte address of the next instruction."""
        return len(self.code) * INSTRUCTION_SIZE

    def expect(self, mnemonic: str, operands: List[str], count: int, usage: str):
        if len(operands) != count:
            self.error(f"{mnemonic} requires {count} operand{'s' if count != 1 else ''}: {usage}")

    def assemble_set(self, mnemonic: str, operands: List[str]):
        """Assemble set/mov/not: op rd, src"""
        self.expect(mnemonic, operands, 2, f"{mnemonic} rd, rs|#imm|[rs]|[rs+off]")
        opcode = OPCODES[mnemonic.upper()]

        dst_type, dst = self.parse_operand(operands[0])
        src_type, src = self.parse_operand(operands[1])

        if dst_type != 'reg':
            self.error("Destination must be a register")

        if src_type == 'reg':
            self.emit(opcode, Mode.REGISTER, (dst, src, 0))
        elif src_type == 'mem':
            reg, offset = src
            if offset is None:
                self.emit(opcode, Mode.REGISTER_INDIRECT, (dst, reg, 0))
            else:
                # The src2 field carries the offset for this family
                self.emit(opcode, Mode.BASE_OFFSET, (dst, reg, offset, 0))
        else:
            self.emit_immediate(opcode, dst, 0, src_type, src)

    def assemble_arithmetic(self, mnemonic: str, operands: List[str]):
        """Assemble ALU instructions: op rd, ra, src  or  op rd, src"""
        opcode = OPCODES[mnemonic.upper()]

        if len(operands) == 3:
            dst_type, dst = self.parse_operand(operands[0])
            src_a_type, src_a = self.parse_operand(operands[1])
            src_b_type, src_b = self.parse_operand(operands[2])
        elif len(operands) == 2:
            # add rd, src -> add rd, rd, src
            dst_type, dst = self.parse_operand(operands[0])
            src_a_type, src_a = dst_type, dst
            src_b_type, src_b = self.parse_operand(operands[1])
        else:
            self.error(f"{mnemonic} requires 2 or 3 operands")

        if dst_type != 'reg' or src_a_type != 'reg':
            self.error("Destination and first source must be registers")

        if src_b_type == 'reg':
            self.emit(opcode, Mode.REGISTER, (dst, src_a, src_b))
        elif src_b_type == 'mem':
            reg, offset = src_b
            if offset is None:
                self.emit(opcode, Mode.REGISTER_INDIRECT, (dst, src_a, reg))
            else:
                self.emit(opcode, Mode.BASE_OFFSET, (dst, src_a, reg, offset))
        else:
            self.emit_immediate(opcode, dst, src_a, src_b_type, src_b)

    def assemble_memory(self, mnemonic: str, operands: List[str]):
        """Assemble loads (ld rd, addr) and stores (sd rs, addr)."""
        self.expect(mnemonic, operands, 2, f"{mnemonic} rx, [ra]|[ra+off]|#addr")
        opcode = OPCODES[mnemonic.upper()]

        reg_type, reg = self.parse_operand(operands[0])
        addr_type, addr = self.parse_operand(operands[1])

        if reg_type != 'reg':
            self.error("First operand must be a register")

        if addr_type == 'mem':
            base, offset = addr
            if offset is None:
                self.emit(opcode, Mode.REGISTER_INDIRECT, (reg, base, 0))
            else:
                self.emit(opcode, Mode.BASE_OFFSET, (reg, base, offset, 0))
        elif addr_type in ('imm', 'label'):
            self.emit_immediate(opcode, reg, 0, addr_type, addr)
        else:
            self.error("Address must be [rx], [rx+off], an immediate or a label")

    def assemble_cmp(self, operands: List[str]):
        """Assemble cmp instruction: cmp ra, rb"""
        self.expect('cmp', operands, 2, "cmp ra, rb")

        a_type, a = self.parse_operand(operands[0])
        b_type, b = self.parse_operand(operands[1])

        if a_type != 'reg' or b_type != 'reg':
            self.error("cmp operands must be registers")

        self.emit(Opcode.CMP, Mode.REGISTER, (a, b, 0))

    def emit_jump(self, opcode: Opcode, cond_reg: int, target: str):
        target_type, value = self.parse_operand(target)

        if target_type == 'reg':
            self.emit(opcode, Mode.REGISTER, (cond_reg, 0, value))
        elif target_type == 'mem':
            reg, offset = value
            if offset is None:
                self.emit(opcode, Mode.REGISTER_INDIRECT, (cond_reg, 0, reg))
            else:
                self.emit(opcode, Mode.BASE_OFFSET, (cond_reg, 0, reg, offset))
        else:
            self.emit_immediate(opcode, cond_reg, 0, target_type, value)

    def assemble_jump(self, mnemonic: str, operands: List[str]):
        """Assemble jmp/call and flag-conditional jumps: op target"""
        self.expect(mnemonic, operands, 1, f"{mnemonic} target")
        self.emit_jump(OPCODES[mnemonic.upper()], 0, operands[0])

    def assemble_if(self, operands: List[str]):
        """Assemble if instruction: if rx, target (jumps when rx == 0)"""
        self.expect('if', operands, 2, "if rx, target")

        reg_type, reg = self.parse_operand(operands[0])
        if reg_type != 'reg':
            self.error("First operand must be a register")

        self.emit_jump(Opcode.IF, reg, operands[1])

    def assemble_stack(self, mnemonic: str, operands: List[str]):
        """Assemble psh/pop: op rx"""
        self.expect(mnemonic, operands, 1, f"{mnemonic} rx")

        reg_type, reg = self.parse_operand(operands[0])
        if reg_type != 'reg':
            self.error("Operand must be a register")

        self.emit(OPCODES[mnemonic.upper()], Mode.REGISTER, (reg, 0, 0))

    def assemble_bare(self, mnemonic: str, operands: List[str]):
        """Assemble hlt/ret."""
        if operands:
            self.error(f"{mnemonic} takes no operands")
        self.emit(OPCODES[mnemonic.upper()], Mode.REGISTER, (0, 0, 0))

    def assemble_directive(self, directive: str, operands: List[str]):
        """Assemble assembler directives."""
        if directive == '.equ':
            if len(operands) != 2:
                self.error(".equ requires 2 operands: .equ NAME, value")
            name = operands[0].strip()
            if name in self.labels:
                self.error(f"Duplicate label: {name}")
            self.labels[name] = self.parse_number(operands[1])
        else:
            self.error(f"Unknown directive: {directive}")

    def assemble_line(self, line: str):
        """Assemble a single line."""
        # Remove comments
        line = split_unquoted(line, ';')[0]

        line = line.strip()
        if not line:
            return

        fields = split_unquoted(line, ':')
        if len(fields) > 1:
            label = fields[0].strip()
            line = ':'.join(fields[1:]).strip()
            if not label.isidentifier():
                self.error(f"Invalid label: {label}")
            if label in self.labels:
                self.error(f"Duplicate label: {label}")
            self.labels[label] = self.current_addr()
            if not line:
                return

        # Split into mnemonic and operands
        parts = line.split(None, 1)
        mnemonic = parts[0].lower()

        operands = []
        if len(parts) > 1:
            # .equ NAME value may omit the comma
            operands = [op.strip() for op in split_unquoted(parts[1], ',')]
            if mnemonic == '.equ' and len(operands) == 1:
                operands = parts[1].split(None, 1)

        if mnemonic.startswith('.'):
            self.assemble_directive(mnemonic, operands)
        elif mnemonic in ('set', 'mov', 'not'):
            self.assemble_set(mnemonic, operands)
        elif mnemonic in ALU_MNEMONICS:
            self.assemble_arithmetic(mnemonic, operands)
        elif mnemonic in LOAD_MNEMONICS or mnemonic in STORE_MNEMONICS:
            self.assemble_memory(mnemonic, operands)
        elif mnemonic == 'cmp':
            self.assemble_cmp(operands)
        elif mnemonic in JUMP_MNEMONICS:
            self.assemble_jump(mnemonic, operands)
        elif mnemonic == 'if':
            self.assemble_if(operands)
        elif mnemonic in ('psh', 'pop'):
            self.assemble_stack(mnemonic, operands)
        elif mnemonic in ('hlt', 'ret'):
            self.assemble_bare(mnemonic, operands)
        else:
            self.error(f"Unknown instruction: {mnemonic}")

    def resolve_labels(self):
        """Patch forward label references into their extension words."""
        for code_idx, label, line_num, line in self.unresolved:
            if label not in self.labels:
                raise AssemblerError(f"Undefined label: {label}", line_num, line)

            instr = self.code[code_idx]
            ops = instr.operands
            self.code[code_idx] = replace(instr, operands=(ops[0], ops[1], self.labels[label] & MASK32))

    def assemble(self, source: str) -> Program:
        """Assemble source code into a program."""
        self.code = []
        self.labels = {}
        self.unresolved = []

        for i, line in enumerate(source.split('\n'), 1):
            self.line_num = i
            self.current_line = line
            try:
                self.assemble_line(line)
            except AssemblerError:
                raise
            except (ValueError, KeyError) as e:
                raise AssemblerError(str(e), i, line)

        self.resolve_labels()

        return Program.from_instructions(self.code)


def assemble(source: str) -> Program:
    """Assemble source with a fresh Assembler."""
    return Assembler().assemble(source)


def main():
    import argparse

    parser = argparse.ArgumentParser(description='DBV Assembler')
    parser.add_argument('infile', help='Input assembly file')
    parser.add_argument('outfile', nargs='?', default=None, help='Output program file')
    parser.add_argument('--compress', '-z', action='store_true', help='zstd-compress the output')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose output')
    parser.add_argument('--dump-labels', action='store_true', help='Print label addresses after assembly')

    args = parser.parse_args()

    # Read source file
    try:
        with open(args.infile, 'r') as f:
            source = f.read()
    except FileNotFoundError:
        print(f"Error: File not found: {args.infile}", file=sys.stderr)
        sys.exit(1)

    # Assemble
    assembler = Assembler()
    try:
        program = assembler.assemble(source)
    except AssemblerError as e:
        print(f"Assembler error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.verbose:
        print(f"Assembled {len(program)} instructions ({len(program.words)} words)")

    if args.dump_labels:
        for name, addr in sorted(assembler.labels.items(), key=lambda kv: kv[1]):
            print(f"{name}: 0x{addr:04X}")

    if not args.outfile:
        args.outfile = args.infile.removesuffix('.asm') + '.dbv'

    # Write output
    try:
        with open(args.outfile, 'wb') as f:
            f.write(program.encode(compressed=args.compress))
        print(f"Output written to {args.outfile}")
    except OSError as e:
        print(f"Error writing output: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
