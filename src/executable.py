"""
Instruction encoding/decoding library for the DBV VM.

Instruction word (32 bits, stored big-endian in program files):
  31-24  OPCODE     Operation (see Opcode)
  23-22  MODE       Addressing mode (read as (word & 0x00F00000) >> 22)
  21-20  -          Ignored
  19-0   ARGUMENTS  Mode-specific fields

Argument fields by mode:
  Register           15-12 DST   11-8 SRC1   7-4 SRC2    3-0 unused
  Immediate          15-12 DST   11-8 SRC1   7-4 IMM4    0   EXTEND
  RegisterIndirect   15-12 DST   11-8 SRC1   7-4 SRC2    3-0 unused
  BaseOffset         15-12 DST   11-8 SRC1   7-4 SRC2    3-0 OFFSET

When EXTEND is set the 4-bit immediate is ignored and the next word in the
program is taken verbatim as the immediate. An extension word is never itself
decoded as an instruction.

Program files are a flat run of big-endian words, optionally zstd-compressed.
"""

from zstd import Error as ZstdError, compress, decompress
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable, List, Tuple
import struct

from errors import (CorruptImage, InvalidMode, InvalidOpcode, InvalidOperandMode,
                    TruncatedExtension, TruncatedProgram)
from registers import MASK32

OPCODE_MASK    = 0xFF000000
OPCODE_SHIFT   = 24
MODE_MASK      = 0x00F00000
MODE_SHIFT     = 22
ARGUMENTS_MASK = 0x000FFFFF
EXTENSION_FLAG = 0x1

# Every zstd frame starts with these bytes; 0x28 is not an opcode
ZSTD_MAGIC = b'\x28\xb5\x2f\xfd'
ZSTD_LEVEL = 22

# Jump targets are byte addresses, one instruction per 4 bytes
INSTRUCTION_SIZE = 4


class Opcode(IntEnum):
    HLT   = 0x00
    PSH   = 0x01
    POP   = 0x02
    SET   = 0x03
    MOV   = 0x04
    ADD   = 0x05
    SUB   = 0x06
    MUL   = 0x07
    DIV   = 0x08
    AND   = 0x09
    OR    = 0x0A
    XOR   = 0x0B
    NOT   = 0x0C
    SL    = 0x0D
    SR    = 0x0E
    SD    = 0x0F
    LD    = 0x10
    SD16  = 0x11
    LD16  = 0x12
    SD8   = 0x13
    LD8   = 0x14
    LD16S = 0x15
    LD8S  = 0x16
    CMP   = 0x17
    IF    = 0x18
    IFN   = 0x19
    IFG   = 0x1A
    IFL   = 0x1B
    IFE   = 0x1C
    IFNE  = 0x1D
    JMP   = 0x1E
    CALL  = 0x1F
    RET   = 0x20


class Mode(IntEnum):
    REGISTER          = 0
    IMMEDIATE         = 1
    REGISTER_INDIRECT = 2
    BASE_OFFSET       = 3


MODE_NAMES = {
    Mode.REGISTER: 'REG',
    Mode.IMMEDIATE: 'IMM',
    Mode.REGISTER_INDIRECT: 'IND',
    Mode.BASE_OFFSET: 'OFF',
}

OPCODES = {op.name: op for op in Opcode}

# Opcodes that address memory and so have no meaning in Register mode
MEMORY_OPCODES = frozenset({
    Opcode.SD, Opcode.SD16, Opcode.SD8,
    Opcode.LD, Opcode.LD16, Opcode.LD8, Opcode.LD16S, Opcode.LD8S,
})


@dataclass(frozen=True)
class Instruction:
    """A decoded instruction: opcode, addressing mode and raw operands."""
    opcode: Opcode
    mode: Mode
    operands: Tuple[int, ...] = ()
    extended: bool = False  # immediate came from an extension word

    def encode(self) -> List[int]:
        """Encode to one word, or two when an extension word is needed."""
        ops = self.operands
        word = (self.opcode << OPCODE_SHIFT) | (self.mode << MODE_SHIFT)
        word |= (ops[0] & 0xF) << 12
        word |= (ops[1] & 0xF) << 8

        if self.mode == Mode.IMMEDIATE:
            if self.extended:
                return [word | EXTENSION_FLAG, ops[2] & MASK32]
            if not 0 <= ops[2] <= 0xF:
                raise ValueError(f"Immediate 0x{ops[2]:X} does not fit in 4 bits; set extended")
            word |= ops[2] << 4
        else:
            word |= (ops[2] & 0xF) << 4
            if self.mode == Mode.BASE_OFFSET:
                word |= ops[3] & 0xF

        return [word]

    def size(self) -> int:
        """Number of program words this instruction occupies."""
        return 2 if self.extended else 1

    def __str__(self) -> str:
        ops = self.operands
        parts = [f"R{ops[0]}", f"R{ops[1]}"]
        if self.mode == Mode.IMMEDIATE:
            parts.append(f"#0x{ops[2]:X}")
        else:
            parts.append(f"R{ops[2]}")
        if self.mode == Mode.BASE_OFFSET:
            parts.append(f"+{ops[3]}")
        return f"{self.opcode.name:<5} {MODE_NAMES[self.mode]} {', '.join(parts)}"


def decode_fields(word: int, index: int = 0) -> Tuple[Opcode, Mode, Tuple[int, ...], bool]:
    """Split one instruction word into (opcode, mode, operands, wants_extension)."""
    raw_opcode = (word & OPCODE_MASK) >> OPCODE_SHIFT
    raw_mode = (word & MODE_MASK) >> MODE_SHIFT
    arguments = word & ARGUMENTS_MASK

    try:
        opcode = Opcode(raw_opcode)
    except ValueError:
        raise InvalidOpcode(index, word, raw_opcode) from None
    try:
        mode = Mode(raw_mode)
    except ValueError:
        raise InvalidMode(index, word, raw_mode) from None

    if mode == Mode.REGISTER and opcode in MEMORY_OPCODES:
        raise InvalidOperandMode(index, word, opcode, mode)

    dst = (arguments & 0xF000) >> 12
    src_1 = (arguments & 0x0F00) >> 8
    src_2 = (arguments & 0x00F0) >> 4

    if mode == Mode.IMMEDIATE:
        if arguments & EXTENSION_FLAG:
            return opcode, mode, (dst, src_1), True
        return opcode, mode, (dst, src_1, src_2), False

    if mode == Mode.BASE_OFFSET:
        return opcode, mode, (dst, src_1, src_2, arguments & 0x000F), False

    return opcode, mode, (dst, src_1, src_2), False


def decode_words(words: Iterable[int]) -> List[Instruction]:
    """Decode raw program words into instructions.

    Pure: the same words always decode to equal instructions. Raises a
    DecodeError subclass naming the offending word index.
    """
    instructions = []
    pending = None  # (index, word, opcode, mode, operands) awaiting extension

    for index, word in enumerate(words):
        word &= MASK32

        if pending is not None:
            _, _, opcode, mode, operands = pending
            instructions.append(Instruction(opcode, mode, operands + (word,), extended=True))
            pending = None
            continue

        opcode, mode, operands, wants_extension = decode_fields(word, index)
        if wants_extension:
            pending = (index, word, opcode, mode, operands)
        else:
            instructions.append(Instruction(opcode, mode, operands))

    if pending is not None:
        raise TruncatedExtension(pending[0], pending[1])

    return instructions


def words_from_bytes(data: bytes, strict: bool = False) -> List[int]:
    """Group bytes into big-endian 32-bit words.

    A trailing partial word is dropped, or rejected when strict is set.
    """
    if len(data) % 4:
        if strict:
            raise TruncatedProgram(len(data))
        data = data[:len(data) - len(data) % 4]
    return list(struct.unpack(f'>{len(data) // 4}I', data))


def words_to_bytes(words: Iterable[int]) -> bytes:
    words = [w & MASK32 for w in words]
    return struct.pack(f'>{len(words)}I', *words)


@dataclass
class Program:
    """Raw program words together with their decoded instructions."""
    words: List[int] = None
    instructions: List[Instruction] = None

    def __post_init__(self):
        if self.words is None:
            self.words = []
        if self.instructions is None:
            self.instructions = decode_words(self.words)

    @classmethod
    def from_words(cls, words: Iterable[int]) -> 'Program':
        words = list(words)
        return cls(words, decode_words(words))

    @classmethod
    def from_instructions(cls, instructions: Iterable[Instruction]) -> 'Program':
        instructions = list(instructions)
        words = [w for instr in instructions for w in instr.encode()]
        return cls(words, instructions)

    def encode(self, compressed: bool = False) -> bytes:
        """Encode to program file bytes."""
        data = words_to_bytes(self.words)
        if compressed:
            return compress(data, ZSTD_LEVEL)
        return data

    @classmethod
    def decode(cls, data: bytes, strict: bool = False) -> 'Program':
        """Decode program file bytes, decompressing zstd images first."""
        if data[:4] == ZSTD_MAGIC:
            try:
                data = decompress(data)
            except ZstdError as e:
                raise CorruptImage(str(e)) from e
        return cls.from_words(words_from_bytes(data, strict))

    def __len__(self) -> int:
        return len(self.instructions)

    def __getitem__(self, index: int) -> Instruction:
        return self.instructions[index]


def load_program(path: str, strict: bool = False) -> Program:
    """Read and decode a program file."""
    with open(path, 'rb') as f:
        data = f.read()
    return Program.decode(data, strict)


def disassemble(program: Program) -> str:
    """Disassemble a program to human-readable form."""
    lines = [
        f"; Words: {len(program.words)}",
        f"; Instructions: {len(program.instructions)}",
        "",
    ]

    for i, instr in enumerate(program.instructions):
        ext = "  ; extended" if instr.extended else ""
        lines.append(f"{i:04d} @0x{i * INSTRUCTION_SIZE:04X}: {instr}{ext}")

    return '\n'.join(lines)
