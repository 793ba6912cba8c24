"""
Shared fixtures for the DBV VM test suite.

    python -m pytest            # everything
    python -m pytest -k Branch  # one family
"""

import pytest

from assemble import assemble
from vm import VM

TEST_MEMORY_SIZE = 0x10000


def encode_word(opcode: int, mode: int, dst: int = 0, src_1: int = 0,
                src_2: int = 0, low: int = 0) -> int:
    """Build a raw instruction word from its fields."""
    return ((opcode << 24) | (mode << 22) | (dst << 12) | (src_1 << 8)
            | (src_2 << 4) | low)


@pytest.fixture
def vm():
    return VM(memory_size=TEST_MEMORY_SIZE)


@pytest.fixture
def run_asm():
    """Assemble, preload memory words, run; return (vm, result)."""
    def _run(source: str, memory: dict = None, max_cycles: int = 10000,
             memory_size: int = TEST_MEMORY_SIZE):
        machine = VM(memory_size=memory_size)
        machine.load(assemble(source))
        for addr, value in (memory or {}).items():
            machine.memory.write32(addr, value)
        result = machine.run(max_cycles)
        return machine, result
    return _run


@pytest.fixture
def word():
    return encode_word
