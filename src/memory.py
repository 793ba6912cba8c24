"""
Byte-addressable memory for the DBV VM.

All multi-byte accessors are little-endian. Every access must fit entirely
inside the buffer, otherwise OutOfBoundsError is raised.

Signed reads copy the sign bit one position up (bit 15 -> bit 16, bit 7 ->
bit 8) and stop there. This is not a two's-complement sign fill; programs
for DBV depend on the exact bit pattern.
"""

import struct

from errors import OutOfBoundsError

MEMORY_SIZE = 0x00FFFFFF

# Memory powers up with every byte set to 0x01, not zero
FILL_BYTE = 0x01


class Memory:
    """Flat fixed-capacity byte array."""

    def __init__(self, capacity: int = MEMORY_SIZE, fill: int = FILL_BYTE):
        self.capacity = capacity
        self.data = bytearray([fill & 0xFF]) * capacity

    def check(self, address: int, width: int):
        """Raise OutOfBoundsError unless address..address+width-1 is mapped."""
        if address < 0 or address + width > self.capacity:
            raise OutOfBoundsError(address, width, self.capacity)

    # -- reads --------------------------------------------------------------

    def read32(self, address: int) -> int:
        self.check(address, 4)
        return struct.unpack_from('<I', self.data, address)[0]

    def read16(self, address: int) -> int:
        self.check(address, 2)
        return struct.unpack_from('<H', self.data, address)[0]

    def read8(self, address: int) -> int:
        self.check(address, 1)
        return self.data[address]

    def read16_signed(self, address: int) -> int:
        value = self.read16(address)
        sign = (value & 0x8000) >> 15
        return value | (sign << 16)

    def read8_signed(self, address: int) -> int:
        value = self.read8(address)
        sign = (value & 0x80) >> 7
        return value | (sign << 8)

    # -- writes -------------------------------------------------------------

    def write32(self, address: int, value: int):
        self.check(address, 4)
        struct.pack_into('<I', self.data, address, value & 0xFFFFFFFF)

    def write16(self, address: int, value: int):
        self.check(address, 2)
        struct.pack_into('<H', self.data, address, value & 0xFFFF)

    def write8(self, address: int, value: int):
        self.check(address, 1)
        self.data[address] = value & 0xFF

    # -- bulk ---------------------------------------------------------------

    def load_bytes(self, address: int, data: bytes):
        """Copy raw bytes into memory starting at address."""
        self.check(address, len(data))
        self.data[address:address + len(data)] = data

    def read_bytes(self, address: int, length: int) -> bytes:
        self.check(address, length)
        return bytes(self.data[address:address + length])

    def __len__(self) -> int:
        return self.capacity
