"""A flat, byte-addressable range of simulated physical memory."""

from __future__ import annotations

import struct

_U32 = struct.Struct("<I")


class MemoryAccessError(Exception):
    """Raised on a null pointer or an access outside the memory range."""


class PhysicalMemory:
    """Zero-filled physical memory covering ``[base, base + size)``.

    Address 0 is treated as a null pointer by the copy and compare
    routines, as it is in the kernel.
    """

    def __init__(self, size: int, base: int = 0) -> None:
        if size < 0:
            raise ValueError("memory size must not be negative")
        if base < 0:
            raise ValueError("memory base must not be negative")
        self.size = size
        self.base = base
        self._data = bytearray(size)

    @property
    def end(self) -> int:
        """First address past the end of the range."""
        return self.base + self.size

    def __len__(self) -> int:
        return self.size

    def __contains__(self, addr: object) -> bool:
        return isinstance(addr, int) and self.base <= addr < self.end

    def _offset(self, addr: int, length: int) -> int:
        if length < 0:
            raise ValueError("length must not be negative")
        if addr < self.base or addr + length > self.end:
            raise MemoryAccessError(
                f"access of {length} bytes at 0x{addr:08X} is outside "
                f"0x{self.base:08X}-0x{self.end:08X}"
            )
        return addr - self.base

    @staticmethod
    def _check_null(name: str, *addrs: int) -> None:
        if any(addr == 0 for addr in addrs):
            raise MemoryAccessError(f"{name}: null pointer detected")

    def read(self, addr: int, length: int) -> bytes:
        """Return ``length`` bytes starting at ``addr``."""
        off = self._offset(addr, length)
        return bytes(self._data[off:off + length])

    def write(self, addr: int, data: bytes) -> None:
        """Store ``data`` starting at ``addr``."""
        data = bytes(data)
        off = self._offset(addr, len(data))
        self._data[off:off + len(data)] = data

    def read_u32(self, addr: int) -> int:
        """Read a little-endian 32-bit word."""
        return _U32.unpack(self.read(addr, 4))[0]

    def write_u32(self, addr: int, value: int) -> None:
        """Write a little-endian 32-bit word."""
        if not 0 <= value <= 0xFFFFFFFF:
            raise ValueError(f"value {value:#x} does not fit in 32 bits")
        self.write(addr, _U32.pack(value))

    def memset(self, dest: int, value: int, size: int) -> int:
        """Fill ``size`` bytes at ``dest`` with the low byte of ``value``."""
        off = self._offset(dest, size)
        self._data[off:off + size] = bytes([value & 0xFF]) * size
        return dest

    def memcmp(self, a: int, b: int, num: int) -> int:
        """Compare two blocks; return the difference of the first unequal bytes."""
        self._check_null("memcmp", a, b)
        for x, y in zip(self.read(a, num), self.read(b, num)):
            if x != y:
                return x - y
        return 0

    def memcpy(self, dest: int, src: int, n: int) -> int:
        """Copy ``n`` bytes forward, one byte at a time, from ``src`` to ``dest``."""
        self._check_null("memcpy", dest, src)
        soff = self._offset(src, n)
        doff = self._offset(dest, n)
        if n == 0:
            return dest
        if src < dest < src + n:
            # a forward byte copy into an overlapping tail repeats the head
            pattern = bytes(self._data[soff:doff])
            repeated = pattern * (n // len(pattern) + 1)
            self._data[doff:doff + n] = repeated[:n]
        else:
            self._data[doff:doff + n] = self._data[soff:soff + n]
        return dest

    def memmove(self, dest: int, src: int, n: int) -> int:
        """Copy ``n`` bytes from ``src`` to ``dest``; the ranges may overlap."""
        self._check_null("memmove", dest, src)
        soff = self._offset(src, n)
        doff = self._offset(dest, n)
        self._data[doff:doff + n] = bytes(self._data[soff:soff + n])
        return dest