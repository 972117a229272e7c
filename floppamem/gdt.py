"""Global descriptor table encoding."""

from __future__ import annotations

import struct

DEFAULT_ENTRIES = (
    0x0000000000000000,
    0x00CF9A000000FFFF,  # kernel code
    0x00CF92000000FFFF,  # kernel data
    0x00CFFA000000FFFF,  # user code
    0x00CFF2000000FFFF,  # user data
    0x0000000000000000,  # task state segment, filled in later
)

TSS_INDEX = 5
KERNEL_DATA_SELECTOR = 0x10
KERNEL_CODE_SELECTOR = 0x08

_GDTR = struct.Struct("<HI")


def _check_range(name: str, value: int, bits: int) -> None:
    if not 0 <= value < (1 << bits):
        raise ValueError(f"{name} {value:#x} does not fit in {bits} bits")


def encode_descriptor(base: int, limit: int, access: int, gran: int) -> int:
    """Pack a segment descriptor into its 64-bit form."""
    _check_range("base", base, 32)
    _check_range("limit", limit, 32)
    _check_range("access", access, 8)
    _check_range("gran", gran, 8)

    desc = limit & 0xFFFF
    desc |= (base & 0xFFFFFF) << 16
    desc |= access << 40
    desc |= ((limit >> 16) & 0x0F) << 48
    desc |= (gran & 0xF0) << 48
    desc |= ((base >> 24) & 0xFF) << 56
    return desc


class GlobalDescriptorTable:
    """The flat-model descriptor table with its TSS slot."""

    def __init__(self) -> None:
        self.entries: list[int] = list(DEFAULT_ENTRIES)

    def __len__(self) -> int:
        return len(self.entries)

    def __getitem__(self, idx: int) -> int:
        return self.entries[idx]

    def set_gate(self, idx: int, base: int, limit: int, access: int, gran: int) -> int:
        """Replace descriptor ``idx`` and return its encoded value."""
        if not 0 <= idx < len(self.entries):
            raise IndexError(f"descriptor index {idx} is out of range")
        desc = encode_descriptor(base, limit, access, gran)
        self.entries[idx] = desc
        return desc

    def gdtr(self, base_address: int) -> bytes:
        """Return the six-byte GDTR operand for a table loaded at ``base_address``."""
        _check_range("base_address", base_address, 32)
        return _GDTR.pack(len(self.entries) * 8 - 1, base_address)

    def to_bytes(self) -> bytes:
        """Return the table as it lies in memory."""
        return struct.pack(f"<{len(self.entries)}Q", *self.entries)