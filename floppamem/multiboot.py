"""Multiboot information structure, memory map and module descriptors."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass, field

MULTIBOOT_SEARCH = 8192
MULTIBOOT_HEADER_ALIGN = 4
MULTIBOOT_HEADER_MAGIC = 0x1BADB002
MULTIBOOT_BOOTLOADER_MAGIC = 0x2BADB002
MULTIBOOT_MOD_ALIGN = 0x00001000
MULTIBOOT_INFO_ALIGN = 0x00000004

FRAMEBUFFER_TYPE_INDEXED = 0
FRAMEBUFFER_TYPE_RGB = 1
FRAMEBUFFER_TYPE_EGA_TEXT = 2

_INFO = struct.Struct("<7I4I7I2I4HQ3IBB2x8s")
_MMAP_HEADER = struct.Struct("<I")
_MMAP_BODY = struct.Struct("<QQI")

INFO_SIZE = _INFO.size
MMAP_ENTRY_BODY_SIZE = _MMAP_BODY.size


class InfoFlag(enum.IntFlag):
    """Bits of the ``flags`` field of the multiboot info structure."""

    MEMORY = 0x00000001
    BOOTDEV = 0x00000002
    CMDLINE = 0x00000004
    MODS = 0x00000008
    AOUT_SYMS = 0x00000010
    ELF_SHDR = 0x00000020
    MEM_MAP = 0x00000040
    DRIVE_INFO = 0x00000080
    CONFIG_TABLE = 0x00000100
    BOOT_LOADER_NAME = 0x00000200
    APM_TABLE = 0x00000400
    VBE_INFO = 0x00000800
    FRAMEBUFFER_INFO = 0x00001000


class MemoryType(enum.IntEnum):
    """Type codes of memory map regions."""

    AVAILABLE = 1
    RESERVED = 2
    ACPI_RECLAIMABLE = 3
    NVS = 4
    BADRAM = 5


@dataclass(frozen=True)
class MemoryMapEntry:
    """One region of the boot loader's memory map.

    ``size`` is the byte count of the entry after the size field itself.
    """

    addr: int
    length: int
    type: int
    size: int = MMAP_ENTRY_BODY_SIZE

    @property
    def end(self) -> int:
        return self.addr + self.length

    @property
    def available(self) -> bool:
        return self.type == MemoryType.AVAILABLE


@dataclass(frozen=True)
class Module:
    """A boot module occupying ``[mod_start, mod_end)``."""

    mod_start: int
    mod_end: int
    cmdline: int = 0
    pad: int = 0


@dataclass
class MultibootInfo:
    """The multiboot info structure handed to the kernel.

    ``symbols`` holds the four words shared by the a.out symbol table
    (tabsize, strsize, addr, reserved) and the ELF section header table
    (num, size, addr, shndx). ``color_info`` is the raw framebuffer colour
    union. ``memory_map`` and ``modules`` are the decoded tables the
    structure points to; they are not part of its byte layout.
    """

    flags: InfoFlag = InfoFlag(0)
    mem_lower: int = 0
    mem_upper: int = 0
    boot_device: int = 0
    cmdline: int = 0
    mods_count: int = 0
    mods_addr: int = 0
    symbols: tuple[int, int, int, int] = (0, 0, 0, 0)
    mmap_length: int = 0
    mmap_addr: int = 0
    drives_length: int = 0
    drives_addr: int = 0
    config_table: int = 0
    boot_loader_name: int = 0
    apm_table: int = 0
    vbe_control_info: int = 0
    vbe_mode_info: int = 0
    vbe_mode: int = 0
    vbe_interface_seg: int = 0
    vbe_interface_off: int = 0
    vbe_interface_len: int = 0
    framebuffer_addr: int = 0
    framebuffer_pitch: int = 0
    framebuffer_width: int = 0
    framebuffer_height: int = 0
    framebuffer_bpp: int = 0
    framebuffer_type: int = 0
    color_info: bytes = bytes(8)
    memory_map: list[MemoryMapEntry] = field(default_factory=list)
    modules: list[Module] = field(default_factory=list)

    @classmethod
    def from_bytes(cls, data: bytes) -> "MultibootInfo":
        """Decode the fixed-size info structure from ``data``."""
        if len(data) < INFO_SIZE:
            raise ValueError(f"multiboot info needs {INFO_SIZE} bytes, got {len(data)}")
        v = _INFO.unpack_from(data)
        return cls(
            flags=InfoFlag(v[0]),
            mem_lower=v[1],
            mem_upper=v[2],
            boot_device=v[3],
            cmdline=v[4],
            mods_count=v[5],
            mods_addr=v[6],
            symbols=(v[7], v[8], v[9], v[10]),
            mmap_length=v[11],
            mmap_addr=v[12],
            drives_length=v[13],
            drives_addr=v[14],
            config_table=v[15],
            boot_loader_name=v[16],
            apm_table=v[17],
            vbe_control_info=v[18],
            vbe_mode_info=v[19],
            vbe_mode=v[20],
            vbe_interface_seg=v[21],
            vbe_interface_off=v[22],
            vbe_interface_len=v[23],
            framebuffer_addr=v[24],
            framebuffer_pitch=v[25],
            framebuffer_width=v[26],
            framebuffer_height=v[27],
            framebuffer_bpp=v[28],
            framebuffer_type=v[29],
            color_info=v[30],
        )

    def to_bytes(self) -> bytes:
        """Encode the fixed-size info structure."""
        if len(self.color_info) != 8:
            raise ValueError("color_info must be exactly 8 bytes")
        if len(self.symbols) != 4:
            raise ValueError("symbols must hold exactly 4 words")
        try:
            return _INFO.pack(
                int(self.flags),
                self.mem_lower,
                self.mem_upper,
                self.boot_device,
                self.cmdline,
                self.mods_count,
                self.mods_addr,
                *self.symbols,
                self.mmap_length,
                self.mmap_addr,
                self.drives_length,
                self.drives_addr,
                self.config_table,
                self.boot_loader_name,
                self.apm_table,
                self.vbe_control_info,
                self.vbe_mode_info,
                self.vbe_mode,
                self.vbe_interface_seg,
                self.vbe_interface_off,
                self.vbe_interface_len,
                self.framebuffer_addr,
                self.framebuffer_pitch,
                self.framebuffer_width,
                self.framebuffer_height,
                self.framebuffer_bpp,
                self.framebuffer_type,
                bytes(self.color_info),
            )
        except struct.error as exc:
            raise ValueError(f"multiboot info field out of range: {exc}") from exc


def parse_memory_map(data: bytes) -> list[MemoryMapEntry]:
    """Decode a memory map buffer; an entry with size 0 ends the map."""
    entries: list[MemoryMapEntry] = []
    offset = 0
    while offset < len(data):
        if len(data) - offset < _MMAP_HEADER.size:
            raise ValueError(f"truncated memory map entry at offset {offset}")
        (size,) = _MMAP_HEADER.unpack_from(data, offset)
        if size == 0:
            break
        body = offset + _MMAP_HEADER.size
        if size < MMAP_ENTRY_BODY_SIZE or body + size > len(data):
            raise ValueError(f"malformed memory map entry at offset {offset}")
        addr, length, type_ = _MMAP_BODY.unpack_from(data, body)
        entries.append(MemoryMapEntry(addr, length, type_, size))
        offset = body + size
    return entries


def encode_memory_map(entries) -> bytes:
    """Encode memory map entries; entries with a larger size get zero padding."""
    out = bytearray()
    for entry in entries:
        if entry.size < MMAP_ENTRY_BODY_SIZE:
            raise ValueError(f"memory map entry size {entry.size} is too small")
        try:
            out += _MMAP_HEADER.pack(entry.size)
            out += _MMAP_BODY.pack(entry.addr, entry.length, int(entry.type))
        except struct.error as exc:
            raise ValueError(f"memory map field out of range: {exc}") from exc
        out += bytes(entry.size - MMAP_ENTRY_BODY_SIZE)
    return bytes(out)


def _uint(label: str, value: int) -> str:
    return f"{label}{value}"


def _address(label: str, value: int) -> str:
    return f"{label}0x{value:08X}"


def describe_multiboot_info(info: MultibootInfo) -> list[str]:
    """Return the human-readable report of the fields present in ``info``."""
    flags = InfoFlag(info.flags)
    lines = ["Multiboot Information:", _uint("Flags: ", int(flags))]

    if flags & InfoFlag.MEMORY:
        lines.append(_uint("Memory Lower (KB): ", info.mem_lower))
        lines.append(_uint("Memory Upper (KB): ", info.mem_upper))
    if flags & InfoFlag.BOOTDEV:
        lines.append(_uint("Boot Device: ", info.boot_device))
    if flags & InfoFlag.CMDLINE:
        lines.append(_address("Command Line Address: ", info.cmdline))
    if flags & InfoFlag.MODS:
        lines.append(_uint("Modules Count: ", info.mods_count))
        lines.append(_address("Modules Address: ", info.mods_addr))
    if flags & InfoFlag.AOUT_SYMS:
        tabsize, strsize, addr, _ = info.symbols
        lines.append("AOUT Symbol Table:")
        lines.append(_uint("Tab Size: ", tabsize))
        lines.append(_uint("Str Size: ", strsize))
        lines.append(_address("Address: ", addr))
    if flags & InfoFlag.ELF_SHDR:
        num, size, addr, shndx = info.symbols
        lines.append("ELF Section Header Table")
        lines.append(_uint("Number of Entries: ", num))
        lines.append(_uint("Size of Entry: ", size))
        lines.append(_address("Address: ", addr))
        lines.append(_uint("Index of Section Names: ", shndx))
    if flags & InfoFlag.MEM_MAP:
        lines.append("Memory Map:")
        lines.append(_uint("Memory Map Length: ", info.mmap_length))
        lines.append(_address("Memory Map Address: ", info.mmap_addr))
    if flags & InfoFlag.DRIVE_INFO:
        lines.append(_uint("Drives Length: ", info.drives_length))
        lines.append(_address("Drives Address: ", info.drives_addr))
    if flags & InfoFlag.CONFIG_TABLE:
        lines.append(_address("Config Table Address: ", info.config_table))
    if flags & InfoFlag.BOOT_LOADER_NAME:
        lines.append(_address("Boot Loader Name Address: ", info.boot_loader_name))
    if flags & InfoFlag.APM_TABLE:
        lines.append(_address("APM Table Address: ", info.apm_table))
    if flags & InfoFlag.VBE_INFO:
        lines.append(_address("VBE Control Info: ", info.vbe_control_info))
        lines.append(_address("VBE Mode Info: ", info.vbe_mode_info))
        lines.append(_uint("VBE Mode: ", info.vbe_mode))
        lines.append(_uint("VBE Interface Segment: ", info.vbe_interface_seg))
        lines.append(_uint("VBE Interface Offset: ", info.vbe_interface_off))
        lines.append(_uint("VBE Interface Length: ", info.vbe_interface_len))
    if flags & InfoFlag.FRAMEBUFFER_INFO:
        lines.append("Framebuffer Info:")
        lines.append(_address("Framebuffer Address: ", info.framebuffer_addr & 0xFFFFFFFF))
        lines.append(_uint("Framebuffer Pitch: ", info.framebuffer_pitch))
        lines.append(_uint("Framebuffer Width: ", info.framebuffer_width))
        lines.append(_uint("Framebuffer Height: ", info.framebuffer_height))
        lines.append(_uint("Framebuffer Bits Per Pixel: ", info.framebuffer_bpp))
        lines.append(_uint("Framebuffer Type: ", info.framebuffer_type))

    lines.append("Done printing multiboot info.")
    return lines