"""Buddy-style physical page allocator built from the multiboot memory map."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Iterator, NamedTuple

from .multiboot import InfoFlag, MemoryMapEntry, MemoryType, MultibootInfo

PAGE_SIZE = 4096
PAGE_SHIFT = 12
MAX_ORDER = 10

PAGE_TABLE_SIZE = 1024
PAGE_DIRECTORY_SIZE = 1024
PAGE_ENTRIES = 1024
TABLE_BYTES = 0x1000
PAGE_MASK = 0xFFFFF000
PAGE_PRESENT = 0x1
PAGE_RW = 0x2
PAGE_USER = 0x4
CR0_PG_BIT = 0x80000000
KERNEL_PHYSICAL_START = 0x00100000
KERNEL_VIRT_BASE = 0xC0000000

# Lowest address a usable region may start at; low memory is left alone.
USABLE_REGION_FLOOR = 0x100000
# Size of one page descriptor in the page-info array on i386.
PAGE_STRUCT_SIZE = 16


class OutOfMemoryError(MemoryError):
    """Raised when no free block can satisfy an allocation."""


@dataclass(eq=False)
class Page:
    """Descriptor of one physical page frame."""

    address: int
    order: int = 0
    is_free: bool = False


class UsableMemory(NamedTuple):
    """Summary of the usable regions of a memory map."""

    pages: int
    start: int
    total_bytes: int


def align_up(x: int, a: int) -> int:
    """Round ``x`` up to a multiple of the power of two ``a``."""
    return (x + (a - 1)) & ~(a - 1)


def _has_memory_map(info: MultibootInfo | None) -> bool:
    return info is not None and bool(info.flags & InfoFlag.MEM_MAP)


def _valid_entries(info: MultibootInfo) -> Iterator[MemoryMapEntry]:
    for entry in info.memory_map:
        if entry.size == 0:
            break
        yield entry


def _is_usable(entry: MemoryMapEntry) -> bool:
    return entry.type == MemoryType.AVAILABLE and entry.addr >= USABLE_REGION_FLOOR


def _region_start(entry: MemoryMapEntry) -> int:
    return align_up(entry.addr, PAGE_SIZE)


def _region_end(entry: MemoryMapEntry) -> int:
    return (entry.addr + entry.length) & ~(PAGE_SIZE - 1)


def count_usable_pages(info: MultibootInfo | None) -> UsableMemory:
    """Count the pages, first start address and bytes of the usable regions."""
    if not _has_memory_map(info):
        return UsableMemory(0, 0, 0)

    total_bytes = 0
    first_start = 0
    for entry in _valid_entries(info):
        if not _is_usable(entry):
            continue
        start, end = _region_start(entry), _region_end(entry)
        if end > start:
            total_bytes += end - start
            if first_start == 0:
                first_start = start
    return UsableMemory(total_bytes // PAGE_SIZE, first_start, total_bytes)


def _reserved_top(info: MultibootInfo, kernel_end: int) -> int:
    top = kernel_end
    if _has_memory_map(info):
        top = max(top, info.mmap_addr + info.mmap_length)
    if info.flags & InfoFlag.MODS:
        for module in info.modules:
            top = max(top, module.mod_end)
    return align_up(top, PAGE_SIZE)


def _find_page_info_placement(info: MultibootInfo, reserved_top: int, size: int) -> int:
    need = align_up(size, PAGE_SIZE)
    for entry in _valid_entries(info):
        if not _is_usable(entry):
            continue
        region_start, region_end = _region_start(entry), _region_end(entry)
        start = align_up(max(reserved_top, region_start), PAGE_SIZE)
        if start < region_end and region_end - start >= need:
            return start
    return 0


class BuddyAllocator:
    """Physical page allocator with per-order free lists.

    ``reserved_top`` is the end of the kernel image; the page-info array is
    placed in the first usable region above it, the boot memory map and any
    boot modules. Construction finishes by allocating and releasing one page,
    as the kernel does when it starts.
    """

    def __init__(self, info: MultibootInfo | None, reserved_top: int = 0) -> None:
        if not _has_memory_map(info):
            raise ValueError("invalid or missing multiboot memory map")

        usable = count_usable_pages(info)
        if usable.pages == 0 or usable.start == 0:
            raise ValueError("no usable pages found")

        self._lock = threading.RLock()
        self.free_lists: list[list[Page]] = [[] for _ in range(MAX_ORDER + 1)]
        self.total_pages = usable.pages
        self.memory_base = usable.start

        page_info_bytes = self.total_pages * PAGE_STRUCT_SIZE
        top = _reserved_top(info, reserved_top)
        self.page_info_addr = _find_page_info_placement(info, top, page_info_bytes) or top
        page_info_pages = (page_info_bytes + PAGE_SIZE - 1) // PAGE_SIZE

        self.pages = [
            Page(self.memory_base + i * PAGE_SIZE) for i in range(self.total_pages)
        ]
        self.memory_start = self.page_info_addr + page_info_pages * PAGE_SIZE
        self.memory_end = self.memory_base + self.total_pages * PAGE_SIZE

        self._build_free_list(info)
        self._self_test()

    def _build_free_list(self, info: MultibootInfo) -> None:
        info_start = self.page_info_addr
        info_end = info_start + align_up(self.total_pages * PAGE_STRUCT_SIZE, PAGE_SIZE)
        for entry in _valid_entries(info):
            if not _is_usable(entry):
                continue
            for addr in range(_region_start(entry), _region_end(entry), PAGE_SIZE):
                if info_start <= addr < info_end:
                    continue
                if not self.memory_base <= addr < self.memory_end:
                    continue
                idx = (addr - self.memory_base) // PAGE_SIZE
                if idx >= self.total_pages:
                    continue
                page = self.pages[idx]
                page.address = addr
                page.order = 0
                page.is_free = True
                self.free_lists[0].append(page)

    def _self_test(self) -> None:
        try:
            page = self.alloc_page()
        except OutOfMemoryError:
            return
        self.free_page(page)

    def _merge(self, addr: int, order: int) -> None:
        buddy_addr = addr ^ (PAGE_SIZE << order)
        page = self.phys_to_page(addr)
        if page is None:
            return
        buddy = self.phys_to_page(buddy_addr)

        if order < MAX_ORDER and buddy is not None and buddy.is_free and buddy.order == order:
            free_list = self.free_lists[order]
            pos = next((i for i, p in enumerate(free_list) if p is buddy), None)
            if pos is not None:
                del free_list[pos]
            self._merge(min(addr, buddy_addr), order + 1)
        else:
            page.order = order
            page.is_free = True
            self.free_lists[order].append(page)

    def _fetch_block(self, order: int) -> Page | None:
        for free_list in self.free_lists[order:]:
            if free_list:
                return free_list.pop()
        return None

    def _alloc_block(self, order: int) -> int | None:
        block = self._fetch_block(order)
        if block is None:
            return None
        # the block is handed out whole, whatever order it was found at
        block.is_free = False
        block.order = order
        return block.address

    def _free_block(self, addr: int, order: int) -> None:
        page = self.phys_to_page(addr)
        if page is None:
            return
        page.is_free = True
        self._merge(page.address, order)

    def alloc_pages(self, order: int, count: int) -> int:
        """Allocate ``count`` blocks of ``2**order`` pages; return the first address."""
        if not 0 <= order <= MAX_ORDER:
            raise ValueError(f"order {order} is outside 0..{MAX_ORDER}")
        if count <= 0:
            raise ValueError("page count must be positive")

        with self._lock:
            start: int | None = None
            for allocated in range(count):
                addr = self._alloc_block(order)
                if addr is None:
                    if start is not None:
                        self.free_pages(start, order, allocated)
                    raise OutOfMemoryError("out of physical memory")
                if start is None:
                    start = addr
            return start

    def free_pages(self, addr: int | None, order: int, count: int) -> None:
        """Release ``count`` consecutive blocks of ``2**order`` pages at ``addr``."""
        if not addr or not 0 <= order <= MAX_ORDER or count <= 0:
            return
        with self._lock:
            step = PAGE_SIZE << order
            for i in range(count):
                self._free_block(addr + i * step, order)

    def alloc_page(self) -> int:
        """Allocate a single page."""
        return self.alloc_pages(0, 1)

    def free_page(self, addr: int | None) -> None:
        """Release a single page."""
        self.free_pages(addr, 0, 1)

    def memory_size(self) -> int:
        """Bytes of usable memory, as a 32-bit quantity."""
        return (self.total_pages * PAGE_SIZE) & 0xFFFFFFFF

    def page_count(self) -> int:
        """Number of usable pages."""
        return self.total_pages

    def free_memory_size(self) -> int:
        """Free blocks counted one page each, in bytes."""
        with self._lock:
            return sum(len(free_list) for free_list in self.free_lists) * PAGE_SIZE

    def last_used_page(self) -> Page | None:
        """The highest page descriptor that is not free."""
        return next((page for page in reversed(self.pages) if not page.is_free), None)

    def page_index(self, addr: int) -> int:
        """Index of ``addr`` relative to the base of usable memory."""
        return (addr - self.memory_base) // PAGE_SIZE

    def phys_to_page(self, addr: int) -> Page | None:
        """Descriptor of the page holding ``addr``, or None outside managed memory."""
        if not self.memory_base <= addr < self.memory_end:
            return None
        index = self.page_index(addr)
        if index >= self.total_pages:
            return None
        return self.pages[index]

    def is_valid_addr(self, addr: int) -> bool:
        """Whether ``addr`` is a page-aligned address inside managed memory."""
        if addr % PAGE_SIZE:
            return False
        return self.phys_to_page(addr) is not None