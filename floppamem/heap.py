"""Kernel heap built from page-sized boxes of 32-byte blocks.

Allocations larger than a page come straight from the page allocator.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, NamedTuple, Optional

from .memory import PhysicalMemory
from .pmm import PAGE_SIZE, OutOfMemoryError

BLOCK_SIZE = 32
# Bytes reserved in front of every object for its metadata (pointer size on i386).
OBJECT_ALIGN = 4
# Size of the box header that sits at the start of a box page on i386.
BOX_HEADER_SIZE = 28
BLOCKS_PER_BOX = (PAGE_SIZE - BOX_HEADER_SIZE) // (BLOCK_SIZE + 1)
BITMAP_BYTES = (BLOCKS_PER_BOX + 7) // 8
# Size and page count words stored in front of a guarded object.
GUARDED_HEADER_SIZE = 8


@dataclass(eq=False)
class Box:
    """One heap page: header, block bitmap, then the data blocks."""

    id: int
    page: int
    total_blocks: int = BLOCKS_PER_BOX
    bitmap: bytearray = field(default_factory=lambda: bytearray(BITMAP_BYTES))

    @property
    def data_pointer(self) -> int:
        """Address of the first data block."""
        return self.page + BOX_HEADER_SIZE + (self.total_blocks + 7) // 8

    def is_used(self, block: int) -> bool:
        return bool(self.bitmap[block >> 3] & (1 << (block & 7)))

    def find_free(self, needed: int) -> Optional[int]:
        """First block of a run of ``needed`` free blocks, or None."""
        run = 0
        start = 0
        for block in range(self.total_blocks):
            if self.is_used(block):
                run = 0
                continue
            if run == 0:
                start = block
            run += 1
            if run >= needed:
                return start
        return None

    def mark(self, start: int, count: int, used: bool) -> None:
        """Set or clear ``count`` bitmap bits starting at ``start``."""
        for block in range(start, start + count):
            bit = 1 << (block & 7)
            if used:
                self.bitmap[block >> 3] |= bit
            else:
                self.bitmap[block >> 3] &= ~bit

    def is_empty(self) -> bool:
        return not any(self.bitmap)

    def block_index(self, addr: int) -> Optional[int]:
        """Block number starting at ``addr``, or None if it is not a block start."""
        diff = addr - self.data_pointer
        if diff < 0 or diff % BLOCK_SIZE:
            return None
        idx = diff // BLOCK_SIZE
        return idx if idx < self.total_blocks else None


class _Object(NamedTuple):
    box: Optional[Box]
    size: int


def _blocks_for(size: int) -> int:
    return (size + OBJECT_ALIGN + BLOCK_SIZE - 1) // BLOCK_SIZE


class Heap:
    """Kernel object allocator on top of a page allocator.

    ``pmm`` provides ``alloc_page``, ``alloc_pages``, ``free_page`` and
    ``free_pages``. ``address_space``, if given, is an object with an
    ``unmap(va)`` method used to unmap the guard page of guarded objects.
    """

    def __init__(self, pmm: Any, memory: PhysicalMemory, address_space: Any = None) -> None:
        self._pmm = pmm
        self.memory = memory
        self._address_space = address_space
        self._lock = threading.RLock()
        self._boxes: list[Box] = []  # newest box first
        self._box_ids: dict[int, Box] = {}
        self._next_box_id = 0
        self._objects: dict[int, _Object] = {}
        self._guarded: dict[int, int] = {}
        self._create_box()

    def _create_box(self) -> Box:
        page = self._pmm.alloc_page()
        with self._lock:
            box = Box(id=self._next_box_id, page=page)
            self._next_box_id += 1
            self._boxes.insert(0, box)
            self._box_ids[box.id] = box
        return box

    def _release_box(self, box: Box) -> None:
        with self._lock:
            if not box.is_empty() or self._box_ids.get(box.id) is not box:
                return
            self._boxes.remove(box)
            del self._box_ids[box.id]
        self._pmm.free_page(box.page)

    def _box_alloc(self, box: Box, size: int) -> Optional[int]:
        needed = _blocks_for(size)
        start = box.find_free(needed)
        if start is None:
            return None
        box.mark(start, needed, True)
        mem = box.data_pointer + start * BLOCK_SIZE
        self._objects[mem] = _Object(box, size)
        return mem + OBJECT_ALIGN

    def kmalloc(self, size: int) -> Optional[int]:
        """Allocate ``size`` bytes; a zero size yields None."""
        if size < 0:
            raise ValueError("allocation size must not be negative")
        if size == 0:
            return None

        if size > PAGE_SIZE:
            pages = (size + OBJECT_ALIGN + PAGE_SIZE - 1) // PAGE_SIZE
            mem = self._pmm.alloc_pages(0, pages)
            with self._lock:
                self._objects[mem] = _Object(None, size)
            return mem + OBJECT_ALIGN

        with self._lock:
            for box in self._boxes:
                ptr = self._box_alloc(box, size)
                if ptr is not None:
                    return ptr
            box = self._create_box()
            ptr = self._box_alloc(box, size)
        if ptr is None:
            self._release_box(box)
            raise OutOfMemoryError(f"{size} bytes do not fit in a heap box")
        return ptr

    def kfree(self, ptr: Optional[int], size: int = 0) -> None:
        """Free the object at ``ptr``; its recorded size decides what is released."""
        if not ptr:
            return
        addr = ptr - OBJECT_ALIGN
        with self._lock:
            obj = self._objects.pop(addr, None)
            if obj is None:
                raise ValueError(f"0x{ptr:08X} is not a heap object")
            if obj.box is None:
                pages = (obj.size + OBJECT_ALIGN + PAGE_SIZE - 1) // PAGE_SIZE
                self._pmm.free_pages(addr, 0, pages)
                return
            box = obj.box
            idx = box.block_index(addr)
            if idx is None:
                return
            box.mark(idx, _blocks_for(obj.size), False)
            if box.is_empty():
                self._release_box(box)

    def kcalloc(self, n: int, s: int) -> Optional[int]:
        """Allocate ``n * s`` zeroed bytes."""
        total = n * s
        ptr = self.kmalloc(total)
        if ptr:
            self.memory.memset(ptr, 0, total)
        return ptr

    def krealloc(self, ptr: Optional[int], new_size: int, old_size: int) -> Optional[int]:
        """Move the object at ``ptr`` to a new allocation of ``new_size`` bytes."""
        if not ptr:
            return self.kmalloc(new_size)
        if new_size == 0:
            self.kfree(ptr, old_size)
            return None

        with self._lock:
            old = self._objects.get(ptr - OBJECT_ALIGN)
        if old is None:
            raise ValueError(f"0x{ptr:08X} is not a heap object")

        new = self.kmalloc(new_size)
        self.memory.memcpy(new, ptr, min(old.size, new_size))
        self.kfree(ptr, old_size)
        return new

    def kmalloc_guarded(self, size: int) -> Optional[int]:
        """Allocate ``size`` bytes followed by an unmapped guard page."""
        if size < 0:
            raise ValueError("allocation size must not be negative")
        if size == 0:
            return None
        data_pages = (size + GUARDED_HEADER_SIZE + PAGE_SIZE - 1) // PAGE_SIZE
        total_pages = data_pages + 1
        base = self._pmm.alloc_pages(0, total_pages)
        if self._address_space is not None:
            self._address_space.unmap(base + data_pages * PAGE_SIZE)
        with self._lock:
            self._guarded[base] = total_pages
        return base + GUARDED_HEADER_SIZE

    def kfree_guarded(self, ptr: Optional[int]) -> None:
        """Release a guarded object together with its guard page."""
        if not ptr:
            return
        base = ptr - GUARDED_HEADER_SIZE
        with self._lock:
            pages = self._guarded.pop(base, None)
        if pages is None:
            raise ValueError(f"0x{ptr:08X} is not a guarded object")
        self._pmm.free_pages(base, 0, pages)

    def memtest(self) -> bool:
        """Exercise the allocator with a mix of sizes; True if data survived."""
        a = self.kmalloc(64)
        self.kfree(a, 64)
        b = self.kmalloc(64)
        self.kfree(b, 64)

        c = self.kcalloc(32, 4)
        ok = self.memory.read(c, 128) == bytes(128)
        self.kfree(c, 128)

        d = self.kmalloc(32)
        pattern = bytes(range(32))
        self.memory.write(d, pattern)
        d2 = self.krealloc(d, 128, 32)
        ok = ok and self.memory.read(d2, 32) == pattern
        self.kfree(d2, 128)

        big_size = PAGE_SIZE * 3 + 100
        big = self.kmalloc(big_size)
        self.kfree(big, big_size)
        return ok

    def box_count(self) -> int:
        """Number of boxes currently held by the heap."""
        with self._lock:
            return len(self._boxes)