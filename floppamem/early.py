"""Boot-time allocator carved from a handful of pages of the memory map."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Iterable, Optional

from .memory import PhysicalMemory
from .multiboot import MemoryMapEntry, MemoryType
from .pmm import PAGE_SIZE, OutOfMemoryError, align_up

EARLY_PAGES_TOTAL = 10
EARLY_META_PAGE = 0
EARLY_POOL_PAGES = 9
EARLY_BLOCK_SIZE = 256
# Size of a chunk header on i386: size, free flag (padded), next, prev.
CHUNK_HEADER_SIZE = 16
# A chunk is only split if the remainder holds a header and more than this.
_MIN_SPLIT_PAYLOAD = 8


@dataclass
class Chunk:
    """A chunk of the early pool: header at ``address``, ``size`` payload bytes."""

    address: int
    size: int
    free: bool = True

    @property
    def payload(self) -> int:
        return self.address + CHUNK_HEADER_SIZE


class EarlyAllocator:
    """First-fit allocator over a pool of pages reserved from the memory map."""

    def __init__(self, memory: PhysicalMemory) -> None:
        self.memory = memory
        self._entries: Optional[list[MemoryMapEntry]] = None
        self._reserved: list[int] = []
        self._chunks: list[Chunk] = []
        self.pool_base: Optional[int] = None
        self.initialized = False

    def bootstrap(self, entries: Iterable[MemoryMapEntry]) -> None:
        """Hand over the boot memory map pages are reserved from."""
        self._entries = list(entries)

    def reserve_page(self) -> int:
        """Reserve and zero the first available page not yet reserved."""
        if self._entries is None:
            raise RuntimeError("early allocator has no memory map")
        if len(self._reserved) >= EARLY_PAGES_TOTAL:
            raise OutOfMemoryError("all early pages are reserved")

        for entry in self._entries:
            if entry.type != MemoryType.AVAILABLE:
                continue
            start = align_up(entry.addr, PAGE_SIZE)
            end = entry.addr + entry.length
            for page in range(start, end - PAGE_SIZE + 1, PAGE_SIZE):
                if page in self._reserved:
                    continue
                self.memory.memset(page, 0, PAGE_SIZE)
                self._reserved.append(page)
                return page
        raise OutOfMemoryError("no available page in the memory map")

    def release_page(self, page: Optional[int]) -> None:
        """Return a reserved page; unknown pages are ignored."""
        if not page or page not in self._reserved:
            return
        pos = self._reserved.index(page)
        self._reserved[pos] = self._reserved[-1]
        self._reserved.pop()

    def init(self) -> None:
        """Reserve the metadata page and the pool, and set up one free chunk."""
        if self.initialized:
            return

        taken: list[int] = []
        try:
            for _ in range(1 + EARLY_POOL_PAGES):
                taken.append(self.reserve_page())
            pool = taken[1:]
            expected = list(range(pool[0], pool[0] + EARLY_POOL_PAGES * PAGE_SIZE, PAGE_SIZE))
            if pool != expected:
                raise OutOfMemoryError("early pool pages are not contiguous")
        except OutOfMemoryError:
            for page in taken:
                self.release_page(page)
            raise

        self.pool_base = pool[0]
        self._chunks = [
            Chunk(self.pool_base, EARLY_POOL_PAGES * PAGE_SIZE - CHUNK_HEADER_SIZE)
        ]
        self.initialized = True

    def alloc(self, size: int) -> int:
        """Allocate ``size`` bytes first-fit; return the payload address."""
        if not self.initialized:
            raise RuntimeError("early allocator is not initialized")
        if size <= 0:
            raise ValueError("allocation size must be positive")

        for pos, chunk in enumerate(self._chunks):
            if not chunk.free or chunk.size < size:
                continue
            remaining = chunk.size - size
            if remaining > CHUNK_HEADER_SIZE + _MIN_SPLIT_PAYLOAD:
                split = Chunk(chunk.address + CHUNK_HEADER_SIZE + size,
                              remaining - CHUNK_HEADER_SIZE)
                self._chunks.insert(pos + 1, split)
                chunk.size = size
            chunk.free = False
            return chunk.payload
        raise OutOfMemoryError("early pool exhausted")

    def free(self, ptr: Optional[int]) -> None:
        """Free the chunk whose payload starts at ``ptr`` and merge neighbours."""
        if not self.initialized or not ptr:
            return
        address = ptr - CHUNK_HEADER_SIZE
        pos = next((i for i, c in enumerate(self._chunks) if c.address == address), None)
        if pos is None:
            raise ValueError(f"0x{ptr:08X} was not allocated from the early pool")

        chunk = self._chunks[pos]
        chunk.free = True

        if pos + 1 < len(self._chunks) and self._chunks[pos + 1].free:
            chunk.size += CHUNK_HEADER_SIZE + self._chunks[pos + 1].size
            del self._chunks[pos + 1]

        if pos > 0 and self._chunks[pos - 1].free:
            self._chunks[pos - 1].size += CHUNK_HEADER_SIZE + chunk.size
            del self._chunks[pos]

    def destroy(self) -> None:
        """Zero and release the pool pages and forget all chunks."""
        if not self.initialized:
            return
        for i in range(EARLY_POOL_PAGES):
            page = self.pool_base + i * PAGE_SIZE
            self.memory.memset(page, 0, PAGE_SIZE)
            self.release_page(page)
        self._chunks = []
        self.pool_base = None
        self.initialized = False

    def chunks(self) -> list[Chunk]:
        """Copies of the pool's chunks in address order."""
        return [replace(chunk) for chunk in self._chunks]