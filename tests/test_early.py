import pytest

from floppamem.early import (
    CHUNK_HEADER_SIZE,
    EARLY_PAGES_TOTAL,
    EARLY_POOL_PAGES,
    Chunk,
    EarlyAllocator,
)
from floppamem.memory import PhysicalMemory
from floppamem.multiboot import MemoryMapEntry, MemoryType
from floppamem.pmm import PAGE_SIZE, OutOfMemoryError

BASE = 0x100000
POOL_BYTES = EARLY_POOL_PAGES * PAGE_SIZE - CHUNK_HEADER_SIZE


def make_allocator(entries=None):
    memory = PhysicalMemory(0x20000, base=BASE)
    allocator = EarlyAllocator(memory)
    if entries is None:
        entries = [
            MemoryMapEntry(0x0, 0x9F000, MemoryType.RESERVED),
            MemoryMapEntry(BASE, 0x20000, MemoryType.AVAILABLE),
        ]
    allocator.bootstrap(entries)
    return allocator, memory


def test_reserve_without_map_raises():
    allocator = EarlyAllocator(PhysicalMemory(0x1000, base=BASE))
    with pytest.raises(RuntimeError):
        allocator.reserve_page()


def test_reserve_skips_reserved_regions_and_zeroes():
    allocator, memory = make_allocator()
    memory.write(BASE, b"\xAA" * 16)
    page = allocator.reserve_page()
    assert page == BASE
    assert memory.read(BASE, 16) == bytes(16)


def test_reserve_aligns_region_start():
    allocator, _ = make_allocator([MemoryMapEntry(BASE + 0x10, 0x3000, MemoryType.AVAILABLE)])
    assert allocator.reserve_page() == BASE + PAGE_SIZE


def test_reserve_returns_distinct_pages_up_to_limit():
    allocator, _ = make_allocator()
    pages = [allocator.reserve_page() for _ in range(EARLY_PAGES_TOTAL)]
    assert len(set(pages)) == EARLY_PAGES_TOTAL
    assert all(p % PAGE_SIZE == 0 for p in pages)
    with pytest.raises(OutOfMemoryError):
        allocator.reserve_page()


def test_release_allows_reuse():
    allocator, _ = make_allocator()
    first = allocator.reserve_page()
    allocator.reserve_page()
    allocator.release_page(first)
    assert allocator.reserve_page() == first


def test_init_creates_one_free_chunk():
    allocator, _ = make_allocator()
    allocator.init()
    assert allocator.initialized
    assert allocator.pool_base == BASE + PAGE_SIZE
    assert allocator.chunks() == [Chunk(allocator.pool_base, POOL_BYTES, True)]


def test_alloc_before_init_raises():
    allocator, _ = make_allocator()
    with pytest.raises(RuntimeError):
        allocator.alloc(32)


def test_alloc_zero_raises():
    allocator, _ = make_allocator()
    allocator.init()
    with pytest.raises(ValueError):
        allocator.alloc(0)


def test_alloc_splits_chunk():
    allocator, _ = make_allocator()
    allocator.init()
    ptr = allocator.alloc(100)
    assert ptr == allocator.pool_base + CHUNK_HEADER_SIZE
    chunks = allocator.chunks()
    assert [c.free for c in chunks] == [False, True]
    assert chunks[0].size == 100
    assert chunks[1].address == ptr + 100
    assert chunks[0].size + chunks[1].size + CHUNK_HEADER_SIZE == POOL_BYTES


def test_consecutive_allocations_do_not_overlap():
    allocator, memory = make_allocator()
    allocator.init()
    a = allocator.alloc(64)
    b = allocator.alloc(64)
    assert b >= a + 64
    memory.write(a, b"\x11" * 64)
    memory.write(b, b"\x22" * 64)
    assert memory.read(a, 64) == b"\x11" * 64


def test_no_split_when_remainder_is_small():
    allocator, _ = make_allocator()
    allocator.init()
    ptr = allocator.alloc(POOL_BYTES - CHUNK_HEADER_SIZE - 4)
    chunks = allocator.chunks()
    assert len(chunks) == 1
    assert chunks[0].size == POOL_BYTES
    assert ptr == chunks[0].payload


def test_free_coalesces_back_to_single_chunk():
    allocator, _ = make_allocator()
    allocator.init()
    a = allocator.alloc(40)
    b = allocator.alloc(80)
    c = allocator.alloc(120)
    allocator.free(b)
    assert [ch.free for ch in allocator.chunks()] == [False, True, False, True]
    allocator.free(a)
    allocator.free(c)
    assert allocator.chunks() == [Chunk(allocator.pool_base, POOL_BYTES, True)]


def test_freed_space_is_reused():
    allocator, _ = make_allocator()
    allocator.init()
    a = allocator.alloc(64)
    allocator.alloc(64)
    allocator.free(a)
    assert allocator.alloc(32) == a


def test_free_unknown_pointer_raises():
    allocator, _ = make_allocator()
    allocator.init()
    allocator.alloc(64)
    with pytest.raises(ValueError):
        allocator.free(allocator.pool_base + 3)


def test_out_of_memory():
    allocator, _ = make_allocator()
    allocator.init()
    with pytest.raises(OutOfMemoryError):
        allocator.alloc(POOL_BYTES + 1)


def test_destroy_zeroes_and_releases_pool():
    allocator, memory = make_allocator()
    allocator.init()
    pool_base = allocator.pool_base
    ptr = allocator.alloc(16)
    memory.write(ptr, b"\xFF" * 16)
    allocator.destroy()
    assert not allocator.initialized
    assert allocator.chunks() == []
    assert memory.read(ptr, 16) == bytes(16)
    with pytest.raises(RuntimeError):
        allocator.alloc(16)
    assert allocator.reserve_page() == pool_base


def test_non_contiguous_pool_is_rejected():
    allocator, _ = make_allocator([
        MemoryMapEntry(BASE, 2 * PAGE_SIZE, MemoryType.AVAILABLE),
        MemoryMapEntry(BASE + 0x10000, 0x10000, MemoryType.AVAILABLE),
    ])
    with pytest.raises(OutOfMemoryError):
        allocator.init()
    assert not allocator.initialized
    assert allocator.reserve_page() == BASE