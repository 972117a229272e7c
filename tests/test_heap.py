import pytest

from floppamem.heap import (
    BLOCK_SIZE,
    BLOCKS_PER_BOX,
    GUARDED_HEADER_SIZE,
    OBJECT_ALIGN,
    Heap,
)
from floppamem.memory import PhysicalMemory
from floppamem.multiboot import InfoFlag, MemoryMapEntry, MemoryType, MultibootInfo
from floppamem.pmm import PAGE_SIZE, BuddyAllocator, OutOfMemoryError

BASE = 0x100000


def make_env(pages=32):
    info = MultibootInfo(
        flags=InfoFlag.MEM_MAP,
        mmap_addr=0x9000,
        mmap_length=24,
        memory_map=[MemoryMapEntry(BASE, pages * PAGE_SIZE, MemoryType.AVAILABLE)],
    )
    pmm = BuddyAllocator(info, reserved_top=BASE)
    memory = PhysicalMemory(pages * PAGE_SIZE, BASE)
    return pmm, memory


class RecordingAddressSpace:
    def __init__(self):
        self.unmapped = []

    def unmap(self, va):
        self.unmapped.append(va)


@pytest.fixture
def env():
    return make_env()


@pytest.fixture
def heap(env):
    pmm, memory = env
    return Heap(pmm, memory)


def test_zero_size_returns_none(heap):
    assert heap.kmalloc(0) is None
    assert heap.kmalloc_guarded(0) is None


def test_negative_size_rejected(heap):
    with pytest.raises(ValueError):
        heap.kmalloc(-1)


def test_small_objects_are_adjacent_blocks(heap):
    a = heap.kmalloc(1)
    b = heap.kmalloc(1)
    assert b - a == BLOCK_SIZE


def test_box_is_released_when_empty(env):
    pmm, memory = env
    heap = Heap(pmm, memory)
    box_page = pmm.last_used_page()
    assert box_page.is_free is False
    p = heap.kmalloc(64)
    heap.kfree(p, 64)
    assert heap.box_count() == 0
    assert box_page.is_free
    heap.kmalloc(64)
    assert heap.box_count() == 1


def test_full_box_creates_another(heap):
    ptrs = [heap.kmalloc(1) for _ in range(BLOCKS_PER_BOX)]
    assert heap.box_count() == 1
    assert len(set(ptrs)) == BLOCKS_PER_BOX
    heap.kmalloc(1)
    assert heap.box_count() == 2


def test_kcalloc_zeroes(heap):
    p = heap.kmalloc(64)
    heap.memory.memset(p, 0xAA, 64)
    heap.kfree(p, 64)
    q = heap.kcalloc(16, 4)
    assert heap.memory.read(q, 64) == bytes(64)


def test_krealloc_preserves_contents(heap):
    p = heap.kmalloc(32)
    heap.memory.write(p, bytes(range(32)))
    q = heap.krealloc(p, 128, 32)
    assert heap.memory.read(q, 32) == bytes(range(32))


def test_krealloc_shrink_keeps_prefix(heap):
    p = heap.kmalloc(64)
    data = bytes(range(100, 164))
    heap.memory.write(p, data)
    q = heap.krealloc(p, 16, 64)
    assert heap.memory.read(q, 16) == data[:16]


def test_krealloc_null_and_zero(heap):
    p = heap.krealloc(None, 40, 0)
    heap.memory.write(p, b"x" * 40)
    assert heap.memory.read(p, 40) == b"x" * 40
    assert heap.krealloc(p, 0, 40) is None
    with pytest.raises(ValueError):
        heap.kfree(p, 40)


def test_kfree_unknown_pointer(heap):
    with pytest.raises(ValueError):
        heap.kfree(BASE + 0x123, 8)


def test_kfree_null_is_ignored(heap):
    heap.kfree(None, 8)
    assert heap.box_count() == 1


def test_large_allocation_is_page_backed(env):
    pmm, memory = env
    heap = Heap(pmm, memory)
    ptr = heap.kmalloc(PAGE_SIZE * 3 + 100)
    page = ptr - OBJECT_ALIGN
    assert page % PAGE_SIZE == 0
    assert pmm.is_valid_addr(page)
    assert pmm.phys_to_page(page).is_free is False
    heap.kfree(ptr, PAGE_SIZE * 3 + 100)
    assert pmm.phys_to_page(page).is_free


def test_page_sized_request_does_not_fit_a_box(heap):
    with pytest.raises(OutOfMemoryError):
        heap.kmalloc(PAGE_SIZE)
    assert heap.box_count() == 1


def test_out_of_memory(heap):
    with pytest.raises(OutOfMemoryError):
        heap.kmalloc(PAGE_SIZE * 200)


def test_guarded_allocation_unmaps_guard(env):
    pmm, memory = env
    space = RecordingAddressSpace()
    heap = Heap(pmm, memory, space)
    ptr = heap.kmalloc_guarded(100)
    base = ptr - GUARDED_HEADER_SIZE
    assert space.unmapped == [base + PAGE_SIZE]
    heap.kfree_guarded(ptr)
    with pytest.raises(ValueError):
        heap.kfree_guarded(ptr)


def test_memtest_passes(heap):
    assert heap.memtest() is True