# floppamem

A self-contained model of the memory subsystem of a small 32-bit x86 kernel.
It runs entirely in-process on plain Python objects and an in-memory byte
buffer. You can exercise, inspect and test the allocators without booting
anything.

## Modules

- `floppamem.memory`
  - `PhysicalMemory(size, base=0)` is a zero-filled, byte-addressable range.
  - It provides `read`, `write`, `read_u32` and `write_u32`, which use little-endian words.
  - It also provides `memset`, `memcmp`, `memcpy` and `memmove`.
  - An access outside the range raises `MemoryAccessError`. So does passing address 0 to the copy and compare routines.
- `floppamem.multiboot`
  - `MultibootInfo` covers the multiboot info structure and has `from_bytes` and `to_bytes`.
  - `MemoryMapEntry`, `Module`, and the `InfoFlag` and `MemoryType` enums describe its contents.
  - `parse_memory_map` and `encode_memory_map` read and write the binary memory-map format.
  - `describe_multiboot_info` returns a readable report as a list of lines.
- `floppamem.gdt`
  - `encode_descriptor` packs a 64-bit segment descriptor.
  - `GlobalDescriptorTable` holds the flat kernel and user segments plus a TSS slot.
  - It offers `set_gate`, `gdtr(base_address)` for the six-byte GDTR operand, and `to_bytes`.
- `floppamem.pmm`
  - `BuddyAllocator(info, reserved_top=0)` builds per-order free lists from the usable regions of a `MultibootInfo` memory map.
  - Usable means available memory at or above 1 MiB.
  - It provides `alloc_pages(order, count)`, `free_pages`, `alloc_page` and `free_page`.
  - For inspection there are `memory_size`, `page_count`, `free_memory_size`, `last_used_page`, `page_index`, `phys_to_page` and `is_valid_addr`.
  - When no block fits, allocation raises `OutOfMemoryError`.
  - `count_usable_pages` and `align_up` are also available.
- `floppamem.pagecache`
  - `PageCache(pmm)` caches pages by 64-bit index, with reference counts, dirty flags and least-recently-used eviction.
  - Its methods are `get`, `entry`, `mark_dirty`, `release`, `evict_one`, `remove` and `free_all`.
  - It is backed by `RadixTree`, which descends one key byte per level.
- `floppamem.early`
  - `EarlyAllocator(memory)` is a first-fit chunk allocator for boot time.
  - Call `bootstrap` with the memory map entries, then `init`. `init` reserves one metadata page and nine contiguous pool pages.
  - Then use `alloc`, `free` (which merges free neighbours), `destroy`, and `chunks` to inspect the pool.
- `floppamem.heap`
  - `Heap(pmm, memory, address_space=None)` provides `kmalloc`, `kfree`, `kcalloc` and `krealloc`.
  - Small objects live in page-sized boxes of 32-byte blocks.
  - Objects larger than a page come straight from the page allocator.
  - `kmalloc_guarded` and `kfree_guarded` add a trailing guard page. If an `address_space` with an `unmap(va)` method is given, the guard page is unmapped through it.
  - `memtest` runs a mixed-size self check, and `box_count` reports the number of boxes.

## Example

```python
from floppamem.heap import Heap
from floppamem.memory import PhysicalMemory
from floppamem.multiboot import InfoFlag, MemoryMapEntry, MemoryType, MultibootInfo
from floppamem.pmm import BuddyAllocator

info = MultibootInfo(
    flags=InfoFlag.MEM_MAP,
    memory_map=[
        MemoryMapEntry(addr=0x0, length=0x9F000, type=MemoryType.AVAILABLE),
        MemoryMapEntry(addr=0x100000, length=0x400000, type=MemoryType.AVAILABLE),
    ],
)
pmm = BuddyAllocator(info, reserved_top=0x100000)
memory = PhysicalMemory(0x500000)

heap = Heap(pmm, memory)
ptr = heap.kmalloc(64)
memory.write(ptr, b"hello")
print(memory.read(ptr, 5))
heap.kfree(ptr, 64)
print(heap.memtest())
```

## What it does not do

- The package has no page-table builder.
- It has no virtual memory manager and no per-process address spaces.
- It does not randomise address placement.
- `Heap` only uses an address space object that you pass in yourself.
- Nothing here touches real hardware or loads a descriptor table. `GlobalDescriptorTable` only produces bytes.

## Installing and testing

```
pip install floppamem
pip install "floppamem[test]"
pytest
```