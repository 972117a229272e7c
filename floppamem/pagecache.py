"""Page cache indexed by a byte-wise radix tree with least-recently-used eviction."""

from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional

# The tree descends one byte of the key per level, from byte 7 down to byte 1.
# Byte 0 is not used, so keys that differ only in their low byte share a slot.
_LEVELS = range(7, 0, -1)


def _key_parts(key: int) -> list[int]:
    return [(key >> (level * 8)) & 0xFF for level in _LEVELS]


@dataclass(eq=False)
class CacheEntry:
    """A cached page: its physical address, cache index, state and users."""

    phys: int
    idx: int
    dirty: bool = False
    refcount: int = 1


class _Node:
    __slots__ = ("entry", "children")

    def __init__(self) -> None:
        self.entry: Any = None
        self.children: dict[int, _Node] = {}


class RadixTree:
    """Maps 64-bit keys to entries through seven levels of byte-keyed nodes.

    ``release`` is called with every entry the tree drops: when it is
    replaced, deleted or cleared.
    """

    def __init__(self, release: Optional[Callable[[Any], None]] = None) -> None:
        self._release = release
        self._root: Optional[_Node] = None

    def _drop(self, entry: Any) -> None:
        if entry is not None and self._release is not None:
            self._release(entry)

    def get(self, key: int) -> Any:
        """Return the entry stored under ``key``, or None."""
        node = self._root
        if node is None:
            return None
        for part in _key_parts(key):
            node = node.children.get(part)
            if node is None:
                return None
        return node.entry

    def set(self, key: int, entry: Any) -> None:
        """Store ``entry`` under ``key``, releasing any entry it replaces."""
        if self._root is None:
            self._root = _Node()
        node = self._root
        for part in _key_parts(key):
            child = node.children.get(part)
            if child is None:
                child = node.children[part] = _Node()
            node = child
        if node.entry is not None:
            self._drop(node.entry)
        node.entry = entry

    def delete(self, key: int) -> bool:
        """Release the entry under ``key`` and prune emptied nodes."""
        if self._root is None:
            return False
        path: list[tuple[Optional[int], _Node]] = [(None, self._root)]
        node = self._root
        for part in _key_parts(key):
            child = node.children.get(part)
            if child is None:
                return False
            path.append((part, child))
            node = child
        if node.entry is None:
            return False

        entry, node.entry = node.entry, None
        self._drop(entry)

        for (_, parent), (part, child) in zip(reversed(path[:-1]), reversed(path[1:])):
            if child.entry is not None or child.children:
                break
            del parent.children[part]

        root = self._root
        if root.entry is None and not root.children:
            self._root = None
        return True

    def clear(self) -> None:
        """Release every entry and drop all nodes."""
        if self._root is None:
            return
        stack = [self._root]
        self._root = None
        while stack:
            node = stack.pop()
            stack.extend(node.children.values())
            self._drop(node.entry)
            node.entry = None
            node.children.clear()

    def is_empty(self) -> bool:
        """Whether the tree holds no nodes at all."""
        return self._root is None


class PageCache:
    """Cache of physical pages keyed by index, backed by a page allocator.

    ``pmm`` needs ``alloc_page()`` and ``free_page(addr)``.
    """

    def __init__(self, pmm: Any) -> None:
        self._pmm = pmm
        self._tree = RadixTree(self._release_entry)
        # first item is the least recently used, last the most recent
        self._lru: "OrderedDict[CacheEntry, None]" = OrderedDict()
        self.page_count = 0
        self._lock = threading.Lock()

    def _release_entry(self, entry: CacheEntry) -> None:
        self._pmm.free_page(entry.phys)

    def __len__(self) -> int:
        return self.page_count

    def get(self, idx: int) -> int:
        """Return the page cached for ``idx``, allocating one if needed."""
        with self._lock:
            entry = self._tree.get(idx)
            if entry is not None:
                entry.refcount += 1
                self._lru.move_to_end(entry)
                return entry.phys

            page = self._pmm.alloc_page()
            entry = CacheEntry(phys=page, idx=idx)
            self._tree.set(idx, entry)
            self._lru[entry] = None
            self.page_count += 1
            return page

    def entry(self, idx: int) -> Optional[CacheEntry]:
        """Return the cache entry for ``idx``, or None."""
        with self._lock:
            return self._tree.get(idx)

    def mark_dirty(self, idx: int) -> None:
        """Flag the page cached for ``idx`` as modified."""
        with self._lock:
            entry = self._tree.get(idx)
            if entry is not None:
                entry.dirty = True

    def release(self, idx: int) -> None:
        """Drop one reference to the page cached for ``idx``."""
        with self._lock:
            entry = self._tree.get(idx)
            if entry is not None and entry.refcount > 0:
                entry.refcount -= 1

    def _evict(self, entry: CacheEntry) -> None:
        del self._lru[entry]
        self._tree.delete(entry.idx)
        self.page_count -= 1

    def evict_one(self) -> bool:
        """Evict the least recently used page if nobody holds it."""
        with self._lock:
            if not self._lru:
                return False
            victim = next(iter(self._lru))
            if victim.refcount > 0:
                return False
            self._evict(victim)
            return True

    def remove(self, idx: int) -> bool:
        """Remove the page cached for ``idx`` if nobody holds it."""
        with self._lock:
            entry = self._tree.get(idx)
            if entry is None or entry.refcount > 0:
                return False
            self._evict(entry)
            return True

    def free_all(self) -> None:
        """Release every cached page, whatever its reference count."""
        with self._lock:
            self._tree.clear()
            self._lru.clear()
            self.page_count = 0