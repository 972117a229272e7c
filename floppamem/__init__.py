"""Simulated 32-bit x86 kernel memory: multiboot data, GDT, buddy page allocator, page cache, early allocator and heap."""

__version__ = "0.1.0"