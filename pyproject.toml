[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "floppamem"
version = "0.1.0"
description = "A simulated 32-bit x86 kernel memory subsystem: multiboot parsing, GDT encoding, buddy page allocator, page cache, early allocator and kernel heap"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "kernel",
    "memory",
    "buddy-allocator",
    "heap",
    "page-cache",
    "multiboot",
    "gdt",
    "simulation",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Operating System Kernels",
    "Topic :: Education",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["floppamem"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
