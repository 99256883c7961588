"""Persistent memory: a path-addressed read/write store."""

from conductor.memory.store import (
    FileMemoryStore,
    MemoryExistsError,
    MemoryNotFoundError,
    MemoryPathError,
    MemoryStore,
)

__all__ = [
    "FileMemoryStore",
    "MemoryExistsError",
    "MemoryNotFoundError",
    "MemoryPathError",
    "MemoryStore",
]
