"""File-backed memory store.

Paths are relative, slash-separated keys such as ``preferences/alice.md``.
Every path is resolved inside the store root; anything that would escape it
is rejected.
"""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import Protocol, runtime_checkable

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)


class MemoryPathError(ValueError):
    """The path is empty, absolute, or escapes the store root."""


class MemoryNotFoundError(LookupError):
    """Nothing is stored at the path."""


class MemoryExistsError(FileExistsError):
    """``create`` was asked to overwrite an existing entry."""


@runtime_checkable
class MemoryStore(Protocol):
    async def view(self, path: str) -> str: ...

    async def create(self, path: str, content: str) -> str: ...

    async def update(self, path: str, content: str) -> str: ...

    async def delete(self, path: str) -> str: ...


class FileMemoryStore:
    """Memory entries stored as UTF-8 files under ``root``."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        rel = PurePosixPath(path.strip().lstrip("/")) if path.strip() else None
        if rel is None or rel.is_absolute() or ".." in rel.parts:
            raise MemoryPathError(f"Invalid memory path: {path!r}")
        full = (self.root / rel).resolve()
        if full != self.root and self.root not in full.parents:
            raise MemoryPathError(f"Path escapes the memory root: {path!r}")
        return full

    async def view(self, path: str) -> str:
        """Return a file's content, or a listing if ``path`` is a directory."""
        full = self.root if path.strip() in ("", "/", ".") else self._resolve(path)
        if await aiofiles.os.path.isdir(full):
            entries = []
            for name in sorted(await aiofiles.os.listdir(full)):
                suffix = "/" if await aiofiles.os.path.isdir(full / name) else ""
                entries.append(f"{name}{suffix}")
            return "\n".join(entries)
        if not await aiofiles.os.path.isfile(full):
            raise MemoryNotFoundError(f"No memory at {path!r}")
        async with aiofiles.open(full, "r", encoding="utf-8") as f:
            return await f.read()

    async def create(self, path: str, content: str) -> str:
        full = self._resolve(path)
        if await aiofiles.os.path.exists(full):
            raise MemoryExistsError(f"Memory already exists at {path!r}")
        await aiofiles.os.makedirs(full.parent, exist_ok=True)
        async with aiofiles.open(full, "w", encoding="utf-8") as f:
            await f.write(content)
        logger.info("Created memory %s (%d chars)", path, len(content))
        return content

    async def update(self, path: str, content: str) -> str:
        full = self._resolve(path)
        if not await aiofiles.os.path.isfile(full):
            raise MemoryNotFoundError(f"No memory at {path!r}")
        async with aiofiles.open(full, "w", encoding="utf-8") as f:
            await f.write(content)
        logger.info("Updated memory %s (%d chars)", path, len(content))
        return content

    async def delete(self, path: str) -> str:
        """Delete an entry and return what it contained."""
        full = self._resolve(path)
        if not await aiofiles.os.path.isfile(full):
            raise MemoryNotFoundError(f"No memory at {path!r}")
        async with aiofiles.open(full, "r", encoding="utf-8") as f:
            content = await f.read()
        await aiofiles.os.remove(full)
        logger.info("Deleted memory %s", path)
        return content
