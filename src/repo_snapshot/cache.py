"""Content-addressed cache of transformer output.

Entries are keyed by ``(transformer identity, content hash)`` and carry the
hash they were computed from; a lookup never returns an entry whose hash
differs from the one asked for.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import time
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from repo_snapshot.logging import logger


class CacheEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    content: str
    transformer: str
    content_hash: str
    created_at: float = Field(default_factory=time.time)


class CacheStore(Protocol):
    async def get(self, key: str) -> CacheEntry | None: ...

    async def set(self, key: str, entry: CacheEntry) -> None: ...

    async def clear(self) -> None: ...


class MemoryCacheStore:
    """Process-local store, lost at exit."""

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}

    async def get(self, key: str) -> CacheEntry | None:
        return self._entries.get(key)

    async def set(self, key: str, entry: CacheEntry) -> None:
        self._entries[key] = entry

    async def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class FileCacheStore:
    """One JSON file per entry under ``directory``, expired after ``ttl`` seconds.

    Unreadable or expired files count as misses and are removed.
    """

    def __init__(self, directory: Path, ttl: float = 86_400) -> None:
        self.directory = Path(directory)
        self.ttl = ttl

    def _path_for(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.directory / digest[:2] / f"{digest}.json"

    def _read(self, key: str) -> CacheEntry | None:
        path = self._path_for(key)
        if not path.is_file():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            entry = CacheEntry.model_validate(payload["entry"])
            expires_at = float(payload.get("expires_at", 0))
        except (OSError, ValueError, KeyError, TypeError, ValidationError) as e:
            logger.debug("dropping unreadable cache file", path=str(path), error=str(e))
            path.unlink(missing_ok=True)
            return None
        if self.ttl and expires_at < time.time():
            path.unlink(missing_ok=True)
            return None
        return entry

    def _write(self, key: str, entry: CacheEntry) -> None:
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"key": key, "expires_at": time.time() + self.ttl, "entry": entry.model_dump()}
        tmp = path.with_suffix(f".{os.getpid()}.tmp")
        tmp.write_text(json.dumps(payload), encoding="utf-8")
        tmp.replace(path)

    async def get(self, key: str) -> CacheEntry | None:
        return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, entry: CacheEntry) -> None:
        await asyncio.to_thread(self._write, key, entry)

    async def clear(self) -> None:
        def _clear() -> None:
            for path in self.directory.glob("*/*.json"):
                path.unlink(missing_ok=True)

        await asyncio.to_thread(_clear)


class TransformCache:
    """Cache front end used by the transform stage."""

    def __init__(self, store: CacheStore | None = None) -> None:
        self.store: CacheStore = store if store is not None else MemoryCacheStore()
        self.hits = 0
        self.misses = 0
        self.writes = 0

    @staticmethod
    def make_key(identity: str, content_hash: str) -> str:
        return f"{identity}:{content_hash}"

    async def get(self, identity: str, content_hash: str) -> CacheEntry | None:
        """Return the entry for this identity and hash, or None."""
        entry = await self.store.get(self.make_key(identity, content_hash))
        if entry is None or entry.content_hash != content_hash:
            self.misses += 1
            return None
        self.hits += 1
        return entry

    async def set(self, identity: str, content_hash: str, content: str, transformer: str) -> CacheEntry:
        entry = CacheEntry(content=content, transformer=transformer, content_hash=content_hash)
        await self.store.set(self.make_key(identity, content_hash), entry)
        self.writes += 1
        return entry

    async def clear(self) -> None:
        await self.store.clear()

    def stats(self) -> dict[str, int]:
        return {"hits": self.hits, "misses": self.misses, "writes": self.writes}
