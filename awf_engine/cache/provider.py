"""
Cache providers for resolved documents and compacted slices.

Providers are constructed by the host and injected into the assembler;
nothing here keeps module-level state. Values are deep-copied on the
way in and out because callers mutate bundle dicts in place.
"""

import copy
import fnmatch
import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable

from ..enums import DocType

logger = logging.getLogger(__name__)

DOCUMENT_TTL_SEC = 3600
SLICE_TTL_SEC = 1800


class CacheProvider(ABC):
    """Async key/value store with TTL and glob-style key listing."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_sec: float | None = None) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    @abstractmethod
    async def keys(self, pattern: str | None = None) -> list[str]:
        pass

    @abstractmethod
    async def clear(self) -> None:
        pass


@dataclass
class _Entry:
    value: Any
    expires_at: float


class InMemoryCacheProvider(CacheProvider):
    """Bounded LRU cache with per-entry TTL.

    Usage:
        cache = InMemoryCacheProvider(max_size=1000, default_ttl_sec=3600)
        await cache.set("awf:world:w1:v1:abc", doc, ttl_sec=DOCUMENT_TTL_SEC)
    """

    def __init__(
        self,
        max_size: int = 1000,
        default_ttl_sec: float = DOCUMENT_TTL_SEC,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.default_ttl_sec = default_ttl_sec
        self._clock = clock
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            self.misses += 1
            logger.debug(f"[Cache] Expired: {key}")
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return copy.deepcopy(entry.value)

    async def set(self, key: str, value: Any, ttl_sec: float | None = None) -> None:
        ttl = self.default_ttl_sec if ttl_sec is None else ttl_sec
        self._entries[key] = _Entry(value=copy.deepcopy(value), expires_at=self._clock() + ttl)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            self.evictions += 1
            logger.debug(f"[Cache] Evicted LRU entry: {evicted}")

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def keys(self, pattern: str | None = None) -> list[str]:
        self._purge_expired()
        if not pattern:
            return list(self._entries.keys())
        return [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]

    async def clear(self) -> None:
        self._entries.clear()

    def size(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, int]:
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
        }

    def _purge_expired(self) -> None:
        now = self._clock()
        for key in [k for k, e in self._entries.items() if now >= e.expires_at]:
            del self._entries[key]


# ---------------------------------------------------------------------------
# Key construction
# ---------------------------------------------------------------------------

class CacheKeyBuilder:
    """Deterministic cache keys. The content hash is always the last segment
    of document keys, so an edited document never hits a stale entry."""

    PREFIX = "awf"

    @classmethod
    def document(cls, doc_type: DocType, doc_id: str, version: str, content_hash: str) -> str:
        return f"{cls.PREFIX}:{doc_type}:{doc_id}:{version}:{content_hash}"

    @classmethod
    def core(cls, doc_id: str, version: str, content_hash: str) -> str:
        return cls.document(DocType.CORE, doc_id, version, content_hash)

    @classmethod
    def world(cls, doc_id: str, version: str, content_hash: str) -> str:
        return cls.document(DocType.WORLD, doc_id, version, content_hash)

    @classmethod
    def adventure(cls, doc_id: str, version: str, content_hash: str) -> str:
        return cls.document(DocType.ADVENTURE, doc_id, version, content_hash)

    @classmethod
    def adventure_start(cls, doc_id: str, content_hash: str) -> str:
        return f"{cls.PREFIX}:{DocType.ADVENTURE_START}:{doc_id}:{content_hash}"

    @classmethod
    def slice(cls, doc_id: str, version: str, content_hash: str, slice_name: str) -> str:
        return f"{cls.PREFIX}:slice:{doc_id}:{version}:{content_hash}:{slice_name}"

    @classmethod
    def scene_policy(cls, scene: str) -> str:
        return f"{cls.PREFIX}:scene:{scene}:policy"

    @classmethod
    def extract_hash(cls, key: str) -> str | None:
        """Hash segment of a document key, None for keys this builder didn't make."""
        parts = key.split(":")
        if len(parts) < 4 or parts[0] != cls.PREFIX:
            return None
        if parts[1] == "slice":
            return parts[4] if len(parts) >= 6 else None
        if parts[1] == "scene":
            return None
        return parts[-1]


async def clear_document_cache(cache: CacheProvider, doc_type: DocType, doc_id: str) -> int:
    """Drop every cached version of one document. Returns the number of keys removed."""
    pattern = f"{CacheKeyBuilder.PREFIX}:{doc_type}:{doc_id}:*"
    keys = await cache.keys(pattern)
    for key in keys:
        await cache.delete(key)
    if keys:
        logger.info(f"[Cache] Invalidated {len(keys)} entries for {doc_type}:{doc_id}")
    return len(keys)
