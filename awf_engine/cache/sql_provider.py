"""
SQLAlchemy-backed cache provider.

Lets several worker processes share compacted documents and slices
through the database. Entries carry an absolute expiry; expired rows are
deleted lazily on read and in bulk by ``clear_expired``.
"""

import asyncio
import fnmatch
import json
import logging
import time
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..db.models import CacheEntryRow
from ..db.session import session_scope
from .provider import DOCUMENT_TTL_SEC, CacheProvider

logger = logging.getLogger(__name__)


class SqlCacheProvider(CacheProvider):
    """Cache reads and writes never fail the caller: errors are logged and
    treated as a miss / dropped write."""

    def __init__(
        self,
        session_factory: sessionmaker,
        default_ttl_sec: float = DOCUMENT_TTL_SEC,
        clock: Callable[[], float] = time.time,
    ):
        self._factory = session_factory
        self.default_ttl_sec = default_ttl_sec
        self._clock = clock

    def _get_sync(self, key: str) -> Any | None:
        now = self._clock()
        try:
            with session_scope(self._factory) as db:
                entry = db.get(CacheEntryRow, key)
                if entry is None:
                    return None
                if now >= entry.expires_at:
                    # Expired: delete and return miss
                    db.delete(entry)
                    logger.debug(f"[Cache] Expired: {key}")
                    return None
                return json.loads(entry.data)
        except SQLAlchemyError as e:
            logger.warning(f"[Cache] Read error for {key}: {e}")
            return None

    def _set_sync(self, key: str, value: Any, ttl_sec: float) -> None:
        now = self._clock()
        try:
            with session_scope(self._factory) as db:
                db.merge(CacheEntryRow(
                    cache_key=key,
                    data=json.dumps(value, ensure_ascii=False, default=str),
                    created_at=now,
                    expires_at=now + ttl_sec,
                ))
        except SQLAlchemyError as e:
            logger.warning(f"[Cache] Write error for {key}: {e}")

    def _keys_sync(self, pattern: str | None) -> list[str]:
        now = self._clock()
        with session_scope(self._factory) as db:
            rows = db.query(CacheEntryRow.cache_key).filter(CacheEntryRow.expires_at > now).all()
        keys = [r[0] for r in rows]
        if pattern:
            keys = [k for k in keys if fnmatch.fnmatchcase(k, pattern)]
        return keys

    async def get(self, key: str) -> Any | None:
        return await asyncio.to_thread(self._get_sync, key)

    async def set(self, key: str, value: Any, ttl_sec: float | None = None) -> None:
        ttl = self.default_ttl_sec if ttl_sec is None else ttl_sec
        await asyncio.to_thread(self._set_sync, key, value, ttl)

    async def delete(self, key: str) -> None:
        def _delete() -> None:
            with session_scope(self._factory) as db:
                db.query(CacheEntryRow).filter(CacheEntryRow.cache_key == key).delete()
        await asyncio.to_thread(_delete)

    async def keys(self, pattern: str | None = None) -> list[str]:
        return await asyncio.to_thread(self._keys_sync, pattern)

    async def clear(self) -> None:
        def _clear() -> None:
            with session_scope(self._factory) as db:
                db.query(CacheEntryRow).delete()
        await asyncio.to_thread(_clear)

    def clear_expired(self) -> int:
        """Remove all expired entries. Returns count of deleted rows."""
        now = self._clock()
        with session_scope(self._factory) as db:
            count = db.query(CacheEntryRow).filter(CacheEntryRow.expires_at <= now).delete()
        if count:
            logger.info(f"[Cache] Cleared {count} expired entries")
        return count
