"""Cache providers and key construction."""

from .provider import (
    DOCUMENT_TTL_SEC,
    SLICE_TTL_SEC,
    CacheKeyBuilder,
    CacheProvider,
    InMemoryCacheProvider,
    clear_document_cache,
)
from .sql_provider import SqlCacheProvider

__all__ = [
    "DOCUMENT_TTL_SEC", "SLICE_TTL_SEC", "CacheKeyBuilder", "CacheProvider",
    "InMemoryCacheProvider", "SqlCacheProvider", "clear_document_cache",
]
