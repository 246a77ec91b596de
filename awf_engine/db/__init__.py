"""Persistence: SQLAlchemy models, session factory, repositories and the game store."""

from .repositories import (
    DocumentRepository,
    GameStore,
    InMemoryDocumentRepository,
    InMemoryGameStore,
    Repositories,
    SqlDocumentRepository,
    SqlGameStore,
    hash_document,
)
from .session import init_db, make_engine, make_session_factory, session_scope

__all__ = [
    "DocumentRepository", "GameStore", "InMemoryDocumentRepository", "InMemoryGameStore",
    "Repositories", "SqlDocumentRepository", "SqlGameStore", "hash_document",
    "init_db", "make_engine", "make_session_factory", "session_scope",
]
