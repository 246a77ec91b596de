"""SQLAlchemy models backing the reference repositories and the SQL cache."""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class DocumentRow(Base):
    """One version of a versioned, content-hashed document of record."""

    __tablename__ = "documents"
    __table_args__ = (UniqueConstraint("doc_type", "doc_id", "version", name="uq_document_version"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    doc_type = Column(String(32), nullable=False, index=True)  # DocType value
    doc_id = Column(String(128), nullable=False, index=True)
    version = Column(String(64), nullable=False, default="")
    hash = Column(String(64), nullable=False, default="")
    doc = Column(JSON, nullable=False, default=dict)
    is_active = Column(Boolean, default=False)
    scope = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class GameRow(Base):
    """Persisted game state. ``version`` is bumped on every committed turn."""

    __tablename__ = "games"

    id = Column(String(64), primary_key=True)
    world_ref = Column(String(200), nullable=False)
    adventure_ref = Column(String(200), nullable=False)
    scenario_ref = Column(String(200), nullable=True)
    ruleset_ref = Column(String(200), nullable=True)
    locale = Column(String(16), default="en-US")
    player_id = Column(String(64), nullable=True)
    turn_count = Column(Integer, default=0, nullable=False)
    version = Column(Integer, default=0, nullable=False)
    state = Column(JSON, nullable=False, default=dict)  # GameState.model_dump()
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SessionRow(Base):
    __tablename__ = "sessions"

    session_id = Column(String(64), primary_key=True)
    game_id = Column(String(64), ForeignKey("games.id"), nullable=False)
    player_id = Column(String(64), nullable=True)
    locale = Column(String(16), nullable=True)
    ruleset_ref = Column(String(200), nullable=True)


class CacheEntryRow(Base):
    """Cache entry with expiry (unix timestamps)."""

    __tablename__ = "cache_entries"

    cache_key = Column(String(512), primary_key=True)
    data = Column(Text, nullable=False)  # JSON blob
    created_at = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=False, index=True)
