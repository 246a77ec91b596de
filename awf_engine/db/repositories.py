"""
Document repositories and the game store.

The assembler only needs "read document by id+version" and the committer
only needs "write game state with a version check"; both are expressed
as small abstract interfaces with an in-memory implementation (tests,
CLI fixtures) and a SQLAlchemy one.
"""

import asyncio
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import sessionmaker

from ..enums import DocType
from ..errors import StaleStateError
from ..models.documents import SessionRecord, VersionedDocument, parse_ref
from ..models.game_state import GameRecord, GameState
from .models import DocumentRow, GameRow, SessionRow
from .session import session_scope

logger = logging.getLogger(__name__)


def hash_document(doc: dict[str, Any]) -> str:
    """Stable content hash used when a document is stored without one."""
    payload = json.dumps(doc, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


# ---------------------------------------------------------------------------
# Document repositories
# ---------------------------------------------------------------------------

class DocumentRepository(ABC):
    """Read side of one document type."""

    @abstractmethod
    async def get_by_id_version(self, doc_id: str, version: str | None = None) -> VersionedDocument | None:
        """Exact version, or the latest version when ``version`` is None."""
        pass

    @abstractmethod
    async def get_active(self, scope: str | None = None) -> VersionedDocument | None:
        pass

    @abstractmethod
    async def list_by_ids(self, refs: list[str]) -> list[VersionedDocument]:
        """Resolve ``id`` / ``id@version`` refs in order, skipping misses."""
        pass


class InMemoryDocumentRepository(DocumentRepository):

    def __init__(self, docs: list[VersionedDocument] | None = None):
        self._docs: list[VersionedDocument] = []
        self._active: dict[str | None, tuple[str, str]] = {}
        for doc in docs or []:
            self.add(doc)

    def add(self, doc: VersionedDocument | dict[str, Any], active: bool = False, scope: str | None = None) -> VersionedDocument:
        if isinstance(doc, dict):
            doc = VersionedDocument.model_validate(doc)
        if not doc.hash:
            doc = doc.model_copy(update={"hash": hash_document(doc.doc)})
        self._docs = [d for d in self._docs if not (d.id == doc.id and d.version == doc.version)]
        self._docs.append(doc)
        if active:
            self._active[scope] = (doc.id, doc.version)
        return doc

    async def get_by_id_version(self, doc_id: str, version: str | None = None) -> VersionedDocument | None:
        matches = [d for d in self._docs if d.id == doc_id and (version is None or d.version == version)]
        if not matches:
            return None
        return matches[-1].model_copy(deep=True)

    async def get_active(self, scope: str | None = None) -> VersionedDocument | None:
        key = self._active.get(scope) or self._active.get(None)
        if key is None:
            return None
        return await self.get_by_id_version(*key)

    async def list_by_ids(self, refs: list[str]) -> list[VersionedDocument]:
        found = []
        for ref in refs:
            doc_id, version = parse_ref(ref)
            doc = await self.get_by_id_version(doc_id, version)
            if doc is not None:
                found.append(doc)
        return found


class SqlDocumentRepository(DocumentRepository):
    """Documents of one DocType in the ``documents`` table."""

    def __init__(self, session_factory: sessionmaker, doc_type: DocType):
        self._factory = session_factory
        self.doc_type = doc_type

    @staticmethod
    def _to_model(row: DocumentRow) -> VersionedDocument:
        return VersionedDocument(id=row.doc_id, version=row.version, hash=row.hash, doc=row.doc or {})

    def _get_sync(self, doc_id: str, version: str | None) -> VersionedDocument | None:
        with session_scope(self._factory) as db:
            query = db.query(DocumentRow).filter(
                DocumentRow.doc_type == str(self.doc_type),
                DocumentRow.doc_id == doc_id,
            )
            if version is not None:
                query = query.filter(DocumentRow.version == version)
            row = query.order_by(DocumentRow.id.desc()).first()
            return self._to_model(row) if row else None

    def _active_sync(self, scope: str | None) -> VersionedDocument | None:
        with session_scope(self._factory) as db:
            query = db.query(DocumentRow).filter(
                DocumentRow.doc_type == str(self.doc_type),
                DocumentRow.is_active.is_(True),
            )
            if scope is not None:
                query = query.filter(DocumentRow.scope == scope)
            row = query.order_by(DocumentRow.id.desc()).first()
            return self._to_model(row) if row else None

    async def get_by_id_version(self, doc_id: str, version: str | None = None) -> VersionedDocument | None:
        return await asyncio.to_thread(self._get_sync, doc_id, version)

    async def get_active(self, scope: str | None = None) -> VersionedDocument | None:
        return await asyncio.to_thread(self._active_sync, scope)

    async def list_by_ids(self, refs: list[str]) -> list[VersionedDocument]:
        def _list() -> list[VersionedDocument]:
            return [doc for doc in (self._get_sync(*parse_ref(ref)) for ref in refs) if doc is not None]
        return await asyncio.to_thread(_list)

    def put(self, doc: VersionedDocument, active: bool = False, scope: str | None = None) -> None:
        """Insert or replace one version (blocking; used by seeding tools and tests)."""
        with session_scope(self._factory) as db:
            row = db.query(DocumentRow).filter(
                DocumentRow.doc_type == str(self.doc_type),
                DocumentRow.doc_id == doc.id,
                DocumentRow.version == doc.version,
            ).first()
            if row is None:
                row = DocumentRow(doc_type=str(self.doc_type), doc_id=doc.id, version=doc.version)
                db.add(row)
            row.hash = doc.hash or hash_document(doc.doc)
            row.doc = doc.doc
            row.is_active = active
            row.scope = scope


@dataclass
class Repositories:
    """All document repositories the assembler reads from."""

    core_contracts: DocumentRepository
    rulesets: DocumentRepository
    worlds: DocumentRepository
    adventures: DocumentRepository
    adventure_starts: DocumentRepository
    npcs: DocumentRepository
    injection_maps: DocumentRepository
    scenarios: DocumentRepository

    @classmethod
    def in_memory(cls) -> "Repositories":
        return cls(**{name: InMemoryDocumentRepository() for name in _REPO_DOC_TYPES})

    @classmethod
    def sql(cls, session_factory: sessionmaker) -> "Repositories":
        return cls(**{
            name: SqlDocumentRepository(session_factory, doc_type)
            for name, doc_type in _REPO_DOC_TYPES.items()
        })


_REPO_DOC_TYPES: dict[str, DocType] = {
    "core_contracts": DocType.CORE,
    "rulesets": DocType.RULESET,
    "worlds": DocType.WORLD,
    "adventures": DocType.ADVENTURE,
    "adventure_starts": DocType.ADVENTURE_START,
    "npcs": DocType.NPC,
    "injection_maps": DocType.INJECTION_MAP,
    "scenarios": DocType.SCENARIO,
}


# ---------------------------------------------------------------------------
# Game store (write side)
# ---------------------------------------------------------------------------

class GameStore(ABC):
    """Sessions and game records, with an optimistic version check on save."""

    @abstractmethod
    async def get_session(self, session_id: str) -> SessionRecord | None:
        pass

    @abstractmethod
    async def get_game(self, game_id: str) -> GameRecord | None:
        pass

    @abstractmethod
    async def save_game(self, record: GameRecord, expected_version: int) -> GameRecord:
        """Persist ``record`` if the stored version equals ``expected_version``.

        Returns the stored record with its bumped version. Raises
        StaleStateError when another writer got there first.
        """
        pass

    @abstractmethod
    async def restore(self, record: GameRecord) -> None:
        """Write ``record`` back unconditionally (rollback of a failed commit)."""
        pass


@dataclass
class InMemoryGameStore(GameStore):
    games: dict[str, GameRecord] = field(default_factory=dict)
    sessions: dict[str, SessionRecord] = field(default_factory=dict)

    def put_game(self, record: GameRecord) -> None:
        self.games[record.id] = record.model_copy(deep=True)

    def put_session(self, session: SessionRecord) -> None:
        self.sessions[session.session_id] = session.model_copy(deep=True)

    async def get_session(self, session_id: str) -> SessionRecord | None:
        session = self.sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def get_game(self, game_id: str) -> GameRecord | None:
        game = self.games.get(game_id)
        return game.model_copy(deep=True) if game else None

    async def save_game(self, record: GameRecord, expected_version: int) -> GameRecord:
        current = self.games.get(record.id)
        actual = current.version if current else 0
        if actual != expected_version:
            raise StaleStateError(record.id, expected_version, actual)
        stored = record.model_copy(deep=True, update={"version": expected_version + 1})
        self.games[record.id] = stored
        return stored.model_copy(deep=True)

    async def restore(self, record: GameRecord) -> None:
        self.put_game(record)


class SqlGameStore(GameStore):

    def __init__(self, session_factory: sessionmaker):
        self._factory = session_factory

    @staticmethod
    def _to_record(row: GameRow) -> GameRecord:
        return GameRecord(
            id=row.id,
            world_ref=row.world_ref,
            adventure_ref=row.adventure_ref,
            scenario_ref=row.scenario_ref,
            ruleset_ref=row.ruleset_ref,
            locale=row.locale or "en-US",
            player_id=row.player_id,
            turn_count=row.turn_count or 0,
            version=row.version or 0,
            state=GameState.model_validate(row.state or {}),
        )

    async def get_session(self, session_id: str) -> SessionRecord | None:
        def _get() -> SessionRecord | None:
            with session_scope(self._factory) as db:
                row = db.get(SessionRow, session_id)
                if row is None:
                    return None
                return SessionRecord(
                    session_id=row.session_id,
                    game_id=row.game_id,
                    player_id=row.player_id,
                    locale=row.locale,
                    ruleset_ref=row.ruleset_ref,
                )
        return await asyncio.to_thread(_get)

    async def get_game(self, game_id: str) -> GameRecord | None:
        def _get() -> GameRecord | None:
            with session_scope(self._factory) as db:
                row = db.get(GameRow, game_id)
                return self._to_record(row) if row else None
        return await asyncio.to_thread(_get)

    async def save_game(self, record: GameRecord, expected_version: int) -> GameRecord:
        def _save() -> GameRecord:
            with session_scope(self._factory) as db:
                # Conditional UPDATE: zero rows matched means someone else committed.
                updated = db.query(GameRow).filter(
                    GameRow.id == record.id,
                    GameRow.version == expected_version,
                ).update({
                    GameRow.turn_count: record.turn_count,
                    GameRow.state: record.state.model_dump(mode="json"),
                    GameRow.version: expected_version + 1,
                }, synchronize_session=False)
                if updated == 0:
                    row = db.get(GameRow, record.id)
                    raise StaleStateError(record.id, expected_version, row.version if row else 0)
            return record.model_copy(deep=True, update={"version": expected_version + 1})
        return await asyncio.to_thread(_save)

    async def restore(self, record: GameRecord) -> None:
        await asyncio.to_thread(self.put_game, record)

    def put_game(self, record: GameRecord) -> None:
        with session_scope(self._factory) as db:
            db.merge(GameRow(
                id=record.id,
                world_ref=record.world_ref,
                adventure_ref=record.adventure_ref,
                scenario_ref=record.scenario_ref,
                ruleset_ref=record.ruleset_ref,
                locale=record.locale,
                player_id=record.player_id,
                turn_count=record.turn_count,
                version=record.version,
                state=record.state.model_dump(mode="json"),
            ))

    def put_session(self, session: SessionRecord) -> None:
        with session_scope(self._factory) as db:
            db.merge(SessionRow(
                session_id=session.session_id,
                game_id=session.game_id,
                player_id=session.player_id,
                locale=session.locale,
                ruleset_ref=session.ruleset_ref,
            ))
