"""
Shared test fixtures for the AWF engine test suite.

Provides:
- MockModelProvider: deterministic model stub (no API keys needed)
- In-memory repositories + game store seeded with a small world
- Cache, metrics and prompt fixtures
- SQLite engine / session factory for the SQL implementations
"""

import json
import os
from collections import deque
from typing import Any

import pytest

# Set test environment BEFORE any awf_engine imports
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("OPENAI_API_KEY", "test-key")

from awf_engine.cache.provider import InMemoryCacheProvider
from awf_engine.config import BudgetConfig
from awf_engine.core.assembler import AssemblerDeps, BundleAssembler
from awf_engine.core.orchestrator import TurnOrchestrator
from awf_engine.core.state_transaction import TurnCommitter
from awf_engine.db.models import Base
from awf_engine.db.repositories import InMemoryGameStore, Repositories
from awf_engine.db.session import make_engine, make_session_factory
from awf_engine.llm.provider import ModelProvider, ModelResult, ToolCall
from awf_engine.llm.tools import LoreSliceTool
from awf_engine.metrics.collector import MetricsCollector
from awf_engine.models.documents import SessionRecord, VersionedDocument
from awf_engine.models.game_state import GameRecord, GameState
from awf_engine.prompts.registry import PromptRegistry, SystemPrompts

# ---------------------------------------------------------------------------
# MockModelProvider: deterministic stub
# ---------------------------------------------------------------------------


class MockModelProvider(ModelProvider):
    """Model provider that returns canned replies from a queue.

    Usage:
        provider = MockModelProvider()
        provider.queue_reply({"scn": "a", "txt": "b"})
        result = await provider.infer("system", bundle)
        assert result.json == {"scn": "a", "txt": "b"}

    A queued reply may carry ``tool_calls`` (list of {name, arguments});
    infer_with_tools routes them through the handler like a real provider.
    Queue an Exception instance to make the next call raise it.
    """

    def __init__(self):
        super().__init__(api_key="mock-key", default_model="mock-model")
        self._reply_queue: deque[Any] = deque()
        self._call_history: list[dict[str, Any]] = []
        self.tool_results: list[Any] = []

    # --- Queue helpers ---

    def queue_reply(self, reply: Any, tool_calls: list[dict[str, Any]] | None = None):
        self._reply_queue.append((reply, tool_calls or []))

    def queue_error(self, error: Exception):
        self._reply_queue.append((error, []))

    @property
    def call_history(self) -> list[dict[str, Any]]:
        return self._call_history

    # --- ModelProvider interface ---

    @property
    def name(self) -> str:
        return "mock"

    def get_default_model(self) -> str:
        return "mock-model"

    def _next(self) -> tuple[Any, list[dict[str, Any]]]:
        if not self._reply_queue:
            return {"scn": "mock", "txt": "Nothing happens."}, []
        reply, calls = self._reply_queue.popleft()
        if isinstance(reply, Exception):
            raise reply
        return reply, calls

    @staticmethod
    def _result(reply: Any, calls: list[ToolCall] | None = None) -> ModelResult:
        if isinstance(reply, str):
            try:
                parsed = json.loads(reply)
            except json.JSONDecodeError:
                parsed = None
            return ModelResult(raw=reply, json=parsed, tool_calls=calls or [], model="mock-model")
        return ModelResult(raw=json.dumps(reply), json=reply, tool_calls=calls or [], model="mock-model")

    async def infer(self, system, bundle, max_tokens=1200, temperature=0.4) -> ModelResult:
        self._call_history.append({
            "method": "infer",
            "system": system,
            "bundle": bundle,
            "max_tokens": max_tokens,
        })
        reply, _ = self._next()
        return self._result(reply)

    async def infer_with_tools(self, system, bundle, tools, on_tool_call, max_tokens=1200, temperature=0.4) -> ModelResult:
        self._call_history.append({
            "method": "infer_with_tools",
            "system": system,
            "bundle": bundle,
            "tools": tools,
            "max_tokens": max_tokens,
        })
        reply, requested = self._next()
        calls = []
        for item in requested:
            call = ToolCall(name=item["name"], arguments=item.get("arguments", {}))
            calls.append(call)
            self.tool_results.append(await on_tool_call(call))
        return self._result(reply, calls)

    def _init_client(self):
        pass  # No real client needed


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

CONTRACT_DOC = {
    "contract": {"name": "awf-core", "awf_return": "Return one AWF object."},
    "core": {"scales": {"relationship": {"min": 0, "baseline": 50, "max": 100}}},
}

WORLD_DOC = {
    "id": "world.mystika",
    "name": "Mystika",
    "version": "1.0.0",
    "tone": "Wistful high fantasy.",
    "timeworld": {"bands": [
        {"name": "Dawn", "max_ticks": 60},
        {"name": "Morning", "max_ticks": 60},
        {"name": "Afternoon", "max_ticks": 60},
        {"name": "Evening", "max_ticks": 60},
    ]},
    "festivals": [{"name": "Lantern Tide"}],
    "slices": {
        "core": "Mystika is held together by the Veil. Essence: drawn by crystal-singers.",
        "geography": "The Whispering Woods border the salt flats of Oryn.",
        "factions": "The Choir guards the crystals. The Ashen Court trades in memories.",
    },
    "i18n": {"fr-FR": {"tone": "Haute fantasy mélancolique."}},
}

ADVENTURE_DOC = {
    "id": "adv.whispercross",
    "name": "Whispercross",
    "synopsis": "A village that forgets its own name.",
    "slices": {
        "premise": "Whispercross wakes each dawn with one fewer memory.",
        "current_arc": "Kiera suspects the Ashen Court.",
    },
}

ADVENTURE_START_DOC = {
    "start": {
        "scene": "forest_meet",
        "description": "You wake at the edge of the woods.",
        "initial_state": {"flags": {"arrived": True}},
    },
}


def npc_doc(name: str, archetype: str = "ranger") -> dict[str, Any]:
    return {"npc": {
        "display_name": name,
        "archetype": archetype,
        "summary": f"{name} is a {archetype}.\n\nSecond paragraph is never shown.",
        "style": {"voice": "wry", "register": "informal"},
        "tags": [archetype],
    }}


def seed_documents(repos: Repositories) -> Repositories:
    repos.core_contracts.add(VersionedDocument(id="core.default", version="1.0.0", doc=CONTRACT_DOC), active=True)
    repos.rulesets.add(
        VersionedDocument(id="ruleset.core", version="1.0.0", doc={"token_discipline": {"npcs_active_cap": 5}}),
        active=True,
    )
    repos.worlds.add(VersionedDocument(id="world.mystika", version="1.0.0", doc=WORLD_DOC))
    repos.adventures.add(VersionedDocument(id="adv.whispercross", version="1.0.0", doc=ADVENTURE_DOC))
    repos.adventure_starts.add(VersionedDocument(id="adv.whispercross", version="1.0.0", doc=ADVENTURE_START_DOC))
    repos.injection_maps.add(
        VersionedDocument(id="im.default", version="1.0.0", doc={
            "rules": [{"from": "/world/tone", "to": "/world/tone", "skipIfEmpty": True}],
        }),
        active=True,
    )
    for name in ("kiera", "tomas", "mara"):
        repos.npcs.add(VersionedDocument(id=f"npc.{name}", version="1.0.0", doc=npc_doc(name.title())))
    return repos


def make_game(turn_count: int = 0, state: dict[str, Any] | None = None, **overrides) -> GameRecord:
    data = {
        "id": "game-1",
        "world_ref": "world.mystika@1.0.0",
        "adventure_ref": "adv.whispercross@1.0.0",
        "turn_count": turn_count,
        "version": turn_count,
        "state": GameState.model_validate(state or {}),
    }
    data.update(overrides)
    return GameRecord(**data)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_provider():
    """Fresh MockModelProvider instance."""
    return MockModelProvider()


@pytest.fixture
def budget_config():
    return BudgetConfig()


@pytest.fixture
def repos():
    """In-memory repositories seeded with one world, adventure and three NPCs."""
    return seed_documents(Repositories.in_memory())


@pytest.fixture
def game_store():
    """Game store holding a first-turn game bound to session-1."""
    store = InMemoryGameStore()
    store.put_game(make_game())
    store.put_session(SessionRecord(session_id="session-1", game_id="game-1"))
    return store


@pytest.fixture
def cache():
    return InMemoryCacheProvider(max_size=100)


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def prompts(budget_config):
    return SystemPrompts(PromptRegistry(), budget_config)


@pytest.fixture
def assembler(repos, game_store, cache, budget_config, metrics):
    return BundleAssembler(AssemblerDeps(
        repos=repos, games=game_store, cache=cache, config=budget_config, metrics=metrics,
    ))


@pytest.fixture
def orchestrator(assembler, mock_provider, game_store, metrics, prompts, repos, cache, budget_config):
    return TurnOrchestrator(
        assembler=assembler,
        provider=mock_provider,
        committer=TurnCommitter(game_store),
        metrics=metrics,
        prompts=prompts,
        lore_tool=LoreSliceTool(repos, cache),
        config=budget_config,
    )


@pytest.fixture
def sql_session_factory():
    """In-memory SQLite with all tables, one engine per test."""
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def first_turn_reply():
    return {
        "scn": "forest_meet",
        "txt": "Mist curls between the pines. A ranger steps out of the shadows.",
        "choices": [{"id": "talk", "label": "Talk to her"}, {"id": "leave", "label": "Walk away"}],
        "acts": [
            {"type": "SCENE_SET", "data": {"scn": "forest_meet"}},
            {"type": "REL_CHANGE", "data": {"npc": "npc.kiera", "delta": 5}},
            {"type": "MEMORY_ADD", "data": {"k": "met_kiera", "note": "Met Kiera.", "salience": 0.7}},
        ],
    }
