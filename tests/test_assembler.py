"""Tests for the BundleAssembler.

Covers:
- First-turn and subsequent-turn bundles
- NPC collection, the ruleset cap, missing NPC refs
- Cache-first compaction and locale-specific views
- Injection map application and acts map hand-off
- NotFound / BudgetExceeded paths
- Deterministic RNG seed
"""

import copy

import pytest

from awf_engine.cache.provider import InMemoryCacheProvider
from awf_engine.config import BudgetConfig
from awf_engine.core.assembler import AssemblerDeps, BundleAssembler, generate_rng_seed
from awf_engine.db.repositories import InMemoryGameStore, Repositories
from awf_engine.errors import BudgetExceeded, ErrorKind, NotFound
from awf_engine.metrics.collector import MetricsCollector
from awf_engine.models.bundle import REQUIRED_BUNDLE_KEYS
from awf_engine.models.documents import SessionRecord, VersionedDocument

from .conftest import WORLD_DOC, make_game, seed_documents

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _store(game=None, session=None) -> InMemoryGameStore:
    store = InMemoryGameStore()
    store.put_game(game or make_game())
    store.put_session(session or SessionRecord(session_id="session-1", game_id="game-1"))
    return store


def _assembler(repos, store, cache=None, metrics=None, **config) -> BundleAssembler:
    return BundleAssembler(AssemblerDeps(
        repos=repos,
        games=store,
        cache=cache or InMemoryCacheProvider(),
        config=BudgetConfig(**config),
        metrics=metrics,
    ))


# ---------------------------------------------------------------------------
# Bundle shape
# ---------------------------------------------------------------------------


class TestFirstTurn:
    async def test_minimal_first_turn_bundle(self, assembler):
        result = await assembler.assemble("session-1", "I look around")
        bundle = result.bundle

        assert set(REQUIRED_BUNDLE_KEYS) <= set(bundle)
        assert bundle["meta"]["turn_id"] == 1
        assert bundle["meta"]["is_first_turn"] is True
        assert bundle["meta"]["locale"] == "en-US"
        assert bundle["meta"]["world"] == "world.mystika@1.0.0"
        assert bundle["npcs"] == {"active": [], "count": 0}
        assert bundle["scenario"] is None
        assert bundle["input"]["text"] == "I look around"
        assert bundle["player"]["id"] == "default"
        assert bundle["contract"]["id"] == "core.default"
        assert result.turn_id == 1

    async def test_start_hint(self, assembler):
        bundle = (await assembler.assemble("session-1", "")).bundle
        hint = bundle["adventure"]["start_hint"]
        assert hint["scene"] == "forest_meet"
        assert hint["initial_state"] == {"flags": {"arrived": True}}

    async def test_start_hint_follows_pinned_adventure_version(self, repos):
        repos.adventure_starts.add(VersionedDocument(id="adv.whispercross", version="2.0.0", doc={
            "start": {"scene": "harbor_dawn", "description": "A new opening."},
        }))
        bundle = (await _assembler(repos, _store()).assemble("session-1", "")).bundle
        assert bundle["meta"]["adventure"] == "adv.whispercross@1.0.0"
        assert bundle["adventure"]["start_hint"]["scene"] == "forest_meet"

    async def test_default_slices(self, assembler):
        bundle = (await assembler.assemble("session-1", "")).bundle
        assert [s["name"] for s in bundle["world"]["slice"]] == ["core", "geography"]
        assert [s["name"] for s in bundle["adventure"]["slice"]] == ["premise", "current_arc"]
        assert all(s["tokens_est"] > 0 for s in bundle["world"]["slice"])

    async def test_world_view_compacted(self, assembler):
        world = (await assembler.assemble("session-1", "")).bundle["world"]
        assert world["custom"] == {"festivals": [{"name": "Lantern Tide"}]}
        assert "i18n" not in world
        assert "slices" not in world
        assert world["timeworld"]["bands"][0]["name"] == "Dawn"

    async def test_adventure_identity(self, assembler):
        adventure = (await assembler.assemble("session-1", "")).bundle["adventure"]
        assert adventure["ref"] == "adv.whispercross@1.0.0"
        assert adventure["hash"]

    async def test_metrics(self, assembler, metrics):
        result = await assembler.assemble("session-1", "")
        assert result.metrics.slice_count == 4
        assert result.metrics.npc_count == 0
        assert result.metrics.estimated_tokens == result.budget_result.final_tokens
        assert metrics.get_gauge("awf.bundle.bytes") == result.metrics.byte_size
        assert metrics.get_p95("awf.bundle.assembly_ms") is not None

    async def test_resolved_documents_returned(self, assembler):
        result = await assembler.assemble("session-1", "")
        assert result.world_doc["name"] == "Mystika"
        assert result.contract_doc["core"]["scales"]["relationship"]["max"] == 100
        assert result.game.id == "game-1"
        assert result.session.session_id == "session-1"


class TestSubsequentTurn:
    async def test_turn_id_and_no_start_hint(self, repos):
        store = _store(make_game(turn_count=3, state={"hot": {"scene": "tavern"}}))
        bundle = (await _assembler(repos, store).assemble("session-1", "")).bundle
        assert bundle["meta"]["turn_id"] == 4
        assert bundle["meta"]["is_first_turn"] is False
        assert bundle["adventure"]["start_hint"] is None
        assert bundle["game_state"]["hot"]["scene"] == "tavern"

    async def test_scene_specific_slices(self, repos):
        repos.worlds.add(VersionedDocument(id="world.mystika", version="1.0.0", doc={
            "name": "Mystika",
            "slices": {"core": "Core.", "factions": "The Choir."},
            "scene_slices": {"tavern": ["factions"]},
        }))
        store = _store(make_game(turn_count=1, state={"hot": {"scene": "tavern"}}))
        bundle = (await _assembler(repos, store).assemble("session-1", "")).bundle
        assert [s["name"] for s in bundle["world"]["slice"]] == ["factions"]
        assert "scene_slices" not in bundle["world"]


# ---------------------------------------------------------------------------
# NPCs
# ---------------------------------------------------------------------------


class TestNpcs:
    async def test_active_npcs_compacted(self, repos):
        store = _store(make_game(turn_count=1, state={"hot": {"active_npcs": ["npc.kiera", "npc.tomas"]}}))
        npcs = (await _assembler(repos, store).assemble("session-1", "")).bundle["npcs"]
        assert npcs["count"] == 2
        assert [n["name"] for n in npcs["active"]] == ["Kiera", "Tomas"]
        assert npcs["active"][0]["summary"] == "Kiera is a ranger."

    async def test_ruleset_cap(self, repos):
        repos.rulesets.add(
            VersionedDocument(id="ruleset.tight", version="1", doc={"token_discipline": {"npcs_active_cap": 2}}),
            active=True,
        )
        state = {"hot": {"active_npcs": ["npc.kiera", "npc.tomas", "npc.mara"]}}
        store = _store(make_game(turn_count=1, state=state))
        npcs = (await _assembler(repos, store).assemble("session-1", "")).bundle["npcs"]
        assert npcs["count"] == 2

    async def test_adventure_cast(self, repos):
        repos.adventures.add(VersionedDocument(id="adv.whispercross", version="1.0.0", doc={
            "name": "Whispercross", "cast": [{"npc_ref": "npc.mara"}],
        }))
        npcs = (await _assembler(repos, _store()).assemble("session-1", "")).bundle["npcs"]
        assert [n["id"] for n in npcs["active"]] == ["npc.mara"]

    async def test_missing_npc_skipped(self, repos):
        store = _store(make_game(turn_count=1, state={"hot": {"active_npcs": ["npc.kiera", "npc.ghost"]}}))
        npcs = (await _assembler(repos, store).assemble("session-1", "")).bundle["npcs"]
        assert [n["id"] for n in npcs["active"]] == ["npc.kiera"]


# ---------------------------------------------------------------------------
# Caching and locale
# ---------------------------------------------------------------------------


class TestCaching:
    async def test_second_assembly_hits_cache(self, repos):
        cache = InMemoryCacheProvider()
        assembler = _assembler(repos, _store(), cache=cache)
        first = await assembler.assemble("session-1", "")
        assert cache.hits == 0
        second = await assembler.assemble("session-1", "")
        # world view, adventure view and four slices
        assert cache.hits == 6
        assert first.bundle["world"] == second.bundle["world"]

    async def test_edited_document_misses(self, repos):
        cache = InMemoryCacheProvider()
        assembler = _assembler(repos, _store(), cache=cache)
        await assembler.assemble("session-1", "")
        repos.worlds.add(VersionedDocument(id="world.mystika", version="1.0.0", doc={
            "name": "Mystika Reborn", "slices": {"core": "New core."},
        }))
        bundle = (await assembler.assemble("session-1", "")).bundle
        assert bundle["world"]["name"] == "Mystika Reborn"
        assert bundle["world"]["slice"][0]["content"] == "New core."

    async def test_slice_edit_keeps_sibling_slices_cached(self, repos):
        cache = InMemoryCacheProvider()
        assembler = _assembler(repos, _store(), cache=cache)
        await assembler.assemble("session-1", "")
        before = set(await cache.keys("awf:slice:world.mystika:*"))

        edited = copy.deepcopy(WORLD_DOC)
        edited["slices"]["core"] = "The Veil has thinned."
        repos.worlds.add(VersionedDocument(id="world.mystika", version="1.0.0", doc=edited))
        bundle = (await assembler.assemble("session-1", "")).bundle

        added = set(await cache.keys("awf:slice:world.mystika:*")) - before
        assert [k.rsplit(":", 1)[-1] for k in added] == ["core"]
        assert bundle["world"]["slice"][0]["content"] == "The Veil has thinned."

    async def test_cached_views_not_shared(self, repos):
        assembler = _assembler(repos, _store())
        first = await assembler.assemble("session-1", "")
        first.bundle["world"]["custom"]["festivals"].clear()
        second = await assembler.assemble("session-1", "")
        assert second.bundle["world"]["custom"]["festivals"] == [{"name": "Lantern Tide"}]


class TestLocale:
    async def test_session_locale_overlay(self, repos):
        store = _store(session=SessionRecord(session_id="session-1", game_id="game-1", locale="fr-FR"))
        bundle = (await _assembler(repos, store).assemble("session-1", "")).bundle
        assert bundle["meta"]["locale"] == "fr-FR"
        assert bundle["world"]["tone"] == "Haute fantasy mélancolique."

    async def test_game_locale_used_without_session_override(self, repos):
        store = _store(make_game(locale="fr-FR"))
        bundle = (await _assembler(repos, store).assemble("session-1", "")).bundle
        assert bundle["meta"]["locale"] == "fr-FR"

    async def test_views_cached_per_locale(self, repos):
        cache = InMemoryCacheProvider()
        await _assembler(repos, _store(), cache=cache).assemble("session-1", "")
        store_fr = _store(session=SessionRecord(session_id="session-1", game_id="game-1", locale="fr-FR"))
        bundle = (await _assembler(repos, store_fr, cache=cache).assemble("session-1", "")).bundle
        assert bundle["world"]["tone"] == "Haute fantasy mélancolique."

    async def test_slices_cached_per_locale(self, repos):
        world = copy.deepcopy(WORLD_DOC)
        world["i18n"]["fr-FR"]["slices"] = {"core": "Le royaume est ancien."}
        repos.worlds.add(VersionedDocument(id="world.mystika", version="1.0.0", doc=world))
        cache = InMemoryCacheProvider()

        store_fr = _store(session=SessionRecord(session_id="session-1", game_id="game-1", locale="fr-FR"))
        fr = (await _assembler(repos, store_fr, cache=cache).assemble("session-1", "")).bundle
        en = (await _assembler(repos, _store(), cache=cache).assemble("session-1", "")).bundle

        assert fr["world"]["slice"][0]["content"] == "Le royaume est ancien."
        assert en["world"]["slice"][0]["content"] == WORLD_DOC["slices"]["core"]


# ---------------------------------------------------------------------------
# Injection map and ruleset
# ---------------------------------------------------------------------------


class TestInjection:
    async def test_rules_applied_and_acts_map_returned(self, repos):
        repos.injection_maps.add(VersionedDocument(id="im.custom", version="1", doc={
            "rules": [{"from": "/session/session_id", "to": "/meta/session"}],
            "acts": {"FLAG_SET": "/game_state/hot/flags|set_by_key"},
        }), active=True)
        result = await _assembler(repos, _store()).assemble("session-1", "")
        assert result.bundle["meta"]["session"] == "session-1"
        assert result.injection.applied_rules == 1
        assert result.acts_map == {"FLAG_SET": "/game_state/hot/flags|set_by_key"}

    async def test_rule_breaking_bundle_shape_is_skipped(self, repos):
        repos.injection_maps.add(VersionedDocument(id="im.broken", version="1", doc={
            "rules": [
                {"from": "/world/name", "to": "/input"},
                {"from": "/session/session_id", "to": "/meta/session"},
            ],
        }), active=True)
        result = await _assembler(repos, _store()).assemble("session-1", "I look around")
        assert result.bundle["input"]["text"] == "I look around"
        assert result.bundle["meta"]["session"] == "session-1"
        assert result.injection.applied_rules == 1
        assert len(result.injection.errors) == 1

    async def test_no_injection_map(self, repos, game_store):
        bare = Repositories.in_memory()
        for name in ("core_contracts", "rulesets", "worlds", "adventures", "npcs"):
            setattr(bare, name, getattr(repos, name))
        result = await _assembler(bare, game_store).assemble("session-1", "")
        assert result.injection is None
        assert result.acts_map is None
        assert result.bundle["adventure"]["start_hint"] is None

    async def test_session_ruleset_override(self, repos):
        repos.rulesets.add(VersionedDocument(id="ruleset.hard", version="2", doc={"difficulty": "hard"}))
        store = _store(session=SessionRecord(session_id="session-1", game_id="game-1", ruleset_ref="ruleset.hard@2"))
        bundle = (await _assembler(repos, store).assemble("session-1", "")).bundle
        assert bundle["ruleset"] == {"difficulty": "hard"}

    async def test_missing_ruleset_falls_back_to_active(self, repos):
        store = _store(make_game(ruleset_ref="ruleset.gone@9"))
        bundle = (await _assembler(repos, store).assemble("session-1", "")).bundle
        assert bundle["ruleset"] == {"token_discipline": {"npcs_active_cap": 5}}

    async def test_inline_summaries(self, repos):
        bundle = (await _assembler(repos, _store(), inline_slice_summaries=True).assemble("session-1", "")).bundle
        assert len(bundle["world"]["inline"]) == 2
        assert len(bundle["adventure"]["inline"]) == 2


# ---------------------------------------------------------------------------
# Failure paths
# ---------------------------------------------------------------------------


class TestFailures:
    async def test_unknown_session(self, assembler):
        with pytest.raises(NotFound) as exc:
            await assembler.assemble("nope", "")
        assert exc.value.kind == ErrorKind.NOT_FOUND

    async def test_missing_game(self, repos):
        store = InMemoryGameStore()
        store.put_session(SessionRecord(session_id="session-1", game_id="gone"))
        with pytest.raises(NotFound) as exc:
            await _assembler(repos, store).assemble("session-1", "")
        assert exc.value.details["game_id"] == "gone"

    async def test_missing_world(self, repos):
        store = _store(make_game(world_ref="world.atlantis@1"))
        with pytest.raises(NotFound) as exc:
            await _assembler(repos, store).assemble("session-1", "")
        assert "world.atlantis@1" in exc.value.message

    async def test_missing_adventure_version(self, repos):
        store = _store(make_game(adventure_ref="adv.whispercross@9.9.9"))
        with pytest.raises(NotFound):
            await _assembler(repos, store).assemble("session-1", "")

    async def test_no_active_contract(self, game_store):
        repos = seed_documents(Repositories.in_memory())
        repos.core_contracts = Repositories.in_memory().core_contracts
        with pytest.raises(NotFound) as exc:
            await _assembler(repos, game_store).assemble("session-1", "")
        assert "core contract" in exc.value.message

    async def test_budget_exceeded(self, repos):
        with pytest.raises(BudgetExceeded) as exc:
            await _assembler(repos, _store(), max_input_tokens=100).assemble("session-1", "")
        assert exc.value.kind == ErrorKind.BUDGET_EXCEEDED
        assert exc.value.details["reductions"]

    async def test_budget_reductions_reported(self, repos):
        long_slice = " ".join(f"The valley holds secret number {i}." for i in range(400))
        repos.worlds.add(VersionedDocument(id="world.mystika", version="1.0.0", doc={
            "name": "Mystika", "slices": {"core": long_slice, "geography": long_slice + " More."},
        }))
        plain = _assembler(repos, _store(), slice_max_tokens=1000)
        baseline = (await plain.assemble("session-1", "")).budget_result.final_tokens

        tight = _assembler(repos, _store(), slice_max_tokens=1000, max_input_tokens=baseline - 200)
        result = await tight.assemble("session-1", "")
        assert result.budget_result.reductions
        assert result.budget_result.final_tokens <= baseline - 200


class TestRngSeed:
    def test_deterministic(self):
        assert generate_rng_seed("s", 1) == generate_rng_seed("s", 1)
        assert generate_rng_seed("s", 1) != generate_rng_seed("s", 2)
        assert len(generate_rng_seed("s", 1)) == 16

    async def test_seed_in_bundle(self, assembler):
        rng = (await assembler.assemble("session-1", "")).bundle["rng"]
        assert rng == {"seed": generate_rng_seed("session-1", 1), "policy": "deterministic"}
