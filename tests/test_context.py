"""Tests for the bundle context helpers.

Covers:
- Token estimation and truncation
- Slice compaction (bounded output, key points, hashing)
- World / adventure / NPC compaction and token discipline order
- NPC ref collection and the ruleset cap
- Scene-keyed slice selection
- Injection map rules and JSON pointer helpers
"""

import pytest

from awf_engine.context.doc_compactor import (
    apply_locale_overlay,
    compact_adventure,
    compact_npc,
    compact_world,
    enforce_token_discipline,
    unwrap_doc,
)
from awf_engine.context.injection_map import execute_injection_map
from awf_engine.context.npc_collector import collect_npc_refs, get_npc_cap
from awf_engine.context.slice_compactor import (
    compact_slice,
    content_hash,
    create_inline_summaries,
    extract_key_points,
    validate_slice_summary,
)
from awf_engine.context.slice_policy import DEFAULT_WORLD_SLICES, select_slices, slice_contents
from awf_engine.context.tokens import estimate_tokens, truncate_to_tokens
from awf_engine.models.documents import VersionedDocument
from awf_engine.utils.pointer import get_at_pointer, set_at_pointer, split_pointer

from .conftest import ADVENTURE_DOC, WORLD_DOC, npc_doc

# ---------------------------------------------------------------------------
# Token estimation
# ---------------------------------------------------------------------------


class TestTokens:
    def test_none_is_zero(self):
        assert estimate_tokens(None) == 0

    def test_strings_round_up(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_objects_measured_as_compact_json(self):
        # '{"a":1}' is 7 characters
        assert estimate_tokens({"a": 1}) == 2

    def test_monotonic_in_size(self):
        small = {"items": ["x"] * 10}
        large = {"items": ["x"] * 100}
        assert estimate_tokens(small) < estimate_tokens(large)

    def test_truncate_fits_budget(self):
        text = "word " * 200
        out = truncate_to_tokens(text, 10)
        assert estimate_tokens(out) <= 10
        assert out.endswith("...")

    def test_truncate_leaves_short_text(self):
        assert truncate_to_tokens("short", 10) == "short"

    def test_truncate_zero_budget(self):
        assert truncate_to_tokens("anything", 0) == ""


# ---------------------------------------------------------------------------
# Slice compaction
# ---------------------------------------------------------------------------


class TestSliceCompactor:
    def test_empty_content(self):
        result = compact_slice("   ", "empty")
        assert result.content == ""
        assert result.token_count == 0
        assert result.metadata["method"] == "empty"

    def test_short_content_verbatim(self):
        result = compact_slice("The Veil holds.", "core")
        assert result.content == "The Veil holds."
        assert result.metadata["method"] == "verbatim"

    def test_long_content_bounded(self):
        content = " ".join(f"Sentence number {i} describes the valley." for i in range(200))
        result = compact_slice(content, "long", max_tokens=50)
        assert result.token_count <= 50
        assert result.token_count == estimate_tokens(result.content)
        assert result.token_count < estimate_tokens(content)

    def test_never_larger_than_input(self):
        for content in ("a", "Two sentences. Here.", "x" * 5000):
            result = compact_slice(content, "s", max_tokens=20)
            assert result.token_count <= estimate_tokens(content)

    def test_unbreakable_text_truncated(self):
        result = compact_slice("z" * 4000, "blob", max_tokens=10)
        assert result.metadata["method"] == "truncated"
        assert result.token_count <= 10

    def test_key_points_prefer_labels_and_bullets(self):
        content = "Magic: crystal song\n- first bullet\n- second bullet\nPlain prose line."
        assert extract_key_points(content) == ["Magic: crystal song", "first bullet", "second bullet"]

    def test_key_points_fall_back_to_sentences(self):
        assert extract_key_points("One. Two! Three?") == ["One.", "Two!", "Three?"]

    def test_key_points_capped_at_five(self):
        content = "\n".join(f"- point {i}" for i in range(10))
        assert len(extract_key_points(content)) == 5

    def test_hash_is_stable(self):
        a = compact_slice("Same text.", "a")
        b = compact_slice("Same text.", "b")
        assert a.hash == b.hash == content_hash("Same text.")
        assert len(a.hash) == 16

    def test_validate_summary(self):
        ok = compact_slice("Fine. Short.", "ok")
        assert validate_slice_summary(ok, 50)["is_valid"] is True

        bad = ok.model_copy(update={"token_count": 99})
        report = validate_slice_summary(bad, 50)
        assert report["is_valid"] is False
        assert "limit 50" in report["issues"][0]

    def test_inline_summaries(self):
        out = create_inline_summaries(["The woods are dark."], [])
        assert out == {"world": {"inline": ["The woods are dark."]}, "adventure": {"inline": []}}


# ---------------------------------------------------------------------------
# Document compaction
# ---------------------------------------------------------------------------


def _world(doc=None) -> VersionedDocument:
    return VersionedDocument(id="world.mystika", version="1.0.0", hash="w-hash", doc=doc or WORLD_DOC)


class TestDocCompactor:
    def test_unknown_fields_go_to_custom(self):
        view = compact_world(_world())
        assert view["custom"] == {"festivals": [{"name": "Lantern Tide"}]}
        assert view["tone"] == "Wistful high fantasy."
        assert "slices" not in view
        assert "i18n" not in view

    def test_explicit_custom_merged(self):
        doc = {**WORLD_DOC, "custom": {"calendar": "lunar"}}
        view = compact_world(_world(doc))
        assert view["custom"]["calendar"] == "lunar"
        assert "festivals" in view["custom"]

    def test_locale_overlay(self):
        view = compact_world(_world(), locale="fr-FR")
        assert view["tone"] == "Haute fantasy mélancolique."

    def test_unknown_locale_keeps_base(self):
        view = compact_world(_world(), locale="de-DE")
        assert view["tone"] == "Wistful high fantasy."

    def test_overlay_deep_merges(self):
        doc = {"magic": {"source": "song", "cost": "memory"}, "i18n": {"fr-FR": {"magic": {"source": "chant"}}}}
        merged = apply_locale_overlay(doc, "fr-FR")
        assert merged == {"magic": {"source": "chant", "cost": "memory"}}

    def test_unwrap_nested_root(self):
        assert unwrap_doc({"world": {"name": "M"}, "id": "w"}, "world") == {"id": "w", "name": "M"}

    def test_adventure_carries_ref_and_hash(self):
        adv = VersionedDocument(id="adv.whispercross", version="1.0.0", hash="a-hash", doc=ADVENTURE_DOC)
        view = compact_adventure(adv)
        assert view["ref"] == "adv.whispercross@1.0.0"
        assert view["hash"] == "a-hash"
        assert view["synopsis"] == "A village that forgets its own name."

    def test_npc_view(self):
        npc = VersionedDocument(id="npc.kiera", version="1.0.0", doc=npc_doc("Kiera"))
        view = compact_npc(npc)
        assert view["name"] == "Kiera"
        assert view["summary"] == "Kiera is a ranger."
        assert view["style"] == {"voice": "wry", "register": "informal"}
        assert view["ver"] == "1.0.0"


class TestTokenDiscipline:
    def test_fitting_doc_untouched(self):
        doc = {"id": "a", "custom": {}}
        out, steps = enforce_token_discipline(doc, 100)
        assert out is doc
        assert steps == []

    def test_arrays_capped_first(self):
        doc = {"id": "a", "cast": ["n" * 40] * 30, "custom": {}}
        out, steps = enforce_token_discipline(doc, 150)
        assert steps == ["array_cap:12"]
        assert len(out["cast"]) == 12
        assert len(doc["cast"]) == 30

    def test_text_elided_before_drop(self):
        doc = {"id": "a", "synopsis": "s" * 2000, "history": "short", "custom": {}}
        out, steps = enforce_token_discipline(doc, 100)
        assert steps == ["elide:synopsis"]
        assert "synopsis" not in out
        assert out["history"] == "short"

    def test_drop_leaves_identity(self):
        doc = {"id": "a", "name": "A", "blob": "z" * 2000, "custom": {"x": 1}}
        out, steps = enforce_token_discipline(doc, 10)
        assert steps == ["drop"]
        assert out == {"id": "a", "name": "A", "custom": {}, "dropped": True}


# ---------------------------------------------------------------------------
# NPC refs and slices
# ---------------------------------------------------------------------------


class TestNpcCollector:
    def test_union_in_priority_order(self):
        state = {
            "hot": {"active_npcs": ["npc.kiera"]},
            "warm": {"relationships": {"npc.tomas": 1}, "pins": ["memory-key", {"npc_ref": "npc.mara"}]},
        }
        adventure = {"cast": [{"npc_ref": "npc.kiera@2.0.0"}, "npc.zed"]}
        refs = collect_npc_refs(state, adventure=adventure)
        assert refs == ["npc.kiera", "npc.tomas", "npc.mara", "npc.zed"]

    def test_hot_relations_keys(self):
        refs = collect_npc_refs({"hot": {"relations": {"npc.kiera": 55}}})
        assert refs == ["npc.kiera"]

    def test_scenario_fixed_npcs(self):
        refs = collect_npc_refs({}, scenario={"fixed_npcs": [{"npc_ref": "npc.guard"}]})
        assert refs == ["npc.guard"]

    def test_cap_applied(self):
        ruleset = {"token_discipline": {"npcs_active_cap": 2}}
        refs = collect_npc_refs({"hot": {"active_npcs": ["a", "b", "c"]}}, ruleset=ruleset)
        assert refs == ["a", "b"]

    def test_invalid_cap_ignored(self):
        assert get_npc_cap({"token_discipline": {"npcs_active_cap": "many"}}) is None
        assert get_npc_cap(None) is None

    def test_empty_sources(self):
        assert collect_npc_refs(None) == []


class TestSlicePolicy:
    def test_defaults(self):
        assert select_slices(WORLD_DOC, None, DEFAULT_WORLD_SLICES) == ["core", "geography"]

    def test_scene_specific_list(self):
        doc = {**WORLD_DOC, "scene_slices": {"tavern": ["factions", "missing", "factions"]}}
        assert select_slices(doc, "tavern", DEFAULT_WORLD_SLICES) == ["factions"]

    def test_document_default_list(self):
        doc = {**WORLD_DOC, "default_slices": ["factions"]}
        assert select_slices(doc, "elsewhere", DEFAULT_WORLD_SLICES) == ["factions"]

    def test_list_form_slices(self):
        doc = {"slices": [{"name": "a", "content": "A."}, {"name": "b", "content": {"k": 1}}]}
        assert slice_contents(doc) == {"a": "A.", "b": '{"k":1}'}


# ---------------------------------------------------------------------------
# Injection map
# ---------------------------------------------------------------------------


class TestInjectionMap:
    def test_copy_rule_with_bundle_prefix(self):
        bundle = {"world": {}}
        doc = {"rules": [{"from": "/world/name", "to": "/awf_bundle/world/title"}]}
        result = execute_injection_map(doc, {"world": {"name": "Mystika"}}, bundle)
        assert bundle["world"]["title"] == "Mystika"
        assert result.applied_rules == 1
        assert result.success

    def test_skip_if_empty(self):
        bundle = {"world": {"tone": "keep"}}
        doc = {"rules": [{"from": "/world/missing", "to": "/world/tone", "skipIfEmpty": True}]}
        result = execute_injection_map(doc, {"world": {}}, bundle)
        assert bundle["world"]["tone"] == "keep"
        assert result.skipped_rules == 1

    def test_fallback_value(self):
        bundle = {}
        doc = {"rules": [{"from": "/world/tone", "to": "/world/tone", "fallback": {"ifMissing": "neutral"}}]}
        execute_injection_map(doc, {"world": {}}, bundle)
        assert bundle == {"world": {"tone": "neutral"}}

    def test_count_limit(self):
        bundle = {}
        doc = {"rules": [{"from": "/npcs", "to": "/npcs/active", "limit": {"units": "count", "max": 2}}]}
        execute_injection_map(doc, {"npcs": [1, 2, 3]}, bundle)
        assert bundle["npcs"]["active"] == [1, 2]

    def test_token_limit_on_string(self):
        bundle = {}
        doc = {"rules": [{"from": "/world/tone", "to": "/tone", "limit": {"units": "tokens", "max": 5}}]}
        execute_injection_map(doc, {"world": {"tone": "long words " * 50}}, bundle)
        assert estimate_tokens(bundle["tone"]) <= 5

    def test_malformed_rule_collected(self):
        bundle = {}
        result = execute_injection_map({"rules": [{"to": "/x"}]}, {}, bundle)
        assert len(result.errors) == 1
        assert not result.success
        assert bundle == {}

    def test_legacy_build_map(self):
        bundle = {}
        doc = {"build": {"world.tone": "/context/world/tone"}}
        execute_injection_map(doc, {"world": {"tone": "grim"}}, bundle)
        assert bundle == {"world": {"tone": "grim"}}

    def test_write_that_breaks_validation_is_reverted(self):
        bundle = {"input": {"text": "hi"}, "meta": {}}
        doc = {"rules": [
            {"from": "/world/name", "to": "/input"},
            {"from": "/world/name", "to": "/meta/world_name"},
        ]}

        def validate(b):
            return [] if isinstance(b.get("input"), dict) else ["input: must be an object"]

        result = execute_injection_map(doc, {"world": {"name": "Mystika"}}, bundle, validate=validate)
        assert bundle == {"input": {"text": "hi"}, "meta": {"world_name": "Mystika"}}
        assert result.applied_rules == 1
        assert len(result.errors) == 1
        assert "-> /input" in result.errors[0]

    def test_reverted_write_to_new_key_is_removed(self):
        bundle = {}
        doc = {"rules": [{"from": "/world/name", "to": "/extra/name"}]}
        result = execute_injection_map(doc, {"world": {"name": "Mystika"}}, bundle, validate=lambda b: ["nope"])
        assert bundle == {}
        assert not result.success

    def test_no_rules(self):
        result = execute_injection_map(None, {}, {})
        assert result.applied_rules == 0
        assert result.success


class TestPointer:
    def test_get_nested(self):
        assert get_at_pointer({"a": [{"b": 1}]}, "/a/0/b") == 1
        assert get_at_pointer({"a": []}, "/a/3", default="d") == "d"

    def test_escapes(self):
        assert split_pointer("/a~1b/c~0d") == ["a/b", "c~d"]

    def test_set_creates_intermediates(self):
        doc = {}
        set_at_pointer(doc, "/x/y", 5)
        assert doc == {"x": {"y": 5}}

    def test_append_to_list(self):
        doc = {"items": [1]}
        set_at_pointer(doc, "/items/-", 2)
        assert doc["items"] == [1, 2]

    def test_root_replacement_rejected(self):
        with pytest.raises(ValueError):
            set_at_pointer({}, "", 1)

    def test_relative_pointer_rejected(self):
        with pytest.raises(ValueError):
            split_pointer("a/b")
