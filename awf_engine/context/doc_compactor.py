"""
World / adventure / NPC compaction for the bundle.

World and adventure documents are cut to their known-field allowlist
plus a ``custom`` bucket, overlaid with the session locale, and then put
through token discipline in a fixed order:

1. cap long arrays (12 -> 8 -> 4 entries)
2. elide free-text fields (synopsis, seasons, history, description)
3. drop the sub-document, leaving only its identity

Each step is re-measured and discipline stops at the first step that
fits. NPCs are reduced to a narration-safe view.
"""

import copy
import logging
from typing import Any

from ..models.documents import AdventureDoc, VersionedDocument, WorldDoc
from .tokens import estimate_tokens

logger = logging.getLogger(__name__)

DEFAULT_DOC_MAX_TOKENS = 1500
ARRAY_CAP_STEPS: tuple[int, ...] = (12, 8, 4)
ELIDABLE_TEXT_FIELDS: tuple[str, ...] = ("synopsis", "seasons", "history", "description")

NPC_SUMMARY_MAX_CHARS = 320
NPC_MAX_TAGS = 6


def unwrap_doc(doc: dict[str, Any], root_key: str) -> dict[str, Any]:
    """Flatten ``{"world": {...}, ...}`` style documents into one level."""
    inner = doc.get(root_key)
    if not isinstance(inner, dict):
        return dict(doc)
    merged = {k: v for k, v in doc.items() if k != root_key}
    merged.update(inner)
    return merged


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


def apply_locale_overlay(doc: dict[str, Any], locale: str | None) -> dict[str, Any]:
    """Merge ``i18n[locale]`` over the document and strip the i18n table."""
    i18n = doc.get("i18n")
    base = {k: v for k, v in doc.items() if k != "i18n"}
    if not locale or not isinstance(i18n, dict):
        return base
    overlay = i18n.get(locale)
    if not isinstance(overlay, dict):
        return base
    return _deep_merge(base, overlay)


# ---------------------------------------------------------------------------
# Token discipline
# ---------------------------------------------------------------------------

def _list_fields(doc: dict[str, Any]) -> list[tuple[dict[str, Any], str]]:
    """(container, key) for every list-valued field, ``cast`` first, then custom."""
    fields = [(doc, k) for k, v in doc.items() if isinstance(v, list) and k != "slice"]
    custom = doc.get("custom")
    if isinstance(custom, dict):
        fields.extend((custom, k) for k, v in custom.items() if isinstance(v, list))
    fields.sort(key=lambda item: item[1] != "cast")
    return fields


def enforce_token_discipline(doc: dict[str, Any], max_tokens: int) -> tuple[dict[str, Any], list[str]]:
    """Apply the fixed drop order until ``doc`` fits. Returns (doc, steps taken)."""
    steps: list[str] = []
    if estimate_tokens(doc) <= max_tokens:
        return doc, steps

    doc = copy.deepcopy(doc)

    for cap in ARRAY_CAP_STEPS:
        trimmed = False
        for container, key in _list_fields(doc):
            if len(container[key]) > cap:
                container[key] = container[key][:cap]
                trimmed = True
        if trimmed:
            steps.append(f"array_cap:{cap}")
            if estimate_tokens(doc) <= max_tokens:
                return doc, steps

    for field in ELIDABLE_TEXT_FIELDS:
        elided = False
        if field in doc:
            del doc[field]
            elided = True
        custom = doc.get("custom")
        if isinstance(custom, dict) and field in custom:
            del custom[field]
            elided = True
        if elided:
            steps.append(f"elide:{field}")
            if estimate_tokens(doc) <= max_tokens:
                return doc, steps

    steps.append("drop")
    dropped = {k: doc[k] for k in ("id", "ref", "hash", "name", "version") if k in doc}
    dropped["custom"] = {}
    dropped["dropped"] = True
    return dropped, steps


# ---------------------------------------------------------------------------
# World / adventure
# ---------------------------------------------------------------------------

def compact_world(
    world: VersionedDocument,
    locale: str | None = None,
    max_tokens: int = DEFAULT_DOC_MAX_TOKENS,
) -> dict[str, Any]:
    raw = apply_locale_overlay(unwrap_doc(world.doc, "world"), locale)
    raw.setdefault("id", world.id)
    raw.setdefault("version", world.version)
    compacted = WorldDoc.from_doc(raw).to_bundle_dict()
    compacted.pop("slices", None)
    compacted, steps = enforce_token_discipline(compacted, max_tokens)
    if steps:
        logger.info(f"[Compactor] World {world.ref} token discipline: {', '.join(steps)}")
    return compacted


def compact_adventure(
    adventure: VersionedDocument,
    locale: str | None = None,
    max_tokens: int = DEFAULT_DOC_MAX_TOKENS,
) -> dict[str, Any]:
    raw = apply_locale_overlay(unwrap_doc(adventure.doc, "adventure"), locale)
    raw.setdefault("id", adventure.id)
    raw.setdefault("version", adventure.version)
    compacted = AdventureDoc.from_doc(raw).to_bundle_dict()
    compacted.pop("slices", None)
    compacted["ref"] = adventure.ref
    compacted["hash"] = adventure.hash
    compacted, steps = enforce_token_discipline(compacted, max_tokens)
    if steps:
        logger.info(f"[Compactor] Adventure {adventure.ref} token discipline: {', '.join(steps)}")
    return compacted


# ---------------------------------------------------------------------------
# NPCs
# ---------------------------------------------------------------------------

def _first_paragraph(text: str, max_chars: int = NPC_SUMMARY_MAX_CHARS) -> str:
    paragraph = text.strip().split("\n\n", 1)[0]
    paragraph = " ".join(paragraph.split())
    if len(paragraph) > max_chars:
        paragraph = paragraph[: max_chars - 3].rstrip() + "..."
    return paragraph


def compact_npc(npc: VersionedDocument, locale: str | None = None) -> dict[str, Any]:
    """Narration-safe NPC view: identity, archetype, one paragraph, voice, tags."""
    doc = apply_locale_overlay(unwrap_doc(npc.doc, "npc"), locale)
    style = doc.get("style") if isinstance(doc.get("style"), dict) else {}
    summary = doc.get("summary") or doc.get("description") or ""
    tags = [str(t) for t in (doc.get("tags") or [])][:NPC_MAX_TAGS]
    return {
        "id": npc.id,
        "ver": npc.version or None,
        "name": str(doc.get("display_name") or doc.get("name") or npc.id),
        "archetype": doc.get("archetype"),
        "summary": _first_paragraph(str(summary)),
        "style": {
            "voice": style.get("voice") or doc.get("voice"),
            "register": style.get("register") or doc.get("register"),
        },
        "tags": tags,
    }
