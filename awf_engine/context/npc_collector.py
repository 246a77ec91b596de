"""Collect the NPC refs a turn should carry."""

import logging
from typing import Any

from ..models.documents import parse_ref

logger = logging.getLogger(__name__)


def _refs_from_entries(entries: Any, key: str = "npc_ref", allow_strings: bool = True) -> list[str]:
    refs = []
    for entry in entries or []:
        if isinstance(entry, str) and allow_strings:
            refs.append(entry)
        elif isinstance(entry, dict) and isinstance(entry.get(key), str):
            refs.append(entry[key])
    return refs


def get_npc_cap(ruleset: dict[str, Any] | None) -> int | None:
    discipline = (ruleset or {}).get("token_discipline") or {}
    cap = discipline.get("npcs_active_cap")
    return cap if isinstance(cap, int) and cap >= 0 else None


def collect_npc_refs(
    game_state: dict[str, Any] | None,
    scenario: dict[str, Any] | None = None,
    adventure: dict[str, Any] | None = None,
    ruleset: dict[str, Any] | None = None,
) -> list[str]:
    """Union of NPC refs, in source priority order, de-duplicated by NPC id.

    Sources: game state (active NPCs, relationship keys, pinned NPC refs),
    scenario fixed NPCs, adventure cast, ruleset NPC lists. The ruleset's
    ``token_discipline.npcs_active_cap`` bounds the result.
    """
    hot = (game_state or {}).get("hot") or {}
    warm = (game_state or {}).get("warm") or {}
    candidates: list[str] = []
    candidates += _refs_from_entries(hot.get("active_npcs"))
    # REL_CHANGE writes hot.relations; authored saves may carry warm.relationships.
    for relationships in (warm.get("relationships"), hot.get("relations")):
        if isinstance(relationships, dict):
            candidates += [k for k in relationships if isinstance(k, str)]
    # Plain pin keys are memory pins, not NPCs.
    candidates += _refs_from_entries(warm.get("pins"), allow_strings=False)
    candidates += _refs_from_entries((scenario or {}).get("fixed_npcs"))
    candidates += _refs_from_entries((adventure or {}).get("cast"))
    for key in ("npcs", "npc_refs"):
        candidates += _refs_from_entries((ruleset or {}).get(key))

    seen: set[str] = set()
    refs: list[str] = []
    for ref in candidates:
        npc_id, _ = parse_ref(ref)
        if not npc_id or npc_id in seen:
            continue
        seen.add(npc_id)
        refs.append(ref)

    cap = get_npc_cap(ruleset)
    if cap is not None and len(refs) > cap:
        logger.debug(f"[NPCs] Capping {len(refs)} refs to ruleset cap {cap}")
        refs = refs[:cap]
    return refs
