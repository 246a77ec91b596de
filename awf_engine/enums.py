"""
Canonical string enumerations for the AWF engine.

StrEnum values serialize as plain strings, so they're drop-in
replacements for the raw literals found in model output, cache keys
and JSON documents.
"""

from enum import StrEnum


# ── Acts ───────────────────────────────────────────────────────────────

class ActType(StrEnum):
    """Closed vocabulary of act kinds the model may emit (uppercase, matches model output)."""
    REL_CHANGE = "REL_CHANGE"
    OBJECTIVE_UPDATE = "OBJECTIVE_UPDATE"
    FLAG_SET = "FLAG_SET"
    RESOURCE_CHANGE = "RESOURCE_CHANGE"
    SCENE_SET = "SCENE_SET"
    TIME_ADVANCE = "TIME_ADVANCE"
    MEMORY_ADD = "MEMORY_ADD"
    PIN_ADD = "PIN_ADD"
    MEMORY_TAG = "MEMORY_TAG"
    MEMORY_REMOVE = "MEMORY_REMOVE"


class ApplyMode(StrEnum):
    """How an act mutates the value found at its target pointer."""
    MERGE_DELTA_BY_NPC = "merge_delta_by_npc"
    UPSERT_BY_ID = "upsert_by_id"
    SET_BY_KEY = "set_by_key"
    MERGE_DELTA_BY_KEY = "merge_delta_by_key"
    SET_VALUE = "set_value"
    ADD_NUMBER = "add_number"
    APPEND_UNIQUE_BY_KEY = "append_unique_by_key"
    ADD_UNIQUE = "add_unique"
    TAG_BY_KEY = "tag_by_key"
    REMOVE_BY_KEY = "remove_by_key"


class ObjectiveStatus(StrEnum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"


# ── Turn Pipeline ──────────────────────────────────────────────────────

class TurnKind(StrEnum):
    """Derived from the game turn counter (0 = first turn)."""
    FIRST_TURN = "first_turn"
    SUBSEQUENT_TURN = "subsequent_turn"


class TurnPhase(StrEnum):
    """Ordered phases of one orchestrated turn."""
    ASSEMBLE = "assemble"
    INFER = "infer"
    VALIDATE = "validate"
    APPLY = "apply"
    RESPOND = "respond"


class RetryState(StrEnum):
    """Validation retry state machine: INITIAL -> REPAIR_RETRY -> ACCEPTED | FAILED."""
    INITIAL = "initial"
    REPAIR_RETRY = "repair_retry"
    ACCEPTED = "accepted"
    FAILED = "failed"


class ReductionType(StrEnum):
    """Stages of the input budget reduction cascade, in order."""
    NPC_TRIM = "npc_trim"
    CONTENT_TRIM = "content_trim"
    SLICE_TRIM = "slice_trim"


# ── Documents ──────────────────────────────────────────────────────────

class DocType(StrEnum):
    """Document kinds resolved by the assembler (values double as cache-key segments)."""
    CORE = "core"
    RULESET = "ruleset"
    WORLD = "world"
    ADVENTURE = "adv"
    ADVENTURE_START = "advstart"
    NPC = "npc"
    INJECTION_MAP = "injection_map"
    SCENARIO = "scenario"


class SliceScope(StrEnum):
    WORLD = "world"
    ADVENTURE = "adventure"
