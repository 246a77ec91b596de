"""Pydantic models shared across the turn pipeline."""

from .awf import AWF_ALLOWED_KEYS, AwfChoice, AwfReply
from .acts import Act, MalformedAct, UnknownAct, parse_act, parse_acts
from .budget import BudgetResult, ModelConfig, OutputBudgetCheck, Reduction
from .bundle import Bundle, NpcView, validate_bundle_structure
from .documents import AdventureDoc, SessionRecord, VersionedDocument, WorldDoc, parse_ref
from .game_state import GameRecord, GameState, MemoryEntry, TimeState
from .summary import ApplySummary

__all__ = [
    "AWF_ALLOWED_KEYS", "AwfChoice", "AwfReply",
    "Act", "MalformedAct", "UnknownAct", "parse_act", "parse_acts",
    "BudgetResult", "ModelConfig", "OutputBudgetCheck", "Reduction",
    "Bundle", "NpcView", "validate_bundle_structure",
    "AdventureDoc", "SessionRecord", "VersionedDocument", "WorldDoc", "parse_ref",
    "GameRecord", "GameState", "MemoryEntry", "TimeState",
    "ApplySummary",
]
