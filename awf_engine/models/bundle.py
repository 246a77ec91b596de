"""
Per-turn context bundle.

The assembler works on a plain dict (the injection map and budget
enforcer write into it by JSON pointer); this model is the structural
check run on the final dict before it leaves the assembler.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

REQUIRED_BUNDLE_KEYS: tuple[str, ...] = (
    "meta", "contract", "world", "adventure", "npcs",
    "player", "game_state", "rng", "input",
)


class BundleMeta(BaseModel):
    model_config = ConfigDict(extra="allow")

    engine_version: str
    world: str
    adventure: str
    turn_id: int
    is_first_turn: bool
    locale: str = "en-US"
    timestamp: str
    budgets: dict[str, Any] = Field(default_factory=dict)


class BundleContract(BaseModel):
    id: str
    version: str = ""
    hash: str = ""
    doc: dict[str, Any] = Field(default_factory=dict)


class NpcView(BaseModel):
    """Narration-safe compact NPC. Never the full NPC document."""

    id: str | None = None
    ver: str | None = None
    name: str
    archetype: str | None = None
    summary: str = ""
    style: dict[str, str | None] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)


class BundleNpcs(BaseModel):
    active: list[NpcView] = Field(default_factory=list)
    count: int = 0


class LoreSlice(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    content: str = ""
    tokens_est: int = 0


class BundleWorld(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: Any = ""
    custom: dict[str, Any] = Field(default_factory=dict)
    slice: list[LoreSlice] = Field(default_factory=list)


class BundleAdventure(BaseModel):
    model_config = ConfigDict(extra="allow")

    ref: str
    hash: str = ""
    custom: dict[str, Any] = Field(default_factory=dict)
    slice: list[LoreSlice] = Field(default_factory=list)
    start_hint: dict[str, Any] | None = None


class BundlePlayer(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = "default"
    name: str = "Player"
    traits: dict[str, Any] = Field(default_factory=dict)
    skills: dict[str, Any] = Field(default_factory=dict)
    inventory: list[Any] = Field(default_factory=list)


class BundleGameState(BaseModel):
    hot: dict[str, Any] = Field(default_factory=dict)
    warm: dict[str, Any] = Field(default_factory=dict)
    cold: dict[str, Any] = Field(default_factory=dict)


class BundleRng(BaseModel):
    seed: str
    policy: str = "deterministic"


class BundleInput(BaseModel):
    text: str
    timestamp: str


class Bundle(BaseModel):
    # Injection rules may add top-level keys.
    model_config = ConfigDict(extra="allow")

    meta: BundleMeta
    contract: BundleContract
    ruleset: dict[str, Any] | None = None
    world: BundleWorld
    adventure: BundleAdventure
    scenario: dict[str, Any] | None = None
    npcs: BundleNpcs
    player: BundlePlayer
    game_state: BundleGameState
    rng: BundleRng
    input: BundleInput


def validate_bundle_structure(doc: dict[str, Any]) -> list[str]:
    """Return structural errors for a bundle dict (empty list means valid)."""
    errors = [f"Missing required bundle key: {key}" for key in REQUIRED_BUNDLE_KEYS if key not in doc]
    if errors:
        return errors
    try:
        Bundle.model_validate(doc)
    except ValidationError as e:
        for err in e.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()))
            errors.append(f"{loc}: {err.get('msg', 'invalid')}")
    return errors
