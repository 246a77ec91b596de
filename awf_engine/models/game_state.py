"""Three-tier game state (hot / warm / cold) and the persisted game record."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class TimeState(BaseModel):
    band: str = "Dawn"
    ticks: int = 0


class Objective(BaseModel):
    id: str
    # Kept as a plain string so unknown statuses from older saves still load.
    status: str
    progress: int | float | None = None


class MemoryEntry(BaseModel):
    """One episodic memory. ``t`` is the turn index it was recorded on."""

    k: str
    note: str
    salience: float = Field(ge=0.0, le=1.0)
    t: int = 0
    tags: list[str] = Field(default_factory=list)


class HotState(BaseModel):
    """Mutated every turn."""

    model_config = ConfigDict(extra="allow")

    scene: str | None = None
    time: TimeState | None = None
    relations: dict[str, int | float] = Field(default_factory=dict)
    objectives: list[Objective] = Field(default_factory=list)
    flags: dict[str, Any] = Field(default_factory=dict)
    resources: dict[str, int | float] = Field(default_factory=dict)
    active_npcs: list[str] = Field(default_factory=list)


class WarmState(BaseModel):
    model_config = ConfigDict(extra="allow")

    episodic: list[MemoryEntry] = Field(default_factory=list)
    # Plain keys from PIN_ADD, or {"npc_ref": ...} entries written by authoring tools.
    pins: list[Any] = Field(default_factory=list)


class GameState(BaseModel):
    hot: HotState = Field(default_factory=HotState)
    warm: WarmState = Field(default_factory=WarmState)
    cold: dict[str, Any] = Field(default_factory=dict)


class GameRecord(BaseModel):
    """Persisted game row. ``version`` drives the optimistic commit check."""

    id: str
    world_ref: str
    adventure_ref: str
    scenario_ref: str | None = None
    ruleset_ref: str | None = None
    locale: str = "en-US"
    player_id: str | None = None
    turn_count: int = 0
    version: int = 0
    state: GameState = Field(default_factory=GameState)

    @property
    def is_first_turn(self) -> bool:
        return self.turn_count == 0
