"""Audit record of one act-application pass."""

from typing import Any

from pydantic import BaseModel, Field


class RelChange(BaseModel):
    npc: str
    delta: int | float
    new_val: int | float


class ObjectiveTransition(BaseModel):
    id: str
    prev: str | None = None
    next: str


class ResourceChange(BaseModel):
    key: str
    delta: int | float
    new_val: int | float


class TimeTransition(BaseModel):
    prev: dict[str, Any]
    next: dict[str, Any]
    added: int


class MemoryCounts(BaseModel):
    added: int = 0
    pinned: int = 0
    trimmed: int = 0


class ApplySummary(BaseModel):
    rel_changes: list[RelChange] = Field(default_factory=list)
    objectives: list[ObjectiveTransition] = Field(default_factory=list)
    flags: list[str] = Field(default_factory=list)
    resources: list[ResourceChange] = Field(default_factory=list)
    scene: str | None = None
    time: TimeTransition | None = None
    memory: MemoryCounts = Field(default_factory=MemoryCounts)
    violations: list[str] = Field(default_factory=list)

    def act_counts(self) -> dict[str, int]:
        """Per-category counts for metrics."""
        return {
            "rel_changes": len(self.rel_changes),
            "objectives": len(self.objectives),
            "flags": len(self.flags),
            "resources": len(self.resources),
            "memory_added": self.memory.added,
            "memory_pinned": self.memory.pinned,
            "memory_trimmed": self.memory.trimmed,
            "violations": len(self.violations),
        }
