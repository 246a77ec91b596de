"""
Versioned documents and the known-field views the assembler compacts.

World and adventure documents are authored freely; anything outside the
known allowlist is preserved verbatim in a ``custom`` bucket so new
authoring sections flow through without a schema change.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class VersionedDocument(BaseModel):
    """A document of record as returned by a repository."""

    id: str
    version: str = ""
    hash: str = ""
    doc: dict[str, Any] = Field(default_factory=dict)

    @property
    def ref(self) -> str:
        return f"{self.id}@{self.version}" if self.version else self.id


def parse_ref(ref: str) -> tuple[str, str | None]:
    """Split an ``id@version`` reference. Version is None when omitted."""
    if "@" not in ref:
        return ref, None
    doc_id, _, version = ref.partition("@")
    return doc_id, version or None


# ── Known-field views ──────────────────────────────────────────────────

# Authoring-only keys that never reach the bundle (policy, overlays).
DOCUMENT_CONTROL_FIELDS: frozenset[str] = frozenset({
    "i18n", "scene_slices", "default_slices",
})


class _KnownFieldsDoc(BaseModel):
    """Shared split of a raw document into known fields and ``custom``."""

    model_config = ConfigDict(extra="ignore")

    custom: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_doc(cls, doc: dict[str, Any]):
        known = {k: v for k, v in doc.items() if k in cls.model_fields and k != "custom"}
        custom = {
            k: v for k, v in doc.items()
            if k not in cls.model_fields and k not in DOCUMENT_CONTROL_FIELDS
        }
        if isinstance(doc.get("custom"), dict):
            custom = {**doc["custom"], **custom}
        return cls(**known, custom=custom)

    def to_bundle_dict(self) -> dict[str, Any]:
        """Known fields that are set, followed by ``custom``."""
        out = self.model_dump(exclude_none=True, exclude={"custom"})
        out["custom"] = dict(self.custom)
        return out


class WorldDoc(_KnownFieldsDoc):
    id: str
    name: Any = ""
    version: Any = None
    timeworld: Any = None
    bands: Any = None
    weather_states: Any = None
    weather_transition_bias: Any = None
    lexicon: Any = None
    identity_language: Any = None
    magic: Any = None
    essence_behavior: Any = None
    species_rules: Any = None
    factions_world: Any = None
    lore_index: Any = None
    tone: Any = None
    locations: Any = None
    slices: Any = None


class AdventureDoc(_KnownFieldsDoc):
    id: str
    name: Any = ""
    version: Any = None
    world_ref: str | None = None
    synopsis: Any = None
    cast: list[Any] | None = None
    acts: Any = None
    objectives: Any = None
    locations: Any = None
    tone: Any = None
    slices: Any = None


# ── Session / game records ─────────────────────────────────────────────

class SessionRecord(BaseModel):
    """Caller-owned session. May only override locale and ruleset."""

    session_id: str
    game_id: str
    player_id: str | None = None
    locale: str | None = None
    ruleset_ref: str | None = None
