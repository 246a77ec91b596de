"""
Act vocabulary as a tagged union.

Each known act kind is its own model discriminated on ``type``. Anything
the model emits that does not parse lands in one of two fallback
variants so the interpreter can record it as a violation instead of
failing the turn:

- UnknownAct: a ``type`` outside the vocabulary (newer content, typos)
- MalformedAct: a known ``type`` whose ``data`` does not validate
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ..enums import ActType


# ── Payloads ───────────────────────────────────────────────────────────

class RelChangeData(BaseModel):
    npc: str
    delta: int | float


class ObjectiveUpdateData(BaseModel):
    id: str
    status: str
    progress: int | float | None = None


class FlagSetData(BaseModel):
    key: str
    val: Any = None


class ResourceChangeData(BaseModel):
    key: str
    delta: int | float


class SceneSetData(BaseModel):
    scn: str


class TimeAdvanceData(BaseModel):
    ticks: int


class MemoryAddData(BaseModel):
    k: str
    note: str
    salience: float = Field(ge=0.0, le=1.0)
    tags: list[str] = Field(default_factory=list)


class PinAddData(BaseModel):
    key: str


class MemoryTagData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    k: str
    add_tags: list[str] = Field(default_factory=list, alias="addTags")
    remove_tags: list[str] = Field(default_factory=list, alias="removeTags")


class MemoryRemoveData(BaseModel):
    k: str


# ── Variants ───────────────────────────────────────────────────────────

class RelChangeAct(BaseModel):
    type: Literal["REL_CHANGE"] = "REL_CHANGE"
    data: RelChangeData


class ObjectiveUpdateAct(BaseModel):
    type: Literal["OBJECTIVE_UPDATE"] = "OBJECTIVE_UPDATE"
    data: ObjectiveUpdateData


class FlagSetAct(BaseModel):
    type: Literal["FLAG_SET"] = "FLAG_SET"
    data: FlagSetData


class ResourceChangeAct(BaseModel):
    type: Literal["RESOURCE_CHANGE"] = "RESOURCE_CHANGE"
    data: ResourceChangeData


class SceneSetAct(BaseModel):
    type: Literal["SCENE_SET"] = "SCENE_SET"
    data: SceneSetData


class TimeAdvanceAct(BaseModel):
    type: Literal["TIME_ADVANCE"] = "TIME_ADVANCE"
    data: TimeAdvanceData


class MemoryAddAct(BaseModel):
    type: Literal["MEMORY_ADD"] = "MEMORY_ADD"
    data: MemoryAddData


class PinAddAct(BaseModel):
    type: Literal["PIN_ADD"] = "PIN_ADD"
    data: PinAddData


class MemoryTagAct(BaseModel):
    type: Literal["MEMORY_TAG"] = "MEMORY_TAG"
    data: MemoryTagData


class MemoryRemoveAct(BaseModel):
    type: Literal["MEMORY_REMOVE"] = "MEMORY_REMOVE"
    data: MemoryRemoveData


KnownAct = Annotated[
    Union[
        RelChangeAct, ObjectiveUpdateAct, FlagSetAct, ResourceChangeAct,
        SceneSetAct, TimeAdvanceAct, MemoryAddAct, PinAddAct,
        MemoryTagAct, MemoryRemoveAct,
    ],
    Field(discriminator="type"),
]


class UnknownAct(BaseModel):
    type: str
    data: Any = None


class MalformedAct(BaseModel):
    type: str
    error: str


Act = Union[
    RelChangeAct, ObjectiveUpdateAct, FlagSetAct, ResourceChangeAct,
    SceneSetAct, TimeAdvanceAct, MemoryAddAct, PinAddAct,
    MemoryTagAct, MemoryRemoveAct, UnknownAct, MalformedAct,
]

_known_act_adapter = TypeAdapter(KnownAct)
_KNOWN_TYPES = frozenset(t.value for t in ActType)


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    return f"{loc}: {err.get('msg', 'invalid')}" if loc else err.get("msg", "invalid")


def parse_act(raw: Any) -> Act:
    """Parse one raw act. Never raises."""
    if not isinstance(raw, dict):
        return MalformedAct(type="?", error="act must be an object")
    act_type = raw.get("type")
    if not isinstance(act_type, str):
        return MalformedAct(type="?", error="act type must be a string")
    if act_type not in _KNOWN_TYPES:
        return UnknownAct(type=act_type, data=raw.get("data"))
    try:
        return _known_act_adapter.validate_python(raw)
    except ValidationError as e:
        return MalformedAct(type=act_type, error=_first_error(e))


def parse_acts(raw_acts: list[Any] | None) -> list[Act]:
    return [parse_act(raw) for raw in (raw_acts or [])]
