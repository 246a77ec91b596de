"""
Act Interpreter.

Applies the model's acts to a three-tier game state. ``apply_acts`` is
pure: it works on a deep copy of the prior state, reads no clock and no
randomness (the memory turn index is passed in), so the same acts on the
same state always produce the same result.

Every act kind resolves through the acts map to a (pointer, apply mode)
pair and each apply mode has exactly one handler. Both tables are
checked for totality at import. Contract rules on TIME_ADVANCE are
checked before anything is touched and abort the whole pass; problems
with individual acts are recorded as violations and the pass continues.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable

from pydantic import BaseModel

from ..enums import ActType, ApplyMode, ObjectiveStatus, TurnKind
from ..errors import ContractViolation
from ..models.acts import (
    Act,
    FlagSetAct,
    MalformedAct,
    MemoryAddAct,
    MemoryRemoveAct,
    MemoryTagAct,
    ObjectiveUpdateAct,
    PinAddAct,
    RelChangeAct,
    ResourceChangeAct,
    SceneSetAct,
    TimeAdvanceAct,
    UnknownAct,
    parse_act,
)
from ..models.game_state import GameState
from ..models.summary import ApplySummary, ObjectiveTransition, RelChange, ResourceChange, TimeTransition
from ..utils.pointer import get_at_pointer, set_at_pointer

logger = logging.getLogger(__name__)

NOTE_MAX_CHARS = 120
DEFAULT_EPISODIC_CAP = 60

# "<pointer>|<mode>" per act kind; injection-map documents may override entries.
DEFAULT_ACTS_MAP: dict[ActType, str] = {
    ActType.REL_CHANGE: "/game_state/hot/relations|merge_delta_by_npc",
    ActType.OBJECTIVE_UPDATE: "/game_state/hot/objectives|upsert_by_id",
    ActType.FLAG_SET: "/game_state/hot/flags|set_by_key",
    ActType.RESOURCE_CHANGE: "/game_state/hot/resources|merge_delta_by_key",
    ActType.SCENE_SET: "/game_state/hot/scene|set_value",
    ActType.TIME_ADVANCE: "/game_state/hot/time|add_number",
    ActType.MEMORY_ADD: "/game_state/warm/episodic|append_unique_by_key",
    ActType.PIN_ADD: "/game_state/warm/pins|add_unique",
    ActType.MEMORY_TAG: "/game_state/warm/episodic|tag_by_key",
    ActType.MEMORY_REMOVE: "/game_state/warm/episodic|remove_by_key",
}

if set(DEFAULT_ACTS_MAP) != set(ActType):
    raise RuntimeError(f"Acts map is missing {set(ActType) - set(DEFAULT_ACTS_MAP)}")


# ---------------------------------------------------------------------------
# Supporting types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ActTarget:
    pointer: str
    mode: ApplyMode

    @classmethod
    def parse(cls, entry: str) -> "ActTarget":
        pointer, sep, mode = entry.partition("|")
        if not sep or not pointer.startswith("/"):
            raise ValueError(f"Acts map entry must be '<pointer>|<mode>', got {entry!r}")
        return cls(pointer=pointer, mode=ApplyMode(mode))


def parse_acts_map(raw: dict[str, Any] | None) -> dict[ActType, ActTarget]:
    """Defaults overlaid with valid entries from an injection-map ``acts`` section."""
    targets = {act_type: ActTarget.parse(entry) for act_type, entry in DEFAULT_ACTS_MAP.items()}
    for key, entry in (raw or {}).items():
        try:
            targets[ActType(key)] = ActTarget.parse(entry)
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"[ActInterpreter] Ignoring acts map entry {key!r}: {e}")
    return targets


@dataclass(frozen=True)
class TimeBand:
    name: str
    max_ticks: int


DEFAULT_TIME_BANDS: tuple[TimeBand, ...] = (
    TimeBand("Dawn", 60),
    TimeBand("Morning", 60),
    TimeBand("Afternoon", 60),
    TimeBand("Evening", 60),
)


def world_time_bands(world_doc: dict[str, Any] | None) -> tuple[TimeBand, ...]:
    """Bands from ``time.bands``, ``timeworld.bands`` or ``bands``; defaults otherwise."""
    world_doc = world_doc or {}
    candidates = [
        get_at_pointer(world_doc, "/time/bands"),
        get_at_pointer(world_doc, "/timeworld/bands"),
        world_doc.get("bands"),
    ]
    for raw in candidates:
        if not isinstance(raw, list) or not raw:
            continue
        bands = []
        for band in raw:
            if not isinstance(band, dict) or not isinstance(band.get("name"), str):
                break
            ticks = band.get("maxTicks", band.get("max_ticks", band.get("ticks")))
            if not isinstance(ticks, int) or ticks < 1:
                break
            bands.append(TimeBand(band["name"], ticks))
        else:
            return tuple(bands)
    return DEFAULT_TIME_BANDS


def roll_time_bands(band: str, ticks: int, added: int, bands: tuple[TimeBand, ...]) -> tuple[str, int]:
    """Advance (band, ticks) by ``added``, wrapping cyclically through ``bands``."""
    index = next((i for i, b in enumerate(bands) if b.name == band), 0)
    total = ticks + added
    while total >= bands[index].max_ticks:
        total -= bands[index].max_ticks
        index = (index + 1) % len(bands)
    return bands[index].name, total


@dataclass(frozen=True)
class Scale:
    min: float
    baseline: float
    max: float

    def clamp(self, value: float) -> float:
        return max(self.min, min(self.max, value))


DEFAULT_RELATIONSHIP_SCALE = Scale(min=0, baseline=50, max=100)


def contract_scale(contract_doc: dict[str, Any] | None, name: str) -> Scale | None:
    for pointer in (f"/core/scales/{name}", f"/scales/{name}"):
        raw = get_at_pointer(contract_doc or {}, pointer)
        if isinstance(raw, dict) and all(isinstance(raw.get(k), (int, float)) for k in ("min", "max")):
            baseline = raw.get("baseline", (raw["min"] + raw["max"]) / 2)
            return Scale(min=raw["min"], baseline=baseline, max=raw["max"])
    return None


@dataclass
class ApplyResult:
    new_state: GameState
    summary: ApplySummary


def _expect(act: Act, variant: type) -> Any:
    if not isinstance(act, variant):
        raise ValueError(f"{act.type} cannot be applied in this mode")
    return act.data


def _container(root: dict[str, Any], pointer: str, factory: type) -> Any:
    value = get_at_pointer(root, pointer)
    if not isinstance(value, factory):
        value = factory()
        set_at_pointer(root, pointer, value)
    return value


# ---------------------------------------------------------------------------
# Interpreter
# ---------------------------------------------------------------------------

class ActInterpreter:
    """Applies acts under the turn's contract.

    Usage:
        interpreter = ActInterpreter(acts_map=injection_doc.get("acts"), world_doc=world)
        result = interpreter.apply_acts(acts, state, is_first_turn=False, turn_index=7)
    """

    def __init__(
        self,
        acts_map: dict[str, Any] | None = None,
        world_doc: dict[str, Any] | None = None,
        contract_doc: dict[str, Any] | None = None,
        episodic_cap: int = DEFAULT_EPISODIC_CAP,
        note_max_chars: int = NOTE_MAX_CHARS,
    ):
        self.targets = parse_acts_map(acts_map)
        self.bands = world_time_bands(world_doc)
        self.relationship_scale = contract_scale(contract_doc, "relationship") or DEFAULT_RELATIONSHIP_SCALE
        self.resource_scale = contract_scale(contract_doc, "resource")
        self.episodic_cap = episodic_cap
        self.note_max_chars = note_max_chars

    # ── Contract ──────────────────────────────────────────────────

    @staticmethod
    def turn_kind(is_first_turn: bool) -> TurnKind:
        return TurnKind.FIRST_TURN if is_first_turn else TurnKind.SUBSEQUENT_TURN

    def check_contract(self, acts: list[Act], is_first_turn: bool) -> None:
        """Raise ContractViolation when TIME_ADVANCE rules are broken."""
        time_advances = sum(1 for act in acts if act.type == ActType.TIME_ADVANCE)
        if self.turn_kind(is_first_turn) is TurnKind.FIRST_TURN:
            if time_advances:
                raise ContractViolation("TIME_ADVANCE acts are forbidden on first turn")
        elif time_advances != 1:
            raise ContractViolation(
                f"Exactly one TIME_ADVANCE act required on subsequent turns, found {time_advances}"
            )

    # ── Application ───────────────────────────────────────────────

    def apply_acts(
        self,
        acts: list[Act | dict[str, Any]],
        prior_state: GameState | dict[str, Any],
        *,
        is_first_turn: bool,
        turn_index: int,
    ) -> ApplyResult:
        parsed = [a if isinstance(a, BaseModel) else parse_act(a) for a in acts]
        self.check_contract(parsed, is_first_turn)

        if isinstance(prior_state, GameState):
            state_dict = prior_state.model_dump(mode="json")
        else:
            state_dict = GameState.model_validate(prior_state).model_dump(mode="json")
        root: dict[str, Any] = {"game_state": state_dict}
        summary = ApplySummary()

        for act in parsed:
            if isinstance(act, UnknownAct):
                self._violation(summary, f"Unknown act type: {act.type}")
                continue
            if isinstance(act, MalformedAct):
                self._violation(summary, f"Malformed {act.type} act: {act.error}")
                continue
            target = self.targets[ActType(act.type)]
            handler = _MODE_HANDLERS[target.mode]
            try:
                handler(self, root, target.pointer, act, summary, turn_index)
            except (ValueError, TypeError, KeyError) as e:
                self._violation(summary, f"Failed to apply act {act.type}: {e}")

        self._memory_hygiene(root, summary)
        new_state = GameState.model_validate(root["game_state"])
        logger.debug(
            f"[ActInterpreter] Applied {len(parsed)} acts "
            f"({len(summary.violations)} violations, {summary.memory.trimmed} memories trimmed)"
        )
        return ApplyResult(new_state=new_state, summary=summary)

    @staticmethod
    def _violation(summary: ApplySummary, message: str) -> None:
        summary.violations.append(message)
        logger.warning(f"[ActInterpreter] {message}")

    # ── Mode handlers ─────────────────────────────────────────────

    def _merge_delta_by_npc(self, root, pointer, act, summary, turn_index):
        data = _expect(act, RelChangeAct)
        relations = _container(root, pointer, dict)
        current = relations.get(data.npc, self.relationship_scale.baseline)
        new_val = self.relationship_scale.clamp(current + data.delta)
        relations[data.npc] = new_val
        summary.rel_changes.append(RelChange(npc=data.npc, delta=data.delta, new_val=new_val))

    def _merge_delta_by_key(self, root, pointer, act, summary, turn_index):
        data = _expect(act, ResourceChangeAct)
        resources = _container(root, pointer, dict)
        baseline = self.resource_scale.baseline if self.resource_scale else 0
        new_val = resources.get(data.key, baseline) + data.delta
        if self.resource_scale:
            new_val = self.resource_scale.clamp(new_val)
        resources[data.key] = new_val
        summary.resources.append(ResourceChange(key=data.key, delta=data.delta, new_val=new_val))

    def _upsert_by_id(self, root, pointer, act, summary, turn_index):
        data = _expect(act, ObjectiveUpdateAct)
        if data.status not in {s.value for s in ObjectiveStatus}:
            raise ValueError(f"Invalid objective status: {data.status}")
        objectives = _container(root, pointer, list)
        entry = {"id": data.id, "status": data.status, "progress": data.progress}
        for i, existing in enumerate(objectives):
            if isinstance(existing, dict) and existing.get("id") == data.id:
                prev = existing.get("status")
                objectives[i] = entry
                break
        else:
            prev = None
            objectives.append(entry)
        summary.objectives.append(ObjectiveTransition(id=data.id, prev=prev, next=data.status))

    def _set_by_key(self, root, pointer, act, summary, turn_index):
        data = _expect(act, FlagSetAct)
        flags = _container(root, pointer, dict)
        flags[data.key] = data.val
        summary.flags.append(data.key)

    def _set_value(self, root, pointer, act, summary, turn_index):
        data = _expect(act, SceneSetAct)
        set_at_pointer(root, pointer, data.scn)
        summary.scene = data.scn

    def _add_number(self, root, pointer, act, summary, turn_index):
        data = _expect(act, TimeAdvanceAct)
        if data.ticks < 1:
            raise ValueError("Time advancement must be at least 1 tick")
        time = get_at_pointer(root, pointer)
        if not isinstance(time, dict):
            time = {"band": self.bands[0].name, "ticks": 0}
        prev = {"band": time.get("band", self.bands[0].name), "ticks": time.get("ticks", 0)}
        band, ticks = roll_time_bands(prev["band"], prev["ticks"], data.ticks, self.bands)
        nxt = {"band": band, "ticks": ticks}
        set_at_pointer(root, pointer, nxt)
        summary.time = TimeTransition(prev=prev, next=nxt, added=data.ticks)

    def _append_unique_by_key(self, root, pointer, act, summary, turn_index):
        data = _expect(act, MemoryAddAct)
        episodic = _container(root, pointer, list)
        if any(isinstance(e, dict) and e.get("k") == data.k for e in episodic):
            return
        note = data.note
        if len(note) > self.note_max_chars:
            self._violation(summary, f"Note truncated for key {data.k}: {len(note)} chars")
            note = note[: self.note_max_chars - 3] + "..."
        episodic.append({
            "k": data.k,
            "note": note,
            "salience": data.salience,
            "t": turn_index,
            "tags": list(data.tags),
        })
        summary.memory.added += 1

    def _add_unique(self, root, pointer, act, summary, turn_index):
        data = _expect(act, PinAddAct)
        pins = _container(root, pointer, list)
        if data.key not in pins:
            pins.append(data.key)
            summary.memory.pinned += 1

    def _find_memory(self, root, pointer, key: str) -> tuple[list, int]:
        episodic = get_at_pointer(root, pointer)
        if isinstance(episodic, list):
            for i, entry in enumerate(episodic):
                if isinstance(entry, dict) and entry.get("k") == key:
                    return episodic, i
        raise ValueError(f"Memory key not found: {key}")

    def _tag_by_key(self, root, pointer, act, summary, turn_index):
        data = _expect(act, MemoryTagAct)
        episodic, index = self._find_memory(root, pointer, data.k)
        tags = [t for t in episodic[index].get("tags") or [] if t not in data.remove_tags]
        tags.extend(t for t in data.add_tags if t not in tags and t not in data.remove_tags)
        episodic[index]["tags"] = tags

    def _remove_by_key(self, root, pointer, act, summary, turn_index):
        data = _expect(act, MemoryRemoveAct)
        episodic, index = self._find_memory(root, pointer, data.k)
        del episodic[index]

    # ── Memory hygiene ────────────────────────────────────────────

    def _memory_hygiene(self, root: dict[str, Any], summary: ApplySummary) -> None:
        """Trim unpinned episodic memory to the cap: least salient, then oldest, first."""
        episodic = get_at_pointer(root, self.targets[ActType.MEMORY_ADD].pointer)
        if not isinstance(episodic, list) or len(episodic) <= self.episodic_cap:
            return
        pins = get_at_pointer(root, self.targets[ActType.PIN_ADD].pointer) or []
        pinned = {p for p in pins if isinstance(p, str)}

        candidates = sorted(
            (
                (entry.get("salience", 0), entry.get("t", 0), i)
                for i, entry in enumerate(episodic)
                if entry.get("k") not in pinned
            ),
        )
        excess = len(episodic) - self.episodic_cap
        evict = {i for _, _, i in candidates[:excess]}
        episodic[:] = [entry for i, entry in enumerate(episodic) if i not in evict]
        summary.memory.trimmed += len(evict)
        if len(evict) < excess:
            logger.warning(
                f"[ActInterpreter] Episodic memory still over cap ({len(episodic)}/{self.episodic_cap}): "
                f"remaining entries are pinned"
            )


_MODE_HANDLERS: dict[ApplyMode, Callable[..., None]] = {
    ApplyMode.MERGE_DELTA_BY_NPC: ActInterpreter._merge_delta_by_npc,
    ApplyMode.UPSERT_BY_ID: ActInterpreter._upsert_by_id,
    ApplyMode.SET_BY_KEY: ActInterpreter._set_by_key,
    ApplyMode.MERGE_DELTA_BY_KEY: ActInterpreter._merge_delta_by_key,
    ApplyMode.SET_VALUE: ActInterpreter._set_value,
    ApplyMode.ADD_NUMBER: ActInterpreter._add_number,
    ApplyMode.APPEND_UNIQUE_BY_KEY: ActInterpreter._append_unique_by_key,
    ApplyMode.ADD_UNIQUE: ActInterpreter._add_unique,
    ApplyMode.TAG_BY_KEY: ActInterpreter._tag_by_key,
    ApplyMode.REMOVE_BY_KEY: ActInterpreter._remove_by_key,
}

if set(_MODE_HANDLERS) != set(ApplyMode):
    raise RuntimeError(f"No handler for apply modes {set(ApplyMode) - set(_MODE_HANDLERS)}")
