"""
Bundle Assembler.

Builds the per-turn context bundle the model sees:

1. resolve session + game record (the game is the source of truth for
   world / adventure / scenario refs; the session may override locale
   and ruleset)
2. load ruleset, core contract, world, adventure, adventure-start and
   injection map concurrently, then the NPC documents in one batch
3. compact world / adventure / NPCs / lore slices, cache-first on the
   document's content hash (each slice on its own text's hash)
4. compose the bundle, run the injection map, enforce the input budget
5. validate the structure and measure it

Usage:
    assembler = BundleAssembler(AssemblerDeps(repos, store, cache, config, metrics))
    result = await assembler.assemble("session-1", "I look around")
    model_input = result.bundle
"""

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel

from .. import ENGINE_VERSION
from ..cache.provider import DOCUMENT_TTL_SEC, SLICE_TTL_SEC, CacheKeyBuilder, CacheProvider
from ..config import BudgetConfig, load_budget_config
from ..context.doc_compactor import apply_locale_overlay, compact_adventure, compact_npc, compact_world, unwrap_doc
from ..context.injection_map import InjectionResult, execute_injection_map
from ..context.npc_collector import collect_npc_refs
from ..context.slice_compactor import compact_slice, content_hash, create_inline_summaries
from ..context.slice_policy import DEFAULT_ADVENTURE_SLICES, DEFAULT_WORLD_SLICES, select_slices, slice_contents
from ..context.tokens import byte_size, estimate_tokens
from ..db.repositories import DocumentRepository, GameStore, Repositories
from ..enums import DocType
from ..errors import BudgetExceeded, NotFound, ValidationFailed
from ..metrics.collector import MetricsCollector
from ..models.budget import BudgetResult
from ..models.bundle import validate_bundle_structure
from ..models.documents import SessionRecord, VersionedDocument, parse_ref
from ..models.game_state import GameRecord
from .budget import TokenBudgetEnforcer

logger = logging.getLogger(__name__)

DEFAULT_LOCALE = "en-US"
INLINE_SUMMARY_MAX_TOKENS = 50


class BundleMetrics(BaseModel):
    byte_size: int
    estimated_tokens: int
    npc_count: int
    slice_count: int
    build_time_ms: float


@dataclass
class AssemblerDeps:
    """Everything the assembler reads from, constructed by the host."""

    repos: Repositories
    games: GameStore
    cache: CacheProvider
    config: BudgetConfig = field(default_factory=load_budget_config)
    metrics: Optional[MetricsCollector] = None


@dataclass
class AssembleResult:
    """The bundle plus the resolved documents later phases need."""

    bundle: dict[str, Any]
    metrics: BundleMetrics
    budget_result: BudgetResult
    game: GameRecord
    session: SessionRecord
    turn_id: int
    world_doc: dict[str, Any] = field(default_factory=dict)
    contract_doc: dict[str, Any] = field(default_factory=dict)
    acts_map: dict[str, Any] | None = None
    injection: InjectionResult | None = None


def generate_rng_seed(session_id: str, turn_id: int) -> str:
    """Deterministic per-turn seed: first 16 hex chars of sha256("session:turn")."""
    return hashlib.sha256(f"{session_id}:{turn_id}".encode("utf-8")).hexdigest()[:16]


def default_player(player_id: str | None) -> dict[str, Any]:
    return {
        "id": player_id or "default",
        "name": "Player",
        "traits": {},
        "skills": {},
        "inventory": [],
    }


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class BundleAssembler:
    """Assembles the AWF bundle for one turn."""

    def __init__(self, deps: AssemblerDeps):
        self.repos = deps.repos
        self.games = deps.games
        self.cache = deps.cache
        self.config = deps.config
        self.metrics = deps.metrics
        self.enforcer = TokenBudgetEnforcer(deps.config)

    # ── Public API ────────────────────────────────────────────────

    async def assemble(self, session_id: str, input_text: str) -> AssembleResult:
        start = time.perf_counter()
        logger.info(f"[Assembler] Assembling bundle for session {session_id}")

        session, game = await self._load_session(session_id)
        locale = session.locale or game.locale or DEFAULT_LOCALE
        ruleset_ref = session.ruleset_ref or game.ruleset_ref
        turn_id = game.turn_count + 1
        is_first_turn = game.is_first_turn

        world_id, world_version = parse_ref(game.world_ref)
        adventure_id, adventure_version = parse_ref(game.adventure_ref)

        ruleset, contract, world, adventure, adventure_start, injection_doc, scenario = await asyncio.gather(
            self._load_ruleset(ruleset_ref),
            self.repos.core_contracts.get_active(),
            self.repos.worlds.get_by_id_version(world_id, world_version),
            self.repos.adventures.get_by_id_version(adventure_id, adventure_version),
            (
                self.repos.adventure_starts.get_by_id_version(adventure_id, adventure_version)
                if is_first_turn else _none()
            ),
            self.repos.injection_maps.get_active(),
            self._load_optional(self.repos.scenarios, game.scenario_ref),
        )

        if contract is None:
            raise NotFound("No active core contract found")
        if world is None:
            raise NotFound(f"World {game.world_ref} not found", details={"ref": game.world_ref})
        if adventure is None:
            raise NotFound(f"Adventure {game.adventure_ref} not found", details={"ref": game.adventure_ref})
        if injection_doc is None:
            logger.warning("[Assembler] No active injection map, using the default bundle layout")

        world_view, adventure_view = await asyncio.gather(
            self._compacted(DocType.WORLD, world, locale),
            self._compacted(DocType.ADVENTURE, adventure, locale),
        )
        world_raw = apply_locale_overlay(unwrap_doc(world.doc, "world"), locale)
        adventure_raw = apply_locale_overlay(unwrap_doc(adventure.doc, "adventure"), locale)

        scene = game.state.hot.scene
        world_slices, adventure_slices = await asyncio.gather(
            self._slices(world, world_raw, scene, DEFAULT_WORLD_SLICES, locale),
            self._slices(adventure, adventure_raw, scene, DEFAULT_ADVENTURE_SLICES, locale),
        )

        state_dict = game.state.model_dump(mode="json")
        scenario_doc = scenario.doc if scenario else None
        ruleset_doc = ruleset.doc if ruleset else None
        npc_refs = collect_npc_refs(state_dict, scenario_doc, adventure_raw, ruleset_doc)
        npcs = await self._load_npcs(npc_refs, locale)

        player = default_player(session.player_id or game.player_id)
        timestamp = _now_iso()

        bundle: dict[str, Any] = {
            "meta": {
                "engine_version": ENGINE_VERSION,
                "world": game.world_ref,
                "adventure": game.adventure_ref,
                "turn_id": turn_id,
                "is_first_turn": is_first_turn,
                "locale": locale,
                "timestamp": timestamp,
                "budgets": {
                    "max_input_tokens": self.config.max_input_tokens,
                    "max_output_tokens": self.config.max_output_tokens,
                    "max_txt_sentences": self.config.max_txt_sentences,
                    "max_choices": self.config.max_choices,
                    "max_acts": self.config.max_acts,
                },
            },
            "contract": {
                "id": contract.id,
                "version": contract.version,
                "hash": contract.hash,
                "doc": contract.doc,
            },
            "ruleset": ruleset_doc,
            "world": {**world_view, "slice": world_slices},
            "adventure": {
                **adventure_view,
                "slice": adventure_slices,
                "start_hint": self._start_hint(adventure_start) if is_first_turn else None,
            },
            "scenario": scenario_doc,
            "npcs": {"active": npcs, "count": len(npcs)},
            "player": player,
            "game_state": state_dict,
            "rng": {"seed": generate_rng_seed(session_id, turn_id), "policy": "deterministic"},
            "input": {"text": input_text, "timestamp": timestamp},
        }

        if self.config.inline_slice_summaries:
            inline = create_inline_summaries(
                [s["content"] for s in world_slices],
                [s["content"] for s in adventure_slices],
                INLINE_SUMMARY_MAX_TOKENS,
            )
            bundle["world"]["inline"] = inline["world"]["inline"]
            bundle["adventure"]["inline"] = inline["adventure"]["inline"]

        injection: InjectionResult | None = None
        if injection_doc is not None:
            context = {
                "world": world_raw,
                "adventure": adventure_raw,
                "scenario": scenario_doc,
                "npcs": npcs,
                "contract": contract.doc,
                "ruleset": ruleset_doc,
                "player": player,
                "game": game.model_dump(mode="json"),
                "session": session.model_dump(mode="json"),
            }
            injection = execute_injection_map(
                injection_doc.doc, context, bundle, validate=validate_bundle_structure,
            )
            logger.debug(
                f"[Assembler] Injection map {injection_doc.ref}: "
                f"{injection.applied_rules} applied, {injection.skipped_rules} skipped"
            )

        budget_result = self.enforcer.enforce_input_budget(bundle)
        if not budget_result.within_budget:
            raise BudgetExceeded(
                f"Bundle is {budget_result.final_tokens} tokens after reductions, "
                f"limit {self.config.max_input_tokens}",
                details={"reductions": [r.model_dump(mode="json") for r in budget_result.reductions]},
            )

        errors = validate_bundle_structure(bundle)
        if errors:
            raise ValidationFailed(f"Bundle validation failed: {'; '.join(errors)}", errors=errors)

        build_ms = (time.perf_counter() - start) * 1000
        metrics = BundleMetrics(
            byte_size=byte_size(bundle),
            estimated_tokens=budget_result.final_tokens,
            npc_count=bundle["npcs"]["count"],
            slice_count=len(bundle["world"]["slice"]) + len(bundle["adventure"]["slice"]),
            build_time_ms=round(build_ms, 2),
        )
        if self.metrics is not None:
            self.metrics.record_bundle_assembly(metrics.byte_size, metrics.estimated_tokens, build_ms)

        logger.info(
            f"[Assembler] Bundle ready: session={session_id} turn={turn_id} first={is_first_turn} "
            f"bytes={metrics.byte_size} tokens={metrics.estimated_tokens} npcs={metrics.npc_count} "
            f"slices={metrics.slice_count} ({metrics.build_time_ms:.0f}ms)"
        )

        return AssembleResult(
            bundle=bundle,
            metrics=metrics,
            budget_result=budget_result,
            game=game,
            session=session,
            turn_id=turn_id,
            world_doc=world_raw,
            contract_doc=contract.doc,
            acts_map=(injection_doc.doc.get("acts") if injection_doc else None),
            injection=injection,
        )

    # ── Loading ───────────────────────────────────────────────────

    async def _load_session(self, session_id: str) -> tuple[SessionRecord, GameRecord]:
        session = await self.games.get_session(session_id)
        if session is None:
            raise NotFound(f"Session {session_id} not found", details={"session_id": session_id})
        game = await self.games.get_game(session.game_id)
        if game is None:
            raise NotFound(
                f"Game state {session.game_id} for session {session_id} not found",
                details={"session_id": session_id, "game_id": session.game_id},
            )
        return session, game

    async def _load_ruleset(self, ruleset_ref: str | None) -> VersionedDocument | None:
        if ruleset_ref:
            ruleset = await self._load_optional(self.repos.rulesets, ruleset_ref)
            if ruleset is None:
                logger.warning(f"[Assembler] Ruleset {ruleset_ref} not found, falling back to the active ruleset")
            else:
                return ruleset
        return await self.repos.rulesets.get_active()

    @staticmethod
    async def _load_optional(repo: DocumentRepository, ref: str | None) -> VersionedDocument | None:
        if not ref:
            return None
        return await repo.get_by_id_version(*parse_ref(ref))

    async def _load_npcs(self, refs: list[str], locale: str) -> list[dict[str, Any]]:
        if not refs:
            return []
        docs = await self.repos.npcs.list_by_ids(refs)
        if len(docs) < len(refs):
            found = {d.id for d in docs}
            missing = [r for r in refs if parse_ref(r)[0] not in found]
            logger.warning(f"[Assembler] NPC refs not found: {missing}")
        return [compact_npc(doc, locale) for doc in docs]

    # ── Compaction (cache-first) ──────────────────────────────────

    async def _compacted(self, doc_type: DocType, doc: VersionedDocument, locale: str) -> dict[str, Any]:
        # Views are locale specific, so the locale rides in the version segment.
        key = CacheKeyBuilder.document(doc_type, doc.id, f"{doc.version}~{locale}", doc.hash)
        cached = await self.cache.get(key)
        if cached is not None:
            logger.debug(f"[Cache] Hit {key}")
            return cached

        if doc_type == DocType.WORLD:
            view = compact_world(doc, locale)
        else:
            view = compact_adventure(doc, locale)
        await self.cache.set(key, view, DOCUMENT_TTL_SEC)
        return view

    async def _slices(
        self,
        doc: VersionedDocument,
        raw: dict[str, Any],
        scene: str | None,
        defaults: tuple[str, ...],
        locale: str,
    ) -> list[dict[str, Any]]:
        contents = slice_contents(raw)
        slices = []
        for name in select_slices(raw, scene, defaults):
            # Keyed on the overlaid slice text, so editing one slice leaves its siblings cached.
            key = CacheKeyBuilder.slice(doc.id, f"{doc.version}~{locale}", content_hash(contents[name]), name)
            cached = await self.cache.get(key)
            if cached is None:
                compacted = compact_slice(contents[name], name, self.config.slice_max_tokens)
                cached = {"name": name, "content": compacted.content, "tokens_est": compacted.token_count}
                await self.cache.set(key, cached, SLICE_TTL_SEC)
            slices.append(dict(cached))
        return slices

    @staticmethod
    def _start_hint(adventure_start: VersionedDocument | None) -> dict[str, Any] | None:
        if adventure_start is None:
            return None
        start = adventure_start.doc.get("start")
        if not isinstance(start, dict):
            logger.warning(f"[Assembler] Adventure start {adventure_start.ref} has no 'start' section")
            return None
        return {
            "scene": start.get("scene"),
            "description": start.get("description") or "",
            "initial_state": start.get("initial_state"),
        }


async def _none() -> None:
    return None
