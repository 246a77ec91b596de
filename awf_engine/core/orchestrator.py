"""
Turn Orchestrator.

Runs one turn through five phases:

    ASSEMBLE  - build the bundle (BundleAssembler)
    INFER     - call the model, with the GetLoreSlice tool under a per-turn quota
    VALIDATE  - check the AWF reply; one repair retry with a distinct prompt
    APPLY     - interpret acts and commit the new game state
    RESPOND   - map the reply to {txt, choices, meta{scn}}

Fatal failures come back as a TurnOutcome carrying a TurnError (kind and
phase) rather than an exception; ``TurnOutcome.unwrap()`` re-raises for
callers that prefer exceptions. Metrics and the structured turn log are
emitted on every path.
"""

import copy
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from ..config import BudgetConfig
from ..enums import RetryState, TurnPhase
from ..errors import AWFError, ApplyError, ModelError, NotFound, ValidationFailed
from ..llm.provider import ModelProvider, ModelResult
from ..llm.tools import LoreSliceTool, ToolRegistry, TurnToolGate
from ..metrics.collector import ActCounts, MetricsCollector, ToolCallCounts, TurnMetrics
from ..models.awf import AwfReply
from ..prompts.registry import PromptVersion, SystemPrompts
from .act_interpreter import ActInterpreter
from .assembler import AssembleResult, BundleAssembler
from .output_validator import LocaleOptions, unwrap_awf, validate_awf
from .state_transaction import TurnCommitter
from .turn import DryRunResult, ResponseChoice, ResponseMeta, TurnError, TurnOutcome, TurnResponse

logger = logging.getLogger(__name__)

CHARS_PER_OUTPUT_TOKEN = 4

# Unexpected exceptions are reported as the error kind of the phase they escaped from.
_PHASE_ERRORS: dict[TurnPhase, type[AWFError]] = {
    TurnPhase.ASSEMBLE: NotFound,
    TurnPhase.INFER: ModelError,
    TurnPhase.VALIDATE: ValidationFailed,
    TurnPhase.APPLY: ApplyError,
    TurnPhase.RESPOND: ValidationFailed,
}

InterpreterFactory = Callable[[AssembleResult], ActInterpreter]


@dataclass
class _TurnContext:
    """Mutable bookkeeping for one turn."""

    session_id: str
    phase: TurnPhase = TurnPhase.ASSEMBLE
    retry_state: RetryState = RetryState.INITIAL
    metrics: TurnMetrics = field(default_factory=TurnMetrics)
    gate: Optional[TurnToolGate] = None
    assembled: Optional[AssembleResult] = None
    prompt: Optional[PromptVersion] = None
    awf: Optional[dict[str, Any]] = None
    validation_errors: list[str] = field(default_factory=list)


class TurnOrchestrator:
    """Drives a turn from player input to committed state and response.

    Usage:
        orchestrator = TurnOrchestrator(assembler, provider, committer, metrics, prompts,
                                        lore_tool=LoreSliceTool(repos, cache))
        outcome = await orchestrator.run_turn("session-1", "I open the door")
        if outcome.ok:
            show(outcome.response)
    """

    def __init__(
        self,
        assembler: BundleAssembler,
        provider: ModelProvider,
        committer: TurnCommitter,
        metrics: MetricsCollector,
        prompts: SystemPrompts,
        lore_tool: Optional[LoreSliceTool] = None,
        config: Optional[BudgetConfig] = None,
        interpreter_factory: Optional[InterpreterFactory] = None,
    ):
        self.assembler = assembler
        self.provider = provider
        self.committer = committer
        self.metrics = metrics
        self.prompts = prompts
        self.config = config or assembler.config
        self.enforcer = assembler.enforcer
        self.interpreter_factory = interpreter_factory or self._default_interpreter

        self.tools: Optional[ToolRegistry] = None
        if lore_tool is not None:
            self.tools = ToolRegistry()
            self.tools.register(lore_tool.definition())

    # ── Public API ────────────────────────────────────────────────

    async def run_turn(self, session_id: str, input_text: str) -> TurnOutcome:
        start = time.perf_counter()
        ctx = _TurnContext(session_id=session_id)
        outcome = TurnOutcome(metrics=ctx.metrics)

        try:
            reply = await self._assemble_and_generate(ctx, input_text)

            ctx.phase = TurnPhase.APPLY
            assembled = ctx.assembled
            interpreter = self.interpreter_factory(assembled)
            applied = interpreter.apply_acts(
                reply.acts,
                assembled.game.state,
                is_first_turn=assembled.game.is_first_turn,
                turn_index=assembled.turn_id,
            )
            outcome.summary = applied.summary
            counts = applied.summary.act_counts()
            counts.pop("violations", None)
            ctx.metrics.act_summary = ActCounts(**counts)
            await self.committer.commit(assembled.game, applied.new_state)

            ctx.phase = TurnPhase.RESPOND
            outcome.response = self._respond(reply)
        except AWFError as e:
            self._fail(outcome, ctx, e)
        except Exception as e:
            error_cls = _PHASE_ERRORS[ctx.phase]
            logger.error(f"[Turn] Unexpected failure in {ctx.phase}: {e}", exc_info=e)
            wrapped = error_cls(f"Unexpected error: {e}", phase=ctx.phase)
            wrapped.__cause__ = e
            self._fail(outcome, ctx, wrapped)
        finally:
            outcome.retry_state = ctx.retry_state
            ctx.metrics.turn_latency_ms = (time.perf_counter() - start) * 1000
            self._emit(ctx, outcome.error)

        if outcome.ok:
            logger.info(
                f"[Turn] Session {session_id} turn {ctx.assembled.turn_id} done "
                f"({ctx.metrics.turn_latency_ms:.0f}ms, retries={ctx.metrics.validator_retries})"
            )
        return outcome

    async def run_turn_dry(self, session_id: str, input_text: str) -> DryRunResult:
        """Assemble, infer and validate without applying or persisting anything."""
        start = time.perf_counter()
        ctx = _TurnContext(session_id=session_id)
        error: Optional[TurnError] = None

        try:
            await self._assemble_and_generate(ctx, input_text)
        except AWFError as e:
            error = TurnError.from_exception(e, ctx.phase)
            logger.warning(f"[Turn] Dry run for {session_id} failed in {error.phase}: {e.message}")
        except Exception as e:
            logger.error(f"[Turn] Unexpected dry-run failure in {ctx.phase}: {e}", exc_info=e)
            error = TurnError.from_exception(_PHASE_ERRORS[ctx.phase](f"Unexpected error: {e}"), ctx.phase)

        ctx.metrics.turn_latency_ms = (time.perf_counter() - start) * 1000
        return DryRunResult(
            bundle=ctx.assembled.bundle if ctx.assembled else {},
            awf=ctx.awf,
            metrics=ctx.metrics,
            validation_errors=ctx.validation_errors,
            retry_state=ctx.retry_state,
            error=error,
        )

    # ── Phases ────────────────────────────────────────────────────

    async def _assemble_and_generate(self, ctx: _TurnContext, input_text: str) -> AwfReply:
        ctx.phase = TurnPhase.ASSEMBLE
        assembled = await self.assembler.assemble(ctx.session_id, input_text)
        ctx.assembled = assembled
        ctx.metrics.bundle_bytes = assembled.metrics.byte_size
        ctx.metrics.bundle_tokens_est = assembled.metrics.estimated_tokens

        ctx.phase = TurnPhase.INFER
        if self.tools is not None:
            ctx.gate = TurnToolGate(self.tools, self.config.tool_quota_per_turn)
            ctx.prompt = self.prompts.runtime_with_tools(self.config.tool_quota_per_turn)
        else:
            ctx.prompt = self.prompts.runtime()
        result = await self._infer(ctx, ctx.prompt.content, assembled.bundle, with_tools=True)

        locale_options = LocaleOptions(locale=assembled.bundle["meta"].get("locale") or "en-US")
        while True:
            ctx.phase = TurnPhase.VALIDATE
            awf = unwrap_awf(result.json if result.json is not None else result.raw)
            ctx.awf = awf
            report = validate_awf(awf, self.config, locale_options)
            if report.is_valid:
                ctx.retry_state = RetryState.ACCEPTED
                ctx.validation_errors = []
                ctx.metrics.validation_passed = True
                return report.reply

            ctx.validation_errors = report.messages
            if ctx.retry_state is RetryState.REPAIR_RETRY:
                ctx.retry_state = RetryState.FAILED
                raise ValidationFailed(
                    f"AWF reply invalid after repair retry: {'; '.join(report.messages)}",
                    errors=report.messages,
                    phase=TurnPhase.VALIDATE,
                )

            ctx.retry_state = RetryState.REPAIR_RETRY
            ctx.metrics.validator_retries += 1
            logger.warning(f"[Turn] AWF reply invalid ({len(report.errors)} errors), retrying with repair hint")

            repair_bundle = copy.deepcopy(assembled.bundle)
            repair_bundle["contract"]["val_hint"] = report.repair_hint
            ctx.phase = TurnPhase.INFER
            result = await self._infer(ctx, self.prompts.repair(report.repair_hint).content, repair_bundle, with_tools=False)

    async def _infer(self, ctx: _TurnContext, system: str, bundle: dict[str, Any], with_tools: bool) -> ModelResult:
        model_config = self.enforcer.get_model_config()
        started = time.perf_counter()
        try:
            if with_tools and ctx.gate is not None:
                result = await self.provider.infer_with_tools(
                    system, bundle, self.tools, ctx.gate,
                    max_tokens=model_config.max_tokens, temperature=model_config.temperature,
                )
            else:
                result = await self.provider.infer(
                    system, bundle, max_tokens=model_config.max_tokens, temperature=model_config.temperature,
                )
        except ModelError as e:
            e.with_phase(TurnPhase.INFER)
            raise
        except Exception as e:
            raise ModelError(f"Model call failed: {e}", phase=TurnPhase.INFER) from e
        finally:
            ctx.metrics.model_latency_ms += (time.perf_counter() - started) * 1000
            if ctx.gate is not None:
                stats = ctx.gate.stats
                ctx.metrics.tool_calls = ToolCallCounts(
                    count=stats.count,
                    denied=stats.denied,
                    errors=stats.errors,
                    tokens_returned=stats.tokens_returned,
                    cache_hits=stats.cache_hits,
                )

        output_tokens = math.ceil(len(result.raw or "") / CHARS_PER_OUTPUT_TOKEN)
        ctx.metrics.model_output_tokens_est = output_tokens
        check = self.enforcer.enforce_output_budget(result.raw, output_tokens)
        if not check.within_budget:
            logger.warning(f"[Turn] Model output is {check.estimated_tokens} tokens, limit {check.max_tokens}")
        return result

    @staticmethod
    def _respond(reply: AwfReply) -> TurnResponse:
        return TurnResponse(
            txt=reply.txt,
            choices=[ResponseChoice(id=c.id, label=c.label) for c in reply.choices],
            meta=ResponseMeta(scn=reply.scn),
        )

    def _default_interpreter(self, assembled: AssembleResult) -> ActInterpreter:
        return ActInterpreter(
            acts_map=assembled.acts_map,
            world_doc=assembled.world_doc,
            contract_doc=assembled.contract_doc,
            episodic_cap=self.config.episodic_cap,
        )

    # ── Failure + telemetry ───────────────────────────────────────

    def _fail(self, outcome: TurnOutcome, ctx: _TurnContext, error: AWFError) -> None:
        error.with_phase(ctx.phase)
        outcome.error = TurnError.from_exception(error, ctx.phase)
        outcome.cause = error
        outcome.response = None
        ctx.metrics.fallbacks_count = 1
        logger.warning(f"[Turn] Session {ctx.session_id} failed in {outcome.error.phase}: {error.message}")
        self.metrics.record_fallback(str(error.kind))

    def _emit(self, ctx: _TurnContext, error: Optional[TurnError]) -> None:
        self.metrics.record_turn(ctx.metrics)
        assembled = ctx.assembled
        entry = {
            "sessionId": ctx.session_id,
            "turnId": assembled.turn_id if assembled else None,
            "bundleTokens": ctx.metrics.bundle_tokens_est,
            "outputTokens": ctx.metrics.model_output_tokens_est,
            "retries": ctx.metrics.validator_retries,
            "reductions": [r.type.value for r in assembled.budget_result.reductions] if assembled else [],
            "actSummary": vars(ctx.metrics.act_summary),
            "toolCalls": vars(ctx.metrics.tool_calls),
            "retryState": str(ctx.retry_state),
            "promptHash": ctx.prompt.content_hash[:12] if ctx.prompt else None,
            "ok": error is None,
        }
        if error is not None:
            entry["error"] = {"kind": str(error.kind), "phase": str(error.phase)}
        self.metrics.record_structured_log(entry)
