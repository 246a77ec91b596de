"""
Token Budget Enforcer.

Runs a fixed reduction cascade over an assembled bundle dict, in place,
until it fits ``max_input_tokens``:

1. npc_trim      - drop active NPCs from the tail down to the floor
2. content_trim  - re-compact every lore slice to half its size
3. slice_trim    - drop lore slices one at a time, adventure first

Each stage runs at most once and only if the previous one left the
bundle over budget; savings are re-measured, never assumed. If the
cascade exhausts, the result says so and the caller must not send the
bundle.
"""

import logging
from typing import Any, Callable

from ..config import BudgetConfig, load_budget_config
from ..context.slice_compactor import compact_slice
from ..context.tokens import estimate_tokens
from ..enums import ReductionType
from ..models.budget import BudgetResult, ModelConfig, OutputBudgetCheck, Reduction

logger = logging.getLogger(__name__)

MIN_SLICE_TOKENS = 25


class TokenBudgetEnforcer:
    """Input/output token ceilings for one turn.

    Usage:
        enforcer = TokenBudgetEnforcer(load_budget_config())
        result = enforcer.enforce_input_budget(bundle_dict)
        if not result.within_budget:
            raise BudgetExceeded(...)
    """

    def __init__(self, config: BudgetConfig | None = None):
        self.config = config or load_budget_config()
        self._stages: list[tuple[ReductionType, Callable[[dict[str, Any], int], str | None]]] = [
            (ReductionType.NPC_TRIM, self._trim_npcs),
            (ReductionType.CONTENT_TRIM, self._compact_slices),
            (ReductionType.SLICE_TRIM, self._drop_slices),
        ]

    # ── Input ─────────────────────────────────────────────────────

    def enforce_input_budget(self, bundle: dict[str, Any], estimated_tokens: int | None = None) -> BudgetResult:
        max_tokens = self.config.max_input_tokens
        current = estimate_tokens(bundle) if estimated_tokens is None else estimated_tokens
        if current <= max_tokens:
            return BudgetResult(within_budget=True, final_tokens=current)

        logger.info(f"[Budget] Bundle is {current} tokens, limit {max_tokens}; reducing")
        reductions: list[Reduction] = []
        for reduction_type, stage in self._stages:
            before = estimate_tokens(bundle)
            description = stage(bundle, max_tokens)
            current = estimate_tokens(bundle)
            if description is not None:
                reductions.append(Reduction(
                    type=reduction_type,
                    description=description,
                    tokens_saved=max(0, before - current),
                ))
            if current <= max_tokens:
                logger.info(f"[Budget] Within budget after {reduction_type}: {current} tokens")
                return BudgetResult(within_budget=True, reductions=reductions, final_tokens=current)

        logger.warning(f"[Budget] Reduction cascade exhausted at {current} tokens (limit {max_tokens})")
        return BudgetResult(within_budget=False, reductions=reductions, final_tokens=current)

    def _trim_npcs(self, bundle: dict[str, Any], max_tokens: int) -> str | None:
        npcs = bundle.get("npcs")
        if not isinstance(npcs, dict) or not isinstance(npcs.get("active"), list):
            return None
        active = npcs["active"]
        floor = self.config.npc_floor
        start = len(active)
        # Lowest priority NPCs sit at the tail (collection order is priority order).
        while len(active) > floor and estimate_tokens(bundle) > max_tokens:
            active.pop()
            npcs["count"] = len(active)
        if len(active) == start:
            return None
        return f"Trimmed active NPCs from {start} to {len(active)} (floor {floor})"

    @staticmethod
    def _slice_lists(bundle: dict[str, Any]) -> list[tuple[str, list[dict[str, Any]]]]:
        lists = []
        for section in ("adventure", "world"):
            doc = bundle.get(section)
            if isinstance(doc, dict) and isinstance(doc.get("slice"), list):
                lists.append((section, doc["slice"]))
        return lists

    def _compact_slices(self, bundle: dict[str, Any], max_tokens: int) -> str | None:
        compacted = 0
        for _, slices in self._slice_lists(bundle):
            for i, item in enumerate(slices):
                content = item.get("content") if isinstance(item, dict) else None
                if not content:
                    continue
                tokens = estimate_tokens(content)
                target = max(MIN_SLICE_TOKENS, tokens // 2)
                if target >= tokens:
                    continue
                result = compact_slice(content, item.get("name", f"slice_{i}"), target, preserve_key_points=False)
                if result.token_count < tokens:
                    item["content"] = result.content
                    item["tokens_est"] = result.token_count
                    compacted += 1
        if not compacted:
            return None
        return f"Re-compacted {compacted} lore slice(s) to half size"

    def _drop_slices(self, bundle: dict[str, Any], max_tokens: int) -> str | None:
        dropped: list[str] = []
        for section, slices in self._slice_lists(bundle):
            while slices and estimate_tokens(bundle) > max_tokens:
                removed = slices.pop()
                dropped.append(f"{section}:{removed.get('name', '?') if isinstance(removed, dict) else '?'}")
            doc = bundle[section]
            if "inline" in doc and estimate_tokens(bundle) > max_tokens:
                del doc["inline"]
                dropped.append(f"{section}:inline")
            if estimate_tokens(bundle) <= max_tokens:
                break
        if not dropped:
            return None
        return f"Dropped lore slices: {', '.join(dropped)}"

    # ── Output ────────────────────────────────────────────────────

    def enforce_output_budget(self, output: Any, estimated_tokens: int | None = None) -> OutputBudgetCheck:
        """Pure measurement; the model is responsible for compliant output."""
        tokens = estimate_tokens(output) if estimated_tokens is None else estimated_tokens
        max_tokens = self.config.max_output_tokens
        return OutputBudgetCheck(within_budget=tokens <= max_tokens, estimated_tokens=tokens, max_tokens=max_tokens)

    def get_model_config(self) -> ModelConfig:
        return ModelConfig(
            max_tokens=self.config.model_max_output_tokens,
            temperature=self.config.model_temperature,
        )
