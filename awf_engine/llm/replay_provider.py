"""Replays canned model replies; used by the dev CLI and offline runs."""

import json
import logging
from typing import Any

from .provider import ModelProvider, ModelResult, ToolCall, ToolCallHandler

logger = logging.getLogger(__name__)


class ReplayModelProvider(ModelProvider):
    """Returns scripted replies in order, cycling when exhausted.

    Each reply is either an AWF dict or raw text. A dict may carry a
    ``tool_calls`` list of ``{name, arguments}``; those are routed through
    the tool handler before the rest of the dict is returned as the reply.
    """

    def __init__(self, replies: list[Any]):
        super().__init__()
        if not replies:
            raise ValueError("ReplayModelProvider needs at least one reply")
        self.replies = list(replies)
        self._index = 0

    @property
    def name(self) -> str:
        return "replay"

    def get_default_model(self) -> str:
        return "replay"

    def _next(self) -> tuple[Any, list[dict[str, Any]]]:
        reply = self.replies[self._index % len(self.replies)]
        self._index += 1
        if isinstance(reply, dict) and "tool_calls" in reply:
            reply = dict(reply)
            return reply, reply.pop("tool_calls") or []
        return reply, []

    @staticmethod
    def _result(reply: Any, calls: list[ToolCall] | None = None) -> ModelResult:
        if isinstance(reply, str):
            try:
                parsed = json.loads(reply)
            except json.JSONDecodeError:
                parsed = None
            return ModelResult(raw=reply, json=parsed, tool_calls=calls or [], model="replay")
        return ModelResult(raw=json.dumps(reply), json=reply, tool_calls=calls or [], model="replay")

    async def infer(
        self,
        system: str,
        bundle: dict[str, Any],
        max_tokens: int = 1200,
        temperature: float = 0.4,
    ) -> ModelResult:
        reply, _ = self._next()
        return self._result(reply)

    async def infer_with_tools(
        self,
        system: str,
        bundle: dict[str, Any],
        tools: Any,
        on_tool_call: ToolCallHandler,
        max_tokens: int = 1200,
        temperature: float = 0.4,
    ) -> ModelResult:
        reply, requested = self._next()
        calls = []
        for item in requested:
            call = ToolCall(name=item.get("name", ""), arguments=item.get("arguments") or {})
            calls.append(call)
            await on_tool_call(call)
        if calls:
            logger.info(f"[replay] Routed {len(calls)} scripted tool call(s)")
        return self._result(reply, calls)
