"""Abstract model provider interface for the turn pipeline."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ToolCall:
    """One tool invocation requested by the model."""

    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    call_id: str = ""


@dataclass
class ModelResult:
    """Standard response from any model provider."""

    raw: str
    """The text content of the response."""

    json: Any = None
    """Parsed JSON of ``raw`` when the text parses, else None."""

    tool_calls: list[ToolCall] = field(default_factory=list)
    """Tool calls the model made while producing this result."""

    model: str = ""
    latency_ms: float = 0.0
    usage: dict[str, int] = field(default_factory=dict)
    """Token usage: {prompt_tokens, completion_tokens, total_tokens}."""


# The per-turn tool gate; returns a tools.ToolResult sent back to the model.
ToolCallHandler = Callable[[ToolCall], Awaitable[Any]]


class ModelProvider(ABC):
    """Abstract base class for the model behind a turn.

    Implementations must support:
    - plain inference over (system prompt, bundle)
    - inference with tools, routing every tool call through ``on_tool_call``
      and making at most one additional round trip to incorporate results
    """

    def __init__(
        self,
        api_key: str = "",
        default_model: str | None = None,
        max_retries: int = 2,
        base_delay: float = 2.0,
    ):
        self.api_key = api_key
        self.default_model = default_model or self.get_default_model()
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._client = None

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name (e.g., 'openai', 'replay')."""
        pass

    @abstractmethod
    def get_default_model(self) -> str:
        pass

    @abstractmethod
    async def infer(
        self,
        system: str,
        bundle: dict[str, Any],
        max_tokens: int = 1200,
        temperature: float = 0.4,
    ) -> ModelResult:
        """Single model call with the bundle as the user message.

        Raises:
            ModelError: provider failure after transient-error retries
        """
        pass

    @abstractmethod
    async def infer_with_tools(
        self,
        system: str,
        bundle: dict[str, Any],
        tools: Any,  # ToolRegistry
        on_tool_call: ToolCallHandler,
        max_tokens: int = 1200,
        temperature: float = 0.4,
    ) -> ModelResult:
        """Model call with tool definitions available.

        Every tool call the model emits goes through ``on_tool_call``; the
        provider then makes at most one more call to produce the final reply.
        """
        pass

    # ── Retry helper ──────────────────────────────────────────────

    @staticmethod
    def _is_retryable(exc: Exception) -> bool:
        """Check if an exception is a transient overload/rate-limit error.

        Works on SDK exception shapes without hard-importing the SDK.
        """
        cls_name = type(exc).__name__
        if cls_name in ("OverloadedError", "RateLimitError", "APITimeoutError"):
            return True

        status = getattr(exc, "status_code", None)
        if status in (429, 529):
            return True

        return False

    async def _run_with_retry(self, sync_fn: Callable[[], T]) -> T:
        """Run a blocking SDK call in an executor with backoff on overload.

        Usage:
            response = await self._run_with_retry(lambda: self._client.chat.completions.create(**kwargs))
        """
        loop = asyncio.get_running_loop()
        last_exc = None
        for attempt in range(self.max_retries + 1):
            try:
                return await loop.run_in_executor(None, sync_fn)
            except Exception as exc:
                if not self._is_retryable(exc) or attempt == self.max_retries:
                    raise
                last_exc = exc
                delay = self.base_delay * (2 ** attempt)
                logger.warning(
                    f"[{self.name}] {type(exc).__name__}, retrying in {delay:.0f}s "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                await asyncio.sleep(delay)
        raise last_exc  # unreachable

    # ── Client lifecycle ─────────────────────────────────────────

    def _ensure_client(self):
        """Ensure the client is initialized (lazy loading)."""
        if self._client is None:
            self._init_client()

    def _init_client(self):
        """Initialize the provider's client. Providers without one skip this."""
        pass
