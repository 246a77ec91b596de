"""OpenAI Chat Completions model provider."""

import json
import logging
import time
from typing import Any

from ..errors import ModelError
from .provider import ModelProvider, ModelResult, ToolCall, ToolCallHandler

logger = logging.getLogger(__name__)


class OpenAIModelProvider(ModelProvider):
    """OpenAI provider for AWF turns.

    The bundle is sent as pretty-printed JSON in the user message and the
    reply is requested in JSON mode. Transient errors (429/529) are
    retried with exponential backoff; anything else becomes ModelError.
    """

    def __init__(
        self,
        api_key: str,
        default_model: str | None = None,
        timeout_ms: int = 120000,
        max_retries: int = 2,
        base_delay: float = 2.0,
    ):
        super().__init__(api_key, default_model, max_retries=max_retries, base_delay=base_delay)
        self.timeout_ms = timeout_ms

    @property
    def name(self) -> str:
        return "openai"

    def get_default_model(self) -> str:
        return "gpt-4o-mini"

    def _init_client(self):
        """Initialize the OpenAI client (SDK retries off; ours apply)."""
        import openai
        self._client = openai.OpenAI(
            api_key=self.api_key,
            timeout=self.timeout_ms / 1000,
            max_retries=0,
        )

    @staticmethod
    def _messages(system: str, bundle: dict[str, Any]) -> list[dict[str, Any]]:
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": json.dumps(bundle, indent=2, ensure_ascii=False, default=str)},
        ]

    def _kwargs(self, messages: list[dict[str, Any]], max_tokens: int, temperature: float) -> dict[str, Any]:
        model_name = self.default_model
        # Newer reasoning models take max_completion_tokens and no temperature
        if "gpt-5" in model_name or "o1" in model_name:
            return {
                "model": model_name,
                "messages": messages,
                "max_completion_tokens": max_tokens,
                "response_format": {"type": "json_object"},
            }
        return {
            "model": model_name,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "response_format": {"type": "json_object"},
        }

    @staticmethod
    def _parse_json(raw: str) -> Any:
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"[openai] Failed to parse JSON response: {e}")
            return None

    @staticmethod
    def _add_usage(total: dict[str, int], response: Any) -> None:
        usage = getattr(response, "usage", None)
        if not usage:
            return
        total["prompt_tokens"] = total.get("prompt_tokens", 0) + (usage.prompt_tokens or 0)
        total["completion_tokens"] = total.get("completion_tokens", 0) + (usage.completion_tokens or 0)
        total["total_tokens"] = total.get("total_tokens", 0) + (usage.total_tokens or 0)

    async def _create(self, kwargs: dict[str, Any]) -> Any:
        try:
            return await self._run_with_retry(lambda: self._client.chat.completions.create(**kwargs))
        except Exception as e:
            raise ModelError(f"OpenAI completion failed for {kwargs.get('model')}: {e}") from e

    async def infer(
        self,
        system: str,
        bundle: dict[str, Any],
        max_tokens: int = 1200,
        temperature: float = 0.4,
    ) -> ModelResult:
        self._ensure_client()
        logger.info(f"[openai] Starting inference with model {self.default_model}")
        start = time.monotonic()

        usage: dict[str, int] = {}
        response = await self._create(self._kwargs(self._messages(system, bundle), max_tokens, temperature))
        self._add_usage(usage, response)

        raw = (response.choices[0].message.content or "") if response.choices else ""
        latency_ms = (time.monotonic() - start) * 1000
        logger.info(f"[openai] Inference completed in {latency_ms:.0f}ms")
        return ModelResult(
            raw=raw,
            json=self._parse_json(raw),
            model=self.default_model,
            latency_ms=latency_ms,
            usage=usage,
        )

    async def infer_with_tools(
        self,
        system: str,
        bundle: dict[str, Any],
        tools: Any,  # ToolRegistry
        on_tool_call: ToolCallHandler,
        max_tokens: int = 1200,
        temperature: float = 0.4,
    ) -> ModelResult:
        """One call with tools; if the model asks for tools, execute them
        through ``on_tool_call`` and make exactly one more call without tools."""
        self._ensure_client()
        logger.info(f"[openai] Starting tool-enabled inference with model {self.default_model}")
        start = time.monotonic()

        conversation = self._messages(system, bundle)
        usage: dict[str, int] = {}

        kwargs = self._kwargs(conversation, max_tokens, temperature)
        kwargs["tools"] = tools.to_openai_format()
        response = await self._create(kwargs)
        self._add_usage(usage, response)

        message = response.choices[0].message if response.choices else None
        calls: list[ToolCall] = []

        if message is not None and message.tool_calls:
            logger.info(f"[openai] Model requested {len(message.tool_calls)} tool call(s)")

            # Assistant message with tool_calls must precede the tool results
            conversation.append({
                "role": "assistant",
                "content": message.content or "",
                "tool_calls": [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.function.name, "arguments": tc.function.arguments},
                    }
                    for tc in message.tool_calls
                ],
            })

            for tc in message.tool_calls:
                try:
                    arguments = json.loads(tc.function.arguments) if tc.function.arguments else {}
                except json.JSONDecodeError:
                    arguments = {}
                call = ToolCall(name=tc.function.name, arguments=arguments, call_id=tc.id)
                calls.append(call)
                result = await on_tool_call(call)
                conversation.append({
                    "role": "tool",
                    "tool_call_id": tc.id,
                    "content": result.to_string(),
                })

            # The single extra round trip: no tools offered, so the model must answer
            response = await self._create(self._kwargs(conversation, max_tokens, temperature))
            self._add_usage(usage, response)
            message = response.choices[0].message if response.choices else None

        raw = (message.content or "") if message is not None else ""
        latency_ms = (time.monotonic() - start) * 1000
        logger.info(f"[openai] Tool-enabled inference completed in {latency_ms:.0f}ms with {len(calls)} tool call(s)")
        return ModelResult(
            raw=raw,
            json=self._parse_json(raw),
            tool_calls=calls,
            model=self.default_model,
            latency_ms=latency_ms,
            usage=usage,
        )
