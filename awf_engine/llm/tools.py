"""
Tool infrastructure for model calls.

Provides a provider-agnostic registry for the tools a turn exposes to the
model, the ``GetLoreSlice`` tool itself, and the per-turn gate that
enforces the tool-call quota.

Usage:
    registry = ToolRegistry()
    lore = LoreSliceTool(repos, cache)
    registry.register(lore.definition())

    gate = TurnToolGate(registry, quota=2)
    result = await provider.infer_with_tools(system, bundle, registry, gate)
    gate.stats.denied  # calls refused this turn
"""

import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from ..cache.provider import SLICE_TTL_SEC, CacheKeyBuilder, CacheProvider
from ..context.doc_compactor import unwrap_doc
from ..context.slice_compactor import compact_slice, content_hash
from ..context.slice_policy import slice_contents
from ..context.tokens import estimate_tokens
from ..enums import SliceScope
from ..models.documents import parse_ref
from .provider import ToolCall

logger = logging.getLogger(__name__)

GET_LORE_SLICE = "GetLoreSlice"
DEFAULT_TOOL_SLICE_TOKENS = 350


# ---------------------------------------------------------------------------
# Core Types
# ---------------------------------------------------------------------------

@dataclass
class ToolParam:
    """A single parameter for a tool."""
    name: str
    type: str           # "str", "int", "float", "bool", "list"
    description: str
    required: bool = True
    default: Any = None
    enum: Optional[List[str]] = None  # For constrained string values


@dataclass
class ToolDefinition:
    """A tool the model can call.

    The handler may be a plain function or a coroutine function.
    """
    name: str
    description: str
    parameters: List[ToolParam]
    handler: Callable

    def get_required_params(self) -> List[str]:
        return [p.name for p in self.parameters if p.required]


@dataclass
class ToolResult:
    """Result from executing a tool."""
    tool_name: str
    arguments: Dict[str, Any]
    result: Any
    error: Optional[str] = None

    def to_string(self) -> str:
        """Convert result to a string for the model."""
        if self.error:
            return f"Error calling {self.tool_name}: {self.error}"

        if isinstance(self.result, BaseModel):
            return self.result.model_dump_json()
        if isinstance(self.result, (dict, list)):
            try:
                return json.dumps(self.result, default=str)
            except (TypeError, ValueError):
                return str(self.result)
        return str(self.result)


@dataclass
class ToolCallLog:
    """Log entry for a tool call (for debugging/tracing)."""
    tool_name: str
    arguments: Dict[str, Any]
    result_preview: str  # First 200 chars of result
    round_number: int


# ---------------------------------------------------------------------------
# Tool Registry
# ---------------------------------------------------------------------------

class ToolRegistry:
    """Register tools and convert them to the provider's native format.

    Handles:
    - Registration and lookup by name
    - Conversion to the OpenAI function schema
    - Safe execution with error handling
    """

    def __init__(self):
        self._tools: Dict[str, ToolDefinition] = {}
        self._call_log: List[ToolCallLog] = []

    def register(self, tool: ToolDefinition) -> None:
        """Register a tool. Overwrites if name already exists."""
        self._tools[tool.name] = tool
        logger.debug(f"[ToolRegistry] Registered tool: {tool.name}")

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def all_tools(self) -> List[ToolDefinition]:
        return list(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def call_log(self) -> List[ToolCallLog]:
        """Get the log of all tool calls made via execute()."""
        return self._call_log

    async def execute(self, tool_name: str, arguments: Dict[str, Any], round_number: int = 0) -> ToolResult:
        """Execute a tool by name with the given arguments.

        Returns ToolResult (never raises; errors are captured in the result).
        """
        tool = self._tools.get(tool_name)
        if not tool:
            result = ToolResult(
                tool_name=tool_name,
                arguments=arguments,
                result=None,
                error=f"Unknown tool: {tool_name}",
            )
            self._log(result, round_number)
            return result

        try:
            # Filter arguments to only those the handler accepts
            sig = inspect.signature(tool.handler)
            has_var_keyword = any(
                p.kind == inspect.Parameter.VAR_KEYWORD
                for p in sig.parameters.values()
            )
            if has_var_keyword:
                valid_args = dict(arguments)
            else:
                valid_args = {k: v for k, v in arguments.items() if k in sig.parameters}

            missing = [p for p in tool.get_required_params() if p not in valid_args]
            if missing:
                raise ValueError(f"Missing required argument(s): {', '.join(missing)}")

            output = tool.handler(**valid_args)
            if inspect.isawaitable(output):
                output = await output
            result = ToolResult(tool_name=tool_name, arguments=arguments, result=output)
            logger.info(f"[Tool] {tool_name}({arguments}) -> {str(output)[:100]}")

        except Exception as e:
            result = ToolResult(
                tool_name=tool_name,
                arguments=arguments,
                result=None,
                error=f"{type(e).__name__}: {e}",
            )
            logger.warning(f"[Tool] {tool_name} failed: {e}")

        self._log(result, round_number)
        return result

    def _log(self, result: ToolResult, round_number: int) -> None:
        self._call_log.append(ToolCallLog(
            tool_name=result.tool_name,
            arguments=result.arguments,
            result_preview=result.to_string()[:200],
            round_number=round_number,
        ))

    # -------------------------------------------------------------------
    # Provider Format Converters
    # -------------------------------------------------------------------

    def _param_type_to_json_schema(self, type_str: str) -> dict:
        """Convert our type strings to JSON Schema types."""
        mapping = {
            "str": {"type": "string"},
            "string": {"type": "string"},
            "int": {"type": "integer"},
            "integer": {"type": "integer"},
            "float": {"type": "number"},
            "number": {"type": "number"},
            "bool": {"type": "boolean"},
            "boolean": {"type": "boolean"},
            "list": {"type": "array", "items": {"type": "string"}},
        }
        return mapping.get(type_str.lower(), {"type": "string"})

    def _build_json_schema(self, tool: ToolDefinition) -> dict:
        """Build a JSON Schema object for a tool's parameters."""
        properties = {}
        required = []

        for param in tool.parameters:
            prop = self._param_type_to_json_schema(param.type)
            prop["description"] = param.description
            if param.enum:
                prop["enum"] = param.enum
            properties[param.name] = prop
            if param.required:
                required.append(param.name)

        schema = {"type": "object", "properties": properties}
        if required:
            schema["required"] = required
        return schema

    def to_openai_format(self) -> list:
        """Convert tools to OpenAI function calling format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": self._build_json_schema(tool),
                },
            }
            for tool in self._tools.values()
        ]


# ---------------------------------------------------------------------------
# GetLoreSlice
# ---------------------------------------------------------------------------

class LoreSliceResult(BaseModel):
    """Payload returned to the model for one lore slice request."""

    ref: str
    slice: str
    compact: str
    tokens_est: int = 0
    hash: str
    cached: bool = Field(default=False, exclude=True)


class LoreSliceTool:
    """Fetches one named slice of a world or adventure document, compacted
    to a token bound and cached by the slice's content hash."""

    def __init__(self, repos: Any, cache: CacheProvider, default_max_tokens: int = DEFAULT_TOOL_SLICE_TOKENS):
        self.repos = repos  # db.repositories.Repositories
        self.cache = cache
        self.default_max_tokens = default_max_tokens

    async def fetch(self, scope: str, ref: str, slice: str, max_tokens: int | None = None) -> LoreSliceResult:
        try:
            scope = SliceScope(scope)
        except ValueError:
            raise ValueError(f"scope must be one of {[s.value for s in SliceScope]}, got {scope!r}")
        max_tokens = int(max_tokens or self.default_max_tokens)

        try:
            repo = self.repos.worlds if scope == SliceScope.WORLD else self.repos.adventures
            doc = await repo.get_by_id_version(*parse_ref(ref))
        except Exception as e:
            logger.warning(f"[Tool] Lore lookup for {scope}/{ref} failed: {e}")
            return LoreSliceResult(
                ref=ref, slice=slice, compact=f"Error retrieving slice {slice}: {e}", hash="error",
            )

        content = None
        if doc is not None:
            content = slice_contents(unwrap_doc(doc.doc, str(scope))).get(slice)
        if content is None:
            compact = f"Slice {slice} not found in {scope} {ref}"
            return LoreSliceResult(
                ref=ref, slice=slice, compact=compact, tokens_est=estimate_tokens(compact), hash="not-found",
            )

        digest = content_hash(content)
        key = CacheKeyBuilder.slice(doc.id, doc.version, digest, f"{slice}@{max_tokens}")
        cached = await self.cache.get(key)
        if cached is not None:
            return LoreSliceResult.model_validate({**cached, "cached": True})

        compacted = compact_slice(content, slice, max_tokens)
        result = LoreSliceResult(
            ref=ref, slice=slice, compact=compacted.content, tokens_est=compacted.token_count, hash=digest,
        )
        await self.cache.set(key, result.model_dump(), ttl_sec=SLICE_TTL_SEC)
        return result

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=GET_LORE_SLICE,
            description="Retrieve a compact lore slice from world or adventure content",
            parameters=[
                ToolParam("scope", "str", "Whether to fetch from world or adventure content",
                          enum=[s.value for s in SliceScope]),
                ToolParam("ref", "str", "Reference ID of the world or adventure document"),
                ToolParam("slice", "str", "Name of the slice to retrieve"),
                ToolParam("max_tokens", "int",
                          f"Maximum tokens for the returned slice (default: {self.default_max_tokens})",
                          required=False),
            ],
            handler=self.fetch,
        )


# ---------------------------------------------------------------------------
# Per-turn quota
# ---------------------------------------------------------------------------

@dataclass
class ToolCallStats:
    count: int = 0
    denied: int = 0
    errors: int = 0
    tokens_returned: int = 0
    cache_hits: int = 0


@dataclass
class TurnToolGate:
    """Routes one turn's tool calls through the registry under a call quota.

    Calls past the quota are not executed; the model gets a stub result and
    the call counts as denied. Calls within the quota that fail count as
    errors.
    """

    registry: ToolRegistry
    quota: int
    stats: ToolCallStats = field(default_factory=ToolCallStats)
    calls: list[ToolCall] = field(default_factory=list)

    async def __call__(self, call: ToolCall) -> ToolResult:
        self.calls.append(call)
        attempt = len(self.calls)

        if attempt > self.quota:
            self.stats.denied += 1
            logger.info(f"[Tool] Quota exceeded ({attempt}/{self.quota}), denying {call.name}")
            return ToolResult(
                tool_name=call.name,
                arguments=call.arguments,
                result=LoreSliceResult(
                    ref=str(call.arguments.get("ref", "")),
                    slice=str(call.arguments.get("slice", "")),
                    compact=f"Tool call quota exceeded ({attempt}/{self.quota})",
                    hash="quota-exceeded",
                ),
            )

        result = await self.registry.execute(call.name, call.arguments, round_number=attempt)
        payload = result.result
        if result.error or getattr(payload, "hash", None) == "error":
            self.stats.errors += 1
            return result

        self.stats.count += 1
        self.stats.tokens_returned += int(getattr(payload, "tokens_est", 0) or 0)
        if getattr(payload, "cached", False):
            self.stats.cache_hits += 1
        return result
