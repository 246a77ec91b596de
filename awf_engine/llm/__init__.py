"""Model provider package - swappable model backends for AWF turns."""

from .openai_provider import OpenAIModelProvider
from .provider import ModelProvider, ModelResult, ToolCall
from .replay_provider import ReplayModelProvider
from .tools import (
    LoreSliceResult,
    LoreSliceTool,
    ToolCallStats,
    ToolDefinition,
    ToolParam,
    ToolRegistry,
    ToolResult,
    TurnToolGate,
)

__all__ = [
    "ModelProvider", "ModelResult", "ToolCall",
    "OpenAIModelProvider", "ReplayModelProvider",
    "LoreSliceResult", "LoreSliceTool", "ToolCallStats", "ToolDefinition",
    "ToolParam", "ToolRegistry", "ToolResult", "TurnToolGate",
]
