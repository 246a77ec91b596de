"""System prompt management: versioned templates and turn prompt variants."""

from .registry import PromptRegistry, PromptVersion, SystemPrompts

__all__ = ["PromptRegistry", "PromptVersion", "SystemPrompts"]
