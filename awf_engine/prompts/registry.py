"""Prompt Registry for the AWF engine.

Treats system prompts as versioned artifacts:
- Discovery of every .md file in prompts/templates/
- Content-hash versioning (SHA-256 fingerprint per prompt)
- Hot reload support for prompt tuning (re-read files on each get())
- Fragment composition ({placeholder} injection)

Usage:
    registry = PromptRegistry()
    prompts = SystemPrompts(registry, budget_config)
    system = prompts.runtime_with_tools(tool_quota=2)
    print(system.content_hash)  # recorded with the turn
"""

import hashlib
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from ..config import BudgetConfig
from ..enums import ActType

logger = logging.getLogger(__name__)

_TEMPLATES_DIR = Path(__file__).parent / "templates"

RUNTIME = "awf_runtime"
RUNTIME_WITH_TOOLS = "awf_runtime_with_tools"
REPAIR = "awf_repair"


@dataclass(frozen=True)
class PromptVersion:
    """An immutable, versioned snapshot of a prompt.

    Attributes:
        name: Prompt identifier (e.g., "awf_runtime")
        content: Raw prompt text (after frontmatter stripped)
        content_hash: SHA-256 hex digest of content
        source: Origin path or identifier
        metadata: Parsed YAML frontmatter (if present)
        loaded_at: When this version was loaded
    """

    name: str
    content: str
    content_hash: str
    source: str
    metadata: dict[str, Any] = field(default_factory=dict)
    loaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __len__(self) -> int:
        """Token-rough estimate: word count."""
        return len(self.content.split())


def _compute_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _parse_frontmatter(raw: str) -> tuple[dict[str, Any], str]:
    """Split optional YAML frontmatter from a markdown prompt.

    Returns:
        (metadata_dict, content_without_frontmatter)
    """
    if not raw.startswith("---"):
        return {}, raw.strip()

    end = raw.find("---", 3)
    if end == -1:
        return {}, raw.strip()

    try:
        metadata = yaml.safe_load(raw[3:end]) or {}
    except yaml.YAMLError as e:
        logger.warning(f"[PromptRegistry] Bad frontmatter, ignoring it: {e}")
        metadata = {}
    if not isinstance(metadata, dict):
        metadata = {}
    return metadata, raw[end + 3:].strip()


class PromptRegistry:
    """Registry for the system prompts a turn can use."""

    def __init__(self, prompts_dir: Path | None = None, hot_reload: bool = False):
        """
        Args:
            prompts_dir: Override for the templates directory
            hot_reload: If True, re-read files on every get() call
        """
        self._prompts_dir = prompts_dir or _TEMPLATES_DIR
        self._hot_reload = hot_reload
        self._cache: dict[str, PromptVersion] = {}
        self._inline_prompts: set[str] = set()
        self._discover()

    def _discover(self) -> None:
        if not self._prompts_dir.exists():
            logger.warning(f"[PromptRegistry] Prompts directory not found: {self._prompts_dir}")
            return
        count = 0
        for md_file in sorted(self._prompts_dir.glob("*.md")):
            self._load_file(md_file.stem, md_file)
            count += 1
        logger.info(f"[PromptRegistry] Discovered {count} prompt files")

    def _load_file(self, name: str, path: Path) -> PromptVersion:
        metadata, content = _parse_frontmatter(path.read_text(encoding="utf-8"))
        version = PromptVersion(
            name=name,
            content=content,
            content_hash=_compute_hash(content),
            source=f"file:{path.name}",
            metadata=metadata,
        )
        self._cache[name] = version
        return version

    def register_inline(self, name: str, content: str, source: str = "") -> PromptVersion:
        """Register a prompt from a Python string (tests, embedding hosts)."""
        content = content.strip()
        version = PromptVersion(
            name=name,
            content=content,
            content_hash=_compute_hash(content),
            source=source or f"inline:{name}",
        )
        self._cache[name] = version
        self._inline_prompts.add(name)
        return version

    def get(self, name: str) -> PromptVersion:
        """Get a prompt by name.

        Raises:
            KeyError: If prompt name not found
        """
        if self._hot_reload and name not in self._inline_prompts:
            path = self._prompts_dir / f"{name}.md"
            if path.exists():
                return self._load_file(name, path)

        if name in self._cache:
            return self._cache[name]

        raise KeyError(f"Prompt '{name}' not found. Available: {sorted(self._cache.keys())}")

    def get_hash(self, name: str) -> str:
        return self.get(name).content_hash

    def get_composed(self, name: str, **fragments: Any) -> PromptVersion:
        """Load a base prompt and replace {fragment} placeholders.

        Returns a new PromptVersion whose hash covers the composed text.
        """
        base = self.get(name)
        composed = base.content
        for key, value in fragments.items():
            composed = composed.replace("{" + key + "}", str(value))

        unfilled = re.findall(r"\{(\w+)\}", composed)
        if unfilled:
            logger.debug(f"[PromptRegistry] Unfilled placeholders in '{name}': {unfilled}")

        return PromptVersion(
            name=f"{name}:composed",
            content=composed,
            content_hash=_compute_hash(composed),
            source=base.source,
            metadata=base.metadata,
        )

    def list_names(self) -> list[str]:
        return sorted(self._cache.keys())

    def diff_hash(self, name: str, old_hash: str) -> bool:
        """True if the prompt's content changed since ``old_hash``."""
        return self.get(name).content_hash != old_hash

    def summary(self) -> dict[str, Any]:
        prompts = sorted(self._cache.values(), key=lambda p: p.name)
        return {
            "total_prompts": len(prompts),
            "prompts": [
                {"name": p.name, "hash": p.content_hash[:12], "source": p.source, "words": len(p)}
                for p in prompts
            ],
        }


class SystemPrompts:
    """The three system prompt variants a turn uses, filled from the budgets."""

    def __init__(self, registry: PromptRegistry, config: BudgetConfig):
        self.registry = registry
        self.config = config

    def runtime(self) -> PromptVersion:
        return self.registry.get_composed(
            RUNTIME,
            max_txt_sentences=self.config.max_txt_sentences,
            max_choices=self.config.max_choices,
            max_acts=self.config.max_acts,
            act_types=", ".join(a.value for a in ActType),
        )

    def runtime_with_tools(self, tool_quota: int | None = None) -> PromptVersion:
        quota = self.config.tool_quota_per_turn if tool_quota is None else tool_quota
        return self.registry.get_composed(
            RUNTIME_WITH_TOOLS,
            runtime=self.runtime().content,
            tool_quota=quota,
        )

    def repair(self, repair_hint: str) -> PromptVersion:
        return self.registry.get_composed(
            REPAIR,
            runtime=self.runtime().content,
            repair_hint=repair_hint or "Return a valid AWF object.",
        )
