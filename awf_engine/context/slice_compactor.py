"""
Lore slice compaction.

Reduces a block of lore text to a token-bounded summary plus up to five
extracted key points. Key points come from ``Label: value`` lines and
bullets when the author wrote any, otherwise from leading sentences.
Output is a pure function of (content, name, max_tokens) so compacted
slices can be cached by content hash.
"""

import hashlib
import re
from typing import Any

from pydantic import BaseModel, Field

from .tokens import estimate_tokens, truncate_to_tokens

DEFAULT_SLICE_MAX_TOKENS = 250
MAX_KEY_POINTS = 5

_BULLET = re.compile(r"^(?:[-*•]|\d+[.)])\s+")
_LABELLED = re.compile(r"^[^:.!?]{1,60}:\s+\S")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


class CompactedSlice(BaseModel):
    name: str
    content: str = ""
    token_count: int = 0
    key_points: list[str] = Field(default_factory=list)
    hash: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


def _sentences(text: str) -> list[str]:
    flat = " ".join(text.split())
    return [s.strip() for s in _SENTENCE_SPLIT.split(flat) if s.strip()]


def extract_key_points(content: str, limit: int = MAX_KEY_POINTS) -> list[str]:
    points: list[str] = []
    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if _BULLET.match(line):
            points.append(_BULLET.sub("", line))
        elif _LABELLED.match(line):
            points.append(line)

    if not points:
        points = _sentences(content)

    seen: set[str] = set()
    unique = []
    for p in points:
        if p not in seen:
            seen.add(p)
            unique.append(p)
    return unique[:limit]


def compact_slice(
    content: str,
    name: str,
    max_tokens: int = DEFAULT_SLICE_MAX_TOKENS,
    preserve_key_points: bool = True,
) -> CompactedSlice:
    """Compact one slice. The result never estimates above the input."""
    content = content or ""
    if not content.strip():
        return CompactedSlice(name=name, metadata={"original_tokens": 0, "method": "empty"})

    original_tokens = estimate_tokens(content)
    key_points = extract_key_points(content)
    digest = content_hash(content)

    if original_tokens <= max_tokens:
        return CompactedSlice(
            name=name,
            content=content.strip(),
            token_count=estimate_tokens(content.strip()),
            key_points=key_points,
            hash=digest,
            metadata={"original_tokens": original_tokens, "method": "verbatim"},
        )

    parts: list[str] = list(key_points) if preserve_key_points else []
    for sentence in _sentences(content):
        if sentence not in parts:
            parts.append(sentence)

    summary = ""
    for part in parts:
        candidate = f"{summary} {part}".strip()
        if estimate_tokens(candidate) > max_tokens:
            break
        summary = candidate

    method = "summary"
    if not summary:
        summary = truncate_to_tokens(parts[0] if parts else content.strip(), max_tokens)
        method = "truncated"

    tokens = estimate_tokens(summary)
    return CompactedSlice(
        name=name,
        content=summary,
        token_count=tokens,
        key_points=key_points,
        hash=digest,
        metadata={
            "original_tokens": original_tokens,
            "compression_ratio": round(tokens / original_tokens, 3) if original_tokens else 1.0,
            "method": method,
        },
    )


def validate_slice_summary(result: CompactedSlice, max_tokens: int) -> dict[str, Any]:
    issues = []
    if result.token_count > max_tokens:
        issues.append(f"Slice {result.name} is {result.token_count} tokens, limit {max_tokens}")
    if result.content and not result.key_points:
        issues.append(f"Slice {result.name} has no key points")
    return {"is_valid": not issues, "issues": issues}


def create_inline_summaries(
    world_slices: list[str],
    adventure_slices: list[str],
    max_tokens: int = 50,
) -> dict[str, dict[str, list[str]]]:
    """Short inline summaries for bundles that carry lore inline."""
    return {
        "world": {
            "inline": [compact_slice(s, f"world_{i}", max_tokens).content for i, s in enumerate(world_slices)],
        },
        "adventure": {
            "inline": [compact_slice(s, f"adventure_{i}", max_tokens).content for i, s in enumerate(adventure_slices)],
        },
    }
