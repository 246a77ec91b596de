"""
Deterministic token estimation.

No tokenizer dependency: the estimate is ceil(chars / 4) over the compact
JSON serialization (strings are measured raw). It is approximate but
monotonic in serialized size, which is what the budget cascade needs to
converge.
"""

import json
import math
from typing import Any

CHARS_PER_TOKEN = 4


def compact_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


def estimate_tokens(value: Any) -> int:
    if value is None:
        return 0
    text = value if isinstance(value, str) else compact_json(value)
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def byte_size(value: Any) -> int:
    return len(compact_json(value).encode("utf-8"))


def truncate_to_tokens(text: str, max_tokens: int, ellipsis: str = "...") -> str:
    """Hard-truncate ``text`` so its estimate fits ``max_tokens``.

    Cuts on a word boundary when one exists in the last fifth of the
    window; always deterministic.
    """
    if max_tokens <= 0:
        return ""
    if estimate_tokens(text) <= max_tokens:
        return text
    max_chars = max_tokens * CHARS_PER_TOKEN - len(ellipsis)
    if max_chars <= 0:
        return ellipsis[: max_tokens * CHARS_PER_TOKEN]
    cut = text[:max_chars]
    space = cut.rfind(" ")
    if space >= max_chars * 0.8:
        cut = cut[:space]
    return cut.rstrip() + ellipsis
