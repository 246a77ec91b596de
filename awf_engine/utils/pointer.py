"""
Minimal JSON pointer (RFC 6901) helpers over plain dicts and lists.

Used by the injection map (bundle targets) and the act interpreter
(game-state targets). ``set_at_pointer`` creates missing intermediate
objects; a ``-`` segment on a list appends.
"""

from typing import Any

_MISSING = object()


def split_pointer(pointer: str) -> list[str]:
    if pointer in ("", "/"):
        return []
    if not pointer.startswith("/"):
        raise ValueError(f"Invalid JSON pointer: {pointer!r}")
    return [seg.replace("~1", "/").replace("~0", "~") for seg in pointer[1:].split("/")]


def _step(node: Any, segment: str, default: Any) -> Any:
    if isinstance(node, dict):
        return node.get(segment, default)
    if isinstance(node, list):
        try:
            index = int(segment)
        except ValueError:
            return default
        return node[index] if 0 <= index < len(node) else default
    return default


def get_at_pointer(doc: Any, pointer: str, default: Any = None) -> Any:
    node = doc
    for segment in split_pointer(pointer):
        node = _step(node, segment, _MISSING)
        if node is _MISSING:
            return default
    return node


def set_at_pointer(doc: dict[str, Any], pointer: str, value: Any) -> None:
    segments = split_pointer(pointer)
    if not segments:
        raise ValueError("Cannot replace the document root")
    node: Any = doc
    for segment in segments[:-1]:
        nxt = _step(node, segment, _MISSING)
        if nxt is _MISSING or not isinstance(nxt, (dict, list)):
            if not isinstance(node, dict):
                raise ValueError(f"Cannot create {segment!r} under a non-object at {pointer!r}")
            nxt = {}
            node[segment] = nxt
        node = nxt

    last = segments[-1]
    if isinstance(node, dict):
        node[last] = value
    elif isinstance(node, list):
        if last == "-":
            node.append(value)
        else:
            node[int(last)] = value
    else:
        raise ValueError(f"Cannot set {pointer!r}: parent is not a container")
