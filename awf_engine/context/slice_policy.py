"""Scene-keyed lore slice selection."""

from typing import Any

from .tokens import compact_json

DEFAULT_WORLD_SLICES: tuple[str, ...] = ("core", "geography")
DEFAULT_ADVENTURE_SLICES: tuple[str, ...] = ("premise", "current_arc")


def slice_contents(doc: dict[str, Any]) -> dict[str, str]:
    """Map slice name -> text for every slice the document defines.

    Accepts ``slices`` as a name->text mapping, a name->{content} mapping,
    or a list of ``{name, content}`` objects.
    """
    raw = doc.get("slices")
    items: list[tuple[str, Any]] = []
    if isinstance(raw, dict):
        items = list(raw.items())
    elif isinstance(raw, list):
        items = [(s.get("name"), s.get("content")) for s in raw if isinstance(s, dict)]

    contents: dict[str, str] = {}
    for name, value in items:
        if not isinstance(name, str):
            continue
        if isinstance(value, dict) and "content" in value:
            value = value["content"]
        contents[name] = value if isinstance(value, str) else compact_json(value)
    return contents


def select_slices(doc: dict[str, Any], scene: str | None, defaults: tuple[str, ...]) -> list[str]:
    """Slice names for ``scene``: explicit per-scene list, else the document
    default list, else ``defaults``. Names the document doesn't define are dropped."""
    available = slice_contents(doc)
    scene_slices = doc.get("scene_slices")
    if scene and isinstance(scene_slices, dict) and isinstance(scene_slices.get(scene), list):
        names = scene_slices[scene]
    elif isinstance(doc.get("default_slices"), list):
        names = doc["default_slices"]
    else:
        names = list(defaults)

    selected: list[str] = []
    for name in names:
        if name in available and name not in selected:
            selected.append(name)
    return selected
