"""
Injection map execution.

An injection map is an ordered list of copy rules from the resolved
document context (``/world``, ``/adventure``, ``/scenario``, ``/npcs``,
``/contract``, ``/ruleset``, ``/player``, ``/game``, ``/session``) into
the bundle. It keeps the bundle schema independent of how documents of
record are authored.

Rule failures are collected and logged; they never fail assembly.
"""

import copy
import logging
from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..utils.pointer import get_at_pointer, set_at_pointer, split_pointer
from .tokens import estimate_tokens, truncate_to_tokens

logger = logging.getLogger(__name__)

BUNDLE_ROOT_PREFIX = "/awf_bundle"
_ABSENT = object()


class InjectionLimit(BaseModel):
    units: Literal["tokens", "count"]
    max: int = Field(ge=0)


class InjectionFallback(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    if_missing: Any = Field(default=None, alias="ifMissing")


class InjectionRule(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(alias="from")
    to: str
    skip_if_empty: bool = Field(default=False, alias="skipIfEmpty")
    fallback: InjectionFallback | None = None
    limit: InjectionLimit | None = None


class InjectionResult(BaseModel):
    applied_rules: int = 0
    skipped_rules: int = 0
    errors: list[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


def is_empty_value(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def apply_limit(value: Any, limit: InjectionLimit) -> Any:
    if limit.units == "count":
        if isinstance(value, (list, str)):
            return value[: limit.max]
        return value

    if estimate_tokens(value) <= limit.max:
        return value
    if isinstance(value, str):
        return truncate_to_tokens(value, limit.max, ellipsis="")
    if isinstance(value, list):
        trimmed = list(value)
        while trimmed and estimate_tokens(trimmed) > limit.max:
            trimmed.pop()
        return trimmed
    return value


def _to_pointer(path: str) -> str:
    """Accept JSON pointers, ``/awf_bundle``-rooted pointers and dotted paths."""
    if not path.startswith("/"):
        path = "/" + path.replace(".", "/")
    if path == BUNDLE_ROOT_PREFIX or path.startswith(BUNDLE_ROOT_PREFIX + "/"):
        path = path[len(BUNDLE_ROOT_PREFIX):]
    return path


def resolve_source_value(pointer: str, context: dict[str, Any]) -> Any:
    if pointer.startswith("/context/"):
        pointer = pointer[len("/context"):]
    return get_at_pointer(context, _to_pointer(pointer))


def parse_rules(injection_doc: dict[str, Any] | None) -> tuple[list[InjectionRule], list[str]]:
    """Rules from ``rules`` plus the legacy ``build`` map ({bundle path: source})."""
    rules: list[InjectionRule] = []
    errors: list[str] = []
    doc = injection_doc or {}
    for i, raw in enumerate(doc.get("rules") or []):
        try:
            rules.append(InjectionRule.model_validate(raw))
        except ValidationError as e:
            errors.append(f"Rule #{i} is malformed: {e.errors()[0].get('msg', 'invalid')}")
    build = doc.get("build")
    if isinstance(build, dict):
        for target, source in build.items():
            if isinstance(source, str):
                rules.append(InjectionRule(from_=source, to=target, skip_if_empty=True))
            else:
                errors.append(f"Build entry {target!r} has a non-string source")
    return rules, errors


def execute_rule(rule: InjectionRule, context: dict[str, Any], bundle: dict[str, Any]) -> tuple[bool, str]:
    value = resolve_source_value(rule.from_, context)

    if rule.skip_if_empty and is_empty_value(value):
        return False, "source value is empty"

    if is_empty_value(value) and rule.fallback is not None and "if_missing" in rule.fallback.model_fields_set:
        value = rule.fallback.if_missing
        logger.debug(f"[InjectionMap] Using fallback value for {rule.from_}")

    if rule.limit is not None:
        value = apply_limit(value, rule.limit)

    if is_empty_value(value):
        return False, "no value to inject after fallback"

    set_at_pointer(bundle, _to_pointer(rule.to), copy.deepcopy(value))
    return True, ""


def execute_injection_map(
    injection_doc: dict[str, Any] | None,
    context: dict[str, Any],
    bundle: dict[str, Any],
    validate: Callable[[dict[str, Any]], list[str]] | None = None,
) -> InjectionResult:
    """Apply every rule in order, mutating ``bundle`` in place.

    With ``validate``, a write that leaves the bundle invalid is reverted
    and recorded as a rule failure.
    """
    rules, errors = parse_rules(injection_doc)
    result = InjectionResult(errors=errors)

    if not rules:
        logger.debug("[InjectionMap] No rules defined in injection map")
        return result

    for rule in rules:
        snapshot = _snapshot_target(bundle, rule.to) if validate is not None else None
        try:
            applied, reason = execute_rule(rule, context, bundle)
            if applied and validate is not None:
                broken = validate(bundle)
                if broken:
                    raise ValueError(f"write breaks the bundle ({'; '.join(broken)})")
        except (ValueError, TypeError, IndexError, KeyError) as e:
            _restore_target(bundle, snapshot)
            msg = f"Rule {rule.from_} -> {rule.to}: {e}"
            result.errors.append(msg)
            logger.warning(f"[InjectionMap] {msg}")
            continue
        if applied:
            result.applied_rules += 1
        else:
            result.skipped_rules += 1
            logger.debug(f"[InjectionMap] Skipped rule: {rule.from_} -> {rule.to} ({reason})")

    if result.errors:
        logger.warning(f"[InjectionMap] {len(result.errors)} rule(s) failed, bundle keeps defaults")
    return result


def _snapshot_target(bundle: dict[str, Any], target: str) -> tuple[str, Any] | None:
    """Copy of the top-level bundle entry a rule writes into."""
    try:
        segments = split_pointer(_to_pointer(target))
    except ValueError:
        return None
    if not segments:
        return None
    key = segments[0]
    if key not in bundle:
        return key, _ABSENT
    return key, copy.deepcopy(bundle[key])


def _restore_target(bundle: dict[str, Any], snapshot: tuple[str, Any] | None) -> None:
    if snapshot is None:
        return
    key, value = snapshot
    if value is _ABSENT:
        bundle.pop(key, None)
    else:
        bundle[key] = value
