"""
Output validator for the model's structured reply.

The model must answer with one AWF object (optionally wrapped as
``{"AWF": {...}}``) holding ``scn`` and ``txt`` strings, at most
``max_choices`` choices of ``{id, label}``, at most ``max_acts`` acts of
``{type, data}`` and an optional ``val`` string. Nothing else is allowed
at the top level.

Validation never raises; it returns a report with every problem found
and a repair hint the orchestrator feeds into its single retry.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from ..config import BudgetConfig
from ..models.awf import AWF_ALLOWED_KEYS, AwfReply

logger = logging.getLogger(__name__)

DEFAULT_LOCALE = "en-US"
DEFAULT_MAX_CHOICE_LABEL_LENGTH = 48

_SENTENCE_END = re.compile(r"[.!?]+(?:\s+|$)")
_ENGLISH_STOPWORDS = re.compile(
    r"\b(the|and|or|but|in|on|at|to|for|of|with|by|is|are|was|were|be|been|being|"
    r"have|has|had|do|does|did|will|would|could|should|may|might|can|must|shall)\b",
    re.IGNORECASE,
)


@dataclass
class ValidationIssue:
    field: str
    message: str
    expected: Any = None
    actual: Any = None

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


@dataclass
class ValidationReport:
    is_valid: bool
    errors: list[ValidationIssue] = field(default_factory=list)
    repair_hint: str | None = None
    reply: AwfReply | None = None

    @property
    def messages(self) -> list[str]:
        return [str(e) for e in self.errors]


@dataclass
class LocaleOptions:
    locale: str = DEFAULT_LOCALE
    max_choice_label_length: int | None = DEFAULT_MAX_CHOICE_LABEL_LENGTH
    enforce_one_language: bool = False


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def count_sentences(text: str) -> int:
    stripped = text.strip()
    if not stripped:
        return 0
    ends = len(_SENTENCE_END.findall(stripped))
    # Trailing fragment without terminal punctuation still counts
    if not _SENTENCE_END.search(stripped[-1] + " "):
        ends += 1
    return max(ends, 1)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def _strip_code_fence(raw: str) -> str:
    text = raw.strip()
    if not text.startswith("```"):
        return text
    lines = [line for line in text.split("\n") if not line.startswith("```")]
    return "\n".join(lines)


def parse_model_json(raw: str | None) -> Any:
    """Parse the model's raw text as JSON, tolerating a markdown code fence."""
    if not raw:
        return None
    try:
        return json.loads(_strip_code_fence(raw))
    except json.JSONDecodeError as e:
        logger.warning(f"[Validator] Model output is not JSON: {e}")
        return None


def unwrap_awf(output: Any) -> dict[str, Any] | None:
    """The AWF object inside ``{"AWF": {...}}``, a bare object, or the JSON text of either.

    No field checks; use validate_awf on the result.
    """
    if isinstance(output, str):
        output = parse_model_json(output)
    if not isinstance(output, dict):
        return None
    return output.get("AWF") if isinstance(output.get("AWF"), dict) else output


def extract_awf(output: Any) -> dict[str, Any] | None:
    """Pull the AWF object out of model output.

    Accepts ``{"AWF": {...}}``, a bare AWF object, or the raw JSON text of
    either. Returns None unless ``scn`` and ``txt`` are both strings.
    """
    candidate = unwrap_awf(output)
    if candidate is None:
        return None
    if isinstance(candidate.get("scn"), str) and isinstance(candidate.get("txt"), str):
        return candidate
    return None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _check_list(
    awf: dict[str, Any],
    key: str,
    limit: int,
    required: tuple[str, ...],
    item_types: dict[str, type],
    errors: list[ValidationIssue],
) -> None:
    items = awf.get(key)
    if items is None:
        return
    if not isinstance(items, list):
        errors.append(ValidationIssue(f"AWF.{key}", f"{key} must be an array", "array", _type_name(items)))
        return
    if len(items) > limit:
        errors.append(ValidationIssue(f"AWF.{key}", f"{key} array must have at most {limit} items", f"<= {limit}", len(items)))
        return
    for i, item in enumerate(items):
        path = f"AWF.{key}[{i}]"
        if not isinstance(item, dict):
            errors.append(ValidationIssue(path, f"Each {key[:-1]} must be an object", "object", _type_name(item)))
            continue
        for name in required:
            value = item.get(name)
            expected = item_types[name]
            if not isinstance(value, expected) or (expected is str and not value):
                errors.append(ValidationIssue(
                    f"{path}.{name}",
                    f"{key[:-1].capitalize()} {name} is required and must be a{'n' if expected is dict else ''} "
                    f"{'object' if expected is dict else 'string'}",
                    "object" if expected is dict else "string",
                    _type_name(value),
                ))


def _check_locale(awf: dict[str, Any], options: LocaleOptions) -> list[ValidationIssue]:
    errors: list[ValidationIssue] = []
    choices = awf.get("choices") if isinstance(awf.get("choices"), list) else []

    if options.max_choice_label_length:
        for i, choice in enumerate(choices):
            label = choice.get("label") if isinstance(choice, dict) else None
            if isinstance(label, str) and len(label) > options.max_choice_label_length:
                errors.append(ValidationIssue(
                    f"AWF.choices[{i}].label",
                    f"Choice label exceeds maximum length for {options.locale}",
                    f"<= {options.max_choice_label_length} characters",
                    f"{len(label)} characters",
                ))

    if options.enforce_one_language:
        texts = [awf.get("txt"), awf.get("scn")]
        texts += [c.get("label") for c in choices if isinstance(c, dict)]
        for text in texts:
            if isinstance(text, str) and contains_mixed_languages(text, options.locale):
                errors.append(ValidationIssue(
                    "AWF",
                    f"Text contains mixed languages, expected only {options.locale}",
                    f"single language: {options.locale}",
                    "mixed languages detected",
                ))
                break
    return errors


def contains_mixed_languages(text: str, locale: str) -> bool:
    """Heuristic: more than two English function words in a non-English locale."""
    if locale == DEFAULT_LOCALE:
        return False
    return len(_ENGLISH_STOPWORDS.findall(text)) > 2


def validate_awf(
    awf: Any,
    config: BudgetConfig | None = None,
    locale_options: LocaleOptions | None = None,
) -> ValidationReport:
    """Validate one AWF object; never raises."""
    config = config or BudgetConfig()
    errors: list[ValidationIssue] = []

    if not isinstance(awf, dict):
        errors.append(ValidationIssue("AWF", "Output must be an object", "object", _type_name(awf)))
        return ValidationReport(is_valid=False, errors=errors, repair_hint=generate_repair_hint(errors, config))

    for key in ("scn", "txt"):
        value = awf.get(key)
        if not value or not isinstance(value, str):
            errors.append(ValidationIssue(f"AWF.{key}", f"{key} field is required and must be a string", "string", _type_name(value)))

    txt = awf.get("txt")
    if isinstance(txt, str) and config.max_txt_sentences:
        sentences = count_sentences(txt)
        if sentences > config.max_txt_sentences:
            errors.append(ValidationIssue(
                "AWF.txt", f"txt must have at most {config.max_txt_sentences} sentences",
                f"<= {config.max_txt_sentences}", sentences,
            ))

    _check_list(awf, "choices", config.max_choices, ("id", "label"), {"id": str, "label": str}, errors)
    _check_list(awf, "acts", config.max_acts, ("type", "data"), {"type": str, "data": dict}, errors)

    val = awf.get("val")
    if val is not None and not isinstance(val, str):
        errors.append(ValidationIssue("AWF.val", "val must be a string if provided", "string", _type_name(val)))

    extra = [k for k in awf if k not in AWF_ALLOWED_KEYS]
    if extra:
        errors.append(ValidationIssue(
            "AWF",
            f"Extra keys not allowed: {', '.join(extra)}",
            f"only {', '.join(AWF_ALLOWED_KEYS)}",
            f"also {', '.join(extra)}",
        ))

    if locale_options and locale_options.locale != DEFAULT_LOCALE:
        errors.extend(_check_locale(awf, locale_options))

    if errors:
        return ValidationReport(is_valid=False, errors=errors, repair_hint=generate_repair_hint(errors, config))
    return ValidationReport(is_valid=True, reply=AwfReply.model_validate(awf))


def generate_repair_hint(errors: list[ValidationIssue], config: BudgetConfig | None = None) -> str:
    """Turn validation errors into one short instruction for the retry prompt."""
    config = config or BudgetConfig()
    messages = [e.message for e in errors]
    hints: list[str] = []

    if any("required" in m for m in messages):
        hints.append("Include all required fields: scn, txt")
    if any("must be" in m for m in messages):
        hints.append("Ensure correct data types: scn and txt must be strings")
    if any("at most" in m and "items" in m for m in messages):
        hints.append(f"Limit array sizes: choices <= {config.max_choices}, acts <= {config.max_acts}")
    if any("sentences" in m for m in messages):
        hints.append(f"Keep txt to {config.max_txt_sentences} sentences or fewer")
    if any("Extra keys" in m for m in messages):
        hints.append(f"Remove extra keys, only include: {', '.join(AWF_ALLOWED_KEYS)}")
    if any("must be an object" in m or "must be an array" in m for m in messages):
        hints.append("Ensure proper object/array structure for choices and acts")
    if any("maximum length" in m for m in messages):
        hints.append("Shorten choice labels")
    if any("mixed languages" in m for m in messages):
        hints.append("Write all player-facing text in a single language")

    if not hints:
        return (
            "Output must include exactly one top-level object named AWF; include scn and txt; "
            f"choices <= {config.max_choices}; acts <= {config.max_acts}; do not include extra keys."
        )
    return "; ".join(hints) + "."
