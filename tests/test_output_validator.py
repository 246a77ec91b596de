"""Tests for the AWF output validator.

Covers:
- Extraction from wrapped / bare / JSON-text output
- Required fields, list limits, item shapes, extra keys
- Sentence counting
- Locale checks (label length, mixed languages)
- Repair hint generation
"""

from awf_engine.config import BudgetConfig
from awf_engine.core.output_validator import (
    LocaleOptions,
    count_sentences,
    extract_awf,
    generate_repair_hint,
    parse_model_json,
    unwrap_awf,
    validate_awf,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _awf(**overrides) -> dict:
    awf = {
        "scn": "forest_meet",
        "txt": "The mist parts. A ranger waits.",
        "choices": [{"id": "talk", "label": "Talk"}],
        "acts": [{"type": "SCENE_SET", "data": {"scn": "forest_meet"}}],
    }
    awf.update(overrides)
    return awf


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


class TestExtraction:
    def test_wrapped(self):
        assert unwrap_awf({"AWF": _awf()}) == _awf()

    def test_bare(self):
        assert unwrap_awf(_awf()) == _awf()

    def test_json_text_with_code_fence(self):
        raw = '```json\n{"AWF": {"scn": "a", "txt": "b"}}\n```'
        assert unwrap_awf(raw) == {"scn": "a", "txt": "b"}

    def test_not_json(self):
        assert parse_model_json("I am prose.") is None
        assert unwrap_awf("I am prose.") is None
        assert unwrap_awf(None) is None
        assert unwrap_awf(["list"]) is None

    def test_unwrap_keeps_bad_fields(self):
        assert unwrap_awf({"scn": 1}) == {"scn": 1}

    def test_extract_requires_strings(self):
        assert extract_awf({"scn": 1, "txt": "b"}) is None
        assert extract_awf({"AWF": {"scn": "a", "txt": "b"}}) == {"scn": "a", "txt": "b"}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidateAwf:
    def test_valid(self):
        report = validate_awf(_awf(val="ok"))
        assert report.is_valid
        assert report.errors == []
        assert report.reply.scn == "forest_meet"
        assert report.reply.choices[0].id == "talk"
        assert report.repair_hint is None

    def test_minimal_valid(self):
        assert validate_awf({"scn": "a", "txt": "b"}).is_valid

    def test_not_an_object(self):
        report = validate_awf("text")
        assert not report.is_valid
        assert report.messages == ["AWF: Output must be an object"]

    def test_missing_required(self):
        report = validate_awf({"txt": "b"})
        assert not report.is_valid
        assert report.errors[0].field == "AWF.scn"
        assert report.errors[0].actual == "null"

    def test_too_many_choices(self):
        choices = [{"id": str(i), "label": "x"} for i in range(6)]
        report = validate_awf(_awf(choices=choices))
        assert "choices array must have at most 5 items" in report.messages[0]

    def test_too_many_acts(self):
        acts = [{"type": "FLAG_SET", "data": {"key": str(i)}} for i in range(9)]
        report = validate_awf(_awf(acts=acts))
        assert any("acts array must have at most 8 items" in m for m in report.messages)

    def test_limits_from_config(self):
        config = BudgetConfig(max_choices=1)
        choices = [{"id": "a", "label": "A"}, {"id": "b", "label": "B"}]
        assert not validate_awf(_awf(choices=choices), config).is_valid

    def test_choice_shape(self):
        report = validate_awf(_awf(choices=[{"id": "a"}, "b"]))
        fields = [e.field for e in report.errors]
        assert "AWF.choices[0].label" in fields
        assert "AWF.choices[1]" in fields

    def test_act_data_must_be_object(self):
        report = validate_awf(_awf(acts=[{"type": "FLAG_SET", "data": "k"}]))
        assert report.errors[0].field == "AWF.acts[0].data"
        assert report.errors[0].expected == "object"

    def test_choices_must_be_array(self):
        report = validate_awf(_awf(choices={"id": "a"}))
        assert report.messages == ["AWF.choices: choices must be an array"]

    def test_val_type(self):
        assert not validate_awf(_awf(val=3)).is_valid

    def test_extra_keys(self):
        report = validate_awf(_awf(mood="tense"))
        assert "Extra keys not allowed: mood" in report.messages[0]

    def test_too_many_sentences(self):
        txt = " ".join(f"Sentence {i}." for i in range(7))
        report = validate_awf(_awf(txt=txt))
        assert any("at most 6 sentences" in m for m in report.messages)

    def test_unknown_act_type_still_valid(self):
        # Unknown act kinds are the interpreter's concern, not the validator's
        assert validate_awf(_awf(acts=[{"type": "SUMMON", "data": {}}])).is_valid


class TestCountSentences:
    def test_counts(self):
        assert count_sentences("") == 0
        assert count_sentences("One.") == 1
        assert count_sentences("One. Two! Three?") == 3
        assert count_sentences("One. Two. And a fragment") == 3
        assert count_sentences("Wait... what?!") == 2


class TestLocale:
    def test_label_length_for_non_default_locale(self):
        options = LocaleOptions(locale="fr-FR", max_choice_label_length=10)
        report = validate_awf(_awf(choices=[{"id": "a", "label": "Une très longue étiquette"}]), locale_options=options)
        assert not report.is_valid
        assert "maximum length for fr-FR" in report.messages[0]

    def test_default_locale_skips_locale_checks(self):
        options = LocaleOptions(locale="en-US", max_choice_label_length=3)
        assert validate_awf(_awf(), locale_options=options).is_valid

    def test_mixed_languages(self):
        options = LocaleOptions(locale="fr-FR", enforce_one_language=True)
        report = validate_awf(_awf(txt="La forêt is dark and the wind was cold."), locale_options=options)
        assert any("mixed languages" in m for m in report.messages)

    def test_single_language_ok(self):
        options = LocaleOptions(locale="fr-FR", enforce_one_language=True)
        awf = _awf(scn="foret", txt="La brume se lève.", choices=[{"id": "a", "label": "Parler"}])
        assert validate_awf(awf, locale_options=options).is_valid


# ---------------------------------------------------------------------------
# Repair hints
# ---------------------------------------------------------------------------


class TestRepairHint:
    def test_missing_fields_hint(self):
        report = validate_awf({"txt": 5})
        assert "Include all required fields: scn, txt" in report.repair_hint
        assert report.repair_hint.endswith(".")

    def test_limits_hint_uses_config(self):
        config = BudgetConfig(max_choices=2, max_acts=3)
        choices = [{"id": str(i), "label": "x"} for i in range(3)]
        report = validate_awf(_awf(choices=choices), config)
        assert "choices <= 2, acts <= 3" in report.repair_hint

    def test_extra_keys_hint(self):
        report = validate_awf(_awf(extra=1))
        assert "only include: scn, txt, choices, acts, val" in report.repair_hint

    def test_generic_fallback(self):
        hint = generate_repair_hint([])
        assert hint.startswith("Output must include exactly one top-level object named AWF")
