from __future__ import annotations

from pathlib import Path

import pytest

from support_concierge.scoring import CompletenessScorer, FieldValidator
from support_concierge.spec_pack import DEFAULT_CATEGORY, SpecPack, load_spec_pack


def test_bundled_pack_loads(spec_pack: SpecPack) -> None:
    assert spec_pack.category_names() == ["build", "runtime", "configuration", "documentation", "general"]
    assert spec_pack.checklist_for("runtime").category == "runtime"
    assert spec_pack.routing.escalation_labels == ["needs-maintainer"]


def test_category_lookup_falls_back_to_general(spec_pack: SpecPack) -> None:
    assert spec_pack.normalize_category(" Runtime ") == "runtime"
    assert spec_pack.normalize_category("hardware") == DEFAULT_CATEGORY
    assert spec_pack.checklist_for("hardware").category == "general"
    assert spec_pack.route_for("BUILD").labels == ["triaged", "area/build"]
    assert spec_pack.route_for("hardware") is None


def test_load_spec_pack_errors(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_spec_pack(tmp_path / "missing.yaml")

    broken = tmp_path / "broken.yaml"
    broken.write_text("categories: [unclosed", encoding="utf-8")
    with pytest.raises(ValueError):
        load_spec_pack(broken)

    scalar = tmp_path / "scalar.yaml"
    scalar.write_text("just a string", encoding="utf-8")
    with pytest.raises(ValueError):
        load_spec_pack(scalar)


def test_custom_pack(tmp_path: Path) -> None:
    source = tmp_path / "pack.yaml"
    source.write_text(
        "categories:\n"
        "  - name: billing\n"
        "    description: Invoices\n"
        "checklists:\n"
        "  billing:\n"
        "    completeness_threshold: 50\n"
        "    required_fields:\n"
        "      - name: invoice_id\n"
        "        weight: 10\n",
        encoding="utf-8",
    )

    pack = load_spec_pack(source)

    assert pack.normalize_category("billing") == "billing"
    assert pack.checklist_for("billing").required_fields[0].name == "invoice_id"


def test_field_validator_flags_junk_and_bad_formats(spec_pack: SpecPack) -> None:
    validator = FieldValidator(spec_pack.validators)

    assert validator.validate("error_message", "KeyError: 'cache_dir'") is None
    assert validator.validate("error_message", "  ") == "Field is empty"
    assert validator.validate("error_message", "N/A") == "Field contains placeholder or junk value"
    assert validator.validate("version", "latest").startswith("Field does not match expected format")
    assert validator.validate("tool_version", "gcc 13.2") is None


def test_score_weights_present_valid_fields(spec_pack: SpecPack) -> None:
    scorer = CompletenessScorer(spec_pack.validators)
    checklist = spec_pack.checklist_for("runtime")

    result = scorer.score(
        {"Error": "KeyError: 'cache_dir'", "steps_to_reproduce": "run widgets start", "version": "1.4.2"},
        checklist,
    )

    assert result.score == 80
    assert result.is_actionable
    assert result.missing_fields == ["stack_trace"]
    assert CompletenessScorer.askable_fields(result, checklist) == []


def test_invalid_required_field_earns_partial_credit(spec_pack: SpecPack) -> None:
    scorer = CompletenessScorer(spec_pack.validators)
    checklist = spec_pack.checklist_for("runtime")

    result = scorer.score({"error_message": "boom", "steps_to_reproduce": "tbd", "version": "1.0"}, checklist)

    # 25 + 30 // 3 + 25 of 100
    assert result.score == 60
    assert not result.is_actionable
    assert result.invalid_fields == ["steps_to_reproduce"]
    assert CompletenessScorer.askable_fields(result, checklist) == ["steps_to_reproduce"]


def test_empty_checklist_is_never_actionable(spec_pack: SpecPack) -> None:
    scorer = CompletenessScorer(spec_pack.validators)

    result = scorer.score({"anything": "value"}, SpecPack().checklist_for("runtime"))

    assert result.score == 0
    assert not result.is_actionable
