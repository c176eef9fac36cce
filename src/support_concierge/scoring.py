from __future__ import annotations

import re

from .models import ScoringResult
from .spec_pack import CategoryChecklist, RequiredField, ValidatorRules


class FieldValidator:
    """Rejects empty, placeholder and badly formatted field values."""

    def __init__(self, rules: ValidatorRules) -> None:
        self._junk = [re.compile(pattern, re.IGNORECASE) for pattern in rules.junk_patterns]
        self._formats = {key.lower(): re.compile(pattern) for key, pattern in rules.format_validators.items()}

    def is_junk(self, value: str | None) -> bool:
        if value is None or not value.strip():
            return True
        stripped = value.strip()
        return any(pattern.search(stripped) for pattern in self._junk)

    def validate(self, field_name: str, value: str | None) -> str | None:
        """Return a reason the value is unusable, or None when it is fine."""
        if value is None or not value.strip():
            return "Field is empty"
        if self.is_junk(value):
            return "Field contains placeholder or junk value"
        lowered = field_name.lower()
        for key, pattern in self._formats.items():
            if key in lowered and not pattern.search(value):
                return f"Field does not match expected format for {key}"
        return None


class CompletenessScorer:
    """Weighted checklist score (0-100) over the fields extracted during triage."""

    def __init__(self, rules: ValidatorRules) -> None:
        self.validator = FieldValidator(rules)

    def score(self, extracted_fields: dict[str, str], checklist: CategoryChecklist) -> ScoringResult:
        fields = {key.strip().lower(): value for key, value in extracted_fields.items()}
        result = ScoringResult(
            category=checklist.category,
            score=0,
            threshold=checklist.completeness_threshold,
            is_actionable=False,
        )
        total_weight = 0
        earned_weight = 0
        for required in checklist.required_fields:
            total_weight += required.weight
            value = _find_value(fields, required)
            if value is None:
                result.missing_fields.append(required.name)
                if not required.optional:
                    result.issues.append(f"Required field '{required.name}' is missing")
                continue
            problem = self.validator.validate(required.name, value)
            if problem is None:
                earned_weight += required.weight
                continue
            result.invalid_fields.append(required.name)
            result.issues.append(f"Field '{required.name}': {problem}")
            if not required.optional:
                # Partial credit: something was said, just not usable yet.
                earned_weight += required.weight // 3

        result.score = round(earned_weight / total_weight * 100) if total_weight else 0
        result.is_actionable = total_weight > 0 and result.score >= checklist.completeness_threshold
        return result

    @staticmethod
    def askable_fields(result: ScoringResult, checklist: CategoryChecklist) -> list[str]:
        """Missing or invalid required fields, in checklist order. Optional fields are never asked."""
        wanted = {name.lower() for name in result.missing_fields + result.invalid_fields}
        return [
            required.name
            for required in checklist.required_fields
            if not required.optional and required.name.lower() in wanted
        ]


def _find_value(fields: dict[str, str], required: RequiredField) -> str | None:
    for key in [required.name, *required.aliases]:
        value = fields.get(key.lower())
        if value is not None:
            return value
    return None
