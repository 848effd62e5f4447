"""Rule-based checks on canonical characters before they are persisted."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Protocol

from Sheetbridge.schemas import ATTRIBUTE_CODES, SUPPORTED_BMRT_VERSIONS, BMRTCharacter, ValidationIssue

STAT_WARNING_THRESHOLD = 100


@dataclass
class ValidationResult:
    valid: bool = True
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    def error(self, field_name: str, message: str, source: str) -> None:
        self.valid = False
        self.errors.append(ValidationIssue(field=field_name, message=message, source=source))

    def warn(self, field_name: str, message: str, source: str) -> None:
        self.warnings.append(ValidationIssue(field=field_name, message=message, source=source))

    def merge(self, other: ValidationResult) -> None:
        self.valid = self.valid and other.valid
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)


class ValidationRule(Protocol):
    def validate(self, character: BMRTCharacter) -> ValidationResult: ...


class RequiredFieldsRule:
    def validate(self, character: BMRTCharacter) -> ValidationResult:
        result = ValidationResult()
        if not character.name.strip():
            result.error("name", "Character name is required", "bmrt")
        return result


class BmrtVersionRule:
    def __init__(self, supported: Iterable[str] = SUPPORTED_BMRT_VERSIONS):
        self._supported = set(supported)

    def validate(self, character: BMRTCharacter) -> ValidationResult:
        result = ValidationResult()
        if character.bmrt_version not in self._supported:
            result.error(
                "bmrt_version", f"Unsupported BMRT version: {character.bmrt_version}", "bmrt"
            )
        return result


class StatsRangeRule:
    """Negative ability scores are errors; implausibly high ones only warn."""

    def validate(self, character: BMRTCharacter) -> ValidationResult:
        result = ValidationResult()
        codes = character.attributes.as_codes()
        for code in ATTRIBUTE_CODES.values():
            value = codes[code]
            if value < 0:
                result.error(f"eigenschaften.{code}", "Stat cannot be negative", "gamesystem")
            elif value > STAT_WARNING_THRESHOLD:
                result.warn(
                    f"eigenschaften.{code}",
                    f"Stat value unusually high (> {STAT_WARNING_THRESHOLD})",
                    "gamesystem",
                )
        return result


class Validator:
    def __init__(self, rules: Iterable[ValidationRule] | None = None):
        self._rules: list[ValidationRule] = list(rules) if rules is not None else [
            RequiredFieldsRule(),
            BmrtVersionRule(),
            StatsRangeRule(),
        ]

    def add_rule(self, rule: ValidationRule) -> None:
        self._rules.append(rule)

    def validate(self, character: BMRTCharacter) -> ValidationResult:
        combined = ValidationResult()
        for rule in self._rules:
            combined.merge(rule.validate(character))
        return combined
