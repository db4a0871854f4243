"""Pre-flight safety gate for instructions sent to coding engines."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from coding_engines.errors import ValidationError
from coding_engines.result import Result


class RuleSeverity(str, Enum):
    """How destructive the matched command would be."""

    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True, slots=True)
class SafetyRule:
    """One dangerous-command pattern and its human readable description."""

    pattern: re.Pattern[str]
    description: str
    severity: RuleSeverity = RuleSeverity.HIGH

    @classmethod
    def compile(
        cls,
        pattern: str,
        description: str,
        severity: RuleSeverity = RuleSeverity.HIGH,
    ) -> SafetyRule:
        return cls(
            pattern=re.compile(pattern, re.IGNORECASE),
            description=description,
            severity=severity,
        )


DEFAULT_SAFETY_RULES: tuple[SafetyRule, ...] = (
    SafetyRule.compile(
        r"rm\s+-rf\s+/(?!tmp|var/tmp|\.local/Trash)",
        "rm -rf / (except /tmp)",
        RuleSeverity.CRITICAL,
    ),
    SafetyRule.compile(r">\s*/dev/sd", "writing directly to disk devices", RuleSeverity.CRITICAL),
    SafetyRule.compile(r"mkfs\.\w+", "formatting disks", RuleSeverity.CRITICAL),
    SafetyRule.compile(r"dd\s+if=", "dangerous disk operations"),
    SafetyRule.compile(
        r":\(\)\s*\{\s*:\s*\|\s*:?\s*&\s*\}\s*;\s*:",
        "fork bomb",
        RuleSeverity.CRITICAL,
    ),
    SafetyRule.compile(r"wget\s+.*\|\s*sh", "downloading and executing an unverified script"),
    SafetyRule.compile(r"curl\s+.*\|\s*sh", "downloading and executing an unverified script"),
)


class InstructionValidator:
    """Check instructions against an ordered rule table; first match wins."""

    def __init__(self, rules: tuple[SafetyRule, ...] = DEFAULT_SAFETY_RULES) -> None:
        self._rules = rules

    @property
    def rules(self) -> tuple[SafetyRule, ...]:
        return self._rules

    def first_violation(self, instruction: str) -> SafetyRule | None:
        for rule in self._rules:
            if rule.pattern.search(instruction):
                return rule
        return None

    def validate(self, instruction: str) -> Result[None, ValidationError]:
        rule = self.first_violation(instruction)
        if rule is None:
            return Result.success(None)
        return Result.failure(
            ValidationError(
                f"Potentially dangerous instruction detected: {rule.description}",
                rule_description=rule.description,
            ),
        )


_DEFAULT_VALIDATOR = InstructionValidator()


def validate_instruction(
    instruction: str,
    rules: tuple[SafetyRule, ...] | None = None,
) -> Result[None, ValidationError]:
    """Validate with the default rule table unless ``rules`` is given."""

    validator = _DEFAULT_VALIDATOR if rules is None else InstructionValidator(rules)
    return validator.validate(instruction)
