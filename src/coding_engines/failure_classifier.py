"""Deterministic classification of failed engine runs from exit code and output."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

COMMAND_NOT_FOUND_EXIT_CODE = 127
TRANSIENT_EXIT_CODES: tuple[int, ...] = (137, 143)


class FailureReason(str, Enum):
    """Normalized failure classes attached to process errors."""

    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    COMMAND_NOT_FOUND = "command_not_found"
    BACKEND_TRANSIENT = "backend_transient"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"


_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "try again later",
    "temporarily unavailable",
    "connection reset",
    "econnrefused",
    "network error",
)


_HINTS: dict[FailureReason, str] = {
    FailureReason.BILLING_OR_QUOTA: (
        "The provider rejected the request for quota or billing; check plan limits and credits."
    ),
    FailureReason.ACCESS_OR_AUTH: (
        "The provider rejected the credentials; check the API key or log in again."
    ),
    FailureReason.MODEL_NOT_AVAILABLE: (
        "The requested model is not available; pick one from `coding-engines models`."
    ),
    FailureReason.BACKEND_TRANSIENT: (
        "The backend reported a temporary failure; retrying later may succeed."
    ),
}


@dataclass(frozen=True, slots=True)
class FailureClassification:
    """Classifier verdict for one failed run."""

    reason: FailureReason
    transient: bool
    matched_pattern: str | None = None
    hint: str | None = None


def classify_failure(*, exit_code: int, stdout: str, stderr: str) -> FailureClassification:
    """Classify a non-zero exit; first matching rule group wins."""

    if exit_code == COMMAND_NOT_FOUND_EXIT_CODE:
        return FailureClassification(
            reason=FailureReason.COMMAND_NOT_FOUND,
            transient=False,
            hint="The engine command was not found; check that the CLI is installed and on PATH.",
        )

    haystack = f"{stderr}\n{stdout}".lower()
    for reason, patterns, transient in (
        (FailureReason.BILLING_OR_QUOTA, _BILLING_OR_QUOTA_PATTERNS, False),
        (FailureReason.ACCESS_OR_AUTH, _ACCESS_OR_AUTH_PATTERNS, False),
        (FailureReason.MODEL_NOT_AVAILABLE, _MODEL_NOT_AVAILABLE_PATTERNS, False),
        (FailureReason.BACKEND_TRANSIENT, _TRANSIENT_PATTERNS, True),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                reason=reason,
                transient=transient,
                matched_pattern=pattern,
                hint=_HINTS.get(reason),
            )

    if exit_code in TRANSIENT_EXIT_CODES:
        return FailureClassification(
            reason=FailureReason.BACKEND_TRANSIENT,
            transient=True,
            hint=_HINTS[FailureReason.BACKEND_TRANSIENT],
        )
    return FailureClassification(reason=FailureReason.BACKEND_NON_RETRYABLE, transient=False)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
