"""Deterministic failure classification for collaborator retry policy."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum

FAILURE_CLASSIFIER_VERSION = 1


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TIMEOUT = "timeout"
    TRANSIENT = "transient"
    NON_RETRYABLE = "non_retryable"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"


TRANSIENT_CLASSES = frozenset({FailureClass.TIMEOUT, FailureClass.TRANSIENT})

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
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
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "429",
    "overloaded",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "503",
    "502",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None

    @property
    def transient(self) -> bool:
        return self.failure_class in TRANSIENT_CLASSES

    def to_event_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure(
    *,
    text: str,
    exit_code: int | None = None,
    transient_exit_codes: tuple[int, ...] = (137, 143),
) -> FailureClassification:
    """Classify a failure from its output text and optional process exit code.

    Quota and auth problems win over rate-limit wording because retrying
    them never helps.
    """

    haystack = text.lower()

    pattern = _first_match(haystack, _BILLING_OR_QUOTA_PATTERNS)
    if pattern is not None:
        return FailureClassification(FailureClass.BILLING_OR_QUOTA, "billing_or_quota", pattern)

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return FailureClassification(FailureClass.ACCESS_OR_AUTH, "access_or_auth", pattern)

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(FailureClass.TRANSIENT, "rate_limit_transient", pattern)

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(FailureClass.TRANSIENT, "generic_transient", pattern)
    if exit_code is not None and exit_code in transient_exit_codes:
        return FailureClassification(FailureClass.TRANSIENT, "transient_exit_code", None)

    return FailureClassification(FailureClass.NON_RETRYABLE, "fallback_non_retryable", None)


def classify_exception(error: BaseException) -> FailureClassification:
    """Classify an exception raised by an external collaborator call."""

    if isinstance(error, TimeoutError | asyncio.TimeoutError):
        return FailureClassification(FailureClass.TIMEOUT, "timeout", None)
    transient_hint = getattr(error, "transient", None)
    if transient_hint is True:
        return FailureClassification(FailureClass.TRANSIENT, "transient_hint", None)
    classification = classify_failure(text=f"{type(error).__name__}: {error}")
    if transient_hint is False and classification.transient:
        return FailureClassification(FailureClass.NON_RETRYABLE, "non_transient_hint", None)
    return classification


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
