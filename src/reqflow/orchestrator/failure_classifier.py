"""Deterministic agent failure classification for retry and pause policy."""

from __future__ import annotations

from dataclasses import dataclass

from reqflow.orchestrator.models import FailureClass
from reqflow.orchestrator.pause import detect_limit_reason

FAILURE_CLASSIFIER_VERSION = 1

_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "network error",
    "reconnecting",
    "stream disconnected",
    "econnreset",
    "etimedout",
    "econnrefused",
    "eai_again",
    "temporar",
    "429",
    "rate limit",
    "timeout",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class in {FailureClass.TIMEOUT, FailureClass.BACKEND_TRANSIENT}

    @property
    def pauses(self) -> bool:
        return self.failure_class == FailureClass.USAGE_LIMIT

    def to_log_details(self, *, role: str) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "role": role,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_invocation_failure(
    *,
    role: str,
    exit_code: int,
    timed_out: bool,
    stderr: str,
) -> FailureClassification:
    """Classify a failed agent run: usage limit first, then timeout, then transient text."""

    limit_reason = detect_limit_reason(stderr)
    if limit_reason is not None:
        return FailureClassification(
            failure_class=FailureClass.USAGE_LIMIT,
            reason_code=f"{role}_usage_limit",
            matched_rule="usage_limit",
            matched_pattern=limit_reason,
        )

    if timed_out:
        return FailureClassification(
            failure_class=FailureClass.TIMEOUT,
            reason_code=f"{role}_timeout",
            matched_rule="timed_out",
            matched_pattern=None,
        )

    pattern = _first_match(stderr.lower(), _TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.BACKEND_TRANSIENT,
            reason_code=f"{role}_backend_transient",
            matched_rule="generic_transient",
            matched_pattern=pattern,
        )

    return FailureClassification(
        failure_class=FailureClass.BACKEND_NON_RETRYABLE,
        reason_code=f"{role}_exit_{exit_code}",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
