from __future__ import annotations

import allure

from reqflow.orchestrator.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    classify_invocation_failure,
)
from reqflow.orchestrator.models import FailureClass

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


def test_usage_limit_wins_over_timeout_and_transient_text() -> None:
    classified = classify_invocation_failure(
        role="dev-fs",
        exit_code=124,
        timed_out=True,
        stderr="network error\nYou've hit your usage limit. Try again at 3:15 PM.",
    )

    assert classified.failure_class == FailureClass.USAGE_LIMIT
    assert classified.reason_code == "dev-fs_usage_limit"
    assert classified.pauses is True
    assert classified.retryable is False


def test_timeout_is_retryable() -> None:
    classified = classify_invocation_failure(role="qa", exit_code=124, timed_out=True, stderr="")

    assert classified.failure_class == FailureClass.TIMEOUT
    assert classified.matched_rule == "timed_out"
    assert classified.retryable is True


def test_transient_network_text_is_retryable() -> None:
    classified = classify_invocation_failure(
        role="arch",
        exit_code=1,
        timed_out=False,
        stderr="Error: stream disconnected before completion; reconnecting",
    )

    assert classified.failure_class == FailureClass.BACKEND_TRANSIENT
    assert classified.matched_pattern == "reconnecting"
    assert classified.retryable is True


def test_unrecognized_failure_is_not_retried() -> None:
    classified = classify_invocation_failure(
        role="ux",
        exit_code=2,
        timed_out=False,
        stderr="TypeError: cannot read properties of undefined",
    )

    assert classified.failure_class == FailureClass.BACKEND_NON_RETRYABLE
    assert classified.reason_code == "ux_exit_2"
    assert classified.to_log_details(role="ux")["matched_rule"] == "fallback_non_retryable"
