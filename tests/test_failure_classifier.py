from __future__ import annotations

import allure
import pytest

from agent_bridge.models import ErrorKind
from agent_bridge.streaming.failures import (
    AMP_AUTH_PATTERNS,
    CODEX_AUTH_PATTERNS,
    FailureClassification,
    classify_exception,
    classify_failure,
    failure_message,
)

pytestmark = [
    allure.epic("Streaming"),
    allure.feature("Failure Classification"),
]


@pytest.mark.parametrize(
    ("output", "kind"),
    [
        ("Error: not logged in", ErrorKind.AUTH_REQUIRED),
        ("HTTP 402: add credits to continue", ErrorKind.BILLING_OR_QUOTA),
        ("429 Too Many Requests", ErrorKind.RATE_LIMITED),
        ("Anthropic API is overloaded", ErrorKind.OVERLOADED),
        ("unknown model: gpt-9", ErrorKind.MODEL_NOT_AVAILABLE),
        ("segmentation fault", ErrorKind.PROCESS_CRASH),
    ],
)
def test_classify_failure_rules(output: str, kind: ErrorKind) -> None:
    result = classify_failure(output=output, exit_code=1, auth_patterns=AMP_AUTH_PATTERNS)

    assert result.kind is kind


def test_auth_patterns_are_checked_before_shared_rules() -> None:
    result = classify_failure(
        output="401 unauthorized, quota unknown",
        exit_code=1,
        auth_patterns=CODEX_AUTH_PATTERNS,
    )

    assert result.kind is ErrorKind.AUTH_REQUIRED
    assert result.matched_pattern == "unauthorized"
    assert result.is_auth


def test_crash_rule_name_depends_on_exit_code() -> None:
    assert classify_failure(output="", exit_code=3, auth_patterns=()).matched_rule == (
        "nonzero_exit"
    )
    assert classify_failure(output="", exit_code=None, auth_patterns=()).matched_rule == (
        "fallback_process_crash"
    )


def test_classify_exception_spawn_and_timeout() -> None:
    assert classify_exception(FileNotFoundError("codex")).kind is ErrorKind.NOT_INSTALLED
    assert classify_exception(TimeoutError()).kind is ErrorKind.TIMEOUT
    assert classify_exception(RuntimeError("Model not found: x")).kind is (
        ErrorKind.MODEL_NOT_AVAILABLE
    )
    assert classify_exception(
        RuntimeError("Not logged in"),
        auth_patterns=("not logged in",),
    ).is_auth


def test_failure_message_for_crash_includes_exit_code_and_tail() -> None:
    classification = FailureClassification(ErrorKind.PROCESS_CRASH, "nonzero_exit", None)

    message = failure_message(
        classification,
        backend_name="Droid",
        exit_code=2,
        output="x" * 600 + "tail",
    )

    assert message.startswith("Droid exited with code 2. ")
    assert message.endswith("tail")
    assert len(message) == len("Droid exited with code 2. ") + 500
