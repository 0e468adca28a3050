"""Deterministic backend failure classification from process output and exceptions."""

from __future__ import annotations

import errno
from dataclasses import dataclass

from agent_bridge.models import ErrorKind

AMP_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "authentication",
    "api key",
    "invalid key",
    "not authenticated",
    "login required",
    "unexpected error",
    "not logged in",
)
CURSOR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "authentication",
    "not logged in",
    "login required",
    "api key",
    "please log in",
    "cursor-agent login",
)
DROID_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "authentication",
    "api key",
    "invalid key",
    "not authenticated",
    "login required",
    "not logged in",
)
CODEX_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "not logged in",
    "authentication",
    "api key",
    "401",
    "codex login",
)
COPILOT_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "authentication",
    "not logged in",
)

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "402",
    "paid credits",
    "add credits",
    "insufficient credits",
    "quota",
    "billing",
    "usage limit",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
)
_OVERLOADED_PATTERNS: tuple[str, ...] = (
    "overloaded",
    "503",
    "service unavailable",
    "temporarily unavailable",
    "try again later",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_NOT_INSTALLED_PATTERNS: tuple[str, ...] = (
    "enoent",
    "command not found",
    "no such file or directory",
    "not found",
)

_SNIPPET_CHARS = 500


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    kind: ErrorKind
    matched_rule: str
    matched_pattern: str | None

    @property
    def is_auth(self) -> bool:
        return self.kind is ErrorKind.AUTH_REQUIRED


def classify_failure(
    *,
    output: str,
    exit_code: int | None,
    auth_patterns: tuple[str, ...],
) -> FailureClassification:
    """Classify a failed run from its accumulated stdout/stderr text.

    Auth patterns are backend specific and checked first; the remaining
    rules are shared. An unclassifiable non-zero exit is a process crash.
    """

    haystack = output.lower()

    pattern = _first_match(haystack, auth_patterns)
    if pattern is not None:
        return FailureClassification(ErrorKind.AUTH_REQUIRED, "auth_required", pattern)

    for kind, patterns in (
        (ErrorKind.BILLING_OR_QUOTA, _BILLING_OR_QUOTA_PATTERNS),
        (ErrorKind.RATE_LIMITED, _RATE_LIMIT_PATTERNS),
        (ErrorKind.OVERLOADED, _OVERLOADED_PATTERNS),
        (ErrorKind.MODEL_NOT_AVAILABLE, _MODEL_NOT_AVAILABLE_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(kind, kind.value, pattern)

    return FailureClassification(
        ErrorKind.PROCESS_CRASH,
        "nonzero_exit" if exit_code not in (None, 0) else "fallback_process_crash",
        None,
    )


def classify_exception(
    error: BaseException,
    *,
    auth_patterns: tuple[str, ...] = (),
) -> FailureClassification:
    """Classify a spawn or SDK exception."""

    if isinstance(error, FileNotFoundError) or getattr(error, "errno", None) == errno.ENOENT:
        return FailureClassification(ErrorKind.NOT_INSTALLED, "spawn_enoent", None)
    if isinstance(error, TimeoutError):
        return FailureClassification(ErrorKind.TIMEOUT, "timeout", None)

    message = str(error).lower()
    pattern = _first_match(message, _MODEL_NOT_AVAILABLE_PATTERNS)
    if pattern is not None:
        return FailureClassification(ErrorKind.MODEL_NOT_AVAILABLE, "model_not_available", pattern)
    pattern = _first_match(message, _NOT_INSTALLED_PATTERNS)
    if pattern is not None:
        return FailureClassification(ErrorKind.NOT_INSTALLED, "not_installed", pattern)
    pattern = _first_match(message, auth_patterns)
    if pattern is not None:
        return FailureClassification(ErrorKind.AUTH_REQUIRED, "auth_required", pattern)
    return classify_failure(output=message, exit_code=None, auth_patterns=())


def failure_message(
    classification: FailureClassification,
    *,
    backend_name: str,
    exit_code: int | None = None,
    output: str = "",
) -> str:
    """User-facing text for a classified failure."""

    snippet = output.strip()[-_SNIPPET_CHARS:]
    kind = classification.kind
    if kind is ErrorKind.NOT_INSTALLED:
        return f"{backend_name} CLI not found. Please install it and make sure it is on PATH."
    if kind is ErrorKind.AUTH_REQUIRED:
        return f"{backend_name} is not authenticated. Please log in and try again."
    if kind is ErrorKind.BILLING_OR_QUOTA:
        return f"{backend_name} reported a billing or quota problem: {snippet}"
    if kind is ErrorKind.RATE_LIMITED:
        return f"{backend_name} is rate limited. Please try again later."
    if kind is ErrorKind.OVERLOADED:
        return f"{backend_name} is temporarily overloaded. Please try again later."
    if kind is ErrorKind.MODEL_NOT_AVAILABLE:
        return f"{backend_name} rejected the requested model: {snippet}"
    if kind is ErrorKind.TIMEOUT:
        return f"{backend_name} stopped responding."
    if exit_code is not None:
        message = f"{backend_name} exited with code {exit_code}."
    else:
        message = f"{backend_name} failed."
    return f"{message} {snippet}" if snippet else message


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
