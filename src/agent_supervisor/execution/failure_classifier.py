"""Deterministic failure classification for supervisor retry policy."""

from __future__ import annotations

import random
from dataclasses import dataclass

from agent_supervisor.execution.errors import AgentExecutionError, BackendRunError
from agent_supervisor.execution.models import ErrorClassification

FAILURE_CLASSIFIER_VERSION = 1

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "spending cap",
    "spending limit",
    "usage limit",
    "session limit",
    "credit balance",
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "invalid x-api-key",
    "authentication",
)
_INVALID_REQUEST_PATTERNS: tuple[str, ...] = (
    "invalid_request_error",
    "invalid request",
    "malformed",
    "bad request",
    "prompt is too long",
    "model not found",
    "unknown model",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "429",
    "please retry",
    "try again later",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "overloaded",
    "temporarily unavailable",
    "internal server error",
    "service unavailable",
    "bad gateway",
    "connection reset",
    "econnreset",
    "network error",
    "socket hang up",
    "could not resolve host",
    "timed out",
    "timeout",
    "terminated",
    "502",
    "503",
    "529",
)


@dataclass(slots=True)
class RetryDelays:
    """Base backoff per retryable failure family, in seconds."""

    transient_seconds: float = 10.0
    rate_limit_seconds: float = 30.0
    billing_seconds: float = 300.0


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    error_class: ErrorClassification
    base_delay_seconds: float
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def is_fatal(self) -> bool:
        return self.error_class == ErrorClassification.FATAL

    def to_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for logs."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "error_class": self.error_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
            "base_delay_seconds": self.base_delay_seconds,
        }


def classify_error(  # noqa: C901, PLR0911
    error: BaseException,
    *,
    delays: RetryDelays | None = None,
) -> FailureClassification:
    """Classify an attempt error into retryable, fatal or billing-retryable."""

    delays = delays or RetryDelays()
    haystack = str(error).lower()
    hint = _retryable_hint(error)

    if isinstance(error, AgentExecutionError) and error.kind == "billing":
        return _billing(delays, matched_rule="billing_kind", matched_pattern=None)

    if hint is False:
        return FailureClassification(
            error_class=ErrorClassification.FATAL,
            base_delay_seconds=0.0,
            reason_code=f"{_kind(error)}_non_retryable",
            matched_rule="explicit_non_retryable",
            matched_pattern=None,
        )

    pattern = _first_match(haystack, _BILLING_OR_QUOTA_PATTERNS)
    if pattern is not None:
        return _billing(delays, matched_rule="billing_or_quota", matched_pattern=pattern)

    rate_pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if hint is True:
        return FailureClassification(
            error_class=ErrorClassification.RETRYABLE,
            base_delay_seconds=(
                delays.rate_limit_seconds if rate_pattern is not None else delays.transient_seconds
            ),
            reason_code=f"{_kind(error)}_retryable",
            matched_rule="explicit_retryable",
            matched_pattern=rate_pattern,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            error_class=ErrorClassification.FATAL,
            base_delay_seconds=0.0,
            reason_code="access_or_auth",
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _INVALID_REQUEST_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            error_class=ErrorClassification.FATAL,
            base_delay_seconds=0.0,
            reason_code="invalid_request",
            matched_rule="invalid_request",
            matched_pattern=pattern,
        )

    if rate_pattern is not None:
        return FailureClassification(
            error_class=ErrorClassification.RETRYABLE,
            base_delay_seconds=delays.rate_limit_seconds,
            reason_code="rate_limit_transient",
            matched_rule="rate_limit_transient",
            matched_pattern=rate_pattern,
        )

    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None or isinstance(error, (TimeoutError, ConnectionError)):
        return FailureClassification(
            error_class=ErrorClassification.RETRYABLE,
            base_delay_seconds=delays.transient_seconds,
            reason_code="backend_transient",
            matched_rule="generic_transient" if pattern is not None else "transient_exception",
            matched_pattern=pattern,
        )

    return FailureClassification(
        error_class=ErrorClassification.FATAL,
        base_delay_seconds=0.0,
        reason_code=f"{_kind(error)}_non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def compute_retry_delay(
    classification: FailureClassification,
    *,
    attempt_number: int,
    max_seconds: float,
    rng: random.Random | None = None,
) -> float:
    """Exponential backoff from the classification base, jittered in the upper half."""

    if classification.is_fatal:
        return 0.0
    ceiling = min(
        max_seconds,
        classification.base_delay_seconds * (2 ** max(attempt_number - 1, 0)),
    )
    generator = rng or random.Random()  # noqa: S311
    return generator.uniform(ceiling / 2, ceiling)


def _billing(
    delays: RetryDelays,
    *,
    matched_rule: str,
    matched_pattern: str | None,
) -> FailureClassification:
    return FailureClassification(
        error_class=ErrorClassification.BILLING_RETRYABLE,
        base_delay_seconds=delays.billing_seconds,
        reason_code="billing_or_quota",
        matched_rule=matched_rule,
        matched_pattern=matched_pattern,
    )


def _retryable_hint(error: BaseException) -> bool | None:
    if isinstance(error, AgentExecutionError):
        return error.retryable
    if isinstance(error, BackendRunError):
        return error.transient
    return None


def _kind(error: BaseException) -> str:
    if isinstance(error, AgentExecutionError):
        return error.kind
    return type(error).__name__


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
