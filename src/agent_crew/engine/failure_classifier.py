"""Deterministic provider failure classification and user-facing error text."""

from __future__ import annotations

from dataclasses import dataclass

from agent_crew.engine.errors import ProviderError
from agent_crew.engine.models import FailureClass

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "insufficient_quota",
    "quota",
    "resource_exhausted",
    "billing",
    "payment",
    "credits",
    "credit balance",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "invalid x-api-key",
    "incorrect api key",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model_not_found",
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "no such model",
    "model is not available",
    "is not a valid model",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "overloaded",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "service unavailable",
    "bad gateway",
    "gateway timeout",
    "connection reset",
    "timed out",
)
_HTTP_NOT_FOUND = 404
_HTTP_UNAUTHORIZED = 401
_HTTP_FORBIDDEN = 403
_HTTP_TOO_MANY_REQUESTS = 429
_HTTP_SERVER_ERROR = 500

_FAILURE_HINTS: dict[FailureClass, str] = {
    FailureClass.MODEL_NOT_AVAILABLE: (
        'model not available at provider "{provider}"; check the agent\'s model name'
    ),
    FailureClass.BILLING_OR_QUOTA: (
        'billing or quota problem at provider "{provider}"; check the account balance'
    ),
    FailureClass.ACCESS_OR_AUTH: (
        'provider "{provider}" rejected the API key; store a valid one with '
        "`agent-crew keys set`"
    ),
    FailureClass.RATE_LIMITED: (
        'provider "{provider}" is rate limiting requests; retry later or lower concurrency'
    ),
    FailureClass.PROVIDER_TRANSIENT: (
        'provider "{provider}" is temporarily unavailable; retry later'
    ),
}


@dataclass(slots=True)
class ProviderFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None


def classify_provider_failure(
    *,
    message: str,
    status_code: int | None = None,
) -> ProviderFailureClassification:
    """Classify a provider error message (and HTTP status when known)."""

    haystack = message.lower()

    pattern = _first_match(haystack, _MODEL_NOT_AVAILABLE_PATTERNS)
    if pattern is not None:
        return ProviderFailureClassification(
            failure_class=FailureClass.MODEL_NOT_AVAILABLE,
            matched_rule="model_not_available",
            matched_pattern=pattern,
        )
    if status_code == _HTTP_NOT_FOUND and "model" in haystack:
        return ProviderFailureClassification(
            failure_class=FailureClass.MODEL_NOT_AVAILABLE,
            matched_rule="model_http_404",
            matched_pattern=None,
        )

    pattern = _first_match(haystack, _BILLING_OR_QUOTA_PATTERNS)
    if pattern is not None:
        return ProviderFailureClassification(
            failure_class=FailureClass.BILLING_OR_QUOTA,
            matched_rule="billing_or_quota",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None or status_code in {_HTTP_UNAUTHORIZED, _HTTP_FORBIDDEN}:
        return ProviderFailureClassification(
            failure_class=FailureClass.ACCESS_OR_AUTH,
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None or status_code == _HTTP_TOO_MANY_REQUESTS:
        return ProviderFailureClassification(
            failure_class=FailureClass.RATE_LIMITED,
            matched_rule="rate_limited",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None or (status_code is not None and status_code >= _HTTP_SERVER_ERROR):
        return ProviderFailureClassification(
            failure_class=FailureClass.PROVIDER_TRANSIENT,
            matched_rule="provider_transient",
            matched_pattern=pattern,
        )

    return ProviderFailureClassification(
        failure_class=FailureClass.NON_RETRYABLE,
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


@dataclass(slots=True)
class FailureReport:
    """Error text and failure class stored on a failed task or team run."""

    message: str
    failure_class: FailureClass | None


def describe_failure(error: BaseException, *, model: str | None = None) -> FailureReport:
    """Classify the provider failure behind `error` and add actionable guidance.

    The cause chain is searched, so a pipeline step that exhausted its retries still
    reports the provider failure underneath. Errors with no provider failure behind
    them keep their own text and no failure class.
    """

    message = str(error) or error.__class__.__name__
    provider_error = _provider_cause(error)
    if provider_error is None:
        return FailureReport(message=message, failure_class=None)

    provider = provider_error.provider
    failure_class = classify_provider_failure(
        message=str(provider_error),
        status_code=provider_error.status_code,
    ).failure_class
    if failure_class is FailureClass.MODEL_NOT_AVAILABLE and model:
        return FailureReport(
            message=(
                f'Model "{model}" was not found for provider "{provider}". '
                "Check the agent's model name or choose a model your API key can access."
            ),
            failure_class=failure_class,
        )
    hint = _FAILURE_HINTS.get(failure_class)
    if hint is None:
        return FailureReport(message=message, failure_class=failure_class)
    return FailureReport(
        message=f"{message} ({hint.format(provider=provider)})",
        failure_class=failure_class,
    )


def _provider_cause(error: BaseException) -> ProviderError | None:
    current: BaseException | None = error
    while current is not None:
        if isinstance(current, ProviderError):
            return current
        current = current.__cause__
    return None


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
