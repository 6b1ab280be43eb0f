from __future__ import annotations

from enum import Enum
from typing import Any

import httpx


class ErrorCategory(str, Enum):
    TRANSIENT = "transient"
    QUOTA_EXCEEDED = "quota_exceeded"
    INVALID_INPUT = "invalid_input"
    POLICY_VIOLATION = "policy_violation"
    MISSING_CREDENTIALS = "missing_credentials"


class ProviderError(Exception):
    """Failure of a remote generation provider, already mapped onto a category.

    ``user_message`` is the human-actionable text that ends up in
    ``Video.error_message``; ``detail`` keeps the raw provider payload for logs.
    """

    category: ErrorCategory = ErrorCategory.TRANSIENT

    def __init__(self, provider: str, user_message: str, detail: str | None = None) -> None:
        super().__init__(user_message)
        self.provider = provider
        self.user_message = user_message
        self.detail = detail

    @property
    def retriable(self) -> bool:
        return self.category == ErrorCategory.TRANSIENT


class TransientError(ProviderError):
    category = ErrorCategory.TRANSIENT


class QuotaExceededError(ProviderError):
    category = ErrorCategory.QUOTA_EXCEEDED


class InvalidInputError(ProviderError):
    category = ErrorCategory.INVALID_INPUT


class PolicyViolationError(ProviderError):
    category = ErrorCategory.POLICY_VIOLATION


class MissingCredentialsError(ProviderError):
    category = ErrorCategory.MISSING_CREDENTIALS


# Structured error codes reported by providers in their JSON bodies.
QUOTA_CODES = frozenset(
    {
        "quota_exceeded",
        "insufficient_quota",
        "billing_hard_limit_reached",
        "rate_limit_exceeded",
        "too_many_concurrent_requests",
    }
)
POLICY_CODES = frozenset({"content_policy_violation", "moderation_blocked", "content_filter"})
CREDENTIAL_CODES = frozenset({"invalid_api_key", "missing_api_key", "unauthorized"})


def extract_error_code(payload: Any) -> str | None:
    """Pull the machine-readable error code out of a provider error body.

    Handles the OpenAI shape ``{"error": {"code": ..., "type": ...}}`` and the
    ElevenLabs shape ``{"detail": {"status": ...}}``.
    """
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, dict):
        code = error.get("code") or error.get("type")
        if code:
            return str(code).lower()
    detail = payload.get("detail")
    if isinstance(detail, dict):
        code = detail.get("status") or detail.get("code")
        if code:
            return str(code).lower()
    return None


def classify_http_error(provider: str, exc: httpx.HTTPError) -> ProviderError:
    if isinstance(exc, httpx.TimeoutException):
        return TransientError(provider, f"{provider} did not respond in time, retry later", detail=str(exc))
    if not isinstance(exc, httpx.HTTPStatusError):
        return TransientError(provider, f"{provider} is unreachable, retry later", detail=str(exc))

    response = exc.response
    status = response.status_code
    body = _safe_text(response)
    try:
        code = extract_error_code(response.json())
    except ValueError:
        code = None

    if code in POLICY_CODES:
        return PolicyViolationError(
            provider,
            f"{provider} rejected the content under its safety policy; rephrase the scene or script",
            detail=body,
        )
    if code in QUOTA_CODES or status in (402, 429):
        return QuotaExceededError(
            provider,
            f"{provider} quota or billing limit reached; top up the account or wait for the limit to reset",
            detail=body,
        )
    if code in CREDENTIAL_CODES or status in (401, 403):
        return MissingCredentialsError(
            provider,
            f"{provider} rejected the configured API key; check the credentials",
            detail=body,
        )
    if status >= 500 or status == 408:
        return TransientError(provider, f"{provider} is temporarily unavailable (HTTP {status})", detail=body)
    return InvalidInputError(
        provider,
        f"{provider} rejected the request (HTTP {status}); adjust the input and retry",
        detail=body,
    )


def _safe_text(response: httpx.Response) -> str:
    try:
        return response.text[:2000]
    except Exception:  # pragma: no cover
        return "<binary>"
