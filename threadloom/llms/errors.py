# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

from enum import Enum
from typing import Optional


class ProviderErrorKind(str, Enum):
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    TOKEN_OVERFLOW = "token_overflow"
    UNKNOWN = "unknown"


_NETWORK_MARKERS = ("ECONNREFUSED", "ENOTFOUND", "ETIMEDOUT", "connection refused", "timed out", "name or service")
_NETWORK_TYPE_NAMES = ("APIConnectionError", "APITimeoutError", "ConnectError", "ConnectTimeout", "ReadTimeout")
_OVERFLOW_MARKERS = ("max tokens", "maximum context length", "context_length_exceeded", "prompt is too long")

_LEGIBLE_MESSAGES = {
    ProviderErrorKind.AUTH: "Authentication failed for provider {provider}: check the configured API key.",
    ProviderErrorKind.RATE_LIMIT: "Rate limit reached for provider {provider}: wait a moment and try again.",
    ProviderErrorKind.NETWORK: "Could not reach provider {provider}: check network connectivity.",
    ProviderErrorKind.TOKEN_OVERFLOW: "The conversation is too large for model {model}: start a new thread or delete messages.",
    ProviderErrorKind.UNKNOWN: "Provider {provider} failed: {error}",
}


def _status_code(exc: BaseException) -> Optional[int]:
    status = getattr(exc, "status_code", None) or getattr(exc, "status", None)
    if isinstance(status, int):
        return status
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def classify_provider_error(exc: BaseException) -> ProviderErrorKind:
    status = _status_code(exc)
    if status == 401:
        return ProviderErrorKind.AUTH
    if status == 429:
        return ProviderErrorKind.RATE_LIMIT

    type_names = {cls.__name__ for cls in type(exc).__mro__}
    if "AuthenticationError" in type_names:
        return ProviderErrorKind.AUTH
    if "RateLimitError" in type_names:
        return ProviderErrorKind.RATE_LIMIT
    if isinstance(exc, (ConnectionError, TimeoutError)) or type_names.intersection(_NETWORK_TYPE_NAMES):
        return ProviderErrorKind.NETWORK

    message = str(exc)
    lowered = message.lower()
    if any(marker.lower() in lowered for marker in _NETWORK_MARKERS):
        return ProviderErrorKind.NETWORK
    if any(marker in lowered for marker in _OVERFLOW_MARKERS):
        return ProviderErrorKind.TOKEN_OVERFLOW
    return ProviderErrorKind.UNKNOWN


def describe_provider_error(
    exc: BaseException,
    *,
    provider: str,
    model: str,
    kind: Optional[ProviderErrorKind] = None,
) -> str:
    kind = kind or classify_provider_error(exc)
    return _LEGIBLE_MESSAGES[kind].format(provider=provider, model=model, error=str(exc) or type(exc).__name__)
