from __future__ import annotations

from typing import Any

import httpx


class ProxyError(Exception):
    """Base class for failures surfaced to the caller as ``{"error": message}``."""

    status_code: int = 500
    error_type: str = "proxy_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_content(self) -> dict[str, Any]:
        return {"error": self.message}


class ConfigurationError(ProxyError):
    error_type = "configuration_error"


class NoCredentialsConfigured(ConfigurationError):
    error_type = "no_credentials_configured"

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"No {_provider_label(provider)} API keys configured")


class ValidationError(ProxyError):
    status_code = 400
    error_type = "validation_error"

    def __init__(self, message: str, *, field: str) -> None:
        self.field = field
        super().__init__(message)


class MissingModel(ValidationError):
    error_type = "missing_model"

    def __init__(self) -> None:
        super().__init__("Model is required", field="model")


class MissingContents(ValidationError):
    error_type = "missing_contents"

    def __init__(self) -> None:
        super().__init__("Contents are required", field="contents")


class TransientUpstreamError(ProxyError):
    error_type = "transient_upstream_error"

    def __init__(self, *, status_code: int, reason: str) -> None:
        self.upstream_status = status_code
        self.reason = reason
        super().__init__(f"Upstream returned {status_code} ({reason})")


class NetworkError(ProxyError):
    error_type = "network_error"

    def __init__(self, exc: httpx.RequestError) -> None:
        self.cause = exc
        self.is_timeout = isinstance(exc, httpx.TimeoutException)
        super().__init__(str(exc).strip() or repr(exc))


class InvalidUpstreamRequest(ProxyError):
    error_type = "invalid_upstream_request"

    def __init__(self, exc: Exception) -> None:
        self.cause = exc
        super().__init__(
            f"Could not build upstream request: {str(exc).strip() or repr(exc)}"
        )


class ExhaustedRetriesError(ProxyError):
    error_type = "retries_exhausted"

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        last_error: ProxyError | None = None,
        failures: list[ProxyError] | None = None,
    ) -> None:
        self.attempts = attempts
        self.last_error = last_error
        self.failures = failures or []
        super().__init__(message)


def _provider_label(provider: str) -> str:
    return {"huggingface": "HuggingFace", "gemini": "Gemini"}.get(provider, provider)
