"""Error taxonomy shared by the provider adapters and the sync engine.

Every adapter failure is normalized into one of the variants below so the
orchestrator can decide between retrying, recording and aborting without
inspecting provider-specific payloads.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class DNSSyncError(Exception):
    """Base class for all structured sync errors."""

    code = "error"
    retryable = False

    def __init__(self, message: str, provider: str = ""):
        super().__init__(message)
        self.message = message
        self.provider = provider

    def details(self) -> Dict[str, Any]:
        return {"provider": self.provider} if self.provider else {}

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "code": self.code, "details": self.details()}


class TransientProviderError(DNSSyncError):
    """HTTP 5xx, 429 or a network failure. Safe to retry."""

    code = "transient"
    retryable = True

    def __init__(self, message: str, provider: str = "", status: Optional[int] = None):
        super().__init__(message, provider)
        self.status = status

    def details(self) -> Dict[str, Any]:
        details = super().details()
        details["status"] = self.status
        return details


class PermanentProviderError(DNSSyncError):
    """Rejected request (4xx or a provider-level failure status)."""

    code = "permanent"

    def __init__(
        self,
        message: str,
        provider: str = "",
        status: Optional[int] = None,
        provider_message: str = "",
    ):
        super().__init__(message, provider)
        self.status = status
        self.provider_message = provider_message

    def details(self) -> Dict[str, Any]:
        details = super().details()
        details["status"] = self.status
        if self.provider_message:
            details["provider_message"] = self.provider_message
        return details


class MalformedResponseError(DNSSyncError):
    """Provider payload did not have the expected shape."""

    code = "malformed_response"

    def __init__(self, message: str, provider: str = "", payload_type: str = ""):
        super().__init__(message, provider)
        self.payload_type = payload_type

    def details(self) -> Dict[str, Any]:
        details = super().details()
        if self.payload_type:
            details["payload_type"] = self.payload_type
        return details


class ConfigurationError(DNSSyncError):
    """Missing or invalid settings, including rejected credentials."""

    code = "configuration"

    def __init__(self, message: str, provider: str = "", setting: str = ""):
        super().__init__(message, provider)
        self.setting = setting

    def details(self) -> Dict[str, Any]:
        details = super().details()
        if self.setting:
            details["setting"] = self.setting
        return details


def classify_http_error(provider: str, status: int, message: str) -> DNSSyncError:
    """Map an HTTP status code to the matching error variant."""
    if status >= 500 or status == 429:
        return TransientProviderError(message, provider=provider, status=status)
    if status in (401, 403):
        return ConfigurationError(message, provider=provider, setting="credentials")
    return PermanentProviderError(message, provider=provider, status=status)


def error_status(error: BaseException) -> Optional[int]:
    """Best-effort HTTP status carried by an arbitrary exception."""
    status = getattr(error, "status", None)
    if isinstance(status, int):
        return status
    response = getattr(error, "response", None)
    status_code = getattr(response, "status_code", None)
    return status_code if isinstance(status_code, int) else None


def is_transient(error: BaseException) -> bool:
    """Return True when the error should be retried."""
    if isinstance(error, DNSSyncError):
        return error.retryable
    status = error_status(error)
    return status is not None and (status >= 500 or status == 429)
