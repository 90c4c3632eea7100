"""
errors.py — typed error kinds and the non-throwing result envelope.

Adapters raise the exceptions below internally; search_backends.base.invoke()
catches them at the adapter boundary and turns them into an AdapterResult.
Nothing in this module ever crosses into the orchestrator as an exception.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    INVALID_DIMENSIONS    = "invalid_dimensions"
    INVALID_CROP          = "invalid_crop"
    UNREACHABLE_REFERENCE = "unreachable_reference"
    PROVIDER_TIMEOUT      = "provider_timeout"
    PROVIDER_HTTP_ERROR   = "provider_http_error"
    PROVIDER_AUTH_MISSING = "provider_auth_missing"
    PROVIDER_ERROR        = "provider_error"
    CACHE_WRITE_FAILURE   = "cache_write_failure"
    CACHE_READ_CORRUPT    = "cache_read_corrupt"
    NO_RESULTS            = "no_results"


# ── Exceptions (raised inside a component, never across its boundary) ─────────

class SearchError(Exception):
    kind: ErrorKind = ErrorKind.PROVIDER_ERROR

    def to_info(self) -> "ErrorInfo":
        return ErrorInfo(kind=self.kind, message=str(self))


class InvalidDimensions(SearchError, ValueError):
    kind = ErrorKind.INVALID_DIMENSIONS


class InvalidCrop(SearchError, ValueError):
    kind = ErrorKind.INVALID_CROP


class UnreachableReference(SearchError):
    kind = ErrorKind.UNREACHABLE_REFERENCE


class ProviderTimeout(SearchError):
    kind = ErrorKind.PROVIDER_TIMEOUT


class ProviderHTTPError(SearchError, RuntimeError):
    kind = ErrorKind.PROVIDER_HTTP_ERROR

    def __init__(self, provider: str, status: int, body: str = "") -> None:
        super().__init__(f"{provider} error {status}: {body[:200]}")
        self.status = status

    def to_info(self) -> "ErrorInfo":
        return ErrorInfo(kind=self.kind, message=str(self), status=self.status)


class ProviderAuthMissing(SearchError):
    kind = ErrorKind.PROVIDER_AUTH_MISSING


class ProviderResponseError(SearchError):
    """The provider answered, but not with anything we can parse."""
    kind = ErrorKind.PROVIDER_ERROR


class CacheWriteFailure(SearchError):
    kind = ErrorKind.CACHE_WRITE_FAILURE


class CacheReadCorrupt(SearchError):
    kind = ErrorKind.CACHE_READ_CORRUPT


class StorageQuotaExceeded(Exception):
    """Raised by a cache storage when a write does not fit."""


# ── Result values ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ErrorInfo:
    kind: ErrorKind
    message: str
    status: Optional[int] = None     # HTTP status for provider_http_error

    def __str__(self) -> str:
        if self.status is not None:
            return f"{self.kind.value}({self.status}): {self.message}"
        return f"{self.kind.value}: {self.message}"

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message, "status": self.status}

    @classmethod
    def from_dict(cls, data: dict) -> "ErrorInfo":
        return cls(
            kind=ErrorKind(data["kind"]),
            message=data.get("message", ""),
            status=data.get("status"),
        )


@dataclass(frozen=True)
class AdapterResult:
    """Envelope every adapter call returns: {success, payload, error, latency_ms}."""
    adapter: str
    success: bool
    payload: Any = None
    error: Optional[ErrorInfo] = None
    latency_ms: int = 0

    @classmethod
    def ok(cls, adapter: str, payload: Any, latency_ms: int) -> "AdapterResult":
        return cls(adapter=adapter, success=True, payload=payload, latency_ms=latency_ms)

    @classmethod
    def failed(cls, adapter: str, error: ErrorInfo, latency_ms: int = 0) -> "AdapterResult":
        return cls(adapter=adapter, success=False, error=error, latency_ms=latency_ms)
