from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

from loguru import logger


T = TypeVar("T")

UNEXPECTED_FAILURE_MESSAGE = "Something went wrong. Please try again."


class CadenceError(Exception):
    error_type = "internal"
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": self.message,
            "errorType": self.error_type,
            "retryable": self.retryable,
        }


class ValidationError(CadenceError):
    """Missing or malformed action fields. Surfaced as a clarifying question."""

    error_type = "validation"

    def __init__(self, message: str, field: str = "") -> None:
        super().__init__(message)
        self.field = field

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["needsClarification"] = True
        if self.field:
            payload["field"] = self.field
        return payload


class CredentialError(CadenceError):
    error_type = "credential"

    def __init__(self, provider: str, message: str = "") -> None:
        super().__init__(message or f"Missing or invalid access token for {provider}")
        self.provider = provider


class NotFoundError(CadenceError):
    error_type = "not_found"

    def __init__(self, provider: str, resource_id: str, message: str = "") -> None:
        super().__init__(message or f"{provider} item not found: {resource_id}")
        self.provider = provider
        self.resource_id = resource_id


class ProviderError(CadenceError):
    error_type = "provider"
    retryable = True

    def __init__(self, provider: str, status: int, message: str) -> None:
        super().__init__(message)
        self.provider = provider
        self.status = status

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["status"] = self.status
        payload["provider"] = self.provider
        return payload


class ResolutionError(CadenceError):
    error_type = "resolution"
    retryable = True


class TranscriptionError(CadenceError):
    error_type = "transcription"
    retryable = True


@dataclass
class Outcome(Generic[T]):
    value: T | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def value_or(self, default: T) -> T:
        if self.error is not None or self.value is None:
            return default
        return self.value


def attempt(label: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> Outcome[T]:
    """Run a best-effort step. Failures are logged and returned, never raised."""
    try:
        return Outcome(value=fn(*args, **kwargs))
    except Exception as exc:
        logger.warning("{} failed: {}: {}", label, type(exc).__name__, exc)
        return Outcome(error=exc)


def unexpected_failure(label: str) -> dict[str, Any]:
    logger.exception("unexpected failure in {}", label)
    return CadenceError(UNEXPECTED_FAILURE_MESSAGE).to_payload()
