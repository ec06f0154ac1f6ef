from typing import Optional, Dict, Any


class CostSentryException(Exception):
    """Base exception for all CostSentry errors."""
    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


class AuthenticationError(CostSentryException):
    """Provider rejected the credentials (401/403) or they are incomplete. Never retried."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="authentication_failed", details=details)


class TransientFetchError(CostSentryException):
    """Network failure, throttling or 5xx from a provider. Retried with backoff."""
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code="transient_fetch_error", details=details)
        self.status_code = status_code
        self.retry_after = retry_after


class ProviderRequestError(CostSentryException):
    """Provider returned a non-retryable client error (4xx other than auth)."""
    def __init__(self, message: str, status_code: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="provider_request_error", details=details)
        self.status_code = status_code


class NormalizationError(CostSentryException):
    """An adapter could not make sense of a raw payload."""
    def __init__(self, field: str, message: Optional[str] = None):
        super().__init__(
            message or f"Unexpected value for field '{field}'",
            code="normalization_error",
            details={"field": field},
        )
        self.field = field


class UnsupportedProviderError(CostSentryException):
    """No adapter/fetch client is registered for the provider id."""
    def __init__(self, provider_id: str):
        super().__init__(
            f"Unsupported provider: {provider_id}",
            code="unsupported_provider",
            details={"provider_id": provider_id},
        )


class PersistenceError(CostSentryException):
    """Storage-layer failure. The failing step leaves no partial writes."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="persistence_error", details=details)


class SyncTimeoutError(CostSentryException):
    """A sync exceeded its deadline. Nothing from the abandoned fetch is persisted."""
    def __init__(self, timeout_seconds: float):
        super().__init__(
            f"Sync deadline of {timeout_seconds}s exceeded",
            code="timeout",
            details={"timeout_seconds": timeout_seconds},
        )


class ResourceNotFoundError(CostSentryException):
    """Raised when a requested record (account, anomaly event) is not found."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="not_found", details=details)


class InvalidStatusTransitionError(CostSentryException):
    """Raised when an operator requests a resolution status change the lifecycle forbids."""
    def __init__(self, current: str, requested: str):
        super().__init__(
            f"Cannot move anomaly from '{current}' to '{requested}'",
            code="invalid_status_transition",
            details={"current": current, "requested": requested},
        )
