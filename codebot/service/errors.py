from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each class carries an HTTP ``status_code`` and a stable ``error_code``
    for the admin API, plus a ``user_message`` that is safe to send to a
    chat user. ``message`` is for logs and may contain detail that must
    never reach the end user.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_user_message: str = "❌ Something went wrong. Please try again."

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        user_message: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.user_message = user_message or self.default_user_message


class ValidationError(ServiceError):
    """Local input check failed; no downstream call was made (400)."""
    status_code = 400
    error_code = "validation_error"

    def __init__(self, message: str, **kwargs) -> None:
        # Validation messages are corrective and meant for the user
        kwargs.setdefault("user_message", message)
        super().__init__(message, **kwargs)


class AuthorizationError(ServiceError):
    """The account may not use the bot right now (403)."""
    status_code = 403
    error_code = "forbidden"


class InactiveAccountError(AuthorizationError):
    error_code = "account_inactive"


class QuotaExceededError(AuthorizationError):
    status_code = 429
    error_code = "quota_exceeded"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ProviderError(ServiceError):
    """A completion or execution call failed after retries (502)."""
    status_code = 502
    error_code = "provider_error"
    default_user_message = "❌ Sorry, I encountered an error processing your message. Please try again."


class CompletionError(ProviderError):
    error_code = "completion_error"


class ExecutionError(ProviderError):
    error_code = "execution_error"


class ProviderTimeout(ProviderError):
    status_code = 504
    error_code = "provider_timeout"


class PersistenceError(ServiceError):
    """Store unavailable or a write failed (503)."""
    status_code = 503
    error_code = "persistence_error"


class CorruptCredentialError(ServiceError):
    """A stored credential could not be decrypted.

    Only raised inside credential resolution; callers downgrade it to the
    default credential.
    """
    status_code = 500
    error_code = "corrupt_credential"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthorizationError",
    "InactiveAccountError",
    "QuotaExceededError",
    "NotFoundError",
    "ProviderError",
    "CompletionError",
    "ExecutionError",
    "ProviderTimeout",
    "PersistenceError",
    "CorruptCredentialError",
]
