from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for typed failures raised by the auth services.

    Each subclass carries a stable ``error_code`` naming the failure kind. The
    services never attach a transport status; mapping codes to responses is the
    caller's job. Codes:
    - validation_error
    - conflict
    - invalid_credentials
    - unauthorized
    - invalid_or_expired_otp
    - not_found
    - internal
    """

    error_code: str = "internal"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request input is malformed."""
    error_code = "validation_error"


class ConflictError(ServiceError):
    """Resource conflict, e.g. an email that is already registered."""
    error_code = "conflict"


class InvalidCredentialsError(ServiceError):
    """Login failed. Deliberately says nothing about which check failed."""
    error_code = "invalid_credentials"


class AuthenticationError(ServiceError):
    """Token missing, invalid or expired, or its session was revoked."""
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """A token failed decoding, signature, algorithm, audience or expiry checks."""


class InvalidOTPError(ServiceError):
    """Password-reset code absent, mismatched or expired."""
    error_code = "invalid_or_expired_otp"


class NotFoundError(ServiceError):
    """Requested record does not exist."""
    error_code = "not_found"


class ServerError(ServiceError):
    """Store or infrastructure failure; safe for the caller to retry."""
    error_code = "internal"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ConflictError",
    "InvalidCredentialsError",
    "AuthenticationError",
    "InvalidTokenError",
    "InvalidOTPError",
    "NotFoundError",
    "ServerError",
]
