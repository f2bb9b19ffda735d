"""
auth/errors.py -- Typed failures raised by the auth core.

Each class carries the HTTP status and the stable error code the API layer
puts in its error envelope. The core raises these; only api/main.py turns
them into responses. Messages are safe to show to clients -- they never
include whether an email exists or why a token failed beyond expired/invalid.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every failure the auth core reports to its caller."""

    status_code: int = 400
    code: str = "auth_error"
    default_message: str = "Authentication request failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(AuthError):
    """Malformed or unsupported input."""

    status_code = 400
    code = "validation_error"
    default_message = "Request validation failed."


class DuplicateCredentialError(AuthError):
    """Email or phone is already registered to a live account."""

    status_code = 409
    code = "duplicate_credential"
    default_message = "An account with that email or phone already exists."


class InvalidCredentialsError(AuthError):
    # Deliberately generic: unknown email and wrong password look the same.
    status_code = 401
    code = "invalid_credentials"
    default_message = "Invalid email or password."


class AccountNotActiveError(AuthError):
    status_code = 403
    code = "account_not_active"
    default_message = "This account is not active."


class TokenExpiredError(AuthError):
    status_code = 401
    code = "token_expired"
    default_message = "Token has expired."


class TokenInvalidError(AuthError):
    status_code = 401
    code = "token_invalid"
    default_message = "Token is invalid."


class AlreadyVerifiedError(AuthError):
    status_code = 400
    code = "already_verified"
    default_message = "Email address is already verified."


class UserNotFoundError(AuthError):
    status_code = 404
    code = "user_not_found"
    default_message = "User not found."


class InternalError(AuthError):
    """Transient store or crypto failure."""

    status_code = 500
    code = "internal_error"
    default_message = "An unexpected error occurred."


__all__ = [
    "AuthError",
    "ValidationError",
    "DuplicateCredentialError",
    "InvalidCredentialsError",
    "AccountNotActiveError",
    "TokenExpiredError",
    "TokenInvalidError",
    "AlreadyVerifiedError",
    "UserNotFoundError",
    "InternalError",
]
