"""
Exception hierarchy for the API.

Components raise these and stay unaware of HTTP. The mapping to status
codes lives in ``starter_api.api.errors``.
"""
from __future__ import annotations

from typing import Any, Optional


class ApiError(Exception):
    """Base for every error the API reports to clients."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(ApiError):
    """Request body has the wrong shape or violates an input policy."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message, code="VALIDATION_ERROR", details=details)


class DuplicateEmailError(ApiError):
    def __init__(self, message: str = "An account with this email already exists."):
        super().__init__(message, code="DUPLICATE_EMAIL")


class InvalidCredentialsError(ApiError):
    """Unknown email or wrong password. Same message for both."""

    def __init__(self):
        super().__init__("Invalid email or password.", code="INVALID_CREDENTIALS")


# ---------------------------------------------------------------------------
# Bearer authentication
# ---------------------------------------------------------------------------

class AuthenticationError(ApiError):
    """Request could not be authenticated."""


class MissingTokenError(AuthenticationError):
    def __init__(self, message: str = "Authentication required."):
        super().__init__(message, code="MISSING_TOKEN")


class UserNotFoundError(AuthenticationError):
    """Token is valid but its subject no longer resolves to a user."""

    def __init__(self):
        super().__init__("User not found.", code="USER_NOT_FOUND")


class TokenError(AuthenticationError):
    """Base for bearer token verification failures."""


class MalformedTokenError(TokenError):
    def __init__(self, message: str = "Malformed authentication token."):
        super().__init__(message, code="TOKEN_MALFORMED")


class BadSignatureError(TokenError):
    def __init__(self, message: str = "Authentication token signature is invalid."):
        super().__init__(message, code="TOKEN_BAD_SIGNATURE")


class ExpiredTokenError(TokenError):
    def __init__(self, message: str = "Authentication token has expired."):
        super().__init__(message, code="TOKEN_EXPIRED")


# ---------------------------------------------------------------------------
# Admission control
# ---------------------------------------------------------------------------

class RateLimitedError(ApiError):
    def __init__(self, limit: float, retry_after: int):
        super().__init__(
            f"Too many requests. Sustained limit is {limit:g} requests per second.",
            code="RATE_LIMITED",
            details={"retry_after": retry_after},
        )
        self.retry_after = retry_after
