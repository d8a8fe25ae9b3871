"""
Error taxonomy for Suraksha.

Every failure raised by the core is a SurakshaError subclass with a stable
``code`` and an ``http_status`` hint for whatever transport sits in front of
the service. Hints such as remaining attempts or remaining seconds are kept
as attributes and exported through ``to_dict()``.
"""

from typing import Any, Dict, Optional


class SurakshaError(Exception):
    """Base class for all Suraksha errors."""

    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)

    def hints(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        data = {"error": self.code, "message": self.message}
        data.update(self.hints())
        return data


class InputError(SurakshaError):
    """Raised when caller-supplied input fails validation."""

    code = "INVALID_INPUT"
    http_status = 400

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")

    def hints(self) -> Dict[str, Any]:
        return {"field": self.field}


class KeyGenerationError(SurakshaError):
    """Key pair generation failed."""

    code = "KEY_GENERATION_FAILED"


class UnwrapError(SurakshaError):
    """The wrapped symmetric key could not be recovered with the given private key."""

    code = "KEY_UNWRAP_FAILED"
    http_status = 422


class DecryptionError(SurakshaError):
    """The ciphertext could not be decrypted or failed its integrity check."""

    code = "DECRYPTION_FAILED"
    http_status = 422


class RateLimitError(SurakshaError):
    """A one-time code is already pending for this phone number."""

    code = "RATE_LIMITED"
    http_status = 429

    def __init__(self, remaining_seconds: int, message: Optional[str] = None):
        self.remaining_seconds = max(1, int(remaining_seconds))
        super().__init__(
            message
            or f"OTP already sent. Retry in {self.remaining_seconds} seconds"
        )

    def hints(self) -> Dict[str, Any]:
        return {"remaining_seconds": self.remaining_seconds}


class ExpiredError(SurakshaError):
    """The one-time code has expired. Request a new one."""

    code = "OTP_EXPIRED"
    http_status = 400


class AttemptsExceededError(SurakshaError):
    """Maximum verification attempts exceeded. Request a new code."""

    code = "OTP_ATTEMPTS_EXCEEDED"
    http_status = 429


class MismatchError(SurakshaError):
    """The one-time code does not match."""

    code = "OTP_MISMATCH"
    http_status = 400

    def __init__(self, remaining_attempts: int):
        self.remaining_attempts = max(0, int(remaining_attempts))
        super().__init__(f"Invalid OTP, {self.remaining_attempts} attempts remaining")

    def hints(self) -> Dict[str, Any]:
        return {"remaining_attempts": self.remaining_attempts}


class NotFoundError(SurakshaError):
    """The requested record does not exist."""

    code = "NOT_FOUND"
    http_status = 404


class ConflictError(SurakshaError):
    """The request conflicts with existing state."""

    code = "CONFLICT"
    http_status = 409


class TransitionError(ConflictError):
    """The requested status change is not a legal transition."""

    code = "ILLEGAL_TRANSITION"

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"cannot move from {current} to {requested}")

    def hints(self) -> Dict[str, Any]:
        return {"current": self.current, "requested": self.requested}


class AuthenticationError(SurakshaError):
    """Invalid username or password."""

    code = "INVALID_CREDENTIALS"
    http_status = 401


class ExpiredTokenError(SurakshaError):
    """The bearer token has expired."""

    code = "TOKEN_EXPIRED"
    http_status = 401


class InvalidTokenError(SurakshaError):
    """The bearer token is malformed or its signature does not verify."""

    code = "TOKEN_INVALID"
    http_status = 401


class ForbiddenError(SurakshaError):
    """The caller's role does not permit this operation."""

    code = "FORBIDDEN"
    http_status = 403


class InternalError(SurakshaError):
    """Unexpected internal failure."""

    code = "INTERNAL_ERROR"
