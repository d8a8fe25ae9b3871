"""
Security module for Suraksha.

Provides input validation, normalization, and log sanitization.
"""

import re
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, Optional

from .errors import InputError

# ============================================================
# Input Validation
# ============================================================

PHONE_PATTERN = re.compile(r'^\+?[1-9]\d{9,14}$')
PHONE_STRIP = re.compile(r'[\s\-()]')

URGENCY_LEVELS = ("low", "medium", "high", "critical")

MIN_AGE_YEARS = 13
MAX_AGE_YEARS = 120


def normalize_phone(value: Any, field_name: str = "phone_number") -> str:
    """
    Normalize and validate a phone number.

    Spaces, dashes and parentheses are removed; a leading ``+`` is kept.

    Raises:
        InputError: If the number is missing or malformed
    """
    if not isinstance(value, str) or not value.strip():
        raise InputError(field_name, "is required")

    normalized = PHONE_STRIP.sub('', value)
    if not PHONE_PATTERN.match(normalized):
        raise InputError(field_name, "invalid phone number format")
    return normalized


def validate_string_length(
    value: Any,
    field_name: str,
    min_length: int = 1,
    max_length: int = 1000
) -> str:
    """
    Validate string length after trimming surrounding whitespace.

    Returns:
        The trimmed string

    Raises:
        InputError: If validation fails
    """
    if not isinstance(value, str):
        raise InputError(field_name, "must be a string")

    value = value.strip()

    if len(value) < min_length:
        if min_length == 1:
            raise InputError(field_name, "cannot be empty")
        raise InputError(field_name, f"must be at least {min_length} characters")

    if len(value) > max_length:
        raise InputError(field_name, f"must not exceed {max_length} characters")

    return value


def validate_dob(value: Any, today: Optional[date] = None, field_name: str = "dob") -> str:
    """
    Validate a date of birth given as an ISO date (``YYYY-MM-DD``).

    The holder must be between 13 and 120 years old.

    Returns:
        The ISO formatted date
    """
    if isinstance(value, datetime):
        dob = value.date()
    elif isinstance(value, date):
        dob = value
    elif isinstance(value, str):
        try:
            dob = date.fromisoformat(value.strip()[:10])
        except ValueError:
            raise InputError(field_name, "must be an ISO date (YYYY-MM-DD)")
    else:
        raise InputError(field_name, "is required")

    today = today or datetime.now(timezone.utc).date()
    age = today.year - dob.year - ((today.month, today.day) < (dob.month, dob.day))
    if age < MIN_AGE_YEARS:
        raise InputError(field_name, f"must be at least {MIN_AGE_YEARS} years ago")
    if age > MAX_AGE_YEARS:
        raise InputError(field_name, f"must be within {MAX_AGE_YEARS} years")
    return dob.isoformat()


def validate_coordinates(latitude: Any, longitude: Any) -> tuple:
    """Validate a latitude/longitude pair and return them as floats."""
    try:
        lat = float(latitude)
    except (TypeError, ValueError):
        raise InputError("latitude", "must be a number")
    try:
        lon = float(longitude)
    except (TypeError, ValueError):
        raise InputError("longitude", "must be a number")

    if not -90.0 <= lat <= 90.0:
        raise InputError("latitude", "must be between -90 and 90")
    if not -180.0 <= lon <= 180.0:
        raise InputError("longitude", "must be between -180 and 180")
    return lat, lon


def validate_choice(value: Any, field_name: str, choices: Iterable[str]) -> str:
    """Validate that ``value`` is one of ``choices``."""
    choices = tuple(choices)
    if value not in choices:
        raise InputError(field_name, f"must be one of {', '.join(choices)}")
    return value


# ============================================================
# Audit Logging Helpers
# ============================================================

# Fields whose values must never reach a log line
SECRET_FIELDS = frozenset({
    "otp", "code", "candidate", "token", "password", "password_hash",
    "private_key", "private_key_pem", "private_key_b64", "wrapped_key",
    "ciphertext", "message", "description",
})

REDACTED = "[REDACTED]"


def sanitize_for_logging(fields: Dict[str, Any], secret_fields: Iterable[str] = SECRET_FIELDS) -> Dict[str, Any]:
    """
    Copy ``fields`` with secret values replaced by ``[REDACTED]``.

    Nested dicts and lists of dicts are sanitized as well.
    """
    secret_fields = frozenset(secret_fields)
    clean: Dict[str, Any] = {}
    for key, value in fields.items():
        if key in secret_fields and value is not None:
            clean[key] = REDACTED
        elif isinstance(value, dict):
            clean[key] = sanitize_for_logging(value, secret_fields)
        elif isinstance(value, (list, tuple)):
            clean[key] = [
                sanitize_for_logging(item, secret_fields) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            clean[key] = value
    return clean
