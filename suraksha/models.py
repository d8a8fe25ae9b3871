"""
Payload models for Suraksha.

Shapes of the inputs handed over by the transport layer. Field names
follow the client payloads (``phoneNumber``); attribute names are snake_case.
"""

from typing import Any, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import InputError
from .security import (
    URGENCY_LEVELS,
    normalize_phone,
    validate_choice,
    validate_dob,
    validate_string_length,
)

M = TypeVar("M", bound=BaseModel)


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RegistrationRequest(_Payload):
    name: str
    dob: str
    phone_number: str = Field(alias="phoneNumber")

    @field_validator("name")
    @classmethod
    def _name(cls, v: str) -> str:
        return validate_string_length(v, "name", 1, 100)

    @field_validator("dob")
    @classmethod
    def _dob(cls, v: str) -> str:
        return validate_dob(v)

    @field_validator("phone_number")
    @classmethod
    def _phone(cls, v: str) -> str:
        return normalize_phone(v, "phoneNumber")


class OTPRequest(_Payload):
    phone_number: str = Field(alias="phoneNumber")

    @field_validator("phone_number")
    @classmethod
    def _phone(cls, v: str) -> str:
        return normalize_phone(v, "phoneNumber")


class OTPValidationRequest(OTPRequest):
    otp: str

    @field_validator("otp")
    @classmethod
    def _otp(cls, v: str) -> str:
        v = v.strip()
        if not v.isdigit():
            raise InputError("otp", "must contain digits only")
        return v


class IncidentSubmission(_Payload):
    message: str
    latitude: float
    longitude: float
    address: Optional[str] = None
    accuracy: Optional[float] = Field(default=None, ge=0)
    urgency: str = "critical"

    @field_validator("message")
    @classmethod
    def _message(cls, v: str) -> str:
        return validate_string_length(v, "message", 1, 5000)

    @field_validator("latitude")
    @classmethod
    def _latitude(cls, v: float) -> float:
        if not -90.0 <= v <= 90.0:
            raise InputError("latitude", "must be between -90 and 90")
        return v

    @field_validator("longitude")
    @classmethod
    def _longitude(cls, v: float) -> float:
        if not -180.0 <= v <= 180.0:
            raise InputError("longitude", "must be between -180 and 180")
        return v

    @field_validator("address")
    @classmethod
    def _address(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return validate_string_length(v, "address", 1, 500)

    @field_validator("urgency")
    @classmethod
    def _urgency(cls, v: str) -> str:
        return validate_choice(v, "urgency", URGENCY_LEVELS)


class ComplaintSubmission(_Payload):
    category: str
    subject: str
    description: str
    location: Optional[str] = None
    urgency: str = "medium"

    @field_validator("category")
    @classmethod
    def _category(cls, v: str) -> str:
        return validate_string_length(v, "category", 1, 100)

    @field_validator("subject")
    @classmethod
    def _subject(cls, v: str) -> str:
        return validate_string_length(v, "subject", 1, 200)

    @field_validator("description")
    @classmethod
    def _description(cls, v: str) -> str:
        return validate_string_length(v, "description", 1, 5000)

    @field_validator("location")
    @classmethod
    def _location(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return validate_string_length(v, "location", 1, 500)

    @field_validator("urgency")
    @classmethod
    def _urgency(cls, v: str) -> str:
        return validate_choice(v, "urgency", URGENCY_LEVELS)



RESPONDER_ROLE_CHOICES = ("officer", "supervisor", "admin")

# bcrypt only reads the first 72 bytes
MAX_PASSWORD_BYTES = 72


class ResponderLoginRequest(_Payload):
    username: str
    password: str

    @field_validator("username")
    @classmethod
    def _username(cls, v: str) -> str:
        return validate_string_length(v, "username", 1, 100)

    @field_validator("password")
    @classmethod
    def _password(cls, v: str) -> str:
        if not v:
            raise InputError("password", "is required")
        return v


class ResponderRegistration(_Payload):
    username: str
    password: str
    name: str
    role: str = "officer"
    department: Optional[str] = None
    rank: Optional[str] = None
    badge_number: Optional[str] = Field(default=None, alias="badgeNumber")

    @field_validator("username")
    @classmethod
    def _username(cls, v: str) -> str:
        v = validate_string_length(v, "username", 3, 100)
        if not v.replace("_", "").replace(".", "").replace("-", "").isalnum():
            raise InputError("username", "may contain letters, digits, dot, dash and underscore only")
        return v

    @field_validator("password")
    @classmethod
    def _password(cls, v: str) -> str:
        if len(v) < 8:
            raise InputError("password", "must be at least 8 characters")
        if len(v.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise InputError("password", f"must be at most {MAX_PASSWORD_BYTES} bytes")
        return v

    @field_validator("name")
    @classmethod
    def _name(cls, v: str) -> str:
        return validate_string_length(v, "name", 1, 100)

    @field_validator("role")
    @classmethod
    def _role(cls, v: str) -> str:
        return validate_choice(v, "role", RESPONDER_ROLE_CHOICES)

    @field_validator("department", "rank", "badge_number")
    @classmethod
    def _optional_text(cls, v: Optional[str], info) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return validate_string_length(v, info.field_name, 1, 100)

def parse_payload(model: Type[M], payload: Any) -> M:
    """
    Validate ``payload`` against ``model``.

    Raises:
        InputError: Naming the first offending field
    """
    if isinstance(payload, model):
        return payload
    if not isinstance(payload, dict):
        raise InputError("payload", "must be an object")
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        first: Dict[str, Any] = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or "payload"
        raise InputError(field, first.get("msg", "is invalid")) from e
