"""
Suraksha incident-data core

Version: 1.0.0

Protects and manages sensitive citizen-safety data end to end:

- per-identity RSA key pairs with a separate key custody store
- envelope encryption (AES-256-CBC + HMAC-SHA256, RSA-OAEP key wrap) of
  free-text alert and complaint content
- OTP-gated citizen login and bcrypt password sign-in for responders,
  both issuing Ed25519-signed, role-scoped bearer tokens
- a single-live-alert-per-identity incident store with an atomic
  resolve-and-archive step, and a complaint workflow with a closed
  status graph

Usage:
    from suraksha import SafetyService, TokenIssuer, StaticSigningKeyProvider, open_database

    db = open_database("data/suraksha.db")
    service = SafetyService(db, TokenIssuer(StaticSigningKeyProvider()))

    service.register({"name": "Asha", "dob": "1990-04-01", "phoneNumber": "+919876543210"})
    issue = service.request_otp({"phoneNumber": "+919876543210"})
    session = service.login({"phoneNumber": "+919876543210", "otp": issue.code})

    service.submit_alert(session.token, {"message": "help", "latitude": 1.0, "longitude": 2.0})
"""

__version__ = "1.0.0"

from .complaints import Complaint, ComplaintStatus, ComplaintStore
from .db import Database, open_database
from .envelope import Envelope, EnvelopeCrypto
from .errors import (
    AttemptsExceededError,
    AuthenticationError,
    ConflictError,
    DecryptionError,
    ExpiredError,
    ExpiredTokenError,
    ForbiddenError,
    InputError,
    InternalError,
    InvalidTokenError,
    KeyGenerationError,
    MismatchError,
    NotFoundError,
    RateLimitError,
    SurakshaError,
    TransitionError,
    UnwrapError,
)
from .identities import Identity, IdentityRegistry
from .incidents import Incident, IncidentHistoryEntry, IncidentStatus, IncidentStore
from .keys import KeyPair, KeyPairProvider, KeyStore
from .otp import OTPAuthenticator, OTPIssue
from .responders import Responder, ResponderRegistry
from .service import ResponderSession, SafetyService, Session
from .tokens import (
    FileSigningKeyProvider,
    Role,
    StaticSigningKeyProvider,
    TokenClaims,
    TokenIssuer,
    parse_bearer,
    require_role,
)

__all__ = [
    "__version__",
    # Storage
    "Database",
    "open_database",
    # Keys and encryption
    "KeyPair",
    "KeyPairProvider",
    "KeyStore",
    "Envelope",
    "EnvelopeCrypto",
    # Authentication
    "OTPAuthenticator",
    "OTPIssue",
    "TokenIssuer",
    "TokenClaims",
    "Role",
    "FileSigningKeyProvider",
    "StaticSigningKeyProvider",
    "parse_bearer",
    "require_role",
    # Records
    "Identity",
    "IdentityRegistry",
    "Incident",
    "IncidentHistoryEntry",
    "IncidentStatus",
    "IncidentStore",
    "Complaint",
    "ComplaintStatus",
    "ComplaintStore",
    "Responder",
    "ResponderRegistry",
    # Service
    "SafetyService",
    "Session",
    "ResponderSession",
    # Errors
    "SurakshaError",
    "InputError",
    "AuthenticationError",
    "KeyGenerationError",
    "UnwrapError",
    "DecryptionError",
    "RateLimitError",
    "ExpiredError",
    "AttemptsExceededError",
    "MismatchError",
    "NotFoundError",
    "ConflictError",
    "TransitionError",
    "ExpiredTokenError",
    "InvalidTokenError",
    "ForbiddenError",
    "InternalError",
]
