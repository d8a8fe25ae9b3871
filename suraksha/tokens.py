"""
Bearer token issuance and verification for Suraksha.

Tokens are compact JWS strings::

    b64url(header) "." b64url(claims) "." b64url(signature)

signed with Ed25519 (``alg: EdDSA``). The header carries the signing key
id so verifiers can hold several keys during rotation.
"""

import json
import math
import os
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from . import config
from .errors import ExpiredTokenError, ForbiddenError, InputError, InvalidTokenError
from .logging_config import audit_log
from .util import b64d, b64e, b64url_decode, b64url_encode, canonicalize

ALGORITHM = "EdDSA"
TOKEN_TYPE = "JWT"


class Role(str, Enum):
    CITIZEN = "citizen"
    OFFICER = "officer"
    SUPERVISOR = "supervisor"
    ADMIN = "admin"


RESPONDER_ROLES = (Role.ADMIN.value, Role.SUPERVISOR.value, Role.OFFICER.value)
ALL_ROLES = tuple(r.value for r in Role)


@dataclass(frozen=True)
class TokenClaims:
    """Claims embedded in a bearer token."""
    subject: str
    name: str
    role: str
    phone: Optional[str] = None
    verified: bool = False
    key_fingerprint: Optional[str] = None
    issued_at: int = 0
    expires_at: int = 0
    issuer: str = ""
    audience: str = ""

    def to_payload(self) -> Dict[str, Any]:
        return {
            "sub": self.subject,
            "name": self.name,
            "phone": self.phone,
            "verified": self.verified,
            "role": self.role,
            "pkf": self.key_fingerprint,
            "iat": self.issued_at,
            "exp": self.expires_at,
            "iss": self.issuer,
            "aud": self.audience,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TokenClaims":
        try:
            claims = cls(
                subject=str(payload["sub"]),
                name=str(payload["name"]),
                role=str(payload["role"]),
                phone=payload.get("phone"),
                verified=bool(payload.get("verified", False)),
                key_fingerprint=payload.get("pkf"),
                issued_at=int(payload["iat"]),
                expires_at=int(payload["exp"]),
                issuer=str(payload["iss"]),
                audience=str(payload["aud"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidTokenError("token claims are incomplete") from e
        if claims.role not in ALL_ROLES:
            raise InvalidTokenError("token carries an unknown role")
        return claims

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ============================================================
# Signing Keys
# ============================================================

class SigningKeyProvider(ABC):
    """Abstract source of the token signing key and verification keys."""

    @abstractmethod
    def sign(self, payload: bytes) -> bytes:
        """Sign ``payload`` with the active key and return the raw signature."""

    @abstractmethod
    def get_kid(self) -> str:
        """Get the key ID used for signing."""

    @abstractmethod
    def verify_key(self, kid: str) -> Optional[VerifyKey]:
        """Return the verification key for ``kid`` or None if unknown."""


class StaticSigningKeyProvider(SigningKeyProvider):
    """In-memory Ed25519 key, generated when none is supplied."""

    def __init__(self, signing_key: Optional[SigningKey] = None, kid: Optional[str] = None):
        self._sk = signing_key or SigningKey.generate()
        self._kid = kid or config.TOKEN_SIGNING_KID
        self._verify_keys = {self._kid: self._sk.verify_key}

    def sign(self, payload: bytes) -> bytes:
        return self._sk.sign(payload).signature

    def get_kid(self) -> str:
        return self._kid

    def verify_key(self, kid: str) -> Optional[VerifyKey]:
        return self._verify_keys.get(kid)


class FileSigningKeyProvider(SigningKeyProvider):
    """
    Ed25519 key loaded from a JSON file::

        {"kid": "...", "private_key_b64": "...", "previous_keys": {"kid": "pub_b64"}}

    ``previous_keys`` is optional and lists verification-only keys kept
    valid during rotation. Thread-safe.
    """

    def __init__(self, signing_key_path: Optional[str] = None):
        self._path = signing_key_path or config.TOKEN_SIGNING_KEY_PATH
        self._lock = threading.RLock()

        with open(self._path, "r", encoding="utf-8") as f:
            raw = json.load(f)

        self._kid = raw["kid"]
        self._sk = SigningKey(b64d(raw["private_key_b64"]))
        self._verify_keys = {self._kid: self._sk.verify_key}
        for kid, pub_b64 in raw.get("previous_keys", {}).items():
            self._verify_keys[kid] = VerifyKey(b64d(pub_b64))

    def sign(self, payload: bytes) -> bytes:
        with self._lock:
            return self._sk.sign(payload).signature

    def get_kid(self) -> str:
        return self._kid

    def verify_key(self, kid: str) -> Optional[VerifyKey]:
        return self._verify_keys.get(kid)


def generate_signing_key_file(path: str, kid: Optional[str] = None) -> str:
    """
    Write a fresh Ed25519 signing key file and return its kid.
    """
    kid = kid or config.TOKEN_SIGNING_KID
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    sk = SigningKey.generate()
    with open(path, "w", encoding="utf-8") as f:
        json.dump({
            "kid": kid,
            "private_key_b64": b64e(bytes(sk)),
            "public_key_b64": b64e(bytes(sk.verify_key)),
        }, f, indent=2)
    return kid


def get_signing_key_provider(signing_key_path: Optional[str] = None) -> SigningKeyProvider:
    """
    File provider when the key file exists, otherwise an ephemeral key.

    Outside production a missing key file falls back to a generated key;
    tokens then do not survive a restart.
    """
    path = signing_key_path or config.TOKEN_SIGNING_KEY_PATH
    if os.path.exists(path):
        return FileSigningKeyProvider(path)
    if config.is_production():
        raise FileNotFoundError(f"token signing key not found: {path}")
    audit_log.security_event("ephemeral_signing_key", severity="medium", path=path)
    return StaticSigningKeyProvider()


# ============================================================
# Issuer
# ============================================================

class TokenIssuer:
    """
    Issues and verifies signed, time-limited, role-scoped bearer tokens.
    """

    def __init__(
        self,
        key_provider: SigningKeyProvider,
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
    ):
        self._keys = key_provider
        self.issuer = issuer or config.TOKEN_ISSUER
        self.audience = audience or config.TOKEN_AUDIENCE

    def issue(self, claims: TokenClaims, ttl: int, now: Optional[float] = None) -> str:
        """
        Sign ``claims`` into a token valid for ``ttl`` seconds.

        Issue time, expiry, issuer and audience on ``claims`` are replaced.
        """
        if not isinstance(ttl, int) or ttl <= 0:
            raise InputError("ttl", "must be a positive number of seconds")
        if claims.role not in ALL_ROLES:
            raise InputError("role", f"must be one of {', '.join(ALL_ROLES)}")

        now = time.time() if now is None else now
        stamped = replace(
            claims,
            issued_at=int(now),
            expires_at=math.ceil(now + ttl),
            issuer=self.issuer,
            audience=self.audience,
        )

        header = {"alg": ALGORITHM, "typ": TOKEN_TYPE, "kid": self._keys.get_kid()}
        signing_input = (
            b64url_encode(canonicalize(header)) + "." + b64url_encode(canonicalize(stamped.to_payload()))
        )
        signature = self._keys.sign(signing_input.encode("ascii"))
        return signing_input + "." + b64url_encode(signature)

    def verify(self, token: str, now: Optional[float] = None) -> TokenClaims:
        """
        Verify a token and return its claims.

        Raises:
            InvalidTokenError: Malformed token, unknown key, bad signature,
                or foreign issuer/audience
            ExpiredTokenError: The token is past its expiry
        """
        if not isinstance(token, str) or token.count(".") != 2:
            self._reject("malformed")
        header_b64, payload_b64, sig_b64 = token.split(".")

        try:
            header = json.loads(b64url_decode(header_b64))
            signature = b64url_decode(sig_b64)
        except ValueError:
            self._reject("undecodable")

        if not isinstance(header, dict) or header.get("alg") != ALGORITHM:
            self._reject("unsupported_algorithm")

        verify_key = self._keys.verify_key(str(header.get("kid", "")))
        if verify_key is None:
            self._reject("unknown_kid")

        try:
            verify_key.verify(f"{header_b64}.{payload_b64}".encode("ascii"), signature)
        except (BadSignatureError, ValueError, UnicodeEncodeError):
            self._reject("bad_signature")

        try:
            payload = json.loads(b64url_decode(payload_b64))
        except ValueError:
            self._reject("undecodable")
        if not isinstance(payload, dict):
            self._reject("undecodable")

        claims = TokenClaims.from_payload(payload)
        if claims.issuer != self.issuer or claims.audience != self.audience:
            self._reject("foreign_issuer_or_audience")

        now = time.time() if now is None else now
        if now >= claims.expires_at:
            audit_log.token_rejected("expired")
            raise ExpiredTokenError()
        return claims

    def _reject(self, reason: str) -> None:
        audit_log.token_rejected(reason)
        raise InvalidTokenError(f"invalid token ({reason})")


def require_role(claims: TokenClaims, *roles: str) -> TokenClaims:
    """
    Ensure ``claims`` carries one of ``roles``.

    Raises:
        ForbiddenError: If it does not
    """
    allowed = {r.value if isinstance(r, Role) else r for r in roles}
    if claims.role not in allowed:
        audit_log.access_denied(claims.subject, claims.role, sorted(allowed))
        raise ForbiddenError(f"role '{claims.role}' is not permitted")
    return claims


def parse_bearer(authorization: Optional[str]) -> str:
    """
    Extract the token from an ``Authorization: Bearer <token>`` header value.
    """
    if not authorization:
        raise InvalidTokenError("missing bearer token")
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvalidTokenError("authorization header must use the Bearer scheme")
    return token.strip()
