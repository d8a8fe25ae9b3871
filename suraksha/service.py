"""
Service layer for Suraksha.

``SafetyService`` wires the stores, the OTP flow and the token issuer
together and is the only surface the transport layer talks to. Every
citizen and responder operation takes the caller's bearer token (raw or
as an ``Authorization`` header value) and checks its role first.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from . import config
from .complaints import Complaint, ComplaintStore
from .db import Database, open_database
from .envelope import EnvelopeCrypto
from .errors import NotFoundError
from .identities import Identity, IdentityRegistry
from .incidents import Incident, IncidentHistoryEntry, IncidentStore
from .keys import KeyPairProvider, KeyStore
from .logging_config import audit_log
from .models import OTPRequest, OTPValidationRequest, ResponderLoginRequest, parse_payload
from .otp import OTPAuthenticator, OTPIssue
from .responders import Responder, ResponderRegistry
from .tokens import (
    RESPONDER_ROLES,
    Role,
    TokenClaims,
    TokenIssuer,
    get_signing_key_provider,
    parse_bearer,
    require_role,
)

logger = logging.getLogger(__name__)


@dataclass
class ResponderSession:
    """Result of a successful responder sign-in."""
    token: str
    claims: TokenClaims
    responder: Responder

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "expires_at": self.claims.expires_at,
            "user": self.responder.to_dict(),
        }


@dataclass
class Session:
    """Result of a successful login."""
    token: str
    claims: TokenClaims
    identity: Identity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "expires_at": self.claims.expires_at,
            "user": self.identity.to_dict(),
        }


class SafetyService:
    """Citizen safety operations behind bearer-token authorization."""

    def __init__(
        self,
        db: Database,
        token_issuer: TokenIssuer,
        key_provider: Optional[KeyPairProvider] = None,
        otp: Optional[OTPAuthenticator] = None,
        crypto: Optional[EnvelopeCrypto] = None,
        responders: Optional[ResponderRegistry] = None,
    ):
        self.db = db
        self.tokens = token_issuer
        self.crypto = crypto or EnvelopeCrypto()
        self.key_store = KeyStore(db)
        self.identities = IdentityRegistry(db, key_provider, self.key_store)
        self.otp = otp or OTPAuthenticator(db)
        self.incidents = IncidentStore(db, self.crypto, self.key_store)
        self.complaints = ComplaintStore(db, self.crypto, self.key_store)
        self.responders = responders or ResponderRegistry(db)

    @classmethod
    def from_config(cls) -> "SafetyService":
        """Build a service from environment configuration."""
        for name, present in config.validate_config().items():
            if not present:
                logger.warning("Configured %s file not found", name)
        db = open_database(config.DB_PATH)
        return cls(db, TokenIssuer(get_signing_key_provider()))

    # ============================================================
    # Authentication
    # ============================================================

    def register(self, payload: Any, now: Optional[int] = None) -> Identity:
        return self.identities.register(payload, now=now)

    def request_otp(self, payload: Any, now: Optional[int] = None) -> OTPIssue:
        """
        Issue a code for a registered phone number.

        Delivery is the caller's job; the returned issue carries the code.
        """
        req = parse_payload(OTPRequest, payload)
        if not self.identities.exists(req.phone_number):
            raise NotFoundError("User not found. Please register first.")
        return self.otp.generate(req.phone_number, now=now)

    def login(self, payload: Any, now: Optional[int] = None) -> Session:
        """Validate a code and open a citizen session."""
        req = parse_payload(OTPValidationRequest, payload)
        self.identities.require(req.phone_number)
        self.otp.validate(req.phone_number, req.otp, now=now)

        identity = self.identities.record_login(req.phone_number, now=now)
        claims = TokenClaims(
            subject=identity.phone_number,
            name=identity.name,
            role=Role.CITIZEN.value,
            phone=identity.phone_number,
            verified=identity.is_verified,
            key_fingerprint=self.key_store.fingerprint(identity.phone_number),
        )
        token = self.tokens.issue(claims, config.CITIZEN_TOKEN_TTL_SECONDS, now=now)
        audit_log.login_succeeded(identity.phone_number, claims.role)
        return Session(token=token, claims=self.tokens.verify(token, now=now), identity=identity)

    def responder_login(self, payload: Any, now: Optional[int] = None) -> ResponderSession:
        """
        Sign a responder in with ``{username, password}``.

        Raises:
            InputError: Invalid payload
            AuthenticationError: Unknown user, wrong password or inactive account
        """
        req = parse_payload(ResponderLoginRequest, payload)
        responder = self.responders.authenticate(req.username, req.password, now=now)
        claims = TokenClaims(
            subject=responder.username,
            name=responder.name,
            role=responder.role,
            verified=True,
        )
        token = self.tokens.issue(claims, config.RESPONDER_TOKEN_TTL_SECONDS, now=now)
        audit_log.login_succeeded(responder.username, responder.role)
        return ResponderSession(token=token, claims=self.tokens.verify(token, now=now), responder=responder)

    def authenticate(self, authorization: str, now: Optional[float] = None) -> TokenClaims:
        """Verify an ``Authorization: Bearer`` header value."""
        return self.tokens.verify(parse_bearer(authorization), now=now)

    @staticmethod
    def _raw(token: str) -> str:
        if isinstance(token, str) and token.lower().startswith("bearer "):
            return parse_bearer(token)
        return token

    def _claims(self, token: str, now: Optional[float] = None) -> TokenClaims:
        return self.tokens.verify(self._raw(token), now=now)

    def _citizen(self, token: str, now: Optional[float] = None) -> Identity:
        claims = require_role(self._claims(token, now), Role.CITIZEN)
        if not claims.phone:
            raise NotFoundError("User not found. Please register first.")
        return self.identities.require(claims.phone)

    def _responder(self, token: str, now: Optional[float] = None) -> TokenClaims:
        return require_role(self._claims(token, now), *RESPONDER_ROLES)

    # ============================================================
    # Citizen
    # ============================================================

    def profile(self, token: str) -> Identity:
        return self._citizen(token)

    def update_location(
        self,
        token: str,
        latitude: Any,
        longitude: Any,
        address: Optional[str] = None,
        now: Optional[int] = None,
    ) -> Identity:
        identity = self._citizen(token, now)
        return self.identities.update_location(identity.phone_number, latitude, longitude, address, now=now)

    def submit_alert(self, token: str, payload: Any, now: Optional[int] = None) -> Incident:
        identity = self._citizen(token, now)
        return self.incidents.submit(identity.phone_number, payload, owner_name=identity.name, now=now)

    def my_alert(self, token: str) -> Optional[Incident]:
        """The caller's live alert. Encrypted messages stay sealed."""
        identity = self._citizen(token)
        return self.incidents.get(identity.phone_number)

    def file_complaint(self, token: str, payload: Any, now: Optional[int] = None) -> Complaint:
        identity = self._citizen(token, now)
        return self.complaints.create(identity.phone_number, payload, owner_name=identity.name, now=now)

    def my_complaints(self, token: str) -> List[Complaint]:
        identity = self._citizen(token)
        return self.complaints.list_for_owner(identity.phone_number)

    # ============================================================
    # Responder: alerts
    # ============================================================

    def active_alerts(self, token: str) -> List[Incident]:
        return self.incidents.list_active(self.incidents.reader(self.tokens, self._raw(token)))

    def all_alerts(self, token: str) -> List[Incident]:
        return self.incidents.list_all(self.incidents.reader(self.tokens, self._raw(token)))

    def update_alert_status(self, token: str, owner: str, status: str, now: Optional[int] = None) -> bool:
        self._responder(token, now)
        if not self.incidents.update_status(owner, status, now=now):
            raise NotFoundError("Emergency alert not found")
        return True

    def resolve_alert(self, token: str, owner: str, notes: Optional[str] = None, now: Optional[int] = None) -> bool:
        claims = self._responder(token, now)
        return self.incidents.resolve(owner, claims.subject, notes, now=now)

    def alert_history(self, token: str, limit: Optional[int] = None) -> List[IncidentHistoryEntry]:
        return self.incidents.history(limit, self.incidents.reader(self.tokens, self._raw(token)))

    def alert_stats(self, token: str, now: Optional[int] = None) -> Dict[str, int]:
        self._responder(token, now)
        return self.incidents.stats(now=now)

    # ============================================================
    # Responder: complaints
    # ============================================================

    def complaints_list(self, token: str, status: Optional[str] = None) -> List[Complaint]:
        reader = self.complaints.reader(self.tokens, self._raw(token))
        if status is None:
            return self.complaints.list_all(reader)
        return self.complaints.list_by_status(status, reader)

    def assign_complaint(
        self,
        token: str,
        complaint_id: int,
        assignee: Optional[str] = None,
        now: Optional[int] = None,
    ) -> Complaint:
        claims = self._responder(token, now)
        return self.complaints.assign(complaint_id, assignee or claims.subject, now=now)

    def start_complaint(self, token: str, complaint_id: int, now: Optional[int] = None) -> Complaint:
        claims = self._responder(token, now)
        return self.complaints.start_progress(complaint_id, actor=claims.subject, now=now)

    def resolve_complaint(
        self,
        token: str,
        complaint_id: int,
        notes: Optional[str] = None,
        now: Optional[int] = None,
    ) -> Complaint:
        claims = self._responder(token, now)
        return self.complaints.resolve(complaint_id, notes, claims.subject, now=now)

    def reject_complaint(
        self,
        token: str,
        complaint_id: int,
        notes: Optional[str] = None,
        now: Optional[int] = None,
    ) -> Complaint:
        claims = self._responder(token, now)
        return self.complaints.reject(complaint_id, notes, claims.subject, now=now)

    def complaint_stats(self, token: str, now: Optional[int] = None) -> Dict[str, Any]:
        self._responder(token, now)
        stats: Dict[str, Any] = dict(self.complaints.stats(now=now))
        stats["by_category"] = self.complaints.by_category()
        return stats

    # ============================================================
    # Administration
    # ============================================================

    def identity_stats(self, token: str, now: Optional[int] = None) -> Dict[str, int]:
        require_role(self._claims(token, now), Role.ADMIN, Role.SUPERVISOR)
        return self.identities.stats(now=now)

    def register_responder(self, token: str, payload: Any, now: Optional[int] = None) -> Responder:
        require_role(self._claims(token, now), Role.ADMIN)
        return self.responders.create(payload, now=now)

    def deactivate_responder(self, token: str, responder_id: int, now: Optional[int] = None) -> Responder:
        require_role(self._claims(token, now), Role.ADMIN)
        return self.responders.deactivate(responder_id, now=now)

    def list_responders(self, token: str) -> List[Responder]:
        require_role(self._claims(token), Role.ADMIN, Role.SUPERVISOR)
        return self.responders.list_active()

    def responder_stats(self, token: str, now: Optional[int] = None) -> Dict[str, int]:
        require_role(self._claims(token, now), Role.ADMIN, Role.SUPERVISOR)
        return self.responders.stats(now=now)

    def cleanup_expired_otps(self, now: Optional[int] = None) -> int:
        removed = self.otp.cleanup_expired(now=now)
        if removed:
            logger.info("Removed %d expired one-time codes", removed)
        return removed

    def close(self) -> None:
        self.db.close()
