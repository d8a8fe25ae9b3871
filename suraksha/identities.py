"""
Identity registry for Suraksha.

Registration validates the payload, generates the identity's RSA key pair
once, and writes the identity row and its key custody row in a single
transaction. Identity records never carry the private key.
"""

import logging
import sqlite3
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from .db import Database
from .errors import ConflictError, NotFoundError
from .keys import KeyPairProvider, KeyStore
from .logging_config import audit_log
from .models import RegistrationRequest, parse_payload
from .security import normalize_phone, validate_coordinates, validate_string_length
from .util import now_epoch

logger = logging.getLogger(__name__)

RECENT_WINDOW_SECONDS = 7 * 86400


@dataclass
class Identity:
    id: int
    phone_number: str
    name: str
    dob: str
    public_key: Optional[str]
    is_verified: bool
    latitude: Optional[float]
    longitude: Optional[float]
    address: Optional[str]
    location_updated_at: Optional[int]
    created_at: int
    updated_at: int
    last_login: Optional[int]

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Identity":
        return cls(
            id=row["id"],
            phone_number=row["phone_number"],
            name=row["name"],
            dob=row["dob"],
            public_key=row["public_key"],
            is_verified=bool(row["is_verified"]),
            latitude=row["latitude"],
            longitude=row["longitude"],
            address=row["address"],
            location_updated_at=row["location_updated_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_login=row["last_login"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_SELECT = (
    "SELECT i.*, k.public_key AS public_key FROM identities i "
    "LEFT JOIN identity_keys k ON k.owner_phone = i.phone_number"
)


class IdentityRegistry:
    """Registered citizens and their key custody rows."""

    def __init__(
        self,
        db: Database,
        key_provider: Optional[KeyPairProvider] = None,
        key_store: Optional[KeyStore] = None,
    ):
        self._db = db
        self._key_provider = key_provider or KeyPairProvider()
        self.key_store = key_store or KeyStore(db)

    def register(self, payload: Any, now: Optional[int] = None) -> Identity:
        """
        Register a new identity from ``{name, dob, phoneNumber}``.

        Raises:
            InputError: Invalid payload
            ConflictError: Phone number already registered
            KeyGenerationError: Key pair could not be generated
        """
        req = parse_payload(RegistrationRequest, payload)
        if self.exists(req.phone_number):
            raise ConflictError("User already exists")

        key_pair = self._key_provider.generate()
        now = now_epoch() if now is None else now

        try:
            with self._db.transaction() as conn:
                conn.execute(
                    "INSERT INTO identities(phone_number, name, dob, is_verified, created_at, updated_at) "
                    "VALUES(?,?,?,0,?,?)",
                    (req.phone_number, req.name, req.dob, now, now)
                )
                self.key_store.store(req.phone_number, key_pair, now=now)
        except sqlite3.IntegrityError as e:
            # Lost a race with a concurrent registration
            raise ConflictError("User already exists") from e

        audit_log.identity_registered(req.phone_number)
        logger.info("Registered identity with key %s", key_pair.fingerprint[:16])
        return self.require(req.phone_number)

    def get(self, phone: str) -> Optional[Identity]:
        phone = normalize_phone(phone)
        row = self._db.connection().execute(
            f"{_SELECT} WHERE i.phone_number=?", (phone,)
        ).fetchone()
        return Identity.from_row(row) if row else None

    def require(self, phone: str) -> Identity:
        identity = self.get(phone)
        if identity is None:
            raise NotFoundError("User not found. Please register first.")
        return identity

    def exists(self, phone: str) -> bool:
        phone = normalize_phone(phone)
        cur = self._db.connection().execute(
            "SELECT 1 FROM identities WHERE phone_number=?", (phone,)
        )
        return cur.fetchone() is not None

    def record_login(self, phone: str, now: Optional[int] = None) -> Identity:
        """Mark the identity verified and stamp its last login."""
        phone = normalize_phone(phone)
        now = now_epoch() if now is None else now
        with self._db.transaction() as conn:
            cur = conn.execute(
                "UPDATE identities SET is_verified=1, last_login=?, updated_at=? WHERE phone_number=?",
                (now, now, phone)
            )
            if cur.rowcount == 0:
                raise NotFoundError("User not found. Please register first.")
        return self.require(phone)

    def update_location(
        self,
        phone: str,
        latitude: Any,
        longitude: Any,
        address: Optional[str] = None,
        now: Optional[int] = None,
    ) -> Identity:
        phone = normalize_phone(phone)
        lat, lon = validate_coordinates(latitude, longitude)
        if address is not None:
            address = validate_string_length(address, "address", 1, 500)
        now = now_epoch() if now is None else now
        with self._db.transaction() as conn:
            cur = conn.execute(
                "UPDATE identities SET latitude=?, longitude=?, address=?, "
                "location_updated_at=?, updated_at=? WHERE phone_number=?",
                (lat, lon, address, now, now, phone)
            )
            if cur.rowcount == 0:
                raise NotFoundError("User not found. Please register first.")
        return self.require(phone)

    def list_all(self) -> List[Identity]:
        rows = self._db.connection().execute(
            f"{_SELECT} ORDER BY i.created_at DESC, i.id DESC"
        ).fetchall()
        return [Identity.from_row(r) for r in rows]

    def stats(self, now: Optional[int] = None) -> Dict[str, int]:
        now = now_epoch() if now is None else now
        row = self._db.connection().execute(
            "SELECT COUNT(*) AS total, "
            "COALESCE(SUM(is_verified), 0) AS verified, "
            "COALESCE(SUM(CASE WHEN created_at >= ? THEN 1 ELSE 0 END), 0) AS recent "
            "FROM identities",
            (now - RECENT_WINDOW_SECONDS,)
        ).fetchone()
        return {
            "total": row["total"],
            "verified": row["verified"],
            "unverified": row["total"] - row["verified"],
            "recent": row["recent"],
        }
