"""
Incident store for Suraksha.

The ``incidents`` table is keyed by the owner's phone number, so an
identity has one live emergency alert or none. Submitting again replaces
the live alert in place. ``resolve`` archives the alert into
``incident_history`` and removes it from the live table in a single
transaction.

Alert messages are sealed for the owner on write; responder reads
decrypt per record through an ``EnvelopeReader`` and a failure on one
record only marks that record.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from . import config
from .access import EnvelopeReader, EnvelopeSealer
from .db import Database
from .envelope import Envelope, EnvelopeCrypto
from .errors import InputError, InternalError, NotFoundError, SurakshaError
from .keys import KeyStore
from .logging_config import audit_log
from .models import IncidentSubmission, parse_payload
from .security import normalize_phone, validate_string_length
from .tokens import TokenIssuer
from .util import generate_id, mask_sensitive, now_epoch, start_of_day

logger = logging.getLogger(__name__)

DECRYPTION_FAILED_MARKER = "[decryption failed]"


class IncidentStatus(str, Enum):
    ACTIVE = "active"
    RESPONDING = "responding"
    RESOLVED = "resolved"


# Statuses a live alert may hold; RESOLVED is only reached through resolve().
LIVE_STATUSES = (IncidentStatus.ACTIVE.value, IncidentStatus.RESPONDING.value)


@dataclass
class Incident:
    incident_id: str
    owner_phone: str
    owner_name: Optional[str]
    message: Optional[str]
    envelope: Optional[Envelope]
    is_encrypted: bool
    latitude: float
    longitude: float
    address: Optional[str]
    accuracy: Optional[float]
    urgency: str
    status: str
    created_at: int
    updated_at: int
    decryption_failed: bool = False

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Incident":
        return cls(
            incident_id=row["incident_id"],
            owner_phone=row["owner_phone"],
            owner_name=row["owner_name"],
            message=row["message"],
            envelope=Envelope.from_columns(row["ciphertext"], row["wrapped_key"], row["iv"]),
            is_encrypted=bool(row["is_encrypted"]),
            latitude=row["latitude"],
            longitude=row["longitude"],
            address=row["address"],
            accuracy=row["accuracy"],
            urgency=row["urgency"],
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "incident_id": self.incident_id,
            "owner_phone": self.owner_phone,
            "owner_name": self.owner_name,
            "message": self.message,
            "is_encrypted": self.is_encrypted,
            "decryption_failed": self.decryption_failed,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "address": self.address,
            "accuracy": self.accuracy,
            "urgency": self.urgency,
            "status": self.status,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class IncidentHistoryEntry:
    id: int
    incident_id: str
    owner_phone: str
    owner_name: Optional[str]
    message: Optional[str]
    envelope: Optional[Envelope]
    is_encrypted: bool
    latitude: float
    longitude: float
    address: Optional[str]
    accuracy: Optional[float]
    urgency: str
    resolved_by: str
    resolved_notes: Optional[str]
    created_at: int
    resolved_at: int
    status: str = IncidentStatus.RESOLVED.value
    decryption_failed: bool = field(default=False)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "IncidentHistoryEntry":
        return cls(
            id=row["id"],
            incident_id=row["incident_id"],
            owner_phone=row["owner_phone"],
            owner_name=row["owner_name"],
            message=row["message"],
            envelope=Envelope.from_columns(row["ciphertext"], row["wrapped_key"], row["iv"]),
            is_encrypted=bool(row["is_encrypted"]),
            latitude=row["latitude"],
            longitude=row["longitude"],
            address=row["address"],
            accuracy=row["accuracy"],
            urgency=row["urgency"],
            resolved_by=row["resolved_by"],
            resolved_notes=row["resolved_notes"],
            created_at=row["created_at"],
            resolved_at=row["resolved_at"],
            status=row["status"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "incident_id": self.incident_id,
            "owner_phone": self.owner_phone,
            "owner_name": self.owner_name,
            "message": self.message,
            "is_encrypted": self.is_encrypted,
            "decryption_failed": self.decryption_failed,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "address": self.address,
            "accuracy": self.accuracy,
            "urgency": self.urgency,
            "status": self.status,
            "resolved_by": self.resolved_by,
            "resolved_notes": self.resolved_notes,
            "created_at": self.created_at,
            "resolved_at": self.resolved_at,
        }


def reveal_message(record: Any, reader: Optional[EnvelopeReader], record_type: str, record_id: Any) -> Any:
    """
    Fill ``record.message`` from its envelope.

    A failure marks this record only; callers keep listing the rest.
    """
    if reader is None or record.envelope is None:
        return record
    try:
        record.message = reader.reveal(record.owner_phone, record.envelope)
    except SurakshaError as e:
        record.message = DECRYPTION_FAILED_MARKER
        record.decryption_failed = True
        audit_log.decryption_failed(record.owner_phone, record_type, record_id, e.code)
    return record


class IncidentStore:
    """Live emergency alerts, one per identity, and the resolved archive."""

    def __init__(
        self,
        db: Database,
        crypto: Optional[EnvelopeCrypto] = None,
        key_store: Optional[KeyStore] = None,
    ):
        self._db = db
        self.crypto = crypto or EnvelopeCrypto()
        self.key_store = key_store or KeyStore(db)
        self._sealer = EnvelopeSealer(self.crypto, self.key_store)

    def reader(self, issuer: TokenIssuer, token: str) -> EnvelopeReader:
        """Build a decrypting reader for the responder holding ``token``."""
        return EnvelopeReader(self.crypto, self.key_store, issuer, token)

    # ============================================================
    # Writes
    # ============================================================

    def submit(
        self,
        owner: str,
        payload: Any,
        owner_name: Optional[str] = None,
        now: Optional[int] = None,
    ) -> Incident:
        """
        Create or replace the owner's live alert.

        The replaced alert keeps its incident id and creation time and is
        reset to ``active``.
        """
        owner = normalize_phone(owner)
        req = parse_payload(IncidentSubmission, payload)
        now = now_epoch() if now is None else now

        message, envelope = self._sealer.seal(owner, req.message, "incident")
        columns = envelope.to_columns() if envelope else {"ciphertext": None, "wrapped_key": None, "iv": None}

        with self._db.transaction() as conn:
            replaced = conn.execute(
                "SELECT 1 FROM incidents WHERE owner_phone=?", (owner,)
            ).fetchone() is not None
            conn.execute(
                "INSERT INTO incidents(owner_phone, incident_id, owner_name, message, ciphertext, wrapped_key, iv, "
                "is_encrypted, latitude, longitude, address, accuracy, urgency, status, created_at, updated_at) "
                "VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,'active',?,?) "
                "ON CONFLICT(owner_phone) DO UPDATE SET "
                "owner_name=excluded.owner_name, message=excluded.message, "
                "ciphertext=excluded.ciphertext, wrapped_key=excluded.wrapped_key, iv=excluded.iv, "
                "is_encrypted=excluded.is_encrypted, latitude=excluded.latitude, "
                "longitude=excluded.longitude, address=excluded.address, accuracy=excluded.accuracy, "
                "urgency=excluded.urgency, status='active', updated_at=excluded.updated_at",
                (owner, generate_id(), owner_name, message, columns["ciphertext"], columns["wrapped_key"],
                 columns["iv"], 1 if envelope else 0, req.latitude, req.longitude, req.address,
                 req.accuracy, req.urgency, now, now)
            )
            row = conn.execute("SELECT * FROM incidents WHERE owner_phone=?", (owner,)).fetchone()

        incident = Incident.from_row(row)
        audit_log.alert_submitted(owner, incident.incident_id, incident.is_encrypted, replaced)
        return incident

    def update_status(self, owner: str, status: Any, now: Optional[int] = None) -> bool:
        """
        Set the live alert's status to ``active`` or ``responding``.

        Returns whether a live alert existed.
        """
        owner = normalize_phone(owner)
        value = status.value if isinstance(status, IncidentStatus) else status
        if value not in LIVE_STATUSES:
            raise InputError("status", f"must be one of {', '.join(LIVE_STATUSES)}")
        now = now_epoch() if now is None else now

        with self._db.transaction() as conn:
            cur = conn.execute(
                "UPDATE incidents SET status=?, updated_at=? WHERE owner_phone=?",
                (value, now, owner)
            )
            changed = cur.rowcount > 0

        if changed:
            audit_log.alert_status_changed(owner, value)
        return changed

    def mark_responding(self, owner: str, now: Optional[int] = None) -> bool:
        return self.update_status(owner, IncidentStatus.RESPONDING, now=now)

    def resolve(
        self,
        owner: str,
        resolver: str,
        notes: Optional[str] = None,
        now: Optional[int] = None,
    ) -> bool:
        """
        Archive the live alert and remove it, atomically.

        Raises:
            NotFoundError: No live alert for ``owner``; history is untouched
            InternalError: The archive write failed; the live alert is kept
        """
        owner = normalize_phone(owner)
        resolver = validate_string_length(resolver, "resolved_by", 1, 100)
        if notes is not None:
            notes = validate_string_length(notes, "resolved_notes", 0, 2000) or None
        now = now_epoch() if now is None else now

        try:
            with self._db.transaction() as conn:
                row = conn.execute("SELECT * FROM incidents WHERE owner_phone=?", (owner,)).fetchone()
                if row is None:
                    raise NotFoundError("Emergency alert not found")
                conn.execute(
                    "INSERT INTO incident_history(incident_id, owner_phone, owner_name, message, ciphertext, "
                    "wrapped_key, iv, is_encrypted, latitude, longitude, address, accuracy, urgency, status, "
                    "resolved_by, resolved_notes, created_at, resolved_at) "
                    "VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,'resolved',?,?,?,?)",
                    (row["incident_id"], row["owner_phone"], row["owner_name"], row["message"],
                     row["ciphertext"], row["wrapped_key"], row["iv"], row["is_encrypted"],
                     row["latitude"], row["longitude"], row["address"], row["accuracy"], row["urgency"],
                     resolver, notes, row["created_at"], now)
                )
                conn.execute("DELETE FROM incidents WHERE owner_phone=?", (owner,))
        except sqlite3.Error as e:
            logger.error("Resolving alert for %s failed: %s", mask_sensitive(owner), e)
            raise InternalError("Failed to resolve emergency alert") from e

        audit_log.alert_resolved(owner, row["incident_id"], resolver)
        return True

    # ============================================================
    # Reads
    # ============================================================

    def get(self, owner: str, reader: Optional[EnvelopeReader] = None) -> Optional[Incident]:
        owner = normalize_phone(owner)
        row = self._db.connection().execute(
            "SELECT * FROM incidents WHERE owner_phone=?", (owner,)
        ).fetchone()
        if row is None:
            return None
        return self._reveal(Incident.from_row(row), reader)

    def list_active(self, reader: Optional[EnvelopeReader] = None) -> List[Incident]:
        """Live alerts still waiting for a responder."""
        rows = self._db.connection().execute(
            "SELECT * FROM incidents WHERE status='active' ORDER BY updated_at DESC, created_at DESC"
        ).fetchall()
        return [self._reveal(Incident.from_row(r), reader) for r in rows]

    def list_all(self, reader: Optional[EnvelopeReader] = None) -> List[Incident]:
        """Every live alert, active or responding."""
        rows = self._db.connection().execute(
            "SELECT * FROM incidents ORDER BY updated_at DESC, created_at DESC"
        ).fetchall()
        return [self._reveal(Incident.from_row(r), reader) for r in rows]

    def history(
        self,
        limit: Optional[int] = None,
        reader: Optional[EnvelopeReader] = None,
    ) -> List[IncidentHistoryEntry]:
        limit = config.HISTORY_DEFAULT_LIMIT if limit is None else limit
        if not isinstance(limit, int) or limit < 1:
            raise InputError("limit", "must be a positive integer")
        rows = self._db.connection().execute(
            "SELECT * FROM incident_history ORDER BY resolved_at DESC, id DESC LIMIT ?", (limit,)
        ).fetchall()
        entries = []
        for r in rows:
            entry = IncidentHistoryEntry.from_row(r)
            entries.append(reveal_message(entry, reader, "incident_history", entry.id))
        return entries

    def stats(self, now: Optional[int] = None) -> Dict[str, int]:
        now = now_epoch() if now is None else now
        conn = self._db.connection()
        live = conn.execute(
            "SELECT "
            "COALESCE(SUM(CASE WHEN status='active' THEN 1 ELSE 0 END), 0) AS active, "
            "COALESCE(SUM(CASE WHEN status='responding' THEN 1 ELSE 0 END), 0) AS responding "
            "FROM incidents"
        ).fetchone()
        archived = conn.execute(
            "SELECT COUNT(*) AS total, "
            "COALESCE(SUM(CASE WHEN resolved_at >= ? THEN 1 ELSE 0 END), 0) AS today "
            "FROM incident_history",
            (start_of_day(now),)
        ).fetchone()
        return {
            "active": live["active"],
            "responding": live["responding"],
            "resolved_today": archived["today"],
            "total_resolved": archived["total"],
        }

    def _reveal(self, incident: Incident, reader: Optional[EnvelopeReader]) -> Incident:
        return reveal_message(incident, reader, "incident", incident.incident_id)
