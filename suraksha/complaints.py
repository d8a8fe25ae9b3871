"""
Complaint store for Suraksha.

Complaints have a surrogate id and any number may be open per identity.
Status follows a closed graph:

    pending -> assigned -> in_progress -> resolved
       |          |             |
       +----------+-------------+------> rejected

``assigned`` may also go straight to ``resolved``. Each move is one
conditional UPDATE guarded by the allowed source states, so two racing
responders cannot both apply a transition.
"""

import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from .access import EnvelopeReader, EnvelopeSealer
from .db import Database
from .envelope import Envelope, EnvelopeCrypto
from .errors import InputError, NotFoundError, TransitionError
from .incidents import reveal_message
from .keys import KeyStore
from .logging_config import audit_log
from .models import ComplaintSubmission, parse_payload
from .security import normalize_phone, validate_string_length
from .tokens import TokenIssuer
from .util import now_epoch, start_of_day


class ComplaintStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    REJECTED = "rejected"


# target -> allowed source states
TRANSITIONS = {
    ComplaintStatus.ASSIGNED: (ComplaintStatus.PENDING,),
    ComplaintStatus.IN_PROGRESS: (ComplaintStatus.ASSIGNED,),
    ComplaintStatus.RESOLVED: (ComplaintStatus.ASSIGNED, ComplaintStatus.IN_PROGRESS),
    ComplaintStatus.REJECTED: (ComplaintStatus.PENDING, ComplaintStatus.ASSIGNED, ComplaintStatus.IN_PROGRESS),
}

TERMINAL_STATUSES = (ComplaintStatus.RESOLVED, ComplaintStatus.REJECTED)

_URGENCY_ORDER = (
    "CASE urgency WHEN 'critical' THEN 0 WHEN 'high' THEN 1 "
    "WHEN 'medium' THEN 2 ELSE 3 END"
)


@dataclass
class Complaint:
    id: int
    owner_phone: str
    owner_name: Optional[str]
    category: str
    subject: str
    description: Optional[str]
    envelope: Optional[Envelope]
    is_encrypted: bool
    location: Optional[str]
    urgency: str
    status: str
    assigned_to: Optional[str]
    response_notes: Optional[str]
    resolved_by: Optional[str]
    created_at: int
    updated_at: int
    resolved_at: Optional[int]
    decryption_failed: bool = False

    # reveal_message works on ``message``
    @property
    def message(self) -> Optional[str]:
        return self.description

    @message.setter
    def message(self, value: Optional[str]) -> None:
        self.description = value

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Complaint":
        return cls(
            id=row["id"],
            owner_phone=row["owner_phone"],
            owner_name=row["owner_name"],
            category=row["category"],
            subject=row["subject"],
            description=row["description"],
            envelope=Envelope.from_columns(row["ciphertext"], row["wrapped_key"], row["iv"]),
            is_encrypted=bool(row["is_encrypted"]),
            location=row["location"],
            urgency=row["urgency"],
            status=row["status"],
            assigned_to=row["assigned_to"],
            response_notes=row["response_notes"],
            resolved_by=row["resolved_by"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            resolved_at=row["resolved_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_phone": self.owner_phone,
            "owner_name": self.owner_name,
            "category": self.category,
            "subject": self.subject,
            "description": self.description,
            "is_encrypted": self.is_encrypted,
            "decryption_failed": self.decryption_failed,
            "location": self.location,
            "urgency": self.urgency,
            "status": self.status,
            "assigned_to": self.assigned_to,
            "response_notes": self.response_notes,
            "resolved_by": self.resolved_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "resolved_at": self.resolved_at,
        }


class ComplaintStore:
    """Citizen complaints and their responder workflow."""

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
        return EnvelopeReader(self.crypto, self.key_store, issuer, token)

    def create(
        self,
        owner: str,
        payload: Any,
        owner_name: Optional[str] = None,
        now: Optional[int] = None,
    ) -> Complaint:
        owner = normalize_phone(owner)
        req = parse_payload(ComplaintSubmission, payload)
        now = now_epoch() if now is None else now

        description, envelope = self._sealer.seal(owner, req.description, "complaint")
        columns = envelope.to_columns() if envelope else {"ciphertext": None, "wrapped_key": None, "iv": None}

        with self._db.transaction() as conn:
            cur = conn.execute(
                "INSERT INTO complaints(owner_phone, owner_name, category, subject, description, "
                "ciphertext, wrapped_key, iv, is_encrypted, location, urgency, status, created_at, updated_at) "
                "VALUES(?,?,?,?,?,?,?,?,?,?,?,'pending',?,?)",
                (owner, owner_name, req.category, req.subject, description,
                 columns["ciphertext"], columns["wrapped_key"], columns["iv"],
                 1 if envelope else 0, req.location, req.urgency, now, now)
            )
            complaint_id = cur.lastrowid

        audit_log.complaint_filed(owner, complaint_id, envelope is not None)
        return self.require(complaint_id)

    def get(self, complaint_id: int, reader: Optional[EnvelopeReader] = None) -> Optional[Complaint]:
        row = self._db.connection().execute(
            "SELECT * FROM complaints WHERE id=?", (complaint_id,)
        ).fetchone()
        if row is None:
            return None
        return self._reveal(Complaint.from_row(row), reader)

    def require(self, complaint_id: int, reader: Optional[EnvelopeReader] = None) -> Complaint:
        complaint = self.get(complaint_id, reader)
        if complaint is None:
            raise NotFoundError(f"Complaint {complaint_id} not found")
        return complaint

    def list_all(self, reader: Optional[EnvelopeReader] = None) -> List[Complaint]:
        rows = self._db.connection().execute(
            "SELECT * FROM complaints ORDER BY created_at DESC, id DESC"
        ).fetchall()
        return [self._reveal(Complaint.from_row(r), reader) for r in rows]

    def list_by_status(self, status: Any, reader: Optional[EnvelopeReader] = None) -> List[Complaint]:
        """Complaints in ``status``, most urgent first."""
        status = self._status(status)
        rows = self._db.connection().execute(
            f"SELECT * FROM complaints WHERE status=? ORDER BY {_URGENCY_ORDER}, created_at DESC, id DESC",
            (status.value,)
        ).fetchall()
        return [self._reveal(Complaint.from_row(r), reader) for r in rows]

    def list_pending(self, reader: Optional[EnvelopeReader] = None) -> List[Complaint]:
        return self.list_by_status(ComplaintStatus.PENDING, reader)

    def list_for_owner(self, owner: str, reader: Optional[EnvelopeReader] = None) -> List[Complaint]:
        owner = normalize_phone(owner)
        rows = self._db.connection().execute(
            "SELECT * FROM complaints WHERE owner_phone=? ORDER BY created_at DESC, id DESC", (owner,)
        ).fetchall()
        return [self._reveal(Complaint.from_row(r), reader) for r in rows]

    # ============================================================
    # Transitions
    # ============================================================

    def assign(self, complaint_id: int, assignee: str, now: Optional[int] = None) -> Complaint:
        assignee = validate_string_length(assignee, "assigned_to", 1, 100)
        return self._transition(complaint_id, ComplaintStatus.ASSIGNED, now, actor=assignee,
                                assigned_to=assignee)

    def start_progress(self, complaint_id: int, actor: Optional[str] = None, now: Optional[int] = None) -> Complaint:
        return self._transition(complaint_id, ComplaintStatus.IN_PROGRESS, now, actor=actor)

    def resolve(
        self,
        complaint_id: int,
        notes: Optional[str],
        resolver: str,
        now: Optional[int] = None,
    ) -> Complaint:
        resolver = validate_string_length(resolver, "resolved_by", 1, 100)
        return self._transition(complaint_id, ComplaintStatus.RESOLVED, now, actor=resolver,
                                response_notes=self._notes(notes), resolved_by=resolver)

    def reject(
        self,
        complaint_id: int,
        notes: Optional[str],
        resolver: str,
        now: Optional[int] = None,
    ) -> Complaint:
        resolver = validate_string_length(resolver, "resolved_by", 1, 100)
        return self._transition(complaint_id, ComplaintStatus.REJECTED, now, actor=resolver,
                                response_notes=self._notes(notes), resolved_by=resolver)

    def _transition(
        self,
        complaint_id: int,
        target: ComplaintStatus,
        now: Optional[int],
        actor: Optional[str] = None,
        **fields: Optional[str],
    ) -> Complaint:
        now = now_epoch() if now is None else now
        sources = TRANSITIONS[target]

        assignments = ["status=?", "updated_at=?"]
        params: List[Any] = [target.value, now]
        for column, value in fields.items():
            if value is not None:
                assignments.append(f"{column}=?")
                params.append(value)
        if target in TERMINAL_STATUSES:
            assignments.append("resolved_at=?")
            params.append(now)

        placeholders = ",".join("?" for _ in sources)
        params.append(complaint_id)
        params.extend(s.value for s in sources)

        with self._db.transaction() as conn:
            cur = conn.execute(
                f"UPDATE complaints SET {', '.join(assignments)} "
                f"WHERE id=? AND status IN ({placeholders})",
                params
            )
            if cur.rowcount == 0:
                row = conn.execute("SELECT status FROM complaints WHERE id=?", (complaint_id,)).fetchone()
                if row is None:
                    raise NotFoundError(f"Complaint {complaint_id} not found")
                raise TransitionError(row["status"], target.value)

        audit_log.complaint_transition(complaint_id, target.value, actor)
        return self.require(complaint_id)

    # ============================================================
    # Aggregates
    # ============================================================

    def stats(self, now: Optional[int] = None) -> Dict[str, int]:
        now = now_epoch() if now is None else now
        rows = self._db.connection().execute(
            "SELECT status, COUNT(*) AS cnt FROM complaints GROUP BY status"
        ).fetchall()
        counts = {s.value: 0 for s in ComplaintStatus}
        for r in rows:
            counts[r["status"]] = r["cnt"]
        today = self._db.connection().execute(
            "SELECT COUNT(*) AS cnt FROM complaints WHERE created_at >= ?", (start_of_day(now),)
        ).fetchone()["cnt"]
        counts["total"] = sum(counts[s.value] for s in ComplaintStatus)
        counts["today"] = today
        return counts

    def by_category(self) -> List[Dict[str, Any]]:
        rows = self._db.connection().execute(
            "SELECT category, COUNT(*) AS count FROM complaints "
            "GROUP BY category ORDER BY count DESC, category"
        ).fetchall()
        return [{"category": r["category"], "count": r["count"]} for r in rows]

    @staticmethod
    def _status(status: Any) -> ComplaintStatus:
        try:
            return ComplaintStatus(status)
        except ValueError:
            raise InputError("status", f"must be one of {', '.join(s.value for s in ComplaintStatus)}")

    @staticmethod
    def _notes(notes: Optional[str]) -> Optional[str]:
        if notes is None:
            return None
        return validate_string_length(notes, "response_notes", 0, 2000) or None

    def _reveal(self, complaint: Complaint, reader: Optional[EnvelopeReader]) -> Complaint:
        return reveal_message(complaint, reader, "complaint", complaint.id)
