"""
Responder accounts for Suraksha.

Officers, supervisors and admins sign in with a username and password.
Passwords are stored as bcrypt hashes only; a deactivated account keeps
its row (and its name on resolved alerts) but can no longer sign in.
"""

import logging
import sqlite3
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import bcrypt

from . import config
from .db import Database
from .errors import AuthenticationError, ConflictError, NotFoundError
from .logging_config import audit_log
from .models import ResponderLoginRequest, ResponderRegistration, parse_payload
from .util import now_epoch

logger = logging.getLogger(__name__)


@dataclass
class Responder:
    id: int
    username: str
    name: str
    role: str
    department: Optional[str]
    rank: Optional[str]
    badge_number: Optional[str]
    is_active: bool
    created_at: int
    updated_at: int
    last_login: Optional[int]

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Responder":
        return cls(
            id=row["id"],
            username=row["username"],
            name=row["name"],
            role=row["role"],
            department=row["department"],
            rank=row["rank"],
            badge_number=row["badge_number"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_login=row["last_login"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_COLUMNS = (
    "id, username, name, role, department, rank, badge_number, "
    "is_active, created_at, updated_at, last_login"
)


def hash_password(password: str, rounds: Optional[int] = None) -> str:
    """Hash ``password`` with a fresh bcrypt salt."""
    salt = bcrypt.gensalt(rounds=rounds or config.BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    """Check ``password`` against a stored bcrypt hash."""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError) as e:
        logger.error("Unusable password hash on record: %s", type(e).__name__)
        return False


class ResponderRegistry:
    """Responder accounts and their password check."""

    def __init__(self, db: Database, bcrypt_rounds: Optional[int] = None):
        self._db = db
        self.bcrypt_rounds = bcrypt_rounds or config.BCRYPT_ROUNDS

    def create(self, payload: Any, now: Optional[int] = None) -> Responder:
        """
        Create an account from ``{username, password, name, role, ...}``.

        Raises:
            InputError: Invalid payload
            ConflictError: Username or badge number already taken
        """
        req = parse_payload(ResponderRegistration, payload)
        password_hash = hash_password(req.password, self.bcrypt_rounds)
        now = now_epoch() if now is None else now

        try:
            with self._db.transaction() as conn:
                cur = conn.execute(
                    "INSERT INTO responders(username, password_hash, name, role, department, rank, "
                    "badge_number, is_active, created_at, updated_at) VALUES(?,?,?,?,?,?,?,1,?,?)",
                    (req.username, password_hash, req.name, req.role, req.department, req.rank,
                     req.badge_number, now, now)
                )
                responder_id = cur.lastrowid
        except sqlite3.IntegrityError as e:
            raise ConflictError("Username or badge number already exists") from e

        audit_log.responder_created(req.username, req.role)
        return self.require(responder_id)

    def authenticate(self, username: str, password: str, now: Optional[int] = None) -> Responder:
        """
        Check credentials and stamp the login time.

        Unknown, inactive and wrong-password accounts fail the same way.

        Raises:
            AuthenticationError: Credentials not accepted
        """
        req = parse_payload(ResponderLoginRequest, {"username": username, "password": password})
        row = self._db.connection().execute(
            "SELECT id, password_hash, is_active FROM responders WHERE username=?", (req.username,)
        ).fetchone()

        if row is None:
            reason = "unknown_user"
        elif not verify_password(req.password, row["password_hash"]):
            reason = "bad_password"
        elif not row["is_active"]:
            reason = "inactive"
        else:
            reason = None

        if reason:
            audit_log.responder_login_failed(req.username, reason)
            raise AuthenticationError("Invalid username or password")

        now = now_epoch() if now is None else now
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE responders SET last_login=?, updated_at=? WHERE id=?",
                (now, now, row["id"])
            )
        return self.require(row["id"])

    def get(self, responder_id: int) -> Optional[Responder]:
        row = self._db.connection().execute(
            f"SELECT {_COLUMNS} FROM responders WHERE id=?", (responder_id,)
        ).fetchone()
        return Responder.from_row(row) if row else None

    def require(self, responder_id: int) -> Responder:
        responder = self.get(responder_id)
        if responder is None:
            raise NotFoundError("Responder not found")
        return responder

    def get_by_username(self, username: str) -> Optional[Responder]:
        row = self._db.connection().execute(
            f"SELECT {_COLUMNS} FROM responders WHERE username=?", (username,)
        ).fetchone()
        return Responder.from_row(row) if row else None

    def list_active(self) -> List[Responder]:
        rows = self._db.connection().execute(
            f"SELECT {_COLUMNS} FROM responders WHERE is_active=1 ORDER BY created_at DESC, id DESC"
        ).fetchall()
        return [Responder.from_row(r) for r in rows]

    def deactivate(self, responder_id: int, now: Optional[int] = None) -> Responder:
        now = now_epoch() if now is None else now
        with self._db.transaction() as conn:
            cur = conn.execute(
                "UPDATE responders SET is_active=0, updated_at=? WHERE id=?", (now, responder_id)
            )
            if cur.rowcount == 0:
                raise NotFoundError("Responder not found")
        responder = self.require(responder_id)
        audit_log.responder_deactivated(responder.username)
        return responder

    def stats(self, now: Optional[int] = None) -> Dict[str, int]:
        now = now_epoch() if now is None else now
        since = now - config.RESPONDER_RECENT_LOGIN_DAYS * 86400
        row = self._db.connection().execute(
            "SELECT COUNT(*) AS total, "
            "COALESCE(SUM(is_active), 0) AS active, "
            "COALESCE(SUM(CASE WHEN last_login >= ? THEN 1 ELSE 0 END), 0) AS recent_logins "
            "FROM responders",
            (since,)
        ).fetchone()
        return {"total": row["total"], "active": row["active"], "recent_logins": row["recent_logins"]}
