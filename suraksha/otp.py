"""
One-time code module for Suraksha.

Per phone number the record moves none -> pending -> {consumed, expired,
exhausted}. At most one record exists per phone (primary key); any
unexpired record, exhausted or not, blocks a new one instead of being
replaced. Exhausted records stay until they expire.

Every check runs inside a single BEGIN IMMEDIATE transaction and the
attempt counter is incremented in place, so concurrent guesses cannot
under-count attempts.
"""

import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional

from . import config
from .db import Database
from .errors import (
    AttemptsExceededError,
    ExpiredError,
    InputError,
    MismatchError,
    NotFoundError,
    RateLimitError,
)
from .logging_config import audit_log
from .security import normalize_phone
from .util import constant_time_compare, now_epoch


@dataclass(frozen=True)
class OTPIssue:
    """A freshly issued code, handed to the external delivery channel."""
    phone_number: str
    code: str
    expires_at: int
    created_at: int

    def __repr__(self) -> str:
        return f"OTPIssue(phone_number={self.phone_number!r}, expires_at={self.expires_at})"


class OTPAuthenticator:
    """Issues, rate-limits, and validates one-time codes."""

    def __init__(
        self,
        db: Database,
        ttl_seconds: Optional[int] = None,
        max_attempts: Optional[int] = None,
        length: Optional[int] = None,
    ):
        self._db = db
        self.ttl_seconds = ttl_seconds or config.OTP_TTL_SECONDS
        self.max_attempts = max_attempts or config.OTP_MAX_ATTEMPTS
        self.length = length or config.OTP_LENGTH

    def _new_code(self, phone: str) -> str:
        if phone in config.otp_test_numbers():
            return config.OTP_TEST_CODE
        return f"{secrets.randbelow(10 ** self.length):0{self.length}d}"

    def generate(self, phone: str, now: Optional[int] = None) -> OTPIssue:
        """
        Issue a new code for ``phone``.

        Raises:
            RateLimitError: An unexpired record exists, even one whose
                attempts are used up
        """
        phone = normalize_phone(phone)
        now = now_epoch() if now is None else now

        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT expires_at FROM otp_records WHERE phone_number=?", (phone,)
            ).fetchone()
            if row and row["expires_at"] > now:
                raise RateLimitError(row["expires_at"] - now)

            code = self._new_code(phone)
            expires_at = now + self.ttl_seconds
            conn.execute(
                "INSERT INTO otp_records(phone_number, code, expires_at, attempts, created_at) "
                "VALUES(?,?,?,0,?) "
                "ON CONFLICT(phone_number) DO UPDATE SET "
                "code=excluded.code, expires_at=excluded.expires_at, "
                "attempts=0, created_at=excluded.created_at",
                (phone, code, expires_at, now)
            )

        audit_log.otp_issued(phone, expires_at)
        return OTPIssue(phone_number=phone, code=code, expires_at=expires_at, created_at=now)

    def validate(self, phone: str, candidate: str, now: Optional[int] = None) -> bool:
        """
        Check ``candidate`` against the pending code for ``phone``.

        Returns True and consumes the record on a match.

        Raises:
            NotFoundError: No pending code
            ExpiredError: The code expired (record removed)
            AttemptsExceededError: Attempts used up (record kept until expiry)
            MismatchError: Wrong code, carrying the remaining attempts
        """
        phone = normalize_phone(phone)
        if not isinstance(candidate, str) or not candidate.strip():
            raise InputError("otp", "is required")
        candidate = candidate.strip()
        now = now_epoch() if now is None else now

        outcome = None
        remaining = 0
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT code, expires_at, attempts FROM otp_records WHERE phone_number=?", (phone,)
            ).fetchone()

            if row is None:
                outcome = "not_found"
            elif now >= row["expires_at"]:
                conn.execute("DELETE FROM otp_records WHERE phone_number=?", (phone,))
                outcome = "expired"
            elif row["attempts"] >= self.max_attempts:
                # Kept until expiry so the window stays rate limited
                outcome = "exhausted"
            elif not constant_time_compare(candidate, row["code"]):
                conn.execute(
                    "UPDATE otp_records SET attempts = attempts + 1 "
                    "WHERE phone_number=? AND attempts < ?",
                    (phone, self.max_attempts)
                )
                attempts = conn.execute(
                    "SELECT attempts FROM otp_records WHERE phone_number=?", (phone,)
                ).fetchone()["attempts"]
                remaining = self.max_attempts - attempts
                outcome = "mismatch"
            else:
                conn.execute("DELETE FROM otp_records WHERE phone_number=?", (phone,))
                outcome = "ok"

        if outcome == "ok":
            return True

        audit_log.otp_rejected(phone, outcome, remaining if outcome == "mismatch" else None)
        if outcome == "not_found":
            raise NotFoundError("No OTP found for this phone number")
        if outcome == "expired":
            raise ExpiredError()
        if outcome == "exhausted":
            raise AttemptsExceededError()
        raise MismatchError(remaining)

    def cleanup_expired(self, now: Optional[int] = None) -> int:
        """Delete every expired record. Returns the number removed."""
        now = now_epoch() if now is None else now
        with self._db.transaction() as conn:
            cur = conn.execute("DELETE FROM otp_records WHERE expires_at <= ?", (now,))
            return cur.rowcount

    def pending(self, phone: str, now: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """Describe the pending record for ``phone`` without its code."""
        phone = normalize_phone(phone)
        now = now_epoch() if now is None else now
        row = self._db.connection().execute(
            "SELECT expires_at, attempts, created_at FROM otp_records WHERE phone_number=?", (phone,)
        ).fetchone()
        if row is None:
            return None
        return {
            "phone_number": phone,
            "created_at": row["created_at"],
            "expires_at": row["expires_at"],
            "expired": now >= row["expires_at"],
            "remaining_seconds": max(0, row["expires_at"] - now),
            "remaining_attempts": max(0, self.max_attempts - row["attempts"]),
        }
