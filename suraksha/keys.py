"""
Key management module for Suraksha.

Provides per-identity RSA key pair generation and the key custody store.
Private keys are kept apart from identity records and are only released
to callers presenting responder claims.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from . import config
from .db import Database
from .errors import InputError, KeyGenerationError, NotFoundError
from .tokens import RESPONDER_ROLES, TokenClaims, require_role
from .util import now_epoch, sha256_hex

logger = logging.getLogger(__name__)

MIN_KEY_SIZE = 2048
PUBLIC_EXPONENT = 65537


@dataclass(frozen=True)
class KeyPair:
    """RSA key pair as PEM text blocks."""
    public_key_pem: str
    private_key_pem: str
    key_size: int

    @property
    def fingerprint(self) -> str:
        return public_key_fingerprint(self.public_key_pem)

    def __repr__(self) -> str:
        return f"KeyPair(key_size={self.key_size}, fingerprint={self.fingerprint[:16]}...)"


def public_key_fingerprint(public_key_pem: str) -> str:
    """SHA-256 hex digest of a public key PEM block."""
    return sha256_hex(public_key_pem.strip())


class KeyPairProvider:
    """
    Generates RSA key pairs for newly registered identities.

    Public keys are PEM SubjectPublicKeyInfo, private keys are unencrypted
    PEM PKCS8. Generation is the most expensive operation in the core and
    is meant to run once per registration.
    """

    def __init__(self, key_size: Optional[int] = None):
        key_size = key_size or config.RSA_KEY_SIZE
        if key_size < MIN_KEY_SIZE:
            raise InputError("key_size", f"must be at least {MIN_KEY_SIZE} bits")
        self.key_size = key_size

    def generate(self) -> KeyPair:
        """
        Generate a new key pair.

        Raises:
            KeyGenerationError: If the underlying library fails
        """
        try:
            private_key = rsa.generate_private_key(
                public_exponent=PUBLIC_EXPONENT,
                key_size=self.key_size,
            )
            private_pem = private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
            public_pem = private_key.public_key().public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
        except Exception as e:
            logger.error("RSA key pair generation failed: %s", e)
            raise KeyGenerationError(f"key pair generation failed: {e}") from e

        return KeyPair(
            public_key_pem=public_pem.decode("ascii"),
            private_key_pem=private_pem.decode("ascii"),
            key_size=self.key_size,
        )


class KeyStore:
    """
    Key custody backed by the ``identity_keys`` table.

    Public keys are freely readable. ``private_key`` is the single
    entry point to private key material and requires responder claims.
    """

    def __init__(self, db: Database):
        self._db = db

    def store(self, owner: str, key_pair: KeyPair, now: Optional[int] = None) -> None:
        """Persist a key pair for ``owner``. Joins an enclosing transaction."""
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO identity_keys(owner_phone, public_key, private_key, key_size, fingerprint, created_at) "
                "VALUES(?,?,?,?,?,?)",
                (owner, key_pair.public_key_pem, key_pair.private_key_pem,
                 key_pair.key_size, key_pair.fingerprint, now or now_epoch())
            )

    def has_keys(self, owner: str) -> bool:
        cur = self._db.connection().execute(
            "SELECT 1 FROM identity_keys WHERE owner_phone=?", (owner,)
        )
        return cur.fetchone() is not None

    def public_key(self, owner: str) -> str:
        """
        Get the owner's public key PEM.

        Raises:
            NotFoundError: If no key pair is on record
        """
        cur = self._db.connection().execute(
            "SELECT public_key FROM identity_keys WHERE owner_phone=?", (owner,)
        )
        row = cur.fetchone()
        if row is None:
            raise NotFoundError(f"no key pair on record for {owner}")
        return row["public_key"]

    def fingerprint(self, owner: str) -> str:
        cur = self._db.connection().execute(
            "SELECT fingerprint FROM identity_keys WHERE owner_phone=?", (owner,)
        )
        row = cur.fetchone()
        if row is None:
            raise NotFoundError(f"no key pair on record for {owner}")
        return row["fingerprint"]

    def private_key(self, owner: str, accessor: TokenClaims) -> str:
        """
        Release the owner's private key PEM to an authorized responder.

        Raises:
            ForbiddenError: If ``accessor`` does not hold a responder role
            NotFoundError: If no key pair is on record
        """
        require_role(accessor, *RESPONDER_ROLES)
        cur = self._db.connection().execute(
            "SELECT private_key FROM identity_keys WHERE owner_phone=?", (owner,)
        )
        row = cur.fetchone()
        if row is None:
            raise NotFoundError(f"no key pair on record for {owner}")
        return row["private_key"]
