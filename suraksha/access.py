"""
Envelope access for stored records.

``EnvelopeSealer`` encrypts content under the owner's public key on
write. ``EnvelopeReader`` is the only component that combines private
keys with stored envelopes. It is built from a bearer token, which it
verifies itself, and only for responder roles.
"""

import logging
from typing import Optional, Tuple

from .envelope import Envelope, EnvelopeCrypto
from .errors import SurakshaError
from .keys import KeyStore
from .logging_config import audit_log
from .tokens import RESPONDER_ROLES, TokenIssuer, require_role
from .util import mask_sensitive

logger = logging.getLogger(__name__)


class EnvelopeReader:
    """
    Decrypts envelopes for the responder holding ``token``.

    Raises:
        InvalidTokenError / ExpiredTokenError: ``token`` does not verify
        ForbiddenError: The token's role is not a responder role
    """

    def __init__(
        self,
        crypto: EnvelopeCrypto,
        key_store: KeyStore,
        issuer: TokenIssuer,
        token: str,
        now: Optional[float] = None,
    ):
        self.accessor = require_role(issuer.verify(token, now=now), *RESPONDER_ROLES)
        self._crypto = crypto
        self._keys = key_store

    def reveal(self, owner: str, envelope: Optional[Envelope]) -> Optional[str]:
        """
        Decrypt ``envelope`` with ``owner``'s private key.

        Raises:
            NotFoundError: Owner has no key pair on record
            UnwrapError / DecryptionError: From the envelope layer
        """
        if envelope is None:
            return None
        private_key_pem = self._keys.private_key(owner, self.accessor)
        return self._crypto.decrypt_envelope(envelope, private_key_pem)


class EnvelopeSealer:
    """
    Encrypts record content for its owner, falling back to plaintext.

    A missing key pair or an encryption failure never drops the record;
    the content is returned in clear and the fallback is logged and
    audited so the stored row can carry ``is_encrypted = 0``.
    """

    def __init__(self, crypto: EnvelopeCrypto, key_store: KeyStore):
        self._crypto = crypto
        self._keys = key_store

    def seal(self, owner: str, plaintext: str, record_type: str) -> Tuple[Optional[str], Optional[Envelope]]:
        """Return ``(plaintext, None)`` or ``(None, envelope)``."""
        try:
            public_key_pem = self._keys.public_key(owner)
            return None, self._crypto.encrypt(plaintext, public_key_pem)
        except (SurakshaError, ValueError, TypeError) as e:
            logger.warning("Storing %s for %s without encryption: %s",
                           record_type, mask_sensitive(owner), e)
            audit_log.encryption_fallback(owner, record_type, type(e).__name__)
            return plaintext, None
