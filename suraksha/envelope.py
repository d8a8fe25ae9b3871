"""
Envelope encryption module for Suraksha.

Free-text incident and complaint content is encrypted with a fresh
AES-256-CBC key per message; only that short key material is wrapped
with the owner's RSA public key (OAEP, SHA-256 for both the padding hash
and MGF1).

Stored shape is three base64 text artifacts:

    ciphertext   AES-CBC ciphertext || HMAC-SHA256(mac_key, iv || ciphertext)
    wrapped_key  RSA-OAEP(aes_key || mac_key)
    iv           16 random bytes

A wrapped key that unwraps to a bare 32-byte AES key marks a legacy
envelope without a tag; those are still decrypted.
"""

import hashlib
import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac, padding, serialization
from cryptography.hazmat.primitives.asymmetric import padding as asym_padding
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import DecryptionError, InputError, UnwrapError
from .util import b64d, b64e

logger = logging.getLogger(__name__)

AES_KEY_BYTES = 32
MAC_KEY_BYTES = 32
IV_BYTES = 16
TAG_BYTES = 32
BLOCK_BITS = 128


@dataclass(frozen=True)
class Envelope:
    """Base64 encoded envelope artifacts, always persisted together."""
    ciphertext: str
    wrapped_key: str
    iv: str

    @classmethod
    def from_columns(
        cls,
        ciphertext: Optional[str],
        wrapped_key: Optional[str],
        iv: Optional[str],
    ) -> Optional["Envelope"]:
        """
        Build an envelope from stored columns.

        Returns None when all three are absent.

        Raises:
            InputError: If only some of the three are present
        """
        present = [v is not None for v in (ciphertext, wrapped_key, iv)]
        if not any(present):
            return None
        if not all(present):
            raise InputError("envelope", "ciphertext, wrapped_key and iv must be stored together")
        return cls(ciphertext=ciphertext, wrapped_key=wrapped_key, iv=iv)

    def to_columns(self) -> Dict[str, str]:
        return {"ciphertext": self.ciphertext, "wrapped_key": self.wrapped_key, "iv": self.iv}


def _oaep() -> asym_padding.OAEP:
    return asym_padding.OAEP(
        mgf=asym_padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def _tag(mac_key: bytes, iv: bytes, ciphertext: bytes) -> hmac.HMAC:
    h = hmac.HMAC(mac_key, hashes.SHA256())
    h.update(iv)
    h.update(ciphertext)
    return h


class EnvelopeCrypto:
    """
    Hybrid encrypt/decrypt of text under an identity's RSA key pair.

    Stateless; one instance can be shared across threads.
    """

    def encrypt(self, plaintext: str, public_key_pem: str) -> Envelope:
        """
        Encrypt ``plaintext`` for the holder of ``public_key_pem``.

        Raises:
            InputError: Empty plaintext or unusable public key
        """
        if not isinstance(plaintext, str) or plaintext == "":
            raise InputError("plaintext", "cannot be empty")

        try:
            public_key = serialization.load_pem_public_key(public_key_pem.encode("ascii"))
        except (ValueError, TypeError, AttributeError, UnicodeEncodeError) as e:
            raise InputError("public_key", "not a valid PEM public key") from e
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise InputError("public_key", "must be an RSA public key")

        # Fresh key material for every message
        aes_key = os.urandom(AES_KEY_BYTES)
        mac_key = os.urandom(MAC_KEY_BYTES)
        iv = os.urandom(IV_BYTES)

        padder = padding.PKCS7(BLOCK_BITS).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

        encryptor = Cipher(algorithms.AES(aes_key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        tag = _tag(mac_key, iv, ciphertext).finalize()

        wrapped_key = public_key.encrypt(aes_key + mac_key, _oaep())

        return Envelope(
            ciphertext=b64e(ciphertext + tag),
            wrapped_key=b64e(wrapped_key),
            iv=b64e(iv),
        )

    def decrypt(self, ciphertext: str, wrapped_key: str, iv: str, private_key_pem: str) -> str:
        """
        Decrypt an envelope with the owner's private key.

        Raises:
            UnwrapError: The key material cannot be unwrapped with this key
            DecryptionError: Tag mismatch, bad IV, padding or text decoding failure
        """
        key_material = self._unwrap(wrapped_key, private_key_pem)

        try:
            raw = b64d(ciphertext)
            iv_bytes = b64d(iv)
        except ValueError as e:
            raise DecryptionError("envelope is not valid base64") from e
        if len(iv_bytes) != IV_BYTES:
            raise DecryptionError("initialization vector has the wrong length")

        if len(key_material) == AES_KEY_BYTES + MAC_KEY_BYTES:
            aes_key, mac_key = key_material[:AES_KEY_BYTES], key_material[AES_KEY_BYTES:]
            if len(raw) < TAG_BYTES:
                raise DecryptionError("ciphertext is truncated")
            body, tag = raw[:-TAG_BYTES], raw[-TAG_BYTES:]
            try:
                _tag(mac_key, iv_bytes, body).verify(tag)
            except InvalidSignature as e:
                raise DecryptionError("integrity check failed") from e
        elif len(key_material) == AES_KEY_BYTES:
            aes_key, body = key_material, raw
        else:
            raise DecryptionError("unwrapped key has an unexpected length")

        if not body or len(body) % (BLOCK_BITS // 8):
            raise DecryptionError("ciphertext length is not a whole number of blocks")

        try:
            decryptor = Cipher(algorithms.AES(aes_key), modes.CBC(iv_bytes)).decryptor()
            padded = decryptor.update(body) + decryptor.finalize()
            unpadder = padding.PKCS7(BLOCK_BITS).unpadder()
            data = unpadder.update(padded) + unpadder.finalize()
        except ValueError as e:
            raise DecryptionError("padding check failed") from e

        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("plaintext is not valid UTF-8") from e

    def decrypt_envelope(self, envelope: Envelope, private_key_pem: str) -> str:
        return self.decrypt(envelope.ciphertext, envelope.wrapped_key, envelope.iv, private_key_pem)

    @staticmethod
    def hash(data: Union[bytes, str]) -> str:
        """SHA-256 hex digest."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        return hashlib.sha256(data).hexdigest()

    def _unwrap(self, wrapped_key: str, private_key_pem: str) -> bytes:
        try:
            private_key = serialization.load_pem_private_key(
                private_key_pem.encode("ascii"), password=None
            )
        except (ValueError, TypeError, AttributeError, UnicodeEncodeError) as e:
            raise UnwrapError("private key could not be loaded") from e
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise UnwrapError("private key is not an RSA key")

        try:
            wrapped = b64d(wrapped_key)
        except ValueError as e:
            raise UnwrapError("wrapped key is not valid base64") from e

        try:
            return private_key.decrypt(wrapped, _oaep())
        except ValueError as e:
            logger.debug("OAEP unwrap failed: %s", e)
            raise UnwrapError() from e
