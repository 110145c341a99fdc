"""AES-256-GCM encryption for provider API keys.

Provider credentials are stored encrypted at rest. The master key is a
base64-encoded 32-byte value from ENCRYPTION_MASTER_KEY. Ciphertext, nonce
and authentication tag are stored as separate base64 strings.
"""

import base64
import binascii
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from xauto.core.exceptions import ConfigurationError

NONCE_BYTES = 12
TAG_BYTES = 16


@dataclass(frozen=True)
class EncryptedSecret:
    ciphertext: str
    iv: str
    tag: str


class SecretCipher:
    """Encrypts and decrypts short secrets with a shared master key."""

    def __init__(self, master_key_b64: str | None):
        if not master_key_b64:
            raise ConfigurationError("ENCRYPTION_MASTER_KEY is required")
        try:
            key = base64.b64decode(master_key_b64, validate=True)
        except (binascii.Error, ValueError):
            raise ConfigurationError("ENCRYPTION_MASTER_KEY must be valid base64")
        if len(key) != 32:
            raise ConfigurationError(
                "ENCRYPTION_MASTER_KEY must decode to exactly 32 bytes"
            )
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> EncryptedSecret:
        iv = os.urandom(NONCE_BYTES)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        # cryptography appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return EncryptedSecret(
            ciphertext=base64.b64encode(ciphertext).decode("ascii"),
            iv=base64.b64encode(iv).decode("ascii"),
            tag=base64.b64encode(tag).decode("ascii"),
        )

    def decrypt(self, secret: EncryptedSecret) -> str:
        """Decrypt a stored secret.

        Raises:
            ValueError: If the payload is malformed or fails authentication.
        """
        try:
            ciphertext = base64.b64decode(secret.ciphertext)
            iv = base64.b64decode(secret.iv)
            tag = base64.b64decode(secret.tag)
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except (binascii.Error, InvalidTag) as e:
            raise ValueError(f"Failed to decrypt secret: {e!r}") from e
        return plaintext.decode("utf-8")
