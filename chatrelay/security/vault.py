"""
Credential vault.

AES-256-GCM encryption for per-connection secrets at rest. Stored blobs are
base64(nonce || ciphertext || tag) so they fit in a text column.
"""

import base64
import binascii
import json
import logging
import re
import secrets
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from chatrelay.errors import ConfigurationError, CredentialError

logger = logging.getLogger(__name__)

KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16

_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")


def load_key(raw: str | None) -> bytes:
    """
    Parse the configured encryption key.

    Accepts 64 hex characters or base64 encoding exactly 32 bytes.
    Raises ConfigurationError otherwise.
    """
    if not raw:
        raise ConfigurationError("ENCRYPTION_KEY is not set")
    raw = raw.strip()
    if _HEX_KEY.match(raw):
        return bytes.fromhex(raw)
    try:
        key = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        raise ConfigurationError(
            "ENCRYPTION_KEY must be 64 hex chars or base64-encoded 32 bytes"
        ) from None
    if len(key) != KEY_LENGTH:
        raise ConfigurationError(
            "ENCRYPTION_KEY must be 64 hex chars or base64-encoded 32 bytes",
            {"decoded_length": len(key)},
        )
    return key


def generate_key() -> str:
    """Generate a new key in the hex form accepted by load_key."""
    return secrets.token_bytes(KEY_LENGTH).hex()


class Vault:
    """
    Encrypt and decrypt connection credentials.

    Usage:
        vault = Vault.from_key(settings.encryption_key)
        blob = vault.encrypt_json({"token": "..."})
        creds = vault.decrypt_json(blob)
    """

    def __init__(self, key: bytes):
        if len(key) != KEY_LENGTH:
            raise ConfigurationError(f"Vault key must be {KEY_LENGTH} bytes")
        self._aead = AESGCM(key)

    @classmethod
    def from_key(cls, raw: str | None) -> "Vault":
        return cls(load_key(raw))

    def encrypt(self, plaintext: str) -> str:
        nonce = secrets.token_bytes(NONCE_LENGTH)
        # AESGCM appends the 16-byte tag to the ciphertext
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, blob: str) -> str:
        try:
            data = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError, TypeError):
            raise CredentialError("Ciphertext is not valid base64") from None
        # b64decode ignores the spare low bits of the final character
        if base64.b64encode(data).decode("ascii") != blob:
            raise CredentialError("Ciphertext is not canonical base64")
        if len(data) < NONCE_LENGTH + TAG_LENGTH:
            raise CredentialError("Ciphertext is truncated")
        nonce, sealed = data[:NONCE_LENGTH], data[NONCE_LENGTH:]
        try:
            plaintext = self._aead.decrypt(nonce, sealed, None)
        except InvalidTag:
            raise CredentialError("Ciphertext failed authentication") from None
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise CredentialError("Decrypted credentials are not UTF-8") from None

    def encrypt_json(self, obj: Any) -> str:
        """Encrypt a JSON-serializable object."""
        return self.encrypt(json.dumps(obj))

    def decrypt_json(self, blob: str) -> Any:
        """Decrypt back to a parsed object."""
        try:
            return json.loads(self.decrypt(blob))
        except json.JSONDecodeError:
            raise CredentialError("Decrypted credentials are not valid JSON") from None
