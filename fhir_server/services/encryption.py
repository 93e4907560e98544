"""
Application-layer encryption for stored resource bodies.

Every FHIR resource a clinical server keeps is PHI, so bodies are written
Fernet-encrypted (AES-CBC + HMAC) and only decrypted inside the store.
"""

import json
import logging
import os
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class EncryptionService:
    """Wraps Fernet symmetric encryption for PHI payloads."""

    def __init__(self, key: str | bytes | None = None):
        raw_key = key or os.getenv("PHI_ENCRYPTION_KEY", "")
        if raw_key:
            self._fernet = Fernet(raw_key.encode() if isinstance(raw_key, str) else raw_key)
        else:
            # Development only: data written with an ephemeral key is unreadable
            # after a restart. Production keys come from a secrets manager.
            logger.warning("PHI_ENCRYPTION_KEY not set, using an ephemeral key")
            self._fernet = Fernet(Fernet.generate_key())

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string and return base64-encoded ciphertext."""
        if not plaintext:
            return ""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt base64-encoded ciphertext back to plaintext."""
        if not ciphertext:
            return ""
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            logger.error("Stored payload could not be decrypted with the configured key")
            raise

    def encrypt_json(self, payload: dict[str, Any]) -> str:
        return self.encrypt(json.dumps(payload, separators=(",", ":")))

    def decrypt_json(self, ciphertext: str) -> dict[str, Any]:
        return json.loads(self.decrypt(ciphertext))
