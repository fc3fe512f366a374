from __future__ import annotations

import json
import logging

from cryptography.fernet import Fernet, InvalidToken

from crm_sync.schemas.integration import OAuthCredentials

logger = logging.getLogger(__name__)


class CredentialCipher:
    """Encrypts credential bundles before they reach the database."""

    def __init__(self, key: str | bytes) -> None:
        if not key:
            raise ValueError("CREDENTIALS_ENCRYPTION_KEY is not configured")
        self._fernet = Fernet(key)

    def encrypt(self, credentials: OAuthCredentials) -> str:
        payload = json.dumps(credentials.reveal(), separators=(",", ":")).encode("utf-8")
        return self._fernet.encrypt(payload).decode("ascii")

    def decrypt(self, token: str) -> OAuthCredentials:
        try:
            payload = self._fernet.decrypt(token.encode("ascii"))
        except InvalidToken:
            logger.error("Stored credentials could not be decrypted (wrong key or corrupt row)")
            raise
        return OAuthCredentials.model_validate(json.loads(payload))

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("ascii")
