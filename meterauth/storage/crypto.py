from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from meterauth.logging import get_logger

logger = get_logger(__name__)


class SecretCipher:
    """Fernet wrapper for TOTP secrets held at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("MFA encryption key material is required")
        try:
            self._fernet = Fernet(self._derive_cipher_key(key_material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: str | None) -> str | None:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: str | None) -> str | None:
        if not token:
            return token
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            # A secret written under a rotated key cannot be used
            logger.warning("mfa_secret_decrypt_failed")
            return None
