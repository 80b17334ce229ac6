"""Credential encryption for stored tokens and validation secrets (Fernet)."""

import base64
import json
from typing import Any, cast

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from mailhub.core.config import get_settings

DECRYPTION_ERROR_MSG = "Failed to decrypt credentials - invalid or corrupted data"


class CredentialEncryptor:
    """Encrypt/decrypt credential payloads using Fernet (key derived from app secret)."""

    def __init__(self, secret_key: str | None = None, salt: str | None = None) -> None:
        if secret_key is None or salt is None:
            settings = get_settings()
            secret_key = secret_key or settings.secret_key.get_secret_value()
            salt = salt or settings.encryption_salt.get_secret_value()
        if not secret_key or not salt:
            raise ValueError("CredentialEncryptor requires SECRET_KEY and ENCRYPTION_SALT")
        self._fernet = Fernet(self._derive_key(secret_key, salt))

    @staticmethod
    def _derive_key(secret_key: str, salt: str) -> bytes:
        """Derive 32-byte key from secret_key + salt via PBKDF2-HMAC-SHA256."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt.encode(),
            iterations=100_000,
        )
        return base64.urlsafe_b64encode(kdf.derive(secret_key.encode()))

    def encrypt(self, credentials: dict[str, Any]) -> str:
        """Encrypt a dict to a string safe for storage."""
        json_str = json.dumps(credentials)
        return self._fernet.encrypt(json_str.encode()).decode()

    def decrypt(self, encrypted_str: str) -> dict[str, Any]:
        """Decrypt a stored string back to a dict.

        Raises:
            ValueError: If invalid or not valid JSON.
        """
        try:
            decrypted_bytes = self._fernet.decrypt(encrypted_str.encode())
            result = json.loads(decrypted_bytes.decode())
            if not isinstance(result, dict):
                raise ValueError("Decrypted credentials must be a dictionary")
            return cast(dict[str, Any], result)
        except InvalidToken as e:
            raise ValueError(DECRYPTION_ERROR_MSG) from e
        except json.JSONDecodeError as e:
            raise ValueError("Decrypted credentials are not valid JSON") from e
