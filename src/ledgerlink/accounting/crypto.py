"""Encryption of connection secrets at rest.

Access and refresh secrets are stored as Fernet tokens. The key comes from
SECRETS_ENCRYPTION_KEY (urlsafe base64, 32 bytes); generate one with
SecretCipher.generate_key().
"""

from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken

from src.ledgerlink.accounting.errors import ConfigurationError


class SecretCipher:
    """Symmetric encrypt/decrypt for secrets persisted by the connection store.

    Args:
        key: Fernet key (urlsafe base64-encoded 32 bytes).

    Raises:
        ConfigurationError: If the key is empty or malformed.
    """

    def __init__(self, key: str) -> None:
        if not key:
            raise ConfigurationError("SECRETS_ENCRYPTION_KEY is not configured")
        try:
            self._fernet = Fernet(key.encode("ascii"))
        except ValueError as exc:
            raise ConfigurationError(f"SECRETS_ENCRYPTION_KEY is invalid: {exc}") from exc

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("ascii")

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Decrypt a stored secret.

        Raises:
            ConfigurationError: If the token was encrypted with a different key.
        """
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ConfigurationError(
                "Stored secret cannot be decrypted with the configured key"
            ) from exc
