"""
Encryption service for upstream tokens stored in session records.
Uses Fernet symmetric encryption.
"""

from cryptography.fernet import Fernet, InvalidToken

from sidecar.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EncryptionError(Exception):
    """Custom exception for encryption/decryption errors."""

    pass


class TokenCipher:
    """Fernet wrapper producing ASCII ciphertext suitable for JSON storage."""

    def __init__(self, key: str):
        if not key:
            raise EncryptionError("ENCRYPTION_KEY not configured")
        try:
            self._fernet = Fernet(key.encode("utf-8"))
        except Exception as e:
            logger.error("Failed to initialize Fernet cipher", error=str(e))
            raise EncryptionError(f"Invalid encryption key: {e}") from e

    def encrypt(self, token: str) -> str:
        """
        Encrypt a token string.

        Raises:
            EncryptionError: If the token is empty or encryption fails
        """
        if not token or not isinstance(token, str):
            raise EncryptionError("Token must be a non-empty string")
        return self._fernet.encrypt(token.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a token produced by :meth:`encrypt`.

        Raises:
            EncryptionError: If the ciphertext is invalid or was made with another key
        """
        if not ciphertext or not isinstance(ciphertext, str):
            raise EncryptionError("Encrypted token must be a non-empty string")
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as e:
            logger.error("Token decryption failed - invalid token")
            raise EncryptionError("Invalid or corrupted token") from e


def generate_key() -> str:
    """Generate a new Fernet key for ENCRYPTION_KEY."""
    return Fernet.generate_key().decode("ascii")
