"""
At-rest encryption for stored access and refresh tokens.
"""
import base64
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..config.settings import settings
from ..utils.logger import logger

KDF_SALT = b'ads_auth_token_salt'
KDF_ITERATIONS = 100000


def derive_fernet_key(material: str) -> bytes:
    """
    Stretch arbitrary key material into a Fernet key.

    The same material always yields the same key, so tokens written by one
    process can be read by another sharing TOKEN_ENCRYPTION_KEY.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=KDF_SALT,
        iterations=KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(material.encode()))


class TokenEncryption:
    """Fernet cipher for token columns."""

    def __init__(self, encryption_key: Optional[str] = None):
        """
        Args:
            encryption_key: Key material (defaults to TOKEN_ENCRYPTION_KEY)
        """
        material = encryption_key or settings.token_encryption_key
        if not material:
            raise ValueError("Token encryption key must not be empty")
        self._fernet = Fernet(derive_fernet_key(material))

    def encrypt(self, token: str) -> str:
        """Encrypt a plaintext token into Fernet ciphertext text."""
        return self._fernet.encrypt(token.encode()).decode()

    def decrypt(self, encrypted_token: str) -> str:
        """
        Decrypt ciphertext produced by ``encrypt``.

        Raises:
            InvalidToken: Wrong key or corrupted ciphertext
        """
        try:
            return self._fernet.decrypt(encrypted_token.encode()).decode()
        except InvalidToken:
            logger.error("Token decryption failed: wrong key or corrupted ciphertext")
            raise
