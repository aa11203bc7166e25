"""
Encryption utilities for securing sensitive data (database passwords, S3 keys).
Uses Fernet symmetric encryption with a key derived from the deployment's ENCRYPTION_SECRET.
"""

import base64
import binascii
import logging
from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

# Fernet token layout: version (1) | timestamp (8) | IV (16) | ciphertext (16n) | HMAC (32)
_FERNET_VERSION = 0x80
_FERNET_OVERHEAD = 1 + 8 + 16 + 32


def is_encrypted(value) -> bool:
    """
    Check whether a value looks like a Fernet token produced by CryptoManager.

    Plaintext and masked values return False, which is what makes
    encrypt/decrypt of a config safe to apply more than once.
    """
    if not isinstance(value, str) or len(value) < 80:
        return False

    try:
        raw = base64.urlsafe_b64decode(value.encode('ascii'))
    except (binascii.Error, ValueError, UnicodeEncodeError):
        return False

    if raw[0] != _FERNET_VERSION:
        return False

    ciphertext_length = len(raw) - _FERNET_OVERHEAD
    return ciphertext_length >= 16 and ciphertext_length % 16 == 0


class CryptoManager:
    """Handles encryption and decryption of sensitive data."""

    def __init__(self):
        self._fernet = None

    def initialize(self, secret: str, salt: bytes = b'backhaul-credentials-v1') -> None:
        """
        Initialize the encryption manager with the deployment secret.

        Args:
            secret: ENCRYPTION_SECRET value to derive the encryption key from
            salt: Fixed salt; security relies on the secret being unique per deployment
        """
        if not secret:
            raise RuntimeError("ENCRYPTION_SECRET is required to initialize CryptoManager")

        if len(secret) < 32:
            logger.warning("ENCRYPTION_SECRET should be at least 32 characters")

        if isinstance(salt, str):
            salt = salt.encode()

        # Derive a 32-byte key from the secret using PBKDF2
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(secret.encode()))

        self._fernet = Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string.

        Args:
            plaintext: String to encrypt

        Returns:
            URL-safe Fernet token

        Raises:
            RuntimeError: If crypto manager not initialized
        """
        if not self._fernet:
            raise RuntimeError("CryptoManager not initialized. Call initialize() first.")

        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, encrypted: str) -> str:
        """
        Decrypt a string.

        Args:
            encrypted: Fernet token

        Returns:
            Decrypted plaintext string

        Raises:
            RuntimeError: If crypto manager not initialized
            cryptography.fernet.InvalidToken: If decryption fails
        """
        if not self._fernet:
            raise RuntimeError("CryptoManager not initialized. Call initialize() first.")

        return self._fernet.decrypt(encrypted.encode()).decode()

    @property
    def is_initialized(self) -> bool:
        """Check if the crypto manager has been initialized."""
        return self._fernet is not None


# Global instance, initialized by create_app()
crypto_manager = CryptoManager()
