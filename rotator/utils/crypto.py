"""
Encryption utilities for secrets kept in the configuration file
(SMTP and remote-sync passwords).

Encrypted values are stored as 'enc:<token>' where <token> is a Fernet token
keyed by a PBKDF2 derivation of the configured SECRET_KEY.
"""

import base64
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

ENCRYPTED_PREFIX = 'enc:'


class SecretManager:
    """
    Handles encryption/decryption of configuration secrets.

    The salt is fixed because SECRET_KEY itself is the secret; the same key
    must decrypt values written by earlier runs.
    """

    def __init__(self, secret_key: str):
        """
        Initialize with the configured SECRET_KEY.

        Args:
            secret_key: Passphrase from configuration or ROTATOR_SECRET_KEY
        """
        if not secret_key:
            raise ValueError("SECRET_KEY is empty - cannot derive encryption key")

        fixed_salt = b'rotator_config_secret_salt_v1'

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=fixed_salt,
            iterations=100000,
        )

        key = base64.urlsafe_b64encode(kdf.derive(secret_key.encode()))
        self._fernet = Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a secret for the configuration file.

        Args:
            plaintext: Secret in plaintext

        Returns:
            'enc:'-prefixed token
        """
        token = self._fernet.encrypt(plaintext.encode())
        return ENCRYPTED_PREFIX + token.decode()

    def decrypt(self, value: str) -> str:
        """
        Decrypt an 'enc:'-prefixed value. Plain values are returned as-is.

        Raises:
            cryptography.fernet.InvalidToken: If the key is wrong or the token corrupted
        """
        if not is_encrypted(value):
            return value

        token = value[len(ENCRYPTED_PREFIX):].encode()
        return self._fernet.decrypt(token).decode()


def is_encrypted(value: Optional[str]) -> bool:
    """Check whether a configuration value carries the encryption prefix."""
    return isinstance(value, str) and value.startswith(ENCRYPTED_PREFIX)


def resolve_secret(settings, key: str) -> Optional[str]:
    """
    Read a possibly-encrypted secret from settings.

    Args:
        settings: Settings mapping
        key: Name of the secret setting (e.g. 'SMTP_PASSWORD')

    Returns:
        Plaintext secret, or None when unset

    Raises:
        ValueError: If the value is encrypted but no SECRET_KEY is configured
            or the value does not decrypt with it
    """
    value = settings.get(key)
    if not is_encrypted(value):
        return value

    secret_key = settings.get('SECRET_KEY')
    if not secret_key:
        raise ValueError(f"{key} is encrypted but SECRET_KEY is not configured")

    try:
        return SecretManager(secret_key).decrypt(value)
    except InvalidToken as e:
        raise ValueError(f"{key} cannot be decrypted with the configured SECRET_KEY") from e
