"""
Encryption of channel credentials at rest.

Credentials are stored as a Fernet token of their JSON form. Only adaptors
receive the decrypted dictionary.
"""

import json
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken

from channel_core.config import CREDENTIALS_KEY
from channel_core.errors import ValidationError


def generate_key() -> str:
    """Create a new key suitable for CREDENTIALS_KEY."""
    return Fernet.generate_key().decode()


class CredentialCipher:
    """
    Symmetric cipher for credential dictionaries.

    Example:
        >>> cipher = CredentialCipher(generate_key())
        >>> token = cipher.encrypt({"api_key": "abc"})
        >>> cipher.decrypt(token)
        {'api_key': 'abc'}
    """

    def __init__(self, key: Optional[str] = None):
        key = key or CREDENTIALS_KEY
        if not key:
            raise ValueError("CREDENTIALS_KEY is not set")
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    def encrypt(self, credentials: dict[str, Any]) -> str:
        payload = json.dumps(credentials, sort_keys=True).encode()
        return self._fernet.encrypt(payload).decode()

    def decrypt(self, token: str) -> dict[str, Any]:
        """
        Decrypt a stored token.

        Raises:
            ValidationError: If the token was not produced with this key
        """
        try:
            payload = self._fernet.decrypt(token.encode())
        except InvalidToken as e:
            raise ValidationError("Stored credentials cannot be decrypted with the current key") from e
        data = json.loads(payload)
        if not isinstance(data, dict):
            raise ValidationError("Stored credentials are not an object")
        return data
