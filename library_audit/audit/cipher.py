"""
Sensitive-field encryption for audit payloads
"""

import base64
import json
import logging
from typing import Any, List, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..core.exceptions import CipherError

logger = logging.getLogger(__name__)


class SensitiveFieldCipher:
    """
    Symmetric cipher for changes / old_values / new_values.

    Without a configured key both directions are identity functions. With a
    key, failures are logged and the input is returned unchanged.
    """

    def __init__(self, secret: Optional[str] = None, salt: str = "library_audit_salt"):
        self.enabled = bool(secret)
        self._fernet: Optional[Fernet] = None
        if self.enabled:
            self._fernet = Fernet(self._derive_key(secret, salt.encode()))
        else:
            logger.info("No audit encryption key configured, sensitive fields stored in clear")

    def _derive_key(self, password: str, salt: bytes) -> bytes:
        """
        Derive a Fernet key from the configured secret

        Args:
            password: Process-configured secret
            salt: Key derivation salt

        Returns:
            urlsafe base64 encoded 32 byte key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        return base64.urlsafe_b64encode(kdf.derive(password.encode()))

    def encrypt(self, data: Any) -> Any:
        """Encrypt any JSON value into a ciphertext string"""
        if not self.enabled:
            return data

        try:
            return self._encrypt(data)
        except CipherError as e:
            logger.error(f"Error encrypting audit data: {e}")
            return data

    def encrypt_fields(self, *values: Any) -> Optional[List[str]]:
        """Encrypt every value, or return None if any of them fails"""
        try:
            return [self._encrypt(value) for value in values]
        except CipherError as e:
            logger.error(f"Error encrypting audit data, storing in clear: {e}")
            return None

    def decrypt(self, data: Any) -> Any:
        """Decrypt a ciphertext string back into its JSON value"""
        if not self.enabled or not isinstance(data, str):
            return data

        try:
            return self._decrypt(data)
        except CipherError as e:
            logger.error(f"Error decrypting audit data: {e}")
            return data

    def _encrypt(self, data: Any) -> str:
        try:
            payload = json.dumps(data, sort_keys=True)
            return self._fernet.encrypt(payload.encode()).decode()
        except (TypeError, ValueError) as e:
            raise CipherError(f"value is not JSON serializable: {e}") from e

    def _decrypt(self, token: str) -> Any:
        try:
            payload = self._fernet.decrypt(token.encode())
            return json.loads(payload.decode())
        except InvalidToken as e:
            raise CipherError("invalid token or wrong key") from e
        except (UnicodeDecodeError, ValueError) as e:
            raise CipherError(f"corrupted payload: {e}") from e
