import base64
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from lib.error_handler import EncryptionError

logger = logging.getLogger(__name__)

PREFIX = 'ENC:'
SALT_LENGTH = 16
IV_LENGTH = 12
KEY_LENGTH = 32
ITERATIONS = 100_000

def is_encrypted(value: Optional[str]) -> bool:
    return bool(value) and value.startswith(PREFIX)

class ContentCipher:
    """
    AES-GCM encryption of journal text at rest.

    Each value gets its own random salt and IV; the key is derived with
    PBKDF2 from the server secret and the owning user's id, so one user's
    ciphertext never decrypts under another user's key.
    """

    def __init__(self, secret: str = '', enabled: bool = True):
        self.secret = secret
        self.enabled = enabled

    def _derive_key(self, user_id: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=ITERATIONS,
        )
        return kdf.derive(f"{self.secret}:{user_id}".encode('utf-8'))

    def encrypt(self, text: str, user_id: str) -> str:
        if text is None or not user_id:
            raise EncryptionError("Text and user_id are required for encryption")
        if not self.enabled:
            return text

        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        key = self._derive_key(user_id, salt)
        ciphertext = AESGCM(key).encrypt(iv, text.encode('utf-8'), None)
        return PREFIX + base64.b64encode(salt + iv + ciphertext).decode('ascii')

    def decrypt(self, value: str, user_id: str) -> str:
        if value is None or not user_id:
            raise EncryptionError("Encrypted text and user_id are required for decryption")
        if not is_encrypted(value):
            return value

        try:
            combined = base64.b64decode(value[len(PREFIX):])
            salt = combined[:SALT_LENGTH]
            iv = combined[SALT_LENGTH:SALT_LENGTH + IV_LENGTH]
            ciphertext = combined[SALT_LENGTH + IV_LENGTH:]
            key = self._derive_key(user_id, salt)
            return AESGCM(key).decrypt(iv, ciphertext, None).decode('utf-8')
        except (InvalidTag, ValueError) as e:
            logger.error(f"Decryption failed: {type(e).__name__}")
            raise EncryptionError("Failed to decrypt data") from e

    def decrypt_or_raw(self, value: Optional[str], user_id: str) -> str:
        """Decrypt a stored value, falling back to the stored text when it can't be read."""
        if not value:
            return value or ''
        try:
            return self.decrypt(value, user_id)
        except EncryptionError:
            return value
