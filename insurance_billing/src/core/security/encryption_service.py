import base64
import os
from datetime import date
from typing import Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives import hashes
from cryptography.exceptions import InvalidTag
import structlog

from ..config.settings import get_settings

logger = structlog.get_logger(__name__)

class EncryptionService:
    """
    AES-256-GCM encryption for PHI columns (patient/insured dates of birth, member ids).

    Stored form is base64url("nonce + ciphertext + tag").
    """
    AES_NONCE_BYTES = 12
    AES_TAG_BYTES = 16

    def __init__(self, encryption_key: Optional[str] = None):
        """
        Args:
            encryption_key: base64url-encoded 32-byte key. Any other string is stretched
                            with SHA-256, which is only acceptable for development and tests.
                            Falls back to settings.APP_ENCRYPTION_KEY when omitted.
        """
        key_str = encryption_key if encryption_key else get_settings().APP_ENCRYPTION_KEY
        if not key_str:
            raise ValueError("An encryption key is required.")

        self.aesgcm = AESGCM(self._derive_key(key_str))
        logger.info("EncryptionService initialized.")

    @staticmethod
    def _derive_key(key_str: str) -> bytes:
        if len(key_str) == 44 and key_str.endswith("="):
            try:
                decoded_key = base64.urlsafe_b64decode(key_str)
                if len(decoded_key) == 32:
                    return decoded_key
                logger.warn("Decoded key is not 32 bytes; deriving key with SHA-256.")
            except (ValueError, TypeError):
                logger.warn("Key looked like base64 but failed to decode; deriving key with SHA-256.")

        logger.warn("APP_ENCRYPTION_KEY is not a base64 encoded 32-byte key. "
                    "Deriving one with SHA-256. DEV/TEST ONLY.")
        digest = hashes.Hash(hashes.SHA256())
        digest.update(key_str.encode('utf-8'))
        return digest.finalize()

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """Encrypts a string. None passes through unchanged."""
        if plaintext is None:
            return None
        nonce = os.urandom(self.AES_NONCE_BYTES)
        ciphertext_with_tag = self.aesgcm.encrypt(nonce, plaintext.encode('utf-8'), None)
        return base64.urlsafe_b64encode(nonce + ciphertext_with_tag).decode('utf-8')

    def decrypt(self, ciphertext_blob_b64: Optional[str]) -> Optional[str]:
        """
        Decrypts a value produced by encrypt().

        Returns None for empty input and for blobs that fail authentication, so a single
        corrupt column never makes a whole claim unreadable.
        """
        if not ciphertext_blob_b64:
            return None

        try:
            encrypted_blob_bytes = base64.urlsafe_b64decode(ciphertext_blob_b64.encode('utf-8'))
        except (ValueError, TypeError):
            logger.error("Decryption failed: value is not valid base64.")
            return None

        nonce = encrypted_blob_bytes[:self.AES_NONCE_BYTES]
        ciphertext_with_tag = encrypted_blob_bytes[self.AES_NONCE_BYTES:]
        if len(nonce) != self.AES_NONCE_BYTES or len(ciphertext_with_tag) < self.AES_TAG_BYTES:
            logger.error("Decryption failed: blob too short.", length=len(encrypted_blob_bytes))
            return None

        try:
            return self.aesgcm.decrypt(nonce, ciphertext_with_tag, None).decode('utf-8')
        except InvalidTag:
            logger.warn("Decryption failed: invalid authentication tag. Tampered value or wrong key.")
            return None

    def encrypt_date(self, value: Optional[date]) -> Optional[str]:
        return self.encrypt(value.isoformat()) if value is not None else None

    def decrypt_date(self, ciphertext_blob_b64: Optional[str]) -> Optional[date]:
        plaintext = self.decrypt(ciphertext_blob_b64)
        if plaintext is None:
            return None
        try:
            return date.fromisoformat(plaintext)
        except ValueError:
            logger.error("Decrypted value is not an ISO date.")
            return None
