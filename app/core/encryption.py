"""
Credential Vault — פענוח טוקני גישה של ספקים (vendors) השמורים מוצפנים ב-DB.

פורמט תואם ל-backend שמצפין את הטוקן בזמן ה-onboarding:
    base64( iv[12] || auth_tag[16] || ciphertext )
AES-256-GCM, מפתח של 32 בתים שמוגדר כ-hex ב-ENCRYPTION_KEY.

שימו לב: AESGCM של cryptography מחזיר ciphertext || tag, לכן הסדר מוחלף
בהצפנה ובפענוח.
"""
from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.core.config import settings
from app.core.exceptions import CredentialDecryptionError
from app.core.logging import get_logger

logger = get_logger(__name__)

IV_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32


class CredentialVault:
    """Symmetric encrypt/decrypt of per-tenant API tokens at rest."""

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_LENGTH:
            raise ValueError(f"encryption key must be {KEY_LENGTH} bytes, got {len(key)}")
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_hex(cls, hex_key: str) -> "CredentialVault":
        return cls(bytes.fromhex(hex_key))

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(iv + tag + ciphertext).decode("ascii")

    def decrypt(self, ciphertext_b64: str) -> str:
        """
        Decrypt a stored token.

        Raises:
            CredentialDecryptionError: bad base64, truncated payload, wrong key
                or tampered data. The token itself never appears in the error.
        """
        try:
            buffer = base64.b64decode(ciphertext_b64, validate=True)
        except (binascii.Error, ValueError):
            raise CredentialDecryptionError("Access token is not valid base64")

        if len(buffer) < IV_LENGTH + TAG_LENGTH:
            raise CredentialDecryptionError("Access token payload is truncated")

        iv = buffer[:IV_LENGTH]
        tag = buffer[IV_LENGTH:IV_LENGTH + TAG_LENGTH]
        ciphertext = buffer[IV_LENGTH + TAG_LENGTH:]

        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except InvalidTag:
            logger.warning(
                "פענוח טוקן נכשל — מפתח שגוי או נתונים פגומים",
                extra_data={"payload_length": len(buffer)},
            )
            raise CredentialDecryptionError("Access token failed authentication")

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise CredentialDecryptionError("Access token is not valid UTF-8")


_vault: CredentialVault | None = None


def get_credential_vault() -> CredentialVault:
    """Vault singleton built from ENCRYPTION_KEY."""
    global _vault
    if _vault is None:
        if not settings.ENCRYPTION_KEY:
            raise CredentialDecryptionError("ENCRYPTION_KEY is not configured")
        _vault = CredentialVault.from_hex(settings.ENCRYPTION_KEY)
    return _vault


def reset_credential_vault() -> None:
    """איפוס ה-singleton — לשימוש בבדיקות בלבד."""
    global _vault
    _vault = None
