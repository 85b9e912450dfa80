"""
Security utilities for trigger authentication and credential storage.

Provides session token decoding, cron secret comparison, and AES-GCM
encryption of the partner API key at rest.
"""

import base64
import binascii
import logging
import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from jose import JWTError, jwt

from app.core.config import settings
from app.core.exceptions import CredentialDecryptError

logger = logging.getLogger(__name__)

# AES-GCM nonce length in bytes
NONCE_SIZE = 12


# =============================================================================
# Session tokens
# =============================================================================


def create_session_token(
    subject: str,
    expires_delta: Optional[timedelta] = None,
    additional_claims: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Create a session token of the shape the auth provider issues.

    Used by the CLI and tests; production tokens come from the provider.

    Args:
        subject: User ID placed in the ``sub`` claim
        expires_delta: Optional custom expiration time (default 1 hour)
        additional_claims: Optional additional claims to include

    Returns:
        Encoded JWT string
    """
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=1))
    to_encode: Dict[str, Any] = {
        "exp": expire,
        "iat": datetime.now(timezone.utc),
        "sub": str(subject),
        "jti": secrets.token_urlsafe(16),
    }
    if settings.JWT_AUDIENCE:
        to_encode["aud"] = settings.JWT_AUDIENCE
    if additional_claims:
        to_encode.update(additional_claims)

    encoded_jwt: str = jwt.encode(
        to_encode,
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )
    return encoded_jwt


def decode_session_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode and verify a session token.

    Args:
        token: The JWT to decode

    Returns:
        The decoded payload, or None if the token is invalid or expired
    """
    if not settings.JWT_SECRET_KEY:
        logger.warning("JWT_SECRET_KEY is not configured; rejecting session token")
        return None

    try:
        payload: Dict[str, Any] = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            options={"verify_aud": bool(settings.JWT_AUDIENCE)},
        )
        return payload
    except JWTError:
        return None


def verify_cron_secret(presented: str, stored: str) -> bool:
    """Constant-time comparison of the scheduler's shared secret."""
    if not presented or not stored:
        return False
    return secrets.compare_digest(presented.encode("utf-8"), stored.encode("utf-8"))


# =============================================================================
# Credential encryption
# =============================================================================


class CredentialCipher:
    """
    AES-256-GCM cipher for the stored partner API key.

    Ciphertext format is ``base64(nonce[12] || ciphertext+tag)``. The key
    is the UTF-8 encoded secret padded with "0" and truncated to 32 bytes.
    """

    def __init__(self, secret: Optional[str] = None):
        raw = secret if secret is not None else settings.API_ENCRYPTION_KEY
        self._configured = bool(raw)
        self._key = raw.encode("utf-8").ljust(32, b"0")[:32]

    @property
    def is_configured(self) -> bool:
        return self._configured

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a credential for storage."""
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = AESGCM(self._key).encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + ciphertext).decode("ascii")

    def decrypt(self, encoded: str) -> str:
        """
        Decrypt a stored credential.

        Raises:
            CredentialDecryptError: If the key is missing, the payload is
                not valid base64, the tag does not verify or the
                plaintext is not UTF-8
        """
        if not self._configured:
            raise CredentialDecryptError(
                message="API_ENCRYPTION_KEY is not configured",
            )

        try:
            blob = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise CredentialDecryptError(original_error=e) from e

        if len(blob) <= NONCE_SIZE:
            raise CredentialDecryptError(details={"reason": "ciphertext too short"})

        nonce, ciphertext = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
        try:
            plaintext = AESGCM(self._key).decrypt(nonce, ciphertext, None)
            return plaintext.decode("utf-8")
        except (InvalidTag, ValueError) as e:
            raise CredentialDecryptError(original_error=e) from e


def get_credential_cipher() -> CredentialCipher:
    """Cipher bound to the configured encryption key."""
    return CredentialCipher()
