"""
Environment Variable Encryption Service

Provides AES-256-GCM encryption for per-project secret environment
variables at rest. Secrets are decrypted just-in-time before they are handed
to the dev server inside a sandbox.
"""

import base64
import logging
import os
import warnings
from typing import Iterable, Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from src.domain.model.sandbox.project_sandbox import EnvironmentVariable

logger = logging.getLogger(__name__)

_NONCE_SIZE = 12


class EncryptionService:
    """
    Service for encrypting and decrypting sensitive data using AES-256-GCM.

    The key is a 32-byte value given as 64 hex characters. Without one, a
    random per-process development key is used; values encrypted with it do
    not survive a restart.
    """

    def __init__(self, encryption_key: Optional[str] = None):
        self.key = self._load_key(encryption_key)
        self.aesgcm = AESGCM(self.key)

    @staticmethod
    def _load_key(provided_key: Optional[str]) -> bytes:
        if provided_key:
            try:
                key_bytes = bytes.fromhex(provided_key.strip())
            except ValueError:
                key_bytes = b""
            if len(key_bytes) == 32:
                return key_bytes
            warnings.warn(
                "ENV_VAR_ENCRYPTION_KEY must be exactly 32 bytes (64 hex characters). "
                "Using development key.",
                RuntimeWarning,
                stacklevel=3,
            )
        else:
            warnings.warn(
                "ENV_VAR_ENCRYPTION_KEY not set. Using insecure development key. "
                "DO NOT USE IN PRODUCTION!",
                RuntimeWarning,
                stacklevel=3,
            )
        return os.urandom(32)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt plaintext string using AES-256-GCM.

        Returns:
            Base64-encoded encrypted data (nonce + ciphertext)
        """
        if not plaintext:
            raise ValueError("Cannot encrypt empty string")

        nonce = os.urandom(_NONCE_SIZE)
        ciphertext = self.aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + ciphertext).decode("utf-8")

    def decrypt(self, encrypted_text: str) -> str:
        """
        Decrypt a value produced by ``encrypt``.

        Raises:
            ValueError: If the input is empty
            cryptography.exceptions.InvalidTag: If the key or data is wrong
        """
        if not encrypted_text:
            raise ValueError("Cannot decrypt empty string")

        encrypted_bytes = base64.b64decode(encrypted_text.encode("utf-8"))
        nonce = encrypted_bytes[:_NONCE_SIZE]
        ciphertext = encrypted_bytes[_NONCE_SIZE:]
        return self.aesgcm.decrypt(nonce, ciphertext, None).decode("utf-8")

    def decrypt_environment(self, variables: Iterable[EnvironmentVariable]) -> dict[str, str]:
        """
        Materialize a project's environment as plain key/value pairs.

        Secret values are decrypted; a secret that fails to decrypt is left
        out and logged by key name only.
        """
        envs: dict[str, str] = {}
        for var in variables:
            if not var.is_secret:
                envs[var.key] = var.value
                continue
            try:
                envs[var.key] = self.decrypt(var.value)
            except Exception as e:
                logger.error(f"Failed to decrypt secret env var {var.key}: {type(e).__name__}")
        return envs

