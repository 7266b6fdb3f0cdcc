"""Infrastructure security layer - encryption of project secrets."""

from .encryption_service import EncryptionService

__all__ = [
    "EncryptionService",
]
