from .errors import (
    ActionFailed,
    BackupError,
    BackupUnavailable,
    EncryptionFailed,
    EncryptionUnavailable,
    KaliCleanError,
    PreconditionMissing,
    ValidationError,
)
from .mode import Mode

__all__ = [
    "ActionFailed",
    "BackupError",
    "BackupUnavailable",
    "EncryptionFailed",
    "EncryptionUnavailable",
    "KaliCleanError",
    "Mode",
    "PreconditionMissing",
    "ValidationError",
]
