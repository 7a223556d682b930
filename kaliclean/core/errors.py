from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class KaliCleanError(Exception):
    code: str
    message: str
    data: dict[str, Any] | None = None

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationError(KaliCleanError):
    pass


class PreconditionMissing(KaliCleanError):
    """Fatal: raised before any operation runs."""


class BackupError(KaliCleanError):
    """Aborts the current operation only; plaintext data is kept."""


class BackupUnavailable(BackupError):
    pass


class EncryptionUnavailable(BackupError):
    pass


class EncryptionFailed(BackupError):
    pass


class ActionFailed(KaliCleanError):
    pass
