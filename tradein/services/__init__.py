"""Backend services module."""

from tradein.services.backup_service import BackupService
from tradein.services.backup_store import BackupError, BackupNotFound, InvalidBackupId

__all__ = ["BackupService", "BackupError", "BackupNotFound", "InvalidBackupId"]
