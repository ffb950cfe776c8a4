"""Replace live collections with the contents of a backup record."""

import logging
import math
from datetime import datetime, timezone
from typing import Optional, List

from tradein.models.backup_schemas import (
    BackupRecord, BackupType, ExternalContentRestoreStatus,
    RestoredCollection, RestoreResult,
)
from tradein.services.backup_lock import BackupLockManager

logger = logging.getLogger(__name__)


def external_restore_status(record: BackupRecord) -> ExternalContentRestoreStatus:
    """Describe what a manual storefront restore would involve."""
    if not record.external_content:
        return ExternalContentRestoreStatus(
            status="not_included",
            message="This backup does not contain storefront content.",
        )

    counts = {category: slot.count for category, slot in record.external_content.items()}
    return ExternalContentRestoreStatus(
        status="manual_restore_required",
        message=(
            f"Storefront content ({sum(counts.values())} items) was not written back. "
            "Restoring it requires write access to the shop and must be done manually."
        ),
        counts=counts,
    )


class RestoreExecutor:
    """Destructive restore of tracked collections."""

    def __init__(self, db, store, lock: BackupLockManager):
        self.db = db
        self.store = store
        self.lock = lock

    async def restore(
        self,
        backup_id: str,
        collections: Optional[List[str]] = None,
        requested_by: str = "system",
        now: Optional[datetime] = None,
    ) -> RestoreResult:
        """
        Restore collections from a backup.

        Each selected collection is emptied and refilled with the snapshot's
        documents. Raises InvalidBackupId / BackupNotFound from the store.
        """
        started_at = now or datetime.now(timezone.utc)
        record = await self.store.get(backup_id)

        result = RestoreResult(
            backup_id=backup_id,
            backup_type=record.type,
            started_at=started_at,
            external_content_restore_status=external_restore_status(record),
        )

        selected = record.collection_names
        if collections is not None:
            missing = [name for name in collections if name not in selected]
            for name in missing:
                result.warnings.append(f"Collection {name} is not part of backup {backup_id}")
            selected = [name for name in selected if name in collections]

        if not selected:
            result.message = "No matching collections to restore"
            result.completed_at = datetime.now(timezone.utc)
            return result

        lock = await self.lock.acquire(holder=f"restore:{requested_by}")
        if not lock.acquired:
            result.skipped = True
            if lock.error:
                result.message = f"Restore not started, lock unavailable: {lock.error}"
            else:
                minutes = max(1, math.ceil(lock.remaining().total_seconds() / 60))
                result.message = f"Another backup or restore is running (lock expires in ~{minutes} min)"
            result.completed_at = datetime.now(timezone.utc)
            return result

        try:
            if record.type == BackupType.INCREMENTAL:
                result.warnings.append(
                    "Incremental backup: restored collections contain only the documents "
                    "changed since the previous backup"
                )

            for name in selected:
                snapshot = record.collection(name)
                target = self.db[name]
                await target.delete_many({})
                if snapshot.data:
                    await target.insert_many([dict(doc) for doc in snapshot.data])
                result.restored_collections.append(RestoredCollection(name=name, count=snapshot.count))
                logger.info(f"Restored {name}: {snapshot.count} documents from backup {backup_id}")

            result.success = True
            result.message = (
                f"Restored {len(result.restored_collections)} collections from "
                f"{record.type.value} backup {backup_id}"
            )
        finally:
            await self.lock.release()
            result.completed_at = datetime.now(timezone.utc)
            result.duration_seconds = (result.completed_at - started_at).total_seconds()

        return result
