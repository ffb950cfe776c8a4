"""Persistence for backup records: save, list, fetch, delete and retention purge."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any

from bson import ObjectId

from tradein.core.database import BACKUPS_COLLECTION
from tradein.models.backup_schemas import (
    BackupRecord, BackupStats, BackupSummary, BackupType, format_size,
)
from tradein.providers.base import CONTENT_CATEGORIES

logger = logging.getLogger(__name__)

# Listings leave captured payloads on the server
SUMMARY_PROJECTION = {
    "collections.data": 0,
    **{f"external_content.{category}.items": 0 for category in CONTENT_CATEGORIES},
}


class BackupError(Exception):
    """Base exception for backup engine errors."""
    pass


class InvalidBackupId(BackupError):
    """Identifier is not a well-formed document id."""
    def __init__(self, backup_id: str):
        super().__init__(f"Invalid backup id: {backup_id!r}")
        self.backup_id = backup_id


class BackupNotFound(BackupError):
    """No backup exists with the given id."""
    def __init__(self, backup_id: str):
        super().__init__(f"Backup {backup_id} not found")
        self.backup_id = backup_id


def parse_backup_id(backup_id: str) -> ObjectId:
    """Validate a backup id before it reaches the store."""
    if not isinstance(backup_id, str) or not ObjectId.is_valid(backup_id):
        raise InvalidBackupId(str(backup_id))
    return ObjectId(backup_id)


def _to_summary(doc: Dict[str, Any]) -> BackupSummary:
    external = doc.get("external_content")
    return BackupSummary(
        id=str(doc["_id"]),
        type=doc["type"],
        created_at=doc["created_at"],
        created_by=doc.get("created_by", "unknown"),
        collections=[
            {"name": c["name"], "count": c.get("count", 0)}
            for c in doc.get("collections", [])
        ],
        external_content={
            category: {"count": slot.get("count", 0), "error": slot.get("error")}
            for category, slot in external.items()
        } if external else None,
        size=doc.get("size", 0),
        size_formatted=doc.get("size_formatted", format_size(doc.get("size", 0))),
    )


class BackupStore:
    """Backup records in the ``backups`` collection."""

    def __init__(self, db):
        self.db = db

    @property
    def _collection(self):
        return self.db[BACKUPS_COLLECTION]

    async def save(self, record: BackupRecord) -> str:
        """Insert a complete record and return its id."""
        result = await self._collection.insert_one(record.to_document())
        backup_id = str(result.inserted_id)
        logger.info(
            f"Saved {record.type.value} backup {backup_id}: "
            f"{record.document_count} documents, {record.size_formatted}"
        )
        return backup_id

    async def list(
        self,
        limit: int = 50,
        skip: int = 0,
        backup_type: Optional[BackupType] = None
    ) -> List[BackupSummary]:
        """List backups newest first, without captured data."""
        query = {"type": backup_type.value} if backup_type else {}
        cursor = (
            self._collection.find(query, SUMMARY_PROJECTION)
            .sort("created_at", -1)
            .skip(skip)
            .limit(limit)
        )
        docs = await cursor.to_list(length=limit)
        return [_to_summary(doc) for doc in docs]

    async def count(self, backup_type: Optional[BackupType] = None) -> int:
        """Number of stored backups, optionally of one type."""
        query = {"type": backup_type.value} if backup_type else {}
        return await self._collection.count_documents(query)

    async def get(self, backup_id: str) -> BackupRecord:
        """Fetch a full record. Raises InvalidBackupId or BackupNotFound."""
        oid = parse_backup_id(backup_id)
        doc = await self._collection.find_one({"_id": oid})
        if not doc:
            raise BackupNotFound(backup_id)
        return BackupRecord.from_document(doc)

    async def delete(self, backup_id: str) -> bool:
        """Delete a record. Returns False when nothing was deleted."""
        oid = parse_backup_id(backup_id)
        result = await self._collection.delete_one({"_id": oid})
        deleted = result.deleted_count > 0
        if deleted:
            logger.info(f"Deleted backup: {backup_id}")
        else:
            logger.warning(f"Backup {backup_id} not found")
        return deleted

    async def latest(self, backup_type: Optional[BackupType] = None) -> Optional[BackupSummary]:
        """Most recent backup, optionally of one type."""
        query = {"type": backup_type.value} if backup_type else {}
        doc = await self._collection.find_one(
            query, SUMMARY_PROJECTION, sort=[("created_at", -1)]
        )
        return _to_summary(doc) if doc else None

    async def last_capture_of(self, collection_name: str) -> Optional[datetime]:
        """Timestamp of the newest backup (any type) that captured a collection."""
        doc = await self._collection.find_one(
            {"collections.name": collection_name},
            {"created_at": 1},
            sort=[("created_at", -1)]
        )
        return doc["created_at"] if doc else None

    async def purge_older_than(self, days: int, now: Optional[datetime] = None) -> int:
        """
        Delete backups older than ``days``.

        The most recent full backup is always kept, whatever its age, so an
        aggressive retention setting cannot leave incrementals without a base.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=days)

        query: Dict[str, Any] = {"created_at": {"$lt": cutoff}}
        latest_full = await self._collection.find_one(
            {"type": BackupType.FULL.value}, {"_id": 1}, sort=[("created_at", -1)]
        )
        if latest_full:
            query["_id"] = {"$ne": latest_full["_id"]}

        result = await self._collection.delete_many(query)
        if result.deleted_count:
            logger.info(f"Purged {result.deleted_count} backups older than {days} days")
        return result.deleted_count

    async def stats(self) -> BackupStats:
        """Counts and sizes across all stored backups."""
        stats = BackupStats()
        cursor = self._collection.find({}, {"type": 1, "size": 1, "created_at": 1})

        async for doc in cursor:
            stats.total_backups += 1
            stats.total_size_bytes += doc.get("size", 0)
            backup_type = doc.get("type", "unknown")
            stats.backups_by_type[backup_type] = stats.backups_by_type.get(backup_type, 0) + 1

            created_at = doc.get("created_at")
            if created_at is None:
                continue
            if stats.oldest_backup is None or created_at < stats.oldest_backup:
                stats.oldest_backup = created_at
            if stats.newest_backup is None or created_at > stats.newest_backup:
                stats.newest_backup = created_at
            if backup_type == BackupType.FULL.value and (
                stats.latest_full_backup is None or created_at > stats.latest_full_backup
            ):
                stats.latest_full_backup = created_at

        stats.total_size_formatted = format_size(stats.total_size_bytes)
        return stats
