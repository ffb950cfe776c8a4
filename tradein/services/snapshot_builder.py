"""Assemble backup records from the tracked collections and storefront content.

Full snapshots read every document. Incremental snapshots read, per
collection, only documents created or updated at or after the last backup
that captured that collection. Storefront content is fetched for full
snapshots only, unless explicitly forced.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from bson import json_util

from tradein.core.database import (
    PRODUCTS_COLLECTION, SUBMISSIONS_COLLECTION, STAFF_COLLECTION,
    AUDIT_LOGS_COLLECTION, PRICING_COLLECTION, BACKUP_AUDIT_RESOURCE_TYPE,
)
from tradein.models.backup_schemas import (
    BackupConfig, BackupRecord, BackupType, CollectionSnapshot,
    ExternalContentSlot, format_size,
)
from tradein.providers.base import CONTENT_CATEGORIES, ExternalContentProvider

logger = logging.getLogger(__name__)

TRACKED_COLLECTIONS = [
    PRODUCTS_COLLECTION,
    SUBMISSIONS_COLLECTION,
    STAFF_COLLECTION,
    AUDIT_LOGS_COLLECTION,
    PRICING_COLLECTION,
]

# The storefront writes camelCase fields, sometimes as ISO strings
CHANGE_TIMESTAMP_FIELDS = ["createdAt", "updatedAt", "created_at", "updated_at"]


def to_js_iso(moment: datetime) -> str:
    """Format like JavaScript's Date.toISOString(): 2025-01-31T09:30:00.000Z."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def changed_since_query(since: datetime) -> Dict[str, Any]:
    """Match documents created or updated at or after ``since``."""
    since_iso = to_js_iso(since)
    clauses = [{field: {"$gte": since}} for field in CHANGE_TIMESTAMP_FIELDS]
    clauses += [{field: {"$gte": since_iso}} for field in CHANGE_TIMESTAMP_FIELDS]
    return {"$or": clauses}


def is_engine_audit_entry(collection: str, doc: Dict[str, Any]) -> bool:
    """Audit entries the backup engine wrote about its own runs."""
    return collection == AUDIT_LOGS_COLLECTION and doc.get("resourceType") == BACKUP_AUDIT_RESOURCE_TYPE


def serialized_size(record: BackupRecord) -> int:
    """Byte length of the record as extended JSON."""
    return len(json_util.dumps(record.to_document()).encode("utf-8"))


class SnapshotBuilder:
    """Build immutable BackupRecords."""

    def __init__(
        self,
        db,
        store,
        content_provider: Optional[ExternalContentProvider] = None,
        collections: Optional[List[str]] = None,
    ):
        """
        Args:
            db: Database holding the tracked collections
            store: BackupStore used to look up per-collection high-water marks
            content_provider: Optional storefront content provider
            collections: Override the tracked collection list
        """
        self.db = db
        self.store = store
        self.content_provider = content_provider
        self.collections = list(collections or TRACKED_COLLECTIONS)

    async def build(
        self,
        backup_type: BackupType,
        config: BackupConfig,
        created_by: str,
        now: Optional[datetime] = None,
        include_external: Optional[bool] = None,
    ) -> Optional[BackupRecord]:
        """
        Capture a snapshot.

        Returns None when an incremental snapshot finds no changed documents.
        """
        created_at = now or datetime.now(timezone.utc)
        snapshots: List[CollectionSnapshot] = []

        for name in self.collections:
            query = await self._query_for(name, backup_type)
            docs = await self.db[name].find(query).to_list(length=None)
            snapshots.append(CollectionSnapshot(name=name, count=len(docs), data=docs))
            logger.info(f"Captured {name}: {len(docs)} documents ({backup_type.value})")

        changed = sum(
            1 for snapshot in snapshots for doc in snapshot.data
            if not is_engine_audit_entry(snapshot.name, doc)
        )
        if backup_type == BackupType.INCREMENTAL and changed == 0:
            logger.info("Incremental backup found no changed documents")
            return None

        external_content = None
        if self._should_fetch_external(backup_type, config, include_external):
            external_content = await self._fetch_external_content()

        record = BackupRecord(
            type=backup_type,
            created_at=created_at,
            created_by=created_by,
            collections=snapshots,
            external_content=external_content,
        )
        size = serialized_size(record)
        return record.model_copy(update={"size": size, "size_formatted": format_size(size)})

    async def _query_for(self, name: str, backup_type: BackupType) -> Dict[str, Any]:
        if backup_type == BackupType.FULL:
            return {}

        since = await self.store.last_capture_of(name)
        if since is None:
            logger.info(f"No previous capture of {name}, taking all documents")
            return {}
        return changed_since_query(since)

    def _should_fetch_external(
        self,
        backup_type: BackupType,
        config: BackupConfig,
        include_external: Optional[bool],
    ) -> bool:
        if include_external is False:
            return False
        if self.content_provider is None:
            if include_external:
                logger.warning("External content requested but no content provider is configured")
            return False
        if include_external:
            return True
        return backup_type == BackupType.FULL and config.include_external_content

    async def _fetch_external_content(self) -> Dict[str, ExternalContentSlot]:
        try:
            results = await self.content_provider.fetch_all()
        except Exception as e:
            logger.error(f"External content fetch failed: {e}")
            return {
                category: ExternalContentSlot(error=str(e))
                for category in CONTENT_CATEGORIES
            }

        content = {}
        for category in CONTENT_CATEGORIES:
            result = results.get(category)
            if result is None:
                content[category] = ExternalContentSlot(error="Not fetched")
            else:
                content[category] = ExternalContentSlot(
                    items=result.items, count=result.count, error=result.error
                )

        failed = [c for c, slot in content.items() if slot.error]
        if failed:
            logger.warning(f"External content partially captured, failed categories: {failed}")
        return content
