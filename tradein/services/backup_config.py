"""Singleton backup configuration stored in ``backup_config``."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pymongo import ReturnDocument

from tradein.core.database import BACKUP_CONFIG_COLLECTION
from tradein.models.backup_schemas import BackupConfig

logger = logging.getLogger(__name__)

CONFIG_ID = "backup_config"

DEFAULT_BACKUP_CONFIG = BackupConfig().model_dump(mode="json", exclude={"updated_at", "updated_by"})


class BackupConfigStore:
    """Read and update the backup configuration row."""

    def __init__(self, db):
        self.db = db

    @property
    def _collection(self):
        return self.db[BACKUP_CONFIG_COLLECTION]

    @staticmethod
    def _to_config(doc: Optional[Dict[str, Any]]) -> BackupConfig:
        doc = dict(doc or {})
        doc.pop("_id", None)
        # Fill in fields added after the row was first written
        return BackupConfig(**{**DEFAULT_BACKUP_CONFIG, **doc})

    async def get_config(self) -> BackupConfig:
        """Get the configuration, creating it with defaults on first read."""
        doc = await self._collection.find_one_and_update(
            {"_id": CONFIG_ID},
            {"$setOnInsert": dict(DEFAULT_BACKUP_CONFIG)},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return self._to_config(doc)

    async def update_config(self, updates: Dict[str, Any], updated_by: Optional[str] = None) -> BackupConfig:
        """Apply a partial update and return the new configuration."""
        current = await self.get_config()
        merged = current.model_dump(mode="json")
        merged.update({k: v for k, v in updates.items() if v is not None and k in merged})
        # Validate before writing
        validated = BackupConfig(**merged)

        changes = validated.model_dump(
            mode="json", exclude={"updated_at", "updated_by"}
        )
        changes["updated_at"] = datetime.now(timezone.utc)
        changes["updated_by"] = updated_by

        doc = await self._collection.find_one_and_update(
            {"_id": CONFIG_ID},
            {"$set": changes},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        logger.info(f"Backup config updated by {updated_by or 'unknown'}: {updates}")
        return self._to_config(doc)
