"""Global mutual-exclusion lock for backup and restore operations.

The lock is a single document in ``backup_lock``. Acquisition is one
conditional upsert: the filter only matches when the lock is absent or
expired, so a live lock turns the upsert into a duplicate-key insert and the
caller loses. A crashed holder is recovered by expiry.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from tradein.core.database import BACKUP_LOCK_COLLECTION

logger = logging.getLogger(__name__)

LOCK_ID = "backup_lock"
LOCK_DURATION = timedelta(minutes=30)


@dataclass
class LockResult:
    """Result of a lock acquisition attempt."""
    acquired: bool
    expires_at: Optional[datetime] = None
    error: Optional[str] = None

    def remaining(self, now: Optional[datetime] = None) -> timedelta:
        if self.expires_at is None:
            return timedelta(0)
        now = now or datetime.now(timezone.utc)
        return max(self.expires_at - now, timedelta(0))


class BackupLockManager:
    """Acquire and release the single backup lock."""

    def __init__(self, db, duration: timedelta = LOCK_DURATION):
        self.db = db
        self.duration = duration

    @property
    def _collection(self):
        return self.db[BACKUP_LOCK_COLLECTION]

    async def acquire(self, holder: str = "system", now: Optional[datetime] = None) -> LockResult:
        """
        Try to take the lock.

        Returns a LockResult; ``acquired`` is False when a live lock exists or
        the store could not be reached. Never raises for store errors.
        """
        now = now or datetime.now(timezone.utc)
        expires_at = now + self.duration

        try:
            doc = await self._collection.find_one_and_update(
                {
                    "_id": LOCK_ID,
                    "$or": [
                        {"expires_at": {"$lt": now}},
                        {"expires_at": {"$exists": False}},
                    ],
                },
                {"$set": {
                    "expires_at": expires_at,
                    "acquired_at": now,
                    "holder": holder,
                }},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            existing = await self._read_expiry()
            logger.info(f"Backup lock held until {existing}, {holder} not acquired")
            return LockResult(acquired=False, expires_at=existing)
        except PyMongoError as e:
            logger.error(f"Backup lock acquisition failed: {e}")
            return LockResult(acquired=False, error=str(e))

        logger.info(f"Backup lock acquired by {holder} until {expires_at.isoformat()}")
        return LockResult(acquired=True, expires_at=doc.get("expires_at", expires_at) if doc else expires_at)

    async def _read_expiry(self) -> Optional[datetime]:
        try:
            doc = await self._collection.find_one({"_id": LOCK_ID})
        except PyMongoError as e:
            logger.warning(f"Could not read backup lock: {e}")
            return None
        return doc.get("expires_at") if doc else None

    async def release(self) -> None:
        """Delete the lock. Safe to call when the lock is not held."""
        try:
            await self._collection.delete_one({"_id": LOCK_ID})
            logger.info("Backup lock released")
        except PyMongoError as e:
            # The lock expires on its own
            logger.error(f"Backup lock release failed: {e}")
