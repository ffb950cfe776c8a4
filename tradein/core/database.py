"""Database connection manager."""

import logging
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError
from typing import Optional

from tradein.core.config import settings

logger = logging.getLogger(__name__)

# Collections written by the storefront application
PRODUCTS_COLLECTION = "trade_in_products"
SUBMISSIONS_COLLECTION = "submissions"
STAFF_COLLECTION = "staff_members"
AUDIT_LOGS_COLLECTION = "audit_logs"
# resourceType of the audit entries the backup engine writes about itself
BACKUP_AUDIT_RESOURCE_TYPE = "backup"
PRICING_COLLECTION = "pricing"

# Collections owned by the backup engine
BACKUPS_COLLECTION = "backups"
BACKUP_CONFIG_COLLECTION = "backup_config"
BACKUP_LOCK_COLLECTION = "backup_lock"


class DatabaseManager:
    """Async MongoDB connection manager."""

    def __init__(self, uri: Optional[str] = None, database: Optional[str] = None):
        self.client: Optional[AsyncIOMotorClient] = None
        self.db = None
        self._uri = uri or settings.mongodb_uri
        self._database = database or settings.mongodb_database

    async def connect(self):
        """Establish database connection."""
        try:
            if self.client is None:
                # tz_aware so stored timestamps compare against UTC-aware datetimes
                self.client = AsyncIOMotorClient(
                    self._uri,
                    tz_aware=True,
                    serverSelectionTimeoutMS=10000
                )
                # Test connection
                await self.client.admin.command('ping')

            self.db = self.client[self._database]
            logger.info(f"Connected to MongoDB: {self._database}")

            await self._ensure_indexes()

        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def _ensure_indexes(self):
        """Create indexes used by backup queries (ignore errors if they already exist)."""
        try:
            await self.db[BACKUPS_COLLECTION].create_index([("created_at", -1)])
            await self.db[BACKUPS_COLLECTION].create_index([("type", 1), ("created_at", -1)])
            await self.db[BACKUPS_COLLECTION].create_index([("collections.name", 1), ("created_at", -1)])
            await self.db[SUBMISSIONS_COLLECTION].create_index([("createdAt", -1)])
        except PyMongoError as e:
            logger.warning(f"Index creation skipped: {e}")

    async def disconnect(self):
        """Close database connection."""
        if self.client:
            self.client.close()
            self.client = None
            logger.info("MongoDB connection closed")

    async def ping(self) -> bool:
        """Check that the server answers."""
        if self.client is None:
            return False
        try:
            await self.client.admin.command('ping')
            return True
        except PyMongoError as e:
            logger.warning(f"MongoDB ping failed: {e}")
            return False
