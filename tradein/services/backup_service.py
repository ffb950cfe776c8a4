"""Backup service tying the engine components together.

This service handles:
- Scheduled ticks (config gate, lock, policy, snapshot, save, retention purge)
- Manual backups of a requested type
- Destructive restores
- Listing, inspection and deletion of stored backups
"""

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any

from tradein.models.backup_schemas import (
    BackupConfig, BackupRecord, BackupStats, BackupSummary, BackupType,
    RestoreResult, TickOutcome, TickStatus,
)
from tradein.services.backup_config import BackupConfigStore
from tradein.services.backup_lock import LOCK_DURATION, BackupLockManager, LockResult
from tradein.services.backup_policy import decide_backup_type
from tradein.services.backup_store import BackupStore, BackupError
from tradein.services.notifications import BackupEvent, BackupEventPublisher
from tradein.services.restore_executor import RestoreExecutor
from tradein.services.snapshot_builder import SnapshotBuilder

logger = logging.getLogger(__name__)

SCHEDULER_ACTOR = "system:scheduler"
CRON_ACTOR = "system:cron"


def _contention_message(lock: LockResult, now: Optional[datetime] = None) -> str:
    minutes = max(1, math.ceil(lock.remaining(now).total_seconds() / 60))
    return f"Another backup is in progress (lock expires in ~{minutes} min)"


class BackupService:
    """Service for managing trade-in database backups."""

    def __init__(
        self,
        db,
        content_provider=None,
        notifier: Optional[BackupEventPublisher] = None,
        lock_duration: timedelta = LOCK_DURATION,
    ):
        """
        Initialize backup service.

        Args:
            db: Motor database (or a compatible fake)
            content_provider: Optional storefront content provider
            notifier: Event publisher; defaults to one writing the audit log only
            lock_duration: How long an acquired lock stays valid
        """
        self.db = db
        self.content_provider = content_provider
        self.notifier = notifier if notifier is not None else BackupEventPublisher(db)
        self.lock = BackupLockManager(db, duration=lock_duration)
        self.config_store = BackupConfigStore(db)
        self.store = BackupStore(db)
        self.builder = SnapshotBuilder(db, self.store, content_provider)
        self.restorer = RestoreExecutor(db, self.store, self.lock)

    # ==================== Configuration ====================

    async def get_config(self) -> BackupConfig:
        return await self.config_store.get_config()

    async def update_config(self, updates: Dict[str, Any], updated_by: Optional[str] = None) -> BackupConfig:
        config = await self.config_store.update_config(updates, updated_by=updated_by)
        self._publish(
            "backup_config_updated", updated_by or "unknown",
            "Backup configuration updated",
            metadata={"updates": {k: v for k, v in updates.items() if v is not None}},
        )
        return config

    # ==================== Ticks ====================

    async def run_tick(self, trigger: str = SCHEDULER_ACTOR, now: Optional[datetime] = None) -> TickOutcome:
        """
        Run one scheduled backup attempt.

        Never raises: every failure is reported as an ``error`` outcome and the
        lock, once taken, is always released.
        """
        now = now or datetime.now(timezone.utc)

        try:
            config = await self.get_config()
        except Exception as e:
            logger.error(f"Backup tick could not read config: {e}")
            return self._failed(trigger, f"Could not read backup config: {e}")

        if not config.auto_backup_enabled:
            logger.info("Automatic backups are disabled, skipping tick")
            return TickOutcome(status=TickStatus.SKIPPED, message="Automatic backups are disabled")

        lock = await self.lock.acquire(holder=trigger, now=now)
        if lock.error:
            return self._failed(trigger, f"Backup lock unavailable: {lock.error}")
        if not lock.acquired:
            return TickOutcome(status=TickStatus.SKIPPED, message=_contention_message(lock, now))

        try:
            last_backup = await self.store.latest()
            last_full = await self.store.latest(BackupType.FULL)
            decision = decide_backup_type(last_backup, last_full, config, now)
            logger.info(f"Backup decision: {decision.type.value} run={decision.should_run} ({decision.reason})")

            if not decision.should_run:
                return TickOutcome(
                    status=TickStatus.SKIPPED,
                    message=decision.reason,
                    backup_type=decision.type,
                    wait_ms=decision.wait_ms,
                )

            outcome = await self._capture(decision.type, config, trigger, now)
            if outcome.status == TickStatus.RAN:
                outcome = await self._purge_after(outcome, config, now)
        except Exception as e:
            logger.error(f"Backup tick failed: {e}", exc_info=True)
            return self._failed(trigger, f"Backup failed: {e}")
        finally:
            await self.lock.release()

        if outcome.status == TickStatus.RAN:
            self._publish_created(outcome, trigger)
        return outcome

    async def create_backup(
        self,
        backup_type: BackupType = BackupType.FULL,
        created_by: str = "system",
        include_external: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> TickOutcome:
        """Take a backup of the requested type now, ignoring the schedule."""
        now = now or datetime.now(timezone.utc)

        lock = await self.lock.acquire(holder=created_by, now=now)
        if lock.error:
            return self._failed(created_by, f"Backup lock unavailable: {lock.error}")
        if not lock.acquired:
            return TickOutcome(status=TickStatus.SKIPPED, message=_contention_message(lock, now))

        try:
            config = await self.get_config()
            outcome = await self._capture(backup_type, config, created_by, now, include_external)
        except Exception as e:
            logger.error(f"Manual {backup_type.value} backup failed: {e}", exc_info=True)
            return self._failed(created_by, f"Backup failed: {e}")
        finally:
            await self.lock.release()

        if outcome.status == TickStatus.RAN:
            self._publish_created(outcome, created_by)
        return outcome

    async def _purge_after(self, outcome: TickOutcome, config: BackupConfig, now: datetime) -> TickOutcome:
        """Apply retention after a saved backup; the backup stands even if the purge fails."""
        try:
            purged = await self.store.purge_older_than(config.retention_days, now=now)
        except Exception as e:
            logger.error(f"Retention purge after backup {outcome.backup_id} failed: {e}")
            return outcome.model_copy(update={
                "message": f"{outcome.message} (retention purge failed: {e})",
            })
        return outcome.model_copy(update={"purged": purged})

    async def _capture(
        self,
        backup_type: BackupType,
        config: BackupConfig,
        created_by: str,
        now: datetime,
        include_external: Optional[bool] = None,
    ) -> TickOutcome:
        record = await self.builder.build(
            backup_type, config, created_by, now=now, include_external=include_external
        )
        if record is None:
            return TickOutcome(
                status=TickStatus.SKIPPED,
                message="No changes since the last backup, nothing to back up",
                backup_type=backup_type,
            )

        backup_id = await self.store.save(record)
        return TickOutcome(
            status=TickStatus.RAN,
            message=f"{backup_type.value.capitalize()} backup created",
            backup_id=backup_id,
            backup_type=backup_type,
            size_formatted=record.size_formatted,
        )

    # ==================== Restore ====================

    async def restore(
        self,
        backup_id: str,
        collections: Optional[List[str]] = None,
        requested_by: str = "system",
    ) -> RestoreResult:
        """Restore collections from a backup. Raises InvalidBackupId / BackupNotFound."""
        try:
            result = await self.restorer.restore(backup_id, collections, requested_by=requested_by)
        except BackupError:
            raise
        except Exception as e:
            logger.error(f"Restore of {backup_id} failed: {e}", exc_info=True)
            self._publish(
                "backup_restore_failed", requested_by, f"Restore of backup {backup_id} failed: {e}",
                resource_id=backup_id, failed=True,
            )
            raise

        if result.success:
            self._publish(
                "backup_restored", requested_by, result.message, resource_id=backup_id,
                metadata={"collections": [c.name for c in result.restored_collections]},
            )
        return result

    # ==================== Queries ====================

    async def list_backups(
        self,
        limit: int = 50,
        skip: int = 0,
        backup_type: Optional[BackupType] = None
    ) -> List[BackupSummary]:
        return await self.store.list(limit=limit, skip=skip, backup_type=backup_type)

    async def count_backups(self, backup_type: Optional[BackupType] = None) -> int:
        return await self.store.count(backup_type)

    async def get_backup(self, backup_id: str) -> BackupRecord:
        return await self.store.get(backup_id)

    async def delete_backup(self, backup_id: str, deleted_by: str = "system") -> bool:
        deleted = await self.store.delete(backup_id)
        if deleted:
            self._publish("backup_deleted", deleted_by, f"Backup {backup_id} deleted", resource_id=backup_id)
        return deleted

    async def get_stats(self) -> BackupStats:
        return await self.store.stats()

    # ==================== Events ====================

    def _failed(self, actor: str, message: str) -> TickOutcome:
        self._publish("backup_failed", actor, message, failed=True)
        return TickOutcome(status=TickStatus.ERROR, message=message)

    def _publish_created(self, outcome: TickOutcome, actor: str) -> None:
        self._publish(
            "backup_created", actor, outcome.message,
            resource_id=outcome.backup_id,
            metadata={
                "type": outcome.backup_type.value if outcome.backup_type else None,
                "size": outcome.size_formatted,
                "purged": outcome.purged,
            },
        )

    def _publish(
        self,
        action: str,
        actor: str,
        message: str,
        resource_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        failed: bool = False,
    ) -> None:
        try:
            self.notifier.publish(BackupEvent(
                action=action,
                actor=actor,
                message=message,
                resource_id=resource_id,
                metadata=metadata or {},
                failed=failed,
            ))
        except RuntimeError as e:
            # No running event loop to deliver on
            logger.warning(f"Could not publish {action} event: {e}")
