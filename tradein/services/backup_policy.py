"""Decide whether the next backup is full or incremental, and whether it is due."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from tradein.models.backup_schemas import (
    BackupConfig, BackupRecord, BackupSummary, BackupType,
)

FREQUENCY_INTERVALS = {
    "hourly": timedelta(hours=1),
    "every2hours": timedelta(hours=2),
    "every4hours": timedelta(hours=4),
    "daily": timedelta(hours=24),
    "weekly": timedelta(days=7),
}

HistoryEntry = Union[BackupRecord, BackupSummary]


@dataclass(frozen=True)
class BackupDecision:
    type: BackupType
    should_run: bool
    wait_ms: int = 0
    reason: str = ""


def interval_for(frequency) -> timedelta:
    """Map a frequency name (or enum) to its interval."""
    key = getattr(frequency, "value", frequency)
    try:
        return FREQUENCY_INTERVALS[key]
    except KeyError:
        raise ValueError(f"Unknown backup frequency: {frequency!r}") from None


def decide_backup_type(
    last_backup: Optional[HistoryEntry],
    last_full_backup: Optional[HistoryEntry],
    config: BackupConfig,
    now: datetime,
) -> BackupDecision:
    """
    Pick the next backup type from history and configuration.

    Args:
        last_backup: Most recent backup of any type
        last_full_backup: Most recent full backup
        config: Active backup configuration
        now: Current time
    """
    if last_full_backup is None:
        return BackupDecision(BackupType.FULL, True, reason="No full backup exists yet")

    full_interval = interval_for(config.full_backup_frequency)
    since_full = now - last_full_backup.created_at
    if since_full >= full_interval:
        days = since_full.total_seconds() / 86400
        return BackupDecision(
            BackupType.FULL, True,
            reason=f"Last full backup is {days:.1f} days old ({config.full_backup_frequency.value} schedule)"
        )

    incremental_interval = interval_for(config.incremental_backup_frequency)
    latest = last_backup or last_full_backup
    elapsed = now - latest.created_at
    if elapsed < incremental_interval:
        wait = incremental_interval - elapsed
        return BackupDecision(
            BackupType.INCREMENTAL, False,
            wait_ms=int(wait.total_seconds() * 1000),
            reason=f"Next backup due in {int(wait.total_seconds() // 60)} minutes"
        )

    return BackupDecision(
        BackupType.INCREMENTAL, True,
        reason=f"Incremental backup due ({config.incremental_backup_frequency.value} schedule)"
    )
