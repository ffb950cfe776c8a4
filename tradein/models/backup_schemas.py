"""Backup system schemas and models."""

from enum import Enum
from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field

SIZE_UNITS = ["Bytes", "KB", "MB", "GB", "TB"]


def format_size(num_bytes: int) -> str:
    """Render a byte count as e.g. ``"1.5 MB"``."""
    if num_bytes <= 0:
        return "0 Bytes"
    exponent = 0
    while num_bytes >= 1024 ** (exponent + 1) and exponent < len(SIZE_UNITS) - 1:
        exponent += 1
    value = round(num_bytes / (1024 ** exponent), 2)
    return f"{value:g} {SIZE_UNITS[exponent]}"


class BackupType(str, Enum):
    """Types of backups supported by the system."""
    FULL = "full"
    INCREMENTAL = "incremental"


class FullBackupFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"


class IncrementalBackupFrequency(str, Enum):
    HOURLY = "hourly"
    EVERY_2_HOURS = "every2hours"
    EVERY_4_HOURS = "every4hours"
    DAILY = "daily"


class TickStatus(str, Enum):
    """Outcome of one backup attempt."""
    RAN = "ran"
    SKIPPED = "skipped"
    ERROR = "error"


# ==================== Snapshot Models ====================

class CollectionSnapshot(BaseModel):
    """Documents captured from one tracked collection."""
    model_config = ConfigDict(frozen=True)

    name: str
    count: int = 0
    data: List[Dict[str, Any]] = Field(default_factory=list)


class ExternalContentSlot(BaseModel):
    """Items fetched for one external content category."""
    model_config = ConfigDict(frozen=True)

    items: List[Dict[str, Any]] = Field(default_factory=list)
    count: int = 0
    error: Optional[str] = None


class BackupRecord(BaseModel):
    """An immutable backup snapshot."""
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = Field(default=None, description="Assigned by the backup store on save")
    type: BackupType
    created_at: datetime
    created_by: str
    collections: List[CollectionSnapshot] = Field(default_factory=list)
    external_content: Optional[Dict[str, ExternalContentSlot]] = None
    size: int = 0
    size_formatted: str = "0 Bytes"

    def collection(self, name: str) -> Optional[CollectionSnapshot]:
        for snapshot in self.collections:
            if snapshot.name == name:
                return snapshot
        return None

    @property
    def collection_names(self) -> List[str]:
        return [snapshot.name for snapshot in self.collections]

    @property
    def document_count(self) -> int:
        return sum(snapshot.count for snapshot in self.collections)

    def to_document(self) -> Dict[str, Any]:
        """Render as a MongoDB document (without _id)."""
        doc = self.model_dump(mode="python", exclude={"id"})
        doc["type"] = self.type.value
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "BackupRecord":
        doc = dict(doc)
        doc["id"] = str(doc.pop("_id")) if "_id" in doc else doc.get("id")
        return cls(**doc)


class CollectionSummary(BaseModel):
    name: str
    count: int = 0


class ExternalContentSummary(BaseModel):
    count: int = 0
    error: Optional[str] = None


class BackupSummary(BaseModel):
    """Backup listing entry without captured payloads."""
    id: str
    type: BackupType
    created_at: datetime
    created_by: str
    collections: List[CollectionSummary] = Field(default_factory=list)
    external_content: Optional[Dict[str, ExternalContentSummary]] = None
    size: int = 0
    size_formatted: str = "0 Bytes"


# ==================== Configuration ====================

class BackupConfig(BaseModel):
    """Backup system configuration."""
    full_backup_frequency: FullBackupFrequency = Field(default=FullBackupFrequency.WEEKLY)
    incremental_backup_frequency: IncrementalBackupFrequency = Field(default=IncrementalBackupFrequency.HOURLY)
    auto_backup_enabled: bool = Field(default=False, description="Gate for scheduled backups")
    retention_days: int = Field(default=30, ge=1, le=365, description="Days to retain backups")
    include_external_content: bool = Field(default=True, description="Snapshot Shopify content in full backups")
    updated_at: Optional[datetime] = Field(default=None)
    updated_by: Optional[str] = Field(default=None)


# ==================== Request Models ====================

class CreateBackupRequest(BaseModel):
    """Request to create a manual backup."""
    type: BackupType = Field(default=BackupType.FULL, description="Type of backup to create")
    include_external_content: Optional[bool] = Field(
        default=None,
        description="Force (true) or suppress (false) the Shopify content snapshot"
    )


class RestoreBackupRequest(BaseModel):
    """Request to restore from a backup."""
    collections: Optional[List[str]] = Field(default=None, description="Collections to restore (all when omitted)")


class UpdateBackupConfigRequest(BaseModel):
    """Request to update backup configuration."""
    full_backup_frequency: Optional[FullBackupFrequency] = Field(default=None)
    incremental_backup_frequency: Optional[IncrementalBackupFrequency] = Field(default=None)
    auto_backup_enabled: Optional[bool] = Field(default=None)
    retention_days: Optional[int] = Field(default=None, ge=1, le=365)
    include_external_content: Optional[bool] = Field(default=None)


# ==================== Response Models ====================

class BackupListResponse(BaseModel):
    """Response containing list of backups."""
    success: bool = True
    backups: List[BackupSummary] = Field(default_factory=list)
    total: int = Field(default=0, description="Backups matching the type filter, across all pages")


class BackupStats(BaseModel):
    """Backup storage statistics."""
    total_backups: int = Field(default=0)
    total_size_bytes: int = Field(default=0)
    total_size_formatted: str = Field(default="0 Bytes")
    backups_by_type: Dict[str, int] = Field(default_factory=dict)
    oldest_backup: Optional[datetime] = Field(default=None)
    newest_backup: Optional[datetime] = Field(default=None)
    latest_full_backup: Optional[datetime] = Field(default=None)


class ExternalContentRestoreStatus(BaseModel):
    status: str = Field(..., description="not_included | manual_restore_required")
    message: str
    counts: Dict[str, int] = Field(default_factory=dict)


class RestoredCollection(BaseModel):
    name: str
    count: int


class RestoreResult(BaseModel):
    """Result of a restore operation."""
    success: bool = Field(default=False)
    skipped: bool = Field(default=False)
    message: str = ""
    backup_id: str
    backup_type: Optional[BackupType] = None
    restored_collections: List[RestoredCollection] = Field(default_factory=list)
    external_content_restore_status: Optional[ExternalContentRestoreStatus] = None
    warnings: List[str] = Field(default_factory=list)
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0


class TickOutcome(BaseModel):
    """Machine-readable outcome of a backup attempt."""
    status: TickStatus
    message: str
    backup_id: Optional[str] = None
    backup_type: Optional[BackupType] = None
    wait_ms: Optional[int] = None
    purged: int = 0
    size_formatted: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status != TickStatus.ERROR

    @property
    def skipped(self) -> bool:
        return self.status == TickStatus.SKIPPED

    def to_response(self) -> Dict[str, Any]:
        body = self.model_dump(mode="json", exclude_none=True)
        body.update({
            "success": self.success,
            "skipped": self.skipped,
            "ran": self.status == TickStatus.RAN,
        })
        return body
