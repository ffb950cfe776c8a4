"""Backup management router for creating, listing, and restoring backups."""

import json
import logging
from typing import Optional

from bson import json_util
from fastapi import APIRouter, Body, HTTPException, Query, Request, Depends
from fastapi.responses import JSONResponse

from tradein.core.security import is_trusted_scheduler_request
from tradein.models.backup_schemas import (
    BackupListResponse, BackupType, CreateBackupRequest, RestoreBackupRequest,
    UpdateBackupConfigRequest,
)
from tradein.routers.auth import (
    BACKUP_CONFIG, BACKUP_CREATE, BACKUP_DELETE, BACKUP_RESTORE, BACKUP_VIEW,
    StaffIdentity, require_permission,
)
from tradein.services.backup_service import BackupService, CRON_ACTOR
from tradein.services.backup_store import BackupNotFound, InvalidBackupId

logger = logging.getLogger(__name__)

router = APIRouter()


def get_backup_service(request: Request) -> BackupService:
    """Get the app's backup service, creating it on first use."""
    service = getattr(request.app.state, "backup_service", None)
    if service is None:
        service = BackupService(request.app.state.db.db)
        request.app.state.backup_service = service
    return service


def _raise_for_backup_error(e: Exception, backup_id: str):
    if isinstance(e, InvalidBackupId):
        raise HTTPException(status_code=400, detail=f"Invalid backup id: {backup_id}")
    if isinstance(e, BackupNotFound):
        raise HTTPException(status_code=404, detail=f"Backup {backup_id} not found")
    raise e


def _json_safe(value):
    """Render stored documents (ObjectIds, dates) as plain JSON."""
    return json.loads(json_util.dumps(value, json_options=json_util.RELAXED_JSON_OPTIONS))


def _outcome_response(outcome) -> JSONResponse:
    return JSONResponse(
        status_code=200 if outcome.success else 500,
        content=outcome.to_response(),
    )


# ==================== Backup Creation Endpoints ====================

@router.post("/create")
async def create_backup(
    request: Request,
    backup_request: Optional[CreateBackupRequest] = Body(default=None),
    staff: StaffIdentity = Depends(require_permission(BACKUP_CREATE))
):
    """
    Create a backup now.

    Backup types:
    - full: Every tracked collection, plus storefront content when enabled
    - incremental: Documents changed since each collection's last backup

    Returns ``skipped`` when another backup holds the lock or an incremental
    finds nothing new.
    """
    backup_request = backup_request or CreateBackupRequest()
    service = get_backup_service(request)

    outcome = await service.create_backup(
        backup_type=backup_request.type,
        created_by=staff.email,
        include_external=backup_request.include_external_content,
    )
    return _outcome_response(outcome)


@router.api_route("/auto", methods=["GET", "POST"])
async def run_automatic_backup(request: Request):
    """
    Run one scheduled backup tick.

    Called by the hosting platform's cron (or any external scheduler) on
    deployments without a long-running process. Requires the cron marker
    header or the shared cron secret.
    """
    if not is_trusted_scheduler_request(request):
        raise HTTPException(status_code=401, detail="Unauthorized")

    service = get_backup_service(request)
    outcome = await service.run_tick(trigger=CRON_ACTOR)
    return _outcome_response(outcome)


# ==================== Backup Listing Endpoints ====================

@router.get("/", response_model=BackupListResponse)
async def list_backups(
    request: Request,
    backup_type: Optional[BackupType] = Query(default=None, alias="type"),
    limit: int = Query(default=50, ge=1, le=200),
    skip: int = Query(default=0, ge=0),
    _staff: StaffIdentity = Depends(require_permission(BACKUP_VIEW))
):
    """List backups newest first, without captured data."""
    service = get_backup_service(request)
    backups = await service.list_backups(limit=limit, skip=skip, backup_type=backup_type)
    total = await service.count_backups(backup_type)
    return BackupListResponse(backups=backups, total=total)


@router.get("/stats")
async def get_backup_stats(
    request: Request,
    _staff: StaffIdentity = Depends(require_permission(BACKUP_VIEW))
):
    """Get backup counts and storage totals."""
    service = get_backup_service(request)
    stats = await service.get_stats()
    return {"success": True, "stats": stats.model_dump(mode="json")}


# ==================== Configuration Endpoints ====================

@router.get("/config")
async def get_backup_config(
    request: Request,
    _staff: StaffIdentity = Depends(require_permission(BACKUP_CONFIG))
):
    """Get the backup schedule and retention configuration."""
    service = get_backup_service(request)
    config = await service.get_config()
    return {"success": True, "config": config.model_dump(mode="json")}


@router.put("/config")
async def update_backup_config(
    request: Request,
    config_request: UpdateBackupConfigRequest,
    staff: StaffIdentity = Depends(require_permission(BACKUP_CONFIG))
):
    """
    Update the backup configuration.

    The in-process scheduler, when running, is restarted so a changed
    frequency or enable flag applies immediately.
    """
    service = get_backup_service(request)
    updates = config_request.model_dump(mode="json", exclude_none=True)
    config = await service.update_config(updates, updated_by=staff.email)

    scheduler = getattr(request.app.state, "backup_scheduler", None)
    scheduler_state = None
    if scheduler is not None:
        await scheduler.restart()
        scheduler_state = scheduler.state

    return {
        "success": True,
        "config": config.model_dump(mode="json"),
        "scheduler": scheduler_state,
    }


# ==================== Single Backup Endpoints ====================

@router.get("/{backup_id}")
async def get_backup(
    request: Request,
    backup_id: str,
    include_data: bool = Query(default=False, description="Include captured documents"),
    _staff: StaffIdentity = Depends(require_permission(BACKUP_VIEW))
):
    """Get a backup, optionally with its captured documents."""
    service = get_backup_service(request)
    try:
        record = await service.get_backup(backup_id)
    except (InvalidBackupId, BackupNotFound) as e:
        _raise_for_backup_error(e, backup_id)

    body = record.model_dump(mode="json", exclude={"collections", "external_content"})
    body["collections"] = []
    for snapshot in record.collections:
        entry = {"name": snapshot.name, "count": snapshot.count}
        if include_data:
            entry["data"] = _json_safe(snapshot.data)
        body["collections"].append(entry)

    body["external_content"] = None
    if record.external_content is not None:
        body["external_content"] = {}
        for category, slot in record.external_content.items():
            entry = {"count": slot.count, "error": slot.error}
            if include_data:
                entry["items"] = _json_safe(slot.items)
            body["external_content"][category] = entry

    return {"success": True, "backup": body}


@router.post("/{backup_id}/restore")
async def restore_backup(
    request: Request,
    backup_id: str,
    restore_request: Optional[RestoreBackupRequest] = Body(default=None),
    staff: StaffIdentity = Depends(require_permission(BACKUP_RESTORE))
):
    """
    Restore collections from a backup.

    WARNING: every restored collection is emptied and replaced with the
    backup's documents. Storefront content is never written back.
    """
    restore_request = restore_request or RestoreBackupRequest()
    service = get_backup_service(request)

    try:
        result = await service.restore(
            backup_id,
            collections=restore_request.collections,
            requested_by=staff.email,
        )
    except (InvalidBackupId, BackupNotFound) as e:
        _raise_for_backup_error(e, backup_id)

    status_code = 409 if result.skipped else 200
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


@router.delete("/{backup_id}")
async def delete_backup(
    request: Request,
    backup_id: str,
    staff: StaffIdentity = Depends(require_permission(BACKUP_DELETE))
):
    """Delete a backup."""
    service = get_backup_service(request)
    try:
        deleted = await service.delete_backup(backup_id, deleted_by=staff.email)
    except InvalidBackupId as e:
        _raise_for_backup_error(e, backup_id)

    if not deleted:
        raise HTTPException(status_code=404, detail=f"Backup {backup_id} not found")

    return {"success": True, "message": f"Backup {backup_id} deleted"}
