"""Audit trail writer for the ``audit_logs`` collection."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError

from tradein.core.database import AUDIT_LOGS_COLLECTION
from tradein.services.snapshot_builder import to_js_iso

logger = logging.getLogger(__name__)


async def record_audit(
    db,
    action: str,
    resource_type: str,
    resource_id: Optional[str],
    staff_identifier: Optional[str],
    changes: Optional[List[Dict[str, Any]]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    Write one audit entry in the storefront's audit log format.

    Failures are logged and reported as False; auditing never breaks the
    operation being audited.
    """
    now = datetime.now(timezone.utc)
    entry = {
        "action": action,
        "resourceType": resource_type,
        "resourceId": resource_id,
        "staffIdentifier": staff_identifier or "Unknown",
        "changes": changes or [],
        "metadata": metadata or {},
        "timestamp": to_js_iso(now),
        "createdAt": now,
    }
    try:
        await db[AUDIT_LOGS_COLLECTION].insert_one(entry)
    except PyMongoError as e:
        logger.error(f"Error logging audit for {action}: {e}")
        return False

    logger.info(f"Audit log created: {action} {resource_type} {resource_id} by {entry['staffIdentifier']}")
    return True
