"""Authentication router - shared API key, staff identity and backup permissions."""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, List

from fastapi import APIRouter, HTTPException, Request, Depends, status, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, Field
from jose import JWTError, jwt
from pymongo.errors import PyMongoError

from tradein.core.config import settings
from tradein.core.database import STAFF_COLLECTION

logger = logging.getLogger(__name__)

router = APIRouter()

ACCESS_TOKEN_EXPIRE_HOURS = 24 * 7  # 7 days

# Security scheme
security = HTTPBearer(auto_error=False)

# Backup permission names as stored in staff_members.permissions
BACKUP_VIEW = "backupView"
BACKUP_CREATE = "backupCreate"
BACKUP_RESTORE = "backupRestore"
BACKUP_DELETE = "backupDelete"
BACKUP_CONFIG = "backupConfig"

BACKUP_PERMISSIONS = [BACKUP_VIEW, BACKUP_CREATE, BACKUP_RESTORE, BACKUP_DELETE, BACKUP_CONFIG]

ROLE_PERMISSIONS: Dict[str, List[str]] = {
    "admin": BACKUP_PERMISSIONS,
    "manager": [BACKUP_VIEW, BACKUP_CREATE],
    "staff": [],
}


# ============== Pydantic Models ==============

class StaffIdentity(BaseModel):
    """An active staff member."""
    email: str
    name: Optional[str] = None
    role: str = "staff"
    permissions: Dict[str, bool] = Field(default_factory=dict)
    active: bool = True


class StaffAccessResponse(BaseModel):
    """What the caller may do with backups."""
    success: bool = True
    email: str
    role: str
    permissions: Dict[str, bool]


# ============== Helpers ==============

def normalize_email(identifier: str) -> str:
    return identifier.strip().lower()


def has_permission(staff: Optional[StaffIdentity], permission: str) -> bool:
    """
    Check a backup permission.

    An explicit boolean in ``staff.permissions`` wins; otherwise the role
    default applies.
    """
    if staff is None or not staff.active:
        return False
    explicit = staff.permissions.get(permission)
    if isinstance(explicit, bool):
        return explicit
    return permission in ROLE_PERMISSIONS.get(staff.role, [])


def create_access_token(email: str, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token for a staff member."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS))
    to_encode = {"sub": normalize_email(email), "exp": expire}
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Optional[str]:
    """Return the staff e-mail a token was issued for, or None."""
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        logger.debug(f"Rejected bearer token: {e}")
        return None
    subject = payload.get("sub")
    return normalize_email(subject) if subject else None


async def get_staff_collection(request: Request):
    """Get staff_members collection."""
    return request.app.state.db.db[STAFF_COLLECTION]


async def resolve_staff(request: Request, email: str) -> Optional[StaffIdentity]:
    """Look up an active staff member by e-mail."""
    collection = await get_staff_collection(request)
    try:
        staff_doc = await collection.find_one({"email": normalize_email(email), "active": True})
    except PyMongoError as e:
        logger.error(f"Staff lookup failed for {email}: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Staff directory unavailable"
        )

    if not staff_doc:
        return None

    return StaffIdentity(
        email=staff_doc["email"],
        name=staff_doc.get("name"),
        role=staff_doc.get("role", "staff"),
        permissions={
            k: v for k, v in (staff_doc.get("permissions") or {}).items()
            if isinstance(v, bool)
        },
        active=staff_doc.get("active", True),
    )


# ============== Dependencies ==============

async def require_api_key(x_api_key: Optional[str] = Header(None, alias="X-API-Key")) -> None:
    """Require the shared API secret every trusted frontend sends."""
    if not settings.api_secret:
        logger.error("API_SECRET is not configured, rejecting request")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    if not x_api_key or not secrets.compare_digest(x_api_key, settings.api_secret):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


async def get_current_staff(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_staff_identifier: Optional[str] = Header(None, alias="X-Staff-Identifier"),
) -> Optional[StaffIdentity]:
    """Get current staff member from a bearer token or the staff identifier header.

    Supports two identification methods:
    1. JWT Bearer token (``sub`` = staff e-mail)
    2. X-Staff-Identifier header sent by the storefront admin UI
    """
    email = None

    if credentials:
        email = decode_access_token(credentials.credentials)

    if not email and x_staff_identifier and x_staff_identifier.strip():
        email = normalize_email(x_staff_identifier)

    if not email:
        return None

    return await resolve_staff(request, email)


async def require_staff(
    _: None = Depends(require_api_key),
    staff: Optional[StaffIdentity] = Depends(get_current_staff),
) -> StaffIdentity:
    """Require an identified staff member - raises 401 otherwise."""
    if not staff:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Staff identity required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return staff


def require_permission(permission: str):
    """Build a dependency that requires one backup permission - raises 403 if missing."""

    async def dependency(staff: StaffIdentity = Depends(require_staff)) -> StaffIdentity:
        if not has_permission(staff, permission):
            logger.warning(f"{staff.email} ({staff.role}) denied {permission}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission '{permission}' required"
            )
        return staff

    return dependency


# ============== Auth Endpoints ==============

@router.get("/me", response_model=StaffAccessResponse)
async def get_me(staff: StaffIdentity = Depends(require_staff)):
    """Get the caller's role and effective backup permissions."""
    return StaffAccessResponse(
        email=staff.email,
        role=staff.role,
        permissions={name: has_permission(staff, name) for name in BACKUP_PERMISSIONS},
    )
