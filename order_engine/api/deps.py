from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from typing import Optional
import jwt
from order_engine.core.config import settings
from order_engine.db.session import get_db  # noqa: F401  (re-exported for routes)

STAFF_ROLES = {"cashier", "admin"}

security = HTTPBearer(auto_error=False)

def _decode(token: str) -> dict:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid access token")
    return payload

def get_current_identity(creds: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    if not creds:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return _decode(creds.credentials)

def require_customer(identity: dict = Depends(get_current_identity)) -> str:
    sub = identity.get("sub")
    if not sub:
        raise HTTPException(status_code=401, detail="Token has no subject")
    return str(sub)

def require_staff(identity: dict = Depends(get_current_identity)) -> dict:
    if identity.get("role") not in STAFF_ROLES:
        raise HTTPException(status_code=403, detail="Staff only")
    return identity

def staff_or_internal(
    x_internal_key: Optional[str] = Header(default=None, alias="X-Internal-Key"),
    creds: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    # trusted internal callers (cron, other services)
    if x_internal_key and x_internal_key == settings.SVC_INTERNAL_KEY:
        return {"sub": "internal", "role": "internal"}
    if not creds:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return require_staff(_decode(creds.credentials))
