# backend/atelier/api/deps.py
from datetime import datetime, timezone
from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from ..core.config import SessionLocal, settings
from ..core.security import decode_token
from ..engine.policy import EnginePolicy
from ..models import User

# one Bearer field for the OpenAPI "Authorize" dialog
auth_scheme = HTTPBearer(auto_error=True)

_POLICY = EnginePolicy.from_settings(settings)


# ---------------------------
# DB Session Dependency
# ---------------------------
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# ---------------------------
# Clock & engine policy (overridden in tests)
# ---------------------------
def get_now() -> datetime:
    """Naive UTC, the convention for every stored timestamp."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_policy() -> EnginePolicy:
    return _POLICY


# ---------------------------
# Current User DTO
# ---------------------------
class CurrentUser:
    def __init__(self, id: int, email: str, role_name: str):
        self.id = id
        self.email = email
        self.role_name = role_name


# ---------------------------
# AuthN: Token → CurrentUser
# ---------------------------
async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
    db: Session = Depends(get_db),
) -> CurrentUser:
    token = credentials.credentials
    try:
        payload = decode_token(token)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id: Optional[str] = payload.get("sub")
    role_name_from_token: Optional[str] = payload.get("role")

    if user_id is None or not str(user_id).isdigit():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = db.get(User, int(user_id))
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # the stored role wins; the token role is only a fallback for legacy rows
    role_name = user.role_name or role_name_from_token or "user"

    return CurrentUser(id=user.id, email=user.email, role_name=role_name)


# ---------------------------
# AuthZ: admin only
# ---------------------------
def require_admin(current: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if current.role_name != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Permission denied")
    return current
