# backend/atelier/api/admin.py
from datetime import datetime
from typing import Dict

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..engine.policy import EnginePolicy
from ..engine.sweep import run_sweep
from .deps import get_db, get_now, get_policy, require_admin, CurrentUser

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/sweep")
def sweep(
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(require_admin),
    now: datetime = Depends(get_now),
    policy: EnginePolicy = Depends(get_policy),
) -> Dict[str, int]:
    """Run the periodic sweep on demand; the scheduled job calls the same function."""
    return run_sweep(db, now, policy).as_dict()
