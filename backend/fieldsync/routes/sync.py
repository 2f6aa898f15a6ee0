"""Device sync API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Path
from sqlalchemy.orm import Session

from .. import schemas
from ..auth import get_request_scope
from ..database import get_db
from ..scope import RequestScope
from ..services import sync_coordinator, sync_ledger

# purpose: expose push/pull reconciliation for disconnected field and lab clients
# status: active
# depends_on: backend.fieldsync.services.sync_coordinator

router = APIRouter(prefix="/api/sync", tags=["sync"])


@router.post("/{device_id}", response_model=schemas.SyncResponse)
def sync_device(
    payload: schemas.SyncRequest,
    device_id: str = Path(min_length=1, max_length=100),
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_request_scope),
):
    try:
        return sync_coordinator.sync(
            db,
            scope.for_device(device_id),
            payload.last_watermark,
            payload.records,
            include_changes=payload.include_changes,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/{device_id}/status", response_model=schemas.SyncStatusOut)
def device_status(
    device_id: str = Path(min_length=1, max_length=100),
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_request_scope),
):
    return sync_ledger.sync_status(db, scope.for_device(device_id))
