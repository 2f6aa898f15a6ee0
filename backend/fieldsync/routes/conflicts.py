"""Conflict archive API routes."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import schemas
from ..auth import get_request_scope
from ..database import get_db
from ..exceptions import RecordNotFound, ValidationFailure
from ..scope import RequestScope
from ..services import conflict_archive

router = APIRouter(prefix="/api/conflicts", tags=["conflicts"])


@router.get("", response_model=list[schemas.ConflictBackupOut])
def list_conflicts(
    device_id: str | None = None,
    entity_id: UUID | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    resolved: bool | None = None,
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_request_scope),
):
    return conflict_archive.list_backups(
        db,
        scope.lab_id,
        device_id=device_id,
        entity_id=entity_id,
        start=start,
        end=end,
        resolved=resolved,
    )


@router.get("/{backup_id}", response_model=schemas.ConflictBackupOut)
def get_conflict(
    backup_id: UUID,
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_request_scope),
):
    try:
        return conflict_archive.get_backup(db, backup_id, lab_id=scope.lab_id)
    except RecordNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.post("/{backup_id}/resolve", response_model=schemas.ConflictBackupOut)
def resolve_conflict(
    backup_id: UUID,
    payload: schemas.ConflictResolve,
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_request_scope),
):
    try:
        backup = conflict_archive.mark_resolved(
            db,
            backup_id,
            lab_id=scope.lab_id,
            resolved_by=scope.actor_id,
            notes=payload.notes,
        )
        db.commit()
        db.refresh(backup)
    except RecordNotFound as exc:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValidationFailure as exc:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return backup
