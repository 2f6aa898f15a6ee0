from uuid import UUID
from datetime import datetime
from sqlalchemy.orm import Session
from fastapi import APIRouter, Depends, HTTPException
from ..database import get_db
from ..auth import get_request_scope
from ..scope import RequestScope
from .. import models, schemas, audit

router = APIRouter(prefix="/api/audit", tags=["audit"])


def _entry_out(entry: models.AuditColumnsMixin) -> schemas.AuditEntryOut:
    out = schemas.AuditEntryOut.model_validate(entry)
    out.archived = isinstance(entry, models.AuditArchiveEntry)
    return out


@router.get("/", response_model=list[schemas.AuditEntryOut])
async def list_entries(
    actor_id: str | None = None,
    limit: int = 100,
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_request_scope),
):
    rows = audit.entries_for_actor(db, actor_id or scope.actor_id, lab_id=scope.lab_id, limit=min(limit, 500))
    return [_entry_out(row) for row in rows]


@router.get("/entity/{entity_type}/{entity_id}", response_model=list[schemas.AuditEntryOut])
async def entity_history(
    entity_type: str,
    entity_id: UUID,
    include_archive: bool = True,
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_request_scope),
):
    rows = audit.entries_for_entity(
        db, entity_type, entity_id, lab_id=scope.lab_id, include_archive=include_archive
    )
    return [_entry_out(row) for row in rows]


@router.get("/report", response_model=list[schemas.AuditReportItem])
async def audit_report(
    start: datetime,
    end: datetime,
    actor_id: str | None = None,
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_request_scope),
):
    return audit.generate_report(db, start, end, lab_id=scope.lab_id, actor_id=actor_id)


@router.get("/overflow/{entry_id}", response_model=schemas.AuditOverflowOut)
async def audit_overflow(
    entry_id: UUID,
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_request_scope),
):
    entry = audit.find_entry(db, entry_id)
    if entry is None or entry.lab_id != scope.lab_id:
        raise HTTPException(status_code=404, detail="Audit entry not found")
    document = audit.load_overflow(entry)
    return schemas.AuditOverflowOut(
        entry_id=entry.id,
        old_value=document.get("old_value"),
        new_value=document.get("new_value"),
    )
