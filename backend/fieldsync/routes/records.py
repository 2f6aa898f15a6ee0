"""Direct (interactive) mutation routes for syncable entities."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import models, schemas
from ..auth import get_request_scope
from ..database import get_db
from ..exceptions import (
    ImmutableRecordViolation,
    RecordNotFound,
    SyncError,
    ValidationFailure,
    VersionConflictError,
)
from ..scope import RequestScope
from ..services import records
from ..snapshots import domain_state, entity_type_of

# purpose: audited create/update/soft-delete outside batch sync; stale tokens surface as 409
# status: active
# depends_on: backend.fieldsync.services.records

router = APIRouter(prefix="/api/records", tags=["records"])

_COLLECTIONS = {
    "samples": "sample",
    "test-results": "test_result",
    "parameters": "parameter",
}


def _entity_type(collection: str) -> str:
    entity_type = _COLLECTIONS.get(collection)
    if entity_type is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown collection {collection}")
    return entity_type


def _to_http(exc: SyncError) -> HTTPException:
    if isinstance(exc, VersionConflictError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "version_conflict",
                "message": str(exc),
                "current_version": exc.current_version,
                "current_state": exc.current_state,
            },
        )
    if isinstance(exc, ImmutableRecordViolation):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "immutable_record", "message": str(exc)},
        )
    if isinstance(exc, ValidationFailure):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"error": "validation_failure", "message": str(exc), "errors": exc.errors},
        )
    if isinstance(exc, RecordNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _record_out(entity: models.SyncableMixin) -> schemas.RecordOut:
    return schemas.RecordOut(
        entity_type=entity_type_of(entity),
        entity_id=entity.id,
        version=entity.version,
        is_deleted=entity.is_deleted,
        payload=domain_state(entity),
    )


@router.post("/{collection}", response_model=schemas.RecordOut, status_code=status.HTTP_201_CREATED)
def create_record(
    collection: str,
    payload: schemas.RecordWrite,
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_request_scope),
):
    entity_type = _entity_type(collection)
    try:
        entity = records.create_record(db, scope, entity_type, payload.payload)
        db.commit()
        db.refresh(entity)
    except SyncError as exc:
        db.rollback()
        raise _to_http(exc) from exc
    return _record_out(entity)


@router.put("/{collection}/{entity_id}", response_model=schemas.RecordOut)
def update_record(
    collection: str,
    entity_id: UUID,
    payload: schemas.RecordWrite,
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_request_scope),
):
    entity_type = _entity_type(collection)
    try:
        entity = records.update_record(db, scope, entity_type, entity_id, payload.presented_token, payload.payload)
        db.commit()
        db.refresh(entity)
    except SyncError as exc:
        db.rollback()
        raise _to_http(exc) from exc
    return _record_out(entity)


@router.delete("/{collection}/{entity_id}", response_model=schemas.RecordOut)
def delete_record(
    collection: str,
    entity_id: UUID,
    presented_token: int,
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_request_scope),
):
    entity_type = _entity_type(collection)
    try:
        entity = records.delete_record(db, scope, entity_type, entity_id, presented_token)
        db.commit()
        db.refresh(entity)
    except SyncError as exc:
        db.rollback()
        raise _to_http(exc) from exc
    return _record_out(entity)


@router.post("/test-results/{result_id}/void", response_model=list[schemas.RecordOut])
def void_test_result(
    result_id: UUID,
    payload: schemas.TestResultVoid,
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_request_scope),
):
    try:
        voided, replacement = records.void_test_result(
            db,
            scope,
            result_id,
            payload.presented_token,
            payload.reason,
            payload.replacement,
        )
        db.commit()
        db.refresh(voided)
        db.refresh(replacement)
    except SyncError as exc:
        db.rollback()
        raise _to_http(exc) from exc
    return [_record_out(voided), _record_out(replacement)]
