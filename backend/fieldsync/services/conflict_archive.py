"""Durable storage and queries for conflict backups."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Session

from .. import models
from ..exceptions import RecordNotFound, ValidationFailure
from ..snapshots import dumps

# purpose: persist the losing side of every guard rejection; no resolution logic here
# status: active


def store_backup(
    db: Session,
    *,
    entity_type: str,
    entity_id: UUID,
    client_payload: dict[str, Any],
    server_snapshot: dict[str, Any],
    client_token: int | None,
    server_token: int,
    strategy: str,
    device_id: str,
    lab_id: UUID,
    created_by: str,
    resolved_by: str | None = None,
    notes: str | None = None,
) -> models.ConflictBackup:
    """Add a backup row to the session; ``resolved_by`` marks it resolved on write."""

    now = models.utcnow()
    backup = models.ConflictBackup(
        entity_type=entity_type,
        entity_id=entity_id,
        # key order preserved so the rejected payload round-trips exactly
        client_version=dumps(client_payload, sort_keys=False),
        server_version=dumps(server_snapshot),
        client_token=client_token,
        server_token=server_token,
        resolution_strategy=strategy,
        conflict_detected_at=now,
        resolved_at=now if resolved_by else None,
        resolved_by=resolved_by,
        resolution_notes=notes,
        device_id=device_id,
        lab_id=lab_id,
        created_by=created_by,
    )
    db.add(backup)
    db.flush()
    return backup


def get_backup(db: Session, backup_id: UUID, lab_id: UUID | None = None) -> models.ConflictBackup:
    backup = db.get(models.ConflictBackup, backup_id)
    if backup is None or (lab_id is not None and backup.lab_id != lab_id):
        raise RecordNotFound(f"Conflict backup {backup_id} not found")
    return backup


def list_backups(
    db: Session,
    lab_id: UUID,
    *,
    device_id: str | None = None,
    entity_id: UUID | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    resolved: bool | None = None,
    limit: int = 200,
) -> list[models.ConflictBackup]:
    query = db.query(models.ConflictBackup).filter(models.ConflictBackup.lab_id == lab_id)
    if device_id:
        query = query.filter(models.ConflictBackup.device_id == device_id)
    if entity_id:
        query = query.filter(models.ConflictBackup.entity_id == entity_id)
    if start:
        query = query.filter(models.ConflictBackup.conflict_detected_at >= start)
    if end:
        query = query.filter(models.ConflictBackup.conflict_detected_at <= end)
    if resolved is True:
        query = query.filter(models.ConflictBackup.resolved_at.isnot(None))
    elif resolved is False:
        query = query.filter(models.ConflictBackup.resolved_at.is_(None))
    return query.order_by(models.ConflictBackup.conflict_detected_at.desc()).limit(limit).all()


def latest_for_entity(db: Session, entity_type: str, entity_id: UUID) -> models.ConflictBackup | None:
    return (
        db.query(models.ConflictBackup)
        .filter(
            models.ConflictBackup.entity_type == entity_type,
            models.ConflictBackup.entity_id == entity_id,
        )
        .order_by(models.ConflictBackup.conflict_detected_at.desc())
        .first()
    )


def count_unresolved(db: Session, lab_id: UUID) -> int:
    return (
        db.query(sa.func.count(models.ConflictBackup.id))
        .filter(
            models.ConflictBackup.lab_id == lab_id,
            models.ConflictBackup.resolved_at.is_(None),
        )
        .scalar()
    )


def mark_resolved(
    db: Session,
    backup_id: UUID,
    *,
    lab_id: UUID,
    resolved_by: str,
    notes: str | None = None,
) -> models.ConflictBackup:
    """Record a human follow-up on a backup left open by the resolver."""

    backup = get_backup(db, backup_id, lab_id=lab_id)
    if backup.resolved_at is not None:
        raise ValidationFailure(f"Conflict backup {backup_id} is already resolved")
    backup.resolved_at = models.utcnow()
    backup.resolved_by = resolved_by
    backup.resolution_notes = notes
    return backup
