"""Per (device, user) bookkeeping of sync calls."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from .. import models, schemas
from ..scope import RequestScope
from . import conflict_archive

# purpose: remember each device's last watermark, outcome and counters
# status: active


def get_or_create(db: Session, scope: RequestScope) -> models.SyncLedgerEntry:
    entry = (
        db.query(models.SyncLedgerEntry)
        .filter_by(device_id=scope.device_id, user_id=scope.actor_id)
        .first()
    )
    if entry is None:
        entry = models.SyncLedgerEntry(
            device_id=scope.device_id,
            user_id=scope.actor_id,
            lab_id=scope.lab_id,
            status="pending",
        )
        db.add(entry)
        db.flush()
    return entry


def mark_started(db: Session, scope: RequestScope) -> models.SyncLedgerEntry:
    entry = get_or_create(db, scope)
    entry.status = "in_progress"
    entry.total_syncs = (entry.total_syncs or 0) + 1
    return entry


def mark_finished(
    db: Session,
    scope: RequestScope,
    *,
    watermark: datetime | None,
    applied: int,
    rejected: int,
    conflicts_detected: int,
    conflicts_resolved: int,
) -> models.SyncLedgerEntry:
    entry = get_or_create(db, scope)
    entry.status = "synced"
    if watermark is not None:
        entry.last_watermark = watermark
    entry.records_applied = applied
    entry.records_rejected = rejected
    entry.conflicts_detected = conflicts_detected
    entry.conflicts_resolved = conflicts_resolved
    entry.last_error = None
    entry.last_sync_at = models.utcnow()
    return entry


def mark_failed(db: Session, scope: RequestScope, error: str) -> models.SyncLedgerEntry:
    entry = get_or_create(db, scope)
    entry.status = "failed"
    entry.failed_syncs = (entry.failed_syncs or 0) + 1
    entry.last_error = error[:1000]
    entry.last_sync_at = models.utcnow()
    return entry


def sync_status(db: Session, scope: RequestScope) -> schemas.SyncStatusOut:
    entry = (
        db.query(models.SyncLedgerEntry)
        .filter_by(device_id=scope.device_id, user_id=scope.actor_id)
        .first()
    )
    pending = conflict_archive.count_unresolved(db, scope.lab_id)
    if entry is None:
        return schemas.SyncStatusOut(
            device_id=scope.device_id,
            user_id=scope.actor_id,
            pending_conflicts=pending,
        )
    status = schemas.SyncStatusOut.model_validate(entry)
    status.pending_conflicts = pending
    return status
