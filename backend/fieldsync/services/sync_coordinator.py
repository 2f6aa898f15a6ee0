"""Server-side orchestration of push (apply) and pull (change export)."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Session

from .. import audit, models, schemas
from ..exceptions import ImmutableRecordViolation, RecordNotFound, ValidationFailure
from ..scope import RequestScope
from ..snapshots import ENTITY_MODELS, domain_state, entity_snapshot, model_for
from . import sync_ledger
from .concurrency import Applied, apply_versioned, insert_versioned
from .conflicts import ensure_mutable, resolve_conflict
from .records import load_visible, prepare_write

# purpose: apply a device batch record by record through the guard, then export lab changes
# inputs: session, device-bound request scope, last watermark, ordered sync records
# outputs: SyncResponse with applied, conflicts, rejected, server changes and new watermark
# status: active

logger = logging.getLogger(__name__)

# stamps are taken before commit, so pulls re-read this much history behind the watermark
SYNC_WATERMARK_OVERLAP = timedelta(seconds=int(os.getenv("SYNC_WATERMARK_OVERLAP_SECONDS", "30")))

RecordOutcome = schemas.AppliedRecord | schemas.ConflictRecord | schemas.RejectedRecord


@dataclass
class _BatchCounters:
    applied: int = 0
    rejected: int = 0
    conflicts_detected: int = 0
    conflicts_resolved: int = 0


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _rejected(record: schemas.SyncRecord, reason: str, detail: str, **extra) -> schemas.RejectedRecord:
    return schemas.RejectedRecord(
        entity_type=record.entity_type,
        entity_id=record.entity_id,
        reason=reason,
        detail=detail,
        **extra,
    )


def apply_record(db: Session, scope: RequestScope, record: schemas.SyncRecord) -> RecordOutcome:
    """Apply one pushed record; the caller owns the transaction boundary."""

    entity_type = record.entity_type
    model = model_for(entity_type)
    entity = load_visible(db, scope, entity_type, record.entity_id)

    if entity is None:
        proposed = prepare_write(db, scope, entity_type, None, record.payload)
        created = insert_versioned(db, model, record.entity_id, proposed.lab_id, proposed.state, scope)
        audit.record_mutation(db, scope, entity_type, created.id, "create", None, entity_snapshot(created))
        return schemas.AppliedRecord(
            entity_type=entity_type,
            entity_id=created.id,
            version=created.version,
            action="create",
        )

    proposed = prepare_write(db, scope, entity_type, entity, record.payload)
    if proposed.is_noop:
        # already holds the proposed state, e.g. a replay whose acknowledgement was lost
        return schemas.AppliedRecord(
            entity_type=entity_type,
            entity_id=entity.id,
            version=entity.version,
            action="noop",
        )

    if record.presented_token == entity.version:
        ensure_mutable(entity, proposed.changes)
    before = entity_snapshot(entity)
    result = apply_versioned(db, model, entity.id, record.presented_token, proposed.changes, scope)
    if isinstance(result, Applied):
        audit.record_mutation(
            db, scope, entity_type, entity.id, proposed.action, before, entity_snapshot(result.entity)
        )
        return schemas.AppliedRecord(
            entity_type=entity_type,
            entity_id=entity.id,
            version=result.new_version,
            action=proposed.action,
        )

    resolution = resolve_conflict(db, scope, result, record.payload)
    audit.record_mutation(
        db,
        scope,
        entity_type,
        entity.id,
        "conflict_resolution",
        old_value=record.payload,
        new_value=domain_state(result.current),
        conflict_backup_id=resolution.backup.id,
        changed=sorted(proposed.changes),
    )
    if resolution.violation is not None:
        return _rejected(
            record,
            "immutable_record",
            str(resolution.violation),
            server_payload=resolution.server_snapshot,
            server_token=resolution.server_version,
            conflict_backup_id=resolution.backup.id,
        )
    return schemas.ConflictRecord(
        entity_type=entity_type,
        entity_id=entity.id,
        server_payload=resolution.server_snapshot,
        server_token=resolution.server_version,
        conflict_backup_id=resolution.backup.id,
    )


def _apply_in_own_transaction(
    db: Session,
    scope: RequestScope,
    record: schemas.SyncRecord,
) -> RecordOutcome:
    try:
        outcome = apply_record(db, scope, record)
        db.commit()
        return outcome
    except ImmutableRecordViolation as exc:
        db.rollback()
        return _rejected(
            record,
            "immutable_record",
            str(exc),
            server_payload=exc.current_state or None,
            server_token=(exc.current_state or {}).get("version"),
        )
    except ValidationFailure as exc:
        db.rollback()
        return _rejected(record, "validation_failure", str(exc))
    except RecordNotFound as exc:
        db.rollback()
        return _rejected(record, "not_found", str(exc))
    except Exception as exc:
        db.rollback()
        logger.exception("Sync record %s %s failed", record.entity_type, record.entity_id)
        return _rejected(record, "error", f"{type(exc).__name__}: {exc}")


def collect_changes(
    db: Session,
    scope: RequestScope,
    since: datetime | None,
    exclude_ids: Iterable[UUID] = (),
) -> tuple[list[schemas.ServerChange], datetime | None]:
    """Return lab-visible changes after ``since`` and the newest stamp considered.

    Incremental pulls start ``SYNC_WATERMARK_OVERLAP`` before ``since`` so a
    write stamped earlier but committed after the previous pull is still
    delivered; devices drop redelivered rows by version. Rows last written by
    the calling device are left out of incremental pulls but still move the
    watermark. A full pull (no ``since``) returns everything.
    """

    excluded = set(exclude_ids)
    changes: list[schemas.ServerChange] = []
    newest: datetime | None = None
    for entity_type, model in ENTITY_MODELS.items():
        query = db.query(model)
        if model is models.Parameter:
            query = query.filter(sa.or_(model.lab_id == scope.lab_id, model.lab_id.is_(None)))
        else:
            query = query.filter(model.lab_id == scope.lab_id)
        if since is not None:
            query = query.filter(model.last_synced_at > since - SYNC_WATERMARK_OVERLAP)
        for row in query.order_by(model.last_synced_at.asc()).all():
            stamp = _as_utc(row.last_synced_at)
            if newest is None or stamp > newest:
                newest = stamp
            if row.id in excluded:
                continue
            if since is not None and scope.device_id and row.modified_by_device_id == scope.device_id:
                continue
            changes.append(
                schemas.ServerChange(
                    entity_type=entity_type,
                    entity_id=row.id,
                    version=row.version,
                    is_deleted=row.is_deleted,
                    payload=domain_state(row),
                )
            )
    return changes, newest


def sync(
    db: Session,
    scope: RequestScope,
    last_watermark: datetime | None,
    records: list[schemas.SyncRecord],
    include_changes: bool = True,
) -> schemas.SyncResponse:
    """Push ``records`` in order, then pull what the device has not seen."""

    if not scope.device_id:
        raise ValueError("sync requires a device-bound scope")
    sync_ledger.mark_started(db, scope)
    db.commit()

    counters = _BatchCounters()
    response = schemas.SyncResponse()
    for record in records:
        outcome = _apply_in_own_transaction(db, scope, record)
        if isinstance(outcome, schemas.AppliedRecord):
            counters.applied += 1
            response.applied.append(outcome)
        elif isinstance(outcome, schemas.ConflictRecord):
            counters.conflicts_detected += 1
            counters.conflicts_resolved += 1
            response.conflicts.append(outcome)
        else:
            if outcome.conflict_backup_id is not None:
                counters.conflicts_detected += 1
            counters.rejected += 1
            response.rejected.append(outcome)

    try:
        new_watermark = last_watermark
        if include_changes:
            pushed_ids = [record.entity_id for record in records]
            changes, newest = collect_changes(db, scope, last_watermark, exclude_ids=pushed_ids)
            response.server_changes = changes
            new_watermark = newest or last_watermark or models.utcnow()
            if newest is not None and last_watermark is not None:
                # overlap rows are older than the presented watermark; never move it back
                new_watermark = max(newest, _as_utc(last_watermark))
        response.new_watermark = new_watermark
        sync_ledger.mark_finished(
            db,
            scope,
            watermark=new_watermark if include_changes else None,
            applied=counters.applied,
            rejected=counters.rejected,
            conflicts_detected=counters.conflicts_detected,
            conflicts_resolved=counters.conflicts_resolved,
        )
        db.commit()
    except Exception as exc:
        db.rollback()
        sync_ledger.mark_failed(db, scope, f"{type(exc).__name__}: {exc}")
        db.commit()
        raise

    logger.info(
        "Sync device=%s actor=%s applied=%d conflicts=%d rejected=%d changes=%d",
        scope.device_id,
        scope.actor_id,
        counters.applied,
        counters.conflicts_detected,
        counters.rejected,
        len(response.server_changes),
    )
    return response
