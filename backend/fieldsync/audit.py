import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import UUID, uuid4
from sqlalchemy.orm import Session
from sqlalchemy import event, func
from . import models
from .scope import RequestScope
from .snapshots import changed_fields, dumps
from .storage import load_binary_payload, save_binary_payload

# purpose: record every accepted mutation as an immutable audit entry
# inputs: session of the triggering mutation, scope, before/after snapshots
# outputs: AuditEntry rows written in the caller's transaction
# status: active

logger = logging.getLogger(__name__)

AUDIT_MAX_PAYLOAD_CHARS = int(os.getenv("AUDIT_MAX_PAYLOAD_CHARS", "4000"))
OVERFLOW_NAMESPACE = "audit-overflow"

MutationListener = Callable[[models.AuditEntry], None]
_listeners: list[MutationListener] = []
_PENDING_KEY = "fieldsync.audit.pending"


def register_mutation_listener(listener: MutationListener) -> MutationListener:
    """Subscribe downstream tooling to recorded mutations.

    Listeners are called once the mutation's transaction has committed, with
    a detached copy of the entry. A failing listener is logged and never
    affects the mutation.
    """

    _listeners.append(listener)
    return listener


def unregister_mutation_listener(listener: MutationListener) -> None:
    if listener in _listeners:
        _listeners.remove(listener)


def _notify_listeners(entry: models.AuditEntry) -> None:
    for listener in list(_listeners):
        try:
            listener(entry)
        except Exception:
            logger.exception("Audit listener %r failed for entry %s", listener, entry.id)


@event.listens_for(Session, "after_commit")
def _dispatch_committed_entries(session: Session) -> None:
    pending = session.info.pop(_PENDING_KEY, None)
    for values in pending or ():
        _notify_listeners(models.AuditEntry(**values))


@event.listens_for(Session, "after_soft_rollback")
def _discard_rolled_back_entries(session: Session, previous_transaction) -> None:
    if not previous_transaction.nested:
        session.info.pop(_PENDING_KEY, None)


def _store_overflow(entry_id: UUID, old_text: str | None, new_text: str | None) -> str:
    document = {
        "entry_id": str(entry_id),
        "old_value": json.loads(old_text) if old_text else None,
        "new_value": json.loads(new_text) if new_text else None,
    }
    path, _ = save_binary_payload(
        dumps(document).encode("utf-8"),
        f"{entry_id}.json",
        content_type="application/json",
        namespace=OVERFLOW_NAMESPACE,
    )
    return path


def record_mutation(
    db: Session,
    scope: RequestScope,
    entity_type: str,
    entity_id: str | UUID,
    action: str,
    old_value: dict[str, Any] | None = None,
    new_value: dict[str, Any] | None = None,
    conflict_backup_id: UUID | None = None,
    changed: list[str] | None = None,
    max_chars: int | None = None,
) -> models.AuditEntry:
    """Add an audit entry to the session without committing."""

    limit = AUDIT_MAX_PAYLOAD_CHARS if max_chars is None else max_chars
    entry_id = uuid4()
    old_text = dumps(old_value) if old_value is not None else None
    new_text = dumps(new_value) if new_value is not None else None
    truncated = False
    overflow_pointer = None
    if any(text is not None and len(text) > limit for text in (old_text, new_text)):
        overflow_pointer = _store_overflow(entry_id, old_text, new_text)
        truncated = True
        old_text = old_text[:limit] if old_text else old_text
        new_text = new_text[:limit] if new_text else new_text
        logger.info("Audit payload for %s %s truncated, overflow at %s", entity_type, entity_id, overflow_pointer)

    values = dict(
        id=entry_id,
        actor_id=scope.actor_id,
        lab_id=scope.lab_id,
        entity_type=entity_type,
        entity_id=UUID(str(entity_id)),
        action=action,
        old_value=old_text,
        new_value=new_text,
        changed_fields=changed if changed is not None else changed_fields(old_value, new_value),
        is_truncated=truncated,
        overflow_pointer=overflow_pointer,
        conflict_backup_id=conflict_backup_id,
        device_id=scope.device_id,
        timestamp=datetime.now(timezone.utc),
        ip_address=scope.ip_address,
    )
    entry = models.AuditEntry(**values)
    db.add(entry)
    if _listeners:
        db.info.setdefault(_PENDING_KEY, []).append(values)
    return entry


def load_overflow(entry: models.AuditColumnsMixin) -> dict[str, Any]:
    """Return the full old/new snapshots of a truncated entry."""

    if not entry.overflow_pointer:
        return {
            "old_value": json.loads(entry.old_value) if entry.old_value else None,
            "new_value": json.loads(entry.new_value) if entry.new_value else None,
        }
    return json.loads(load_binary_payload(entry.overflow_pointer).decode("utf-8"))


def find_entry(db: Session, entry_id: UUID) -> models.AuditColumnsMixin | None:
    entry = db.get(models.AuditEntry, entry_id)
    if entry is None:
        entry = db.get(models.AuditArchiveEntry, entry_id)
    return entry


def entries_for_entity(
    db: Session,
    entity_type: str,
    entity_id: UUID,
    lab_id: UUID | None = None,
    include_archive: bool = True,
) -> list[models.AuditColumnsMixin]:
    """Return hot (and archived) entries for one entity, oldest first."""

    tables = [models.AuditEntry]
    if include_archive:
        tables.append(models.AuditArchiveEntry)
    rows: list[models.AuditColumnsMixin] = []
    for table in tables:
        query = db.query(table).filter(table.entity_type == entity_type, table.entity_id == entity_id)
        if lab_id:
            query = query.filter(table.lab_id == lab_id)
        rows.extend(query.all())
    return sorted(rows, key=lambda row: (row.timestamp, str(row.id)))


def entries_for_actor(
    db: Session,
    actor_id: str,
    lab_id: UUID | None = None,
    limit: int = 100,
) -> list[models.AuditEntry]:
    query = db.query(models.AuditEntry).filter(models.AuditEntry.actor_id == actor_id)
    if lab_id:
        query = query.filter(models.AuditEntry.lab_id == lab_id)
    return query.order_by(models.AuditEntry.timestamp.desc()).limit(limit).all()


def generate_report(
    db: Session,
    start: datetime,
    end: datetime,
    lab_id: UUID | None = None,
    actor_id: str | None = None,
):
    counts: dict[str, int] = {}
    for table in (models.AuditEntry, models.AuditArchiveEntry):
        query = db.query(table).filter(table.timestamp >= start, table.timestamp <= end)
        if lab_id:
            query = query.filter(table.lab_id == lab_id)
        if actor_id:
            query = query.filter(table.actor_id == actor_id)
        rows = query.with_entities(table.action, func.count(table.id)).group_by(table.action).all()
        for action, count in rows:
            counts[action] = counts.get(action, 0) + count
    return [{"action": action, "count": counts[action]} for action in sorted(counts)]
