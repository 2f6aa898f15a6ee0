"""Last-Writer-Wins conflict resolution with mandatory backup."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from .. import models
from ..exceptions import ImmutableRecordViolation
from ..scope import RequestScope, SYSTEM_ACTOR
from ..snapshots import entity_snapshot, entity_type_of
from . import conflict_archive
from .concurrency import VersionConflict

# purpose: turn guard rejections into a retained server state plus a preserved client payload
# inputs: VersionConflict from the guard, the rejected client payload, request scope
# outputs: Resolution carrying the ConflictBackup and, for locked results, the violation
# status: active

LAST_WRITE_WINS = "last_write_wins"
SERVER_WINS = "server_wins"

IMMUTABLE_RESULT_STATUSES = {"submitted", "voided"}
# the only edit a submitted result accepts is being voided in favour of a correction
_VOID_TRANSITION_FIELDS = {"status", "replaced_by_test_result_id", "void_reason"}


@dataclass(frozen=True)
class Resolution:
    backup: models.ConflictBackup
    server_snapshot: dict[str, Any]
    server_version: int
    violation: ImmutableRecordViolation | None = None


def is_immutable(entity: models.SyncableMixin) -> bool:
    return isinstance(entity, models.TestResult) and entity.status in IMMUTABLE_RESULT_STATUSES


def ensure_mutable(entity: models.SyncableMixin, changes: dict[str, Any]) -> None:
    """Raise ImmutableRecordViolation unless ``changes`` is allowed on ``entity``.

    ``changes`` holds only the fields whose values differ from the stored row.
    A submitted result may move to ``voided`` (with a forward reference and a
    reason); a voided result accepts nothing.
    """

    if not changes or not is_immutable(entity):
        return
    is_void_transition = (
        entity.status == "submitted"
        and changes.get("status") == "voided"
        and set(changes) <= _VOID_TRANSITION_FIELDS
    )
    if not is_void_transition:
        raise ImmutableRecordViolation(entity.id, entity.status, current_state=entity_snapshot(entity))


def resolve_conflict(
    db: Session,
    scope: RequestScope,
    conflict: VersionConflict,
    client_payload: dict[str, Any],
    strategy: str = LAST_WRITE_WINS,
) -> Resolution:
    """Keep the persisted server state and back up the rejected client payload."""

    if strategy not in (LAST_WRITE_WINS, SERVER_WINS):
        raise ValueError(f"Unsupported automatic resolution strategy {strategy!r}")
    current = conflict.current
    server_snapshot = entity_snapshot(current)
    locked = is_immutable(current)
    backup = conflict_archive.store_backup(
        db,
        entity_type=entity_type_of(current),
        entity_id=current.id,
        client_payload=client_payload,
        server_snapshot=server_snapshot,
        client_token=conflict.presented_version,
        server_token=conflict.current_version,
        strategy=strategy,
        device_id=scope.device_id or "direct",
        lab_id=current.lab_id or scope.lab_id,
        created_by=scope.actor_id,
        # locked results stay open until someone records the correction
        resolved_by=None if locked else SYSTEM_ACTOR,
        notes=f"Test result is {current.status}; correction record required" if locked else None,
    )
    violation = None
    if locked:
        violation = ImmutableRecordViolation(
            current.id,
            current.status,
            current_state=server_snapshot,
            conflict_backup_id=backup.id,
        )
    return Resolution(
        backup=backup,
        server_snapshot=server_snapshot,
        server_version=conflict.current_version,
        violation=violation,
    )
