"""Optimistic concurrency guard over the per-entity version token."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Union
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Session

from .. import models
from ..exceptions import RecordNotFound
from ..scope import RequestScope

# purpose: the only concurrency primitive; a single compare-and-set per write
# inputs: session, model class, entity id, presented token, proposed field values
# outputs: Applied with the regenerated token or VersionConflict with current state
# status: active


@dataclass(frozen=True)
class Applied:
    entity: models.SyncableMixin
    new_version: int


@dataclass(frozen=True)
class VersionConflict:
    current: models.SyncableMixin
    current_version: int
    presented_version: int | None


GuardResult = Union[Applied, VersionConflict]


def _modification_stamp(scope: RequestScope, now: datetime) -> dict[str, Any]:
    return {
        "last_modified_at": now,
        "last_modified_by": scope.actor_id,
        "modified_by_device_id": scope.device_id,
        "last_synced_at": now,
    }


def apply_versioned(
    db: Session,
    model: type[models.SyncableMixin],
    entity_id: UUID,
    presented_version: int | None,
    changes: dict[str, Any],
    scope: RequestScope,
) -> GuardResult:
    """Write ``changes`` only if the persisted token still equals ``presented_version``."""

    now = models.utcnow()
    values = dict(changes)
    values.update(_modification_stamp(scope, now))
    values["version"] = model.version + 1
    rowcount = 0
    if presented_version is not None:
        stmt = (
            sa.update(model)
            .where(model.id == entity_id, model.version == presented_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        rowcount = db.execute(stmt).rowcount
    current = db.get(model, entity_id, populate_existing=True)
    if current is None:
        raise RecordNotFound(f"{model.__tablename__} {entity_id} not found")
    if rowcount != 1:
        return VersionConflict(current=current, current_version=current.version, presented_version=presented_version)
    return Applied(entity=current, new_version=current.version)


def insert_versioned(
    db: Session,
    model: type[models.SyncableMixin],
    entity_id: UUID,
    lab_id: UUID | None,
    state: dict[str, Any],
    scope: RequestScope,
) -> models.SyncableMixin:
    """Create an entity unknown to the server at the first token."""

    now = models.utcnow()
    entity = model(
        id=entity_id,
        lab_id=lab_id,
        version=1,
        created_at=now,
        created_by=scope.actor_id,
        **_modification_stamp(scope, now),
        **state,
    )
    db.add(entity)
    db.flush()
    return entity
