"""Lossless JSON snapshots of syncable entities."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from . import models

# purpose: one serialization for audit values, conflict backups and pulled changes
# status: active

ENTITY_MODELS: dict[str, type[models.SyncableMixin]] = {
    "sample": models.Sample,
    "test_result": models.TestResult,
    "parameter": models.Parameter,
}

_TRAILER_FIELDS = (
    "id",
    "lab_id",
    "version",
    "is_deleted",
    "deleted_at",
    "deleted_by",
    "last_modified_at",
    "last_modified_by",
    "last_synced_at",
)


def model_for(entity_type: str) -> type[models.SyncableMixin]:
    try:
        return ENTITY_MODELS[entity_type]
    except KeyError:
        raise KeyError(f"Unknown entity type {entity_type!r}") from None


def entity_type_of(entity: models.SyncableMixin) -> str:
    for name, model in ENTITY_MODELS.items():
        if isinstance(entity, model):
            return name
    raise KeyError(f"{type(entity).__name__} is not syncable")


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        # stored values come back naive from SQLite; every timestamp is UTC
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, UUID):
        return str(value)
    raise TypeError(f"Cannot serialize {type(value).__name__}")


def to_jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, UUID)):
        return _json_default(value)
    return value


def dumps(value: Any, sort_keys: bool = True) -> str:
    return json.dumps(value, default=_json_default, sort_keys=sort_keys)


def domain_state(entity: models.SyncableMixin) -> dict[str, Any]:
    """Return the client-writable fields of an entity as JSON-ready values."""

    return {field: to_jsonable(getattr(entity, field)) for field in entity.sync_fields}


def entity_snapshot(entity: models.SyncableMixin) -> dict[str, Any]:
    """Return domain fields plus the metadata trailer."""

    snapshot = domain_state(entity)
    for field in _TRAILER_FIELDS:
        snapshot[field] = to_jsonable(getattr(entity, field))
    return snapshot


def changed_fields(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    before = before or {}
    after = after or {}
    keys = set(before) | set(after)
    return sorted(key for key in keys if before.get(key) != after.get(key))
