"""Validation of proposed entity state and the direct (interactive) mutation path."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from uuid import UUID, uuid4

from pydantic import ValidationError
from sqlalchemy.orm import Session

from .. import audit, models, schemas
from ..exceptions import RecordNotFound, ValidationFailure, VersionConflictError
from ..scope import RequestScope
from ..snapshots import domain_state, entity_snapshot, model_for, to_jsonable
from .concurrency import Applied, apply_versioned, insert_versioned
from .conflicts import ensure_mutable

# purpose: shared write preparation for sync and direct edits, plus direct CRUD with audit
# inputs: session, request scope, entity type, raw payload, presented token
# outputs: validated ProposedWrite values; persisted entities with audit entries
# status: active


@dataclass
class ProposedWrite:
    """Validated outcome of merging a payload into the current entity state."""

    entity_type: str
    lab_id: UUID | None
    state: dict[str, Any]
    changes: dict[str, Any] = field(default_factory=dict)
    action: str = "update"

    @property
    def is_noop(self) -> bool:
        return not self.changes


def compute_compliance(parameter: models.Parameter | None, value: float) -> str:
    """Classify a measured value against the parameter thresholds."""

    if parameter is None or not parameter.is_active:
        return "warning"
    if parameter.min_value is not None and value < parameter.min_value:
        return "fail"
    if parameter.max_value is not None and value > parameter.max_value:
        return "fail"
    if parameter.who_threshold is not None and value > parameter.who_threshold:
        return "fail"
    if parameter.national_threshold is not None and value > parameter.national_threshold:
        return "warning"
    return "pass"


def load_visible(
    db: Session,
    scope: RequestScope,
    entity_type: str,
    entity_id: UUID,
) -> models.SyncableMixin | None:
    """Return the entity when it exists inside the caller's lab scope."""

    entity = db.get(model_for(entity_type), entity_id)
    if entity is None:
        return None
    if entity.lab_id is not None and entity.lab_id != scope.lab_id:
        raise RecordNotFound(f"{entity_type} {entity_id} not found")
    return entity


def _validate_state(entity_type: str, merged: dict[str, Any]) -> dict[str, Any]:
    schema = schemas.STATE_SCHEMAS[entity_type]
    try:
        return schema(**merged).model_dump()
    except ValidationError as exc:
        raise ValidationFailure(
            f"Invalid {entity_type} payload",
            errors=exc.errors(include_url=False, include_context=False),
        ) from exc


def _resolve_test_result_refs(
    db: Session,
    scope: RequestScope,
    state: dict[str, Any],
    current: dict[str, Any] | None = None,
) -> UUID:
    sample = db.get(models.Sample, state["sample_id"])
    if sample is None or sample.lab_id != scope.lab_id or sample.is_deleted:
        raise ValidationFailure(f"Sample {state['sample_id']} not available")
    parameter = db.get(models.Parameter, state["parameter_id"])
    if parameter is None or parameter.lab_id not in (None, scope.lab_id):
        raise ValidationFailure(f"Parameter {state['parameter_id']} not available")
    if parameter.unit.lower() != state["unit"].lower():
        raise ValidationFailure(
            f"Unit {state['unit']!r} does not match parameter {parameter.name!r} unit {parameter.unit!r}"
        )
    # compliance is derived server-side and only moves with the measurement
    remeasured = not current or any(
        to_jsonable(state[name]) != current.get(name) for name in ("parameter_id", "value", "unit")
    )
    if remeasured:
        state["compliance_status"] = compute_compliance(parameter, state["value"])
    else:
        state["compliance_status"] = current.get("compliance_status")
    return sample.lab_id


def prepare_write(
    db: Session,
    scope: RequestScope,
    entity_type: str,
    entity: models.SyncableMixin | None,
    payload: dict[str, Any],
) -> ProposedWrite:
    """Validate ``payload`` against ``entity`` (or as a new entity) and diff it."""

    body = dict(payload)
    deleted = body.pop("is_deleted", None)
    if entity is not None and entity.lab_id is None:
        raise ValidationFailure(f"Central {entity_type} {entity.id} is read-only for labs")
    current = domain_state(entity) if entity is not None else {}
    state = _validate_state(entity_type, {**current, **body})

    lab_id: UUID | None = scope.lab_id
    if entity_type == "test_result":
        lab_id = _resolve_test_result_refs(db, scope, state, current or None)

    if entity is None:
        if deleted:
            raise ValidationFailure(f"Cannot create {entity_type} in deleted state")
        return ProposedWrite(entity_type=entity_type, lab_id=lab_id, state=state, changes=dict(state), action="create")

    changes = {
        name: value
        for name, value in state.items()
        if to_jsonable(value) != current.get(name)
    }
    action = "update"
    now = models.utcnow()
    if deleted is True and not entity.is_deleted:
        changes.update(is_deleted=True, deleted_at=now, deleted_by=scope.actor_id)
        action = "delete"
    elif deleted is False and entity.is_deleted:
        changes.update(is_deleted=False, deleted_at=None, deleted_by=None)
        action = "restore"
    return ProposedWrite(entity_type=entity_type, lab_id=entity.lab_id, state=state, changes=changes, action=action)


def create_record(
    db: Session,
    scope: RequestScope,
    entity_type: str,
    payload: dict[str, Any],
    entity_id: UUID | None = None,
) -> models.SyncableMixin:
    entity_id = entity_id or uuid4()
    if db.get(model_for(entity_type), entity_id) is not None:
        raise ValidationFailure(f"{entity_type} {entity_id} already exists")
    proposed = prepare_write(db, scope, entity_type, None, payload)
    entity = insert_versioned(db, model_for(entity_type), entity_id, proposed.lab_id, proposed.state, scope)
    audit.record_mutation(db, scope, entity_type, entity_id, "create", None, entity_snapshot(entity))
    return entity


def update_record(
    db: Session,
    scope: RequestScope,
    entity_type: str,
    entity_id: UUID,
    presented_token: int | None,
    payload: dict[str, Any],
) -> models.SyncableMixin:
    """Apply an interactive edit; stale tokens surface as VersionConflictError."""

    entity = load_visible(db, scope, entity_type, entity_id)
    if entity is None:
        raise RecordNotFound(f"{entity_type} {entity_id} not found")
    proposed = prepare_write(db, scope, entity_type, entity, payload)
    # locked results refuse the edit whatever token came with it
    ensure_mutable(entity, proposed.changes)
    if presented_token != entity.version:
        raise VersionConflictError(entity_type, entity_id, presented_token, entity.version, entity_snapshot(entity))
    if proposed.is_noop:
        return entity
    before = entity_snapshot(entity)
    result = apply_versioned(db, model_for(entity_type), entity_id, presented_token, proposed.changes, scope)
    if not isinstance(result, Applied):
        raise VersionConflictError(
            entity_type, entity_id, presented_token, result.current_version, entity_snapshot(result.current)
        )
    audit.record_mutation(db, scope, entity_type, entity_id, proposed.action, before, entity_snapshot(result.entity))
    return result.entity


def delete_record(
    db: Session,
    scope: RequestScope,
    entity_type: str,
    entity_id: UUID,
    presented_token: int | None,
) -> models.SyncableMixin:
    """Soft delete; rows are never physically removed."""

    return update_record(db, scope, entity_type, entity_id, presented_token, {"is_deleted": True})


def void_test_result(
    db: Session,
    scope: RequestScope,
    result_id: UUID,
    presented_token: int,
    reason: str,
    replacement_payload: dict[str, Any],
) -> tuple[models.TestResult, models.TestResult]:
    """Void a submitted result and link the correction that replaces it."""

    original = load_visible(db, scope, "test_result", result_id)
    if original is None:
        raise RecordNotFound(f"test_result {result_id} not found")
    if original.status != "submitted":
        raise ValidationFailure(f"Only submitted results can be voided; {result_id} is {original.status}")
    if presented_token != original.version:
        raise VersionConflictError(
            "test_result", result_id, presented_token, original.version, entity_snapshot(original)
        )
    replacement_body = {
        "sample_id": str(original.sample_id),
        "parameter_id": str(original.parameter_id),
        **replacement_payload,
        "voided_test_result_id": str(original.id),
    }
    replacement = create_record(db, scope, "test_result", replacement_body)
    voided = update_record(
        db,
        scope,
        "test_result",
        result_id,
        presented_token,
        {
            "status": "voided",
            "replaced_by_test_result_id": str(replacement.id),
            "void_reason": reason,
        },
    )
    return voided, replacement
