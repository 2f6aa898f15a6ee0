"""Error taxonomy shared by the guard, resolver, coordinator and archival job."""

from __future__ import annotations

from typing import Any
from uuid import UUID


class SyncError(RuntimeError):
    """Base error for reconciliation and audit orchestration."""


class RecordNotFound(SyncError):
    """Raised when a referenced entity does not exist in the caller's lab."""


class ValidationFailure(SyncError):
    """Raised when a payload is rejected before it reaches the guard."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class VersionConflictError(SyncError):
    """Raised on direct edits when the presented token is stale."""

    def __init__(
        self,
        entity_type: str,
        entity_id: UUID,
        presented_version: int | None,
        current_version: int,
        current_state: dict[str, Any],
    ) -> None:
        super().__init__(
            f"{entity_type} {entity_id} is at version {current_version}, "
            f"presented version {presented_version}"
        )
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.presented_version = presented_version
        self.current_version = current_version
        self.current_state = current_state


class ImmutableRecordViolation(SyncError):
    """Raised when a write targets a submitted or voided test result."""

    def __init__(
        self,
        entity_id: UUID,
        status: str,
        current_state: dict[str, Any] | None = None,
        conflict_backup_id: UUID | None = None,
    ) -> None:
        super().__init__(
            f"Test result {entity_id} is {status} and cannot be edited; "
            "record a correction instead"
        )
        self.entity_id = entity_id
        self.status = status
        self.current_state = current_state or {}
        self.conflict_backup_id = conflict_backup_id


class NetworkInterruption(SyncError):
    """Raised on the device when the coordinator cannot be reached."""


class ArchivalBatchFailure(SyncError):
    """Raised when an archival batch rolls back."""

    def __init__(self, message: str, batch_index: int, archived_so_far: int) -> None:
        super().__init__(message)
        self.batch_index = batch_index
        self.archived_so_far = archived_so_far
