"""Pydantic schemas for the bidirectional sync endpoint."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

EntityType = Literal["sample", "test_result", "parameter"]


class SyncRecord(BaseModel):
    entity_type: EntityType
    entity_id: UUID
    # full or partial domain state; "is_deleted" marks a soft delete or restore
    payload: dict[str, Any] = Field(default_factory=dict)
    presented_token: int | None = None


class SyncRequest(BaseModel):
    last_watermark: datetime | None = None
    records: list[SyncRecord] = Field(default_factory=list, max_length=500)
    include_changes: bool = True


class AppliedRecord(BaseModel):
    entity_type: EntityType
    entity_id: UUID
    version: int
    action: str


class ConflictRecord(BaseModel):
    entity_type: EntityType
    entity_id: UUID
    server_payload: dict[str, Any]
    server_token: int
    conflict_backup_id: UUID


class RejectedRecord(BaseModel):
    entity_type: EntityType
    entity_id: UUID
    reason: Literal["immutable_record", "validation_failure", "not_found", "error"]
    detail: str
    server_payload: dict[str, Any] | None = None
    server_token: int | None = None
    conflict_backup_id: UUID | None = None


class ServerChange(BaseModel):
    entity_type: EntityType
    entity_id: UUID
    version: int
    is_deleted: bool = False
    payload: dict[str, Any]


class SyncResponse(BaseModel):
    new_watermark: datetime | None = None
    applied: list[AppliedRecord] = Field(default_factory=list)
    conflicts: list[ConflictRecord] = Field(default_factory=list)
    rejected: list[RejectedRecord] = Field(default_factory=list)
    server_changes: list[ServerChange] = Field(default_factory=list)


class SyncStatusOut(BaseModel):
    device_id: str
    user_id: str
    status: str = "pending"
    last_watermark: datetime | None = None
    last_sync_at: datetime | None = None
    records_applied: int = 0
    records_rejected: int = 0
    conflicts_detected: int = 0
    conflicts_resolved: int = 0
    total_syncs: int = 0
    failed_syncs: int = 0
    last_error: str | None = None
    pending_conflicts: int = 0

    model_config = ConfigDict(from_attributes=True)
