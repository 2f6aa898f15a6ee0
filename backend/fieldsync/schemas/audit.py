"""Pydantic schemas for audit trail and conflict archive APIs."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class AuditEntryOut(BaseModel):
    id: UUID
    actor_id: str
    lab_id: UUID | None = None
    entity_type: str
    entity_id: UUID
    action: str
    old_value: str | None = None
    new_value: str | None = None
    changed_fields: list[str] = Field(default_factory=list)
    is_truncated: bool = False
    overflow_pointer: str | None = None
    conflict_backup_id: UUID | None = None
    device_id: str | None = None
    timestamp: datetime
    ip_address: str | None = None
    archived: bool = False
    model_config = ConfigDict(from_attributes=True)


class AuditReportItem(BaseModel):
    action: str
    count: int


class AuditOverflowOut(BaseModel):
    entry_id: UUID
    old_value: Any = None
    new_value: Any = None


class ConflictBackupOut(BaseModel):
    id: UUID
    entity_type: str
    entity_id: UUID
    client_version: str
    server_version: str
    client_token: int | None = None
    server_token: int
    resolution_strategy: str
    conflict_detected_at: datetime
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution_notes: str | None = None
    device_id: str
    lab_id: UUID
    created_by: str
    model_config = ConfigDict(from_attributes=True)


class ConflictResolve(BaseModel):
    notes: str | None = Field(default=None, max_length=1000)
