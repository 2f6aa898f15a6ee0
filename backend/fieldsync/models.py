import uuid
import sqlalchemy as sa
from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    JSON,
    Integer,
    Text,
    Float,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declared_attr, relationship
from datetime import datetime, timezone

from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Lab(Base):
    __tablename__ = "labs"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class SyncableMixin:
    """Metadata trailer carried by every entity that takes part in sync."""

    # purpose: uniform version token, soft delete and modification stamps
    # status: active
    version = Column(Integer, nullable=False, default=1)
    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime(timezone=True))
    deleted_by = Column(String)
    last_modified_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_modified_by = Column(String, nullable=False)
    modified_by_device_id = Column(String)
    last_synced_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    created_by = Column(String)

    # domain fields a client may write; metadata stays server-owned
    sync_fields: tuple[str, ...] = ()


class Sample(SyncableMixin, Base):
    __tablename__ = "samples"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lab_id = Column(UUID(as_uuid=True), ForeignKey("labs.id"), nullable=False, index=True)
    sample_type = Column(String, nullable=False)
    location_latitude = Column(Float, nullable=False)
    location_longitude = Column(Float, nullable=False)
    location_description = Column(String)
    location_hierarchy = Column(String)
    collection_date = Column(DateTime(timezone=True), nullable=False)
    collector_name = Column(String, nullable=False)
    notes = Column(Text)
    status = Column(String, nullable=False, default="pending")

    sync_fields = (
        "sample_type",
        "location_latitude",
        "location_longitude",
        "location_description",
        "location_hierarchy",
        "collection_date",
        "collector_name",
        "notes",
        "status",
    )


class Parameter(SyncableMixin, Base):
    __tablename__ = "parameters"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # null lab means the central catalog shared by every lab
    lab_id = Column(UUID(as_uuid=True), ForeignKey("labs.id"), nullable=True, index=True)
    name = Column(String, nullable=False)
    unit = Column(String, nullable=False)
    who_threshold = Column(Float)
    national_threshold = Column(Float)
    min_value = Column(Float)
    max_value = Column(Float)
    description = Column(String)
    is_active = Column(Boolean, nullable=False, default=True)

    sync_fields = (
        "name",
        "unit",
        "who_threshold",
        "national_threshold",
        "min_value",
        "max_value",
        "description",
        "is_active",
    )


class TestResult(SyncableMixin, Base):
    __tablename__ = "test_results"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lab_id = Column(UUID(as_uuid=True), ForeignKey("labs.id"), nullable=False, index=True)
    sample_id = Column(UUID(as_uuid=True), ForeignKey("samples.id"), nullable=False, index=True)
    parameter_id = Column(UUID(as_uuid=True), ForeignKey("parameters.id"), nullable=False)
    value = Column(Float, nullable=False)
    unit = Column(String, nullable=False)
    test_date = Column(DateTime(timezone=True), nullable=False)
    technician_name = Column(String, nullable=False)
    test_method = Column(String, nullable=False, default="other")
    compliance_status = Column(String, nullable=False, default="warning")
    status = Column(String, nullable=False, default="draft")
    # purpose: correction lineage; corrections are new rows, never in-place edits
    voided_test_result_id = Column(UUID(as_uuid=True), ForeignKey("test_results.id"))
    replaced_by_test_result_id = Column(UUID(as_uuid=True), ForeignKey("test_results.id"))
    void_reason = Column(String)

    sample = relationship("Sample")
    parameter = relationship("Parameter")

    sync_fields = (
        "sample_id",
        "parameter_id",
        "value",
        "unit",
        "test_date",
        "technician_name",
        "test_method",
        "compliance_status",
        "status",
        "voided_test_result_id",
        "replaced_by_test_result_id",
        "void_reason",
    )


class SyncLedgerEntry(Base):
    __tablename__ = "sync_ledger"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    device_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    lab_id = Column(UUID(as_uuid=True), ForeignKey("labs.id"))
    last_watermark = Column(DateTime(timezone=True))
    status = Column(String, nullable=False, default="pending")
    records_applied = Column(Integer, nullable=False, default=0)
    records_rejected = Column(Integer, nullable=False, default=0)
    conflicts_detected = Column(Integer, nullable=False, default=0)
    conflicts_resolved = Column(Integer, nullable=False, default=0)
    total_syncs = Column(Integer, nullable=False, default=0)
    failed_syncs = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    last_sync_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (sa.UniqueConstraint("device_id", "user_id"),)


class ConflictBackup(Base):
    __tablename__ = "conflict_backups"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    entity_type = Column(String, nullable=False)
    entity_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    # JSON text; client_version is the rejected payload exactly as received
    client_version = Column(Text, nullable=False)
    server_version = Column(Text, nullable=False)
    client_token = Column(Integer)
    server_token = Column(Integer, nullable=False)
    resolution_strategy = Column(String, nullable=False, default="last_write_wins")
    conflict_detected_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    resolved_at = Column(DateTime(timezone=True))
    resolved_by = Column(String)
    resolution_notes = Column(Text)
    device_id = Column(String, nullable=False)
    lab_id = Column(UUID(as_uuid=True), ForeignKey("labs.id"), nullable=False, index=True)
    created_by = Column(String, nullable=False)


class AuditColumnsMixin:
    """Column set shared by the hot audit table and its archive."""

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    actor_id = Column(String, nullable=False, index=True)
    lab_id = Column(UUID(as_uuid=True))
    entity_type = Column(String, nullable=False)
    entity_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    action = Column(String, nullable=False)
    old_value = Column(Text)
    new_value = Column(Text)
    changed_fields = Column(JSON, default=list)
    is_truncated = Column(Boolean, nullable=False, default=False)
    overflow_pointer = Column(String)
    device_id = Column(String)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    ip_address = Column(String(45))

    @declared_attr
    def conflict_backup_id(cls):
        return Column(UUID(as_uuid=True), ForeignKey("conflict_backups.id"))


class AuditEntry(AuditColumnsMixin, Base):
    __tablename__ = "audit_entries"


class AuditArchiveEntry(AuditColumnsMixin, Base):
    __tablename__ = "audit_archive_entries"
    archived_at = Column(DateTime(timezone=True), default=utcnow)


AUDIT_COLUMNS = [column.name for column in AuditEntry.__table__.columns]


@sa.event.listens_for(AuditEntry, "before_update")
@sa.event.listens_for(AuditArchiveEntry, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise ValueError("Audit entries are immutable once written")
