"""Pydantic schemas consolidating backend API contracts."""

# purpose: aggregate request and response schemas for FastAPI surfaces and services
# status: active

from .audit import (
    AuditEntryOut,
    AuditOverflowOut,
    AuditReportItem,
    ConflictBackupOut,
    ConflictResolve,
)
from .records import (
    STATE_SCHEMAS,
    ParameterState,
    RecordOut,
    RecordWrite,
    SampleState,
    TestResultState,
    TestResultVoid,
)
from .sync import (
    AppliedRecord,
    ConflictRecord,
    RejectedRecord,
    ServerChange,
    SyncRecord,
    SyncRequest,
    SyncResponse,
    SyncStatusOut,
)
