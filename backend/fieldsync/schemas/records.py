"""Pydantic schemas validating client-writable entity state."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

SampleType = Literal[
    "drinking_water",
    "wastewater",
    "surface_water",
    "groundwater",
    "industrial_water",
]
SampleStatus = Literal["pending", "completed", "archived"]
TestMethod = Literal[
    "titration",
    "spectrophotometry",
    "chromatography",
    "microscopy",
    "electrode",
    "culture",
    "other",
]
ComplianceStatus = Literal["pass", "fail", "warning"]
TestResultStatus = Literal["draft", "submitted", "voided"]


class SampleState(BaseModel):
    model_config = ConfigDict(extra="forbid")

    sample_type: SampleType
    location_latitude: float = Field(ge=-90, le=90)
    location_longitude: float = Field(ge=-180, le=180)
    location_description: str | None = Field(default=None, max_length=200)
    location_hierarchy: str | None = Field(default=None, max_length=500)
    collection_date: datetime
    collector_name: str = Field(min_length=1, max_length=100)
    notes: str | None = Field(default=None, max_length=1000)
    status: SampleStatus = "pending"


class ParameterState(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=100)
    unit: str = Field(min_length=1, max_length=20)
    who_threshold: float | None = None
    national_threshold: float | None = None
    min_value: float | None = None
    max_value: float | None = None
    description: str | None = Field(default=None, max_length=500)
    is_active: bool = True

    @model_validator(mode="after")
    def _check_range(self) -> "ParameterState":
        if self.min_value is not None and self.max_value is not None and self.min_value > self.max_value:
            raise ValueError("min_value must not exceed max_value")
        return self


class TestResultState(BaseModel):
    model_config = ConfigDict(extra="forbid")

    sample_id: UUID
    parameter_id: UUID
    value: float
    unit: str = Field(min_length=1, max_length=20)
    test_date: datetime
    technician_name: str = Field(min_length=1, max_length=100)
    test_method: TestMethod = "other"
    compliance_status: ComplianceStatus | None = None
    status: TestResultStatus = "draft"
    voided_test_result_id: UUID | None = None
    replaced_by_test_result_id: UUID | None = None
    void_reason: str | None = Field(default=None, max_length=500)


STATE_SCHEMAS: dict[str, type[BaseModel]] = {
    "sample": SampleState,
    "test_result": TestResultState,
    "parameter": ParameterState,
}


class RecordWrite(BaseModel):
    """Direct (interactive) create or update of one entity."""

    payload: dict[str, Any]
    presented_token: int | None = None


class RecordOut(BaseModel):
    entity_type: str
    entity_id: UUID
    version: int
    is_deleted: bool = False
    payload: dict[str, Any] = Field(default_factory=dict)


class TestResultVoid(BaseModel):
    """Void a submitted result and record its replacement."""

    presented_token: int
    reason: str = Field(min_length=1, max_length=500)
    replacement: dict[str, Any]
