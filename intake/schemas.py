from datetime import date, datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class StatusHistoryOut(BaseModel):
    model_config = {"from_attributes": True}

    status: str
    changed_at: datetime
    note: str


class PatientSummaryOut(BaseModel):
    model_config = {"from_attributes": True}

    id: UUID
    canonical_id: str
    external_id: Optional[str]
    display_name: str
    sex: str
    date_of_birth: Optional[date]
    is_anonymous: bool


class LabOut(BaseModel):
    model_config = {"from_attributes": True}

    id: UUID
    name: str
    identifier: str
    is_active: bool


class StudyOut(BaseModel):
    model_config = {"from_attributes": True}

    id: UUID
    study_instance_uid: str
    orthanc_study_id: str
    accession_number: str
    study_date: Optional[date]
    study_time: str
    modalities: list[str]
    exam_description: str
    institution_name: str
    workflow_status: str
    series_count: int
    instance_count: int
    series_images: str
    patient_info: dict[str, Any]
    physicians: dict[str, Any]
    technologist: dict[str, Any]
    equipment: dict[str, Any]
    custom_lab_info: dict[str, Any]
    storage_info: dict[str, Any]
    patient: PatientSummaryOut
    lab: LabOut
    status_history: list[StatusHistoryOut] = []
    created_at: datetime
    updated_at: datetime


# ── Stable-study intake (camelCase on the wire, as the callers expect) ────────

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StableStudyAccepted(_CamelModel):
    message: str = "Stable study queued for processing"
    job_id: int
    request_id: str
    orthanc_study_id: str
    status: str = "queued"
    check_status_url: str


class JobStatusOut(_CamelModel):
    status: str
    request_id: str
    result: Optional[dict[str, Any]] = None
    job_id: Optional[int] = None
    progress: Optional[int] = None
    created_at: Optional[datetime] = None
    error: Optional[str] = None
