import enum
import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import JSON, Boolean, Date, DateTime, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from .database import Base

JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class WorkflowStatus(str, enum.Enum):
    NEW_METADATA_ONLY = "new_metadata_only"
    NEW_STUDY_RECEIVED = "new_study_received"
    PENDING_ASSIGNMENT = "pending_assignment"
    ASSIGNED_TO_DOCTOR = "assigned_to_doctor"
    DOCTOR_OPENED_REPORT = "doctor_opened_report"
    REPORT_IN_PROGRESS = "report_in_progress"
    REPORT_DRAFTED = "report_drafted"
    REPORT_FINALIZED = "report_finalized"
    REPORT_UPLOADED = "report_uploaded"
    REPORT_DOWNLOADED_RADIOLOGIST = "report_downloaded_radiologist"
    REPORT_DOWNLOADED = "report_downloaded"
    FINAL_REPORT_DOWNLOADED = "final_report_downloaded"
    ARCHIVED = "archived"


# States the ingestion pipeline owns; anything else was set downstream.
INGESTION_STATUSES = frozenset({WorkflowStatus.NEW_METADATA_ONLY.value, WorkflowStatus.NEW_STUDY_RECEIVED.value})


class Patient(Base):
    __tablename__ = "patients"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    external_id: Mapped[Optional[str]] = mapped_column(Text, unique=True)
    canonical_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    first_name: Mapped[str] = mapped_column(Text, default="")
    last_name: Mapped[str] = mapped_column(Text, default="")
    middle_name: Mapped[str] = mapped_column(Text, default="")
    name_prefix: Mapped[str] = mapped_column(Text, default="")
    name_suffix: Mapped[str] = mapped_column(Text, default="")
    original_dicom_name: Mapped[str] = mapped_column(Text, default="")
    sex: Mapped[str] = mapped_column(Text, default="")
    date_of_birth: Mapped[Optional[date]] = mapped_column(Date)
    is_anonymous: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Lab(Base):
    __tablename__ = "labs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    identifier: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notes: Mapped[str] = mapped_column(Text, default="")
    contact_person: Mapped[str] = mapped_column(Text, default="")
    source_metadata: Mapped[dict] = mapped_column(JSONDocument, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Study(Base):
    __tablename__ = "studies"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    study_instance_uid: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    orthanc_study_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    accession_number: Mapped[str] = mapped_column(Text, default="")
    patient_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("patients.id"), nullable=False)
    patient_canonical_id: Mapped[str] = mapped_column(Text, default="")
    lab_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("labs.id"), nullable=False)
    study_date: Mapped[Optional[date]] = mapped_column(Date)
    study_time: Mapped[str] = mapped_column(Text, default="")
    modalities: Mapped[list] = mapped_column(JSONDocument, default=list)
    exam_description: Mapped[str] = mapped_column(Text, default="")
    institution_name: Mapped[str] = mapped_column(Text, default="")
    workflow_status: Mapped[str] = mapped_column(Text, nullable=False, default=WorkflowStatus.NEW_METADATA_ONLY.value)
    series_count: Mapped[int] = mapped_column(Integer, default=0)
    instance_count: Mapped[int] = mapped_column(Integer, default=0)
    series_images: Mapped[str] = mapped_column(Text, default="0/0")

    patient_info: Mapped[dict] = mapped_column(JSONDocument, default=dict)
    referring_physician_name: Mapped[str] = mapped_column(Text, default="")
    physicians: Mapped[dict] = mapped_column(JSONDocument, default=dict)
    technologist: Mapped[dict] = mapped_column(JSONDocument, default=dict)
    study_priority: Mapped[str] = mapped_column(Text, default="SELECT")
    case_type: Mapped[str] = mapped_column(Text, default="routine")
    equipment: Mapped[dict] = mapped_column(JSONDocument, default=dict)
    protocol_name: Mapped[str] = mapped_column(Text, default="")
    body_part_examined: Mapped[str] = mapped_column(Text, default="")
    contrast_bolus_agent: Mapped[str] = mapped_column(Text, default="")
    contrast_bolus_route: Mapped[str] = mapped_column(Text, default="")
    acquisition_date: Mapped[str] = mapped_column(Text, default="")
    acquisition_time: Mapped[str] = mapped_column(Text, default="")
    study_comments: Mapped[str] = mapped_column(Text, default="")
    additional_patient_history: Mapped[str] = mapped_column(Text, default="")
    custom_lab_info: Mapped[dict] = mapped_column(JSONDocument, default=dict)
    storage_info: Mapped[dict] = mapped_column(JSONDocument, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    patient: Mapped["Patient"] = relationship("Patient", lazy="selectin")
    lab: Mapped["Lab"] = relationship("Lab", lazy="selectin")
    status_history: Mapped[list["StudyStatusHistory"]] = relationship(
        "StudyStatusHistory",
        back_populates="study",
        cascade="all, delete-orphan",
        order_by="StudyStatusHistory.id",
        lazy="selectin",
    )


class StudyStatusHistory(Base):
    __tablename__ = "study_status_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    study_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("studies.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    note: Mapped[str] = mapped_column(Text, default="")

    study: Mapped["Study"] = relationship("Study", back_populates="status_history")
