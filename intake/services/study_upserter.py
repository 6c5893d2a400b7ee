"""Merge extracted metadata into the Study aggregate keyed by StudyInstanceUID."""
import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import INGESTION_STATUSES, Lab, Patient, Study, StudyStatusHistory, WorkflowStatus
from .entity_resolver import describe_custom_lab_reference
from .metadata_extractor import UNKNOWN_MODALITY, ExtractedStudy
from .tag_parsing import parse_dicom_date

logger = logging.getLogger(__name__)


def initial_status(instance_count: int) -> str:
    if instance_count > 0:
        return WorkflowStatus.NEW_STUDY_RECEIVED.value
    return WorkflowStatus.NEW_METADATA_ONLY.value


def merge_modalities(existing: list[str], incoming: list[str]) -> list[str]:
    merged = list(existing or [])
    for modality in incoming:
        if modality not in merged:
            merged.append(modality)
    real = [m for m in merged if m != UNKNOWN_MODALITY]
    return real or [UNKNOWN_MODALITY]


def _text(tags: dict, key: str) -> str:
    return tags.get(key) or ""


def _study_values(extracted: ExtractedStudy, patient: Patient, lab: Lab) -> dict:
    tags = extracted.tags
    series_count, instance_count = extracted.series_count, extracted.instance_count

    return dict(
        orthanc_study_id=extracted.orthanc_study_id,
        accession_number=_text(tags, "AccessionNumber"),
        patient_id=patient.id,
        patient_canonical_id=patient.canonical_id,
        lab_id=lab.id,
        study_date=parse_dicom_date(tags.get("StudyDate")),
        study_time=_text(tags, "StudyTime"),
        exam_description=tags.get("StudyDescription") or "Unknown Study",
        institution_name=_text(tags, "InstitutionName"),
        series_count=series_count,
        instance_count=instance_count,
        series_images=f"{series_count}/{instance_count}",
        patient_info={
            "patient_id": patient.canonical_id,
            "patient_name": patient.display_name,
            "gender": patient.sex or "",
            "date_of_birth": _text(tags, "PatientBirthDate"),
        },
        referring_physician_name=_text(tags, "ReferringPhysicianName"),
        physicians={
            "referring": {
                "name": _text(tags, "ReferringPhysicianName"),
                "mobile": _text(tags, "ReferringPhysicianTelephoneNumbers"),
                "institution": _text(tags, "ReferringPhysicianAddress"),
            },
            "requesting": {
                "name": _text(tags, "RequestingPhysician"),
                "institution": _text(tags, "RequestingService"),
            },
        },
        technologist={
            "name": _text(tags, "OperatorsName") or _text(tags, "OperatorName") or _text(tags, "PerformingPhysicianName"),
            "reason_to_send": _text(tags, "ReasonForStudy") or _text(tags, "RequestedProcedureDescription"),
        },
        study_priority=tags.get("StudyPriorityID") or "SELECT",
        case_type=tags.get("RequestPriority") or "routine",
        equipment={
            "manufacturer": _text(tags, "Manufacturer"),
            "model": _text(tags, "ManufacturerModelName"),
            "station_name": _text(tags, "StationName"),
            "software_version": _text(tags, "SoftwareVersions"),
        },
        protocol_name=_text(tags, "ProtocolName"),
        body_part_examined=_text(tags, "BodyPartExamined"),
        contrast_bolus_agent=_text(tags, "ContrastBolusAgent"),
        contrast_bolus_route=_text(tags, "ContrastBolusRoute"),
        acquisition_date=_text(tags, "AcquisitionDate"),
        acquisition_time=_text(tags, "AcquisitionTime"),
        study_comments=_text(tags, "StudyComments"),
        additional_patient_history=_text(tags, "AdditionalPatientHistory"),
        custom_lab_info=describe_custom_lab_reference(tags),
        storage_info={
            "type": "orthanc",
            "orthanc_study_id": extracted.orthanc_study_id,
            "received_at": datetime.now(timezone.utc).isoformat(),
            "is_stable_study": True,
            "instances_found": instance_count,
            "processing_method": "with_instances" if instance_count > 0 else "metadata_only",
            "instance_method": extracted.instance_method,
            "tag_source": extracted.tag_source,
        },
    )


async def upsert_study(
    db: AsyncSession,
    extracted: ExtractedStudy,
    patient: Patient,
    lab: Lab,
) -> tuple[Study, bool]:
    """Create or update the Study for ``extracted`` and append a history entry.

    Returns ``(study, created)``.
    """
    result = await db.execute(select(Study).where(Study.study_instance_uid == extracted.study_instance_uid))
    study = result.scalar_one_or_none()

    values = _study_values(extracted, patient, lab)
    status = initial_status(extracted.instance_count)
    counts = f"{extracted.series_count} series, {extracted.instance_count} instances"
    lab_note = f"Lab: {lab.name} (Custom Lab ID: {values['custom_lab_info']['dicom_lab_id'] or 'Not provided'})"

    created = study is None
    if created:
        study = Study(
            study_instance_uid=extracted.study_instance_uid,
            modalities=merge_modalities([], extracted.modalities),
            workflow_status=status,
            **values,
        )
        study.status_history = [
            StudyStatusHistory(status=status, changed_at=datetime.now(timezone.utc), note=f"Stable study created: {counts}. {lab_note}")
        ]
        db.add(study)
    else:
        for key, value in values.items():
            setattr(study, key, value)
        study.modalities = merge_modalities(study.modalities, extracted.modalities)
        if study.workflow_status in INGESTION_STATUSES:
            study.workflow_status = status
        else:
            logger.info(
                "Study %s is %s, keeping workflow status on re-ingestion",
                extracted.study_instance_uid, study.workflow_status,
            )
        study.status_history.append(
            StudyStatusHistory(
                status=study.workflow_status,
                changed_at=datetime.now(timezone.utc),
                note=f"Stable study updated: {counts}. {lab_note}",
            )
        )

    await db.commit()
    logger.info(
        "%s study %s (%s)",
        "Created" if created else "Updated", extracted.study_instance_uid, counts,
    )
    return study, created
