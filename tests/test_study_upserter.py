import pytest
from sqlalchemy import func, select

from intake.models import Study, StudyStatusHistory, WorkflowStatus
from intake.services.entity_resolver import resolve_lab, resolve_patient
from intake.services.metadata_extractor import METHOD_NONE, METHOD_STUDY_INSTANCES, ExtractedStudy
from intake.services.study_upserter import initial_status, merge_modalities, upsert_study

UID = "1.2.840.113619.2.55.3.1"


def make_extracted(modalities=("CT",), instance_ids=("i1", "i2"), series_ids=("s1",), **tags) -> ExtractedStudy:
    base = {
        "StudyInstanceUID": UID,
        "PatientID": "P001",
        "PatientName": "DOE^JOHN",
        "StudyDate": "20230615",
        "StudyDescription": "Chest CT",
        "InstitutionName": "City Clinic",
        "AccessionNumber": "ACC-1",
    }
    base.update(tags)
    return ExtractedStudy(
        orthanc_study_id="orthanc-study-abc",
        study_instance_uid=UID,
        study_info={"ID": "orthanc-study-abc"},
        series_ids=list(series_ids),
        instance_ids=list(instance_ids),
        tags=base,
        modalities=list(modalities),
        instance_method=METHOD_STUDY_INSTANCES if instance_ids else METHOD_NONE,
        tag_source="instance",
    )


async def ingest(db, extracted):
    lab = await resolve_lab(db, extracted.tags)
    patient = await resolve_patient(db, extracted.tags)
    return await upsert_study(db, extracted, patient, lab)


async def history_count(db) -> int:
    return (await db.execute(select(func.count()).select_from(StudyStatusHistory))).scalar_one()


def test_initial_status_follows_instance_count():
    assert initial_status(0) == WorkflowStatus.NEW_METADATA_ONLY.value
    assert initial_status(3) == WorkflowStatus.NEW_STUDY_RECEIVED.value


def test_merge_modalities():
    assert merge_modalities(["CT"], ["US"]) == ["CT", "US"]
    assert merge_modalities(["CT", "US"], ["CT"]) == ["CT", "US"]
    assert merge_modalities(["UNKNOWN"], ["MR"]) == ["MR"]
    assert merge_modalities([], ["UNKNOWN"]) == ["UNKNOWN"]


@pytest.mark.asyncio
async def test_first_ingestion_creates_study_with_snapshot(db):
    study, created = await ingest(db, make_extracted())

    assert created is True
    assert study.study_instance_uid == UID
    assert study.workflow_status == WorkflowStatus.NEW_STUDY_RECEIVED.value
    assert study.series_images == "1/2"
    assert study.study_date.isoformat() == "2023-06-15"
    assert study.patient_info["patient_name"] == "JOHN DOE"
    assert study.storage_info["instance_method"] == METHOD_STUDY_INSTANCES
    assert study.custom_lab_info["lab_detection_method"] == "dicom_tags_fallback"
    assert len(study.status_history) == 1
    assert study.status_history[0].note.startswith("Stable study created: 1 series, 2 instances")


@pytest.mark.asyncio
async def test_repeated_ingestion_keeps_one_study(db):
    for n in range(1, 4):
        study, created = await ingest(db, make_extracted(AccessionNumber=f"ACC-{n}"))
        assert created is (n == 1)

    studies = (await db.execute(select(Study))).scalars().all()
    assert len(studies) == 1
    assert studies[0].accession_number == "ACC-3"
    assert await history_count(db) == 3
    assert studies[0].status_history[-1].note.startswith("Stable study updated")


@pytest.mark.asyncio
async def test_modalities_are_merged_across_ingestions(db):
    await ingest(db, make_extracted(modalities=["CT"]))
    study, created = await ingest(db, make_extracted(modalities=["US"]))

    assert created is False
    assert study.modalities == ["CT", "US"]
    assert await history_count(db) == 2


@pytest.mark.asyncio
async def test_reingestion_upgrades_metadata_only_study(db):
    study, _ = await ingest(db, make_extracted(instance_ids=()))
    assert study.workflow_status == WorkflowStatus.NEW_METADATA_ONLY.value
    assert study.storage_info["processing_method"] == "metadata_only"

    study, _ = await ingest(db, make_extracted())
    assert study.workflow_status == WorkflowStatus.NEW_STUDY_RECEIVED.value


@pytest.mark.asyncio
async def test_reingestion_does_not_reset_downstream_status(db):
    study, _ = await ingest(db, make_extracted())
    study.workflow_status = WorkflowStatus.REPORT_FINALIZED.value
    await db.commit()

    study, _ = await ingest(db, make_extracted(instance_ids=()))

    assert study.workflow_status == WorkflowStatus.REPORT_FINALIZED.value
    assert study.status_history[-1].status == WorkflowStatus.REPORT_FINALIZED.value


@pytest.mark.asyncio
async def test_unparseable_study_date_is_stored_empty(db):
    study, _ = await ingest(db, make_extracted(StudyDate="not-a-date"))
    assert study.study_date is None


@pytest.mark.asyncio
async def test_missing_text_tags_are_stored_as_empty_strings(db):
    study, _ = await ingest(db, make_extracted(OperatorsName="TECH^ONE", Manufacturer="ACME"))

    assert study.accession_number == "ACC-1"
    assert study.study_time == ""
    assert study.technologist == {"name": "TECH^ONE", "reason_to_send": ""}
    assert study.equipment == {"manufacturer": "ACME", "model": "", "station_name": "", "software_version": ""}
    assert study.physicians["requesting"] == {"name": "", "institution": ""}
