"""The job processor: extract → resolve patient/lab → upsert → cache/notify."""
import logging
import time
from datetime import datetime, timezone
from typing import Optional

from prometheus_client import Counter
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import Lab
from .entity_resolver import resolve_lab, resolve_patient
from .job_queue import Job
from .metadata_extractor import extract_study_metadata
from .notifier import StudyNotifier
from .result_cache import ResultCache
from .study_upserter import upsert_study

logger = logging.getLogger(__name__)

STUDIES_INGESTED = Counter("dcm_intake_studies_ingested_total", "Stable studies persisted", ["action"])


async def process_stable_study(
    job: Job,
    *,
    session_factory: async_sessionmaker[AsyncSession],
    result_cache: ResultCache,
    notifier: Optional[StudyNotifier] = None,
) -> dict:
    orthanc_study_id = job.payload["orthanc_study_id"]
    request_id = job.payload["request_id"]
    started = time.monotonic()
    job.set_progress(10)

    try:
        extracted = await extract_study_metadata(orthanc_study_id, on_progress=job.set_progress)
        tags = extracted.tags

        async with session_factory() as db:
            # resolve_lab may roll back the session, expiring anything loaded before it
            lab = await resolve_lab(db, tags)
            lab_id = lab.id
            patient = await resolve_patient(db, tags)
            # a lost patient insert race rolls back and expires the lab
            lab = await db.get(Lab, lab_id)
            job.set_progress(70)

            study, created = await upsert_study(db, extracted, patient, lab)
            job.set_progress(90)

        STUDIES_INGESTED.labels(action="created" if created else "updated").inc()
        processing_method = "with_instances" if extracted.instance_count > 0 else "metadata_only"

        if notifier is not None:
            notifier.notify_new_study({
                "study_id": str(study.id),
                "patient_name": patient.display_name,
                "patient_id": patient.canonical_id,
                "modality": ", ".join(study.modalities),
                "location": lab.name,
                "lab_id": str(lab.id),
                "institution_name": tags.get("InstitutionName") or "",
                "study_date": tags.get("StudyDate"),
                "workflow_status": study.workflow_status,
                "priority": study.case_type,
                "accession_number": study.accession_number,
                "series_images": study.series_images,
                "is_complete_study": extracted.instance_count > 0,
            })

        outcome = {
            "success": True,
            "orthanc_study_id": orthanc_study_id,
            "study_database_id": str(study.id),
            "study_instance_uid": extracted.study_instance_uid,
            "series_count": extracted.series_count,
            "instance_count": extracted.instance_count,
            "created": created,
            "processed_at": datetime.now(timezone.utc).isoformat(),
            "elapsed_ms": int((time.monotonic() - started) * 1000),
            "processing_method": processing_method,
            "extraction_method": extracted.instance_method,
            "metadata_summary": {
                "patient_name": patient.display_name,
                "patient_id": patient.canonical_id,
                "modalities": list(study.modalities),
                "study_date": tags.get("StudyDate") or "Unknown",
                "lab_name": lab.name,
                "institution_name": tags.get("InstitutionName") or "Unknown",
            },
        }
        await result_cache.store(request_id, outcome)
        job.set_progress(100)
        logger.info(
            "Stable study %s processed in %dms (%d series, %d instances)",
            orthanc_study_id, outcome["elapsed_ms"], extracted.series_count, extracted.instance_count,
        )
        return outcome

    except Exception as exc:
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.error("Stable study %s failed after %dms: %s", orthanc_study_id, elapsed_ms, exc)
        await result_cache.store(request_id, {
            "success": False,
            "error": str(exc),
            "elapsed_ms": elapsed_ms,
            "orthanc_study_id": orthanc_study_id,
            "failed_at": datetime.now(timezone.utc).isoformat(),
        })
        raise
