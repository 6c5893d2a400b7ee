"""Assemble a tag set and instance/series counts for one Orthanc study.

Orthanc does not reliably expose instances for a freshly stabilised study, so
instance discovery walks a chain of progressively weaker lookups and the tag
set is filled from whichever level answered:

1. study summary (fatal if unreachable or missing StudyInstanceUID)
2. ``/studies/{id}/instances``
3. series-by-series lookup
4. probing series ids as instance ids
5. simplified tags of the first instance found
6. study-level tags, then synthesized placeholders
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from . import orthanc_client
from ..config import settings
from .errors import MissingStudyInstanceUID, StudyFetchError

logger = logging.getLogger(__name__)

PLACEHOLDER_PATIENT_PREFIX = "UNKNOWN_"
UNKNOWN_MODALITY = "UNKNOWN"

METHOD_STUDY_INSTANCES = "study_instances"
METHOD_SERIES_LOOKUP = "series_lookup"
METHOD_SERIES_AS_INSTANCE = "series_as_instance"
METHOD_NONE = "none"


@dataclass
class ExtractedStudy:
    orthanc_study_id: str
    study_instance_uid: str
    study_info: dict
    tags: dict[str, str]
    series_ids: list[str]
    instance_ids: list[str] = field(default_factory=list)
    modalities: list[str] = field(default_factory=list)
    instance_method: str = METHOD_NONE
    tag_source: str = "study"

    @property
    def series_count(self) -> int:
        return len(self.series_ids)

    @property
    def instance_count(self) -> int:
        return len(self.instance_ids)


def _instance_id(item) -> Optional[str]:
    if isinstance(item, str):
        return item
    if isinstance(item, dict):
        return item.get("ID")
    return None


def _study_level_tags(study_info: dict) -> dict:
    return {**(study_info.get("MainDicomTags") or {}), **(study_info.get("PatientMainDicomTags") or {})}


async def _fetch_summary(orthanc_study_id: str) -> dict:
    try:
        study_info = await orthanc_client.get_study(orthanc_study_id)
    except Exception as exc:
        raise StudyFetchError(orthanc_study_id, str(exc)) from exc
    if not isinstance(study_info, dict):
        raise StudyFetchError(orthanc_study_id, f"unexpected summary payload {type(study_info).__name__}")
    return study_info


async def _list_study_instances(orthanc_study_id: str) -> list[str]:
    try:
        listing = await orthanc_client.list_study_instances(orthanc_study_id) or []
    except Exception as exc:
        logger.warning("Direct instance listing failed for study %s: %s", orthanc_study_id, exc)
        return []
    return [i for i in (_instance_id(item) for item in listing) if i]


async def _lookup_series(series_ids: list[str], tags: dict, series_cache: dict[str, dict]) -> list[str]:
    instances: list[str] = []
    for series_id in series_ids:
        try:
            series_data = await orthanc_client.get_series(series_id)
        except Exception as exc:
            logger.warning("Could not get series %s: %s", series_id, exc)
            continue
        if not isinstance(series_data, dict):
            logger.warning("Unexpected payload for series %s: %r", series_id, series_data)
            continue
        series_cache[series_id] = series_data
        instances.extend(i for i in (_instance_id(item) for item in series_data.get("Instances") or []) if i)
        series_tags = series_data.get("MainDicomTags")
        if isinstance(series_tags, dict) and series_tags and not tags:
            tags.update(series_tags)
    return instances


async def _probe_series_as_instances(series_ids: list[str]) -> list[str]:
    found = []
    for series_id in series_ids:
        try:
            await orthanc_client.get_instance(series_id)
        except Exception:
            logger.debug("Series id %s is not an instance id", series_id)
            continue
        logger.info("Series id %s resolved as an instance", series_id)
        found.append(series_id)
    return found


async def _aggregate_modalities(tags: dict, series_ids: list[str], series_cache: dict[str, dict]) -> list[str]:
    modalities: list[str] = []
    if tags.get("Modality"):
        modalities.append(tags["Modality"])
    for series_id in series_ids:
        series_data = series_cache.get(series_id)
        if series_data is None:
            try:
                series_data = await orthanc_client.get_series(series_id, timeout=settings.orthanc_timeout_probe)
            except Exception:
                continue
        if not isinstance(series_data, dict) or not isinstance(series_data.get("MainDicomTags"), dict):
            continue
        modality = series_data["MainDicomTags"].get("Modality")
        if modality and modality not in modalities:
            modalities.append(modality)
    return modalities or [UNKNOWN_MODALITY]


def _placeholder_tags(study_instance_uid: str) -> dict:
    return {
        "PatientName": "Unknown Patient",
        "PatientID": f"{PLACEHOLDER_PATIENT_PREFIX}{int(time.time() * 1000)}",
        "StudyDescription": "Unknown Study",
        "StudyInstanceUID": study_instance_uid,
        "StudyDate": datetime.now(timezone.utc).strftime("%Y%m%d"),
        "Modality": UNKNOWN_MODALITY,
    }


async def extract_study_metadata(
    orthanc_study_id: str,
    on_progress: Optional[Callable[[int], None]] = None,
) -> ExtractedStudy:
    """Fetch everything the pipeline needs to know about one Orthanc study."""
    report = on_progress or (lambda _: None)

    study_info = await _fetch_summary(orthanc_study_id)
    study_instance_uid = (study_info.get("MainDicomTags") or {}).get("StudyInstanceUID")
    if not study_instance_uid:
        raise MissingStudyInstanceUID(orthanc_study_id)

    series_ids: list[str] = list(study_info.get("Series") or [])
    logger.info("Study %s (%s): %d series listed", orthanc_study_id, study_instance_uid, len(series_ids))
    report(30)

    tags: dict = {}
    series_cache: dict[str, dict] = {}
    method = METHOD_NONE

    instance_ids = await _list_study_instances(orthanc_study_id)
    if instance_ids:
        method = METHOD_STUDY_INSTANCES

    if not instance_ids and series_ids:
        instance_ids = await _lookup_series(series_ids, tags, series_cache)
        if instance_ids:
            method = METHOD_SERIES_LOOKUP

    if not instance_ids and series_ids:
        instance_ids = await _probe_series_as_instances(series_ids)
        if instance_ids:
            method = METHOD_SERIES_AS_INSTANCE

    tag_source = "series" if tags else "study"
    logger.info("Study %s: %d instances found via %s", orthanc_study_id, len(instance_ids), method)
    report(50)

    if instance_ids:
        try:
            instance_tags = await orthanc_client.get_simplified_tags(instance_ids[0])
        except Exception as exc:
            logger.warning("Could not get tags of instance %s: %s", instance_ids[0], exc)
        else:
            tags.update(instance_tags or {})
            tag_source = "instance"

    if not tags or not tags.get("PatientName"):
        logger.info("Study %s: using study-level tags as fallback", orthanc_study_id)
        tags = {**_study_level_tags(study_info), **tags}

    if not tags.get("PatientName") and not tags.get("PatientID"):
        logger.warning("Study %s: no patient identity in any tag source, using placeholders", orthanc_study_id)
        tags = {**_placeholder_tags(study_instance_uid), **{k: v for k, v in tags.items() if v}}
        tag_source = "placeholder"

    modalities = await _aggregate_modalities(tags, series_ids, series_cache)
    report(60)

    return ExtractedStudy(
        orthanc_study_id=orthanc_study_id,
        study_instance_uid=study_instance_uid,
        study_info=study_info,
        tags=tags,
        series_ids=series_ids,
        instance_ids=instance_ids,
        modalities=modalities,
        instance_method=method,
        tag_source=tag_source,
    )
