"""Find or create the canonical Patient and Lab for an extracted tag set."""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..models import Lab, Patient
from .metadata_extractor import PLACEHOLDER_PATIENT_PREFIX
from .tag_parsing import canonical_lab_identifier, normalize_lab_name, parse_dicom_date, parse_person_name

logger = logging.getLogger(__name__)

SENTINEL_PATIENT_ID = "UNKNOWN_STABLE_STUDY"
SENTINEL_PATIENT_NAME = "Unknown Patient (Stable Study)"

DEFAULT_LAB_NAME = "Primary Orthanc Instance (Stable Study)"
DEFAULT_LAB_IDENTIFIER = "ORTHANC_STABLE_SOURCE"
EMERGENCY_LAB_NAME = "Emergency Default Lab"
EMERGENCY_LAB_IDENTIFIER = "EMERGENCY_DEFAULT"
UNKNOWN_LAB_REFERENCE = "UNKNOWN_LAB"

# Tag fields that may describe the sending facility, most specific first
LAB_SOURCE_FIELDS = (
    "InstitutionName",
    "StationName",
    "Manufacturer",
    "ManufacturerModelName",
    "PerformingPhysicianName",
    "ReferringPhysicianName",
)


def _generate_canonical_id() -> str:
    return uuid.uuid4().hex[:8].upper()


def _tag(tags: dict, key: str) -> str:
    value = tags.get(key)
    return value.strip() if isinstance(value, str) else ""


async def _insert_or_find(db: AsyncSession, entity, find: Callable[[], Awaitable]) -> tuple[Any, bool]:
    """Commit a new row, or return the row a concurrent job committed first.

    On a unique-key conflict the session is rolled back, which expires every
    instance it had loaded. Returns ``(row, created)``.
    """
    db.add(entity)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await find()
        if existing is None:
            raise
        logger.info("Lost insert race for %s, using the committed row", type(entity).__name__)
        return existing, False
    return entity, True


# ── Patients ──────────────────────────────────────────────────────────────────

async def _find_patient(db: AsyncSession, external_id: str) -> Optional[Patient]:
    result = await db.execute(select(Patient).where(Patient.external_id == external_id))
    return result.scalar_one_or_none()


async def _get_sentinel_patient(db: AsyncSession, tags: dict) -> Patient:
    patient = await _find_patient(db, SENTINEL_PATIENT_ID)
    if patient is None:
        patient, created = await _insert_or_find(
            db,
            Patient(
                external_id=SENTINEL_PATIENT_ID,
                canonical_id=_generate_canonical_id(),
                display_name=SENTINEL_PATIENT_NAME,
                sex=_tag(tags, "PatientSex"),
                is_anonymous=True,
            ),
            lambda: _find_patient(db, SENTINEL_PATIENT_ID),
        )
        if created:
            logger.info("Created sentinel patient for unidentified studies")
    return patient


async def resolve_patient(db: AsyncSession, tags: dict) -> Patient:
    """Return the Patient for a tag set, creating it on first sighting.

    An existing patient is only touched when its stored display name is
    still a raw ``^`` encoding and the new one parses cleanly.
    """
    external_id = _tag(tags, "PatientID")
    if external_id.startswith(PLACEHOLDER_PATIENT_PREFIX):
        external_id = ""
    name = parse_person_name(tags.get("PatientName"))

    if not external_id and name.is_placeholder:
        return await _get_sentinel_patient(db, tags)

    if not external_id:
        external_id = f"ANON_{uuid.uuid4().hex[:12].upper()}"

    patient = await _find_patient(db, external_id)
    if patient is None:
        patient, created = await _insert_or_find(db, Patient(
            external_id=external_id,
            canonical_id=_generate_canonical_id(),
            display_name=name.display,
            first_name=name.first_name,
            last_name=name.last_name,
            middle_name=name.middle_name,
            name_prefix=name.prefix,
            name_suffix=name.suffix,
            original_dicom_name=name.original,
            sex=_tag(tags, "PatientSex"),
            date_of_birth=parse_dicom_date(tags.get("PatientBirthDate")),
            is_anonymous=name.is_placeholder,
        ), lambda: _find_patient(db, external_id))
        if created:
            logger.info("Created patient %s (%s)", name.display, external_id)
        return patient

    if "^" in (patient.display_name or "") and "^" not in name.display:
        logger.info("Updating patient %s name from %r to %r", external_id, patient.display_name, name.display)
        patient.display_name = name.display
        patient.first_name = name.first_name
        patient.last_name = name.last_name
        patient.middle_name = name.middle_name
        patient.name_prefix = name.prefix
        patient.name_suffix = name.suffix
        patient.original_dicom_name = name.original
        await db.commit()

    return patient


# ── Labs ──────────────────────────────────────────────────────────────────────

def custom_lab_reference(tags: dict) -> Optional[str]:
    value = _tag(tags, settings.custom_lab_tag)
    if not value or value == UNKNOWN_LAB_REFERENCE:
        return None
    return value


def _as_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(value)
    except ValueError:
        return None


def describe_custom_lab_reference(tags: dict) -> dict:
    """Snapshot of how the custom lab reference tag was (or wasn't) used."""
    raw = tags.get(settings.custom_lab_tag) or None
    reference = custom_lab_reference(tags)
    if not reference:
        source, method = "fallback_detection", "dicom_tags_fallback"
    elif _as_uuid(reference) is not None:
        source, method = "dicom_custom_tag", "canonical_id"
    else:
        source, method = "dicom_custom_tag", "identifier_lookup"
    return {"dicom_lab_id": raw, "lab_id_source": source, "lab_detection_method": method}


async def _find_active_lab_by_identifier(db: AsyncSession, identifier: str) -> Optional[Lab]:
    result = await db.execute(select(Lab).where(Lab.identifier == identifier, Lab.is_active.is_(True)))
    return result.scalar_one_or_none()


async def _lab_from_reference(db: AsyncSession, reference: str) -> Optional[Lab]:
    lab_uuid = _as_uuid(reference)
    if lab_uuid is not None:
        lab = await db.get(Lab, lab_uuid)
        if lab is None:
            logger.warning("Lab not found with custom ID %s", reference)
            return None
        if not lab.is_active:
            # TODO: confirm with lab admins whether inactive labs should fall through here
            logger.warning("Lab %s (%s) referenced by custom ID is inactive", lab.name, lab.identifier)
        return lab

    lab = await _find_active_lab_by_identifier(db, canonical_lab_identifier(reference))
    if lab is None:
        logger.warning("No active lab with identifier %s", reference)
    return lab


async def _lab_from_facility_tags(db: AsyncSession, tags: dict, reference: Optional[str]) -> Optional[Lab]:
    for field_name in LAB_SOURCE_FIELDS:
        source = tags.get(field_name)
        if not isinstance(source, str) or len(source.strip()) < 3:
            continue

        lab_name = normalize_lab_name(source)
        identifier = canonical_lab_identifier(lab_name)

        result = await db.execute(
            select(Lab)
            .where(Lab.is_active.is_(True))
            .where(or_(func.lower(Lab.name) == lab_name.lower(), Lab.identifier == identifier))
            .limit(1)
        )
        lab = result.scalar_one_or_none()
        if lab is None:
            result = await db.execute(
                select(Lab)
                .where(Lab.is_active.is_(True))
                .where(func.lower(Lab.name).contains(lab_name.lower(), autoescape=True))
                .order_by(Lab.created_at)
                .limit(1)
            )
            lab = result.scalar_one_or_none()
        if lab is not None:
            logger.info("Matched lab %s from %s", lab.name, field_name)
            return lab

        lab, created = await _insert_or_find(db, Lab(
            name=lab_name,
            identifier=identifier,
            is_active=True,
            notes=(
                f"Auto-created from stable study DICOM tags on {datetime.now(timezone.utc).isoformat()}. "
                f"Original custom Lab ID: {reference or 'Not provided'}"
            ),
            contact_person=_tag(tags, "PerformingPhysicianName") or _tag(tags, "ReferringPhysicianName"),
            source_metadata={
                "source_field": field_name,
                "original_dicom_value": source,
                "created_from_stable_study": True,
                "original_custom_lab_id": reference,
            },
        ), lambda: _find_active_lab_by_identifier(db, identifier))
        if created:
            logger.info("Created lab %s (%s) from %s", lab.name, lab.identifier, field_name)
        return lab
    return None


async def _default_lab(db: AsyncSession, reference: Optional[str]) -> Lab:
    lab = await _find_active_lab_by_identifier(db, DEFAULT_LAB_IDENTIFIER)
    if lab is None:
        lab, created = await _insert_or_find(db, Lab(
            name=DEFAULT_LAB_NAME,
            identifier=DEFAULT_LAB_IDENTIFIER,
            is_active=True,
            notes=f"Default lab created. Original custom Lab ID: {reference or 'Not provided'}",
        ), lambda: _find_active_lab_by_identifier(db, DEFAULT_LAB_IDENTIFIER))
        if created:
            logger.info("Created default lab %s", DEFAULT_LAB_NAME)
    return lab


async def _emergency_lab(db: AsyncSession, tags: dict) -> Lab:
    await db.rollback()
    result = await db.execute(select(Lab).where(Lab.is_active.is_(True)).order_by(Lab.created_at).limit(1))
    lab = result.scalar_one_or_none()
    if lab is None:
        lab, _ = await _insert_or_find(db, Lab(
            name=EMERGENCY_LAB_NAME,
            identifier=EMERGENCY_LAB_IDENTIFIER,
            is_active=True,
            notes=f"Emergency lab created due to error. Original custom Lab ID: {tags.get(settings.custom_lab_tag) or 'Not provided'}",
        ), lambda: _find_active_lab_by_identifier(db, EMERGENCY_LAB_IDENTIFIER))
    logger.warning("Using emergency lab %s", lab.name)
    return lab


async def resolve_lab(db: AsyncSession, tags: dict) -> Lab:
    """Resolve the source Lab: custom reference, facility tags, default, emergency."""
    reference = custom_lab_reference(tags)
    try:
        if reference:
            try:
                lab = await _lab_from_reference(db, reference)
            except Exception as exc:
                logger.error("Error looking up lab with custom ID %s: %s", reference, exc)
                await db.rollback()
                lab = None
            if lab is not None:
                return lab

        lab = await _lab_from_facility_tags(db, tags, reference)
        if lab is not None:
            return lab

        return await _default_lab(db, reference)
    except Exception as exc:
        logger.error("Lab resolution failed, falling back to emergency lab: %s", exc, exc_info=True)
        return await _emergency_lab(db, tags)
