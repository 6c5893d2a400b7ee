"""Normalize the shapes Orthanc's stable-study callback may post."""
import json
import random
import string
import time
from dataclasses import dataclass
from typing import Any, Literal, Optional
from urllib.parse import parse_qs

from .errors import InvalidNotification

PayloadShape = Literal["string", "studyId_field", "ID_field", "object_key"]

_BASE36 = string.digits + string.ascii_lowercase
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


@dataclass(frozen=True)
class StableStudyNotification:
    orthanc_study_id: str
    shape: PayloadShape
    raw: Any


def decode_body(raw: bytes, content_type: Optional[str] = None) -> Any:
    """Form fields for a urlencoded body, else JSON if it parses, else the text.

    ``abc123=`` decodes to ``{"abc123": ""}``; repeated fields keep every value.
    """
    text = raw.decode("utf-8", errors="replace")
    if content_type and content_type.split(";")[0].strip().lower() == FORM_CONTENT_TYPE:
        fields = parse_qs(text, keep_blank_values=True)
        return {key: values[0] if len(values) == 1 else values for key, values in fields.items()}
    try:
        return json.loads(text)
    except ValueError:
        return text


def _clean(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def parse_stable_study_notification(body: Any) -> StableStudyNotification:
    """Resolve a notification body to a single Orthanc study id.

    Accepted shapes, checked in order:

    * ``"abc123"`` – bare string
    * ``{"studyId": "abc123", ...}``
    * ``{"ID": "abc123", ...}`` – an Orthanc change event
    * ``{"abc123": ""}`` – form-encoded style single key
    """
    if isinstance(body, str):
        study_id = _clean(body)
        if study_id:
            return StableStudyNotification(study_id, "string", body)
        raise InvalidNotification(body)

    if isinstance(body, dict):
        study_id = _clean(body.get("studyId"))
        if study_id:
            return StableStudyNotification(study_id, "studyId_field", body)
        study_id = _clean(body.get("ID"))
        if study_id:
            return StableStudyNotification(study_id, "ID_field", body)
        if len(body) == 1 and not ({"studyId", "ID"} & body.keys()):
            study_id = _clean(next(iter(body)))
            if study_id:
                return StableStudyNotification(study_id, "object_key", body)
        raise InvalidNotification(body)

    raise InvalidNotification(body)


def generate_request_id() -> str:
    suffix = "".join(random.choices(_BASE36, k=9))
    return f"stable_{int(time.time() * 1000)}_{suffix}"
