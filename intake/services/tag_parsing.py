"""Helpers for turning raw DICOM tag strings into structured values."""
import re
from dataclasses import dataclass
from datetime import date
from typing import Optional

UNKNOWN_PATIENT = "Unknown Patient"
ANONYMOUS_PATIENT = "Anonymous Patient"

_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class PersonName:
    display: str
    first_name: str = ""
    last_name: str = ""
    middle_name: str = ""
    prefix: str = ""
    suffix: str = ""
    original: str = ""

    @property
    def is_placeholder(self) -> bool:
        return self.display in (UNKNOWN_PATIENT, ANONYMOUS_PATIENT)


def parse_person_name(value) -> PersonName:
    """Parse a DICOM PN value (Family^Given^Middle^Prefix^Suffix).

    Missing values become "Unknown Patient"; encodings with no non-empty
    component ("", "^", "^^^") become "Anonymous Patient".
    """
    if not isinstance(value, str):
        return PersonName(display=UNKNOWN_PATIENT, last_name="Unknown", original=value or "")

    raw = value.strip()
    parts = [p.strip() for p in raw.split("^")][:5]
    parts += [""] * (5 - len(parts))
    family, given, middle, prefix, suffix = parts

    if not any(parts):
        return PersonName(display=ANONYMOUS_PATIENT, last_name="Anonymous", original=raw)

    display = " ".join(p for p in (prefix, given, middle, family, suffix) if p)
    return PersonName(
        display=display,
        first_name=given,
        last_name=family,
        middle_name=middle,
        prefix=prefix,
        suffix=suffix,
        original=raw,
    )


def parse_dicom_date(val: Optional[str]) -> Optional[date]:
    """Parse a DICOM DA value (YYYYMMDD); ISO dates are accepted too."""
    if not val or not isinstance(val, str):
        return None
    val = val.strip()
    if len(val) == 8 and val.isdigit():
        try:
            parsed = date(int(val[0:4]), int(val[4:6]), int(val[6:8]))
        except ValueError:
            return None
        return parsed if 1900 <= parsed.year <= 2100 else None
    try:
        parsed = date.fromisoformat(val[:10])
    except ValueError:
        return None
    return parsed if parsed.year > 1900 else None


def normalize_lab_name(value: str) -> str:
    return _WHITESPACE.sub(" ", value.strip().replace("_", " "))


def canonical_lab_identifier(name: str) -> str:
    return _WHITESPACE.sub("_", name.upper())
