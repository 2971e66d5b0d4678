"""
Field sanity checks for LLM-extracted record data.

Each field is checked on its own; a bad date never costs the record its
good age. Rejected values are dropped (the existing record value is kept),
and every change the checks make is recorded as a human-readable
correction for the log.

Rules:
    date_of_death   YYYY-MM-DD, real calendar date, 2000-01-01 .. today
    date_of_birth   YYYY-MM-DD, real calendar date, 1880-01-01 .. < death
    age             integer 1 .. 120, cross-checked against the dates (±1)
    location        2 .. 60 characters, no markup brackets
    organization    3 .. 150 characters

Examples:
    >>> parse_calendar_date("2024-02-30") is None
    True
    >>> payload = RewritePayload(
    ...     rewritten_text="...", date_of_birth="1944-01-10", date_of_death="2024-03-02", age=77
    ... )
    >>> extract_fields(payload, today=date(2024, 6, 1)).corrections
    ['age 77 conflicts with dates; using computed 80']
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from obit_pipeline.core.logging import get_logger
from obit_pipeline.pipeline.schemas import RewritePayload

logger = get_logger(__name__)

EARLIEST_DEATH_DATE = date(2000, 1, 1)
EARLIEST_BIRTH_DATE = date(1880, 1, 1)
MIN_AGE = 1
MAX_AGE = 120
AGE_TOLERANCE = 1

_DATE_SHAPE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_MARKUP = re.compile(r"[{}<>\[\]]")


def parse_calendar_date(value: Any) -> date | None:
    """Parse a strict ``YYYY-MM-DD`` string into a real date, else None."""
    if not isinstance(value, str) or not _DATE_SHAPE.match(value.strip()):
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        return None


def years_between(start: date, end: date) -> int:
    """Whole years from ``start`` to ``end``."""
    years = end.year - start.year
    if (end.month, end.day) < (start.month, start.day):
        years -= 1
    return years


def check_death_date(value: Any, today: date) -> date | None:
    parsed = parse_calendar_date(value)
    if parsed is None or not (EARLIEST_DEATH_DATE <= parsed <= today):
        return None
    return parsed


def check_birth_date(value: Any, upper: date) -> date | None:
    """Valid birth dates are on or after 1880-01-01 and strictly before ``upper``."""
    parsed = parse_calendar_date(value)
    if parsed is None or not (EARLIEST_BIRTH_DATE <= parsed < upper):
        return None
    return parsed


def check_age(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or not (MIN_AGE <= value <= MAX_AGE):
        return None
    return value


def check_location(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not (2 <= len(value) <= 60) or _MARKUP.search(value):
        return None
    return value


def check_organization(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not (3 <= len(value) <= 150):
        return None
    return value


@dataclass
class ExtractedFields:
    """Sanitized fields ready to persist. None means "do not overwrite"."""

    rewritten_text: str
    date_of_death: str | None = None
    date_of_birth: str | None = None
    age: int | None = None
    location: str | None = None
    organization: str | None = None
    corrections: list[str] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)

    def non_empty(self) -> dict[str, Any]:
        """Structured fields that passed their checks."""
        values = {
            "date_of_death": self.date_of_death,
            "date_of_birth": self.date_of_birth,
            "age": self.age,
            "location": self.location,
            "organization": self.organization,
        }
        return {k: v for k, v in values.items() if v not in (None, "")}


def reconcile_age(
    age: int | None,
    birth: date | None,
    death: date | None,
    corrections: list[str],
) -> int | None:
    """Cross-check ``age`` against the dates, preferring the computed value."""
    if birth is None or death is None:
        return age
    computed = years_between(birth, death)
    if check_age(computed) is None:
        return age
    if age is None:
        corrections.append(f"age computed from dates: {computed}")
        return computed
    if abs(age - computed) > AGE_TOLERANCE:
        corrections.append(f"age {age} conflicts with dates; using computed {computed}")
        return computed
    return age


def extract_fields(
    payload: RewritePayload,
    today: date,
    known_death: str | None = None,
) -> ExtractedFields:
    """Apply every field rule to a parsed rewrite payload.

    ``known_death`` is the record's stored death date, used for the birth
    and age cross-checks when the response carries none.
    """
    result = ExtractedFields(rewritten_text=payload.rewritten_text)

    extracted_death = check_death_date(payload.date_of_death, today)
    if payload.date_of_death and extracted_death is None:
        result.rejected.append(f"date_of_death {payload.date_of_death!r}")
    death = extracted_death or check_death_date(known_death, today)

    birth = check_birth_date(payload.date_of_birth, death or today)
    if payload.date_of_birth and birth is None:
        result.rejected.append(f"date_of_birth {payload.date_of_birth!r}")
        parsed_birth = parse_calendar_date(payload.date_of_birth)
        if parsed_birth is not None and death is not None and parsed_birth >= death:
            result.corrections.append("birth date on or after death date; cleared")

    age = check_age(payload.age)
    if payload.age is not None and age is None:
        result.rejected.append(f"age {payload.age!r}")

    age = reconcile_age(age, birth, death, result.corrections)

    location = check_location(payload.location)
    if payload.location and location is None:
        result.rejected.append(f"location {payload.location!r}")

    organization = check_organization(payload.organization)
    if payload.organization and organization is None:
        result.rejected.append(f"organization {payload.organization!r}")

    result.date_of_death = extracted_death.isoformat() if extracted_death else None
    result.date_of_birth = birth.isoformat() if birth else None
    result.age = age
    result.location = location
    result.organization = organization

    if result.rejected:
        logger.info("extraction.fields_rejected", rejected=result.rejected)
    return result


__all__ = [
    "ExtractedFields",
    "extract_fields",
    "parse_calendar_date",
    "years_between",
    "check_death_date",
    "check_birth_date",
    "check_age",
    "check_location",
    "check_organization",
    "reconcile_age",
    "EARLIEST_DEATH_DATE",
    "EARLIEST_BIRTH_DATE",
]
