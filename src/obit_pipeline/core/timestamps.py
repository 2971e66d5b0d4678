"""
ULID generation and timestamp utilities (stdlib-only).

Every timestamp the pipeline writes goes through ``to_iso8601`` so that
stored values share one fixed-width UTC format and compare correctly as
strings inside SQL ``WHERE`` clauses (quarantine windows, lock expiry,
audit staleness).

Features:
    - **utc_now():** Timezone-aware UTC datetime
    - **to_iso8601() / from_iso8601():** Fixed-width serialization round-trip
    - **generate_ulid():** Time-sortable ids for run ids and lock holders

Tags:
    timestamps, ulid, utc, datetime, stdlib-only
"""

import random
import time
from datetime import UTC, datetime


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def to_iso8601(dt: datetime | None) -> str | None:
    """Convert datetime to a fixed-width UTC ISO 8601 string.

    Naive datetimes are assumed to be UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def from_iso8601(s: str | None) -> datetime | None:
    """Parse ISO 8601 string to an aware UTC datetime."""
    if s is None:
        return None
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def generate_ulid() -> str:
    """
    Generate a ULID-like identifier.

    Format: 26 characters, base32 encoded, time-sortable.
    """
    timestamp_ms = int(time.time() * 1000)
    timestamp_chars = _encode_base32(timestamp_ms, 10)
    random_part = "".join(random.choices(_ENCODING, k=16))
    return timestamp_chars + random_part


# Crockford base32
_ENCODING = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_ENCODING_LEN = len(_ENCODING)


def _encode_base32(value: int, length: int) -> str:
    """Encode integer to base32 string of fixed length."""
    result = []
    for _ in range(length):
        result.append(_ENCODING[value % _ENCODING_LEN])
        value //= _ENCODING_LEN
    return "".join(reversed(result))
