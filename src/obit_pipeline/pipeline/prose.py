"""
Prose validation for rewritten text.

Hard rejects (the rewrite is discarded and counts toward quarantine):

- length outside the configured bounds
- implausible data such as "age 0" or a year used as an age
- generation artifacts: meta-commentary, apologies, disclaimers
- no mention of the subject's first name, last name or nickname

Soft warnings (logged, the rewrite is kept): the death year, the age or the
location city is not mentioned.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from obit_pipeline.pipeline.extraction import ExtractedFields

IMPLAUSIBLE_PATTERNS = [
    re.compile(r"\b(?:age|aged)\s+0\b", re.IGNORECASE),
    re.compile(r"\bat the age of 0\b", re.IGNORECASE),
    re.compile(r"\bin (?:his|her|their) (?:0|1)(?:st)? year\b", re.IGNORECASE),
    re.compile(r"\b(?:age|aged)\s+(?:18|19|20)\d{2}\b", re.IGNORECASE),
    re.compile(r"\bat the age of (?:18|19|20)\d{2}\b", re.IGNORECASE),
]

ARTIFACT_PHRASES = [
    "as an ai",
    "i cannot",
    "i'm sorry",
    "language model",
    "here is",
    "here's the rewritten",
    "certainly!",
    "sure!",
    "of course!",
    "i'd be happy",
    "i am an",
    "note:",
    "disclaimer:",
]

_TITLES = {"mr", "mrs", "ms", "miss", "dr", "rev", "sister", "brother"}
_SUFFIXES = {"jr", "sr", "ii", "iii", "iv", "v"}
_NICKNAME = re.compile(r"\(([^)]+)\)|\"([^\"]+)\"|“([^”]+)”")


@dataclass
class ProseCheck:
    """Result of validating one rewritten text."""

    ok: bool
    reason: str | None = None
    detail: str = ""
    warnings: list[str] = field(default_factory=list)


def name_candidates(name: str) -> list[str]:
    """Name parts the text must mention at least one of.

    Last name first, then first name, then any quoted or parenthetical
    nicknames. Titles and generational suffixes are ignored.
    """
    nicknames = [next(g for g in m.groups() if g).strip() for m in _NICKNAME.finditer(name or "")]
    base = _NICKNAME.sub(" ", name or "")
    parts = [p.strip(".,").strip() for p in base.replace(",", " ").split()]
    parts = [p for p in parts if p]
    while parts and parts[0].lower().rstrip(".") in _TITLES:
        parts.pop(0)
    while parts and parts[-1].lower().rstrip(".") in _SUFFIXES:
        parts.pop()

    candidates: list[str] = []
    if parts:
        candidates.append(parts[-1])
        if len(parts) > 1:
            candidates.append(parts[0])
    candidates.extend(nicknames)
    return [c for c in candidates if len(c) >= 2]


def mentions_name(text: str, name: str) -> bool:
    candidates = name_candidates(name)
    if not candidates:
        return True
    return any(
        re.search(rf"(?<!\w){re.escape(candidate)}(?!\w)", text, re.IGNORECASE)
        for candidate in candidates
    )


def validate_rewrite(
    text: str,
    name: str,
    fields: ExtractedFields | None = None,
    *,
    min_chars: int = 50,
    max_chars: int = 5000,
) -> ProseCheck:
    """Check a rewritten text; see the module docstring for the rules."""
    stripped = (text or "").strip()
    if len(stripped) < min_chars:
        return ProseCheck(False, "too_short", f"{len(stripped)} < {min_chars} chars")
    if len(stripped) > max_chars:
        return ProseCheck(False, "too_long", f"{len(stripped)} > {max_chars} chars")

    for pattern in IMPLAUSIBLE_PATTERNS:
        match = pattern.search(stripped)
        if match:
            return ProseCheck(False, "implausible_data", match.group(0))

    lowered = stripped.lower()
    for phrase in ARTIFACT_PHRASES:
        if phrase in lowered:
            return ProseCheck(False, "llm_artifact", phrase)

    if not mentions_name(stripped, name):
        return ProseCheck(False, "name_missing", name)

    warnings: list[str] = []
    if fields is not None:
        if fields.date_of_death:
            year = fields.date_of_death[:4]
            if year not in stripped:
                warnings.append(f"death year {year} not mentioned")
        if fields.age is not None and not re.search(rf"\b{fields.age}\b", stripped):
            warnings.append(f"age {fields.age} not mentioned")
        if fields.location:
            city = fields.location.split(",")[0].strip()
            if city and city.lower() not in lowered:
                warnings.append(f"location {city} not mentioned")

    return ProseCheck(True, warnings=warnings)


__all__ = ["ProseCheck", "validate_rewrite", "name_candidates", "mentions_name"]
