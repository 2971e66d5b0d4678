"""Prompt builders for the rewrite and audit calls."""

from __future__ import annotations

from obit_pipeline.core.records import Record
from obit_pipeline.llm.protocol import Message

REWRITE_SYSTEM_PROMPT = """\
You read an obituary, pull out its key facts and rewrite it as calm, dignified prose for a public memorial directory.

Answer with a single JSON object and nothing else:
{
  "date_of_death": "YYYY-MM-DD" or null,
  "date_of_birth": "YYYY-MM-DD" or null,
  "age": integer or null,
  "location": "city" or null,
  "organization": "funeral home name" or null,
  "rewritten_text": "the rewritten obituary"
}

Extraction:
- The ORIGINAL TEXT is the only source of truth. HINTS come from an automatic parser and can be wrong.
- "In his/her Nth year" means the age is N-1.
- Age must be an integer from 1 to 120. If the text states no age, return null. Never return 0.
- Dates must exist on the calendar. A funeral or visitation date is not the date of death.
- Only return a location or funeral home that the text names explicitly.

Rewriting:
- Keep every fact: full name, dates, places, funeral home, age, survivors, those predeceased.
- State the date of death and the age in the prose when they are known. If the age is unknown, leave it out.
- Never add people, pastimes, traits or causes of death that the original does not mention.
- A year in parentheses after a relative's name means that relative has died ("predeceased by").
- Two to four paragraphs of plain third-person prose. No headings, lists or markdown.
- A sparse original gets a short rewrite. Do not pad.
- Plain, respectful wording. No slang, no sentimental filler, no condolences, no commentary about the text itself.
"""

AUDIT_SYSTEM_PROMPT = """\
You are a fact-checker for a memorial directory. Compare a REWRITTEN obituary against its ORIGINAL TEXT and the STRUCTURED FIELDS.

Answer with a single JSON object and nothing else:
{
  "status": "pass" or "flagged",
  "issues": [
    {"type": "missing_fact" | "fabrication" | "field_mismatch" | "tone" | "age_error" | "quality",
     "severity": "critical" | "warning" | "info",
     "detail": "one short sentence"}
  ],
  "corrections": {"date_of_death": "YYYY-MM-DD", "date_of_birth": "YYYY-MM-DD", "age": 0, "location": "city"},
  "confidence": number from 0 to 1,
  "recommendation": "pass" | "requeue" | "admin_review"
}

Rules:
- "fabrication": the rewrite states something the original does not support.
- "missing_fact": the rewrite drops a name, date, place or relationship the original gives.
- "field_mismatch" / "age_error": a structured field disagrees with the original text.
- Only include a correction when the original text states the correct value outright. Omit uncertain ones.
- Recommend "requeue" when a fresh rewrite would likely fix the problem, "admin_review" when a person must decide.
- Minor stylistic differences are not issues. Return "pass" with an empty issue list when the rewrite is faithful.
"""


def _hints(record: Record) -> list[str]:
    hints = [f"Name: {record.name}"]
    if record.date_of_death:
        hints.append(f"Date of death (parser, may be wrong): {record.date_of_death}")
    if record.date_of_birth:
        hints.append(f"Date of birth (parser, may be wrong): {record.date_of_birth}")
    if record.age:
        hints.append(f"Age (parser, may be wrong): {record.age}")
    if record.location:
        hints.append(f"Location (parser, may be wrong): {record.location}")
    if record.organization:
        hints.append(f"Funeral home: {record.organization}")
    return hints


def build_rewrite_messages(record: Record) -> list[Message]:
    """System + user messages for the extraction/rewrite call.

    A record sent back by the audit stage carries the auditor's reason,
    which is passed along so the next attempt can avoid the same problem.
    """
    parts = ["HINTS (verify against the original text):", *_hints(record)]
    if record.audit_reason:
        parts += ["", f"A previous rewrite was rejected by the fact-checker: {record.audit_reason}"]
    parts += ["", "ORIGINAL TEXT:", record.original_text or ""]
    return [Message.system(REWRITE_SYSTEM_PROMPT), Message.user("\n".join(parts))]


def build_audit_messages(record: Record) -> list[Message]:
    """System + user messages for the fact-fidelity audit call."""
    fields = [
        f"date_of_death: {record.date_of_death or 'unknown'}",
        f"date_of_birth: {record.date_of_birth or 'unknown'}",
        f"age: {record.age if record.age is not None else 'unknown'}",
        f"location: {record.location or 'unknown'}",
        f"organization: {record.organization or 'unknown'}",
    ]
    user = "\n".join(
        [
            f"NAME: {record.name}",
            "",
            "STRUCTURED FIELDS:",
            *fields,
            "",
            "ORIGINAL TEXT:",
            record.original_text or "",
            "",
            "REWRITTEN TEXT:",
            record.rewritten_text or "",
        ]
    )
    return [Message.system(AUDIT_SYSTEM_PROMPT), Message.user(user)]


__all__ = [
    "REWRITE_SYSTEM_PROMPT",
    "AUDIT_SYSTEM_PROMPT",
    "build_rewrite_messages",
    "build_audit_messages",
]
