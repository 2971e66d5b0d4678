"""
Response schemas for the rewrite and audit calls.

LLM output is untrusted. Each call's JSON is validated into a pydantic model
with every optional field explicit; anything that cannot be shaped into the
model becomes a ``ParseFailure`` value rather than an exception, so callers
handle both variants with one ``isinstance`` branch.

Shape coercion happens here (e.g. ``"74"`` → ``74``, unknown issue types →
``quality``). Plausibility checks (date ranges, age bounds) live in
``extraction.py`` so each field can be rejected independently.

Examples:
    >>> parsed = parse_rewrite_response('```json\\n{"rewritten_text": "..."}\\n```')
    >>> isinstance(parsed, RewritePayload)
    True
    >>> parse_audit_response("not json").reason
    'json_parse_failed'
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

MAX_AUDIT_ISSUES = 5

IssueType = Literal["missing_fact", "fabrication", "field_mismatch", "tone", "age_error", "quality"]
Severity = Literal["critical", "warning", "info"]
Verdict = Literal["pass", "flagged"]
Recommendation = Literal["pass", "requeue", "admin_review"]

_ISSUE_TYPES = {"missing_fact", "fabrication", "field_mismatch", "tone", "age_error", "quality"}
_SEVERITIES = {"critical", "warning", "info"}
_VERDICT_SYNONYMS = {"pass": "pass", "passed": "pass", "ok": "pass", "flag": "flagged", "flagged": "flagged", "fail": "flagged", "failed": "flagged"}
_RECOMMENDATION_SYNONYMS = {
    "pass": "pass",
    "publish": "pass",
    "requeue": "requeue",
    "rewrite": "requeue",
    "retry": "requeue",
    "admin_review": "admin_review",
    "review": "admin_review",
    "hold": "admin_review",
}

_FENCE = re.compile(r"^\s*```[a-zA-Z]*\s*|\s*```\s*$")


@dataclass(frozen=True)
class ParseFailure:
    """An LLM response that could not be shaped into the expected model."""

    reason: str
    detail: str = ""
    excerpt: str = ""


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    return _FENCE.sub("", text.strip()).strip()


def _load_object(text: str) -> dict[str, Any] | ParseFailure:
    cleaned = strip_code_fences(text or "")
    excerpt = cleaned[:200]
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        return ParseFailure("json_parse_failed", str(e), excerpt)
    if not isinstance(data, dict):
        return ParseFailure("json_not_object", type(data).__name__, excerpt)
    return data


# =============================================================================
# REWRITE
# =============================================================================


class RewritePayload(BaseModel):
    """Structured extraction + rewrite output."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    rewritten_text: str = ""
    date_of_death: str | None = None
    date_of_birth: str | None = None
    age: int | None = None
    location: str | None = Field(default=None, validation_alias=AliasChoices("location", "city"))
    organization: str | None = Field(
        default=None, validation_alias=AliasChoices("organization", "funeral_home")
    )

    @field_validator("rewritten_text", mode="before")
    @classmethod
    def _text(cls, v: Any) -> str:
        return v.strip() if isinstance(v, str) else ""

    @field_validator("date_of_death", "date_of_birth", "location", "organization", mode="before")
    @classmethod
    def _optional_str(cls, v: Any) -> str | None:
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            v = str(v)
        if not isinstance(v, str):
            return None
        v = v.strip()
        return v or None

    @field_validator("age", mode="before")
    @classmethod
    def _age(cls, v: Any) -> int | None:
        if isinstance(v, bool) or v is None:
            return None
        if isinstance(v, int):
            return v
        if isinstance(v, float):
            return int(v) if v.is_integer() else None
        if isinstance(v, str) and v.strip().lstrip("-").isdigit():
            return int(v.strip())
        return None


def parse_rewrite_response(text: str) -> RewritePayload | ParseFailure:
    """Parse the rewrite call's JSON; a missing ``rewritten_text`` rejects it."""
    data = _load_object(text)
    if isinstance(data, ParseFailure):
        return data
    try:
        payload = RewritePayload.model_validate(data)
    except ValidationError as e:
        return ParseFailure("schema_invalid", str(e), json.dumps(data)[:200])
    if not payload.rewritten_text:
        return ParseFailure("missing_rewritten_text", "", json.dumps(data)[:200])
    return payload


# =============================================================================
# AUDIT
# =============================================================================


class AuditIssue(BaseModel):
    """One problem the auditor found."""

    model_config = ConfigDict(extra="ignore")

    type: IssueType = "quality"
    severity: Severity = "warning"
    detail: str = ""

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, v: Any) -> str:
        v = str(v or "").strip().lower()
        return v if v in _ISSUE_TYPES else "quality"

    @field_validator("severity", mode="before")
    @classmethod
    def _severity(cls, v: Any) -> str:
        v = str(v or "").strip().lower()
        return v if v in _SEVERITIES else "warning"

    @field_validator("detail", mode="before")
    @classmethod
    def _detail(cls, v: Any) -> str:
        return str(v or "").strip()[:300]


class AuditVerdict(BaseModel):
    """Parsed audit response."""

    model_config = ConfigDict(extra="ignore")

    status: Verdict
    issues: list[AuditIssue] = Field(default_factory=list)
    corrections: dict[str, Any] = Field(default_factory=dict)
    confidence: float = 0.0
    recommendation: Recommendation | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, v: Any) -> Any:
        if isinstance(v, str):
            return _VERDICT_SYNONYMS.get(v.strip().lower(), v)
        return v

    @field_validator("issues", mode="before")
    @classmethod
    def _issues(cls, v: Any) -> list[Any]:
        if not isinstance(v, list):
            return []
        shaped = []
        for item in v[:MAX_AUDIT_ISSUES]:
            if isinstance(item, str):
                shaped.append({"type": "quality", "severity": "warning", "detail": item})
            elif isinstance(item, dict):
                shaped.append(item)
        return shaped

    @field_validator("corrections", mode="before")
    @classmethod
    def _corrections(cls, v: Any) -> dict[str, Any]:
        return v if isinstance(v, dict) else {}

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, v: Any) -> float:
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.0
        if 1.0 < value <= 100.0:
            value /= 100.0
        return min(1.0, max(0.0, value))

    @field_validator("recommendation", mode="before")
    @classmethod
    def _recommendation(cls, v: Any) -> str | None:
        if not isinstance(v, str):
            return None
        return _RECOMMENDATION_SYNONYMS.get(v.strip().lower())

    @model_validator(mode="after")
    def _default_recommendation(self) -> AuditVerdict:
        if self.recommendation is None:
            self.recommendation = "pass" if self.status == "pass" else "admin_review"
        return self

    @property
    def critical_issues(self) -> list[AuditIssue]:
        return [i for i in self.issues if i.severity == "critical"]

    def summary(self, limit: int = 3) -> str:
        """Short human-readable reason for the next rewrite attempt."""
        ranked = sorted(self.issues, key=lambda i: ("critical", "warning", "info").index(i.severity))
        parts = [f"{i.type}: {i.detail}" if i.detail else i.type for i in ranked[:limit]]
        return "; ".join(parts)[:500]


def parse_audit_response(text: str) -> AuditVerdict | ParseFailure:
    """Parse the audit call's JSON. A missing or unknown ``status`` is a failure."""
    data = _load_object(text)
    if isinstance(data, ParseFailure):
        return data
    if "status" not in data:
        return ParseFailure("missing_status", "", json.dumps(data)[:200])
    try:
        return AuditVerdict.model_validate(data)
    except ValidationError as e:
        return ParseFailure("schema_invalid", str(e), json.dumps(data)[:200])


__all__ = [
    "ParseFailure",
    "RewritePayload",
    "AuditIssue",
    "AuditVerdict",
    "strip_code_fences",
    "parse_rewrite_response",
    "parse_audit_response",
    "MAX_AUDIT_ISSUES",
]
