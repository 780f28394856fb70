"""
Data types for the context engine.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .errors import ValidationError


# Closed set of record types. Order is display order, not priority.
RECORD_TYPES = ("fact", "decision", "code", "config", "note")

DEFAULT_LIMIT = 20
MAX_LIMIT = 1000

MAX_TAG_LENGTH = 128

# Rough chars-per-token ratio used for budget estimates (not a tokenizer)
DEFAULT_CHARS_PER_TOKEN = 4


def utc_now() -> str:
    """Current UTC timestamp: ISO 8601 with microseconds and offset.

    Microseconds keep updates within the same second strictly ordered.
    """
    return datetime.now(timezone.utc).isoformat()


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Accepts a 'Z' suffix and naive timestamps (assumed UTC).
    """
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def estimate_tokens(text: str, chars_per_token: int = DEFAULT_CHARS_PER_TOKEN) -> int:
    """Approximate token count: ceil(len / chars_per_token)."""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


def clamp_limit(limit: Optional[int], default: int = DEFAULT_LIMIT) -> int:
    """Apply the default and clamp into [1, MAX_LIMIT]."""
    if limit is None:
        return default
    return max(1, min(int(limit), MAX_LIMIT))


def validate_record_type(type: str) -> str:
    """Return the type if it is one of RECORD_TYPES, else raise ValidationError."""
    if type not in RECORD_TYPES:
        raise ValidationError(
            f"Invalid record type: {type!r} (expected one of {', '.join(RECORD_TYPES)})"
        )
    return type


def validate_content(content: str) -> str:
    if not isinstance(content, str) or not content.strip():
        raise ValidationError("Record content must be a non-empty string")
    return content


def normalize_tags(tags) -> list[str]:
    """Strip tags, drop empties and duplicates (first occurrence wins)."""
    if tags is None:
        return []
    if isinstance(tags, str):
        raise ValidationError("Tags must be a list of strings, not a single string")
    result: list[str] = []
    seen: set[str] = set()
    for tag in tags:
        if not isinstance(tag, str):
            raise ValidationError(f"Tag must be a string: {tag!r}")
        tag = tag.strip()
        if not tag:
            continue
        if len(tag) > MAX_TAG_LENGTH:
            raise ValidationError(f"Tag too long (max {MAX_TAG_LENGTH}): {tag[:20]!r}...")
        if tag not in seen:
            seen.add(tag)
            result.append(tag)
    return result


def validate_metadata(metadata) -> dict[str, Any]:
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise ValidationError("Metadata must be a mapping")
    return dict(metadata)


@dataclass(frozen=True)
class Record:
    """
    A stored unit of project context.

    Records are created only by the store. `id`, `project_id` and the
    timestamps are assigned there; callers supply the rest.
    """
    id: int
    content: str
    type: str
    project_id: str
    tags: list[str] = field(default_factory=list)
    source: str = "manual"
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "type": self.type,
            "project_id": self.project_id,
            "tags": list(self.tags),
            "source": self.source,
            "metadata": dict(self.metadata),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class StoreStats:
    """Record counts for one project."""
    total: int
    by_type: dict[str, int]
    project_id: str
    embedded: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "by_type": dict(self.by_type),
            "project_id": self.project_id,
            "embedded": self.embedded,
        }


@dataclass(frozen=True)
class ScoredCandidate:
    """A record with its composite relevance score and contributing signals."""
    record: Record
    score: float
    explanation: str = ""
    signals: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "record": self.record.to_dict(),
            "score": round(self.score, 4),
            "explanation": self.explanation,
            "signals": {k: round(v, 4) for k, v in self.signals.items()},
        }


@dataclass(frozen=True)
class GuardFinding:
    """A detected sensitive-data category and how many matches it had.

    Never carries the matched text.
    """
    category: str
    count: int

    def to_dict(self) -> dict[str, Any]:
        return {"category": self.category, "count": self.count}


@dataclass(frozen=True)
class GuardResult:
    content: str
    was_filtered: bool
    findings: list[GuardFinding] = field(default_factory=list)
    mode: str = "redact"

    @property
    def total_findings(self) -> int:
        return sum(f.count for f in self.findings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "was_filtered": self.was_filtered,
            "findings": [f.to_dict() for f in self.findings],
            "mode": self.mode,
        }


SOURCE_TYPES = ("memory", "file", "url", "inline")

# Alternative names accepted on input
SOURCE_TYPE_ALIASES = {"session": "inline", "memories": "memory", "text": "inline"}


@dataclass
class FusionSource:
    """
    One declared input to fusion.

    Which field carries the payload depends on `type`: `query` for memory
    sources, `path` for files, `url` for remote resources and `content`
    for inline text.
    """
    type: str
    query: Optional[str] = None
    path: Optional[str] = None
    url: Optional[str] = None
    content: Optional[str] = None
    priority: int = 0
    max_tokens: Optional[int] = None
    limit: Optional[int] = None
    tags: Optional[list[str]] = None
    label: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FusionSource":
        """Build a source from a plain mapping (as front ends send it)."""
        if not isinstance(data, dict):
            raise ValidationError("Fusion source must be a mapping")
        known = {
            "type", "query", "path", "url", "content", "priority",
            "max_tokens", "limit", "tags", "label",
        }
        unknown = set(data) - known
        if unknown:
            raise ValidationError(f"Unknown fusion source fields: {', '.join(sorted(unknown))}")
        if "type" not in data:
            raise ValidationError("Fusion source requires a type")
        return cls(**data)

    def describe(self) -> str:
        """Short provenance label for attribution and rendering."""
        if self.label:
            return self.label
        if self.type == "memory":
            return f"memory:{self.query or ''}"
        if self.type == "file":
            return self.path or ""
        if self.type == "url":
            return self.url or ""
        return "inline"


@dataclass(frozen=True)
class FusedPart:
    """One included span of fused output."""
    type: str
    source: str
    priority: int
    content: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "source": self.source,
            "priority": self.priority,
            "content": self.content,
        }


@dataclass
class SourceAttribution:
    """What one declared source contributed to fused output."""
    index: int
    type: str
    label: str
    status: str = "ok"
    spans: int = 0
    tokens: int = 0
    findings: list[GuardFinding] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        d = {
            "index": self.index,
            "type": self.type,
            "label": self.label,
            "status": self.status,
            "spans": self.spans,
            "tokens": self.tokens,
            "findings": [f.to_dict() for f in self.findings],
        }
        if self.error:
            d["error"] = self.error
        return d


@dataclass(frozen=True)
class FusedOutput:
    content: str
    sources: list[SourceAttribution]
    total_tokens: int
    truncated: bool
    format: str = "text"
    dedupe: str = "none"
    parts: list[FusedPart] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "sources": [s.to_dict() for s in self.sources],
            "total_tokens": self.total_tokens,
            "truncated": self.truncated,
            "format": self.format,
            "dedupe": self.dedupe,
            "parts": [p.to_dict() for p in self.parts],
            "warnings": list(self.warnings),
        }
