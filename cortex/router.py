"""
Context router: rank stored records against a task description.

Ranking is a weighted combination of independent signals. Each signal
maps a candidate to a value in [0, 1], or None when it has nothing to say
about that candidate (no embedding, no requested tags, no current file).
The composite score is the weighted mean over active signals, so weights
of inactive signals are redistributed proportionally and the composite
always stays in [0, 1].
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Callable, Optional

from .errors import CortexError, ValidationError
from .protocol import RecordStoreProtocol
from .providers.embeddings import cosine_similarity
from .types import (
    Record,
    ScoredCandidate,
    clamp_limit,
    estimate_tokens,
    parse_utc_timestamp,
    validate_record_type,
)

logger = logging.getLogger(__name__)


DEFAULT_WEIGHTS = {
    "semantic": 0.40,
    "keyword": 0.20,
    "recency": 0.15,
    "tags": 0.15,
    "type": 0.10,
    "path": 0.10,
}

# Long-term relevance by record type
TYPE_PRIORITY = {
    "decision": 1.0,
    "fact": 0.8,
    "code": 0.7,
    "config": 0.6,
    "note": 0.5,
}

DEFAULT_HALF_LIFE_DAYS = 30.0
DEFAULT_ROUTE_LIMIT = 5
DEFAULT_OVERFETCH = 3

MIN_KEYWORD_LENGTH = 3

STOP_WORDS = frozenset("""
    the a an is are was were be been being have has had do does did will would
    could should may might must shall can need dare to of in for on with at by
    from as into through during before after above below between under again
    further then once here there when where why how all each few more most other
    some such no nor not only own same so than too very just and but if or
    because until while although though i me my myself we our you your he she
    it its they them what which who whom this that these those am about against
    any both implement implementing create creating add adding work working
    make making get getting set setting
""".split())

_NON_WORD_RE = re.compile(r"[^a-z0-9\s_-]")


def extract_keywords(task: str) -> list[str]:
    """Salient lower-case keywords of a task, in first-appearance order."""
    tokens = _NON_WORD_RE.sub(" ", (task or "").lower()).split()
    keywords: list[str] = []
    for token in tokens:
        if len(token) >= MIN_KEYWORD_LENGTH and token not in STOP_WORDS and token not in keywords:
            keywords.append(token)
    return keywords


def _path_parts(path: str) -> list[str]:
    return [p for p in path.replace("\\", "/").lower().split("/") if p and p != "."]


@dataclass
class RouteContext:
    """Per-call inputs shared by all signal functions."""
    keywords: list[str]
    tags: list[str] = field(default_factory=list)
    current_file: Optional[str] = None
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    half_life_days: float = DEFAULT_HALF_LIFE_DAYS
    task_vector: Optional[list[float]] = None
    vectors: dict[int, list[float]] = field(default_factory=dict)


# -----------------------------------------------------------------------------
# Signals
# -----------------------------------------------------------------------------

def age_days(record: Record, now: datetime) -> float:
    """Days since the record was last updated (created, if never updated)."""
    stamp = record.updated_at or record.created_at
    if not stamp:
        return 0.0
    try:
        elapsed = (now - parse_utc_timestamp(stamp)).total_seconds() / 86400
    except (ValueError, TypeError):
        return 0.0
    return max(0.0, elapsed)


def recency_signal(record: Record, ctx: RouteContext) -> Optional[float]:
    """Exponential decay: 0.5 ** (age_days / half_life)."""
    if ctx.half_life_days <= 0:
        return None
    return 0.5 ** (age_days(record, ctx.now) / ctx.half_life_days)


def keyword_signal(record: Record, ctx: RouteContext) -> Optional[float]:
    """Fraction of task keywords literally present in the content."""
    if not ctx.keywords:
        return None
    content = record.content.lower()
    return sum(1 for k in ctx.keywords if k in content) / len(ctx.keywords)


def tag_signal(record: Record, ctx: RouteContext) -> Optional[float]:
    """Fraction of requested tags present on the record."""
    if not ctx.tags:
        return None
    have = {t.lower() for t in record.tags}
    return sum(1 for t in ctx.tags if t in have) / len(ctx.tags)


def type_signal(record: Record, ctx: RouteContext) -> Optional[float]:
    return TYPE_PRIORITY.get(record.type, 0.5)


def path_signal(record: Record, ctx: RouteContext) -> Optional[float]:
    """Relatedness of the record's source/tags to the current file.

    1.0 for an exact reference to the file; otherwise shared directory
    components, a third each, capped at 1.
    """
    if not ctx.current_file:
        return None
    target = "/".join(_path_parts(ctx.current_file))
    references = [r for r in [record.source, *record.tags] if r]
    if any("/".join(_path_parts(r)) == target for r in references):
        return 1.0
    directory = set(_path_parts(str(PurePosixPath(target).parent)))
    best = 0
    for ref in references:
        best = max(best, sum(1 for part in _path_parts(ref) if part in directory))
    return min(1.0, best / 3)


def semantic_signal(record: Record, ctx: RouteContext) -> Optional[float]:
    """Cosine similarity of task and record vectors, mapped to [0, 1]."""
    if ctx.task_vector is None:
        return None
    vector = ctx.vectors.get(record.id)
    if vector is None or len(vector) != len(ctx.task_vector):
        return None
    return (cosine_similarity(ctx.task_vector, vector) + 1) / 2


SIGNALS: dict[str, Callable[[Record, RouteContext], Optional[float]]] = {
    "semantic": semantic_signal,
    "keyword": keyword_signal,
    "recency": recency_signal,
    "tags": tag_signal,
    "type": type_signal,
    "path": path_signal,
}


def validate_weights(weights: Optional[dict[str, float]]) -> dict[str, float]:
    """Merge overrides into DEFAULT_WEIGHTS. Unknown names or negatives are errors."""
    merged = dict(DEFAULT_WEIGHTS)
    for name, value in (weights or {}).items():
        if name not in SIGNALS:
            raise ValidationError(
                f"Unknown router signal: {name!r} (expected one of {', '.join(SIGNALS)})"
            )
        value = float(value)
        if value < 0:
            raise ValidationError(f"Router weight for {name!r} must be non-negative")
        merged[name] = value
    return merged


def composite_score(signals: dict[str, float], weights: dict[str, float]) -> float:
    """Weighted mean of the active signals; 0.0 when none carry weight."""
    total = sum(weights[name] for name in signals)
    if total <= 0:
        return 0.0
    return sum(weights[name] * value for name, value in signals.items()) / total


class ContextRouter:
    """
    Turns a task description into a ranked, size-capped list of records.

    Stateless between calls: results depend only on the store contents
    and the arguments.
    """

    def __init__(
        self,
        store: RecordStoreProtocol,
        *,
        weights: Optional[dict[str, float]] = None,
        half_life_days: float = DEFAULT_HALF_LIFE_DAYS,
        default_limit: int = DEFAULT_ROUTE_LIMIT,
        overfetch: int = DEFAULT_OVERFETCH,
    ):
        self._store = store
        self._weights = validate_weights(weights)
        self._half_life_days = half_life_days
        self._default_limit = default_limit
        self._overfetch = max(1, overfetch)

    @property
    def weights(self) -> dict[str, float]:
        return dict(self._weights)

    def route(
        self,
        task: str,
        *,
        current_file: Optional[str] = None,
        tags: Optional[list[str]] = None,
        type: Optional[str] = None,
        limit: Optional[int] = None,
        max_tokens: Optional[int] = None,
    ) -> list[Record]:
        """Records most relevant to the task, best first."""
        return [
            c.record for c in self.route_with_scores(
                task,
                current_file=current_file,
                tags=tags,
                type=type,
                limit=limit,
                max_tokens=max_tokens,
            )
        ]

    def route_with_scores(
        self,
        task: str,
        *,
        current_file: Optional[str] = None,
        tags: Optional[list[str]] = None,
        type: Optional[str] = None,
        limit: Optional[int] = None,
        max_tokens: Optional[int] = None,
    ) -> list[ScoredCandidate]:
        """
        Rank candidates and explain each score.

        Args:
            task: Free-text task description
            current_file: Path being worked on; enables the path signal
            tags: Tags to prefer (a ranking signal, not a filter)
            type: Restrict candidates to one record type
            limit: Maximum results (default 5)
            max_tokens: Stop adding results once their estimated size would
                exceed this budget

        Returns:
            Candidates sorted by score, then most recently updated
        """
        if type is not None:
            validate_record_type(type)
        limit = clamp_limit(limit, self._default_limit)
        fetch = clamp_limit(limit * self._overfetch)
        keywords = extract_keywords(task)

        if keywords:
            candidates = self._store.search(" ".join(keywords), type=type, limit=fetch)
        else:
            # Nothing salient to match: rank recent records by the other signals
            candidates = self._store.list(type=type, limit=fetch)
        if not candidates:
            return []

        ctx = RouteContext(
            keywords=keywords,
            tags=[t.strip().lower() for t in (tags or []) if t and t.strip()],
            current_file=current_file,
            half_life_days=self._half_life_days,
        )
        self._attach_vectors(task, candidates, ctx)

        active = {name: fn for name, fn in SIGNALS.items() if self._weights[name] > 0}
        scored: list[ScoredCandidate] = []
        for record in candidates:
            signals = {}
            for name, fn in active.items():
                value = fn(record, ctx)
                if value is not None:
                    signals[name] = value
            scored.append(ScoredCandidate(
                record=record,
                score=composite_score(signals, self._weights),
                explanation=self._explain(record, ctx, signals),
                signals=signals,
            ))

        scored.sort(
            key=lambda c: (c.score, c.record.updated_at, c.record.id),
            reverse=True,
        )
        results = scored[:limit]

        if max_tokens is not None:
            budgeted: list[ScoredCandidate] = []
            used = 0
            for candidate in results:
                cost = estimate_tokens(candidate.record.content)
                if used + cost > max_tokens:
                    break
                budgeted.append(candidate)
                used += cost
            results = budgeted

        logger.debug(
            "Routed task: %d keywords, %d candidates, %d results",
            len(keywords), len(candidates), len(results),
        )
        return results

    def _attach_vectors(self, task: str, candidates: list[Record], ctx: RouteContext) -> None:
        """Fill task and record vectors when a provider is attached.

        Any embedding failure disables the semantic signal for this call.
        """
        provider = self._store.embedding_provider
        if provider is None or self._weights["semantic"] <= 0 or not (task or "").strip():
            return
        try:
            ctx.task_vector = provider.embed(task)
        except (CortexError, OSError, ValueError, RuntimeError) as e:
            logger.warning("Task embedding failed (%s); ranking without semantic signal",
                           type(e).__name__)
            return
        ctx.vectors = self._store.embeddings_for([r.id for r in candidates])

    @staticmethod
    def _explain(record: Record, ctx: RouteContext, signals: dict[str, float]) -> str:
        reasons: list[str] = []
        if "semantic" in signals:
            reasons.append("mode:hybrid")
        reasons.append(f"type:{record.type}")

        content = record.content.lower()
        matched = [k for k in ctx.keywords if k in content]
        if matched:
            reasons.append(f"keywords:[{','.join(matched[:3])}]")

        if ctx.tags:
            have = {t.lower() for t in record.tags}
            tag_matches = [t for t in ctx.tags if t in have]
            if tag_matches:
                reasons.append(f"tags:[{','.join(tag_matches)}]")

        if signals.get("path"):
            reasons.append("path:match")

        days = int(age_days(record, ctx.now))
        if days == 0:
            reasons.append("recent:today")
        elif days < 7:
            reasons.append(f"recent:{days}d")

        if "semantic" in signals:
            reasons.append(f"similarity:{signals['semantic']:.2f}")
        return " ".join(reasons)
