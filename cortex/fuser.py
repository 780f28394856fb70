"""
Context fuser: merge several declared sources into one bounded output.

Pipeline per call:
1. Resolve each source to text spans (records, files, urls, inline text).
   Files and urls resolve on worker threads under a deadline.
2. Guard every span that did not come from the record store.
3. Order sources by priority, stable on declaration order.
4. Deduplicate spans (none / exact / semantic).
5. Apply per-source budgets, then the global budget on the rendered output.
6. Render as text, markdown or json.

A source that fails to resolve contributes nothing and is reported in the
attribution; only genuine store errors abort fusion.
"""

import json
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from .errors import CortexError, ProviderTimeout, SourceUnavailable, ValidationError
from .guard import ContextGuard
from .protocol import RecordStoreProtocol, RouterProtocol
from .providers.base import DocumentProvider, EmbeddingProvider
from .providers.embeddings import cosine_similarity
from .types import (
    DEFAULT_CHARS_PER_TOKEN,
    SOURCE_TYPE_ALIASES,
    SOURCE_TYPES,
    FusedOutput,
    FusedPart,
    FusionSource,
    Record,
    SourceAttribution,
    estimate_tokens,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4000
DEFAULT_SOURCE_TIMEOUT = 10.0
DEFAULT_MEMORY_LIMIT = 5
DEFAULT_SEMANTIC_THRESHOLD = 0.92
DEFAULT_GUARD_FILTERS = ("api_keys", "secrets", "urls_auth")

DEDUPE_STRATEGIES = ("none", "exact", "semantic")
OUTPUT_FORMATS = ("text", "markdown", "json")
GUARDED_TYPES = frozenset({"file", "url", "inline"})

# A partial span must keep at least this many characters, else it is omitted
MIN_PARTIAL_CHARS = 100
ELLIPSIS = "..."

# Poll interval while waiting on external sources, for prompt cancellation
_WAIT_SLICE = 0.05
_MAX_WORKERS = 8


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def format_record(record: Record) -> str:
    """One-line span for a stored record: `[type] [tag, tag] content`."""
    tags = f" [{', '.join(record.tags)}]" if record.tags else ""
    return f"[{record.type}]{tags} {record.content}"


@dataclass
class _Span:
    source_index: int
    text: str


@dataclass
class _Resolved:
    """Working state for one declared source."""
    index: int
    source: FusionSource
    attribution: SourceAttribution
    spans: list[str] = field(default_factory=list)


def render(parts: list[FusedPart], format: str) -> str:
    """Render parts; content and attribution don't depend on the format."""
    if format == "json":
        return json.dumps([p.to_dict() for p in parts], ensure_ascii=False)
    if format == "markdown":
        groups: dict[str, list[str]] = {}
        for part in parts:
            groups.setdefault(part.type, []).append(part.content)
        return "\n\n".join(
            f"### {type_.upper()}\n\n" + "\n\n".join(contents)
            for type_, contents in groups.items()
        )
    return "\n\n".join(f"[{p.type}] {p.content}" for p in parts)


class ContextFuser:
    """
    Combines records, files, urls and inline text into one attributed,
    token-bounded output.
    """

    def __init__(
        self,
        store: Optional[RecordStoreProtocol] = None,
        router: Optional[RouterProtocol] = None,
        guard: Optional[ContextGuard] = None,
        document_provider: Optional[DocumentProvider] = None,
        *,
        embedding_provider: Optional[EmbeddingProvider] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        chars_per_token: int = DEFAULT_CHARS_PER_TOKEN,
        source_timeout: float = DEFAULT_SOURCE_TIMEOUT,
        dedupe: str = "exact",
        format: str = "text",
        guard_filters: Optional[Iterable[str]] = None,
        guard_mode: str = "redact",
        semantic_threshold: float = DEFAULT_SEMANTIC_THRESHOLD,
    ):
        self._store = store
        self._router = router
        self._guard = guard or ContextGuard()
        self._documents = document_provider
        self._embedding_provider = embedding_provider
        self.max_tokens = max_tokens
        self.chars_per_token = max(1, chars_per_token)
        self.source_timeout = source_timeout
        self.dedupe = dedupe
        self.format = format
        self.guard_filters = list(guard_filters or DEFAULT_GUARD_FILTERS)
        self.guard_mode = guard_mode
        self.semantic_threshold = semantic_threshold

    @property
    def documents(self) -> DocumentProvider:
        if self._documents is None:
            from .providers.documents import CompositeDocumentProvider
            self._documents = CompositeDocumentProvider()
        return self._documents

    @property
    def embedding_provider(self) -> Optional[EmbeddingProvider]:
        if self._embedding_provider is not None:
            return self._embedding_provider
        if self._store is not None:
            return self._store.embedding_provider
        return None

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def fuse(
        self,
        sources: list[FusionSource | dict[str, Any]],
        *,
        max_tokens: Optional[int] = None,
        dedupe: Optional[str] = None,
        format: Optional[str] = None,
        guard_filters: Optional[Iterable[str]] = None,
        guard_mode: Optional[str] = None,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> FusedOutput:
        """
        Fuse sources into one output.

        Args:
            sources: FusionSource objects or equivalent mappings
            max_tokens: Global budget on the rendered output
            dedupe: "none", "exact" or "semantic"
            format: "text", "markdown" or "json"
            guard_filters: Guard categories for non-store sources
            guard_mode: Guard mode for non-store sources
            timeout: Deadline in seconds for file/url resolution
            cancel: Set to stop resolving sources; unresolved ones are
                reported as cancelled

        Raises:
            ValidationError: Malformed sources or options
            StorageFailure: The record store failed while resolving a
                memory source
        """
        max_tokens = self.max_tokens if max_tokens is None else max_tokens
        dedupe = dedupe or self.dedupe
        format = format or self.format
        guard_mode = guard_mode or self.guard_mode
        filters = list(guard_filters) if guard_filters is not None else self.guard_filters
        timeout = self.source_timeout if timeout is None else timeout

        if not isinstance(max_tokens, int) or max_tokens < 1:
            raise ValidationError(f"max_tokens must be a positive integer, got {max_tokens!r}")
        if dedupe not in DEDUPE_STRATEGIES:
            raise ValidationError(
                f"Invalid dedupe strategy: {dedupe!r} (expected one of {', '.join(DEDUPE_STRATEGIES)})"
            )
        if format not in OUTPUT_FORMATS:
            raise ValidationError(
                f"Invalid output format: {format!r} (expected one of {', '.join(OUTPUT_FORMATS)})"
            )

        declared = [self._normalize_source(s) for s in sources]
        resolved = [
            _Resolved(i, s, SourceAttribution(index=i, type=s.type, label=s.describe()))
            for i, s in enumerate(declared)
        ]
        warnings: list[str] = []

        started = time.monotonic()
        self._resolve(resolved, timeout, cancel)
        if cancel is not None and cancel.is_set():
            warnings.append("cancelled: unresolved sources were skipped")
        self._apply_guard(resolved, filters, guard_mode)

        ordered = sorted(resolved, key=lambda r: (-r.source.priority, r.index))
        spans = [_Span(r.index, text) for r in ordered for text in r.spans]

        dedupe_used = dedupe
        if dedupe == "semantic":
            spans, dedupe_used = self._dedupe_semantic(spans, warnings)
        elif dedupe == "exact":
            spans = self._dedupe_exact(spans)

        by_index = {r.index: r for r in resolved}
        kept_per_source: dict[int, int] = {}
        for span in spans:
            kept_per_source[span.source_index] = kept_per_source.get(span.source_index, 0) + 1
        for r in resolved:
            if r.attribution.status == "ok" and r.spans and not kept_per_source.get(r.index):
                r.attribution.status = "duplicate"

        spans, truncated = self._apply_source_budgets(spans, by_index)
        parts, budget_truncated = self._apply_global_budget(spans, by_index, max_tokens, format)
        truncated = truncated or budget_truncated

        for part_index, part in parts:
            attribution = by_index[part_index].attribution
            attribution.spans += 1
            attribution.tokens += estimate_tokens(part.content, self.chars_per_token)
        for r in resolved:
            if r.attribution.status == "ok" and kept_per_source.get(r.index) and not r.attribution.spans:
                r.attribution.status = "omitted"

        final_parts = [part for _, part in parts]
        content = render(final_parts, format)
        output = FusedOutput(
            content=content,
            sources=[r.attribution for r in resolved],
            total_tokens=estimate_tokens(content, self.chars_per_token),
            truncated=truncated,
            format=format,
            dedupe=dedupe_used,
            parts=final_parts,
            warnings=warnings,
        )
        logger.info(
            "Fused %d sources into %d parts (%d tokens, truncated=%s) in %.0fms",
            len(declared), len(final_parts), output.total_tokens, truncated,
            (time.monotonic() - started) * 1000,
        )
        return output

    # -------------------------------------------------------------------------
    # Source resolution
    # -------------------------------------------------------------------------

    @staticmethod
    def _normalize_source(source: FusionSource | dict[str, Any]) -> FusionSource:
        if isinstance(source, dict):
            source = FusionSource.from_dict(source)
        elif not isinstance(source, FusionSource):
            raise ValidationError(f"Invalid fusion source: {type(source).__name__}")
        source.type = SOURCE_TYPE_ALIASES.get(source.type, source.type)
        if source.type not in SOURCE_TYPES:
            raise ValidationError(
                f"Invalid source type: {source.type!r} (expected one of {', '.join(SOURCE_TYPES)})"
            )
        required = {"file": "path", "url": "url", "inline": "content"}.get(source.type)
        if required and getattr(source, required) is None:
            raise ValidationError(f"{source.type} source requires '{required}'")

        # Mappings arrive untyped from JSON front ends
        for name in ("query", "path", "url", "content", "label"):
            value = getattr(source, name)
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"Source {name} must be a string")
        if not _is_int(source.priority):
            raise ValidationError("Source priority must be an integer")
        for name in ("max_tokens", "limit"):
            value = getattr(source, name)
            if value is not None and (not _is_int(value) or value < 1):
                raise ValidationError(f"Source {name} must be a positive integer")
        if source.tags is not None and (
            not isinstance(source.tags, list) or not all(isinstance(t, str) for t in source.tags)
        ):
            raise ValidationError("Source tags must be a list of strings")
        return source

    def _resolve(
        self,
        resolved: list[_Resolved],
        timeout: float,
        cancel: Optional[threading.Event],
    ) -> None:
        external: list[_Resolved] = []
        for r in resolved:
            if cancel is not None and cancel.is_set():
                r.attribution.status = "cancelled"
                continue
            if r.source.type == "memory":
                r.spans = [format_record(rec) for rec in self._resolve_memory(r.source)]
            elif r.source.type == "inline":
                r.spans = [r.source.content.strip()] if r.source.content.strip() else []
            else:
                external.append(r)
        if external:
            self._resolve_external(external, timeout, cancel)
        for r in resolved:
            if r.attribution.status == "ok" and not r.spans:
                r.attribution.status = "empty"

    def _resolve_memory(self, source: FusionSource) -> list[Record]:
        limit = source.limit or DEFAULT_MEMORY_LIMIT
        query = source.query or ""
        if self._router is not None:
            return self._router.route(query, tags=source.tags, limit=limit)
        if self._store is None:
            raise ValidationError("memory sources require a record store")
        if query.strip():
            return self._store.search(query, tags=source.tags, limit=limit)
        return self._store.list(tags=source.tags, limit=limit)

    def _fetch(self, uri: str) -> str:
        """Fetch one file/url; failures become SourceUnavailable or ProviderTimeout."""
        try:
            return self.documents.fetch(uri).content
        except SourceUnavailable:
            raise
        except TimeoutError as e:
            raise ProviderTimeout(f"Timed out fetching {uri}") from e
        except Exception as e:
            # Document providers are pluggable; any failure means unavailable
            raise SourceUnavailable(f"Cannot fetch {uri}: {type(e).__name__}") from e

    def _resolve_external(
        self,
        external: list[_Resolved],
        timeout: float,
        cancel: Optional[threading.Event],
    ) -> None:
        executor = ThreadPoolExecutor(
            max_workers=min(_MAX_WORKERS, len(external)),
            thread_name_prefix="cortex-fuse",
        )
        try:
            futures: dict[Future, _Resolved] = {
                executor.submit(self._fetch, r.source.path if r.source.type == "file" else r.source.url): r
                for r in external
            }
            deadline = time.monotonic() + timeout
            pending = set(futures)
            while pending:
                if cancel is not None and cancel.is_set():
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                done, pending = wait(
                    pending, timeout=min(remaining, _WAIT_SLICE), return_when=FIRST_COMPLETED
                )
                for future in done:
                    self._collect(futures[future], future)

            cancelled = cancel is not None and cancel.is_set()
            for future in pending:
                future.cancel()
                r = futures[future]
                if cancelled:
                    r.attribution.status = "cancelled"
                else:
                    r.attribution.status = "unavailable"
                    r.attribution.error = ProviderTimeout.kind
                    logger.warning("Source %d (%s) timed out after %.1fs",
                                   r.index, r.source.type, timeout)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    @staticmethod
    def _collect(r: _Resolved, future: Future) -> None:
        try:
            text = future.result()
        except SourceUnavailable as e:
            r.attribution.status = "unavailable"
            r.attribution.error = e.kind
            logger.warning("Source %d (%s) unavailable: %s", r.index, r.source.type, e.kind)
            return
        text = (text or "").strip()
        r.spans = [text] if text else []

    # -------------------------------------------------------------------------
    # Guard
    # -------------------------------------------------------------------------

    def _apply_guard(self, resolved: list[_Resolved], filters: list[str], mode: str) -> None:
        for r in resolved:
            if r.source.type not in GUARDED_TYPES or not r.spans:
                continue
            guarded: list[str] = []
            for span in r.spans:
                result = self._guard.guard(span, filters, mode)
                r.attribution.findings.extend(result.findings)
                if result.content:
                    guarded.append(result.content)
            r.spans = guarded
            if not guarded and mode == "block":
                r.attribution.status = "blocked"

    # -------------------------------------------------------------------------
    # Deduplication
    # -------------------------------------------------------------------------

    @staticmethod
    def _dedupe_exact(spans: list[_Span]) -> list[_Span]:
        seen: set[str] = set()
        kept: list[_Span] = []
        for span in spans:
            if span.text in seen:
                continue
            seen.add(span.text)
            kept.append(span)
        return kept

    def _dedupe_semantic(self, spans: list[_Span], warnings: list[str]) -> tuple[list[_Span], str]:
        """Drop spans too similar to an earlier kept span.

        Degrades to exact dedup, with a warning, when no provider is
        available or embedding fails.
        """
        spans = self._dedupe_exact(spans)
        provider = self.embedding_provider
        if provider is None:
            warnings.append("semantic dedupe unavailable (no embedding provider); used exact")
            return spans, "exact"
        if not spans:
            return spans, "semantic"
        try:
            vectors = provider.embed_batch([s.text for s in spans])
        except (CortexError, OSError, ValueError, RuntimeError) as e:
            logger.warning("Semantic dedupe embedding failed (%s); using exact", type(e).__name__)
            warnings.append(f"semantic dedupe unavailable ({type(e).__name__}); used exact")
            return spans, "exact"

        kept: list[_Span] = []
        kept_vectors: list[list[float]] = []
        for span, vector in zip(spans, vectors):
            if any(cosine_similarity(vector, v) > self.semantic_threshold for v in kept_vectors):
                continue
            kept.append(span)
            kept_vectors.append(vector)
        return kept, "semantic"

    # -------------------------------------------------------------------------
    # Budgets
    # -------------------------------------------------------------------------

    def _cut(self, text: str, max_chars: int) -> Optional[str]:
        """Prefix of text plus ellipsis within max_chars, or None if too short to keep."""
        keep = max_chars - len(ELLIPSIS)
        if keep < MIN_PARTIAL_CHARS:
            return None
        return text[:keep].rstrip() + ELLIPSIS

    def _apply_source_budgets(
        self,
        spans: list[_Span],
        by_index: dict[int, _Resolved],
    ) -> tuple[list[_Span], bool]:
        used: dict[int, int] = {}
        exhausted: set[int] = set()
        kept: list[_Span] = []
        truncated = False
        for span in spans:
            limit = by_index[span.source_index].source.max_tokens
            if limit is None:
                kept.append(span)
                continue
            if span.source_index in exhausted:
                truncated = True
                continue
            so_far = used.get(span.source_index, 0)
            cost = estimate_tokens(span.text, self.chars_per_token)
            if so_far + cost <= limit:
                kept.append(span)
                used[span.source_index] = so_far + cost
                continue
            truncated = True
            exhausted.add(span.source_index)
            cut = self._cut(span.text, (limit - so_far) * self.chars_per_token)
            if cut is not None:
                kept.append(_Span(span.source_index, cut))
                used[span.source_index] = limit
        return kept, truncated

    def _apply_global_budget(
        self,
        spans: list[_Span],
        by_index: dict[int, _Resolved],
        max_tokens: int,
        format: str,
    ) -> tuple[list[tuple[int, FusedPart]], bool]:
        """Accumulate spans in order until the rendered output would exceed the budget.

        The first span that doesn't fit is cut (if enough of it fits) or
        omitted, and accumulation stops there.
        """
        def part_for(span: _Span, text: str) -> FusedPart:
            source = by_index[span.source_index].source
            return FusedPart(
                type=source.type,
                source=source.describe(),
                priority=source.priority,
                content=text,
            )

        def fits(parts: list[FusedPart]) -> bool:
            return estimate_tokens(render(parts, format), self.chars_per_token) <= max_tokens

        accepted: list[tuple[int, FusedPart]] = []
        current: list[FusedPart] = []
        for span in spans:
            candidate = part_for(span, span.text)
            if fits(current + [candidate]):
                accepted.append((span.source_index, candidate))
                current.append(candidate)
                continue

            # Largest prefix that still fits, by binary search on its length
            lo, hi, best = MIN_PARTIAL_CHARS, len(span.text) - 1, None
            while lo <= hi:
                mid = (lo + hi) // 2
                trial = part_for(span, span.text[:mid].rstrip() + ELLIPSIS)
                if fits(current + [trial]):
                    best = trial
                    lo = mid + 1
                else:
                    hi = mid - 1
            if best is not None and len(best.content) - len(ELLIPSIS) >= MIN_PARTIAL_CHARS:
                accepted.append((span.source_index, best))
            return accepted, True
        return accepted, False
