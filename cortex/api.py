"""
Core API for the context engine.

This is the minimal working implementation focused on:
- add(): store a record for the current project
- search() / list(): lexical retrieval
- route(): rank records against a task description
- guard(): neutralize sensitive data
- fuse(): merge records, files, urls and inline text under a token budget
"""

from __future__ import annotations

import inspect
import logging
import os
import threading
from dataclasses import is_dataclass
from pathlib import Path
from typing import Any, Iterable, Optional

from .config import StoreConfig, load_or_create_config
from .errors import (
    CortexError,
    NotFound,
    ValidationError,
    error_payload,
    log_exception,
)
from .fuser import ContextFuser
from .guard import ContextGuard, list_available_filters
from .logging_config import configure_ops_log, remove_ops_log
from .paths import get_database_path, resolve_store_path
from .project import ProjectIdentityCache, project_name
from .providers.base import DocumentProvider, EmbeddingProvider, get_registry
from .record_store import RecordStore
from .router import ContextRouter
from .types import (
    FusedOutput,
    FusionSource,
    GuardFinding,
    GuardResult,
    Record,
    ScoredCandidate,
    StoreStats,
)

logger = logging.getLogger(__name__)

# Document providers that read local paths; relative paths resolve against cwd
_PATH_DOCUMENT_PROVIDERS = frozenset({"composite", "file"})


def _to_payload(value: Any) -> Any:
    """Convert results to plain JSON-compatible structures."""
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, tuple) and len(value) == 2 and isinstance(value[0], Record):
        return {"record": value[0].to_dict(), "score": round(value[1], 4)}
    if isinstance(value, (list, tuple)):
        return [_to_payload(v) for v in value]
    if is_dataclass(value):
        raise TypeError(f"Unserializable result: {type(value).__name__}")
    return value


class Cortex:
    """
    Local context engine: records, routing, guarding and fusion for one project.

    Example:
        cx = Cortex(cwd="/path/to/project")
        cx.add("We use JWT for API authentication", type="decision", tags=["auth"])
        records = cx.route("implementing authentication", limit=2)
    """

    # Operation names available through invoke()
    OPERATIONS = frozenset({
        "add", "get", "update", "delete", "search", "search_semantic", "list",
        "clear", "stats", "reindex", "route", "route_with_scores", "guard", "scan",
        "has_sensitive_data", "guard_batch", "list_available_filters", "fuse",
        "project_name", "list_projects",
    })

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        cwd: Optional[str | Path] = None,
        project_id: Optional[str] = None,
        embedding_provider: Optional[EmbeddingProvider] = None,
        document_provider: Optional[DocumentProvider] = None,
        identity_cache: Optional[ProjectIdentityCache] = None,
    ) -> None:
        """
        Open (or create) a store and scope it to one project.

        Args:
            store_path: Store directory. Defaults to CORTEX_STORE_PATH or ~/.cortex.
            config: Pre-loaded StoreConfig (skips filesystem config discovery).
            cwd: Working directory the project identity is derived from.
            project_id: Explicit project identity (skips derivation).
            embedding_provider: Injected provider (skips the configured one).
            document_provider: Injected provider for fusion file/url sources.
            identity_cache: Shared project identity cache.
        """
        # --- Config resolution ---
        if config is not None:
            self._config = config
            self._store_path = Path(config.path).resolve()
        else:
            self._store_path = resolve_store_path(store_path)
            self._config = load_or_create_config(self._store_path)

        # --- Project identity ---
        self._cwd = Path(cwd).expanduser().resolve() if cwd else Path(os.getcwd())
        self._identity_cache = identity_cache or ProjectIdentityCache()
        self._project_id = project_id or self._identity_cache.resolve(self._cwd)

        # --- Document provider ---
        if document_provider is None:
            params = dict(self._config.document.params)
            if self._config.document.name in _PATH_DOCUMENT_PROVIDERS:
                params.setdefault("base_dir", str(self._cwd))
            document_provider = get_registry().create_document(self._config.document.name, params)
        self._document_provider = document_provider

        # --- Embedding provider (lazy unless injected) ---
        self._provider_init_lock = threading.Lock()
        self._embedding_provider: Optional[EmbeddingProvider] = None
        self._embedding_resolved = False
        self._injected_provider = embedding_provider

        # --- Components ---
        self._store = RecordStore(
            get_database_path(self._store_path),
            self._project_id,
            default_limit=self._config.default_limit,
        )
        try:
            self._build_components()
        except Exception:
            self._store.close()
            raise

        # Only once everything above has opened
        self._ops_log_handler = configure_ops_log(self._store_path)
        logger.info("Opened store %s for project %s", self._store_path, self._project_id)

    def _build_components(self) -> None:
        router_config = self._config.router
        self._router = ContextRouter(
            self._store,
            weights=router_config.weights,
            half_life_days=router_config.half_life_days,
            default_limit=router_config.default_limit,
            overfetch=router_config.overfetch,
        )
        self._guard = ContextGuard(
            replacement=self._config.guard.replacement,
            default_filters=self._config.guard.filters,
        )
        fuser_config = self._config.fuser
        self._fuser = ContextFuser(
            self._store,
            self._router,
            self._guard,
            self._document_provider,
            max_tokens=fuser_config.max_tokens,
            chars_per_token=fuser_config.chars_per_token,
            source_timeout=fuser_config.source_timeout,
            dedupe=fuser_config.dedupe,
            format=fuser_config.format,
            guard_filters=fuser_config.guard_filters,
            guard_mode=fuser_config.guard_mode,
            semantic_threshold=fuser_config.semantic_threshold,
        )

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def store_path(self) -> Path:
        return self._store_path

    @property
    def project_id(self) -> str:
        return self._project_id

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def store(self) -> RecordStore:
        return self._store

    @property
    def router(self) -> ContextRouter:
        return self._router

    @property
    def fuser(self) -> ContextFuser:
        return self._fuser

    @property
    def semantic_enabled(self) -> bool:
        """True once an embedding provider is attached and available."""
        return self._get_embedding_provider() is not None

    # -------------------------------------------------------------------------
    # Embedding provider
    # -------------------------------------------------------------------------

    def _get_embedding_provider(self) -> Optional[EmbeddingProvider]:
        """
        Get the embedding provider, creating and probing it on first use.

        Thread-safe. A missing, failing or unavailable provider leaves the
        engine in keyword-only mode; it never raises.
        """
        if self._embedding_resolved:
            return self._embedding_provider

        with self._provider_init_lock:
            # Double-check after acquiring lock (another thread may have resolved it)
            if self._embedding_resolved:
                return self._embedding_provider

            provider = self._injected_provider
            if provider is None and self._config.embedding is not None:
                try:
                    provider = get_registry().create_embedding(
                        self._config.embedding.name,
                        self._config.embedding.params,
                    )
                except (CortexError, RuntimeError, ValueError, OSError) as e:
                    logger.warning(
                        "Embedding provider '%s' unavailable (%s); keyword-only mode",
                        self._config.embedding.name, e,
                    )
                    provider = None

            if provider is not None and not provider.is_available():
                logger.info("Embedding provider %s not available; keyword-only mode",
                            provider.model_name)
                provider = None

            self._embedding_provider = provider
            self._store.set_embedding_provider(provider)
            self._embedding_resolved = True
            if provider is not None:
                logger.info("Semantic features enabled with %s", provider.model_name)
            return provider

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    def add(
        self,
        content: str,
        type: str = "note",
        *,
        tags: Optional[list[str]] = None,
        source: str = "manual",
        metadata: Optional[dict[str, Any]] = None,
    ) -> int:
        """Store a record in the current project and return its id."""
        self._get_embedding_provider()
        return self._store.add(content, type, tags=tags, source=source, metadata=metadata)

    def get(self, id: int) -> Optional[Record]:
        """Fetch a record of the current project, or None."""
        return self._store.get(id)

    def require(self, id: int) -> Record:
        """Fetch a record, raising NotFound if it does not exist."""
        return self._store.require(id)

    def update(
        self,
        id: int,
        *,
        content: Optional[str] = None,
        type: Optional[str] = None,
        tags: Optional[list[str]] = None,
        source: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        if content is not None:
            self._get_embedding_provider()
        return self._store.update(
            id, content=content, type=type, tags=tags, source=source, metadata=metadata,
        )

    def delete(self, id: int) -> bool:
        return self._store.delete(id)

    def search(
        self,
        text: str,
        *,
        type: Optional[str] = None,
        tags: Optional[list[str]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Record]:
        return self._store.search(text, type=type, tags=tags, limit=limit, offset=offset)

    def search_semantic(
        self,
        text: str,
        *,
        type: Optional[str] = None,
        limit: Optional[int] = None,
        min_score: Optional[float] = None,
    ) -> list[tuple[Record, float]]:
        """Semantic search; raises CapabilityUnavailable in keyword-only mode."""
        self._get_embedding_provider()
        return self._store.search_semantic(text, type=type, limit=limit, min_score=min_score)

    def list(
        self,
        *,
        type: Optional[str] = None,
        tags: Optional[list[str]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Record]:
        return self._store.list(type=type, tags=tags, limit=limit, offset=offset)

    def clear(self) -> int:
        return self._store.clear()

    def stats(self) -> StoreStats:
        return self._store.stats()

    def list_projects(self) -> list[tuple[str, int]]:
        return self._store.list_projects()

    def reindex(self, batch_size: int = 10, cancel: Optional[threading.Event] = None) -> int:
        """Embed records lacking a vector; raises CapabilityUnavailable in keyword-only mode."""
        self._get_embedding_provider()
        return self._store.reindex_embeddings(batch_size=batch_size, cancel=cancel)

    # -------------------------------------------------------------------------
    # Routing
    # -------------------------------------------------------------------------

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
        self._get_embedding_provider()
        return self._router.route(
            task, current_file=current_file, tags=tags, type=type,
            limit=limit, max_tokens=max_tokens,
        )

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
        self._get_embedding_provider()
        return self._router.route_with_scores(
            task, current_file=current_file, tags=tags, type=type,
            limit=limit, max_tokens=max_tokens,
        )

    # -------------------------------------------------------------------------
    # Guard
    # -------------------------------------------------------------------------

    def guard(
        self,
        content: str,
        filters: Optional[Iterable[str]] = None,
        mode: str = "redact",
        replacement: Optional[str] = None,
        *,
        strict: bool = False,
    ) -> GuardResult:
        return self._guard.guard(content, filters, mode, replacement, strict=strict)

    def scan(
        self,
        content: str,
        filters: Optional[Iterable[str]] = None,
        *,
        strict: bool = False,
    ) -> list[GuardFinding]:
        return self._guard.scan(content, filters, strict=strict)

    def has_sensitive_data(self, content: str, filters: Optional[Iterable[str]] = None) -> bool:
        return self._guard.has_sensitive_data(content, filters)

    def guard_batch(
        self,
        contents: list[str],
        filters: Optional[Iterable[str]] = None,
        mode: str = "redact",
        replacement: Optional[str] = None,
    ) -> list[GuardResult]:
        return self._guard.guard_batch(contents, filters, mode, replacement)

    def list_available_filters(self) -> list[str]:
        return list_available_filters()

    # -------------------------------------------------------------------------
    # Fusion
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
        """Fuse sources; options left as None use the [fuser] config."""
        self._get_embedding_provider()
        return self._fuser.fuse(
            sources,
            max_tokens=max_tokens,
            dedupe=dedupe,
            format=format,
            guard_filters=guard_filters,
            guard_mode=guard_mode,
            timeout=timeout,
            cancel=cancel,
        )

    # -------------------------------------------------------------------------
    # Project
    # -------------------------------------------------------------------------

    def project_name(self) -> str:
        return project_name(self._cwd)

    # -------------------------------------------------------------------------
    # Front-end entry point
    # -------------------------------------------------------------------------

    def invoke(self, op: str, **kwargs: Any) -> dict[str, Any]:
        """
        Run a named operation and return a structured envelope.

        Returns:
            {"ok": True, "result": ...} or
            {"ok": False, "error": {"kind": ..., "message": ...}}

        Unexpected exceptions are written to the error log and reported
        as InternalError without internal detail.
        """
        try:
            if op not in self.OPERATIONS:
                raise ValidationError(f"Unknown operation: {op!r}")
            method = getattr(self, op)
            try:
                inspect.signature(method).bind(**kwargs)
            except TypeError as e:
                raise ValidationError(f"Invalid arguments for {op}: {e}") from e
            result = method(**kwargs)
            if op == "get" and result is None:
                raise NotFound(f"Record {kwargs.get('id')} not found")
            return {"ok": True, "result": _to_payload(result)}
        except CortexError as e:
            logger.info("Operation %s failed: %s", op, e.kind)
            return {"ok": False, "error": error_payload(e)}
        except Exception as e:
            log_exception(e, context=op, store_path=self._store_path)
            logger.error("Operation %s failed unexpectedly (%s)", op, type(e).__name__)
            return {"ok": False, "error": error_payload(e)}

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the store and detach the operations log."""
        self._store.close()
        if self._ops_log_handler is not None:
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - close resources."""
        self.close()
        return False
