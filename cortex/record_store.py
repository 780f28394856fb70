"""
Record store using SQLite.

The record store is the source of truth for:
- Record identity (integer ids, never reused)
- Content, type, tags, source and metadata
- Timestamps
- Embedding vectors, keyed by record and model

Every read and write is scoped to the project id the store was opened
with; records of other projects sharing the database are invisible.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from .errors import CapabilityUnavailable, NotFound, StorageFailure, ValidationError
from .providers.base import EmbeddingProvider
from .providers.embeddings import cosine_similarity, pack_vector, unpack_vector
from .types import (
    DEFAULT_LIMIT,
    RECORD_TYPES,
    Record,
    StoreStats,
    clamp_limit,
    normalize_tags,
    utc_now,
    validate_content,
    validate_metadata,
    validate_record_type,
)

logger = logging.getLogger(__name__)

# Word terms for lexical search
_TERM_RE = re.compile(r"\w+", re.UNICODE)


def _search_terms(text: str) -> list[str]:
    terms: list[str] = []
    for term in _TERM_RE.findall(text.lower()):
        if term not in terms:
            terms.append(term)
    return terms


class RecordStore:
    """
    SQLite-backed store for project records.

    A single lock serializes all connection use. The database runs in WAL
    mode with a busy timeout, so another process briefly holding the write
    lock is waited on rather than reported as an error.
    """

    def __init__(
        self,
        db_path: Path,
        project_id: str,
        embedding_provider: Optional[EmbeddingProvider] = None,
        *,
        default_limit: int = DEFAULT_LIMIT,
        use_fts: bool = True,
    ):
        """
        Args:
            db_path: Path to SQLite database file
            project_id: Identity of the project all operations are scoped to
            embedding_provider: Optional provider for semantic search
            default_limit: Result cap when callers pass no limit
            use_fts: Use the FTS5 index when SQLite provides it
        """
        if not project_id:
            raise ValidationError("project_id must be a non-empty string")
        self._db_path = Path(db_path)
        self._project_id = project_id
        self._provider = embedding_provider
        self._default_limit = clamp_limit(default_limit)
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None
        self._fts = False
        self._init_db(use_fts)

    def _init_db(self, use_fts: bool) -> None:
        """Initialize the SQLite database."""
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")
            self._conn.execute("PRAGMA foreign_keys=ON")

            types_sql = ", ".join(f"'{t}'" for t in RECORD_TYPES)
            self._conn.execute(f"""
                CREATE TABLE IF NOT EXISTS records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    project_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    type TEXT NOT NULL CHECK (type IN ({types_sql})),
                    tags_json TEXT NOT NULL DEFAULT '[]',
                    source TEXT NOT NULL DEFAULT 'manual',
                    metadata_json TEXT NOT NULL DEFAULT '{{}}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_records_project_updated
                ON records(project_id, updated_at)
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_records_project_type
                ON records(project_id, type)
            """)

            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS embeddings (
                    record_id INTEGER NOT NULL
                        REFERENCES records(id) ON DELETE CASCADE,
                    model TEXT NOT NULL,
                    dimension INTEGER NOT NULL,
                    vector BLOB NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (record_id, model)
                )
            """)
            self._conn.commit()
        except sqlite3.Error as e:
            raise StorageFailure(f"Cannot open record store at {self._db_path}: {e}") from e

        if use_fts:
            self._fts = self._init_fts()

    def _init_fts(self) -> bool:
        """Create the FTS5 index and its sync triggers. False if FTS5 is missing."""
        try:
            exists = self._conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'records_fts'"
            ).fetchone()
            self._conn.execute("""
                CREATE VIRTUAL TABLE IF NOT EXISTS records_fts USING fts5(
                    content,
                    content='records',
                    content_rowid='id',
                    tokenize='porter unicode61'
                )
            """)
            self._conn.execute("""
                CREATE TRIGGER IF NOT EXISTS records_fts_insert AFTER INSERT ON records BEGIN
                    INSERT INTO records_fts(rowid, content) VALUES (new.id, new.content);
                END
            """)
            self._conn.execute("""
                CREATE TRIGGER IF NOT EXISTS records_fts_delete AFTER DELETE ON records BEGIN
                    INSERT INTO records_fts(records_fts, rowid, content)
                    VALUES ('delete', old.id, old.content);
                END
            """)
            self._conn.execute("""
                CREATE TRIGGER IF NOT EXISTS records_fts_update AFTER UPDATE OF content ON records BEGIN
                    INSERT INTO records_fts(records_fts, rowid, content)
                    VALUES ('delete', old.id, old.content);
                    INSERT INTO records_fts(rowid, content) VALUES (new.id, new.content);
                END
            """)
            if not exists:
                # Index rows written before the FTS table existed
                self._conn.execute("INSERT INTO records_fts(records_fts) VALUES ('rebuild')")
            self._conn.commit()
            return True
        except sqlite3.OperationalError as e:
            logger.warning("FTS5 unavailable, falling back to substring search: %s", e)
            self._conn.rollback()
            return False

    @contextmanager
    def _db(self) -> Iterator[sqlite3.Connection]:
        """Serialized connection access; SQLite errors become StorageFailure."""
        with self._lock:
            if self._conn is None:
                raise StorageFailure("Record store is closed")
            try:
                yield self._conn
            except sqlite3.Error as e:
                raise StorageFailure(f"SQLite error: {e}") from e

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def project_id(self) -> str:
        return self._project_id

    @property
    def embedding_provider(self) -> Optional[EmbeddingProvider]:
        return self._provider

    @property
    def has_fts(self) -> bool:
        """True when lexical search uses the FTS5 index."""
        return self._fts

    def set_embedding_provider(self, provider: Optional[EmbeddingProvider]) -> None:
        """Attach or detach (None) the embedding provider.

        Stored vectors are tagged by model, so vectors from a previous
        provider are simply ignored until reindexed.
        """
        self._provider = provider

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _row_to_record(self, row: sqlite3.Row) -> Record:
        return Record(
            id=row["id"],
            content=row["content"],
            type=row["type"],
            project_id=row["project_id"],
            tags=json.loads(row["tags_json"]),
            source=row["source"],
            metadata=json.loads(row["metadata_json"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _filters(
        self,
        type: Optional[str],
        tags: Optional[list[str]],
        alias: str = "r",
    ) -> tuple[str, list[Any]]:
        """SQL fragment (starting with AND) for project, type and tag filters."""
        sql = f" AND {alias}.project_id = ?"
        params: list[Any] = [self._project_id]
        if type is not None:
            validate_record_type(type)
            sql += f" AND {alias}.type = ?"
            params.append(type)
        for tag in normalize_tags(tags):
            sql += f" AND EXISTS (SELECT 1 FROM json_each({alias}.tags_json) WHERE value = ?)"
            params.append(tag)
        return sql, params

    def _store_vector(self, record_id: int, model: str, vector: list[float]) -> None:
        with self._db() as conn:
            with conn:
                conn.execute("""
                    INSERT OR REPLACE INTO embeddings
                    (record_id, model, dimension, vector, created_at)
                    SELECT ?, ?, ?, ?, ? WHERE EXISTS (SELECT 1 FROM records WHERE id = ?)
                """, (record_id, model, len(vector), pack_vector(vector), utc_now(), record_id))

    def _embed_best_effort(self, record_id: int, content: str) -> None:
        """Compute and store a vector; failures are logged, never raised."""
        provider = self._provider
        if provider is None:
            return
        try:
            vector = provider.embed(content)
            self._store_vector(record_id, provider.model_name, vector)
        except Exception as e:
            logger.warning(
                "Embedding failed for record %d (%s); stored without vector",
                record_id, type(e).__name__,
            )

    # -------------------------------------------------------------------------
    # Write Operations
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
        """
        Insert a new record in the active project.

        If an embedding provider is attached, a vector is computed
        best-effort: failure to embed does not fail the add.

        Args:
            content: Non-empty text body
            type: One of RECORD_TYPES
            tags: Short labels (stripped, deduplicated)
            source: Provenance label
            metadata: Open key/value bag, stored as JSON

        Returns:
            The new record id
        """
        validate_content(content)
        validate_record_type(type)
        tags = normalize_tags(tags)
        metadata = validate_metadata(metadata)
        now = utc_now()

        with self._db() as conn:
            with conn:
                cursor = conn.execute("""
                    INSERT INTO records
                    (project_id, content, type, tags_json, source, metadata_json,
                     created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    self._project_id, content, type,
                    json.dumps(tags, ensure_ascii=False),
                    source or "manual",
                    json.dumps(metadata, ensure_ascii=False),
                    now, now,
                ))
            record_id = cursor.lastrowid

        logger.info("Added record %d type=%s project=%s", record_id, type, self._project_id)
        self._embed_best_effort(record_id, content)
        return record_id

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
        """
        Replace the given fields of a record. Always re-stamps updated_at.

        The project id is never changed. A content change drops stored
        vectors and recomputes one best-effort.

        Returns:
            True if the record existed in this project and was updated
        """
        fields: dict[str, Any] = {}
        if content is not None:
            fields["content"] = validate_content(content)
        if type is not None:
            fields["type"] = validate_record_type(type)
        if tags is not None:
            fields["tags_json"] = json.dumps(normalize_tags(tags), ensure_ascii=False)
        if source is not None:
            fields["source"] = source or "manual"
        if metadata is not None:
            fields["metadata_json"] = json.dumps(validate_metadata(metadata), ensure_ascii=False)
        fields["updated_at"] = utc_now()

        assignments = ", ".join(f"{column} = ?" for column in fields)
        with self._db() as conn:
            with conn:
                cursor = conn.execute(
                    f"UPDATE records SET {assignments} WHERE id = ? AND project_id = ?",
                    (*fields.values(), id, self._project_id),
                )
                updated = cursor.rowcount > 0
                if updated and content is not None:
                    conn.execute("DELETE FROM embeddings WHERE record_id = ?", (id,))

        if not updated:
            return False
        logger.info("Updated record %d fields=%s", id, ",".join(sorted(fields)))
        if content is not None:
            self._embed_best_effort(id, content)
        return True

    def delete(self, id: int) -> bool:
        """
        Delete a record and its vectors.

        Returns:
            True if the record existed in this project and was deleted
        """
        with self._db() as conn:
            with conn:
                cursor = conn.execute(
                    "DELETE FROM records WHERE id = ? AND project_id = ?",
                    (id, self._project_id),
                )
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted record %d", id)
        return deleted

    def clear(self) -> int:
        """
        Delete every record of the active project.

        Returns:
            Number of records removed
        """
        with self._db() as conn:
            with conn:
                cursor = conn.execute(
                    "DELETE FROM records WHERE project_id = ?",
                    (self._project_id,),
                )
        count = cursor.rowcount
        logger.info("Cleared %d records from project %s", count, self._project_id)
        return count

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, id: int) -> Optional[Record]:
        """Fetch a record of the active project, or None."""
        with self._db() as conn:
            row = conn.execute(
                "SELECT * FROM records WHERE id = ? AND project_id = ?",
                (id, self._project_id),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def require(self, id: int) -> Record:
        """Fetch a record, raising NotFound if it does not exist."""
        record = self.get(id)
        if record is None:
            raise NotFound(f"Record {id} not found")
        return record

    def list(
        self,
        *,
        type: Optional[str] = None,
        tags: Optional[list[str]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Record]:
        """Most recently updated records first."""
        where, params = self._filters(type, tags)
        limit = clamp_limit(limit, self._default_limit)
        with self._db() as conn:
            rows = conn.execute(f"""
                SELECT r.* FROM records r
                WHERE 1 = 1 {where}
                ORDER BY r.updated_at DESC, r.id DESC
                LIMIT ? OFFSET ?
            """, (*params, limit, max(0, offset))).fetchall()
        return [self._row_to_record(row) for row in rows]

    def search(
        self,
        text: str,
        *,
        type: Optional[str] = None,
        tags: Optional[list[str]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Record]:
        """
        Lexical search over record content.

        Terms are OR-combined. With FTS5, matching is stemmed and ranked by
        bm25; otherwise it is case-insensitive substring matching ranked by
        the number of matched terms. Ties go to the most recently updated.

        An empty query returns an empty list.
        """
        terms = _search_terms(text or "")
        if not terms:
            return []
        where, params = self._filters(type, tags)
        limit = clamp_limit(limit, self._default_limit)
        offset = max(0, offset)

        if self._fts:
            # Quoted terms are literal strings to the FTS query parser
            match = " OR ".join('"' + t.replace('"', '""') + '"' for t in terms)
            sql = f"""
                SELECT r.* FROM records_fts
                JOIN records r ON r.id = records_fts.rowid
                WHERE records_fts MATCH ? {where}
                ORDER BY bm25(records_fts), r.updated_at DESC, r.id DESC
                LIMIT ? OFFSET ?
            """
            args = (match, *params, limit, offset)
        else:
            hits = " + ".join("(instr(lower(r.content), ?) > 0)" for _ in terms)
            sql = f"""
                SELECT * FROM (
                    SELECT r.*, ({hits}) AS hits FROM records r
                    WHERE 1 = 1 {where}
                )
                WHERE hits > 0
                ORDER BY hits DESC, updated_at DESC, id DESC
                LIMIT ? OFFSET ?
            """
            args = (*terms, *params, limit, offset)

        with self._db() as conn:
            rows = conn.execute(sql, args).fetchall()
        return [self._row_to_record(row) for row in rows]

    def search_semantic(
        self,
        text: str,
        *,
        type: Optional[str] = None,
        limit: Optional[int] = None,
        min_score: Optional[float] = None,
    ) -> list[tuple[Record, float]]:
        """
        Rank records by cosine similarity to the query's embedding.

        Only vectors produced by the attached provider's model are compared.
        Scores are raw cosine in [-1, 1]; `min_score` drops anything below
        it, and without it every compared record is returned.

        Raises:
            CapabilityUnavailable: No embedding provider is attached
            ProviderTimeout / SourceUnavailable: Query embedding failed
        """
        provider = self._provider
        if provider is None:
            raise CapabilityUnavailable("Semantic search requires an embedding provider")
        if not text or not text.strip():
            return []
        where, params = self._filters(type, None)
        limit = clamp_limit(limit, self._default_limit)

        query = provider.embed(text)

        with self._db() as conn:
            rows = conn.execute(f"""
                SELECT r.*, e.vector AS vector, e.dimension AS dimension
                FROM records r JOIN embeddings e ON e.record_id = r.id
                WHERE e.model = ? AND e.dimension = ? {where}
            """, (provider.model_name, len(query), *params)).fetchall()

        scored: list[tuple[Record, float]] = []
        for row in rows:
            score = cosine_similarity(query, unpack_vector(row["vector"], row["dimension"]))
            if min_score is None or score >= min_score:
                scored.append((self._row_to_record(row), score))
        scored.sort(key=lambda pair: (pair[1], pair[0].updated_at, pair[0].id), reverse=True)
        return scored[:limit]

    def stats(self) -> StoreStats:
        """Record counts for the active project, grouped by type."""
        with self._db() as conn:
            rows = conn.execute(
                "SELECT type, COUNT(*) AS n FROM records WHERE project_id = ? GROUP BY type",
                (self._project_id,),
            ).fetchall()
            embedded = 0
            if self._provider is not None:
                embedded = conn.execute("""
                    SELECT COUNT(*) FROM embeddings e JOIN records r ON r.id = e.record_id
                    WHERE r.project_id = ? AND e.model = ?
                """, (self._project_id, self._provider.model_name)).fetchone()[0]

        by_type = {t: 0 for t in RECORD_TYPES}
        for row in rows:
            by_type[row["type"]] = row["n"]
        return StoreStats(
            total=sum(by_type.values()),
            by_type=by_type,
            project_id=self._project_id,
            embedded=embedded,
        )

    def list_projects(self) -> list[tuple[str, int]]:
        """All project ids in the database with record counts, largest first."""
        with self._db() as conn:
            rows = conn.execute("""
                SELECT project_id, COUNT(*) AS n FROM records
                GROUP BY project_id ORDER BY n DESC, project_id
            """).fetchall()
        return [(row["project_id"], row["n"]) for row in rows]

    # -------------------------------------------------------------------------
    # Embeddings
    # -------------------------------------------------------------------------

    def embeddings_for(self, ids: list[int]) -> dict[int, list[float]]:
        """Stored vectors of the active model for the given record ids."""
        provider = self._provider
        if provider is None or not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self._db() as conn:
            rows = conn.execute(f"""
                SELECT e.record_id, e.vector, e.dimension
                FROM embeddings e JOIN records r ON r.id = e.record_id
                WHERE e.model = ? AND r.project_id = ? AND e.record_id IN ({placeholders})
            """, (provider.model_name, self._project_id, *ids)).fetchall()
        return {
            row["record_id"]: unpack_vector(row["vector"], row["dimension"])
            for row in rows
        }

    def update_embedding(self, id: int) -> bool:
        """
        Recompute one record's vector with the attached provider.

        Raises:
            NotFound: The record does not exist in this project
            CapabilityUnavailable: No embedding provider is attached
            ProviderTimeout / SourceUnavailable: Embedding failed
        """
        provider = self._provider
        if provider is None:
            raise CapabilityUnavailable("Embedding requires an embedding provider")
        record = self.require(id)
        self._store_vector(id, provider.model_name, provider.embed(record.content))
        return True

    def reindex_embeddings(self, batch_size: int = 10, cancel: Optional[threading.Event] = None) -> int:
        """
        Embed every record of the project lacking a vector for the active model.

        Stops between batches when `cancel` is set; vectors already written
        are kept.

        Returns:
            Number of records embedded
        """
        provider = self._provider
        if provider is None:
            raise CapabilityUnavailable("Reindexing requires an embedding provider")
        batch_size = max(1, batch_size)

        with self._db() as conn:
            rows = conn.execute("""
                SELECT r.id, r.content FROM records r
                WHERE r.project_id = ? AND NOT EXISTS (
                    SELECT 1 FROM embeddings e WHERE e.record_id = r.id AND e.model = ?
                )
                ORDER BY r.id
            """, (self._project_id, provider.model_name)).fetchall()

        embedded = 0
        for start in range(0, len(rows), batch_size):
            if cancel is not None and cancel.is_set():
                logger.info("Reindex cancelled after %d records", embedded)
                break
            batch = rows[start:start + batch_size]
            vectors = provider.embed_batch([row["content"] for row in batch])
            for row, vector in zip(batch, vectors):
                self._store_vector(row["id"], provider.model_name, vector)
                embedded += 1

        logger.info("Reindexed %d records for model %s", embedded, provider.model_name)
        return embedded

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        # __init__ may have failed before the lock existed
        if getattr(self, "_lock", None) is not None:
            self.close()
