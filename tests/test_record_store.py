"""
Tests for the SQLite record store.

Covers CRUD, project scoping, lexical search (FTS5 and substring fallback),
semantic search and best-effort embedding.
"""

import pytest

from cortex.errors import (
    CapabilityUnavailable,
    NotFound,
    SourceUnavailable,
    StorageFailure,
    ValidationError,
)
from cortex.record_store import RecordStore
from cortex.types import MAX_LIMIT, RECORD_TYPES

from tests.conftest import FailingEmbeddingProvider, MockEmbeddingProvider


class TestAddAndGet:
    """Creating and reading records."""

    def test_add_returns_id_and_get_returns_fields(self, store):
        """Every field passed to add comes back from get."""
        rid = store.add(
            "Use PostgreSQL for persistence",
            "decision",
            tags=["db", "infra"],
            source="adr-7",
            metadata={"author": "ops"},
        )
        assert isinstance(rid, int)

        record = store.get(rid)
        assert record.id == rid
        assert record.content == "Use PostgreSQL for persistence"
        assert record.type == "decision"
        assert record.tags == ["db", "infra"]
        assert record.source == "adr-7"
        assert record.metadata == {"author": "ops"}
        assert record.project_id == "project-a"
        assert record.created_at == record.updated_at

    def test_defaults(self, store):
        """Type defaults to note and source to manual."""
        record = store.get(store.add("something"))
        assert record.type == "note"
        assert record.source == "manual"
        assert record.tags == []
        assert record.metadata == {}

    def test_tags_are_stripped_and_deduplicated(self, store):
        record = store.get(store.add("x", tags=[" a ", "b", "a", ""]))
        assert record.tags == ["a", "b"]

    @pytest.mark.parametrize("content", ["", "   ", None])
    def test_empty_content_rejected(self, store, content):
        with pytest.raises(ValidationError):
            store.add(content)

    def test_unknown_type_rejected(self, store):
        with pytest.raises(ValidationError):
            store.add("content", "todo")

    def test_validation_error_is_value_error(self, store):
        """Callers catching ValueError still see validation failures."""
        with pytest.raises(ValueError):
            store.add("content", "todo")

    def test_tags_as_string_rejected(self, store):
        with pytest.raises(ValidationError):
            store.add("content", tags="oops")

    def test_metadata_must_be_mapping(self, store):
        with pytest.raises(ValidationError):
            store.add("content", metadata=["not", "a", "dict"])

    def test_get_unknown_returns_none(self, store):
        assert store.get(9999) is None

    def test_require_unknown_raises_not_found(self, store):
        with pytest.raises(NotFound):
            store.require(9999)

    def test_all_record_types_accepted(self, store):
        for t in RECORD_TYPES:
            assert store.get(store.add(f"a {t}", t)).type == t

    def test_unicode_round_trip(self, store):
        record = store.get(store.add("Überprüfung der Datenbank ✓", tags=["ümlaut"]))
        assert record.content == "Überprüfung der Datenbank ✓"
        assert record.tags == ["ümlaut"]


class TestIdentity:
    """Ids are unique and never reused."""

    def test_ids_not_reused_after_delete(self, store):
        first = store.add("one")
        store.delete(first)
        second = store.add("two")
        assert second > first

    def test_ids_not_reused_after_clear(self, store):
        ids = [store.add(f"record {i}") for i in range(3)]
        store.clear()
        assert store.add("after clear") > max(ids)


class TestUpdateDelete:
    """Partial updates and deletion."""

    def test_update_replaces_only_given_fields(self, store):
        rid = store.add("original", "fact", tags=["t1"], source="s")
        assert store.update(rid, content="changed") is True

        record = store.get(rid)
        assert record.content == "changed"
        assert record.type == "fact"
        assert record.tags == ["t1"]
        assert record.source == "s"

    def test_update_restamps_updated_at(self, store, set_updated_at):
        rid = store.add("original")
        set_updated_at(store, rid, "2020-01-01T00:00:00+00:00")
        store.update(rid, tags=["new"])

        record = store.get(rid)
        assert record.updated_at > "2020-01-01T00:00:00+00:00"
        assert record.created_at == "2020-01-01T00:00:00+00:00"

    def test_update_with_no_fields_still_restamps(self, store, set_updated_at):
        rid = store.add("original")
        set_updated_at(store, rid, "2020-01-01T00:00:00+00:00")
        assert store.update(rid) is True
        assert store.get(rid).updated_at > "2020-01-01T00:00:00+00:00"

    def test_update_unknown_returns_false(self, store):
        assert store.update(9999, content="x") is False

    def test_update_validates(self, store):
        rid = store.add("original")
        with pytest.raises(ValidationError):
            store.update(rid, type="bogus")
        with pytest.raises(ValidationError):
            store.update(rid, content="  ")

    def test_delete_then_get_returns_none(self, store):
        rid = store.add("doomed")
        assert store.delete(rid) is True
        assert store.get(rid) is None

    def test_delete_unknown_returns_false(self, store):
        assert store.delete(9999) is False

    def test_deleted_record_not_searchable(self, store):
        rid = store.add("ephemeral kumquat")
        store.delete(rid)
        assert store.search("kumquat") == []

    def test_clear_returns_count(self, store):
        for i in range(4):
            store.add(f"record {i}")
        assert store.clear() == 4
        assert store.list() == []


class TestProjectScoping:
    """Records of other projects are invisible."""

    @pytest.fixture
    def other(self, db_path):
        s = RecordStore(db_path, "project-b")
        yield s
        s.close()

    def test_get_is_scoped(self, store, other):
        rid = other.add("belongs to b")
        assert store.get(rid) is None
        assert other.get(rid) is not None

    def test_search_and_list_are_scoped(self, store, other):
        store.add("shared word zebra in a")
        other.add("shared word zebra in b")

        assert [r.project_id for r in store.search("zebra")] == ["project-a"]
        assert [r.project_id for r in other.list()] == ["project-b"]

    def test_update_and_delete_are_scoped(self, store, other):
        rid = other.add("belongs to b")
        assert store.update(rid, content="hijack") is False
        assert store.delete(rid) is False
        assert other.get(rid).content == "belongs to b"

    def test_clear_only_touches_own_project(self, store, other):
        store.add("a1")
        store.add("a2")
        other.add("b1")

        assert store.clear() == 2
        assert other.stats().total == 1

    def test_list_projects_sees_all(self, store, other):
        store.add("a1")
        store.add("a2")
        other.add("b1")
        assert store.list_projects() == [("project-a", 2), ("project-b", 1)]

    def test_empty_project_id_rejected(self, db_path):
        with pytest.raises(ValidationError):
            RecordStore(db_path, "")


class TestListAndStats:

    def test_list_most_recent_first(self, store, set_updated_at):
        old = store.add("old")
        new = store.add("new")
        set_updated_at(store, old, "2020-01-01T00:00:00+00:00")
        assert [r.id for r in store.list()] == [new, old]

    def test_list_filters_by_type_and_tags(self, store):
        store.add("a", "fact", tags=["x"])
        store.add("b", "fact", tags=["y"])
        store.add("c", "note", tags=["x"])

        assert [r.content for r in store.list(type="fact", tags=["x"])] == ["a"]

    def test_list_default_limit(self, db_path):
        s = RecordStore(db_path, "p", default_limit=3)
        for i in range(5):
            s.add(f"record {i}")
        assert len(s.list()) == 3
        assert len(s.list(limit=10)) == 5
        s.close()

    def test_limit_is_clamped(self, store):
        for i in range(3):
            store.add(f"record {i}")
        assert len(store.list(limit=0)) == 1
        assert len(store.list(limit=MAX_LIMIT * 10)) == 3

    def test_stats_counts_by_type(self, store):
        store.add("a", "fact")
        store.add("b", "fact")
        store.add("c", "decision")

        stats = store.stats()
        assert stats.total == 3
        assert stats.by_type["fact"] == 2
        assert stats.by_type["decision"] == 1
        assert stats.by_type["code"] == 0
        assert set(stats.by_type) == set(RECORD_TYPES)
        assert stats.project_id == "project-a"


class TestLexicalSearch:
    """Keyword search ranking and filters."""

    def test_empty_query_returns_empty(self, store):
        store.add("anything")
        assert store.search("") == []
        assert store.search("   ") == []
        assert store.search("!!!") == []

    def test_matches_any_term(self, store):
        store.add("authentication uses JWT")
        store.add("caching uses redis")
        store.add("frontend in react")

        found = {r.content for r in store.search("jwt redis")}
        assert found == {"authentication uses JWT", "caching uses redis"}

    def test_case_insensitive(self, store):
        store.add("PostgreSQL connection pooling")
        assert len(store.search("postgresql")) == 1

    def test_type_and_tag_filters(self, store):
        store.add("deploy with docker", "decision", tags=["ops"])
        store.add("docker compose for dev", "note", tags=["dev"])

        assert [r.type for r in store.search("docker", type="decision")] == ["decision"]
        assert [r.tags for r in store.search("docker", tags=["dev"])] == [["dev"]]

    def test_quotes_and_operators_are_literal(self, store):
        """FTS query syntax in user text never raises."""
        store.add("the AND operator")
        assert store.search('"AND" OR NOT (x*') is not None

    def test_stemmed_match_with_fts(self, store):
        if not store.has_fts:
            pytest.skip("SQLite built without FTS5")
        store.add("the service is running on port 80")
        assert len(store.search("runs")) == 1

    def test_fts_index_tracks_updates(self, store):
        rid = store.add("old wording about lemons")
        store.update(rid, content="new wording about oranges")
        assert store.search("lemons") == []
        assert [r.id for r in store.search("oranges")] == [rid]

    def test_fts_index_built_for_existing_rows(self, db_path):
        """Records written without FTS are indexed when FTS is enabled later."""
        plain = RecordStore(db_path, "p", use_fts=False)
        plain.add("pre-existing walrus record")
        plain.close()

        indexed = RecordStore(db_path, "p")
        assert [r.content for r in indexed.search("walrus")] == ["pre-existing walrus record"]
        indexed.close()


class TestSubstringFallback:
    """Search without the FTS5 index."""

    @pytest.fixture
    def plain(self, db_path):
        s = RecordStore(db_path, "project-a", use_fts=False)
        yield s
        s.close()

    def test_fallback_reports_no_fts(self, plain):
        assert plain.has_fts is False

    def test_substring_match(self, plain):
        plain.add("Authentication via OAuth")
        assert len(plain.search("auth")) == 1

    def test_ranked_by_matched_terms(self, plain):
        one = plain.add("redis only")
        two = plain.add("redis and postgres")
        assert [r.id for r in plain.search("redis postgres")] == [two, one]

    def test_no_match(self, plain):
        plain.add("hello world")
        assert plain.search("zzz") == []


class OpposingEmbeddingProvider(MockEmbeddingProvider):
    """Stored text points one way, questions point exactly the other."""

    def _vector(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        vector[0] = -1.0 if text.startswith("question") else 1.0
        return vector


class TestSemanticSearch:
    """Embedding-backed search."""

    def test_requires_provider(self, store):
        store.add("some content")
        with pytest.raises(CapabilityUnavailable):
            store.search_semantic("content")

    def test_add_computes_embedding(self, semantic_store, mock_embedding_provider):
        semantic_store.add("vectors please")
        assert mock_embedding_provider.embed_calls == 1
        assert semantic_store.stats().embedded == 1

    def test_most_similar_first(self, semantic_store):
        semantic_store.add("redis cache for sessions")
        semantic_store.add("react frontend components")
        semantic_store.add("kubernetes deployment manifests")

        results = semantic_store.search_semantic("redis cache sessions", limit=3)
        assert results[0][0].content == "redis cache for sessions"
        scores = [score for _, score in results]
        assert scores == sorted(scores, reverse=True)

    def test_min_score_filters(self, semantic_store):
        semantic_store.add("redis cache for sessions")
        results = semantic_store.search_semantic("redis cache for sessions", min_score=0.99)
        assert len(results) == 1
        assert results[0][1] == pytest.approx(1.0)

    def test_dissimilar_records_kept_without_min_score(self, db_path):
        s = RecordStore(db_path, "p", OpposingEmbeddingProvider())
        s.add("stored text")

        results = s.search_semantic("question")
        assert [r.content for r, _ in results] == ["stored text"]
        assert results[0][1] == pytest.approx(-1.0)
        assert s.search_semantic("question", min_score=0.0) == []
        s.close()

    def test_empty_query_returns_empty(self, semantic_store):
        semantic_store.add("something")
        assert semantic_store.search_semantic("  ") == []

    def test_embedding_failure_does_not_fail_add(self, db_path):
        provider = FailingEmbeddingProvider(SourceUnavailable("model server down"))
        s = RecordStore(db_path, "p", provider)

        rid = s.add("stored anyway")
        assert s.get(rid).content == "stored anyway"
        assert s.stats().embedded == 0
        s.close()

    def test_unexpected_provider_error_does_not_fail_add(self, db_path):
        s = RecordStore(db_path, "p", FailingEmbeddingProvider(RuntimeError("bad")))
        assert s.get(s.add("stored anyway")) is not None
        s.close()

    def test_query_embedding_failure_propagates(self, db_path):
        s = RecordStore(db_path, "p", FailingEmbeddingProvider(SourceUnavailable("down")))
        with pytest.raises(SourceUnavailable):
            s.search_semantic("anything")
        s.close()

    def test_content_update_recomputes_embedding(self, semantic_store, mock_embedding_provider):
        rid = semantic_store.add("first text")
        semantic_store.update(rid, content="second text")
        assert mock_embedding_provider.embed_calls == 2

        results = semantic_store.search_semantic("second text", limit=1)
        assert results[0][1] == pytest.approx(1.0)

    def test_non_content_update_keeps_embedding(self, semantic_store, mock_embedding_provider):
        rid = semantic_store.add("text")
        semantic_store.update(rid, tags=["t"])
        assert mock_embedding_provider.embed_calls == 1
        assert rid in semantic_store.embeddings_for([rid])

    def test_vectors_are_tagged_by_model(self, semantic_store):
        """Switching models ignores old vectors until reindexed."""
        semantic_store.add("redis cache")
        semantic_store.add("react frontend")

        new_provider = MockEmbeddingProvider(model_name="other-model")
        semantic_store.set_embedding_provider(new_provider)
        assert semantic_store.search_semantic("redis") == []
        assert semantic_store.stats().embedded == 0

        assert semantic_store.reindex_embeddings() == 2
        assert new_provider.batch_calls == 1
        assert semantic_store.search_semantic("redis", limit=1)[0][0].content == "redis cache"

    def test_reindex_only_missing(self, semantic_store):
        semantic_store.add("already embedded")
        assert semantic_store.reindex_embeddings() == 0

    def test_reindex_cancelled(self, store, mock_embedding_provider):
        import threading

        for i in range(5):
            store.add(f"record {i}")
        store.set_embedding_provider(mock_embedding_provider)
        cancel = threading.Event()
        cancel.set()
        assert store.reindex_embeddings(batch_size=2, cancel=cancel) == 0

    def test_reindex_requires_provider(self, store):
        with pytest.raises(CapabilityUnavailable):
            store.reindex_embeddings()

    def test_update_embedding(self, store, mock_embedding_provider):
        rid = store.add("late vector")
        store.set_embedding_provider(mock_embedding_provider)
        assert store.embeddings_for([rid]) == {}
        assert store.update_embedding(rid) is True
        assert len(store.embeddings_for([rid])[rid]) == mock_embedding_provider.dimension

    def test_update_embedding_unknown_record(self, semantic_store):
        with pytest.raises(NotFound):
            semantic_store.update_embedding(9999)

    def test_delete_removes_vectors(self, semantic_store):
        rid = semantic_store.add("to be removed")
        semantic_store.delete(rid)
        assert semantic_store.embeddings_for([rid]) == {}


class TestStorageFailures:

    def test_closed_store_raises_storage_failure(self, db_path):
        s = RecordStore(db_path, "p")
        s.close()
        with pytest.raises(StorageFailure):
            s.add("after close")
        with pytest.raises(StorageFailure):
            s.list()

    def test_corrupt_database_raises_storage_failure(self, tmp_path):
        bad = tmp_path / "corrupt.db"
        bad.write_bytes(b"this is not a sqlite database" * 100)
        with pytest.raises(StorageFailure):
            RecordStore(bad, "p")

    def test_context_manager_closes(self, db_path):
        with RecordStore(db_path, "p") as s:
            s.add("inside")
        with pytest.raises(StorageFailure):
            s.get(1)

    def test_data_persists_across_instances(self, db_path):
        with RecordStore(db_path, "p") as s:
            rid = s.add("durable")
        with RecordStore(db_path, "p") as s:
            assert s.get(rid).content == "durable"
