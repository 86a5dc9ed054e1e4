"""Tests for the SQLite document store: filters, sorting, updates, aggregation."""

from __future__ import annotations

import pytest

from porter.errors import NotFoundError, ValidationError
from porter.storage.documents import SQLiteDocumentStore, compile_filter, get_path, split_path


@pytest.fixture
def populated(documents: SQLiteDocumentStore) -> SQLiteDocumentStore:
    documents.insert(
        "installations",
        [
            {"id": "1", "namespace": "dev", "name": "mysql", "labels": {"sh.porter.parentInstallation": "dev/app"}},
            {"id": "2", "namespace": "dev", "name": "redis", "labels": {}},
            {"id": "3", "namespace": "", "name": "nginx", "status": {"installed": True}},
            {"id": "4", "namespace": "prod", "name": "mysql", "size": 10},
        ],
    )
    return documents


# ---------------------------------------------------------------------------
# Test: paths
# ---------------------------------------------------------------------------


class TestPaths:
    """Dotted field paths with quoted segments."""

    def test_split_plain(self):
        assert split_path("status.installed") == ["status", "installed"]

    def test_split_quoted_key_with_dots(self):
        assert split_path('labels."sh.porter.SharingGroup"') == ["labels", "sh.porter.SharingGroup"]

    def test_get_path_missing_is_none(self):
        assert get_path({"a": {"b": 1}}, "a.c") is None
        assert get_path({"a": {"b": 1}}, "a.b") == 1

    def test_unsupported_operator_rejected(self):
        with pytest.raises(ValidationError, match=r"\$where"):
            compile_filter({"$where": "1"})
        with pytest.raises(ValidationError, match=r"\$nin"):
            compile_filter({"name": {"$nin": ["a"]}})


# ---------------------------------------------------------------------------
# Test: queries
# ---------------------------------------------------------------------------


class TestFind:
    """Filters compile to json_extract queries with Mongo-style semantics."""

    def test_equality(self, populated: SQLiteDocumentStore):
        found = populated.find("installations", {"namespace": "dev"}, sort=["name"])
        assert [d["name"] for d in found] == ["mysql", "redis"]

    def test_quoted_label_key(self, populated: SQLiteDocumentStore):
        found = populated.find("installations", {'labels."sh.porter.parentInstallation"': "dev/app"})
        assert [d["id"] for d in found] == ["1"]

    def test_in_and_ne(self, populated: SQLiteDocumentStore):
        found = populated.find("installations", {"namespace": {"$in": ["", "prod"]}}, sort=["namespace"])
        assert [d["id"] for d in found] == ["3", "4"]
        found = populated.find("installations", {"namespace": {"$ne": "dev"}}, sort=["id"])
        assert [d["id"] for d in found] == ["3", "4"]

    def test_empty_in_matches_nothing(self, populated: SQLiteDocumentStore):
        assert populated.find("installations", {"namespace": {"$in": []}}) == []

    def test_exists(self, populated: SQLiteDocumentStore):
        found = populated.find("installations", {"status.installed": {"$exists": True}})
        assert [d["id"] for d in found] == ["3"]

    def test_regex(self, populated: SQLiteDocumentStore):
        found = populated.find("installations", {"name": {"$regex": "^r"}})
        assert [d["name"] for d in found] == ["redis"]

    def test_comparison(self, populated: SQLiteDocumentStore):
        assert [d["id"] for d in populated.find("installations", {"size": {"$gte": 10}})] == ["4"]
        assert populated.find("installations", {"size": {"$lt": 10}}) == []

    def test_or(self, populated: SQLiteDocumentStore):
        found = populated.find(
            "installations",
            {"$or": [{"namespace": "prod"}, {"name": "nginx"}]},
            sort=["id"],
        )
        assert [d["id"] for d in found] == ["3", "4"]

    def test_empty_or_matches_nothing(self, populated: SQLiteDocumentStore):
        assert populated.find("installations", {"$or": []}) == []

    def test_sort_descending_skip_limit(self, populated: SQLiteDocumentStore):
        found = populated.find("installations", sort=["-id"], skip=1, limit=2)
        assert [d["id"] for d in found] == ["3", "2"]

    def test_count(self, populated: SQLiteDocumentStore):
        assert populated.count("installations") == 4
        assert populated.count("installations", {"name": "mysql"}) == 2

    def test_invalid_collection_name(self, documents: SQLiteDocumentStore):
        with pytest.raises(ValidationError, match="invalid collection name"):
            documents.find("bad-name")


# ---------------------------------------------------------------------------
# Test: writes
# ---------------------------------------------------------------------------


class TestWrites:
    """Insert, update, upsert and remove."""

    def test_insert_assigns_id(self, documents: SQLiteDocumentStore):
        documents.insert("runs", [{"action": "install"}])
        (doc,) = documents.find("runs")
        assert doc["id"]

    def test_duplicate_id_conflicts(self, documents: SQLiteDocumentStore):
        documents.insert("runs", [{"id": "a"}])
        with pytest.raises(ValidationError, match="conflicts"):
            documents.insert("runs", [{"id": "a"}])

    def test_unique_index_enforced(self, documents: SQLiteDocumentStore):
        documents.ensure_index("installations", ["namespace", "name"], unique=True)
        documents.insert("installations", [{"id": "1", "namespace": "", "name": "a"}])
        with pytest.raises(ValidationError):
            documents.insert("installations", [{"id": "2", "namespace": "", "name": "a"}])

    def test_update_replaces_document(self, populated: SQLiteDocumentStore):
        populated.update("installations", {"id": "2", "namespace": "dev", "name": "redis", "labels": {"x": "y"}})
        assert populated.find_one("installations", {"id": "2"})["labels"] == {"x": "y"}

    def test_update_without_match_raises(self, documents: SQLiteDocumentStore):
        with pytest.raises(NotFoundError):
            documents.update("installations", {"id": "missing"})

    def test_upsert_inserts(self, documents: SQLiteDocumentStore):
        documents.update("schema", {"id": "schema", "installations": "1.0.2"}, upsert=True)
        assert documents.find_one("schema", {"id": "schema"})["installations"] == "1.0.2"

    def test_remove_one_and_all(self, populated: SQLiteDocumentStore):
        assert populated.remove("installations", {"name": "mysql"}) == 1
        assert populated.count("installations", {"name": "mysql"}) == 1
        populated.insert("installations", [{"id": "5", "namespace": "x", "name": "mysql"}])
        assert populated.remove("installations", {"name": "mysql"}, all=True) == 2


# ---------------------------------------------------------------------------
# Test: aggregation
# ---------------------------------------------------------------------------


class TestAggregate:
    """A leading $match runs in SQL; later stages run in Python."""

    def test_latest_per_name(self, documents: SQLiteDocumentStore):
        documents.insert(
            "outputs",
            [
                {"id": "o1", "installation": "a", "name": "host", "resultId": "01", "value": "old"},
                {"id": "o2", "installation": "a", "name": "host", "resultId": "02", "value": "new"},
                {"id": "o3", "installation": "a", "name": "port", "resultId": "01", "value": "5432"},
                {"id": "o4", "installation": "b", "name": "host", "resultId": "03", "value": "other"},
            ],
        )
        groups = documents.aggregate(
            "outputs",
            [
                {"$match": {"installation": "a"}},
                {"$sort": {"resultId": -1}},
                {"$group": {"_id": "$name", "last": {"$first": "$$ROOT"}}},
                {"$sort": {"_id": 1}},
            ],
        )
        assert [(g["_id"], g["last"]["value"]) for g in groups] == [("host", "new"), ("port", "5432")]

    def test_push_skip_limit(self, populated: SQLiteDocumentStore):
        groups = populated.aggregate(
            "installations",
            [
                {"$sort": ["name"]},
                {"$group": {"_id": "$name", "namespaces": {"$push": "$namespace"}}},
                {"$skip": 0},
                {"$limit": 10},
            ],
        )
        assert groups[0] == {"_id": "mysql", "namespaces": ["dev", "prod"]}
        groups = populated.aggregate(
            "installations",
            [
                {"$sort": ["name"]},
                {"$group": {"_id": "$name", "namespaces": {"$push": "$namespace"}}},
                {"$skip": 1},
                {"$limit": 1},
            ],
        )
        # mysql, nginx, redis in first-seen order
        assert groups == [{"_id": "nginx", "namespaces": [""]}]

    def test_unknown_stage_rejected(self, documents: SQLiteDocumentStore):
        with pytest.raises(ValidationError, match=r"\$project"):
            documents.aggregate("outputs", [{"$project": {"a": 1}}])
