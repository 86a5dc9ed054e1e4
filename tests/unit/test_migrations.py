"""Tests for legacy claim migration."""

from __future__ import annotations

import logging

import pytest

from porter.core.context import Context
from porter.errors import CanceledError, PorterError
from porter.storage.documents import SQLiteDocumentStore
from porter.storage.installations import InstallationStore
from porter.storage.migrations import COLLECTION_CLAIMS, legacy_status, migrate_claim, migrate_storage
from porter.storage.sanitizer import Sanitizer


def _claim(**overrides):
    claim = {
        "id": "01CLAIM",
        "name": "mybun",
        "created": "2020-01-01T00:00:00Z",
        "modified": "2020-01-01T00:00:00Z",
        "bundle": {"name": "mybun", "version": "0.1.0"},
        "bundleReference": "localhost:5000/mybun:v0.1.0",
        "result": {"action": "install", "status": "success", "message": "done"},
        "outputs": {"host": "db.local"},
    }
    claim.update(overrides)
    return claim


# ---------------------------------------------------------------------------
# Test: transparent read migration
# ---------------------------------------------------------------------------


class TestLegacyReads:
    """Claims named by ``name`` gain ``installation`` when read."""

    def test_legacy_status(self):
        assert legacy_status("success") == "succeeded"
        assert legacy_status("failure") == "failed"
        assert legacy_status("") == "unknown"

    def test_listed_and_written_back(self, ctx: Context, installation_store: InstallationStore, documents: SQLiteDocumentStore):
        documents.insert(COLLECTION_CLAIMS, [{"id": "01A", "name": "mybun"}])
        listed = installation_store.list_installations(ctx, "")
        assert [i.name for i in listed] == ["mybun"]
        raw = documents.find_one(COLLECTION_CLAIMS, {"id": "01A"})
        assert raw["installation"] == "mybun"

    def test_get_falls_back_to_claim(self, ctx: Context, installation_store: InstallationStore, documents: SQLiteDocumentStore):
        documents.insert(COLLECTION_CLAIMS, [_claim()])
        found = installation_store.get_installation(ctx, "", "mybun")
        assert found.status.result_status == "succeeded"
        assert found.status.bundle_version == "0.1.0"

    def test_claim_without_id_left_alone(self, ctx: Context, installation_store: InstallationStore):
        document = {"name": "orphan"}
        assert installation_store.claims.migrate(COLLECTION_CLAIMS, document) is document


# ---------------------------------------------------------------------------
# Test: full migration
# ---------------------------------------------------------------------------


class TestMigrateStorage:
    """Claims become installation, run, result and output records."""

    def test_migrate_claim(self, ctx: Context, installation_store: InstallationStore, sanitizer: Sanitizer):
        installation = migrate_claim(ctx, installation_store, sanitizer, _claim())
        assert installation.name == "mybun"
        assert installation.status.installation_completed
        runs, results = installation_store.list_runs(ctx, "", "mybun")
        assert [r.action for r in runs] == ["install"]
        assert results[runs[0].id][0].message == "done"
        assert installation_store.get_last_output(ctx, "", "mybun", "host").text == "db.local"

    def test_placeholder_install_run(self, ctx: Context, installation_store: InstallationStore, sanitizer: Sanitizer):
        claim = _claim(modified="2020-02-01T00:00:00Z", result={"action": "upgrade", "status": "success"})
        installation = migrate_claim(ctx, installation_store, sanitizer, claim)
        runs, results = installation_store.list_runs(ctx, "", "mybun")
        assert [r.action for r in runs] == ["install", "upgrade"]
        assert results[runs[0].id][0].status == "unknown"
        assert installation.status.action == "upgrade"
        assert installation.status.result_status == "succeeded"

    def test_migrate_storage_stamps_and_removes(self, ctx: Context, documents: SQLiteDocumentStore, sanitizer: Sanitizer):
        documents.insert("schema", [{"id": "schema", "installations": "1.0.0"}])
        documents.insert(COLLECTION_CLAIMS, [_claim(), {"id": "02BROKEN"}])
        store = InstallationStore(documents)

        migrated = migrate_storage(ctx, store, sanitizer)

        assert migrated == ["mybun"]
        assert store.schema_version() == "1.0.2"
        assert [c["id"] for c in documents.find(COLLECTION_CLAIMS)] == ["02BROKEN"]
        assert store.get_installation(ctx, "", "mybun").status.installation_completed

    def test_claim_left_behind_when_removal_fails(
        self, ctx: Context, documents: SQLiteDocumentStore, sanitizer: Sanitizer, monkeypatch, caplog
    ):
        documents.insert(COLLECTION_CLAIMS, [_claim(), _claim(id="02CLAIM", name="other")])
        store = InstallationStore(documents)

        def _remove(collection, filter, *, all=False):
            raise PorterError("document store query failed: disk I/O error")

        monkeypatch.setattr(documents, "remove", _remove)
        with caplog.at_level(logging.ERROR, logger="porter.storage.migrations"):
            migrated = migrate_storage(ctx, store, sanitizer)

        assert migrated == ["mybun", "other"]
        assert "could not remove the legacy record: document store query failed" in caplog.text
        assert store.get_installation(ctx, "", "other").status.installation_completed

    def test_sensitive_claim_parameters_moved(self, ctx: Context, installation_store: InstallationStore, sanitizer: Sanitizer, secrets):
        bundle = {
            "name": "mybun",
            "version": "0.1.0",
            "parameters": {"password": {"definition": "password-parameter"}},
            "definitions": {"password-parameter": {"type": "string", "writeOnly": True}},
        }
        migrate_claim(ctx, installation_store, sanitizer, _claim(bundle=bundle, parameters={"password": "hunter2"}))
        run = installation_store.get_last_run(ctx, "", "mybun")
        strategy = run.parameters.get("password")
        assert strategy.is_secret
        assert secrets.resolve(ctx, "secret", strategy.source.value) == "hunter2"

    def test_canceled_migration_stops(self, installation_store: InstallationStore, sanitizer: Sanitizer, documents: SQLiteDocumentStore):
        documents.insert(COLLECTION_CLAIMS, [_claim()])
        ctx = Context()
        ctx.cancel()
        with pytest.raises(CanceledError):
            migrate_storage(ctx, installation_store, sanitizer)
