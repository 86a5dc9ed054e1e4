"""End-to-end scenarios: manifests run through the real mixin runtime, dependency
reuse across installations, secret handling, the bundle cache and legacy storage.
"""

from __future__ import annotations

import sys
import time
from pathlib import Path

import pytest
import yaml

from porter import __version__
from porter.actions import ActionExecutor, ActionOptions, LocalDriver
from porter.build import ManifestConverter
from porter.cache import BundleCache
from porter.cnab.bundle import ExtendedBundle
from porter.cnab.extensions import DEPENDENCIES_V2_KEY
from porter.cnab.reference import OCIReference
from porter.core.context import Context
from porter.errors import CanceledError, MixinFailure
from porter.manifest import Manifest
from porter.mixins.provider import MixinProvider
from porter.runtime import BundleRuntime
from porter.storage.documents import SQLiteDocumentStore
from porter.storage.installations import InstallationStore
from porter.storage.migrations import COLLECTION_CLAIMS
from porter.storage.models import LABEL_PARENT_INSTALLATION, SOURCE_SECRET
from porter.storage.sanitizer import Sanitizer
from porter.storage.secrets import InMemorySecretStore


def _manifest(install_code: str) -> Manifest:
    document = {
        "name": "hello",
        "version": "0.1.0",
        "registry": "localhost:5000",
        "mixins": ["exec"],
        "outputs": [{"name": "host", "type": "string"}],
        "install": [
            {"exec": {"description": "Say hello", "command": sys.executable, "arguments": ["-c", install_code]}}
        ],
        "uninstall": [{"exec": {"description": "Say goodbye", "command": sys.executable, "arguments": ["-c", "pass"]}}],
    }
    return Manifest.from_bytes(yaml.safe_dump(document, sort_keys=False).encode("utf-8"))


@pytest.fixture
def local_executor(
    installation_store: InstallationStore,
    sanitizer: Sanitizer,
    install_exec_mixin,
    tmp_path: Path,
) -> ActionExecutor:
    """An executor that runs manifest steps through the installed exec mixin."""
    mixins_dir = tmp_path / "mixins"
    install_exec_mixin(mixins_dir)
    mixins = MixinProvider(mixins_dir, grace_period=1.0)
    return ActionExecutor(installation_store, sanitizer, LocalDriver(BundleRuntime(mixins)))


def _install_manifest(executor: ActionExecutor, ctx: Context, manifest: Manifest, tmp_path: Path):
    bundle = ExtendedBundle(ManifestConverter(manifest, mixin_versions={"exec": __version__}).to_bundle())
    return executor.execute(
        ctx,
        ActionOptions(action="install", installation="hello", bundle=bundle, manifest=manifest, working_dir=tmp_path),
    )


# ---------------------------------------------------------------------------
# Test: manifests through the exec mixin
# ---------------------------------------------------------------------------


class TestExecInstall:
    """A manifest's install steps run as exec mixin subprocesses."""

    def test_install_succeeds(self, ctx: Context, local_executor: ActionExecutor, installation_store: InstallationStore, tmp_path: Path):
        result = _install_manifest(local_executor, ctx, _manifest("print('Hello World'); print('host=db.local')"), tmp_path)

        assert result.result.status == "succeeded"
        assert result.outputs["host"] == "db.local"
        stored = installation_store.get_installation(ctx, "", "hello")
        assert stored.status.installation_completed
        runs, _ = installation_store.list_runs(ctx, "", "hello")
        assert [r.action for r in runs] == ["install"]
        assert installation_store.get_last_output(ctx, "", "hello", "host").text == "db.local"

    def test_failing_step(self, ctx: Context, local_executor: ActionExecutor, installation_store: InstallationStore, tmp_path: Path):
        with pytest.raises(MixinFailure):
            _install_manifest(local_executor, ctx, _manifest("import sys; sys.exit(1)"), tmp_path)

        stored = installation_store.get_installation(ctx, "", "hello")
        assert stored.status.result_status == "failed"
        assert not stored.status.installation_completed
        runs, results = installation_store.list_runs(ctx, "", "hello")
        assert [r.status for r in results[runs[0].id]] == ["running", "failed"]

    def test_cancel_stops_running_step(
        self,
        ctx: Context,
        local_executor: ActionExecutor,
        installation_store: InstallationStore,
        tmp_path: Path,
        cancel_when_written,
        process_gone,
    ):
        pid_file = tmp_path / "step.pid"
        code = (
            "import os, signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            f"open({str(pid_file) + '.tmp'!r}, 'w').write(str(os.getpid()))\n"
            f"os.rename({str(pid_file) + '.tmp'!r}, {str(pid_file)!r})\n"
            "time.sleep(60)\n"
        )
        canceller = cancel_when_written(ctx, pid_file)
        started = time.monotonic()
        with pytest.raises(CanceledError):
            _install_manifest(local_executor, ctx, _manifest(code), tmp_path)
        canceller.join()

        assert time.monotonic() - started < 15
        assert process_gone(int(pid_file.read_text()))
        stored = installation_store.get_installation(ctx, "", "hello")
        assert stored.status.result_status == "canceled"
        runs, results = installation_store.list_runs(ctx, "", "hello")
        assert [r.status for r in results[runs[0].id]] == ["running", "canceled"]


# ---------------------------------------------------------------------------
# Test: reusing an existing installation as a dependency
# ---------------------------------------------------------------------------


class TestInstallationReuse:
    """A v2 dependency with an installation selector reuses a matching installation."""

    LB_REF = "localhost:5000/load-balancer:v1.0.0"

    def test_existing_load_balancer_reused(
        self,
        ctx: Context,
        executor: ActionExecutor,
        installation_store: InstallationStore,
        make_bundle,
        puller,
        driver,
    ):
        puller.add(self.LB_REF, make_bundle(name="load-balancer", version="1.0.0", outputs={"host": {"type": "string"}}))
        driver.outputs["lb-prod"] = {"host": "10.0.0.1"}
        executor.execute(
            ctx,
            ActionOptions(
                action="install",
                installation="lb-prod",
                reference=OCIReference.parse(self.LB_REF),
                labels={"app": "lb"},
            ),
        )
        puller.add(
            "getporter/mysql:5.7",
            make_bundle(name="mysql", version="5.7.0", parameters={"lb-host": {"type": "string", "default": ""}}),
        )
        wordpress = make_bundle(
            name="wordpress",
            required_extensions=[DEPENDENCIES_V2_KEY],
            custom={
                DEPENDENCIES_V2_KEY: {
                    "requires": {
                        "load-balancer": {"bundle": self.LB_REF, "installation": {"labels": {"app": "lb"}}},
                        "mysql": {
                            "bundle": "getporter/mysql:5.7",
                            "parameters": {"lb-host": "${ bundle.dependencies.load-balancer.outputs.host }"},
                        },
                    }
                }
            },
        )
        driver.operations.clear()

        executor.execute(ctx, ActionOptions(action="install", installation="wordpress", bundle=wordpress))

        assert driver.executed == [("install", "wordpress-mysql"), ("install", "wordpress")]
        assert driver.operations[0].parameters["lb-host"] == "10.0.0.1"
        mysql = installation_store.get_installation(ctx, "", "wordpress-mysql")
        assert mysql.labels[LABEL_PARENT_INSTALLATION] == "/wordpress"
        assert driver.operations[1].dependencies["load-balancer"].outputs == {"host": "10.0.0.1"}


# ---------------------------------------------------------------------------
# Test: sensitive values
# ---------------------------------------------------------------------------


class TestSensitiveParameters:
    """Sensitive parameters are stored as secret references keyed by run id."""

    def test_secret_keyed_by_run(
        self,
        ctx: Context,
        executor: ActionExecutor,
        installation_store: InstallationStore,
        secrets: InMemorySecretStore,
        make_bundle,
        driver,
    ):
        bundle = make_bundle(parameters={"password": {"type": "string", "writeOnly": True}})
        result = executor.execute(
            ctx,
            ActionOptions(action="install", installation="app", bundle=bundle, parameters={"password": "s3cr3t"}),
        )

        assert driver.operations[0].parameters["password"] == "s3cr3t"
        run = installation_store.get_run(ctx, result.run.id)
        strategy = run.parameters.get("password")
        assert strategy.source.key == SOURCE_SECRET
        assert strategy.source.value == f"{run.id}password"
        assert secrets.resolve(ctx, SOURCE_SECRET, strategy.source.value) == "s3cr3t"
        assert "s3cr3t" not in run.model_dump_json()


# ---------------------------------------------------------------------------
# Test: cache companions
# ---------------------------------------------------------------------------


class TestCacheRefresh:
    """Re-pulling a bundle without a relocation map drops the stale one."""

    def test_relocation_file_removed(self, ctx: Context, cache: BundleCache, make_bundle, puller):
        ref = OCIReference.parse("localhost:5000/mybun:v0.1.0")
        stale = cache.store_bundle(ctx, ref, make_bundle().bundle, relocation_map={"nginx": "mirror/nginx"})
        assert stale.relocation_path.exists()

        puller.add(str(ref), make_bundle())
        refreshed = puller.get_bundle(ctx, ref)

        assert refreshed.relocation_path is None
        assert not stale.relocation_path.exists()
        assert cache.find_bundle(ref)[0].relocation_map == {}


# ---------------------------------------------------------------------------
# Test: legacy storage
# ---------------------------------------------------------------------------


class TestLegacyClaims:
    """A pre-installation claim is still listed, and is rewritten with its installation name."""

    def test_claim_listed(self, ctx: Context, installation_store: InstallationStore, documents: SQLiteDocumentStore):
        documents.insert(COLLECTION_CLAIMS, [{"id": "01CLAIM", "name": "mybun"}])

        assert [i.name for i in installation_store.list_installations(ctx, "")] == ["mybun"]
        assert documents.find_one(COLLECTION_CLAIMS, {"id": "01CLAIM"})["installation"] == "mybun"
