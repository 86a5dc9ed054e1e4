"""Shared test fixtures for porter."""

from __future__ import annotations

import os
import sys
import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

import porter
from porter.actions import ActionExecutor, Operation, OperationResult
from porter.cache import BundleCache, CachedBundle
from porter.cnab.bundle import BundleDescriptor, Definition, ExtendedBundle, Output, Parameter
from porter.cnab.reference import OCIReference
from porter.core.context import Context, background
from porter.dependencies.executor import DependencyExecutor
from porter.errors import NotFoundError
from porter.storage.documents import SQLiteDocumentStore
from porter.storage.installations import InstallationStore
from porter.storage.sanitizer import Sanitizer
from porter.storage.secrets import InMemorySecretStore


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def ctx() -> Context:
    """Provide a fresh, never-canceled context."""
    return background()


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


@pytest.fixture
def documents(tmp_dir: Path) -> Iterator[SQLiteDocumentStore]:
    """Provide a document store backed by a temp SQLite database."""
    store = SQLiteDocumentStore(tmp_dir / "porter.db")
    yield store
    store.close()


@pytest.fixture
def installation_store(documents: SQLiteDocumentStore) -> InstallationStore:
    """Provide an initialized installation store."""
    store = InstallationStore(documents)
    store.initialize()
    return store


@pytest.fixture
def secrets() -> InMemorySecretStore:
    return InMemorySecretStore()


@pytest.fixture
def sanitizer(secrets: InMemorySecretStore) -> Sanitizer:
    return Sanitizer(secrets)


@pytest.fixture
def cache(tmp_dir: Path) -> BundleCache:
    """Provide an empty bundle cache in a temp directory."""
    return BundleCache(tmp_dir / "cache")


# ---------------------------------------------------------------------------
# Bundles
# ---------------------------------------------------------------------------


@pytest.fixture
def make_bundle() -> Callable[..., ExtendedBundle]:
    """Factory fixture: build a bundle from short parameter and output specs.

    ``parameters`` and ``outputs`` map a name to its definition fields,
    e.g. ``{"password": {"type": "string", "writeOnly": True}}``. A
    ``required``, ``applyTo`` or ``default`` key is honoured too.
    """

    def _factory(
        name: str = "mybun",
        version: str = "0.1.0",
        parameters: dict[str, dict[str, Any]] | None = None,
        outputs: dict[str, dict[str, Any]] | None = None,
        **overrides: Any,
    ) -> ExtendedBundle:
        definitions: dict[str, Definition] = {}
        params: dict[str, Parameter] = {}
        for param_name, fields in (parameters or {}).items():
            fields = dict(fields)
            required = fields.pop("required", False)
            apply_to = fields.pop("applyTo", None)
            definitions[f"{param_name}-parameter"] = Definition.model_validate(fields)
            params[param_name] = Parameter(
                definition=f"{param_name}-parameter", required=required, apply_to=apply_to
            )
        outs: dict[str, Output] = {}
        for output_name, fields in (outputs or {}).items():
            fields = dict(fields)
            apply_to = fields.pop("applyTo", None)
            definitions[f"{output_name}-output"] = Definition.model_validate(fields)
            outs[output_name] = Output(definition=f"{output_name}-output", apply_to=apply_to)
        defaults: dict[str, Any] = {
            "name": name,
            "version": version,
            "parameters": params,
            "outputs": outs,
            "definitions": definitions,
        }
        defaults.update(overrides)
        return ExtendedBundle(BundleDescriptor(**defaults))

    return _factory


class FakePuller:
    """Serves bundles from a dict through a real cache, without a registry."""

    def __init__(self, cache: BundleCache) -> None:
        self.cache = cache
        self.bundles: dict[str, BundleDescriptor] = {}
        self.tags: dict[str, list[str]] = {}
        self.pulled: list[str] = []

    def add(self, reference: str, bundle: ExtendedBundle | BundleDescriptor) -> None:
        descriptor = bundle.bundle if isinstance(bundle, ExtendedBundle) else bundle
        self.bundles[str(OCIReference.parse(reference))] = descriptor

    def get_bundle(self, ctx: Context, ref: OCIReference, *, force: bool = False) -> CachedBundle:
        self.pulled.append(str(ref))
        try:
            bundle = self.bundles[str(ref)]
        except KeyError:
            raise NotFoundError(f"{ref} not found") from None
        return self.cache.store_bundle(ctx, ref, bundle)

    def list_tags(self, ctx: Context, ref: OCIReference) -> list[str]:
        return list(self.tags.get(ref.repository, []))


@pytest.fixture
def puller(cache: BundleCache) -> FakePuller:
    return FakePuller(cache)


class RecordingDriver:
    """Records every operation and returns canned outputs per installation.

    ``failures`` maps an installation name to the exception its run raises.
    """

    def __init__(self) -> None:
        self.operations: list[Operation] = []
        self.outputs: dict[str, dict[str, str]] = {}
        self.failures: dict[str, Exception] = {}

    def run(self, ctx: Context, operation: Operation) -> OperationResult:
        self.operations.append(operation)
        failure = self.failures.get(operation.installation)
        if failure is not None:
            raise failure
        return OperationResult(outputs=dict(self.outputs.get(operation.installation, {})))

    @property
    def executed(self) -> list[tuple[str, str]]:
        return [(op.action, op.installation) for op in self.operations]


@pytest.fixture
def driver() -> RecordingDriver:
    return RecordingDriver()


@pytest.fixture
def executor(
    installation_store: InstallationStore,
    sanitizer: Sanitizer,
    driver: RecordingDriver,
    puller: FakePuller,
) -> ActionExecutor:
    """Provide an ActionExecutor with dependency support and a recording driver."""
    actions = ActionExecutor(installation_store, sanitizer, driver, puller=puller)
    actions.dependencies = DependencyExecutor(actions)
    return actions


# ---------------------------------------------------------------------------
# Mixins
# ---------------------------------------------------------------------------


@pytest.fixture
def porter_home(tmp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point PORTER_HOME at a temp directory for the duration of the test."""
    home = tmp_dir / "porter-home"
    home.mkdir()
    monkeypatch.setenv("PORTER_HOME", str(home))
    return home


@pytest.fixture
def install_exec_mixin(monkeypatch: pytest.MonkeyPatch) -> Callable[[Path], Path]:
    """Factory fixture: install the exec mixin as an executable under ``mixins_dir``."""
    source_root = Path(porter.__file__).resolve().parent.parent
    monkeypatch.setenv("PYTHONPATH", str(source_root))

    def _install(mixins_dir: Path) -> Path:
        binary = mixins_dir / "exec" / "exec"
        binary.parent.mkdir(parents=True, exist_ok=True)
        binary.write_text(
            f"#!{sys.executable}\nfrom porter.mixins.exec import main\n\nmain()\n",
            encoding="utf-8",
        )
        binary.chmod(0o755)
        return binary

    return _install


# ---------------------------------------------------------------------------
# Processes
# ---------------------------------------------------------------------------


@pytest.fixture
def cancel_when_written() -> Callable[[Context, Path], threading.Thread]:
    """Factory fixture: cancel ``ctx`` from another thread once ``path`` exists."""

    def _start(ctx: Context, path: Path, timeout: float = 30.0) -> threading.Thread:
        def _watch() -> None:
            deadline = time.monotonic() + timeout
            while not path.exists() and time.monotonic() < deadline:
                time.sleep(0.05)
            ctx.cancel("interrupted")

        thread = threading.Thread(target=_watch, daemon=True)
        thread.start()
        return thread

    return _start


def _running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    if not Path("/proc").is_dir():
        return True
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except FileNotFoundError:
        return False
    except OSError:
        return True
    # Zombies are dead, just not yet reaped
    return stat.rsplit(")", 1)[-1].split()[0] != "Z"


@pytest.fixture
def process_gone() -> Callable[[int], bool]:
    """Factory fixture: wait briefly for ``pid`` to exit; True once it has."""

    def _wait(pid: int, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while _running(pid):
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.05)
        return True

    return _wait
