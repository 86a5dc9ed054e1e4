"""Wiring shared by the commands: logging, configuration and the porter services."""

from __future__ import annotations

import json
import logging
import signal
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

import typer
from rich.console import Console
from rich.logging import RichHandler

from porter.actions import ActionExecutor, LocalDriver
from porter.cache import BundleCache
from porter.cnab.puller import BundlePuller
from porter.cnab.registry import RegistryClient
from porter.config import PorterConfig, load_config
from porter.core.context import INTERRUPTED_EXIT_CODE, Context, background, install_interrupt_handler
from porter.dependencies.executor import DependencyExecutor
from porter.errors import CanceledError, PorterError, ValidationError
from porter.mixins.provider import MixinProvider
from porter.runtime import BundleRuntime
from porter.storage import FileSecretStore, InstallationStore, Sanitizer, SQLiteDocumentStore

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)

OUTPUT_FORMATS = ("plaintext", "json")


def setup_logging(debug: bool = False, level: str = "INFO") -> None:
    """Send porter's log records to stderr through rich."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)
    handler = RichHandler(console=err_console, show_path=False, markup=False, rich_tracebacks=debug)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else getattr(logging, level.upper(), logging.INFO))


def configure(debug: bool | None = None, output: str | None = None, namespace: str | None = None) -> PorterConfig:
    """Load the configuration with the command's flags on top and set up logging."""
    cfg = load_config(debug=debug or None, output=output, namespace=namespace)
    if cfg.output not in OUTPUT_FORMATS:
        raise ValidationError(f"invalid output format {cfg.output!r}, expected one of {', '.join(OUTPUT_FORMATS)}")
    setup_logging(cfg.debug, cfg.log_level)
    return cfg


def parse_assignments(values: list[str] | None, kind: str = "parameter") -> dict[str, str]:
    """Parse repeated ``NAME=VALUE`` flags; the value may itself contain ``=``.

    Examples
    --------
    >>> parse_assignments(["a=1", "b=x=y"])
    {'a': '1', 'b': 'x=y'}
    """
    parsed: dict[str, str] = {}
    for value in values or []:
        name, sep, rest = value.partition("=")
        if not sep or not name:
            raise ValidationError(f"invalid {kind} {value!r}, expected NAME=VALUE")
        parsed[name.strip()] = rest
    return parsed


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@dataclass
class Services:
    """The long-lived objects a command works with."""

    config: PorterConfig
    documents: SQLiteDocumentStore
    installations: InstallationStore
    sanitizer: Sanitizer
    mixins: MixinProvider
    puller: BundlePuller
    actions: ActionExecutor

    def close(self) -> None:
        self.documents.close()


def open_services(cfg: PorterConfig, *, initialize: bool = True) -> Services:
    """Open the store under ``$PORTER_HOME`` and wire the executors together.

    ``initialize`` checks the store schema; ``storage migrate`` skips it.
    """
    documents = SQLiteDocumentStore(cfg.store_path)
    installations = InstallationStore(documents)
    if initialize:
        installations.initialize()
    sanitizer = Sanitizer(FileSecretStore(cfg.secrets_path))
    mixins = MixinProvider(cfg.mixins_dir, grace_period=cfg.mixin_grace_period)
    registry = RegistryClient(timeout=cfg.registry_timeout, insecure_registries=cfg.insecure_registries)
    puller = BundlePuller(BundleCache(cfg.cache_dir), registry)
    actions = ActionExecutor(installations, sanitizer, LocalDriver(BundleRuntime(mixins)), puller=puller)
    actions.dependencies = DependencyExecutor(actions)
    return Services(
        config=cfg,
        documents=documents,
        installations=installations,
        sanitizer=sanitizer,
        mixins=mixins,
        puller=puller,
        actions=actions,
    )


@contextmanager
def command_context() -> Iterator[Context]:
    """A cancellable context for one command; errors become exit codes.

    ``CanceledError`` exits with 2, any other porter error with 1.
    """
    ctx = background().with_cancel()
    # Signal handlers can only be set from the main thread
    main_thread = threading.current_thread() is threading.main_thread()
    previous = signal.getsignal(signal.SIGINT)
    if main_thread:
        install_interrupt_handler(ctx)
    try:
        yield ctx
    except CanceledError as exc:
        err_console.print(f"[yellow]Canceled:[/yellow] {exc}")
        raise typer.Exit(code=INTERRUPTED_EXIT_CODE) from exc
    except PorterError as exc:
        err_console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(code=1) from exc
    finally:
        if main_thread:
            signal.signal(signal.SIGINT, previous)


def print_json(data: Any) -> None:
    console.print_json(json.dumps(data, default=str))


def resolve_manifest_path(file: Path | None) -> Path | None:
    """``--file`` when given, else ``porter.yaml`` in the working directory when present."""
    if file is not None:
        if not file.is_file():
            raise ValidationError(f"manifest {file} does not exist")
        return file
    default = Path.cwd() / "porter.yaml"
    return default if default.is_file() else None
