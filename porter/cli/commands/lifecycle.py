"""``porter install|upgrade|uninstall|invoke``: run a bundle action.

The bundle comes from ``--reference`` (pulled through the cache), from the
manifest given with ``--file`` (or ``porter.yaml`` in the working
directory), or, for an existing installation, from its last run.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from porter.actions import ActionOptions, ActionResult
from porter.build import ManifestConverter
from porter.cli.common import command_context, configure, console, open_services, parse_assignments, print_json, resolve_manifest_path
from porter.cnab.bundle import ExtendedBundle
from porter.cnab.reference import OCIReference
from porter.errors import ValidationError
from porter.manifest import Manifest
from porter.storage.models import ACTION_INSTALL, ACTION_UNINSTALL, ACTION_UPGRADE, ResultStatus

_FILE = typer.Option(None, "--file", "-f", help="Path to the porter manifest.")
_REFERENCE = typer.Option(None, "--reference", "-r", help="Bundle reference, e.g. getporter/mysql:v0.1.0.")
_PARAM = typer.Option(None, "--param", "-p", help="Parameter override NAME=VALUE; DEPENDENCY#NAME=VALUE for a dependency.")
_CRED = typer.Option(None, "--cred", "-c", help="Credential value NAME=VALUE.")
_LABEL = typer.Option(None, "--label", "-l", help="Installation label KEY=VALUE.")
_NAMESPACE = typer.Option(None, "--namespace", "-n", help="Namespace of the installation.")
_DEBUG = typer.Option(False, "--debug", help="Log debug output.")
_OUTPUT = typer.Option(None, "--output", "-o", help="Output format: plaintext or json.")
_NO_DEPENDENCIES = typer.Option(False, "--no-dependencies", help="Do not run the bundle's dependencies.")


def _build_options(
    action: str,
    installation: str | None,
    file: Path | None,
    reference: str | None,
    params: list[str] | None,
    creds: list[str] | None,
    labels: list[str] | None,
    namespace: str,
    no_dependencies: bool,
    delete: bool = False,
) -> ActionOptions:
    bundle = None
    manifest = None
    ref = None
    working_dir = None
    if reference:
        ref = OCIReference.parse(reference)
    else:
        manifest_path = resolve_manifest_path(file)
        if manifest_path is not None:
            manifest = Manifest.load(manifest_path)
            manifest.validate_manifest()
            bundle = ExtendedBundle(ManifestConverter(manifest).to_bundle())
            working_dir = manifest_path.parent.resolve()

    name = installation or (bundle.name if bundle is not None else "") or (ref.path.rsplit("/", 1)[-1] if ref is not None else "")
    if not name:
        raise ValidationError("an installation name is required when no bundle is specified")
    if bundle is None and ref is None and action == ACTION_INSTALL:
        raise ValidationError("no bundle specified: pass --file or --reference, or run from a bundle directory")

    return ActionOptions(
        action=action,
        installation=name,
        namespace=namespace,
        bundle=bundle,
        reference=ref,
        manifest=manifest,
        parameters=parse_assignments(params),
        credentials=parse_assignments(creds, "credential"),
        labels=parse_assignments(labels, "label"),
        delete=delete,
        no_dependencies=no_dependencies,
        working_dir=working_dir,
    )


def _print_result(result: ActionResult, output: str) -> None:
    if output == "json":
        print_json(
            {
                "installation": result.installation.to_wire(),
                "run": {"id": result.run.id, "action": result.run.action},
                "result": result.result.to_wire(),
                "outputs": sorted(result.outputs),
            }
        )
        return
    status = result.result.status
    style = "green" if status == ResultStatus.SUCCEEDED else "red"
    console.print(
        f"[bold]{result.run.action}[/bold] of installation [cyan]{result.installation}[/cyan]: "
        f"[{style}]{status}[/{style}]"
    )
    if result.outputs:
        table = Table(title="Outputs")
        table.add_column("Name", style="cyan")
        for name in sorted(result.outputs):
            table.add_row(name)
        console.print(table)


def run_action(
    action: str,
    installation: str | None,
    file: Path | None,
    reference: str | None,
    params: list[str] | None,
    creds: list[str] | None,
    labels: list[str] | None,
    namespace: str | None,
    debug: bool,
    output: str | None,
    no_dependencies: bool = False,
    delete: bool = False,
) -> None:
    with command_context() as ctx:
        cfg = configure(debug, output, namespace)
        options = _build_options(
            action, installation, file, reference, params, creds, labels, cfg.namespace, no_dependencies, delete
        )
        services = open_services(cfg)
        try:
            result = services.actions.execute(ctx, options)
        finally:
            services.close()
        _print_result(result, cfg.output)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def install_cmd(
    installation: str = typer.Argument(None, help="Installation name; defaults to the bundle name."),
    file: Path = _FILE,
    reference: str = _REFERENCE,
    param: list[str] = _PARAM,
    cred: list[str] = _CRED,
    label: list[str] = _LABEL,
    namespace: str = _NAMESPACE,
    no_dependencies: bool = _NO_DEPENDENCIES,
    debug: bool = _DEBUG,
    output: str = _OUTPUT,
) -> None:
    """Create an installation of a bundle and run its install action."""
    run_action(ACTION_INSTALL, installation, file, reference, param, cred, label, namespace, debug, output, no_dependencies)


def upgrade_cmd(
    installation: str = typer.Argument(None, help="Installation name; defaults to the bundle name."),
    file: Path = _FILE,
    reference: str = _REFERENCE,
    param: list[str] = _PARAM,
    cred: list[str] = _CRED,
    label: list[str] = _LABEL,
    namespace: str = _NAMESPACE,
    no_dependencies: bool = _NO_DEPENDENCIES,
    debug: bool = _DEBUG,
    output: str = _OUTPUT,
) -> None:
    """Run the upgrade action on an existing installation."""
    run_action(ACTION_UPGRADE, installation, file, reference, param, cred, label, namespace, debug, output, no_dependencies)


def uninstall_cmd(
    installation: str = typer.Argument(None, help="Installation name; defaults to the bundle name."),
    file: Path = _FILE,
    reference: str = _REFERENCE,
    param: list[str] = _PARAM,
    cred: list[str] = _CRED,
    namespace: str = _NAMESPACE,
    delete: bool = typer.Option(False, "--delete", help="Delete the installation record after a successful uninstall."),
    no_dependencies: bool = _NO_DEPENDENCIES,
    debug: bool = _DEBUG,
    output: str = _OUTPUT,
) -> None:
    """Run the uninstall action on an existing installation."""
    run_action(
        ACTION_UNINSTALL, installation, file, reference, param, cred, None, namespace, debug, output, no_dependencies, delete
    )


def invoke_cmd(
    installation: str = typer.Argument(None, help="Installation name; defaults to the bundle name."),
    action: str = typer.Option(..., "--action", help="Custom action to invoke."),
    file: Path = _FILE,
    reference: str = _REFERENCE,
    param: list[str] = _PARAM,
    cred: list[str] = _CRED,
    namespace: str = _NAMESPACE,
    no_dependencies: bool = _NO_DEPENDENCIES,
    debug: bool = _DEBUG,
    output: str = _OUTPUT,
) -> None:
    """Invoke a custom action of a bundle on an installation."""
    run_action(action, installation, file, reference, param, cred, None, namespace, debug, output, no_dependencies)
