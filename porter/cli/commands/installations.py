"""``porter installations list|show``: inspect recorded installations."""

from __future__ import annotations

import typer
from rich.panel import Panel
from rich.table import Table

from porter.cli.common import command_context, configure, console, open_services, parse_assignments, print_json
from porter.storage.installations import ALL_NAMESPACES
from porter.storage.models import Installation

installations_app = typer.Typer(
    name="installations",
    help="Inspect installations.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

SENSITIVE_MASK = "******"


def _status(installation: Installation) -> str:
    status = installation.status
    if not status.action:
        return "-"
    return f"{status.action} {status.result_status}"


def list_cmd(
    namespace: str = typer.Option(None, "--namespace", "-n", help="Namespace to list; empty is the global namespace."),
    all_namespaces: bool = typer.Option(False, "--all-namespaces", help="List installations in every namespace."),
    name: str = typer.Option("", "--name", help="Only installations whose name matches this pattern."),
    label: list[str] = typer.Option(None, "--label", "-l", help="Only installations with the label KEY=VALUE."),
    debug: bool = typer.Option(False, "--debug", help="Log debug output."),
    output: str = typer.Option(None, "--output", "-o", help="Output format: plaintext or json."),
) -> None:
    """List installations, sorted by namespace and name."""
    with command_context() as ctx:
        cfg = configure(debug, output, namespace)
        services = open_services(cfg)
        try:
            found = services.installations.list_installations(
                ctx,
                namespace=ALL_NAMESPACES if all_namespaces else cfg.namespace,
                name=name,
                labels=parse_assignments(label, "label") or None,
            )
        finally:
            services.close()

    if cfg.output == "json":
        print_json([i.to_wire() for i in found])
        return
    if not found:
        console.print("[dim]No installations found.[/dim]")
        return
    table = Table(title="Installations")
    table.add_column("Namespace")
    table.add_column("Name", style="cyan")
    table.add_column("Version", style="green")
    table.add_column("Last action")
    table.add_column("Modified")
    for i in found:
        table.add_row(
            i.namespace or "-",
            i.name,
            i.status.bundle_version or "-",
            _status(i),
            i.status.modified.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


def show_cmd(
    installation: str = typer.Argument(..., help="Installation name."),
    namespace: str = typer.Option(None, "--namespace", "-n", help="Namespace of the installation."),
    debug: bool = typer.Option(False, "--debug", help="Log debug output."),
    output: str = typer.Option(None, "--output", "-o", help="Output format: plaintext or json."),
) -> None:
    """Show an installation, its last run and its outputs."""
    with command_context() as ctx:
        cfg = configure(debug, output, namespace)
        services = open_services(cfg)
        try:
            found = services.installations.get_installation(ctx, cfg.namespace, installation)
            outputs = services.installations.get_last_outputs(ctx, found.namespace, found.name)
            values = {}
            for o in outputs:
                # Sensitive outputs stay in the secret store
                values[o.name] = SENSITIVE_MASK if o.key else o.text
        finally:
            services.close()

    if cfg.output == "json":
        print_json({"installation": found.to_wire(), "outputs": values})
        return
    lines = [
        f"[bold]Name:[/bold]        {found.name}",
        f"[bold]Namespace:[/bold]   {found.namespace or '-'}",
        f"[bold]Bundle:[/bold]      {found.status.bundle_reference or found.bundle.repository or '-'}",
        f"[bold]Version:[/bold]     {found.status.bundle_version or '-'}",
        f"[bold]Last action:[/bold] {_status(found)}",
        f"[bold]Installed:[/bold]   {'yes' if found.is_installed else 'no'}",
    ]
    if found.labels:
        lines.append(f"[bold]Labels:[/bold]      {', '.join(f'{k}={v}' for k, v in sorted(found.labels.items()))}")
    console.print(Panel("\n".join(lines), title=f"[bold]{found}[/bold]", border_style="cyan", padding=(1, 2)))
    if values:
        table = Table(title="Outputs")
        table.add_column("Name", style="cyan")
        table.add_column("Value")
        for key, value in sorted(values.items()):
            table.add_row(key, value)
        console.print(table)


installations_app.command(name="list", help="List installations.")(list_cmd)
installations_app.command(name="show", help="Show an installation.")(show_cmd)
