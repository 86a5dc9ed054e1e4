"""``porter storage migrate``: upgrade records written by older releases."""

from __future__ import annotations

import typer

from porter.cli.common import command_context, configure, console, open_services
from porter.storage.migrations import migrate_storage

storage_app = typer.Typer(
    name="storage",
    help="Manage porter's data store.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


def migrate_cmd(
    debug: bool = typer.Option(False, "--debug", help="Log debug output."),
) -> None:
    """Convert legacy claims into installations and stamp the current schema."""
    with command_context() as ctx:
        cfg = configure(debug)
        services = open_services(cfg, initialize=False)
        try:
            migrated = migrate_storage(ctx, services.installations, services.sanitizer)
        finally:
            services.close()
    console.print(f"[bold green]Storage migrated.[/bold green] {len(migrated)} legacy installation(s) converted.")
    for name in migrated:
        console.print(f"  {name}")


storage_app.command(name="migrate", help="Migrate the data store to the current schema.")(migrate_cmd)
