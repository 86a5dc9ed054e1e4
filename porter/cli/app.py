"""Main Typer application: imports and registers all CLI commands.

Entry point: ``porter`` (configured via pyproject.toml console_scripts).

Exit codes: 0 on success, 1 on any error, 2 when interrupted.
"""

from __future__ import annotations

import typer

from porter.cli.commands.build import build_cmd
from porter.cli.commands.installations import installations_app
from porter.cli.commands.lifecycle import install_cmd, invoke_cmd, uninstall_cmd, upgrade_cmd
from porter.cli.commands.lint import lint_cmd
from porter.cli.commands.schema import schema_cmd
from porter.cli.commands.storage import storage_app
from porter.cli.commands.version import version_cmd

app = typer.Typer(
    name="porter",
    help="porter: package your application artifact, client tools, configuration and deployment logic together as a versioned bundle.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

# Register subcommands
app.command(name="build", help="Build a bundle from a porter manifest.")(build_cmd)
app.command(name="install", help="Create an installation of a bundle.")(install_cmd)
app.command(name="upgrade", help="Upgrade an installation.")(upgrade_cmd)
app.command(name="uninstall", help="Uninstall an installation.")(uninstall_cmd)
app.command(name="invoke", help="Invoke a custom action on an installation.")(invoke_cmd)
app.command(name="lint", help="Lint a porter manifest.")(lint_cmd)
app.command(name="schema", help="Print the JSON schema of the porter manifest.")(schema_cmd)
app.command(name="version", help="Print the porter version.")(version_cmd)
app.add_typer(installations_app, name="installations")
app.add_typer(storage_app, name="storage")


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
