"""``porter lint``: check a manifest and let its mixins report problems."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from porter.cli.common import command_context, configure, console, print_json, resolve_manifest_path
from porter.errors import ValidationError
from porter.manifest import Manifest
from porter.mixins.provider import MixinProvider


def lint_cmd(
    file: Path = typer.Option(None, "--file", "-f", help="Path to the porter manifest."),
    debug: bool = typer.Option(False, "--debug", help="Log debug output."),
    output: str = typer.Option(None, "--output", "-o", help="Output format: plaintext or json."),
) -> None:
    """Lint a porter manifest. Exits with 1 when an error is found."""
    with command_context() as ctx:
        cfg = configure(debug, output)
        manifest_path = resolve_manifest_path(file)
        if manifest_path is None:
            raise ValidationError("no porter.yaml found, pass --file")
        manifest = Manifest.load(manifest_path)
        manifest.validate_manifest()
        results = MixinProvider(cfg.mixins_dir, grace_period=cfg.mixin_grace_period).lint(ctx, manifest)

    if cfg.output == "json":
        print_json([r.model_dump(mode="json", by_alias=True) for r in results])
    elif not results:
        console.print("[green]No problems found.[/green]")
    else:
        table = Table(title=f"Lint results for {manifest_path}")
        table.add_column("Level")
        table.add_column("Code", style="cyan")
        table.add_column("Location")
        table.add_column("Message")
        for r in results:
            level = "[red]error[/red]" if r.level == "error" else f"[yellow]{r.level}[/yellow]"
            where = f"{r.location.action} step {r.location.step_number}" if r.location.action else ""
            table.add_row(level, r.code, where, r.title + (f": {r.message}" if r.message else ""))
        console.print(table)

    if any(r.level == "error" for r in results):
        raise typer.Exit(code=1)
