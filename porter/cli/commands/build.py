"""``porter build``: turn a porter manifest into a CNAB bundle definition.

Validates the manifest, asks every declared mixin for its Dockerfile lines
and writes ``.cnab/Dockerfile`` and ``.cnab/bundle.json`` beside it.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.panel import Panel

from porter.build import Builder
from porter.cli.common import command_context, configure, console, print_json, resolve_manifest_path
from porter.errors import ValidationError
from porter.mixins.provider import MixinProvider


def build_cmd(
    file: Path = typer.Option(None, "--file", "-f", help="Path to the porter manifest."),
    debug: bool = typer.Option(False, "--debug", help="Log debug output."),
    output: str = typer.Option(None, "--output", "-o", help="Output format: plaintext or json."),
) -> None:
    """Build a bundle from a porter manifest."""
    with command_context() as ctx:
        cfg = configure(debug, output)
        manifest_path = resolve_manifest_path(file)
        if manifest_path is None:
            raise ValidationError("no porter.yaml found, pass --file")
        mixins = MixinProvider(cfg.mixins_dir, grace_period=cfg.mixin_grace_period)
        bundle = Builder(mixins).build(ctx, manifest_path)

    if cfg.output == "json":
        print_json(bundle.model_dump(mode="json", by_alias=True, exclude_none=True))
        return
    console.print(
        Panel(
            "\n".join([
                f"[bold green]Built bundle {bundle.name}:{bundle.version}[/bold green]",
                "",
                f"[bold]Invocation image:[/bold] {bundle.invocation_images[0].image}",
                f"[bold]Output:[/bold]           {manifest_path.parent / '.cnab'}",
            ]),
            title="[bold]porter build[/bold]",
            border_style="green",
            padding=(1, 2),
        )
    )
