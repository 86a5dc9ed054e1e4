"""``porter version``."""

from __future__ import annotations

import typer

from porter import __version__
from porter.cli.common import command_context, configure, console, print_json


def version_cmd(
    output: str = typer.Option(None, "--output", "-o", help="Output format: plaintext or json."),
) -> None:
    """Print the porter version."""
    with command_context():
        cfg = configure(output=output)
    if cfg.output == "json":
        print_json({"name": "porter", "version": __version__})
    else:
        console.print(f"porter v{__version__}")
