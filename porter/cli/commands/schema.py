"""``porter schema``: JSON schema of the porter manifest."""

from __future__ import annotations

import logging

import typer

from porter.cli.common import command_context, configure, print_json
from porter.errors import PorterError
from porter.manifest import Manifest
from porter.mixins.provider import MixinProvider

logger = logging.getLogger(__name__)


def schema_cmd(
    debug: bool = typer.Option(False, "--debug", help="Log debug output."),
) -> None:
    """Print the manifest schema, including the schema of each installed mixin."""
    with command_context() as ctx:
        cfg = configure(debug)
        schema = Manifest.model_json_schema(by_alias=True)
        schema["$schema"] = "http://json-schema.org/draft-07/schema#"
        mixins = MixinProvider(cfg.mixins_dir, grace_period=cfg.mixin_grace_period)
        mixin_schemas = {}
        for mixin in mixins.list():
            try:
                mixin_schemas[mixin.name] = mixins.get_schema(ctx, mixin.name)
            except PorterError as exc:
                logger.warning("Unable to read the schema of mixin %s, leaving it out: %s", mixin.name, exc)
        if mixin_schemas:
            schema["mixins"] = mixin_schemas
    print_json(schema)
