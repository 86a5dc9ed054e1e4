"""porter CLI: Typer-based command-line interface.

Provides the ``porter`` command with subcommands for building bundles,
running their actions, inspecting installations and migrating storage.

All output uses Rich for formatted terminal display.
"""
