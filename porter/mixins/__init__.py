"""Mixins: discovery, the subprocess protocol and output extraction."""

from porter.mixins.provider import LintResult, MixinMetadata, MixinProvider, action_command

__all__ = ["LintResult", "MixinMetadata", "MixinProvider", "action_command"]
