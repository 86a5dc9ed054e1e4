"""Runs the steps of one action against the installed mixins."""

from __future__ import annotations

import logging

from porter.core.context import Context
from porter.core.redaction import SensitiveValueFilter, redact
from porter.errors import CanceledError, MixinFailure
from porter.mixins.provider import MixinProvider
from porter.runtime.resolver import RuntimeManifest

logger = logging.getLogger(__name__)


class BundleRuntime:
    """Executes an action step by step.

    Each step is resolved against the outputs collected so far, run through
    its mixin, and its outputs merged back before the next step resolves.
    Sensitive values are masked in every log handler attached to the root
    logger for the duration of the run.
    """

    def __init__(self, mixins: MixinProvider) -> None:
        self.mixins = mixins

    def execute(self, ctx: Context, manifest: RuntimeManifest) -> dict[str, str]:
        """Run every step of ``manifest.action`` and return the outputs its steps produced.

        Raises
        ------
        MixinFailure
            A step's mixin exited nonzero; ``outputs`` holds what earlier
            steps produced.
        CanceledError
            ``ctx`` fired between or during steps.
        ValidationError
            A step could not be resolved.
        """
        redactor = SensitiveValueFilter()
        handlers = list(logging.getLogger().handlers)
        for handler in handlers:
            handler.addFilter(redactor)
        try:
            steps = manifest.steps
            if not steps:
                logger.info("No steps defined for action %s", manifest.action)
            for index, step in enumerate(steps):
                ctx.raise_if_cancelled(outputs=dict(manifest.produced))
                resolved = manifest.resolve_step(step, index)
                redactor.add(manifest.sensitive_values)
                if resolved.description:
                    logger.info("%s", resolved.description)
                logger.debug("Running step %d of %s with mixin %s", index + 1, manifest.action, resolved.mixin_name)
                try:
                    outputs = self.mixins.execute_step(
                        ctx,
                        resolved.mixin_name,
                        manifest.action,
                        resolved,
                        cwd=manifest.working_dir,
                        env=manifest.environment(),
                    )
                except MixinFailure as exc:
                    raise MixinFailure(
                        exc.mixin,
                        exc.command,
                        exc.exit_code,
                        redact(exc.stderr_tail, redactor.values),
                        exc.stdout,
                        outputs=dict(manifest.produced),
                    ) from exc
                except CanceledError as exc:
                    raise CanceledError(str(exc), outputs=dict(manifest.produced)) from exc
                manifest.apply_step_outputs(outputs)
            redactor.add(manifest.sensitive_values)
            return dict(manifest.produced)
        finally:
            for handler in handlers:
                handler.removeFilter(redactor)
