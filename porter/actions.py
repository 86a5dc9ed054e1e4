"""Bundle actions: install, upgrade, uninstall and custom actions.

:class:`ActionExecutor` owns the lifecycle of one action against one
installation; the driver it is given does the actual work. The
:class:`LocalDriver` runs a porter-built bundle's manifest steps in this
process through the mixin runtime.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, ConfigDict, Field

from porter.cnab.bundle import ExtendedBundle
from porter.cnab.extensions import PARAMETER_SOURCE_DEPENDENCY_OUTPUT, PARAMETER_SOURCE_OUTPUT
from porter.cnab.reference import OCIReference
from porter.core.context import Context, background
from porter.errors import CanceledError, MixinFailure, NotFoundError, PorterError, ValidationError
from porter.manifest import Manifest
from porter.runtime import BundleRuntime, DependencyContext, RuntimeManifest
from porter.storage.installations import InstallationStore
from porter.storage.models import (
    ACTION_INSTALL,
    ACTION_UNINSTALL,
    ACTION_UPGRADE,
    Installation,
    Output,
    Result,
    ResultStatus,
    Run,
)
from porter.storage.sanitizer import Sanitizer

if TYPE_CHECKING:
    from porter.dependencies.executor import DependencyExecutor

logger = logging.getLogger(__name__)

DEPENDENCY_PARAMETER_SEPARATOR = "#"


class ActionOptions(BaseModel):
    """Everything needed to run one action against one installation.

    The bundle comes from ``bundle`` when set, then from ``reference``
    through the puller, then from the installation's last run.
    ``parameters`` may also carry ``<dependency>#<parameter>`` overrides for
    dependencies.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    action: str
    installation: str
    namespace: str = ""
    bundle: ExtendedBundle | None = None
    reference: OCIReference | None = None
    digest: str = ""
    manifest: Manifest | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    credentials: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    delete: bool = False
    no_dependencies: bool = False
    working_dir: Path | None = None

    def root_parameters(self) -> dict[str, Any]:
        return {k: v for k, v in self.parameters.items() if DEPENDENCY_PARAMETER_SEPARATOR not in k}

    def dependency_parameters(self, alias: str) -> dict[str, Any]:
        """``<alias>#<name>`` overrides, keyed by ``name``."""
        prefix = alias + DEPENDENCY_PARAMETER_SEPARATOR
        return {k[len(prefix):]: v for k, v in self.parameters.items() if k.startswith(prefix)}


# ---------------------------------------------------------------------------
# Drivers
# ---------------------------------------------------------------------------


class Operation(BaseModel):
    """The resolved inputs a driver runs an action with."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    action: str
    installation: str
    namespace: str = ""
    bundle: ExtendedBundle
    manifest: Manifest | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    credentials: dict[str, str] = Field(default_factory=dict)
    dependencies: dict[str, DependencyContext] = Field(default_factory=dict)
    outputs: dict[str, str] = Field(default_factory=dict)
    relocation_map: dict[str, str] = Field(default_factory=dict)
    working_dir: Path | None = None


class OperationResult(BaseModel):
    outputs: dict[str, str] = Field(default_factory=dict)


class Driver(Protocol):
    """Runs a bundle action; MixinFailure and CanceledError carry partial outputs."""

    def run(self, ctx: Context, operation: Operation) -> OperationResult: ...


class LocalDriver:
    """Runs the manifest steps in-process through the mixin runtime."""

    def __init__(self, runtime: BundleRuntime) -> None:
        self.runtime = runtime

    def run(self, ctx: Context, operation: Operation) -> OperationResult:
        manifest = operation.manifest or _embedded_manifest(operation.bundle)
        if manifest is None:
            raise ValidationError(
                f"bundle {operation.bundle.name} has no embedded porter manifest; "
                "the local driver only runs bundles built by porter"
            )
        runtime_manifest = RuntimeManifest(
            manifest,
            operation.action,
            bundle=operation.bundle,
            parameters=operation.parameters,
            credentials=operation.credentials,
            installation_name=operation.installation,
            namespace=operation.namespace,
            dependencies=operation.dependencies,
            outputs=operation.outputs,
            relocation_map=operation.relocation_map,
            working_dir=operation.working_dir,
        )
        return OperationResult(outputs=self.runtime.execute(ctx, runtime_manifest))


def _embedded_manifest(bundle: ExtendedBundle) -> Manifest | None:
    data = bundle.embedded_manifest()
    return Manifest.from_bytes(data) if data else None


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class ActionResult(BaseModel):
    """What an executed action left behind."""

    installation: Installation
    run: Run
    result: Result
    outputs: dict[str, str] = Field(default_factory=dict)


class ActionExecutor:
    """Runs actions and records them in the installation store.

    Parameters
    ----------
    store:
        Installation records.
    sanitizer:
        Moves sensitive parameters and outputs into the secret store.
    driver:
        Executes the bundle.
    dependencies:
        Runs the dependency graph around the root bundle; without it
        dependencies are ignored.
    puller:
        Fetches bundles given only by reference.
    """

    def __init__(
        self,
        store: InstallationStore,
        sanitizer: Sanitizer,
        driver: Driver,
        dependencies: DependencyExecutor | None = None,
        puller: Any = None,
    ) -> None:
        self.store = store
        self.sanitizer = sanitizer
        self.driver = driver
        self.dependencies = dependencies
        self.puller = puller

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def load_bundle(self, ctx: Context, options: ActionOptions) -> tuple[ExtendedBundle, dict[str, str]]:
        """The bundle to run and its relocation map.

        Raises
        ------
        NotFoundError
            No bundle was given and the installation has no recorded run.
        """
        if options.bundle is not None:
            return options.bundle, {}
        if options.reference is not None:
            if self.puller is None:
                raise ValidationError(f"cannot pull {options.reference}: no registry is configured")
            cached = self.puller.get_bundle(ctx, options.reference)
            return cached.extended, dict(cached.relocation_map)
        run = self.store.get_last_run(ctx, options.namespace, options.installation)
        if run.bundle is None:
            raise NotFoundError(f"installation {options.namespace}/{options.installation} has no recorded bundle")
        return ExtendedBundle(run.bundle), {}

    def load_installation(self, ctx: Context, options: ActionOptions) -> tuple[Installation, bool]:
        """Return the installation and whether it already exists in the store.

        Only ``install`` may create an installation.
        """
        try:
            return self.store.get_installation(ctx, options.namespace, options.installation), True
        except NotFoundError:
            if options.action != ACTION_INSTALL:
                raise
        logger.debug("Creating installation %s/%s", options.namespace, options.installation)
        return Installation.new(options.namespace, options.installation), False

    def resolve_parameters(
        self,
        ctx: Context,
        bundle: ExtendedBundle,
        installation: Installation,
        options: ActionOptions,
    ) -> dict[str, Any]:
        """Parameter values for this run.

        Definition defaults, then parameter sources, then the installation's
        saved values, then this run's values; the last write wins.

        Raises
        ------
        ValidationError
            A value does not belong to the bundle, cannot be converted, or a
            required parameter has no value.
        """
        overrides: dict[str, Any] = {}
        if installation.parameters.parameters:
            overrides.update(self.sanitizer.restore_parameter_set(ctx, installation.parameters, bundle))
        for name, value in options.root_parameters().items():
            if name not in bundle.parameters:
                raise ValidationError(f"parameter {name} is not defined in bundle {bundle.name}")
            overrides[name] = bundle.convert_parameter_value(name, value)

        sources = bundle.read_parameter_sources() if bundle.has_parameter_sources() else {}
        values: dict[str, Any] = {}
        for name, param in bundle.parameters.items():
            if not param.applies_to(options.action):
                continue
            if name in overrides:
                values[name] = overrides[name]
                continue
            sourced = self._parameter_source(ctx, name, sources.get(name), installation)
            if sourced is not None:
                values[name] = bundle.convert_parameter_value(name, sourced)
                continue
            default = bundle.get_parameter_default(name)
            if default is not None:
                values[name] = default
            elif param.required and name not in sources:
                raise ValidationError(f"parameter {name} is required for {options.action}")
        return values

    def _parameter_source(self, ctx: Context, name: str, source: Any, installation: Installation) -> str | None:
        if source is None:
            return None
        for kind, settings in source.list_sources_by_priority():
            if kind == PARAMETER_SOURCE_OUTPUT:
                target = installation.name
            elif kind == PARAMETER_SOURCE_DEPENDENCY_OUTPUT:
                target = ExtendedBundle.build_prerequisite_installation_name(
                    installation.name, settings.get("dependency", "")
                )
            else:
                continue
            try:
                output = self.store.get_last_output(ctx, installation.namespace, target, settings.get("name", ""))
            except NotFoundError:
                logger.debug("No %s for parameter %s yet", kind, name)
                continue
            return self.sanitizer.restore_output(ctx, output).text
        return None

    def _validate_credentials(self, bundle: ExtendedBundle, options: ActionOptions) -> None:
        manifest = options.manifest or _embedded_manifest(bundle)
        for name, cred in bundle.credentials.items():
            if not cred.required or not cred.applies_to(options.action) or name in options.credentials:
                continue
            if manifest is not None and name in manifest.credentials:
                # Resolved from the environment or a path when the step runs
                continue
            raise ValidationError(f"credential {name} is required for {options.action}")

    def _previous_outputs(self, ctx: Context, installation: Installation) -> dict[str, str]:
        outputs = self.store.get_last_outputs(ctx, installation.namespace, installation.name)
        return {o.name: o.text for o in self.sanitizer.restore_outputs(ctx, outputs)}

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, ctx: Context, options: ActionOptions) -> ActionResult:
        """Run ``options.action`` against the installation.

        Lifecycle:
        1. Load (or, for install, create) the installation
        2. Resolve parameters
        3. Run dependencies (uninstall runs them last, in reverse)
        4. Record a Run with a ``running`` Result
        5. Call the driver
        6. Persist the final Result and its outputs, update the installation
        7. Delete the installation after ``uninstall --delete``

        Raises
        ------
        MixinFailure, CanceledError
            After the failed or canceled result has been recorded.
        """
        ctx.raise_if_cancelled()
        bundle, relocation_map = self.load_bundle(ctx, options)
        installation, exists = self.load_installation(ctx, options)
        bundle.get_action(options.action)

        for key, value in options.labels.items():
            installation.set_label(key, value)
        if options.reference is not None:
            installation.track_bundle(options.reference)

        parameters = self.resolve_parameters(ctx, bundle, installation, options)
        self._validate_credentials(bundle, options)

        plan = None
        dependency_contexts: dict[str, DependencyContext] = {}
        if self.dependencies is not None and not options.no_dependencies:
            plan = self.dependencies.prepare(ctx, options, bundle)
            if options.action != ACTION_UNINSTALL and plan.dependencies:
                self.dependencies.execute_before_root(ctx, plan, installation, parameters)
                # Parameter sources may read outputs the dependencies just produced
                parameters = self.resolve_parameters(ctx, bundle, installation, options)
            dependency_contexts = self.dependencies.dependency_contexts(ctx, plan, installation)

        run = installation.new_run(options.action, bundle.bundle)
        run.bundle_reference = str(options.reference) if options.reference is not None else ""
        run.bundle_digest = options.digest
        run.parameters.parameters = self.sanitizer.clean_raw_parameters(ctx, parameters, bundle, run.id)
        record = run.should_record()

        if options.action in (ACTION_INSTALL, ACTION_UPGRADE) and options.root_parameters():
            saved = {k: v for k, v in parameters.items() if k in options.root_parameters()}
            for strategy in self.sanitizer.clean_raw_parameters(ctx, saved, bundle, installation.id):
                installation.parameters.set(strategy)

        if record:
            if exists:
                self.store.upsert_installation(ctx, installation)
            else:
                self.store.insert_installation(ctx, installation)
            self.store.insert_run(ctx, run)
            self.store.insert_result(ctx, run.new_result(ResultStatus.RUNNING))

        operation = Operation(
            action=options.action,
            installation=installation.name,
            namespace=installation.namespace,
            bundle=bundle,
            manifest=options.manifest,
            parameters=parameters,
            credentials=options.credentials,
            dependencies=dependency_contexts,
            outputs=self._previous_outputs(ctx, installation) if exists else {},
            relocation_map=relocation_map,
            working_dir=options.working_dir,
        )

        logger.info("Running %s on installation %s", options.action, installation)
        outputs: dict[str, str] = {}
        try:
            outputs = self.driver.run(ctx, operation).outputs
        except (MixinFailure, CanceledError) as exc:
            status = ResultStatus.CANCELED if isinstance(exc, CanceledError) else ResultStatus.FAILED
            self._finish(ctx, installation, run, bundle, status, str(exc), exc.outputs, record)
            raise
        except PorterError as exc:
            self._finish(ctx, installation, run, bundle, ResultStatus.FAILED, str(exc), {}, record)
            raise
        result = self._finish(ctx, installation, run, bundle, ResultStatus.SUCCEEDED, "", outputs, record)

        if plan is not None and options.action == ACTION_UNINSTALL:
            self.dependencies.execute_after_root(ctx, plan, installation, parameters)
        if options.action == ACTION_UNINSTALL and options.delete and record:
            logger.info("Deleting installation %s", installation)
            self.store.remove_installation(ctx, installation.namespace, installation.name)

        return ActionResult(installation=installation, run=run, result=result, outputs=outputs)

    def _finish(
        self,
        ctx: Context,
        installation: Installation,
        run: Run,
        bundle: ExtendedBundle,
        status: ResultStatus,
        message: str,
        outputs: dict[str, str],
        record: bool,
    ) -> Result:
        result = run.new_result(status, message)
        logger.info("%s of installation %s %s", run.action, installation, status.value)
        if not record:
            return result
        if ctx.cancelled:
            # The run's final record is written even though the action was canceled
            ctx = background()
        self.store.insert_result(ctx, result)
        for name, value in sorted(outputs.items()):
            if not bundle.output_applies_to(name, run.action):
                continue
            output = Output(
                name=name,
                namespace=installation.namespace,
                installation=installation.name,
                run_id=run.id,
                result_id=result.id,
                value=value.encode("utf-8"),
            )
            self.store.insert_output(ctx, self.sanitizer.clean_output(ctx, output, bundle))
        installation.apply_result(run, result)
        self.store.upsert_installation(ctx, installation)
        return result
