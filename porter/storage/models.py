"""Records kept in the installation store.

An installation owns its runs, a run owns its results and a result owns
its outputs. Every record is stored as a camelCase JSON document.
"""

from __future__ import annotations

import base64
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import Field, field_serializer, field_validator

from porter.cnab.bundle import BundleDescriptor, ExtendedBundle
from porter.cnab.reference import OCIReference
from porter.cnab.versions import parse_version
from porter.cnab.wire import WireModel
from porter.core.ids import new_ulid
from porter.errors import ValidationError

INSTALLATION_SCHEMA_VERSION = "1.0.2"
RUN_SCHEMA_VERSION = "1.0.1"
RESULT_SCHEMA_VERSION = "1.0.1"
OUTPUT_SCHEMA_VERSION = "1.0.1"
PARAMETER_SET_SCHEMA_VERSION = "1.1.0"

ACTION_INSTALL = "install"
ACTION_UPGRADE = "upgrade"
ACTION_UNINSTALL = "uninstall"

LABEL_PARENT_INSTALLATION = "sh.porter.parentInstallation"
LABEL_SHARING_GROUP = "sh.porter.SharingGroup"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ResultStatus(str, Enum):
    """Outcome of a run."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    PENDING = "pending"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------

SOURCE_SECRET = "secret"
SOURCE_VALUE = "value"


class StrategySource(WireModel):
    """Where a parameter value lives: inline (``value``) or in the secret store (``secret``)."""

    key: str = SOURCE_VALUE
    value: str = ""


class ParameterStrategy(WireModel):
    name: str
    source: StrategySource = Field(default_factory=StrategySource)

    @classmethod
    def from_value(cls, name: str, value: str) -> ParameterStrategy:
        return cls(name=name, source=StrategySource(key=SOURCE_VALUE, value=value))

    @classmethod
    def from_secret(cls, name: str, key: str) -> ParameterStrategy:
        return cls(name=name, source=StrategySource(key=SOURCE_SECRET, value=key))

    @property
    def is_secret(self) -> bool:
        return self.source.key == SOURCE_SECRET


class ParameterSet(WireModel):
    """A named list of parameter strategies."""

    schema_version: str = PARAMETER_SET_SCHEMA_VERSION
    id: str = ""
    namespace: str = ""
    name: str = ""
    labels: dict[str, str] = Field(default_factory=dict)
    parameters: list[ParameterStrategy] = Field(default_factory=list)

    def get(self, name: str) -> ParameterStrategy | None:
        for strategy in self.parameters:
            if strategy.name == name:
                return strategy
        return None

    def set(self, strategy: ParameterStrategy) -> None:
        """Replace the strategy with the same name, or append it."""
        for i, existing in enumerate(self.parameters):
            if existing.name == strategy.name:
                self.parameters[i] = strategy
                return
        self.parameters.append(strategy)

    def names(self) -> list[str]:
        return [p.name for p in self.parameters]


def internal_parameter_set(namespace: str, name: str, parameters: list[ParameterStrategy] | None = None) -> ParameterSet:
    """The parameter set porter keeps on an installation or run."""
    return ParameterSet(id=new_ulid(), namespace=namespace, name=name, parameters=list(parameters or []))


# ---------------------------------------------------------------------------
# Installation
# ---------------------------------------------------------------------------


class BundleReferenceParts(WireModel):
    """The bundle an installation is bound to, split into its parts."""

    repository: str = ""
    version: str = ""
    digest: str = ""
    tag: str = ""

    def get_bundle_reference(self) -> OCIReference | None:
        """Rebuild the reference; digest wins over version, version over tag.

        Raises
        ------
        ValidationError
            The parts do not form a valid reference.
        """
        if not self.repository:
            return None
        ref = OCIReference.parse(self.repository)
        if self.digest:
            return ref.with_digest(self.digest)
        if self.version:
            version = parse_version(self.version)
            if version is None:
                raise ValidationError(f"invalid bundle version {self.version!r}")
            return ref.with_version(str(version))
        if self.tag:
            return ref.with_tag(self.tag)
        raise ValidationError("invalid bundle reference, either digest, version, or tag must be specified")


class InstallationStatus(WireModel):
    run_id: str = ""
    action: str = ""
    result_id: str = ""
    result_status: str = ""
    created: datetime = Field(default_factory=_now)
    modified: datetime = Field(default_factory=_now)
    installed: datetime | None = None
    uninstalled: datetime | None = None
    installation_completed: bool = False
    bundle_reference: str = ""
    bundle_version: str = ""
    bundle_digest: str = ""


class Installation(WireModel):
    """A long-lived record identified by ``(namespace, name)``.

    Examples
    --------
    >>> inst = Installation.new("dev", "mysql")
    >>> str(inst)
    'dev/mysql'
    >>> inst.status.installation_completed
    False
    """

    schema_version: str = INSTALLATION_SCHEMA_VERSION
    id: str = Field(default_factory=new_ulid)
    namespace: str = ""
    name: str
    uninstalled: bool = False
    bundle: BundleReferenceParts = Field(default_factory=BundleReferenceParts)
    custom: Any = None
    labels: dict[str, str] = Field(default_factory=dict)
    credential_sets: list[str] = Field(default_factory=list)
    parameter_sets: list[str] = Field(default_factory=list)
    parameters: ParameterSet = Field(default_factory=ParameterSet)
    status: InstallationStatus = Field(default_factory=InstallationStatus)

    @classmethod
    def new(cls, namespace: str, name: str) -> Installation:
        installation = cls(namespace=namespace, name=name)
        installation.parameters = internal_parameter_set(namespace, installation.id)
        return installation

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    def new_run(self, action: str, bundle: BundleDescriptor | None = None) -> Run:
        """Start a run of ``action``; the installation's parameters become its overrides."""
        return Run(
            namespace=self.namespace,
            installation=self.name,
            action=action,
            bundle=bundle,
            parameter_overrides=self.parameters.model_copy(deep=True),
            credential_sets=list(self.credential_sets),
            parameter_sets=list(self.parameter_sets),
            parameters=internal_parameter_set(self.namespace, self.name),
        )

    def track_bundle(self, ref: OCIReference) -> None:
        self.bundle = BundleReferenceParts(repository=ref.repository)
        if ref.has_version:
            self.bundle.version = ref.version or ""
        elif ref.has_digest:
            self.bundle.digest = ref.digest or ""
        else:
            self.bundle.tag = ref.tag or ""

    def set_label(self, key: str, value: str) -> None:
        self.labels[key] = value

    @property
    def is_installed(self) -> bool:
        if self.status.installed is not None and self.status.uninstalled is not None:
            return self.status.installed > self.status.uninstalled
        return self.status.installed is not None and self.status.uninstalled is None

    @property
    def is_uninstalled(self) -> bool:
        if self.status.installed is not None and self.status.uninstalled is not None:
            return self.status.uninstalled > self.status.installed
        return self.status.uninstalled is not None

    def apply_result(self, run: Run, result: Result) -> None:
        """Record the outcome of ``run`` on the installation status.

        Only runs of modifying actions are tracked, unless the installation
        has never recorded a run. ``installation_completed`` flips to True on
        the first successful install and never clears.
        """
        modifies = True
        if run.bundle is not None:
            try:
                modifies = ExtendedBundle(run.bundle).modifies(run.action)
            except ValidationError:
                modifies = False
        if modifies or not self.status.run_id:
            self.status.bundle_reference = run.bundle_reference
            self.status.bundle_version = run.bundle.version if run.bundle is not None else ""
            self.status.bundle_digest = run.bundle_digest
            self.status.run_id = run.id
            self.status.action = run.action
            self.status.result_id = result.id
            self.status.result_status = result.status

        succeeded = result.status == ResultStatus.SUCCEEDED
        if succeeded and run.action == ACTION_INSTALL:
            if not self.is_installed:
                self.status.installed = result.created
            self.status.installation_completed = True
            self.uninstalled = False
        if succeeded and run.action == ACTION_UNINSTALL and not self.is_uninstalled:
            self.status.uninstalled = result.created
            self.uninstalled = True
        self.status.modified = _now()


# ---------------------------------------------------------------------------
# Run, Result, Output
# ---------------------------------------------------------------------------


class Result(WireModel):
    schema_version: str = RESULT_SCHEMA_VERSION
    id: str = Field(default_factory=new_ulid)
    run_id: str
    namespace: str = ""
    installation: str = ""
    created: datetime = Field(default_factory=_now)
    status: str = ResultStatus.UNKNOWN.value
    message: str = ""
    output_metadata: dict[str, dict[str, str]] = Field(default_factory=dict)

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> Any:
        return value.value if isinstance(value, ResultStatus) else value


class Run(WireModel):
    """One execution of one action against one installation."""

    schema_version: str = RUN_SCHEMA_VERSION
    id: str = Field(default_factory=new_ulid)
    revision: str = Field(default_factory=new_ulid)
    created: datetime = Field(default_factory=_now)
    modified: datetime = Field(default_factory=_now)
    namespace: str = ""
    installation: str = ""
    action: str = ""
    bundle: BundleDescriptor | None = None
    bundle_reference: str = ""
    bundle_digest: str = ""
    parameter_overrides: ParameterSet = Field(default_factory=ParameterSet)
    credential_sets: list[str] = Field(default_factory=list)
    parameter_sets: list[str] = Field(default_factory=list)
    parameters: ParameterSet = Field(default_factory=ParameterSet)
    custom: Any = None

    def should_record(self) -> bool:
        """False only for an action the bundle declares non-modifying and stateless."""
        if self.bundle is None:
            return True
        try:
            action = ExtendedBundle(self.bundle).get_action(self.action)
        except ValidationError:
            return True
        return action.modifies or not action.stateless

    def new_result(self, status: ResultStatus | str, message: str = "") -> Result:
        return Result(
            run_id=self.id,
            namespace=self.namespace,
            installation=self.installation,
            status=status,
            message=message,
        )


class Output(WireModel):
    """One output value; after sanitizing exactly one of ``value`` or ``key`` is set."""

    schema_version: str = OUTPUT_SCHEMA_VERSION
    id: str = Field(default_factory=new_ulid)
    name: str
    namespace: str = ""
    installation: str = ""
    run_id: str = ""
    result_id: str = ""
    value: bytes = b""
    key: str = ""

    @classmethod
    def from_wire(cls, doc: dict[str, Any]) -> Output:
        """Load a stored document, whose value is base64-encoded."""
        value = doc.get("value")
        if isinstance(value, str):
            doc = {**doc, "value": base64.b64decode(value)}
        return cls.model_validate(doc)

    @field_serializer("value", when_used="json")
    def _encode(self, value: bytes) -> str:
        return base64.b64encode(value).decode("ascii")

    @property
    def text(self) -> str:
        return self.value.decode("utf-8", errors="replace")
