"""The porter.yaml authoring format.

A manifest declares the bundle's metadata, mixins, parameters, credentials,
outputs, images, dependencies and one step list per action. Steps are a
tagged union keyed by mixin name: each step is a single-key map
``{<mixin>: <instruction body>}`` whose body is opaque to porter apart from
``description`` and ``outputs``.

Any top-level key porter does not recognize and whose value is a list is a
custom action.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator, model_serializer, model_validator
from pydantic import ValidationError as PydanticValidationError

from porter.cnab.bundle import BUILTIN_ACTIONS
from porter.cnab.reference import OCIReference
from porter.cnab.versions import parse_version
from porter.cnab.wire import WireModel
from porter.errors import InvalidReferenceError, ValidationError

logger = logging.getLogger(__name__)

MANIFEST_SCHEMA_VERSION = "1.0.1"
DEFAULT_MANIFEST_NAME = "porter.yaml"

# Keys that older manifests allowed but are now computed by porter
_DEPRECATED_KEYS = ("invocationImage", "tag")

_TEMPLATE_VARIABLE = re.compile(r"\$\{\s*([^}\s]+)\s*\}")
_TEMPLATED_OUTPUT = re.compile(r"^bundle\.outputs\.(.+)$")
_TEMPLATED_DEPENDENCY_OUTPUT = re.compile(r"^bundle\.dependencies\.([^.]+)\.outputs\.(.+)$")


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


class StepOutput(WireModel):
    """An output extracted after a step runs.

    Exactly one of ``path``, ``regex`` or ``json_path`` is normally set;
    mixins may add their own fields, which are passed through untouched.
    """

    name: str
    path: str | None = None
    regex: str | None = None
    json_path: str | None = None


class Step(BaseModel):
    """One mixin invocation: ``{<mixin>: <body>}``."""

    data: dict[str, Any]

    @model_validator(mode="before")
    @classmethod
    def _wrap(cls, value: Any) -> Any:
        if isinstance(value, dict) and set(value) != {"data"}:
            return {"data": value}
        return value

    @model_serializer(mode="plain")
    def _serialize(self) -> dict[str, Any]:
        return self.data

    @property
    def mixin_name(self) -> str:
        return next(iter(self.data), "")

    @property
    def body(self) -> dict[str, Any]:
        value = self.data.get(self.mixin_name)
        return value if isinstance(value, dict) else {}

    @property
    def description(self) -> str:
        value = self.body.get("description", "")
        return value if isinstance(value, str) else ""

    @property
    def outputs(self) -> list[StepOutput]:
        raw = self.body.get("outputs") or []
        return [StepOutput.model_validate(item) for item in raw]

    def to_dict(self) -> dict[str, Any]:
        return {self.mixin_name: self.body}

    def validate_step(self, declared_mixins: list[str]) -> None:
        if not self.data:
            raise ValidationError("no mixin specified")
        if len(self.data) > 1:
            raise ValidationError("more than one mixin specified")
        if self.mixin_name not in declared_mixins:
            raise ValidationError(f"mixin ({self.mixin_name}) was not declared")
        description = self.body.get("description")
        if description is not None and not isinstance(description, str):
            raise ValidationError(
                f"invalid description type ({type(description).__name__}) for mixin step ({self.mixin_name})"
            )
        try:
            names = [output.name for output in self.outputs]
        except PydanticValidationError as exc:
            raise ValidationError(f"invalid outputs for mixin step ({self.mixin_name}): {exc}") from exc
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValidationError(f"duplicate outputs {', '.join(duplicates)} for mixin step ({self.mixin_name})")


def _parse_steps(value: Any) -> Any:
    if value is None:
        return None
    if not isinstance(value, list):
        raise ValueError("an action must be a list of steps")
    return [Step.model_validate(item) if isinstance(item, dict) else item for item in value]


# ---------------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------------


def _single_key(value: Any, kind: str) -> tuple[str, Any]:
    """Accept ``name`` or ``{name: config}``."""
    if isinstance(value, str):
        return value, None
    if isinstance(value, dict):
        if not value:
            raise ValueError(f"{kind} declaration was empty")
        if len(value) > 1:
            raise ValueError(f"{kind} declaration contained more than one {kind}")
        name, config = next(iter(value.items()))
        return str(name), config
    raise ValueError(f"invalid {kind} declaration: {value!r}")


class MixinDeclaration(BaseModel):
    name: str
    config: Any = None

    @model_validator(mode="before")
    @classmethod
    def _from_yaml(cls, value: Any) -> Any:
        if isinstance(value, str) or (isinstance(value, dict) and len(value) <= 1):
            name, config = _single_key(value, "mixin")
            return {"name": name, "config": config}
        return value


class RequiredExtensionDeclaration(BaseModel):
    name: str
    config: dict[str, Any] | None = None

    @model_validator(mode="before")
    @classmethod
    def _from_yaml(cls, value: Any) -> Any:
        if isinstance(value, str) or (isinstance(value, dict) and len(value) <= 1):
            name, config = _single_key(value, "required extension")
            return {"name": name, "config": config}
        return value


class ParameterSourceDeclaration(WireModel):
    dependency: str = ""
    output: str = ""


class ParameterDefinition(WireModel):
    name: str
    sensitive: bool = False
    source: ParameterSourceDeclaration | None = None
    apply_to: list[str] | None = None
    env: str | None = None
    path: str | None = None
    type: str | None = None
    default: Any = None
    description: str | None = None
    enum: list[Any] | None = None
    minimum: float | None = None
    maximum: float | None = None
    content_encoding: str | None = None

    def applies_to(self, action: str) -> bool:
        return not self.apply_to or action in self.apply_to

    def exempt_from_install(self) -> bool:
        """True for a parameter sourced from an output that cannot exist before install."""
        return bool(self.source and self.source.output) and self.apply_to is None and self.default is None


class CredentialDefinition(WireModel):
    name: str
    description: str | None = None
    required: bool = True
    apply_to: list[str] | None = None
    env: str | None = None
    path: str | None = None


class OutputDefinition(WireModel):
    name: str
    sensitive: bool = False
    apply_to: list[str] | None = None
    path: str | None = None
    type: str | None = None
    default: Any = None
    description: str | None = None


class StateVariable(WireModel):
    name: str
    description: str | None = None
    mixin: str | None = None
    path: str | None = None
    env: str | None = None


class MappedImage(WireModel):
    description: str | None = None
    image_type: str = "docker"
    repository: str
    digest: str | None = None
    size: int | None = None
    media_type: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    tag: str | None = None

    def to_reference(self) -> OCIReference:
        ref = OCIReference.parse(self.repository)
        if self.digest:
            ref = ref.with_digest(self.digest)
        if self.tag:
            ref = ref.with_tag(self.tag)
        return ref


class CustomActionDefinition(WireModel):
    description: str | None = None
    modifies: bool = False
    stateless: bool = False


class Maintainer(WireModel):
    name: str | None = None
    email: str | None = None
    url: str | None = None


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


class DependencyInterfaceDeclaration(WireModel):
    reference: str | None = None
    parameters: list[str] = Field(default_factory=list)
    credentials: list[str] = Field(default_factory=list)
    outputs: list[str] = Field(default_factory=list)


class BundleCriteria(WireModel):
    reference: str
    version: str = ""
    interface: DependencyInterfaceDeclaration | None = None


class DependencyInstallationCriteria(WireModel):
    match_interface: bool = False
    match_namespace: bool = False
    ignore_labels: bool = False


class DependencyInstallationDeclaration(WireModel):
    labels: dict[str, str] = Field(default_factory=dict)
    criteria: DependencyInstallationCriteria | None = None


class DependencySharingDeclaration(WireModel):
    mode: str = "none"
    group: dict[str, str] | None = None


class ManifestDependency(WireModel):
    name: str
    bundle: BundleCriteria
    parameters: dict[str, str] = Field(default_factory=dict)
    credentials: dict[str, str] = Field(default_factory=dict)
    installation: DependencyInstallationDeclaration | None = None
    sharing: DependencySharingDeclaration | None = None

    def uses_v2(self) -> bool:
        """Anything beyond a bundle reference and version range needs the v2 format."""
        return bool(
            self.parameters
            or self.credentials
            or self.installation
            or self.sharing
            or self.bundle.interface
        )

    def validate_dependency(self) -> None:
        if not self.name:
            raise ValidationError("dependency name is required")
        if not self.bundle.reference:
            raise ValidationError(f"reference is required for dependency {self.name!r}")
        try:
            ref = OCIReference.parse(self.bundle.reference)
        except InvalidReferenceError as exc:
            raise ValidationError(f"invalid reference for dependency {self.name!r}: {exc}") from exc
        if self.bundle.version and (ref.has_tag or ref.has_digest):
            raise ValidationError(
                f"reference for dependency {self.name!r} can only specify REGISTRY/NAME when version ranges are specified"
            )
        if self.sharing is not None and self.sharing.mode not in ("none", "group"):
            raise ValidationError(f"invalid sharing mode {self.sharing.mode!r} for dependency {self.name!r}")


class Dependencies(WireModel):
    requires: list[ManifestDependency] = Field(default_factory=list)

    def uses_v2(self) -> bool:
        return any(dep.uses_v2() for dep in self.requires)


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


def _named_list(value: Any, kind: str) -> Any:
    """Manifests list named items; porter works with them keyed by name."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    if not isinstance(value, list):
        raise ValueError(f"{kind} must be a list")
    items: dict[str, Any] = {}
    for item in value:
        if not isinstance(item, dict) or not item.get("name"):
            raise ValueError(f"{kind} name is required")
        items[item["name"]] = item
    return items


class Manifest(WireModel):
    """A parsed porter.yaml.

    Examples
    --------
    >>> m = Manifest.model_validate({
    ...     "name": "mybun", "version": "0.1.0", "registry": "localhost:5000",
    ...     "mixins": ["exec"],
    ...     "install": [{"exec": {"command": "bash", "flags": {"c": "'echo hi'"}}}],
    ...     "uninstall": [{"exec": {"command": "bash", "flags": {"c": "'echo bye'"}}}],
    ... })
    >>> m.get_steps("install")[0].mixin_name
    'exec'
    """

    model_config = ConfigDict(extra="forbid")

    schema_version: str = MANIFEST_SCHEMA_VERSION
    name: str = ""
    version: str = ""
    description: str | None = None
    maintainers: list[Maintainer] = Field(default_factory=list)
    registry: str = ""
    reference: str = ""
    dockerfile: str = ""
    mixins: list[MixinDeclaration] = Field(default_factory=list)
    install: list[Step] | None = None
    upgrade: list[Step] | None = None
    uninstall: list[Step] | None = None
    custom_action_steps: dict[str, list[Step]] = Field(default_factory=dict)
    custom_actions: dict[str, CustomActionDefinition] = Field(default_factory=dict)
    custom: dict[str, Any] = Field(default_factory=dict)
    state: list[StateVariable] = Field(default_factory=list)
    parameters: dict[str, ParameterDefinition] = Field(default_factory=dict)
    credentials: dict[str, CredentialDefinition] = Field(default_factory=dict)
    outputs: dict[str, OutputDefinition] = Field(default_factory=dict)
    dependencies: Dependencies = Field(default_factory=Dependencies)
    images: dict[str, MappedImage] = Field(default_factory=dict)
    required: list[RequiredExtensionDeclaration] = Field(default_factory=list)

    _path: Path | None = PrivateAttr(default=None)
    _raw: bytes = PrivateAttr(default=b"")

    @model_validator(mode="before")
    @classmethod
    def _collect_custom_actions(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        known = set()
        for field_name, field in cls.model_fields.items():
            known.add(field_name)
            known.add(field.alias or field_name)
        data = dict(data)
        custom_steps = dict(data.pop("customActionSteps", None) or {})
        for key in list(data):
            if key in known:
                continue
            value = data.pop(key)
            if key in _DEPRECATED_KEYS:
                logger.warning("The %r field has been deprecated and can no longer be user-specified; ignoring", key)
                continue
            if not isinstance(value, list):
                raise ValueError(f"unknown manifest field {key!r}")
            custom_steps[key] = value
        data["customActionSteps"] = custom_steps
        return data

    @field_validator("install", "upgrade", "uninstall", mode="before")
    @classmethod
    def _steps(cls, value: Any) -> Any:
        return _parse_steps(value)

    @field_validator("custom_action_steps", mode="before")
    @classmethod
    def _custom_steps(cls, value: Any) -> Any:
        return {name: _parse_steps(steps) or [] for name, steps in (value or {}).items()}

    @field_validator("parameters", mode="before")
    @classmethod
    def _parameters(cls, value: Any) -> Any:
        return _named_list(value, "parameter")

    @field_validator("credentials", mode="before")
    @classmethod
    def _credentials(cls, value: Any) -> Any:
        return _named_list(value, "credential")

    @field_validator("outputs", mode="before")
    @classmethod
    def _outputs(cls, value: Any) -> Any:
        return _named_list(value, "output")

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def from_bytes(cls, data: bytes, path: Path | None = None) -> Manifest:
        location = str(path) if path else "manifest"
        try:
            raw = yaml.safe_load(data) or {}
        except yaml.YAMLError as exc:
            raise ValidationError(f"invalid YAML: {exc}", location=location) from exc
        if not isinstance(raw, dict):
            raise ValidationError("the manifest must be a YAML map", location=location)
        try:
            manifest = cls.model_validate(raw)
        except PydanticValidationError as exc:
            raise ValidationError(f"invalid manifest: {exc}", location=location) from exc
        manifest._path = path
        manifest._raw = data
        return manifest

    @classmethod
    def load(cls, path: Path) -> Manifest:
        """Read and parse the manifest at ``path``."""
        path = Path(path)
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise ValidationError(f"unable to read manifest: {exc}", location=str(path)) from exc
        return cls.from_bytes(data, path)

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def raw(self) -> bytes:
        return self._raw

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    @property
    def mixin_names(self) -> list[str]:
        return [m.name for m in self.mixins]

    def get_mixin_config(self, name: str) -> Any:
        for mixin in self.mixins:
            if mixin.name == name:
                return mixin.config
        return None

    def list_actions(self) -> list[str]:
        actions = [a for a in BUILTIN_ACTIONS if getattr(self, a) is not None]
        return actions + sorted(self.custom_action_steps)

    def get_steps(self, action: str) -> list[Step]:
        if action in BUILTIN_ACTIONS:
            return list(getattr(self, action) or [])
        if action in self.custom_action_steps:
            return list(self.custom_action_steps[action])
        raise ValidationError(f"unsupported action: {action}")

    # ------------------------------------------------------------------
    # Templating
    # ------------------------------------------------------------------

    def template_variables(self) -> list[str]:
        """Every ``${ ... }`` expression used in the manifest, in order of first use."""
        seen: dict[str, None] = {}
        text = self._raw.decode("utf-8", errors="replace") if self._raw else yaml.safe_dump(
            self.model_dump(mode="json", by_alias=True)
        )
        for match in _TEMPLATE_VARIABLE.finditer(text):
            seen.setdefault(match.group(1), None)
        return list(seen)

    def templated_outputs(self) -> dict[str, OutputDefinition]:
        """Bundle outputs referenced by a template, keyed by output name."""
        result: dict[str, OutputDefinition] = {}
        for variable in self.template_variables():
            match = _TEMPLATED_OUTPUT.match(variable)
            if match and match.group(1) in self.outputs:
                result[match.group(1)] = self.outputs[match.group(1)]
        return result

    def templated_dependency_outputs(self) -> list[tuple[str, str]]:
        """``(dependency, output)`` pairs referenced by a template."""
        result = []
        for variable in self.template_variables():
            match = _TEMPLATED_DEPENDENCY_OUTPUT.match(variable)
            if match:
                result.append((match.group(1), match.group(2)))
        return result

    # ------------------------------------------------------------------
    # Validation and derived values
    # ------------------------------------------------------------------

    def validate_manifest(self) -> None:
        """Check the manifest invariants, raising the first problem found.

        Raises
        ------
        ValidationError
            With the manifest path as location.
        """
        location = str(self._path) if self._path else "manifest"
        try:
            self._validate()
        except ValidationError as exc:
            if exc.location:
                raise
            raise ValidationError(str(exc), location=location) from exc

    def _validate(self) -> None:
        if not self.name:
            raise ValidationError("bundle name must be set")
        if not self.registry and not self.reference:
            raise ValidationError("a registry or reference value must be provided")
        if self.version:
            version = parse_version(self.version)
            if version is None:
                raise ValidationError(f"version {self.version!r} is not a valid semver value")
        if self.dockerfile.lower() == "dockerfile":
            raise ValidationError(
                "Dockerfile template cannot be named 'Dockerfile' because that is the filename generated during porter build"
            )
        if not self.mixins:
            raise ValidationError("no mixins declared")
        if self.install is None:
            raise ValidationError("no install action defined")
        if self.uninstall is None:
            raise ValidationError("no uninstall action defined")
        mixins = self.mixin_names
        for action in self.list_actions():
            for i, step in enumerate(self.get_steps(action)):
                try:
                    step.validate_step(mixins)
                except ValidationError as exc:
                    raise ValidationError(f"validation of action {action!r} failed at step {i + 1}: {exc}") from exc
        for dep in self.dependencies.requires:
            dep.validate_dependency()
        for param in self.parameters.values():
            if param.type == "file" and not param.path:
                raise ValidationError(f"no destination path supplied for parameter {param.name}")
        for name, image in self.images.items():
            try:
                image.to_reference()
            except InvalidReferenceError as exc:
                raise ValidationError(f"invalid image {name}: {exc}") from exc

    @property
    def normalized_version(self) -> str:
        version = parse_version(self.version) if self.version else None
        return str(version) if version else self.version

    def bundle_reference(self) -> OCIReference:
        """The reference the bundle is published to.

        ``reference`` wins; otherwise ``<registry>/<name>:v<version>``.
        """
        if self.reference:
            ref = OCIReference.parse(self.reference)
        else:
            ref = OCIReference.parse(f"{self.registry.rstrip('/')}/{self.name}")
        if not ref.has_tag and not ref.has_digest:
            ref = ref.with_version(self.normalized_version or "0.0.0")
        return ref

    def env_var_for_parameter(self, name: str) -> str:
        param = self.parameters.get(name)
        if param is not None and param.env:
            return param.env
        return param_to_env_var(name)


def param_to_env_var(name: str) -> str:
    """Convert a parameter name to an environment variable name."""
    return name.upper().replace("-", "_").replace(".", "_")
