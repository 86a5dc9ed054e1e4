"""CNAB bundle descriptor models and the ExtendedBundle wrapper.

The descriptor mirrors ``bundle.json`` (camelCase on the wire).
:class:`ExtendedBundle` adds porter's typed view over it: sensitivity of
parameters and outputs, parameter type conversion, action metadata and
accessors for every supported custom extension.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from pathlib import Path
from typing import Any

from pydantic import Field
from pydantic import ValidationError as PydanticValidationError

from porter.cnab import extensions as ext
from porter.cnab.dependencies import DependenciesV1, DependenciesV2
from porter.cnab.wire import WireModel
from porter.errors import ExtensionNotPresentError, ValidationError

logger = logging.getLogger(__name__)

CNAB_SCHEMA_VERSION = "v1.2.0"
PORTER_CUSTOM_KEY = "sh.porter"
BUILTIN_ACTIONS = ("install", "upgrade", "uninstall")


class Definition(WireModel):
    """JSON-schema subset used by CNAB for parameter and output definitions."""

    type: str | list[str] | None = None
    default: Any = None
    write_only: bool | None = None
    content_encoding: str | None = None
    description: str | None = None
    enum: list[Any] | None = None
    minimum: float | None = None
    maximum: float | None = None

    @property
    def is_sensitive(self) -> bool:
        return bool(self.write_only)


class Destination(WireModel):
    env: str | None = None
    path: str | None = None


class Parameter(WireModel):
    definition: str
    destination: Destination | None = None
    apply_to: list[str] | None = None
    required: bool = False
    description: str | None = None

    def applies_to(self, action: str) -> bool:
        return not self.apply_to or action in self.apply_to


class Credential(WireModel):
    env: str | None = None
    path: str | None = None
    required: bool = False
    apply_to: list[str] | None = None
    description: str | None = None

    def applies_to(self, action: str) -> bool:
        return not self.apply_to or action in self.apply_to


class Output(WireModel):
    definition: str
    apply_to: list[str] | None = None
    path: str | None = None
    description: str | None = None

    def applies_to(self, action: str) -> bool:
        return not self.apply_to or action in self.apply_to


class InvocationImage(WireModel):
    image_type: str = "docker"
    image: str
    content_digest: str | None = None
    size: int | None = None
    media_type: str | None = None


class Image(WireModel):
    image_type: str = "docker"
    image: str
    content_digest: str | None = None
    description: str | None = None


class Action(WireModel):
    modifies: bool = False
    stateless: bool = False
    description: str | None = None


class Maintainer(WireModel):
    name: str
    email: str | None = None
    url: str | None = None


class BundleDescriptor(WireModel):
    """The CNAB ``bundle.json`` document."""

    schema_version: str = CNAB_SCHEMA_VERSION
    name: str
    version: str
    description: str | None = None
    keywords: list[str] | None = None
    maintainers: list[Maintainer] | None = None
    invocation_images: list[InvocationImage] = Field(default_factory=list)
    images: dict[str, Image] = Field(default_factory=dict)
    actions: dict[str, Action] = Field(default_factory=dict)
    parameters: dict[str, Parameter] = Field(default_factory=dict)
    credentials: dict[str, Credential] = Field(default_factory=dict)
    outputs: dict[str, Output] = Field(default_factory=dict)
    definitions: dict[str, Definition] = Field(default_factory=dict)
    required_extensions: list[str] = Field(default_factory=list)
    custom: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_json(cls, data: str | bytes) -> BundleDescriptor:
        try:
            return cls.model_validate_json(data)
        except PydanticValidationError as exc:
            raise ValidationError(f"invalid bundle descriptor: {exc}") from exc

    def to_json(self, *, indent: int | None = None) -> str:
        return json.dumps(self.to_wire(), indent=indent, sort_keys=True)


def load_bundle(path: Path) -> BundleDescriptor:
    """Read and validate a ``bundle.json`` from disk."""
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise ValidationError(f"unable to read bundle {path}: {exc}") from exc
    return BundleDescriptor.from_json(data)


class ExtendedBundle:
    """Typed access to a bundle descriptor and its custom extensions.

    Parameters
    ----------
    bundle:
        The wrapped descriptor (a ``dict`` is validated first).
    """

    def __init__(self, bundle: BundleDescriptor | dict[str, Any]) -> None:
        if isinstance(bundle, dict):
            bundle = BundleDescriptor.model_validate(bundle)
        self.bundle = bundle

    def __getattr__(self, name: str) -> Any:
        # Delegate descriptor fields (name, version, parameters, ...)
        bundle = self.__dict__.get("bundle")
        if bundle is None:
            raise AttributeError(name)
        return getattr(bundle, name)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ExtendedBundle) and other.bundle == self.bundle

    def __repr__(self) -> str:
        return f"ExtendedBundle({self.bundle.name}:{self.bundle.version})"

    # ------------------------------------------------------------------
    # Extensions
    # ------------------------------------------------------------------

    def supports_extension(self, key: str) -> bool:
        """Only the full key counts; shorthands are not matched here."""
        return key in self.bundle.required_extensions

    def process_required_extensions(self) -> dict[str, Any]:
        return ext.process_required_extensions(
            self.bundle.required_extensions, self.bundle.custom
        )

    def _read(self, key: str) -> Any:
        if not self.supports_extension(key) and key not in self.bundle.custom:
            raise ExtensionNotPresentError(f"the bundle does not use the {key} extension")
        return ext.get_supported_extension(key).read(self.bundle.custom)

    def has_dependencies_v1(self) -> bool:
        return self.supports_extension(ext.DEPENDENCIES_V1_KEY)

    def has_dependencies_v2(self) -> bool:
        return self.supports_extension(ext.DEPENDENCIES_V2_KEY)

    def read_dependencies_v1(self) -> DependenciesV1:
        return self._read(ext.DEPENDENCIES_V1_KEY)

    def read_dependencies_v2(self) -> DependenciesV2:
        return self._read(ext.DEPENDENCIES_V2_KEY)

    def has_parameter_sources(self) -> bool:
        # Parameter sources are optional metadata, not always a required extension
        return (
            self.supports_extension(ext.PARAMETER_SOURCES_KEY)
            or ext.PARAMETER_SOURCES_KEY in self.bundle.custom
        )

    def read_parameter_sources(self) -> ext.ParameterSources:
        return self._read(ext.PARAMETER_SOURCES_KEY)

    def supports_docker(self) -> bool:
        return self.supports_extension(ext.DOCKER_KEY)

    def read_docker(self) -> ext.Docker:
        return self._read(ext.DOCKER_KEY)

    def supports_file_parameters(self) -> bool:
        return self.supports_extension(ext.FILE_PARAMETERS_KEY)

    def supports_directory_parameters(self) -> bool:
        return self.supports_extension(ext.DIRECTORY_PARAMETER_KEY)

    def read_directory_parameters(self) -> ext.DirectoryParameters:
        return self._read(ext.DIRECTORY_PARAMETER_KEY)

    # ------------------------------------------------------------------
    # Porter metadata
    # ------------------------------------------------------------------

    def porter_metadata(self) -> dict[str, Any]:
        value = self.bundle.custom.get(PORTER_CUSTOM_KEY)
        return value if isinstance(value, dict) else {}

    def embedded_manifest(self) -> bytes | None:
        """Decode the base64 manifest stamped into ``sh.porter``, if any."""
        encoded = self.porter_metadata().get("manifest")
        if not encoded:
            return None
        try:
            return base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValidationError(f"invalid embedded manifest in {PORTER_CUSTOM_KEY}: {exc}") from exc

    # ------------------------------------------------------------------
    # Parameters and outputs
    # ------------------------------------------------------------------

    def _definition(self, name: str | None) -> Definition | None:
        if not name:
            return None
        return self.bundle.definitions.get(name)

    def is_sensitive_parameter(self, name: str) -> bool:
        param = self.bundle.parameters.get(name)
        definition = self._definition(param.definition if param else None)
        return bool(definition and definition.is_sensitive)

    def is_sensitive_output(self, name: str) -> bool:
        output = self.bundle.outputs.get(name)
        definition = self._definition(output.definition if output else None)
        return bool(definition and definition.is_sensitive)

    def is_file_type(self, definition: Definition | None) -> bool:
        return (
            definition is not None
            and self.supports_file_parameters()
            and definition.type == "string"
            and definition.content_encoding == "base64"
        )

    def get_parameter_type(self, name: str) -> str:
        param = self.bundle.parameters.get(name)
        definition = self._definition(param.definition if param else None)
        if definition is None:
            return ""
        if self.is_file_type(definition):
            return "file"
        return str(definition.type or "")

    def get_parameter_default(self, name: str) -> Any:
        param = self.bundle.parameters.get(name)
        definition = self._definition(param.definition if param else None)
        return definition.default if definition else None

    def parameter_applies_to(self, name: str, action: str) -> bool:
        param = self.bundle.parameters.get(name)
        return param is not None and param.applies_to(action)

    def output_applies_to(self, name: str, action: str) -> bool:
        output = self.bundle.outputs.get(name)
        return output is not None and output.applies_to(action)

    def convert_parameter_value(self, name: str, value: Any) -> Any:
        """Convert ``value`` (often a string from the command line) to the declared type."""
        param = self.bundle.parameters.get(name)
        if param is None:
            raise ValidationError(
                f"unable to convert the value of parameter {name}: not defined in bundle"
            )
        definition = self._definition(param.definition)
        if definition is None:
            raise ValidationError(
                f"unable to convert the value of parameter {name}: it has no definition"
            )
        if definition.type is None or not isinstance(value, str):
            return value
        try:
            return convert_value(definition.type, value)
        except ValueError as exc:
            raise ValidationError(f"unable to convert the value of parameter {name}: {exc}") from exc

    @staticmethod
    def write_parameter_to_string(name: str, value: Any) -> str:
        if isinstance(value, str):
            return value
        try:
            return json.dumps(value)
        except TypeError as exc:
            raise ValidationError(f"unable to convert parameter {name} to a string: {exc}") from exc

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def get_action(self, name: str) -> Action:
        if name in BUILTIN_ACTIONS:
            return Action(modifies=True, stateless=False)
        action = self.bundle.actions.get(name)
        if action is None:
            raise ValidationError(f"unsupported action: {name}")
        return action

    def is_stateless(self, action: str) -> bool:
        return self.get_action(action).stateless

    def modifies(self, action: str) -> bool:
        return self.get_action(action).modifies

    @staticmethod
    def build_prerequisite_installation_name(installation: str, dependency: str) -> str:
        return f"{installation}-{dependency}"


def convert_value(schema_type: str | list[str], value: str) -> Any:
    """Convert a string to a JSON-schema type (``boolean``, ``integer``, ...)."""
    types = [schema_type] if isinstance(schema_type, str) else list(schema_type)
    errors = []
    for t in types:
        try:
            if t == "string":
                return value
            if t == "boolean":
                lowered = value.strip().lower()
                if lowered in ("true", "1"):
                    return True
                if lowered in ("false", "0"):
                    return False
                raise ValueError(f"{value!r} is not a boolean")
            if t == "integer":
                return int(value)
            if t == "number":
                return float(value)
            if t in ("object", "array"):
                parsed = json.loads(value)
                expected = dict if t == "object" else list
                if not isinstance(parsed, expected):
                    raise ValueError(f"{value!r} is not an {t}")
                return parsed
            if t == "null":
                if value in ("", "null"):
                    return None
                raise ValueError(f"{value!r} is not null")
        except ValueError as exc:
            errors.append(str(exc))
            continue
        raise ValueError(f"unsupported type {t!r}")
    raise ValueError("; ".join(errors) or f"cannot convert {value!r}")
