"""Custom extensions porter understands, and required-extension processing.

Each supported extension has a canonical key, a legacy shorthand (older
bundles listed ``dependencies`` instead of ``io.cnab.dependencies`` in
``requiredExtensions``) and a reader that turns the bundle's ``custom``
section into a typed value.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from porter.cnab.dependencies import DependenciesV1, DependenciesV2
from porter.cnab.wire import WireModel
from porter.errors import UnsupportedExtensionError, ValidationError

OFFICIAL_EXTENSIONS_PREFIX = "io.cnab."
PORTER_EXTENSIONS_PREFIX = "sh.porter."

DEPENDENCIES_V1_KEY = OFFICIAL_EXTENSIONS_PREFIX + "dependencies"
DEPENDENCIES_V2_KEY = "org.getporter.dependencies@v2"
PARAMETER_SOURCES_KEY = OFFICIAL_EXTENSIONS_PREFIX + "parameter-sources"
DOCKER_KEY = OFFICIAL_EXTENSIONS_PREFIX + "docker"
FILE_PARAMETERS_KEY = PORTER_EXTENSIONS_PREFIX + "file-parameters"
DIRECTORY_PARAMETER_KEY = PORTER_EXTENSIONS_PREFIX + "directory-parameter"

# ---------------------------------------------------------------------------
# Extension documents
# ---------------------------------------------------------------------------


class Docker(WireModel):
    """``io.cnab.docker``: the bundle needs access to the host's Docker daemon."""

    privileged: bool = False


class DirectoryDetails(WireModel):
    kind: str = "directory"
    mount_path: str = ""
    writeable: bool = False


DirectoryParameters = dict[str, DirectoryDetails]

PARAMETER_SOURCE_OUTPUT = "output"
PARAMETER_SOURCE_DEPENDENCY_OUTPUT = "dependencies.output"
PARAMETER_SOURCE_TYPES = (PARAMETER_SOURCE_OUTPUT, PARAMETER_SOURCE_DEPENDENCY_OUTPUT)


class ParameterSource(WireModel):
    """How to default one parameter from an earlier output.

    ``sources`` maps a source type to its settings: ``output`` ->
    ``{"name": ...}`` and ``dependencies.output`` -> ``{"dependency": ...,
    "name": ...}``. ``priority`` orders the types to try.
    """

    priority: list[str] = Field(default_factory=list)
    sources: dict[str, dict[str, str]] = Field(default_factory=dict)

    def list_sources_by_priority(self) -> list[tuple[str, dict[str, str]]]:
        ordered = [t for t in self.priority if t in self.sources]
        ordered += sorted(t for t in self.sources if t not in ordered)
        return [(t, self.sources[t]) for t in ordered]


ParameterSources = dict[str, ParameterSource]


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------


class _NoConfiguration(Exception):
    pass


def _config(custom: dict[str, Any], key: str) -> Any:
    if key not in custom:
        raise _NoConfiguration()
    return custom[key]


def _read_model(model: type[BaseModel]) -> Callable[[dict[str, Any], str], Any]:
    def _reader(custom: dict[str, Any], key: str) -> Any:
        return model.model_validate(_config(custom, key) or {})

    return _reader


def _read_parameter_sources(custom: dict[str, Any], key: str) -> ParameterSources:
    raw = _config(custom, key) or {}
    return {name: ParameterSource.model_validate(value) for name, value in raw.items()}


def _read_directory_parameters(custom: dict[str, Any], key: str) -> DirectoryParameters:
    raw = _config(custom, key) or {}
    return {name: DirectoryDetails.model_validate(value) for name, value in raw.items()}


def _read_flag(custom: dict[str, Any], key: str) -> None:
    # The extension's presence in requiredExtensions is the whole configuration
    return None


class RequiredExtension(BaseModel):
    """An entry in the supported-extensions table."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    key: str
    shorthand: str
    reader: Callable[[dict[str, Any], str], Any]

    def read(self, custom: dict[str, Any]) -> Any:
        """Run the reader against ``custom``, keyed by either name."""
        source = custom
        if self.key not in custom and self.shorthand in custom:
            source = {self.key: custom[self.shorthand]}
        try:
            return self.reader(source, self.key)
        except _NoConfiguration:
            raise ValidationError(
                f"unable to process extension: {self.key}: no custom extension configuration found"
            ) from None
        except (PydanticValidationError, ValueError, AttributeError) as exc:
            raise ValidationError(f"unable to process extension: {self.key}: {exc}") from exc


SUPPORTED_EXTENSIONS: list[RequiredExtension] = [
    RequiredExtension(key=DEPENDENCIES_V1_KEY, shorthand="dependencies", reader=_read_model(DependenciesV1)),
    RequiredExtension(key=DEPENDENCIES_V2_KEY, shorthand="dependencies@v2", reader=_read_model(DependenciesV2)),
    RequiredExtension(key=PARAMETER_SOURCES_KEY, shorthand="parameter-sources", reader=_read_parameter_sources),
    RequiredExtension(key=DOCKER_KEY, shorthand="docker", reader=_read_model(Docker)),
    RequiredExtension(key=FILE_PARAMETERS_KEY, shorthand="file-parameters", reader=_read_flag),
    RequiredExtension(key=DIRECTORY_PARAMETER_KEY, shorthand="directory-parameter", reader=_read_directory_parameters),
]


def get_supported_extension(name: str) -> RequiredExtension:
    """Look up an extension by full key or legacy shorthand."""
    for extension in SUPPORTED_EXTENSIONS:
        if name in (extension.key, extension.shorthand):
            return extension
    raise UnsupportedExtensionError(f"unsupported required extension: {name}")


def process_required_extensions(required: list[str], custom: dict[str, Any]) -> dict[str, Any]:
    """Read every required extension, keyed by its canonical key.

    Raises
    ------
    UnsupportedExtensionError
        When any required extension is not in the supported table.
    ValidationError
        When a supported extension's configuration cannot be read.
    """
    processed: dict[str, Any] = {}
    for name in required:
        extension = get_supported_extension(name)
        processed[extension.key] = extension.read(custom)
    return processed
