"""Dependency extension documents, v1 and v2.

V1 (``io.cnab.dependencies``) lists bundles with optional version ranges
and an optional explicit ``sequence``. V2 (``org.getporter.dependencies@v2``)
adds interfaces, installation selectors, sharing groups and wiring of
parameters, credentials and outputs between bundles.
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_serializer, model_validator

from porter.cnab.wire import WireModel

# ---------------------------------------------------------------------------
# V1
# ---------------------------------------------------------------------------


class DependencyVersion(WireModel):
    ranges: list[str] = Field(default_factory=list)
    allow_prereleases: bool = Field(default=False, alias="prereleases")


class DependencyV1(WireModel):
    bundle: str
    version: DependencyVersion | None = None


class DependenciesV1(WireModel):
    sequence: list[str] = Field(default_factory=list)
    requires: dict[str, DependencyV1] = Field(default_factory=dict)

    def list_by_sequence(self) -> list[tuple[str, DependencyV1]]:
        """Dependencies in execution order.

        ``sequence`` is honoured only when it names exactly as many
        dependencies as ``requires`` holds; otherwise aliases are sorted.
        """
        if self.sequence and len(self.sequence) == len(self.requires):
            return [(alias, self.requires[alias]) for alias in self.sequence if alias in self.requires]
        return sorted(self.requires.items())


# ---------------------------------------------------------------------------
# V2 wiring
# ---------------------------------------------------------------------------

_SOURCE_PATTERN = re.compile(
    r"^(\s*\$\{\s*)?bundle(\.dependencies\.([^.]+))?\.([^.]+)\.([^\s}]+)(\s*\}\s*)?$"
)


class DependencySource(BaseModel):
    """Where a dependency's parameter or credential value comes from.

    Exactly one of the fields is meaningful: a literal ``value``, or a
    ``parameter``/``credential``/``output`` of the root bundle or, with
    ``dependency`` set, of a sibling dependency.

    Examples
    --------
    >>> DependencySource.parse("${ bundle.dependencies.mysql.outputs.connstr }")
    DependencySource(value='', dependency='mysql', parameter='', credential='', output='connstr')
    >>> DependencySource.parse("bundle.parameters.region").parameter
    'region'
    >>> DependencySource.parse("us-east-1").value
    'us-east-1'
    """

    model_config = ConfigDict(frozen=True)

    value: str = ""
    dependency: str = ""
    parameter: str = ""
    credential: str = ""
    output: str = ""

    @model_validator(mode="before")
    @classmethod
    def _from_string(cls, data: Any) -> Any:
        if isinstance(data, str):
            return _parse_source(data)
        return data

    @model_serializer(mode="plain")
    def _to_string(self) -> str:
        return self.as_workflow_string()

    @classmethod
    def parse(cls, value: str) -> DependencySource:
        """Parse ``${ bundle... }``, a plain ``bundle...`` path, or a literal.

        Raises
        ------
        ValueError
            When a root bundle output is referenced; it cannot exist before
            the dependency runs.
        """
        return cls(**_parse_source(value))

    @property
    def is_literal(self) -> bool:
        return not (self.parameter or self.credential or self.output)

    def as_workflow_string(self) -> str:
        if self.is_literal:
            return self.value
        prefix = f"bundle.dependencies.{self.dependency}" if self.dependency else "bundle"
        if self.parameter:
            return f"${{ {prefix}.parameters.{self.parameter} }}"
        if self.credential:
            return f"${{ {prefix}.credentials.{self.credential} }}"
        return f"${{ {prefix}.outputs.{self.output} }}"


def _parse_source(value: str) -> dict[str, str]:
    match = _SOURCE_PATTERN.match(value)
    if match is None:
        return {"value": value}
    dependency, kind, name = match.group(3) or "", match.group(4), match.group(5)
    if kind == "parameters":
        return {"dependency": dependency, "parameter": name}
    if kind == "credentials":
        return {"dependency": dependency, "credential": name}
    if kind == "outputs":
        if not dependency:
            raise ValueError(
                f"invalid dependency source {value!r}: cannot pass a root bundle output to a dependency"
            )
        return {"dependency": dependency, "output": name}
    return {"value": value}


# ---------------------------------------------------------------------------
# V2
# ---------------------------------------------------------------------------


class InterfaceDocument(WireModel):
    parameters: list[str] = Field(default_factory=list)
    credentials: list[str] = Field(default_factory=list)
    outputs: list[str] = Field(default_factory=list)


class DependencyInterface(WireModel):
    reference: str | None = None
    document: InterfaceDocument | None = None


class InstallationCriteria(WireModel):
    match_interface: bool = False
    match_namespace: bool = False
    ignore_labels: bool = False


class DependencyInstallation(WireModel):
    labels: dict[str, str] = Field(default_factory=dict)
    criteria: InstallationCriteria | None = None


class SharingGroup(WireModel):
    name: str


SHARING_MODES = ("none", "group")


class Sharing(WireModel):
    mode: str = "none"
    group: SharingGroup | None = None

    @field_validator("mode")
    @classmethod
    def _check_mode(cls, value: str) -> str:
        if value not in SHARING_MODES:
            raise ValueError(f"invalid sharing mode {value!r}, expected one of {', '.join(SHARING_MODES)}")
        return value


class DependencyV2(WireModel):
    name: str = ""
    bundle: str = ""
    version: str = ""
    interface: DependencyInterface | None = None
    installation: DependencyInstallation | None = None
    sharing: Sharing | None = None
    parameters: dict[str, DependencySource] = Field(default_factory=dict)
    credentials: dict[str, DependencySource] = Field(default_factory=dict)


class DependenciesV2(WireModel):
    requires: dict[str, DependencyV2] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _name_dependencies(self) -> DependenciesV2:
        for alias, dep in self.requires.items():
            if not dep.name:
                dep.name = alias
        return self
