"""Placeholder resolution for manifest steps.

Before a step is handed to its mixin, every ``${ bundle.X }`` placeholder
in it is resolved against the current run: the step is dumped to YAML,
rendered with Jinja2 and parsed back. Placeholders use ``.`` separators and
names may contain dashes (``${ bundle.parameters.db-name }``).

Recognized roots::

    bundle.name / version / description / invocationImage / custom
    bundle.parameters.<p>        current parameter value
    bundle.credentials.<c>       current credential value
    bundle.outputs.<o>           output produced earlier in this run
    bundle.dependencies.<a>.outputs.<o>
    bundle.images.<alias>.<field>
    installation.name / namespace
    env.<NAME>

A missing variable fails the render, except dependency outputs during
``uninstall``: dependencies are torn down first so their outputs are treated
as absent and render as empty strings.
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from jinja2 import Environment, StrictUndefined, TemplateError, Undefined
from pydantic import BaseModel, ConfigDict, Field

from porter.cnab.bundle import ExtendedBundle
from porter.errors import ValidationError
from porter.manifest import Manifest, Step

logger = logging.getLogger(__name__)

UNINSTALL = "uninstall"

_ROOTS = ("bundle", "installation", "env")
_PLACEHOLDER = re.compile(r"\$\{(\s*([A-Za-z_][\w-]*(?:\.[\w-]+)*)\s*\})?")
_LITERAL_OPEN = "${ '${' }"


class _Absent:
    """Stands in for a dependency output that is gone during uninstall."""

    def __getitem__(self, key: Any) -> _Absent:
        return self

    def __getattr__(self, name: str) -> _Absent:
        return self

    def __str__(self) -> str:
        return ""


ABSENT = _Absent()


class _AbsentDependencies(dict):
    def __missing__(self, key: Any) -> _Absent:
        return ABSENT


def _finalize(value: Any) -> Any:
    if isinstance(value, Undefined):
        return value
    if value is None or isinstance(value, _Absent):
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    return json.dumps(value)


_environment = Environment(
    variable_start_string="${",
    variable_end_string="}",
    # Only variables are used; keep the other delimiters out of the way of shell syntax
    block_start_string="{%%",
    block_end_string="%%}",
    comment_start_string="{##",
    comment_end_string="##}",
    undefined=StrictUndefined,
    finalize=_finalize,
    keep_trailing_newline=True,
    autoescape=False,
)


def to_subscript_form(template: str) -> str:
    """Rewrite dotted placeholders as subscripts so names may contain dashes.

    Any other ``${`` (shell variables such as ``${HOME}``) is kept literal.

    Examples
    --------
    >>> to_subscript_form("connect ${ bundle.parameters.db-name }")
    "connect ${ bundle['parameters']['db-name'] }"
    >>> to_subscript_form("cd ${HOME}")
    "cd ${ '${' }HOME}"
    """

    def _replace(match: re.Match[str]) -> str:
        path = match.group(2)
        if path is None or path.split(".")[0] not in _ROOTS:
            return _LITERAL_OPEN + (match.group(1) or "")
        root, *rest = path.split(".")
        return "${ " + root + "".join(f"[{part!r}]" for part in rest) + " }"

    return _PLACEHOLDER.sub(_replace, template)


class DependencyContext(BaseModel):
    """What a step can see of one resolved dependency."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = ""
    version: str = ""
    description: str = ""
    outputs: dict[str, str] = Field(default_factory=dict)
    bundle: ExtendedBundle | None = None

    def is_sensitive_output(self, name: str) -> bool:
        return self.bundle is not None and self.bundle.is_sensitive_output(name)


class RuntimeManifest:
    """A manifest bound to one action of one run.

    Parameters
    ----------
    manifest:
        The parsed porter.yaml.
    action:
        Action being executed; selects the steps.
    bundle:
        The bundle built from the manifest, used for sensitivity checks.
    parameters, credentials:
        Resolved values for this run.
    installation_name, namespace:
        Exposed as ``installation.name`` and ``installation.namespace``.
    dependencies:
        Resolved dependencies keyed by alias.
    outputs:
        Outputs from earlier runs that steps may reference.
    env:
        Exposed as ``env``; defaults to the process environment.
    """

    def __init__(
        self,
        manifest: Manifest,
        action: str,
        *,
        bundle: ExtendedBundle | None = None,
        parameters: dict[str, Any] | None = None,
        credentials: dict[str, str] | None = None,
        installation_name: str = "",
        namespace: str = "",
        dependencies: dict[str, DependencyContext] | None = None,
        outputs: dict[str, str] | None = None,
        env: dict[str, str] | None = None,
        relocation_map: dict[str, str] | None = None,
        working_dir: Path | None = None,
    ) -> None:
        self.manifest = manifest
        self.action = action
        self.bundle = bundle
        self.parameters = dict(parameters or {})
        self.credentials = dict(credentials or {})
        self.installation_name = installation_name
        self.namespace = namespace
        self.dependencies = dict(dependencies or {})
        self.outputs: dict[str, str] = dict(outputs or {})
        self.produced: dict[str, str] = {}
        self.env = dict(os.environ if env is None else env)
        self.relocation_map = dict(relocation_map or {})
        self.working_dir = working_dir
        self.steps: list[Step] = manifest.get_steps(action)
        self._sensitive: list[str] = []

    # ------------------------------------------------------------------
    # Source data
    # ------------------------------------------------------------------

    def _mark_sensitive(self, value: Any) -> None:
        text = value if isinstance(value, str) else json.dumps(value)
        if text and text not in self._sensitive:
            self._sensitive.append(text)

    def _is_sensitive_parameter(self, name: str) -> bool:
        param = self.manifest.parameters.get(name)
        if param is not None and param.sensitive:
            return True
        return self.bundle is not None and self.bundle.is_sensitive_parameter(name)

    def _resolve_parameter(self, name: str) -> Any:
        if name in self.parameters:
            return self.parameters[name]
        param = self.manifest.parameters[name]
        if param.type == "file" and param.path:
            return param.path
        return self.env.get(self.manifest.env_var_for_parameter(name), "")

    def _resolve_credential(self, name: str) -> str:
        if name in self.credentials:
            return self.credentials[name]
        cred = self.manifest.credentials[name]
        if cred.env:
            return self.env.get(cred.env, "")
        if cred.path:
            return cred.path
        raise ValidationError(f"credential: {name} is malformed")

    def _image_data(self) -> dict[str, dict[str, Any]]:
        images: dict[str, dict[str, Any]] = {}
        for alias, image in self.manifest.images.items():
            data = image.model_dump(mode="json", by_alias=True)
            original = image.repository + (f"@{image.digest}" if image.digest else "")
            relocated = self.relocation_map.get(original) or self.relocation_map.get(image.repository)
            if relocated:
                repository, _, digest = relocated.partition("@")
                data["repository"] = repository
                if digest:
                    data["digest"] = digest
            images[alias] = {k: ("" if v is None else v) for k, v in data.items()}
        return images

    def build_source_data(self) -> dict[str, Any]:
        """The template context for one step; also recomputes the sensitive values."""
        self._sensitive = []
        uninstalling = self.action == UNINSTALL

        parameters: dict[str, Any] = {}
        for name, param in self.manifest.parameters.items():
            if not param.applies_to(self.action):
                continue
            value = self._resolve_parameter(name)
            if self._is_sensitive_parameter(name):
                self._mark_sensitive(value)
            parameters[name] = value

        credentials: dict[str, str] = {}
        for name, cred in self.manifest.credentials.items():
            if cred.apply_to and self.action not in cred.apply_to:
                continue
            value = self._resolve_credential(name)
            self._mark_sensitive(value)
            credentials[name] = value

        # Step outputs are sensitive unless declared as non-sensitive bundle outputs
        for name, value in self.outputs.items():
            definition = self.manifest.outputs.get(name)
            if definition is not None and not definition.sensitive:
                continue
            self._mark_sensitive(value)

        dependencies: dict[str, Any] = _AbsentDependencies() if uninstalling else {}
        for alias, dep in self.dependencies.items():
            if uninstalling:
                outputs: Any = ABSENT
            else:
                outputs = dict(dep.outputs)
                for name, value in dep.outputs.items():
                    if dep.is_sensitive_output(name):
                        self._mark_sensitive(value)
            dependencies[alias] = {
                "name": dep.name,
                "version": dep.version,
                "description": dep.description,
                "outputs": outputs,
            }

        invocation_image = ""
        if self.bundle is not None and self.bundle.invocation_images:
            invocation_image = self.bundle.invocation_images[0].image

        return {
            "bundle": {
                "name": self.manifest.name,
                "version": self.manifest.version,
                "description": self.manifest.description or "",
                "invocationImage": invocation_image,
                "custom": self.manifest.custom,
                "parameters": parameters,
                "credentials": credentials,
                "outputs": dict(self.outputs),
                "images": self._image_data(),
                "dependencies": dependencies,
            },
            "installation": {"name": self.installation_name, "namespace": self.namespace},
            "env": self.env,
        }

    @property
    def sensitive_values(self) -> list[str]:
        self.build_source_data()
        return list(self._sensitive)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def resolve_step(self, step: Step, index: int | None = None) -> Step:
        """Render every placeholder in ``step``.

        Raises
        ------
        ValidationError
            A placeholder names a missing value, or the rendered step is not
            valid YAML.
        """
        label = f"{index + 1} " if index is not None else ""
        name = f"step {label}({step.description or step.mixin_name}) of action {self.action}"
        source = self.build_source_data()
        template = yaml.safe_dump(step.to_dict(), sort_keys=False, width=float("inf"))
        try:
            rendered = _environment.from_string(to_subscript_form(template)).render(source)
        except TemplateError as exc:
            raise ValidationError(f"unable to render {name}: {exc}") from exc
        try:
            data = yaml.safe_load(rendered)
        except yaml.YAMLError as exc:
            raise ValidationError(f"invalid step yaml after rendering {name}: {exc}") from exc
        if not isinstance(data, dict):
            raise ValidationError(f"invalid step yaml after rendering {name}: not a map")
        return Step.model_validate(data)

    def apply_step_outputs(self, outputs: dict[str, str]) -> None:
        self.outputs.update(outputs)
        self.produced.update(outputs)

    def environment(self) -> dict[str, str]:
        """Parameters and credentials as the environment variables the bundle declares."""
        source = self.build_source_data()["bundle"]
        env: dict[str, str] = {}
        for name, value in source["parameters"].items():
            text = value if isinstance(value, str) else json.dumps(value)
            env[self.manifest.env_var_for_parameter(name)] = text
        for name, value in source["credentials"].items():
            cred = self.manifest.credentials[name]
            if cred.env:
                env[cred.env] = value
        return env
