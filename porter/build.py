"""Turn a porter.yaml into a CNAB bundle definition and a Dockerfile.

``porter build`` writes two files next to the manifest::

    .cnab/bundle.json   the bundle descriptor, stamped with the manifest digest
    .cnab/Dockerfile    base template + mixin build fragments

Building and pushing the invocation image itself is left to an image
builder; porter only prepares its build context.
"""

from __future__ import annotations

import base64
import logging
from pathlib import Path
from typing import Any

from porter import __version__
from porter.cnab import extensions as ext
from porter.cnab.bundle import (
    PORTER_CUSTOM_KEY,
    Action,
    BundleDescriptor,
    Credential,
    Definition,
    Destination,
    Image,
    InvocationImage,
    Maintainer,
    Output,
    Parameter,
)
from porter.cnab.dependencies import (
    DependenciesV1,
    DependenciesV2,
    DependencyInstallation,
    DependencyInterface,
    DependencySource,
    DependencyV1,
    DependencyV2,
    DependencyVersion,
    InstallationCriteria,
    InterfaceDocument,
    Sharing,
)
from porter.cnab.versions import parse_version
from porter.core.context import Context
from porter.core.hasher import manifest_digest
from porter.errors import PorterError, UnsupportedExtensionError, ValidationError
from porter.manifest import Manifest, ManifestDependency, param_to_env_var
from porter.mixins.provider import MixinProvider

logger = logging.getLogger(__name__)

BUILD_DIR = ".cnab"
DOCKERFILE = "Dockerfile"
BUNDLE_FILE = "bundle.json"
BUNDLE_OUTPUTS_DIR = "/cnab/app/outputs"
DEFAULT_DOCKERFILE_SYNTAX = "docker/dockerfile-upstream:1.4.0"
PORTER_INIT_TOKEN = "# PORTER_INIT"
PORTER_MIXINS_TOKEN = "# PORTER_MIXINS"

DEFAULT_DOCKERFILE_TEMPLATE = f"""\
# syntax={DEFAULT_DOCKERFILE_SYNTAX}
FROM debian:stable-slim

{PORTER_INIT_TOKEN}

RUN apt-get update && apt-get install -y ca-certificates

{PORTER_MIXINS_TOKEN}

# Use the BUNDLE_DIR build argument to copy files into the bundle's working directory
COPY --link . ${{BUNDLE_DIR}}
"""

# Well-known custom actions; anything else is assumed to modify resources
_WELL_KNOWN_ACTIONS = {
    "dry-run": Action(
        description="Execute the installation in a dry-run mode, allowing to see what would happen with the given set of parameter values",
        modifies=False,
        stateless=True,
    ),
    "help": Action(description="Print an help message to the standard output", modifies=False, stateless=True),
    "log": Action(description="Print logs of the installed system to the standard output", modifies=False),
    "status": Action(description="Print a human readable status message to the standard output", modifies=False),
    "status+json": Action(
        description="Print a json payload describing the detailed status with the following the CNAB status schema",
        modifies=False,
    ),
}


def default_action(name: str) -> Action:
    known = _WELL_KNOWN_ACTIONS.get(name.removeprefix("io.cnab."))
    if known is not None:
        return known
    return Action(description=name, modifies=True, stateless=False)


def output_wiring_parameter(output: str) -> str:
    """Name of the internal parameter that feeds a bundle output back in."""
    return f"porter-{output}-output"


def dependency_output_wiring_parameter(dependency: str, output: str) -> str:
    return f"porter-{dependency}-{output}-dep-output"


def _definition_name(name: str, kind: str) -> str:
    return name if name.endswith(kind) else f"{name}-{kind}"


def _schema(
    *,
    type_: str | None,
    default: Any = None,
    sensitive: bool = False,
    description: str | None = None,
    **extra: Any,
) -> Definition:
    definition = Definition(
        type=type_,
        default=default,
        write_only=True if sensitive else None,
        description=description,
        **{k: v for k, v in extra.items() if v is not None},
    )
    # "file" is porter's own type; CNAB sees a base64 string
    if type_ == "file":
        definition.type = "string"
        definition.content_encoding = "base64"
    return definition


# ---------------------------------------------------------------------------
# Manifest -> bundle.json
# ---------------------------------------------------------------------------


class ManifestConverter:
    """Convert a validated manifest into a :class:`BundleDescriptor`.

    Parameters
    ----------
    manifest:
        The parsed porter.yaml.
    manifest_bytes:
        Raw manifest, embedded base64-encoded in the ``sh.porter`` stamp.
    mixin_versions:
        Installed version of each declared mixin, also stamped.
    invocation_image:
        Reference of the invocation image; derived from the bundle
        reference when empty.
    """

    def __init__(
        self,
        manifest: Manifest,
        manifest_bytes: bytes | None = None,
        mixin_versions: dict[str, str] | None = None,
        invocation_image: str = "",
    ) -> None:
        self.manifest = manifest
        self.manifest_bytes = manifest.raw if manifest_bytes is None else manifest_bytes
        self.mixin_versions = dict(mixin_versions or {})
        self.invocation_image = invocation_image

    # ------------------------------------------------------------------

    def generate_stamp(self) -> dict[str, Any]:
        mixins = {name: {"version": self.mixin_versions.get(name, "")} for name in self.manifest.mixin_names}
        return {
            "manifestDigest": manifest_digest(self.manifest_bytes, mixins),
            "mixins": mixins,
            "manifest": base64.b64encode(self.manifest_bytes).decode("ascii"),
            "version": __version__,
            "commit": "",
        }

    def default_invocation_image(self, stamp: dict[str, Any]) -> str:
        ref = self.manifest.bundle_reference()
        return str(ref.without_digest().with_tag(f"porter-{stamp['manifestDigest'][:32]}"))

    def to_bundle(self) -> BundleDescriptor:
        """Build the descriptor; the manifest should already be validated."""
        stamp = self.generate_stamp()
        definitions: dict[str, Definition] = {}
        bundle = BundleDescriptor(
            name=self.manifest.name,
            version=self.manifest.normalized_version,
            description=self.manifest.description,
            maintainers=[
                Maintainer(name=m.name or "", email=m.email, url=m.url) for m in self.manifest.maintainers
            ]
            or None,
            invocation_images=[
                InvocationImage(image=self.invocation_image or self.default_invocation_image(stamp))
            ],
            actions=self.generate_custom_actions(),
            parameters=self.generate_parameters(definitions),
            outputs=self.generate_outputs(definitions),
            credentials=self.generate_credentials(),
            images=self.generate_images(),
            definitions=definitions,
        )
        bundle.custom = self.generate_custom_extensions(bundle)
        bundle.required_extensions = self.generate_required_extensions(bundle)
        bundle.custom[PORTER_CUSTOM_KEY] = stamp
        return bundle

    def generate_custom_actions(self) -> dict[str, Action]:
        actions: dict[str, Action] = {}
        for name, definition in self.manifest.custom_actions.items():
            actions[name] = Action(
                description=definition.description,
                modifies=definition.modifies,
                stateless=definition.stateless,
            )
        for name in self.manifest.custom_action_steps:
            if name not in actions:
                actions[name] = default_action(name)
        return actions

    def generate_parameters(self, definitions: dict[str, Definition]) -> dict[str, Parameter]:
        params: dict[str, Parameter] = {}
        for name, param in self.manifest.parameters.items():
            type_ = param.type or ("file" if param.path else "string")
            def_name = _definition_name(name, "parameter")
            definitions[def_name] = _schema(
                type_=type_,
                default=param.default,
                sensitive=param.sensitive,
                description=param.description,
                enum=param.enum,
                minimum=param.minimum,
                maximum=param.maximum,
                content_encoding=param.content_encoding,
            )
            params[name] = Parameter(
                definition=def_name,
                description=param.description,
                apply_to=param.apply_to,
                required=param.default is None,
                destination=Destination(env=param.env or param_to_env_var(name), path=param.path),
            )

        debug = "porter-debug"
        definitions[_definition_name(debug, "parameter")] = Definition(
            type="boolean",
            default=False,
            description="Print debug information from Porter when executing the bundle",
        )
        params[debug] = Parameter(
            definition=_definition_name(debug, "parameter"),
            description="Print debug information from Porter when executing the bundle",
            destination=Destination(env="PORTER_DEBUG"),
        )
        return params

    def generate_outputs(self, definitions: dict[str, Definition]) -> dict[str, Output]:
        outputs: dict[str, Output] = {}
        for name, output in self.manifest.outputs.items():
            def_name = _definition_name(name, "output")
            definitions[def_name] = _schema(
                type_=output.type or ("file" if output.path else "string"),
                default=output.default,
                sensitive=output.sensitive,
                description=output.description,
            )
            outputs[name] = Output(
                definition=def_name,
                description=output.description,
                apply_to=output.apply_to,
                path=f"{BUNDLE_OUTPUTS_DIR}/{name}",
            )
        return outputs

    def generate_credentials(self) -> dict[str, Any]:
        return {
            name: Credential(
                description=cred.description,
                required=cred.required,
                apply_to=cred.apply_to,
                env=cred.env,
                path=cred.path,
            )
            for name, cred in self.manifest.credentials.items()
        }

    def generate_images(self) -> dict[str, Image]:
        images: dict[str, Image] = {}
        for alias, mapped in self.manifest.images.items():
            ref = mapped.repository
            if mapped.digest:
                ref = f"{ref}@{mapped.digest}"
            elif mapped.tag:
                ref = f"{ref}:{mapped.tag}"
            else:
                ref = f"{ref}:latest"
            images[alias] = Image(
                image=ref,
                image_type=mapped.image_type,
                content_digest=mapped.digest,
                description=mapped.description,
            )
        return images

    # ------------------------------------------------------------------
    # Extensions
    # ------------------------------------------------------------------

    def generate_dependencies(self) -> tuple[str, Any] | None:
        requires = self.manifest.dependencies.requires
        if not requires:
            return None
        if self.manifest.dependencies.uses_v2():
            return ext.DEPENDENCIES_V2_KEY, DependenciesV2(
                requires={dep.name: self._dependency_v2(dep) for dep in requires}
            )
        deps = DependenciesV1(sequence=[dep.name for dep in requires])
        for dep in requires:
            version = None
            if dep.bundle.version:
                parsed = parse_version(dep.bundle.version)
                version = DependencyVersion(
                    ranges=[dep.bundle.version],
                    allow_prereleases=bool(parsed is not None and parsed.prerelease),
                )
            deps.requires[dep.name] = DependencyV1(bundle=dep.bundle.reference, version=version)
        return ext.DEPENDENCIES_V1_KEY, deps

    @staticmethod
    def _dependency_v2(dep: ManifestDependency) -> DependencyV2:
        interface = None
        if dep.bundle.interface is not None:
            declared = dep.bundle.interface
            interface = DependencyInterface(
                reference=declared.reference,
                document=InterfaceDocument(
                    parameters=declared.parameters,
                    credentials=declared.credentials,
                    outputs=declared.outputs,
                ),
            )
        installation = None
        if dep.installation is not None:
            criteria = dep.installation.criteria
            installation = DependencyInstallation(
                labels=dep.installation.labels,
                criteria=InstallationCriteria.model_validate(criteria.model_dump()) if criteria else None,
            )
        sharing = None
        if dep.sharing is not None:
            sharing = Sharing.model_validate({"mode": dep.sharing.mode, "group": dep.sharing.group})
        try:
            parameters = {k: DependencySource.parse(v) for k, v in dep.parameters.items()}
            credentials = {k: DependencySource.parse(v) for k, v in dep.credentials.items()}
        except ValueError as exc:
            raise ValidationError(f"invalid source for dependency {dep.name!r}: {exc}") from exc
        return DependencyV2(
            name=dep.name,
            bundle=dep.bundle.reference,
            version=dep.bundle.version,
            interface=interface,
            installation=installation,
            sharing=sharing,
            parameters=parameters,
            credentials=credentials,
        )

    def generate_parameter_sources(self, bundle: BundleDescriptor) -> dict[str, ext.ParameterSource]:
        """Parameter sources for ``source:`` parameters and templated outputs.

        Each templated ``bundle.outputs.X`` or
        ``bundle.dependencies.D.outputs.X`` gets an internal wiring parameter
        so the value can be injected on later runs.
        """
        sources: dict[str, ext.ParameterSource] = {}
        for name, param in self.manifest.parameters.items():
            if param.source is None or not param.source.output:
                continue
            sources[name] = self._source(param.source.output, param.source.dependency)

        for output in self.manifest.templated_outputs():
            wiring = output_wiring_parameter(output)
            source_def = bundle.outputs[output].definition
            definition = bundle.definitions[source_def].model_copy()
            definition.description = "porter-internal"
            bundle.definitions[wiring] = definition
            bundle.parameters[wiring] = self._wiring_parameter(
                wiring, f"Wires up the {output} output for use as a parameter. Porter internal parameter that should not be set manually."
            )
            sources[wiring] = self._source(output)

        for dependency, output in self.manifest.templated_dependency_outputs():
            wiring = dependency_output_wiring_parameter(dependency, output)
            bundle.definitions[wiring] = Definition(description="porter-internal")
            bundle.parameters[wiring] = self._wiring_parameter(
                wiring,
                f"Wires up the {dependency} dependency {output} output for use as a parameter. Porter internal parameter that should not be set manually.",
            )
            sources[wiring] = self._source(output, dependency)
        return sources

    @staticmethod
    def _wiring_parameter(name: str, description: str) -> Parameter:
        return Parameter(
            definition=name,
            description=description,
            required=False,
            destination=Destination(env=param_to_env_var(name)),
        )

    @staticmethod
    def _source(output: str, dependency: str = "") -> ext.ParameterSource:
        if dependency:
            kind = ext.PARAMETER_SOURCE_DEPENDENCY_OUTPUT
            settings = {"dependency": dependency, "name": output}
        else:
            kind = ext.PARAMETER_SOURCE_OUTPUT
            settings = {"name": output}
        return ext.ParameterSource(priority=[kind], sources={kind: settings})

    def generate_custom_extensions(self, bundle: BundleDescriptor) -> dict[str, Any]:
        custom: dict[str, Any] = {ext.FILE_PARAMETERS_KEY: {}}
        custom.update(self.manifest.custom)

        dependencies = self.generate_dependencies()
        if dependencies is not None:
            key, document = dependencies
            custom[key] = document.to_wire()

        sources = self.generate_parameter_sources(bundle)
        if sources:
            custom[ext.PARAMETER_SOURCES_KEY] = {k: v.to_wire() for k, v in sources.items()}

        for required in self.manifest.required:
            custom[lookup_extension_key(required.name)] = required.config or {}
        return custom

    def generate_required_extensions(self, bundle: BundleDescriptor) -> list[str]:
        required = [ext.FILE_PARAMETERS_KEY]
        for key in (ext.DEPENDENCIES_V1_KEY, ext.DEPENDENCIES_V2_KEY, ext.PARAMETER_SOURCES_KEY):
            if key in bundle.custom:
                required.append(key)
        for declared in self.manifest.required:
            key = lookup_extension_key(declared.name)
            if key not in required:
                required.append(key)
        return required


def lookup_extension_key(name: str) -> str:
    """Full key of a supported extension; unknown names are kept as written."""
    try:
        return ext.get_supported_extension(name).key
    except UnsupportedExtensionError:
        logger.warning("Required extension %s is not supported by porter", name)
        return name


# ---------------------------------------------------------------------------
# Dockerfile
# ---------------------------------------------------------------------------


def _init_lines() -> list[str]:
    return [
        "ARG BUNDLE_DIR",
        "ARG BUNDLE_UID=65532",
        "ARG BUNDLE_USER=nonroot",
        "ARG BUNDLE_GID=0",
        "RUN useradd ${BUNDLE_USER} -m -u ${BUNDLE_UID} -g ${BUNDLE_GID} -o",
    ]


def _token_index(lines: list[str], token: str) -> int:
    for i, line in enumerate(lines):
        if line.strip() == token:
            return i
    return -1


def _first_from(lines: list[str]) -> int:
    for i, line in enumerate(lines):
        if line.strip().upper().startswith("FROM "):
            return i + 1
    return -1


def generate_dockerfile(manifest: Manifest, fragments: list[bytes], template: str | None = None) -> str:
    """Assemble the invocation image Dockerfile.

    ``# PORTER_INIT`` and ``# PORTER_MIXINS`` lines in the template are
    replaced by the init section and the mixin fragments (in manifest
    order). Without the tokens, the init section follows the first
    ``FROM`` and the mixin lines are appended.
    """
    lines = (template if template is not None else DEFAULT_DOCKERFILE_TEMPLATE).splitlines()
    if not any(line.startswith("# syntax=") for line in lines):
        logger.warning("No syntax was declared in the template Dockerfile, using %s", DEFAULT_DOCKERFILE_SYNTAX)
        lines.insert(0, f"# syntax={DEFAULT_DOCKERFILE_SYNTAX}")

    mixin_lines: list[str] = []
    for fragment in fragments:
        mixin_lines.extend(fragment.decode("utf-8").rstrip("\n").splitlines())

    for token, section, fallback in (
        (PORTER_INIT_TOKEN, _init_lines(), _first_from(lines)),
        (PORTER_MIXINS_TOKEN, mixin_lines, -1),
    ):
        index = _token_index(lines, token)
        if index >= 0:
            lines[index : index + 1] = section
        elif fallback >= 0:
            lines[fallback:fallback] = section
        else:
            lines.extend(section)

    lines += [
        "RUN rm -fr ${BUNDLE_DIR}/.cnab",
        "COPY --link .cnab /cnab",
        "RUN chgrp -R ${BUNDLE_GID} /cnab && chmod -R g=u /cnab",
        "USER ${BUNDLE_UID}",
        "WORKDIR ${BUNDLE_DIR}",
        'CMD ["/cnab/app/run"]',
    ]
    return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


class Builder:
    """Prepare the ``.cnab`` build context for a manifest."""

    def __init__(self, mixins: MixinProvider) -> None:
        self.mixins = mixins

    def build(self, ctx: Context, manifest_path: Path) -> BundleDescriptor:
        """Validate the manifest, then write ``.cnab/Dockerfile`` and ``.cnab/bundle.json``.

        Raises
        ------
        ValidationError
            The manifest is invalid.
        PorterError
            A mixin failed to produce build instructions or the files could
            not be written.
        """
        manifest_path = Path(manifest_path)
        manifest = Manifest.load(manifest_path)
        manifest.validate_manifest()

        versions = {name: self.mixins.get_version(ctx, name) for name in manifest.mixin_names}
        fragments = self.mixins.build_fragments(ctx, manifest)

        template = None
        if manifest.dockerfile:
            template_path = manifest_path.parent / manifest.dockerfile
            try:
                template = template_path.read_text(encoding="utf-8")
            except OSError as exc:
                raise PorterError(f"the Dockerfile specified in the manifest could not be read: {exc}") from exc

        dockerfile = generate_dockerfile(manifest, fragments, template)
        bundle = ManifestConverter(manifest, mixin_versions=versions).to_bundle()

        out_dir = manifest_path.parent / BUILD_DIR
        try:
            out_dir.mkdir(parents=True, exist_ok=True)
            (out_dir / DOCKERFILE).write_text(dockerfile, encoding="utf-8")
            (out_dir / BUNDLE_FILE).write_text(bundle.to_json(indent=2), encoding="utf-8")
        except OSError as exc:
            raise PorterError(f"unable to write the build output to {out_dir}: {exc}") from exc
        logger.info("Generated %s and %s in %s", DOCKERFILE, BUNDLE_FILE, out_dir)
        return bundle
