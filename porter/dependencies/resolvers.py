"""Resolution of declared dependencies to graph nodes.

A dependency may name a default bundle (optionally with a version range),
an interface the bundle must satisfy, and criteria for reusing an existing
installation. :class:`CompositeResolver` tries, in order:

1. :class:`InstallationResolver`, reuse an existing installation;
2. :class:`VersionResolver`, the highest registry tag in the version range;
3. :class:`DefaultBundleResolver`, the default bundle reference as written.

A dependency that none of them can resolve is fatal.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field

from porter.cnab.bundle import ExtendedBundle
from porter.cnab.dependencies import DependencySource, DependencyV2, Sharing
from porter.cnab.reference import OCIReference
from porter.cnab.versions import VersionConstraint, parse_version, select_tag
from porter.core.context import Context
from porter.dependencies.graph import (
    ROOT_KEY,
    BundleGraph,
    BundleNode,
    BundleSource,
    InstallationNode,
    Node,
    build_v1_graph,
    make_dependency_key,
)
from porter.errors import InvalidReferenceError, ValidationError
from porter.storage.installations import InstallationStore
from porter.storage.models import Installation

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Selectors
# ---------------------------------------------------------------------------


class BundleReferenceSelector(BaseModel):
    """Bundle criteria: a reference and an optional version range."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    reference: OCIReference
    version: VersionConstraint | None = None

    def is_match(self, installation: Installation) -> bool:
        """Does the bundle last run by ``installation`` satisfy these criteria?

        With a version range the repositories must be equal and the
        installation's bundle version must be in range; otherwise the
        references must be equal.
        """
        if not installation.status.bundle_reference:
            logger.debug("Installation %s does not match: it has no bundle", installation)
            return False
        try:
            ref = OCIReference.parse(installation.status.bundle_reference)
        except InvalidReferenceError:
            logger.warning(
                "Installation %s has an invalid bundle reference %r",
                installation,
                installation.status.bundle_reference,
            )
            return False

        if self.version is None:
            return str(ref) == str(self.reference)
        if ref.repository != self.reference.repository:
            logger.debug(
                "Installation %s does not match: repository %s is not %s",
                installation,
                ref.repository,
                self.reference.repository,
            )
            return False
        version = parse_version(installation.status.bundle_version)
        if version is None:
            logger.debug("Installation %s does not match: no valid bundle version", installation)
            return False
        return self.version.allows(version)


class BundleInterfaceSelector(BaseModel):
    """What the consumer needs from a bundle, named like the bundle declares it."""

    parameters: list[str] = Field(default_factory=list)
    credentials: list[str] = Field(default_factory=list)
    outputs: list[str] = Field(default_factory=list)

    @classmethod
    def from_bundle(cls, bundle: ExtendedBundle) -> BundleInterfaceSelector:
        return cls(
            parameters=sorted(bundle.parameters),
            credentials=sorted(bundle.credentials),
            outputs=sorted(bundle.outputs),
        )

    def is_bundle_match(self, bundle: ExtendedBundle) -> bool:
        """A bundle matches when it declares every named parameter, credential and output."""
        return (
            all(name in bundle.parameters for name in self.parameters)
            and all(name in bundle.credentials for name in self.credentials)
            and all(name in bundle.outputs for name in self.outputs)
        )

    def is_match(self, installation: Installation) -> bool:
        # Installations do not record the bundle definition, only its reference
        return True


class InstallationSelector(BaseModel):
    """Criteria for reusing an existing installation.

    Labels and namespaces build the store query; bundle and interface
    criteria filter the candidates it returns.
    """

    bundle: BundleReferenceSelector | None = None
    interface: BundleInterfaceSelector | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    namespaces: list[str] = Field(default_factory=list)

    def is_match(self, installation: Installation) -> bool:
        if self.bundle is not None and not self.bundle.is_match(installation):
            return False
        if self.interface is not None and not self.interface.is_match(installation):
            return False
        return True


class Dependency(BaseModel):
    """A declared dependency, ready to be resolved to a node."""

    key: str
    parent_key: str = ""
    default_bundle: BundleReferenceSelector | None = None
    interface: BundleInterfaceSelector | None = None
    installation_selector: InstallationSelector | None = None
    parameters: dict[str, DependencySource] = Field(default_factory=dict)
    credentials: dict[str, DependencySource] = Field(default_factory=dict)
    sharing: Sharing | None = None

    @property
    def alias(self) -> str:
        return self.key.rsplit("/", 1)[-1]


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


class DependencyResolver(Protocol):
    def resolve_dependency(self, ctx: Context, dep: Dependency) -> Node | None: ...


class InstallationResolver:
    """Reuse an existing installation that matches the installation selector."""

    def __init__(self, store: InstallationStore, namespace: str) -> None:
        self.store = store
        self.namespace = namespace

    def resolve_dependency(self, ctx: Context, dep: Dependency) -> Node | None:
        selector = dep.installation_selector
        if selector is None:
            return None

        filter: dict[str, Any] = {"$or": [{"namespace": ns} for ns in selector.namespaces]}
        for key, value in selector.labels.items():
            filter[f'labels."{key}"'] = value
        installations = self.store.find_installations(ctx, filter, sort=["-namespace", "name"])
        matches = [inst for inst in installations if selector.is_match(inst)]
        if not matches:
            return None
        if len(matches) > 1:
            logger.debug("%d installations match dependency %s", len(matches), dep.key)

        # Prefer the default bundle's repository, then the current namespace, then sort order
        candidates = matches
        if dep.default_bundle is not None:
            repository = dep.default_bundle.reference.repository
            candidates = [m for m in matches if _repository(m) == repository] or matches
        local = [m for m in candidates if m.namespace == self.namespace]
        chosen = (local or candidates)[0]
        logger.info("Dependency %s resolved to installation %s", dep.key, chosen)
        return InstallationNode(
            key=dep.key,
            parent_key=dep.parent_key,
            namespace=chosen.namespace,
            name=chosen.name,
        )


def _repository(installation: Installation) -> str:
    try:
        return OCIReference.parse(installation.status.bundle_reference).repository
    except InvalidReferenceError:
        return ""


class VersionResolver:
    """Pick the highest tag of the default bundle's repository within its version range."""

    def __init__(self, puller: BundleSource) -> None:
        self.puller = puller

    def resolve_dependency(self, ctx: Context, dep: Dependency) -> Node | None:
        if dep.default_bundle is None or dep.default_bundle.version is None:
            return None
        ref = dep.default_bundle.reference
        tag = select_tag(self.puller.list_tags(ctx, ref), dep.default_bundle.version)
        if tag is None:
            logger.debug("No tag of %s is in range %s", ref.repository, dep.default_bundle.version)
            return None
        resolved = OCIReference.parse(ref.repository).with_tag(tag)
        logger.info("Dependency %s resolved to %s", dep.key, resolved)
        return _bundle_node(ctx, self.puller, dep, resolved)


class DefaultBundleResolver:
    """Use the default bundle reference as written."""

    def __init__(self, puller: BundleSource) -> None:
        self.puller = puller

    def resolve_dependency(self, ctx: Context, dep: Dependency) -> Node | None:
        if dep.default_bundle is None:
            return None
        logger.info("Dependency %s resolved to %s", dep.key, dep.default_bundle.reference)
        return _bundle_node(ctx, self.puller, dep, dep.default_bundle.reference)


def _bundle_node(ctx: Context, puller: BundleSource, dep: Dependency, ref: OCIReference) -> BundleNode:
    cached = puller.get_bundle(ctx, ref)
    bundle = cached.extended
    if dep.interface is not None and not dep.interface.is_bundle_match(bundle):
        raise ValidationError(f"bundle {ref} does not satisfy the interface of dependency {dep.key}")
    return BundleNode(
        key=dep.key,
        parent_key=dep.parent_key,
        reference=ref,
        bundle=bundle,
        parameters=dict(dep.parameters),
        credentials=dict(dep.credentials),
        sharing=dep.sharing,
    )


# ---------------------------------------------------------------------------
# Composite
# ---------------------------------------------------------------------------


class CompositeResolver:
    """Apply the installation, version and default resolvers in that order.

    Parameters
    ----------
    namespace:
        Namespace of the root installation.
    puller:
        Source of dependency bundles and registry tags.
    store:
        Installations that may satisfy a dependency.
    """

    def __init__(self, namespace: str, puller: BundleSource, store: InstallationStore) -> None:
        self.namespace = namespace
        self.puller = puller
        self.resolvers: list[DependencyResolver] = [
            InstallationResolver(store, namespace),
            VersionResolver(puller),
            DefaultBundleResolver(puller),
        ]

    def resolve_dependency(self, ctx: Context, dep: Dependency) -> Node:
        """Raises ValidationError when the dependency has no selectors or nothing resolves it."""
        if dep.default_bundle is None and dep.interface is None and dep.installation_selector is None:
            raise ValidationError(f"dependency {dep.key} must specify a bundle, an interface or an installation")
        for resolver in self.resolvers:
            ctx.raise_if_cancelled()
            node = resolver.resolve_dependency(ctx, dep)
            if node is not None:
                return node
        raise ValidationError(f"could not resolve dependency {dep.key}")

    def to_dependency(self, ctx: Context, parent_key: str, alias: str, declared: DependencyV2) -> Dependency:
        """Turn a declared v2 dependency into selectors.

        Raises
        ------
        ValidationError
            The bundle reference, version range or interface is invalid.
        """
        dep = Dependency(
            key=make_dependency_key(parent_key, alias),
            parent_key=parent_key,
            parameters=dict(declared.parameters),
            credentials=dict(declared.credentials),
            sharing=declared.sharing,
        )
        if declared.bundle:
            try:
                ref = OCIReference.parse(declared.bundle)
            except InvalidReferenceError as exc:
                raise ValidationError(f"invalid bundle for dependency {dep.key}: {exc}") from exc
            version = None
            if declared.version:
                try:
                    version = VersionConstraint(declared.version)
                except ValueError as exc:
                    raise ValidationError(f"invalid version for dependency {dep.key}: {exc}") from exc
            dep.default_bundle = BundleReferenceSelector(reference=ref, version=version)

        if declared.interface is not None:
            if declared.interface.document is not None:
                document = declared.interface.document
                dep.interface = BundleInterfaceSelector(
                    parameters=document.parameters,
                    credentials=document.credentials,
                    outputs=document.outputs,
                )
            elif declared.interface.reference:
                interface_ref = OCIReference.parse(declared.interface.reference)
                dep.interface = BundleInterfaceSelector.from_bundle(
                    self.puller.get_bundle(ctx, interface_ref).extended
                )

        if declared.installation is not None:
            criteria = declared.installation.criteria
            selector = InstallationSelector()
            if criteria is None or not criteria.ignore_labels:
                selector.labels = dict(declared.installation.labels)
            selector.namespaces = [self.namespace]
            if (criteria is None or not criteria.match_namespace) and self.namespace:
                # Also look in the global namespace
                selector.namespaces.append("")
            if criteria is None or not criteria.match_interface:
                selector.bundle = dep.default_bundle
            else:
                selector.interface = dep.interface
            dep.installation_selector = selector
        return dep

    def resolve_dependency_graph(self, ctx: Context, bundle: ExtendedBundle) -> BundleGraph:
        """Graph of ``bundle`` and everything it transitively depends on.

        A v2 declaration wins over a v1 one on the same bundle.
        """
        if bundle.has_dependencies_v2():
            if bundle.has_dependencies_v1():
                logger.info("Bundle %s declares both dependency formats, using v2", bundle.name)
            graph = BundleGraph()
            self._add_bundle(ctx, graph, BundleNode(key=ROOT_KEY, bundle=bundle))
            return graph
        if bundle.has_dependencies_v1():
            return build_v1_graph(ctx, bundle, self.puller)
        graph = BundleGraph()
        graph.register_node(BundleNode(key=ROOT_KEY, bundle=bundle))
        return graph

    def _add_bundle(self, ctx: Context, graph: BundleGraph, node: BundleNode) -> None:
        if node.key in graph:
            return
        bundle = node.bundle
        if bundle is None or not bundle.has_dependencies_v2():
            graph.register_node(node)
            return

        for alias, declared in bundle.read_dependencies_v2().requires.items():
            resolved = self.resolve_dependency(ctx, self.to_dependency(ctx, node.key, alias, declared))
            node.requires.append(resolved.key)
            if not isinstance(resolved, BundleNode):
                graph.register_node(resolved)
                continue
            # A source naming another dependency's output requires that dependency
            for source in [*declared.parameters.values(), *declared.credentials.values()]:
                if source.output and source.dependency:
                    resolved.requires.append(make_dependency_key(node.key, source.dependency))
            self._add_bundle(ctx, graph, resolved)

        graph.register_node(node)
