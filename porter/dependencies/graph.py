"""Dependency graph of a bundle: bundles to run and installations to reuse.

Every node has a stable key: ``root`` for the bundle being executed and
``<parent-key>/<alias>`` for each dependency, so the same alias in two
subtrees gets two nodes. A node lists the keys it requires; sorting puts
prerequisites first and the root last.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field

from porter.cache import CachedBundle
from porter.cnab.bundle import ExtendedBundle
from porter.cnab.dependencies import DependencySource, Sharing
from porter.cnab.reference import OCIReference
from porter.cnab.versions import VersionConstraint, select_tag
from porter.core.context import Context
from porter.errors import CyclicDependencyError, ValidationError

logger = logging.getLogger(__name__)

ROOT_KEY = "root"


class BundleSource(Protocol):
    """Where dependency bundles and their tags come from; usually a BundlePuller."""

    def get_bundle(self, ctx: Context, ref: OCIReference, *, force: bool = False) -> CachedBundle: ...

    def list_tags(self, ctx: Context, ref: OCIReference) -> list[str]: ...


def make_dependency_key(parent: str, alias: str) -> str:
    """Key of dependency ``alias`` of the node ``parent``.

    Examples
    --------
    >>> make_dependency_key("root", "mysql")
    'root/mysql'
    """
    return f"{parent}/{alias}"


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


class BundleNode(BaseModel):
    """A bundle that has to be executed."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    key: str
    parent_key: str = ""
    reference: OCIReference | None = None
    bundle: ExtendedBundle | None = None
    requires: list[str] = Field(default_factory=list)
    parameters: dict[str, DependencySource] = Field(default_factory=dict)
    credentials: dict[str, DependencySource] = Field(default_factory=dict)
    sharing: Sharing | None = None

    @property
    def alias(self) -> str:
        return self.key.rsplit("/", 1)[-1]

    @property
    def is_root(self) -> bool:
        return self.key == ROOT_KEY


class InstallationNode(BaseModel):
    """An existing installation that satisfies a dependency; nothing runs for it."""

    key: str
    parent_key: str = ""
    namespace: str = ""
    name: str

    @property
    def alias(self) -> str:
        return self.key.rsplit("/", 1)[-1]

    @property
    def requires(self) -> list[str]:
        return []

    @property
    def is_root(self) -> bool:
        return False


Node = BundleNode | InstallationNode


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------


class BundleGraph:
    """Directed acyclic graph of a bundle and its dependencies.

    Parameters
    ----------
    sequence:
        Explicit execution order of dependency keys. When set, :meth:`sort`
        follows it instead of the topological order.
    """

    def __init__(self, sequence: list[str] | None = None) -> None:
        self._nodes: dict[str, Node] = {}
        self.sequence = list(sequence or [])

    def register_node(self, node: Node) -> bool:
        """Add ``node``; returns True when a node with that key was already present."""
        if node.key in self._nodes:
            return True
        self._nodes[node.key] = node
        return False

    def get_node(self, key: str) -> Node | None:
        return self._nodes.get(key)

    @property
    def nodes(self) -> list[Node]:
        return list(self._nodes.values())

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, key: object) -> bool:
        return key in self._nodes

    def _dependents(self) -> dict[str, list[str]]:
        dependents: dict[str, list[str]] = {key: [] for key in self._nodes}
        for node in self._nodes.values():
            for required in node.requires:
                if required not in self._nodes:
                    raise ValidationError(f"dependency {node.key} requires {required}, which is not in the graph")
                dependents[required].append(node.key)
        return dependents

    def sort(self) -> list[Node]:
        """Nodes in execution order, prerequisites first (Kahn's algorithm).

        Ties are broken by key so the order is deterministic.

        Raises
        ------
        CyclicDependencyError
            The dependencies form a cycle.
        ValidationError
            A node requires a key that is not in the graph.
        """
        dependents = self._dependents()
        in_degree = {key: len(set(node.requires)) for key, node in self._nodes.items()}
        queue = deque(sorted(key for key, degree in in_degree.items() if degree == 0))
        ordered: list[str] = []
        while queue:
            key = queue.popleft()
            ordered.append(key)
            ready = []
            for dependent in set(dependents[key]):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    ready.append(dependent)
            queue = deque(sorted([*queue, *ready]))

        if len(ordered) != len(self._nodes):
            stuck = sorted(key for key, degree in in_degree.items() if degree > 0)
            raise CyclicDependencyError(f"the dependency graph has a cycle between {', '.join(stuck)}")

        if self.sequence:
            sequenced = [key for key in self.sequence if key in self._nodes]
            ordered = sequenced + [key for key in ordered if key not in sequenced]
        return [self._nodes[key] for key in ordered]

    def get_dependents(self, key: str) -> list[str]:
        """Every node that transitively requires ``key``."""
        dependents = self._dependents()
        result: list[str] = []
        queue = deque(dependents.get(key, []))
        visited: set[str] = set()
        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)
            result.append(current)
            queue.extend(dependents.get(current, []))
        return result


# ---------------------------------------------------------------------------
# V1
# ---------------------------------------------------------------------------


def build_v1_graph(ctx: Context, bundle: ExtendedBundle, puller: BundleSource) -> BundleGraph:
    """Graph of a bundle that declares ``io.cnab.dependencies``.

    Each entry of ``requires`` becomes a bundle node. An entry with version
    ranges is pinned to the highest matching tag in its repository; when no
    tag matches, the reference is used as written. A ``sequence`` naming
    every dependency dictates the execution order.

    Raises
    ------
    ValidationError
        A dependency reference or version range is invalid.
    """
    deps = bundle.read_dependencies_v1()
    sequence = []
    if deps.sequence and len(deps.sequence) == len(deps.requires):
        sequence = [make_dependency_key(ROOT_KEY, alias) for alias in deps.sequence]
    graph = BundleGraph(sequence=sequence)
    root = BundleNode(key=ROOT_KEY, bundle=bundle)

    for alias, dep in deps.list_by_sequence():
        key = make_dependency_key(ROOT_KEY, alias)
        ref = OCIReference.parse(dep.bundle)
        if dep.version is not None and dep.version.ranges:
            try:
                constraint = VersionConstraint.from_ranges(
                    dep.version.ranges, allow_prereleases=dep.version.allow_prereleases
                )
            except ValueError as exc:
                raise ValidationError(f"invalid version range for dependency {alias}: {exc}") from exc
            tag = select_tag(puller.list_tags(ctx, ref), constraint)
            if tag is not None:
                ref = ref.with_tag(tag)
            else:
                logger.warning("No tag of %s matches %s, using %s", ref.repository, constraint, ref)
        node = BundleNode(key=key, parent_key=ROOT_KEY, reference=ref)
        logger.debug("Resolved dependency %s to %s", alias, ref)
        node.bundle = puller.get_bundle(ctx, ref).extended
        graph.register_node(node)
        root.requires.append(key)

    graph.register_node(root)
    return graph
