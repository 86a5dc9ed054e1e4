"""Runs a bundle's dependencies around the root action."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from porter.actions import ActionExecutor, ActionOptions
from porter.cnab.dependencies import DependencySource
from porter.core.context import Context
from porter.dependencies.graph import ROOT_KEY, BundleGraph, BundleNode, InstallationNode, Node, make_dependency_key
from porter.dependencies.resolvers import CompositeResolver
from porter.errors import NotFoundError, ValidationError
from porter.runtime import DependencyContext
from porter.storage.models import (
    ACTION_INSTALL,
    ACTION_UNINSTALL,
    ACTION_UPGRADE,
    LABEL_PARENT_INSTALLATION,
    LABEL_SHARING_GROUP,
    Installation,
)

if TYPE_CHECKING:
    from porter.cnab.bundle import ExtendedBundle

logger = logging.getLogger(__name__)


@dataclass
class DependencyPlan:
    """The sorted graph of one root action and the values resolved so far."""

    options: ActionOptions
    graph: BundleGraph
    order: list[Node]
    parameters: dict[str, dict[str, Any]] = field(default_factory=dict)
    credentials: dict[str, dict[str, str]] = field(default_factory=dict)

    @property
    def dependencies(self) -> list[Node]:
        return [node for node in self.order if not node.is_root]

    def installation_name(self, node: Node) -> str:
        """Installation backing ``node``.

        Shared dependencies are named by their alias so other bundles in the
        group find them; the rest are prefixed with the root installation.
        """
        if isinstance(node, InstallationNode):
            return node.name
        if _sharing_group(node):
            return node.alias
        path = node.key[len(ROOT_KEY) + 1:].replace("/", "-")
        return f"{self.options.installation}-{path}"

    def installation_namespace(self, node: Node) -> str:
        if isinstance(node, InstallationNode):
            return node.namespace
        return self.options.namespace


def _sharing_group(node: BundleNode) -> str:
    sharing = node.sharing
    if sharing is None or sharing.mode != "group" or sharing.group is None:
        return ""
    return sharing.group.name


class DependencyExecutor:
    """Installs, upgrades, invokes and uninstalls the dependencies of a bundle.

    Dependencies run before the root for every action but uninstall, which
    runs them after the root in reverse order. Each dependency is an
    ordinary action on its own installation, run without dependencies of
    its own since the graph already holds the whole tree.
    """

    def __init__(self, actions: ActionExecutor) -> None:
        self.actions = actions

    def prepare(self, ctx: Context, options: ActionOptions, bundle: ExtendedBundle) -> DependencyPlan:
        """Resolve and sort the dependency graph of ``bundle``.

        Raises
        ------
        CyclicDependencyError
            The dependencies form a cycle.
        ValidationError
            A dependency cannot be resolved.
        """
        resolver = CompositeResolver(options.namespace, self.actions.puller, self.actions.store)
        graph = resolver.resolve_dependency_graph(ctx, bundle)
        order = graph.sort()
        plan = DependencyPlan(options=options, graph=graph, order=order)
        if plan.dependencies:
            logger.info(
                "Executing dependencies of %s in order: %s",
                options.installation,
                ", ".join(node.key for node in plan.dependencies),
            )
        return plan

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute_before_root(
        self,
        ctx: Context,
        plan: DependencyPlan,
        root: Installation,
        parameters: dict[str, Any],
    ) -> None:
        """Run the action on each dependency, prerequisites first."""
        plan.parameters[ROOT_KEY] = dict(parameters)
        plan.credentials[ROOT_KEY] = dict(plan.options.credentials)
        for node in plan.dependencies:
            ctx.raise_if_cancelled()
            if isinstance(node, InstallationNode):
                logger.info("Using existing installation %s/%s for %s", node.namespace, node.name, node.key)
                continue
            self._execute_node(ctx, plan, node, root, plan.options.action)

    def execute_after_root(
        self,
        ctx: Context,
        plan: DependencyPlan,
        root: Installation,
        parameters: dict[str, Any],
    ) -> None:
        """Uninstall the dependencies in reverse order and delete their installations."""
        plan.parameters[ROOT_KEY] = dict(parameters)
        plan.credentials[ROOT_KEY] = dict(plan.options.credentials)
        for node in reversed(plan.dependencies):
            ctx.raise_if_cancelled()
            if isinstance(node, InstallationNode):
                continue
            self._execute_node(ctx, plan, node, root, ACTION_UNINSTALL)

    def _execute_node(
        self,
        ctx: Context,
        plan: DependencyPlan,
        node: BundleNode,
        root: Installation,
        action: str,
    ) -> None:
        if node.bundle is None:
            raise ValidationError(f"dependency {node.key} has no bundle")
        namespace = plan.installation_namespace(node)
        name = plan.installation_name(node)
        existing = self._find_installation(ctx, namespace, name)

        group = _sharing_group(node)
        if existing is not None and group and existing.labels.get(LABEL_SHARING_GROUP) == group:
            if existing.is_uninstalled and action != ACTION_INSTALL:
                raise ValidationError(
                    f"shared dependency {node.alias} must be installed or deleted, it is uninstalled"
                )
            if action != ACTION_UPGRADE and existing.is_installed:
                logger.info("Skipping %s of %s: installation %s is shared by group %s", action, node.key, name, group)
                return

        if action not in (ACTION_INSTALL, ACTION_UPGRADE, ACTION_UNINSTALL):
            if action not in node.bundle.actions:
                logger.info("Skipping %s of %s: the bundle does not define it", action, node.key)
                return
        if existing is None:
            if action == ACTION_UPGRADE:
                action = ACTION_INSTALL
            elif action != ACTION_INSTALL:
                logger.info("Skipping %s of %s: installation %s does not exist", action, node.key, name)
                return

        parameters = self._resolve_sources(ctx, plan, node, node.parameters, "parameter")
        if node.parent_key == ROOT_KEY:
            parameters.update(plan.options.dependency_parameters(node.alias))
        credentials = {
            key: str(value) for key, value in self._resolve_sources(ctx, plan, node, node.credentials, "credential").items()
        }
        for key, value in plan.options.credentials.items():
            if key in node.bundle.credentials:
                credentials.setdefault(key, value)
        plan.parameters[node.key] = parameters
        plan.credentials[node.key] = credentials

        labels = {LABEL_PARENT_INSTALLATION: str(root)}
        if group:
            labels[LABEL_SHARING_GROUP] = group
        logger.info("Running %s on dependency %s (installation %s/%s)", action, node.key, namespace, name)
        self.actions.execute(
            ctx,
            ActionOptions(
                action=action,
                installation=name,
                namespace=namespace,
                bundle=node.bundle,
                reference=node.reference,
                parameters=parameters,
                credentials=credentials,
                labels=labels,
                delete=action == ACTION_UNINSTALL,
                no_dependencies=True,
            ),
        )

    def _find_installation(self, ctx: Context, namespace: str, name: str) -> Installation | None:
        try:
            return self.actions.store.get_installation(ctx, namespace, name)
        except NotFoundError:
            return None

    # ------------------------------------------------------------------
    # Values
    # ------------------------------------------------------------------

    def _resolve_sources(
        self,
        ctx: Context,
        plan: DependencyPlan,
        node: BundleNode,
        sources: dict[str, DependencySource],
        kind: str,
    ) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for name, source in sources.items():
            if source.is_literal:
                values[name] = source.value
                continue
            owner = make_dependency_key(node.parent_key, source.dependency) if source.dependency else node.parent_key
            if source.output:
                values[name] = self._output(ctx, plan, owner, source.output)
            elif source.parameter:
                values[name] = self._recorded(plan.parameters, owner, source.parameter, "parameter")
            else:
                values[name] = self._recorded(plan.credentials, owner, source.credential, "credential")
            logger.debug("Resolved %s %s of %s from %s", kind, name, node.key, source.as_workflow_string())
        return values

    @staticmethod
    def _recorded(recorded: dict[str, dict[str, Any]], owner: str, name: str, kind: str) -> Any:
        values = recorded.get(owner)
        if values is None or name not in values:
            raise ValidationError(f"{kind} {name} of {owner} is not available to its dependents")
        return values[name]

    def _output(self, ctx: Context, plan: DependencyPlan, owner: str, name: str) -> str:
        node = plan.graph.get_node(owner)
        if node is None or node.is_root:
            raise ValidationError(f"output {name} of {owner} is not available to its dependents")
        namespace = plan.installation_namespace(node)
        installation = plan.installation_name(node)
        try:
            output = self.actions.store.get_last_output(ctx, namespace, installation, name)
        except NotFoundError as exc:
            raise ValidationError(f"unable to resolve output {name} of dependency {owner}: {exc}") from exc
        return self.actions.sanitizer.restore_output(ctx, output).text

    def dependency_contexts(
        self,
        ctx: Context,
        plan: DependencyPlan,
        root: Installation,
    ) -> dict[str, DependencyContext]:
        """What the root's steps see as ``bundle.dependencies.<alias>``."""
        contexts: dict[str, DependencyContext] = {}
        root_node = plan.graph.get_node(ROOT_KEY)
        for key in root_node.requires if root_node is not None else []:
            node = plan.graph.get_node(key)
            if node is None:
                continue
            namespace = plan.installation_namespace(node)
            name = plan.installation_name(node)
            outputs = self.actions.store.get_last_outputs(ctx, namespace, name)
            restored = {o.name: o.text for o in self.actions.sanitizer.restore_outputs(ctx, outputs)}
            bundle = node.bundle if isinstance(node, BundleNode) else None
            contexts[node.alias] = DependencyContext(
                name=bundle.name if bundle is not None else name,
                version=bundle.version if bundle is not None else "",
                description=(bundle.description or "") if bundle is not None else "",
                outputs=restored,
                bundle=bundle,
            )
        return contexts
