"""Dependency resolution and execution."""

from porter.dependencies.executor import DependencyExecutor, DependencyPlan
from porter.dependencies.graph import ROOT_KEY, BundleGraph, BundleNode, InstallationNode, build_v1_graph, make_dependency_key
from porter.dependencies.resolvers import (
    BundleInterfaceSelector,
    BundleReferenceSelector,
    CompositeResolver,
    Dependency,
    InstallationSelector,
)

__all__ = [
    "ROOT_KEY",
    "BundleGraph",
    "BundleInterfaceSelector",
    "BundleNode",
    "BundleReferenceSelector",
    "CompositeResolver",
    "Dependency",
    "DependencyExecutor",
    "DependencyPlan",
    "InstallationNode",
    "InstallationSelector",
    "build_v1_graph",
    "make_dependency_key",
]
