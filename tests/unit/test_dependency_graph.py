"""Tests for the dependency graph and v1 graph construction."""

from __future__ import annotations

import logging

import pytest

from porter.cnab.extensions import DEPENDENCIES_V1_KEY
from porter.core.context import Context
from porter.dependencies.graph import ROOT_KEY, BundleGraph, BundleNode, InstallationNode, build_v1_graph, make_dependency_key
from porter.errors import CyclicDependencyError, ValidationError


def _node(key: str, *requires: str) -> BundleNode:
    return BundleNode(key=key, requires=list(requires))


def _keys(nodes) -> list[str]:
    return [n.key for n in nodes]


# ---------------------------------------------------------------------------
# Test: BundleGraph
# ---------------------------------------------------------------------------


class TestBundleGraph:
    """Topological order with deterministic tie-breaking."""

    def test_make_dependency_key(self):
        assert make_dependency_key(ROOT_KEY, "mysql") == "root/mysql"
        assert make_dependency_key("root/mysql", "disk") == "root/mysql/disk"

    def test_prerequisites_first(self):
        graph = BundleGraph()
        graph.register_node(_node("root", "root/a", "root/b"))
        graph.register_node(_node("root/b", "root/a"))
        graph.register_node(_node("root/a"))
        assert _keys(graph.sort()) == ["root/a", "root/b", "root"]

    def test_ties_broken_by_key(self):
        graph = BundleGraph()
        for key in ["root/zeta", "root/alpha", "root/mid"]:
            graph.register_node(_node(key))
        graph.register_node(_node("root", "root/zeta", "root/alpha", "root/mid"))
        assert _keys(graph.sort()) == ["root/alpha", "root/mid", "root/zeta", "root"]

    def test_register_twice(self):
        graph = BundleGraph()
        assert graph.register_node(_node("root/a")) is False
        assert graph.register_node(_node("root/a", "root/x")) is True
        assert graph.get_node("root/a").requires == []
        assert len(graph) == 1
        assert "root/a" in graph

    def test_cycle(self):
        graph = BundleGraph()
        graph.register_node(_node("root/a", "root/b"))
        graph.register_node(_node("root/b", "root/a"))
        graph.register_node(_node("root", "root/a"))
        with pytest.raises(CyclicDependencyError, match="root/a, root/b"):
            graph.sort()

    def test_missing_requirement(self):
        graph = BundleGraph()
        graph.register_node(_node("root", "root/ghost"))
        with pytest.raises(ValidationError, match="root/ghost"):
            graph.sort()

    def test_explicit_sequence(self):
        graph = BundleGraph(sequence=["root/zeta", "root/alpha"])
        graph.register_node(_node("root/alpha"))
        graph.register_node(_node("root/zeta"))
        graph.register_node(_node("root", "root/alpha", "root/zeta"))
        assert _keys(graph.sort()) == ["root/zeta", "root/alpha", "root"]

    def test_installation_nodes_have_no_requirements(self):
        graph = BundleGraph()
        graph.register_node(InstallationNode(key="root/db", parent_key="root", name="shared-db"))
        graph.register_node(_node("root", "root/db"))
        nodes = graph.sort()
        assert isinstance(nodes[0], InstallationNode)
        assert nodes[0].alias == "db"
        assert not nodes[0].is_root
        assert nodes[1].is_root

    def test_get_dependents(self):
        graph = BundleGraph()
        graph.register_node(_node("root/a"))
        graph.register_node(_node("root/b", "root/a"))
        graph.register_node(_node("root", "root/b"))
        assert graph.get_dependents("root/a") == ["root/b", "root"]
        assert graph.get_dependents("root") == []


# ---------------------------------------------------------------------------
# Test: v1 graphs
# ---------------------------------------------------------------------------


class TestBuildV1Graph:
    """Each v1 requirement becomes a bundle node the root requires."""

    def _root(self, make_bundle, requires, sequence=None):
        document = {"requires": requires}
        if sequence:
            document["sequence"] = sequence
        return make_bundle(
            name="wordpress",
            required_extensions=[DEPENDENCIES_V1_KEY],
            custom={DEPENDENCIES_V1_KEY: document},
        )

    def test_version_range_pins_highest_tag(self, ctx: Context, make_bundle, puller):
        root = self._root(
            make_bundle,
            {
                "mysql": {"bundle": "getporter/mysql", "version": {"ranges": ["5.7.x"]}},
                "nginx": {"bundle": "nginx:v1.0.0"},
            },
        )
        puller.tags["getporter/mysql"] = ["latest", "v5.7.1", "v5.7.3", "v8.0.0"]
        puller.add("getporter/mysql:v5.7.3", make_bundle(name="mysql"))
        puller.add("nginx:v1.0.0", make_bundle(name="nginx"))

        graph = build_v1_graph(ctx, root, puller)

        assert _keys(graph.sort()) == ["root/mysql", "root/nginx", "root"]
        mysql = graph.get_node("root/mysql")
        assert str(mysql.reference) == "getporter/mysql:v5.7.3"
        assert mysql.bundle.name == "mysql"
        assert mysql.parent_key == ROOT_KEY

    def test_no_matching_tag_uses_reference(self, ctx: Context, make_bundle, puller, caplog):
        root = self._root(make_bundle, {"mysql": {"bundle": "getporter/mysql:v1.0.0", "version": {"ranges": ["9.x"]}}})
        puller.add("getporter/mysql:v1.0.0", make_bundle(name="mysql"))
        with caplog.at_level(logging.WARNING, logger="porter.dependencies.graph"):
            graph = build_v1_graph(ctx, root, puller)
        assert str(graph.get_node("root/mysql").reference) == "getporter/mysql:v1.0.0"
        assert "No tag" in caplog.text

    def test_sequence(self, ctx: Context, make_bundle, puller):
        root = self._root(
            make_bundle,
            {"mysql": {"bundle": "mysql:v1"}, "nginx": {"bundle": "nginx:v1"}},
            sequence=["nginx", "mysql"],
        )
        puller.add("mysql:v1", make_bundle(name="mysql"))
        puller.add("nginx:v1", make_bundle(name="nginx"))
        graph = build_v1_graph(ctx, root, puller)
        assert _keys(graph.sort()) == ["root/nginx", "root/mysql", "root"]

    def test_invalid_range(self, ctx: Context, make_bundle, puller):
        root = self._root(make_bundle, {"mysql": {"bundle": "mysql", "version": {"ranges": [">=banana"]}}})
        with pytest.raises(ValidationError, match="invalid version range for dependency mysql"):
            build_v1_graph(ctx, root, puller)
