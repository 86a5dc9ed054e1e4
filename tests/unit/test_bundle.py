"""Tests for the bundle descriptor, ExtendedBundle, extensions and dependency documents."""

from __future__ import annotations

import base64

import pytest
from pydantic import ValidationError as PydanticValidationError

from porter.cnab import extensions as ext
from porter.cnab.bundle import BundleDescriptor, ExtendedBundle, convert_value
from porter.cnab.dependencies import DependenciesV1, DependenciesV2, DependencySource, Sharing
from porter.errors import ExtensionNotPresentError, UnsupportedExtensionError, ValidationError

# ---------------------------------------------------------------------------
# Test: type conversion
# ---------------------------------------------------------------------------


class TestConvertValue:
    """Strings from the command line become JSON-schema typed values."""

    def test_scalars(self):
        assert convert_value("string", "x") == "x"
        assert convert_value("boolean", "TRUE") is True
        assert convert_value("boolean", "0") is False
        assert convert_value("integer", "42") == 42
        assert convert_value("number", "1.5") == 1.5
        assert convert_value("null", "") is None

    def test_structured(self):
        assert convert_value("object", '{"a": 1}') == {"a": 1}
        assert convert_value("array", "[1, 2]") == [1, 2]
        with pytest.raises(ValueError):
            convert_value("object", "[1]")

    def test_union_falls_through(self):
        assert convert_value(["integer", "string"], "abc") == "abc"
        assert convert_value(["integer", "string"], "7") == 7

    def test_invalid(self):
        with pytest.raises(ValueError):
            convert_value("integer", "seven")
        with pytest.raises(ValueError):
            convert_value("boolean", "maybe")


# ---------------------------------------------------------------------------
# Test: ExtendedBundle
# ---------------------------------------------------------------------------


class TestExtendedBundle:
    """Typed view over parameters, outputs and actions."""

    def test_sensitivity(self, make_bundle):
        bundle = make_bundle(
            parameters={"password": {"type": "string", "writeOnly": True}, "port": {"type": "integer"}},
            outputs={"token": {"type": "string", "writeOnly": True}},
        )
        assert bundle.is_sensitive_parameter("password")
        assert not bundle.is_sensitive_parameter("port")
        assert not bundle.is_sensitive_parameter("missing")
        assert bundle.is_sensitive_output("token")

    def test_parameter_types_and_defaults(self, make_bundle):
        bundle = make_bundle(
            parameters={
                "port": {"type": "integer", "default": 8080},
                "config": {"type": "string", "contentEncoding": "base64"},
            },
            required_extensions=[ext.FILE_PARAMETERS_KEY],
        )
        assert bundle.get_parameter_type("port") == "integer"
        assert bundle.get_parameter_type("config") == "file"
        assert bundle.get_parameter_default("port") == 8080
        assert bundle.convert_parameter_value("port", "9090") == 9090
        assert bundle.convert_parameter_value("port", 9090) == 9090

    def test_convert_errors(self, make_bundle):
        bundle = make_bundle(parameters={"port": {"type": "integer"}})
        with pytest.raises(ValidationError, match="not defined in bundle"):
            bundle.convert_parameter_value("nope", "1")
        with pytest.raises(ValidationError, match="parameter port"):
            bundle.convert_parameter_value("port", "abc")

    def test_write_parameter_to_string(self):
        assert ExtendedBundle.write_parameter_to_string("a", "x") == "x"
        assert ExtendedBundle.write_parameter_to_string("a", {"k": [1]}) == '{"k": [1]}'
        with pytest.raises(ValidationError):
            ExtendedBundle.write_parameter_to_string("a", object())

    def test_actions(self, make_bundle):
        bundle = make_bundle(actions={"status": {"modifies": False, "stateless": True}})
        assert bundle.modifies("install")
        assert not bundle.modifies("status")
        assert bundle.is_stateless("status")
        with pytest.raises(ValidationError, match="unsupported action: logs"):
            bundle.get_action("logs")

    def test_applies_to(self, make_bundle):
        bundle = make_bundle(parameters={"force": {"type": "boolean", "applyTo": ["uninstall"]}})
        assert bundle.parameter_applies_to("force", "uninstall")
        assert not bundle.parameter_applies_to("force", "install")

    def test_embedded_manifest(self, make_bundle):
        encoded = base64.b64encode(b"name: mybun\n").decode()
        bundle = make_bundle(custom={"sh.porter": {"manifest": encoded}})
        assert bundle.embedded_manifest() == b"name: mybun\n"
        assert make_bundle().embedded_manifest() is None
        with pytest.raises(ValidationError, match="invalid embedded manifest"):
            make_bundle(custom={"sh.porter": {"manifest": "!!!"}}).embedded_manifest()

    def test_json_round_trip(self, make_bundle):
        descriptor = make_bundle(parameters={"port": {"type": "integer"}}).bundle
        data = descriptor.to_json()
        assert '"schemaVersion"' in data
        assert BundleDescriptor.from_json(data) == descriptor

    def test_invalid_json(self):
        with pytest.raises(ValidationError, match="invalid bundle descriptor"):
            BundleDescriptor.from_json('{"name": "x"}')


# ---------------------------------------------------------------------------
# Test: extensions
# ---------------------------------------------------------------------------


class TestExtensions:
    """Only required extensions count; unknown required extensions are refused."""

    def test_dependencies_v2_needs_required_extension(self, make_bundle):
        custom = {ext.DEPENDENCIES_V2_KEY: {"requires": {"mysql": {"bundle": "getporter/mysql:v5.7.0"}}}}
        assert not make_bundle(custom=custom).has_dependencies_v2()
        bundle = make_bundle(custom=custom, required_extensions=[ext.DEPENDENCIES_V2_KEY])
        assert bundle.has_dependencies_v2()
        deps = bundle.read_dependencies_v2()
        assert deps.requires["mysql"].name == "mysql"

    def test_shorthand_accepted(self):
        processed = ext.process_required_extensions(
            ["dependencies", ext.FILE_PARAMETERS_KEY],
            {"dependencies": {"requires": {"mysql": {"bundle": "getporter/mysql:v5.7.0"}}}},
        )
        assert isinstance(processed[ext.DEPENDENCIES_V1_KEY], DependenciesV1)
        assert processed[ext.FILE_PARAMETERS_KEY] is None

    def test_unsupported_required_extension(self, make_bundle):
        bundle = make_bundle(required_extensions=["com.example.teleport"])
        with pytest.raises(UnsupportedExtensionError, match="com.example.teleport"):
            bundle.process_required_extensions()

    def test_missing_configuration(self):
        with pytest.raises(ValidationError, match="no custom extension configuration"):
            ext.process_required_extensions([ext.DEPENDENCIES_V1_KEY], {})

    def test_not_present(self, make_bundle):
        with pytest.raises(ExtensionNotPresentError):
            make_bundle().read_dependencies_v1()

    def test_docker(self, make_bundle):
        bundle = make_bundle(
            required_extensions=[ext.DOCKER_KEY],
            custom={ext.DOCKER_KEY: {"privileged": True}},
        )
        assert bundle.supports_docker()
        assert bundle.read_docker().privileged

    def test_parameter_sources_by_priority(self, make_bundle):
        bundle = make_bundle(
            custom={
                ext.PARAMETER_SOURCES_KEY: {
                    "connstr": {
                        "priority": ["dependencies.output"],
                        "sources": {
                            "output": {"name": "connstr"},
                            "dependencies.output": {"dependency": "mysql", "name": "connstr"},
                        },
                    }
                }
            }
        )
        assert bundle.has_parameter_sources()
        source = bundle.read_parameter_sources()["connstr"]
        assert [kind for kind, _ in source.list_sources_by_priority()] == ["dependencies.output", "output"]


# ---------------------------------------------------------------------------
# Test: dependency documents
# ---------------------------------------------------------------------------


class TestDependencyDocuments:
    """V1 sequencing and v2 wiring sources."""

    def test_v1_sequence_honoured_when_complete(self):
        deps = DependenciesV1.model_validate(
            {
                "sequence": ["mysql", "nginx"],
                "requires": {"nginx": {"bundle": "nginx:v1"}, "mysql": {"bundle": "mysql:v1"}},
            }
        )
        assert [alias for alias, _ in deps.list_by_sequence()] == ["mysql", "nginx"]

    def test_v1_partial_sequence_ignored(self):
        deps = DependenciesV1.model_validate(
            {
                "sequence": ["nginx"],
                "requires": {"nginx": {"bundle": "nginx:v1"}, "mysql": {"bundle": "mysql:v1"}},
            }
        )
        assert [alias for alias, _ in deps.list_by_sequence()] == ["mysql", "nginx"]

    def test_v1_version_ranges(self):
        dep = DependenciesV1.model_validate(
            {"requires": {"mysql": {"bundle": "getporter/mysql", "version": {"ranges": ["5.7.x"], "prereleases": True}}}}
        ).requires["mysql"]
        assert dep.version.ranges == ["5.7.x"]
        assert dep.version.allow_prereleases

    def test_source_forms(self):
        source = DependencySource.parse("${ bundle.dependencies.load-balancer.outputs.host }")
        assert (source.dependency, source.output) == ("load-balancer", "host")
        assert DependencySource.parse("bundle.credentials.token").credential == "token"
        assert DependencySource.parse("${bundle.parameters.region}").parameter == "region"
        literal = DependencySource.parse("us-east-1")
        assert literal.is_literal
        assert literal.as_workflow_string() == "us-east-1"

    def test_source_workflow_string(self):
        source = DependencySource.parse("bundle.dependencies.mysql.outputs.connstr")
        assert source.as_workflow_string() == "${ bundle.dependencies.mysql.outputs.connstr }"

    def test_root_output_rejected(self):
        with pytest.raises(ValueError, match="root bundle output"):
            DependencySource.parse("${ bundle.outputs.host }")

    def test_v2_wiring_parsed(self):
        deps = DependenciesV2.model_validate(
            {
                "requires": {
                    "mysql": {
                        "bundle": "getporter/mysql:5.7",
                        "sharing": {"mode": "group", "group": {"name": "blue"}},
                        "parameters": {"lb-host": "${ bundle.dependencies.load-balancer.outputs.host }"},
                    }
                }
            }
        )
        mysql = deps.requires["mysql"]
        assert mysql.sharing.group.name == "blue"
        assert mysql.parameters["lb-host"].dependency == "load-balancer"
        assert deps.to_wire()["requires"]["mysql"]["parameters"]["lb-host"] == (
            "${ bundle.dependencies.load-balancer.outputs.host }"
        )

    def test_invalid_sharing_mode(self):
        with pytest.raises(PydanticValidationError, match="invalid sharing mode"):
            Sharing(mode="everyone")
