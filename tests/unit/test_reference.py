"""Tests for OCI reference parsing and derivation."""

from __future__ import annotations

import pytest

from porter.cnab.reference import OCIReference, validate_digest
from porter.errors import InvalidReferenceError

DIGEST = "sha256:" + "a" * 64


# ---------------------------------------------------------------------------
# Test: parsing
# ---------------------------------------------------------------------------


class TestParse:
    """Docker Hub shorthands are normalized and printed back in familiar form."""

    def test_official_image(self):
        ref = OCIReference.parse("alpine")
        assert ref.registry == "docker.io"
        assert ref.path == "library/alpine"
        assert ref.full_name == "docker.io/library/alpine"
        assert ref.repository == "alpine"
        assert str(ref) == "alpine"
        assert ref.is_repository_only

    def test_private_registry_with_version(self):
        ref = OCIReference.parse("localhost:5000/mybun:v0.1.0")
        assert ref.registry == "localhost:5000"
        assert ref.repository == "localhost:5000/mybun"
        assert ref.tag == "v0.1.0"
        assert ref.has_version
        assert ref.version == "0.1.0"

    def test_legacy_hub_domain(self):
        ref = OCIReference.parse("index.docker.io/getporter/mysql:5.7")
        assert str(ref) == "getporter/mysql:5.7"
        assert ref.version == "5.7.0"

    def test_non_semver_tag(self):
        ref = OCIReference.parse("getporter/mysql:latest")
        assert ref.has_tag
        assert not ref.has_version
        assert ref.version is None

    def test_digest(self):
        ref = OCIReference.parse(f"getporter/mysql@{DIGEST}")
        assert ref.has_digest
        assert not ref.has_tag
        assert str(ref) == f"getporter/mysql@{DIGEST}"

    def test_round_trip(self):
        for value in ["alpine:3.18", "ghcr.io/org/app:v1.0.0", f"localhost:5000/x/y:v1@{DIGEST}"]:
            ref = OCIReference.parse(value)
            assert OCIReference.parse(str(ref)) == ref

    def test_validates_from_string(self):
        assert OCIReference.model_validate("alpine:3.18") == OCIReference.parse("alpine:3.18")
        assert OCIReference.parse("alpine:3.18").model_dump() == "alpine:3.18"

    @pytest.mark.parametrize("value", ["", "   ", "getporter/My_Bun", "getporter/mysql:bad tag"])
    def test_invalid_reference(self, value: str):
        with pytest.raises(InvalidReferenceError, match="invalid bundle reference"):
            OCIReference.parse(value)

    def test_invalid_digest(self):
        with pytest.raises(InvalidReferenceError, match="invalid digest"):
            OCIReference.parse("getporter/mysql@sha256:abc")
        with pytest.raises(InvalidReferenceError, match="invalid digest"):
            validate_digest("nocolon")


# ---------------------------------------------------------------------------
# Test: derivation
# ---------------------------------------------------------------------------


class TestDerive:
    """References are immutable; derivations return new values."""

    def test_with_version_adds_prefix(self):
        ref = OCIReference.parse("getporter/mysql")
        assert str(ref.with_version("5.7.1")) == "getporter/mysql:v5.7.1"
        assert str(ref.with_version("v5.7.1")) == "getporter/mysql:v5.7.1"
        assert ref.tag is None

    def test_with_and_without_digest(self):
        ref = OCIReference.parse("getporter/mysql:v1.0.0").with_digest(DIGEST)
        assert ref.digest == DIGEST
        assert ref.without_digest() == OCIReference.parse("getporter/mysql:v1.0.0")

    def test_with_invalid_tag(self):
        with pytest.raises(InvalidReferenceError):
            OCIReference.parse("getporter/mysql").with_tag("no spaces")

    def test_frozen(self):
        ref = OCIReference.parse("alpine")
        with pytest.raises(Exception):
            ref.tag = "edge"
