"""Tests for step output extraction."""

from __future__ import annotations

from pathlib import Path

import pytest

from porter.errors import ValidationError
from porter.manifest import StepOutput
from porter.mixins.outputs import (
    extract_file,
    extract_json_path,
    extract_outputs,
    extract_regex,
    parse_assignments,
)


class TestAssignments:
    """KEY=VALUE lines on stdout are outputs."""

    def test_parse(self):
        stdout = b"starting\nHOST=db.local\nPORT=5432\nnot an assignment\nHOST=db2.local\n"
        assert parse_assignments(stdout) == {"HOST": "db2.local", "PORT": "5432"}

    def test_value_may_contain_equals(self):
        assert parse_assignments("CONN=user=admin;pass=x\r\n") == {"CONN": "user=admin;pass=x"}


class TestRegex:
    """Group 1 when present, otherwise the whole match; one per line."""

    def test_group(self):
        assert extract_regex(r"host: (\S+)", "host: a\nhost: b\n") == "a\nb"

    def test_whole_match(self):
        assert extract_regex(r"v\d+", "v1 and v2") == "v1\nv2"

    def test_no_match(self):
        assert extract_regex(r"nope", "text") == ""

    def test_invalid(self):
        with pytest.raises(ValidationError, match="invalid regular expression"):
            extract_regex("(", "text")


class TestJsonPath:
    """Single string matches come back raw; everything else as JSON."""

    DOC = '{"users": [{"name": "admin", "id": 1}, {"name": "guest", "id": 2}], "meta": {"count": 2}}'

    def test_single_string(self):
        assert extract_json_path("$.users[0].name", self.DOC) == "admin"

    def test_single_non_string(self):
        assert extract_json_path("$.meta", self.DOC) == '{"count": 2}'

    def test_many(self):
        assert extract_json_path("$.users[*].id", self.DOC) == "[1, 2]"

    def test_no_match(self):
        assert extract_json_path("$.missing", self.DOC) == ""

    def test_not_json(self):
        with pytest.raises(ValidationError, match="stdout is not JSON"):
            extract_json_path("$.a", "plain text")


class TestExtractOutputs:
    """Each declared output uses its path, regex or jsonPath."""

    def test_all_sources(self, tmp_path: Path):
        (tmp_path / "kubeconfig").write_text("apiVersion: v1\n")
        outputs = [
            StepOutput(name="config", path="kubeconfig"),
            StepOutput(name="host", regex=r"host=(\S+)"),
            StepOutput(name="user", json_path="$.user"),
            StepOutput(name="mixin-only"),
        ]
        result = extract_outputs(outputs, b'{"user": "admin", "x": "host=db"}', working_dir=tmp_path)
        assert result == {"config": "apiVersion: v1\n", "host": 'db"}', "user": "admin"}

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ValidationError, match="unable to read output file"):
            extract_file(str(tmp_path / "absent"))
