"""Output extraction for mixin steps.

Mixins report outputs as ``KEY=VALUE`` lines on stdout. After the step
finishes, porter also extracts the step's declared outputs from stdout
(``regex``, ``jsonPath``) or from the filesystem (``path``).
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from jsonpath_ng.exceptions import JsonPathLexerError, JsonPathParserError
from jsonpath_ng.ext import parse as parse_jsonpath

from porter.errors import ValidationError
from porter.manifest import StepOutput

logger = logging.getLogger(__name__)

_ASSIGNMENT = re.compile(r"^([A-Za-z_][A-Za-z0-9_.-]*)=(.*)$")


def parse_assignments(stdout: bytes | str) -> dict[str, str]:
    """Collect ``KEY=VALUE`` lines; later assignments win.

    Examples
    --------
    >>> parse_assignments(b"hello\\nHOST=db.local\\nPORT=5432\\n")
    {'HOST': 'db.local', 'PORT': '5432'}
    """
    text = stdout.decode("utf-8", errors="replace") if isinstance(stdout, bytes) else stdout
    result: dict[str, str] = {}
    for line in text.splitlines():
        match = _ASSIGNMENT.match(line.rstrip("\r"))
        if match:
            result[match.group(1)] = match.group(2)
    return result


def extract_regex(pattern: str, stdout: str) -> str:
    """All matches of ``pattern``, capture group 1 when present, one per line."""
    try:
        compiled = re.compile(pattern)
    except re.error as exc:
        raise ValidationError(f"invalid regular expression {pattern!r}: {exc}") from exc
    values = []
    for match in compiled.finditer(stdout):
        values.append(match.group(1) if compiled.groups else match.group(0))
    return "\n".join(values)


def extract_json_path(expression: str, stdout: str) -> str:
    """Evaluate a JSONPath expression against stdout parsed as JSON.

    A single string match is returned as-is; anything else is returned as
    JSON.
    """
    try:
        document = json.loads(stdout)
    except ValueError as exc:
        raise ValidationError(f"unable to evaluate jsonPath {expression!r}: stdout is not JSON: {exc}") from exc
    try:
        compiled = parse_jsonpath(expression)
    except (JsonPathLexerError, JsonPathParserError) as exc:
        raise ValidationError(f"invalid jsonPath {expression!r}: {exc}") from exc
    matches: list[Any] = [m.value for m in compiled.find(document)]
    if not matches:
        return ""
    if len(matches) == 1:
        value = matches[0]
        return value if isinstance(value, str) else json.dumps(value)
    return json.dumps(matches)


def extract_file(path: str, working_dir: Path | None = None) -> str:
    file_path = Path(path)
    if working_dir is not None and not file_path.is_absolute():
        file_path = working_dir / file_path
    try:
        return file_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ValidationError(f"unable to read output file {file_path}: {exc}") from exc


def extract_outputs(
    outputs: list[StepOutput],
    stdout: bytes | str,
    *,
    working_dir: Path | None = None,
) -> dict[str, str]:
    """Extract every declared output that has a porter-side source."""
    text = stdout.decode("utf-8", errors="replace") if isinstance(stdout, bytes) else stdout
    result: dict[str, str] = {}
    for output in outputs:
        if output.path:
            result[output.name] = extract_file(output.path, working_dir)
        elif output.regex:
            result[output.name] = extract_regex(output.regex, text)
        elif output.json_path:
            result[output.name] = extract_json_path(output.json_path, text)
        else:
            logger.debug("Output %s has no path, regex or jsonPath; leaving it to the mixin", output.name)
    return result
