"""Semver parsing and range checks for bundle tags and dependency versions."""

from __future__ import annotations

import re

import semantic_version

_PARTIAL_VERSION = re.compile(r"^\d+(\.\d+)?$")


def parse_version(value: str) -> semantic_version.Version | None:
    """Parse a tag as semver, with or without a leading ``v``.

    ``5.7`` and ``v2`` are accepted as ``5.7.0`` and ``2.0.0``; anything
    else that is not strict semver returns ``None``.
    """
    if not value:
        return None
    candidate = value[1:] if value[0] in "vV" else value
    try:
        return semantic_version.Version(candidate)
    except ValueError:
        if _PARTIAL_VERSION.match(candidate):
            return semantic_version.Version.coerce(candidate)
        return None


class VersionConstraint:
    """A version range such as ``^1.2``, ``5.7.x`` or ``>=1.0, <2.0``.

    Ranges use npm syntax; commas between comparators are accepted as
    spaces. Prerelease versions never match unless ``allow_prereleases``
    is set, in which case they are judged by the release they precede.
    """

    def __init__(self, expression: str, *, allow_prereleases: bool = False) -> None:
        self.expression = expression
        self.allow_prereleases = allow_prereleases
        normalized = " ".join(part.strip() for part in expression.split(",")).strip()
        try:
            self._spec = semantic_version.NpmSpec(normalized)
        except ValueError as exc:
            raise ValueError(f"invalid version constraint {expression!r}: {exc}") from exc

    @classmethod
    def from_ranges(cls, ranges: list[str], *, allow_prereleases: bool = False) -> VersionConstraint:
        """Combine several ranges; a version must satisfy any one of them."""
        return cls(" || ".join(ranges), allow_prereleases=allow_prereleases)

    def allows(self, version: semantic_version.Version | str) -> bool:
        if isinstance(version, str):
            parsed = parse_version(version)
            if parsed is None:
                return False
            version = parsed
        if version.prerelease:
            if not self.allow_prereleases:
                return False
            version = version.truncate()
        return self._spec.match(version)

    def select(self, versions: list[semantic_version.Version]) -> semantic_version.Version | None:
        """Return the highest version in range, or ``None``."""
        matching = [v for v in versions if self.allows(v)]
        return max(matching) if matching else None

    def __str__(self) -> str:
        return self.expression

    def __repr__(self) -> str:
        return f"VersionConstraint({self.expression!r})"


def select_tag(tags: list[str], constraint: VersionConstraint) -> str | None:
    """Return the tag holding the highest version allowed by ``constraint``.

    Tags that are not semver are ignored.

    Examples
    --------
    >>> select_tag(["latest", "v5.7.1", "v5.7.3", "v8.0.0"], VersionConstraint("5.7.x"))
    'v5.7.3'
    """
    candidates = []
    for tag in tags:
        version = parse_version(tag)
        if version is not None and constraint.allows(version):
            candidates.append((version, tag))
    if not candidates:
        return None
    return max(candidates, key=lambda pair: pair[0])[1]
