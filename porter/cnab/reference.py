"""OCI references for bundles and images.

A reference is ``[registry/]path[:tag][@digest]``. Parsing normalizes the
Docker Hub shorthands (``alpine`` -> ``docker.io/library/alpine``) while
``str()`` gives back the familiar form, so ``parse(str(ref)) == ref``.
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, model_serializer, model_validator

from porter.cnab.versions import parse_version
from porter.errors import InvalidReferenceError

DEFAULT_REGISTRY = "docker.io"
LEGACY_DEFAULT_REGISTRY = "index.docker.io"
OFFICIAL_REPOSITORY_PREFIX = "library/"

_PATH_COMPONENT = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_DOMAIN = re.compile(
    r"^(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?)"
    r"(?:\.(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?))*"
    r"(?::[0-9]+)?$"
)
_TAG = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST = re.compile(r"^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-zA-Z0-9=_-]+$")
_DIGEST_LENGTHS = {"sha256": 64, "sha384": 96, "sha512": 128}


def validate_digest(digest: str) -> str:
    """Return ``digest`` if it is ``<algorithm>:<hex>`` with the right length."""
    if not _DIGEST.match(digest):
        raise InvalidReferenceError(f"invalid digest: {digest!r}")
    algorithm, encoded = digest.split(":", 1)
    expected = _DIGEST_LENGTHS.get(algorithm)
    if expected is not None and (
        len(encoded) != expected or not re.fullmatch(r"[a-f0-9]+", encoded)
    ):
        raise InvalidReferenceError(f"invalid digest: {digest!r}")
    return digest


def _split_domain(name: str) -> tuple[str, str]:
    first, sep, rest = name.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost" or first != first.lower()):
        domain, path = first, rest
    else:
        domain, path = DEFAULT_REGISTRY, name
    if domain == LEGACY_DEFAULT_REGISTRY:
        domain = DEFAULT_REGISTRY
    if domain == DEFAULT_REGISTRY and "/" not in path:
        path = OFFICIAL_REPOSITORY_PREFIX + path
    return domain, path


def _parse(value: str) -> dict[str, Any]:
    original = value
    value = value.strip()
    if not value:
        raise InvalidReferenceError("invalid bundle reference: empty string")

    digest = None
    if "@" in value:
        value, digest = value.split("@", 1)
        validate_digest(digest)

    tag = None
    last_slash = value.rfind("/")
    colon = value.rfind(":")
    if colon > last_slash:
        value, tag = value[:colon], value[colon + 1:]
        if not _TAG.match(tag):
            raise InvalidReferenceError(f"invalid bundle reference {original!r}: invalid tag {tag!r}")

    registry, path = _split_domain(value)
    if not _DOMAIN.match(registry):
        raise InvalidReferenceError(f"invalid bundle reference {original!r}: invalid registry {registry!r}")
    if not path or not all(_PATH_COMPONENT.match(part) for part in path.split("/")):
        raise InvalidReferenceError(f"invalid bundle reference {original!r}")
    if len(registry) + 1 + len(path) > 255:
        raise InvalidReferenceError(f"invalid bundle reference {original!r}: name too long")

    return {"registry": registry, "path": path, "tag": tag, "digest": digest}


class OCIReference(BaseModel):
    """Parsed, normalized OCI reference (value-semantic, immutable).

    Serializes to its familiar string form and validates from a string, so
    it round-trips through JSON unchanged.

    Examples
    --------
    >>> ref = OCIReference.parse("getporter/mysql:v5.7.0")
    >>> ref.registry, ref.path, ref.tag
    ('docker.io', 'getporter/mysql', 'v5.7.0')
    >>> str(ref.with_version("5.7.1"))
    'getporter/mysql:v5.7.1'
    """

    model_config = ConfigDict(frozen=True)

    registry: str
    path: str
    tag: str | None = None
    digest: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _from_string(cls, data: Any) -> Any:
        if isinstance(data, str):
            return _parse(data)
        return data

    @model_serializer(mode="plain")
    def _to_string(self) -> str:
        return str(self)

    @classmethod
    def parse(cls, value: str) -> OCIReference:
        """Parse and normalize ``value``.

        Raises
        ------
        InvalidReferenceError
            ``invalid bundle reference`` when the string cannot be parsed,
            ``invalid digest`` when a digest segment is malformed.
        """
        return cls(**_parse(value))

    # ------------------------------------------------------------------
    # Names
    # ------------------------------------------------------------------

    @property
    def full_name(self) -> str:
        """Fully-qualified name without tag or digest, e.g. ``docker.io/library/alpine``."""
        return f"{self.registry}/{self.path}"

    @property
    def repository(self) -> str:
        """Familiar name without tag or digest, e.g. ``alpine``."""
        if self.registry != DEFAULT_REGISTRY:
            return self.full_name
        if self.path.startswith(OFFICIAL_REPOSITORY_PREFIX) and self.path.count("/") == 1:
            return self.path[len(OFFICIAL_REPOSITORY_PREFIX):]
        return self.path

    # ------------------------------------------------------------------
    # Kinds
    # ------------------------------------------------------------------

    @property
    def has_tag(self) -> bool:
        return self.tag is not None

    @property
    def has_digest(self) -> bool:
        return self.digest is not None

    @property
    def is_repository_only(self) -> bool:
        return self.tag is None and self.digest is None

    @property
    def has_version(self) -> bool:
        return self.tag is not None and parse_version(self.tag) is not None

    @property
    def version(self) -> str | None:
        """The tag as a semver string (``v`` prefix dropped), if it is one."""
        if self.tag is None:
            return None
        parsed = parse_version(self.tag)
        return str(parsed) if parsed is not None else None

    # ------------------------------------------------------------------
    # Derivation
    # ------------------------------------------------------------------

    def with_tag(self, tag: str) -> OCIReference:
        if not _TAG.match(tag):
            raise InvalidReferenceError(f"invalid bundle reference: invalid tag {tag!r}")
        return self.model_copy(update={"tag": tag})

    def with_digest(self, digest: str) -> OCIReference:
        return self.model_copy(update={"digest": validate_digest(digest)})

    def with_version(self, version: str) -> OCIReference:
        """Tag the reference with ``v<version>``."""
        return self.with_tag("v" + version.lstrip("vV"))

    def without_digest(self) -> OCIReference:
        return self.model_copy(update={"digest": None})

    def __str__(self) -> str:
        value = self.repository
        if self.tag is not None:
            value += f":{self.tag}"
        if self.digest is not None:
            value += f"@{self.digest}"
        return value


def parse_oci_reference(value: str) -> OCIReference:
    """Shorthand for :meth:`OCIReference.parse`."""
    return OCIReference.parse(value)
