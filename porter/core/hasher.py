"""Canonical hashing helpers for manifest stamps and cache keys."""

from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce sorted, compact JSON bytes."""
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def md5_hex(data: bytes) -> str:
    """Return the MD5 hex digest of raw bytes.

    Used only to derive path-safe cache keys, never for integrity.
    """
    return hashlib.md5(data).hexdigest()


def manifest_digest(manifest_bytes: bytes, mixins: dict[str, Any] | None = None) -> str:
    """Digest stamped into ``sh.porter`` so rebuilds can detect manifest drift."""
    payload = {
        "manifest": sha256_hex(manifest_bytes),
        "mixins": mixins or {},
    }
    return sha256_hex(canonical_json_bytes(payload))
