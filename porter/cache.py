"""Local cache of bundles pulled from a registry.

Storage layout, one directory per reference::

    {cache_dir}/{md5(reference)}/cnab/bundle.json
    {cache_dir}/{md5(reference)}/cnab/relocation-mapping.json   (optional)
    {cache_dir}/{md5(reference)}/porter.yaml                    (optional)
    {cache_dir}/{md5(reference)}/metadata.json

Storing a bundle refreshes its whole directory: any file that was not
rewritten by the store is deleted, so companions from an earlier pull of
the same reference never leak into the new entry.
"""

from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from porter.cnab.bundle import BundleDescriptor, ExtendedBundle
from porter.cnab.reference import OCIReference
from porter.core.context import Context
from porter.core.hasher import md5_hex
from porter.errors import PorterError, ValidationError

logger = logging.getLogger(__name__)

BUNDLE_FILE = "bundle.json"
RELOCATION_FILE = "relocation-mapping.json"
METADATA_FILE = "metadata.json"
MANIFEST_FILE = "porter.yaml"


class CachedBundle(BaseModel):
    """A bundle laid out in the cache, with its optional companions."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    reference: OCIReference
    bundle: BundleDescriptor
    digest: str = ""
    cache_dir: Path
    bundle_path: Path
    relocation_path: Path | None = None
    manifest_path: Path | None = None
    relocation_map: dict[str, str] = Field(default_factory=dict)

    @property
    def extended(self) -> ExtendedBundle:
        return ExtendedBundle(self.bundle)


class BundleCache:
    """Bundles keyed by the MD5 of their reference string.

    The hash is only used to build a path-safe directory name; it is not a
    security boundary.

    Parameters
    ----------
    cache_dir:
        Root directory of the cache, usually ``$PORTER_HOME/cache``.
    """

    def __init__(self, cache_dir: Path) -> None:
        self._base = Path(cache_dir)

    @property
    def path(self) -> Path:
        return self._base

    @staticmethod
    def cache_id(ref: OCIReference) -> str:
        return md5_hex(str(ref).encode("utf-8"))

    def _entry_dir(self, ref: OCIReference) -> Path:
        return self._base / self.cache_id(ref)

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def store_bundle(
        self,
        ctx: Context,
        ref: OCIReference,
        bundle: BundleDescriptor,
        digest: str = "",
        relocation_map: dict[str, str] | None = None,
    ) -> CachedBundle:
        """Write ``bundle`` and its companions, replacing the previous entry."""
        ctx.raise_if_cancelled()
        entry = self._entry_dir(ref)
        cnab_dir = entry / "cnab"
        written: set[Path] = set()
        try:
            cnab_dir.mkdir(parents=True, exist_ok=True)

            bundle_path = cnab_dir / BUNDLE_FILE
            bundle_path.write_text(bundle.to_json(indent=2), encoding="utf-8")
            written.add(bundle_path)

            relocation_path = None
            if relocation_map:
                relocation_path = cnab_dir / RELOCATION_FILE
                relocation_path.write_text(json.dumps(relocation_map, indent=2, sort_keys=True), encoding="utf-8")
                written.add(relocation_path)

            metadata_path = entry / METADATA_FILE
            metadata_path.write_text(
                json.dumps({"reference": str(ref), "digest": digest}, indent=2), encoding="utf-8"
            )
            written.add(metadata_path)

            manifest_path = None
            manifest = ExtendedBundle(bundle).embedded_manifest()
            if manifest is not None:
                manifest_path = entry / MANIFEST_FILE
                manifest_path.write_bytes(manifest)
                written.add(manifest_path)

            self._purge(entry, written)
        except OSError as exc:
            raise PorterError(f"unable to cache bundle {ref}: {exc}") from exc

        logger.debug("Cached %s in %s", ref, entry)
        return CachedBundle(
            reference=ref,
            bundle=bundle,
            digest=digest,
            cache_dir=entry,
            bundle_path=bundle_path,
            relocation_path=relocation_path,
            manifest_path=manifest_path,
            relocation_map=dict(relocation_map or {}),
        )

    @staticmethod
    def _purge(entry: Path, keep: set[Path]) -> None:
        keep_dirs = {p.parent for p in keep} | {entry}
        for path in sorted(entry.rglob("*"), key=lambda p: len(p.parts), reverse=True):
            if path in keep:
                continue
            if path.is_dir():
                if path not in keep_dirs and not any(path.iterdir()):
                    path.rmdir()
            else:
                path.unlink()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def find_bundle(self, ref: OCIReference) -> tuple[CachedBundle | None, bool]:
        """Return ``(cached bundle, True)`` on a hit and ``(None, False)`` otherwise.

        A missing or unparseable ``bundle.json`` counts as a miss; the next
        pull rewrites it. Companion files that cannot be read are ignored.
        """
        entry = self._entry_dir(ref)
        bundle_path = entry / "cnab" / BUNDLE_FILE
        if not bundle_path.exists():
            return None, False
        try:
            bundle = BundleDescriptor.from_json(bundle_path.read_bytes())
        except (OSError, ValidationError) as exc:
            logger.debug("Ignoring unreadable cached bundle %s: %s", bundle_path, exc)
            return None, False

        digest = ""
        metadata_path = entry / METADATA_FILE
        if metadata_path.exists():
            try:
                digest = json.loads(metadata_path.read_text(encoding="utf-8")).get("digest", "")
            except (OSError, ValueError, AttributeError) as exc:
                logger.warning("Unable to read cache metadata %s: %s", metadata_path, exc)

        relocation_path: Path | None = entry / "cnab" / RELOCATION_FILE
        relocation_map: dict[str, str] = {}
        if relocation_path.exists():
            try:
                relocation_map = json.loads(relocation_path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.warning("Unable to read relocation mapping %s: %s", relocation_path, exc)
                relocation_path = None
        else:
            relocation_path = None

        manifest_path: Path | None = entry / MANIFEST_FILE
        if not manifest_path.exists():
            manifest_path = None

        return (
            CachedBundle(
                reference=ref,
                bundle=bundle,
                digest=digest,
                cache_dir=entry,
                bundle_path=bundle_path,
                relocation_path=relocation_path,
                manifest_path=manifest_path,
                relocation_map=relocation_map,
            ),
            True,
        )

    def remove(self, ref: OCIReference) -> None:
        shutil.rmtree(self._entry_dir(ref), ignore_errors=True)

    def clear(self) -> None:
        """Delete every cached bundle."""
        if self._base.exists():
            shutil.rmtree(self._base)
