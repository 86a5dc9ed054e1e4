"""Cache-first bundle retrieval."""

from __future__ import annotations

import logging

from porter.cache import BundleCache, CachedBundle
from porter.cnab.reference import OCIReference
from porter.cnab.registry import RegistryClient
from porter.core.context import Context

logger = logging.getLogger(__name__)


class BundlePuller:
    """Look in the cache, then pull from the registry and cache the result.

    Parameters
    ----------
    cache:
        Where pulled bundles are laid out.
    registry:
        Client used on a cache miss or when ``force`` is set.
    """

    def __init__(self, cache: BundleCache, registry: RegistryClient) -> None:
        self.cache = cache
        self.registry = registry

    def get_bundle(self, ctx: Context, ref: OCIReference, *, force: bool = False) -> CachedBundle:
        if not force:
            cached, found = self.cache.find_bundle(ref)
            if found and cached is not None:
                logger.debug("Using cached bundle for %s", ref)
                return cached
        pulled = self.registry.pull_bundle(ctx, ref)
        return self.cache.store_bundle(ctx, ref, pulled.bundle, pulled.digest, pulled.relocation_map)

    def list_tags(self, ctx: Context, ref: OCIReference) -> list[str]:
        return self.registry.list_tags(ctx, ref)
