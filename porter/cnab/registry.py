"""Minimal OCI distribution client for bundles: tag listing and bundle pulls.

Bundles are stored the way cnab-to-oci lays them out: an OCI image index
whose entries are annotated with ``io.cnab.manifest.type``. The ``config``
entry's config blob is the ``bundle.json``; ``invocation`` and
``component`` entries give the digests used for the relocation map.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

from porter.cnab.bundle import BundleDescriptor
from porter.cnab.reference import DEFAULT_REGISTRY, OCIReference
from porter.core.context import Context
from porter.errors import NotFoundError, RegistryError

logger = logging.getLogger(__name__)

DOCKER_HUB_HOST = "registry-1.docker.io"

MEDIA_TYPE_OCI_INDEX = "application/vnd.oci.image.index.v1+json"
MEDIA_TYPE_OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
MEDIA_TYPE_DOCKER_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
MEDIA_TYPE_DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
MEDIA_TYPE_CNAB_CONFIG = "application/vnd.cnab.config.v1+json"

MANIFEST_TYPE_ANNOTATION = "io.cnab.manifest.type"
COMPONENT_NAME_ANNOTATION = "io.cnab.component.name"

_ACCEPT = ", ".join(
    [MEDIA_TYPE_OCI_INDEX, MEDIA_TYPE_OCI_MANIFEST, MEDIA_TYPE_DOCKER_LIST, MEDIA_TYPE_DOCKER_MANIFEST]
)
_LINK_NEXT = re.compile(r'<([^>]+)>;\s*rel="?next"?')
_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


class PulledBundle(BaseModel):
    """A bundle descriptor fetched from a registry."""

    model_config = ConfigDict(frozen=True)

    reference: OCIReference
    bundle: BundleDescriptor
    digest: str
    relocation_map: dict[str, str] = Field(default_factory=dict)


class RegistryClient:
    """Synchronous registry client honouring the context token.

    Parameters
    ----------
    timeout:
        Per-request timeout in seconds, shortened to the token's deadline.
    insecure_registries:
        Registry hosts contacted over plain HTTP.
    retries:
        Extra attempts for retryable failures (5xx, 429, transport errors).
    transport:
        Optional httpx transport, e.g. ``httpx.MockTransport`` in tests.
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        insecure_registries: list[str] | tuple[str, ...] = (),
        retries: int = 2,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._insecure = set(insecure_registries)
        self._retries = retries
        self._transport = transport
        self._tokens: dict[str, str] = {}

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _base_url(self, ref: OCIReference) -> str:
        host = DOCKER_HUB_HOST if ref.registry == DEFAULT_REGISTRY else ref.registry
        scheme = "http" if ref.registry in self._insecure else "https"
        return f"{scheme}://{host}"

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self._timeout, transport=self._transport, follow_redirects=True)

    def _request_timeout(self, ctx: Context) -> float:
        remaining = ctx.remaining()
        return self._timeout if remaining is None else min(self._timeout, remaining)

    def _fetch_token(self, ctx: Context, client: httpx.Client, challenge: str) -> str:
        params = dict(_CHALLENGE_PARAM.findall(challenge))
        realm = params.pop("realm", "")
        if not realm:
            raise RegistryError(f"unsupported registry authentication challenge: {challenge}")
        ctx.raise_if_cancelled()
        response = client.get(realm, params=params, timeout=self._request_timeout(ctx))
        if response.status_code != 200:
            raise RegistryError(
                f"unable to authenticate with {realm}: HTTP {response.status_code}",
                retryable=response.status_code >= 500,
            )
        body = response.json()
        token = body.get("token") or body.get("access_token")
        if not token:
            raise RegistryError(f"no token returned by {realm}")
        return token

    def _get(self, ctx: Context, client: httpx.Client, ref: OCIReference, url: str, accept: str = "") -> httpx.Response:
        attempt = 0
        while True:
            ctx.raise_if_cancelled()
            try:
                response = self._get_once(ctx, client, ref, url, accept)
            except RegistryError as exc:
                if not exc.retryable or attempt >= self._retries:
                    raise
                attempt += 1
                delay = 0.5 * 2 ** (attempt - 1)
                logger.debug("Retrying %s in %.1fs after: %s", url, delay, exc)
                if ctx.wait(delay):
                    ctx.raise_if_cancelled()
                continue
            return response

    def _get_once(self, ctx: Context, client: httpx.Client, ref: OCIReference, url: str, accept: str) -> httpx.Response:
        headers = {"Accept": accept} if accept else {}
        token = self._tokens.get(ref.full_name)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            response = client.get(url, headers=headers, timeout=self._request_timeout(ctx))
            challenge = response.headers.get("WWW-Authenticate", "")
            if response.status_code == 401 and challenge.lower().startswith("bearer"):
                token = self._fetch_token(ctx, client, challenge[len("bearer"):].strip())
                self._tokens[ref.full_name] = token
                headers["Authorization"] = f"Bearer {token}"
                response = client.get(url, headers=headers, timeout=self._request_timeout(ctx))
        except httpx.TransportError as exc:
            raise RegistryError(f"unable to reach registry {ref.registry}: {exc}", retryable=True) from exc

        if response.status_code == 404:
            raise NotFoundError(f"{ref} not found in registry {ref.registry}")
        if response.status_code in (401, 403):
            raise RegistryError(f"access to {ref} denied by {ref.registry}: HTTP {response.status_code}")
        if response.status_code == 429 or response.status_code >= 500:
            raise RegistryError(
                f"registry {ref.registry} returned HTTP {response.status_code} for {url}", retryable=True
            )
        if response.status_code >= 400:
            raise RegistryError(f"registry {ref.registry} returned HTTP {response.status_code} for {url}")
        return response

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def list_tags(self, ctx: Context, ref: OCIReference) -> list[str]:
        """Return every tag of ``ref``'s repository, following pagination."""
        base = self._base_url(ref)
        url = f"{base}/v2/{ref.path}/tags/list"
        tags: list[str] = []
        with self._client() as client:
            while url:
                response = self._get(ctx, client, ref, url)
                tags.extend(response.json().get("tags") or [])
                match = _LINK_NEXT.search(response.headers.get("Link", ""))
                url = base + match.group(1) if match and match.group(1).startswith("/") else (
                    match.group(1) if match else ""
                )
        logger.debug("Found %d tags for %s", len(tags), ref.repository)
        return tags

    def _get_manifest(self, ctx: Context, client: httpx.Client, ref: OCIReference, target: str) -> tuple[dict[str, Any], str]:
        url = f"{self._base_url(ref)}/v2/{ref.path}/manifests/{target}"
        response = self._get(ctx, client, ref, url, _ACCEPT)
        digest = response.headers.get("Docker-Content-Digest", "")
        try:
            return response.json(), digest
        except json.JSONDecodeError as exc:
            raise RegistryError(f"invalid manifest for {ref}: {exc}") from exc

    def _get_blob(self, ctx: Context, client: httpx.Client, ref: OCIReference, digest: str) -> bytes:
        url = f"{self._base_url(ref)}/v2/{ref.path}/blobs/{digest}"
        return self._get(ctx, client, ref, url).content

    def get_bundle_digest(self, ctx: Context, ref: OCIReference) -> str:
        with self._client() as client:
            _, digest = self._get_manifest(ctx, client, ref, ref.digest or ref.tag or "latest")
        return digest

    def pull_bundle(self, ctx: Context, ref: OCIReference) -> PulledBundle:
        """Fetch the bundle descriptor (and relocation map) for ``ref``."""
        target = ref.digest or ref.tag or "latest"
        with self._client() as client:
            manifest, digest = self._get_manifest(ctx, client, ref, target)
            relocation: dict[str, str] = {}
            entries = manifest.get("manifests")
            if entries is not None:
                config_entry = next(
                    (
                        m for m in entries
                        if (m.get("annotations") or {}).get(MANIFEST_TYPE_ANNOTATION) == "config"
                    ),
                    None,
                )
                if config_entry is None:
                    raise RegistryError(f"{ref} is not a bundle: the index has no config manifest")
                config_manifest, _ = self._get_manifest(ctx, client, ref, config_entry["digest"])
            else:
                config_manifest = manifest

            config = config_manifest.get("config") or {}
            if not config.get("digest"):
                raise RegistryError(f"{ref} is not a bundle: the manifest has no config blob")
            try:
                bundle = BundleDescriptor.from_json(self._get_blob(ctx, client, ref, config["digest"]))
            except ValueError as exc:
                raise RegistryError(f"invalid bundle.json in {ref}: {exc}") from exc

            if entries is not None:
                relocation = _relocation_map(ref, bundle, entries)

        if not digest and ref.digest:
            digest = ref.digest
        logger.info("Pulled %s (%s)", ref, digest or "no digest")
        return PulledBundle(reference=ref, bundle=bundle, digest=digest, relocation_map=relocation)


def _relocation_map(ref: OCIReference, bundle: BundleDescriptor, entries: list[dict[str, Any]]) -> dict[str, str]:
    """Map the images named in the bundle to where they live next to it."""
    relocation: dict[str, str] = {}
    invocation = [m for m in entries if (m.get("annotations") or {}).get(MANIFEST_TYPE_ANNOTATION) == "invocation"]
    for image, entry in zip(bundle.invocation_images, invocation):
        relocation[image.image] = f"{ref.full_name}@{entry['digest']}"
    for entry in entries:
        annotations = entry.get("annotations") or {}
        if annotations.get(MANIFEST_TYPE_ANNOTATION) != "component":
            continue
        image = bundle.images.get(annotations.get(COMPONENT_NAME_ANNOTATION, ""))
        if image is not None:
            relocation[image.image] = f"{ref.full_name}@{entry['digest']}"
    return relocation
