"""Upgrades records written by older porter releases.

Old releases kept one document per installation in a ``claims`` collection,
named by a top-level ``name`` field and carrying the last action, its result
and its outputs. :class:`LegacyClaimMigrator` renames ``name`` to
``installation`` transparently whenever such a document is read;
:func:`migrate_storage` converts every claim into installation, run, result
and output records and stamps the store with the current schema.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError

from porter.cnab.bundle import BundleDescriptor, ExtendedBundle
from porter.core.context import Context
from porter.errors import PorterError
from porter.storage.documents import DocumentStore
from porter.storage.models import ACTION_INSTALL, Installation, Output, ResultStatus

if TYPE_CHECKING:
    from porter.storage.installations import InstallationStore
    from porter.storage.sanitizer import Sanitizer

logger = logging.getLogger(__name__)

COLLECTION_CLAIMS = "claims"

_LEGACY_STATUSES = {
    "success": ResultStatus.SUCCEEDED.value,
    "failure": ResultStatus.FAILED.value,
}


def legacy_status(status: str) -> str:
    """Map the statuses of old claims onto result statuses.

    Examples
    --------
    >>> legacy_status("success")
    'succeeded'
    >>> legacy_status("failed")
    'failed'
    """
    return _LEGACY_STATUSES.get(status, status or ResultStatus.UNKNOWN.value)


class LegacyClaimMigrator:
    """Read wrapper that migrates ``name`` to ``installation`` on each fetched claim.

    A failed migration is logged and the original document is returned, so a
    single broken record cannot halt a list operation.
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def find(
        self,
        collection: str,
        filter: dict[str, Any] | None = None,
        *,
        sort: list[str] | None = None,
        skip: int = 0,
        limit: int = 0,
    ) -> list[dict[str, Any]]:
        documents = self.store.find(collection, filter, sort=sort, skip=skip, limit=limit)
        if collection != COLLECTION_CLAIMS:
            return documents
        return [self.migrate(collection, document) for document in documents]

    def find_one(self, collection: str, filter: dict[str, Any]) -> dict[str, Any] | None:
        found = self.find(collection, filter, limit=1)
        return found[0] if found else None

    def migrate(self, collection: str, document: dict[str, Any]) -> dict[str, Any]:
        """Return ``document`` with ``installation`` set, saving it back when it changed."""
        if "name" not in document or "installation" in document:
            return document
        if "id" not in document:
            logger.warning("Unable to migrate claim %s: it has no id", document.get("name"))
            return document
        migrated = dict(document)
        migrated["installation"] = document["name"]
        logger.info("Migrating claim %s from name to installation", document["name"])
        try:
            self.store.update(collection, migrated, filter={"id": document["id"]})
        except PorterError as exc:
            logger.warning("Unable to migrate claim %s: %s", document["name"], exc)
            return document
        return migrated


# ---------------------------------------------------------------------------
# Full migration
# ---------------------------------------------------------------------------


def _timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def migrate_claim(
    ctx: Context,
    store: InstallationStore,
    sanitizer: Sanitizer,
    claim: dict[str, Any],
) -> Installation:
    """Convert one legacy claim into installation, run, result and output records.

    When the claim's last action was not the install and the claim was
    modified after it was created, a placeholder install run with an
    ``unknown`` result is recorded first, since the claim overwrote it.

    Raises
    ------
    PorterError
        A record could not be saved or the claim is malformed.
    """
    name = claim.get("installation") or claim.get("name")
    if not name:
        raise PorterError(f"claim {claim.get('id', '')} has no installation name")
    namespace = claim.get("namespace") or ""
    try:
        descriptor = BundleDescriptor.model_validate(claim["bundle"]) if claim.get("bundle") else None
    except PydanticValidationError as exc:
        raise PorterError(f"claim {name} has an invalid bundle: {exc}") from exc

    found = store.find_installations(ctx, {"namespace": namespace, "name": name}, limit=1)
    installation = found[0] if found else Installation.new(namespace, name)

    result_data = claim.get("result") or {}
    action = result_data.get("action") or ACTION_INSTALL
    created = _timestamp(claim.get("created"))
    modified = _timestamp(claim.get("modified"))

    runs = []
    if created and modified and created != modified and action != ACTION_INSTALL:
        placeholder = installation.new_run(ACTION_INSTALL, descriptor)
        placeholder.created = created
        placeholder.bundle_reference = claim.get("bundleReference", "")
        placeholder.custom = claim.get("custom")
        result = placeholder.new_result(ResultStatus.UNKNOWN)
        result.created = created
        runs.append((placeholder, result))

    run = installation.new_run(action, descriptor)
    run.bundle_reference = claim.get("bundleReference", "")
    run.custom = claim.get("custom")
    if modified:
        run.created = modified
    result = run.new_result(legacy_status(result_data.get("status", "")), result_data.get("message", ""))
    if modified:
        result.created = modified
    runs.append((run, result))

    bundle = ExtendedBundle(descriptor) if descriptor is not None else None
    parameters = claim.get("parameters") or {}
    if parameters and bundle is not None:
        run.parameters.parameters = sanitizer.clean_raw_parameters(ctx, parameters, bundle, run.id)

    for migrated_run, migrated_result in runs:
        store.insert_run(ctx, migrated_run)
        store.insert_result(ctx, migrated_result)
        installation.apply_result(migrated_run, migrated_result)

    for output_name, value in (claim.get("outputs") or {}).items():
        output = Output(
            name=output_name,
            namespace=namespace,
            installation=name,
            run_id=run.id,
            result_id=result.id,
            value=(value if isinstance(value, str) else str(value)).encode("utf-8"),
        )
        if bundle is not None:
            output = sanitizer.clean_output(ctx, output, bundle)
        store.insert_output(ctx, output)

    store.upsert_installation(ctx, installation)
    return installation


def migrate_storage(ctx: Context, store: InstallationStore, sanitizer: Sanitizer) -> list[str]:
    """Convert every legacy claim and stamp the store with the current schema.

    Claims that fail to convert are logged and left in place; the names of
    the migrated installations are returned.
    """
    logger.info("Migrating the installation store to schema %s", store.schema_version() or "(unstamped)")
    store.stamp_schema()
    migrated: list[str] = []
    for claim in store.claims.find(COLLECTION_CLAIMS, sort=["id"]):
        ctx.raise_if_cancelled()
        name = claim.get("installation") or claim.get("name") or claim.get("id", "")
        try:
            migrate_claim(ctx, store, sanitizer, claim)
        except PorterError as exc:
            logger.error("Unable to migrate claim %s, skipping: %s", name, exc)
            continue
        try:
            store.documents.remove(COLLECTION_CLAIMS, {"id": claim["id"]})
        except PorterError as exc:
            logger.error("Migrated claim %s but could not remove the legacy record: %s", name, exc)
        migrated.append(str(name))
    logger.info("Migrated %d legacy claims", len(migrated))
    return migrated
