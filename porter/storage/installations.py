"""Persistent store for installations and their runs, results and outputs.

Every record is a camelCase JSON document in one of four collections. An
installation owns its runs, a run owns its results and a result owns its
outputs; :meth:`InstallationStore.remove_installation` cascades through all
four. A ``schema`` document stamps the layout version so that stores written
by an older porter are refused until ``porter storage migrate`` has run.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from porter.core.context import Context
from porter.errors import MigrationRequiredError, NotFoundError, ValidationError
from porter.storage.documents import DocumentStore
from porter.storage.migrations import COLLECTION_CLAIMS, LegacyClaimMigrator, legacy_status
from porter.storage.models import (
    INSTALLATION_SCHEMA_VERSION,
    Installation,
    InstallationStatus,
    Output,
    Result,
    Run,
)

logger = logging.getLogger(__name__)

COLLECTION_INSTALLATIONS = "installations"
COLLECTION_RUNS = "runs"
COLLECTION_RESULTS = "results"
COLLECTION_OUTPUTS = "outputs"
COLLECTION_SCHEMA = "schema"

SCHEMA_DOCUMENT_ID = "schema"
STORE_SCHEMA_VERSION = INSTALLATION_SCHEMA_VERSION

ALL_NAMESPACES = "*"

# ---------------------------------------------------------------------------
# Indexes
# ---------------------------------------------------------------------------

_INDEXES: list[tuple[str, list[str], bool]] = [
    # get (namespace + name) and list (namespace)
    (COLLECTION_INSTALLATIONS, ["namespace", "name"], True),
    # list runs of an installation
    (COLLECTION_RUNS, ["namespace", "installation"], False),
    # delete or batch get results of an installation
    (COLLECTION_RESULTS, ["namespace", "installation"], False),
    # list results of a run
    (COLLECTION_RESULTS, ["runId"], False),
    # list outputs of a result
    (COLLECTION_OUTPUTS, ["resultId", "name"], True),
    # most recent output by name
    (COLLECTION_OUTPUTS, ["namespace", "installation", "name", "-resultId"], False),
    # most recent outputs of an installation
    (COLLECTION_OUTPUTS, ["namespace", "installation", "-resultId"], False),
]


class InstallationStore:
    """CRUD over installation records.

    Parameters
    ----------
    documents:
        Backing document database.

    Examples
    --------
    >>> from porter.core.context import background
    >>> from porter.storage.documents import SQLiteDocumentStore
    >>> store = InstallationStore(SQLiteDocumentStore(":memory:"))
    >>> store.insert_installation(background(), Installation.new("dev", "mysql"))
    >>> store.get_installation(background(), "dev", "mysql").name
    'mysql'
    """

    def __init__(self, documents: DocumentStore) -> None:
        self.documents = documents
        self.claims = LegacyClaimMigrator(documents)
        self._ready = False

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Create the indexes and verify the schema stamp.

        Raises
        ------
        MigrationRequiredError
            The store was written by an older porter.
        """
        if self._ready:
            return
        for collection, keys, unique in _INDEXES:
            self.documents.ensure_index(collection, keys, unique=unique)
        stamp = self.documents.find_one(COLLECTION_SCHEMA, {"id": SCHEMA_DOCUMENT_ID})
        if stamp is None:
            logger.debug("Stamping a new installation store with schema %s", STORE_SCHEMA_VERSION)
            self.stamp_schema()
        elif stamp.get("installations") != STORE_SCHEMA_VERSION:
            raise MigrationRequiredError(
                f"the installation store has schema version {stamp.get('installations') or 'unknown'} "
                f"but {STORE_SCHEMA_VERSION} is required; run `porter storage migrate` to upgrade it"
            )
        self._ready = True

    def stamp_schema(self) -> None:
        self.documents.update(
            COLLECTION_SCHEMA,
            {"id": SCHEMA_DOCUMENT_ID, "installations": STORE_SCHEMA_VERSION},
            upsert=True,
        )

    def schema_version(self) -> str:
        stamp = self.documents.find_one(COLLECTION_SCHEMA, {"id": SCHEMA_DOCUMENT_ID})
        return str(stamp.get("installations", "")) if stamp else ""

    def _read(self, ctx: Context) -> None:
        self.initialize()

    def _write(self, ctx: Context) -> None:
        ctx.raise_if_cancelled()
        self.initialize()

    # ------------------------------------------------------------------
    # Installations
    # ------------------------------------------------------------------

    def insert_installation(self, ctx: Context, installation: Installation) -> None:
        """Raises ValidationError when the installation already exists."""
        self._write(ctx)
        try:
            self.documents.insert(COLLECTION_INSTALLATIONS, [installation.to_wire()])
        except ValidationError as exc:
            raise ValidationError(f"installation {installation} already exists") from exc

    def update_installation(self, ctx: Context, installation: Installation) -> None:
        self._write(ctx)
        try:
            self.documents.update(
                COLLECTION_INSTALLATIONS,
                installation.to_wire(),
                filter={"namespace": installation.namespace, "name": installation.name},
            )
        except NotFoundError:
            raise NotFoundError(f"installation {installation} not found") from None

    def upsert_installation(self, ctx: Context, installation: Installation) -> None:
        self._write(ctx)
        self.documents.update(
            COLLECTION_INSTALLATIONS,
            installation.to_wire(),
            filter={"namespace": installation.namespace, "name": installation.name},
            upsert=True,
        )

    def get_installation(self, ctx: Context, namespace: str, name: str) -> Installation:
        """Raises NotFoundError when neither an installation nor a legacy claim has that name."""
        self._read(ctx)
        doc = self.documents.find_one(COLLECTION_INSTALLATIONS, {"namespace": namespace, "name": name})
        if doc is not None:
            return Installation.model_validate(doc)
        for installation in self._claim_installations(namespace):
            if installation.name == name:
                return installation
        raise NotFoundError(f"installation {namespace}/{name} not found")

    def list_installations(
        self,
        ctx: Context,
        namespace: str = "",
        name: str = "",
        labels: dict[str, str] | None = None,
        skip: int = 0,
        limit: int = 0,
    ) -> list[Installation]:
        """List installations sorted by namespace and name.

        Parameters
        ----------
        namespace:
            ``""`` is the global namespace; ``"*"`` lists every namespace.
        name:
            Regular expression the name must match.
        labels:
            Labels that must all be present with the given values.

        Installations that so far exist only as legacy claims are included
        once per installation name.
        """
        self._read(ctx)
        filter: dict[str, Any] = {}
        if namespace != ALL_NAMESPACES:
            filter["namespace"] = namespace
        if name:
            filter["name"] = {"$regex": name}
        for key, value in (labels or {}).items():
            filter[f'labels."{key}"'] = value

        installations = [
            Installation.model_validate(doc)
            for doc in self.documents.find(COLLECTION_INSTALLATIONS, filter, sort=["namespace", "name"])
        ]
        if not labels:
            known = {(i.namespace, i.name) for i in installations}
            for legacy in self._claim_installations(namespace, name):
                if (legacy.namespace, legacy.name) not in known:
                    installations.append(legacy)
            installations.sort(key=lambda i: (i.namespace, i.name))

        if skip > 0:
            installations = installations[skip:]
        if limit > 0:
            installations = installations[:limit]
        return installations

    def find_installations(
        self,
        ctx: Context,
        filter: dict[str, Any] | None = None,
        sort: list[str] | None = None,
        limit: int = 0,
    ) -> list[Installation]:
        self._read(ctx)
        return [
            Installation.model_validate(doc)
            for doc in self.documents.find(COLLECTION_INSTALLATIONS, filter, sort=sort, limit=limit)
        ]

    def _claim_installations(self, namespace: str, name: str = "") -> list[Installation]:
        """One installation per distinct installation name found in the claims collection."""
        latest: dict[tuple[str, str], dict[str, Any]] = {}
        for claim in self.claims.find(COLLECTION_CLAIMS):
            installation_name = claim.get("installation")
            if not installation_name:
                continue
            claim_namespace = claim.get("namespace") or ""
            if namespace != ALL_NAMESPACES and claim_namespace != namespace:
                continue
            key = (claim_namespace, installation_name)
            # Claims are read in id order so the last one wins
            latest[key] = claim

        installations = []
        for (claim_namespace, installation_name), claim in latest.items():
            if name and not _matches(name, installation_name):
                continue
            installation = Installation(namespace=claim_namespace, name=installation_name)
            result = claim.get("result") or {}
            status = {
                "action": result.get("action", ""),
                "resultStatus": legacy_status(result.get("status", "")),
                "bundleReference": claim.get("bundleReference", ""),
                "bundleVersion": (claim.get("bundle") or {}).get("version", ""),
            }
            for field in ("created", "modified"):
                if claim.get(field):
                    status[field] = claim[field]
            try:
                installation.status = InstallationStatus.model_validate(status)
            except PydanticValidationError as exc:
                logger.warning("Ignoring the unreadable status of legacy claim %s: %s", installation_name, exc)
            installations.append(installation)
        return installations

    def remove_installation(self, ctx: Context, namespace: str, name: str) -> None:
        """Delete the installation and every run, result and output it owns.

        Raises
        ------
        NotFoundError
            The installation does not exist.
        """
        self._write(ctx)
        owned = {"namespace": namespace, "installation": name}
        removed = self.documents.remove(COLLECTION_INSTALLATIONS, {"namespace": namespace, "name": name})
        if not removed:
            raise NotFoundError(f"installation {namespace}/{name} not found")
        for collection in (COLLECTION_RUNS, COLLECTION_RESULTS, COLLECTION_OUTPUTS):
            count = self.documents.remove(collection, owned, all=True)
            logger.debug("Removed %d %s of installation %s/%s", count, collection, namespace, name)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def insert_run(self, ctx: Context, run: Run) -> None:
        self._write(ctx)
        self.documents.insert(COLLECTION_RUNS, [run.to_wire()])

    def upsert_run(self, ctx: Context, run: Run) -> None:
        self._write(ctx)
        self.documents.update(COLLECTION_RUNS, run.to_wire(), upsert=True)

    def get_run(self, ctx: Context, id: str) -> Run:
        self._read(ctx)
        doc = self.documents.find_one(COLLECTION_RUNS, {"id": id})
        if doc is None:
            raise NotFoundError(f"run {id} not found")
        return Run.model_validate(doc)

    def list_runs(self, ctx: Context, namespace: str, installation: str) -> tuple[list[Run], dict[str, list[Result]]]:
        """Runs of an installation in id order, with each run's results."""
        self._read(ctx)
        owned = {"namespace": namespace, "installation": installation}
        runs = [Run.model_validate(d) for d in self.documents.find(COLLECTION_RUNS, owned, sort=["id"])]
        results: dict[str, list[Result]] = {run.id: [] for run in runs}
        for doc in self.documents.find(COLLECTION_RESULTS, owned, sort=["id"]):
            result = Result.model_validate(doc)
            if result.run_id in results:
                results[result.run_id].append(result)
        return runs, results

    def get_last_run(self, ctx: Context, namespace: str, installation: str) -> Run:
        self._read(ctx)
        found = self.documents.find(
            COLLECTION_RUNS,
            {"namespace": namespace, "installation": installation},
            sort=["-id"],
            limit=1,
        )
        if not found:
            raise NotFoundError(f"installation {namespace}/{installation} has no runs")
        return Run.model_validate(found[0])

    def get_run_status(self, ctx: Context, run_id: str) -> str:
        """Status of the most recent result of the run, or ``unknown``."""
        results = self.list_results(ctx, run_id)
        return results[-1].status if results else "unknown"

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def insert_result(self, ctx: Context, result: Result) -> None:
        self._write(ctx)
        self.documents.insert(COLLECTION_RESULTS, [result.to_wire()])

    def get_result(self, ctx: Context, id: str) -> Result:
        self._read(ctx)
        doc = self.documents.find_one(COLLECTION_RESULTS, {"id": id})
        if doc is None:
            raise NotFoundError(f"result {id} not found")
        return Result.model_validate(doc)

    def list_results(self, ctx: Context, run_id: str) -> list[Result]:
        self._read(ctx)
        return [
            Result.model_validate(doc)
            for doc in self.documents.find(COLLECTION_RESULTS, {"runId": run_id}, sort=["id"])
        ]

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    def insert_output(self, ctx: Context, output: Output) -> None:
        self._write(ctx)
        self.documents.insert(COLLECTION_OUTPUTS, [output.to_wire()])

    def get_output(self, ctx: Context, id: str) -> Output:
        self._read(ctx)
        doc = self.documents.find_one(COLLECTION_OUTPUTS, {"id": id})
        if doc is None:
            raise NotFoundError(f"output {id} not found")
        return Output.from_wire(doc)

    def list_outputs(self, ctx: Context, result_id: str) -> list[Output]:
        self._read(ctx)
        return [
            Output.from_wire(doc)
            for doc in self.documents.find(COLLECTION_OUTPUTS, {"resultId": result_id}, sort=["resultId", "name"])
        ]

    def get_last_output(self, ctx: Context, namespace: str, installation: str, name: str) -> Output:
        """Most recent value of one output; result ids are ULIDs so the newest sorts last."""
        self._read(ctx)
        found = self.documents.find(
            COLLECTION_OUTPUTS,
            {"namespace": namespace, "installation": installation, "name": name},
            sort=["-resultId"],
            limit=1,
        )
        if not found:
            raise NotFoundError(f"output {name} not found for installation {namespace}/{installation}")
        return Output.from_wire(found[0])

    def get_last_outputs(self, ctx: Context, namespace: str, installation: str) -> list[Output]:
        """Most recent value of every output of an installation, sorted by name."""
        self._read(ctx)
        groups = self.documents.aggregate(
            COLLECTION_OUTPUTS,
            [
                {"$match": {"namespace": namespace, "installation": installation}},
                {"$sort": {"resultId": -1}},
                {"$group": {"_id": "$name", "lastOutput": {"$first": "$$ROOT"}}},
                {"$sort": {"_id": 1}},
            ],
        )
        return [Output.from_wire(group["lastOutput"]) for group in groups]


def _matches(pattern: str, value: str) -> bool:
    return re.search(pattern, value) is not None
