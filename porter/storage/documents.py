"""Document storage with portable, Mongo-style filters, backed by SQLite.

Each collection is a table of JSON documents (``id TEXT PRIMARY KEY, doc
TEXT``). Filters are plain maps compiled to ``json_extract`` expressions:

* equality on dotted paths, with ``"..."`` quoting for keys that contain
  dots (``labels."sh.porter.parentInstallation"``);
* operators ``$in``, ``$ne``, ``$exists``, ``$regex``, ``$gt``, ``$gte``,
  ``$lt``, ``$lte``;
* logical ``$or`` and ``$and`` over lists of filters.

Sort keys prefixed with ``-`` are descending. :meth:`aggregate` runs a
leading ``$match`` in SQL and the remaining ``$sort``, ``$group``,
``$skip`` and ``$limit`` stages in Python.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
from collections.abc import Iterable
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from porter.core.ids import new_ulid
from porter.errors import NotFoundError, PorterError, ValidationError

logger = logging.getLogger(__name__)

_COLLECTION_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_PATH_TOKEN = re.compile(r'"[^"]*"|[^.]+')
_COMPARISONS = {"$gt": ">", "$gte": ">=", "$lt": "<", "$lte": "<="}


class DocumentStore(Protocol):
    """What the installation store needs from a document database."""

    def insert(self, collection: str, documents: list[dict[str, Any]]) -> None: ...

    def update(
        self,
        collection: str,
        document: dict[str, Any],
        *,
        filter: dict[str, Any] | None = None,
        upsert: bool = False,
    ) -> None: ...

    def find_one(self, collection: str, filter: dict[str, Any]) -> dict[str, Any] | None: ...

    def find(
        self,
        collection: str,
        filter: dict[str, Any] | None = None,
        *,
        sort: list[str] | None = None,
        skip: int = 0,
        limit: int = 0,
    ) -> list[dict[str, Any]]: ...

    def aggregate(self, collection: str, pipeline: list[dict[str, Any]]) -> list[dict[str, Any]]: ...

    def remove(self, collection: str, filter: dict[str, Any], *, all: bool = False) -> int: ...

    def ensure_index(self, collection: str, keys: list[str], *, unique: bool = False) -> None: ...

    def count(self, collection: str, filter: dict[str, Any] | None = None) -> int: ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def split_path(field: str) -> list[str]:
    """Split a dotted field path, honouring ``"..."`` quoting.

    Examples
    --------
    >>> split_path('labels."sh.porter.parentInstallation"')
    ['labels', 'sh.porter.parentInstallation']
    """
    return [token.strip('"') for token in _PATH_TOKEN.findall(field)]


def _json_path(field: str) -> str:
    parts = []
    for token in split_path(field):
        if re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", token):
            parts.append(f".{token}")
        else:
            parts.append(f'."{token}"')
    return "$" + "".join(parts)


def _literal(text: str) -> str:
    return "'" + text.replace("'", "''") + "'"


def _extract(field: str) -> str:
    return f"json_extract(doc, {_literal(_json_path(field))})"


def get_path(document: Any, field: str) -> Any:
    """Value at a dotted path, or ``None``."""
    value = document
    for token in split_path(field):
        if not isinstance(value, dict) or token not in value:
            return None
        value = value[token]
    return value


def _sql_value(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    if isinstance(value, Enum):
        return value.value
    return value


# ---------------------------------------------------------------------------
# Filter compilation
# ---------------------------------------------------------------------------


def compile_filter(filter: dict[str, Any] | None) -> tuple[str, list[Any]]:
    """Compile a filter map to a SQL ``WHERE`` expression and its parameters.

    Raises
    ------
    ValidationError
        An operator is not supported.
    """
    if not filter:
        return "1", []
    clauses: list[str] = []
    params: list[Any] = []
    for key, condition in filter.items():
        if key in ("$or", "$and"):
            if not isinstance(condition, list):
                raise ValidationError(f"{key} requires a list of filters")
            parts = [compile_filter(item) for item in condition]
            if not parts:
                clauses.append("0" if key == "$or" else "1")
                continue
            joiner = " OR " if key == "$or" else " AND "
            clauses.append("(" + joiner.join(sql for sql, _ in parts) + ")")
            for _, p in parts:
                params.extend(p)
            continue
        if key.startswith("$"):
            raise ValidationError(f"unsupported filter operator {key}")
        sql, p = _compile_condition(key, condition)
        clauses.append(sql)
        params.extend(p)
    return " AND ".join(clauses), params


def _compile_condition(field: str, condition: Any) -> tuple[str, list[Any]]:
    column = _extract(field)
    if not (isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition)):
        if condition is None:
            return f"{column} IS NULL", []
        return f"{column} = ?", [_sql_value(condition)]

    clauses: list[str] = []
    params: list[Any] = []
    for op, operand in condition.items():
        if op == "$in":
            values = list(operand)
            if not values:
                clauses.append("0")
                continue
            clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
            params.extend(_sql_value(v) for v in values)
        elif op == "$ne":
            if operand is None:
                clauses.append(f"{column} IS NOT NULL")
            else:
                clauses.append(f"({column} IS NULL OR {column} != ?)")
                params.append(_sql_value(operand))
        elif op == "$exists":
            json_type = f"json_type(doc, {_literal(_json_path(field))})"
            clauses.append(f"{json_type} IS NOT NULL" if operand else f"{json_type} IS NULL")
        elif op == "$regex":
            clauses.append(f"{column} REGEXP ?")
            params.append(operand)
        elif op in _COMPARISONS:
            clauses.append(f"{column} {_COMPARISONS[op]} ?")
            params.append(_sql_value(operand))
        else:
            raise ValidationError(f"unsupported filter operator {op}")
    return "(" + " AND ".join(clauses) + ")", params


def compile_sort(sort: Iterable[str] | None) -> str:
    terms = []
    for key in sort or []:
        descending = key.startswith("-")
        field = key[1:] if descending else key
        terms.append(f"{_extract(field)} {'DESC' if descending else 'ASC'}")
    terms.append("id ASC")
    return ", ".join(terms)


def _regexp(pattern: str, value: Any) -> bool:
    if value is None:
        return False
    return re.search(pattern, str(value)) is not None


# ---------------------------------------------------------------------------
# Aggregation stages
# ---------------------------------------------------------------------------


def _sort_documents(documents: list[dict[str, Any]], spec: Any) -> list[dict[str, Any]]:
    if isinstance(spec, dict):
        keys = [(field, direction < 0) for field, direction in spec.items()]
    else:
        keys = [(k.lstrip("-"), k.startswith("-")) for k in spec]
    result = list(documents)
    # Stable sorts applied from the least significant key
    for field, descending in reversed(keys):
        present = [d for d in result if get_path(d, field) is not None]
        missing = [d for d in result if get_path(d, field) is None]
        present.sort(key=lambda d: get_path(d, field), reverse=descending)
        result = missing + present if not descending else present + missing
    return result


def _evaluate(expression: Any, document: dict[str, Any]) -> Any:
    if expression == "$$ROOT":
        return document
    if isinstance(expression, str) and expression.startswith("$"):
        return get_path(document, expression[1:])
    if isinstance(expression, dict):
        return {k: _evaluate(v, document) for k, v in expression.items()}
    return expression


def _group_documents(documents: list[dict[str, Any]], spec: dict[str, Any]) -> list[dict[str, Any]]:
    if "_id" not in spec:
        raise ValidationError("$group requires an _id expression")
    groups: dict[str, dict[str, Any]] = {}
    for document in documents:
        group_id = _evaluate(spec["_id"], document)
        key = json.dumps(group_id, sort_keys=True, default=str)
        group = groups.setdefault(key, {"_id": group_id})
        for field, accumulator in spec.items():
            if field == "_id":
                continue
            if not isinstance(accumulator, dict) or len(accumulator) != 1:
                raise ValidationError(f"invalid accumulator for {field}")
            op, expression = next(iter(accumulator.items()))
            value = _evaluate(expression, document)
            if op == "$first":
                group.setdefault(field, value)
            elif op == "$last":
                group[field] = value
            elif op == "$push":
                group.setdefault(field, []).append(value)
            else:
                raise ValidationError(f"unsupported accumulator {op}")
    return list(groups.values())


# ---------------------------------------------------------------------------
# SQLite implementation
# ---------------------------------------------------------------------------


class SQLiteDocumentStore:
    """A :class:`DocumentStore` in a single SQLite database.

    Parameters
    ----------
    path:
        Database file, created if missing; ``":memory:"`` keeps everything
        in memory.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = str(path)
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._collections: set[str] = set()
        self._conn = self._connect()

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self._path, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.create_function("REGEXP", 2, _regexp, deterministic=True)
        except sqlite3.Error as exc:
            raise PorterError(f"unable to open the document store at {self._path}: {exc}") from exc
        return conn

    def _table(self, collection: str) -> str:
        if not _COLLECTION_NAME.match(collection):
            raise ValidationError(f"invalid collection name {collection!r}")
        if collection not in self._collections:
            with self._conn:
                self._conn.execute(
                    f"CREATE TABLE IF NOT EXISTS {collection} (id TEXT PRIMARY KEY, doc TEXT NOT NULL)"
                )
            self._collections.add(collection)
        return collection

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        try:
            with self._conn:
                return self._conn.execute(sql, list(params))
        except sqlite3.IntegrityError as exc:
            raise ValidationError(f"document conflicts with an existing document: {exc}") from exc
        except sqlite3.Error as exc:
            raise PorterError(f"document store query failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, collection: str, documents: list[dict[str, Any]]) -> None:
        with self._lock:
            table = self._table(collection)
            for document in documents:
                doc_id = str(document.get("id") or new_ulid())
                document = {**document, "id": doc_id}
                self._execute(f"INSERT INTO {table} (id, doc) VALUES (?, ?)", (doc_id, json.dumps(document)))

    def update(
        self,
        collection: str,
        document: dict[str, Any],
        *,
        filter: dict[str, Any] | None = None,
        upsert: bool = False,
    ) -> None:
        """Replace the first document matching ``filter`` (default: same ``id``).

        Raises
        ------
        NotFoundError
            Nothing matched and ``upsert`` is False.
        """
        if filter is None:
            if "id" not in document:
                raise ValidationError("update requires a filter or a document id")
            filter = {"id": document["id"]}
        where, params = compile_filter(filter)
        with self._lock:
            table = self._table(collection)
            cursor = self._execute(
                f"UPDATE {table} SET doc = ? WHERE id = (SELECT id FROM {table} WHERE {where} ORDER BY id LIMIT 1)",
                [json.dumps(document), *params],
            )
            if cursor.rowcount:
                return
            if not upsert:
                raise NotFoundError(f"no {collection} document matched {filter}")
            self.insert(collection, [document])

    def remove(self, collection: str, filter: dict[str, Any], *, all: bool = False) -> int:
        where, params = compile_filter(filter)
        with self._lock:
            table = self._table(collection)
            if all:
                cursor = self._execute(f"DELETE FROM {table} WHERE {where}", params)
            else:
                cursor = self._execute(
                    f"DELETE FROM {table} WHERE id = (SELECT id FROM {table} WHERE {where} ORDER BY id LIMIT 1)",
                    params,
                )
            return cursor.rowcount

    def ensure_index(self, collection: str, keys: list[str], *, unique: bool = False) -> None:
        """Create an expression index over ``keys`` (``-key`` for descending)."""
        terms = []
        for key in keys:
            descending = key.startswith("-")
            terms.append(f"{_extract(key.lstrip('-'))}{' DESC' if descending else ''}")
        suffix = "_".join(re.sub(r"\W+", "_", k.lstrip("-")) + ("_desc" if k.startswith("-") else "") for k in keys)
        name = f"idx_{collection}_{suffix}"
        with self._lock:
            table = self._table(collection)
            self._execute(
                f"CREATE {'UNIQUE ' if unique else ''}INDEX IF NOT EXISTS {name} ON {table} ({', '.join(terms)})"
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find(
        self,
        collection: str,
        filter: dict[str, Any] | None = None,
        *,
        sort: list[str] | None = None,
        skip: int = 0,
        limit: int = 0,
    ) -> list[dict[str, Any]]:
        where, params = compile_filter(filter)
        with self._lock:
            table = self._table(collection)
            rows = self._execute(
                f"SELECT doc FROM {table} WHERE {where} ORDER BY {compile_sort(sort)} LIMIT ? OFFSET ?",
                [*params, limit if limit > 0 else -1, max(skip, 0)],
            ).fetchall()
        return [json.loads(row[0]) for row in rows]

    def find_one(self, collection: str, filter: dict[str, Any]) -> dict[str, Any] | None:
        found = self.find(collection, filter, limit=1)
        return found[0] if found else None

    def count(self, collection: str, filter: dict[str, Any] | None = None) -> int:
        where, params = compile_filter(filter)
        with self._lock:
            table = self._table(collection)
            return self._execute(f"SELECT COUNT(*) FROM {table} WHERE {where}", params).fetchone()[0]

    def aggregate(self, collection: str, pipeline: list[dict[str, Any]]) -> list[dict[str, Any]]:
        stages = list(pipeline)
        match: dict[str, Any] | None = None
        if stages and "$match" in stages[0]:
            match = stages.pop(0)["$match"]
        documents = self.find(collection, match)
        for stage in stages:
            if len(stage) != 1:
                raise ValidationError(f"an aggregation stage must have exactly one operator: {stage}")
            op, spec = next(iter(stage.items()))
            if op == "$sort":
                documents = _sort_documents(documents, spec)
            elif op == "$group":
                documents = _group_documents(documents, spec)
            elif op == "$skip":
                documents = documents[int(spec):]
            elif op == "$limit":
                documents = documents[: int(spec)]
            else:
                raise ValidationError(f"unsupported aggregation stage {op}")
        return documents

    def close(self) -> None:
        with self._lock:
            self._conn.close()
