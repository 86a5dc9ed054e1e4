"""Secret stores for sensitive parameter and output values."""

from __future__ import annotations

import logging
import os
import re
import threading
from pathlib import Path
from typing import Protocol

from porter.core.context import Context
from porter.errors import NotFoundError, SecretStoreError

logger = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r"[^A-Za-z0-9._-]")


class SecretStore(Protocol):
    """Writes and reads sensitive values by ``(source, key)``."""

    def create(self, ctx: Context, source: str, key: str, value: str) -> None: ...

    def resolve(self, ctx: Context, source: str, key: str) -> str: ...

    def delete(self, ctx: Context, source: str, key: str) -> None: ...


class InMemorySecretStore:
    """Keeps secrets in a dict; used by tests and throwaway runs."""

    def __init__(self) -> None:
        self._secrets: dict[tuple[str, str], str] = {}
        self._lock = threading.Lock()

    def create(self, ctx: Context, source: str, key: str, value: str) -> None:
        ctx.raise_if_cancelled()
        with self._lock:
            self._secrets[(source, key)] = value

    def resolve(self, ctx: Context, source: str, key: str) -> str:
        ctx.raise_if_cancelled()
        with self._lock:
            try:
                return self._secrets[(source, key)]
            except KeyError:
                raise NotFoundError(f"secret {source}:{key} not found") from None

    def delete(self, ctx: Context, source: str, key: str) -> None:
        with self._lock:
            self._secrets.pop((source, key), None)

    def __len__(self) -> int:
        return len(self._secrets)


class FileSecretStore:
    """One file per secret under ``<directory>/<source>/``, readable only by the owner.

    Parameters
    ----------
    directory:
        Root directory, created with mode ``0o700`` when missing.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def _path(self, source: str, key: str) -> Path:
        if not key:
            raise SecretStoreError("a secret key is required")
        return self.directory / _SAFE_KEY.sub("_", source) / _SAFE_KEY.sub("_", key)

    def create(self, ctx: Context, source: str, key: str, value: str) -> None:
        ctx.raise_if_cancelled()
        path = self._path(source, key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(value)
        except OSError as exc:
            raise SecretStoreError(f"unable to save secret {source}:{key}: {exc}") from exc

    def resolve(self, ctx: Context, source: str, key: str) -> str:
        ctx.raise_if_cancelled()
        path = self._path(source, key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise NotFoundError(f"secret {source}:{key} not found") from None
        except OSError as exc:
            raise SecretStoreError(f"unable to read secret {source}:{key}: {exc}") from exc

    def delete(self, ctx: Context, source: str, key: str) -> None:
        path = self._path(source, key)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise SecretStoreError(f"unable to delete secret {source}:{key}: {exc}") from exc
