"""Installation state: records, document store, secrets, sanitizer and migrations."""

from porter.storage.documents import DocumentStore, SQLiteDocumentStore
from porter.storage.installations import InstallationStore
from porter.storage.migrations import LegacyClaimMigrator, migrate_storage
from porter.storage.models import (
    Installation,
    Output,
    ParameterSet,
    ParameterStrategy,
    Result,
    ResultStatus,
    Run,
)
from porter.storage.sanitizer import Sanitizer
from porter.storage.secrets import FileSecretStore, InMemorySecretStore, SecretStore

__all__ = [
    "DocumentStore",
    "FileSecretStore",
    "InMemorySecretStore",
    "Installation",
    "InstallationStore",
    "LegacyClaimMigrator",
    "Output",
    "ParameterSet",
    "ParameterStrategy",
    "Result",
    "ResultStatus",
    "Run",
    "SQLiteDocumentStore",
    "Sanitizer",
    "SecretStore",
    "migrate_storage",
]
