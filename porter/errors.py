"""Error kinds distinguished by porter.

Every layer wraps the errors it lets through with a contextual prefix
(``raise XError(f"unable to ...: {exc}") from exc``) so the message a user
sees reads from the outermost operation down to the root cause.
"""

from __future__ import annotations


class PorterError(RuntimeError):
    """Base class for all porter errors."""


class ValidationError(PorterError, ValueError):
    """Raised when a manifest or bundle fails a schema or invariant check."""

    def __init__(self, message: str, *, location: str = "") -> None:
        super().__init__(f"{location}: {message}" if location else message)
        self.location = location


class NotFoundError(PorterError, LookupError):
    """Raised when an installation, run, result, output or reference is absent."""


class MigrationRequiredError(PorterError):
    """Raised when the store schema is older than this version supports."""


class RegistryError(PorterError):
    """Raised on registry or authentication failures."""

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class SecretStoreError(PorterError):
    """Raised when a sensitive value cannot be written to or read from the secret store."""


class ConfigError(PorterError, ValueError):
    """Raised for an invalid config key, unparseable value or type mismatch."""


class CanceledError(PorterError):
    """Raised when the context token is canceled or its deadline has passed."""

    def __init__(self, message: str = "operation canceled", *, outputs: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.outputs = dict(outputs or {})


class MixinFailure(PorterError):
    """Raised when a mixin subprocess exits nonzero.

    Carries the captured stdout, the tail of stderr and any step outputs
    collected before the failure so they can be persisted with the run.
    """

    def __init__(
        self,
        mixin: str,
        command: list[str],
        exit_code: int,
        stderr_tail: str = "",
        stdout: bytes = b"",
        *,
        outputs: dict[str, str] | None = None,
    ) -> None:
        message = f"mixin {mixin} failed running {' '.join(command)} (exit code {exit_code})"
        if stderr_tail:
            message = f"{message}: {stderr_tail.strip()}"
        super().__init__(message)
        self.mixin = mixin
        self.command = list(command)
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        self.stdout = stdout
        self.outputs = dict(outputs or {})


class UnsupportedExtensionError(ValidationError):
    """Raised when a bundle requires an extension porter cannot process."""


class ExtensionNotPresentError(NotFoundError):
    """Raised by an extension accessor when the bundle does not carry it."""


class InvalidReferenceError(ValidationError):
    """Raised when an OCI reference or digest cannot be parsed."""


class CyclicDependencyError(ValidationError):
    """Raised when a dependency graph contains a cycle."""
