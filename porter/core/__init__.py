"""Core primitives: cancellation, ids, hashing and log redaction."""

from porter.core.context import Context, background, install_interrupt_handler
from porter.core.ids import new_ulid
from porter.core.redaction import SensitiveValueFilter, redact

__all__ = [
    "Context",
    "SensitiveValueFilter",
    "background",
    "install_interrupt_handler",
    "new_ulid",
    "redact",
]
