"""Cooperative cancellation token threaded through every public operation.

A :class:`Context` carries a cancellation signal plus an optional deadline.
Long-running work (mixin subprocesses, registry calls, store I/O) polls
``ctx.cancelled`` or blocks on ``ctx.wait()`` and returns promptly once the
token fires. Derived tokens are canceled with their parent.
"""

from __future__ import annotations

import logging
import os
import signal
import threading
import time
import weakref
from typing import Any

from porter.errors import CanceledError

logger = logging.getLogger(__name__)

INTERRUPTED_EXIT_CODE = 2


class Context:
    """Cancellation signal plus deadline.

    Parameters
    ----------
    parent:
        Token whose cancellation propagates to this one.
    deadline:
        Absolute ``time.monotonic()`` value after which the token counts as
        canceled. ``None`` means no deadline.
    """

    def __init__(self, parent: Context | None = None, deadline: float | None = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: weakref.WeakSet[Context] = weakref.WeakSet()
        self._reason = ""
        self._parent = parent
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self.deadline = deadline
        if parent is not None:
            parent._adopt(self)

    def _adopt(self, child: Context) -> None:
        with self._lock:
            self._children.add(child)
            fired = self._event.is_set()
        if fired:
            child.cancel(self._reason)

    # ------------------------------------------------------------------
    # Derivation
    # ------------------------------------------------------------------

    def with_cancel(self) -> Context:
        """Return a child token that can be canceled independently."""
        return Context(self)

    def with_timeout(self, seconds: float) -> Context:
        """Return a child token whose deadline is ``seconds`` from now."""
        return Context(self, deadline=time.monotonic() + seconds)

    # ------------------------------------------------------------------
    # Signalling
    # ------------------------------------------------------------------

    def cancel(self, reason: str = "operation canceled") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel(reason)

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self.deadline is not None and time.monotonic() >= self.deadline:
            self.cancel("deadline exceeded")
            return True
        return False

    @property
    def reason(self) -> str:
        return self._reason

    def remaining(self) -> float | None:
        """Seconds until the deadline, or ``None`` when there is none."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the token fires or ``timeout`` elapses.

        Returns True when the token has been canceled.
        """
        remaining = self.remaining()
        if remaining is not None:
            timeout = remaining if timeout is None else min(timeout, remaining)
        self._event.wait(timeout)
        return self.cancelled

    def raise_if_cancelled(self, **kwargs: Any) -> None:
        """Raise :class:`CanceledError` once the token has fired."""
        if self.cancelled:
            raise CanceledError(self._reason or "operation canceled", **kwargs)


def background() -> Context:
    """Return a fresh root token that is never canceled on its own."""
    return Context()


def install_interrupt_handler(ctx: Context) -> None:
    """Cancel ``ctx`` on the first SIGINT and hard-exit on the second.

    Only callable from the main thread, as required by :mod:`signal`.
    """
    interrupts = 0

    def _handle(signum: int, frame: Any) -> None:
        nonlocal interrupts
        interrupts += 1
        if interrupts > 1:
            os._exit(INTERRUPTED_EXIT_CODE)
        logger.warning("Interrupt received, canceling (press Ctrl+C again to exit immediately)")
        ctx.cancel("interrupted")

    signal.signal(signal.SIGINT, _handle)
