"""Tests for the cancellation context and log redaction."""

from __future__ import annotations

import gc
import logging
import time

import pytest

from porter.core.context import Context, background
from porter.core.redaction import MASK, SensitiveValueFilter, redact
from porter.errors import CanceledError

# ---------------------------------------------------------------------------
# Test: Context
# ---------------------------------------------------------------------------


class TestContext:
    """Tokens fire on cancel or deadline and propagate to children."""

    def test_cancel(self):
        ctx = background()
        assert not ctx.cancelled
        ctx.cancel("stop")
        assert ctx.cancelled
        assert ctx.reason == "stop"
        with pytest.raises(CanceledError, match="stop"):
            ctx.raise_if_cancelled()

    def test_first_reason_kept(self):
        ctx = background()
        ctx.cancel("first")
        ctx.cancel("second")
        assert ctx.reason == "first"

    def test_children_follow_parent(self):
        parent = background()
        child = parent.with_cancel()
        grandchild = child.with_cancel()
        parent.cancel()
        assert child.cancelled
        assert grandchild.cancelled

    def test_child_does_not_cancel_parent(self):
        parent = background()
        child = parent.with_cancel()
        child.cancel()
        assert not parent.cancelled

    def test_released_children_not_retained(self):
        parent = background()
        for _ in range(100):
            parent.with_timeout(1.0)
        kept = parent.with_cancel()
        gc.collect()
        assert list(parent._children) == [kept]
        parent.cancel()
        assert kept.cancelled

    def test_child_of_canceled_parent(self):
        parent = background()
        parent.cancel("gone")
        assert parent.with_cancel().reason == "gone"

    def test_deadline(self):
        ctx = background().with_timeout(0.05)
        assert ctx.remaining() is not None
        time.sleep(0.1)
        assert ctx.cancelled
        assert ctx.reason == "deadline exceeded"
        assert ctx.remaining() == 0.0

    def test_child_deadline_capped_by_parent(self):
        parent = background().with_timeout(10)
        child = Context(parent, deadline=time.monotonic() + 3600)
        assert child.deadline == parent.deadline

    def test_no_deadline(self):
        ctx = background()
        assert ctx.remaining() is None
        assert ctx.wait(0.01) is False

    def test_outputs_on_cancel(self):
        ctx = background()
        ctx.cancel()
        with pytest.raises(CanceledError) as excinfo:
            ctx.raise_if_cancelled(outputs={"host": "db"})
        assert excinfo.value.outputs == {"host": "db"}
        assert str(excinfo.value) == "operation canceled"


# ---------------------------------------------------------------------------
# Test: redaction
# ---------------------------------------------------------------------------


class TestRedaction:
    """Sensitive values never reach the log handlers."""

    def test_redact(self):
        assert redact("user admin pass s3cr3t", ["s3cr3t", ""]) == f"user admin pass {MASK}"

    def test_longest_first(self):
        assert redact("token abc123", ["abc", "abc123"]) == f"token {MASK}"

    def test_filter(self):
        record = logging.LogRecord("porter", logging.INFO, __file__, 1, "connecting with %s", ("s3cr3t",), None)
        redactor = SensitiveValueFilter()
        redactor.add(["s3cr3t"])
        assert redactor.filter(record)
        assert record.getMessage() == f"connecting with {MASK}"

    def test_filter_without_values(self):
        record = logging.LogRecord("porter", logging.INFO, __file__, 1, "port %d", (5432,), None)
        SensitiveValueFilter().filter(record)
        assert record.args == (5432,)

    def test_clear(self):
        redactor = SensitiveValueFilter()
        redactor.add(["a", "b"])
        redactor.clear()
        assert redactor.values == set()
