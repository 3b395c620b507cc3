"""
Unit tests for duplicate draft/send detection.
"""

from conftest import FakeClock

from mailtriage.core.dispatch_guard import KEY_PREFIX, DispatchGuard, content_hash
from mailtriage.core.models import ProcessingMode
from mailtriage.stores.kv_store import InMemoryKeyValueStore

DAY = 86400


class TestDispatchGuard:
    """Tests for DispatchGuard."""

    def setup_method(self):
        """Guard over an in-memory store."""
        self.clock = FakeClock()
        self.kv = InMemoryKeyValueStore()
        self.guard = DispatchGuard(self.kv, record_ttl_days=7, clock=self.clock.time)

    def test_first_dispatch_allowed(self):
        """No record, no duplicate."""
        assert self.guard.duplicate_reason("t1", "Hello", ProcessingMode.SEND) is None

    def test_sent_thread_never_sent_again(self):
        """A confirmed send blocks any further send or draft."""
        self.guard.begin("t1", "Hello", ProcessingMode.SEND)
        self.guard.confirm("t1", "Hello", ProcessingMode.SEND)
        assert self.guard.duplicate_reason("t1", "Different text", ProcessingMode.SEND)
        assert self.guard.duplicate_reason("t1", "Hello", ProcessingMode.DRAFT)

    def test_pending_send_blocks(self):
        """An unconfirmed send (crash mid-dispatch) also blocks."""
        self.guard.begin("t1", "Hello", ProcessingMode.SEND)
        assert self.guard.duplicate_reason("t1", "Hello", ProcessingMode.SEND)

    def test_identical_draft_blocked(self):
        """The same draft text is not created twice, modulo whitespace."""
        self.guard.begin("t1", "Hello  there", ProcessingMode.DRAFT)
        self.guard.confirm("t1", "Hello  there", ProcessingMode.DRAFT)
        assert self.guard.duplicate_reason("t1", "Hello there\n", ProcessingMode.DRAFT)

    def test_different_draft_allowed(self):
        """A new draft with different content is allowed."""
        self.guard.confirm("t1", "Hello", ProcessingMode.DRAFT)
        assert self.guard.duplicate_reason("t1", "Goodbye", ProcessingMode.DRAFT) is None

    def test_send_after_draft_allowed(self):
        """A drafted thread can still be sent to."""
        self.guard.confirm("t1", "Hello", ProcessingMode.DRAFT)
        assert self.guard.duplicate_reason("t1", "Hello", ProcessingMode.SEND) is None

    def test_abort_clears_intent(self):
        """A rejected dispatch leaves no record."""
        self.guard.begin("t1", "Hello", ProcessingMode.SEND)
        self.guard.abort("t1")
        assert self.guard.duplicate_reason("t1", "Hello", ProcessingMode.SEND) is None

    def test_records_expire(self):
        """Records older than the TTL no longer block."""
        self.guard.confirm("t1", "Hello", ProcessingMode.SEND)
        self.clock.advance(8 * DAY)
        assert self.guard.duplicate_reason("t1", "Hello", ProcessingMode.SEND) is None
        assert self.kv.get_property(f"{KEY_PREFIX}t1") is None

    def test_purge_expired(self):
        """purge_expired removes only stale records."""
        self.guard.confirm("old", "Hello", ProcessingMode.SEND)
        self.clock.advance(8 * DAY)
        self.guard.confirm("new", "Hello", ProcessingMode.SEND)

        assert self.guard.purge_expired() == 1
        assert self.kv.keys(KEY_PREFIX) == [f"{KEY_PREFIX}new"]

    def test_content_hash_normalises_whitespace(self):
        """Hashes ignore whitespace layout."""
        assert content_hash("a  b\n c") == content_hash("a b c")
        assert content_hash("a b") != content_hash("a c")
