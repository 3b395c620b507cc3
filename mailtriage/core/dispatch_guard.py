"""
Dispatch guard - duplicate detection for drafts and sent replies.

A record per thread is written to the key-value store before a reply leaves
the system and confirmed afterwards. A thread with a recorded (or in-flight)
send is never sent to again; a draft with identical content is not created
twice. Records expire after ``record_ttl_days``.
"""

import hashlib
import json
import logging
import time
from typing import Callable, Dict, Optional

from .models import ProcessingMode
from ..stores.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

KEY_PREFIX = "DISPATCH_"

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_DRAFTED = "drafted"


def content_hash(body: str) -> str:
    normalized = " ".join((body or "").split())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:32]


class DispatchGuard:

    def __init__(
        self,
        kv: KeyValueStore,
        record_ttl_days: float = 7,
        clock: Callable[[], float] = time.time,
    ):
        self.kv = kv
        self.ttl_seconds = record_ttl_days * 86400
        self._clock = clock

    def _key(self, item_id: str) -> str:
        return f"{KEY_PREFIX}{item_id}"

    def _read(self, item_id: str) -> Optional[Dict]:
        raw = self.kv.get_property(self._key(item_id))
        if not raw:
            return None
        try:
            record = json.loads(raw)
        except ValueError:
            logger.warning(f"Ignoring unreadable dispatch record for {item_id}")
            return None
        if self._clock() - record.get("at", 0) > self.ttl_seconds:
            self.kv.delete_property(self._key(item_id))
            return None
        return record

    def _write(self, item_id: str, body: str, mode: ProcessingMode, status: str) -> None:
        record = {"hash": content_hash(body), "mode": mode.value, "status": status, "at": self._clock()}
        self.kv.set_property(self._key(item_id), json.dumps(record))

    def duplicate_reason(self, item_id: str, body: str, mode: ProcessingMode) -> Optional[str]:
        """
        Why dispatching ``body`` for ``item_id`` would be a duplicate, or None.
        """
        record = self._read(item_id)
        if record is None:
            return None
        if record["mode"] == ProcessingMode.SEND.value and record["status"] in (STATUS_PENDING, STATUS_SENT):
            return "a reply was already sent for this thread"
        if mode == ProcessingMode.DRAFT and record["status"] == STATUS_DRAFTED and record["hash"] == content_hash(body):
            return "an identical draft already exists"
        return None

    def begin(self, item_id: str, body: str, mode: ProcessingMode) -> None:
        """Record the intent to dispatch. Must precede the external call."""
        self._write(item_id, body, mode, STATUS_PENDING)

    def confirm(self, item_id: str, body: str, mode: ProcessingMode) -> None:
        status = STATUS_SENT if mode == ProcessingMode.SEND else STATUS_DRAFTED
        self._write(item_id, body, mode, status)

    def abort(self, item_id: str) -> None:
        """Drop the intent after the mailbox rejected the dispatch."""
        self.kv.delete_property(self._key(item_id))

    def purge_expired(self) -> int:
        purged = 0
        for key in self.kv.keys(KEY_PREFIX):
            if self._read(key[len(KEY_PREFIX):]) is None:
                self.kv.delete_property(key)
                purged += 1
        if purged:
            logger.info(f"Purged {purged} expired dispatch record(s)")
        return purged
