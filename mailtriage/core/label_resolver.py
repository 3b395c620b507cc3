"""
Label resolver - logical label name to durable label id.

Once a label has been resolved its durable id is cached (in memory and in the
key-value store), and later resolutions go through the id. A label renamed in
the mailbox therefore keeps resolving to the same label instead of producing
a duplicate.
"""

import json
import logging
import threading
import time
from typing import Callable, Dict, Optional

from .models import LabelCacheEntry, LabelHandle
from ..stores.email_store import EmailStore
from ..stores.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

LABEL_CACHE_KEY = "LABEL_CACHE"
DEFAULT_TTL_SECONDS = 24 * 60 * 60


class LabelResolver:
    """
    Cached label resolution.

    Fresh entries are returned without touching the mailbox. Entries older
    than ``ttl_seconds`` are revalidated by id on their next use; if the id no
    longer exists the label is re-found by name or created.
    """

    def __init__(
        self,
        store: EmailStore,
        kv: KeyValueStore,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.kv = kv
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Optional[Dict[str, LabelCacheEntry]] = None
        self._lock = threading.Lock()
        self._errors = 0

    @staticmethod
    def _key(name: str) -> str:
        return name.strip().lower()

    def _cache(self) -> Dict[str, LabelCacheEntry]:
        if self._entries is None:
            self._entries = self._load()
        return self._entries

    def _load(self) -> Dict[str, LabelCacheEntry]:
        raw = self.kv.get_property(LABEL_CACHE_KEY)
        if not raw:
            return {}
        try:
            data = json.loads(raw)
            return {k: LabelCacheEntry.from_dict(v) for k, v in data.items()}
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable label cache: {e}")
            return {}

    def _persist(self) -> None:
        payload = json.dumps({k: e.to_dict() for k, e in self._cache().items()})
        try:
            self.kv.set_property(LABEL_CACHE_KEY, payload)
        except (OSError, ValueError) as e:
            # Cache is an optimisation; labels still resolve without it.
            self._errors += 1
            logger.warning(f"Failed to persist label cache: {e}")

    def resolve(self, logical_name: str) -> LabelHandle:
        """
        Return a usable handle for ``logical_name``, creating the label if needed.
        """
        if not logical_name or not logical_name.strip():
            raise ValueError("Label name must not be empty")

        key = self._key(logical_name)
        now = self._clock()

        with self._lock:
            entry = self._cache().get(key)

        if entry is not None:
            if now - entry.last_verified_at < self.ttl_seconds:
                return LabelHandle(entry.durable_id, entry.display_name)

            handle = self.store.get_label(entry.durable_id)
            if handle is not None:
                if handle.name != entry.display_name:
                    logger.info(
                        f"Label '{logical_name}' ({handle.id}) renamed to '{handle.name}'"
                    )
                self._remember(key, logical_name, handle, now)
                return handle

            logger.warning(
                f"Cached label '{logical_name}' ({entry.durable_id}) no longer exists; recreating"
            )
            with self._lock:
                self._cache().pop(key, None)
                self._errors += 1

        handle = self.store.find_label_by_name(logical_name.strip())
        if handle is None:
            handle = self.store.create_label(logical_name.strip())
        self._remember(key, logical_name, handle, now)
        return handle

    def _remember(self, key: str, logical_name: str, handle: LabelHandle, now: float) -> None:
        with self._lock:
            self._cache()[key] = LabelCacheEntry(
                logical_name=logical_name.strip(),
                durable_id=handle.id,
                display_name=handle.name,
                last_verified_at=now,
            )
            self._persist()

    def invalidate(self, logical_name: str) -> None:
        """Forget one entry, e.g. after the mailbox rejected its id."""
        with self._lock:
            if self._cache().pop(self._key(logical_name), None) is not None:
                self._persist()

    def clear(self) -> None:
        with self._lock:
            self._entries = {}
            try:
                self.kv.delete_property(LABEL_CACHE_KEY)
            except OSError as e:
                logger.warning(f"Failed to clear label cache: {e}")

    def health_check(self) -> Dict:
        """Cache size, entries past their TTL, and failures seen (lost ids, persist errors)."""
        now = self._clock()
        with self._lock:
            entries = list(self._cache().values())
        expired = sum(1 for e in entries if now - e.last_verified_at >= self.ttl_seconds)
        return {
            "size": len(entries),
            "expired": expired,
            "valid": len(entries) - expired,
            "errors": self._errors,
        }
