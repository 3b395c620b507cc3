"""
Run lock - one run or resume at a time.

The mutex is process-local; the lock metadata is mirrored to the key-value
store so ``status`` can show who holds it.
"""

import json
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from .models import RunContext
from ..stores.kv_store import KeyValueStore
from ..utils.errors import RunInProgressError

logger = logging.getLogger(__name__)

LOCK_INFO_KEY = "CURRENT_LOCK_INFO"


class RunLock:

    def __init__(self, kv: KeyValueStore, acquire_timeout: float = 0):
        self.kv = kv
        self.acquire_timeout = acquire_timeout
        self._lock = threading.Lock()

    @contextmanager
    def hold(self, context: RunContext, mode: str) -> Iterator[None]:
        """
        Hold the lock for the duration of a run.

        Raises:
            RunInProgressError: another run holds the lock.
        """
        acquired = self._lock.acquire(timeout=self.acquire_timeout) if self.acquire_timeout > 0 \
            else self._lock.acquire(blocking=False)
        if not acquired:
            holder = self.info()
            raise RunInProgressError(
                "Another run is in progress",
                {"holder": holder.get("run_id") if holder else None},
            )
        try:
            self.kv.set_property(
                LOCK_INFO_KEY,
                json.dumps({"run_id": context.run_id, "mode": mode, "started_at": context.invocation_started_at}),
            )
            yield
        finally:
            try:
                self.kv.delete_property(LOCK_INFO_KEY)
            except OSError as e:
                logger.warning(f"Failed to clear lock info: {e}")
            self._lock.release()

    def info(self) -> Optional[Dict]:
        raw = self.kv.get_property(LOCK_INFO_KEY)
        return json.loads(raw) if raw else None

    def is_locked(self) -> bool:
        return self._lock.locked()
