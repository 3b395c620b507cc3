"""
Delta scanner - which inbox threads still need processing.

Incremental scans use the cursor saved by the last completed run; without a
usable cursor the scanner falls back to a bounded full inbox scan. Scanning is
read-only: the cursor is only moved by ``commit_cursor`` once the
orchestrator has finished a run.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .models import RunContext, WorkItem
from ..stores.email_store import EmailStore, ThreadRef
from ..stores.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

SCAN_CURSOR_KEY = "SCAN_CURSOR"

SCAN_INCREMENTAL = "incremental"
SCAN_FULL = "full"


@dataclass
class ScanResult:
    items: List[WorkItem]
    scan_type: str
    summary: str
    skipped_ids: List[str] = field(default_factory=list)
    started_at: float = 0.0


class DeltaScanner:
    """
    Args:
        store: Mailbox to scan
        kv: Holds the scan cursor
        processed_label: Threads carrying this label are excluded
        full_scan_limit: Max threads examined by a full scan
        delta_window_days: Look-back for the unread query of an incremental scan
        cursor_max_age_days: Older cursors force a full scan
    """

    def __init__(
        self,
        store: EmailStore,
        kv: KeyValueStore,
        processed_label: str,
        full_scan_limit: int = 100,
        delta_window_days: int = 7,
        cursor_max_age_days: int = 30,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.kv = kv
        self.processed_label = processed_label
        self.full_scan_limit = full_scan_limit
        self.delta_window_days = delta_window_days
        self.cursor_max_age_days = cursor_max_age_days
        self._clock = clock

    # ------------------------------------------------------------------
    # Cursor
    # ------------------------------------------------------------------

    def _read_cursor(self, log) -> Optional[float]:
        """Return the last completed scan time, None if missing/invalid/expired."""
        raw = self.kv.get_property(SCAN_CURSOR_KEY)
        if not raw:
            log.info("No scan cursor found; falling back to full scan")
            return None
        try:
            last_scan_at = float(json.loads(raw)["last_scan_at"])
        except (ValueError, KeyError, TypeError) as e:
            log.warning(f"Invalid scan cursor ({e}); falling back to full scan")
            return None

        age_days = (self._clock() - last_scan_at) / 86400
        if age_days < 0 or age_days > self.cursor_max_age_days:
            log.warning(f"Scan cursor expired ({age_days:.1f} days old); falling back to full scan")
            return None
        return last_scan_at

    def commit_cursor(self, scan_started_at: float) -> None:
        """Record a completed scan. Called by the orchestrator on completion."""
        self.kv.set_property(SCAN_CURSOR_KEY, json.dumps({"last_scan_at": scan_started_at}))

    def reset_cursor(self) -> None:
        self.kv.delete_property(SCAN_CURSOR_KEY)

    @staticmethod
    def _date(ts: float) -> str:
        return datetime.fromtimestamp(ts).strftime("%Y/%m/%d")

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------

    def scan(self, context: Optional[RunContext] = None) -> ScanResult:
        """
        Collect unprocessed inbox threads as WorkItems.

        Threads matched by several queries appear once. Threads with the
        processed label are excluded; empty or unreadable threads are
        reported in ``skipped_ids``.
        """
        log = context.logger if context else logger
        started_at = self._clock()
        cursor = self._read_cursor(log)

        if cursor is None:
            scan_type = SCAN_FULL
            queries = [("in:inbox", self.full_scan_limit)]
        else:
            scan_type = SCAN_INCREMENTAL
            since = self._date(cursor - 86400)
            window = self._date(started_at - self.delta_window_days * 86400)
            queries = [
                (f"in:inbox after:{since}", None),
                (f"in:inbox is:unread after:{window}", None),
            ]

        refs: Dict[str, ThreadRef] = {}
        for query, limit in queries:
            for ref in self.store.search(query, limit=limit):
                refs.setdefault(ref.id, ref)

        items, skipped, already = self._build_items(refs.values(), log)
        summary = (
            f"{scan_type} scan: {len(items)}/{len(refs)} threads need processing "
            f"({already} already processed, {len(skipped)} skipped)"
        )
        log.info(summary)
        return ScanResult(
            items=items,
            scan_type=scan_type,
            summary=summary,
            skipped_ids=skipped,
            started_at=started_at,
        )

    def _build_items(self, refs, log) -> Tuple[List[WorkItem], List[str], int]:
        items: List[WorkItem] = []
        skipped: List[str] = []
        already = 0
        processed = self.processed_label.lower()

        for ref in refs:
            try:
                labels = self.store.get_thread_labels(ref)
                if processed in (name.lower() for name in labels):
                    already += 1
                    continue
                item = self._to_work_item(ref, labels)
            except Exception as e:
                log.warning(f"Skipping unreadable thread {ref.id}: {e}")
                skipped.append(ref.id)
                continue
            if item is None:
                skipped.append(ref.id)
                continue
            items.append(item)
        return items, skipped, already

    def _to_work_item(self, ref: ThreadRef, labels: Sequence[str]) -> Optional[WorkItem]:
        messages = self.store.get_messages(ref)
        if not messages:
            return None
        latest = messages[-1]
        if not (latest.body or "").strip():
            return None
        return WorkItem(
            id=ref.id,
            subject=messages[0].subject or "",
            body=latest.body,
            existing_labels=tuple(labels),
        )

    def load_items(self, ids: Sequence[str], context: Optional[RunContext] = None) -> Tuple[List[WorkItem], List[str]]:
        """
        Re-read work items by id when a suspended run resumes.

        Returns:
            (items in ``ids`` order, ids that vanished or became unreadable)
        """
        log = context.logger if context else logger
        items: List[WorkItem] = []
        missing: List[str] = []
        for item_id in ids:
            try:
                ref = self.store.get_thread(item_id)
                item = self._to_work_item(ref, self.store.get_thread_labels(ref)) if ref else None
            except Exception as e:
                log.warning(f"Thread {item_id} unreadable on resume: {e}")
                item = None
            if item is None:
                missing.append(item_id)
            else:
                items.append(item)
        return items, missing
