"""
Local mailbox implementations.

``InMemoryEmailStore`` keeps threads and labels in dicts and understands the
small query language the scanner emits. ``JsonFileEmailStore`` adds load/save
of the same structure to a JSON file so the CLI can run against an exported
mailbox.
"""

import itertools
import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .email_store import EmailStore, LabelHandle, Message, ThreadRef
from ..utils.errors import LabelNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class StoredThread:
    id: str
    messages: List[Message]
    label_ids: List[str] = field(default_factory=list)
    in_inbox: bool = True
    unread: bool = True

    @property
    def last_date(self) -> float:
        return max((m.date for m in self.messages), default=0.0)


class InMemoryEmailStore(EmailStore):
    """Dict-backed mailbox. Records drafts and sent replies for inspection."""

    def __init__(self):
        self.threads: Dict[str, StoredThread] = {}
        self.labels: Dict[str, str] = {}  # durable id -> display name
        self.drafts: List[Dict[str, str]] = []
        self.sent: List[Dict[str, str]] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Fixture helpers
    # ------------------------------------------------------------------

    def add_thread(
        self,
        thread_id: str,
        subject: str,
        body: str,
        date: float = 0.0,
        labels: Optional[List[str]] = None,
        unread: bool = True,
        in_inbox: bool = True,
        sender: str = "",
    ) -> ThreadRef:
        """Add a single-message thread; ``labels`` are display names."""
        label_ids = [self._ensure_label(name).id for name in (labels or [])]
        message = Message(id=f"{thread_id}-m1", subject=subject, body=body, sender=sender, date=date)
        self.threads[thread_id] = StoredThread(
            id=thread_id,
            messages=[message],
            label_ids=label_ids,
            in_inbox=in_inbox,
            unread=unread,
        )
        return ThreadRef(thread_id)

    def rename_label(self, label_id: str, new_name: str) -> None:
        self.labels[label_id] = new_name

    def delete_label(self, label_id: str) -> None:
        self.labels.pop(label_id, None)
        for thread in self.threads.values():
            if label_id in thread.label_ids:
                thread.label_ids.remove(label_id)

    def label_names(self, thread_id: str) -> List[str]:
        thread = self.threads[thread_id]
        return [self.labels[i] for i in thread.label_ids if i in self.labels]

    def _ensure_label(self, name: str) -> LabelHandle:
        return self.find_label_by_name(name) or self.create_label(name)

    # ------------------------------------------------------------------
    # EmailStore
    # ------------------------------------------------------------------

    def search(self, query: str, limit: Optional[int] = None) -> List[ThreadRef]:
        predicates = [self._parse_term(term) for term in query.split()]
        with self._lock:
            threads = sorted(self.threads.values(), key=lambda t: t.last_date, reverse=True)
            matches = [ThreadRef(t.id) for t in threads if all(p(t) for p in predicates)]
        return matches[:limit] if limit else matches

    def _parse_term(self, term: str):
        negate = term.startswith("-")
        if negate:
            term = term[1:]
        key, _, value = term.partition(":")

        if key == "in" and value == "inbox":
            pred = lambda t: t.in_inbox  # noqa: E731
        elif key == "is" and value == "unread":
            pred = lambda t: t.unread  # noqa: E731
        elif key == "after":
            cutoff = datetime.strptime(value, "%Y/%m/%d").timestamp()
            pred = lambda t: t.last_date >= cutoff  # noqa: E731
        elif key == "label":
            pred = lambda t: value.lower() in (  # noqa: E731
                self.labels.get(i, "").lower() for i in t.label_ids
            )
        else:
            raise ValueError(f"Unsupported search term: {term}")

        if negate:
            return lambda t: not pred(t)
        return pred

    def get_thread(self, thread_id: str) -> Optional[ThreadRef]:
        return ThreadRef(thread_id) if thread_id in self.threads else None

    def get_messages(self, thread: ThreadRef) -> List[Message]:
        return list(self.threads[thread.id].messages)

    def get_thread_labels(self, thread: ThreadRef) -> List[str]:
        return self.label_names(thread.id)

    def add_label(self, thread: ThreadRef, label: LabelHandle) -> None:
        with self._lock:
            if label.id not in self.labels:
                raise LabelNotFoundError(f"Label {label.id} does not exist", {"label_id": label.id})
            stored = self.threads[thread.id]
            if label.id not in stored.label_ids:
                stored.label_ids.append(label.id)

    def remove_label(self, thread: ThreadRef, label: LabelHandle) -> None:
        with self._lock:
            stored = self.threads[thread.id]
            if label.id in stored.label_ids:
                stored.label_ids.remove(label.id)

    def create_draft_reply(self, thread: ThreadRef, body: str) -> str:
        draft_id = f"draft-{next(self._ids)}"
        self.drafts.append({"id": draft_id, "thread_id": thread.id, "body": body})
        return draft_id

    def reply(self, thread: ThreadRef, body: str) -> None:
        self.sent.append({"thread_id": thread.id, "body": body})

    def get_label(self, label_id: str) -> Optional[LabelHandle]:
        name = self.labels.get(label_id)
        return LabelHandle(label_id, name) if name is not None else None

    def find_label_by_name(self, name: str) -> Optional[LabelHandle]:
        for label_id, label_name in self.labels.items():
            if label_name.lower() == name.lower():
                return LabelHandle(label_id, label_name)
        return None

    def create_label(self, name: str) -> LabelHandle:
        with self._lock:
            label_id = f"Label_{next(self._ids)}"
            while label_id in self.labels:
                label_id = f"Label_{next(self._ids)}"
            self.labels[label_id] = name
        logger.info(f"Created label '{name}' ({label_id})")
        return LabelHandle(label_id, name)


class JsonFileEmailStore(InMemoryEmailStore):
    """
    Mailbox loaded from and saved to a JSON file.

    Every mutation (labels, drafts, sent replies) is written through to the
    file before the call returns, so the mailbox on disk is never behind a
    checkpoint that lists the thread as processed.

    File layout::

        {"labels": {"Label_1": "support"},
         "threads": [{"id": "t1", "labels": ["Label_1"], "unread": true,
                      "messages": [{"id": "m1", "subject": "...", "body": "...",
                                    "sender": "...", "date": 1700000000}]}],
         "drafts": [], "sent": []}
    """

    def __init__(self, path: str):
        super().__init__()
        self.path = os.path.abspath(path)
        self._save_lock = threading.Lock()
        if os.path.exists(self.path):
            self._load()

    def _load(self) -> None:
        with open(self.path, "r", encoding="utf-8") as f:
            data: Dict[str, Any] = json.load(f)
        self.labels = dict(data.get("labels", {}))
        for raw in data.get("threads", []):
            messages = [
                Message(
                    id=m.get("id", f"{raw['id']}-m{i}"),
                    subject=m.get("subject", ""),
                    body=m.get("body", ""),
                    sender=m.get("sender", ""),
                    date=float(m.get("date", 0)),
                )
                for i, m in enumerate(raw.get("messages", []), start=1)
            ]
            self.threads[raw["id"]] = StoredThread(
                id=raw["id"],
                messages=messages,
                label_ids=list(raw.get("labels", [])),
                in_inbox=raw.get("in_inbox", True),
                unread=raw.get("unread", True),
            )
        self.drafts = list(data.get("drafts", []))
        self.sent = list(data.get("sent", []))
        # keep generated ids clear of the ones already in the file
        self._ids = itertools.count(len(self.labels) + len(self.drafts) + 1)
        logger.info(f"Loaded {len(self.threads)} threads from {self.path}")

    def save(self) -> None:
        """Write the whole mailbox through a temporary file and ``os.replace``."""
        with self._lock:
            data = {
                "labels": dict(self.labels),
                "threads": [
                    {
                        "id": t.id,
                        "labels": list(t.label_ids),
                        "in_inbox": t.in_inbox,
                        "unread": t.unread,
                        "messages": [
                            {"id": m.id, "subject": m.subject, "body": m.body,
                             "sender": m.sender, "date": m.date}
                            for m in t.messages
                        ],
                    }
                    for t in self.threads.values()
                ],
                "drafts": list(self.drafts),
                "sent": list(self.sent),
            }
        with self._save_lock:
            fd, tmp_path = tempfile.mkstemp(
                dir=os.path.dirname(self.path), prefix=".mailbox-", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise

    def add_label(self, thread: ThreadRef, label: LabelHandle) -> None:
        super().add_label(thread, label)
        self.save()

    def remove_label(self, thread: ThreadRef, label: LabelHandle) -> None:
        super().remove_label(thread, label)
        self.save()

    def create_label(self, name: str) -> LabelHandle:
        handle = super().create_label(name)
        self.save()
        return handle

    def create_draft_reply(self, thread: ThreadRef, body: str) -> str:
        draft_id = super().create_draft_reply(thread, body)
        self.save()
        return draft_id

    def reply(self, thread: ThreadRef, body: str) -> None:
        super().reply(thread, body)
        self.save()
