"""
Email store capability interface.

The pipeline only talks to a mailbox through this interface, so the same
orchestrator drives the local JSON mailbox used by the CLI and any hosted
mail API adapter.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class LabelHandle:
    """A resolved mailbox label."""
    id: str
    name: str


@dataclass
class ThreadRef:
    """Opaque reference to a mail thread."""
    id: str


@dataclass
class Message:
    id: str
    subject: str
    body: str
    sender: str = ""
    date: float = 0.0
    labels: List[str] = field(default_factory=list)


class EmailStore(ABC):
    """Mailbox operations used by the pipeline."""

    @abstractmethod
    def search(self, query: str, limit: Optional[int] = None) -> List[ThreadRef]:
        """
        Return threads matching a query.

        Supported terms: ``in:inbox``, ``is:unread``, ``after:YYYY/MM/DD``,
        ``-label:NAME``.
        """

    @abstractmethod
    def get_thread(self, thread_id: str) -> Optional[ThreadRef]:
        """Return the thread, or None if it no longer exists."""

    @abstractmethod
    def get_messages(self, thread: ThreadRef) -> List[Message]:
        pass

    @abstractmethod
    def get_thread_labels(self, thread: ThreadRef) -> List[str]:
        """Display names of the labels on a thread."""

    @abstractmethod
    def add_label(self, thread: ThreadRef, label: LabelHandle) -> None:
        """
        Apply a label by durable id.

        Raises:
            LabelNotFoundError: if the label id no longer exists.
        """

    @abstractmethod
    def remove_label(self, thread: ThreadRef, label: LabelHandle) -> None:
        pass

    @abstractmethod
    def create_draft_reply(self, thread: ThreadRef, body: str) -> str:
        """Create a draft reply and return the draft id."""

    @abstractmethod
    def reply(self, thread: ThreadRef, body: str) -> None:
        pass

    @abstractmethod
    def get_label(self, label_id: str) -> Optional[LabelHandle]:
        """Resolve a durable label id, None if the label was deleted."""

    @abstractmethod
    def find_label_by_name(self, name: str) -> Optional[LabelHandle]:
        pass

    @abstractmethod
    def create_label(self, name: str) -> LabelHandle:
        pass
