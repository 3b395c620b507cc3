"""
Redaction codec - reversible PII tokenization.

Sensitive substrings are swapped for placeholder tokens before any text
leaves the process, and swapped back in the model's reply. Mappings are kept
per work item in process memory only and expire on a TTL when they are never
restored.

Detection is regex based and deliberately basic: names, postal addresses and
international formats are not recognised.
"""

import re
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Tuple

from ..utils.logger import logger

# Detector order is priority: when two matches overlap, the earlier detector wins.
PII_PATTERNS: List[Tuple[str, "re.Pattern"]] = [
    ("URL", re.compile(
        r'https?://[^\s<>"]*(?:token|key|password|auth|session|api|login)[^\s<>"]*',
        re.IGNORECASE)),
    ("EMAIL", re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b')),
    ("SSN", re.compile(r'\b\d{3}-\d{2}-\d{4}\b')),
    ("CARD", re.compile(r'\b\d(?:[ -]?\d){12,18}\b')),
    ("PHONE", re.compile(r'(?<![\w+])(?:\+?1[-.\s]?)?(?:\(\d{3}\)|\d{3})[-.\s]?\d{3}[-.\s]?\d{4}(?!\d)')),
    ("IP", re.compile(
        r'\b(?:(?:25[0-5]|2[0-4]\d|1?\d?\d)\.){3}(?:25[0-5]|2[0-4]\d|1?\d?\d)\b')),
    ("ORDER", re.compile(r'#(?=[0-9A-Z]*\d)[0-9A-Z]{6,}\b', re.IGNORECASE)),
    ("ACCOUNT", re.compile(
        r'\b(?:acct|acc|account)\s*(?:#|no\.?|number)?\s*:?\s*(?P<value>(?=[0-9A-Z]*\d)[0-9A-Z]{6,})\b',
        re.IGNORECASE)),
    ("LICENSE", re.compile(r'\b[A-Z]{1,2}\d{6,8}\b')),
]

TOKEN_RE = re.compile(r'\[\[PII_[A-Z]+_\d+\]\]')


@dataclass(frozen=True)
class PiiMatch:
    """One detected span: ``text[start:end] == value``."""
    entity_type: str
    start: int
    end: int
    value: str


def detect(text: str) -> List[PiiMatch]:
    """
    Find non-overlapping sensitive spans in ``text``.

    Pure function: each call scans with fresh iterators, so results never
    depend on earlier calls.
    """
    if not text:
        return []

    accepted: List[PiiMatch] = []
    for entity_type, pattern in PII_PATTERNS:
        for m in pattern.finditer(text):
            group = "value" if "value" in pattern.groupindex else 0
            start, end = m.span(group)
            if start == end:
                continue
            if any(start < other.end and other.start < end for other in accepted):
                continue
            accepted.append(PiiMatch(entity_type, start, end, text[start:end]))

    accepted.sort(key=lambda pm: pm.start)
    return accepted


@dataclass
class _ItemMap:
    created_at: float
    token_to_value: Dict[str, str] = field(default_factory=dict)
    value_to_token: Dict[Tuple[str, str], str] = field(default_factory=dict)
    counters: Dict[str, int] = field(default_factory=dict)

    def token_for(self, entity_type: str, value: str) -> str:
        key = (entity_type, value)
        if key not in self.value_to_token:
            self.counters[entity_type] = self.counters.get(entity_type, 0) + 1
            token = f"[[PII_{entity_type}_{self.counters[entity_type]}]]"
            self.value_to_token[key] = token
            self.token_to_value[token] = value
        return self.value_to_token[key]


class RedactionCodec:
    """
    Per-item tokenization with explicit lifetime.

    Maps are created on first ``redact`` for an item, extended by further
    ``redact`` calls for the same item (the same value keeps the same token),
    and removed by ``clear`` or once older than ``ttl_seconds``.
    """

    DEFAULT_TTL_SECONDS = 6 * 60 * 60

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._maps: Dict[str, _ItemMap] = {}
        self._lock = threading.Lock()

    def redact(self, text: str, item_id: str) -> Tuple[str, int]:
        """
        Replace detected PII with tokens.

        Args:
            text: Text to redact
            item_id: Work item the mapping belongs to

        Returns:
            (redacted_text, token_count) where token_count is the number of
            spans replaced in this call.
        """
        self.evict_expired()
        matches = detect(text)
        if not matches:
            return text or "", 0

        with self._lock:
            item_map = self._maps.get(item_id)
            if item_map is None:
                item_map = _ItemMap(created_at=self._clock())
                self._maps[item_id] = item_map

            parts = []
            cursor = 0
            for match in matches:
                parts.append(text[cursor:match.start])
                parts.append(item_map.token_for(match.entity_type, match.value))
                cursor = match.end
            parts.append(text[cursor:])

        logger.debug(f"Redacted {len(matches)} spans for item {item_id}")
        return "".join(parts), len(matches)

    def restore(self, text: str, item_id: str) -> str:
        """Substitute known tokens back. Unknown tokens are left as-is."""
        restored, _ = self.restore_with_report(text, item_id)
        return restored

    def restore_with_report(self, text: str, item_id: str) -> Tuple[str, List[str]]:
        """
        Restore tokens and report the ones that could not be resolved.

        Returns:
            (restored_text, unresolved_tokens)
        """
        if not text:
            return "", []

        with self._lock:
            item_map = self._maps.get(item_id)
            mapping = dict(item_map.token_to_value) if item_map else {}

        unresolved = []

        def _swap(m: "re.Match") -> str:
            token = m.group(0)
            if token in mapping:
                return mapping[token]
            unresolved.append(token)
            return token

        restored = TOKEN_RE.sub(_swap, text)
        if unresolved:
            logger.warning(f"{len(unresolved)} unresolved redaction token(s) for item {item_id}")
        return restored, unresolved

    def has_map(self, item_id: str) -> bool:
        with self._lock:
            return item_id in self._maps

    def token_count(self, item_id: str) -> int:
        with self._lock:
            item_map = self._maps.get(item_id)
            return len(item_map.token_to_value) if item_map else 0

    def clear(self, item_id: str) -> None:
        with self._lock:
            self._maps.pop(item_id, None)

    def clear_all(self) -> None:
        with self._lock:
            self._maps.clear()

    def evict_expired(self) -> int:
        """Drop maps older than the TTL. Returns how many were evicted."""
        now = self._clock()
        with self._lock:
            stale = [k for k, m in self._maps.items() if now - m.created_at > self.ttl_seconds]
            for key in stale:
                del self._maps[key]
        if stale:
            logger.info(f"Evicted {len(stale)} expired redaction map(s)")
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._maps)


def find_tokens(text: str) -> List[str]:
    """Token-shaped substrings present in ``text``."""
    return TOKEN_RE.findall(text or "")
