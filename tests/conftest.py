import atexit
import faulthandler
import json
import os
import re
import sys
import tempfile
import threading
from typing import Callable, List, Optional

import pytest

# Keep test runs out of the user's log directory.
os.environ.setdefault("MAILTRIAGE_LOG_DIR", tempfile.mkdtemp(prefix="mailtriage-logs-"))

from mailtriage.providers.base import LLMProvider, ProviderResponse  # noqa: E402
from mailtriage.stores.kv_store import InMemoryKeyValueStore  # noqa: E402
from mailtriage.stores.memory import InMemoryEmailStore  # noqa: E402
from mailtriage.stores.scheduler import Scheduler  # noqa: E402
from mailtriage.utils.config import default_config  # noqa: E402

START_TIME = 1_700_000_000.0

_ITEM_RE = re.compile(r"^ID: (?P<id>\S+)\nSubject: (?P<subject>.*)$", re.MULTILINE)
_REPLY_MARKER = "Write a reply to the email below"


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _start_watchdog(timeout_seconds: int) -> Optional[threading.Timer]:
    if timeout_seconds <= 0:
        return None

    def _kill() -> None:
        try:
            faulthandler.dump_traceback(file=sys.stderr, all_threads=True)
        except Exception:
            pass
        # Hard exit so a hung scheduler thread can't stall CI.
        os._exit(2)

    timer = threading.Timer(timeout_seconds, _kill)
    timer.daemon = True
    timer.start()
    return timer


def pytest_sessionstart(session) -> None:  # noqa: ANN001
    try:
        faulthandler.enable(all_threads=True)
    except Exception:
        pass

    # Whole-session upper bound, 10 minutes by default.
    timer = _start_watchdog(_env_int("PYTEST_WATCHDOG_TIMEOUT_SECONDS", 10 * 60))
    if timer is not None:
        atexit.register(timer.cancel)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Deterministic clock; ``sleep`` advances time instead of blocking."""

    def __init__(self, start: float = START_TIME):
        self.now = start
        self.sleeps: List[float] = []

    def time(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingScheduler(Scheduler):
    """Collects follow-ups; tests fire them with ``run_next``."""

    def __init__(self):
        self.scheduled = []

    def schedule_once(self, after_seconds: float, handler: Callable[[], None]) -> str:
        schedule_id = f"s{len(self.scheduled) + 1}"
        self.scheduled.append((schedule_id, after_seconds, handler))
        return schedule_id

    def cancel(self, schedule_id: str) -> bool:
        before = len(self.scheduled)
        self.scheduled = [s for s in self.scheduled if s[0] != schedule_id]
        return len(self.scheduled) != before

    def run_next(self):
        _, _, handler = self.scheduled.pop(0)
        return handler()


def envelope(text: str, status_code: int = 200) -> ProviderResponse:
    """Wrap completion text the way the generateContent endpoint does."""
    return ProviderResponse(status_code, {"candidates": [{"content": {"parts": [{"text": text}]}}]})


class ScriptedProvider(LLMProvider):
    """
    Offline model.

    Batch prompts are answered by parsing their ``ID:``/``Subject:`` lines and
    asking ``classify(id, subject)`` for a label (None leaves the id out).
    Reply prompts are answered with ``reply(prompt)``. Entries in ``queue``
    (responses or exceptions) are consumed first.
    """

    def __init__(self, classify=None, reply=None, clock: Optional[FakeClock] = None, advance: float = 0.0):
        self.classify = classify or (lambda item_id, subject: "other")
        self.reply = reply or (lambda prompt: "Thank you for your message. We will follow up shortly.")
        self.clock = clock
        self.advance = advance
        self.queue: list = []
        self.calls: list = []
        self.classified_ids: List[str] = []
        self.on_call: Optional[Callable[[str], None]] = None

    def get_name(self) -> str:
        return "scripted"

    def health_check(self) -> bool:
        return True

    @property
    def request_timeout(self) -> float:
        return 10.0

    def generate(self, prompt, generation_config):
        self.calls.append((prompt, dict(generation_config)))
        if self.clock is not None and self.advance:
            self.clock.advance(self.advance)
        if self.on_call is not None:
            self.on_call(prompt)

        if self.queue:
            scripted = self.queue.pop(0)
            if isinstance(scripted, Exception):
                raise scripted
            return scripted

        if _REPLY_MARKER in prompt:
            return envelope(json.dumps({"reply": self.reply(prompt), "tone": "friendly", "category": "request"}))

        entries = []
        for m in _ITEM_RE.finditer(prompt):
            self.classified_ids.append(m.group("id"))
            label = self.classify(m.group("id"), m.group("subject"))
            if label is not None:
                entries.append({"id": m.group("id"), "label": label, "confidence": 0.9})
        return envelope(json.dumps(entries))

    def batch_calls(self) -> list:
        return [c for c in self.calls if _REPLY_MARKER not in c[0]]

    def reply_calls(self) -> list:
        return [c for c in self.calls if _REPLY_MARKER in c[0]]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv():
    return InMemoryKeyValueStore()


@pytest.fixture
def store():
    return InMemoryEmailStore()


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest.fixture
def provider(clock):
    return ScriptedProvider(clock=clock)


@pytest.fixture
def make_envelope():
    return envelope


@pytest.fixture
def test_config(tmp_path):
    cfg = default_config()
    cfg["rate_limit"]["requests_per_minute"] = 10_000
    cfg["rate_limit"]["acquire_timeout_seconds"] = 1
    cfg["state_path"] = str(tmp_path / "state.json")
    return cfg
