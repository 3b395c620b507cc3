"""
Data model shared by the pipeline components.

Only ``ContinuationState`` and ``RunRequest`` are serialised; everything else
lives for the duration of one invocation.
"""

import json
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from jsonschema import ValidationError, validate

from ..stores.email_store import LabelHandle  # noqa: F401  re-exported
from ..utils.errors import AppError, InvalidRequestError
from ..utils.json_validator import load_schema
from ..utils.logger import RunLoggerAdapter, get_run_logger


class ProcessingMode(Enum):
    """What the pipeline does after labeling an item."""
    LABEL = "label"   # classify and label only
    DRAFT = "draft"   # create draft replies
    SEND = "send"     # send replies


@dataclass(frozen=True)
class WorkItem:
    """Snapshot of one inbox thread taken at scan time."""
    id: str
    subject: str
    body: str
    existing_labels: tuple = ()


@dataclass
class ClassificationResult:
    """
    Classification of a single work item.

    Exactly one of ``label`` / ``error`` is meaningful: a result with an
    error never carries a usable label.
    """
    id: str
    label: Optional[str] = None
    confidence: Optional[float] = None
    error: Optional[AppError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.label)


@dataclass(frozen=True)
class GuardrailsVerdict:
    is_valid: bool
    failure_reasons: tuple = ()


@dataclass
class LabelCacheEntry:
    logical_name: str
    durable_id: str
    display_name: str
    last_verified_at: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LabelCacheEntry":
        return cls(
            logical_name=data["logical_name"],
            durable_id=data["durable_id"],
            display_name=data.get("display_name", data["logical_name"]),
            last_verified_at=float(data["last_verified_at"]),
        )


@dataclass
class RunRequest:
    """Typed, validated input for one run."""
    mode: ProcessingMode
    classification_prompt: str
    reply_prompt: str = ""
    reply_labels: List[str] = field(default_factory=list)

    def wants_reply(self, label: str) -> bool:
        if self.mode == ProcessingMode.LABEL or not label:
            return False
        return label.lower() in {name.lower() for name in self.reply_labels}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "classification_prompt": self.classification_prompt,
            "reply_prompt": self.reply_prompt,
            "reply_labels": list(self.reply_labels),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "RunRequest":
        """
        Build a request from untyped input.

        Raises:
            InvalidRequestError: if the payload does not match the schema or
                asks for replies without a reply prompt.
        """
        try:
            validate(instance=data, schema=load_schema("run_request"))
        except ValidationError as e:
            raise InvalidRequestError(f"Invalid run request: {e.message}") from e

        request = cls(
            mode=ProcessingMode(data["mode"]),
            classification_prompt=data["classification_prompt"],
            reply_prompt=data.get("reply_prompt", ""),
            reply_labels=list(data.get("reply_labels", [])),
        )
        if request.mode != ProcessingMode.LABEL and request.reply_labels and not request.reply_prompt.strip():
            raise InvalidRequestError("reply_prompt is required when replies are enabled")
        return request


@dataclass
class RunSummary:
    """Counters reported at the end of a run (and carried across invocations)."""
    scanned: int = 0
    classified: int = 0
    replied: int = 0
    drafted: int = 0
    sent: int = 0
    blocked: int = 0
    errors: int = 0
    skipped: int = 0
    duplicates: int = 0
    guardrails_reasons: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RunSummary":
        data = data or {}
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class ContinuationState:
    """
    The only object that crosses invocation boundaries.

    ``processed_ids`` and ``remaining_ids`` partition the scanned set minus
    ``skipped_ids``. No message content is stored here.
    """
    run_id: str
    cursor: Optional[str]
    processed_ids: List[str]
    remaining_ids: List[str]
    started_at: float
    batch_index: int = 0
    status: str = "running"
    skipped_ids: List[str] = field(default_factory=list)
    continuation_count: int = 0
    last_checkpoint_at: float = 0.0
    scan_type: str = "full"
    request: Dict[str, Any] = field(default_factory=dict)
    summary: Dict[str, Any] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.processed_ids) + len(self.remaining_ids)

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "ContinuationState":
        data = json.loads(raw)
        return cls(**data)


class Clock:
    """Wall clock. Tests substitute a fake with the same two methods."""

    def time(self) -> float:
        return time.time()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class RunContext:
    """
    Per-invocation context: correlation id, invocation start and clock.

    Constructed by the entry point and passed explicitly to every component
    that logs or measures time.
    """

    def __init__(
        self,
        run_id: Optional[str] = None,
        clock: Optional[Clock] = None,
        invocation_started_at: Optional[float] = None,
    ):
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.invocation_id = uuid.uuid4().hex[:8]
        self.clock = clock or Clock()
        self.invocation_started_at = (
            invocation_started_at if invocation_started_at is not None else self.clock.time()
        )
        self.logger: RunLoggerAdapter = get_run_logger(self.run_id)

    def elapsed(self) -> float:
        """Seconds since this invocation started."""
        return self.clock.time() - self.invocation_started_at

    def with_run_id(self, run_id: str) -> "RunContext":
        """Same invocation, re-bound to the id of a resumed run."""
        ctx = RunContext(run_id, self.clock, self.invocation_started_at)
        ctx.invocation_id = self.invocation_id
        return ctx
