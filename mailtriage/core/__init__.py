"""
Core modules for mailtriage.

This package contains the resumable classification pipeline:
- models: work items, results, run request/context, continuation state
- redaction: reversible PII tokenization
- guardrails: reply safety validation and self-test
- label_resolver: rename-tolerant label cache
- classification_client: model call with schema validation and one retry
- batch_classifier: batched classification with per-item results
- delta_scanner: incremental/full inbox scans
- continuation: time-budgeted suspend/resume state machine
- dispatch_guard: duplicate draft/send detection
- run_lock: single active run
- prompt_engine: Jinja2 prompt templates
- rate_limiter: token bucket for model calls
- orchestrator: end-to-end run
"""

from .batch_classifier import BatchClassifier
from .classification_client import ClassificationClient
from .continuation import ContinuationManager, RunStatus
from .delta_scanner import DeltaScanner, ScanResult
from .guardrails import GuardrailsValidator, run_self_test
from .label_resolver import LabelResolver
from .models import (
    ClassificationResult,
    ContinuationState,
    GuardrailsVerdict,
    ProcessingMode,
    RunContext,
    RunRequest,
    RunSummary,
    WorkItem,
)
from .orchestrator import PipelineOrchestrator, RunOutcome
from .redaction import RedactionCodec

__all__ = [
    "BatchClassifier",
    "ClassificationClient",
    "ContinuationManager",
    "RunStatus",
    "DeltaScanner",
    "ScanResult",
    "GuardrailsValidator",
    "run_self_test",
    "LabelResolver",
    "ClassificationResult",
    "ContinuationState",
    "GuardrailsVerdict",
    "ProcessingMode",
    "RunContext",
    "RunRequest",
    "RunSummary",
    "WorkItem",
    "PipelineOrchestrator",
    "RunOutcome",
    "RedactionCodec",
]
