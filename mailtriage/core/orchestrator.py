"""
Pipeline orchestrator - one resumable classification and reply run.

Flow per batch: cancellation/suspension check -> classify -> label ->
(redact -> reply prompt -> model -> guardrails -> restore -> dispatch) ->
processed marker -> checkpoint.

Item failures are recorded on the item (error label, summary counter) and
never abort the run. Checkpoint failures always propagate.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Union

from .batch_classifier import BatchClassifier
from .classification_client import ClassificationClient
from .continuation import ContinuationManager, RunStatus
from .delta_scanner import DeltaScanner
from .dispatch_guard import DispatchGuard
from .guardrails import GuardrailsValidator, reason_key
from .label_resolver import LabelResolver
from .models import (
    ClassificationResult,
    Clock,
    ContinuationState,
    ProcessingMode,
    RunContext,
    RunRequest,
    RunSummary,
    WorkItem,
)
from .prompt_engine import PromptEngine
from .rate_limiter import RateLimiter
from .redaction import RedactionCodec
from .run_lock import RunLock
from ..providers.base import LLMProvider
from ..stores.email_store import EmailStore, ThreadRef
from ..stores.kv_store import KeyValueStore
from ..stores.scheduler import Scheduler
from ..utils.config import load_config
from ..utils.errors import (
    AppError,
    CheckpointPersistenceError,
    DispatchError,
    LabelNotFoundError,
    RunInProgressError,
)
from ..utils.json_validator import load_schema
from ..utils.logger import logger

# Outcomes of reply handling for one item
REPLY_DISPATCHED = "dispatched"
REPLY_BLOCKED = "blocked"
REPLY_DUPLICATE = "duplicate"
REPLY_FAILED = "failed"


@dataclass
class RunOutcome:
    run_id: str
    status: RunStatus
    summary: RunSummary

    def to_dict(self) -> Dict:
        return {"run_id": self.run_id, "status": self.status.value, "summary": self.summary.to_dict()}


class PipelineOrchestrator:
    """
    Composes scanner, classifier, label resolver, redaction, guardrails and
    continuation manager into runs.

    Args:
        store: Mailbox
        kv: Durable key-value store (checkpoint, caches, cursors)
        scheduler: Schedules follow-up invocations after suspension
        provider: Language model transport
        config: Full configuration dict (defaults from ``load_config``)
        clock: Time source; also used for the delay between batches
    """

    def __init__(
        self,
        store: EmailStore,
        kv: KeyValueStore,
        scheduler: Scheduler,
        provider: LLMProvider,
        config: Optional[Dict] = None,
        clock: Optional[Clock] = None,
    ):
        self.config = config or load_config()
        self.clock = clock or Clock()
        self.store = store
        self.kv = kv

        cfg = self.config
        labels = cfg["labels"]
        self.processed_label = labels["processed"]
        self.error_label = labels["error"]
        self.blocked_label = labels["blocked"]

        provider_cfg = cfg["provider"]
        self.rate_limiter = RateLimiter(cfg["rate_limit"]["requests_per_minute"])
        self.client = ClassificationClient(
            provider,
            rate_limiter=self.rate_limiter,
            temperature=provider_cfg.get("temperature", 0.3),
            max_output_tokens=provider_cfg.get("max_output_tokens", 2048),
            acquire_timeout=cfg["rate_limit"].get("acquire_timeout_seconds", 30),
        )
        self.prompt_engine = PromptEngine()
        self.classifier = BatchClassifier(
            self.client,
            prompt_engine=self.prompt_engine,
            batch_size=cfg["batch"]["size"],
            batch_delay=cfg["batch"]["delay_seconds"],
            allowed_labels=labels.get("allowed"),
            sleep=self.clock.sleep,
        )
        self.redaction = RedactionCodec(cfg["redaction"]["map_ttl_seconds"], clock=self.clock.time)
        self.redact_for_classification = cfg["redaction"]["redact_for_classification"]
        self.guardrails = GuardrailsValidator(
            max_length=cfg["guardrails"]["max_length"],
            max_links=cfg["guardrails"]["max_links"],
        )
        self.labels = LabelResolver(
            store, kv, ttl_seconds=cfg["label_cache"]["ttl_hours"] * 3600, clock=self.clock.time
        )
        self.scanner = DeltaScanner(
            store,
            kv,
            processed_label=self.processed_label,
            full_scan_limit=cfg["scan"]["full_scan_limit"],
            delta_window_days=cfg["scan"]["delta_window_days"],
            cursor_max_age_days=cfg["scan"]["cursor_max_age_days"],
            clock=self.clock.time,
        )
        cont = cfg["continuation"]
        self.continuation = ContinuationManager(
            kv,
            scheduler,
            host_max_execution_seconds=cont["host_max_execution_seconds"],
            safety_margin_seconds=cont["safety_margin_seconds"],
            follow_up_delay_seconds=cont["follow_up_delay_seconds"],
            max_continuations=cont["max_continuations"],
            state_ttl_hours=cont["state_ttl_hours"],
            request_timeout=provider.request_timeout,
            checkpoint_headroom_seconds=cont["checkpoint_headroom_seconds"],
        )
        self.dispatch_guard = DispatchGuard(kv, cfg["dispatch"]["record_ttl_days"], clock=self.clock.time)
        self.run_lock = RunLock(kv)
        self.reply_schema = load_schema("reply")
        self.last_outcome: Optional[RunOutcome] = None

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(self, request: Union[RunRequest, Dict], context: Optional[RunContext] = None) -> RunOutcome:
        """
        Start a new run: scan, then process batches until done, suspended or cancelled.

        Raises:
            InvalidRequestError: the request does not validate.
            RunInProgressError: another run holds the lock or is suspended and
                not cancelled.
            CheckpointPersistenceError: state could not be persisted.
        """
        if not isinstance(request, RunRequest):
            request = RunRequest.from_dict(request)
        context = context or RunContext(clock=self.clock)

        with self.run_lock.hold(context, request.mode.value):
            self.continuation.discard_stale(context)
            existing = self.continuation.load_state()
            if existing is not None and self.continuation.is_cancel_requested():
                self.continuation.discard_cancelled(existing, context)
                existing = None
            if existing is not None:
                raise RunInProgressError(
                    f"Run {existing.run_id} is {existing.status}; resume or cancel it first",
                    {"run_id": existing.run_id},
                )
            self.dispatch_guard.purge_expired()

            context.logger.info(f"Starting {request.mode.value} run")
            scan = self.scanner.scan(context)
            summary = RunSummary(
                scanned=len(scan.items) + len(scan.skipped_ids),
                skipped=len(scan.skipped_ids),
            )
            state = self.continuation.start(
                context,
                [item.id for item in scan.items],
                cursor=str(scan.started_at),
                scan_type=scan.scan_type,
                skipped_ids=scan.skipped_ids,
                request=request.to_dict(),
                summary=summary,
            )
            items = {item.id: item for item in scan.items}
            return self._drive(state, items, request, summary, context)

    def resume(self, context: Optional[RunContext] = None) -> Optional[RunOutcome]:
        """
        Continue a suspended run. Returns None when there is nothing to resume.
        """
        context = context or RunContext(clock=self.clock)
        if self.continuation.discard_stale(context):
            return None
        pending = self.continuation.load_state()
        if pending is None:
            logger.info("Nothing to resume")
            return None
        context = context.with_run_id(pending.run_id)

        with self.run_lock.hold(context, pending.request.get("mode", "resume")):
            state = self.continuation.resume(context)
            if state is None:
                return None
            request = RunRequest.from_dict(state.request)
            summary = RunSummary.from_dict(state.summary)

            items, missing = self.scanner.load_items(state.remaining_ids, context)
            if missing:
                context.logger.warning(f"{len(missing)} item(s) vanished since suspension; skipping them")
                summary.skipped += len(missing)
                self.continuation.record_batch(state, [], context, summary, skipped_ids=missing)

            return self._drive(state, {item.id: item for item in items}, request, summary, context)

    def cancel(self) -> None:
        """Request cancellation; honored at the next batch boundary or on resume."""
        self.continuation.request_cancel()

    def status(self) -> Dict:
        report = self.continuation.status_report(RunContext(clock=self.clock))
        report["lock"] = self.run_lock.info()
        return report

    def _follow_up(self) -> None:
        self.resume()

    # ------------------------------------------------------------------
    # Batch loop
    # ------------------------------------------------------------------

    def _drive(
        self,
        state: ContinuationState,
        items: Dict[str, WorkItem],
        request: RunRequest,
        summary: RunSummary,
        context: RunContext,
    ) -> RunOutcome:
        size = self.classifier.batch_size
        longest_batch = 0.0
        first = True

        while state.remaining_ids:
            if self.continuation.is_cancel_requested():
                self.continuation.cancel(state, context)
                return self._finish(state, summary, context)
            if self.continuation.should_suspend(context, longest_batch):
                self.continuation.suspend(state, context, self._follow_up)
                return self._finish(state, summary, context)
            if not first and self.classifier.batch_delay > 0:
                self.clock.sleep(self.classifier.batch_delay)
            first = False

            started = self.clock.time()
            batch = [items[i] for i in state.remaining_ids[:size]]
            results = self.classifier.classify_batch(
                self._prepare_for_classification(batch),
                request.classification_prompt,
                context,
            )
            handled = []
            for item, result in zip(batch, results):
                # replies cost a model call each; leave them to the next invocation once over budget
                if handled and self._needs_reply(result, request) and self.continuation.should_suspend(context):
                    break
                self._handle_item(item, result, request, summary, context)
                handled.append(item.id)
            for item in batch[len(handled):]:
                self.redaction.clear(item.id)
            if len(handled) < len(batch):
                context.logger.info(f"Deferring {len(batch) - len(handled)} item(s) to the next invocation")

            self.continuation.record_batch(state, handled, context, summary)
            longest_batch = max(longest_batch, self.clock.time() - started)
            context.logger.info(
                f"Batch {state.batch_index} done: {len(state.processed_ids)}/{state.total} processed"
            )

        if state.cursor:
            self.scanner.commit_cursor(float(state.cursor))
        self.continuation.complete(state, context)
        return self._finish(state, summary, context)

    def _finish(self, state: ContinuationState, summary: RunSummary, context: RunContext) -> RunOutcome:
        status = self.continuation.status
        context.logger.info(
            f"Run {status.value}: scanned={summary.scanned} classified={summary.classified} "
            f"replied={summary.replied} drafted={summary.drafted} sent={summary.sent} "
            f"blocked={summary.blocked} errors={summary.errors} skipped={summary.skipped} "
            f"duplicates={summary.duplicates}"
        )
        if status != RunStatus.SUSPENDED:
            self.redaction.clear_all()
        self.last_outcome = RunOutcome(run_id=state.run_id, status=status, summary=summary)
        return self.last_outcome

    @staticmethod
    def _needs_reply(result: ClassificationResult, request: RunRequest) -> bool:
        return result.ok and request.wants_reply(result.label)

    def _prepare_for_classification(self, batch: Sequence[WorkItem]) -> List[WorkItem]:
        if not self.redact_for_classification:
            return list(batch)
        prepared = []
        for item in batch:
            subject, _ = self.redaction.redact(item.subject, item.id)
            body, _ = self.redaction.redact(item.body, item.id)
            prepared.append(WorkItem(item.id, subject, body, item.existing_labels))
        return prepared

    # ------------------------------------------------------------------
    # Per item
    # ------------------------------------------------------------------

    def _handle_item(
        self,
        item: WorkItem,
        result: ClassificationResult,
        request: RunRequest,
        summary: RunSummary,
        context: RunContext,
    ) -> None:
        try:
            if not result.ok:
                summary.errors += 1
                context.logger.error(f"Item {item.id} not classified: {result.error.message}")
                self._apply_label(item, self.error_label)
                return

            summary.classified += 1
            self._apply_label(item, result.label)

            if request.wants_reply(result.label):
                outcome = self._reply(item, result.label, request, summary, context)
                if outcome == REPLY_FAILED:
                    summary.errors += 1
                    self._apply_label(item, self.error_label)
                    return

            self._apply_label(item, self.processed_label)
            if self.error_label.lower() in (name.lower() for name in item.existing_labels):
                self.store.remove_label(ThreadRef(item.id), self.labels.resolve(self.error_label))
        except CheckpointPersistenceError:
            raise
        except Exception as e:
            summary.errors += 1
            context.logger.exception(f"Item {item.id} failed: {e}")
            self._try_error_label(item, context)
        finally:
            self.redaction.clear(item.id)

    def _try_error_label(self, item: WorkItem, context: RunContext) -> None:
        try:
            self._apply_label(item, self.error_label)
        except Exception as e:
            context.logger.error(f"Could not apply error label to {item.id}: {e}")

    def _apply_label(self, item: WorkItem, name: str) -> None:
        thread = ThreadRef(item.id)
        handle = self.labels.resolve(name)
        try:
            self.store.add_label(thread, handle)
        except LabelNotFoundError:
            # deleted since it was cached
            self.labels.invalidate(name)
            self.store.add_label(thread, self.labels.resolve(name))

    def _reply(
        self,
        item: WorkItem,
        label: str,
        request: RunRequest,
        summary: RunSummary,
        context: RunContext,
    ) -> str:
        subject, _ = self.redaction.redact(item.subject, item.id)
        body, token_count = self.redaction.redact(item.body, item.id)
        context.logger.debug(f"Item {item.id}: {token_count} redaction token(s) in reply context")

        prompt = self.prompt_engine.build_reply_prompt(
            request.reply_prompt, subject, body, label, max_length=self.guardrails.max_length
        )
        result = self.client.call(prompt, schema=self.reply_schema, context=context)
        if not result.ok:
            context.logger.error(f"Reply generation failed for {item.id}: {result.error.message}")
            return REPLY_FAILED
        summary.replied += 1

        reply_text = result.data["reply"].strip()
        verdict = self.guardrails.validate(reply_text)
        if not verdict.is_valid:
            self._block(item, list(verdict.failure_reasons), summary, context)
            return REPLY_BLOCKED

        restored, unresolved = self.redaction.restore_with_report(reply_text, item.id)
        if unresolved:
            self._block(item, [f"Unresolved redaction tokens: {', '.join(unresolved)}"], summary, context)
            return REPLY_BLOCKED

        duplicate = self.dispatch_guard.duplicate_reason(item.id, restored, request.mode)
        if duplicate:
            summary.duplicates += 1
            context.logger.info(f"Skipping dispatch for {item.id}: {duplicate}")
            return REPLY_DUPLICATE

        self._dispatch(item, restored, request.mode, summary, context)
        return REPLY_DISPATCHED

    def _block(self, item: WorkItem, reasons: List[str], summary: RunSummary, context: RunContext) -> None:
        summary.blocked += 1
        for reason in reasons:
            key = reason_key(reason)
            summary.guardrails_reasons[key] = summary.guardrails_reasons.get(key, 0) + 1
        context.logger.warning(f"Guardrails blocked reply for {item.id}: {'; '.join(reasons)}")
        self._apply_label(item, self.blocked_label)

    def _dispatch(
        self,
        item: WorkItem,
        body: str,
        mode: ProcessingMode,
        summary: RunSummary,
        context: RunContext,
    ) -> None:
        thread = ThreadRef(item.id)
        self.dispatch_guard.begin(item.id, body, mode)
        try:
            if mode == ProcessingMode.SEND:
                self.store.reply(thread, body)
            else:
                self.store.create_draft_reply(thread, body)
        except AppError:
            self.dispatch_guard.abort(item.id)
            raise
        except Exception as e:
            self.dispatch_guard.abort(item.id)
            raise DispatchError(f"{mode.value} failed for {item.id}: {e}") from e
        self.dispatch_guard.confirm(item.id, body, mode)

        if mode == ProcessingMode.SEND:
            summary.sent += 1
        else:
            summary.drafted += 1
        context.logger.info(f"Reply {'sent' if mode == ProcessingMode.SEND else 'drafted'} for {item.id} ({len(body)} chars)")
