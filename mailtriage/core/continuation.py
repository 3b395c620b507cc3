"""
Continuation manager - bounded invocations with resumable state.

One run may span several invocations. Each invocation stops taking new
batches once its time budget (host ceiling minus a safety margin) is used up,
persists a checkpoint and schedules a follow-up. Checkpoints are single
key-value writes; any failure to persist or schedule is fatal to the run.

State machine::

    NOT_STARTED -> RUNNING -> COMPLETED
                      |  ^
                      v  |
                   SUSPENDED
    RUNNING/SUSPENDED -> CANCELLED
"""

import logging
from enum import Enum
from typing import Callable, Dict, Iterable, Optional

from .models import ContinuationState, RunContext, RunSummary
from ..stores.kv_store import KeyValueStore
from ..stores.scheduler import Scheduler
from ..utils.errors import (
    CheckpointPersistenceError,
    ConfigurationError,
    InvalidTransitionError,
)

logger = logging.getLogger(__name__)

STATE_KEY = "CONTINUATION_STATE"
CANCEL_KEY = "ANALYSIS_CANCELLED"


class RunStatus(Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


_TRANSITIONS = {
    RunStatus.NOT_STARTED: {RunStatus.RUNNING},
    RunStatus.RUNNING: {RunStatus.SUSPENDED, RunStatus.COMPLETED, RunStatus.CANCELLED},
    RunStatus.SUSPENDED: {RunStatus.RUNNING, RunStatus.CANCELLED},
    RunStatus.COMPLETED: set(),
    RunStatus.CANCELLED: set(),
}


class ContinuationManager:
    """
    Args:
        kv: Durable store for the checkpoint and the cancel flag
        scheduler: Arranges the follow-up invocation
        host_max_execution_seconds: Hard ceiling imposed by the host
        safety_margin_seconds: Headroom kept for the last batch, the
            checkpoint write and scheduling
        follow_up_delay_seconds: Delay before the follow-up invocation
        max_continuations: Follow-ups allowed before the run is cancelled
        state_ttl_hours: Checkpoints older than this are discarded
        request_timeout: Model request timeout; the margin must cover a call
            and its retry
        checkpoint_headroom_seconds: Time kept free below the host ceiling
            for the checkpoint write and scheduling. A batch is only started
            when the longest batch seen so far still fits in front of it.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        scheduler: Scheduler,
        host_max_execution_seconds: float = 360,
        safety_margin_seconds: float = 90,
        follow_up_delay_seconds: float = 2,
        max_continuations: int = 20,
        state_ttl_hours: float = 24,
        request_timeout: Optional[float] = None,
        checkpoint_headroom_seconds: float = 15,
    ):
        if safety_margin_seconds <= 0 or safety_margin_seconds >= host_max_execution_seconds:
            raise ConfigurationError(
                "safety_margin_seconds must be positive and below host_max_execution_seconds"
            )
        if request_timeout is not None and safety_margin_seconds <= 2 * request_timeout:
            raise ConfigurationError(
                f"safety_margin_seconds ({safety_margin_seconds}) must exceed twice the "
                f"request timeout ({request_timeout})"
            )
        if checkpoint_headroom_seconds < 0 or checkpoint_headroom_seconds >= safety_margin_seconds:
            raise ConfigurationError(
                "checkpoint_headroom_seconds must be non-negative and below safety_margin_seconds"
            )
        self.kv = kv
        self.scheduler = scheduler
        self.host_max_execution_seconds = host_max_execution_seconds
        self.safety_margin_seconds = safety_margin_seconds
        self.follow_up_delay_seconds = follow_up_delay_seconds
        self.max_continuations = max_continuations
        self.checkpoint_headroom_seconds = checkpoint_headroom_seconds
        self.state_ttl_seconds = state_ttl_hours * 3600
        self.status = RunStatus.NOT_STARTED

    @property
    def time_budget(self) -> float:
        """Seconds of work allowed per invocation."""
        return self.host_max_execution_seconds - self.safety_margin_seconds

    def _transition(self, target: RunStatus) -> None:
        if target not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Cannot move from {self.status.value} to {target.value}"
            )
        self.status = target

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self, state: ContinuationState, context: RunContext) -> None:
        state.status = self.status.value
        state.last_checkpoint_at = context.clock.time()
        try:
            self.kv.set_property(STATE_KEY, state.to_json())
        except Exception as e:
            raise CheckpointPersistenceError(f"Failed to persist continuation state: {e}") from e

    def _delete_state(self) -> None:
        try:
            self.kv.delete_property(STATE_KEY)
            self.kv.delete_property(CANCEL_KEY)
        except Exception as e:
            raise CheckpointPersistenceError(f"Failed to delete continuation state: {e}") from e

    def load_state(self) -> Optional[ContinuationState]:
        """
        Read the persisted checkpoint.

        Raises:
            CheckpointPersistenceError: the store failed or the checkpoint is corrupt.
        """
        try:
            raw = self.kv.get_property(STATE_KEY)
        except Exception as e:
            raise CheckpointPersistenceError(f"Failed to read continuation state: {e}") from e
        if not raw:
            return None
        try:
            return ContinuationState.from_json(raw)
        except (ValueError, TypeError) as e:
            raise CheckpointPersistenceError(f"Corrupt continuation state: {e}") from e

    def discard_stale(self, context: RunContext) -> bool:
        """Delete a checkpoint older than the state TTL. Returns True if one was dropped."""
        state = self.load_state()
        if state is None:
            return False
        age = context.clock.time() - (state.last_checkpoint_at or state.started_at)
        if age <= self.state_ttl_seconds:
            return False
        context.logger.warning(
            f"Discarding stale continuation state of run {state.run_id} ({age / 3600:.1f}h old)"
        )
        self._delete_state()
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(
        self,
        context: RunContext,
        item_ids: Iterable[str],
        cursor: Optional[str] = None,
        scan_type: str = "full",
        skipped_ids: Iterable[str] = (),
        request: Optional[Dict] = None,
        summary: Optional[RunSummary] = None,
    ) -> ContinuationState:
        """Begin a run over ``item_ids`` and write the first checkpoint."""
        self.status = RunStatus.NOT_STARTED
        self._transition(RunStatus.RUNNING)

        skipped = list(dict.fromkeys(skipped_ids))
        skipped_set = set(skipped)
        remaining = [i for i in dict.fromkeys(item_ids) if i not in skipped_set]
        state = ContinuationState(
            run_id=context.run_id,
            cursor=cursor,
            processed_ids=[],
            remaining_ids=remaining,
            started_at=context.invocation_started_at,
            skipped_ids=skipped,
            scan_type=scan_type,
            request=dict(request or {}),
            summary=(summary or RunSummary()).to_dict(),
        )
        try:
            self.kv.delete_property(CANCEL_KEY)
        except Exception as e:
            raise CheckpointPersistenceError(f"Failed to reset cancel flag: {e}") from e
        self._persist(state, context)
        context.logger.info(f"Run started with {len(remaining)} item(s), {len(skipped)} skipped")
        return state

    def resume(self, context: RunContext) -> Optional[ContinuationState]:
        """
        Reload the checkpoint for a follow-up invocation.

        Returns None when there is nothing to resume.
        """
        state = self.load_state()
        if state is None:
            logger.info("No continuation state to resume")
            return None

        persisted = RunStatus(state.status)
        if persisted == RunStatus.RUNNING:
            context.logger.warning("Previous invocation ended without a checkpoint; resuming anyway")
            persisted = RunStatus.SUSPENDED
        self.status = persisted
        self._transition(RunStatus.RUNNING)

        state.continuation_count += 1
        self._persist(state, context)
        context.logger.info(
            f"Resuming run (continuation {state.continuation_count}): "
            f"{len(state.processed_ids)} done, {len(state.remaining_ids)} remaining"
        )
        return state

    def record_batch(
        self,
        state: ContinuationState,
        processed_ids: Iterable[str],
        context: RunContext,
        summary: Optional[RunSummary] = None,
        skipped_ids: Iterable[str] = (),
    ) -> None:
        """Move a finished batch from remaining to processed and checkpoint."""
        done = list(dict.fromkeys(processed_ids))
        skipped = [i for i in dict.fromkeys(skipped_ids) if i not in state.skipped_ids]
        moved = set(done) | set(skipped)

        state.remaining_ids = [i for i in state.remaining_ids if i not in moved]
        state.processed_ids.extend(i for i in done if i not in state.processed_ids)
        state.skipped_ids.extend(skipped)
        state.batch_index += 1
        if summary is not None:
            state.summary = summary.to_dict()

        if set(state.processed_ids) & set(state.remaining_ids):
            raise CheckpointPersistenceError("processed and remaining ids overlap")
        self._persist(state, context)

    def should_suspend(self, context: RunContext, next_batch_seconds: float = 0.0) -> bool:
        """
        True once the time budget is used up, or when a batch lasting
        ``next_batch_seconds`` would end past the host ceiling minus the
        checkpoint headroom.
        """
        elapsed = context.elapsed()
        if elapsed >= self.time_budget:
            return True
        deadline = self.host_max_execution_seconds - self.checkpoint_headroom_seconds
        return elapsed + next_batch_seconds > deadline

    def is_cancel_requested(self) -> bool:
        return bool(self.kv.get_property(CANCEL_KEY))

    def request_cancel(self) -> None:
        """Ask the active run to stop at its next batch boundary."""
        self.kv.set_property(CANCEL_KEY, "true")
        logger.info("Cancellation requested")

    def suspend(self, state: ContinuationState, context: RunContext, handler: Callable[[], None]) -> bool:
        """
        Persist and schedule a follow-up.

        Returns:
            True if suspended, False if the continuation limit cancelled the run.
        """
        if state.continuation_count >= self.max_continuations:
            context.logger.error(
                f"Run reached {self.max_continuations} continuations; cancelling "
                f"with {len(state.remaining_ids)} item(s) left"
            )
            self.cancel(state, context)
            return False

        self._transition(RunStatus.SUSPENDED)
        self._persist(state, context)
        try:
            self.scheduler.schedule_once(self.follow_up_delay_seconds, handler)
        except Exception as e:
            raise CheckpointPersistenceError(f"Failed to schedule follow-up: {e}") from e
        context.logger.info(
            f"Suspended after {context.elapsed():.1f}s: {len(state.remaining_ids)} item(s) remaining"
        )
        return True

    def complete(self, state: ContinuationState, context: RunContext) -> None:
        if state.remaining_ids:
            raise InvalidTransitionError("Cannot complete a run with remaining items")
        self._transition(RunStatus.COMPLETED)
        state.status = self.status.value
        self._delete_state()
        context.logger.info(f"Run completed: {len(state.processed_ids)} item(s) processed")

    def cancel(self, state: ContinuationState, context: RunContext) -> None:
        """Stop the run. Work already committed is kept."""
        self._transition(RunStatus.CANCELLED)
        state.status = self.status.value
        self._delete_state()
        context.logger.info(
            f"Run cancelled: {len(state.processed_ids)} processed, {len(state.remaining_ids)} not processed"
        )

    def discard_cancelled(self, state: ContinuationState, context: RunContext) -> None:
        """Close out a persisted run whose cancellation was requested while it was not running."""
        persisted = RunStatus(state.status)
        self.status = RunStatus.SUSPENDED if persisted == RunStatus.RUNNING else persisted
        context.logger.info(f"Closing cancelled run {state.run_id}")
        self.cancel(state, context)

    def status_report(self, context: Optional[RunContext] = None) -> Dict:
        """Progress of the persisted run, if any."""
        state = self.load_state()
        if state is None:
            return {"active": False}
        total = state.total
        now = context.clock.time() if context else state.last_checkpoint_at
        return {
            "active": True,
            "run_id": state.run_id,
            "status": state.status,
            "processed": len(state.processed_ids),
            "remaining": len(state.remaining_ids),
            "total": total,
            "percentage": round(len(state.processed_ids) / total * 100, 1) if total else 100.0,
            "continuations": state.continuation_count,
            "elapsed_seconds": round(now - state.started_at, 1),
            "cancel_requested": self.is_cancel_requested(),
        }
