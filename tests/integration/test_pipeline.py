"""
Integration tests for the pipeline orchestrator.

Most tests run against the in-memory mailbox and key-value store; the crash
recovery tests use the JSON file stores. A scripted model answers every call
and a fake clock drives the time budget.
"""

import json
from collections import Counter
from unittest.mock import patch

import pytest

from conftest import START_TIME, ScriptedProvider, envelope

from mailtriage.core.continuation import RunStatus
from mailtriage.core.delta_scanner import SCAN_CURSOR_KEY
from mailtriage.core.orchestrator import PipelineOrchestrator
from mailtriage.stores.email_store import ThreadRef
from mailtriage.stores.kv_store import JsonFileKeyValueStore
from mailtriage.stores.memory import JsonFileEmailStore
from mailtriage.utils.errors import InvalidRequestError, RunInProgressError, TransportError

LABEL_REQUEST = {"mode": "label", "classification_prompt": "Classify each email as support or other."}

DRAFT_REQUEST = {
    "mode": "draft",
    "classification_prompt": "Classify each email as support or other.",
    "reply_prompt": "Answer briefly and politely.",
    "reply_labels": ["support"],
}

SEND_REQUEST = dict(DRAFT_REQUEST, mode="send")

LINK_HEAVY_REPLY = "See https://a.example/x and https://b.example/y and https://c.example/z for details."


def seed(store, count, prefix="t", date=START_TIME - 3600, subjects=None):
    """Add ``count`` inbox threads ``<prefix>01..``; newer ids sort first."""
    ids = []
    for i in range(1, count + 1):
        thread_id = f"{prefix}{i:02d}"
        subject = (subjects or {}).get(thread_id, f"Question {i}")
        store.add_thread(thread_id, subject, f"Hello, this is message number {i}.", date=date - i)
        ids.append(thread_id)
    return ids


class TestPipelineRuns:
    """End-to-end runs within a single invocation."""

    @pytest.fixture(autouse=True)
    def _wire(self, store, kv, scheduler, clock, test_config):
        self.store = store
        self.kv = kv
        self.scheduler = scheduler
        self.clock = clock
        self.config = test_config

    def make(self, provider):
        return PipelineOrchestrator(
            self.store, self.kv, self.scheduler, provider, config=self.config, clock=self.clock
        )

    def test_draft_run_counts_and_labels(self):
        """Draft mode labels everything, drafts safe replies and blocks the unsafe one."""
        ids = seed(self.store, 25, subjects={"t05": "Links please"})
        support = {"t03", "t05", "t17"}
        provider = ScriptedProvider(
            classify=lambda item_id, subject: "support" if item_id in support else "other",
            reply=lambda prompt: LINK_HEAVY_REPLY if "Subject: Links please" in prompt else
            "Thank you for reaching out. We are looking into it.",
            clock=self.clock,
        )

        outcome = self.make(provider).run(DRAFT_REQUEST)

        assert outcome.status == RunStatus.COMPLETED
        summary = outcome.summary
        assert (summary.scanned, summary.classified, summary.replied) == (25, 25, 3)
        assert (summary.drafted, summary.sent, summary.blocked, summary.errors) == (2, 0, 1, 0)
        assert summary.guardrails_reasons == {"Contains too many URLs": 1}

        for thread_id in ids:
            labels = self.store.label_names(thread_id)
            assert "ai-processed" in labels
            if thread_id not in support:
                assert labels == ["other", "ai-processed"]
        assert self.store.label_names("t05") == ["support", "ai-guardrails-blocked", "ai-processed"]
        assert sorted(d["thread_id"] for d in self.store.drafts) == ["t03", "t17"]
        assert self.store.sent == []

        assert len(provider.batch_calls()) == 3
        assert len(provider.reply_calls()) == 3
        assert self.clock.sleeps == [0.5, 0.5]

    def test_completed_run_leaves_no_state(self):
        """A completed run deletes its checkpoint and commits the scan cursor."""
        seed(self.store, 3)
        orchestrator = self.make(ScriptedProvider(clock=self.clock))

        orchestrator.run(LABEL_REQUEST)

        assert orchestrator.status()["active"] is False
        assert orchestrator.status()["lock"] is None
        assert json.loads(self.kv.get_property(SCAN_CURSOR_KEY)) == {"last_scan_at": START_TIME}
        assert len(orchestrator.redaction) == 0

    def test_reply_tokens_restored(self):
        """Redacted values never reach the model but come back in the draft."""
        self.store.add_thread(
            "p1", "Contact change", "Please write to me at jane.doe@example.com from now on.",
            date=START_TIME - 60,
        )
        provider = ScriptedProvider(
            classify=lambda item_id, subject: "support",
            reply=lambda prompt: "Noted. We will write to [[PII_EMAIL_1]] from today.",
            clock=self.clock,
        )

        outcome = self.make(provider).run(DRAFT_REQUEST)

        assert outcome.summary.drafted == 1
        assert self.store.drafts[0]["body"] == "Noted. We will write to jane.doe@example.com from today."
        for prompt, _ in provider.calls:
            assert "jane.doe@example.com" not in prompt
            assert "write to me at [[PII_EMAIL_1]] from now on" in prompt

    def test_unknown_token_blocks_reply(self):
        """A reply with a token that maps to nothing is blocked, not drafted."""
        seed(self.store, 1)
        provider = ScriptedProvider(
            classify=lambda item_id, subject: "support",
            reply=lambda prompt: "We will call you on [[PII_PHONE_4]].",
            clock=self.clock,
        )

        outcome = self.make(provider).run(DRAFT_REQUEST)

        assert outcome.summary.blocked == 1
        assert self.store.drafts == []
        assert "ai-guardrails-blocked" in self.store.label_names("t01")

    def test_schema_retry(self):
        """A non-JSON answer is retried once at temperature 0."""
        seed(self.store, 4)
        provider = ScriptedProvider(clock=self.clock)
        provider.queue.append(envelope("Sure! Here are the labels you asked for."))

        outcome = self.make(provider).run(LABEL_REQUEST)

        assert (outcome.summary.classified, outcome.summary.errors) == (4, 0)
        assert len(provider.calls) == 2
        assert provider.calls[0][1]["temperature"] == 0.3
        assert provider.calls[1][1]["temperature"] == 0.0

    def test_batch_transport_failure(self):
        """A failed batch call marks each of its items as errored without aborting the run."""
        ids = seed(self.store, 4)
        provider = ScriptedProvider(clock=self.clock)
        provider.queue.append(TransportError("connection reset"))

        outcome = self.make(provider).run(LABEL_REQUEST)

        assert outcome.status == RunStatus.COMPLETED
        assert (outcome.summary.classified, outcome.summary.errors) == (0, 4)
        for thread_id in ids:
            assert self.store.label_names(thread_id) == ["ai-error"]

    def test_omitted_item_errors_then_recovers(self):
        """An id missing from the model answer is retried by the next run."""
        seed(self.store, 3)
        provider = ScriptedProvider(
            classify=lambda item_id, subject: None if item_id == "t02" else "other",
            clock=self.clock,
        )

        first = self.make(provider).run(LABEL_REQUEST)

        assert (first.summary.classified, first.summary.errors) == (2, 1)
        assert self.store.label_names("t02") == ["ai-error"]

        self.clock.advance(600)
        provider.classify = lambda item_id, subject: "other"
        second = self.make(provider).run(LABEL_REQUEST)

        assert (second.summary.scanned, second.summary.classified) == (1, 1)
        assert self.store.label_names("t02") == ["other", "ai-processed"]

    def test_send_mode_never_sends_twice(self):
        """Re-processing a thread already replied to is reported as a duplicate."""
        seed(self.store, 3)
        provider = ScriptedProvider(
            classify=lambda item_id, subject: "support" if item_id == "t01" else "other",
            clock=self.clock,
        )

        first = self.make(provider).run(SEND_REQUEST)
        assert first.summary.sent == 1
        assert json.loads(self.kv.get_property("DISPATCH_t01"))["status"] == "sent"

        processed = self.store.find_label_by_name("ai-processed")
        self.store.remove_label(ThreadRef("t01"), processed)
        self.clock.advance(600)
        second = self.make(provider).run(SEND_REQUEST)

        assert (second.summary.scanned, second.summary.duplicates, second.summary.sent) == (1, 1, 0)
        assert len(self.store.sent) == 1
        assert "ai-processed" in self.store.label_names("t01")

    def test_failed_send_is_not_recorded(self):
        """A rejected send drops its dispatch record and errors the item."""
        seed(self.store, 1)
        provider = ScriptedProvider(classify=lambda item_id, subject: "support", clock=self.clock)

        with patch.object(self.store, "reply", side_effect=RuntimeError("smtp down")):
            outcome = self.make(provider).run(SEND_REQUEST)

        assert (outcome.summary.sent, outcome.summary.errors) == (0, 1)
        assert self.kv.get_property("DISPATCH_t01") is None
        assert self.store.label_names("t01") == ["support", "ai-error"]

    def test_label_rename_keeps_id(self):
        """A label renamed in the mailbox is still applied by id, never duplicated."""
        seed(self.store, 2)
        provider = ScriptedProvider(classify=lambda item_id, subject: "support", clock=self.clock)
        self.make(provider).run(LABEL_REQUEST)

        handle = self.store.find_label_by_name("support")
        self.store.rename_label(handle.id, "Customer Support")
        label_count = len(self.store.labels)
        self.clock.advance(600)
        seed(self.store, 2, prefix="n", date=self.clock.time())

        outcome = self.make(provider).run(LABEL_REQUEST)

        assert outcome.summary.scanned == 2
        assert self.store.label_names("n01") == ["Customer Support", "ai-processed"]
        assert self.store.find_label_by_name("support") is None
        assert len(self.store.labels) == label_count

    def test_deleted_label_recreated(self):
        """A cached label deleted in the mailbox is recreated on first use."""
        seed(self.store, 2)
        provider = ScriptedProvider(clock=self.clock)
        self.make(provider).run(LABEL_REQUEST)

        old = self.store.find_label_by_name("other")
        self.store.delete_label(old.id)
        self.clock.advance(600)
        seed(self.store, 1, prefix="n", date=self.clock.time())

        outcome = self.make(provider).run(LABEL_REQUEST)

        assert outcome.summary.errors == 0
        recreated = self.store.find_label_by_name("other")
        assert recreated is not None and recreated.id != old.id
        assert self.store.label_names("n01") == ["other", "ai-processed"]

    def test_invalid_request(self):
        """Malformed requests are rejected before anything runs."""
        orchestrator = self.make(ScriptedProvider(clock=self.clock))
        with pytest.raises(InvalidRequestError):
            orchestrator.run({"mode": "archive", "classification_prompt": "x"})
        with pytest.raises(InvalidRequestError):
            orchestrator.run(dict(DRAFT_REQUEST, reply_prompt=""))

    def test_cancel_mid_run(self):
        """Cancellation is honored at the next batch boundary."""
        ids = seed(self.store, 25)
        provider = ScriptedProvider(clock=self.clock)
        orchestrator = self.make(provider)
        provider.on_call = lambda prompt: orchestrator.cancel()

        outcome = orchestrator.run(LABEL_REQUEST)

        assert outcome.status == RunStatus.CANCELLED
        assert outcome.summary.classified == 10
        unprocessed = [i for i in ids if "ai-processed" not in self.store.label_names(i)]
        assert len(unprocessed) == 15
        assert self.scheduler.scheduled == []
        assert self.kv.get_property(SCAN_CURSOR_KEY) is None


class TestPipelineContinuation:
    """Runs that outlast one invocation."""

    @pytest.fixture(autouse=True)
    def _wire(self, store, kv, scheduler, clock, test_config):
        self.store = store
        self.kv = kv
        self.scheduler = scheduler
        self.clock = clock
        self.config = test_config
        # each model call takes 150 simulated seconds
        self.provider = ScriptedProvider(clock=clock, advance=150)
        self.orchestrator = PipelineOrchestrator(
            store, kv, scheduler, self.provider, config=test_config, clock=clock
        )

    def test_suspend_then_resume(self):
        """A run suspends at the time budget and the follow-up finishes it."""
        ids = seed(self.store, 25)

        first = self.orchestrator.run(LABEL_REQUEST)

        assert first.status == RunStatus.SUSPENDED
        status = self.orchestrator.status()
        assert (status["status"], status["processed"], status["remaining"]) == ("suspended", 20, 5)
        assert len(self.scheduler.scheduled) == 1
        assert self.scheduler.scheduled[0][1] == 2
        assert self.kv.get_property(SCAN_CURSOR_KEY) is None

        second = self.orchestrator.resume()

        assert second.run_id == first.run_id
        assert second.status == RunStatus.COMPLETED
        assert second.summary.classified == 25
        assert second.summary.scanned == 25
        assert set(Counter(self.provider.classified_ids).values()) == {1}
        assert sorted(self.provider.classified_ids) == sorted(ids)
        assert all("ai-processed" in self.store.label_names(i) for i in ids)
        assert self.orchestrator.status()["active"] is False

    def test_scheduled_follow_up_resumes(self):
        """Firing the scheduled handler resumes the suspended run."""
        ids = seed(self.store, 25)
        self.orchestrator.run(LABEL_REQUEST)

        self.scheduler.run_next()

        assert self.orchestrator.status()["active"] is False
        assert all("ai-processed" in self.store.label_names(i) for i in ids)

    def test_vanished_items_skipped_on_resume(self):
        """Threads deleted between invocations are skipped, not failed."""
        seed(self.store, 25)
        self.orchestrator.run(LABEL_REQUEST)
        remaining = json.loads(self.kv.get_property("CONTINUATION_STATE"))["remaining_ids"]
        del self.store.threads[remaining[0]]

        outcome = self.orchestrator.resume()

        assert outcome.status == RunStatus.COMPLETED
        assert outcome.summary.skipped == 1
        assert outcome.summary.classified == 24

    def test_cancel_while_suspended(self):
        """A cancel request stops a suspended run on its next invocation."""
        ids = seed(self.store, 25)
        self.orchestrator.run(LABEL_REQUEST)
        self.orchestrator.cancel()

        outcome = self.orchestrator.resume()

        assert outcome.status == RunStatus.CANCELLED
        assert outcome.summary.classified == 20
        assert sum("ai-processed" not in self.store.label_names(i) for i in ids) == 5
        assert self.orchestrator.status()["active"] is False

    def test_new_run_refused_while_suspended(self):
        """A suspended run must be resumed or cancelled before a new one starts."""
        seed(self.store, 25)
        self.orchestrator.run(LABEL_REQUEST)

        with pytest.raises(RunInProgressError):
            self.orchestrator.run(LABEL_REQUEST)

    def test_new_run_after_cancelling_suspended_run(self):
        """Cancelling a suspended run frees the way for a new run."""
        ids = seed(self.store, 25)
        first = self.orchestrator.run(LABEL_REQUEST)
        self.orchestrator.cancel()

        second = self.orchestrator.run(LABEL_REQUEST)

        assert second.run_id != first.run_id
        assert second.status == RunStatus.COMPLETED
        assert second.summary.classified == 5
        assert all("ai-processed" in self.store.label_names(i) for i in ids)
        assert self.orchestrator.status()["active"] is False

    def reply_orchestrator(self, seconds_per_call):
        provider = ScriptedProvider(
            clock=self.clock, advance=seconds_per_call, classify=lambda item_id, subject: "support"
        )
        return PipelineOrchestrator(
            self.store, self.kv, self.scheduler, provider, config=self.config, clock=self.clock
        )

    def test_reply_batches_stay_inside_host_limit(self):
        """A batch is not started when the longest batch so far would overrun the host ceiling."""
        seed(self.store, 20)
        orchestrator = self.reply_orchestrator(20)

        first = orchestrator.run(DRAFT_REQUEST)

        assert first.status == RunStatus.SUSPENDED
        assert first.summary.drafted == 10
        assert self.clock.time() - START_TIME <= 360

        resumed_at = self.clock.time()
        second = orchestrator.resume()

        assert second.status == RunStatus.COMPLETED
        assert second.summary.drafted == 20
        assert self.clock.time() - resumed_at <= 360
        assert len(self.store.drafts) == 20

    def test_replies_deferred_when_budget_runs_out_mid_batch(self):
        """Reply items past the time budget wait for the next invocation."""
        ids = seed(self.store, 10)
        orchestrator = self.reply_orchestrator(40)

        first = orchestrator.run(DRAFT_REQUEST)

        assert first.status == RunStatus.SUSPENDED
        assert first.summary.drafted == 6
        assert self.clock.time() - START_TIME <= 360
        status = orchestrator.status()
        assert (status["processed"], status["remaining"]) == (6, 4)

        second = orchestrator.resume()

        assert second.status == RunStatus.COMPLETED
        assert second.summary.drafted == 10
        assert second.summary.classified == 10
        assert Counter(d["thread_id"] for d in self.store.drafts) == Counter(ids)

    def test_max_continuations_cancels(self):
        """Exceeding the continuation limit cancels the run."""
        self.config["continuation"]["max_continuations"] = 1
        orchestrator = PipelineOrchestrator(
            self.store, self.kv, self.scheduler, self.provider, config=self.config, clock=self.clock
        )
        seed(self.store, 45)

        assert orchestrator.run(LABEL_REQUEST).status == RunStatus.SUSPENDED
        outcome = orchestrator.resume()

        assert outcome.status == RunStatus.CANCELLED
        assert outcome.summary.classified == 40
        assert len(self.scheduler.scheduled) == 1

    def test_nothing_to_resume(self):
        """Resume without a checkpoint is a no-op."""
        assert self.orchestrator.resume() is None


class TestPipelineCrashRecovery:
    """Runs against file-backed mailbox and state that lose their process mid-run."""

    @pytest.fixture(autouse=True)
    def _wire(self, tmp_path, scheduler, clock, test_config):
        self.mailbox_path = str(tmp_path / "mailbox.json")
        self.state_path = str(tmp_path / "state" / "state.json")
        self.scheduler = scheduler
        self.clock = clock
        self.config = test_config

    def make(self, provider):
        return PipelineOrchestrator(
            JsonFileEmailStore(self.mailbox_path),
            JsonFileKeyValueStore(self.state_path),
            self.scheduler,
            provider,
            config=self.config,
            clock=self.clock,
        )

    def test_resume_after_killed_process(self):
        """Work checkpointed before the process died is on disk, and resume finishes the rest."""
        seeded = JsonFileEmailStore(self.mailbox_path)
        ids = seed(seeded, 15)
        seeded.save()

        provider = ScriptedProvider(clock=self.clock)

        def kill_on_second_batch(prompt):
            if len(provider.batch_calls()) == 2:
                raise SystemExit("terminated by host")

        provider.on_call = kill_on_second_batch
        orchestrator = self.make(provider)
        with pytest.raises(SystemExit):
            orchestrator.run(LABEL_REQUEST)

        checkpoint = json.loads(JsonFileKeyValueStore(self.state_path).get_property("CONTINUATION_STATE"))
        on_disk = JsonFileEmailStore(self.mailbox_path)
        labelled = [i for i in ids if "ai-processed" in on_disk.label_names(i)]
        assert sorted(labelled) == sorted(checkpoint["processed_ids"])
        assert len(labelled) == 10

        orchestrator = self.make(ScriptedProvider(clock=self.clock))
        outcome = orchestrator.resume()

        assert outcome.status == RunStatus.COMPLETED
        final = JsonFileEmailStore(self.mailbox_path)
        assert all("ai-processed" in final.label_names(i) for i in ids)
