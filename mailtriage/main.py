"""
Command line entry point.

Runs the pipeline against a JSON mailbox file, with continuation state kept
in the configured ``state_path``.
"""

import argparse
import getpass
import json
import sys
from typing import List, Optional

from .__version__ import __version__
from .core.guardrails import run_self_test
from .core.models import RunRequest
from .core.orchestrator import PipelineOrchestrator, RunOutcome
from .core.continuation import ContinuationManager, RunStatus
from .providers.gemini_provider import GeminiProvider
from .stores.kv_store import JsonFileKeyValueStore
from .stores.memory import JsonFileEmailStore
from .stores.scheduler import ThreadingScheduler
from .utils.config import load_config
from .utils.errors import AppError
from .utils.logger import logger, set_level
from .utils.secrets import set_api_key


def _read_text(value: Optional[str], path: Optional[str]) -> str:
    if path:
        with open(path, "r", encoding="utf-8") as f:
            return f.read()
    return value or ""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mailtriage", description="Resumable inbox classification and reply pipeline")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", help="Path to a JSON config file")
    sub = parser.add_subparsers(dest="command", required=True)

    def _mailbox(p):
        p.add_argument("--mailbox", required=True, help="JSON mailbox file")
        p.add_argument("--no-wait", action="store_true", help="Do not wait for scheduled follow-ups")

    run = sub.add_parser("run", help="Start a new run")
    _mailbox(run)
    run.add_argument("--mode", choices=["label", "draft", "send"], default="label")
    run.add_argument("--prompt", help="Classification instructions")
    run.add_argument("--prompt-file", help="File with classification instructions")
    run.add_argument("--reply-prompt", help="Reply instructions")
    run.add_argument("--reply-prompt-file", help="File with reply instructions")
    run.add_argument("--reply-label", action="append", dest="reply_labels",
                     help="Label that triggers a reply (repeatable; default from config)")

    resume = sub.add_parser("resume", help="Continue a suspended run")
    _mailbox(resume)

    sub.add_parser("cancel", help="Cancel the active or suspended run")
    sub.add_parser("status", help="Show progress of the current run")
    sub.add_parser("selftest", help="Run the guardrails regression samples")
    sub.add_parser("set-key", help="Store the Gemini API key in the system keyring")
    return parser


def _build(config, mailbox: str):
    store = JsonFileEmailStore(mailbox)
    kv = JsonFileKeyValueStore(config["state_path"])
    scheduler = ThreadingScheduler()
    provider = GeminiProvider(config["provider"])
    return scheduler, PipelineOrchestrator(store, kv, scheduler, provider, config=config)


def _finish(outcome: Optional[RunOutcome], orchestrator: PipelineOrchestrator,
            scheduler: ThreadingScheduler, wait: bool) -> int:
    if outcome is not None and outcome.status == RunStatus.SUSPENDED:
        if wait:
            logger.info("Run suspended; waiting for follow-up invocations")
            scheduler.wait_idle()
            # the follow-ups record where the run ended up
            outcome = orchestrator.last_outcome or outcome
        else:
            logger.info("Run suspended; continue with: mailtriage resume")
    print(json.dumps(outcome.to_dict() if outcome else {"status": "idle"}, indent=2))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    set_level(config.get("log_level", "INFO"))

    try:
        if args.command == "selftest":
            report = run_self_test()
            print("\n".join(report["results"]))
            return 0 if report["passed"] else 1

        if args.command == "set-key":
            key = getpass.getpass("Gemini API key: ").strip()
            return 0 if key and set_api_key("gemini", key) else 1

        if args.command in ("cancel", "status"):
            manager = ContinuationManager(
                JsonFileKeyValueStore(config["state_path"]), ThreadingScheduler()
            )
            if args.command == "cancel":
                manager.request_cancel()
                print("Cancellation requested")
            else:
                print(json.dumps(manager.status_report(), indent=2))
            return 0

        scheduler, orchestrator = _build(config, args.mailbox)
        if args.command == "run":
            request = RunRequest.from_dict({
                "mode": args.mode,
                "classification_prompt": _read_text(args.prompt, args.prompt_file),
                "reply_prompt": _read_text(args.reply_prompt, args.reply_prompt_file),
                "reply_labels": args.reply_labels or config["labels"]["reply_labels"],
            })
            outcome = orchestrator.run(request)
        else:
            outcome = orchestrator.resume()
        return _finish(outcome, orchestrator, scheduler, wait=not args.no_wait)

    except AppError as e:
        logger.error(f"{type(e).__name__}: {e.message}")
        print(json.dumps({"status": "error", "error": e.to_dict()}, indent=2), file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
