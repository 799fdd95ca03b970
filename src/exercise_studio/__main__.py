"""Entry point for `python -m exercise_studio` and the `exercise-studio` CLI script."""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import time
from pathlib import Path

from exercise_studio.exceptions import ExerciseStudioError
from exercise_studio.scheduler import ManualScheduler, StageScheduler, WorkQueueScheduler
from exercise_studio.settings import RuntimeSettings
from exercise_studio.workflow import ExerciseWorkflow

logger = logging.getLogger("exercise_studio.cli")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate language exercises from a free-text request")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    parser.add_argument(
        "--state-store-root",
        type=Path,
        default=None,
        help="Directory holding sessions and usage records (default: EXERCISE_STATE_STORE_ROOT)",
    )
    parser.add_argument(
        "--caller-id",
        default=os.getenv("EXERCISE_CALLER_ID") or os.getenv("USER") or "local",
        help="Principal the command acts as",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    start = subparsers.add_parser("start", help="Start a session from a teacher request")
    start.add_argument("--document", required=True, help="Reference of the document the exercises are for")
    prompt = start.add_mutually_exclusive_group(required=True)
    prompt.add_argument("--prompt", default=None, help="Inline request text")
    prompt.add_argument("--prompt-file", type=Path, default=None, help="Path to a file holding the request text")
    start.add_argument("--model", default=None, help="Model id, e.g. gpt-4o-mini or openai/gpt-4o")
    start.add_argument("--defer", action="store_true", help="Persist the session without running its stages")

    answer = subparsers.add_parser("answer", help="Answer the clarification questions of a session")
    answer.add_argument("session_id")
    answer.add_argument(
        "--answer",
        action="append",
        default=[],
        metavar="QUESTION_ID=VALUE",
        help="One answer; repeat a question id to give several values",
    )
    answer.add_argument("--answers-json", default=None, help="JSON object mapping question ids to answers")
    answer.add_argument("--defer", action="store_true", help="Record the answers without re-running validation")

    approve = subparsers.add_parser("approve", help="Approve the plan of a session and generate exercises")
    approve.add_argument("session_id")
    approve.add_argument("--defer", action="store_true", help="Approve without running generation")

    show = subparsers.add_parser("show", help="Print a session with its steps and latest results")
    show.add_argument("session_id")

    list_parser = subparsers.add_parser("list", help="List sessions")
    list_parser.add_argument("--document", default=None, help="Only sessions for this document")
    list_parser.add_argument("--all", action="store_true", help="Include sessions of every owner")

    subparsers.add_parser("usage", help="Print the AI token usage of the caller")

    worker = subparsers.add_parser("worker", help="Run scheduled stages recorded in the state store")
    worker.add_argument("--once", action="store_true", help="Run one pass over the pending jobs and exit")
    worker.add_argument("--poll-interval", type=float, default=2.0, help="Seconds between state store scans")
    worker.add_argument(
        "--stalled-after",
        type=float,
        default=None,
        help="Fail claimed stages silent for this many seconds (default: EXERCISE_STALL_TIMEOUT)",
    )

    fail_stalled = subparsers.add_parser("fail-stalled", help="Fail a session whose claimed stage never finished")
    fail_stalled.add_argument("session_id")
    return parser.parse_args(argv)


def load_settings(state_store_root: Path | None) -> RuntimeSettings:
    settings = RuntimeSettings.from_env()
    if state_store_root is not None:
        settings = dataclasses.replace(settings, state_store_root=str(state_store_root)).normalized()
    return settings


def parse_answers(pairs: list[str], answers_json: str | None) -> dict[str, str | list[str]]:
    """Build an answers mapping from ``id=value`` pairs and an optional JSON object.

    Raises:
        ValueError: If a pair has no ``=``, the JSON is not an object, or no answer was given.
    """
    answers: dict[str, str | list[str]] = {}
    if answers_json is not None:
        loaded = json.loads(answers_json)
        if not isinstance(loaded, dict):
            raise ValueError("--answers-json must be a JSON object")
        for key, value in loaded.items():
            answers[str(key)] = [str(item) for item in value] if isinstance(value, list) else str(value)
    for pair in pairs:
        key, separator, value = pair.partition("=")
        key = key.strip()
        if not separator or not key:
            raise ValueError(f"answer must look like QUESTION_ID=VALUE, got: {pair!r}")
        existing = answers.get(key)
        if existing is None:
            answers[key] = value
        elif isinstance(existing, list):
            existing.append(value)
        else:
            answers[key] = [existing, value]
    if not answers:
        raise ValueError("at least one answer is required")
    return answers


def _drain(scheduler: StageScheduler, defer: bool) -> None:
    if not defer and isinstance(scheduler, ManualScheduler):
        scheduler.run_pending()


def run_worker(
    workflow: ExerciseWorkflow,
    scheduler: ManualScheduler | WorkQueueScheduler,
    *,
    once: bool,
    poll_interval: float,
    stalled_after: float,
) -> None:
    """Replay persisted jobs until interrupted, or for a single pass with ``once``."""
    if isinstance(scheduler, ManualScheduler):
        while True:
            workflow.sweep_stalled(stalled_after)
            workflow.resume()
            executed = scheduler.run_pending()
            logger.debug("Worker pass ran %d stage job(s)", executed)
            if once:
                return
            time.sleep(poll_interval)

    scheduler.start()
    try:
        while True:
            workflow.sweep_stalled(stalled_after)
            workflow.resume()
            scheduler.wait_idle()
            if once:
                return
            time.sleep(poll_interval)
    finally:
        scheduler.stop()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    scheduler: ManualScheduler | WorkQueueScheduler
    try:
        settings = load_settings(args.state_store_root)
        if args.command == "worker" and not args.once and settings.worker_count > 1:
            scheduler = WorkQueueScheduler(settings.worker_count)
        else:
            scheduler = ManualScheduler()
        workflow = ExerciseWorkflow.from_settings(settings, scheduler=scheduler, repo_root=Path.cwd())
    except (OSError, ValueError) as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1
    caller_id = args.caller_id

    try:
        if args.command == "start":
            if args.prompt_file is not None:
                if not args.prompt_file.is_file():
                    raise FileNotFoundError(f"Prompt file does not exist: {args.prompt_file}")
                prompt_text = args.prompt_file.read_text(encoding="utf-8")
            else:
                prompt_text = args.prompt
            started = workflow.start_session(args.document, prompt_text, args.model, caller_id=caller_id)
            _drain(scheduler, args.defer)
            print(workflow.get_session(started.session_id, caller_id=caller_id).model_dump_json(indent=2))
        elif args.command == "answer":
            answers = parse_answers(args.answer, args.answers_json)
            workflow.answer_clarifications(args.session_id, answers, caller_id=caller_id)
            _drain(scheduler, args.defer)
            print(workflow.get_session(args.session_id, caller_id=caller_id).model_dump_json(indent=2))
        elif args.command == "approve":
            workflow.approve_plan(args.session_id, caller_id=caller_id)
            _drain(scheduler, args.defer)
            print(workflow.get_session(args.session_id, caller_id=caller_id).model_dump_json(indent=2))
        elif args.command == "show":
            print(workflow.get_session(args.session_id, caller_id=caller_id).model_dump_json(indent=2))
        elif args.command == "list":
            owner_id = None if args.all else caller_id
            for session in workflow.list_sessions(owner_id=owner_id, document_ref=args.document):
                print(f"{session.session_id}\t{session.current_step.value}\t{session.document_ref}\t{session.owner_id}")
        elif args.command == "usage":
            print(workflow.get_owner_usage(caller_id).model_dump_json(indent=2))
        elif args.command == "worker":
            stalled_after = settings.stall_timeout_seconds if args.stalled_after is None else args.stalled_after
            run_worker(
                workflow,
                scheduler,
                once=args.once,
                poll_interval=args.poll_interval,
                stalled_after=stalled_after,
            )
        elif args.command == "fail-stalled":
            workflow.fail_stalled(args.session_id)
            print(workflow.get_session(args.session_id, caller_id=caller_id).model_dump_json(indent=2))
    except (ExerciseStudioError, OSError, ValueError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
