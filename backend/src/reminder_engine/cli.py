from __future__ import annotations

import argparse
import json
import logging
import signal
import threading
from datetime import datetime

from .config import get_settings, runtime_config_issues
from .logging_setup import setup_logging
from .pipeline import NotificationPipeline

logger = logging.getLogger(__name__)


def _parse_now(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid ISO-8601 timestamp: {value!r}") from exc


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="reminder_engine",
        description="Run the reminder scheduler, workers, or a single tick.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("serve-workers", help="Run the scheduler loop and worker pool until interrupted")

    tick = subparsers.add_parser("tick", help="Run one evaluate-and-dispatch cycle")
    tick.add_argument("--dry-run", action="store_true", help="Count due rules without enqueueing")
    tick.add_argument("--now-override", type=_parse_now, default=None, help="ISO-8601 timestamp to evaluate at")

    drain = subparsers.add_parser("drain", help="Process queued jobs that are due now, then exit")
    drain.add_argument("--queue", default=None, help="Only drain this queue")
    drain.add_argument("--max-messages", type=int, default=100)
    drain.add_argument("--now-override", type=_parse_now, default=None, help="ISO-8601 timestamp to process at")
    return parser.parse_args(argv)


def _serve(pipeline: NotificationPipeline) -> int:
    stop = threading.Event()

    def _handle_signal(signum: int, _frame: object) -> None:
        logger.info("received signal %s; shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    pipeline.workers.start()
    pipeline.scheduler.start()
    try:
        stop.wait()
    finally:
        pipeline.stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level)
    for issue in runtime_config_issues(settings):
        logger.warning("configuration warning: %s", issue)

    pipeline = NotificationPipeline(settings)

    if args.command == "serve-workers":
        return _serve(pipeline)

    if args.command == "tick":
        result = pipeline.trigger(dry_run=args.dry_run, now=args.now_override)
        print(
            json.dumps(
                {
                    "tick_id": result.tick_id,
                    "status": result.status,
                    "run_at": result.run_at.isoformat(),
                    "dry_run": result.dry_run,
                    "due_count": result.due_count,
                    "enqueued_count": result.enqueued_count,
                    "duplicate_count": result.duplicate_count,
                    "rule_ids": result.rule_ids,
                    "error_message": result.error_message,
                },
                indent=2,
            )
        )
        return 0 if result.status in {"completed", "dry_run", "skipped"} else 1

    drained = pipeline.drain(queue=args.queue, max_messages=args.max_messages, now=args.now_override)
    print(
        json.dumps(
            {
                "processed_count": drained.processed_count,
                "completed_count": drained.completed_count,
                "retrying_count": drained.retrying_count,
                "failed_count": drained.failed_count,
                "deferred_count": drained.deferred_count,
                "job_ids": drained.job_ids,
            },
            indent=2,
        )
    )
    return 0
