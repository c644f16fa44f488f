"""Operator commands for the job queue: run the worker, inspect and maintain the tables."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from underwater_jobs.core.config import Settings, get_settings
from underwater_jobs.core.telemetry import configure_logging
from underwater_jobs.jobs.social import SOCIAL_JOB_DEFAULTS
from underwater_jobs.main import build_content_processor, run_worker
from underwater_jobs.services.content_queue import get_content_queue
from underwater_jobs.services.job_store import RepositoryError, get_job_store
from underwater_jobs.services.producer import JobProducer


def _emit(value: Any) -> None:
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json")
    elif isinstance(value, list):
        value = [item.model_dump(mode="json") if hasattr(item, "model_dump") else item for item in value]
    print(json.dumps(value, indent=2, sort_keys=True, default=str))


def _parse_payload(raw: str) -> dict[str, Any]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise argparse.ArgumentTypeError(f"payload is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise argparse.ArgumentTypeError("payload must be a JSON object")
    return payload


async def _init_schema() -> int:
    store = get_job_store()
    content_queue = get_content_queue()
    try:
        await store.ensure_schema()
        await content_queue.ensure_schema()
    finally:
        await store.close()
        await content_queue.close()
    print("schema ready")
    return 0


async def _metrics(include_content: bool) -> int:
    store = get_job_store()
    content_queue = get_content_queue()
    try:
        report: dict[str, Any] = {"jobs": (await store.metrics()).model_dump()}
        if include_content:
            report["content"] = await content_queue.metrics()
    finally:
        await store.close()
        await content_queue.close()
    _emit(report)
    return 0


async def _dead_letters(limit: int, job_type: str | None) -> int:
    store = get_job_store()
    try:
        entries = await store.list_dead_letters(limit=limit, job_type=job_type)
    finally:
        await store.close()
    _emit(entries)
    return 0


async def _cleanup(completed_days: int, dead_letter_days: int) -> int:
    store = get_job_store()
    try:
        result = await store.cleanup(
            completed_retention_days=completed_days,
            dead_letter_retention_days=dead_letter_days,
        )
    finally:
        await store.close()
    _emit(result)
    return 0


async def _enqueue(args: argparse.Namespace) -> int:
    store = get_job_store()
    producer = JobProducer(store, handler_defaults=lambda job_type: SOCIAL_JOB_DEFAULTS.get(job_type, {}))
    try:
        job_id = await producer.enqueue(
            args.type,
            args.payload,
            priority=args.priority,
            max_retries=args.max_retries,
            retry_delay_ms=args.retry_delay_ms,
            timeout_ms=args.timeout_ms,
            delay_ms=args.delay_ms,
            job_id=args.id,
        )
    finally:
        await store.close()
    _emit({"job_id": job_id})
    return 0


async def _drain_content(settings: Settings, limit: int | None) -> int:
    store = get_job_store()
    content_queue = get_content_queue()
    try:
        processor = build_content_processor(settings, content_queue, JobProducer(store, content_queue))
        if processor is None:
            print("UWJ_CONTENT_PIPELINE is not configured", file=sys.stderr)
            return 2
        report = await processor.process_batch(limit)
    finally:
        await store.close()
        await content_queue.close()
    _emit(
        {
            "claimed": report.claimed,
            "completed": report.completed,
            "skipped": report.skipped,
            "retried": report.retried,
            "failed": report.failed,
            "article_ids": report.article_ids,
            "estimated_cost_usd": report.estimated_cost_usd,
        }
    )
    return 0


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="underwater-jobs", description="Durable job queue operations.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    worker = subparsers.add_parser("worker", help="Run the queue worker until SIGINT/SIGTERM.")
    worker.add_argument(
        "--max-run-seconds",
        type=float,
        default=settings.max_run_seconds,
        help="Stop gracefully after this many seconds",
    )

    drain = subparsers.add_parser("drain-content", help="Process one content queue batch and exit.")
    drain.add_argument("--limit", type=int, default=None, help="Items to claim (defaults to the batch size)")

    metrics = subparsers.add_parser("metrics", help="Print job counts per state.")
    metrics.add_argument("--content", action="store_true", help="Include content queue counts")

    dead_letters = subparsers.add_parser("dead-letters", help="List dead-lettered jobs, newest first.")
    dead_letters.add_argument("--limit", type=int, default=20)
    dead_letters.add_argument("--type", dest="job_type", default=None)

    cleanup = subparsers.add_parser("cleanup", help="Delete old completed jobs and dead letters.")
    cleanup.add_argument("--completed-days", type=int, default=settings.completed_retention_days)
    cleanup.add_argument("--dead-letter-days", type=int, default=settings.dead_letter_retention_days)

    subparsers.add_parser("init-schema", help="Create queue tables and indexes if missing.")

    enqueue = subparsers.add_parser("enqueue", help="Enqueue one job.")
    enqueue.add_argument("type", help="Job type, e.g. post_webhook")
    enqueue.add_argument("--payload", type=_parse_payload, default={}, help="JSON object")
    enqueue.add_argument("--priority", type=int, default=None)
    enqueue.add_argument("--max-retries", type=int, default=None)
    enqueue.add_argument("--retry-delay-ms", type=int, default=None)
    enqueue.add_argument("--timeout-ms", type=int, default=None)
    enqueue.add_argument("--delay-ms", type=int, default=None)
    enqueue.add_argument("--id", default=None, help="Explicit job id")

    return parser


def main(argv: list[str] | None = None) -> int:
    settings = get_settings()
    args = build_parser(settings).parse_args(argv)
    configure_logging(settings.log_level)

    try:
        if args.command == "worker":
            asyncio.run(run_worker(settings.model_copy(update={"max_run_seconds": args.max_run_seconds})))
            return 0
        if args.command == "drain-content":
            return asyncio.run(_drain_content(settings, args.limit))
        if args.command == "metrics":
            return asyncio.run(_metrics(args.content))
        if args.command == "dead-letters":
            return asyncio.run(_dead_letters(args.limit, args.job_type))
        if args.command == "cleanup":
            return asyncio.run(_cleanup(args.completed_days, args.dead_letter_days))
        if args.command == "init-schema":
            return asyncio.run(_init_schema())
        if args.command == "enqueue":
            return asyncio.run(_enqueue(args))
    except RepositoryError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    raise AssertionError(f"unhandled command {args.command}")


if __name__ == "__main__":
    raise SystemExit(main())
