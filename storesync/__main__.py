from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

from dateutil import parser as date_parser

from storesync.common.db import dispose_engines, run_alembic_upgrade
from storesync.common.json_logger import JsonLogger, get_logger, log_event, new_run_id
from storesync.config import ConfigError, get_config
from storesync.errors import InvalidSlotError, NotFoundError, SyncConflictError, SyncError

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFLICT = 2


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str, ensure_ascii=False), flush=True)


def _parse_when(raw: str) -> datetime:
    parsed = date_parser.parse(raw)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _task_exit(status: str) -> int:
    return EXIT_FAILED if status == "failed" else EXIT_OK


async def _trigger_slot(args: argparse.Namespace, database_url: str, logger: JsonLogger) -> int:
    from storesync.sync.slots import trigger_slot

    result = await trigger_slot(database_url, args.slot, logger=logger)
    _emit(result.to_dict())
    return _task_exit(result.task_status or "")


async def _start_sync(args: argparse.Namespace, database_url: str, logger: JsonLogger) -> int:
    from storesync.sync.tasks import start_sync, sync_store

    entities = args.entities or ["products", "orders"]
    if args.detach:
        started = await start_sync(
            database_url, args.site_id, entities=entities, mode=args.mode, force=args.force, logger=logger
        )
        _emit(started.to_dict())
        return EXIT_CONFLICT if started.requires_confirmation else EXIT_OK

    outcome = await sync_store(
        database_url, args.site_id, entities=entities, mode=args.mode, force=args.force, logger=logger
    )
    _emit(outcome.to_dict())
    if getattr(outcome, "requires_confirmation", False):
        return EXIT_CONFLICT
    return _task_exit(outcome.status)


async def _run_task(args: argparse.Namespace, database_url: str, logger: JsonLogger) -> int:
    from storesync.sync.tasks import run_task

    status = await run_task(database_url, args.task_id, logger=logger, follow_up=not args.no_follow_up)
    _emit(status.to_dict())
    return _task_exit(status.status)


async def _task_status(args: argparse.Namespace, database_url: str, logger: JsonLogger) -> int:
    from storesync.sync.tasks import get_task_status, list_tasks

    if args.task_id:
        _emit((await get_task_status(database_url, args.task_id)).to_dict())
    else:
        tasks = await list_tasks(database_url, site_id=args.site_id, limit=args.limit)
        _emit([task.to_dict() for task in tasks])
    return EXIT_OK


async def _create_batch(args: argparse.Namespace, database_url: str, logger: JsonLogger) -> int:
    from storesync.sync.batches import create_batch

    batch = await create_batch(database_url, args.site_ids or None, logger=logger)
    _emit(batch.to_dict())
    return EXIT_OK


async def _run_batch(args: argparse.Namespace, database_url: str, logger: JsonLogger) -> int:
    from storesync.sync.batches import get_batch_status, run_batch, run_next_step

    if args.step:
        step = await run_next_step(database_url, args.batch_id, logger=logger)
        _emit(step.__dict__ if step else (await get_batch_status(database_url, args.batch_id)).to_dict())
        return EXIT_FAILED if step is not None and step.status == "failed" else EXIT_OK
    batch = await run_batch(database_url, args.batch_id, logger=logger)
    _emit(batch.to_dict())
    return EXIT_FAILED if batch.status == "failed" else EXIT_OK


async def _batch_status(args: argparse.Namespace, database_url: str, logger: JsonLogger) -> int:
    from storesync.sync.batches import get_batch_status

    _emit((await get_batch_status(database_url, args.batch_id)).to_dict())
    return EXIT_OK


async def _cancel_batch(args: argparse.Namespace, database_url: str, logger: JsonLogger) -> int:
    from storesync.sync.batches import cancel_batch

    _emit((await cancel_batch(database_url, args.batch_id, reason=args.reason)).to_dict())
    return EXIT_OK


async def _reclaim(args: argparse.Namespace, database_url: str, logger: JsonLogger) -> int:
    from storesync.sync.batches import reclaim_stuck

    result = await reclaim_stuck(database_url, logger=logger)
    _emit(result.to_dict())
    return EXIT_FAILED if result.timed_out else EXIT_OK


async def _receive_webhook(args: argparse.Namespace, database_url: str, logger: JsonLogger) -> int:
    from storesync.webhooks.intake import receive_webhook

    body = sys.stdin.buffer.read() if args.body_file == "-" else Path(args.body_file).read_bytes()
    outcome = await receive_webhook(
        database_url,
        event_type=args.event,
        source=args.source,
        signature=args.signature,
        body=body,
        logger=logger,
    )
    _emit(outcome.to_dict())
    return EXIT_OK if outcome.accepted else EXIT_FAILED


async def _deliver(args: argparse.Namespace, database_url: str, logger: JsonLogger) -> int:
    from storesync.webhooks.delivery import deliver_due, queue_stats

    report = await deliver_due(database_url, limit=args.limit, logger=logger)
    _emit({"report": report.to_dict(), "queue": await queue_stats(database_url)})
    return EXIT_OK


async def _dead_letters(args: argparse.Namespace, database_url: str, logger: JsonLogger) -> int:
    from storesync.webhooks.delivery import list_dead, requeue_dead

    if args.requeue is not None:
        item = await requeue_dead(database_url, args.requeue)
        log_event(logger=logger, phase="delivery", message="dead item requeued", item_id=item.id)
        _emit(item.__dict__)
        return EXIT_OK
    _emit([item.__dict__ for item in await list_dead(database_url, limit=args.limit)])
    return EXIT_OK


async def _cleanup(args: argparse.Namespace, database_url: str, logger: JsonLogger) -> int:
    from storesync.webhooks.delivery import cleanup_queue
    from storesync.webhooks.intake import prune_webhook_events

    config = get_config()
    queue_removed = await cleanup_queue(database_url, retention_days=config.queue_retention_days)
    events_removed = await prune_webhook_events(
        database_url, retention_days=config.webhook_event_retention_days
    )
    log_event(
        logger=logger,
        phase="cleanup",
        message="retention cleanup finished",
        queue_removed=queue_removed,
        events_removed=events_removed,
    )
    _emit({"queue_removed": queue_removed, "events_removed": events_removed})
    return EXIT_OK


async def _aggregate(args: argparse.Namespace, database_url: str, logger: JsonLogger) -> int:
    from storesync.reports.aggregation import aggregate_sales

    report = await aggregate_sales(
        database_url,
        start=_parse_when(args.start),
        end=_parse_when(args.end),
        bucket=args.bucket,
        site_ids=args.site_ids or None,
        logger=logger,
    )
    _emit(report.to_dict())
    return EXIT_OK


async def _trend(args: argparse.Namespace, database_url: str, logger: JsonLogger) -> int:
    from storesync.reports.trends import TrendCache

    trends = TrendCache(database_url, days=args.days, logger=logger)
    series = await trends.preload(args.spus)
    _emit(
        {
            spu: [{"day": point.day.isoformat(), "units": point.units} for point in points]
            for spu, points in series.items()
        }
    )
    return EXIT_OK


COMMANDS = {
    "trigger-slot": _trigger_slot,
    "start-sync": _start_sync,
    "run-task": _run_task,
    "task-status": _task_status,
    "create-batch": _create_batch,
    "run-batch": _run_batch,
    "batch-status": _batch_status,
    "cancel-batch": _cancel_batch,
    "reclaim": _reclaim,
    "receive-webhook": _receive_webhook,
    "deliver": _deliver,
    "dead-letters": _dead_letters,
    "cleanup": _cleanup,
    "aggregate": _aggregate,
    "trend": _trend,
}


async def _run_async(args: argparse.Namespace) -> int:
    logger = get_logger(run_id=args.run_id or new_run_id())
    try:
        config = get_config()
        handler = COMMANDS[args.command]
        return await handler(args, config.database_url, logger)
    except SyncConflictError as exc:
        log_event(logger=logger, phase=args.command, status="error", message=str(exc))
        _emit({"error": str(exc), "conflict": True, "existing_id": exc.existing_id})
        return EXIT_CONFLICT
    except (NotFoundError, InvalidSlotError, ValueError) as exc:
        log_event(logger=logger, phase=args.command, status="error", message=str(exc))
        _emit({"error": str(exc)})
        return EXIT_FAILED
    except SyncError as exc:
        log_event(
            logger=logger,
            phase=args.command,
            status="error",
            message="command failed",
            error=str(exc),
            exc_type=type(exc).__name__,
        )
        _emit({"error": str(exc)})
        return EXIT_FAILED
    finally:
        await dispose_engines()
        logger.close()


def _db_upgrade(args: argparse.Namespace) -> int:
    config = get_config()
    run_alembic_upgrade(
        revision=args.revision,
        database_url=config.database_url,
        alembic_config=config.alembic_config,
    )
    return EXIT_OK


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="storesync", description="Multi-store WooCommerce sync engine")
    parser.add_argument("--run-id", dest="run_id", type=str, default=None, help="Override generated run id")
    subparsers = parser.add_subparsers(dest="command", required=True)

    slot_parser = subparsers.add_parser("trigger-slot", help="Sync the store assigned to a schedule slot")
    slot_parser.add_argument("slot", help="Zero-based slot index")

    start_parser = subparsers.add_parser("start-sync", help="Start a sync task for one store")
    start_parser.add_argument("site_id")
    start_parser.add_argument(
        "--entities", nargs="+", choices=["orders", "products"], default=None, help="Entity kinds to pull"
    )
    start_parser.add_argument("--mode", choices=["full", "incremental"], default="full")
    start_parser.add_argument("--force", action="store_true", help="Skip the full-sync cool-down")
    start_parser.add_argument(
        "--detach", action="store_true", help="Only create the task; run it later with run-task"
    )

    run_task_parser = subparsers.add_parser("run-task", help="Run a pending sync task")
    run_task_parser.add_argument("task_id")
    run_task_parser.add_argument(
        "--no-follow-up", dest="no_follow_up", action="store_true", help="Skip the incremental pass after a full sync"
    )

    status_parser = subparsers.add_parser("task-status", help="Show a task, or recent tasks")
    status_parser.add_argument("task_id", nargs="?", default=None)
    status_parser.add_argument("--site-id", dest="site_id", default=None)
    status_parser.add_argument("--limit", type=int, default=20)

    create_parser = subparsers.add_parser("create-batch", help="Create a batch over scheduled or given stores")
    create_parser.add_argument("site_ids", nargs="*")

    run_batch_parser = subparsers.add_parser("run-batch", help="Run the remaining steps of a batch")
    run_batch_parser.add_argument("batch_id")
    run_batch_parser.add_argument("--step", action="store_true", help="Run only the next pending step")

    batch_status_parser = subparsers.add_parser("batch-status", help="Show a batch (latest when omitted)")
    batch_status_parser.add_argument("batch_id", nargs="?", default=None)

    cancel_parser = subparsers.add_parser("cancel-batch", help="Fail a live batch and its pending steps")
    cancel_parser.add_argument("batch_id")
    cancel_parser.add_argument("--reason", default="cancelled by operator")

    subparsers.add_parser("reclaim", help="Reclaim expired, idle and stuck work")

    webhook_parser = subparsers.add_parser("receive-webhook", help="Process one webhook body")
    webhook_parser.add_argument("--event", required=True, help="Event type, e.g. order.updated")
    webhook_parser.add_argument("--source", required=True, help="Store URL the event came from")
    webhook_parser.add_argument("--signature", default=None)
    webhook_parser.add_argument("--body-file", dest="body_file", default="-", help="Path to the body, '-' for stdin")

    deliver_parser = subparsers.add_parser("deliver", help="Send due items from the delivery queue")
    deliver_parser.add_argument("--limit", type=int, default=50)

    dead_parser = subparsers.add_parser("dead-letters", help="List dead queue items or requeue one")
    dead_parser.add_argument("--limit", type=int, default=100)
    dead_parser.add_argument("--requeue", type=int, default=None, metavar="ITEM_ID")

    subparsers.add_parser("cleanup", help="Apply queue and webhook event retention")

    aggregate_parser = subparsers.add_parser("aggregate", help="Sales totals in normalized units")
    aggregate_parser.add_argument("--start", required=True)
    aggregate_parser.add_argument("--end", required=True)
    aggregate_parser.add_argument("--bucket", choices=["day", "week", "month"], default="day")
    aggregate_parser.add_argument("site_ids", nargs="*")

    trend_parser = subparsers.add_parser("trend", help="Daily normalized units per SPU")
    trend_parser.add_argument("spus", nargs="+", metavar="SPU")
    trend_parser.add_argument("--days", type=int, default=30)

    db_parser = subparsers.add_parser("db", help="Database utilities")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    upgrade_parser = db_subparsers.add_parser("upgrade", help="Run Alembic migrations")
    upgrade_parser.add_argument("--revision", default="head")

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        if args.command == "db":
            return _db_upgrade(args)
        return asyncio.run(_run_async(args))
    except ConfigError as exc:
        print(f"[storesync] configuration error: {exc}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
