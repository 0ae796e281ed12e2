"""Multi-store WooCommerce sync engine, webhook intake and sales aggregation."""

from typing import Any

__all__ = [
    "aggregate_sales",
    "get_batch_status",
    "get_task_status",
    "receive_webhook",
    "reclaim_stuck",
    "start_sync",
    "trigger_slot",
]


def __getattr__(name: str) -> Any:
    if name == "aggregate_sales":
        from storesync.reports.aggregation import aggregate_sales as _aggregate_sales

        return _aggregate_sales
    if name == "get_batch_status":
        from storesync.sync.batches import get_batch_status as _get_batch_status

        return _get_batch_status
    if name == "get_task_status":
        from storesync.sync.tasks import get_task_status as _get_task_status

        return _get_task_status
    if name == "receive_webhook":
        from storesync.webhooks.intake import receive_webhook as _receive_webhook

        return _receive_webhook
    if name == "reclaim_stuck":
        from storesync.sync.batches import reclaim_stuck as _reclaim_stuck

        return _reclaim_stuck
    if name == "start_sync":
        from storesync.sync.tasks import start_sync as _start_sync

        return _start_sync
    if name == "trigger_slot":
        from storesync.sync.slots import trigger_slot as _trigger_slot

        return _trigger_slot
    raise AttributeError(name)
