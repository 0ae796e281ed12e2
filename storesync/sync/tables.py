from __future__ import annotations

from typing import Any, Iterable, Mapping, Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

metadata = sa.MetaData()

JSONType = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")
IdType = sa.BigInteger().with_variant(sa.Integer(), "sqlite")

TASK_LIVE_STATUSES = ("pending", "running")
TASK_TERMINAL_STATUSES = ("completed", "completed_with_errors", "failed")
BATCH_LIVE_STATUSES = ("pending", "syncing")
STEP_LIVE_STATUSES = ("pending", "running")


stores = sa.Table(
    "stores",
    metadata,
    sa.Column("id", sa.String(length=64), primary_key=True),
    sa.Column("name", sa.String(length=255), nullable=False),
    sa.Column("url", sa.String(length=512), nullable=False),
    sa.Column("api_key", sa.String(length=255), nullable=False),
    sa.Column("api_secret", sa.String(length=255), nullable=False),
    sa.Column("webhook_secret", sa.String(length=255)),
    sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
    sa.Column("site_type", sa.String(length=16)),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    sa.Column("last_sync_at", sa.DateTime(timezone=True)),
)


slot_allowlist = sa.Table(
    "slot_allowlist",
    metadata,
    sa.Column("site_id", sa.String(length=64), sa.ForeignKey("stores.id", ondelete="CASCADE"), primary_key=True),
    sa.Column("added_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
)


sync_checkpoints = sa.Table(
    "sync_checkpoints",
    metadata,
    sa.Column("site_id", sa.String(length=64), primary_key=True),
    sa.Column("entity", sa.String(length=16), primary_key=True),
    sa.Column("last_remote_id", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
    sa.Column("last_modified", sa.DateTime(timezone=True)),
    sa.Column("window_start", sa.DateTime(timezone=True)),
    sa.Column("window_offset", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.Column("synced_count", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
    sa.Column("last_status", sa.String(length=16)),
    sa.Column("last_error", sa.Text()),
    sa.Column("last_duration_ms", sa.Integer()),
    sa.Column("last_started_at", sa.DateTime(timezone=True)),
    sa.Column("last_completed_at", sa.DateTime(timezone=True)),
)


sync_tasks = sa.Table(
    "sync_tasks",
    metadata,
    sa.Column("id", sa.String(length=36), primary_key=True),
    sa.Column("site_id", sa.String(length=64), nullable=False),
    sa.Column("task_type", sa.String(length=16), nullable=False),
    sa.Column("entities", JSONType, nullable=False),
    sa.Column("status", sa.String(length=24), nullable=False),
    sa.Column("force", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("progress", JSONType),
    sa.Column("results", JSONType),
    sa.Column("error_message", sa.Text()),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("started_at", sa.DateTime(timezone=True)),
    sa.Column("completed_at", sa.DateTime(timezone=True)),
    sa.Index("ix_sync_tasks_site_created", "site_id", "created_at"),
    sa.Index(
        "uq_sync_tasks_live_site",
        "site_id",
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'running')"),
        sqlite_where=sa.text("status IN ('pending', 'running')"),
    ),
)


sync_batches = sa.Table(
    "sync_batches",
    metadata,
    sa.Column("id", sa.String(length=36), primary_key=True),
    sa.Column("status", sa.String(length=16), nullable=False),
    sa.Column("current_step", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.Column("total_sites", sa.Integer(), nullable=False),
    sa.Column("site_ids", JSONType, nullable=False),
    sa.Column("stats", JSONType),
    sa.Column("error_message", sa.Text()),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("started_at", sa.DateTime(timezone=True)),
    sa.Column("completed_at", sa.DateTime(timezone=True)),
    sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    sa.Index("ix_sync_batches_status", "status", "created_at"),
)


sync_site_results = sa.Table(
    "sync_site_results",
    metadata,
    sa.Column("id", IdType, primary_key=True, autoincrement=True),
    sa.Column("batch_id", sa.String(length=36), sa.ForeignKey("sync_batches.id", ondelete="CASCADE"), nullable=False),
    sa.Column("step_index", sa.Integer(), nullable=False),
    sa.Column("site_id", sa.String(length=64), nullable=False),
    sa.Column("site_name", sa.String(length=255)),
    sa.Column("status", sa.String(length=16), nullable=False),
    sa.Column("stats", JSONType),
    sa.Column("error_message", sa.Text()),
    sa.Column("started_at", sa.DateTime(timezone=True)),
    sa.Column("completed_at", sa.DateTime(timezone=True)),
    sa.UniqueConstraint("batch_id", "step_index", name="uq_sync_site_results_step"),
)


webhook_events = sa.Table(
    "webhook_events",
    metadata,
    sa.Column("id", IdType, primary_key=True, autoincrement=True),
    sa.Column("site_id", sa.String(length=64)),
    sa.Column("source", sa.String(length=512)),
    sa.Column("event_type", sa.String(length=64), nullable=False),
    sa.Column("object_id", sa.String(length=64)),
    sa.Column("object_type", sa.String(length=32)),
    sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("processing_time_ms", sa.Integer()),
    sa.Column("status", sa.String(length=16), nullable=False),
    sa.Column("error_message", sa.Text()),
    sa.Column("metadata", JSONType),
    sa.Index("ix_webhook_events_received", "received_at"),
)


webhook_queue = sa.Table(
    "webhook_queue",
    metadata,
    sa.Column("id", IdType, primary_key=True, autoincrement=True),
    sa.Column("site_id", sa.String(length=64)),
    sa.Column("target_url", sa.String(length=1024), nullable=False),
    sa.Column("event_type", sa.String(length=64), nullable=False),
    sa.Column("object_id", sa.String(length=64)),
    sa.Column("payload", JSONType, nullable=False),
    sa.Column("signature", sa.String(length=128), nullable=False),
    sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
    sa.Column("status", sa.String(length=16), nullable=False),
    sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("last_attempt_at", sa.DateTime(timezone=True)),
    sa.Column("sent_at", sa.DateTime(timezone=True)),
    sa.Column("error_message", sa.Text()),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Index("ix_webhook_queue_due", "status", "scheduled_at"),
)


orders = sa.Table(
    "orders",
    metadata,
    sa.Column("id", IdType, primary_key=True, autoincrement=True),
    sa.Column("site_id", sa.String(length=64), nullable=False),
    sa.Column("order_id", sa.BigInteger(), nullable=False),
    sa.Column("order_number", sa.String(length=64)),
    sa.Column("status", sa.String(length=32)),
    sa.Column("currency", sa.String(length=8)),
    sa.Column("total", sa.Numeric(14, 2)),
    sa.Column("customer_email", sa.String(length=255)),
    sa.Column("customer_name", sa.String(length=255)),
    sa.Column("date_created", sa.DateTime(timezone=True)),
    sa.Column("date_modified", sa.DateTime(timezone=True)),
    sa.Column("raw", JSONType),
    sa.Column("synced_at", sa.DateTime(timezone=True)),
    sa.UniqueConstraint("site_id", "order_id", name="uq_orders_site_order"),
)


order_items = sa.Table(
    "order_items",
    metadata,
    sa.Column("id", IdType, primary_key=True, autoincrement=True),
    sa.Column("site_id", sa.String(length=64), nullable=False),
    sa.Column("order_id", sa.BigInteger(), nullable=False),
    sa.Column("item_id", sa.BigInteger(), nullable=False),
    sa.Column("product_id", sa.BigInteger()),
    sa.Column("variation_id", sa.BigInteger()),
    sa.Column("sku", sa.String(length=128)),
    sa.Column("name", sa.Text()),
    sa.Column("quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.Column("price", sa.Numeric(14, 2)),
    sa.Column("total", sa.Numeric(14, 2)),
    sa.UniqueConstraint("site_id", "order_id", "item_id", name="uq_order_items_site_order_item"),
)


products = sa.Table(
    "products",
    metadata,
    sa.Column("id", IdType, primary_key=True, autoincrement=True),
    sa.Column("site_id", sa.String(length=64), nullable=False),
    sa.Column("product_id", sa.BigInteger(), nullable=False),
    sa.Column("parent_id", sa.BigInteger()),
    sa.Column("sku", sa.String(length=128)),
    sa.Column("name", sa.Text()),
    sa.Column("product_type", sa.String(length=32)),
    sa.Column("status", sa.String(length=32)),
    sa.Column("stock_status", sa.String(length=32)),
    sa.Column("stock_quantity", sa.Integer()),
    sa.Column("price", sa.Numeric(14, 2)),
    sa.Column("date_modified", sa.DateTime(timezone=True)),
    sa.Column("raw", JSONType),
    sa.Column("synced_at", sa.DateTime(timezone=True)),
    sa.UniqueConstraint("site_id", "product_id", name="uq_products_site_product"),
)


customer_history = sa.Table(
    "customer_history",
    metadata,
    sa.Column("id", IdType, primary_key=True, autoincrement=True),
    sa.Column("site_id", sa.String(length=64), nullable=False),
    sa.Column("email", sa.String(length=255), nullable=False),
    sa.Column("first_order_at", sa.DateTime(timezone=True)),
    sa.Column("last_order_at", sa.DateTime(timezone=True)),
    sa.Column("order_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.Column("total_spent", sa.Numeric(14, 2), nullable=False, server_default=sa.text("0")),
    sa.Column("updated_at", sa.DateTime(timezone=True)),
    sa.UniqueConstraint("site_id", "email", name="uq_customer_history_site_email"),
)


sku_mappings = sa.Table(
    "sku_mappings",
    metadata,
    sa.Column("id", IdType, primary_key=True, autoincrement=True),
    sa.Column("canonical_id", sa.String(length=128), nullable=False),
    sa.Column("local_sku", sa.String(length=128), nullable=False),
    sa.Column("quantity", sa.Integer(), nullable=False, server_default=sa.text("1")),
    sa.Column("updated_at", sa.DateTime(timezone=True)),
    sa.UniqueConstraint("canonical_id", "local_sku", name="uq_sku_mappings_pair"),
)


def _conflict_columns(table: sa.Table) -> list[str]:
    for constraint in table.constraints:
        if isinstance(constraint, sa.UniqueConstraint):
            return [col.name for col in constraint.columns]
    return [col.name for col in table.primary_key.columns]


def make_upsert(
    table: sa.Table,
    rows: Mapping[str, Any] | Sequence[Mapping[str, Any]],
    *,
    use_sqlite: bool,
    update_columns: Iterable[str] | None = None,
) -> sa.sql.dml.Insert:
    """Insert rows, updating every supplied column when the natural key already exists."""

    insert_fn = sqlite_insert if use_sqlite else pg_insert
    if isinstance(rows, Mapping):
        insert = insert_fn(table).values(**rows)
        keys = list(rows.keys())
    else:
        insert = insert_fn(table).values(list(rows))
        keys = list(rows[0].keys()) if rows else []
    conflict_cols = _conflict_columns(table)
    if update_columns is None:
        update_columns = [key for key in keys if key not in conflict_cols and key != "id"]
    set_ = {key: insert.excluded[key] for key in update_columns}
    if not set_:
        return insert.on_conflict_do_nothing(index_elements=conflict_cols)
    return insert.on_conflict_do_update(index_elements=conflict_cols, set_=set_)
