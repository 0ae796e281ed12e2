"""Create store registry, sync bookkeeping, webhook and sales tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "0001_create_sync_tables"
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")
ID_TYPE = sa.BigInteger().with_variant(sa.Integer(), "sqlite")
LIVE_TASK_FILTER = "status IN ('pending', 'running')"


def upgrade() -> None:
    op.create_table(
        "stores",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("url", sa.String(length=512), nullable=False),
        sa.Column("api_key", sa.String(length=255), nullable=False),
        sa.Column("api_secret", sa.String(length=255), nullable=False),
        sa.Column("webhook_secret", sa.String(length=255), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("site_type", sa.String(length=16), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_table(
        "slot_allowlist",
        sa.Column(
            "site_id",
            sa.String(length=64),
            sa.ForeignKey("stores.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("added_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "sync_checkpoints",
        sa.Column("site_id", sa.String(length=64), nullable=False),
        sa.Column("entity", sa.String(length=16), nullable=False),
        sa.Column("last_remote_id", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_modified", sa.DateTime(timezone=True), nullable=True),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("window_offset", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("synced_count", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_status", sa.String(length=16), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_duration_ms", sa.Integer(), nullable=True),
        sa.Column("last_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("site_id", "entity"),
    )

    op.create_table(
        "sync_tasks",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("site_id", sa.String(length=64), nullable=False),
        sa.Column("task_type", sa.String(length=16), nullable=False),
        sa.Column("entities", JSON_TYPE, nullable=False),
        sa.Column("status", sa.String(length=24), nullable=False),
        sa.Column("force", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("progress", JSON_TYPE, nullable=True),
        sa.Column("results", JSON_TYPE, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sync_tasks_site_created", "sync_tasks", ["site_id", "created_at"])
    op.create_index(
        "uq_sync_tasks_live_site",
        "sync_tasks",
        ["site_id"],
        unique=True,
        postgresql_where=sa.text(LIVE_TASK_FILTER),
        sqlite_where=sa.text(LIVE_TASK_FILTER),
    )

    op.create_table(
        "sync_batches",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("current_step", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_sites", sa.Integer(), nullable=False),
        sa.Column("site_ids", JSON_TYPE, nullable=False),
        sa.Column("stats", JSON_TYPE, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_sync_batches_status", "sync_batches", ["status", "created_at"])

    op.create_table(
        "sync_site_results",
        sa.Column("id", ID_TYPE, primary_key=True, autoincrement=True),
        sa.Column(
            "batch_id",
            sa.String(length=36),
            sa.ForeignKey("sync_batches.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("step_index", sa.Integer(), nullable=False),
        sa.Column("site_id", sa.String(length=64), nullable=False),
        sa.Column("site_name", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("stats", JSON_TYPE, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("batch_id", "step_index", name="uq_sync_site_results_step"),
    )

    op.create_table(
        "webhook_events",
        sa.Column("id", ID_TYPE, primary_key=True, autoincrement=True),
        sa.Column("site_id", sa.String(length=64), nullable=True),
        sa.Column("source", sa.String(length=512), nullable=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("object_id", sa.String(length=64), nullable=True),
        sa.Column("object_type", sa.String(length=32), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", JSON_TYPE, nullable=True),
    )
    op.create_index("ix_webhook_events_received", "webhook_events", ["received_at"])

    op.create_table(
        "webhook_queue",
        sa.Column("id", ID_TYPE, primary_key=True, autoincrement=True),
        sa.Column("site_id", sa.String(length=64), nullable=True),
        sa.Column("target_url", sa.String(length=1024), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("object_id", sa.String(length=64), nullable=True),
        sa.Column("payload", JSON_TYPE, nullable=False),
        sa.Column("signature", sa.String(length=128), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_webhook_queue_due", "webhook_queue", ["status", "scheduled_at"])

    op.create_table(
        "orders",
        sa.Column("id", ID_TYPE, primary_key=True, autoincrement=True),
        sa.Column("site_id", sa.String(length=64), nullable=False),
        sa.Column("order_id", sa.BigInteger(), nullable=False),
        sa.Column("order_number", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=True),
        sa.Column("currency", sa.String(length=8), nullable=True),
        sa.Column("total", sa.Numeric(14, 2), nullable=True),
        sa.Column("customer_email", sa.String(length=255), nullable=True),
        sa.Column("customer_name", sa.String(length=255), nullable=True),
        sa.Column("date_created", sa.DateTime(timezone=True), nullable=True),
        sa.Column("date_modified", sa.DateTime(timezone=True), nullable=True),
        sa.Column("raw", JSON_TYPE, nullable=True),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("site_id", "order_id", name="uq_orders_site_order"),
    )
    op.create_table(
        "order_items",
        sa.Column("id", ID_TYPE, primary_key=True, autoincrement=True),
        sa.Column("site_id", sa.String(length=64), nullable=False),
        sa.Column("order_id", sa.BigInteger(), nullable=False),
        sa.Column("item_id", sa.BigInteger(), nullable=False),
        sa.Column("product_id", sa.BigInteger(), nullable=True),
        sa.Column("variation_id", sa.BigInteger(), nullable=True),
        sa.Column("sku", sa.String(length=128), nullable=True),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("price", sa.Numeric(14, 2), nullable=True),
        sa.Column("total", sa.Numeric(14, 2), nullable=True),
        sa.UniqueConstraint("site_id", "order_id", "item_id", name="uq_order_items_site_order_item"),
    )
    op.create_table(
        "products",
        sa.Column("id", ID_TYPE, primary_key=True, autoincrement=True),
        sa.Column("site_id", sa.String(length=64), nullable=False),
        sa.Column("product_id", sa.BigInteger(), nullable=False),
        sa.Column("parent_id", sa.BigInteger(), nullable=True),
        sa.Column("sku", sa.String(length=128), nullable=True),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("product_type", sa.String(length=32), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=True),
        sa.Column("stock_status", sa.String(length=32), nullable=True),
        sa.Column("stock_quantity", sa.Integer(), nullable=True),
        sa.Column("price", sa.Numeric(14, 2), nullable=True),
        sa.Column("date_modified", sa.DateTime(timezone=True), nullable=True),
        sa.Column("raw", JSON_TYPE, nullable=True),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("site_id", "product_id", name="uq_products_site_product"),
    )
    op.create_table(
        "customer_history",
        sa.Column("id", ID_TYPE, primary_key=True, autoincrement=True),
        sa.Column("site_id", sa.String(length=64), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("first_order_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_order_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("order_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_spent", sa.Numeric(14, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("site_id", "email", name="uq_customer_history_site_email"),
    )
    op.create_table(
        "sku_mappings",
        sa.Column("id", ID_TYPE, primary_key=True, autoincrement=True),
        sa.Column("canonical_id", sa.String(length=128), nullable=False),
        sa.Column("local_sku", sa.String(length=128), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("canonical_id", "local_sku", name="uq_sku_mappings_pair"),
    )


def downgrade() -> None:
    op.drop_table("sku_mappings")
    op.drop_table("customer_history")
    op.drop_table("products")
    op.drop_table("order_items")
    op.drop_table("orders")
    op.drop_index("ix_webhook_queue_due", table_name="webhook_queue")
    op.drop_table("webhook_queue")
    op.drop_index("ix_webhook_events_received", table_name="webhook_events")
    op.drop_table("webhook_events")
    op.drop_table("sync_site_results")
    op.drop_index("ix_sync_batches_status", table_name="sync_batches")
    op.drop_table("sync_batches")
    op.drop_index("uq_sync_tasks_live_site", table_name="sync_tasks")
    op.drop_index("ix_sync_tasks_site_created", table_name="sync_tasks")
    op.drop_table("sync_tasks")
    op.drop_table("sync_checkpoints")
    op.drop_table("slot_allowlist")
    op.drop_table("stores")
