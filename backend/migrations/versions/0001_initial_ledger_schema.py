"""Initial sales ledger schema

Revision ID: 0001_initial_ledger_schema
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_initial_ledger_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
    ]


def upgrade():
    op.create_table(
        "branches",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("code", sa.String(32), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code", name="uq_branches_code"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("branch_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("unit", sa.String(32), nullable=False),
        sa.Column("category", sa.String(64), nullable=True),
        sa.Column("unit_price", sa.Numeric(20, 2), nullable=False),
        sa.Column("stock", sa.Numeric(20, 3), nullable=False, server_default=sa.text("0")),
        sa.Column("min_stock_level", sa.Numeric(20, 3), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("last_reconciled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reconciliation_reason", sa.String(255), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.ForeignKeyConstraint(["branch_id"], ["branches.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("products", schema=None) as batch_op:
        batch_op.create_index("ix_products_branch_id", ["branch_id"], unique=False)
        batch_op.create_index("ix_products_branch_name", ["branch_id", "name"], unique=False)
        batch_op.create_index("ix_products_branch_active", ["branch_id", "is_active"], unique=False)

    op.create_table(
        "clients",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("branch_id", sa.Integer(), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("address", sa.String(255), nullable=True),
        sa.Column("balance", sa.Numeric(20, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("last_transaction_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.ForeignKeyConstraint(["branch_id"], ["branches.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("clients", schema=None) as batch_op:
        batch_op.create_index("ix_clients_branch_id", ["branch_id"], unique=False)
        batch_op.create_index("ix_clients_is_active", ["is_active"], unique=False)
        batch_op.create_index("ix_clients_branch_active", ["branch_id", "is_active"], unique=False)
        batch_op.create_index("ix_clients_balance", ["balance"], unique=False)

    op.create_table(
        "client_ledger_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("client_id", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("amount", sa.Numeric(20, 2), nullable=False),
        sa.Column("balance_before", sa.Numeric(20, 2), nullable=False),
        sa.Column("balance_after", sa.Numeric(20, 2), nullable=False),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("reference", sa.String(64), nullable=True),
        sa.Column("date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["client_id"], ["clients.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("client_ledger_entries", schema=None) as batch_op:
        batch_op.create_index("ix_client_ledger_entries_client_id", ["client_id"], unique=False)
        batch_op.create_index("ix_client_ledger_entries_type", ["type"], unique=False)
        batch_op.create_index("ix_client_ledger_entries_reference", ["reference"], unique=False)
        batch_op.create_index("ix_client_ledger_entries_date", ["date"], unique=False)
        batch_op.create_index("ix_client_ledger_client_date", ["client_id", "date"], unique=False)

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("invoice_number", sa.String(32), nullable=False),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("client_id", sa.Integer(), nullable=True),
        sa.Column("walk_in_name", sa.String(255), nullable=True),
        sa.Column("walk_in_phone", sa.String(32), nullable=True),
        sa.Column("walk_in_address", sa.String(255), nullable=True),
        sa.Column("actor_id", sa.Integer(), nullable=False),
        sa.Column("branch_id", sa.Integer(), nullable=False),
        sa.Column("subtotal", sa.Numeric(20, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("discount", sa.Numeric(20, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("transport_fare", sa.Numeric(20, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("loading", sa.Numeric(20, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("loading_and_offloading", sa.Numeric(20, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("total", sa.Numeric(20, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("amount_paid", sa.Numeric(20, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("credit_applied", sa.Numeric(20, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(16), nullable=False, server_default="COMPLETED"),
        sa.Column("payment_method", sa.String(32), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("waybill_number", sa.String(32), nullable=True),
        sa.Column("is_picked_up", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("pickup_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reference_transaction_id", sa.Integer(), nullable=True),
        sa.Column("reason", sa.String(255), nullable=True),
        sa.Column("total_refunded_amount", sa.Numeric(20, 2), nullable=True),
        sa.Column("actual_amount_returned", sa.Numeric(20, 2), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.ForeignKeyConstraint(["client_id"], ["clients.id"]),
        sa.ForeignKeyConstraint(["branch_id"], ["branches.id"]),
        sa.ForeignKeyConstraint(["reference_transaction_id"], ["transactions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("invoice_number", name="uq_transactions_invoice_number"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("transactions", schema=None) as batch_op:
        batch_op.create_index("ix_transactions_client_id", ["client_id"], unique=False)
        batch_op.create_index("ix_transactions_branch_id", ["branch_id"], unique=False)
        batch_op.create_index("ix_transactions_status", ["status"], unique=False)
        batch_op.create_index("ix_transactions_waybill_number", ["waybill_number"], unique=False)
        batch_op.create_index("ix_transactions_date", ["date"], unique=False)
        batch_op.create_index("ix_transactions_reference_transaction_id", ["reference_transaction_id"], unique=False)
        batch_op.create_index("ix_transactions_branch_date", ["branch_id", "date"], unique=False)
        batch_op.create_index("ix_transactions_client_date", ["client_id", "date"], unique=False)
        batch_op.create_index("ix_transactions_type_status", ["type", "status"], unique=False)

    op.create_table(
        "transaction_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("transaction_id", sa.Integer(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("product_name", sa.String(255), nullable=False),
        sa.Column("quantity", sa.Numeric(20, 3), nullable=False),
        sa.Column("unit", sa.String(32), nullable=False),
        sa.Column("unit_price", sa.Numeric(20, 2), nullable=False),
        sa.Column("discount", sa.Numeric(20, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("subtotal", sa.Numeric(20, 2), nullable=False),
        sa.Column("original_unit_price", sa.Numeric(20, 2), nullable=True),
        sa.Column("current_unit_price", sa.Numeric(20, 2), nullable=True),
        sa.Column("wholesale_price", sa.Numeric(20, 2), nullable=True),
        sa.ForeignKeyConstraint(["transaction_id"], ["transactions.id"]),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("transaction_id", "position", name="uq_transaction_items_position"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("transaction_items", schema=None) as batch_op:
        batch_op.create_index("ix_transaction_items_transaction_id", ["transaction_id"], unique=False)
        batch_op.create_index("ix_transaction_items_product", ["product_id"], unique=False)

    op.create_table(
        "invoice_counters",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("prefix", sa.String(16), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("prefix", name="uq_invoice_counters_prefix"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "audit_log_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("details", sa.String(500), nullable=True),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("actor_role", sa.String(32), nullable=True),
        sa.Column("branch_id", sa.Integer(), nullable=True),
        sa.Column("entity_type", sa.String(64), nullable=True),
        sa.Column("entity_id", sa.Integer(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("audit_log_entries", schema=None) as batch_op:
        batch_op.create_index("ix_audit_log_entries_action", ["action"], unique=False)
        batch_op.create_index("ix_audit_log_entries_actor_id", ["actor_id"], unique=False)
        batch_op.create_index("ix_audit_log_entries_branch_id", ["branch_id"], unique=False)
        batch_op.create_index("ix_audit_log_entries_occurred_at", ["occurred_at"], unique=False)
        batch_op.create_index("ix_audit_entity", ["entity_type", "entity_id"], unique=False)


def downgrade():
    op.drop_table("audit_log_entries")
    op.drop_table("invoice_counters")
    op.drop_table("transaction_items")
    op.drop_table("transactions")
    op.drop_table("client_ledger_entries")
    op.drop_table("clients")
    op.drop_table("products")
    op.drop_table("branches")
