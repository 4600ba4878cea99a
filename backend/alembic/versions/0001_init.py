"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

IDEMPOTENT_TYPES_WHERE = "type IN ('spent', 'refund') AND reference_id IS NOT NULL"
PAYMENT_REFERENCES_WHERE = (
    "reference_type IN ('subscription_invoice', 'credit_package', 'upgrade_bonus') "
    "AND reference_id IS NOT NULL"
)


def _inspector():
    from sqlalchemy import inspect as sa_inspect
    return sa_inspect(op.get_bind())


def upgrade() -> None:
    inspector = _inspector()
    existing_tables = set(inspector.get_table_names())

    def existing_indexes(table: str) -> set[str]:
        if table not in existing_tables:
            return set()
        return {idx["name"] for idx in inspector.get_indexes(table)}

    if "credit_accounts" not in existing_tables:
        op.create_table(
            "credit_accounts",
            sa.Column("user_id", sa.String(), primary_key=True),
            sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("lifetime_earned", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("lifetime_spent", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=True),
            sa.CheckConstraint("balance >= 0", name="ck_credit_accounts_balance_non_negative"),
        )
    idxs = existing_indexes("credit_accounts")
    if "ix_credit_accounts_user_id" not in idxs:
        op.create_index("ix_credit_accounts_user_id", "credit_accounts", ["user_id"])

    if "credit_transactions" not in existing_tables:
        op.create_table(
            "credit_transactions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.String(), nullable=False),
            sa.Column("type", sa.String(), nullable=False),
            sa.Column("amount", sa.Integer(), nullable=False),
            sa.Column("balance_after", sa.Integer(), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("reference_id", sa.String(), nullable=True),
            sa.Column("reference_type", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )
    idxs = existing_indexes("credit_transactions")
    for col in ("id", "user_id", "type", "reference_id", "reference_type"):
        name = f"ix_credit_transactions_{col}"
        if name not in idxs:
            op.create_index(name, "credit_transactions", [col])
    if "uq_credit_transactions_user_type_reference" not in idxs:
        op.create_index(
            "uq_credit_transactions_user_type_reference",
            "credit_transactions",
            ["user_id", "type", "reference_id"],
            unique=True,
            sqlite_where=sa.text(IDEMPOTENT_TYPES_WHERE),
            postgresql_where=sa.text(IDEMPOTENT_TYPES_WHERE),
        )
    if "uq_credit_transactions_user_type_payment_reference" not in idxs:
        op.create_index(
            "uq_credit_transactions_user_type_payment_reference",
            "credit_transactions",
            ["user_id", "type", "reference_id"],
            unique=True,
            sqlite_where=sa.text(PAYMENT_REFERENCES_WHERE),
            postgresql_where=sa.text(PAYMENT_REFERENCES_WHERE),
        )

    if "generations" not in existing_tables:
        op.create_table(
            "generations",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("user_id", sa.String(), nullable=False),
            sa.Column("generation_type", sa.String(), nullable=False),
            sa.Column("status", sa.String(), nullable=True),
            sa.Column("credits_used", sa.Integer(), nullable=True),
            sa.Column("storage_key", sa.String(), nullable=True),
            sa.Column("storage_url", sa.Text(), nullable=True),
            sa.Column("file_size", sa.Integer(), nullable=True),
            sa.Column("content_type", sa.String(), nullable=True),
            sa.Column("prompt", sa.Text(), nullable=True),
            sa.Column("settings", sa.JSON(), nullable=True),
            sa.Column("provider_job_id", sa.String(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        )
    idxs = existing_indexes("generations")
    for col in ("id", "user_id", "generation_type", "status", "provider_job_id", "created_at"):
        name = f"ix_generations_{col}"
        if name not in idxs:
            op.create_index(name, "generations", [col])

    if "credit_expirations" not in existing_tables:
        op.create_table(
            "credit_expirations",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("user_id", sa.String(), nullable=False),
            sa.Column("amount", sa.Integer(), nullable=False),
            sa.Column("consumed_amount", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("reason", sa.String(), nullable=True),
            sa.Column("status", sa.String(), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )
    idxs = existing_indexes("credit_expirations")
    for col in ("id", "user_id", "expires_at", "reason", "status"):
        name = f"ix_credit_expirations_{col}"
        if name not in idxs:
            op.create_index(name, "credit_expirations", [col])

    if "usage_events" not in existing_tables:
        op.create_table(
            "usage_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.String(), nullable=True),
            sa.Column("endpoint", sa.String(), nullable=True),
            sa.Column("generation_type", sa.String(), nullable=True),
            sa.Column("generation_id", sa.String(), nullable=True),
            sa.Column("credits_used", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(), nullable=True),
            sa.Column("processing_time_ms", sa.Integer(), nullable=True),
            sa.Column("request_size_bytes", sa.Integer(), nullable=True),
            sa.Column("extra", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )
    idxs = existing_indexes("usage_events")
    for col in ("id", "user_id", "endpoint", "generation_type", "generation_id", "status"):
        name = f"ix_usage_events_{col}"
        if name not in idxs:
            op.create_index(name, "usage_events", [col])


def downgrade() -> None:
    for col in ("status", "generation_id", "generation_type", "endpoint", "user_id", "id"):
        op.drop_index(f"ix_usage_events_{col}", table_name="usage_events")
    op.drop_table("usage_events")

    for col in ("status", "reason", "expires_at", "user_id", "id"):
        op.drop_index(f"ix_credit_expirations_{col}", table_name="credit_expirations")
    op.drop_table("credit_expirations")

    for col in ("created_at", "provider_job_id", "status", "generation_type", "user_id", "id"):
        op.drop_index(f"ix_generations_{col}", table_name="generations")
    op.drop_table("generations")

    op.drop_index("uq_credit_transactions_user_type_payment_reference", table_name="credit_transactions")
    op.drop_index("uq_credit_transactions_user_type_reference", table_name="credit_transactions")
    for col in ("reference_type", "reference_id", "type", "user_id", "id"):
        op.drop_index(f"ix_credit_transactions_{col}", table_name="credit_transactions")
    op.drop_table("credit_transactions")

    op.drop_index("ix_credit_accounts_user_id", table_name="credit_accounts")
    op.drop_table("credit_accounts")
