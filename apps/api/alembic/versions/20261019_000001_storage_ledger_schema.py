"""storage ledger schema: accounts, uploads, ledger, purchases, admission control

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "storage_accounts",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("spent", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("reserved", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("balance >= 0", name="ck_storage_accounts_balance_nonnegative"),
        sa.CheckConstraint("spent >= 0", name="ck_storage_accounts_spent_nonnegative"),
        sa.CheckConstraint("reserved >= 0", name="ck_storage_accounts_reserved_nonnegative"),
        sa.CheckConstraint("balance >= reserved", name="ck_storage_accounts_reserved_covered"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "storage_uploads",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("file_size_bytes", sa.BigInteger(), nullable=False),
        sa.Column("credits_required", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.Column("media_type", sa.String(), nullable=False),
        sa.Column("content_id", sa.String(), nullable=True),
        sa.Column("balance_after", sa.BigInteger(), nullable=True),
        sa.Column("failure_reason", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("status IN ('pending', 'complete', 'failed')", name="ck_storage_uploads_status"),
        sa.CheckConstraint("media_type IN ('image', 'video')", name="ck_storage_uploads_media_type"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_storage_uploads_user_id", "storage_uploads", ["user_id"], unique=False)
    op.create_index("ix_storage_uploads_status_created", "storage_uploads", ["status", "created_at"], unique=False)
    op.create_index(
        "uq_storage_uploads_user_idempotency_key",
        "storage_uploads",
        ["user_id", "idempotency_key"],
        unique=True,
    )

    op.create_table(
        "storage_ledger",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("entry_type", sa.String(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("balance_after", sa.BigInteger(), nullable=True),
        sa.Column("reference_type", sa.String(), nullable=True),
        sa.Column("reference", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.CheckConstraint(
            "entry_type IN ('grant_free', 'charge_upload', 'purchase', 'admin_adjust', 'refund')",
            name="ck_storage_ledger_entry_type",
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_storage_ledger_user_id", "storage_ledger", ["user_id"], unique=False)
    op.create_index("ix_storage_ledger_created_at", "storage_ledger", ["created_at"], unique=False)
    op.create_index("ix_storage_ledger_user_created", "storage_ledger", ["user_id", "created_at"], unique=False)
    op.create_index("ix_storage_ledger_reference", "storage_ledger", ["reference_type", "reference"], unique=False)

    op.create_table(
        "storage_purchases",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("payment_reference", sa.String(), nullable=False),
        sa.Column("credits_added", sa.BigInteger(), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("balance_after", sa.BigInteger(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider", "payment_reference", name="uq_storage_purchases_provider_reference"),
    )
    op.create_index("ix_storage_purchases_user_id", "storage_purchases", ["user_id"], unique=False)
    op.create_index("ix_storage_purchases_created_at", "storage_purchases", ["created_at"], unique=False)

    op.create_table(
        "rate_limit_windows",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("endpoint", sa.String(), nullable=False),
        sa.Column("request_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "endpoint", name="uq_rate_limit_windows_user_endpoint"),
    )
    op.create_index("ix_rate_limit_windows_user_id", "rate_limit_windows", ["user_id"], unique=False)

    op.create_table(
        "daily_media_usage",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("usage_date", sa.Date(), nullable=False),
        sa.Column("image_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("video_count", sa.Integer(), nullable=False, server_default="0"),
        sa.CheckConstraint("image_count >= 0", name="ck_daily_media_usage_image_nonnegative"),
        sa.CheckConstraint("video_count >= 0", name="ck_daily_media_usage_video_nonnegative"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("user_id", "usage_date"),
    )

    op.create_table(
        "account_status",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("is_frozen", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("freeze_reason", sa.String(), nullable=True),
        sa.Column("frozen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("frozen_by", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("user_id"),
    )


def downgrade() -> None:
    op.drop_table("account_status")
    op.drop_table("daily_media_usage")
    op.drop_index("ix_rate_limit_windows_user_id", table_name="rate_limit_windows")
    op.drop_table("rate_limit_windows")
    op.drop_index("ix_storage_purchases_created_at", table_name="storage_purchases")
    op.drop_index("ix_storage_purchases_user_id", table_name="storage_purchases")
    op.drop_table("storage_purchases")
    op.drop_index("ix_storage_ledger_reference", table_name="storage_ledger")
    op.drop_index("ix_storage_ledger_user_created", table_name="storage_ledger")
    op.drop_index("ix_storage_ledger_created_at", table_name="storage_ledger")
    op.drop_index("ix_storage_ledger_user_id", table_name="storage_ledger")
    op.drop_table("storage_ledger")
    op.drop_index("uq_storage_uploads_user_idempotency_key", table_name="storage_uploads")
    op.drop_index("ix_storage_uploads_status_created", table_name="storage_uploads")
    op.drop_index("ix_storage_uploads_user_id", table_name="storage_uploads")
    op.drop_table("storage_uploads")
    op.drop_table("storage_accounts")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
