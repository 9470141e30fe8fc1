"""
Offline transfers and storage quotas.

- Collaborator tables the pipeline reads: users, subscriptions, contents.
- storage_quotas: one row per entitled user (tier, ceiling, cached usage, auto-delete policy).
- transfers: one row per (user, content) with status, byte counters and local file path.
"""

from alembic import op
import sqlalchemy as sa

revision = "20261017_01_offline_transfers"
down_revision = None
branch_labels = None
depends_on = None


content_status = sa.Enum("draft", "published", "archived", name="content_status")
subscription_status = sa.Enum("active", "past_due", "canceled", name="subscription_status")
transfer_status = sa.Enum(
    "pending", "downloading", "paused", "completed", "failed", "cancelled", name="transfer_status"
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    # --- users ---
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("length(email) > 0", name="ck_users_email_not_blank"),
        sa.PrimaryKeyConstraint("id", name="pk_users"),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )

    # --- subscriptions ---
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("plan", sa.String(32), nullable=False),
        sa.Column("status", subscription_status, server_default=sa.text("'active'"), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["user_id"], ["users.id"], name="fk_subscriptions_user_id_users", ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_subscriptions"),
        sa.UniqueConstraint("user_id", name="uq_subscriptions_user_id"),
    )

    # --- contents ---
    op.create_table(
        "contents",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("status", content_status, server_default=sa.text("'draft'"), nullable=False),
        sa.Column("file_size_bytes", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("s3_bucket", sa.String(255), nullable=True),
        sa.Column("s3_key", sa.String(1024), nullable=True),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("file_size_bytes >= 0", name="ck_contents_file_size_nonneg"),
        sa.PrimaryKeyConstraint("id", name="pk_contents"),
    )
    op.create_index("ix_contents_deleted_at", "contents", ["deleted_at"])
    op.create_index("ix_contents_status_deleted", "contents", ["status", "deleted_at"])

    # --- storage_quotas ---
    op.create_table(
        "storage_quotas",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("tier", sa.String(32), nullable=False),
        sa.Column("total_bytes", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("used_bytes", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("auto_delete_enabled", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("auto_delete_days", sa.Integer(), server_default=sa.text("30"), nullable=False),
        sa.Column("alert_threshold_percent", sa.Integer(), server_default=sa.text("80"), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("total_bytes >= 0", name="ck_storage_quotas_total_nonneg"),
        sa.CheckConstraint("used_bytes >= 0", name="ck_storage_quotas_used_nonneg"),
        sa.CheckConstraint("auto_delete_days > 0", name="ck_storage_quotas_auto_delete_days_pos"),
        sa.CheckConstraint(
            "alert_threshold_percent BETWEEN 1 AND 100", name="ck_storage_quotas_alert_threshold_range"
        ),
        sa.ForeignKeyConstraint(
            ["user_id"], ["users.id"], name="fk_storage_quotas_user_id_users", ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_storage_quotas"),
        sa.UniqueConstraint("user_id", name="uq_storage_quotas_user_id"),
    )

    # --- transfers ---
    op.create_table(
        "transfers",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("content_id", sa.Uuid(), nullable=False),
        sa.Column("status", transfer_status, server_default=sa.text("'pending'"), nullable=False),
        sa.Column("quality", sa.String(16), nullable=False),
        sa.Column("byte_size", sa.BigInteger(), nullable=False),
        sa.Column("bytes_transferred", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("progress", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("file_path", sa.String(1024), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("queue_job_id", sa.String(128), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("byte_size >= 0", name="ck_transfers_byte_size_nonneg"),
        sa.CheckConstraint("bytes_transferred >= 0", name="ck_transfers_bytes_transferred_nonneg"),
        sa.CheckConstraint("bytes_transferred <= byte_size", name="ck_transfers_bytes_within_size"),
        sa.CheckConstraint("progress BETWEEN 0 AND 100", name="ck_transfers_progress_range"),
        sa.CheckConstraint("retry_count >= 0", name="ck_transfers_retry_count_nonneg"),
        sa.ForeignKeyConstraint(
            ["user_id"], ["users.id"], name="fk_transfers_user_id_users", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["content_id"], ["contents.id"], name="fk_transfers_content_id_contents", ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_transfers"),
        sa.UniqueConstraint("user_id", "content_id", name="uq_transfers_user_content"),
    )
    op.create_index("ix_transfers_user_id", "transfers", ["user_id"])
    op.create_index("ix_transfers_content_id", "transfers", ["content_id"])
    op.create_index("ix_transfers_deleted_at", "transfers", ["deleted_at"])
    op.create_index("ix_transfers_user_status", "transfers", ["user_id", "status"])
    op.create_index("ix_transfers_user_updated", "transfers", ["user_id", "updated_at"])
    op.create_index("ix_transfers_status_updated", "transfers", ["status", "updated_at"])


def downgrade() -> None:
    op.drop_table("transfers")
    op.drop_table("storage_quotas")
    op.drop_table("contents")
    op.drop_table("subscriptions")
    op.drop_table("users")

    bind = op.get_bind()
    transfer_status.drop(bind, checkfirst=True)
    subscription_status.drop(bind, checkfirst=True)
    content_status.drop(bind, checkfirst=True)
