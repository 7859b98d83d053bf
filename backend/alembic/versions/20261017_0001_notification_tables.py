"""Create notification rule, delivery log, job status, queue, and lock tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "notification_rules",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), nullable=False, autoincrement=True),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("subject_id", sa.Integer(), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False, server_default="email"),
        sa.Column("offset_amount", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("offset_unit", sa.String(length=16), nullable=False, server_default="minutes"),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notification_rules_enabled_channel", "notification_rules", ["enabled", "channel"], unique=False)
    op.create_index("ix_notification_rules_owner_subject", "notification_rules", ["owner_id", "subject_id"], unique=False)
    op.create_index("ix_notification_rules_subject_id", "notification_rules", ["subject_id"], unique=False)

    op.create_table(
        "notification_delivery_logs",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), nullable=False, autoincrement=True),
        sa.Column("rule_id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("subject_id", sa.Integer(), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("job_id", sa.String(length=64), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_code", sa.String(length=128), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_notification_delivery_logs_rule_status_created",
        "notification_delivery_logs",
        ["rule_id", "status", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_notification_delivery_logs_owner_created",
        "notification_delivery_logs",
        ["owner_id", "created_at"],
        unique=False,
    )
    op.create_index("ix_notification_delivery_logs_subject_id", "notification_delivery_logs", ["subject_id"], unique=False)
    op.create_index("ix_notification_delivery_logs_job_id", "notification_delivery_logs", ["job_id"], unique=False)

    op.create_table(
        "job_statuses",
        sa.Column("job_id", sa.String(length=64), nullable=False),
        sa.Column("job_type", sa.String(length=128), nullable=False),
        sa.Column("queue", sa.String(length=64), nullable=False),
        sa.Column("unique_key", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payload_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("result_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_job_statuses_status_queue", "job_statuses", ["status", "queue"], unique=False)
    op.create_index("ix_job_statuses_unique_key", "job_statuses", ["unique_key"], unique=False)

    op.create_table(
        "queue_messages",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), nullable=False, autoincrement=True),
        sa.Column("queue", sa.String(length=64), nullable=False),
        sa.Column("job_id", sa.String(length=64), nullable=False),
        sa.Column("job_type", sa.String(length=128), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("deliveries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_queue_messages_queue_status_available",
        "queue_messages",
        ["queue", "status", "available_at"],
        unique=False,
    )
    op.create_index("ix_queue_messages_job_id", "queue_messages", ["job_id"], unique=False)

    op.create_table(
        "coordination_locks",
        sa.Column("lock_key", sa.String(length=255), nullable=False),
        sa.Column("owner", sa.String(length=255), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("lock_key"),
    )
    op.create_index("ix_coordination_locks_expires_at", "coordination_locks", ["expires_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_coordination_locks_expires_at", table_name="coordination_locks")
    op.drop_table("coordination_locks")

    op.drop_index("ix_queue_messages_job_id", table_name="queue_messages")
    op.drop_index("ix_queue_messages_queue_status_available", table_name="queue_messages")
    op.drop_table("queue_messages")

    op.drop_index("ix_job_statuses_unique_key", table_name="job_statuses")
    op.drop_index("ix_job_statuses_status_queue", table_name="job_statuses")
    op.drop_table("job_statuses")

    op.drop_index("ix_notification_delivery_logs_job_id", table_name="notification_delivery_logs")
    op.drop_index("ix_notification_delivery_logs_subject_id", table_name="notification_delivery_logs")
    op.drop_index("ix_notification_delivery_logs_owner_created", table_name="notification_delivery_logs")
    op.drop_index("ix_notification_delivery_logs_rule_status_created", table_name="notification_delivery_logs")
    op.drop_table("notification_delivery_logs")

    op.drop_index("ix_notification_rules_subject_id", table_name="notification_rules")
    op.drop_index("ix_notification_rules_owner_subject", table_name="notification_rules")
    op.drop_index("ix_notification_rules_enabled_channel", table_name="notification_rules")
    op.drop_table("notification_rules")
