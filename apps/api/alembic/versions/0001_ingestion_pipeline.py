"""ingestion_pipeline

Revision ID: 0001_ingestion_pipeline
Revises:
Create Date: 2026-10-18

Tables for webhook intake, canonical activities and challenge progress:
- app_user / challenge (read-mostly, owned by the wider platform)
- webhook_notification (durable raw store + retry state)
- canonical_activity (unique per source + source id)
- challenge_participant (running totals, optimistic version column)
- progress_contribution (per-activity history behind the daily series)
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


revision = "0001_ingestion_pipeline"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "app_user",
        sa.Column("id", UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("username", sa.String(length=100), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("garmin_user_id", sa.Text(), nullable=True),
        sa.Column("garmin_access_token", sa.Text(), nullable=True),
        sa.Column("zwift_user_id", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("username"),
        sa.UniqueConstraint("email"),
        sa.UniqueConstraint("garmin_user_id"),
        sa.UniqueConstraint("zwift_user_id"),
    )
    op.create_index("ix_app_user_garmin_access_token", "app_user", ["garmin_access_token"], unique=False)

    op.create_table(
        "challenge",
        sa.Column("id", UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("challenge_type", sa.Text(), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("target_distance_km", sa.Numeric(14, 3), nullable=True),
        sa.Column("target_elevation_m", sa.Numeric(14, 3), nullable=True),
        sa.Column("target_duration_min", sa.Numeric(14, 3), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("challenge_type IN ('distance', 'elevation', 'duration')", name="ck_challenge_type"),
        sa.CheckConstraint("end_date >= start_date", name="ck_challenge_date_range"),
    )

    op.create_table(
        "webhook_notification",
        sa.Column("id", UUID(as_uuid=True), nullable=False),
        sa.Column("kind", sa.Text(), nullable=False),
        sa.Column("kind_raw", sa.Text(), nullable=False),
        sa.Column("delivery", sa.Text(), nullable=False),
        sa.Column("raw_payload", sa.Text(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="unprocessed"),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_permanent_failure", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('unprocessed', 'in_flight', 'processed', 'failed')",
            name="ck_webhook_notification_status",
        ),
    )
    op.create_index(
        "ix_webhook_notification_status_next_retry",
        "webhook_notification",
        ["status", "next_retry_at"],
        unique=False,
    )
    op.create_index("ix_webhook_notification_received_at", "webhook_notification", ["received_at"], unique=False)

    op.create_table(
        "canonical_activity",
        sa.Column("id", UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), nullable=True),
        sa.Column("owner_status", sa.Text(), nullable=False),
        sa.Column("external_user_id", sa.Text(), nullable=True),
        sa.Column("owner_resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("source", sa.Text(), nullable=False),
        sa.Column("source_activity_id", sa.Text(), nullable=False),
        sa.Column("notification_id", UUID(as_uuid=True), nullable=True),
        sa.Column("category", sa.Text(), nullable=False),
        sa.Column("activity_type", sa.Text(), nullable=True),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_s", sa.Integer(), nullable=True),
        sa.Column("distance_m", sa.Float(), nullable=True),
        sa.Column("elevation_gain_m", sa.Float(), nullable=True),
        sa.Column("avg_heart_rate", sa.Integer(), nullable=True),
        sa.Column("max_heart_rate", sa.Integer(), nullable=True),
        sa.Column("avg_power", sa.Integer(), nullable=True),
        sa.Column("max_power", sa.Integer(), nullable=True),
        sa.Column("avg_cadence", sa.Integer(), nullable=True),
        sa.Column("avg_speed_mps", sa.Float(), nullable=True),
        sa.Column("max_speed_mps", sa.Float(), nullable=True),
        sa.Column("aggregated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["app_user.id"]),
        sa.ForeignKeyConstraint(["notification_id"], ["webhook_notification.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("source", "source_activity_id", name="uq_canonical_activity_source_id"),
        sa.CheckConstraint("owner_status IN ('owned', 'awaiting_owner')", name="ck_canonical_activity_owner_status"),
        sa.CheckConstraint(
            "(owner_status = 'owned') = (user_id IS NOT NULL)",
            name="ck_canonical_activity_owner_consistency",
        ),
    )
    op.create_index("ix_canonical_activity_user_id", "canonical_activity", ["user_id"], unique=False)
    op.create_index("ix_canonical_activity_external_user_id", "canonical_activity", ["external_user_id"], unique=False)
    op.create_index(
        "ix_canonical_activity_awaiting",
        "canonical_activity",
        ["owner_status", "source", "external_user_id"],
        unique=False,
    )

    op.create_table(
        "challenge_participant",
        sa.Column("id", UUID(as_uuid=True), nullable=False),
        sa.Column("challenge_id", UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cumulative_distance_km", sa.Numeric(14, 3), nullable=False, server_default="0"),
        sa.Column("cumulative_elevation_m", sa.Numeric(14, 3), nullable=False, server_default="0"),
        sa.Column("cumulative_duration_min", sa.Numeric(14, 3), nullable=False, server_default="0"),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["challenge_id"], ["challenge.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["app_user.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("challenge_id", "user_id", name="uq_participant_challenge_user"),
    )
    op.create_index("ix_challenge_participant_challenge_id", "challenge_participant", ["challenge_id"], unique=False)
    op.create_index("ix_challenge_participant_user_id", "challenge_participant", ["user_id"], unique=False)

    op.create_table(
        "progress_contribution",
        sa.Column("id", UUID(as_uuid=True), nullable=False),
        sa.Column("challenge_id", UUID(as_uuid=True), nullable=False),
        sa.Column("participant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("activity_id", UUID(as_uuid=True), nullable=False),
        sa.Column("value", sa.Numeric(14, 3), nullable=False),
        sa.Column("activity_start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["challenge_id"], ["challenge.id"]),
        sa.ForeignKeyConstraint(["participant_id"], ["challenge_participant.id"]),
        sa.ForeignKeyConstraint(["activity_id"], ["canonical_activity.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("participant_id", "activity_id", name="uq_contribution_participant_activity"),
    )
    op.create_index("ix_progress_contribution_challenge_id", "progress_contribution", ["challenge_id"], unique=False)
    op.create_index("ix_progress_contribution_participant_id", "progress_contribution", ["participant_id"], unique=False)


def downgrade() -> None:
    op.drop_table("progress_contribution")
    op.drop_table("challenge_participant")
    op.drop_table("canonical_activity")
    op.drop_table("webhook_notification")
    op.drop_table("challenge")
    op.drop_index("ix_app_user_garmin_access_token", table_name="app_user")
    op.drop_table("app_user")
