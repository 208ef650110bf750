"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "pushrelay_queue",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("campaign_id", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("subscriber_id", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("website_id", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_pushrelay_queue_campaign_id", "pushrelay_queue", ["campaign_id"])
    op.create_index("ix_pushrelay_queue_subscriber_id", "pushrelay_queue", ["subscriber_id"])
    # Due-job polling filters on status first, then scheduled_at.
    op.create_index("ix_pushrelay_queue_status_scheduled", "pushrelay_queue", ["status", "scheduled_at"])

    op.create_table(
        "pushrelay_api_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("endpoint", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("method", sa.String(length=10), nullable=False, server_default="GET"),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("request_data", sa.JSON(), nullable=True),
        sa.Column("response_data", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("execution_time", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_pushrelay_api_logs_endpoint", "pushrelay_api_logs", ["endpoint"])
    op.create_index("ix_pushrelay_api_logs_status_code", "pushrelay_api_logs", ["status_code"])
    op.create_index("ix_pushrelay_api_logs_created_at", "pushrelay_api_logs", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_pushrelay_api_logs_created_at", table_name="pushrelay_api_logs")
    op.drop_index("ix_pushrelay_api_logs_status_code", table_name="pushrelay_api_logs")
    op.drop_index("ix_pushrelay_api_logs_endpoint", table_name="pushrelay_api_logs")
    op.drop_table("pushrelay_api_logs")

    op.drop_index("ix_pushrelay_queue_status_scheduled", table_name="pushrelay_queue")
    op.drop_index("ix_pushrelay_queue_subscriber_id", table_name="pushrelay_queue")
    op.drop_index("ix_pushrelay_queue_campaign_id", table_name="pushrelay_queue")
    op.drop_table("pushrelay_queue")
