"""processing jobs table for the audio queue

Revision ID: 0001_processing_jobs
Revises:
Create Date: 2026-10-17 10:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_processing_jobs"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "processing_jobs",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("queue_name", sa.String(length=100), nullable=False),
        sa.Column("recording_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="queued"),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("run_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("progress", sa.Integer(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("locked_by", sa.String(length=64), nullable=True),
        sa.Column("locked_at", sa.DateTime(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("failed_reason", sa.Text(), nullable=True),
        sa.Column("stacktrace", sa.Text(), nullable=True),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_processing_jobs_recording_id", "processing_jobs", ["recording_id"])
    op.create_index(
        "ix_processing_jobs_dequeue",
        "processing_jobs",
        ["queue_name", "status", "priority", "run_at"],
    )
    op.create_index("ix_processing_jobs_finished_at", "processing_jobs", ["finished_at"])


def downgrade() -> None:
    op.drop_index("ix_processing_jobs_finished_at", table_name="processing_jobs")
    op.drop_index("ix_processing_jobs_dequeue", table_name="processing_jobs")
    op.drop_index("ix_processing_jobs_recording_id", table_name="processing_jobs")
    op.drop_table("processing_jobs")
