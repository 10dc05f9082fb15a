"""create job_logs table

Revision ID: 9d3f5c8b2a17
Revises: 8c2e4b7a1f05
Create Date: 2026-10-17 09:20:00

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "9d3f5c8b2a17"
down_revision = "8c2e4b7a1f05"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "job_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("queue", sa.String(length=50), nullable=False),
        sa.Column("job_id", sa.String(length=40), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("level", sa.String(length=10), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
    )
    op.create_index("ix_job_logs_job_ts", "job_logs", ["queue", "job_id", "ts"])
    op.alter_column("job_logs", "ts", server_default=None)


def downgrade() -> None:
    op.drop_index("ix_job_logs_job_ts", table_name="job_logs")
    op.drop_table("job_logs")
