"""add jobs.stalled_count

Revision ID: a41e7d2c6b93
Revises: 9d3f5c8b2a17
Create Date: 2026-10-17 14:05:00

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "a41e7d2c6b93"
down_revision = "9d3f5c8b2a17"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("jobs") as batch:
        batch.add_column(sa.Column("stalled_count", sa.Integer(), nullable=False, server_default="0"))


def downgrade() -> None:
    with op.batch_alter_table("jobs") as batch:
        batch.drop_column("stalled_count")
