"""create images table

Revision ID: 6a1f0c2d9b31
Revises: 
Create Date: 2026-10-17 09:00:00

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "6a1f0c2d9b31"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "images",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("path", sa.String(length=512), nullable=False),
        sa.Column("upload_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("file_size", sa.BigInteger(), nullable=True),
        sa.Column("storage", sa.String(length=20), nullable=False, server_default="local"),
        sa.Column("format", sa.String(length=20), nullable=True),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("html_code", sa.Text(), nullable=True),
        sa.Column("markdown_code", sa.Text(), nullable=True),
        sa.Column("category_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("path", name="uq_images_path"),
    )
    op.create_index("ix_images_storage", "images", ["storage"])
    op.create_index("ix_images_category_created", "images", ["category_id", "created_at"])
    op.alter_column("images", "storage", server_default=None)


def downgrade() -> None:
    op.drop_index("ix_images_category_created", table_name="images")
    op.drop_index("ix_images_storage", table_name="images")
    op.drop_table("images")
