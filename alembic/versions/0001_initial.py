"""Initial schema

Revision ID: 0001_initial
Revises: 
Create Date: 2026-10-01 00:00:00

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "deployment_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("request_id", sa.Text(), nullable=False),
        sa.Column("target_id", sa.Text(), nullable=False),
        sa.Column("previous_version", sa.Text(), nullable=True),
        sa.Column("attempted_version", sa.Text(), nullable=False),
        sa.Column("outcome", sa.Text(), nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_records_target", "deployment_records", ["target_id", "id"])
    op.create_index(
        "idx_records_target_outcome", "deployment_records", ["target_id", "outcome", "id"]
    )
    op.create_index("idx_records_request", "deployment_records", ["request_id"])

    op.create_table(
        "last_success",
        sa.Column("target_id", sa.Text(), primary_key=True),
        sa.Column(
            "record_id",
            sa.Integer(),
            sa.ForeignKey("deployment_records.id"),
            nullable=False,
        ),
    )


def downgrade() -> None:
    op.drop_table("last_success")

    op.drop_index("idx_records_request", table_name="deployment_records")
    op.drop_index("idx_records_target_outcome", table_name="deployment_records")
    op.drop_index("idx_records_target", table_name="deployment_records")
    op.drop_table("deployment_records")
