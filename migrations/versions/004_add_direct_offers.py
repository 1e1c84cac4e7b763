"""Add jobs.offered_to for direct offers.

Revision ID: 004
Revises: 003
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "004"
down_revision: Union[str, None] = "003"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("jobs", sa.Column("offered_to", sa.Uuid(), nullable=True))
    op.create_index("ix_jobs_offered_to", "jobs", ["offered_to"])


def downgrade() -> None:
    op.drop_index("ix_jobs_offered_to", table_name="jobs")
    op.drop_column("jobs", "offered_to")
