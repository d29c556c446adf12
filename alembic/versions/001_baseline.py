"""Baseline schema.

Creates every coinbook table: users and catalog, order items, the ranking
event log and projection, user activity, achievements, flavor profiles,
import sessions, the job queue and webhook deliveries.

Revision ID: 001_baseline
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

from alembic import op

from coinbook.db import models  # noqa: F401
from coinbook.db.base import Base

revision: str = "001_baseline"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    Base.metadata.create_all(bind=op.get_bind(), checkfirst=True)


def downgrade() -> None:
    Base.metadata.drop_all(bind=op.get_bind(), checkfirst=True)
