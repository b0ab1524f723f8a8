"""initial schema - publishers, websites, offerings, pricing rules, line items, change log

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-19

Creates every table from the SQLAlchemy models. Later revisions use
explicit op.* DDL.
"""
from typing import Sequence, Union

from alembic import op

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables (checkfirst, so re-running is harmless)."""
    from offering_engine.models import Base

    Base.metadata.create_all(bind=op.get_bind(), checkfirst=True)


def downgrade() -> None:
    """Drop all tables. DESTRUCTIVE: dev/test environments only."""
    from offering_engine.models import Base

    Base.metadata.drop_all(bind=op.get_bind())
