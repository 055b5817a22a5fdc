"""Track funding application withdrawal and version.

Applications become mutable after insert (Draft submission, withdrawal), so
they carry the same ``version`` token as the other aggregates.
"""

from __future__ import annotations

import logging

from alembic import op
import sqlalchemy as sa

revision = "8d41e7a3c2b6"
down_revision = "5b2f0c9e14a7"
branch_labels = None
depends_on = None

logger = logging.getLogger(__name__)


def upgrade() -> None:
    op.add_column(
        "funding_applications",
        sa.Column("withdrawn_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.add_column(
        "funding_applications",
        sa.Column("withdrawal_reason", sa.String(length=500), nullable=True),
    )
    op.add_column(
        "funding_applications",
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
    )
    logger.info("incubator.migration.applied", extra={"revision": revision})


def downgrade() -> None:
    op.drop_column("funding_applications", "version")
    op.drop_column("funding_applications", "withdrawal_reason")
    op.drop_column("funding_applications", "withdrawn_at")
