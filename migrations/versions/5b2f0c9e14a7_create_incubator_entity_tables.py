"""Create the entity store tables.

Every aggregate row carries a ``version`` column; conditional updates use it as
the optimistic concurrency token. Sessions are a child table of requests and
are rewritten with their parent.
"""

from __future__ import annotations

import logging

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "5b2f0c9e14a7"
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger(__name__)

UTC_NOW = sa.text("timezone('utc', now())")


def _json() -> sa.types.TypeEngine:
    return postgresql.JSONB(astext_type=sa.Text())


def _id(name: str, **kwargs) -> sa.Column:
    return sa.Column(name, sa.String(length=64), **kwargs)


def upgrade() -> None:
    op.create_table(
        "users",
        _id("id", nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_users"),
    )
    op.create_table(
        "startups",
        _id("id", nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        _id("founder_id", nullable=False),
        sa.Column("domain", sa.String(length=100), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("revenue", sa.Float(), nullable=False),
        sa.Column("users", sa.Integer(), nullable=False),
        sa.Column("growth", sa.Float(), nullable=False),
        sa.Column("funding", sa.Float(), nullable=False),
        sa.Column("status_history", _json(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=UTC_NOW),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_startups"),
        sa.CheckConstraint("funding >= 0", name="ck_startups_funding_non_negative"),
    )
    op.create_index("ix_startups_founder_id", "startups", ["founder_id"], unique=False)
    op.create_table(
        "mentors",
        _id("id", nullable=False),
        _id("user_id", nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("expertise", _json(), nullable=False),
        sa.Column("domains", _json(), nullable=False),
        sa.Column("bio", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("slots_available", sa.Integer(), nullable=False),
        sa.Column("max_mentees", sa.Integer(), nullable=False),
        sa.Column("current_mentees", _json(), nullable=False),
        sa.Column("rating", sa.Float(), nullable=False),
        sa.Column("total_ratings", sa.Integer(), nullable=False),
        sa.Column("sessions_completed", sa.Integer(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_mentors"),
        sa.CheckConstraint("slots_available >= 0", name="ck_mentors_slots_non_negative"),
    )
    op.create_index("ix_mentors_is_active", "mentors", ["is_active"], unique=False)
    op.create_table(
        "mentorship_requests",
        _id("id", nullable=False),
        _id("startup_id", nullable=False),
        _id("requested_by", nullable=False),
        sa.Column("topic", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("skills", _json(), nullable=False),
        sa.Column("domains", _json(), nullable=False),
        sa.Column("urgency", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("matched_mentors", _json(), nullable=False),
        _id("selected_mentor_id", nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        _id("cancelled_by", nullable=True),
        sa.Column("cancellation_reason", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=UTC_NOW),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_mentorship_requests"),
    )
    op.create_index(
        "ix_mentorship_requests_startup_id", "mentorship_requests", ["startup_id"], unique=False
    )
    op.create_table(
        "mentorship_sessions",
        _id("id", nullable=False),
        _id("request_id", nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        _id("mentor_id", nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("meeting_link", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("founder_rating", sa.Integer(), nullable=True),
        sa.Column("founder_feedback", _json(), nullable=True),
        sa.Column("mentor_feedback", _json(), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_mentorship_sessions"),
        sa.ForeignKeyConstraint(
            ["request_id"],
            ["mentorship_requests.id"],
            name="fk_mentorship_sessions_request_id",
            ondelete="CASCADE",
        ),
    )
    op.create_index(
        "ix_mentorship_sessions_request_id", "mentorship_sessions", ["request_id"], unique=False
    )
    # Rating recomputation aggregates by mentor.
    op.create_index(
        "ix_mentorship_sessions_mentor_id", "mentorship_sessions", ["mentor_id"], unique=False
    )
    op.create_table(
        "funding_applications",
        _id("id", nullable=False),
        _id("startup_id", nullable=False),
        _id("applicant_id", nullable=True),
        sa.Column("round_type", sa.String(length=32), nullable=False),
        sa.Column("amount_requested", sa.Float(), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("purpose", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=UTC_NOW),
        sa.PrimaryKeyConstraint("id", name="pk_funding_applications"),
    )
    op.create_index(
        "ix_funding_applications_startup_id", "funding_applications", ["startup_id"], unique=False
    )
    op.create_table(
        "notifications",
        _id("id", nullable=False),
        _id("recipient_id", nullable=False),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("message", sa.String(length=1000), nullable=False),
        sa.Column("related_model", sa.String(length=32), nullable=True),
        _id("related_id", nullable=True),
        sa.Column("priority", sa.String(length=16), nullable=False),
        sa.Column("read", sa.Boolean(), nullable=False),
        sa.Column("metadata", _json(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=UTC_NOW),
        sa.PrimaryKeyConstraint("id", name="pk_notifications"),
    )
    op.create_index(
        "ix_notifications_recipient_created",
        "notifications",
        ["recipient_id", "created_at"],
        unique=False,
    )
    logger.info("incubator.migration.applied", extra={"revision": revision})


def downgrade() -> None:
    op.drop_index("ix_notifications_recipient_created", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_funding_applications_startup_id", table_name="funding_applications")
    op.drop_table("funding_applications")
    op.drop_index("ix_mentorship_sessions_mentor_id", table_name="mentorship_sessions")
    op.drop_index("ix_mentorship_sessions_request_id", table_name="mentorship_sessions")
    op.drop_table("mentorship_sessions")
    op.drop_index("ix_mentorship_requests_startup_id", table_name="mentorship_requests")
    op.drop_table("mentorship_requests")
    op.drop_index("ix_mentors_is_active", table_name="mentors")
    op.drop_table("mentors")
    op.drop_index("ix_startups_founder_id", table_name="startups")
    op.drop_table("startups")
    op.drop_table("users")
