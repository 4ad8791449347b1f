"""Initial metering schema.

Creates ``quota_counters``, ``credit_lots``, ``credit_events`` and
``jobs``.  The ``charge_*`` columns on ``jobs`` hold the charge owed by a
succeeded job until it is applied to the ledgers.

Revision ID: 001
Revises:
Create Date: 2026-09-14 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_Json = JSONB().with_variant(sa.JSON(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "quota_counters",
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("feature", sa.String(64), nullable=False),
        sa.Column("period", sa.String(7), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("user_id", "feature", "period"),
        sa.CheckConstraint("count >= 0", name="ck_quota_counters_count_nonneg"),
    )

    op.create_table(
        "credit_lots",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("amount_original", sa.Integer(), nullable=False),
        sa.Column("amount_remaining", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(32), nullable=False, server_default="purchase"),
        sa.Column("external_ref", sa.String(256), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("amount_original > 0", name="ck_credit_lots_original_positive"),
        sa.CheckConstraint("amount_remaining >= 0", name="ck_credit_lots_remaining_nonneg"),
        sa.CheckConstraint("amount_remaining <= amount_original", name="ck_credit_lots_remaining_le_original"),
        sa.UniqueConstraint("external_ref", name="uq_credit_lots_external_ref"),
    )
    op.create_index("ix_credit_lots_user_created", "credit_lots", ["user_id", "created_at"])
    op.create_index("ix_credit_lots_expires", "credit_lots", ["expires_at"])

    op.create_table(
        "credit_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("lot_id", sa.String(64), nullable=True),
        sa.Column("job_id", sa.String(64), nullable=True),
        sa.Column("reason", sa.String(256), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("kind IN ('grant', 'consume', 'expire')", name="ck_credit_events_kind"),
    )
    op.create_index("ix_credit_events_user_created", "credit_events", ["user_id", "created_at"])
    op.create_index("ix_credit_events_job", "credit_events", ["job_id"])

    op.create_table(
        "jobs",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("feature", sa.String(64), nullable=False),
        sa.Column("idempotency_key", sa.String(128), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="running"),
        sa.Column("request_json", _Json, nullable=True),
        sa.Column("result_json", _Json, nullable=True),
        sa.Column("error_code", sa.String(64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("charge_mode", sa.String(16), nullable=True),
        sa.Column("charge_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("charge_state", sa.String(16), nullable=False, server_default="none"),
        sa.Column("charge_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("charge_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("user_id", "feature", "idempotency_key", name="uq_jobs_user_feature_key"),
        sa.CheckConstraint("status IN ('running', 'succeeded', 'failed', 'blocked')", name="ck_jobs_status"),
        sa.CheckConstraint(
            "charge_state IN ('none', 'pending', 'applied', 'shortfall', 'failed')",
            name="ck_jobs_charge_state",
        ),
    )
    op.create_index("ix_jobs_charge_state_updated", "jobs", ["charge_state", "updated_at"])
    op.create_index("ix_jobs_user_created", "jobs", ["user_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_jobs_user_created")
    op.drop_index("ix_jobs_charge_state_updated")
    op.drop_table("jobs")
    op.drop_index("ix_credit_events_job")
    op.drop_index("ix_credit_events_user_created")
    op.drop_table("credit_events")
    op.drop_index("ix_credit_lots_expires")
    op.drop_index("ix_credit_lots_user_created")
    op.drop_table("credit_lots")
    op.drop_table("quota_counters")
