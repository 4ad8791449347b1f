"""SQLAlchemy 2.0 ORM table definitions for the metering state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for use by Alembic migrations and
the repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: uses JSONB on PostgreSQL, plain JSON on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware ``DateTime`` that always round-trips as UTC.

    SQLite stores naive strings; values read back are coerced to UTC so
    comparisons against ``datetime.now(UTC)`` work on both backends.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(UTC)
            if dialect.name == "sqlite":
                value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all metering tables."""


# ---------------------------------------------------------------------------
# Quota counters
# ---------------------------------------------------------------------------


class QuotaCounterTable(Base):
    """Successful executions per user, feature and billing period.

    ``period`` is the UTC calendar month formatted ``YYYY-MM``.  A missing
    row means zero usage.  Rows are only ever incremented.
    """

    __tablename__ = "quota_counters"

    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    feature: Mapped[str] = mapped_column(String(64), nullable=False)
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("user_id", "feature", "period"),
        CheckConstraint("count >= 0", name="ck_quota_counters_count_nonneg"),
    )


# ---------------------------------------------------------------------------
# Credit lots
# ---------------------------------------------------------------------------


class CreditLotTable(Base):
    """A discrete block of prepaid credit.

    ``amount_remaining`` only ever decreases and never goes negative.
    Exhausted lots are kept for audit.  ``external_ref`` carries the
    payment processor reference that created the lot and is unique so a
    redelivered payment never grants twice.
    """

    __tablename__ = "credit_lots"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    amount_original: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="purchase")
    external_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("amount_original > 0", name="ck_credit_lots_original_positive"),
        CheckConstraint("amount_remaining >= 0", name="ck_credit_lots_remaining_nonneg"),
        CheckConstraint("amount_remaining <= amount_original", name="ck_credit_lots_remaining_le_original"),
        UniqueConstraint("external_ref", name="uq_credit_lots_external_ref"),
        Index("ix_credit_lots_user_created", "user_id", "created_at"),
        Index("ix_credit_lots_expires", "expires_at"),
    )


class CreditEventTable(Base):
    """Append-only audit trail of credit grants, consumption and expiry."""

    __tablename__ = "credit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    lot_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    job_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reason: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("kind IN ('grant', 'consume', 'expire')", name="ck_credit_events_kind"),
        Index("ix_credit_events_user_created", "user_id", "created_at"),
        Index("ix_credit_events_job", "job_id"),
    )


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class JobTable(Base):
    """One idempotency-keyed metered execution and its outcome.

    The ``charge_*`` columns form a transactional outbox: the charge owed
    for a delivered result is written in the same update that stores the
    result, and is applied exactly once afterwards.
    """

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    feature: Mapped[str] = mapped_column(String(64), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="running")
    request_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    result_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    charge_mode: Mapped[str | None] = mapped_column(String(16), nullable=True)
    charge_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    charge_state: Mapped[str] = mapped_column(String(16), nullable=False, default="none")
    charge_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    charge_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "feature", "idempotency_key", name="uq_jobs_user_feature_key"),
        CheckConstraint(
            "status IN ('running', 'succeeded', 'failed', 'blocked')",
            name="ck_jobs_status",
        ),
        CheckConstraint(
            "charge_state IN ('none', 'pending', 'applied', 'shortfall', 'failed')",
            name="ck_jobs_charge_state",
        ),
        Index("ix_jobs_charge_state_updated", "charge_state", "updated_at"),
        Index("ix_jobs_user_created", "user_id", "created_at"),
    )
