"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Index, String, Text, text
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Account(Base):
    """
    ORM model for accounts table.

    One row per customer. The credit balance is only ever changed through
    single conditional UPDATE / INSERT ... ON CONFLICT statements.
    """

    __tablename__ = "accounts"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Identity
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    api_key: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)

    # Balance
    credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Session - single active refresh token, overwritten on rotation
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_credits_non_negative"),
        Index("idx_accounts_updated_at", "updated_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Account(id={self.id}, email={self.email}, credits={self.credits})>"


class WebhookEvent(Base):
    """
    ORM model for webhook_events table.

    Append-only log of applied provider events, keyed by content fingerprint.
    The row is inserted in the same transaction as the ledger mutation.
    """

    __tablename__ = "webhook_events"

    fingerprint: Mapped[str] = mapped_column(String(64), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    provider_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    raw_payload: Mapped[str] = mapped_column(Text, nullable=False)

    # Outcome
    outcome: Mapped[str] = mapped_column(String(20), nullable=False, default="received")
    credits_applied: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("credits_applied >= 0", name="ck_webhook_credits_non_negative"),
        Index("idx_webhook_events_email", "email", postgresql_where=(email.isnot(None))),
        Index("idx_webhook_events_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<WebhookEvent(fingerprint={self.fingerprint[:12]}, type={self.event_type}, "
            f"outcome={self.outcome})>"
        )


class StagedObject(Base):
    """
    ORM model for staged_objects table.

    Tracks every temporary object written to the storage bucket so that
    cleanup failures stay visible (state = orphaned).
    """

    __tablename__ = "staged_objects"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    key: Mapped[str] = mapped_column(String(1024), nullable=False, unique=True)
    account_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    purpose: Mapped[str] = mapped_column(String(20), nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="uploaded")
    size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("purpose IN ('input', 'result')", name="ck_staged_purpose"),
        CheckConstraint(
            "state IN ('uploaded', 'consumed', 'deleted', 'orphaned')",
            name="ck_staged_state",
        ),
        Index("idx_staged_objects_account_purpose", "account_id", "purpose", "state"),
        Index(
            "idx_staged_objects_orphaned",
            "state",
            postgresql_where=text("state = 'orphaned'"),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<StagedObject(key={self.key}, purpose={self.purpose}, state={self.state})>"
