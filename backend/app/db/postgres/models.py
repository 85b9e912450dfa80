"""
SQLAlchemy models for PostgreSQL database.

Column types are the dialect-neutral ones (Uuid, JSON with a JSONB variant)
so the same models run against SQLite in tests.
"""

from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid4())


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class DealerApiConfig(Base):
    """Partner feed connection settings for one dealer."""

    __tablename__ = "dealer_api_config"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_uuid)
    dealer_id: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    endpoint_base: Mapped[str | None] = mapped_column(String(500))
    api_key_encrypted: Mapped[str | None] = mapped_column(Text)  # base64(nonce || AES-GCM ciphertext)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    sync_interval_minutes: Mapped[int] = mapped_column(Integer, default=15)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    # Written explicitly by the sync; a sighting alone must not move it
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class AdminUser(Base):
    """Dealership staff allowed to trigger and inspect syncs."""

    __tablename__ = "admin_users"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_uuid)  # session subject
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    dealer_id: Mapped[str | None] = mapped_column(String(64), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class InternalSecret(Base):
    """Key/value store for shared secrets such as the scheduler's cron secret."""

    __tablename__ = "internal_secrets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)


class Vehicle(Base):
    """Local vehicle listing, mirrored from the partner feed when source is the feed tag."""

    __tablename__ = "vehicles"
    __table_args__ = (UniqueConstraint("source", "vin", name="uq_vehicles_source_vin"),)

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_uuid)

    # Provenance
    source: Mapped[str] = mapped_column(String(50), index=True, nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(100))
    vin: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    stock_number: Mapped[str | None] = mapped_column(String(100))

    # Identity
    year: Mapped[int | None] = mapped_column(Integer)
    make: Mapped[str | None] = mapped_column(String(100))
    model: Mapped[str | None] = mapped_column(String(100))
    trim: Mapped[str | None] = mapped_column(String(100))

    # Pricing
    price: Mapped[float | None] = mapped_column(Float)
    asking_price: Mapped[float | None] = mapped_column(Float)
    compare_price: Mapped[float | None] = mapped_column(Float)

    # Specs
    mileage: Mapped[int | None] = mapped_column(Integer)
    mpg: Mapped[dict | None] = mapped_column(JSONType)  # {"city": int, "highway": int}
    exterior_color: Mapped[str | None] = mapped_column(String(100))
    interior_color: Mapped[str | None] = mapped_column(String(100))
    transmission: Mapped[str | None] = mapped_column(String(100))
    drivetrain: Mapped[str | None] = mapped_column(String(100))
    fuel_type: Mapped[str | None] = mapped_column(String(50))
    body_style: Mapped[str | None] = mapped_column(String(100))
    engine: Mapped[str | None] = mapped_column(String(200))
    engine_type: Mapped[str | None] = mapped_column(String(100))
    description: Mapped[str | None] = mapped_column(Text)

    # Media, images are local storage URLs (or the remote URL when mirroring failed)
    images: Mapped[list | None] = mapped_column(JSONType)
    video_urls: Mapped[list | None] = mapped_column(JSONType)
    features: Mapped[list | None] = mapped_column(JSONType)
    ai_detected_features: Mapped[dict | None] = mapped_column(JSONType)
    media: Mapped[list | None] = mapped_column(JSONType)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(50), default="Available")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    deactivated_by: Mapped[str | None] = mapped_column(String(20))  # 'sync' or NULL
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    # Set explicitly by the sync; a sighting alone must not move it
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class SyncRun(Base):
    """Audit record for one sync invocation."""

    __tablename__ = "sync_history"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_uuid)
    config_id: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("dealer_api_config.id", ondelete="SET NULL")
    )
    dealer_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)

    # Status
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)  # pending, success, partial, failure
    trigger_source: Mapped[str] = mapped_column(String(20), default="manual")  # manual, cron
    invoked_by_user_id: Mapped[str | None] = mapped_column(String(64))

    # Counts
    records_created: Mapped[int] = mapped_column(Integer, default=0)
    records_updated: Mapped[int] = mapped_column(Integer, default=0)
    records_unchanged: Mapped[int] = mapped_column(Integer, default=0)
    records_disabled: Mapped[int] = mapped_column(Integer, default=0)
    total_records_processed: Mapped[int] = mapped_column(Integer, default=0)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    photos_copied: Mapped[int] = mapped_column(Integer, default=0)
    photos_cleaned_up: Mapped[int] = mapped_column(Integer, default=0)

    # Timing
    duration_ms: Mapped[int | None] = mapped_column(Integer)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    errors = relationship("SyncError", back_populates="sync_run", cascade="all, delete-orphan")


class SyncError(Base):
    """One persisted per-record (or run-level) error."""

    __tablename__ = "sync_errors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sync_run_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("sync_history.id", ondelete="CASCADE"), index=True, nullable=False
    )
    error_type: Mapped[str] = mapped_column(String(50), nullable=False)  # validation_error, database_error, api_error, disable_guard
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    vin: Mapped[str | None] = mapped_column(String(32))
    error_details: Mapped[dict | None] = mapped_column(JSONType)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    sync_run = relationship("SyncRun", back_populates="errors")
