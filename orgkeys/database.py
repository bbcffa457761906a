"""Database connection and table definitions for the durable key store."""

import json
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    Integer,
    LargeBinary,
    String,
    Text,
    TypeDecorator,
    create_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool


class StringList(TypeDecorator):
    """Database-agnostic string list type.

    Uses JSON storage which works with both SQLite and PostgreSQL.
    """
    impl = Text
    cache_ok = True

    def process_bind_param(self, value: list[str] | None, dialect) -> str | None:
        if value is None:
            return None
        return json.dumps(value)

    def process_result_value(self, value: str | list | None, dialect) -> list[str] | None:
        if value is None:
            return None
        if isinstance(value, list):
            return value
        return json.loads(value)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite drops tzinfo, so values are stored as naive UTC and re-tagged on load.
    """
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all tables."""
    pass


class KeyRow(Base):
    """A managed key. Material is stored wrapped by the key-backing provider."""

    __tablename__ = "encryption_keys"

    key_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    purpose: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    algorithm: Mapped[str] = mapped_column(String(32), nullable=False)
    key_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    wrapped_material: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    derived_from: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    rotated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<KeyRow {self.key_id} {self.status}>"


class RotationPolicyRow(Base):
    """Rotation policy of one (organization, purpose) pair."""

    __tablename__ = "key_rotation_policies"

    organization_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    purpose: Mapped[str] = mapped_column(String(32), primary_key=True)
    rotation_interval_days: Mapped[int] = mapped_column(Integer, nullable=False)
    grace_period_days: Mapped[int] = mapped_column(Integer, nullable=False)
    auto_rotation: Mapped[bool] = mapped_column(Boolean, nullable=False)
    notify_before_rotation_days: Mapped[int] = mapped_column(Integer, nullable=False)
    requires_approval: Mapped[bool] = mapped_column(Boolean, nullable=False)
    approvers: Mapped[list[str]] = mapped_column(StringList, nullable=False, default=list)


class PendingDeletionRow(Base):
    """A rotated key scheduled for deletion once its grace period ends."""

    __tablename__ = "pending_key_deletions"

    key_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    delete_after: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    grace_period_days: Mapped[int] = mapped_column(Integer, nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


def create_session_factory(database_url: str) -> sessionmaker:
    """Create the engine and tables and return a session factory."""
    if database_url == "sqlite://" or (
        database_url.startswith("sqlite") and ":memory:" in database_url
    ):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(database_url, pool_pre_ping=True)

    Base.metadata.create_all(engine)
    return sessionmaker(engine, expire_on_commit=False)
