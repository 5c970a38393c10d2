"""Database models for the firmware hub.

SQLAlchemy models for the release catalog and the fleet telemetry ledger.
"""

from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class OutcomeStatus(str, PyEnum):
    """Result a device reports after applying a release."""
    SUCCESS = "update_success"
    FAILURE = "update_failed"


class Release(Base):
    """Published firmware release.

    One row per binary in the blob store. Rows are immutable once inserted
    and are only removed together with their blob by a retraction.
    """

    __tablename__ = "firmware_releases"
    __table_args__ = (
        UniqueConstraint("device_class", "version", name="uq_release_device_version"),
        Index("ix_release_device_recency", "device_class", "uploaded_at", "id"),
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    version = Column(String(100), nullable=False, index=True)
    device_class = Column(String(100), nullable=False, index=True)
    notes = Column(Text)

    # Blob info
    blob_key = Column(String(255), nullable=False)
    checksum = Column(String(64))  # SHA-256, NULL only for legacy rows
    size_bytes = Column(Integer)

    uploaded_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    def __repr__(self) -> str:
        return (
            f"<Release(id={self.id}, device_class='{self.device_class}', "
            f"version='{self.version}')>"
        )


class DeviceState(Base):
    """Latest heartbeat reported by a device."""

    __tablename__ = "device_states"

    device_id = Column(String(100), primary_key=True)
    status = Column(String(50), nullable=False, default="online")
    firmware_version = Column(String(100))
    last_seen = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    def __repr__(self) -> str:
        return f"<DeviceState(device_id='{self.device_id}', status='{self.status}')>"


class UpdateOutcome(Base):
    """Append-only record of one device's attempt to apply a release."""

    __tablename__ = "update_outcomes"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(String(100), nullable=False, index=True)
    status = Column(
        Enum(
            OutcomeStatus,
            name="outcome_status",
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        nullable=False,
        index=True,
    )
    version = Column(String(100), nullable=False, index=True)
    error_message = Column(Text)
    latency_ms = Column(Integer)

    recorded_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    def __repr__(self) -> str:
        return (
            f"<UpdateOutcome(id={self.id}, device_id='{self.device_id}', "
            f"status={self.status})>"
        )


class SensorReading(Base):
    """Append-only environmental reading sent by a device."""

    __tablename__ = "sensor_readings"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(String(100), nullable=False, index=True)

    temperature = Column(Float, nullable=False)  # Celsius
    humidity = Column(Float)  # Percent
    light = Column(Float)

    recorded_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    def __repr__(self) -> str:
        return f"<SensorReading(id={self.id}, device_id='{self.device_id}')>"
