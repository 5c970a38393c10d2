"""Pydantic schemas for API requests and responses."""

from datetime import datetime, timezone
from typing import Annotated, Optional

from pydantic import AfterValidator, AliasChoices, BaseModel, ConfigDict, Field

from firmware_hub.models import OutcomeStatus


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDateTime = Annotated[datetime, AfterValidator(_as_utc)]


class AckResponse(BaseModel):
    """Generic acknowledgement."""

    success: bool = True
    message: str


# Release schemas


class ReleaseResponse(BaseModel):
    """Firmware release response schema."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    version: str
    device_class: str
    notes: Optional[str] = None
    checksum: Optional[str] = None
    blob_key: str
    size_bytes: Optional[int] = None
    uploaded_at: UtcDateTime


class PublishResponse(BaseModel):
    """Result of a firmware upload."""

    success: bool = True
    message: str = "Firmware uploaded"
    release_id: int
    blob_key: str
    checksum: str
    version: str
    device_class: str


class LatestReleaseResponse(BaseModel):
    """Latest firmware for a device class, as polled by devices."""

    model_config = ConfigDict(from_attributes=True)

    release_id: int
    version: str
    device_class: str
    download_reference: str
    checksum: Optional[str] = None
    notes: Optional[str] = None
    uploaded_at: UtcDateTime
    size_bytes: Optional[int] = None


class IntegrityReportResponse(BaseModel):
    """Stored checksum compared with the blob on disk."""

    model_config = ConfigDict(from_attributes=True)

    release_id: int
    blob_key: str
    expected_checksum: Optional[str] = None
    actual_checksum: Optional[str] = None
    ok: bool


# Heartbeat schemas


class HeartbeatCreate(BaseModel):
    """Schema for device heartbeat."""

    model_config = ConfigDict(str_strip_whitespace=True)

    device_id: str = Field(..., min_length=1, max_length=100)
    status: Optional[str] = Field(default=None, max_length=50, examples=["online", "error"])
    firmware_version: Optional[str] = Field(default=None, max_length=100)


class DeviceStateResponse(BaseModel):
    """Latest known device state."""

    model_config = ConfigDict(from_attributes=True)

    device_id: str
    status: str
    firmware_version: Optional[str] = None
    last_seen: UtcDateTime


# Update outcome schemas


class UpdateOutcomeCreate(BaseModel):
    """Schema for a device's update outcome report."""

    model_config = ConfigDict(str_strip_whitespace=True)

    device_id: str = Field(..., min_length=1, max_length=100)
    status: OutcomeStatus
    version: str = Field(..., min_length=1, max_length=100)
    error_message: Optional[str] = None
    latency_ms: Optional[int] = Field(default=None, ge=0)


class UpdateOutcomeResponse(BaseModel):
    """Update outcome response schema."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    device_id: str
    status: OutcomeStatus
    version: str
    error_message: Optional[str] = None
    latency_ms: Optional[int] = None
    recorded_at: UtcDateTime


class OutcomeSummary(BaseModel):
    """Outcome counts per status."""

    update_success: int = 0
    update_failed: int = 0
    total: int = 0


# Sensor schemas


class SensorReadingCreate(BaseModel):
    """Schema for submitting a sensor reading.

    Older device firmware sends the temperature as ``temp``.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    device_id: str = Field(..., min_length=1, max_length=100)
    temperature: float = Field(..., validation_alias=AliasChoices("temperature", "temp"))
    humidity: Optional[float] = Field(default=None, ge=0, le=100)
    light: Optional[float] = Field(default=None, ge=0)


class SensorReadingResponse(BaseModel):
    """Sensor reading response schema."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    device_id: str
    temperature: float
    humidity: Optional[float] = None
    light: Optional[float] = None
    recorded_at: UtcDateTime
