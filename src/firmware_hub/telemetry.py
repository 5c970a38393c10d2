"""Fleet telemetry ledger.

Devices report back through three tables: the latest heartbeat per device
(upserted, last write wins) and two append-only logs for update outcomes and
sensor readings. Appends are never deduplicated; a retried post is a second
row.
"""

import logging
from typing import Dict, List, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from firmware_hub.exceptions import NotFound, StoreFailure, ValidationError
from firmware_hub.models import (
    DeviceState,
    OutcomeStatus,
    SensorReading,
    UpdateOutcome,
    utcnow,
)

logger = logging.getLogger(__name__)

_UPSERT_DIALECTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


def _require(value: Optional[str], field: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"{field} is required")
    return value


class TelemetryLedger:
    """Ingestion and queries for device heartbeats, outcomes and readings."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _commit(self, action: str) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StoreFailure(f"Failed to {action}: {e}") from e

    async def _fetch(self, query) -> list:
        try:
            result = await self.session.execute(query)
        except SQLAlchemyError as e:
            raise StoreFailure(f"Telemetry query failed: {e}") from e
        return list(result.scalars().all())

    # Heartbeats

    async def record_heartbeat(
        self,
        device_id: str,
        status: Optional[str] = None,
        firmware_version: Optional[str] = None,
    ) -> DeviceState:
        """Insert or overwrite the latest state for a device.

        Uses a single ``INSERT ... ON CONFLICT DO UPDATE`` so concurrent
        heartbeats from one device never lose an update. There is no
        ordering check: whichever heartbeat reaches the server last wins.

        Args:
            device_id: Device identifier
            status: Free-form status token, defaults to "online"
            firmware_version: Version the device reports running

        Returns:
            The stored device state
        """
        device_id = _require(device_id, "device_id")
        values = {
            "device_id": device_id,
            "status": (status or "").strip() or "online",
            "firmware_version": firmware_version,
            "last_seen": utcnow(),
        }

        dialect = self.session.get_bind().dialect.name
        insert = _UPSERT_DIALECTS.get(dialect)
        if insert is None:
            raise StoreFailure(f"Heartbeat upsert not supported on {dialect}")

        stmt = insert(DeviceState).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[DeviceState.device_id],
            set_={
                "status": stmt.excluded.status,
                "firmware_version": stmt.excluded.firmware_version,
                "last_seen": stmt.excluded.last_seen,
            },
        )

        try:
            await self.session.execute(stmt)
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StoreFailure(f"Failed to record heartbeat: {e}") from e
        await self._commit("record heartbeat")

        logger.debug(f"Heartbeat from {device_id}: {values['status']}")
        return await self.get_device_state(device_id)

    async def get_device_state(self, device_id: str) -> DeviceState:
        """Latest state for one device.

        Raises:
            NotFound: If the device has never sent a heartbeat
        """
        rows = await self._fetch(
            select(DeviceState)
            .where(DeviceState.device_id == device_id)
            .execution_options(populate_existing=True)
        )
        if not rows:
            raise NotFound(f"Device {device_id} not found")
        return rows[0]

    async def latest_heartbeats(
        self,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[DeviceState]:
        """Device states, most recently seen first."""
        query = select(DeviceState)
        if status:
            query = query.where(DeviceState.status == status)

        query = (
            query.order_by(DeviceState.last_seen.desc(), DeviceState.device_id)
            .offset(skip)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return await self._fetch(query)

    # Update outcomes

    async def append_outcome(
        self,
        device_id: str,
        status: Union[OutcomeStatus, str],
        version: str,
        error_message: Optional[str] = None,
        latency_ms: Optional[int] = None,
    ) -> UpdateOutcome:
        """Append an update outcome reported by a device."""
        device_id = _require(device_id, "device_id")
        version = _require(version, "version")

        try:
            status = OutcomeStatus(status)
        except ValueError as e:
            allowed = ", ".join(s.value for s in OutcomeStatus)
            raise ValidationError(f"status must be one of: {allowed}") from e

        if latency_ms is not None and latency_ms < 0:
            raise ValidationError("latency_ms must not be negative")

        outcome = UpdateOutcome(
            device_id=device_id,
            status=status,
            version=version,
            error_message=error_message,
            latency_ms=latency_ms,
            recorded_at=utcnow(),
        )
        self.session.add(outcome)
        await self._commit("append update outcome")
        await self.session.refresh(outcome)

        if status == OutcomeStatus.FAILURE:
            logger.warning(
                f"Device {device_id} failed to apply {version}: {error_message or 'no details'}"
            )
        else:
            logger.info(f"Device {device_id} applied {version}")

        return outcome

    async def recent_outcomes(
        self,
        device_id: Optional[str] = None,
        version: Optional[str] = None,
        status: Optional[OutcomeStatus] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[UpdateOutcome]:
        """Update outcomes, most recent first."""
        query = select(UpdateOutcome)

        if device_id:
            query = query.where(UpdateOutcome.device_id == device_id)
        if version:
            query = query.where(UpdateOutcome.version == version)
        if status:
            query = query.where(UpdateOutcome.status == status)

        query = (
            query.order_by(UpdateOutcome.recorded_at.desc(), UpdateOutcome.id.desc())
            .offset(skip)
            .limit(limit)
        )
        return await self._fetch(query)

    async def outcome_summary(self, version: Optional[str] = None) -> Dict[str, int]:
        """Count outcomes per status, optionally for one version."""
        query = select(UpdateOutcome.status, func.count(UpdateOutcome.id).label("count"))
        if version:
            query = query.where(UpdateOutcome.version == version)
        query = query.group_by(UpdateOutcome.status)

        try:
            result = await self.session.execute(query)
        except SQLAlchemyError as e:
            raise StoreFailure(f"Telemetry query failed: {e}") from e

        counts = {status: count for status, count in result}
        summary = {s.value: counts.get(s, 0) for s in OutcomeStatus}
        summary["total"] = sum(counts.values())
        return summary

    # Sensor readings

    async def append_sensor_reading(
        self,
        device_id: str,
        temperature: float,
        humidity: Optional[float] = None,
        light: Optional[float] = None,
    ) -> SensorReading:
        """Append a sensor reading. Missing values are stored as NULL."""
        device_id = _require(device_id, "device_id")
        if temperature is None:
            raise ValidationError("temperature is required")

        reading = SensorReading(
            device_id=device_id,
            temperature=temperature,
            humidity=humidity,
            light=light,
            recorded_at=utcnow(),
        )
        self.session.add(reading)
        await self._commit("append sensor reading")
        await self.session.refresh(reading)
        return reading

    async def recent_sensor_readings(
        self,
        device_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[SensorReading]:
        """Sensor readings, most recent first, for one device or the fleet."""
        query = select(SensorReading)
        if device_id:
            query = query.where(SensorReading.device_id == device_id)

        query = (
            query.order_by(SensorReading.recorded_at.desc(), SensorReading.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return await self._fetch(query)
