"""Firmware hub API application.

FastAPI application for publishing firmware and collecting device telemetry.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import AsyncGenerator, AsyncIterator, List, Optional

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from firmware_hub import schemas
from firmware_hub.auth import require_admin, require_publisher
from firmware_hub.config import Settings, get_settings
from firmware_hub.database import build_engine, build_session_factory, get_db, init_models
from firmware_hub.exceptions import (
    ArtifactTooLarge,
    FirmwareHubError,
    InvalidArtifact,
    NotFound,
    ReleaseConflict,
    StoreFailure,
    ValidationError,
)
from firmware_hub.firmware import FirmwareService
from firmware_hub.middleware import RateLimitMiddleware, RequestLoggingMiddleware
from firmware_hub.models import OutcomeStatus
from firmware_hub.rate_limit import RateLimiter
from firmware_hub.resolver import VersionResolver
from firmware_hub.storage import CHUNK_SIZE, LocalBlobStore
from firmware_hub.telemetry import TelemetryLedger

logger = logging.getLogger(__name__)

# Allowance for multipart framing and form fields around the firmware part.
MULTIPART_OVERHEAD_BYTES = 64 * 1024

ERROR_STATUS = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    InvalidArtifact: status.HTTP_400_BAD_REQUEST,
    NotFound: status.HTTP_404_NOT_FOUND,
    ReleaseConflict: status.HTTP_409_CONFLICT,
    ArtifactTooLarge: status.HTTP_413_CONTENT_TOO_LARGE,
    StoreFailure: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def build_firmware_service(settings: Settings) -> FirmwareService:
    """Wire the firmware service from settings."""
    return FirmwareService(
        blob_store=LocalBlobStore(settings.storage_path),
        resolver=VersionResolver(settings.download_url_template),
        allowed_extension=settings.allowed_extension,
        max_artifact_bytes=settings.max_artifact_bytes,
        default_device_class=settings.default_device_class,
    )


async def handle_hub_error(request: Request, exc: FirmwareHubError) -> JSONResponse:
    """Translate core errors into HTTP responses."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status_code = code
            break

    if status_code >= 500:
        logger.error(
            f"{request.method} {request.url.path} failed: {exc}",
            exc_info=exc
        )
        detail = "Internal server error"
    else:
        logger.info(f"{request.method} {request.url.path}: {exc}")
        detail = str(exc)

    return JSONResponse(status_code=status_code, content={"detail": detail})


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies are client faults reported as 400."""
    logger.info(f"{request.method} {request.url.path}: invalid request")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": jsonable_errors(exc)},
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", ""), "type": error.get("type", "")}
        for error in exc.errors()
    ]


def get_firmware_service(request: Request) -> FirmwareService:
    return request.app.state.firmware_service


async def _iter_upload(upload: UploadFile) -> AsyncIterator[bytes]:
    while chunk := await upload.read(CHUNK_SIZE):
        yield chunk


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create the firmware hub application.

    Args:
        settings: Settings to use; loaded from config/environment if omitted

    Returns:
        Configured FastAPI app
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    engine = build_engine(settings.database_url)
    limiter = RateLimiter(
        redis_url=settings.redis_url,
        requests_per_minute=settings.rate_limit_per_minute,
        requests_per_hour=settings.rate_limit_per_hour,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator:
        """Application lifespan manager."""
        logger.info("Starting firmware hub")

        await init_models(engine)
        if settings.rate_limit_enabled:
            await limiter.connect()

        yield

        logger.info("Shutting down firmware hub")
        await limiter.disconnect()
        await engine.dispose()

    app = FastAPI(
        title="Firmware Hub",
        description="Firmware distribution and fleet telemetry for embedded devices",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.firmware_service = build_firmware_service(settings)
    app.state.rate_limiter = limiter

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RateLimitMiddleware, limiter=limiter, enabled=settings.rate_limit_enabled)
    app.add_middleware(RequestLoggingMiddleware)

    app.add_exception_handler(FirmwareHubError, handle_hub_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:
    """Attach all API routes to ``app``."""

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    # Firmware endpoints

    @app.post(
        "/api/firmware/upload",
        response_model=schemas.PublishResponse,
        status_code=status.HTTP_201_CREATED,
        dependencies=[Depends(require_publisher)],
    )
    async def upload_firmware(
        request: Request,
        firmware: UploadFile = File(...),
        version: Optional[str] = Form(None),
        device: Optional[str] = Form(None),
        notes: Optional[str] = Form(None),
        db: AsyncSession = Depends(get_db),
        service: FirmwareService = Depends(get_firmware_service),
    ):
        """Publish a new firmware binary."""
        content_length = request.headers.get("content-length")
        if (
            content_length
            and content_length.isdigit()
            and int(content_length) > service.max_artifact_bytes + MULTIPART_OVERHEAD_BYTES
        ):
            raise ArtifactTooLarge(service.max_artifact_bytes)

        try:
            result = await service.publish(
                db,
                _iter_upload(firmware),
                filename=firmware.filename,
                version=version,
                device_class=device,
                notes=notes,
            )
        finally:
            await firmware.close()

        return schemas.PublishResponse(
            release_id=result.release_id,
            blob_key=result.blob_key,
            checksum=result.checksum,
            version=result.release.version,
            device_class=result.release.device_class,
        )

    @app.get("/api/firmware/version", response_model=schemas.LatestReleaseResponse)
    async def get_latest_firmware(
        device: Optional[str] = None,
        db: AsyncSession = Depends(get_db),
        service: FirmwareService = Depends(get_firmware_service),
    ):
        """Latest firmware for a device class."""
        resolved = await service.resolve_latest(db, device)
        return schemas.LatestReleaseResponse(**asdict(resolved))

    @app.get("/api/firmware/download")
    async def download_firmware(
        version: Optional[str] = None,
        device: Optional[str] = None,
        db: AsyncSession = Depends(get_db),
        service: FirmwareService = Depends(get_firmware_service),
    ):
        """Stream a firmware binary."""
        release, chunks = await service.open_download(db, device, version)

        headers = {"Content-Disposition": f'attachment; filename="{release.blob_key}"'}
        if release.checksum:
            headers["X-Checksum-SHA256"] = release.checksum
        if release.size_bytes is not None:
            headers["Content-Length"] = str(release.size_bytes)

        return StreamingResponse(chunks, media_type="application/octet-stream", headers=headers)

    @app.get("/api/firmware/history", response_model=List[schemas.ReleaseResponse])
    async def list_firmware_history(
        device: Optional[str] = None,
        skip: int = Query(0, ge=0),
        limit: int = Query(100, ge=1, le=1000),
        db: AsyncSession = Depends(get_db),
        service: FirmwareService = Depends(get_firmware_service),
    ):
        """List releases, most recent first."""
        return await service.list_releases(db, device, skip=skip, limit=limit)

    @app.get("/api/firmware/{release_id}", response_model=schemas.ReleaseResponse)
    async def get_firmware_release(
        release_id: int,
        db: AsyncSession = Depends(get_db),
        service: FirmwareService = Depends(get_firmware_service),
    ):
        """Get a release by id."""
        return await service.get_release(db, release_id)

    @app.get(
        "/api/firmware/{release_id}/verify",
        response_model=schemas.IntegrityReportResponse,
        dependencies=[Depends(require_admin)],
    )
    async def verify_firmware_release(
        release_id: int,
        db: AsyncSession = Depends(get_db),
        service: FirmwareService = Depends(get_firmware_service),
    ):
        """Re-check a stored binary against its recorded checksum."""
        report = await service.verify(db, release_id)
        return schemas.IntegrityReportResponse(**asdict(report), ok=report.ok)

    @app.delete(
        "/api/firmware/{release_id}",
        response_model=schemas.AckResponse,
        dependencies=[Depends(require_admin)],
    )
    async def retract_firmware_release(
        release_id: int,
        db: AsyncSession = Depends(get_db),
        service: FirmwareService = Depends(get_firmware_service),
    ):
        """Retract a release and delete its binary."""
        release = await service.retract(db, release_id)
        return schemas.AckResponse(
            message=f"Retracted firmware {release.version} for {release.device_class}"
        )

    # Device telemetry endpoints

    @app.post("/api/heartbeat", response_model=schemas.AckResponse)
    async def device_heartbeat(
        heartbeat: schemas.HeartbeatCreate, db: AsyncSession = Depends(get_db)
    ):
        """Record device heartbeat."""
        await TelemetryLedger(db).record_heartbeat(
            heartbeat.device_id, heartbeat.status, heartbeat.firmware_version
        )
        return schemas.AckResponse(message="Heartbeat recorded")

    @app.get(
        "/api/devices",
        response_model=List[schemas.DeviceStateResponse],
        dependencies=[Depends(require_admin)],
    )
    async def list_device_states(
        status: Optional[str] = None,
        skip: int = Query(0, ge=0),
        limit: int = Query(100, ge=1, le=1000),
        db: AsyncSession = Depends(get_db),
    ):
        """Latest state of each device."""
        return await TelemetryLedger(db).latest_heartbeats(status=status, skip=skip, limit=limit)

    @app.get(
        "/api/devices/{device_id}",
        response_model=schemas.DeviceStateResponse,
        dependencies=[Depends(require_admin)],
    )
    async def get_device_state(device_id: str, db: AsyncSession = Depends(get_db)):
        """Latest state of one device."""
        return await TelemetryLedger(db).get_device_state(device_id)

    @app.post("/api/log", response_model=schemas.AckResponse, status_code=status.HTTP_201_CREATED)
    async def submit_update_outcome(
        outcome: schemas.UpdateOutcomeCreate, db: AsyncSession = Depends(get_db)
    ):
        """Record the outcome of a firmware update on a device."""
        await TelemetryLedger(db).append_outcome(
            device_id=outcome.device_id,
            status=outcome.status,
            version=outcome.version,
            error_message=outcome.error_message,
            latency_ms=outcome.latency_ms,
        )
        return schemas.AckResponse(message="Log recorded")

    @app.get(
        "/api/logs",
        response_model=List[schemas.UpdateOutcomeResponse],
        dependencies=[Depends(require_admin)],
    )
    async def list_update_outcomes(
        device_id: Optional[str] = None,
        version: Optional[str] = None,
        status: Optional[OutcomeStatus] = None,
        skip: int = Query(0, ge=0),
        limit: int = Query(100, ge=1, le=1000),
        db: AsyncSession = Depends(get_db),
    ):
        """Update outcomes, most recent first."""
        return await TelemetryLedger(db).recent_outcomes(
            device_id=device_id, version=version, status=status, skip=skip, limit=limit
        )

    @app.get(
        "/api/logs/summary",
        response_model=schemas.OutcomeSummary,
        dependencies=[Depends(require_admin)],
    )
    async def summarize_update_outcomes(
        version: Optional[str] = None, db: AsyncSession = Depends(get_db)
    ):
        """Success and failure counts, optionally for one version."""
        return await TelemetryLedger(db).outcome_summary(version)

    @app.post("/api/sensor", response_model=schemas.AckResponse, status_code=status.HTTP_201_CREATED)
    async def submit_sensor_reading(
        reading: schemas.SensorReadingCreate, db: AsyncSession = Depends(get_db)
    ):
        """Record a sensor reading."""
        await TelemetryLedger(db).append_sensor_reading(
            device_id=reading.device_id,
            temperature=reading.temperature,
            humidity=reading.humidity,
            light=reading.light,
        )
        return schemas.AckResponse(message="Sensor data recorded")

    @app.get(
        "/api/sensor",
        response_model=List[schemas.SensorReadingResponse],
        dependencies=[Depends(require_admin)],
    )
    async def list_sensor_readings(
        device_id: Optional[str] = None,
        limit: int = Query(100, ge=1, le=1000),
        offset: int = Query(0, ge=0),
        db: AsyncSession = Depends(get_db),
    ):
        """Sensor readings, most recent first."""
        return await TelemetryLedger(db).recent_sensor_readings(
            device_id=device_id, limit=limit, offset=offset
        )
