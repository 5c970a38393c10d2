"""CLI for the firmware hub.

Runs the API server and provides operator commands that work directly
against the configured database and blob store.
"""

import asyncio
import logging
import sys
from datetime import timedelta
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, TypeVar

import click
import uvicorn
from sqlalchemy.ext.asyncio import AsyncSession

from firmware_hub.auth import SCOPE_ADMIN, SCOPE_PUBLISH, create_access_token
from firmware_hub.config import load_settings
from firmware_hub.database import build_engine, build_session_factory, init_models
from firmware_hub.exceptions import FirmwareHubError
from firmware_hub.main import build_firmware_service, configure_logging, create_app
from firmware_hub.storage import CHUNK_SIZE

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _iter_file(path: Path) -> AsyncIterator[bytes]:
    with open(path, "rb") as f:
        while chunk := f.read(CHUNK_SIZE):
            yield chunk


def _execute(settings, action: Callable[[AsyncSession], Awaitable[T]]) -> T:
    """Run ``action`` with a database session, exiting 1 on hub errors."""

    async def _run() -> T:
        engine = build_engine(settings.database_url)
        try:
            await init_models(engine)
            async with build_session_factory(engine)() as session:
                return await action(session)
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_run())
    except FirmwareHubError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Path to a YAML config file"
)
@click.pass_context
def cli(ctx, config_path):
    """Firmware hub CLI."""
    settings = load_settings(config_path)
    configure_logging(settings.log_level)
    ctx.obj = settings


@cli.command()
@click.option("--host", default="0.0.0.0", help="Bind address")
@click.option("--port", type=int, default=3000, help="Bind port")
@click.pass_obj
def serve(settings, host, port):
    """Run the API server."""
    logger.info(f"Serving firmware hub on {host}:{port}")
    uvicorn.run(create_app(settings), host=host, port=port)


@cli.command()
@click.argument("firmware_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--version", "version", required=True, help="Firmware version, e.g. 1.2.0")
@click.option("--device", "device_class", default=None, help="Device class (default from config)")
@click.option("--notes", default=None, help="Release notes")
@click.pass_obj
def publish(settings, firmware_file, version, device_class, notes):
    """Publish a firmware binary."""
    service = build_firmware_service(settings)

    async def _publish(session):
        return await service.publish(
            session,
            _iter_file(firmware_file),
            filename=firmware_file.name,
            version=version,
            device_class=device_class,
            notes=notes,
        )

    result = _execute(settings, _publish)
    click.echo(f"✓ Published release {result.release_id}")
    click.echo(f"  Blob: {result.blob_key}")
    click.echo(f"  Checksum: {result.checksum}")


@cli.command()
@click.option("--device", "device_class", default=None, help="Only this device class")
@click.option("--limit", type=int, default=50, help="Maximum rows to show")
@click.pass_obj
def releases(settings, device_class, limit):
    """List releases, most recent first."""
    service = build_firmware_service(settings)

    rows = _execute(
        settings,
        lambda session: service.list_releases(session, device_class, limit=limit),
    )

    if not rows:
        click.echo("No releases")
        return

    for release in rows:
        click.echo(
            f"{release.id:>5}  {release.device_class:<12} {release.version:<16} "
            f"{release.uploaded_at.isoformat()}  {release.checksum or '-'}"
        )


@cli.command()
@click.argument("release_id", type=int)
@click.option("--yes", is_flag=True, help="Skip confirmation prompt")
@click.pass_obj
def retract(settings, release_id, yes):
    """Retract a release and delete its binary."""
    if not yes and not click.confirm(f"Retract release {release_id}?"):
        click.echo("Retraction cancelled")
        return

    service = build_firmware_service(settings)
    release = _execute(settings, lambda session: service.retract(session, release_id))
    click.echo(f"✓ Retracted {release.device_class} {release.version}")


@cli.command()
@click.argument("release_id", type=int)
@click.pass_obj
def verify(settings, release_id):
    """Re-check a stored binary against its recorded checksum."""
    service = build_firmware_service(settings)
    report = _execute(settings, lambda session: service.verify(session, release_id))

    if report.ok:
        click.echo(f"✓ Release {release_id} matches {report.expected_checksum}")
        return

    click.echo(
        f"✗ Release {release_id} mismatch: expected {report.expected_checksum}, "
        f"found {report.actual_checksum or 'no blob'}"
    )
    sys.exit(1)


@cli.command("issue-token")
@click.argument("subject")
@click.option(
    "--scope",
    type=click.Choice([SCOPE_PUBLISH, SCOPE_ADMIN]),
    default=SCOPE_PUBLISH,
    help="Token scope"
)
@click.option("--expires-days", type=int, default=None, help="Token lifetime in days")
@click.pass_obj
def issue_token(settings, subject, scope, expires_days):
    """Issue a bearer token for a publisher or operator."""
    expires = timedelta(days=expires_days) if expires_days else None
    click.echo(create_access_token(subject, scope, settings, expires_delta=expires))


if __name__ == "__main__":
    cli()
