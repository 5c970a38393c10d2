"""Version resolution: which release a device class should run."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from urllib.parse import quote

from sqlalchemy.ext.asyncio import AsyncSession

from firmware_hub.catalog import ReleaseCatalog
from firmware_hub.models import Release

logger = logging.getLogger(__name__)


def normalize_version(version: str) -> str:
    """Strip surrounding whitespace and a single leading "v" tag.

    >>> normalize_version("v1.0.0")
    '1.0.0'
    """
    version = version.strip()
    if version[:1] in ("v", "V"):
        version = version[1:]
    return version


@dataclass(frozen=True)
class ResolvedRelease:
    """Latest release for a device class plus where to fetch it."""

    release_id: int
    device_class: str
    version: str
    download_reference: str
    checksum: Optional[str]
    notes: Optional[str]
    uploaded_at: datetime
    size_bytes: Optional[int]


class VersionResolver:
    """Resolve the newest release for a device class.

    Reads go straight to the catalog, so a publish is visible to the very
    next resolve.
    """

    def __init__(self, download_url_template: str):
        """Initialize resolver.

        Args:
            download_url_template: Format string with ``{device_class}`` and
                ``{version}`` placeholders
        """
        self.download_url_template = download_url_template

    def download_reference(self, device_class: str, version: str) -> str:
        """Build the download reference for a release."""
        return self.download_url_template.format(
            device_class=quote(device_class, safe=""),
            version=quote(version, safe=""),
        )

    def describe(self, release: Release) -> ResolvedRelease:
        return ResolvedRelease(
            release_id=release.id,
            device_class=release.device_class,
            version=release.version,
            download_reference=self.download_reference(release.device_class, release.version),
            checksum=release.checksum,
            notes=release.notes,
            uploaded_at=release.uploaded_at,
            size_bytes=release.size_bytes,
        )

    async def resolve(self, session: AsyncSession, device_class: str) -> ResolvedRelease:
        """Resolve the latest release for ``device_class``.

        Raises:
            NotFound: If the device class has no releases ("no update
                available", not a server fault)
        """
        release = await ReleaseCatalog(session).latest_for(device_class)
        logger.debug(f"Resolved {device_class} to {release.version}")
        return self.describe(release)
