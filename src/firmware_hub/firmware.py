"""Firmware release service.

Publishes, resolves, serves and retracts firmware releases. A release is a
blob in the blob store plus a row in the release catalog; this module is the
only writer of either.
"""

import asyncio
import logging
import re
import weakref
from dataclasses import dataclass
from pathlib import Path
from functools import partial
from typing import AsyncIterator, List, Optional, Set, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from firmware_hub.catalog import ReleaseCatalog
from firmware_hub.exceptions import (
    ArtifactTooLarge,
    FirmwareHubError,
    InvalidArtifact,
    NotFound,
    ReleaseConflict,
    ValidationError,
)
from firmware_hub.models import Release
from firmware_hub.resolver import ResolvedRelease, VersionResolver, normalize_version
from firmware_hub.storage import LocalBlobStore, blob_key_for

logger = logging.getLogger(__name__)

# Device classes and versions become part of a file name.
_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]{0,99}$")


@dataclass(frozen=True)
class PublishResult:
    """Outcome of a successful publish."""

    release: Release
    blob_key: str
    checksum: str

    @property
    def release_id(self) -> int:
        return self.release.id


@dataclass(frozen=True)
class IntegrityReport:
    """Stored checksum compared against the blob currently on disk."""

    release_id: int
    blob_key: str
    expected_checksum: Optional[str]
    actual_checksum: Optional[str]

    @property
    def ok(self) -> bool:
        return (
            self.expected_checksum is not None
            and self.actual_checksum is not None
            and self.expected_checksum == self.actual_checksum
        )


class FirmwareService:
    """Service for publishing and retracting firmware releases."""

    def __init__(
        self,
        blob_store: LocalBlobStore,
        resolver: VersionResolver,
        allowed_extension: str = ".bin",
        max_artifact_bytes: int = 16 * 1024 * 1024,
        default_device_class: str = "esp32",
    ):
        """Initialize firmware service.

        Args:
            blob_store: Where binaries are kept
            resolver: Builds download references for catalog rows
            allowed_extension: The single accepted file extension
            max_artifact_bytes: Size ceiling enforced while streaming
            default_device_class: Device class used when none is given
        """
        self.blob_store = blob_store
        self.resolver = resolver
        self.allowed_extension = allowed_extension
        self.max_artifact_bytes = max_artifact_bytes
        self.default_device_class = default_device_class
        self._key_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )
        self._pending_removals: Set[asyncio.Task] = set()

    def _lock_for(self, blob_key: str) -> asyncio.Lock:
        lock = self._key_locks.get(blob_key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[blob_key] = lock
        return lock

    @staticmethod
    def _clean_token(value: Optional[str], field: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValidationError(f"{field} is required")
        if not _TOKEN_PATTERN.match(value):
            raise ValidationError(
                f"{field} may only contain letters, digits, '.', '_', '+' and '-'"
            )
        return value

    def resolve_device_class(self, device_class: Optional[str]) -> str:
        """Apply the default device class and validate the result."""
        return self._clean_token(device_class or self.default_device_class, "device class")

    def check_extension(self, filename: Optional[str]) -> str:
        """Validate the uploaded file name against the allow-list.

        Raises:
            InvalidArtifact: If the extension is not the allowed one
        """
        extension = Path(filename or "").suffix
        if extension.lower() != self.allowed_extension.lower():
            raise InvalidArtifact(
                f"Only {self.allowed_extension} firmware files are accepted"
            )
        return self.allowed_extension

    async def _limited(self, chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        total = 0
        async for chunk in chunks:
            total += len(chunk)
            if total > self.max_artifact_bytes:
                raise ArtifactTooLarge(self.max_artifact_bytes)
            yield chunk

        if total == 0:
            raise InvalidArtifact("Firmware file is empty")

    async def publish(
        self,
        session: AsyncSession,
        chunks: AsyncIterator[bytes],
        filename: Optional[str],
        version: Optional[str],
        device_class: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> PublishResult:
        """Publish a new firmware release.

        Steps run strictly in order and stop at the first failure: validate,
        store the blob, checksum the stored blob, insert the catalog row.
        Publishes that map to the same blob key are serialized, across
        processes sharing the blob store as well as within this one. A blob
        already on disk is only ever replaced when no catalog row refers to it.

        If the catalog insert fails the blob stays on disk unreferenced; it
        is not rolled back.

        Args:
            session: Database session
            chunks: Firmware bytes as an async iterator
            filename: Original upload file name (for the extension check)
            version: Version label; a leading "v" is stripped
            device_class: Device class, default applied when missing
            notes: Optional release notes

        Returns:
            Publish result with the committed release

        Raises:
            ValidationError: Missing or malformed version/device class
            InvalidArtifact: Wrong file type or empty file
            ArtifactTooLarge: Stream exceeded the size ceiling
            ReleaseConflict: Device class and version already published
            StoreFailure: Filesystem or database failure
        """
        version = self._clean_token(normalize_version(version or ""), "version")
        device_class = self.resolve_device_class(device_class)
        extension = self.check_extension(filename)
        notes = (notes or "").strip() or None

        blob_key = blob_key_for(device_class, version, extension)
        catalog = ReleaseCatalog(session)

        async with self._lock_for(blob_key), self.blob_store.key_lock(blob_key):
            if await catalog.find(device_class, version) is not None:
                raise ReleaseConflict(f"Release {version} for {device_class} already exists")

            size_bytes = await self.blob_store.put(blob_key, self._limited(chunks))

            # Checksum what is actually retrievable, not what was streamed.
            checksum = await self.blob_store.digest(blob_key)

            try:
                release = await catalog.insert(
                    version=version,
                    device_class=device_class,
                    notes=notes,
                    checksum=checksum,
                    blob_key=blob_key,
                    size_bytes=size_bytes,
                )
            except FirmwareHubError as e:
                logger.error(
                    f"Catalog insert failed for {device_class} {version}; "
                    f"blob {blob_key} left unreferenced: {e}"
                )
                raise

        logger.info(
            f"Published firmware {version} for {device_class} "
            f"(release {release.id}, {size_bytes} bytes, sha256 {checksum})"
        )
        return PublishResult(release=release, blob_key=blob_key, checksum=checksum)

    async def retract(self, session: AsyncSession, release_id: int) -> Release:
        """Retract a release: delete its blob, then its catalog row.

        The blob goes first so an interrupted retraction leaves a row that
        still points somewhere, never storage nobody can find. Once started
        the removal runs to completion even if the caller is cancelled.
        Retrying a half-finished retraction completes it.

        Raises:
            NotFound: If no release has this id
            StoreFailure: Filesystem or database failure
        """
        release = await ReleaseCatalog(session).get_by_id(release_id)
        version, device_class = release.version, release.device_class

        removal = asyncio.ensure_future(self._remove(session, release))
        self._pending_removals.add(removal)
        removal.add_done_callback(partial(self._removal_done, release_id))
        await asyncio.shield(removal)

        logger.info(f"Retracted firmware {version} for {device_class} (release {release_id})")
        return release

    async def _remove(self, session: AsyncSession, release: Release) -> None:
        blob_key = release.blob_key
        release_id = release.id

        async with self._lock_for(blob_key), self.blob_store.key_lock(blob_key):
            await self.blob_store.delete(blob_key)

            try:
                removed = await ReleaseCatalog(session).delete_by_id(release_id)
            except FirmwareHubError:
                logger.error(
                    f"Blob {blob_key} deleted but release {release_id} row remains; "
                    f"retry the retraction"
                )
                raise

        if not removed:
            raise NotFound(f"Release {release_id} not found")

    def _removal_done(self, release_id: int, removal: asyncio.Task) -> None:
        # Runs even when the retracting caller was cancelled and nobody awaits the result.
        self._pending_removals.discard(removal)
        if removal.cancelled():
            return

        error = removal.exception()
        if error is not None and not isinstance(error, NotFound):
            logger.error(f"Retraction of release {release_id} failed: {error}")

    async def resolve_latest(
        self, session: AsyncSession, device_class: Optional[str] = None
    ) -> ResolvedRelease:
        """Latest release for a device class.

        Raises:
            NotFound: No release exists for the class
        """
        return await self.resolver.resolve(session, self.resolve_device_class(device_class))

    async def open_download(
        self,
        session: AsyncSession,
        device_class: Optional[str],
        version: Optional[str],
    ) -> Tuple[Release, AsyncIterator[bytes]]:
        """Locate a release and open its blob for streaming.

        Raises:
            ValidationError: Missing version
            NotFound: No such release, or its blob is gone
        """
        device_class = self.resolve_device_class(device_class)
        version = normalize_version(version or "")
        if not version:
            raise ValidationError("version is required")

        release = await ReleaseCatalog(session).find(device_class, version)
        if release is None:
            raise NotFound(f"No firmware {version} for {device_class}")

        chunks = await self.blob_store.get(release.blob_key)
        return release, chunks

    async def list_releases(
        self,
        session: AsyncSession,
        device_class: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Release]:
        return await ReleaseCatalog(session).list_all(device_class, skip=skip, limit=limit)

    async def get_release(self, session: AsyncSession, release_id: int) -> Release:
        return await ReleaseCatalog(session).get_by_id(release_id)

    async def verify(self, session: AsyncSession, release_id: int) -> IntegrityReport:
        """Recompute a release's blob digest and compare with the catalog.

        Raises:
            NotFound: If no release has this id
        """
        release = await ReleaseCatalog(session).get_by_id(release_id)

        try:
            actual = await self.blob_store.digest(release.blob_key)
        except NotFound:
            actual = None

        report = IntegrityReport(
            release_id=release.id,
            blob_key=release.blob_key,
            expected_checksum=release.checksum,
            actual_checksum=actual,
        )

        if not report.ok:
            logger.warning(
                f"Integrity check failed for release {release.id}: "
                f"expected {release.checksum}, found {actual}"
            )

        return report
