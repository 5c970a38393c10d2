"""Release catalog: the metadata table of published firmware."""

import logging
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from firmware_hub.exceptions import NotFound, ReleaseConflict, StoreFailure
from firmware_hub.models import Release, utcnow

logger = logging.getLogger(__name__)


class ReleaseCatalog:
    """Queries and mutations on the ``firmware_releases`` table.

    Recency is ``uploaded_at`` descending with the insertion id as the
    tiebreaker.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def insert(
        self,
        version: str,
        device_class: str,
        notes: Optional[str],
        checksum: Optional[str],
        blob_key: str,
        size_bytes: Optional[int] = None,
    ) -> Release:
        """Insert a release row and commit.

        Returns:
            The committed release with its assigned id

        Raises:
            ReleaseConflict: If (device_class, version) already exists
            StoreFailure: On other database errors
        """
        release = Release(
            version=version,
            device_class=device_class,
            notes=notes,
            checksum=checksum,
            blob_key=blob_key,
            size_bytes=size_bytes,
            uploaded_at=utcnow(),
        )

        try:
            self.session.add(release)
            await self.session.commit()
            await self.session.refresh(release)
        except IntegrityError as e:
            await self.session.rollback()
            raise ReleaseConflict(
                f"Release {version} for {device_class} already exists"
            ) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StoreFailure(f"Failed to insert release: {e}") from e

        return release

    async def latest_for(self, device_class: str) -> Release:
        """Most recently uploaded release for a device class.

        Raises:
            NotFound: If the device class has no releases
        """
        release = await self._scalar(
            select(Release)
            .where(Release.device_class == device_class)
            .order_by(Release.uploaded_at.desc(), Release.id.desc())
            .limit(1)
        )

        if release is None:
            raise NotFound(f"No firmware available for {device_class}")

        return release

    async def list_all(
        self,
        device_class: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Release]:
        """List releases, most recent first."""
        query = select(Release)

        if device_class:
            query = query.where(Release.device_class == device_class)

        query = (
            query.order_by(Release.uploaded_at.desc(), Release.id.desc())
            .offset(skip)
            .limit(limit)
        )

        try:
            result = await self.session.execute(query)
        except SQLAlchemyError as e:
            raise StoreFailure(f"Failed to list releases: {e}") from e

        return list(result.scalars().all())

    async def get_by_id(self, release_id: int) -> Release:
        """Fetch a release by id.

        Raises:
            NotFound: If no release has this id
        """
        release = await self._scalar(select(Release).where(Release.id == release_id))

        if release is None:
            raise NotFound(f"Release {release_id} not found")

        return release

    async def find(self, device_class: str, version: str) -> Optional[Release]:
        """Look up a release by device class and version."""
        return await self._scalar(
            select(Release).where(
                Release.device_class == device_class,
                Release.version == version,
            )
        )

    async def delete_by_id(self, release_id: int) -> bool:
        """Delete a release row and commit.

        Returns:
            True if a row existed
        """
        try:
            result = await self.session.execute(
                delete(Release).where(Release.id == release_id)
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StoreFailure(f"Failed to delete release {release_id}: {e}") from e

        return result.rowcount > 0

    async def _scalar(self, query) -> Optional[Release]:
        try:
            result = await self.session.execute(query)
        except SQLAlchemyError as e:
            raise StoreFailure(f"Release query failed: {e}") from e
        return result.scalar_one_or_none()
