"""Binary blob store for firmware images.

Blobs live as flat files under a base directory, one file per key. Writes go
to a temporary sibling and are renamed into place once complete, so readers
only ever see a whole blob or none. Per-key advisory locks (POSIX
``flock``) let several processes share one store.
"""

import asyncio
import fcntl
import hashlib
import logging
import os
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, BinaryIO, TextIO

from firmware_hub.exceptions import NotFound, StoreFailure

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


def blob_key_for(device_class: str, version: str, extension: str) -> str:
    """Derive the storage key for a release.

    Args:
        device_class: Device class, e.g. "esp32"
        version: Normalized version string without a leading "v"
        extension: File extension including the dot

    Returns:
        Blob key such as "esp32-firmware-v1.0.0.bin"
    """
    return f"{device_class}-firmware-v{version}{extension}"


def _sha256_file(path: Path) -> str:
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(CHUNK_SIZE):
            sha256.update(chunk)
    return sha256.hexdigest()


def _flush_and_close(handle: BinaryIO) -> None:
    try:
        handle.flush()
        os.fsync(handle.fileno())
    finally:
        handle.close()


def _acquire_flock(lock_path: Path) -> TextIO:
    lock_file = open(lock_path, "a+")
    try:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
    except BaseException:
        lock_file.close()
        raise
    return lock_file


def _release_flock(lock_file: TextIO) -> None:
    try:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
    finally:
        lock_file.close()


def _release_when_acquired(future: asyncio.Future) -> None:
    # The waiter was cancelled but the executor thread still got the lock.
    if not future.cancelled() and future.exception() is None:
        _release_flock(future.result())


class LocalBlobStore:
    """Filesystem-backed blob store.

    The store does no integrity checking of its own; callers compute and
    record digests.
    """

    def __init__(self, base_path: str):
        """Initialize blob store.

        Args:
            base_path: Directory that holds the blobs
        """
        self.base_path = Path(base_path)
        self.lock_path = self.base_path / ".locks"
        self.lock_path.mkdir(parents=True, exist_ok=True)
        logger.info(f"Blob store initialized at {self.base_path.resolve()}")

    def path_for(self, key: str) -> Path:
        """Resolve a key to its file path.

        Raises:
            StoreFailure: If the key is not a plain file name
        """
        if (
            not key
            or key in (".", "..")
            or key.startswith(".")
            or "/" in key
            or "\\" in key
            or "\x00" in key
        ):
            raise StoreFailure(f"Invalid blob key: {key!r}")
        return self.base_path / key

    @asynccontextmanager
    async def key_lock(self, key: str):
        """Hold an exclusive lock on ``key`` shared by every process using this store.

        Lock files live in ``.locks`` and are never removed, so a waiter can
        never end up holding a lock on an unlinked file.

        Args:
            key: Blob key to lock
        """
        lock_file_path = self.lock_path / f"{self.path_for(key).name}.lock"
        loop = asyncio.get_running_loop()

        acquiring = loop.run_in_executor(None, _acquire_flock, lock_file_path)
        try:
            lock_file = await asyncio.shield(acquiring)
        except asyncio.CancelledError:
            acquiring.add_done_callback(_release_when_acquired)
            raise
        except OSError as e:
            raise StoreFailure(f"Failed to lock blob {key}: {e}") from e

        try:
            yield
        finally:
            await loop.run_in_executor(None, _release_flock, lock_file)

    async def put(self, key: str, chunks: AsyncIterator[bytes]) -> int:
        """Write a blob, replacing any existing blob at the same key.

        If consuming ``chunks`` raises or the task is cancelled, the partial
        write is discarded and the previous blob (if any) is left untouched.

        Args:
            key: Blob key
            chunks: Async iterator of byte chunks

        Returns:
            Number of bytes written

        Raises:
            StoreFailure: On filesystem errors
        """
        path = self.path_for(key)
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.part")
        loop = asyncio.get_running_loop()
        written = 0

        try:
            handle = await loop.run_in_executor(None, open, tmp_path, "wb")
            try:
                async for chunk in chunks:
                    if not chunk:
                        continue
                    await loop.run_in_executor(None, handle.write, chunk)
                    written += len(chunk)
            finally:
                await loop.run_in_executor(None, _flush_and_close, handle)

            await loop.run_in_executor(None, os.replace, tmp_path, path)

        except BaseException as e:
            tmp_path.unlink(missing_ok=True)
            if isinstance(e, OSError):
                raise StoreFailure(f"Failed to write blob {key}: {e}") from e
            raise

        logger.debug(f"Stored blob {key} ({written} bytes)")
        return written

    async def exists(self, key: str) -> bool:
        """Check whether a blob exists."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.path_for(key).is_file)

    async def get(self, key: str) -> AsyncIterator[bytes]:
        """Open a blob for streaming.

        The file is opened eagerly so a missing blob fails here rather than
        mid-response.

        Args:
            key: Blob key

        Returns:
            Async iterator over the blob's bytes

        Raises:
            NotFound: If no blob exists at ``key``
            StoreFailure: On other filesystem errors
        """
        path = self.path_for(key)
        loop = asyncio.get_running_loop()

        try:
            handle = await loop.run_in_executor(None, open, path, "rb")
        except FileNotFoundError as e:
            raise NotFound(f"Blob {key} not found") from e
        except OSError as e:
            raise StoreFailure(f"Failed to open blob {key}: {e}") from e

        return self._iter_chunks(handle)

    async def _iter_chunks(self, handle: BinaryIO) -> AsyncIterator[bytes]:
        loop = asyncio.get_running_loop()
        try:
            while True:
                chunk = await loop.run_in_executor(None, handle.read, CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            handle.close()

    async def digest(self, key: str) -> str:
        """SHA-256 hex digest of the persisted blob.

        Raises:
            NotFound: If no blob exists at ``key``
            StoreFailure: On other filesystem errors
        """
        path = self.path_for(key)
        loop = asyncio.get_running_loop()

        try:
            return await loop.run_in_executor(None, _sha256_file, path)
        except FileNotFoundError as e:
            raise NotFound(f"Blob {key} not found") from e
        except OSError as e:
            raise StoreFailure(f"Failed to read blob {key}: {e}") from e

    async def delete(self, key: str) -> None:
        """Delete a blob. Deleting a missing key is not an error.

        Raises:
            StoreFailure: On filesystem errors
        """
        path = self.path_for(key)
        loop = asyncio.get_running_loop()

        try:
            await loop.run_in_executor(None, lambda: path.unlink(missing_ok=True))
        except OSError as e:
            raise StoreFailure(f"Failed to delete blob {key}: {e}") from e

        logger.debug(f"Deleted blob {key}")
