"""Tests for the filesystem blob store."""

import asyncio
import hashlib

import pytest

from firmware_hub.exceptions import NotFound, StoreFailure
from firmware_hub.storage import LocalBlobStore, blob_key_for


async def chunks_of(*parts: bytes):
    for part in parts:
        yield part


async def failing_stream(*parts: bytes):
    for part in parts:
        yield part
    raise ConnectionResetError("client went away")


async def read_all(store: LocalBlobStore, key: str) -> bytes:
    return b"".join([chunk async for chunk in await store.get(key)])


def stored_files(store: LocalBlobStore) -> list:
    return sorted(p.name for p in store.base_path.iterdir() if p.is_file())


async def acquire_and_release(store: LocalBlobStore, key: str) -> None:
    async with store.key_lock(key):
        pass


def test_blob_key_for():
    """Blob keys follow the device-firmware-version naming."""
    assert blob_key_for("esp32", "1.0.0", ".bin") == "esp32-firmware-v1.0.0.bin"


def test_creates_base_directory(tmp_path):
    """Constructing the store creates its directory."""
    base = tmp_path / "nested" / "blobs"
    LocalBlobStore(str(base))
    assert base.is_dir()


class TestPutAndGet:
    """Writing and reading blobs."""

    @pytest.mark.asyncio
    async def test_put_then_get(self, blob_store):
        written = await blob_store.put("a.bin", chunks_of(b"DE", b"AD"))

        assert written == 4
        assert await blob_store.exists("a.bin") is True
        assert await read_all(blob_store, "a.bin") == b"DEAD"

    @pytest.mark.asyncio
    async def test_put_overwrites_existing(self, blob_store):
        await blob_store.put("a.bin", chunks_of(b"old"))
        await blob_store.put("a.bin", chunks_of(b"new!"))

        assert await read_all(blob_store, "a.bin") == b"new!"

    @pytest.mark.asyncio
    async def test_get_missing_raises_not_found(self, blob_store):
        with pytest.raises(NotFound):
            await blob_store.get("missing.bin")

    @pytest.mark.asyncio
    async def test_exists_false_for_missing(self, blob_store):
        assert await blob_store.exists("missing.bin") is False


class TestAbortedWrites:
    """A failed write leaves no blob or the previous complete blob."""

    @pytest.mark.asyncio
    async def test_failed_stream_leaves_no_blob(self, blob_store):
        with pytest.raises(ConnectionResetError):
            await blob_store.put("a.bin", failing_stream(b"partial"))

        assert await blob_store.exists("a.bin") is False
        assert stored_files(blob_store) == []

    @pytest.mark.asyncio
    async def test_failed_overwrite_keeps_previous_blob(self, blob_store):
        await blob_store.put("a.bin", chunks_of(b"complete"))

        with pytest.raises(ConnectionResetError):
            await blob_store.put("a.bin", failing_stream(b"part"))

        assert await read_all(blob_store, "a.bin") == b"complete"
        assert stored_files(blob_store) == ["a.bin"]

    @pytest.mark.asyncio
    async def test_cancelled_write_leaves_no_blob(self, blob_store):
        started = asyncio.Event()

        async def slow_stream():
            yield b"first"
            started.set()
            await asyncio.sleep(10)
            yield b"never"

        task = asyncio.create_task(blob_store.put("a.bin", slow_stream()))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert await blob_store.exists("a.bin") is False
        assert stored_files(blob_store) == []


class TestDigestAndDelete:
    """Digests and idempotent deletes."""

    @pytest.mark.asyncio
    async def test_digest_matches_sha256(self, blob_store):
        await blob_store.put("a.bin", chunks_of(b"DEAD"))

        assert await blob_store.digest("a.bin") == hashlib.sha256(b"DEAD").hexdigest()

    @pytest.mark.asyncio
    async def test_digest_missing_raises_not_found(self, blob_store):
        with pytest.raises(NotFound):
            await blob_store.digest("missing.bin")

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, blob_store):
        await blob_store.put("a.bin", chunks_of(b"DEAD"))

        await blob_store.delete("a.bin")
        await blob_store.delete("a.bin")

        assert await blob_store.exists("a.bin") is False


class TestKeyLock:
    """Per-key locks shared by every store on the same directory."""

    @pytest.mark.asyncio
    async def test_second_holder_waits_for_first(self, tmp_path):
        first = LocalBlobStore(str(tmp_path / "shared"))
        second = LocalBlobStore(str(tmp_path / "shared"))
        entered = asyncio.Event()
        events = []

        async def hold_first():
            async with first.key_lock("a.bin"):
                events.append("first in")
                entered.set()
                await asyncio.sleep(0.2)
                events.append("first out")

        async def hold_second():
            await entered.wait()
            async with second.key_lock("a.bin"):
                events.append("second in")

        await asyncio.gather(hold_first(), hold_second())

        assert events == ["first in", "first out", "second in"]
        assert (tmp_path / "shared" / ".locks" / "a.bin.lock").is_file()

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self, blob_store):
        async with blob_store.key_lock("a.bin"):
            await asyncio.wait_for(acquire_and_release(blob_store, "b.bin"), timeout=2)

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_keep_lock(self, blob_store):
        waiter_started = asyncio.Event()

        async def wait_for_lock():
            waiter_started.set()
            async with blob_store.key_lock("a.bin"):
                pass

        async with blob_store.key_lock("a.bin"):
            waiter = asyncio.create_task(wait_for_lock())
            await waiter_started.wait()
            await asyncio.sleep(0.05)
            waiter.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter

        await asyncio.wait_for(acquire_and_release(blob_store, "a.bin"), timeout=2)

    @pytest.mark.asyncio
    async def test_lock_rejects_unsafe_key(self, blob_store):
        with pytest.raises(StoreFailure):
            async with blob_store.key_lock("../a.bin"):
                pass


@pytest.mark.parametrize("key", ["", "..", "../escape.bin", "dir/file.bin", ".hidden"])
def test_rejects_unsafe_keys(blob_store, key):
    """Keys must be plain file names inside the store."""
    with pytest.raises(StoreFailure):
        blob_store.path_for(key)
