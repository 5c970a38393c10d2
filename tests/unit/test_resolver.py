"""Tests for version resolution."""

import pytest

from firmware_hub.catalog import ReleaseCatalog
from firmware_hub.exceptions import NotFound
from firmware_hub.resolver import VersionResolver, normalize_version

TEMPLATE = "/api/firmware/download?device={device_class}&version={version}"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("1.0.0", "1.0.0"),
        ("v1.0.0", "1.0.0"),
        ("V2.0", "2.0"),
        ("  v3.1.4  ", "3.1.4"),
        ("vv1", "v1"),
        ("", ""),
    ],
)
def test_normalize_version(raw, expected):
    assert normalize_version(raw) == expected


def test_download_reference_is_url_safe():
    resolver = VersionResolver(TEMPLATE)

    assert resolver.download_reference("esp32", "1.0.0+build.7") == (
        "/api/firmware/download?device=esp32&version=1.0.0%2Bbuild.7"
    )


def test_download_reference_absolute_template():
    resolver = VersionResolver("https://fw.example.com/{device_class}/{version}.bin")

    assert resolver.download_reference("esp32", "1.0.0") == (
        "https://fw.example.com/esp32/1.0.0.bin"
    )


class TestVersionResolver:
    """Test resolving against the catalog."""

    @pytest.mark.asyncio
    async def test_resolve_reflects_publish_immediately(self, db_session):
        resolver = VersionResolver(TEMPLATE)
        catalog = ReleaseCatalog(db_session)

        await catalog.insert("1.0.0", "esp32", None, "a" * 64, "esp32-firmware-v1.0.0.bin", 4)
        assert (await resolver.resolve(db_session, "esp32")).version == "1.0.0"

        await catalog.insert("1.1.0", "esp32", "fixes", "b" * 64, "esp32-firmware-v1.1.0.bin", 8)
        resolved = await resolver.resolve(db_session, "esp32")

        assert resolved.version == "1.1.0"
        assert resolved.checksum == "b" * 64
        assert resolved.notes == "fixes"
        assert resolved.size_bytes == 8
        assert resolved.download_reference.endswith("version=1.1.0")

    @pytest.mark.asyncio
    async def test_resolve_without_releases(self, db_session):
        with pytest.raises(NotFound):
            await VersionResolver(TEMPLATE).resolve(db_session, "esp32")

    @pytest.mark.asyncio
    async def test_resolve_legacy_row_without_checksum(self, db_session):
        await ReleaseCatalog(db_session).insert(
            "0.1.0", "esp32", None, None, "esp32-firmware-v0.1.0.bin"
        )

        resolved = await VersionResolver(TEMPLATE).resolve(db_session, "esp32")

        assert resolved.checksum is None
        assert resolved.size_bytes is None
