"""
Tests for photo mirroring and cleanup.
"""

import httpx
import pytest

from app.services.object_storage import InMemoryObjectStorage, StorageError, SupabaseStorage
from app.services.photo_mirror import PhotoMirror, file_extension, vehicle_folder

VIN = "1FTFW1E50MFA00001"


class TestFileExtension:
    """Tests for extension selection."""

    @pytest.mark.parametrize(
        "url,content_type,expected",
        [
            ("https://x/a.png", "image/webp", "webp"),
            ("https://x/a.png", "image/jpeg; charset=binary", "jpg"),
            ("https://x/a.PNG?w=800", None, "png"),
            ("https://x/a.jpeg", "application/octet-stream", "jpg"),
            ("https://x/photo", None, "jpg"),
        ],
    )
    def test_extension(self, url, content_type, expected):
        assert file_extension(url, content_type) == expected


class TestMirror:
    """Tests for PhotoMirror.mirror."""

    @pytest.mark.asyncio
    async def test_copies_photos_to_indexed_paths(self, storage, photo_host):
        mirror = PhotoMirror(storage, transport=photo_host.transport)
        result = await mirror.mirror(
            VIN,
            ["https://photos.example.com/a.jpg", "https://photos.example.com/b.png"],
        )
        await mirror.close()

        assert storage.paths() == [f"vehicles/{VIN}/0.jpg", f"vehicles/{VIN}/1.png"]
        assert result.urls == [
            f"memory://storage/vehicles/{VIN}/0.jpg",
            f"memory://storage/vehicles/{VIN}/1.png",
        ]
        assert result.copied == 2
        assert result.failed == 0

    @pytest.mark.asyncio
    async def test_existing_objects_are_reused_without_download(self, storage, photo_host):
        urls = ["https://photos.example.com/a.jpg", "https://photos.example.com/b.jpg"]
        mirror = PhotoMirror(storage, transport=photo_host.transport)
        first = await mirror.mirror(VIN, urls)
        downloads_after_first = len(photo_host.downloads)

        second = await mirror.mirror(VIN, urls)
        await mirror.close()

        assert second.urls == first.urls
        assert second.copied == 0
        assert second.reused == 2
        assert len(photo_host.downloads) == downloads_after_first
        assert storage.upload_count == 2

    @pytest.mark.asyncio
    async def test_failed_download_falls_back_to_remote_url(self, storage, photo_host):
        mirror = PhotoMirror(storage, transport=photo_host.transport)
        broken = "https://photos.example.com/broken.jpg"
        result = await mirror.mirror(VIN, ["https://photos.example.com/a.jpg", broken])
        await mirror.close()

        assert result.urls[0].startswith("memory://storage/")
        assert result.urls[1] == broken
        assert result.copied == 1
        assert result.failed == 1

    @pytest.mark.asyncio
    async def test_failed_upload_falls_back_to_remote_url(self, photo_host):
        class FailingStorage(InMemoryObjectStorage):
            async def upload(self, path, data, content_type):
                raise StorageError("bucket full", status_code=507)

        mirror = PhotoMirror(FailingStorage(), transport=photo_host.transport)
        result = await mirror.mirror(VIN, ["https://photos.example.com/a.jpg"])
        await mirror.close()

        assert result.urls == ["https://photos.example.com/a.jpg"]
        assert result.failed == 1

    @pytest.mark.asyncio
    async def test_download_timeout_falls_back(self, storage):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        mirror = PhotoMirror(storage, transport=httpx.MockTransport(handler))
        result = await mirror.mirror(VIN, ["https://photos.example.com/a.jpg"])
        await mirror.close()

        assert result.urls == ["https://photos.example.com/a.jpg"]
        assert storage.paths() == []

    @pytest.mark.asyncio
    async def test_no_photos(self, storage, photo_host):
        mirror = PhotoMirror(storage, transport=photo_host.transport)
        result = await mirror.mirror(VIN, [])

        assert result.urls == []
        assert photo_host.downloads == []


class TestCleanup:
    """Tests for PhotoMirror.cleanup."""

    @pytest.mark.asyncio
    async def test_removes_only_retired_vehicle_folders(self, storage):
        await storage.upload(f"{vehicle_folder('AAA')}/0.jpg", b"x", "image/jpeg")
        await storage.upload(f"{vehicle_folder('AAA')}/1.jpg", b"x", "image/jpeg")
        await storage.upload(f"{vehicle_folder('BBB')}/0.jpg", b"x", "image/jpeg")

        removed = await PhotoMirror(storage).cleanup(["AAA"])

        assert removed == 2
        assert storage.paths() == ["vehicles/BBB/0.jpg"]

    @pytest.mark.asyncio
    async def test_cleanup_failure_is_not_raised(self, storage):
        class BrokenListing(InMemoryObjectStorage):
            async def list(self, prefix):
                raise StorageError("listing failed", status_code=500)

        removed = await PhotoMirror(BrokenListing()).cleanup(["AAA", "BBB"])

        assert removed == 0


class FakeStorageApi:
    """Storage REST API on httpx.MockTransport with a configurable listing."""

    def __init__(self, list_response: httpx.Response, stored=()):
        self.list_response = list_response
        self.stored = set(stored)
        self.uploads = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith("/storage/v1/object/list/"):
            return self.list_response
        if request.method == "HEAD":
            key = path.split("/object/public/photos/", 1)[-1]
            return httpx.Response(200 if key in self.stored else 404)
        if request.method == "POST":
            self.uploads.append(path)
            return httpx.Response(200, json={"Key": path})
        return httpx.Response(405)

    def storage(self) -> SupabaseStorage:
        return SupabaseStorage(
            url="https://storage.example.com",
            service_key="service-key",
            bucket="photos",
            transport=httpx.MockTransport(self.handler),
        )


class TestSupabaseStorage:
    """Tests for the Supabase storage backend and how the mirror absorbs its failures."""

    @pytest.mark.asyncio
    async def test_list_returns_folder_paths(self):
        api = FakeStorageApi(httpx.Response(200, json=[{"name": "0.jpg"}, {"name": None}, {"name": "1.png"}]))
        storage = api.storage()

        assert await storage.list(f"vehicles/{VIN}") == [f"vehicles/{VIN}/0.jpg", f"vehicles/{VIN}/1.png"]
        await storage.close()

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, text="<html>gateway</html>"),
            httpx.Response(200, json={"error": "unexpected"}),
            httpx.Response(200, json=["0.jpg"]),
        ],
    )
    @pytest.mark.asyncio
    async def test_malformed_listing_raises_storage_error(self, response):
        storage = FakeStorageApi(response).storage()

        with pytest.raises(StorageError):
            await storage.list(f"vehicles/{VIN}")
        await storage.close()

    @pytest.mark.asyncio
    async def test_mirror_survives_html_listing(self, photo_host):
        api = FakeStorageApi(httpx.Response(200, text="<html>gateway</html>"))
        mirror = PhotoMirror(api.storage(), transport=photo_host.transport)

        result = await mirror.mirror(VIN, ["https://photos.example.com/a.jpg"])
        await mirror.close()

        assert result.urls == [f"https://storage.example.com/storage/v1/object/public/photos/vehicles/{VIN}/0.jpg"]
        assert result.copied == 1
        assert api.uploads == [f"/storage/v1/object/photos/vehicles/{VIN}/0.jpg"]

    @pytest.mark.asyncio
    async def test_listing_failure_reuses_objects_found_by_exists(self, photo_host):
        api = FakeStorageApi(httpx.Response(503, text="unavailable"), stored={f"vehicles/{VIN}/0.jpg"})
        mirror = PhotoMirror(api.storage(), transport=photo_host.transport)

        result = await mirror.mirror(
            VIN,
            ["https://photos.example.com/a.jpg", "https://photos.example.com/b.png"],
        )
        await mirror.close()

        assert result.reused == 1
        assert result.copied == 1
        assert photo_host.downloads == ["https://photos.example.com/b.png"]
        assert api.uploads == [f"/storage/v1/object/photos/vehicles/{VIN}/1.png"]
