"""
Photo mirroring between the partner's image host and local storage.

Each remote photo at position i of a vehicle is stored as
``vehicles/{vin}/{i}.{ext}``. Mirroring is idempotent per index: when an
object for that index already exists, its public URL is reused and nothing
is downloaded. Failures never propagate; the remote URL is kept instead.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

from app.core.config import settings
from app.core.exceptions import PhotoMirrorFailure
from app.core.log_sanitizer import sanitize_log
from app.core.logging import PerformanceLogger, get_logger
from app.core.metrics import track_photo_failure
from app.services.object_storage import ObjectStorage, StorageError

logger = get_logger(__name__)

PHOTO_FOLDER = "vehicles"
DEFAULT_EXTENSION = "jpg"

CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}

_URL_EXTENSION = re.compile(r"\.(jpe?g|png|webp|gif)(?:[?#]|$)", re.IGNORECASE)


def file_extension(url: str, content_type: Optional[str] = None) -> str:
    """Extension from content-type, else from the URL, else "jpg"."""
    if content_type:
        mime = content_type.split(";", 1)[0].strip().lower()
        if mime in CONTENT_TYPE_EXTENSIONS:
            return CONTENT_TYPE_EXTENSIONS[mime]
    match = _URL_EXTENSION.search(url)
    if match:
        ext = match.group(1).lower()
        return "jpg" if ext in ("jpeg", "jpg") else ext
    return DEFAULT_EXTENSION


def vehicle_folder(vin: str) -> str:
    return f"{PHOTO_FOLDER}/{vin}"


@dataclass
class MirrorResult:
    """Outcome of mirroring one vehicle's photos."""

    urls: List[str] = field(default_factory=list)
    copied: int = 0
    reused: int = 0
    failed: int = 0


class PhotoMirror:
    """Copies remote vehicle photos into object storage."""

    def __init__(
        self,
        storage: ObjectStorage,
        download_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._storage = storage
        self._download_timeout = download_timeout or settings.PHOTO_DOWNLOAD_TIMEOUT_SECONDS
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                timeout=httpx.Timeout(self._download_timeout),
                follow_redirects=True,
                limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
            )
        return self._client

    async def _existing_by_index(self, vin: str) -> Optional[Dict[str, str]]:
        """Map index stem ("0", "1", ...) to the stored path; None when listing fails."""
        try:
            paths = await self._storage.list(vehicle_folder(vin))
        except (StorageError, httpx.HTTPError) as e:
            logger.warning(
                "Could not list stored photos; checking each photo individually",
                extra={"vin": vin, "error": sanitize_log(str(e))},
            )
            return None

        existing: Dict[str, str] = {}
        for path in paths:
            stem = path.rsplit("/", 1)[-1].split(".", 1)[0]
            existing.setdefault(stem, path)
        return existing

    async def _stored_path_for(self, vin: str, index: int, source_url: str) -> Optional[str]:
        """Check the path implied by the source URL's extension."""
        path = f"{vehicle_folder(vin)}/{index}.{file_extension(source_url)}"
        try:
            return path if await self._storage.exists(path) else None
        except (StorageError, httpx.HTTPError):
            return None

    async def _copy(self, vin: str, index: int, source_url: str) -> str:
        """Download one photo and upload it. Returns the public URL."""
        client = await self._get_client()
        try:
            response = await client.get(source_url)
        except httpx.HTTPError as e:
            raise PhotoMirrorFailure(f"download failed: {type(e).__name__}", source_url) from e

        if not response.is_success:
            raise PhotoMirrorFailure(f"download returned {response.status_code}", source_url)

        content_type = response.headers.get("content-type") or "image/jpeg"
        path = f"{vehicle_folder(vin)}/{index}.{file_extension(source_url, content_type)}"

        try:
            return await self._storage.upload(path, response.content, content_type.split(";", 1)[0])
        except (StorageError, httpx.HTTPError) as e:
            raise PhotoMirrorFailure(f"upload failed: {e}", source_url) from e

    @PerformanceLogger.track("photo_mirror", warn_threshold_ms=15000.0)
    async def mirror(self, vin: str, source_urls: List[str]) -> MirrorResult:
        """
        Mirror a vehicle's photos.

        Args:
            vin: Vehicle VIN, used as the storage folder
            source_urls: Ordered remote photo URLs

        Returns:
            MirrorResult with one URL per input URL, in order
        """
        result = MirrorResult()
        if not source_urls:
            return result

        existing = await self._existing_by_index(vin)

        for index, source_url in enumerate(source_urls):
            if existing is None:
                stored_path = await self._stored_path_for(vin, index, source_url)
            else:
                stored_path = existing.get(str(index))
            if stored_path:
                result.urls.append(self._storage.public_url(stored_path))
                result.reused += 1
                continue

            try:
                result.urls.append(await self._copy(vin, index, source_url))
                result.copied += 1
            except PhotoMirrorFailure as e:
                logger.warning(
                    "Photo copy failed, keeping remote URL",
                    extra={
                        "vin": vin,
                        "index": index,
                        "source_url": sanitize_log(e.source_url),
                        "reason": e.message,
                    },
                )
                track_photo_failure()
                result.urls.append(source_url)
                result.failed += 1

        return result

    async def cleanup(self, vins: List[str]) -> int:
        """
        Delete every stored photo of the given vehicles.

        Failures are logged per VIN and never raised.

        Returns:
            Number of objects removed
        """
        removed = 0
        for vin in vins:
            try:
                paths = await self._storage.list(vehicle_folder(vin))
                if paths:
                    count = await self._storage.delete_many(paths)
                    removed += count
                    logger.info(f"Removed {count} photos", extra={"vin": vin})
            except (StorageError, httpx.HTTPError) as e:
                logger.warning(
                    "Photo cleanup failed",
                    extra={"vin": vin, "error": sanitize_log(str(e))},
                )
        return removed

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
