"""
Object storage backends for mirrored vehicle photos.

Provides:
- ObjectStorage: the interface the photo mirror depends on
- SupabaseStorage: Supabase-compatible storage REST API over httpx
- InMemoryObjectStorage: process-local backend for development and tests
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import httpx

from app.core.config import settings
from app.core.logging import get_logger
from app.core.metrics import track_external_api_call

logger = get_logger(__name__)


class StorageError(Exception):
    """Object storage request failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


# =============================================================================
# Storage Interface
# =============================================================================


class ObjectStorage:
    """Abstract base for object storage backends. Paths are bucket-relative."""

    async def exists(self, path: str) -> bool:
        raise NotImplementedError

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        """Store an object (overwriting) and return its public URL."""
        raise NotImplementedError

    async def list(self, prefix: str) -> List[str]:
        """Full paths of the objects directly under a folder prefix."""
        raise NotImplementedError

    async def delete_many(self, paths: List[str]) -> int:
        """Delete objects and return how many were removed."""
        raise NotImplementedError

    def public_url(self, path: str) -> str:
        raise NotImplementedError

    async def close(self) -> None:
        return None


# =============================================================================
# In-memory backend
# =============================================================================


class InMemoryObjectStorage(ObjectStorage):
    """Simple in-memory storage implementation."""

    def __init__(self, base_url: str = "memory://storage"):
        self._base_url = base_url.rstrip("/")
        self._objects: Dict[str, Tuple[bytes, str]] = {}
        self._lock = asyncio.Lock()
        self.upload_count = 0

    async def exists(self, path: str) -> bool:
        async with self._lock:
            return path in self._objects

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        async with self._lock:
            self._objects[path] = (data, content_type)
            self.upload_count += 1
        return self.public_url(path)

    async def list(self, prefix: str) -> List[str]:
        folder = prefix.rstrip("/") + "/"
        async with self._lock:
            return sorted(
                path
                for path in self._objects
                if path.startswith(folder) and "/" not in path[len(folder):]
            )

    async def delete_many(self, paths: List[str]) -> int:
        removed = 0
        async with self._lock:
            for path in paths:
                if self._objects.pop(path, None) is not None:
                    removed += 1
        return removed

    def public_url(self, path: str) -> str:
        return f"{self._base_url}/{path}"

    def paths(self) -> List[str]:
        return sorted(self._objects)


# =============================================================================
# Supabase storage backend
# =============================================================================


class SupabaseStorage(ObjectStorage):
    """
    Client for the Supabase storage REST API.

    Public URLs have the form
    ``{url}/storage/v1/object/public/{bucket}/{path}``.
    """

    LIST_PAGE_SIZE = 1000

    def __init__(
        self,
        url: Optional[str] = None,
        service_key: Optional[str] = None,
        bucket: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._url = (url or settings.STORAGE_URL).rstrip("/")
        self._service_key = service_key if service_key is not None else settings.STORAGE_SERVICE_KEY
        self._bucket = bucket or settings.STORAGE_BUCKET
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=f"{self._url}/storage/v1",
                transport=self._transport,
                timeout=httpx.Timeout(self._timeout),
                headers={
                    "Authorization": f"Bearer {self._service_key}",
                    "apikey": self._service_key,
                },
            )
        return self._client

    async def _request(self, operation: str, method: str, endpoint: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        with track_external_api_call("storage", operation) as ctx:
            response = await client.request(method, endpoint, **kwargs)
            ctx["status_code"] = response.status_code
        if not response.is_success:
            raise StorageError(
                f"Storage {method} {endpoint} failed: {response.status_code} {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response, operation: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise StorageError(
                f"Storage {operation} returned a non-JSON body: {response.text[:200]}",
                status_code=response.status_code,
            ) from e

    async def list(self, prefix: str) -> List[str]:
        folder = prefix.rstrip("/")
        paths: List[str] = []
        offset = 0
        while True:
            response = await self._request(
                "list",
                "POST",
                f"/object/list/{self._bucket}",
                json={"prefix": folder, "limit": self.LIST_PAGE_SIZE, "offset": offset},
            )
            entries = self._json(response, "list") or []
            if not isinstance(entries, list) or not all(isinstance(entry, dict) for entry in entries):
                raise StorageError(f"Storage list returned an unexpected payload: {type(entries).__name__}")
            paths.extend(
                f"{folder}/{entry['name']}"
                for entry in entries
                if isinstance(entry.get("name"), str) and entry["name"]
            )
            if len(entries) < self.LIST_PAGE_SIZE:
                return paths
            offset += self.LIST_PAGE_SIZE

    async def exists(self, path: str) -> bool:
        client = await self._get_client()
        with track_external_api_call("storage", "exists") as ctx:
            response = await client.head(f"/object/public/{self._bucket}/{path}")
            ctx["status_code"] = response.status_code
        if response.status_code in (400, 404):
            return False
        if not response.is_success:
            raise StorageError(
                f"Storage HEAD {path} failed: {response.status_code}",
                status_code=response.status_code,
            )
        return True

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        await self._request(
            "upload",
            "POST",
            f"/object/{self._bucket}/{path}",
            content=data,
            headers={"Content-Type": content_type, "x-upsert": "true"},
        )
        return self.public_url(path)

    async def delete_many(self, paths: List[str]) -> int:
        if not paths:
            return 0
        response = await self._request(
            "delete",
            "DELETE",
            f"/object/{self._bucket}",
            json={"prefixes": paths},
        )
        removed = self._json(response, "delete")
        return len(removed) if isinstance(removed, list) else len(paths)

    def public_url(self, path: str) -> str:
        return f"{self._url}/storage/v1/object/public/{self._bucket}/{path}"

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None


# =============================================================================
# Service Instance Factory
# =============================================================================

_storage_instance: ObjectStorage | None = None


def get_object_storage() -> ObjectStorage:
    """
    Get or create the storage backend.

    Falls back to the in-memory backend when no service key is configured.
    """
    global _storage_instance
    if _storage_instance is None:
        if settings.STORAGE_SERVICE_KEY:
            _storage_instance = SupabaseStorage()
        else:
            logger.warning("STORAGE_SERVICE_KEY not set, using in-memory photo storage")
            _storage_instance = InMemoryObjectStorage()
    return _storage_instance


async def close_object_storage() -> None:
    """Close the global storage instance."""
    global _storage_instance
    if _storage_instance is not None:
        await _storage_instance.close()
        _storage_instance = None
