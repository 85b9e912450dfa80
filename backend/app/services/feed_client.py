"""
Partner Inventory Feed Client.

Pulls the dealer's vehicle listings from the partner's paginated
inventory endpoint:

    GET {base}/inventory?limit=N&page=P  ->  {"vehicles": [...], "pagination": {...}}

Features:
- Async HTTP client with an independent timeout per page request
- Connection-establishment retries with exponential backoff (tenacity);
  HTTP status errors are never retried
- Structured error classification: HTTP status, timeout, network and
  malformed-response failures each raise their own exception type
- Tolerant record ingestion: rows stay raw until the reconciliation
  engine validates them one at a time
"""

import math
import time
from typing import Any, Dict, List, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.core.config import settings
from app.core.exceptions import (
    UpstreamHttpError,
    UpstreamMalformedResponseError,
    UpstreamNetworkError,
    UpstreamTimeoutError,
)
from app.core.log_sanitizer import redact_url, sanitize_log
from app.core.logging import PerformanceLogger, get_logger, log_external_api_call
from app.core.metrics import track_external_api_call

logger = get_logger(__name__)

SERVICE_NAME = "partner_feed"


# =============================================================================
# Pydantic Models
# =============================================================================


class DetectedFeatures(BaseModel):
    """Canonical shape of AI-detected feature annotations."""

    confirmed: List[str] = Field(default_factory=list)
    suggested: List[str] = Field(default_factory=list)


class MediaItem(BaseModel):
    """Structured media entry (photo, video, 360 spin)."""

    model_config = ConfigDict(extra="allow")

    type: str
    url: str
    thumbnail: Optional[str] = None


class RemoteVehicle(BaseModel):
    """One vehicle record as published by the partner feed."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: Optional[str] = Field(None, description="Partner-side identifier")
    vin: Optional[str] = Field(None, description="Natural key for reconciliation")
    stock_number: Optional[str] = None
    year: Optional[int] = None
    make: Optional[str] = None
    model: Optional[str] = None
    trim: Optional[str] = None

    price: Optional[float] = None
    asking_price: Optional[float] = None
    compare_price: Optional[float] = None

    mileage: Optional[int] = None
    mpg: Optional[Dict[str, Any]] = None
    color: Optional[str] = None
    exterior_color: Optional[str] = None
    interior_color: Optional[str] = None
    transmission: Optional[str] = None
    drivetrain: Optional[str] = None
    fuel_type: Optional[str] = None
    body_style: Optional[str] = None
    engine: Optional[str] = None
    engine_type: Optional[str] = None
    description: Optional[str] = None

    primary_photo_url: Optional[str] = None
    photo_urls: List[str] = Field(default_factory=list)
    video_urls: List[str] = Field(default_factory=list)
    features: List[str] = Field(default_factory=list)
    ai_detected_features: Optional[DetectedFeatures] = None
    media: Optional[List[MediaItem]] = None

    @field_validator("vin", mode="before")
    @classmethod
    def strip_vin(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("year", "mileage", mode="before")
    @classmethod
    def round_whole_numbers(cls, v: Any) -> Any:
        # Odometer readings occasionally arrive with a fractional part
        if isinstance(v, float) and math.isfinite(v):
            return round(v)
        return v

    @field_validator("photo_urls", "video_urls", "features", mode="before")
    @classmethod
    def drop_empty_entries(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, list):
            return [item for item in v if item not in (None, "")]
        return v

    @field_validator("ai_detected_features", mode="before")
    @classmethod
    def normalize_detected_features(cls, v: Union[Dict[str, Any], List[str], None]) -> Any:
        """Accept either {confirmed, suggested} or a flat list (treated as confirmed)."""
        if v is None:
            return None
        if isinstance(v, list):
            return {"confirmed": [item for item in v if item], "suggested": []}
        return v

    def photo_list(self) -> List[str]:
        """Ordered remote photo URLs, falling back to the primary photo."""
        if self.photo_urls:
            return list(self.photo_urls)
        if self.primary_photo_url:
            return [self.primary_photo_url]
        return []


class Pagination(BaseModel):
    """Pagination block of a feed page."""

    page: int
    limit: int
    total: int = Field(..., ge=0)
    total_pages: int = Field(..., ge=0)


class FeedPage(BaseModel):
    """Envelope of one feed page. Rows are validated later, one by one."""

    vehicles: List[Any] = Field(default_factory=list)
    pagination: Pagination

    @field_validator("vehicles", mode="before")
    @classmethod
    def default_vehicles(cls, v: Any) -> Any:
        return [] if v is None else v


class FeedSnapshot(BaseModel):
    """The complete feed for one run."""

    vehicles: List[Any]
    pagination: Pagination
    pages_fetched: int


# =============================================================================
# Feed Client
# =============================================================================


class FeedClient:
    """
    Async client for one dealer's partner inventory endpoint.

    Usage:
        async with FeedClient(base_url, api_key) as client:
            snapshot = await client.fetch_all()
    """

    API_KEY_HEADER = "X-API-Key"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        page_size: Optional[int] = None,
        timeout: Optional[float] = None,
        test_timeout: Optional[float] = None,
        connect_attempts: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the feed client.

        Args:
            base_url: Normalized feed base URL (no trailing slash)
            api_key: Decrypted partner credential
            page_size: Records per page (default FEED_PAGE_SIZE)
            timeout: Per-page timeout in seconds for full runs
            test_timeout: Timeout for the connectivity probe
            connect_attempts: Attempts for connection establishment
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self._endpoint = f"{base_url.rstrip('/')}{settings.FEED_INVENTORY_PATH}"
        self._api_key = api_key
        self._page_size = page_size or settings.FEED_PAGE_SIZE
        self._timeout = timeout or settings.FEED_TIMEOUT_SECONDS
        self._test_timeout = test_timeout or settings.FEED_TEST_TIMEOUT_SECONDS
        self._connect_attempts = connect_attempts or settings.FEED_CONNECT_ATTEMPTS
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def endpoint(self) -> str:
        return self._endpoint

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
                headers={
                    self.API_KEY_HEADER: self._api_key,
                    "User-Agent": f"{settings.PROJECT_NAME}/{settings.VERSION}",
                    "Accept": "application/json",
                },
            )
        return self._client

    async def _send(self, params: Dict[str, Any], timeout: float) -> httpx.Response:
        """GET the inventory endpoint, retrying only connection establishment."""
        client = await self._get_client()
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(httpx.ConnectError),
            stop=stop_after_attempt(self._connect_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "Retrying partner feed connection",
                        extra={"attempt": attempt.retry_state.attempt_number},
                    )
                return await client.get(self._endpoint, params=params, timeout=timeout)
        raise AssertionError("unreachable")  # pragma: no cover

    async def fetch_page(
        self,
        page: int,
        limit: Optional[int] = None,
        timeout: Optional[float] = None,
        extra_params: Optional[Dict[str, Any]] = None,
    ) -> FeedPage:
        """
        Fetch and validate one page.

        Args:
            page: 1-based page number
            limit: Page size (default: client page size)
            timeout: Request timeout in seconds (default: client timeout)
            extra_params: Additional query parameters (sorting)

        Returns:
            Parsed FeedPage

        Raises:
            UpstreamHttpError: Non-2xx response
            UpstreamTimeoutError: No response within the timeout
            UpstreamNetworkError: Connection, DNS or protocol failure
            UpstreamMalformedResponseError: 2xx with an unusable body
        """
        params: Dict[str, Any] = {"limit": limit or self._page_size, "page": page}
        if extra_params:
            params.update(extra_params)
        timeout = timeout or self._timeout

        url = redact_url(str(httpx.URL(self._endpoint, params=params)))
        start = time.perf_counter()

        with track_external_api_call(SERVICE_NAME, settings.FEED_INVENTORY_PATH) as ctx:
            try:
                response = await self._send(params, timeout)
            except httpx.TimeoutException as e:
                elapsed_ms = (time.perf_counter() - start) * 1000
                log_external_api_call(
                    SERVICE_NAME, url, "GET", 0, elapsed_ms, success=False, error="timeout"
                )
                raise UpstreamTimeoutError(url, timeout, elapsed_ms, original_error=e) from e
            except httpx.TransportError as e:
                elapsed_ms = (time.perf_counter() - start) * 1000
                log_external_api_call(
                    SERVICE_NAME, url, "GET", 0, elapsed_ms, success=False, error=type(e).__name__
                )
                raise UpstreamNetworkError(url, e) from e

            ctx["status_code"] = response.status_code

        elapsed_ms = (time.perf_counter() - start) * 1000
        log_external_api_call(
            SERVICE_NAME,
            url,
            "GET",
            response.status_code,
            elapsed_ms,
            success=response.is_success,
        )

        if not response.is_success:
            preview = response.text[: settings.FEED_BODY_PREVIEW_CHARS]
            logger.error(
                "Partner feed returned an error status",
                extra={
                    "upstream_status": response.status_code,
                    "url": url,
                    "body_preview": sanitize_log(preview, max_length=500),
                },
            )
            raise UpstreamHttpError(response.status_code, preview, url, elapsed_ms=elapsed_ms)

        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamMalformedResponseError(
                url,
                reason=f"invalid JSON: {e}",
                body_preview=response.text[: settings.FEED_BODY_PREVIEW_CHARS],
            ) from e

        if not isinstance(payload, dict):
            raise UpstreamMalformedResponseError(url, reason="response body is not a JSON object")

        try:
            return FeedPage.model_validate(payload)
        except ValidationError as e:
            raise UpstreamMalformedResponseError(
                url,
                reason=f"unexpected response shape: {e.error_count()} validation error(s)",
                body_preview=sanitize_log(str(e.errors(include_url=False)), max_length=500),
            ) from e

    async def fetch_all(self) -> FeedSnapshot:
        """
        Fetch every page of the feed.

        Nothing is returned until the last page has arrived, so a failure
        on any page aborts the whole run before a single row is applied.

        Returns:
            FeedSnapshot with every raw row in feed order
        """
        vehicles: List[Any] = []
        page = 1

        while True:
            with PerformanceLogger("feed_page", page=page):
                feed_page = await self.fetch_page(page)
            vehicles.extend(feed_page.vehicles)

            logger.info(
                f"Fetched feed page {page}/{feed_page.pagination.total_pages}",
                extra={
                    "page": page,
                    "total_pages": feed_page.pagination.total_pages,
                    "received": len(feed_page.vehicles),
                    "total": feed_page.pagination.total,
                },
            )

            if page >= feed_page.pagination.total_pages:
                break
            page += 1

        return FeedSnapshot(
            vehicles=vehicles,
            pagination=feed_page.pagination,
            pages_fetched=page,
        )

    async def probe(self) -> Dict[str, Any]:
        """
        Connectivity test: fetch a single record with the long timeout.

        Returns:
            {"success", "message", "vehicle_count", "pagination"}
        """
        feed_page = await self.fetch_page(
            1,
            limit=1,
            timeout=self._test_timeout,
            extra_params={"sort_by": "created_at", "sort_order": "desc"},
        )
        return {
            "success": True,
            "message": "Connected to partner feed",
            "vehicle_count": feed_page.pagination.total,
            "pagination": feed_page.pagination.model_dump(),
        }

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "FeedClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
