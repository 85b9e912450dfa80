"""
Inventory Sync Service - orchestrates one synchronization run.

Flow for a live run:
1. Load the dealer configuration and decrypt the partner credential
2. Open the SyncRun audit row
3. Fetch the complete feed (every page, before anything is applied)
4. Reconcile: per-vehicle photo mirror and upsert, then the disable pass
5. Finalize the run and build the response body

Any fatal error after step 2 finalizes the run as ``failure`` before it is
re-raised to the caller.
"""

from __future__ import annotations

import time
from typing import Any, Dict, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import DealerSyncException, ErrorCode
from app.core.logging import bind_sync_context, get_logger
from app.core.security import CredentialCipher
from app.services.config_loader import ConfigLoader, FeedConfig
from app.services.feed_client import FeedClient
from app.services.object_storage import ObjectStorage, get_object_storage
from app.services.photo_mirror import PhotoMirror
from app.services.reconciliation import ReconcileStats, ReconciliationEngine
from app.services.run_tracker import RunTracker
from app.services.trigger_auth import TriggerContext

logger = get_logger(__name__)


class InventorySyncService:
    """
    Runs inventory synchronization for one dealer.

    Collaborators that talk to the network are injectable so tests can
    substitute ``httpx.MockTransport`` and in-memory storage.
    """

    def __init__(
        self,
        db: AsyncSession,
        storage: Optional[ObjectStorage] = None,
        cipher: Optional[CredentialCipher] = None,
        feed_transport: Optional[httpx.AsyncBaseTransport] = None,
        photo_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the service.

        Args:
            db: Session owned by this run
            storage: Photo storage backend (default: global backend)
            cipher: Credential cipher (default: configured cipher)
            feed_transport: Optional transport for the partner feed client
            photo_transport: Optional transport for photo downloads
        """
        self._db = db
        self._storage = storage
        self._config_loader = ConfigLoader(db, cipher)
        self._feed_transport = feed_transport
        self._photo_transport = photo_transport

    @property
    def storage(self) -> ObjectStorage:
        if self._storage is None:
            self._storage = get_object_storage()
        return self._storage

    def _feed_client(self, config: FeedConfig) -> FeedClient:
        return FeedClient(config.base_url, config.api_key, transport=self._feed_transport)

    # =========================================================================
    # Entry point
    # =========================================================================

    async def run(self, trigger: TriggerContext, test_only: bool = False) -> Dict[str, Any]:
        """
        Execute a sync run (or a connectivity probe).

        Args:
            trigger: Authenticated trigger context
            test_only: Fetch a single record and stop; no local state changes

        Returns:
            Response body for the caller

        Raises:
            DealerSyncException: Any fatal error, with ``sync_run_id`` set when
                a run row had been opened
        """
        started = time.perf_counter()
        bind_sync_context(dealer_id=trigger.dealer_id, trigger_source=trigger.trigger_source)

        config = await self._config_loader.load(trigger.dealer_id)

        if test_only:
            return await self._probe(config)

        tracker = RunTracker(
            self._db,
            dealer_id=trigger.dealer_id,
            trigger_source=trigger.trigger_source,
            config_id=config.config_id,
            invoked_by_user_id=trigger.invoked_by_user_id,
            started_at=started,
        )
        await tracker.open()

        try:
            stats = await self._sync(config)
            duration_ms = await tracker.complete(stats)
        except DealerSyncException as e:
            await tracker.fail(e)
            e.sync_run_id = tracker.run_id
            raise
        except Exception as e:
            await tracker.fail(e)
            logger.error("Unexpected error during sync run", exc_info=True)
            wrapped = DealerSyncException(
                message=f"Sync run failed: {type(e).__name__}",
                code=ErrorCode.INTERNAL_ERROR,
                step="finalize",
                details={"error_class": type(e).__name__},
            )
            wrapped.sync_run_id = tracker.run_id
            raise wrapped from e

        return self._build_response(trigger, tracker.run_id, stats, duration_ms)

    async def _probe(self, config: FeedConfig) -> Dict[str, Any]:
        async with self._feed_client(config) as client:
            result = await client.probe()
        logger.info(
            "Connectivity test succeeded",
            extra={"vehicle_count": result["vehicle_count"]},
        )
        return result

    async def _sync(self, config: FeedConfig) -> ReconcileStats:
        async with self._feed_client(config) as client:
            snapshot = await client.fetch_all()

        logger.info(
            f"Fetched {len(snapshot.vehicles)} vehicles in {snapshot.pages_fetched} page(s)",
            extra={"total": snapshot.pagination.total, "pages": snapshot.pages_fetched},
        )

        photo_mirror = PhotoMirror(self.storage, transport=self._photo_transport)
        try:
            engine = ReconciliationEngine(self._db, photo_mirror)
            return await engine.reconcile(snapshot.vehicles)
        finally:
            await photo_mirror.close()

    @staticmethod
    def _build_response(
        trigger: TriggerContext,
        run_id: Optional[str],
        stats: ReconcileStats,
        duration_ms: int,
    ) -> Dict[str, Any]:
        return {
            "success": True,
            "status": stats.status,
            "vehicles_synced": stats.processed,
            "records_created": stats.created,
            "records_updated": stats.updated,
            "records_unchanged": stats.unchanged,
            "records_disabled": stats.disabled,
            "photos_copied": stats.photos_copied,
            "photos_cleaned_up": stats.photos_cleaned_up,
            "errors": [
                error.to_response() for error in stats.errors[: settings.SYNC_ERROR_RESPONSE_LIMIT]
            ],
            "error_count": len(stats.errors),
            "duration_ms": duration_ms,
            "sync_run_id": run_id,
            "trigger_source": trigger.trigger_source,
            "dealer_id": trigger.dealer_id,
        }


# =============================================================================
# Service Factory Functions
# =============================================================================


async def get_inventory_sync_service(db: AsyncSession) -> InventorySyncService:
    """
    Get an InventorySyncService instance.

    Usage:
        @router.post("/run")
        async def run(db: AsyncSession = Depends(get_db)):
            service = await get_inventory_sync_service(db)
            return await service.run(trigger)
    """
    return InventorySyncService(db)
