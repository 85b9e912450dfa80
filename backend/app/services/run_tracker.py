"""
Sync run audit trail.

A run row is inserted as ``pending`` before any feed traffic so a crashed
run still leaves a trace, and is finalized exactly once as ``success``,
``partial`` or ``failure``.
"""

import time
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import RunTrackingError
from app.core.logging import bind_sync_context, get_logger
from app.core.metrics import track_sync_run
from app.db.postgres.models import utcnow
from app.db.postgres.repositories import (
    DealerConfigRepository,
    SyncErrorRepository,
    SyncRunRepository,
)
from app.services.reconciliation import ReconcileStats, RecordError

logger = get_logger(__name__)

API_ERROR = "api_error"


class RunTracker:
    """Opens, accumulates and finalizes one SyncRun row."""

    def __init__(
        self,
        db: AsyncSession,
        dealer_id: str,
        trigger_source: str,
        config_id: Optional[str] = None,
        invoked_by_user_id: Optional[str] = None,
        started_at: Optional[float] = None,
    ):
        self._db = db
        self._runs = SyncRunRepository(db)
        self._errors = SyncErrorRepository(db)
        self._configs = DealerConfigRepository(db)
        self.dealer_id = dealer_id
        self.trigger_source = trigger_source
        self.config_id = config_id
        self.invoked_by_user_id = invoked_by_user_id
        self.run_id: Optional[str] = None
        self.finalized = False
        self._start = started_at if started_at is not None else time.perf_counter()

    @property
    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self._start) * 1000)

    async def open(self) -> str:
        """
        Insert the pending run row and commit it.

        Raises:
            RunTrackingError: The row could not be written
        """
        try:
            run = await self._runs.create(
                {
                    "config_id": self.config_id,
                    "dealer_id": self.dealer_id,
                    "status": "pending",
                    "trigger_source": self.trigger_source,
                    "invoked_by_user_id": self.invoked_by_user_id,
                    "started_at": utcnow(),
                }
            )
            await self._db.commit()
        except SQLAlchemyError as e:
            await self._db.rollback()
            logger.error("Failed to open sync run", exc_info=True)
            raise RunTrackingError(original_error=e) from e

        self.run_id = run.id
        bind_sync_context(sync_run_id=run.id)
        logger.info("Sync run opened", extra={"trigger_source": self.trigger_source})
        return run.id

    async def complete(self, stats: ReconcileStats) -> int:
        """
        Finalize as success or partial and persist the first errors.

        Returns:
            Run duration in milliseconds
        """
        duration_ms = self.elapsed_ms
        completed_at = utcnow()
        status = stats.status

        await self._runs.finalize(
            self.run_id,
            {
                "status": status,
                "records_created": stats.created,
                "records_updated": stats.updated,
                "records_unchanged": stats.unchanged,
                "records_disabled": stats.disabled,
                "total_records_processed": stats.processed,
                "error_count": len(stats.errors),
                "photos_copied": stats.photos_copied,
                "photos_cleaned_up": stats.photos_cleaned_up,
                "duration_ms": duration_ms,
                "completed_at": completed_at,
            },
        )
        await self._persist_errors(stats.errors)
        if self.config_id:
            await self._configs.stamp_last_sync(self.config_id, completed_at)
        await self._db.commit()
        self.finalized = True

        track_sync_run(
            status=status,
            trigger_source=self.trigger_source,
            duration_seconds=duration_ms / 1000,
            dealer_id=self.dealer_id,
            created=stats.created,
            updated=stats.updated,
            unchanged=stats.unchanged,
            disabled=stats.disabled,
            errors=len(stats.errors),
            photos_copied=stats.photos_copied,
            photos_cleaned_up=stats.photos_cleaned_up,
        )
        logger.info(
            f"Sync run finished with status {status}",
            extra={"status": status, "duration_ms": duration_ms, "errors": len(stats.errors)},
        )
        return duration_ms

    async def fail(self, error: BaseException) -> int:
        """
        Finalize as failure after a fatal error.

        Never raises; a tracker that cannot write logs the problem instead.

        Returns:
            Run duration in milliseconds
        """
        duration_ms = self.elapsed_ms
        if self.run_id is None or self.finalized:
            return duration_ms

        message = getattr(error, "message", None) or str(error) or type(error).__name__
        try:
            await self._db.rollback()
            await self._runs.finalize(
                self.run_id,
                {
                    "status": "failure",
                    "duration_ms": duration_ms,
                    "error_count": 1,
                    "completed_at": utcnow(),
                },
            )
            await self._persist_errors(
                [
                    RecordError(
                        API_ERROR,
                        message,
                        details={
                            "step": getattr(error, "step", "finalize"),
                            "error_class": type(error).__name__,
                        },
                    )
                ]
            )
            await self._db.commit()
            self.finalized = True
        except SQLAlchemyError:
            logger.error("Failed to finalize sync run as failure", exc_info=True)
            return duration_ms

        track_sync_run(
            status="failure",
            trigger_source=self.trigger_source,
            duration_seconds=duration_ms / 1000,
            dealer_id=self.dealer_id,
        )
        logger.error(
            "Sync run failed",
            extra={"duration_ms": duration_ms, "error_class": type(error).__name__},
        )
        return duration_ms

    async def _persist_errors(self, errors: List[RecordError]) -> None:
        capped = errors[: settings.SYNC_ERROR_PERSIST_LIMIT]
        if len(errors) > len(capped):
            logger.info(
                f"Persisting {len(capped)} of {len(errors)} sync errors",
                extra={"error_count": len(errors)},
            )
        await self._errors.bulk_create(self.run_id, [error.to_row() for error in capped])
