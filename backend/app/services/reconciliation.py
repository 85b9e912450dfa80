"""
Inventory Reconciliation Engine.

Applies one complete feed snapshot to the local vehicle table:

1. Look up existing records of this provenance by VIN
2. For each feed row with a VIN: mirror photos, merge fields, insert or
   update; a failing row is recorded and skipped
3. Retire active records whose VIN is absent from the snapshot, then
   remove their stored photos

Per-vehicle work runs in a bounded pool. Photo mirroring overlaps freely;
database writes share the run's session, so they are serialized behind a
lock and committed one vehicle at a time.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import VehicleRecordError
from app.core.log_sanitizer import sanitize_log
from app.core.logging import get_logger
from app.db.postgres.models import utcnow
from app.db.postgres.repositories import VehicleRepository
from app.services.feed_client import RemoteVehicle
from app.services.photo_mirror import PhotoMirror

logger = get_logger(__name__)

STATUS_AVAILABLE = "Available"
STATUS_SOLD = "Sold"
DEACTIVATED_BY_SYNC = "sync"

DISABLE_GUARD_ERROR = "disable_guard"

# Fields compared for change detection, besides is_active/status
MERGED_FIELDS = (
    "external_id",
    "stock_number",
    "year",
    "make",
    "model",
    "trim",
    "price",
    "asking_price",
    "compare_price",
    "mileage",
    "mpg",
    "exterior_color",
    "interior_color",
    "transmission",
    "drivetrain",
    "fuel_type",
    "body_style",
    "engine",
    "engine_type",
    "description",
    "images",
    "video_urls",
    "features",
    "ai_detected_features",
    "media",
)


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class RecordError:
    """One non-fatal error collected during a run."""

    error_type: str
    message: str
    vin: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    def to_row(self) -> Dict[str, Any]:
        details = dict(self.details or {})
        if self.vin:
            details.setdefault("vin", self.vin)
        return {
            "error_type": self.error_type,
            "error_message": self.message,
            "vin": self.vin,
            "error_details": details,
        }

    def to_response(self) -> Dict[str, Any]:
        return {"type": self.error_type, "message": self.message, "vin": self.vin}


@dataclass
class ReconcileStats:
    """Counts for one reconciliation pass."""

    processed: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    disabled: int = 0
    photos_copied: int = 0
    photos_cleaned_up: int = 0
    errors: List[RecordError] = field(default_factory=list)

    @property
    def status(self) -> str:
        return "partial" if self.errors else "success"


# =============================================================================
# Field merge
# =============================================================================


def build_vehicle_values(vehicle: RemoteVehicle, images: List[str]) -> Dict[str, Any]:
    """
    Merge a feed record into local column values.

    Feed values win; missing text fields fall back to the documented
    defaults (stock number from the feed id, asking price from price,
    exterior color from color, Automatic, Gasoline).
    """
    return {
        "external_id": vehicle.id,
        "stock_number": vehicle.stock_number or vehicle.id,
        "year": vehicle.year,
        "make": vehicle.make,
        "model": vehicle.model,
        "trim": vehicle.trim or "",
        "price": vehicle.price,
        "asking_price": vehicle.asking_price if vehicle.asking_price is not None else vehicle.price,
        "compare_price": vehicle.compare_price,
        "mileage": vehicle.mileage,
        "mpg": vehicle.mpg or None,
        "exterior_color": vehicle.exterior_color or vehicle.color or "",
        "interior_color": vehicle.interior_color or "",
        "transmission": vehicle.transmission or "Automatic",
        "drivetrain": vehicle.drivetrain or "",
        "fuel_type": vehicle.fuel_type or "Gasoline",
        "body_style": vehicle.body_style or "",
        "engine": vehicle.engine or "",
        "engine_type": vehicle.engine_type or "",
        "description": vehicle.description or "",
        "images": images,
        "video_urls": list(vehicle.video_urls),
        "features": list(vehicle.features),
        "ai_detected_features": (
            vehicle.ai_detected_features.model_dump() if vehicle.ai_detected_features else None
        ),
        "media": [item.model_dump() for item in vehicle.media] if vehicle.media else None,
    }


def _raw_vin(row: Any) -> Optional[str]:
    if isinstance(row, dict):
        vin = row.get("vin")
        if isinstance(vin, str) and vin.strip():
            return vin.strip().upper()
    return None


# =============================================================================
# Reconciliation Engine
# =============================================================================


class ReconciliationEngine:
    """Diff, upsert and disable pass over one feed snapshot."""

    def __init__(
        self,
        db: AsyncSession,
        photo_mirror: PhotoMirror,
        source: Optional[str] = None,
        concurrency: Optional[int] = None,
        max_disable_ratio: Optional[float] = None,
    ):
        """
        Initialize the engine.

        Args:
            db: Session owned by this run
            photo_mirror: Mirror used for copying and cleanup
            source: Provenance tag of synced rows (default VEHICLE_SOURCE)
            concurrency: Vehicles processed at once (default SYNC_CONCURRENCY)
            max_disable_ratio: Largest share of the active set a single run
                may retire; 1.0 disables the guard
        """
        self._db = db
        self._vehicles = VehicleRepository(db)
        self._photo_mirror = photo_mirror
        self._source = source or settings.VEHICLE_SOURCE
        self._concurrency = max(1, concurrency or settings.SYNC_CONCURRENCY)
        self._max_disable_ratio = (
            settings.SYNC_MAX_DISABLE_RATIO if max_disable_ratio is None else max_disable_ratio
        )
        self._write_lock = asyncio.Lock()

    async def reconcile(self, rows: List[Any]) -> ReconcileStats:
        """
        Apply a complete feed snapshot.

        Args:
            rows: Raw feed rows, in feed order

        Returns:
            ReconcileStats with counts and collected errors
        """
        stats = ReconcileStats(processed=len(rows))

        existing_ids = await self._vehicles.map_ids_by_vin(self._source)

        # Every VIN present in the feed protects its record from the disable
        # pass, even when the row itself fails validation.
        incoming_vins = {vin for vin in (_raw_vin(row) for row in rows) if vin}

        vehicles: Dict[str, RemoteVehicle] = {}
        for row in rows:
            try:
                vehicle = self._parse(row)
            except VehicleRecordError as e:
                stats.errors.append(RecordError(e.category, e.message, vin=e.vin))
                continue
            if vehicle.vin in vehicles:
                logger.warning(
                    "Duplicate VIN in feed, last occurrence wins",
                    extra={"vin": vehicle.vin},
                )
            vehicles[vehicle.vin] = vehicle

        semaphore = asyncio.Semaphore(self._concurrency)

        async def worker(vehicle: RemoteVehicle) -> None:
            async with semaphore:
                await self._process(vehicle, existing_ids.get(vehicle.vin), stats)

        await asyncio.gather(*(worker(vehicle) for vehicle in vehicles.values()))

        await self._disable_missing(incoming_vins, stats)

        logger.info(
            "Reconciliation finished",
            extra={
                "processed": stats.processed,
                "created": stats.created,
                "updated": stats.updated,
                "unchanged": stats.unchanged,
                "disabled": stats.disabled,
                "errors": len(stats.errors),
                "photos_copied": stats.photos_copied,
                "photos_cleaned_up": stats.photos_cleaned_up,
            },
        )
        return stats

    # =========================================================================
    # Per-vehicle pass
    # =========================================================================

    def _parse(self, row: Any) -> RemoteVehicle:
        """Validate one raw row; rows without a VIN are rejected."""
        if not isinstance(row, dict):
            raise VehicleRecordError("Feed row is not an object")

        try:
            vehicle = RemoteVehicle.model_validate(row)
        except ValidationError as e:
            fields = ", ".join(".".join(str(loc) for loc in err["loc"]) for err in e.errors())
            raise VehicleRecordError(f"Invalid vehicle record: {fields}", vin=_raw_vin(row)) from e

        if not vehicle.vin:
            raise VehicleRecordError(
                f"Vehicle is missing a VIN (id={sanitize_log(vehicle.id, max_length=64)})"
            )
        return vehicle

    async def _process(
        self,
        vehicle: RemoteVehicle,
        vehicle_id: Optional[str],
        stats: ReconcileStats,
    ) -> None:
        """Mirror, merge and write one vehicle; failures become RecordErrors."""
        vin = vehicle.vin
        try:
            mirror = await self._photo_mirror.mirror(vin, vehicle.photo_list())
            stats.photos_copied += mirror.copied

            async with self._write_lock:
                outcome = await self._upsert(vehicle, vehicle_id, mirror.urls)

            if outcome == "created":
                stats.created += 1
            elif outcome == "updated":
                stats.updated += 1
            else:
                stats.unchanged += 1

        except VehicleRecordError as e:
            logger.warning(
                "Vehicle record failed",
                extra={"vin": vin, "category": e.category, "error": sanitize_log(e.message)},
            )
            stats.errors.append(RecordError(e.category, e.message, vin=vin))
        except Exception as e:
            logger.error(
                "Unexpected error processing vehicle",
                extra={"vin": vin, "error_type": type(e).__name__},
                exc_info=True,
            )
            stats.errors.append(
                RecordError(VehicleRecordError.VALIDATION, f"{type(e).__name__}: {e}", vin=vin)
            )

    async def _upsert(
        self,
        vehicle: RemoteVehicle,
        vehicle_id: Optional[str],
        images: List[str],
    ) -> str:
        """
        Insert or update one record and commit it.

        The stored row is re-read here, under the write lock, so an
        operator's deactivation made after the run started is honoured.

        Returns:
            "created", "updated" or "unchanged"

        Raises:
            VehicleRecordError: The write failed (category database_error)
        """
        values = build_vehicle_values(vehicle, images)
        now = utcnow()

        try:
            record = await self._vehicles.get_current(vehicle_id) if vehicle_id else None

            if record is None:
                await self._vehicles.create(
                    {
                        **values,
                        "source": self._source,
                        "vin": vehicle.vin,
                        "status": STATUS_AVAILABLE,
                        "is_active": True,
                        "deactivated_by": None,
                        "last_synced_at": now,
                        "created_at": now,
                        "updated_at": now,
                    }
                )
                outcome = "created"
            else:
                manually_withdrawn = not record.is_active and record.deactivated_by != DEACTIVATED_BY_SYNC
                if not manually_withdrawn:
                    values.update(
                        is_active=True,
                        status=STATUS_AVAILABLE,
                        deactivated_by=None,
                    )

                changed = {key: value for key, value in values.items() if getattr(record, key) != value}
                for key, value in changed.items():
                    setattr(record, key, value)
                record.last_synced_at = now
                if changed:
                    record.updated_at = now
                await self._db.flush()
                outcome = "updated" if changed else "unchanged"

            await self._db.commit()
            return outcome

        except SQLAlchemyError as e:
            await self._db.rollback()
            raise VehicleRecordError(
                f"Failed to {'update' if vehicle_id else 'insert'} vehicle: {type(e).__name__}",
                category=VehicleRecordError.DATABASE,
                vin=vehicle.vin,
            ) from e

    # =========================================================================
    # Disable pass
    # =========================================================================

    async def _disable_missing(self, incoming_vins: set, stats: ReconcileStats) -> None:
        """Retire active records absent from the snapshot and drop their photos."""
        active = await self._vehicles.list_active(self._source)
        to_disable = [(vehicle_id, vin) for vehicle_id, vin in active if vin not in incoming_vins]

        if not to_disable:
            return

        if not incoming_vins:
            logger.warning(
                "Feed returned no vehicles; every active listing is about to be retired",
                extra={"active_count": len(active), "event": "empty_feed_disable"},
            )

        share = len(to_disable) / len(active)
        if self._max_disable_ratio < 1.0 and share > self._max_disable_ratio:
            message = (
                f"Refusing to retire {len(to_disable)} of {len(active)} active vehicles "
                f"({share:.0%} exceeds the {self._max_disable_ratio:.0%} limit)"
            )
            logger.error(message, extra={"event": DISABLE_GUARD_ERROR})
            stats.errors.append(
                RecordError(
                    DISABLE_GUARD_ERROR,
                    message,
                    details={"would_disable": len(to_disable), "active": len(active)},
                )
            )
            return

        try:
            stats.disabled = await self._vehicles.deactivate_many(
                [vehicle_id for vehicle_id, _ in to_disable], status=STATUS_SOLD
            )
            await self._db.commit()
        except SQLAlchemyError as e:
            await self._db.rollback()
            logger.error("Disable pass failed", extra={"error_type": type(e).__name__}, exc_info=True)
            stats.errors.append(
                RecordError(VehicleRecordError.DATABASE, f"Failed to disable vehicles: {type(e).__name__}")
            )
            return

        logger.info(f"Retired {stats.disabled} vehicles missing from the feed")
        stats.photos_cleaned_up = await self._photo_mirror.cleanup([vin for _, vin in to_disable])
