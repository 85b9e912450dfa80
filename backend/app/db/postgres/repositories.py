"""
Repository pattern implementations for database operations.

Repositories flush but never commit; the caller owns the transaction.
The reconciliation engine commits once per vehicle so a failed row
cannot roll back its siblings.
"""

from datetime import datetime
from typing import Any, Generic, TypeVar

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.db.postgres.models import (
    AdminUser,
    Base,
    DealerApiConfig,
    InternalSecret,
    SyncError,
    SyncRun,
    Vehicle,
    utcnow,
)

# Generic type for models
ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """
    Base repository with common CRUD operations.

    Attributes:
        model: The SQLAlchemy model class.
        db: The async database session.
    """

    def __init__(self, model: type[ModelType], db: AsyncSession) -> None:
        self.model = model
        self.db = db

    async def get(self, id: Any) -> ModelType | None:
        """Get a single record by ID."""
        result = await self.db.execute(select(self.model).where(self.model.id == id))  # type: ignore[attr-defined]
        return result.scalar_one_or_none()

    async def get_all(self, skip: int = 0, limit: int = 100) -> list[ModelType]:
        """Get all records with pagination."""
        result = await self.db.execute(select(self.model).offset(skip).limit(limit))
        return list(result.scalars().all())

    async def create(self, obj_in: dict) -> ModelType:
        """Create a new record."""
        db_obj = self.model(**obj_in)
        self.db.add(db_obj)
        await self.db.flush()
        return db_obj

    async def update(self, id: Any, obj_in: dict) -> ModelType | None:
        """Update an existing record."""
        db_obj = await self.get(id)
        if db_obj:
            for key, value in obj_in.items():
                setattr(db_obj, key, value)
            await self.db.flush()
        return db_obj

    async def delete(self, id: Any) -> bool:
        """Delete a record."""
        db_obj = await self.get(id)
        if db_obj:
            await self.db.delete(db_obj)
            await self.db.flush()
            return True
        return False


class DealerConfigRepository(BaseRepository[DealerApiConfig]):
    """Repository for partner feed configuration."""

    def __init__(self, db: AsyncSession) -> None:
        super().__init__(DealerApiConfig, db)

    async def get_by_dealer(self, dealer_id: str) -> DealerApiConfig | None:
        result = await self.db.execute(
            select(DealerApiConfig).where(DealerApiConfig.dealer_id == dealer_id)
        )
        return result.scalar_one_or_none()

    async def first_enabled(self) -> DealerApiConfig | None:
        """Oldest enabled configuration, for single-tenant scheduled runs."""
        result = await self.db.execute(
            select(DealerApiConfig)
            .where(DealerApiConfig.is_enabled.is_(True))
            .order_by(DealerApiConfig.created_at, DealerApiConfig.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def save(self, dealer_id: str, values: dict[str, Any]) -> DealerApiConfig:
        """Insert or update the configuration of one dealer."""
        config = await self.get_by_dealer(dealer_id)
        if config is None:
            return await self.create({"dealer_id": dealer_id, **values})
        for key, value in values.items():
            setattr(config, key, value)
        await self.db.flush()
        return config

    async def stamp_last_sync(self, config_id: str, when: datetime) -> None:
        await self.db.execute(
            update(DealerApiConfig)
            .where(DealerApiConfig.id == config_id)
            .values(last_sync_at=when)
        )


class AdminUserRepository(BaseRepository[AdminUser]):
    """Repository for admin lookups by session subject."""

    def __init__(self, db: AsyncSession) -> None:
        super().__init__(AdminUser, db)


class InternalSecretRepository(BaseRepository[InternalSecret]):
    """Repository for stored shared secrets."""

    def __init__(self, db: AsyncSession) -> None:
        super().__init__(InternalSecret, db)

    async def get_value(self, key: str) -> str | None:
        result = await self.db.execute(select(InternalSecret.value).where(InternalSecret.key == key))
        return result.scalar_one_or_none()


class VehicleRepository(BaseRepository[Vehicle]):
    """Repository for vehicle listings of one provenance tag."""

    def __init__(self, db: AsyncSession) -> None:
        super().__init__(Vehicle, db)

    async def map_ids_by_vin(self, source: str) -> dict[str, str]:
        """
        VIN to row id for every record of this provenance, active or not.

        Plain values rather than ORM objects, so the per-record pass
        always re-reads the row it is about to write.
        """
        result = await self.db.execute(
            select(Vehicle.vin, Vehicle.id).where(Vehicle.source == source)
        )
        return {vin: vehicle_id for vin, vehicle_id in result.all()}

    async def list_active(self, source: str) -> list[tuple[str, str]]:
        """(id, vin) pairs of the currently active records."""
        result = await self.db.execute(
            select(Vehicle.id, Vehicle.vin).where(
                and_(Vehicle.source == source, Vehicle.is_active.is_(True))
            )
        )
        return [(vehicle_id, vin) for vehicle_id, vin in result.all()]

    async def get_current(self, vehicle_id: str) -> Vehicle | None:
        """Load a row, overwriting any stale copy held by the session."""
        result = await self.db.execute(
            select(Vehicle)
            .where(Vehicle.id == vehicle_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def deactivate_many(self, ids: list[str], status: str = "Sold") -> int:
        """Batch soft-delete; only rows still active are touched."""
        if not ids:
            return 0
        result = await self.db.execute(
            update(Vehicle)
            .where(and_(Vehicle.id.in_(ids), Vehicle.is_active.is_(True)))
            .values(
                is_active=False,
                status=status,
                deactivated_by="sync",
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


class SyncRunRepository(BaseRepository[SyncRun]):
    """Repository for run history."""

    def __init__(self, db: AsyncSession) -> None:
        super().__init__(SyncRun, db)

    async def finalize(self, run_id: str, values: dict[str, Any]) -> bool:
        """
        Write terminal counts and status.

        Runs that already carry completed_at are left untouched.

        Returns:
            True if a pending run was finalized.
        """
        result = await self.db.execute(
            update(SyncRun)
            .where(and_(SyncRun.id == run_id, SyncRun.completed_at.is_(None)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def list_for_dealer(
        self,
        dealer_id: str,
        limit: int = 50,
        trigger_source: str | None = None,
        status: str | None = None,
    ) -> list[SyncRun]:
        """Newest-first run history."""
        query = select(SyncRun).where(SyncRun.dealer_id == dealer_id)
        if trigger_source:
            query = query.where(SyncRun.trigger_source == trigger_source)
        if status:
            query = query.where(SyncRun.status == status)
        query = query.order_by(SyncRun.started_at.desc()).limit(limit)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_with_errors(self, run_id: str) -> SyncRun | None:
        result = await self.db.execute(
            select(SyncRun).options(selectinload(SyncRun.errors)).where(SyncRun.id == run_id)
        )
        return result.scalar_one_or_none()

    async def latest(
        self,
        dealer_id: str,
        trigger_source: str | None = None,
        statuses: tuple[str, ...] | None = None,
    ) -> SyncRun | None:
        query = select(SyncRun).where(SyncRun.dealer_id == dealer_id)
        if trigger_source:
            query = query.where(SyncRun.trigger_source == trigger_source)
        if statuses:
            query = query.where(SyncRun.status.in_(statuses))
        result = await self.db.execute(query.order_by(SyncRun.started_at.desc()).limit(1))
        return result.scalar_one_or_none()

    async def count_failed_since(self, dealer_id: str, since: datetime) -> int:
        result = await self.db.execute(
            select(func.count(SyncRun.id)).where(
                and_(
                    SyncRun.dealer_id == dealer_id,
                    SyncRun.status == "failure",
                    SyncRun.started_at >= since,
                )
            )
        )
        return result.scalar_one()


class SyncErrorRepository(BaseRepository[SyncError]):
    """Repository for persisted run errors."""

    def __init__(self, db: AsyncSession) -> None:
        super().__init__(SyncError, db)

    async def bulk_create(self, sync_run_id: str, errors: list[dict[str, Any]]) -> int:
        if not errors:
            return 0
        self.db.add_all([SyncError(sync_run_id=sync_run_id, **error) for error in errors])
        await self.db.flush()
        return len(errors)
