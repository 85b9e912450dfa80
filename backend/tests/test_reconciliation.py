"""
Tests for the reconciliation engine.

Tests:
- Create, update, unchanged and disable outcomes
- Idempotence of a repeated snapshot (no rewrites, no re-uploads)
- Manual deactivation is preserved
- Per-record failures never abort the run
- Disable pass protections
"""

from typing import List

import pytest
from sqlalchemy import select

from app.core.exceptions import VehicleRecordError
from app.db.postgres.models import Vehicle
from app.services.photo_mirror import MirrorResult, PhotoMirror
from app.services.reconciliation import (
    DISABLE_GUARD_ERROR,
    STATUS_AVAILABLE,
    STATUS_SOLD,
    ReconciliationEngine,
)

from conftest import make_vehicle

VINS = ["1FTFW1E50MFA00001", "1FTFW1E50MFA00002", "1FTFW1E50MFA00003"]


async def _all_vehicles(db) -> List[Vehicle]:
    # Bulk updates bypass the identity map
    db.expire_all()
    result = await db.execute(select(Vehicle).order_by(Vehicle.vin))
    return list(result.scalars().all())


async def _by_vin(db, vin: str) -> Vehicle:
    return {vehicle.vin: vehicle for vehicle in await _all_vehicles(db)}[vin]


@pytest.fixture
def mirror(storage, photo_host) -> PhotoMirror:
    return PhotoMirror(storage, transport=photo_host.transport)


@pytest.fixture
def engine(db_session, mirror) -> ReconciliationEngine:
    return ReconciliationEngine(db_session, mirror, source="partner-feed", concurrency=4)


class TestFirstSync:
    """Tests for an empty local table."""

    @pytest.mark.asyncio
    async def test_creates_every_vehicle(self, engine, db_session, storage):
        stats = await engine.reconcile([make_vehicle(vin) for vin in VINS])

        assert stats.created == 3
        assert stats.updated == 0
        assert stats.disabled == 0
        assert stats.photos_copied == 6
        assert stats.status == "success"

        vehicles = await _all_vehicles(db_session)
        assert [vehicle.vin for vehicle in vehicles] == VINS
        first = vehicles[0]
        assert first.source == "partner-feed"
        assert first.is_active is True
        assert first.status == STATUS_AVAILABLE
        assert first.last_synced_at is not None
        assert first.images == [
            f"memory://storage/vehicles/{VINS[0]}/0.jpg",
            f"memory://storage/vehicles/{VINS[0]}/1.png",
        ]
        assert len(storage.paths()) == 6

    @pytest.mark.asyncio
    async def test_defaults_are_applied(self, engine, db_session):
        row = make_vehicle(VINS[0], color="Red")
        for key in ("stock_number", "trim", "interior_color"):
            row.pop(key)

        await engine.reconcile([row])

        vehicle = await _by_vin(db_session, VINS[0])
        assert vehicle.stock_number == row["id"]
        assert vehicle.asking_price == row["price"]
        assert vehicle.exterior_color == "Red"
        assert vehicle.transmission == "Automatic"
        assert vehicle.fuel_type == "Gasoline"
        assert vehicle.trim == ""

    @pytest.mark.asyncio
    async def test_broken_photo_keeps_remote_url(self, engine, db_session):
        broken = "https://photos.example.com/broken.jpg"
        stats = await engine.reconcile([make_vehicle(VINS[0], photo_urls=[broken])])

        assert stats.created == 1
        assert stats.errors == []
        vehicle = await _by_vin(db_session, VINS[0])
        assert vehicle.images == [broken]


class TestRepeatedSync:
    """Tests for applying a snapshot on top of an earlier one."""

    @pytest.mark.asyncio
    async def test_identical_snapshot_is_a_no_op(self, engine, db_session, storage, photo_host):
        rows = [make_vehicle(vin) for vin in VINS]
        await engine.reconcile(rows)
        before = {vehicle.vin: vehicle.updated_at for vehicle in await _all_vehicles(db_session)}
        uploads = storage.upload_count
        downloads = len(photo_host.downloads)

        stats = await engine.reconcile(rows)

        assert stats.created == 0
        assert stats.updated == 0
        assert stats.unchanged == 3
        assert stats.disabled == 0
        assert stats.photos_copied == 0
        assert storage.upload_count == uploads
        assert len(photo_host.downloads) == downloads

        after = await _all_vehicles(db_session)
        assert {vehicle.vin: vehicle.updated_at for vehicle in after} == before

    @pytest.mark.asyncio
    async def test_changed_field_updates_record(self, engine, db_session):
        await engine.reconcile([make_vehicle(vin) for vin in VINS])

        rows = [make_vehicle(vin) for vin in VINS]
        rows[1]["price"] = 31000
        stats = await engine.reconcile(rows)

        assert stats.updated == 1
        assert stats.unchanged == 2
        vehicle = await _by_vin(db_session, VINS[1])
        assert vehicle.price == 31000
        assert vehicle.asking_price == 31000

    @pytest.mark.asyncio
    async def test_duplicate_vin_last_occurrence_wins(self, engine, db_session):
        stats = await engine.reconcile(
            [make_vehicle(VINS[0], price=1000), make_vehicle(VINS[0], price=2000)]
        )

        assert stats.created == 1
        vehicle = await _by_vin(db_session, VINS[0])
        assert vehicle.price == 2000


class TestDisablePass:
    """Tests for retiring vehicles absent from the feed."""

    @pytest.mark.asyncio
    async def test_sold_vehicle_is_disabled_and_photos_removed(self, engine, db_session, storage):
        await engine.reconcile([make_vehicle(vin) for vin in VINS])

        stats = await engine.reconcile([make_vehicle(vin) for vin in VINS[:2]])

        assert stats.disabled == 1
        assert stats.photos_cleaned_up == 2
        sold = await _by_vin(db_session, VINS[2])
        assert sold.is_active is False
        assert sold.status == STATUS_SOLD
        assert sold.deactivated_by == "sync"
        assert not [path for path in storage.paths() if VINS[2] in path]

    @pytest.mark.asyncio
    async def test_returning_vehicle_is_reactivated(self, engine, db_session):
        await engine.reconcile([make_vehicle(vin) for vin in VINS])
        await engine.reconcile([make_vehicle(vin) for vin in VINS[:2]])

        stats = await engine.reconcile([make_vehicle(vin) for vin in VINS])

        assert stats.updated == 1
        vehicle = await _by_vin(db_session, VINS[2])
        assert vehicle.is_active is True
        assert vehicle.status == STATUS_AVAILABLE
        assert vehicle.deactivated_by is None

    @pytest.mark.asyncio
    async def test_manual_deactivation_is_preserved(self, engine, db_session):
        await engine.reconcile([make_vehicle(vin) for vin in VINS])
        withdrawn = await _by_vin(db_session, VINS[0])
        withdrawn.is_active = False
        withdrawn.status = "On Hold"
        await db_session.commit()

        await engine.reconcile([make_vehicle(vin, price=99) for vin in VINS])

        vehicle = await _by_vin(db_session, VINS[0])
        assert vehicle.is_active is False
        assert vehicle.status == "On Hold"
        assert vehicle.price == 99

    @pytest.mark.asyncio
    async def test_empty_feed_disables_everything(self, engine, db_session):
        await engine.reconcile([make_vehicle(vin) for vin in VINS])

        stats = await engine.reconcile([])

        assert stats.disabled == 3
        assert stats.status == "success"
        assert all(not vehicle.is_active for vehicle in await _all_vehicles(db_session))

    @pytest.mark.asyncio
    async def test_invalid_row_still_protects_its_record(self, engine, db_session):
        await engine.reconcile([make_vehicle(vin) for vin in VINS])

        rows = [make_vehicle(vin) for vin in VINS]
        rows[0]["price"] = "call for price"
        stats = await engine.reconcile(rows)

        assert stats.disabled == 0
        assert len(stats.errors) == 1
        assert stats.errors[0].vin == VINS[0]
        vehicle = await _by_vin(db_session, VINS[0])
        assert vehicle.is_active is True

    @pytest.mark.asyncio
    async def test_disable_ratio_guard(self, db_session, mirror):
        engine = ReconciliationEngine(db_session, mirror, source="partner-feed", max_disable_ratio=0.5)
        await engine.reconcile([make_vehicle(vin) for vin in VINS])

        stats = await engine.reconcile([make_vehicle(VINS[0])])

        assert stats.disabled == 0
        assert stats.status == "partial"
        assert stats.errors[0].error_type == DISABLE_GUARD_ERROR
        assert all(vehicle.is_active for vehicle in await _all_vehicles(db_session))

    @pytest.mark.asyncio
    async def test_other_sources_are_never_disabled(self, engine, db_session):
        db_session.add(Vehicle(source="manual-entry", vin="MANUAL0001", is_active=True))
        await db_session.commit()

        await engine.reconcile([make_vehicle(VINS[0])])

        manual = await _by_vin(db_session, "MANUAL0001")
        assert manual.is_active is True


class TestRecordFailures:
    """Tests for per-record error isolation."""

    @pytest.mark.asyncio
    async def test_missing_vin_is_skipped(self, engine, db_session):
        rows = [make_vehicle(f"1FTFW1E50MFB{index:05d}", photo_urls=[]) for index in range(100)]
        rows.append(make_vehicle("", id="ext-novin", photo_urls=[]))

        stats = await engine.reconcile(rows)

        assert stats.processed == 101
        assert stats.created == 100
        assert len(stats.errors) == 1
        assert stats.errors[0].error_type == VehicleRecordError.VALIDATION
        assert "ext-novin" in stats.errors[0].message
        assert stats.status == "partial"

    @pytest.mark.asyncio
    async def test_non_object_row_is_recorded(self, engine):
        stats = await engine.reconcile(["not a vehicle", make_vehicle(VINS[0])])

        assert stats.created == 1
        assert len(stats.errors) == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_is_isolated(self, db_session, storage):
        class ExplodingMirror(PhotoMirror):
            async def mirror(self, vin, source_urls):
                if vin == VINS[1]:
                    raise RuntimeError("boom")
                return MirrorResult(urls=list(source_urls))

        engine = ReconciliationEngine(db_session, ExplodingMirror(storage), source="partner-feed")
        stats = await engine.reconcile([make_vehicle(vin) for vin in VINS])

        assert stats.created == 2
        assert len(stats.errors) == 1
        assert stats.errors[0].vin == VINS[1]
        assert stats.errors[0].error_type == VehicleRecordError.VALIDATION
        assert "boom" in stats.errors[0].message
