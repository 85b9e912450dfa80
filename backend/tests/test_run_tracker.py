"""
Tests for the sync run audit trail.
"""

import pytest

from app.core.exceptions import UpstreamHttpError
from app.db.postgres.models import DealerApiConfig
from app.db.postgres.repositories import SyncRunRepository
from app.services.reconciliation import ReconcileStats, RecordError
from app.services.run_tracker import API_ERROR, RunTracker

from conftest import DEALER_ID


async def _load_run(db, run_id):
    db.expire_all()
    return await SyncRunRepository(db).get_with_errors(run_id)


@pytest.fixture
def tracker(db_session, dealer_config) -> RunTracker:
    return RunTracker(db_session, DEALER_ID, "manual", config_id=dealer_config.id, invoked_by_user_id="user-1")


class TestOpen:
    @pytest.mark.asyncio
    async def test_inserts_pending_run(self, tracker, db_session):
        run_id = await tracker.open()

        run = await _load_run(db_session, run_id)
        assert run.status == "pending"
        assert run.dealer_id == DEALER_ID
        assert run.trigger_source == "manual"
        assert run.invoked_by_user_id == "user-1"
        assert run.completed_at is None


class TestComplete:
    """Tests for success and partial finalization."""

    @pytest.mark.asyncio
    async def test_success(self, tracker, db_session):
        run_id = await tracker.open()
        stats = ReconcileStats(processed=3, created=2, unchanged=1, photos_copied=4)

        duration_ms = await tracker.complete(stats)

        run = await _load_run(db_session, run_id)
        assert run.status == "success"
        assert run.records_created == 2
        assert run.records_unchanged == 1
        assert run.total_records_processed == 3
        assert run.photos_copied == 4
        assert run.duration_ms == duration_ms
        assert run.completed_at is not None
        assert run.errors == []

    @pytest.mark.asyncio
    async def test_partial_caps_persisted_errors(self, tracker, db_session):
        run_id = await tracker.open()
        stats = ReconcileStats(processed=12)
        stats.errors = [RecordError("validation_error", f"bad row {i}", vin=f"VIN{i}") for i in range(12)]

        await tracker.complete(stats)

        run = await _load_run(db_session, run_id)
        assert run.status == "partial"
        assert run.error_count == 12
        assert len(run.errors) == 10
        assert run.errors[0].error_details == {"vin": run.errors[0].vin}

    @pytest.mark.asyncio
    async def test_stamps_config_last_sync(self, tracker, db_session, dealer_config):
        config_id = dealer_config.id
        await tracker.open()
        await tracker.complete(ReconcileStats())

        db_session.expire_all()
        config = await db_session.get(DealerApiConfig, config_id)
        assert config.last_sync_at is not None


class TestFail:
    """Tests for failure finalization."""

    @pytest.mark.asyncio
    async def test_records_api_error(self, tracker, db_session):
        run_id = await tracker.open()
        error = UpstreamHttpError(500, "boom", "https://partner.example.com/inventory?page=2")

        await tracker.fail(error)

        run = await _load_run(db_session, run_id)
        assert run.status == "failure"
        assert run.error_count == 1
        assert len(run.errors) == 1
        assert run.errors[0].error_type == API_ERROR
        assert run.errors[0].error_details["step"] == "fetch_feed"
        assert run.errors[0].error_details["error_class"] == "UpstreamHttpError"

    @pytest.mark.asyncio
    async def test_finalizes_exactly_once(self, tracker, db_session):
        run_id = await tracker.open()
        await tracker.complete(ReconcileStats(created=1))

        await tracker.fail(RuntimeError("late failure"))

        run = await _load_run(db_session, run_id)
        assert run.status == "success"
        assert run.errors == []

    @pytest.mark.asyncio
    async def test_repository_refuses_second_finalize(self, tracker, db_session):
        run_id = await tracker.open()
        await tracker.complete(ReconcileStats())

        finalized = await SyncRunRepository(db_session).finalize(run_id, {"status": "failure"})

        assert finalized is False

    @pytest.mark.asyncio
    async def test_fail_before_open_is_a_no_op(self, tracker):
        assert await tracker.fail(RuntimeError("early")) >= 0
        assert tracker.run_id is None
