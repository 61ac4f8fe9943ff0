"""
Unit tests for the background calendar sync scheduler.
"""

import pytest
from unittest.mock import Mock, patch

import services.sync_scheduler as sync_scheduler_module
from services.sync_scheduler import SyncScheduler, start_sync_scheduler, stop_sync_scheduler

from calendar_fakes import create_connection


@pytest.fixture
def mock_scheduler():
    with patch("services.sync_scheduler.AsyncIOScheduler") as scheduler_cls:
        yield scheduler_cls.return_value


class TestSyncScheduler:

    @pytest.mark.asyncio
    async def test_start_registers_single_job(self, database, mock_scheduler):
        scheduler = SyncScheduler(database)

        await scheduler.start_scheduler()
        await scheduler.start_scheduler()

        mock_scheduler.add_job.assert_called_once()
        kwargs = mock_scheduler.add_job.call_args.kwargs
        assert kwargs["id"] == "calendar_sync"
        assert kwargs["max_instances"] == 1
        mock_scheduler.start.assert_called_once()

    @pytest.mark.asyncio
    async def test_stop_shuts_down_started_scheduler(self, database, mock_scheduler):
        scheduler = SyncScheduler(database)

        await scheduler.stop_scheduler()
        mock_scheduler.shutdown.assert_not_called()

        await scheduler.start_scheduler()
        await scheduler.stop_scheduler()
        mock_scheduler.shutdown.assert_called_once_with(wait=True)

    @pytest.mark.asyncio
    async def test_run_sync_with_no_connections(self, database):
        totals = await SyncScheduler(database).run_sync()

        assert totals == {"users": 0, "failed_users": 0, "errors": 0, "availability_pushed": 0}

    @pytest.mark.asyncio
    async def test_run_sync_isolates_user_failures(self, database, providers, db_session):
        create_connection(db_session, user_id="clinician-1")
        create_connection(db_session, user_id="clinician-2")
        scheduler = SyncScheduler(database, providers)

        with patch(
            "services.sync_scheduler.CalendarSyncService.sync_bidirectional",
            side_effect=[RuntimeError("boom"), Mock(errors=[])],
        ):
            totals = await scheduler.run_sync()

        assert totals["users"] == 2
        assert totals["failed_users"] == 1


class TestGlobalScheduler:

    @pytest.mark.asyncio
    async def test_start_and_stop_global_scheduler(self, database, mock_scheduler):
        try:
            await start_sync_scheduler(database)
            assert sync_scheduler_module._sync_scheduler is not None
            mock_scheduler.start.assert_called_once()
        finally:
            await stop_sync_scheduler()

        assert sync_scheduler_module._sync_scheduler is None
        mock_scheduler.shutdown.assert_called_once_with(wait=True)
