"""
Background calendar sync scheduler.

Periodically runs a two-way sync for every user with an active calendar
connection, then pushes pending recurring availability to each connection.
Scheduled with APScheduler.
"""

import logging
from datetime import timedelta
from typing import Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore

from core.config import SYNC_INTERVAL_MINUTES, SYNC_WINDOW_DAYS
from core.constants import SYNC_SCHEDULER_MAX_INSTANCES
from core.database import Database
from core.errors import AuthRefreshError, ProviderFetchError
from services.availability_reconciler import AvailabilityReconciler
from services.calendar_providers import ProviderRegistry
from services.calendar_sync_service import CalendarSyncService
from services.connection_service import ConnectionService
from services.token_refresher import TokenRefresher
from utils.datetime_utils import UTC, utc_now

logger = logging.getLogger(__name__)


class SyncScheduler:
    """
    Runs calendar sync on a fixed interval.

    Database sessions are created fresh for each run to avoid stale session
    issues.
    """

    def __init__(self, database: Database, providers: Optional[ProviderRegistry] = None) -> None:
        self.database = database
        self.providers = providers or ProviderRegistry()
        self.scheduler = AsyncIOScheduler(timezone=UTC)
        self._is_started = False

    async def start_scheduler(self) -> None:
        """
        Start the background scheduler.

        This should be called during application startup.
        """
        if self._is_started:
            logger.warning("Sync scheduler is already started")
            return

        self.scheduler.add_job(  # type: ignore
            self.run_sync,
            IntervalTrigger(minutes=SYNC_INTERVAL_MINUTES),
            id="calendar_sync",
            name="Sync external calendars",
            max_instances=SYNC_SCHEDULER_MAX_INSTANCES,  # Prevent overlapping runs
            replace_existing=True,
        )

        self.scheduler.start()
        self._is_started = True
        logger.info(f"Calendar sync scheduler started (every {SYNC_INTERVAL_MINUTES} minutes)")

    async def stop_scheduler(self) -> None:
        """
        Stop the background scheduler.

        This should be called during application shutdown.
        """
        if self._is_started:
            self.scheduler.shutdown(wait=True)
            self._is_started = False
            logger.info("Calendar sync scheduler stopped")

    async def run_sync(self) -> Dict[str, int]:
        """
        Sync every user with an active connection over the next SYNC_WINDOW_DAYS.

        One user's failure is logged and does not stop the run.
        """
        totals = {"users": 0, "failed_users": 0, "errors": 0, "availability_pushed": 0}
        window_start = utc_now()
        window_end = window_start + timedelta(days=SYNC_WINDOW_DAYS)

        with self.database.session() as db:
            connections = ConnectionService(db)
            refresher = TokenRefresher(connections, self.providers)
            sync_service = CalendarSyncService(db, connections=connections, refresher=refresher, providers=self.providers)
            reconciler = AvailabilityReconciler(db, refresher=refresher, providers=self.providers)

            user_ids = connections.users_with_active_connections()
            logger.info(f"Running scheduled calendar sync for {len(user_ids)} users")

            for user_id in user_ids:
                totals["users"] += 1
                try:
                    summary = await sync_service.sync_bidirectional(user_id, window_start, window_end)
                    totals["errors"] += len(summary.errors)

                    for connection in connections.list_active_connections(user_id):
                        try:
                            pushed = await reconciler.push_pending(connection)
                        except (AuthRefreshError, ProviderFetchError) as e:
                            logger.warning(f"Availability push failed for connection {connection.id}: {e.message}")
                            totals["errors"] += 1
                            continue
                        totals["availability_pushed"] += pushed.synced
                except Exception as e:
                    db.rollback()
                    totals["failed_users"] += 1
                    logger.exception(f"Scheduled sync failed for user {user_id}: {e}")

        logger.info(f"Scheduled calendar sync finished: {totals}")
        return totals


# Global sync scheduler instance
_sync_scheduler: Optional[SyncScheduler] = None


def get_sync_scheduler(database: Database) -> SyncScheduler:
    """
    Get the global sync scheduler, creating it for the given database.

    Returns:
        The global sync scheduler instance
    """
    global _sync_scheduler
    if _sync_scheduler is None:
        _sync_scheduler = SyncScheduler(database)
    return _sync_scheduler


async def start_sync_scheduler(database: Database) -> None:
    """
    Start the global sync scheduler.

    This should be called during application startup.
    """
    scheduler = get_sync_scheduler(database)
    await scheduler.start_scheduler()


async def stop_sync_scheduler() -> None:
    """
    Stop the global sync scheduler.

    This should be called during application shutdown.
    """
    global _sync_scheduler
    if _sync_scheduler:
        await _sync_scheduler.stop_scheduler()
        _sync_scheduler = None
