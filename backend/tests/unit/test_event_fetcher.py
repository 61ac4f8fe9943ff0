"""
Unit tests for fetching external events across connections.
"""

import pytest
from datetime import datetime, timedelta

from core.errors import AuthRefreshError, ValidationError
from services.event_fetcher import EventFetcher
from services.token_refresher import RefreshLockRegistry, TokenRefresher

from calendar_fakes import at, create_connection


@pytest.fixture
def fetcher(connection_service, providers):
    refresher = TokenRefresher(connection_service, providers, locks=RefreshLockRegistry())
    return EventFetcher(connection_service, refresher, providers)


class TestFetchEvents:

    @pytest.mark.asyncio
    async def test_returns_events_overlapping_window(self, db_session, fetcher, fake_provider):
        create_connection(db_session)
        fake_provider.add_event("inside", at(4, 9), at(4, 10))
        fake_provider.add_event("straddles", at(3, 23), at(4, 1))
        fake_provider.add_event("outside", at(6, 9), at(6, 10))

        result = await fetcher.fetch_events("clinician-1", at(4, 0), at(5, 0))

        assert sorted(e.external_event_id for e in result.events) == ["inside", "straddles"]
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_all_day_events_are_dropped(self, db_session, fetcher, fake_provider):
        create_connection(db_session)
        fake_provider.add_event("holiday", at(4, 0), at(5, 0), all_day=True)

        result = await fetcher.fetch_events("clinician-1", at(4, 0), at(5, 0))

        assert result.events == []

    @pytest.mark.asyncio
    async def test_zero_length_events_are_dropped(self, db_session, fetcher, fake_provider):
        create_connection(db_session)
        fake_provider.add_event("reminder", at(4, 9), at(4, 9))
        fake_provider.add_event("inverted", at(4, 10), at(4, 9, 30))
        fake_provider.add_event("meeting", at(4, 11), at(4, 12))

        result = await fetcher.fetch_events("clinician-1", at(4, 0), at(5, 0))

        assert [e.external_event_id for e in result.events] == ["meeting"]

    @pytest.mark.asyncio
    async def test_one_failing_connection_does_not_abort_others(self, db_session, fetcher, fake_provider):
        healthy = create_connection(db_session)
        broken = create_connection(db_session)
        fake_provider.failing_connection_ids.add(broken.id)
        fake_provider.add_event("evt-1", at(4, 9), at(4, 10))

        result = await fetcher.fetch_events("clinician-1", at(4, 0), at(5, 0))

        assert [e.connection_id for e in result.events] == [healthy.id]
        assert result.succeeded_connection_ids == [healthy.id]
        assert result.failed_connection_ids == {broken.id}
        assert result.errors[0].status_code == 503
        assert result.reconnect_required is False

    @pytest.mark.asyncio
    async def test_auth_failure_reported_per_connection(self, db_session, fetcher, fake_provider):
        create_connection(db_session, expires_in=-timedelta(minutes=5))
        fake_provider.refresh_error = AuthRefreshError("ignored", "invalid_grant")

        result = await fetcher.fetch_events("clinician-1", at(4, 0), at(5, 0))

        assert result.events == []
        assert result.reconnect_required is True
        assert isinstance(result.errors[0], AuthRefreshError)

    @pytest.mark.asyncio
    async def test_inactive_connections_are_skipped(self, db_session, fetcher, connection_service, fake_provider):
        connection = create_connection(db_session)
        connection_service.deactivate(connection, "revoked")
        fake_provider.add_event("evt-1", at(4, 9), at(4, 10))

        result = await fetcher.fetch_events("clinician-1", at(4, 0), at(5, 0))

        assert result.events == []
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_unexpected_error_is_wrapped(self, db_session, fetcher, fake_provider):
        connection = create_connection(db_session)
        fake_provider.add_event("bad", at(4, 9), at(4, 10))
        del fake_provider.events["bad"]["start"]

        result = await fetcher.fetch_events("clinician-1", at(4, 0), at(5, 0))

        assert result.failed_connection_ids == {connection.id}
        assert "Unexpected error" in result.errors[0].message

    @pytest.mark.asyncio
    async def test_no_connections_returns_empty_result(self, fetcher):
        result = await fetcher.fetch_events("nobody", at(4, 0), at(5, 0))
        assert result.to_dict() == {"events": [], "errors": [], "succeeded_connection_ids": []}


class TestWindowValidation:

    @pytest.mark.asyncio
    async def test_inverted_window_rejected(self, fetcher):
        with pytest.raises(ValidationError) as exc_info:
            await fetcher.fetch_events("clinician-1", at(5, 0), at(4, 0))
        assert exc_info.value.field == "window"

    @pytest.mark.asyncio
    async def test_empty_window_rejected(self, fetcher):
        with pytest.raises(ValidationError):
            await fetcher.fetch_events("clinician-1", at(4, 0), at(4, 0))

    @pytest.mark.asyncio
    async def test_naive_window_rejected(self, fetcher):
        with pytest.raises(ValidationError):
            await fetcher.fetch_events("clinician-1", datetime(2030, 3, 4), datetime(2030, 3, 5))
