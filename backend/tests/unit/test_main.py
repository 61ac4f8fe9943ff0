"""
Unit tests for main FastAPI application.

Tests the root endpoints, exception handlers, and application lifespan.
"""

import json
import pytest
from unittest.mock import Mock, patch
from fastapi.testclient import TestClient
from fastapi import Request
import httpx

from core.database import Database, get_db
from core.errors import (
    AuthRefreshError,
    ConflictDetected,
    ImportRecordError,
    ProviderFetchError,
    ValidationError,
)
from main import (
    app,
    root,
    health_check,
    global_exception_handler,
    calendar_sync_error_handler,
    value_error_handler,
    http_status_error_handler,
    lifespan,
)


class TestRootEndpoints:
    """Test root API endpoints."""

    def test_root_endpoint(self):
        client = TestClient(app)
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Calendar Sync Backend API"
        assert data["version"] == "1.0.0"
        assert data["status"] == "running"

    def test_health_endpoint(self):
        client = TestClient(app)
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_health_check_function_directly(self):
        assert await health_check() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_root_function_directly(self):
        result = await root()
        assert result["message"] == "Calendar Sync Backend API"


class TestCalendarSyncErrorHandler:
    """Tagged errors map to HTTP status codes."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error,status,error_type", [
        (ValidationError("End time must be after start time", field="end_at"), 422, "validation_error"),
        (ImportRecordError(3, "Missing required fields"), 422, "import_record_error"),
        (ConflictDetected({"conflict": True}), 409, "conflict_error"),
        (ProviderFetchError("conn-1", "Provider unavailable", 503), 502, "provider_fetch_error"),
    ])
    async def test_status_mapping(self, error, status, error_type):
        with patch('main.logger'):
            response = await calendar_sync_error_handler(Mock(spec=Request), error)

        assert response.status_code == status
        body = json.loads(response.body)
        assert body["type"] == error_type
        assert body["detail"] == error.message

    @pytest.mark.asyncio
    async def test_auth_refresh_uses_user_message(self):
        with patch('main.logger'):
            response = await calendar_sync_error_handler(Mock(spec=Request), AuthRefreshError("conn-1", "invalid_grant"))

        assert response.status_code == 401
        body = json.loads(response.body)
        assert body["detail"] == AuthRefreshError.user_message
        assert body["reconnect_required"] is True
        assert body["connection_id"] == "conn-1"

    @pytest.mark.asyncio
    async def test_validation_field_is_included(self):
        with patch('main.logger'):
            response = await calendar_sync_error_handler(Mock(spec=Request), ValidationError("bad", field="timezone"))
        assert json.loads(response.body)["field"] == "timezone"


class TestExceptionHandlers:
    """Test global exception handlers."""

    @pytest.mark.asyncio
    async def test_global_exception_handler(self):
        mock_request = Mock(spec=Request)

        with patch('main.logger') as mock_logger:
            response = await global_exception_handler(mock_request, RuntimeError("Test error"))

            assert response.status_code == 500
            assert b"Internal server error" in response.body
            assert b"internal_error" in response.body

            mock_logger.exception.assert_called_once()
            assert "Unhandled exception: Test error" in mock_logger.exception.call_args[0][0]

    @pytest.mark.asyncio
    async def test_value_error_handler(self):
        with patch('main.logger') as mock_logger:
            response = await value_error_handler(Mock(spec=Request), ValueError("Invalid value"))

            assert response.status_code == 400
            assert b"Invalid value" in response.body
            assert b"validation_error" in response.body
            mock_logger.warning.assert_called_once_with("ValueError: Invalid value")

    @pytest.mark.asyncio
    async def test_http_status_error_handler(self):
        test_exception = httpx.HTTPStatusError("502 Bad Gateway", request=Mock(), response=Mock())

        with patch('main.logger') as mock_logger:
            response = await http_status_error_handler(Mock(spec=Request), test_exception)

            assert response.status_code == 502
            assert b"external_service_error" in response.body
            mock_logger.exception.assert_called_once()


class TestApplicationSetup:

    def test_app_creation(self):
        assert app.title == "Calendar Sync Backend"
        assert app.version == "1.0.0"
        assert app.docs_url == "/docs"

    def test_calendar_router_is_versioned(self):
        paths = {route.path for route in app.routes if hasattr(route, 'path')}
        assert "/api/calendar/v1/appointments" in paths
        assert "/api/calendar/v1/sync" in paths


class TestLifespan:
    """Test application lifespan management."""

    @pytest.mark.asyncio
    async def test_lifespan_creates_tables_and_disposes(self):
        database = Mock(spec=Database)
        app.state.database = database
        app.state.providers = Mock()
        try:
            with patch('main.logger') as mock_logger, \
                 patch('main.start_sync_scheduler') as mock_start, \
                 patch('main.SYNC_SCHEDULER_ENABLED', False):
                async with lifespan(app):
                    pass

            database.create_tables.assert_called_once()
            database.dispose.assert_called_once()
            mock_start.assert_not_called()
            messages = [call.args[0] for call in mock_logger.info.call_args_list]
            assert "🚀 Starting Calendar Sync Backend API" in messages
            assert "🛑 Shutting down Calendar Sync Backend API" in messages
        finally:
            app.state.database = None
            app.state.providers = None

    @pytest.mark.asyncio
    async def test_lifespan_starts_scheduler_when_enabled(self):
        database = Mock(spec=Database)
        app.state.database = database
        app.state.providers = Mock()
        try:
            with patch('main.logger'), \
                 patch('main.start_sync_scheduler') as mock_start, \
                 patch('main.stop_sync_scheduler') as mock_stop, \
                 patch('main.SYNC_SCHEDULER_ENABLED', True):
                async with lifespan(app):
                    mock_start.assert_awaited_once_with(database)
                mock_stop.assert_awaited_once()
        finally:
            app.state.database = None
            app.state.providers = None


class TestDatabaseDependency:
    """Test the request-scoped session dependency."""

    def test_get_db_uses_application_database(self):
        database = Mock(spec=Database)
        request = Mock()
        request.app.state.database = database

        sessions = get_db(request)
        session = next(sessions)
        sessions.close()

        assert session is database.new_session.return_value
        session.close.assert_called_once()
        session.rollback.assert_not_called()

    def test_get_db_rolls_back_on_error(self):
        database = Mock(spec=Database)
        request = Mock()
        request.app.state.database = database

        sessions = get_db(request)
        session = next(sessions)
        with pytest.raises(RuntimeError):
            sessions.throw(RuntimeError("handler failed"))

        session.rollback.assert_called_once()
        session.close.assert_called_once()
