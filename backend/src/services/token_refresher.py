"""
Access token refresh for external calendar connections.

Before any provider call, `TokenRefresher.ensure_fresh` guarantees the
connection holds an access token that will not expire within the refresh
buffer. Refreshes are serialized per connection: concurrent callers wait on
the same lock and re-check expiry afterwards, so only one of them talks to
the provider.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from core.constants import TOKEN_REFRESH_BUFFER
from core.errors import AuthRefreshError, ProviderFetchError
from models import ExternalConnection
from services.calendar_providers import ProviderRegistry
from services.connection_service import ConnectionService
from utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)


class RefreshLockRegistry:
    """In-memory asyncio locks keyed by connection id."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, connection_id: str) -> asyncio.Lock:
        lock = self._locks.get(connection_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[connection_id] = lock
        return lock


_default_locks = RefreshLockRegistry()


class TokenRefresher:
    """Keeps connection access tokens valid."""

    def __init__(
        self,
        connections: ConnectionService,
        providers: ProviderRegistry,
        locks: Optional[RefreshLockRegistry] = None,
        clock: Callable[[], datetime] = utc_now,
        buffer: timedelta = TOKEN_REFRESH_BUFFER,
    ) -> None:
        self.connections = connections
        self.providers = providers
        self.locks = locks or _default_locks
        self.clock = clock
        self.buffer = buffer

    def needs_refresh(self, connection: ExternalConnection) -> bool:
        expires_at = connection.token_expires_at
        if expires_at is None:
            return True
        return self.clock() + self.buffer >= expires_at

    async def ensure_fresh(self, connection: ExternalConnection) -> ExternalConnection:
        """
        Return the connection with a usable access token, refreshing it if needed.

        Args:
            connection: Connection about to be used for a provider call

        Returns:
            The same connection, with tokens updated in place when refreshed

        Raises:
            AuthRefreshError: Connection inactive, has no refresh token, or the
                provider rejected the refresh token. The connection is left
                (or marked) inactive.
            ProviderFetchError: Transient failure reaching the token endpoint
        """
        if not connection.is_active:
            raise AuthRefreshError(connection.id, f"Connection {connection.id} is inactive; reconnect required")

        if not self.needs_refresh(connection):
            return connection

        async with self.locks.get(connection.id):
            # Another caller may have refreshed while we waited
            self.connections.reload(connection)
            if not connection.is_active:
                raise AuthRefreshError(connection.id, f"Connection {connection.id} is inactive; reconnect required")
            if not self.needs_refresh(connection):
                logger.debug(f"Token for connection {connection.id} already refreshed by a concurrent caller")
                return connection

            await self._refresh(connection)
            return connection

    async def get_access_token(self, connection: ExternalConnection) -> str:
        """Ensure freshness and return the decrypted access token."""
        await self.ensure_fresh(connection)
        return self.connections.get_access_token(connection)

    async def _refresh(self, connection: ExternalConnection) -> None:
        logger.info(f"Token for connection {connection.id} is expiring or expired. Refreshing...")

        refresh_token = self.connections.get_refresh_token(connection)
        if not refresh_token:
            self.connections.deactivate(connection, "No refresh token stored")
            raise AuthRefreshError(connection.id, f"Connection {connection.id} has no refresh token")

        provider = self.providers.get(connection.provider)
        try:
            grant = await provider.refresh_access_token(connection.id, refresh_token)
        except AuthRefreshError as e:
            self.connections.deactivate(connection, e.message)
            raise
        except ProviderFetchError as e:
            self.connections.record_error(connection, e.message)
            raise

        new_expiry = self.clock() + timedelta(seconds=grant.expires_in)
        self.connections.update_tokens(
            connection,
            access_token=grant.access_token,
            token_expires_at=new_expiry,
            refresh_token=grant.refresh_token,
        )
        logger.info(f"Token refreshed for connection {connection.id}; expires at {new_expiry.isoformat()}")
