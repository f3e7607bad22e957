"""Shared store connection management.

One lazily-created Redis client per ``StoreConnection``. Concurrent callers
that arrive while the first connection attempt is in flight await that same
attempt instead of opening their own.
"""

import asyncio
from typing import Any, Callable, Optional

import redis.asyncio as aioredis
from redis.asyncio.retry import Retry
from redis.backoff import AbstractBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from bucketgate.app.core.config import Settings, settings
from bucketgate.app.core.logging import get_logger, mask_url
from bucketgate.app.exceptions import StoreUnavailableError

logger = get_logger(__name__)


class LinearBackoff(AbstractBackoff):
    """Reconnect delay growing by ``step_ms`` per failure, capped at ``cap_ms``."""

    def __init__(self, step_ms: int = 100, cap_ms: int = 3000):
        self._step = step_ms / 1000
        self._cap = cap_ms / 1000

    def compute(self, failures: int) -> float:
        return min(self._cap, self._step * max(failures, 1))


class StoreConnection:
    """Owns the Redis client used by every bucket operation in this process.

    Args:
        url: Redis connection URL (credentials are masked in logs)
        socket_timeout: Seconds per socket read/write
        connect_timeout: Seconds to establish a connection
        reconnect_step_ms: Linear backoff step between reconnect attempts
        reconnect_cap_ms: Backoff ceiling
        reconnect_attempts: Retries per command on transient disconnects
        client_factory: Builds the client; defaults to ``redis.asyncio.from_url``
    """

    def __init__(
        self,
        url: str,
        *,
        socket_timeout: float = 2.0,
        connect_timeout: float = 2.0,
        reconnect_step_ms: int = 100,
        reconnect_cap_ms: int = 3000,
        reconnect_attempts: int = 3,
        client_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        self._url = url
        self._socket_timeout = socket_timeout
        self._connect_timeout = connect_timeout
        self._backoff = LinearBackoff(reconnect_step_ms, reconnect_cap_ms)
        self._reconnect_attempts = reconnect_attempts
        self._client_factory = client_factory or aioredis.from_url
        self._client: Optional[Any] = None
        self._connecting: Optional[asyncio.Future] = None

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "StoreConnection":
        return cls(
            config.redis_url,
            socket_timeout=config.redis_socket_timeout,
            connect_timeout=config.redis_connect_timeout,
            reconnect_step_ms=config.redis_reconnect_step_ms,
            reconnect_cap_ms=config.redis_reconnect_cap_ms,
            reconnect_attempts=config.redis_reconnect_attempts,
        )

    @property
    def public_url(self) -> str:
        """Configured URL with credentials masked."""
        return mask_url(self._url)

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def get_connection(self) -> Any:
        """Return the open client, connecting on first use.

        Raises:
            StoreUnavailableError: If the store cannot be reached.
        """
        if self._client is not None:
            return self._client
        if self._connecting is None:
            self._connecting = asyncio.ensure_future(self._connect())
            self._connecting.add_done_callback(self._retrieve_outcome)
        # Shield so a cancelled request does not abort the shared attempt.
        return await asyncio.shield(self._connecting)

    @staticmethod
    def _retrieve_outcome(future: asyncio.Future) -> None:
        # Waiters may all have timed out; mark the failure as seen
        if not future.cancelled():
            future.exception()

    async def _connect(self) -> Any:
        client = self._client_factory(
            self._url,
            retry=Retry(self._backoff, self._reconnect_attempts),
            retry_on_error=[RedisConnectionError, RedisTimeoutError],
            socket_timeout=self._socket_timeout,
            socket_connect_timeout=self._connect_timeout,
            health_check_interval=30,
        )
        try:
            await client.ping()
        except (RedisError, OSError) as e:
            logger.error(f"Redis connect failed ({self.public_url}): {e}")
            self._connecting = None
            await self._safe_close(client)
            raise StoreUnavailableError(f"Redis connect failed: {e}") from e
        except asyncio.CancelledError:
            await self._safe_close(client)
            raise

        logger.info(f"Redis connected ({self.public_url})")
        self._client = client
        self._connecting = None
        return client

    async def ping(self) -> bool:
        """Health probe: True if the store answers PING."""
        try:
            client = await self.get_connection()
            return bool(await client.ping())
        except (StoreUnavailableError, RedisError, OSError) as e:
            logger.warning(f"Redis ping failed ({self.public_url}): {e}")
            return False

    async def close(self) -> None:
        """Close the client. Safe to call repeatedly or before connecting."""
        pending, self._connecting = self._connecting, None
        if pending is not None and not pending.done():
            pending.cancel()
            try:
                await pending
            except (asyncio.CancelledError, StoreUnavailableError):
                pass

        client, self._client = self._client, None
        if client is not None:
            await self._safe_close(client)
            logger.info(f"Redis connection closed ({self.public_url})")

    async def _safe_close(self, client: Any) -> None:
        try:
            await client.aclose()
        except (RedisError, OSError) as e:
            logger.warning(f"Error closing Redis connection: {e}")
