"""
Valkey (Redis-compatible) client for cross-process coordination.

Simple wrapper around redis-py. Connection URL from Vault.
Fail-fast: raises on connection failure, never returns fallback values.
"""

import logging

import redis
from redis.lock import Lock

logger = logging.getLogger(__name__)


class ValkeyClient:
    """
    Redis-compatible client for Valkey.

    Usage:
        client = ValkeyClient("redis://localhost:6379/0")
        with client.lock("servicedesk:lock:1234", timeout=30):
            ...
    """

    def __init__(self, url: str | None = None, client: redis.Redis | None = None):
        """
        Initialize Valkey connection.

        Args:
            url: Redis-compatible connection URL (e.g., redis://localhost:6379/0)
            client: Pre-built redis client (tests, shared pools)

        Raises:
            ValueError: If neither url nor client is given
            redis.ConnectionError: If connection fails
        """
        if client is None:
            if not url:
                raise ValueError("url is required")
            client = redis.from_url(url, decode_responses=True)
        self._client = client
        # Verify connectivity immediately (fail-fast)
        self._client.ping()
        logger.info("ValkeyClient connected")

    def ping(self) -> bool:
        """
        Health check.

        Returns True if Valkey responds.
        Raises redis.ConnectionError if unreachable.
        """
        self._client.ping()
        return True

    def lock(
        self,
        name: str,
        timeout: float | None = None,
        blocking_timeout: float | None = None,
    ) -> Lock:
        """
        Distributed mutex.

        Args:
            name: Lock key
            timeout: Auto-release after this many seconds (guards crashed holders)
            blocking_timeout: Give up acquiring after this many seconds

        Returns:
            redis-py Lock, usable as a context manager
        """
        return self._client.lock(name, timeout=timeout, blocking_timeout=blocking_timeout)

    def close(self) -> None:
        """Close the connection."""
        self._client.close()
        logger.info("ValkeyClient closed")
