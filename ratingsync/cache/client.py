"""Valkey client lifecycle and distributed backend discovery."""

from __future__ import annotations

import asyncio

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ratingsync.core.config import settings
from ratingsync.core.logging import get_logger

from .valkey import ValkeyCacheBackend


logger = get_logger("cache.client")

# redis.asyncio connections are bound to the loop that opened them
_clients: dict[int, Redis] = {}

PING_TIMEOUT = 5.0


def _loop_key() -> int:
    try:
        return id(asyncio.get_running_loop())
    except RuntimeError:
        return 0


def get_valkey_client(url: str | None = None) -> Redis:
    """Return the client for the running event loop, creating it on first use."""
    key = _loop_key()
    client = _clients.get(key)
    if client is None:
        client = Redis.from_url(
            url or settings.valkey_url,
            max_connections=settings.valkey_max_connections,
            decode_responses=True,
            socket_timeout=PING_TIMEOUT,
            socket_connect_timeout=PING_TIMEOUT,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        _clients[key] = client
        logger.info("Valkey client created", extra={"loop_id": key})
    return client


async def close_valkey_client() -> None:
    """Close the running loop's client and its connection pool."""
    client = _clients.pop(_loop_key(), None)
    if client is None:
        return
    await client.aclose()
    logger.info("Valkey client closed")


async def valkey_healthcheck(client: Redis) -> bool:
    """True when the server answers PING within ``PING_TIMEOUT``."""
    try:
        return bool(await asyncio.wait_for(client.ping(), timeout=PING_TIMEOUT))
    except (RedisError, OSError, asyncio.TimeoutError) as e:
        logger.warning(f"Valkey healthcheck failed: {e}")
        return False


async def connect_distributed_backend(url: str | None = None) -> ValkeyCacheBackend | None:
    """Return a Valkey backend, or None when disabled or unreachable.

    An unreachable server downgrades the run to the local cache instead of
    failing it.
    """
    if not settings.cache_enabled:
        logger.info("Distributed cache disabled by configuration")
        return None
    client = get_valkey_client(url)
    if not await valkey_healthcheck(client):
        logger.warning("Distributed cache unreachable, continuing with local cache only")
        return None
    return ValkeyCacheBackend(client)
