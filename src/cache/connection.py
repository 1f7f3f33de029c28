import asyncio
import logging
from functools import wraps

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ConnectionError, TimeoutError

from src.core.config import get_settings

_log = logging.getLogger(__name__)


def _once(fn):
    """
    Lock-free memoisation of an async factory. Concurrent first callers share
    one in-flight task; a failed attempt (None) is retried on the next call.
    """
    in_flight = None
    result = None

    @wraps(fn)
    async def wrapper():
        nonlocal in_flight, result
        if result is not None:
            return result
        if in_flight is None:
            _log.debug(f"Creating task for {fn.__name__}")
            in_flight = asyncio.create_task(fn())
        try:
            result = await in_flight
            return result
        except Exception as e:
            _log.error(f"Task for {fn.__name__} failed: {e}", exc_info=True)
            result = None
            return None
        finally:
            in_flight = None

    async def reset():
        nonlocal result, in_flight
        if in_flight and not in_flight.done():
            in_flight.cancel()
            try:
                await in_flight
            except asyncio.CancelledError:
                _log.debug(f"Cancelled in-flight task for {fn.__name__}")
            except Exception as e:
                _log.warning(f"Error awaiting cancelled task for {fn.__name__}: {e}")
        in_flight = None
        client, result = result, None
        return client

    wrapper.reset = reset  # type: ignore
    return wrapper


@_once
async def _create_redis_connection() -> aioredis.Redis | None:
    url = get_settings().redis_url
    _log.info(f"Creating Redis client for draft storage at {url}")
    try:
        return aioredis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=1,
            socket_timeout=2,
        )
    except (RedisError, ConnectionError, TimeoutError, ValueError) as exc:
        _log.error(f"Failed to create Redis client for {url}: drafts will not persist ({exc})")
        return None


async def get_redis() -> aioredis.Redis | None:
    """Shared Redis client, created lazily; None if it could not be created."""
    return await _create_redis_connection()  # type: ignore


async def close_redis() -> None:
    """Close and discard the cached client."""
    client = await _create_redis_connection.reset()  # type: ignore
    if client:
        try:
            await client.aclose()
            _log.info("Redis connection pool closed.")
        except RedisError as e:
            _log.warning(f"Error closing Redis connection: {e}")
