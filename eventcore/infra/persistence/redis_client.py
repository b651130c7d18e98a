# =============================================================================
# File: eventcore/infra/persistence/redis_client.py
# Description: redis.asyncio client construction and guarded operations
#
# The cache treats Redis as best-effort: reads that fail are reported as
# misses and the caller falls through to the next tier.
# =============================================================================

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional, Union

import redis.asyncio as redis
from redis.exceptions import RedisError

from eventcore.config.redis_config import RedisConfig
from eventcore.infra.reliability.circuit_breaker import CircuitBreaker

log = logging.getLogger("eventcore.persistence.redis")

SLOW_COMMAND_THRESHOLD_MS = 100.0


def create_redis_client(config: Optional[RedisConfig] = None, **overrides: Any) -> redis.Redis:
    """Build a client from RedisConfig (no connection is made until first use)."""
    config = config or RedisConfig()
    opts: Dict[str, Any] = {
        "decode_responses": True,
        "max_connections": config.max_connections,
        "socket_timeout": config.socket_timeout,
        "socket_connect_timeout": config.socket_connect_timeout,
        "health_check_interval": config.health_check_interval,
    }
    opts.update(overrides)
    return redis.from_url(config.url.get_secret_value(), **opts)


async def create_and_test_redis_client(config: Optional[RedisConfig] = None) -> redis.Redis:
    """Create a client and PING it once."""
    client = create_redis_client(config)
    await client.ping()
    log.info("Redis client initialized and ping OK.")
    return client


async def _guarded(r: Any, operation: str, circuit_breaker: Optional[CircuitBreaker], func, *args, **kwargs):
    start = time.monotonic()

    async def run():
        return await func(*args, **kwargs)

    if circuit_breaker is not None:
        result = await circuit_breaker.call(run)
    else:
        result = await run()

    elapsed_ms = (time.monotonic() - start) * 1000
    if elapsed_ms > SLOW_COMMAND_THRESHOLD_MS:
        log.warning(f"[SLOW REDIS] {operation} took {elapsed_ms:.1f}ms")
    return result


async def ping(r: Any, circuit_breaker: Optional[CircuitBreaker] = None) -> bool:
    try:
        return bool(await _guarded(r, "PING", circuit_breaker, r.ping))
    except Exception as e:
        log.warning(f"Redis PING failed: {e}")
        return False


async def safe_get(r: Any, key: str, circuit_breaker: Optional[CircuitBreaker] = None) -> Optional[str]:
    try:
        return await _guarded(r, f"GET {key}", circuit_breaker, r.get, key)
    except Exception as e:
        log.warning(f"Redis GET failed for '{key}': {e}")
        return None


async def safe_set(
        r: Any,
        key: str,
        value: Union[str, bytes, int, float],
        ttl_seconds: Optional[int] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
) -> bool:
    try:
        if ttl_seconds:
            await _guarded(r, f"SET {key}", circuit_breaker, r.set, key, value, ex=int(ttl_seconds))
        else:
            await _guarded(r, f"SET {key}", circuit_breaker, r.set, key, value)
        return True
    except Exception as e:
        log.warning(f"Redis SET failed for '{key}': {e}")
        return False


async def health_check(r: Any, circuit_breaker: Optional[CircuitBreaker] = None) -> Dict[str, Any]:
    """Ping plus a few INFO fields and the breaker state."""
    details: Dict[str, Any] = {"ping_successful": await ping(r, circuit_breaker)}
    details["is_healthy"] = details["ping_successful"]
    if circuit_breaker is not None:
        details["circuit_breaker"] = circuit_breaker.get_metrics()
    if details["ping_successful"]:
        try:
            info = await r.info()
            details["redis_version"] = info.get("redis_version")
            details["connected_clients"] = info.get("connected_clients")
            details["used_memory_human"] = info.get("used_memory_human")
        except RedisError as e:
            details["info_error"] = str(e)
    return details
