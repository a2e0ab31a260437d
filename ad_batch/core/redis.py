"""Redis connection pool for the ARQ job queue, with degraded mode fallback.

Without Redis the service keeps working:
- Job runs are scheduled with FastAPI BackgroundTasks in the API process
- Change notifications are unaffected (they never go through Redis)
- Health endpoint reports Redis as unavailable
"""

import logging

from arq.connections import ArqRedis, RedisSettings, create_pool

from ad_batch.config import get_settings

logger = logging.getLogger(__name__)

_redis_pool: ArqRedis | None = None
_redis_checked: bool = False  # True after first connection attempt


def redis_settings_from_url(redis_url: str, fail_fast: bool = True) -> RedisSettings:
    """Build ARQ RedisSettings from a DSN.

    With fail_fast the connection gives up after a single short attempt so
    startup does not hang when Redis is down.
    """
    base = RedisSettings.from_dsn(redis_url)
    if not fail_fast:
        return base
    return RedisSettings(
        host=base.host,
        port=base.port,
        unix_socket_path=base.unix_socket_path,
        database=base.database,
        password=base.password,
        ssl=base.ssl,
        conn_timeout=2,
        conn_retries=0,
        conn_retry_delay=0,
    )


async def get_redis_pool() -> ArqRedis | None:
    """Get or create the Redis connection pool.

    Returns None if Redis is unavailable (degraded mode). Only one connection
    attempt is made; later calls return None without retrying.
    """
    global _redis_pool, _redis_checked
    if _redis_pool is not None:
        return _redis_pool
    if _redis_checked:
        return None

    _redis_checked = True
    try:
        _redis_pool = await create_pool(redis_settings_from_url(get_settings().redis_url))
        logger.info("Redis connection pool created")
        return _redis_pool
    except (ConnectionError, OSError, Exception) as e:
        logger.warning(f"Redis unavailable, job runs fall back to BackgroundTasks: {e}")
        return None


async def close_redis_pool() -> None:
    """Close the Redis connection pool on shutdown."""
    global _redis_pool, _redis_checked
    if _redis_pool is not None:
        await _redis_pool.aclose()
        _redis_pool = None
        logger.info("Redis connection pool closed")
    _redis_checked = False


async def is_redis_available() -> bool:
    """Check if Redis is connected and responding.

    Unlike get_redis_pool(), this retries once when no pool is cached so the
    health endpoint notices Redis coming back.
    """
    global _redis_pool, _redis_checked

    pool = await get_redis_pool()
    if pool is None:
        _redis_checked = False
        pool = await get_redis_pool()
        if pool is None:
            return False

    try:
        await pool.ping()
        return True
    except Exception:
        # Redis went away after connect; drop the pool so the next call reconnects
        _redis_pool = None
        _redis_checked = False
        return False
