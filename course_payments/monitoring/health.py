"""
Dependency probes behind /health, /health/live and /health/ready.

The database is required. Redis only backs webhook deduplication, so an
unreachable Redis degrades the service without making it unready.
"""
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = structlog.get_logger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"


class HealthCheckError(Exception):
    """A dependency probe failed."""


class HealthCheck:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis_client: Optional[aioredis.Redis] = None,
    ) -> None:
        self.session_factory = session_factory
        self.redis_client = redis_client

    async def check_database(self) -> Dict[str, Any]:
        try:
            async with self.session_factory() as db:
                await db.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("database_probe_failed", error=str(e))
            raise HealthCheckError(f"database unreachable: {e}") from e
        return {"status": HEALTHY, "service": "database"}

    async def check_redis(self) -> Dict[str, Any]:
        if self.redis_client is None:
            return {
                "status": HEALTHY,
                "service": "redis",
                "message": "not configured; webhook deduplication disabled",
            }
        try:
            await self.redis_client.ping()
        except Exception as e:
            logger.warning("redis_probe_failed", error=str(e))
            raise HealthCheckError(f"redis unreachable: {e}") from e
        return {"status": HEALTHY, "service": "redis"}

    async def _timed(self, name: str, probe: Callable[[], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            report = await probe()
        except HealthCheckError as e:
            report = {"status": UNHEALTHY, "service": name, "error": str(e)}
        report["latency_ms"] = round((time.perf_counter() - started) * 1000, 2)
        return report

    async def check_all(self) -> Dict[str, Any]:
        """
        Probe every dependency.

        Overall status is ``unhealthy`` when the database is down, ``degraded``
        when only Redis is, and ``healthy`` otherwise.
        """
        checks = {
            "database": await self._timed("database", self.check_database),
            "redis": await self._timed("redis", self.check_redis),
        }
        if checks["database"]["status"] != HEALTHY:
            overall = UNHEALTHY
        elif checks["redis"]["status"] != HEALTHY:
            overall = DEGRADED
        else:
            overall = HEALTHY
        return {"status": overall, "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        return {"status": "alive", "message": "process is running"}

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()
