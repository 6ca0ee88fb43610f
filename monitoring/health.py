"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Redis connectivity (when the outbox wake-up list is configured)
- Workflow orchestrator reachability

The orchestrator is not critical: webhooks fall back to direct order
updates without it, so an unreachable orchestrator degrades but does not
fail readiness.
"""
import asyncio
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import get_settings
from database.connection import get_session_factory

logger = structlog.get_logger(__name__)

CHECK_TIMEOUT_SECONDS = 3.0


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Redis connectivity check
    - Orchestrator reachability check
    - Overall system health status
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        workflow_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
    ) -> None:
        """
        Initialize health check service.

        Args:
            session_factory: Session factory (defaults to the process-wide one)
            workflow_client: Anything with an async ping() -> bool
            redis_url: Redis URL (defaults to settings; None disables the check)
        """
        self.settings = get_settings()
        self._session_factory = session_factory
        self.workflow_client = workflow_client
        self.redis_url = redis_url if redis_url is not None else self.settings.redis_url

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = self._session_factory or get_session_factory()
            async with session_factory() as db:
                # Simple query to check connectivity
                result = await asyncio.wait_for(
                    db.execute(text("SELECT 1")), timeout=CHECK_TIMEOUT_SECONDS
                )
                result.scalar()

                return {
                    "status": "healthy",
                    "service": "database",
                    "message": "Database connection successful",
                }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Returns:
            Dict[str, Any]: Redis health status

        Raises:
            HealthCheckError: If Redis check fails
        """
        if not self.redis_url:
            return {
                "status": "disabled",
                "service": "redis",
                "message": "Outbox wake-up list not configured",
            }

        redis_client: aioredis.Redis | None = None
        try:
            redis_client = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )

            # Simple ping to check connectivity
            await asyncio.wait_for(redis_client.ping(), timeout=CHECK_TIMEOUT_SECONDS)

            return {
                "status": "healthy",
                "service": "redis",
                "message": "Redis connection successful",
            }

        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}")

        finally:
            if redis_client:
                await redis_client.aclose()

    async def check_orchestrator(self) -> Dict[str, Any]:
        """
        Check workflow orchestrator reachability.

        Returns:
            Dict[str, Any]: Orchestrator health status

        Raises:
            HealthCheckError: If the orchestrator does not answer
        """
        if self.workflow_client is None:
            return {
                "status": "disabled",
                "service": "orchestrator",
                "message": "No workflow client configured",
            }

        try:
            reachable = await asyncio.wait_for(
                self.workflow_client.ping(), timeout=CHECK_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            reachable = False

        if not reachable:
            logger.warning("orchestrator_health_check_failed")
            raise HealthCheckError("Workflow orchestrator unreachable")

        return {
            "status": "healthy",
            "service": "orchestrator",
            "message": "Workflow orchestrator reachable",
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status (healthy, degraded or unhealthy)
        """
        checks = {}
        critical_ok = True
        optional_ok = True

        # Database check
        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {
                "status": "unhealthy",
                "service": "database",
                "error": str(e),
            }
            critical_ok = False

        # Redis check
        try:
            checks["redis"] = await self.check_redis()
        except HealthCheckError as e:
            checks["redis"] = {
                "status": "unhealthy",
                "service": "redis",
                "error": str(e),
            }
            optional_ok = False

        # Orchestrator check
        try:
            checks["orchestrator"] = await self.check_orchestrator()
        except HealthCheckError as e:
            checks["orchestrator"] = {
                "status": "unhealthy",
                "service": "orchestrator",
                "error": str(e),
            }
            optional_ok = False

        if not critical_ok:
            overall = "unhealthy"
        elif not optional_ok:
            overall = "degraded"
        else:
            overall = "healthy"

        return {
            "status": overall,
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Simple check that the application is running.
        Does not check external dependencies.

        Returns:
            Dict[str, Any]: Liveness status
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """
        Readiness probe endpoint.

        Ready unless the database is unavailable.

        Returns:
            Dict[str, Any]: Readiness status
        """
        return await self.check_all()
