"""
Health checks for readiness/liveness probes.

Checks:
- Database connectivity
- Daraja reachability (access token acquisition)
"""
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from merchant_payments.config import get_settings
from merchant_payments.database.connection import ping_db

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Daraja token check
    - Overall system health status
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        get_access_token: Optional[Callable[[], Awaitable[str]]] = None,
    ) -> None:
        self.settings = get_settings()
        self.session_factory = session_factory
        self.get_access_token = get_access_token

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            await ping_db(self.session_factory)
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_daraja(self) -> Dict[str, Any]:
        """
        Check that an access token can be obtained.

        Raises:
            HealthCheckError: If no token can be obtained
        """
        if self.get_access_token is None:
            raise HealthCheckError("Daraja client not configured")
        try:
            await self.get_access_token()
        except Exception as e:
            logger.error("daraja_health_check_failed", error=str(e))
            raise HealthCheckError(f"Daraja health check failed: {str(e)}")

        return {
            "status": "healthy",
            "service": "daraja",
            "message": "Access token acquired",
            "environment": self.settings.mpesa_environment,
            "shortcode": self.settings.mpesa_shortcode,
        }

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks."""
        checks = {}
        all_healthy = True

        for name, check in (("database", self.check_database), ("daraja", self.check_daraja)):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {
                    "status": "unhealthy",
                    "service": name,
                    "error": str(e),
                }
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe; only the database gates traffic."""
        try:
            database = await self.check_database()
        except HealthCheckError as e:
            return {"status": "not_ready", "checks": {"database": {"status": "unhealthy", "error": str(e)}}}
        return {"status": "ready", "checks": {"database": database}}
