"""
Health checks for liveness/readiness probes.

Checks:
- Database connectivity
- Provider reachability (circuit breaker state, no outbound call)
"""
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ticket_payments.database.connection import get_session_factory

if TYPE_CHECKING:
    from ticket_payments.integrations.provider import ProviderClient

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """Health check service for the database and registered providers."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        providers: Optional[Dict[str, "ProviderClient"]] = None,
    ) -> None:
        self._session_factory = session_factory
        self.providers = providers or {}

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = self._session_factory or get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

            return {
                "status": "healthy",
                "service": "database",
                "message": "Database connection successful",
            }
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}") from e

    async def check_provider(self, name: str, provider: "ProviderClient") -> Dict[str, Any]:
        """
        Check a provider client.

        Raises:
            HealthCheckError: If the provider circuit is open
        """
        if not await provider.health_check():
            logger.warning("provider_health_check_failed", provider=name)
            raise HealthCheckError(f"{name} circuit breaker is open")
        return {
            "status": "healthy",
            "service": name,
            "message": f"{name} client available",
        }

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks."""
        checks: Dict[str, Any] = {}
        all_healthy = True

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {
                "status": "unhealthy",
                "service": "database",
                "error": str(e),
            }
            all_healthy = False

        for name, provider in self.providers.items():
            try:
                checks[name] = await self.check_provider(name, provider)
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Liveness probe: the process is up. No dependency checks."""
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: all dependencies available."""
        return await self.check_all()
