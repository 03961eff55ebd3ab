"""
Health checks for readiness/liveness probes.

Checks:
- Database connectivity
- Card gateway circuit breaker state
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Gateway availability check (no outbound call, the gateway charges money)
    - Overall system health status
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        gateway: Optional[Any] = None,
    ) -> None:
        """
        Initialize health check service.

        Args:
            session_factory: Session factory to probe (defaults to the app factory)
            gateway: Gateway client whose circuit breaker is inspected
        """
        if session_factory is None:
            from myfamily_payments.database.connection import get_session_factory

            session_factory = get_session_factory()
        self.session_factory = session_factory
        self.gateway = gateway

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
        except SQLAlchemyError as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}") from e

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_gateway(self) -> Dict[str, Any]:
        """
        Check the card gateway circuit breaker.

        Raises:
            HealthCheckError: If no gateway is configured or its circuit is open
        """
        from myfamily_payments.integrations.simulation import ZCreditSimulationClient

        if self.gateway is None:
            raise HealthCheckError("No card gateway configured")

        breaker = getattr(self.gateway, "circuit_breaker", None)
        state = breaker.state if breaker is not None else "closed"
        if state == "open":
            logger.error("gateway_health_check_failed", circuit_breaker_state=state)
            raise HealthCheckError("Gateway circuit breaker is open")

        return {
            "status": "healthy",
            "service": "gateway",
            "circuit_breaker_state": state,
            "simulation_mode": isinstance(self.gateway, ZCreditSimulationClient),
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        for name, check in (
            ("database", self.check_database),
            ("gateway", self.check_gateway),
        ):
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
        """Readiness probe: all dependencies must be available."""
        return await self.check_all()
