"""Aggregated health checks for the portal.

Readiness covers:
- Auth synchronizer (initialized, session source reachable)
- Session storage (Redis or in-memory fallback)
- Circuit breakers for backend resources
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List

from .circuit_breaker import CircuitBreaker, CircuitState

logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    """Overall health status."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    """Health status for a single component."""
    name: str
    status: HealthStatus
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AggregatedHealth:
    """Aggregated health check result."""
    status: HealthStatus
    components: List[ComponentHealth]
    ready: bool
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "status": self.status.value,
            "ready": self.ready,
            "timestamp": self.timestamp,
            "components": [
                {
                    "name": c.name,
                    "status": c.status.value,
                    "message": c.message,
                    "details": c.details,
                }
                for c in self.components
            ],
        }


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class HealthChecker:
    """
    Health checker for liveness and readiness endpoints.

    Usage:
        checker = HealthChecker(synchronizer, storage, breaker)
        health = await checker.check_readiness()
    """

    def __init__(self, synchronizer, session_storage, circuit_breaker: CircuitBreaker):
        self.synchronizer = synchronizer
        self.session_storage = session_storage
        self.circuit_breaker = circuit_breaker

    async def check_liveness(self) -> AggregatedHealth:
        """Liveness: the process is running and answering."""
        return AggregatedHealth(
            status=HealthStatus.HEALTHY,
            ready=True,
            timestamp=_now(),
            components=[
                ComponentHealth(
                    name="portal_process",
                    status=HealthStatus.HEALTHY,
                    message="Portal process is running",
                )
            ],
        )

    async def check_readiness(self) -> AggregatedHealth:
        """Readiness: auth state resolved and backends usable."""
        components = [
            self._check_synchronizer(),
            self._check_session_storage(),
            self._check_circuit_breakers(),
        ]
        overall_status, ready = self._aggregate_status(components)

        return AggregatedHealth(
            status=overall_status,
            ready=ready,
            timestamp=_now(),
            components=components,
        )

    def _check_synchronizer(self) -> ComponentHealth:
        state = self.synchronizer.state

        if not self.synchronizer.alive or not state.initialized:
            return ComponentHealth(
                name="auth_synchronizer",
                status=HealthStatus.UNHEALTHY,
                message="Auth state not initialized",
                details={"initialized": state.initialized},
            )

        details = {
            "initialized": True,
            "signed_in": state.session is not None,
            "has_profile": state.profile is not None,
        }
        if state.error:
            return ComponentHealth(
                name="auth_synchronizer",
                status=HealthStatus.DEGRADED,
                message=f"Auth state degraded: {state.error}",
                details=details,
            )

        return ComponentHealth(
            name="auth_synchronizer",
            status=HealthStatus.HEALTHY,
            message="Auth state resolved",
            details=details,
        )

    def _check_session_storage(self) -> ComponentHealth:
        if not self.session_storage.is_available():
            return ComponentHealth(
                name="session_storage",
                status=HealthStatus.DEGRADED,
                message="Session kept in memory only",
                details={"backend": "memory", "impact": "Sign-in is lost on restart"},
            )

        if self.session_storage.ping():
            return ComponentHealth(
                name="session_storage",
                status=HealthStatus.HEALTHY,
                message="Redis is responsive",
                details={"backend": "redis"},
            )

        return ComponentHealth(
            name="session_storage",
            status=HealthStatus.DEGRADED,
            message="Redis ping failed, using in-memory copy",
            details={"backend": "redis", "available": False},
        )

    def _check_circuit_breakers(self) -> ComponentHealth:
        if not self.circuit_breaker.enabled:
            return ComponentHealth(
                name="circuit_breakers",
                status=HealthStatus.HEALTHY,
                message="Circuit breakers disabled",
                details={"enabled": False},
            )

        states = self.circuit_breaker.snapshot()
        open_circuits = sorted(n for n, s in states.items() if s is CircuitState.OPEN)
        half_open = sorted(n for n, s in states.items() if s is CircuitState.HALF_OPEN)
        details = {
            "open_circuits": open_circuits,
            "half_open_circuits": half_open,
            "total_resources": len(states),
        }

        if open_circuits:
            return ComponentHealth(
                name="circuit_breakers",
                status=HealthStatus.DEGRADED,
                message=f"{len(open_circuits)} resource(s) unavailable",
                details=details,
            )
        if half_open:
            return ComponentHealth(
                name="circuit_breakers",
                status=HealthStatus.DEGRADED,
                message=f"{len(half_open)} resource(s) testing recovery",
                details=details,
            )
        return ComponentHealth(
            name="circuit_breakers",
            status=HealthStatus.HEALTHY,
            message="All backend resources available",
            details=details,
        )

    def _aggregate_status(self, components: List[ComponentHealth]) -> tuple[HealthStatus, bool]:
        """
        UNHEALTHY anywhere -> not ready. Only DEGRADED -> still ready.
        """
        if any(c.status == HealthStatus.UNHEALTHY for c in components):
            return HealthStatus.UNHEALTHY, False
        if any(c.status == HealthStatus.DEGRADED for c in components):
            return HealthStatus.DEGRADED, True
        return HealthStatus.HEALTHY, True
