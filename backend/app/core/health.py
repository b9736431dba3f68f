"""
Health check aggregation — deep health probe for the escalation service.

Checks:
    • Store backend (in-memory, or SQL connectivity)
    • Severity policy (configured weights resolve and sum to 100)

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.app.core.config import settings
from backend.app.core.database import check_connection

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


# Track application start time
_start_time = time.monotonic()


def check_store(engine: Optional[Engine]) -> ComponentHealth:
    """Check the alert store; the in-memory backend is always healthy."""
    comp = ComponentHealth(name="store")
    start = time.monotonic()
    if engine is None:
        comp.message = "In-memory store"
        comp.details = {"backend": "memory"}
    else:
        comp.details = {"backend": "sql", "url": str(engine.url).split("@")[-1]}
        try:
            check_connection(engine)
            comp.message = "Database reachable"
        except SQLAlchemyError as e:
            logger.error("Store health check failed: %s", e)
            comp.status = HealthStatus.UNHEALTHY
            comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


def check_severity_policy(policy: Dict[str, Any]) -> ComponentHealth:
    """Report the scoring weights in force."""
    comp = ComponentHealth(name="severity_policy")
    weights = policy.get("weights", {})
    total = sum(weights.values())
    comp.details = {"weights": weights}
    if abs(total - 100) > 1e-9:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"Weights sum to {total}, expected 100"
    else:
        comp.message = "Weights valid"
    return comp


def run_health_check(engine: Optional[Engine], policy: Dict[str, Any]) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )
    report.components.append(check_store(engine))
    report.components.append(check_severity_policy(policy))

    # Aggregate status
    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
