"""
Health check aggregation for the hazard pipeline.

    hazard_feed           stored events, live subscriptions, watch sessions
    subscriber_directory  snapshot readable (Redis reachable when configured)
    fanout_worker         consuming the feed; UNHEALTHY after connectivity loss
    failed_dispatches     DEGRADED while batches were dropped recently

/health returns the full report; /health/ready answers 503 when any
component is UNHEALTHY.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List

from hazardwatch.core.config import settings

if TYPE_CHECKING:
    from hazardwatch.services import Services

logger = logging.getLogger(__name__)

FAILED_DISPATCH_WINDOW = timedelta(minutes=15)

_STARTED = time.monotonic()


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.UNHEALTHY: 2}


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    latency_ms: float = 0.0

    def fail(self, message: str, status: HealthStatus = HealthStatus.UNHEALTHY) -> None:
        self.status = status
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            out["message"] = self.message
        if self.details:
            out["details"] = self.details
        return out


@dataclass
class HealthReport:
    components: List[ComponentHealth] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def status(self) -> HealthStatus:
        """Worst component status."""
        if not self.components:
            return HealthStatus.HEALTHY
        return max((c.status for c in self.components), key=_SEVERITY.__getitem__)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "timestamp": self.checked_at.isoformat(),
            "uptime_seconds": round(time.monotonic() - _STARTED, 1),
            "components": [c.to_dict() for c in self.components],
        }


# ═══════════════════════════════════════════════════════════════════════════
# Component checks
# ═══════════════════════════════════════════════════════════════════════════

async def check_feed(services: "Services") -> ComponentHealth:
    return ComponentHealth(
        name="hazard_feed",
        message="Feed available",
        details={
            "events": len(services.feed),
            "subscriptions": services.feed.subscription_count,
            "watch_sessions": services.sessions.active_count,
        },
    )


async def check_directory(services: "Services") -> ComponentHealth:
    comp = ComponentHealth(
        name="subscriber_directory",
        details={"backend": type(services.directory).__name__},
    )
    try:
        records = await services.directory.snapshot()
    except Exception as exc:
        logger.warning("Directory health check failed: %s", exc)
        comp.fail(str(exc) or type(exc).__name__)
        return comp
    reachable = sum(1 for r in records if r.is_reachable)
    comp.message = f"{reachable}/{len(records)} subscriber(s) reachable"
    return comp


async def check_fanout_worker(services: "Services") -> ComponentHealth:
    worker = services.worker
    comp = ComponentHealth(
        name="fanout_worker",
        message="Consuming feed",
        details={"inflight": worker.inflight_count},
    )
    if worker.connectivity_error is not None:
        comp.fail(worker.connectivity_error.message)
    elif not worker.is_running:
        comp.fail("Worker not running")
    return comp


async def check_failed_dispatches(services: "Services") -> ComponentHealth:
    store = services.report_store
    cutoff = datetime.now(timezone.utc) - FAILED_DISPATCH_WINDOW
    recent = sum(1 for f in store.failed_dispatches(limit=1000) if f.reported_at >= cutoff)
    comp = ComponentHealth(
        name="failed_dispatches",
        message="No recent dropped batches",
        details={"total": store.total_failures},
    )
    if recent:
        comp.fail(
            f"{recent} batch(es) dropped in the last {FAILED_DISPATCH_WINDOW.seconds // 60} minutes",
            HealthStatus.DEGRADED,
        )
    return comp


CHECKS: List[Callable[["Services"], Awaitable[ComponentHealth]]] = [
    check_feed,
    check_directory,
    check_fanout_worker,
    check_failed_dispatches,
]


async def run_health_check(services: "Services") -> HealthReport:
    """Run every check in CHECKS, timing each one."""
    report = HealthReport()
    for check in CHECKS:
        start = time.monotonic()
        comp = await check(services)
        comp.latency_ms = (time.monotonic() - start) * 1000
        report.components.append(comp)
    return report
