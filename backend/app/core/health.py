"""
Health check aggregation — deep health probe for the notification service.

Checks:
    • Database connectivity (SELECT 1 through the session factory)
    • Channel health (any dispatchable channel tripped to 'failed' → degraded)
    • Queue backlog (dead letters waiting for an operator → degraded)
    • Scheduler running

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
    - Monitoring dashboards
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from sqlalchemy import text

from backend.app.core.config import settings

if TYPE_CHECKING:
    from backend.app.notifications.pipeline import NotificationPipeline
    from backend.app.notifications.scheduler import NotificationScheduler

logger = logging.getLogger(__name__)

# Backlog above this many pending entries is reported as degraded
PENDING_BACKLOG_WARN = 1000


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


async def check_database(pipeline: NotificationPipeline) -> ComponentHealth:
    """Round-trip a trivial query."""
    comp = ComponentHealth(name="database")
    start = time.monotonic()
    try:
        async with pipeline.session_factory() as session:
            await session.execute(text("SELECT 1"))
        comp.message = "Connection available"
        comp.details = {"url": settings.DATABASE_URL.split("@")[-1]}
    except Exception as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_channels(pipeline: NotificationPipeline) -> ComponentHealth:
    """Enabled channels whose health circuit has tripped."""
    comp = ComponentHealth(name="channels")
    start = time.monotonic()
    try:
        channels = await pipeline.manager.list_channels()
        failed = [c.channel_type for c in channels if c.enabled and c.state.value == "failed"]
        active = [c.channel_type for c in channels if c.dispatchable]
        comp.details = {"active": active, "failed": failed, "implemented": pipeline.registry.types()}
        if failed:
            comp.status = HealthStatus.DEGRADED
            comp.message = f"Failing channels: {', '.join(failed)}"
        elif not pipeline.registry.types():
            comp.status = HealthStatus.DEGRADED
            comp.message = "No channel implementations registered"
        else:
            comp.message = f"{len(active)} channel(s) active"
    except Exception as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_queue(pipeline: NotificationPipeline) -> ComponentHealth:
    """Dead letters and pending backlog."""
    comp = ComponentHealth(name="queue")
    start = time.monotonic()
    try:
        stats = await pipeline.queue_stats()
        comp.details = {
            "pending": stats.pending,
            "dead_letters": stats.dead_letters,
            "in_flight": pipeline.worker.in_flight,
        }
        if stats.dead_letters:
            comp.status = HealthStatus.DEGRADED
            comp.message = f"{stats.dead_letters} dead-letter entries need attention"
        elif stats.pending > PENDING_BACKLOG_WARN:
            comp.status = HealthStatus.DEGRADED
            comp.message = f"Backlog of {stats.pending} pending entries"
        else:
            comp.message = f"{stats.pending} pending"
    except Exception as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


def check_scheduler(scheduler: Optional[NotificationScheduler]) -> ComponentHealth:
    comp = ComponentHealth(name="scheduler")
    if scheduler is None:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Scheduler disabled; queue is only processed on demand"
    elif scheduler.running:
        comp.message = "Running"
        comp.details = {"jobs": scheduler.job_ids()}
    else:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Scheduler not running"
    return comp


async def run_health_check(
    pipeline: Optional[NotificationPipeline],
    scheduler: Optional[NotificationScheduler] = None,
) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    if pipeline is None:
        report.components.append(ComponentHealth(
            name="pipeline", status=HealthStatus.UNHEALTHY, message="Pipeline not started",
        ))
    else:
        report.components.append(await check_database(pipeline))
        report.components.append(await check_channels(pipeline))
        report.components.append(await check_queue(pipeline))
        report.components.append(check_scheduler(scheduler))

    # Aggregate status
    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
