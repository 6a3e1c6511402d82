from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from oauth_vault.core.clock import utcnow
from oauth_vault.services.orchestrator import OAuthFlowOrchestrator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MaintenanceReport:
    states_purged: int
    counters_purged: int
    audit_events_purged: int
    audit_events_flushed: int


def run_maintenance(
    orchestrator: OAuthFlowOrchestrator,
    retention_days: int,
    now: Optional[datetime] = None,
) -> MaintenanceReport:
    """
    Housekeeping, meant to run on a schedule: expired state tickets, closed rate-limit
    windows, audit events past retention, and a retry of buffered audit writes.
    """
    now = now or utcnow()
    report = MaintenanceReport(
        states_purged=orchestrator.states.purge_expired(now),
        counters_purged=orchestrator.limiter.purge_expired_counters(now.timestamp()),
        audit_events_purged=orchestrator.audit.purge_before(now - timedelta(days=retention_days)),
        audit_events_flushed=orchestrator.audit.flush_pending(),
    )
    logger.info("maintenance done", extra={
        "states_purged": report.states_purged,
        "counters_purged": report.counters_purged,
        "audit_events_purged": report.audit_events_purged,
        "audit_events_flushed": report.audit_events_flushed,
    })
    return report
