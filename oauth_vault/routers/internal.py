from __future__ import annotations
import asyncio
from datetime import datetime
from itertools import islice
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from oauth_vault.routers.oauth import get_orchestrator
from oauth_vault.security.internal import require_internal
from oauth_vault.services.audit import AuditFilter
from oauth_vault.services.maintenance import run_maintenance
from oauth_vault.services.orchestrator import OAuthFlowOrchestrator

router = APIRouter(prefix="/internal", tags=["internal"], dependencies=[Depends(require_internal)])


class AuditEventResp(BaseModel):
    id: str
    subject_id: str
    organization_id: Optional[str] = None
    platform: str
    action: str
    success: bool
    error_code: Optional[str] = None
    caller_ip: Optional[str] = None
    caller_agent: Optional[str] = None
    timestamp: datetime


class MaintenanceResp(BaseModel):
    states_purged: int
    counters_purged: int
    audit_events_purged: int
    audit_events_flushed: int


@router.get("/ping")
def ping():
    return {"ok": True}


@router.get("/audit", response_model=List[AuditEventResp], summary="Audit trail, oldest first")
async def audit_events(
    subject_id: Optional[str] = Query(None, max_length=255),
    organization_id: Optional[str] = Query(None, max_length=255),
    platform: Optional[str] = Query(None, max_length=32),
    action: Optional[str] = Query(None, pattern=r"^(initiate|callback|refresh|revoke)$"),
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=1000),
    orchestrator: OAuthFlowOrchestrator = Depends(get_orchestrator),
):
    query = orchestrator.audit.query(AuditFilter(
        subject_id=subject_id,
        organization_id=organization_id,
        platform=platform,
        action=action,
        since=since,
        until=until,
    ), page_size=min(limit, 200))
    events = await asyncio.to_thread(lambda: list(islice(query, limit)))
    return [AuditEventResp(**vars(e)) for e in events]


@router.post("/maintenance", response_model=MaintenanceResp, summary="Purge expired state, counters and old audit events")
async def maintenance(request: Request, orchestrator: OAuthFlowOrchestrator = Depends(get_orchestrator)):
    cfg = request.app.state.settings
    report = await asyncio.to_thread(run_maintenance, orchestrator, cfg.AUDIT_RETENTION_DAYS)
    return MaintenanceResp(**vars(report))
