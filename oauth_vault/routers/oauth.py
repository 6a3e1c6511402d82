from __future__ import annotations
from datetime import datetime
from typing import Annotated, List, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Path, Request
from pydantic import BaseModel, Field

from oauth_vault.security.internal import caller_context, require_internal, subject_identity
from oauth_vault.services.orchestrator import CallerContext, OAuthFlowOrchestrator
from oauth_vault.services.tokens import ConnectedAccount

router = APIRouter(prefix="/oauth", tags=["oauth"], dependencies=[Depends(require_internal)])

Platform = Annotated[str, Path(min_length=1, max_length=32, pattern=r"^[a-z]+$")]


def get_orchestrator(request: Request) -> OAuthFlowOrchestrator:
    return request.app.state.orchestrator


class InitiateResp(BaseModel):
    authorization_url: str
    state: str
    platform: str
    expires_at: datetime


class CallbackReq(BaseModel):
    code: str = Field(..., min_length=1, max_length=2048)
    state: str = Field(..., min_length=1, max_length=512)


class ConnectedAccountResp(BaseModel):
    platform: str
    granted_scopes: List[str] = []
    access_expires_at: Optional[datetime] = None
    refresh_available: bool
    connected_at: datetime
    last_used_at: Optional[datetime] = None
    platform_user_id: Optional[str] = None
    username: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None

    @classmethod
    def of(cls, account: ConnectedAccount) -> "ConnectedAccountResp":
        return cls(
            platform=account.platform,
            granted_scopes=account.granted_scopes,
            access_expires_at=account.access_expires_at,
            refresh_available=account.refresh_available,
            connected_at=account.connected_at,
            last_used_at=account.last_used_at,
            platform_user_id=account.platform_user_id,
            username=account.username,
            display_name=account.display_name,
            avatar_url=account.avatar_url,
        )


class OkResp(BaseModel):
    ok: bool


class RevokeResp(BaseModel):
    revoked: bool
    existed: bool


@router.post("/{platform}/initiate", response_model=InitiateResp, summary="Start an OAuth flow")
async def initiate(
    platform: Platform,
    identity: Tuple[str, str] = Depends(subject_identity),
    caller: CallerContext = Depends(caller_context),
    orchestrator: OAuthFlowOrchestrator = Depends(get_orchestrator),
):
    subject_id, organization_id = identity
    result = await orchestrator.initiate(platform, subject_id, organization_id, caller)
    return InitiateResp(
        authorization_url=result.authorization_url,
        state=result.state,
        platform=result.platform,
        expires_at=result.expires_at,
    )


@router.post("/{platform}/callback", response_model=ConnectedAccountResp,
             summary="Exchange the authorization code and store the tokens")
async def callback(
    payload: CallbackReq,
    platform: Platform,
    identity: Tuple[str, str] = Depends(subject_identity),
    caller: CallerContext = Depends(caller_context),
    orchestrator: OAuthFlowOrchestrator = Depends(get_orchestrator),
):
    subject_id, organization_id = identity
    account = await orchestrator.callback(platform, payload.code, payload.state, subject_id, organization_id, caller)
    return ConnectedAccountResp.of(account)


@router.post("/{platform}/refresh", response_model=OkResp, summary="Refresh the stored access token")
async def refresh(
    platform: Platform,
    identity: Tuple[str, str] = Depends(subject_identity),
    caller: CallerContext = Depends(caller_context),
    orchestrator: OAuthFlowOrchestrator = Depends(get_orchestrator),
):
    subject_id, organization_id = identity
    result = await orchestrator.refresh(platform, subject_id, caller, organization_id)
    return OkResp(ok=result.ok)


@router.post("/{platform}/revoke", response_model=RevokeResp,
             summary="Revoke tokens and remove the vault record (idempotent)")
async def revoke(
    platform: Platform,
    identity: Tuple[str, str] = Depends(subject_identity),
    caller: CallerContext = Depends(caller_context),
    orchestrator: OAuthFlowOrchestrator = Depends(get_orchestrator),
):
    subject_id, organization_id = identity
    result = await orchestrator.revoke(platform, subject_id, caller, organization_id)
    return RevokeResp(revoked=result.revoked, existed=result.existed)


@router.get("/connections/{platform}", response_model=ConnectedAccountResp, summary="Connected account summary")
async def connection(
    platform: Platform,
    identity: Tuple[str, str] = Depends(subject_identity),
    orchestrator: OAuthFlowOrchestrator = Depends(get_orchestrator),
):
    account = await orchestrator.connection(platform, identity[0])
    if account is None:
        raise HTTPException(status_code=404, detail="not connected")
    return ConnectedAccountResp.of(account)
