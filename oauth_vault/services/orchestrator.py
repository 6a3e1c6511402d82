from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

import httpx
from sqlalchemy.orm import sessionmaker

from oauth_vault.core.clock import as_utc, utcnow
from oauth_vault.core.config import Settings
from oauth_vault.core.errors import (
    ConfigurationError,
    OAuthVaultError,
    ReconnectRequired,
    ScopeError,
    TokenNotFound,
    UpstreamError,
    ValidationError,
)
from oauth_vault.core.logging import audit_fallback_logger
from oauth_vault.security.ratelimit import RateLimiter
from oauth_vault.services.audit import AuditEvent, AuditLogger
from oauth_vault.services.crypto import TokenCipher
from oauth_vault.services.platforms import (
    AccountProfile,
    PlatformClient,
    PlatformSpec,
    TokenGrant,
    build_authorization_url,
    get_platform,
)
from oauth_vault.services.scopes import ScopeValidator
from oauth_vault.services.state import StateManager
from oauth_vault.services.tokens import ConnectedAccount, TokenVault, summarize

logger = logging.getLogger(__name__)

MAX_CODE_LENGTH = 2048
REFRESH_SKEW = timedelta(seconds=30)


class FlowState(str, Enum):
    IDLE = "Idle"
    STATE_ISSUED = "StateIssued"
    CALLBACK_RECEIVED = "CallbackReceived"
    CODE_EXCHANGE_PENDING = "CodeExchangePending"
    TOKEN_STORED = "TokenStored"
    EXPIRED = "Expired"
    FAILED = "Failed"


TERMINAL: FrozenSet[FlowState] = frozenset({FlowState.EXPIRED, FlowState.FAILED})

TRANSITIONS: Dict[FlowState, FrozenSet[FlowState]] = {
    FlowState.IDLE: frozenset({FlowState.STATE_ISSUED}),
    FlowState.STATE_ISSUED: frozenset({FlowState.CALLBACK_RECEIVED}),
    FlowState.CALLBACK_RECEIVED: frozenset({FlowState.CODE_EXCHANGE_PENDING}),
    FlowState.CODE_EXCHANGE_PENDING: frozenset({FlowState.TOKEN_STORED}),
    # refresh re-enters the exchange from a stored token
    FlowState.TOKEN_STORED: frozenset({FlowState.CODE_EXCHANGE_PENDING}),
    FlowState.EXPIRED: frozenset(),
    FlowState.FAILED: frozenset(),
}


@dataclass(frozen=True)
class CallerContext:
    ip: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class FlowRecord:
    """One flow instance. Transitions are strictly sequential and terminal states absorb."""

    action: str
    platform: str
    subject_id: str
    organization_id: Optional[str] = None
    caller: CallerContext = field(default_factory=CallerContext)
    state: FlowState = FlowState.IDLE
    history: List[FlowState] = field(default_factory=list)
    failure_reason: Optional[str] = None
    # set once the encrypted record is durably written
    committed: bool = False

    def __post_init__(self):
        self.history.append(self.state)

    def advance(self, to: FlowState) -> None:
        if to in TERMINAL or to not in TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal flow transition {self.state.value} -> {to.value}")
        self.state = to
        self.history.append(to)

    def fail(self, reason: str, expired: bool = False) -> None:
        if self.state in TERMINAL:
            return
        self.state = FlowState.EXPIRED if expired else FlowState.FAILED
        self.failure_reason = reason
        self.history.append(self.state)


@dataclass(frozen=True)
class InitiateResult:
    authorization_url: str
    state: str
    platform: str
    expires_at: datetime


@dataclass(frozen=True)
class RefreshResult:
    ok: bool
    account: ConnectedAccount


@dataclass(frozen=True)
class RevokeResult:
    revoked: bool
    existed: bool


@dataclass(frozen=True)
class AccessToken:
    access_token: str
    expires_at: Optional[datetime]
    scopes: List[str]


def _detail(e: BaseException) -> Optional[str]:
    if isinstance(e, UpstreamError):
        return f"status={e.status_code} {e.detail or e}"[:2000]
    if isinstance(e, ScopeError):
        return "missing: " + " ".join(e.missing)
    if isinstance(e, OAuthVaultError):
        return str(e)
    return repr(e)[:2000]


class OAuthFlowOrchestrator:
    """
    Drives initiate / callback / refresh / revoke for every platform.

    Storage work runs in worker threads; the only suspension points inside a flow are
    those threads and the platform HTTP call. Shared structures (state tickets, rate
    counters) are touched in single statements, never across the network round trip.
    """

    def __init__(
        self,
        cfg: Settings,
        *,
        states: StateManager,
        vault: TokenVault,
        limiter: RateLimiter,
        audit: AuditLogger,
        platforms: PlatformClient,
        scopes: Optional[ScopeValidator] = None,
        on_transition: Optional[Callable[[FlowRecord], None]] = None,
    ):
        self.cfg = cfg
        self.states = states
        self.vault = vault
        self.limiter = limiter
        self.audit = audit
        self.platforms = platforms
        self.scopes = scopes or ScopeValidator()
        self._on_transition = on_transition

    # ---- helpers -------------------------------------------------------------
    def _advance(self, flow: FlowRecord, to: FlowState) -> None:
        flow.advance(to)
        logger.debug("flow transition", extra={"action": flow.action, "platform": flow.platform, "flow_state": to.value})
        if self._on_transition:
            self._on_transition(flow)

    def _fail(self, flow: FlowRecord, reason: str, expired: bool = False) -> None:
        flow.fail(reason, expired=expired)
        logger.info("flow failed", extra={"action": flow.action, "platform": flow.platform, "reason": reason})
        if self._on_transition:
            self._on_transition(flow)

    def _event(self, flow: FlowRecord, success: bool, error_code: Optional[str], detail: Optional[str]) -> AuditEvent:
        return AuditEvent(
            subject_id=flow.subject_id,
            organization_id=flow.organization_id,
            platform=flow.platform[:32],
            action=flow.action,
            success=success,
            error_code=error_code,
            detail=detail,
            caller_ip=flow.caller.ip[:64] if flow.caller.ip else None,
            caller_agent=flow.caller.user_agent[:512] if flow.caller.user_agent else None,
        )

    async def _audit(self, flow: FlowRecord, success: bool, error_code: Optional[str] = None,
                     detail: Optional[str] = None) -> None:
        await asyncio.to_thread(self.audit.record, self._event(flow, success, error_code, detail))

    def _audit_nowait(self, flow: FlowRecord, success: bool, error_code: Optional[str],
                      detail: Optional[str] = None) -> None:
        """Best-effort audit from a cancelled task: hand the write to the executor and move on."""
        try:
            loop = asyncio.get_running_loop()
            loop.run_in_executor(None, self.audit.record, self._event(flow, success, error_code, detail))
        except RuntimeError:
            logger.warning("could not schedule audit for aborted flow", extra={"action": flow.action})

    async def _fail_and_audit(self, flow: FlowRecord, e: BaseException) -> None:
        code = e.code if isinstance(e, OAuthVaultError) else "InternalError"
        self._fail(flow, code, expired=(code == "StateExpired"))
        await self._audit(flow, False, code, _detail(e))

    async def _persist(
        self,
        flow: FlowRecord,
        spec: PlatformSpec,
        grant: TokenGrant,
        granted: List[str],
        profile: Optional[AccountProfile] = None,
    ) -> ConnectedAccount:
        """
        Write the encrypted record. Once the write has started it is allowed to finish
        even if the caller goes away, so there is never a half-committed token.
        """
        write = asyncio.ensure_future(
            asyncio.to_thread(self.vault.store, flow.subject_id, spec.name, grant, granted, profile)
        )
        try:
            account = await asyncio.shield(write)
        except asyncio.CancelledError:
            await write
            flow.committed = True
            self._advance(flow, FlowState.TOKEN_STORED)
            self._audit_nowait(flow, True, None, "caller cancelled after the record was stored")
            raise
        flow.committed = True
        return account

    def _redirect_uri(self, spec: PlatformSpec) -> Tuple[str, str]:
        client_id, _, redirect_uri = self.platforms.credentials(spec)
        if not self.cfg.redirect_uri_allowed(redirect_uri):
            raise ConfigurationError(f"{spec.name} redirect URI is not in the allow-list")
        return client_id, redirect_uri

    # ---- flows ---------------------------------------------------------------
    async def initiate(
        self,
        platform: str,
        subject_id: str,
        organization_id: str,
        caller: Optional[CallerContext] = None,
    ) -> InitiateResult:
        flow = FlowRecord("initiate", platform, subject_id, organization_id, caller or CallerContext())
        try:
            await asyncio.to_thread(self.limiter.admit, subject_id, "initiate")
            spec = get_platform(platform)
            flow.platform = spec.name
            client_id, redirect_uri = self._redirect_uri(spec)
            issued = await asyncio.to_thread(self.states.issue, subject_id, organization_id, spec.name, spec.pkce)
            url = build_authorization_url(
                spec,
                client_id=client_id,
                redirect_uri=redirect_uri,
                state=issued.state_id,
                code_challenge=issued.pkce_challenge,
            )
            self._advance(flow, FlowState.STATE_ISSUED)
        except OAuthVaultError as e:
            await self._fail_and_audit(flow, e)
            raise

        await self._audit(flow, True)
        return InitiateResult(authorization_url=url, state=issued.state_id, platform=spec.name,
                              expires_at=issued.expires_at)

    async def callback(
        self,
        platform: str,
        code: str,
        state: str,
        subject_id: str,
        organization_id: str,
        caller: Optional[CallerContext] = None,
    ) -> ConnectedAccount:
        flow = FlowRecord("callback", platform, subject_id, organization_id, caller or CallerContext(),
                          state=FlowState.STATE_ISSUED)
        self._advance(flow, FlowState.CALLBACK_RECEIVED)
        try:
            spec = get_platform(platform)
            flow.platform = spec.name
            if not code or len(code) > MAX_CODE_LENGTH:
                raise ValidationError("malformed authorization code")

            # keyed by the authenticated subject, never by a client-supplied address
            await asyncio.to_thread(self.limiter.admit, subject_id, "callback")
            ticket = await asyncio.to_thread(
                self.states.validate_and_consume, state, subject_id, organization_id, spec.name
            )
            _, redirect_uri = self._redirect_uri(spec)

            self._advance(flow, FlowState.CODE_EXCHANGE_PENDING)
            grant = await self.platforms.exchange_code(spec, code, redirect_uri, ticket.pkce_verifier)
            # RFC 6749 5.1: an omitted scope means the requested scope was granted
            granted = grant.scopes if grant.scopes is not None else list(spec.scopes)
            self.scopes.require(spec.scopes, granted)

            # a profile failure aborts the connect before anything is stored
            profile = await self.platforms.fetch_profile(spec, grant.access_token)
            account = await self._persist(flow, spec, grant, granted, profile)
            self._advance(flow, FlowState.TOKEN_STORED)
        except asyncio.CancelledError:
            if not flow.committed:
                self._fail(flow, "Cancelled")
                self._audit_nowait(flow, False, "Cancelled")
            raise
        except Exception as e:
            await self._fail_and_audit(flow, e)
            raise

        await self._audit(flow, True)
        logger.info("account connected", extra={"platform": spec.name, "scopes": len(granted)})
        return account

    async def refresh(
        self,
        platform: str,
        subject_id: str,
        caller: Optional[CallerContext] = None,
        organization_id: Optional[str] = None,
    ) -> RefreshResult:
        flow = FlowRecord("refresh", platform, subject_id, organization_id, caller or CallerContext(),
                          state=FlowState.TOKEN_STORED)
        try:
            spec = get_platform(platform)
            flow.platform = spec.name
            await asyncio.to_thread(self.limiter.admit, subject_id, "refresh")

            row = await asyncio.to_thread(self.vault.get, subject_id, spec.name)
            if row is None:
                raise TokenNotFound("no token record for subject")
            stored = self.vault.decrypt(row)
            if not stored.refresh_token:
                raise ReconnectRequired("missing refresh_token; subject must reconnect")
            previous = summarize(row).granted_scopes

            self._advance(flow, FlowState.CODE_EXCHANGE_PENDING)
            try:
                grant = await self.platforms.refresh(spec, stored.refresh_token)
            except UpstreamError as e:
                if not e.retryable and e.status_code in (400, 401):
                    # invalid_grant: the refresh token is dead
                    raise ReconnectRequired(f"refresh rejected: status={e.status_code} {e.detail or ''}") from e
                raise
            granted = grant.scopes if grant.scopes is not None else previous
            self.scopes.require(spec.scopes, granted)

            account = await self._persist(flow, spec, grant, granted)
            self._advance(flow, FlowState.TOKEN_STORED)
        except asyncio.CancelledError:
            if not flow.committed:
                self._fail(flow, "Cancelled")
                self._audit_nowait(flow, False, "Cancelled")
            raise
        except Exception as e:
            await self._fail_and_audit(flow, e)
            raise

        await self._audit(flow, True)
        return RefreshResult(ok=True, account=account)

    async def revoke(
        self,
        platform: str,
        subject_id: str,
        caller: Optional[CallerContext] = None,
        organization_id: Optional[str] = None,
    ) -> RevokeResult:
        flow = FlowRecord("revoke", platform, subject_id, organization_id, caller or CallerContext(),
                          state=FlowState.TOKEN_STORED)
        try:
            spec = get_platform(platform)
            flow.platform = spec.name
            await asyncio.to_thread(self.limiter.admit, subject_id, "revoke")
            row = await asyncio.to_thread(self.vault.get, subject_id, spec.name)
            if row is not None:
                await self._revoke_upstream(spec, row)
            existed = await asyncio.to_thread(self.vault.delete, subject_id, spec.name)
        except Exception as e:
            await self._fail_and_audit(flow, e)
            raise

        await self._audit(flow, True, None if existed else "NoRecord")
        return RevokeResult(revoked=True, existed=existed)

    async def _revoke_upstream(self, spec: PlatformSpec, row) -> None:
        # local deletion happens regardless; a platform hiccup must not keep tokens around
        try:
            payload = self.vault.decrypt(row)
            token = payload.refresh_token or payload.access_token
            await self.platforms.revoke(spec, token)
        except (OAuthVaultError, httpx.HTTPError) as e:
            logger.warning("upstream revoke failed; clearing locally", extra={"platform": spec.name, "error": repr(e)})

    # ---- read side -----------------------------------------------------------
    async def connection(self, platform: str, subject_id: str) -> Optional[ConnectedAccount]:
        spec = get_platform(platform)
        row = await asyncio.to_thread(self.vault.get, subject_id, spec.name)
        return summarize(row) if row is not None else None

    async def ensure_access_token(self, platform: str, subject_id: str) -> AccessToken:
        """
        A valid access token for (subject, platform), refreshed first when it expires
        within REFRESH_SKEW and a refresh token is available.
        """
        spec = get_platform(platform)
        row = await asyncio.to_thread(self.vault.get, subject_id, spec.name)
        if row is None:
            raise TokenNotFound("no token record for subject")

        expires_at = as_utc(row.access_expires_at)
        if expires_at is None or expires_at - utcnow() > REFRESH_SKEW:
            payload = self.vault.decrypt(row)
            await asyncio.to_thread(self.vault.touch, subject_id, spec.name)
            return AccessToken(payload.access_token, expires_at, summarize(row).granted_scopes)

        if not row.refresh_available:
            raise ReconnectRequired("access token expired and no refresh_token; subject must reconnect")
        result = await self.refresh(spec.name, subject_id)
        row = await asyncio.to_thread(self.vault.get, subject_id, spec.name)
        if row is None:
            raise TokenNotFound("token record removed during refresh")
        await asyncio.to_thread(self.vault.touch, subject_id, spec.name)
        return AccessToken(self.vault.decrypt(row).access_token, result.account.access_expires_at,
                           result.account.granted_scopes)


def build_orchestrator(
    cfg: Settings,
    session_factory: sessionmaker,
    cipher: TokenCipher,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> OAuthFlowOrchestrator:
    return OAuthFlowOrchestrator(
        cfg,
        states=StateManager(session_factory, ttl_seconds=cfg.STATE_TTL_SECONDS),
        vault=TokenVault(session_factory, cipher),
        limiter=RateLimiter(session_factory, cfg.rate_limit_rules()),
        audit=AuditLogger(session_factory, fallback=audit_fallback_logger(cfg.LOG_DIR)),
        platforms=PlatformClient(cfg, transport=transport),
    )
