from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar
from urllib.parse import urlencode

import httpx

from oauth_vault.core.clock import utcnow
from oauth_vault.core.config import Settings
from oauth_vault.core.errors import ConfigurationError, UnsupportedPlatform, UpstreamError
from oauth_vault.services.scopes import parse_scopes

logger = logging.getLogger(__name__)

EXPIRY_SKEW_SECONDS = 30
BACKOFF_BASE_SECONDS = 0.25

T = TypeVar("T")


@dataclass(frozen=True)
class PlatformSpec:
    name: str
    authorize_url: str
    token_url: str
    scopes: Tuple[str, ...]
    revoke_url: Optional[str] = None
    scope_separator: str = " "
    pkce: bool = False
    # confidential client credentials in an Authorization: Basic header instead of the body
    basic_auth: bool = False
    extra_authorize_params: Dict[str, str] = field(default_factory=dict)
    # GET with the fresh access token; identifies the connected account
    userinfo_url: Optional[str] = None
    userinfo_params: Dict[str, str] = field(default_factory=dict)


PLATFORMS: Dict[str, PlatformSpec] = {
    "twitter": PlatformSpec(
        name="twitter",
        authorize_url="https://twitter.com/i/oauth2/authorize",
        token_url="https://api.twitter.com/2/oauth2/token",
        revoke_url="https://api.twitter.com/2/oauth2/revoke",
        scopes=("tweet.read", "tweet.write", "users.read", "offline.access"),
        pkce=True,
        basic_auth=True,
        userinfo_url="https://api.twitter.com/2/users/me",
        userinfo_params={"user.fields": "id,name,username,profile_image_url"},
    ),
    "linkedin": PlatformSpec(
        name="linkedin",
        authorize_url="https://www.linkedin.com/oauth/v2/authorization",
        token_url="https://www.linkedin.com/oauth/v2/accessToken",
        revoke_url="https://www.linkedin.com/oauth/v2/revoke",
        scopes=("r_liteprofile", "r_emailaddress", "w_member_social"),
        userinfo_url="https://api.linkedin.com/v2/me",
    ),
    "facebook": PlatformSpec(
        name="facebook",
        authorize_url="https://www.facebook.com/v18.0/dialog/oauth",
        token_url="https://graph.facebook.com/v18.0/oauth/access_token",
        scopes=("pages_show_list", "pages_read_engagement", "pages_manage_posts"),
        scope_separator=",",
        userinfo_url="https://graph.facebook.com/v18.0/me",
        userinfo_params={"fields": "id,name,picture"},
    ),
    "instagram": PlatformSpec(
        name="instagram",
        authorize_url="https://api.instagram.com/oauth/authorize",
        token_url="https://api.instagram.com/oauth/access_token",
        scopes=("user_profile", "user_media"),
        scope_separator=",",
        userinfo_url="https://graph.instagram.com/me",
        userinfo_params={"fields": "id,username"},
    ),
    "google": PlatformSpec(
        name="google",
        authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        revoke_url="https://oauth2.googleapis.com/revoke",
        scopes=(
            "openid",
            "https://www.googleapis.com/auth/userinfo.email",
            "https://www.googleapis.com/auth/userinfo.profile",
        ),
        pkce=True,
        extra_authorize_params={
            "access_type": "offline",  # ensure we get a refresh_token on first connect
            "include_granted_scopes": "true",
            "prompt": "consent",
        },
        userinfo_url="https://openidconnect.googleapis.com/v1/userinfo",
    ),
}


def get_platform(name: str) -> PlatformSpec:
    spec = PLATFORMS.get((name or "").lower())
    if spec is None:
        raise UnsupportedPlatform(f"unsupported platform {name!r}")
    return spec


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    refresh_token: Optional[str]
    token_type: Optional[str]
    expires_at: Optional[datetime]
    # None when the platform did not report scopes
    scopes: Optional[List[str]]


@dataclass(frozen=True)
class AccountProfile:
    """Who the subject connected as. Nothing here is secret."""

    platform_user_id: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


ProfileFields = Tuple[Any, Optional[str], Optional[str], Optional[str]]


def _twitter_profile(j: Dict[str, Any]) -> ProfileFields:
    user = j.get("data") or {}
    return user.get("id"), user.get("username"), user.get("name"), user.get("profile_image_url")


def _linkedin_profile(j: Dict[str, Any]) -> ProfileFields:
    name = " ".join(p for p in (j.get("localizedFirstName"), j.get("localizedLastName")) if p) or None
    return j.get("id"), name, name, None


def _facebook_profile(j: Dict[str, Any]) -> ProfileFields:
    picture = ((j.get("picture") or {}).get("data") or {}).get("url")
    return j.get("id"), j.get("name"), j.get("name"), picture


def _instagram_profile(j: Dict[str, Any]) -> ProfileFields:
    return j.get("id"), j.get("username"), j.get("username"), None


def _google_profile(j: Dict[str, Any]) -> ProfileFields:
    return j.get("sub"), j.get("email"), j.get("name"), j.get("picture")


_PROFILE_PARSERS: Dict[str, Callable[[Dict[str, Any]], ProfileFields]] = {
    "twitter": _twitter_profile,
    "linkedin": _linkedin_profile,
    "facebook": _facebook_profile,
    "instagram": _instagram_profile,
    "google": _google_profile,
}


def parse_profile(spec: PlatformSpec, payload: Any) -> AccountProfile:
    parser = _PROFILE_PARSERS.get(spec.name)
    if parser is None or not isinstance(payload, dict):
        raise UpstreamError(f"{spec.name} returned an unreadable profile", detail=str(payload)[:500])
    user_id, username, display_name, avatar_url = parser(payload)
    if not user_id:
        raise UpstreamError(f"{spec.name} profile has no user id", detail=str(payload)[:500])
    return AccountProfile(
        platform_user_id=str(user_id)[:128],
        username=username[:255] if username else None,
        display_name=display_name[:255] if display_name else None,
        avatar_url=avatar_url[:1024] if avatar_url else None,
    )


def build_authorization_url(
    spec: PlatformSpec,
    *,
    client_id: str,
    redirect_uri: str,
    state: str,
    code_challenge: Optional[str] = None,
) -> str:
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": spec.scope_separator.join(spec.scopes),
        "state": state,
        **spec.extra_authorize_params,
    }
    if code_challenge:
        params["code_challenge"] = code_challenge
        params["code_challenge_method"] = "S256"
    return f"{spec.authorize_url}?{urlencode(params)}"


class PlatformClient:
    """
    Talks to the platforms' token and userinfo endpoints. Every call runs under a
    per-attempt httpx timeout and an overall budget; only timeouts, connection
    failures and 5xx are retried.
    """

    def __init__(
        self,
        cfg: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.cfg = cfg
        self.timeout = float(cfg.TOKEN_EXCHANGE_TIMEOUT_SECONDS)
        self.max_attempts = max(1, int(cfg.TOKEN_EXCHANGE_MAX_ATTEMPTS))
        self._transport = transport
        self._sleep = sleep

    def credentials(self, spec: PlatformSpec) -> Tuple[str, str, str]:
        client_id, client_secret, redirect_uri = self.cfg.platform_credentials(spec.name)
        if not client_id or not client_secret or not redirect_uri:
            raise ConfigurationError(f"missing client credentials for {spec.name}")
        return client_id, client_secret, redirect_uri

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _budget(self) -> float:
        backoff = sum(BACKOFF_BASE_SECONDS * 2 ** n for n in range(self.max_attempts - 1))
        return self.timeout * self.max_attempts + backoff

    async def _send(
        self,
        spec: PlatformSpec,
        endpoint: str,
        request: Callable[[httpx.AsyncClient], Awaitable[httpx.Response]],
    ) -> httpx.Response:
        """One HTTP round trip, with transport failures and error statuses mapped to UpstreamError."""
        try:
            async with self._client() as client:
                resp = await request(client)
        except httpx.TimeoutException as e:
            raise UpstreamError(f"{spec.name} {endpoint} endpoint timed out", retryable=True, detail=repr(e)) from e
        except httpx.TransportError as e:
            raise UpstreamError(f"{spec.name} {endpoint} endpoint unreachable", retryable=True, detail=repr(e)) from e

        if resp.status_code >= 500:
            raise UpstreamError(
                f"{spec.name} {endpoint} endpoint error", retryable=True,
                status_code=resp.status_code, detail=resp.text[:500],
            )
        if resp.status_code >= 400:
            raise UpstreamError(
                f"{spec.name} rejected the {endpoint} request", retryable=False,
                status_code=resp.status_code, detail=resp.text[:500],
            )
        return resp

    async def _post_once(self, spec: PlatformSpec, data: Dict[str, str]) -> TokenGrant:
        client_id, client_secret, _ = self.credentials(spec)
        auth = None
        if spec.basic_auth:
            auth = httpx.BasicAuth(client_id, client_secret)
        else:
            data = {**data, "client_secret": client_secret}
        data = {**data, "client_id": client_id}

        resp = await self._send(
            spec, "token",
            lambda client: client.post(spec.token_url, data=data, auth=auth, headers={"Accept": "application/json"}),
        )
        return self._parse_grant(spec, resp)

    def _parse_grant(self, spec: PlatformSpec, resp: httpx.Response) -> TokenGrant:
        try:
            j = resp.json()
        except ValueError as e:
            raise UpstreamError(f"{spec.name} returned a non-JSON token response",
                                status_code=resp.status_code, detail=resp.text[:500]) from e
        if not isinstance(j, dict) or j.get("error") or not j.get("access_token"):
            raise UpstreamError(f"{spec.name} returned no access_token",
                                status_code=resp.status_code, detail=resp.text[:500])

        expires_at = None
        try:
            expires_in = int(j.get("expires_in") or 0)
        except (TypeError, ValueError):
            expires_in = 0
        if expires_in > 0:
            # subtract a small skew for safety
            expires_at = utcnow() + timedelta(seconds=max(0, expires_in - EXPIRY_SKEW_SECONDS))

        scope = j.get("scope")
        return TokenGrant(
            access_token=j["access_token"],
            refresh_token=j.get("refresh_token"),  # may be absent on re-consent
            token_type=j.get("token_type"),
            expires_at=expires_at,
            scopes=parse_scopes(scope) if scope else None,
        )

    async def _get_profile_once(self, spec: PlatformSpec, access_token: str) -> AccountProfile:
        resp = await self._send(
            spec, "userinfo",
            lambda client: client.get(
                spec.userinfo_url,
                params=spec.userinfo_params,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            ),
        )
        try:
            payload = resp.json()
        except ValueError as e:
            raise UpstreamError(f"{spec.name} returned a non-JSON profile",
                                status_code=resp.status_code, detail=resp.text[:500]) from e
        return parse_profile(spec, payload)

    async def _with_retry(self, spec: PlatformSpec, attempt_once: Callable[[], Awaitable[T]]) -> T:
        last: Optional[UpstreamError] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await attempt_once()
            except UpstreamError as e:
                if not e.retryable:
                    raise
                last = e
                logger.warning(
                    "platform endpoint transient failure",
                    extra={"platform": spec.name, "attempt": attempt, "status": e.status_code},
                )
            if attempt < self.max_attempts:
                await self._sleep(BACKOFF_BASE_SECONDS * 2 ** (attempt - 1))
        assert last is not None
        raise last

    async def _within_budget(self, spec: PlatformSpec, attempt_once: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(self._with_retry(spec, attempt_once), timeout=self._budget())
        except asyncio.TimeoutError as e:
            raise UpstreamError(f"{spec.name} request exceeded its time budget", retryable=True) from e

    async def exchange_code(
        self,
        spec: PlatformSpec,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
    ) -> TokenGrant:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier
        return await self._within_budget(spec, lambda: self._post_once(spec, data))

    async def refresh(self, spec: PlatformSpec, refresh_token: str) -> TokenGrant:
        if not refresh_token:
            raise ValueError("refresh_token required")
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        return await self._within_budget(spec, lambda: self._post_once(spec, data))

    async def fetch_profile(self, spec: PlatformSpec, access_token: str) -> Optional[AccountProfile]:
        """The connected account's identity, or None for a platform without a userinfo endpoint."""
        if not spec.userinfo_url:
            return None
        return await self._within_budget(spec, lambda: self._get_profile_once(spec, access_token))

    async def revoke(self, spec: PlatformSpec, token: str) -> bool:
        """
        Best-effort upstream revocation. Returns True if the platform says OK or
        already-revoked (200 or 400); False when the platform has no revoke endpoint.
        """
        if not spec.revoke_url:
            return False
        client_id, client_secret, _ = self.credentials(spec)
        data = {"token": token, "client_id": client_id}
        auth = httpx.BasicAuth(client_id, client_secret) if spec.basic_auth else None
        if not spec.basic_auth:
            data["client_secret"] = client_secret
        async with self._client() as client:
            r = await client.post(spec.revoke_url, data=data, auth=auth)
        return r.status_code in (200, 400)
