from __future__ import annotations
import base64
import json
import os
from typing import Callable, List, Optional
from urllib.parse import parse_qs

import httpx
import pytest

from oauth_vault.core.config import Environment, Settings
from oauth_vault.db.models import Base
from oauth_vault.db.session import make_engine, make_session_factory
from oauth_vault.services.crypto import TokenCipher
from oauth_vault.services.orchestrator import build_orchestrator

TWITTER_REDIRECT = "https://app.example.com/oauth/twitter/callback"
GOOGLE_REDIRECT = "https://app.example.com/oauth/google/callback"
LINKEDIN_REDIRECT = "https://app.example.com/oauth/linkedin/callback"
TWITTER_SCOPES = "tweet.read tweet.write users.read offline.access"
TWITTER_PROFILE = {
    "data": {"id": "2244994945", "username": "janedoe", "name": "Jane Doe",
             "profile_image_url": "https://pbs.twimg.com/profile_images/jane.jpg"},
}


def new_key() -> str:
    return base64.urlsafe_b64encode(os.urandom(32)).decode()


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        ENVIRONMENT=Environment.TEST,
        LOG_DIR=str(tmp_path / "logs"),
        API_INTERNAL_KEY="internal-test-key",
        ENCRYPTION_KEY=new_key(),
        ALLOWED_REDIRECT_URIS=[TWITTER_REDIRECT, GOOGLE_REDIRECT, LINKEDIN_REDIRECT],
        TWITTER_CLIENT_ID="tw-client",
        TWITTER_CLIENT_SECRET="tw-secret",
        TWITTER_REDIRECT_URI=TWITTER_REDIRECT,
        GOOGLE_CLIENT_ID="g-client",
        GOOGLE_CLIENT_SECRET="g-secret",
        GOOGLE_REDIRECT_URI=GOOGLE_REDIRECT,
        LINKEDIN_CLIENT_ID="li-client",
        LINKEDIN_CLIENT_SECRET="li-secret",
        LINKEDIN_REDIRECT_URI=LINKEDIN_REDIRECT,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def cfg(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def engine(tmp_path):
    # file-backed so worker threads each get their own connection
    eng = make_engine(f"sqlite:///{tmp_path / 'vault.sqlite3'}")
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def cipher(cfg) -> TokenCipher:
    return TokenCipher.from_settings(cfg)


class FakePlatform:
    """
    Scripted platform. Token calls take the next scripted response and the last one
    repeats once drained; userinfo GETs return the current profile.
    """

    def __init__(self):
        self.responses: List[Callable[[httpx.Request], httpx.Response]] = []
        self._last: Optional[Callable[[httpx.Request], httpx.Response]] = None
        self._profile: Callable[[httpx.Request], httpx.Response] = lambda request: httpx.Response(200, json=TWITTER_PROFILE)
        self.requests: List[httpx.Request] = []

    def reply(self, status: int = 200, **body) -> "FakePlatform":
        self.responses.append(lambda request: httpx.Response(status, json=body))
        return self

    def profile(self, status: int = 200, **body) -> "FakePlatform":
        self._profile = lambda request: httpx.Response(status, json=body)
        return self

    def fail(self, exc: Exception) -> "FakePlatform":
        def _raise(request: httpx.Request) -> httpx.Response:
            raise exc
        self.responses.append(_raise)
        return self

    def token_calls(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == "POST" and "revoke" not in r.url.path]

    def profile_calls(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == "GET"]

    def form(self, request: httpx.Request) -> dict:
        return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET":
            return self._profile(request)
        if "revoke" in request.url.path:
            return httpx.Response(200, json={"revoked": True})
        if self.responses:
            self._last = self.responses.pop(0)
        if self._last is None:
            return httpx.Response(500, text=json.dumps({"error": "unscripted"}))
        return self._last(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def orchestrator(cfg, session_factory, cipher, platform):
    orch = build_orchestrator(cfg, session_factory, cipher, transport=platform.transport)

    async def _no_sleep(_seconds):
        return None

    orch.platforms._sleep = _no_sleep
    return orch
