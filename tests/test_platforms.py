from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from oauth_vault.core.clock import utcnow
from oauth_vault.core.errors import ConfigurationError, UnsupportedPlatform, UpstreamError
from oauth_vault.services.platforms import PlatformClient, build_authorization_url, get_platform

from conftest import TWITTER_REDIRECT, TWITTER_SCOPES, make_settings


async def _no_sleep(_seconds):
    return None


@pytest.fixture
def client(cfg, platform):
    return PlatformClient(cfg, transport=platform.transport, sleep=_no_sleep)


def test_get_platform_is_case_insensitive():
    assert get_platform("Twitter").name == "twitter"
    with pytest.raises(UnsupportedPlatform):
        get_platform("myspace")


def test_authorization_url_carries_state_scope_and_pkce():
    spec = get_platform("twitter")
    url = build_authorization_url(spec, client_id="cid", redirect_uri=TWITTER_REDIRECT,
                                  state="st-1", code_challenge="chal")
    parsed = urlparse(url)
    q = {k: v[0] for k, v in parse_qs(parsed.query).items()}
    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == spec.authorize_url
    assert q["state"] == "st-1"
    assert q["scope"] == TWITTER_SCOPES
    assert q["code_challenge"] == "chal"
    assert q["code_challenge_method"] == "S256"
    assert q["response_type"] == "code"


def test_authorization_url_uses_platform_separator_and_extras():
    q = parse_qs(urlparse(build_authorization_url(
        get_platform("facebook"), client_id="c", redirect_uri="https://x/cb", state="s")).query)
    assert q["scope"] == ["pages_show_list,pages_read_engagement,pages_manage_posts"]
    assert "code_challenge" not in q

    q = parse_qs(urlparse(build_authorization_url(
        get_platform("google"), client_id="c", redirect_uri="https://x/cb", state="s")).query)
    assert q["access_type"] == ["offline"]


async def test_exchange_code_success(client, platform):
    platform.reply(access_token="at", refresh_token="rt", token_type="bearer", expires_in=7200, scope=TWITTER_SCOPES)
    grant = await client.exchange_code(get_platform("twitter"), "code-1", TWITTER_REDIRECT, "verifier")

    assert grant.access_token == "at"
    assert grant.refresh_token == "rt"
    assert grant.scopes == TWITTER_SCOPES.split()
    assert utcnow() + timedelta(seconds=7100) < grant.expires_at < utcnow() + timedelta(seconds=7200)

    req = platform.requests[0]
    form = platform.form(req)
    assert form["grant_type"] == "authorization_code"
    assert form["code_verifier"] == "verifier"
    assert "client_secret" not in form
    assert req.headers["authorization"].startswith("Basic ")


async def test_body_credentials_for_non_basic_platform(client, platform):
    platform.reply(access_token="at")
    grant = await client.exchange_code(get_platform("google"), "code", "https://x/cb")
    form = platform.form(platform.requests[0])
    assert form["client_secret"] == "g-secret"
    assert grant.scopes is None
    assert grant.expires_at is None


async def test_retries_once_on_5xx(client, platform):
    platform.reply(502, error="bad_gateway").reply(access_token="at")
    grant = await client.exchange_code(get_platform("twitter"), "code", TWITTER_REDIRECT)
    assert grant.access_token == "at"
    assert len(platform.requests) == 2


async def test_retries_on_timeout(client, platform):
    platform.fail(httpx.ConnectTimeout("slow")).reply(access_token="at")
    grant = await client.exchange_code(get_platform("twitter"), "code", TWITTER_REDIRECT)
    assert grant.access_token == "at"


async def test_gives_up_after_max_attempts(client, platform):
    platform.reply(503)
    with pytest.raises(UpstreamError) as exc:
        await client.exchange_code(get_platform("twitter"), "code", TWITTER_REDIRECT)
    assert exc.value.retryable
    assert exc.value.status_code == 503
    assert len(platform.requests) == 2


async def test_4xx_is_not_retried(client, platform):
    platform.reply(400, error="invalid_grant")
    with pytest.raises(UpstreamError) as exc:
        await client.exchange_code(get_platform("twitter"), "code", TWITTER_REDIRECT)
    assert not exc.value.retryable
    assert "invalid_grant" in exc.value.detail
    assert len(platform.requests) == 1


async def test_missing_access_token_is_an_upstream_error(client, platform):
    platform.reply(token_type="bearer")
    with pytest.raises(UpstreamError):
        await client.exchange_code(get_platform("twitter"), "code", TWITTER_REDIRECT)
    assert len(platform.requests) == 1


async def test_missing_credentials(tmp_path, platform):
    client = PlatformClient(make_settings(tmp_path, FACEBOOK_CLIENT_ID=""), transport=platform.transport)
    with pytest.raises(ConfigurationError):
        await client.exchange_code(get_platform("facebook"), "code", "https://x/cb")
    assert platform.requests == []


async def test_revoke(client, platform):
    assert await client.revoke(get_platform("twitter"), "rt") is True
    assert platform.requests[0].url.path.endswith("/revoke")
    assert await client.revoke(get_platform("facebook"), "rt") is False


@pytest.mark.parametrize("name, body, expected", [
    ("twitter",
     {"data": {"id": "42", "username": "jane", "name": "Jane", "profile_image_url": "https://img/jane.png"}},
     ("42", "jane", "Jane", "https://img/jane.png")),
    ("linkedin",
     {"id": "li-7", "localizedFirstName": "Jane", "localizedLastName": "Doe"},
     ("li-7", "Jane Doe", "Jane Doe", None)),
    ("facebook",
     {"id": "fb-1", "name": "Jane Doe", "picture": {"data": {"url": "https://fb/pic.jpg"}}},
     ("fb-1", "Jane Doe", "Jane Doe", "https://fb/pic.jpg")),
    ("instagram",
     {"id": 17841400, "username": "jane.doe"},
     ("17841400", "jane.doe", "jane.doe", None)),
    ("google",
     {"sub": "1098", "email": "jane@example.com", "name": "Jane Doe", "picture": "https://g/pic"},
     ("1098", "jane@example.com", "Jane Doe", "https://g/pic")),
])
async def test_fetch_profile_per_platform(client, platform, name, body, expected):
    spec = get_platform(name)
    platform.profile(**body)
    profile = await client.fetch_profile(spec, "access-xyz")

    assert (profile.platform_user_id, profile.username, profile.display_name, profile.avatar_url) == expected
    (req,) = platform.profile_calls()
    assert req.headers["authorization"] == "Bearer access-xyz"
    assert str(req.url).startswith(spec.userinfo_url)
    for key, value in spec.userinfo_params.items():
        assert req.url.params[key] == value


async def test_profile_without_id_is_an_upstream_error(client, platform):
    platform.profile(data={"username": "ghost"})
    with pytest.raises(UpstreamError) as exc:
        await client.fetch_profile(get_platform("twitter"), "at")
    assert not exc.value.retryable


async def test_profile_4xx_is_not_retried(client, platform):
    platform.profile(401, error="invalid_token")
    with pytest.raises(UpstreamError) as exc:
        await client.fetch_profile(get_platform("twitter"), "at")
    assert exc.value.status_code == 401
    assert len(platform.profile_calls()) == 1


async def test_profile_5xx_is_retried_up_to_the_limit(client, platform):
    platform.profile(503)
    with pytest.raises(UpstreamError) as exc:
        await client.fetch_profile(get_platform("twitter"), "at")
    assert exc.value.retryable
    assert len(platform.profile_calls()) == 2
