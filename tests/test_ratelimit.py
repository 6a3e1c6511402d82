import pytest

from oauth_vault.core.errors import RateLimitError, ValidationError
from oauth_vault.db.models import RateLimitCounter
from oauth_vault.security.ratelimit import RateLimiter


class FakeTime:
    def __init__(self, now=1_700_000_100.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeTime()


@pytest.fixture
def limiter(session_factory, clock):
    return RateLimiter(session_factory, {"callback": (5, 300), "initiate": (2, 60)}, clock=clock)


def test_allows_up_to_max_then_denies(limiter):
    for i in range(5):
        decision = limiter.admit("10.0.0.1", "callback")
        assert decision.allowed
        assert decision.remaining == 4 - i
    with pytest.raises(RateLimitError) as exc:
        limiter.admit("10.0.0.1", "callback")
    assert 0 < exc.value.retry_after <= 300
    assert exc.value.endpoint_class == "callback"


def test_window_rollover_resets(limiter, clock):
    for _ in range(5):
        limiter.admit("10.0.0.1", "callback")
    with pytest.raises(RateLimitError):
        limiter.admit("10.0.0.1", "callback")
    clock.now += 300
    assert limiter.admit("10.0.0.1", "callback").remaining == 4


def test_keys_are_independent(limiter):
    for _ in range(5):
        limiter.admit("10.0.0.1", "callback")
    assert limiter.admit("10.0.0.2", "callback").allowed
    assert limiter.admit("10.0.0.1", "initiate").allowed


def test_retry_after_counts_down_to_window_end(limiter, clock):
    window_start = int(clock.now) - int(clock.now) % 60
    clock.now = window_start + 45
    limiter.admit("user-1", "initiate")
    limiter.admit("user-1", "initiate")
    with pytest.raises(RateLimitError) as exc:
        limiter.admit("user-1", "initiate")
    assert exc.value.retry_after == 15


def test_headers(limiter):
    headers = limiter.admit("user-1", "initiate").headers()
    assert headers["X-RateLimit-Limit"] == "2"
    assert headers["X-RateLimit-Remaining"] == "1"


def test_unknown_endpoint_class(limiter):
    with pytest.raises(ValidationError):
        limiter.admit("user-1", "nope")


def test_empty_caller(limiter):
    with pytest.raises(ValidationError):
        limiter.admit("", "callback")


def test_purge_drops_closed_windows_only(limiter, clock, session_factory):
    limiter.admit("user-1", "initiate")
    clock.now += 60
    limiter.admit("user-1", "initiate")

    assert limiter.purge_expired_counters() == 1
    with session_factory() as db:
        assert db.query(RateLimitCounter).count() == 1
