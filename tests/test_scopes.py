import pytest

from oauth_vault.core.errors import ScopeError
from oauth_vault.services.scopes import ScopeValidator, parse_scopes


@pytest.mark.parametrize("raw, expected", [
    ("a b  c", ["a", "b", "c"]),
    ("a,b,c", ["a", "b", "c"]),
    ("a, b,a", ["a", "b"]),
    (["x", " y ", "x"], ["x", "y"]),
    ("", []),
    (None, []),
])
def test_parse_scopes(raw, expected):
    assert parse_scopes(raw) == expected


def test_superset_grant_is_valid():
    v = ScopeValidator()
    assert v.validate(["read", "write"], "read write extra")
    assert v.missing(["read", "write"], "read write extra") == []


def test_partial_grant_reports_missing():
    v = ScopeValidator()
    assert not v.validate(["read", "write"], "read")
    assert v.missing(["read", "write"], ["read"]) == ["write"]


def test_empty_request_is_always_satisfied():
    assert ScopeValidator().validate([], None)


def test_require_raises_with_missing_list():
    with pytest.raises(ScopeError) as exc:
        ScopeValidator().require(["tweet.read", "offline.access"], "tweet.read")
    assert exc.value.missing == ["offline.access"]
    assert exc.value.code == "InsufficientScope"


def test_require_returns_granted():
    assert ScopeValidator().require(["a"], "a,b") == ["a", "b"]
