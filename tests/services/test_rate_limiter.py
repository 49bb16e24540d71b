"""Fixed-window rate limiting."""

import pytest

from fixly_state.constants import RateLimitAction
from fixly_state.core.config import Settings
from fixly_state.core.exceptions import InvalidKeyComponent
from fixly_state.services.rate_limiter import RateLimiter, build_key


async def test_allows_up_to_max_then_denies(limiter):
    remaining = []
    for _ in range(5):
        result = await limiter.allow("rate_limit:api:search:ip:1.1.1.1", 5, 60)
        assert result.allowed
        remaining.append(result.remaining)
    assert remaining == [4, 3, 2, 1, 0]

    denied = await limiter.allow("rate_limit:api:search:ip:1.1.1.1", 5, 60)
    assert denied.allowed is False
    assert denied.remaining == 0
    assert 1 <= denied.retry_after_seconds <= 60
    assert denied.fallback is False


async def test_window_resets_after_expiry(limiter, clock):
    for _ in range(3):
        await limiter.allow("k", 2, 60)
    clock.advance(60)
    result = await limiter.allow("k", 2, 60)
    assert result.allowed
    assert result.remaining == 1


async def test_retry_after_tracks_window(limiter, clock):
    await limiter.allow("k", 1, 100)
    clock.advance(40)
    denied = await limiter.allow("k", 1, 100)
    assert denied.retry_after_seconds == 60
    assert denied.reset_at == int(clock()) + 60


async def test_key_prefix_added_when_missing(limiter, kv):
    await limiter.allow("custom:bucket", 3, 60)
    assert await kv.get("rate_limit:custom:bucket") == "1"


async def test_counter_without_ttl_is_rearmed(limiter, kv):
    await kv.increment("rate_limit:k")
    result = await limiter.allow("rate_limit:k", 5, 30)
    assert result.allowed
    assert await kv.ttl("rate_limit:k") == 30


async def test_invalid_quota_rejected(limiter):
    with pytest.raises(ValueError):
        await limiter.allow("k", 0, 60)
    with pytest.raises(ValueError):
        await limiter.allow("k", 1, 0)


class TestStoreUnavailable:
    @pytest.fixture
    def down_limiter(self, down_kv, settings, clock):
        return RateLimiter(down_kv, settings, clock=clock)

    async def test_fails_open_with_fallback(self, down_limiter):
        for _ in range(10):
            result = await down_limiter.allow("k", 1, 60)
            assert result.allowed
            assert result.fallback is True

    async def test_fail_closed_denies(self, down_limiter):
        result = await down_limiter.allow("k", 5, 60, fail_closed=True)
        assert result.allowed is False
        assert result.fallback is True
        assert result.retry_after_seconds == 60

    async def test_password_actions_fail_closed_by_default(self, down_limiter):
        result = await down_limiter.allow_action(RateLimitAction.FORGOT_PASSWORD, "ip:1.2.3.4")
        assert result.allowed is False
        result = await down_limiter.allow_action(RateLimitAction.SIGNUP, "ip:1.2.3.4")
        assert result.allowed is True

    async def test_explicit_override_wins(self, down_limiter):
        result = await down_limiter.allow_action(
            RateLimitAction.FORGOT_PASSWORD, "ip:1.2.3.4", fail_closed=False
        )
        assert result.allowed is True


async def test_disabled_limiter_always_allows(kv, clock):
    limiter = RateLimiter(kv, Settings(_env_file=None, rate_limit_enabled=False), clock=clock)
    for _ in range(5):
        result = await limiter.allow("k", 1, 60)
        assert result.allowed
        assert result.remaining == 1
    assert await kv.get("rate_limit:k") is None


async def test_signup_quota_per_ip_and_email(limiter):
    subject = "1.2.3.4:user@example.com"
    results = [await limiter.allow_action(RateLimitAction.SIGNUP, subject) for _ in range(4)]
    assert [r.allowed for r in results] == [True, True, True, False]
    assert 0 < results[-1].retry_after_seconds <= 3600

    other = await limiter.allow_action(RateLimitAction.SIGNUP, "1.2.3.4:other@example.com")
    assert other.allowed


async def test_status_does_not_consume(limiter):
    key = build_key(RateLimitAction.LOGIN, "user:7")
    await limiter.allow(key, 5, 900)
    first = await limiter.status(key, 5)
    second = await limiter.status(key, 5)
    assert first.remaining == second.remaining == 4
    assert first.allowed


async def test_status_of_spent_quota(limiter):
    key = build_key(RateLimitAction.LOGIN, "user:7")
    for _ in range(2):
        await limiter.allow(key, 2, 900)
    status = await limiter.status(key, 2)
    assert status.allowed is False
    assert status.retry_after_seconds == 900


async def test_reset_and_reset_subject(limiter):
    login = build_key(RateLimitAction.LOGIN, "user:7", namespace="api")
    search = build_key(RateLimitAction.SEARCH, "user:7", namespace="api")
    other = build_key(RateLimitAction.SEARCH, "user:8", namespace="api")
    for key in (login, search, other):
        await limiter.allow(key, 1, 60)

    assert await limiter.reset(login) is True
    assert (await limiter.allow(login, 1, 60)).allowed

    assert await limiter.reset_subject("user:7") == 2
    assert (await limiter.allow(search, 1, 60)).allowed
    assert (await limiter.allow(other, 1, 60)).allowed is False


def test_build_key():
    assert build_key(RateLimitAction.SEND_OTP, "a@b.c", "auth") == "rate_limit:auth:send_otp:a@b.c"
    # IPv6 subjects keep their colons
    assert build_key("login", "ip:::1") == "rate_limit:default:login:ip:::1"


@pytest.mark.parametrize("action,subject,namespace", [
    ("login", "", "default"),
    ("", "user:1", "default"),
    ("log:in", "user:1", "default"),
    ("login", "user:1", "a:b"),
])
def test_build_key_rejects_bad_components(action, subject, namespace):
    with pytest.raises(InvalidKeyComponent):
        build_key(action, subject, namespace)


async def test_reset_subject_matches_subject_literally(limiter):
    wildcard = build_key(RateLimitAction.SEARCH, "user:*", namespace="api")
    victim = build_key(RateLimitAction.SEARCH, "user:7", namespace="api")
    nested = build_key(RateLimitAction.SEARCH, "team:user:7", namespace="api")
    for key in (wildcard, victim, nested):
        await limiter.allow(key, 1, 60)

    assert await limiter.reset_subject("user:*") == 1
    assert (await limiter.allow(victim, 1, 60)).allowed is False

    assert await limiter.reset_subject("user:7") == 1
    assert (await limiter.allow(nested, 1, 60)).allowed is False


async def test_reset_subject_requires_subject(limiter):
    with pytest.raises(InvalidKeyComponent):
        await limiter.reset_subject("")
