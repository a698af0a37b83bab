"""
Tests for the token bucket limiter and request id handling.
"""
import pytest

from chat_relay.utils.middleware import resolve_request_id
from chat_relay.utils.rate_limit import TokenBucketLimiter


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return TokenBucketLimiter(capacity=3, refill_rate=1.0, idle_ttl=60, clock=clock)


def test_burst_up_to_capacity(limiter):
    assert [limiter.allow("user-1") for _ in range(4)] == [True, True, True, False]


def test_refill_over_time(limiter, clock):
    for _ in range(3):
        limiter.allow("user-1")
    assert limiter.allow("user-1") is False

    clock.advance(1.0)
    assert limiter.allow("user-1") is True
    assert limiter.allow("user-1") is False


def test_refill_is_capped_at_capacity(limiter, clock):
    limiter.allow("user-1")
    clock.advance(30)

    assert [limiter.allow("user-1") for _ in range(4)] == [True, True, True, False]


def test_keys_are_independent(limiter):
    for _ in range(3):
        limiter.allow("user-1")

    assert limiter.allow("user-1") is False
    assert limiter.allow("user-2") is True


def test_idle_buckets_expire(limiter, clock):
    limiter.allow("user-1")
    assert len(limiter) == 1

    clock.advance(61)
    limiter.allow("user-2")

    assert "user-1" not in limiter.buckets
    assert len(limiter) == 1


def test_reset(limiter):
    for _ in range(3):
        limiter.allow("user-1")
    limiter.allow("user-2")

    limiter.reset("user-1")
    assert limiter.allow("user-1") is True

    limiter.reset()
    assert len(limiter) == 0


@pytest.mark.parametrize("header,reused", [
    ("req-42", True),
    ("a" * 64, True),
    ("a" * 65, False),
    ("id with spaces", False),
    ("", False),
    (None, False),
])
def test_request_id_resolution(header, reused):
    request_id = resolve_request_id(header)
    assert (request_id == header) is reused
    assert request_id
