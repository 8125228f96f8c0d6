import pytest
from starlette.requests import Request

from mapmarked.errors import RateLimitExceeded
from mapmarked.rate_limit import RATE_LIMITS, RateLimitConfig, RateLimiter, get_client_ip


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def make_request(headers=None, client=("10.0.0.9", 1234)) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


def test_allows_up_to_limit_then_rejects():
    clock = Clock()
    limiter = RateLimiter(clock=clock)
    config = RateLimitConfig(interval=60, limit=3)

    for _ in range(3):
        limiter.check(config, "ip-1")
    clock.now = 15
    with pytest.raises(RateLimitExceeded) as exc_info:
        limiter.check(config, "ip-1")
    assert exc_info.value.retry_after == 45

    # other clients are unaffected
    limiter.check(config, "ip-2")


def test_window_resets_after_interval():
    clock = Clock()
    limiter = RateLimiter(clock=clock)
    config = RateLimitConfig(interval=60, limit=1)

    limiter.check(config, "ip-1")
    with pytest.raises(RateLimitExceeded):
        limiter.check(config, "ip-1")

    clock.now = 61
    limiter.check(config, "ip-1")


def test_presets():
    assert RATE_LIMITS["checkout"].limit == 5
    assert RATE_LIMITS["expensive"].limit == 10
    assert RATE_LIMITS["webhook"].limit == 30
    assert RATE_LIMITS["standard"].limit == 60


def test_client_ip_resolution_order():
    assert get_client_ip(make_request({"x-forwarded-for": "1.1.1.1, 2.2.2.2", "x-real-ip": "3.3.3.3"})) == "1.1.1.1"
    assert get_client_ip(make_request({"x-real-ip": "3.3.3.3", "cf-connecting-ip": "4.4.4.4"})) == "3.3.3.3"
    assert get_client_ip(make_request({"cf-connecting-ip": "4.4.4.4"})) == "4.4.4.4"
    assert get_client_ip(make_request()) == "10.0.0.9"
    assert get_client_ip(make_request(client=None)) == "anonymous"


def test_checkout_endpoint_returns_429(client, fake_stripe):
    body = {"cityName": "Austin", "stateName": "Texas", "themeName": "Copper"}
    for _ in range(5):
        assert client.post("/api/checkout", json=body).status_code == 200

    resp = client.post("/api/checkout", json=body)
    assert resp.status_code == 429
    assert int(resp.headers["retry-after"]) >= 1
