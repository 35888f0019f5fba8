import httpx
import pytest

from apps.orders.errors import GatewayUnavailableError
from apps.orders.http_adapters import CircuitBreaker, CircuitOpenError, ResilientHttpClient


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


def test_breaker_opens_after_threshold(clock):
    cb = CircuitBreaker("payments", fail_threshold=3, reset_timeout=10, clock=clock)
    for _ in range(2):
        cb.before_call()
        cb.on_failure()
        cb.on_finish()
    assert cb.state == "CLOSED"
    cb.before_call()
    cb.on_failure()
    assert cb.state == "OPEN"
    with pytest.raises(CircuitOpenError):
        cb.before_call()


def test_breaker_success_resets_failure_count(clock):
    cb = CircuitBreaker("payments", fail_threshold=2, reset_timeout=10, clock=clock)
    cb.on_failure()
    cb.on_success()
    cb.on_failure()
    assert cb.state == "CLOSED"


def test_half_open_allows_single_probe(clock):
    cb = CircuitBreaker("inventory", fail_threshold=1, reset_timeout=10, clock=clock)
    cb.on_failure()
    assert cb.state == "OPEN"

    clock.now += 10
    assert cb.state == "HALF_OPEN"
    assert cb.before_call() == "HALF_OPEN"
    with pytest.raises(CircuitOpenError):
        cb.before_call()

    cb.on_success()
    assert cb.state == "CLOSED"


def test_failed_probe_reopens(clock):
    cb = CircuitBreaker("inventory", fail_threshold=1, reset_timeout=10, clock=clock)
    cb.on_failure()
    clock.now += 11
    cb.before_call()
    cb.on_failure()
    cb.on_finish()
    assert cb.state == "OPEN"
    # the timeout restarts from the failed probe
    clock.now += 5
    assert cb.state == "OPEN"


class ScriptedClient:
    def __init__(self, monkeypatch, *responses):
        self.responses = list(responses)
        self.calls = 0

        def request(client, method, url, **kw):
            self.calls += 1
            r = self.responses.pop(0)
            if isinstance(r, Exception):
                raise r
            return r

        monkeypatch.setattr(httpx.Client, "request", request)


def _response(code):
    return httpx.Response(code, json={})


def test_retries_then_opens_circuit(monkeypatch, settings, clock):
    settings.HTTP_RETRY_MAX = 2
    cb = CircuitBreaker("payments", fail_threshold=1, reset_timeout=30, clock=clock)
    sleeps = []
    http = ResilientHttpClient("http://payments.test", cb, GatewayUnavailableError, sleep=sleeps.append)
    script = ScriptedClient(monkeypatch, _response(500), httpx.ReadTimeout("slow"))

    with pytest.raises(GatewayUnavailableError):
        http.request("GET", "/payments/pay_1")
    assert script.calls == 2
    assert len(sleeps) == 1
    assert cb.state == "OPEN"

    # no network call while the circuit is open
    with pytest.raises(GatewayUnavailableError):
        http.request("GET", "/payments/pay_1")
    assert script.calls == 2


def test_4xx_is_returned_and_counts_as_success(monkeypatch, settings, clock):
    settings.HTTP_RETRY_MAX = 3
    cb = CircuitBreaker("payments", fail_threshold=1, reset_timeout=30, clock=clock)
    http = ResilientHttpClient("http://payments.test", cb, GatewayUnavailableError, sleep=lambda s: None)
    script = ScriptedClient(monkeypatch, _response(400))

    resp = http.request("POST", "/orders", json={})
    assert resp.status_code == 400
    assert script.calls == 1
    assert cb.state == "CLOSED"


def test_backoff_is_capped(monkeypatch, settings, clock):
    settings.HTTP_RETRY_MAX = 4
    settings.HTTP_RETRY_BACKOFF_BASE = 0.2
    settings.HTTP_RETRY_MAX_SLEEP = 0.5
    cb = CircuitBreaker("inventory", fail_threshold=10, reset_timeout=30, clock=clock)
    sleeps = []
    http = ResilientHttpClient("http://inventory.test", cb, GatewayUnavailableError, sleep=sleeps.append)
    ScriptedClient(monkeypatch, *[_response(503)] * 4)

    with pytest.raises(GatewayUnavailableError):
        http.request("GET", "/stock/A")
    assert sleeps == [0.2, 0.4, 0.5]
