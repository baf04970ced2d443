"""Tests for the health verifier."""

import httpx
import pytest

from deployctl.core.cancellation import CancellationToken
from deployctl.deploy.health import HealthVerifier
from deployctl.deploy.models import HealthCheck

from conftest import HealthScript

URL = "http://api.staging.internal:8080/q/health"


class SleepRecorder:
    def __init__(self):
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def check(**kwargs) -> HealthCheck:
    params = {"url": URL, "poll_interval": 2.0, "max_attempts": 5}
    params.update(kwargs)
    return HealthCheck(**params)


class TestHealthCheckPredicate:
    def test_status_range(self):
        c = check(expected_status=(200, 204))
        assert c.accepts(200, "")
        assert c.accepts(204, "")
        assert not c.accepts(301, "")
        assert not c.accepts(503, "")

    def test_body_predicate(self):
        c = check(expected_body="UP")
        assert c.accepts(200, '{"status": "UP"}')
        assert not c.accepts(200, '{"status": "DOWN"}')


class TestWaitForHealthy:
    def test_healthy_on_second_attempt(self):
        script = HealthScript({"api.staging.internal": [503, 200]})
        sleep = SleepRecorder()

        result = HealthVerifier(client=script.client(), sleep=sleep).wait_for_healthy(check())

        assert result.healthy
        assert result.attempts == 2
        assert result.last_status == 200
        assert sleep.calls == [2.0]

    def test_never_exceeds_max_attempts(self):
        script = HealthScript({"api.staging.internal": [503]})
        sleep = SleepRecorder()

        result = HealthVerifier(client=script.client(), sleep=sleep).wait_for_healthy(check())

        assert not result.healthy
        assert result.attempts == 5
        assert script.calls("api.staging.internal") == 5
        assert result.last_status == 503
        assert "HTTP 503" in result.last_error
        assert sum(sleep.calls) <= 2.0 * 5
        assert len(sleep.calls) == 4

    def test_body_mismatch_is_unhealthy(self):
        script = HealthScript({"api.staging.internal": [200]}, body='{"status": "DOWN"}')

        result = HealthVerifier(client=script.client(), sleep=SleepRecorder()).wait_for_healthy(
            check(expected_body="UP", max_attempts=2)
        )

        assert not result.healthy
        assert "with 'UP'" in result.last_error

    def test_connection_errors_are_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) < 3:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        result = HealthVerifier(client=client, sleep=SleepRecorder()).wait_for_healthy(check())

        assert result.healthy
        assert result.attempts == 3

    def test_connection_error_reported(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        result = HealthVerifier(client=client, sleep=SleepRecorder()).wait_for_healthy(
            check(max_attempts=2)
        )

        assert not result.healthy
        assert result.last_status is None
        assert "ConnectError" in result.last_error

    def test_cancel_stops_waiting(self):
        token = CancellationToken()
        script = HealthScript({"api.staging.internal": [503]})
        script.on_request = lambda request: token.cancel()

        result = HealthVerifier(client=script.client()).wait_for_healthy(
            check(poll_interval=30), cancel=token
        )

        assert not result.healthy
        assert result.attempts == 1
        assert "cancelled" in result.last_error
