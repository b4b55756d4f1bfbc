"""Tests for the panel gateway: idempotent actions, retries, error mapping."""

import pytest
import requests

from gateway import (
    GatewayRejected,
    GatewayTimeout,
    GatewayUnavailable,
    PanelGateway,
    ResilientCall,
)


class FakeResponse:
    def __init__(self, status_code=204, body=None, text=""):
        self.status_code = status_code
        self._body = body or {}
        self.text = text

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return self._body


class FakeSession:
    """Replays scripted responses (or raises scripted exceptions) in order."""

    def __init__(self, *script):
        self.script = list(script)
        self.requests = []

    def request(self, method, url, json=None, headers=None, timeout=None):
        self.requests.append({"method": method, "url": url, "json": json,
                              "headers": headers, "timeout": timeout})
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _gateway(*script, attempts=3):
    sleeps = []
    session = FakeSession(*script)
    gw = PanelGateway(
        base_url="https://panel.example.com/", api_key="ptla_test", timeout=5,
        session=session,
        retry=ResilientCall(max_attempts=attempts, base_delay=0.5, max_wait=8,
                            sleep=sleeps.append),
    )
    return gw, session, sleeps


class TestPowerActions:
    def test_suspend_posts_to_application_api(self):
        gw, session, _ = _gateway(FakeResponse(204))
        ack = gw.suspend(42)
        assert ack.action == "suspend" and not ack.already
        req = session.requests[0]
        assert req["method"] == "POST"
        assert req["url"] == "https://panel.example.com/api/application/servers/42/suspend"
        assert req["headers"]["Authorization"] == "Bearer ptla_test"
        assert req["timeout"] == 5

    def test_already_suspended_is_success(self):
        gw, _, _ = _gateway(FakeResponse(400, text="Server is already suspended."))
        assert gw.suspend(42).already

    def test_conflict_is_success(self):
        gw, _, _ = _gateway(FakeResponse(409))
        assert gw.unsuspend(42).already

    def test_unrelated_400_rejected_without_retry(self):
        gw, session, sleeps = _gateway(FakeResponse(400, text="bad request"))
        with pytest.raises(GatewayRejected):
            gw.suspend(42)
        assert len(session.requests) == 1
        assert sleeps == []

    def test_suspend_marker_not_accepted_for_unsuspend(self):
        gw, _, _ = _gateway(FakeResponse(400, text="Server is already suspended."))
        with pytest.raises(GatewayRejected):
            gw.unsuspend(42)


class TestRetries:
    def test_5xx_retried_then_succeeds(self):
        gw, session, sleeps = _gateway(FakeResponse(502), FakeResponse(503), FakeResponse(204))
        ack = gw.unsuspend(7)
        assert ack.attempts == 3
        assert sleeps == [0.5, 1.0]
        assert len(session.requests) == 3

    def test_timeout_exhausts_attempts(self):
        gw, _, sleeps = _gateway(*[requests.Timeout("slow")] * 3)
        with pytest.raises(GatewayTimeout):
            gw.suspend(7)
        assert len(sleeps) == 2

    def test_connection_error_maps_to_unavailable(self):
        gw, _, _ = _gateway(requests.ConnectionError("refused"), attempts=1)
        with pytest.raises(GatewayUnavailable):
            gw.suspend(7)

    def test_rate_limited_is_transient(self):
        gw, _, _ = _gateway(FakeResponse(429), FakeResponse(204))
        assert gw.suspend(7).attempts == 2

    def test_wait_budget_caps_backoff(self):
        sleeps = []
        retry = ResilientCall(max_attempts=10, base_delay=1, max_wait=2.5, sleep=sleeps.append)

        def always_down():
            raise GatewayUnavailable("down")

        with pytest.raises(GatewayUnavailable):
            retry.run("probe", always_down)
        assert sum(sleeps) <= 2.5
        assert sleeps == [1, 1.5]

    def test_unconfigured_panel_unavailable(self):
        gw = PanelGateway(base_url="", api_key="", session=FakeSession(),
                          retry=ResilientCall(max_attempts=1))
        with pytest.raises(GatewayUnavailable):
            gw.suspend(1)


class TestServerManagement:
    def test_create_reuses_existing_external_id(self):
        gw, session, _ = _gateway(FakeResponse(200, body={"attributes": {"id": 55}}))
        assert gw.create_server("srv-abc", {"name": "mc"}) == "55"
        assert len(session.requests) == 1

    def test_create_posts_when_missing(self):
        gw, session, _ = _gateway(
            FakeResponse(404),
            FakeResponse(201, body={"attributes": {"id": 56}}),
        )
        assert gw.create_server("srv-abc", {"name": "mc"}) == "56"
        assert session.requests[1]["json"] == {"name": "mc", "external_id": "srv-abc"}

    def test_create_retry_finds_server_from_lost_response(self):
        gw, _, _ = _gateway(
            FakeResponse(404),
            requests.Timeout("response lost"),
            FakeResponse(200, body={"attributes": {"id": 57}}),
        )
        assert gw.create_server("srv-abc", {"name": "mc"}) == "57"

    def test_delete_missing_is_already(self):
        gw, _, _ = _gateway(FakeResponse(404))
        assert gw.delete_server(9).already

    def test_limits_to_resource_vector(self):
        gw, _, _ = _gateway(FakeResponse(200, body={"attributes": {
            "limits": {"memory": 2048, "cpu": 100, "disk": 10240},
            "feature_limits": {"databases": 1, "backups": 2, "allocations": 3},
        }}))
        limits = gw.get_server_limits(9)
        assert (limits.ram_mb, limits.cpu_pct, limits.disk_mb) == (2048, 100, 10240)
        assert (limits.databases, limits.backups, limits.ports) == (1, 2, 3)
