# Enderactyl Provisioning Gateway Adapter
# Idempotent suspend/unsuspend/create/delete against the panel's
# Application API, with per-request timeouts and bounded exponential backoff.
#
# Remote-side "already suspended" / "already active" / "already deleted"
# answers are successes. Transient failures (timeouts, connection errors,
# 5xx, 429) are retried; anything else is reported to the caller as-is.

import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Optional

import requests

from rates import ResourceVector

log = logging.getLogger("enderactyl.gateway")

# ── Configuration ─────────────────────────────────────────────────────

PANEL_URL = os.environ.get("ENDERACTYL_PANEL_URL", "")
PANEL_API_KEY = os.environ.get("ENDERACTYL_PANEL_API_KEY", "")
GATEWAY_TIMEOUT_SEC = float(os.environ.get("ENDERACTYL_GATEWAY_TIMEOUT_SEC", "10"))
GATEWAY_MAX_ATTEMPTS = int(os.environ.get("ENDERACTYL_GATEWAY_MAX_ATTEMPTS", "3"))
GATEWAY_BACKOFF_SEC = float(os.environ.get("ENDERACTYL_GATEWAY_BACKOFF_SEC", "0.5"))
GATEWAY_MAX_WAIT_SEC = float(os.environ.get("ENDERACTYL_GATEWAY_MAX_WAIT_SEC", "8"))


# ── Errors ────────────────────────────────────────────────────────────

class GatewayError(Exception):
    """A panel call that did not succeed."""
    transient = False

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class GatewayTimeout(GatewayError):
    transient = True


class GatewayUnavailable(GatewayError):
    transient = True


class GatewayRejected(GatewayError):
    """4xx answer other than the idempotent ones. Not retried."""


@dataclass(frozen=True)
class Ack:
    remote_id: str
    action: str
    already: bool = False     # Remote side was already in the target state
    attempts: int = 1


# ── Resilient call wrapper ────────────────────────────────────────────

class ResilientCall:
    """Retry transient gateway errors with capped exponential backoff.

    Shared by every gateway operation. Waits base, 2*base, 4*base, ...
    between attempts and never sleeps more than max_wait in total.
    """

    def __init__(self, max_attempts: int = GATEWAY_MAX_ATTEMPTS,
                 base_delay: float = GATEWAY_BACKOFF_SEC,
                 max_wait: float = GATEWAY_MAX_WAIT_SEC,
                 sleep: Callable[[float], None] = time.sleep):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_wait = max_wait
        self.sleep = sleep

    def run(self, op_name: str, fn: Callable[[], object]):
        """Call fn until it succeeds. Returns (result, attempts)."""
        waited = 0.0
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn(), attempt
            except GatewayError as e:
                if not e.transient or attempt >= self.max_attempts:
                    log.warning("GATEWAY %s failed after %d attempt(s): %s",
                                op_name, attempt, e)
                    raise
                delay = min(self.base_delay * (2 ** (attempt - 1)),
                            self.max_wait - waited)
                if delay <= 0:
                    log.warning("GATEWAY %s out of retry budget after %d attempt(s): %s",
                                op_name, attempt, e)
                    raise
                log.info("GATEWAY %s attempt %d failed (%s), retrying in %.2fs",
                         op_name, attempt, e, delay)
                self.sleep(delay)
                waited += delay


# ── Panel client ──────────────────────────────────────────────────────

_ALREADY_MARKERS = {
    "suspend": ("already suspended",),
    "unsuspend": ("already unsuspended", "already active", "not suspended"),
}


def _is_already_answer(resp, action: str) -> bool:
    if resp.status_code == 409:
        return True
    text = (resp.text or "").lower()
    return any(marker in text for marker in _ALREADY_MARKERS.get(action, ()))


class PanelGateway:
    """Pterodactyl-compatible Application API client."""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 timeout: Optional[float] = None,
                 session: Optional[requests.Session] = None,
                 retry: Optional[ResilientCall] = None):
        self.base_url = (base_url if base_url is not None else PANEL_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else PANEL_API_KEY
        self.timeout = timeout if timeout is not None else GATEWAY_TIMEOUT_SEC
        self.session = session or requests.Session()
        self.retry = retry or ResilientCall()

    def _headers(self):
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    def _url(self, path):
        return f"{self.base_url}/api/application{path}"

    def _request(self, method: str, path: str, json=None):
        """One HTTP round-trip. Maps transport failures to GatewayError."""
        if not self.base_url or not self.api_key:
            raise GatewayUnavailable("Panel not configured")
        try:
            resp = self.session.request(
                method, self._url(path), json=json,
                headers=self._headers(), timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise GatewayTimeout(f"{method} {path} timed out: {e}")
        except requests.RequestException as e:
            raise GatewayUnavailable(f"{method} {path} failed: {e}")

        if resp.status_code == 429 or resp.status_code >= 500:
            raise GatewayUnavailable(
                f"{method} {path} -> {resp.status_code}", status_code=resp.status_code
            )
        return resp

    def _power_action(self, remote_id, action: str) -> Ack:
        path = f"/servers/{remote_id}/{action}"

        def call():
            resp = self._request("POST", path)
            if resp.ok:
                return False
            if _is_already_answer(resp, action):
                return True
            raise GatewayRejected(
                f"POST {path} -> {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )

        already, attempts = self.retry.run(f"{action}({remote_id})", call)
        log.info("GATEWAY %s remote=%s ok%s", action.upper(), remote_id,
                 " (already)" if already else "")
        return Ack(remote_id=str(remote_id), action=action,
                   already=already, attempts=attempts)

    def suspend(self, remote_id) -> Ack:
        return self._power_action(remote_id, "suspend")

    def unsuspend(self, remote_id) -> Ack:
        return self._power_action(remote_id, "unsuspend")

    def find_by_external_id(self, external_id: str) -> Optional[str]:
        resp = self._request("GET", f"/servers/external/{external_id}")
        if resp.status_code == 404:
            return None
        if not resp.ok:
            raise GatewayRejected(
                f"GET /servers/external/{external_id} -> {resp.status_code}",
                status_code=resp.status_code,
            )
        return str(resp.json()["attributes"]["id"])

    def create_server(self, external_id: str, payload: dict) -> str:
        """Create a server, returning its remote id.

        Idempotent through external_id: an earlier attempt that reached the
        panel is found by lookup instead of creating a duplicate.
        """
        body = dict(payload, external_id=external_id)

        def call():
            existing = self.find_by_external_id(external_id)
            if existing:
                return existing
            resp = self._request("POST", "/servers", json=body)
            if not resp.ok:
                raise GatewayRejected(
                    f"POST /servers -> {resp.status_code}: {resp.text[:200]}",
                    status_code=resp.status_code,
                )
            return str(resp.json()["attributes"]["id"])

        remote_id, attempts = self.retry.run(f"create({external_id})", call)
        log.info("GATEWAY CREATE external=%s remote=%s attempts=%d",
                 external_id, remote_id, attempts)
        return remote_id

    def delete_server(self, remote_id) -> Ack:
        path = f"/servers/{remote_id}"

        def call():
            resp = self._request("DELETE", path)
            if resp.ok:
                return False
            if resp.status_code == 404:
                return True
            raise GatewayRejected(
                f"DELETE {path} -> {resp.status_code}", status_code=resp.status_code
            )

        already, attempts = self.retry.run(f"delete({remote_id})", call)
        log.info("GATEWAY DELETE remote=%s ok%s", remote_id, " (already)" if already else "")
        return Ack(remote_id=str(remote_id), action="delete",
                   already=already, attempts=attempts)

    def get_server_limits(self, remote_id) -> ResourceVector:
        """Resource allocation as the panel reports it."""
        path = f"/servers/{remote_id}"

        def call():
            resp = self._request("GET", path)
            if not resp.ok:
                raise GatewayRejected(f"GET {path} -> {resp.status_code}",
                                      status_code=resp.status_code)
            return resp.json()["attributes"]

        attrs, _ = self.retry.run(f"limits({remote_id})", call)
        limits = attrs.get("limits", {})
        features = attrs.get("feature_limits", {})
        return ResourceVector(
            ram_mb=int(limits.get("memory", 0)),
            cpu_pct=int(limits.get("cpu", 0)),
            disk_mb=int(limits.get("disk", 0)),
            databases=int(features.get("databases", 0)),
            backups=int(features.get("backups", 0)),
            ports=int(features.get("allocations", 0)),
        )


# ── Singleton ─────────────────────────────────────────────────────────

_gateway: Optional[PanelGateway] = None


def get_gateway() -> PanelGateway:
    global _gateway
    if _gateway is None:
        _gateway = PanelGateway()
    return _gateway
