"""Shared pytest configuration for the Enderactyl billing test suite.

Ensures the project root is on sys.path so test files can import
source modules (ledger, scheduler, credits, etc.) directly, and provides
an in-memory panel plus a fully wired billing engine on a temp database.
"""

import os
import sys
import tempfile
import threading
from pathlib import Path
from types import SimpleNamespace

import pytest

# Add project root to sys.path so `import scheduler`, `from api import app`, etc. work
PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

# Keep the default database and log file out of the source tree
_tmpdir = tempfile.mkdtemp(prefix="enderactyl_test_")
os.environ.setdefault("ENDERACTYL_DB_PATH", os.path.join(_tmpdir, "default.db"))
os.environ.setdefault("ENDERACTYL_LOG_FILE", os.path.join(_tmpdir, "enderactyl.log"))
os.environ.setdefault("ENDERACTYL_ENV", "test")

from credits import CreditSources  # noqa: E402
from events import BillingStateMachine, EventStore  # noqa: E402
from gateway import Ack, GatewayUnavailable  # noqa: E402
from ledger import Ledger  # noqa: E402
from lifecycle import ServerLifecycle  # noqa: E402
from rates import RateConfig, ResourceVector, SettingsStore  # noqa: E402
from scheduler import BillingScheduler  # noqa: E402

T0 = 1_700_000_000.0
HOUR = 3600


class FakeGateway:
    """In-memory panel. Records every call; failures are scripted per action."""

    def __init__(self):
        self.calls = []
        self.suspended = set()
        self.servers = {}
        self._failures = {}
        self._lock = threading.Lock()
        self._next_id = 100

    def fail_next(self, action, times=1, exc=None):
        self._failures[action] = [exc or GatewayUnavailable(f"{action} unavailable")] * times

    def _call(self, action, remote_id):
        with self._lock:
            self.calls.append((action, str(remote_id)))
            pending = self._failures.get(action)
            if pending:
                raise pending.pop(0)

    def count(self, action):
        return sum(1 for a, _ in self.calls if a == action)

    def suspend(self, remote_id):
        self._call("suspend", remote_id)
        already = str(remote_id) in self.suspended
        self.suspended.add(str(remote_id))
        return Ack(remote_id=str(remote_id), action="suspend", already=already)

    def unsuspend(self, remote_id):
        self._call("unsuspend", remote_id)
        already = str(remote_id) not in self.suspended
        self.suspended.discard(str(remote_id))
        return Ack(remote_id=str(remote_id), action="unsuspend", already=already)

    def create_server(self, external_id, payload):
        self._call("create", external_id)
        for remote_id, existing in self.servers.items():
            if existing["external_id"] == external_id:
                return remote_id
        self._next_id += 1
        remote_id = str(self._next_id)
        self.servers[remote_id] = dict(payload, external_id=external_id)
        return remote_id

    def delete_server(self, remote_id):
        self._call("delete", remote_id)
        already = self.servers.pop(str(remote_id), None) is None
        return Ack(remote_id=str(remote_id), action="delete", already=already)

    def get_server_limits(self, remote_id):
        self._call("limits", remote_id)
        payload = self.servers[str(remote_id)]
        limits, features = payload["limits"], payload["feature_limits"]
        return ResourceVector(
            ram_mb=limits["memory"], cpu_pct=limits["cpu"], disk_mb=limits["disk"],
            databases=features["databases"], backups=features["backups"],
            ports=features["allocations"],
        )


class Clock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, hours=1):
        self.now += hours * HOUR
        return self.now


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "billing.db")


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def engine(db_path, gateway, clock):
    """Billing engine wired against a temp database and the fake panel.

    Credits re-evaluate suspended servers synchronously so tests can assert
    right after a top-up.
    """
    events = EventStore(db_path)
    ledger = Ledger(db_path)
    machine = BillingStateMachine(events)
    lifecycle = ServerLifecycle(ledger, gateway, machine, events, clock=clock)
    settings = SettingsStore(db_path, defaults=RateConfig(billing_enabled=True))
    scheduler = BillingScheduler(ledger, lifecycle, settings, events,
                                 workers=2, clock=clock)
    credits = CreditSources(ledger, events, on_credit=scheduler.maybe_resume_user,
                            settings=settings)
    yield SimpleNamespace(
        db_path=db_path, events=events, ledger=ledger, machine=machine,
        lifecycle=lifecycle, settings=settings, scheduler=scheduler,
        credits=credits, gateway=gateway, clock=clock,
    )
    scheduler.stop()


def add_server(engine, user_id="u1", server_id="srv-1", ram_mb=2048,
               remote_id="1", now=T0, **resources):
    """Register a server directly in the ledger. Default cost: 2 coins/h."""
    return engine.ledger.register_server(
        server_id, user_id, server_id, remote_id,
        ResourceVector(ram_mb=ram_mb, **resources), now=now,
    )
