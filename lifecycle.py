# Enderactyl Server Lifecycle
# Drives servers along the billing state machine and keeps the panel's
# suspend/unsuspend status in line with it.
#
# Local state only changes after the panel confirmed a call, except for the
# purely local active → grace_period edge. Transitions for one server are
# serialized through a per-server lock; different servers never contend.

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Optional

from events import (
    BillingState,
    BillingStateMachine,
    EventStore,
    EventType,
    Trigger,
)
from gateway import GatewayError
from ledger import InsufficientBalance, Ledger, ServerRecord
from rates import SECONDS_PER_HOUR, RateConfig, ResourceVector, period_cost

log = logging.getLogger("enderactyl")

SUSPEND_REASON_BALANCE = "insufficient_balance"


class ServerBusy(Exception):
    """A gateway call is in flight for this server."""


class EntitlementExceeded(ValueError):
    """Request exceeds the user's server slots or per-server limits."""


class ServerLifecycle:
    def __init__(self, ledger: Ledger, gateway, machine: BillingStateMachine,
                 events: EventStore, clock: Callable[[], float] = time.time):
        self.ledger = ledger
        self.gateway = gateway
        self.machine = machine
        self.events = events
        self.clock = clock
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ── Locking ───────────────────────────────────────────────────────

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _forget_lock(self, key: str):
        with self._locks_guard:
            self._locks.pop(key, None)

    @contextmanager
    def _held(self, key: str, blocking: bool):
        lock = self._lock_for(key)
        if not lock.acquire(blocking):
            raise ServerBusy(f"{key} has an operation in flight")
        try:
            yield
        finally:
            lock.release()

    def server_lock(self, server_id: str, blocking: bool = True):
        return self._held(f"server:{server_id}", blocking)

    def user_lock(self, user_id: str):
        return self._held(f"user:{user_id}", True)

    def is_busy(self, server_id: str) -> bool:
        return self._lock_for(f"server:{server_id}").locked()

    # ── Transitions ───────────────────────────────────────────────────

    def _transition(self, server: ServerRecord, trigger: Trigger,
                    actor: str = "scheduler", data: Optional[dict] = None,
                    **fields) -> ServerRecord:
        target = self.machine.resolve(server.billing_state, trigger)
        updated = self.ledger.compare_and_set_billing_state(
            server.server_id, server.billing_state, server.version, target, **fields
        )
        self.machine.record(server.server_id, server.billing_state, target,
                            trigger, actor=actor, data=data)
        return updated

    def _note_gateway_failure(self, server: ServerRecord, action: str,
                              error: Exception, actor: str):
        balance = self.ledger.get_balance(server.user_id)
        self.ledger.record_charge_outcome(
            server.server_id, server.user_id, 0, "gateway-error",
            balance_after=balance, detail=f"{action}: {error}",
        )
        self.events.record(
            EventType.GATEWAY_FAILED, "server", server.server_id, actor=actor,
            data={"action": action, "error": str(error),
                  "remote_id": server.remote_id,
                  "consecutive_failures": server.consecutive_failures},
        )

    def on_charge_succeeded(self, server: ServerRecord, now: float,
                            actor: str = "scheduler") -> tuple[ServerRecord, str]:
        if server.billing_state == BillingState.GRACE_PERIOD:
            server = self._transition(
                server, Trigger.CHARGE_SUCCEEDED, actor=actor,
                grace_entered_at=None, consecutive_failures=0, suspend_reason="",
            )
            log.info("GRACE cleared server=%s user=%s", server.server_id, server.user_id)
            return server, "recovered"
        return server, "charged"

    def on_charge_failed(self, server: ServerRecord, now: float, rates: RateConfig,
                         actor: str = "scheduler") -> tuple[ServerRecord, str]:
        """Apply grace/suspend timing after an insufficient-balance charge."""
        outcome = "insufficient"
        if server.billing_state == BillingState.ACTIVE:
            server = self._transition(
                server, Trigger.CHARGE_FAILED, actor=actor,
                data={"grace_period_hours": rates.grace_period_hours},
                grace_entered_at=now,
            )
            log.warning("GRACE started server=%s user=%s (%dh)",
                        server.server_id, server.user_id, rates.grace_period_hours)
            outcome = "grace_entered"

        if server.billing_state == BillingState.GRACE_PERIOD:
            entered = server.grace_entered_at if server.grace_entered_at is not None else now
            if now - entered >= rates.grace_period_hours * SECONDS_PER_HOUR:
                return self._suspend(server, actor)
            if outcome == "insufficient":
                outcome = "grace"
        return server, outcome

    def _suspend(self, server: ServerRecord, actor: str) -> tuple[ServerRecord, str]:
        try:
            self.gateway.suspend(server.remote_id)
        except GatewayError as e:
            server = self.ledger.compare_and_set_billing_state(
                server.server_id, server.billing_state, server.version,
                server.billing_state,
                consecutive_failures=server.consecutive_failures + 1,
            )
            self._note_gateway_failure(server, "suspend", e, actor)
            log.error("SUSPEND failed server=%s remote=%s failures=%d: %s",
                      server.server_id, server.remote_id,
                      server.consecutive_failures, e)
            return server, "suspend_failed"

        server = self._transition(
            server, Trigger.GRACE_EXPIRED, actor=actor,
            data={"reason": SUSPEND_REASON_BALANCE},
            suspend_reason=SUSPEND_REASON_BALANCE, consecutive_failures=0,
        )
        log.warning("SUSPEND server=%s user=%s (grace expired)",
                    server.server_id, server.user_id)
        return server, "suspended"

    def maybe_resume(self, server: ServerRecord, now: float, rates: RateConfig,
                     actor: str = "scheduler") -> tuple[ServerRecord, str]:
        """Resume a suspended server whose owner can pay for one more hour.

        A server already in resuming (interrupted earlier) replays the
        unsuspend call.
        """
        if server.billing_state == BillingState.RESUMING:
            return self._complete_resume(server, now, actor)
        if server.billing_state != BillingState.SUSPENDED:
            return server, "not_suspended"

        needed = period_cost(server.resources, rates, 1)
        balance = self.ledger.get_balance(server.user_id)
        if balance < needed:
            return server, "still_suspended"

        server = self._transition(
            server, Trigger.RESUME_REQUESTED, actor=actor,
            data={"balance": balance, "hourly_cost": needed},
        )
        return self._complete_resume(server, now, actor)

    def _complete_resume(self, server: ServerRecord, now: float,
                         actor: str) -> tuple[ServerRecord, str]:
        try:
            self.gateway.unsuspend(server.remote_id)
        except GatewayError as e:
            server = self._transition(
                server, Trigger.UNSUSPEND_FAILED, actor=actor,
                data={"error": str(e)},
                consecutive_failures=server.consecutive_failures + 1,
            )
            self._note_gateway_failure(server, "unsuspend", e, actor)
            log.error("RESUME failed server=%s remote=%s failures=%d: %s",
                      server.server_id, server.remote_id,
                      server.consecutive_failures, e)
            return server, "resume_failed"

        # Suspended time is not billed: the next period starts now.
        server = self._transition(
            server, Trigger.UNSUSPEND_CONFIRMED, actor=actor,
            last_charged_at=now, grace_entered_at=None,
            consecutive_failures=0, suspend_reason="",
        )
        log.info("RESUME server=%s user=%s", server.server_id, server.user_id)
        return server, "resumed"

    # ── Provisioning ──────────────────────────────────────────────────

    def provision(self, user_id: str, name: str, resources: ResourceVector,
                  rates: RateConfig, extra: Optional[dict] = None,
                  server_id: Optional[str] = None,
                  actor: Optional[str] = None) -> ServerRecord:
        """Create a server on the panel and open its billing record."""
        actor = actor or f"user:{user_id}"
        server_id = server_id or f"srv-{uuid.uuid4().hex[:12]}"
        with self.user_lock(user_id):
            user = self.ledger.get_user(user_id)
            if self.ledger.count_servers(user_id) >= user["server_slots"]:
                raise EntitlementExceeded(
                    f"user {user_id} has no free server slots ({user['server_slots']})"
                )
            for field_name, limit_key in (("databases", "database_limit"),
                                          ("backups", "backup_limit"),
                                          ("ports", "port_limit")):
                if getattr(resources, field_name) > user[limit_key]:
                    raise EntitlementExceeded(
                        f"{field_name}={getattr(resources, field_name)} exceeds "
                        f"{limit_key}={user[limit_key]}"
                    )
            if rates.require_balance_on_create:
                needed = period_cost(resources, rates, 1)
                if user["coins"] < needed:
                    raise InsufficientBalance(user_id, needed, user["coins"])

            payload = {
                "name": name,
                "limits": {
                    "memory": resources.ram_mb,
                    "swap": 0,
                    "disk": resources.disk_mb,
                    "io": 500,
                    "cpu": resources.cpu_pct,
                },
                "feature_limits": {
                    "databases": resources.databases,
                    "backups": resources.backups,
                    "allocations": resources.ports,
                },
                **(extra or {}),
            }
            remote_id = self.gateway.create_server(server_id, payload)
            record = self.ledger.register_server(
                server_id, user_id, name, remote_id, resources, now=self.clock()
            )

        self.events.record(
            EventType.SERVER_PROVISIONED, "server", server_id, actor=actor,
            data={"user_id": user_id, "remote_id": remote_id,
                  "resources": resources.to_dict()},
        )
        log.info("SERVER provisioned %s user=%s remote=%s", server_id, user_id, remote_id)
        return record

    def decommission(self, server_id: str, actor: str = "system"):
        """Delete remotely, then drop the billing record.

        Refused while another operation holds the server.
        """
        with self.server_lock(server_id, blocking=False):
            server = self.ledger.get_server(server_id)
            if server.billing_state == BillingState.RESUMING:
                raise ServerBusy(f"server {server_id} is resuming")
            self.gateway.delete_server(server.remote_id)
            self.ledger.remove_server(server_id, server.version)
        self._forget_lock(f"server:{server_id}")

        self.events.record(
            EventType.SERVER_DELETED, "server", server_id, actor=actor,
            data={"user_id": server.user_id, "remote_id": server.remote_id,
                  "billing_state": server.billing_state.value},
        )
        log.info("SERVER deleted %s remote=%s", server_id, server.remote_id)

    def sync_resources(self, server_id: str) -> ServerRecord:
        """Refresh billed resources from the panel's reported limits."""
        with self.server_lock(server_id):
            server = self.ledger.get_server(server_id)
            limits = self.gateway.get_server_limits(server.remote_id)
            if limits == server.resources:
                return server
            updated = self.ledger.update_resources(server_id, server.version, limits)
        log.info("SERVER %s resources synced from panel: %s", server_id, limits.to_dict())
        return updated
