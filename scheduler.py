# Enderactyl Billing Scheduler
# Hourly prepaid billing: one global tick, a queue of per-server tasks,
# a bounded worker pool draining it.
#
# Ticks never overlap (a tick that finds another in flight is skipped, not
# queued). Missed hours are absorbed by the catch-up arithmetic in
# rates.billable_hours, so skipping is always safe.

import logging
import os
import queue
import threading
import time
import uuid
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional

from events import (
    BillingState,
    EventStore,
    EventType,
    get_event_store,
    get_state_machine,
)
from gateway import get_gateway
from ledger import ConcurrentModification, Ledger, UnknownServer, get_ledger
from lifecycle import ServerLifecycle
from rates import RateConfig, SettingsStore, billable_hours, period_cost

LOG_FILE = os.environ.get(
    "ENDERACTYL_LOG_FILE", os.path.join(os.path.dirname(__file__), "enderactyl.log")
)
BILLING_WORKERS = int(os.environ.get("ENDERACTYL_BILLING_WORKERS", "4"))
TICK_DEADLINE_SEC = float(os.environ.get("ENDERACTYL_TICK_DEADLINE_SEC", "300"))
TICK_CHECK_SEC = float(os.environ.get("ENDERACTYL_TICK_CHECK_SEC", "60"))
CAS_RETRY_LIMIT = int(os.environ.get("ENDERACTYL_CAS_RETRY_LIMIT", "3"))

log = logging.getLogger("enderactyl")


# ── Logging ───────────────────────────────────────────────────────────


def setup_logging(log_file=None, level=logging.INFO):
    """Console + file handlers on the enderactyl logger. Idempotent."""
    log_file = log_file or LOG_FILE
    logger = logging.getLogger("enderactyl")

    if logger.handlers:
        return logger

    logger.setLevel(level)
    fmt = logging.Formatter(
        "[%(asctime)s] %(levelname)-8s %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )

    fh = logging.FileHandler(log_file)
    fh.setLevel(level)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    return logger


# ── Tasks ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class BillingTask:
    server_id: str
    attempt: int = 0


# ── Scheduler ─────────────────────────────────────────────────────────

class BillingScheduler:
    """Recurring billing pass over every due server."""

    def __init__(
        self,
        ledger: Ledger,
        lifecycle: ServerLifecycle,
        settings: SettingsStore,
        events: EventStore,
        workers: int = BILLING_WORKERS,
        tick_deadline_sec: float = TICK_DEADLINE_SEC,
        cas_retry_limit: int = CAS_RETRY_LIMIT,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.lifecycle = lifecycle
        self.settings = settings
        self.events = events
        self.workers = max(1, workers)
        self.tick_deadline_sec = tick_deadline_sec
        self.cas_retry_limit = max(1, cas_retry_limit)
        self.clock = clock
        self._tick_lock = threading.Lock()
        self._resume_pool: Optional[ThreadPoolExecutor] = None
        self._resume_pool_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ── Tick ──────────────────────────────────────────────────────────

    def run_tick(self, now: Optional[float] = None) -> dict:
        """One billing pass. Skipped if another tick is still running."""
        now = self.clock() if now is None else now
        if not self._tick_lock.acquire(blocking=False):
            log.warning("TICK skipped: previous tick still in flight")
            self.events.record(EventType.TICK_SKIPPED, "tick", "billing",
                               data={"now": now})
            return {"skipped": True, "reason": "tick_in_progress"}
        try:
            return self._run_tick_locked(now)
        finally:
            self._tick_lock.release()

    def _run_tick_locked(self, now: float) -> dict:
        rates = self.settings.load()
        if not rates.billing_enabled:
            log.info("TICK billing disabled, nothing to do")
            return {"skipped": True, "reason": "billing_disabled"}

        tick_id = f"tick-{uuid.uuid4().hex[:12]}"
        servers = self.ledger.billable_servers(now, rates.tick_interval_sec)
        self.events.record(EventType.TICK_STARTED, "tick", tick_id,
                           data={"now": now, "servers": len(servers)})

        tasks: "queue.Queue[BillingTask]" = queue.Queue()
        for server in servers:
            tasks.put(BillingTask(server.server_id))

        report = Counter()
        report_lock = threading.Lock()
        deadline = time.monotonic() + self.tick_deadline_sec
        threads = [
            threading.Thread(
                target=self._drain,
                args=(tasks, now, rates, deadline, report, report_lock),
                name=f"billing-{i}",
                daemon=True,
            )
            for i in range(min(self.workers, len(servers)))
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        # Past the soft deadline: whatever is left waits for the next tick
        while True:
            try:
                task = tasks.get_nowait()
            except queue.Empty:
                break
            report["deferred"] += 1
            log.warning("TICK deadline reached, deferring server=%s", task.server_id)

        summary = {"tick_id": tick_id, "now": now, "servers": len(servers), **report}
        self.events.record(EventType.TICK_COMPLETED, "tick", tick_id, data=summary)
        log.info("TICK %s complete: %s", tick_id,
                 ", ".join(f"{k}={v}" for k, v in sorted(report.items())) or "no work")
        return summary

    def _drain(self, tasks, now, rates, deadline, report, report_lock):
        while time.monotonic() < deadline:
            try:
                task = tasks.get_nowait()
            except queue.Empty:
                return
            outcome = self._run_task(task, tasks, now, rates)
            with report_lock:
                report[outcome] += 1

    def _run_task(self, task: BillingTask, tasks, now: float, rates: RateConfig) -> str:
        try:
            return self.bill_server(task.server_id, now, rates)
        except ConcurrentModification as e:
            if task.attempt + 1 < self.cas_retry_limit:
                log.info("BILLING conflict server=%s attempt=%d, requeued: %s",
                         task.server_id, task.attempt + 1, e)
                tasks.put(BillingTask(task.server_id, task.attempt + 1))
                return "retried"
            log.warning("BILLING conflict server=%s after %d attempts, deferred: %s",
                        task.server_id, task.attempt + 1, e)
            self.events.record(EventType.BILLING_DEFERRED, "server", task.server_id,
                               data={"error": str(e), "attempts": task.attempt + 1})
            return "deferred"
        except UnknownServer:
            log.info("BILLING server=%s deleted mid-tick", task.server_id)
            return "deleted"
        except Exception as e:
            log.exception("BILLING error server=%s: %s", task.server_id, e)
            self.events.record(EventType.BILLING_ERROR, "server", task.server_id,
                               data={"error": str(e), "type": type(e).__name__})
            return "errors"

    # ── Per-server work ───────────────────────────────────────────────

    def bill_server(self, server_id: str, now: float, rates: RateConfig,
                    actor: str = "scheduler") -> str:
        """Charge one server for its elapsed whole hours, or re-evaluate it."""
        with self.lifecycle.server_lock(server_id):
            server = self.ledger.get_server(server_id)

            if server.billing_state in (BillingState.SUSPENDED, BillingState.RESUMING):
                _, outcome = self.lifecycle.maybe_resume(server, now, rates, actor=actor)
                return outcome

            if now - server.last_charged_at < rates.tick_interval_sec:
                return "not_due"
            elapsed, hours, advance = billable_hours(server.last_charged_at, now, rates)
            if hours == 0:
                return "not_due"
            if elapsed > hours:
                log.warning("CATCHUP server=%s elapsed=%dh capped at %dh (policy=%s)",
                            server_id, elapsed, hours, rates.catchup_policy)

            amount = period_cost(server.resources, rates, hours)
            result = self.ledger.settle_charge(server, amount, hours, advance, now=now)

            if result.applied:
                self.events.record(
                    EventType.BILLING_CHARGED, "server", server_id, actor=actor,
                    data={"user_id": server.user_id, "amount": amount,
                          "hours": hours, "balance": result.balance},
                )
                _, outcome = self.lifecycle.on_charge_succeeded(result.server, now, actor=actor)
                return outcome

            self.events.record(
                EventType.BILLING_INSUFFICIENT, "server", server_id, actor=actor,
                data={"user_id": server.user_id, "amount": amount,
                      "hours": hours, "balance": result.balance},
            )
            log.warning("CHARGE insufficient server=%s user=%s needs %d has %d",
                        server_id, server.user_id, amount, result.balance)
            _, outcome = self.lifecycle.on_charge_failed(server, now, rates, actor=actor)
            return outcome

    # ── Resume evaluation ─────────────────────────────────────────────

    def maybe_resume_user(self, user_id: str, now: Optional[float] = None,
                          actor: Optional[str] = None) -> dict:
        """Re-evaluate a user's grace-period, suspended and resuming servers.

        Called after the user's balance went up, so access comes back without
        waiting for the next tick.
        """
        now = self.clock() if now is None else now
        actor = actor or f"user:{user_id}"
        rates = self.settings.load()
        results = {}
        pending = self.ledger.list_servers(
            user_id=user_id,
            states=(BillingState.GRACE_PERIOD, BillingState.SUSPENDED, BillingState.RESUMING),
        )
        for server in pending:
            if server.billing_state == BillingState.GRACE_PERIOD and not rates.billing_enabled:
                results[server.server_id] = "billing_disabled"
                continue
            try:
                results[server.server_id] = self.bill_server(
                    server.server_id, now, rates, actor=actor
                )
            except (ConcurrentModification, UnknownServer) as e:
                log.info("RESUME check server=%s deferred to next tick: %s",
                         server.server_id, e)
                results[server.server_id] = "deferred"
        return results

    def enqueue_resume(self, user_id: str) -> Future:
        """Run maybe_resume_user in the background."""
        with self._resume_pool_lock:
            # Created on demand: stop() shuts the pool down, a later credit reopens it
            if self._resume_pool is None:
                self._resume_pool = ThreadPoolExecutor(max_workers=2,
                                                       thread_name_prefix="resume")
            return self._resume_pool.submit(self._resume_job, user_id)

    def _resume_job(self, user_id: str) -> dict:
        try:
            return self.maybe_resume_user(user_id)
        except Exception as e:
            log.exception("RESUME evaluation for user=%s failed: %s", user_id, e)
            raise

    # ── Background loop ───────────────────────────────────────────────

    def start(self, interval: float = TICK_CHECK_SEC) -> threading.Thread:
        """Run ticks on a daemon thread: once now, then every `interval` s."""
        if self._thread and self._thread.is_alive():
            return self._thread
        self._stop.clear()

        def loop():
            while True:
                try:
                    self.run_tick()
                except Exception as e:
                    log.exception("TICK crashed: %s", e)
                if self._stop.wait(interval):
                    return

        self._thread = threading.Thread(target=loop, name="billing-loop", daemon=True)
        self._thread.start()
        log.info("Billing service started (check every %.0fs)", interval)
        return self._thread

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        with self._resume_pool_lock:
            if self._resume_pool is not None:
                self._resume_pool.shutdown(wait=False)
                self._resume_pool = None
        log.info("Billing service stopped")

    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())


# ── Singleton ─────────────────────────────────────────────────────────

_scheduler: Optional[BillingScheduler] = None
_scheduler_lock = threading.Lock()


def get_billing_scheduler() -> BillingScheduler:
    global _scheduler
    if _scheduler is not None:
        return _scheduler
    with _scheduler_lock:
        if _scheduler is None:
            events = get_event_store()
            ledger = get_ledger()
            lifecycle = ServerLifecycle(ledger, get_gateway(), get_state_machine(), events)
            _scheduler = BillingScheduler(ledger, lifecycle, SettingsStore(), events)
        return _scheduler


if __name__ == "__main__":
    setup_logging()
    billing = get_billing_scheduler()
    billing.start()
    try:
        while billing.is_running():
            time.sleep(1)
    except KeyboardInterrupt:
        billing.stop(timeout=30)
