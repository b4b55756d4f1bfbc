# Enderactyl Billing State Machine + Audit Sink
# Strict server billing lifecycle, validated transitions, auditable history.
#
# Server lifecycle:  active → grace_period → suspended → resuming → active
#
# Every transition and every charge attempt is recorded as an immutable
# event. Each event carries the SHA-256 hash of the previous one, so the log
# can be replayed to detect tampering.

import hashlib
import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional

import db

log = logging.getLogger("enderactyl")


# ── Billing States ────────────────────────────────────────────────────

class BillingState(str, Enum):
    ACTIVE = "active"                 # Billed normally, server running
    GRACE_PERIOD = "grace_period"     # Charge failed, server still running
    SUSPENDED = "suspended"           # Grace expired, panel told to suspend
    RESUMING = "resuming"             # Balance restored, unsuspend in flight


class Trigger(str, Enum):
    """Inputs to the billing state machine."""
    CHARGE_FAILED = "charge_failed"
    CHARGE_SUCCEEDED = "charge_succeeded"
    GRACE_EXPIRED = "grace_expired"             # Fired once the panel confirmed suspend
    RESUME_REQUESTED = "resume_requested"
    UNSUSPEND_CONFIRMED = "unsuspend_confirmed"
    UNSUSPEND_FAILED = "unsuspend_failed"


# (state, trigger) → next state. Anything not here is rejected.
TRANSITIONS = {
    (BillingState.ACTIVE, Trigger.CHARGE_FAILED): BillingState.GRACE_PERIOD,
    (BillingState.GRACE_PERIOD, Trigger.GRACE_EXPIRED): BillingState.SUSPENDED,
    (BillingState.GRACE_PERIOD, Trigger.CHARGE_SUCCEEDED): BillingState.ACTIVE,
    (BillingState.SUSPENDED, Trigger.RESUME_REQUESTED): BillingState.RESUMING,
    (BillingState.RESUMING, Trigger.UNSUSPEND_CONFIRMED): BillingState.ACTIVE,
    (BillingState.RESUMING, Trigger.UNSUSPEND_FAILED): BillingState.SUSPENDED,
}

VALID_TRANSITIONS = {state: set() for state in BillingState}
for (_src, _trigger), _dst in TRANSITIONS.items():
    VALID_TRANSITIONS[_src].add(_dst)


class InvalidTransition(ValueError):
    """A (state, trigger) pair outside the transition table."""


# ── Event Types ───────────────────────────────────────────────────────

class EventType(str, Enum):
    # Charges
    BILLING_CHARGED = "billing.charged"
    BILLING_INSUFFICIENT = "billing.insufficient"
    BILLING_DEFERRED = "billing.deferred"
    BILLING_ERROR = "billing.error"

    # Lifecycle
    STATE_CHANGED = "billing.state_changed"
    GATEWAY_FAILED = "gateway.call_failed"
    SERVER_PROVISIONED = "server.provisioned"
    SERVER_DELETED = "server.deleted"

    # Ticks
    TICK_STARTED = "tick.started"
    TICK_COMPLETED = "tick.completed"
    TICK_SKIPPED = "tick.skipped"

    # Balance
    WALLET_CREDIT = "wallet.credit"
    WALLET_DEBIT = "wallet.debit"
    COUPON_REDEEMED = "coupon.redeemed"
    EARN_CLAIMED = "earn.claimed"

    # Admin
    CONFIG_UPDATED = "config.updated"


@dataclass
class Event:
    """Immutable audit record.

    Tamper-evident: prev_hash is the event_hash of the preceding event,
    event_hash is the SHA-256 of this event's canonical JSON.
    """
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str = ""
    entity_type: str = ""      # "server", "user", "tick", "config"
    entity_id: str = ""
    timestamp: float = field(default_factory=time.time)
    actor: str = ""            # "scheduler", "user:<id>", "admin:<id>"
    data: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)
    prev_hash: str = ""
    event_hash: str = ""

    def compute_hash(self) -> str:
        canonical = json.dumps({
            "event_id": self.event_id,
            "event_type": _enum_value(self.event_type),
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "data": self.data,
            "metadata": self.metadata,
            "prev_hash": self.prev_hash,
        }, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict:
        d = asdict(self)
        d["event_type"] = _enum_value(self.event_type)
        return d


def _enum_value(value):
    return value.value if isinstance(value, Enum) else value


# ── Event Store ───────────────────────────────────────────────────────

class EventStore:
    """Append-only audit log in the billing database.

    The chain head is read and the new event inserted inside one write
    transaction, so concurrent appends cannot fork the chain.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path
        self._listeners = []

    def append(self, event: Event) -> Event:
        with db.sqlite_transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT event_hash FROM events ORDER BY rowid DESC LIMIT 1"
            ).fetchone()
            event.prev_hash = row["event_hash"] if row and row["event_hash"] else ""
            event.event_hash = event.compute_hash()
            conn.execute(
                """INSERT INTO events
                   (event_id, event_type, entity_type, entity_id,
                    timestamp, actor, data, metadata, prev_hash, event_hash)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    event.event_id, _enum_value(event.event_type), event.entity_type,
                    event.entity_id, event.timestamp, event.actor,
                    json.dumps(event.data), json.dumps(event.metadata),
                    event.prev_hash, event.event_hash,
                ),
            )
        self._dispatch(event)
        return event

    def record(self, event_type, entity_type, entity_id, actor="scheduler",
               data=None, timestamp=None) -> Event:
        """Convenience wrapper around append()."""
        evt = Event(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            actor=actor,
            data=data or {},
        )
        if timestamp is not None:
            evt.timestamp = timestamp
        return self.append(evt)

    def add_listener(self, callback):
        """Register a consumer called with each appended event."""
        self._listeners.append(callback)

    def remove_listener(self, callback):
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass

    def _dispatch(self, event: Event):
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                log.warning("Audit listener %r failed on %s: %s",
                            listener, event.event_id, e)

    def verify_chain(self, limit: int = 0) -> dict:
        """Replay the hash chain.

        Returns {"valid": bool, "events_checked": int, "broken_at": event_id or None}.
        """
        query = "SELECT * FROM events ORDER BY rowid ASC"
        params = ()
        if limit > 0:
            query += " LIMIT ?"
            params = (limit,)
        with db.sqlite_connection(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()

        prev_hash = ""
        for i, row in enumerate(rows):
            if (row["prev_hash"] or "") != prev_hash:
                return {
                    "valid": False,
                    "events_checked": i + 1,
                    "broken_at": row["event_id"],
                    "reason": f"prev_hash mismatch at event {row['event_id']}",
                }
            evt = _row_to_event(row)
            if evt.compute_hash() != row["event_hash"]:
                return {
                    "valid": False,
                    "events_checked": i + 1,
                    "broken_at": row["event_id"],
                    "reason": f"event_hash tampered at event {row['event_id']}",
                }
            prev_hash = row["event_hash"]

        return {"valid": True, "events_checked": len(rows), "broken_at": None}

    def get_events(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        event_type: Optional[str] = None,
        since: Optional[float] = None,
        limit: int = 1000,
    ) -> list[Event]:
        clauses = []
        params = []
        if entity_type:
            clauses.append("entity_type = ?")
            params.append(entity_type)
        if entity_id:
            clauses.append("entity_id = ?")
            params.append(entity_id)
        if event_type:
            clauses.append("event_type = ?")
            params.append(_enum_value(event_type))
        if since:
            clauses.append("timestamp >= ?")
            params.append(since)

        where = " AND ".join(clauses) if clauses else "1=1"
        params.append(limit)

        with db.sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT * FROM events WHERE {where} ORDER BY rowid ASC LIMIT ?",
                params,
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    def get_entity_history(self, entity_type: str, entity_id: str) -> list[Event]:
        return self.get_events(entity_type=entity_type, entity_id=entity_id, limit=10000)


def _row_to_event(row) -> Event:
    return Event(
        event_id=row["event_id"],
        event_type=row["event_type"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        timestamp=row["timestamp"],
        actor=row["actor"],
        data=json.loads(row["data"]),
        metadata=json.loads(row["metadata"]),
        prev_hash=row["prev_hash"] or "",
        event_hash=row["event_hash"] or "",
    )


# ── Billing State Machine ─────────────────────────────────────────────

class BillingStateMachine:
    """Validates and records server billing transitions.

    resolve() is pure; record() writes the audit event once the caller has
    persisted the new state.
    """

    def __init__(self, event_store: EventStore):
        self.events = event_store

    @staticmethod
    def resolve(current_state, trigger) -> BillingState:
        """Next state for (current_state, trigger). Raises InvalidTransition."""
        try:
            current = BillingState(current_state)
            trig = Trigger(trigger)
        except ValueError as e:
            raise InvalidTransition(f"Unknown state or trigger: {e}")

        target = TRANSITIONS.get((current, trig))
        if target is None:
            allowed = sorted(t.value for (s, t) in TRANSITIONS if s == current)
            raise InvalidTransition(
                f"Invalid transition: {current.value} on {trig.value}. "
                f"Allowed triggers from {current.value}: {allowed}"
            )
        return target

    def record(
        self,
        server_id: str,
        previous_state,
        new_state,
        trigger,
        actor: str = "scheduler",
        data: Optional[dict] = None,
    ) -> Event:
        prev = BillingState(previous_state)
        new = BillingState(new_state)
        trig = Trigger(trigger)
        event = self.events.record(
            EventType.STATE_CHANGED,
            "server",
            server_id,
            actor=actor,
            data={
                "previous_state": prev.value,
                "new_state": new.value,
                "trigger": trig.value,
                **(data or {}),
            },
        )
        log.info("STATE %s → %s | server=%s | trigger=%s | actor=%s",
                 prev.value, new.value, server_id, trig.value, actor)
        return event

    def get_server_timeline(self, server_id: str) -> list[dict]:
        """Every transition and charge attempt for a server, in order."""
        return [e.to_dict() for e in self.events.get_entity_history("server", server_id)]


# ── Singleton ─────────────────────────────────────────────────────────

_event_store: Optional[EventStore] = None
_state_machine: Optional[BillingStateMachine] = None


def get_event_store() -> EventStore:
    global _event_store
    if _event_store is None:
        _event_store = EventStore()
    return _event_store


def get_state_machine() -> BillingStateMachine:
    global _state_machine
    if _state_machine is None:
        _state_machine = BillingStateMachine(get_event_store())
    return _state_machine
