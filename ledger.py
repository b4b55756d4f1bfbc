# Enderactyl Billing Ledger
# Single writer of coin balances and server billing metadata.
#
# Balances only move through `coins = coins ± ?` statements guarded by
# `coins >= ?`, inside BEGIN IMMEDIATE transactions. Server rows carry a
# version counter; every write checks and bumps it, so a stale reader can
# never settle the same billing period twice.

import logging
import os
import sqlite3
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Iterable, Optional

import db
from events import BillingState
from rates import ResourceVector

log = logging.getLogger("enderactyl")


class LedgerError(Exception):
    pass


class UnknownUser(LedgerError, LookupError):
    pass


class UnknownServer(LedgerError, LookupError):
    pass


class InsufficientBalance(LedgerError):
    """Raised by request-driven debits (purchases, creation checks).

    Scheduled charges report insufficiency through DebitResult/ChargeResult
    instead of raising.
    """

    def __init__(self, user_id, required, balance):
        super().__init__(
            f"User {user_id} has {balance} coins, {required} required"
        )
        self.user_id = user_id
        self.required = required
        self.balance = balance


class ConcurrentModification(LedgerError):
    """Optimistic-lock conflict: the row changed since it was read."""


# ── Records ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DebitResult:
    applied: bool
    new_balance: int


@dataclass
class ServerRecord:
    server_id: str
    user_id: str
    name: str
    remote_id: str
    resources: ResourceVector
    billing_state: BillingState
    last_charged_at: float
    grace_entered_at: Optional[float]
    consecutive_failures: int
    suspend_reason: str
    version: int
    created_at: float

    @classmethod
    def from_row(cls, row) -> "ServerRecord":
        return cls(
            server_id=row["server_id"],
            user_id=row["user_id"],
            name=row["name"],
            remote_id=row["remote_id"],
            resources=ResourceVector.from_row(row),
            billing_state=BillingState(row["billing_state"]),
            last_charged_at=row["last_charged_at"],
            grace_entered_at=row["grace_entered_at"],
            consecutive_failures=row["consecutive_failures"],
            suspend_reason=row["suspend_reason"],
            version=row["version"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict:
        d = asdict(self)
        d["billing_state"] = self.billing_state.value
        return d


@dataclass(frozen=True)
class ChargeResult:
    applied: bool
    amount: int
    hours: int
    balance: int
    server: ServerRecord


@dataclass
class LedgerEntry:
    entry_id: str = field(default_factory=lambda: f"LE-{uuid.uuid4().hex[:16]}")
    server_id: str = ""
    user_id: str = ""
    amount: int = 0
    hours: int = 0
    balance_after: int = 0
    outcome: str = ""          # charged, insufficient, gateway-error
    detail: str = ""
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return asdict(self)


CHARGE_OUTCOMES = ("charged", "insufficient", "gateway-error")

# Columns a compare-and-set may touch besides billing_state
_CAS_FIELDS = {
    "last_charged_at", "grace_entered_at",
    "consecutive_failures", "suspend_reason",
}


def _tx_id():
    return f"TX-{int(time.time())}-{os.urandom(3).hex()}"


# ── Ledger ────────────────────────────────────────────────────────────

class Ledger:
    """Atomic balance and billing-record operations.

    Methods that take `conn` join the caller's open write transaction so
    credit sources can combine a credit with their own bookkeeping.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    # ── Users ─────────────────────────────────────────────────────────

    def create_user(self, user_id: str, coins: int = 0, server_slots: int = 1,
                    database_limit: int = 0, backup_limit: int = 0,
                    port_limit: int = 1) -> dict:
        if coins < 0:
            raise ValueError("coins must be >= 0")
        now = time.time()
        with db.sqlite_transaction(self.db_path) as conn:
            conn.execute(
                """INSERT INTO users
                   (user_id, coins, server_slots, database_limit,
                    backup_limit, port_limit, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (user_id, coins, server_slots, database_limit,
                 backup_limit, port_limit, now, now),
            )
        log.info("USER created %s coins=%d slots=%d", user_id, coins, server_slots)
        return self.get_user(user_id)

    def get_user(self, user_id: str, conn=None) -> dict:
        if conn is not None:
            row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
        else:
            with db.sqlite_connection(self.db_path) as own:
                row = own.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
        if not row:
            raise UnknownUser(user_id)
        return dict(row)

    def get_balance(self, user_id: str) -> int:
        return int(self.get_user(user_id)["coins"])

    def debit(self, user_id: str, amount: int, conn=None) -> DebitResult:
        """Compare-and-subtract. Never leaves the balance negative."""
        if amount < 0:
            raise ValueError("debit amount must be >= 0")
        with db.write_scope(conn, self.db_path) as c:
            cur = c.execute(
                """UPDATE users SET coins = coins - ?, updated_at = ?
                   WHERE user_id = ? AND coins >= ?""",
                (amount, time.time(), user_id, amount),
            )
            balance = int(self.get_user(user_id, conn=c)["coins"])
        return DebitResult(applied=cur.rowcount == 1, new_balance=balance)

    def credit(self, user_id: str, amount: int, conn=None) -> int:
        if amount < 0:
            raise ValueError("credit amount must be >= 0")
        with db.write_scope(conn, self.db_path) as c:
            cur = c.execute(
                "UPDATE users SET coins = coins + ?, updated_at = ? WHERE user_id = ?",
                (amount, time.time(), user_id),
            )
            if cur.rowcount == 0:
                raise UnknownUser(user_id)
            return int(self.get_user(user_id, conn=c)["coins"])

    def grant_entitlements(self, user_id: str, server_slots: int = 0,
                           database_limit: int = 0, backup_limit: int = 0,
                           port_limit: int = 0, conn=None):
        with db.write_scope(conn, self.db_path) as c:
            cur = c.execute(
                """UPDATE users SET
                       server_slots = server_slots + ?,
                       database_limit = database_limit + ?,
                       backup_limit = backup_limit + ?,
                       port_limit = port_limit + ?,
                       updated_at = ?
                   WHERE user_id = ?""",
                (server_slots, database_limit, backup_limit, port_limit,
                 time.time(), user_id),
            )
            if cur.rowcount == 0:
                raise UnknownUser(user_id)

    def mark_afk_claim(self, user_id: str, now: float, min_interval_sec: float,
                       conn=None) -> bool:
        """Stamp last_afk_claim unless the previous claim is too recent."""
        with db.write_scope(conn, self.db_path) as c:
            cur = c.execute(
                """UPDATE users SET last_afk_claim = ?, updated_at = ?
                   WHERE user_id = ?
                     AND (last_afk_claim IS NULL OR last_afk_claim <= ?)""",
                (now, time.time(), user_id, now - min_interval_sec),
            )
            return cur.rowcount == 1

    def record_wallet_transaction(self, user_id: str, tx_type: str, amount: int,
                                  balance_after: int, description: str = "",
                                  conn=None) -> str:
        tx_id = _tx_id()
        with db.write_scope(conn, self.db_path) as c:
            c.execute(
                """INSERT INTO wallet_transactions
                   (tx_id, user_id, tx_type, amount, balance_after,
                    description, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (tx_id, user_id, tx_type, amount, balance_after,
                 description, time.time()),
            )
        return tx_id

    def get_wallet_history(self, user_id: str, limit: int = 50) -> list[dict]:
        with db.sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                """SELECT * FROM wallet_transactions
                   WHERE user_id = ?
                   ORDER BY created_at DESC, rowid DESC LIMIT ?""",
                (user_id, limit),
            ).fetchall()
        return [dict(r) for r in rows]

    # ── Servers ───────────────────────────────────────────────────────

    def register_server(self, server_id: str, user_id: str, name: str,
                        remote_id: str, resources: ResourceVector,
                        now: Optional[float] = None) -> ServerRecord:
        """Create the billing record: active, last charged now."""
        now = time.time() if now is None else now
        with db.sqlite_transaction(self.db_path) as conn:
            try:
                conn.execute(
                    """INSERT INTO servers
                       (server_id, user_id, name, remote_id, ram_mb, cpu_pct,
                        disk_mb, databases, backups, ports, billing_state,
                        last_charged_at, grace_entered_at, consecutive_failures,
                        suspend_reason, version, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, 0, '', 0, ?)""",
                    (server_id, user_id, name, str(remote_id),
                     resources.ram_mb, resources.cpu_pct, resources.disk_mb,
                     resources.databases, resources.backups, resources.ports,
                     BillingState.ACTIVE.value, now, now),
                )
            except sqlite3.IntegrityError as e:
                if "FOREIGN KEY" in str(e):
                    raise UnknownUser(user_id)
                raise
        return self.get_server(server_id)

    def get_server(self, server_id: str, conn=None) -> ServerRecord:
        if conn is not None:
            row = conn.execute("SELECT * FROM servers WHERE server_id = ?", (server_id,)).fetchone()
        else:
            with db.sqlite_connection(self.db_path) as own:
                row = own.execute("SELECT * FROM servers WHERE server_id = ?", (server_id,)).fetchone()
        if not row:
            raise UnknownServer(server_id)
        return ServerRecord.from_row(row)

    def list_servers(self, user_id: Optional[str] = None,
                     states: Optional[Iterable] = None) -> list[ServerRecord]:
        clauses = []
        params = []
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if states:
            values = [BillingState(s).value for s in states]
            clauses.append(f"billing_state IN ({','.join('?' * len(values))})")
            params.extend(values)
        where = " AND ".join(clauses) if clauses else "1=1"
        with db.sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT * FROM servers WHERE {where} ORDER BY created_at ASC",
                params,
            ).fetchall()
        return [ServerRecord.from_row(r) for r in rows]

    def count_servers(self, user_id: str) -> int:
        with db.sqlite_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM servers WHERE user_id = ?", (user_id,)
            ).fetchone()
        return int(row["n"])

    def billable_servers(self, now: float, tick_interval_sec: int) -> list[ServerRecord]:
        """Servers a tick must visit.

        Active and grace-period servers once their interval has elapsed;
        suspended and resuming servers always (resume checks and replays).
        """
        with db.sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                """SELECT * FROM servers
                   WHERE (billing_state IN (?, ?) AND last_charged_at <= ?)
                      OR billing_state IN (?, ?)
                   ORDER BY last_charged_at ASC""",
                (BillingState.ACTIVE.value, BillingState.GRACE_PERIOD.value,
                 now - tick_interval_sec,
                 BillingState.SUSPENDED.value, BillingState.RESUMING.value),
            ).fetchall()
        return [ServerRecord.from_row(r) for r in rows]

    def update_resources(self, server_id: str, expected_version: int,
                         resources: ResourceVector) -> ServerRecord:
        """Change the billed allocation. Applies from the next charge on."""
        with db.sqlite_transaction(self.db_path) as conn:
            cur = conn.execute(
                """UPDATE servers SET ram_mb = ?, cpu_pct = ?, disk_mb = ?,
                       databases = ?, backups = ?, ports = ?, version = version + 1
                   WHERE server_id = ? AND version = ?""",
                (resources.ram_mb, resources.cpu_pct, resources.disk_mb,
                 resources.databases, resources.backups, resources.ports,
                 server_id, expected_version),
            )
            if cur.rowcount == 0:
                self._raise_missing_or_conflict(conn, server_id)
            return self.get_server(server_id, conn=conn)

    def remove_server(self, server_id: str, expected_version: int):
        with db.sqlite_transaction(self.db_path) as conn:
            cur = conn.execute(
                "DELETE FROM servers WHERE server_id = ? AND version = ?",
                (server_id, expected_version),
            )
            if cur.rowcount == 0:
                self._raise_missing_or_conflict(conn, server_id)
        log.info("SERVER billing record removed %s", server_id)

    def _raise_missing_or_conflict(self, conn, server_id):
        row = conn.execute(
            "SELECT version FROM servers WHERE server_id = ?", (server_id,)
        ).fetchone()
        if row is None:
            raise UnknownServer(server_id)
        raise ConcurrentModification(
            f"server {server_id} changed concurrently (now at version {row['version']})"
        )

    # ── State ─────────────────────────────────────────────────────────

    def compare_and_set_billing_state(self, server_id: str, expected_state,
                                      expected_version: int, new_state,
                                      **fields) -> ServerRecord:
        """Write billing state (and bookkeeping fields) only if unchanged."""
        unknown = set(fields) - _CAS_FIELDS
        if unknown:
            raise ValueError(f"Unsupported billing fields: {sorted(unknown)}")
        new_state = BillingState(new_state)
        assignments = ["billing_state = ?", "version = version + 1"]
        params = [new_state.value]
        for name in sorted(fields):
            assignments.append(f"{name} = ?")
            params.append(fields[name])
        params.extend([server_id, BillingState(expected_state).value, expected_version])

        with db.sqlite_transaction(self.db_path) as conn:
            cur = conn.execute(
                f"""UPDATE servers SET {', '.join(assignments)}
                    WHERE server_id = ? AND billing_state = ? AND version = ?""",
                params,
            )
            if cur.rowcount == 0:
                self._raise_missing_or_conflict(conn, server_id)
            return self.get_server(server_id, conn=conn)

    # ── Charges ───────────────────────────────────────────────────────

    def record_charge_outcome(self, server_id: str, user_id: str, amount: int,
                              outcome: str, balance_after: int = 0, hours: int = 0,
                              detail: str = "", conn=None,
                              now: Optional[float] = None) -> LedgerEntry:
        """Append an immutable ledger entry for one charge attempt."""
        if outcome not in CHARGE_OUTCOMES:
            raise ValueError(f"Unknown charge outcome: {outcome}")
        entry = LedgerEntry(
            server_id=server_id, user_id=user_id, amount=amount, hours=hours,
            balance_after=balance_after, outcome=outcome, detail=detail,
            created_at=time.time() if now is None else now,
        )
        with db.write_scope(conn, self.db_path) as c:
            c.execute(
                """INSERT INTO ledger_entries
                   (entry_id, server_id, user_id, amount, hours,
                    balance_after, outcome, detail, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (entry.entry_id, entry.server_id, entry.user_id, entry.amount,
                 entry.hours, entry.balance_after, entry.outcome, entry.detail,
                 entry.created_at),
            )
        return entry

    def settle_charge(self, server: ServerRecord, amount: int, hours: int,
                      advance_hours: int, now: Optional[float] = None) -> ChargeResult:
        """Debit the owner and advance last_charged_at in one transaction.

        `now` is the tick time the ledger entry is stamped with.

        The server version read by the caller must still be current;
        otherwise ConcurrentModification is raised and nothing is written.
        On insufficient balance nothing moves except a ledger entry.
        """
        with db.sqlite_transaction(self.db_path) as conn:
            current = conn.execute(
                "SELECT version FROM servers WHERE server_id = ?", (server.server_id,)
            ).fetchone()
            if current is None:
                raise UnknownServer(server.server_id)
            if current["version"] != server.version:
                raise ConcurrentModification(
                    f"server {server.server_id} at version {current['version']}, "
                    f"expected {server.version}"
                )

            debit = self.debit(server.user_id, amount, conn=conn)
            if not debit.applied:
                self.record_charge_outcome(
                    server.server_id, server.user_id, amount, "insufficient",
                    balance_after=debit.new_balance, hours=hours, conn=conn, now=now,
                )
                return ChargeResult(False, amount, hours, debit.new_balance, server)

            new_last = server.last_charged_at + advance_hours * 3600
            conn.execute(
                """UPDATE servers SET last_charged_at = ?, version = version + 1
                   WHERE server_id = ? AND version = ?""",
                (new_last, server.server_id, server.version),
            )
            self.record_charge_outcome(
                server.server_id, server.user_id, amount, "charged",
                balance_after=debit.new_balance, hours=hours, conn=conn, now=now,
            )
            if amount:
                self.record_wallet_transaction(
                    server.user_id, "billing", -amount, debit.new_balance,
                    f"Hourly billing for server {server.name or server.server_id} ({hours}h)",
                    conn=conn,
                )
            updated = self.get_server(server.server_id, conn=conn)

        log.info("CHARGE server=%s user=%s -%d coins (%dh) balance=%d",
                 server.server_id, server.user_id, amount, hours, debit.new_balance)
        return ChargeResult(True, amount, hours, debit.new_balance, updated)

    def ledger_entries(self, server_id: Optional[str] = None,
                       user_id: Optional[str] = None, limit: int = 100) -> list[LedgerEntry]:
        clauses = []
        params = []
        if server_id:
            clauses.append("server_id = ?")
            params.append(server_id)
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        where = " AND ".join(clauses) if clauses else "1=1"
        params.append(limit)
        with db.sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                f"""SELECT * FROM ledger_entries WHERE {where}
                    ORDER BY created_at ASC, rowid ASC LIMIT ?""",
                params,
            ).fetchall()
        return [LedgerEntry(**dict(r)) for r in rows]


# ── Singleton ─────────────────────────────────────────────────────────

_ledger: Optional[Ledger] = None


def get_ledger() -> Ledger:
    global _ledger
    if _ledger is None:
        _ledger = Ledger()
    return _ledger
