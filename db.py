# Enderactyl Database Layer
# SQLite (WAL) record store for the billing core.
#
# Every mutation runs inside BEGIN IMMEDIATE, so writers are serialized by
# SQLite's reserved lock across threads and processes. Balance and billing
# state updates rely on that for linearizability.

# Auto-load .env file (must be before any os.environ reads)
from dotenv import load_dotenv
load_dotenv()

import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager

log = logging.getLogger("enderactyl")

# ── Configuration ─────────────────────────────────────────────────────

DEFAULT_DB_FILE = os.path.join(os.path.dirname(__file__), "enderactyl.db")

# Seconds a writer waits for the reserved lock before failing
BUSY_TIMEOUT_SEC = float(os.environ.get("ENDERACTYL_DB_BUSY_TIMEOUT_SEC", "30"))


def _db_path():
    return os.environ.get("ENDERACTYL_DB_PATH", DEFAULT_DB_FILE)


# ── Schema ────────────────────────────────────────────────────────────

SCHEMA = """
CREATE TABLE IF NOT EXISTS state (
    namespace TEXT PRIMARY KEY,
    payload TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS users (
    user_id TEXT PRIMARY KEY,
    coins INTEGER NOT NULL DEFAULT 0 CHECK (coins >= 0),
    server_slots INTEGER NOT NULL DEFAULT 1,
    database_limit INTEGER NOT NULL DEFAULT 0,
    backup_limit INTEGER NOT NULL DEFAULT 0,
    port_limit INTEGER NOT NULL DEFAULT 1,
    last_afk_claim REAL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS servers (
    server_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(user_id),
    name TEXT NOT NULL DEFAULT '',
    remote_id TEXT NOT NULL,
    ram_mb INTEGER NOT NULL DEFAULT 0,
    cpu_pct INTEGER NOT NULL DEFAULT 0,
    disk_mb INTEGER NOT NULL DEFAULT 0,
    databases INTEGER NOT NULL DEFAULT 0,
    backups INTEGER NOT NULL DEFAULT 0,
    ports INTEGER NOT NULL DEFAULT 0,
    billing_state TEXT NOT NULL DEFAULT 'active'
        CHECK (billing_state IN ('active', 'grace_period', 'suspended', 'resuming')),
    last_charged_at REAL NOT NULL,
    grace_entered_at REAL,
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    suspend_reason TEXT NOT NULL DEFAULT '',
    version INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_servers_user ON servers(user_id);
CREATE INDEX IF NOT EXISTS idx_servers_billing
    ON servers(billing_state, last_charged_at);

CREATE TABLE IF NOT EXISTS ledger_entries (
    entry_id TEXT PRIMARY KEY,
    server_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    amount INTEGER NOT NULL DEFAULT 0,
    hours INTEGER NOT NULL DEFAULT 0,
    balance_after INTEGER NOT NULL DEFAULT 0,
    outcome TEXT NOT NULL
        CHECK (outcome IN ('charged', 'insufficient', 'gateway-error')),
    detail TEXT NOT NULL DEFAULT '',
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_ledger_server ON ledger_entries(server_id, created_at);
CREATE INDEX IF NOT EXISTS idx_ledger_user ON ledger_entries(user_id, created_at);

CREATE TABLE IF NOT EXISTS wallet_transactions (
    tx_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    tx_type TEXT NOT NULL,
    amount INTEGER NOT NULL DEFAULT 0,
    balance_after INTEGER NOT NULL DEFAULT 0,
    description TEXT NOT NULL DEFAULT '',
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_wallet_tx_user ON wallet_transactions(user_id, created_at);

CREATE TABLE IF NOT EXISTS coupons (
    code TEXT PRIMARY KEY,
    coins INTEGER NOT NULL DEFAULT 0,
    server_slots INTEGER NOT NULL DEFAULT 0,
    databases INTEGER NOT NULL DEFAULT 0,
    backups INTEGER NOT NULL DEFAULT 0,
    ports INTEGER NOT NULL DEFAULT 0,
    max_uses INTEGER NOT NULL DEFAULT 0,
    uses_count INTEGER NOT NULL DEFAULT 0,
    expires_at REAL,
    enabled INTEGER NOT NULL DEFAULT 1,
    created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS coupon_uses (
    code TEXT NOT NULL REFERENCES coupons(code),
    user_id TEXT NOT NULL,
    redeemed_at REAL NOT NULL,
    PRIMARY KEY (code, user_id)
);

CREATE TABLE IF NOT EXISTS earn_tokens (
    token TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    coins INTEGER NOT NULL,
    expires_at REAL NOT NULL,
    claimed INTEGER NOT NULL DEFAULT 0,
    claimed_at REAL,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_earn_tokens_user ON earn_tokens(user_id);
CREATE INDEX IF NOT EXISTS idx_earn_tokens_expiry ON earn_tokens(expires_at);

CREATE TABLE IF NOT EXISTS events (
    event_id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    timestamp REAL NOT NULL,
    actor TEXT DEFAULT '',
    data TEXT DEFAULT '{}',
    metadata TEXT DEFAULT '{}',
    prev_hash TEXT DEFAULT '',
    event_hash TEXT DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_events_entity ON events(entity_type, entity_id);
CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type);
CREATE INDEX IF NOT EXISTS idx_events_ts ON events(timestamp);
"""

_initialized_paths = set()
_init_lock = threading.Lock()


def _ensure_tables(conn, path):
    """Create all billing tables once per database file."""
    if path in _initialized_paths:
        return
    with _init_lock:
        if path in _initialized_paths:
            return
        conn.executescript(SCHEMA)
        _initialized_paths.add(path)
        log.debug("Database schema ensured at %s", path)


# ── Connections ───────────────────────────────────────────────────────


@contextmanager
def sqlite_connection(db_path=None):
    """SQLite connection in autocommit mode with WAL enabled."""
    path = db_path or _db_path()
    conn = sqlite3.connect(path, timeout=BUSY_TIMEOUT_SEC, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    _ensure_tables(conn, path)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def sqlite_transaction(db_path=None):
    """Execute a mutation in a single SQLite write transaction."""
    with sqlite_connection(db_path) as conn:
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise


@contextmanager
def write_scope(conn=None, db_path=None):
    """Join the caller's open transaction, or open a new one."""
    if conn is not None:
        yield conn
        return
    with sqlite_transaction(db_path) as own:
        yield own


# ── Namespace state ───────────────────────────────────────────────────


def encode_payload(data):
    return json.dumps(data, sort_keys=True)


def decode_payload(payload):
    if payload is None:
        return None
    if isinstance(payload, (dict, list)):
        return payload
    return json.loads(payload)


def upsert_state(conn, namespace, data):
    conn.execute(
        "INSERT INTO state (namespace, payload) VALUES (?, ?) "
        "ON CONFLICT(namespace) DO UPDATE SET payload = excluded.payload",
        (namespace, encode_payload(data)),
    )


def get_state(conn, namespace):
    row = conn.execute(
        "SELECT payload FROM state WHERE namespace = ?", (namespace,)
    ).fetchone()
    return decode_payload(row["payload"]) if row else None
