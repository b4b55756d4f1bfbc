# Enderactyl Credit Sources
# Everything that moves coins outside the hourly charge: coupons, earn
# tokens, AFK rewards, admin adjustments, store purchases.
#
# Each operation is one write transaction through the ledger. After commit,
# credits fire on_credit(user_id) so suspended servers get re-evaluated
# without waiting for the next tick.

import logging
import math
import secrets
import sqlite3
import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional

import db
from events import EventStore, EventType
from ledger import InsufficientBalance, Ledger
from rates import SettingsStore

log = logging.getLogger("enderactyl")

EARN_TOKEN_TTL_SEC = 24 * 3600
CLAIMED_TOKEN_RETENTION_SEC = 7 * 24 * 3600
AFK_CLAIM_SLACK_MINUTES = 5


class RedemptionError(ValueError):
    """Coupon, earn token or AFK claim rejected. `code` is machine-readable."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


@dataclass
class Coupon:
    code: str
    coins: int = 0
    server_slots: int = 0
    databases: int = 0
    backups: int = 0
    ports: int = 0
    max_uses: int = 0           # 0 = unlimited
    uses_count: int = 0
    expires_at: Optional[float] = None
    enabled: bool = True
    created_at: float = 0.0

    @classmethod
    def from_row(cls, row) -> "Coupon":
        d = dict(row)
        d["enabled"] = bool(d["enabled"])
        return cls(**d)

    def to_dict(self) -> dict:
        return asdict(self)


def _normalize_code(code: str) -> str:
    return (code or "").strip().upper()


class CreditSources:
    def __init__(self, ledger: Ledger, events: EventStore,
                 on_credit: Optional[Callable[[str], object]] = None,
                 settings: Optional[SettingsStore] = None):
        self.ledger = ledger
        self.events = events
        self.on_credit = on_credit
        self.settings = settings or SettingsStore(ledger.db_path)

    def _credited(self, user_id: str):
        if self.on_credit is None:
            return
        try:
            self.on_credit(user_id)
        except Exception as e:
            # The credit itself is committed; the next tick will pick it up.
            log.warning("Resume trigger for user=%s failed: %s", user_id, e)

    # ── Coupons ───────────────────────────────────────────────────────

    def create_coupon(self, code: str, coins: int = 0, server_slots: int = 0,
                      databases: int = 0, backups: int = 0, ports: int = 0,
                      max_uses: int = 0, expires_at: Optional[float] = None,
                      enabled: bool = True, actor: str = "admin") -> Coupon:
        code = _normalize_code(code)
        if not code:
            raise ValueError("coupon code must not be empty")
        for name, value in (("coins", coins), ("server_slots", server_slots),
                            ("databases", databases), ("backups", backups),
                            ("ports", ports), ("max_uses", max_uses)):
            if value < 0:
                raise ValueError(f"{name} must be >= 0")
        coupon = Coupon(code=code, coins=coins, server_slots=server_slots,
                        databases=databases, backups=backups, ports=ports,
                        max_uses=max_uses, expires_at=expires_at,
                        enabled=enabled, created_at=time.time())
        try:
            with db.sqlite_transaction(self.ledger.db_path) as conn:
                conn.execute(
                    """INSERT INTO coupons
                       (code, coins, server_slots, databases, backups, ports,
                        max_uses, uses_count, expires_at, enabled, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)""",
                    (code, coins, server_slots, databases, backups, ports,
                     max_uses, expires_at, int(enabled), coupon.created_at),
                )
        except sqlite3.IntegrityError:
            raise ValueError(f"coupon {code} already exists")
        self.events.record(EventType.CONFIG_UPDATED, "coupon", code, actor=actor,
                           data={"action": "create", **coupon.to_dict()})
        log.info("COUPON created %s coins=%d max_uses=%d", code, coins, max_uses)
        return coupon

    def get_coupon(self, code: str) -> Optional[Coupon]:
        with db.sqlite_connection(self.ledger.db_path) as conn:
            row = conn.execute("SELECT * FROM coupons WHERE code = ?",
                               (_normalize_code(code),)).fetchone()
        return Coupon.from_row(row) if row else None

    def redeem_coupon(self, user_id: str, code: str,
                      now: Optional[float] = None) -> dict:
        """Apply a coupon once per user. Returns what was granted."""
        now = time.time() if now is None else now
        code = _normalize_code(code)
        if not code:
            raise RedemptionError("invalid_code", "Coupon code is required")

        with db.sqlite_transaction(self.ledger.db_path) as conn:
            self.ledger.get_user(user_id, conn=conn)
            row = conn.execute("SELECT * FROM coupons WHERE code = ?", (code,)).fetchone()
            if row is None:
                raise RedemptionError("invalid_code", f"Coupon {code} does not exist")
            coupon = Coupon.from_row(row)
            if not coupon.enabled:
                raise RedemptionError("disabled", f"Coupon {code} is disabled")
            if coupon.expires_at is not None and coupon.expires_at <= now:
                raise RedemptionError("expired", f"Coupon {code} has expired")

            try:
                conn.execute(
                    "INSERT INTO coupon_uses (code, user_id, redeemed_at) VALUES (?, ?, ?)",
                    (code, user_id, now),
                )
            except sqlite3.IntegrityError:
                raise RedemptionError("already_redeemed",
                                      f"Coupon {code} already redeemed by {user_id}")

            cur = conn.execute(
                """UPDATE coupons SET uses_count = uses_count + 1
                   WHERE code = ? AND (max_uses = 0 OR uses_count < max_uses)""",
                (code,),
            )
            if cur.rowcount == 0:
                raise RedemptionError("exhausted", f"Coupon {code} has no uses left")

            balance = self.ledger.credit(user_id, coupon.coins, conn=conn)
            self.ledger.grant_entitlements(
                user_id, server_slots=coupon.server_slots,
                database_limit=coupon.databases, backup_limit=coupon.backups,
                port_limit=coupon.ports, conn=conn,
            )
            self.ledger.record_wallet_transaction(
                user_id, "coupon", coupon.coins, balance,
                f"Coupon {code}", conn=conn,
            )

        granted = {
            "code": code,
            "coins": coupon.coins,
            "server_slots": coupon.server_slots,
            "databases": coupon.databases,
            "backups": coupon.backups,
            "ports": coupon.ports,
            "balance": balance,
        }
        self.events.record(EventType.COUPON_REDEEMED, "user", user_id,
                           actor=f"user:{user_id}", data=granted)
        log.info("COUPON %s redeemed by %s +%d coins balance=%d",
                 code, user_id, coupon.coins, balance)
        if coupon.coins:
            self._credited(user_id)
        return granted

    # ── Earn tokens ───────────────────────────────────────────────────

    def issue_earn_token(self, user_id: str, coins: int,
                         ttl_sec: int = EARN_TOKEN_TTL_SEC,
                         now: Optional[float] = None) -> dict:
        """Single-use reward token, claimable until it expires."""
        if coins <= 0:
            raise ValueError("earn reward must be > 0")
        now = time.time() if now is None else now
        token = secrets.token_hex(16)
        with db.sqlite_transaction(self.ledger.db_path) as conn:
            self.ledger.get_user(user_id, conn=conn)
            conn.execute(
                """INSERT INTO earn_tokens
                   (token, user_id, coins, expires_at, claimed, created_at)
                   VALUES (?, ?, ?, ?, 0, ?)""",
                (token, user_id, coins, now + ttl_sec, now),
            )
        log.info("EARN token issued user=%s coins=%d ttl=%ds", user_id, coins, ttl_sec)
        return {"token": token, "user_id": user_id, "coins": coins,
                "expires_at": now + ttl_sec}

    def claim_earn_token(self, user_id: str, token: str,
                         now: Optional[float] = None) -> dict:
        """Claim a token for the user it was issued to."""
        now = time.time() if now is None else now
        with db.sqlite_transaction(self.ledger.db_path) as conn:
            row = conn.execute("SELECT * FROM earn_tokens WHERE token = ?",
                               (token,)).fetchone()
            if row is None:
                raise RedemptionError("invalid_token", "Unknown earn token")
            if row["user_id"] != user_id:
                raise RedemptionError("invalid_token",
                                      f"Earn token was not issued to {user_id}")
            cur = conn.execute(
                """UPDATE earn_tokens SET claimed = 1, claimed_at = ?
                   WHERE token = ? AND claimed = 0 AND expires_at > ?""",
                (now, token, now),
            )
            if cur.rowcount == 0:
                if row["claimed"]:
                    raise RedemptionError("already_claimed", "Earn token already claimed")
                raise RedemptionError("expired", "Earn token has expired")

            balance = self.ledger.credit(user_id, row["coins"], conn=conn)
            self.ledger.record_wallet_transaction(
                user_id, "earn", row["coins"], balance, "Earn reward", conn=conn,
            )

        self.events.record(EventType.EARN_CLAIMED, "user", user_id,
                           actor=f"user:{user_id}",
                           data={"source": "token", "coins": row["coins"],
                                 "balance": balance})
        log.info("EARN claimed user=%s +%d coins balance=%d",
                 user_id, row["coins"], balance)
        self._credited(user_id)
        return {"user_id": user_id, "coins": row["coins"], "balance": balance}

    def cleanup_earn_tokens(self, now: Optional[float] = None,
                            claimed_retention_sec: int = CLAIMED_TOKEN_RETENTION_SEC) -> int:
        """Delete expired tokens and tokens claimed longer ago than the retention."""
        now = time.time() if now is None else now
        with db.sqlite_transaction(self.ledger.db_path) as conn:
            cur = conn.execute(
                """DELETE FROM earn_tokens
                   WHERE expires_at < ?
                      OR (claimed = 1 AND claimed_at < ?)""",
                (now, now - claimed_retention_sec),
            )
            deleted = cur.rowcount
        if deleted:
            log.info("EARN cleanup removed %d token(s)", deleted)
        return deleted

    # ── AFK rewards ───────────────────────────────────────────────────

    def claim_afk(self, user_id: str, minutes: int,
                  now: Optional[float] = None) -> dict:
        """Pay for minutes spent on the AFK page.

        Claims are spaced at least afk_interval_sec apart, may not report more
        minutes than have passed since the previous claim (plus a small
        allowance for page load delays), and are capped at afk_max_minutes.
        """
        now = time.time() if now is None else now
        if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes < 1:
            raise RedemptionError("invalid_minutes", "minutes must be a positive integer")
        rates = self.settings.load()
        if not rates.afk_enabled:
            raise RedemptionError("disabled", "AFK rewards are disabled")

        with db.sqlite_transaction(self.ledger.db_path) as conn:
            last = self.ledger.get_user(user_id, conn=conn)["last_afk_claim"]
            if last is not None:
                since = now - last
                if since < rates.afk_interval_sec:
                    wait = math.ceil(rates.afk_interval_sec - since)
                    raise RedemptionError("too_soon",
                                          f"Please wait {wait} seconds before claiming again")
                possible = int(since // 60) + 1
                if minutes > possible + AFK_CLAIM_SLACK_MINUTES:
                    raise RedemptionError("invalid_minutes",
                                          "Claimed minutes exceed time since last claim")
            if not self.ledger.mark_afk_claim(user_id, now, rates.afk_interval_sec, conn=conn):
                raise RedemptionError("too_soon", "AFK reward already claimed")

            credited_minutes = min(minutes, rates.afk_max_minutes)
            coins = int(math.floor(credited_minutes * rates.afk_coins_per_minute))
            balance = self.ledger.credit(user_id, coins, conn=conn)
            self.ledger.record_wallet_transaction(
                user_id, "afk", coins, balance,
                f"AFK reward: {credited_minutes} minutes", conn=conn,
            )

        self.events.record(EventType.EARN_CLAIMED, "user", user_id,
                           actor=f"user:{user_id}",
                           data={"source": "afk", "minutes": credited_minutes,
                                 "coins": coins, "balance": balance})
        log.info("AFK claimed user=%s minutes=%d +%d coins balance=%d",
                 user_id, credited_minutes, coins, balance)
        if coins:
            self._credited(user_id)
        return {"user_id": user_id, "minutes": credited_minutes,
                "coins": coins, "balance": balance}

    # ── Admin & store ─────────────────────────────────────────────────

    def admin_adjust(self, user_id: str, delta: int, reason: str = "",
                     actor: str = "admin") -> int:
        """Signed balance edit. A debit larger than the balance is refused."""
        if delta == 0:
            return self.ledger.get_balance(user_id)
        with db.sqlite_transaction(self.ledger.db_path) as conn:
            if delta > 0:
                balance = self.ledger.credit(user_id, delta, conn=conn)
            else:
                result = self.ledger.debit(user_id, -delta, conn=conn)
                if not result.applied:
                    raise InsufficientBalance(user_id, -delta, result.new_balance)
                balance = result.new_balance
            self.ledger.record_wallet_transaction(
                user_id, "admin", delta, balance,
                reason or f"Balance adjusted by {actor}", conn=conn,
            )

        event_type = EventType.WALLET_CREDIT if delta > 0 else EventType.WALLET_DEBIT
        self.events.record(event_type, "user", user_id, actor=actor,
                           data={"delta": delta, "balance": balance, "reason": reason})
        log.info("ADMIN %s adjusted user=%s by %+d balance=%d", actor, user_id, delta, balance)
        if delta > 0:
            self._credited(user_id)
        return balance

    def purchase(self, user_id: str, price: int, server_slots: int = 0,
                 databases: int = 0, backups: int = 0, ports: int = 0,
                 description: str = "") -> int:
        """Store purchase: debit the price and grant entitlements together."""
        if price < 0:
            raise ValueError("price must be >= 0")
        with db.sqlite_transaction(self.ledger.db_path) as conn:
            result = self.ledger.debit(user_id, price, conn=conn)
            if not result.applied:
                raise InsufficientBalance(user_id, price, result.new_balance)
            self.ledger.grant_entitlements(
                user_id, server_slots=server_slots, database_limit=databases,
                backup_limit=backups, port_limit=ports, conn=conn,
            )
            self.ledger.record_wallet_transaction(
                user_id, "purchase", -price, result.new_balance,
                description or "Store purchase", conn=conn,
            )

        self.events.record(
            EventType.WALLET_DEBIT, "user", user_id, actor=f"user:{user_id}",
            data={"price": price, "server_slots": server_slots,
                  "databases": databases, "backups": backups, "ports": ports,
                  "balance": result.new_balance},
        )
        log.info("PURCHASE user=%s -%d coins balance=%d", user_id, price, result.new_balance)
        return result.new_balance

