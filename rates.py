# Enderactyl Rate Table
# Hourly coin cost of a server's resource allocation, plus the admin-editable
# billing configuration it is priced against.
#
# Units follow the panel's store: RAM per 1 GB (1024 MB), CPU per 50 %,
# disk per 5 GB (5120 MB), databases/backups/ports per unit.

import logging
import math
import os
from dataclasses import asdict, dataclass, fields, replace
from decimal import Decimal
from enum import Enum

import db

log = logging.getLogger("enderactyl")

RAM_UNIT_MB = 1024
CPU_UNIT_PCT = 50
DISK_UNIT_MB = 5120

SECONDS_PER_HOUR = 3600
SETTINGS_NAMESPACE = "billing_settings"


class ConfigurationInvalid(ValueError):
    """Rejected billing configuration. Raised at write time only."""


class CatchupPolicy(str, Enum):
    FORGIVE = "forgive"   # Hours beyond the window are never billed
    CARRY = "carry"       # Hours beyond the window roll over to later ticks


# ── Resources ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ResourceVector:
    """Allocated resources of one server."""
    ram_mb: int = 0
    cpu_pct: int = 0
    disk_mb: int = 0
    databases: int = 0
    backups: int = 0
    ports: int = 0

    def __post_init__(self):
        for f in fields(self):
            if getattr(self, f.name) < 0:
                raise ValueError(f"{f.name} must be >= 0")

    @classmethod
    def from_row(cls, row) -> "ResourceVector":
        return cls(
            ram_mb=int(row["ram_mb"]),
            cpu_pct=int(row["cpu_pct"]),
            disk_mb=int(row["disk_mb"]),
            databases=int(row["databases"]),
            backups=int(row["backups"]),
            ports=int(row["ports"]),
        )

    def to_dict(self) -> dict:
        return asdict(self)


# ── Configuration ─────────────────────────────────────────────────────

RATE_FIELDS = (
    "ram_rate", "cpu_rate", "disk_rate",
    "database_rate", "backup_rate", "port_rate",
)
INT_FIELDS = (
    "grace_period_hours", "tick_interval_sec", "max_catchup_hours",
    "afk_max_minutes", "afk_interval_sec",
)
BOOL_FIELDS = ("billing_enabled", "require_balance_on_create", "afk_enabled")


@dataclass(frozen=True)
class RateConfig:
    """Snapshot of the global billing configuration.

    Frozen so a tick can hold one snapshot while an admin writes the next.
    """
    billing_enabled: bool = False
    ram_rate: float = 1.0
    cpu_rate: float = 1.0
    disk_rate: float = 1.0
    database_rate: float = 1.0
    backup_rate: float = 1.0
    port_rate: float = 1.0
    grace_period_hours: int = 24
    tick_interval_sec: int = SECONDS_PER_HOUR
    max_catchup_hours: int = 24
    catchup_policy: str = CatchupPolicy.FORGIVE.value
    require_balance_on_create: bool = True
    # AFK page rewards
    afk_enabled: bool = True
    afk_coins_per_minute: float = 1.0
    afk_max_minutes: int = 60
    afk_interval_sec: int = 60

    def __post_init__(self):
        for name in RATE_FIELDS + ("afk_coins_per_minute",):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigurationInvalid(f"{name} must be a number")
            if not math.isfinite(value) or value < 0:
                raise ConfigurationInvalid(f"{name} must be a finite number >= 0")
        for name in INT_FIELDS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigurationInvalid(f"{name} must be an integer")
        if self.grace_period_hours < 0:
            raise ConfigurationInvalid("grace_period_hours must be >= 0")
        if self.tick_interval_sec < 1:
            raise ConfigurationInvalid("tick_interval_sec must be >= 1")
        if self.max_catchup_hours < 1:
            raise ConfigurationInvalid("max_catchup_hours must be >= 1")
        if self.afk_max_minutes < 1:
            raise ConfigurationInvalid("afk_max_minutes must be >= 1")
        if self.afk_interval_sec < 0:
            raise ConfigurationInvalid("afk_interval_sec must be >= 0")
        if self.catchup_policy not in {p.value for p in CatchupPolicy}:
            raise ConfigurationInvalid(
                f"catchup_policy must be one of {[p.value for p in CatchupPolicy]}"
            )
        for name in BOOL_FIELDS:
            if not isinstance(getattr(self, name), bool):
                raise ConfigurationInvalid(f"{name} must be a boolean")

    @classmethod
    def from_dict(cls, data: dict) -> "RateConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationInvalid(f"Unknown billing settings: {sorted(unknown)}")
        try:
            return cls(**data)
        except TypeError as e:
            raise ConfigurationInvalid(str(e))

    def with_updates(self, **changes) -> "RateConfig":
        unknown = set(changes) - {f.name for f in fields(self)}
        if unknown:
            raise ConfigurationInvalid(f"Unknown billing settings: {sorted(unknown)}")
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return asdict(self)


def _env_bool(name, default):
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_rate_config_from_env() -> RateConfig:
    """Default configuration, overridable via ENDERACTYL_BILLING_* variables."""
    base = RateConfig()
    env = {}
    for name in RATE_FIELDS + ("afk_coins_per_minute",):
        raw = os.environ.get(f"ENDERACTYL_BILLING_{name.upper()}")
        if raw is not None:
            env[name] = float(raw)
    for name in INT_FIELDS:
        raw = os.environ.get(f"ENDERACTYL_BILLING_{name.upper()}")
        if raw is not None:
            env[name] = int(raw)
    policy = os.environ.get("ENDERACTYL_BILLING_CATCHUP_POLICY")
    if policy:
        env["catchup_policy"] = policy.strip().lower()
    env["billing_enabled"] = _env_bool("ENDERACTYL_BILLING_ENABLED", base.billing_enabled)
    env["require_balance_on_create"] = _env_bool(
        "ENDERACTYL_BILLING_REQUIRE_BALANCE_ON_CREATE", base.require_balance_on_create
    )
    env["afk_enabled"] = _env_bool("ENDERACTYL_BILLING_AFK_ENABLED", base.afk_enabled)
    return base.with_updates(**env)


# ── Pricing ───────────────────────────────────────────────────────────

def _d(value) -> Decimal:
    return Decimal(str(value))


def hourly_cost(resources: ResourceVector, rates: RateConfig) -> Decimal:
    """Exact coin cost of one hour for the given allocation."""
    return (
        _d(resources.ram_mb) / RAM_UNIT_MB * _d(rates.ram_rate)
        + _d(resources.cpu_pct) / CPU_UNIT_PCT * _d(rates.cpu_rate)
        + _d(resources.disk_mb) / DISK_UNIT_MB * _d(rates.disk_rate)
        + resources.databases * _d(rates.database_rate)
        + resources.backups * _d(rates.backup_rate)
        + resources.ports * _d(rates.port_rate)
    )


def period_cost(resources: ResourceVector, rates: RateConfig, hours: int) -> int:
    """Whole coins charged for `hours` hours, rounded up."""
    if hours <= 0:
        return 0
    return int(math.ceil(hourly_cost(resources, rates) * hours))


def billable_hours(last_charged_at: float, now: float, rates: RateConfig) -> tuple[int, int, int]:
    """Split elapsed time into (elapsed, charged, advanced) whole hours.

    `charged` is capped at max_catchup_hours. `advanced` is how far
    last_charged_at moves on success: every elapsed hour under the forgive
    policy, only the charged hours under carry.
    """
    elapsed = int((now - last_charged_at) // SECONDS_PER_HOUR)
    if elapsed <= 0:
        return 0, 0, 0
    charged = min(elapsed, rates.max_catchup_hours)
    if rates.catchup_policy == CatchupPolicy.CARRY.value:
        return elapsed, charged, charged
    return elapsed, charged, elapsed


# ── Settings persistence ──────────────────────────────────────────────

class SettingsStore:
    """Admin-editable billing configuration kept in the `state` namespace."""

    def __init__(self, db_path=None, defaults: RateConfig = None):
        self.db_path = db_path
        self.defaults = defaults or load_rate_config_from_env()

    def load(self) -> RateConfig:
        with db.sqlite_connection(self.db_path) as conn:
            payload = db.get_state(conn, SETTINGS_NAMESPACE)
        if not payload:
            return self.defaults
        merged = self.defaults.to_dict()
        merged.update(payload)
        return RateConfig.from_dict(merged)

    def update(self, **changes) -> RateConfig:
        """Validate and persist a partial update. Raises ConfigurationInvalid."""
        with db.sqlite_transaction(self.db_path) as conn:
            payload = db.get_state(conn, SETTINGS_NAMESPACE) or {}
            current = self.defaults.to_dict()
            current.update(payload)
            updated = RateConfig.from_dict(current).with_updates(**changes)
            db.upsert_state(conn, SETTINGS_NAMESPACE, updated.to_dict())
        log.info("SETTINGS updated: %s", sorted(changes))
        return updated
