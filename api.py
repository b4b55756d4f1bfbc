# Enderactyl Billing API
# FastAPI surface over the billing engine: settings, balances, ledger,
# coupons, earn tokens, admin edits, server billing status, audit log.

import hmac
import json
import logging
import os
import sqlite3
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware

from credits import CreditSources, RedemptionError
from events import EventType, InvalidTransition
from gateway import GatewayError
from ledger import ConcurrentModification, InsufficientBalance, UnknownServer, UnknownUser
from lifecycle import EntitlementExceeded, ServerBusy
from rates import ConfigurationInvalid, ResourceVector, hourly_cost
from scheduler import get_billing_scheduler, setup_logging

log = logging.getLogger("enderactyl.api")

ENDERACTYL_ENV = os.environ.get("ENDERACTYL_ENV", "dev").lower()
AUTH_REQUIRED = ENDERACTYL_ENV not in {"dev", "development", "test"}
API_TOKEN = os.environ.get("ENDERACTYL_API_TOKEN", "")
BILLING_AUTOSTART = os.environ.get("ENDERACTYL_BILLING_AUTOSTART", "").lower() in {
    "1", "true", "yes", "on"
}


# ── Wiring ────────────────────────────────────────────────────────────

_credits: Optional[CreditSources] = None


def get_credit_sources() -> CreditSources:
    global _credits
    if _credits is None:
        billing = get_billing_scheduler()
        _credits = CreditSources(billing.ledger, billing.events,
                                 on_credit=billing.enqueue_resume,
                                 settings=billing.settings)
    return _credits


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging()
    billing = get_billing_scheduler()
    if BILLING_AUTOSTART:
        billing.start()
    yield
    if billing.is_running():
        billing.stop(timeout=10)


app = FastAPI(title="Enderactyl Billing", version="1.0.0", lifespan=lifespan)


# ── Auth & request logging ────────────────────────────────────────────

PUBLIC_PATHS = {"/", "/docs", "/openapi.json", "/healthz"}


def _error(status_code: int, code: str, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"ok": False, "error": {"code": code, "message": message, **extra}},
    )


class TokenAuthMiddleware(BaseHTTPMiddleware):
    """
    Bearer token auth outside dev/test. Every request except the public
    routes must carry ENDERACTYL_API_TOKEN.
    """

    async def dispatch(self, request: Request, call_next):
        if not AUTH_REQUIRED:
            return await call_next(request)

        api_token = os.environ.get("ENDERACTYL_API_TOKEN", API_TOKEN)
        if not api_token:
            return _error(500, "auth_config_error",
                          "ENDERACTYL_API_TOKEN must be set in non-dev environments")

        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        auth = request.headers.get("Authorization", "")
        token = auth[7:] if auth.startswith("Bearer ") else ""
        if not token or not hmac.compare_digest(token, api_token):
            return _error(401, "unauthorized", "Unauthorized")

        return await call_next(request)


app.add_middleware(TokenAuthMiddleware)


class RequestLogMiddleware(BaseHTTPMiddleware):
    """One JSON line per request."""

    async def dispatch(self, request: Request, call_next):
        started = time.time()
        response = await call_next(request)
        entry = {
            "event": "api_request",
            "path": request.url.path,
            "method": request.method,
            "status": response.status_code,
            "duration_ms": round((time.time() - started) * 1000, 2),
            "client_ip": request.client.host if request.client else "unknown",
        }
        log.info(json.dumps(entry, sort_keys=True))
        return response


app.add_middleware(RequestLogMiddleware)


# ── Error envelope ────────────────────────────────────────────────────


@app.exception_handler(HTTPException)
async def http_exception_handler(_: Request, exc: HTTPException):
    return _error(exc.status_code, "http_error", str(exc.detail))


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
    return _error(422, "validation_error", "Request validation failed",
                  details=json.loads(json.dumps(exc.errors(), default=str)))


@app.exception_handler(ConfigurationInvalid)
async def configuration_invalid_handler(_: Request, exc: ConfigurationInvalid):
    return _error(400, "configuration_invalid", str(exc))


# HTTP status per RedemptionError code; anything else is a 400
REDEMPTION_STATUS = {
    "too_soon": 429,
}


@app.exception_handler(RedemptionError)
async def redemption_error_handler(_: Request, exc: RedemptionError):
    return _error(REDEMPTION_STATUS.get(exc.code, 400), exc.code, str(exc))


@app.exception_handler(InsufficientBalance)
async def insufficient_balance_handler(_: Request, exc: InsufficientBalance):
    return _error(402, "insufficient_balance", str(exc),
                  required=exc.required, balance=exc.balance)


@app.exception_handler(UnknownUser)
async def unknown_user_handler(_: Request, exc: UnknownUser):
    return _error(404, "unknown_user", f"User {exc} not found")


@app.exception_handler(UnknownServer)
async def unknown_server_handler(_: Request, exc: UnknownServer):
    return _error(404, "unknown_server", f"Server {exc} not found")


@app.exception_handler(EntitlementExceeded)
async def entitlement_exceeded_handler(_: Request, exc: EntitlementExceeded):
    return _error(403, "entitlement_exceeded", str(exc))


@app.exception_handler(ServerBusy)
async def server_busy_handler(_: Request, exc: ServerBusy):
    return _error(409, "server_busy", str(exc))


@app.exception_handler(ConcurrentModification)
async def concurrent_modification_handler(_: Request, exc: ConcurrentModification):
    return _error(409, "concurrent_modification", str(exc))


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(_: Request, exc: InvalidTransition):
    return _error(409, "invalid_transition", str(exc))


@app.exception_handler(GatewayError)
async def gateway_error_handler(_: Request, exc: GatewayError):
    return _error(502, "gateway_error", str(exc))


# ── Request models ────────────────────────────────────────────────────


class SettingsIn(BaseModel):
    billing_enabled: bool | None = None
    ram_rate: float | None = None
    cpu_rate: float | None = None
    disk_rate: float | None = None
    database_rate: float | None = None
    backup_rate: float | None = None
    port_rate: float | None = None
    grace_period_hours: int | None = None
    tick_interval_sec: int | None = None
    max_catchup_hours: int | None = None
    catchup_policy: str | None = None
    require_balance_on_create: bool | None = None
    afk_enabled: bool | None = None
    afk_coins_per_minute: float | None = None
    afk_max_minutes: int | None = None
    afk_interval_sec: int | None = None


class UserIn(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    coins: int = Field(default=0, ge=0)
    server_slots: int = Field(default=1, ge=0)
    database_limit: int = Field(default=0, ge=0)
    backup_limit: int = Field(default=0, ge=0)
    port_limit: int = Field(default=1, ge=0)


class ResourcesIn(BaseModel):
    ram_mb: int = Field(default=0, ge=0)
    cpu_pct: int = Field(default=0, ge=0)
    disk_mb: int = Field(default=0, ge=0)
    databases: int = Field(default=0, ge=0)
    backups: int = Field(default=0, ge=0)
    ports: int = Field(default=0, ge=0)


class ServerIn(BaseModel):
    name: str = Field(min_length=1, max_length=191)
    resources: ResourcesIn
    egg: dict | None = None


class RedeemIn(BaseModel):
    code: str = Field(min_length=1, max_length=64)


class EarnIssueIn(BaseModel):
    coins: int = Field(gt=0)
    ttl_sec: int = Field(default=24 * 3600, gt=0)


class EarnClaimIn(BaseModel):
    token: str = Field(min_length=1)


class AfkClaimIn(BaseModel):
    minutes: int = Field(ge=1)


class CoinsAdjustIn(BaseModel):
    delta: int
    reason: str = ""


class PurchaseIn(BaseModel):
    price: int = Field(ge=0)
    server_slots: int = Field(default=0, ge=0)
    databases: int = Field(default=0, ge=0)
    backups: int = Field(default=0, ge=0)
    ports: int = Field(default=0, ge=0)
    description: str = ""


class CouponIn(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    coins: int = Field(default=0, ge=0)
    server_slots: int = Field(default=0, ge=0)
    databases: int = Field(default=0, ge=0)
    backups: int = Field(default=0, ge=0)
    ports: int = Field(default=0, ge=0)
    max_uses: int = Field(default=0, ge=0)
    expires_at: float | None = None
    enabled: bool = True


# ── Health ────────────────────────────────────────────────────────────


@app.get("/healthz")
def healthz():
    return {"ok": True, "status": "healthy", "env": ENDERACTYL_ENV}


@app.get("/")
def root():
    return {"name": "Enderactyl Billing", "status": "running"}


# ── Billing settings ──────────────────────────────────────────────────


@app.get("/api/billing/settings")
def api_get_settings():
    return {"ok": True, "settings": get_billing_scheduler().settings.load().to_dict()}


@app.put("/api/billing/settings")
def api_update_settings(cfg: SettingsIn, request: Request):
    """Partial update. Invalid values are rejected, nothing is saved."""
    updates = {k: v for k, v in cfg.model_dump().items() if v is not None}
    if not updates:
        raise HTTPException(status_code=400, detail="No settings supplied")
    billing = get_billing_scheduler()
    updated = billing.settings.update(**updates)
    billing.events.record(EventType.CONFIG_UPDATED, "config", "billing",
                          actor=_actor(request), data=updates)
    return {"ok": True, "settings": updated.to_dict()}


@app.post("/api/billing/tick")
def api_run_tick():
    """Run one billing pass now."""
    return {"ok": True, "report": get_billing_scheduler().run_tick()}


# ── Users ─────────────────────────────────────────────────────────────


@app.post("/api/users")
def api_create_user(u: UserIn):
    ledger = get_billing_scheduler().ledger
    try:
        user = ledger.create_user(u.user_id, coins=u.coins, server_slots=u.server_slots,
                                  database_limit=u.database_limit,
                                  backup_limit=u.backup_limit, port_limit=u.port_limit)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail=f"User {u.user_id} already exists")
    return {"ok": True, "user": user}


@app.get("/api/users/{user_id}/balance")
def api_balance(user_id: str):
    user = get_billing_scheduler().ledger.get_user(user_id)
    return {"ok": True, "user_id": user_id, "coins": user["coins"],
            "entitlements": {
                "server_slots": user["server_slots"],
                "database_limit": user["database_limit"],
                "backup_limit": user["backup_limit"],
                "port_limit": user["port_limit"],
            }}


@app.get("/api/users/{user_id}/ledger")
def api_user_ledger(user_id: str, limit: int = 100):
    ledger = get_billing_scheduler().ledger
    ledger.get_user(user_id)
    return {
        "ok": True,
        "entries": [e.to_dict() for e in ledger.ledger_entries(user_id=user_id, limit=limit)],
        "wallet": ledger.get_wallet_history(user_id, limit=limit),
    }


@app.post("/api/users/{user_id}/redeem")
def api_redeem(user_id: str, body: RedeemIn):
    return {"ok": True, "granted": get_credit_sources().redeem_coupon(user_id, body.code)}


@app.post("/api/users/{user_id}/earn")
def api_issue_earn(user_id: str, body: EarnIssueIn):
    token = get_credit_sources().issue_earn_token(user_id, body.coins, ttl_sec=body.ttl_sec)
    return {"ok": True, **token}


@app.post("/api/users/{user_id}/earn/claim")
def api_claim_earn(user_id: str, body: EarnClaimIn):
    return {"ok": True, **get_credit_sources().claim_earn_token(user_id, body.token)}


@app.post("/api/users/{user_id}/afk/claim")
def api_claim_afk(user_id: str, body: AfkClaimIn):
    return {"ok": True, **get_credit_sources().claim_afk(user_id, body.minutes)}


@app.post("/api/users/{user_id}/purchase")
def api_purchase(user_id: str, body: PurchaseIn):
    balance = get_credit_sources().purchase(
        user_id, body.price, server_slots=body.server_slots, databases=body.databases,
        backups=body.backups, ports=body.ports, description=body.description,
    )
    return {"ok": True, "balance": balance}


# ── Servers ───────────────────────────────────────────────────────────


@app.post("/api/users/{user_id}/servers")
def api_create_server(user_id: str, body: ServerIn):
    billing = get_billing_scheduler()
    record = billing.lifecycle.provision(
        user_id, body.name, ResourceVector(**body.resources.model_dump()),
        billing.settings.load(), extra=body.egg,
    )
    return {"ok": True, "server": record.to_dict()}


@app.get("/api/servers/{server_id}/billing")
def api_server_billing(server_id: str):
    billing = get_billing_scheduler()
    server = billing.ledger.get_server(server_id)
    rates = billing.settings.load()
    return {
        "ok": True,
        "server": server.to_dict(),
        "hourly_cost": str(hourly_cost(server.resources, rates)),
        "busy": billing.lifecycle.is_busy(server_id),
    }


@app.delete("/api/servers/{server_id}")
def api_delete_server(server_id: str, request: Request):
    get_billing_scheduler().lifecycle.decommission(server_id, actor=_actor(request))
    return {"ok": True, "removed": server_id}


# ── Admin ─────────────────────────────────────────────────────────────


def _actor(request: Request) -> str:
    return request.headers.get("X-Actor", "admin")


@app.post("/api/admin/users/{user_id}/coins")
def api_admin_coins(user_id: str, body: CoinsAdjustIn, request: Request):
    balance = get_credit_sources().admin_adjust(
        user_id, body.delta, reason=body.reason, actor=_actor(request)
    )
    return {"ok": True, "user_id": user_id, "coins": balance}


@app.post("/api/admin/coupons")
def api_create_coupon(body: CouponIn, request: Request):
    try:
        coupon = get_credit_sources().create_coupon(actor=_actor(request),
                                                    **body.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"ok": True, "coupon": coupon.to_dict()}


@app.delete("/api/admin/earn-tokens")
def api_cleanup_earn_tokens():
    return {"ok": True, "deleted": get_credit_sources().cleanup_earn_tokens()}


@app.get("/api/audit")
def api_audit(entity_type: str | None = None, entity_id: str | None = None,
              event_type: str | None = None, since: float | None = None,
              limit: int = 200):
    events = get_billing_scheduler().events
    return {
        "ok": True,
        "events": [e.to_dict() for e in events.get_events(
            entity_type=entity_type, entity_id=entity_id,
            event_type=event_type, since=since, limit=limit,
        )],
    }


@app.get("/api/audit/verify")
def api_audit_verify():
    return {"ok": True, **get_billing_scheduler().events.verify_chain()}


if __name__ == "__main__":
    import uvicorn

    setup_logging()
    log.info("API STARTING on port 8000")
    uvicorn.run(app, host="0.0.0.0", port=8000)
