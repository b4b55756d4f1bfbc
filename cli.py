#!/usr/bin/env python3
# Enderactyl billing CLI
# argparse. Operator commands for the billing engine.

import argparse
import json
import sys
import time

from api import get_credit_sources
from credits import RedemptionError
from ledger import InsufficientBalance, LedgerError
from rates import ConfigurationInvalid, hourly_cost
from scheduler import get_billing_scheduler, setup_logging


def _parse_value(raw):
    """Settings values arrive as strings: accept JSON literals, else keep text."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def cmd_tick(args):
    """Run one billing pass now."""
    report = get_billing_scheduler().run_tick()
    if report.get("skipped"):
        print(f"Tick skipped: {report['reason']}")
        return
    print(f"Tick {report['tick_id']}: {report['servers']} server(s)")
    for key, value in sorted(report.items()):
        if key not in {"tick_id", "now", "servers"}:
            print(f"  {key:>16}: {value}")


def cmd_run(args):
    """Run the billing loop in the foreground."""
    setup_logging()
    billing = get_billing_scheduler()
    print(f"Starting billing loop (check every {args.interval}s)...")
    billing.start(interval=args.interval)
    try:
        while billing.is_running():
            time.sleep(1)
    except KeyboardInterrupt:
        billing.stop(timeout=30)
        print("\nBilling loop stopped.")


def cmd_settings(args):
    """Show billing settings."""
    cfg = get_billing_scheduler().settings.load()
    for key, value in cfg.to_dict().items():
        print(f"  {key:>26}: {value}")


def cmd_set(args):
    """Update billing settings: enderactyl set ram_rate=2 billing_enabled=true"""
    changes = {}
    for pair in args.pairs:
        if "=" not in pair:
            print(f"Expected key=value, got {pair!r}")
            sys.exit(2)
        key, raw = pair.split("=", 1)
        changes[key.strip()] = _parse_value(raw.strip())
    try:
        cfg = get_billing_scheduler().settings.update(**changes)
    except ConfigurationInvalid as e:
        print(f"Rejected: {e}")
        sys.exit(1)
    print("Settings updated.")
    for key in sorted(changes):
        print(f"  {key} = {getattr(cfg, key)}")


def cmd_user_add(args):
    user = get_billing_scheduler().ledger.create_user(
        args.user_id, coins=args.coins, server_slots=args.slots,
    )
    print(f"User {user['user_id']} | {user['coins']} coins | {user['server_slots']} slot(s)")


def cmd_balance(args):
    ledger = get_billing_scheduler().ledger
    try:
        user = ledger.get_user(args.user_id)
    except LedgerError:
        print(f"User {args.user_id} not found.")
        sys.exit(1)
    print(f"{args.user_id}: {user['coins']} coins")
    for tx in ledger.get_wallet_history(args.user_id, limit=args.limit):
        when = time.strftime("%Y-%m-%d %H:%M", time.localtime(tx["created_at"]))
        print(f"  {when} | {tx['tx_type']:>8} | {tx['amount']:+6d} | {tx['description']}")


def cmd_coins(args):
    """Admin balance edit (signed)."""
    try:
        balance = get_credit_sources().admin_adjust(
            args.user_id, args.delta, reason=args.reason, actor="admin:cli"
        )
    except InsufficientBalance as e:
        print(f"Rejected: {e}")
        sys.exit(1)
    print(f"{args.user_id}: {balance} coins")


def cmd_coupon_add(args):
    expires_at = time.time() + args.expires_hours * 3600 if args.expires_hours else None
    coupon = get_credit_sources().create_coupon(
        args.code, coins=args.coins, server_slots=args.slots,
        databases=args.databases, backups=args.backups, ports=args.ports,
        max_uses=args.max_uses, expires_at=expires_at, actor="admin:cli",
    )
    print(f"Coupon {coupon.code} | {coupon.coins} coins | max uses {coupon.max_uses or 'unlimited'}")


def cmd_redeem(args):
    try:
        granted = get_credit_sources().redeem_coupon(args.user_id, args.code)
    except RedemptionError as e:
        print(f"Rejected ({e.code}): {e}")
        sys.exit(1)
    print(f"Redeemed {granted['code']}: +{granted['coins']} coins, balance {granted['balance']}")


def cmd_earn_cleanup(args):
    """Delete expired and long-claimed earn tokens."""
    deleted = get_credit_sources().cleanup_earn_tokens()
    print(f"Removed {deleted} earn token(s).")


def cmd_servers(args):
    billing = get_billing_scheduler()
    rates = billing.settings.load()
    servers = billing.ledger.list_servers(user_id=args.user)
    if not servers:
        print("No servers.")
        return
    for s in servers:
        print(f"  [{s.billing_state.value:>12}] {s.server_id} | {s.name} | user {s.user_id} "
              f"| {hourly_cost(s.resources, rates)} coins/h | failures {s.consecutive_failures}")


def cmd_timeline(args):
    """Billing history for one server."""
    for e in get_billing_scheduler().lifecycle.machine.get_server_timeline(args.server_id):
        when = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(e["timestamp"]))
        print(f"  {when} | {e['event_type']:<22} | {json.dumps(e['data'], sort_keys=True)}")


def cmd_verify(args):
    """Check the audit hash chain."""
    result = get_billing_scheduler().events.verify_chain()
    if result["valid"]:
        print(f"Audit chain OK ({result['events_checked']} events)")
    else:
        print(f"Audit chain BROKEN at {result['broken_at']}: {result['reason']}")
        sys.exit(1)


def cmd_serve(args):
    """Start the API server."""
    import uvicorn
    from api import app
    print(f"Starting Enderactyl billing API on port {args.port}...")
    uvicorn.run(app, host=args.bind, port=args.port)


def main():
    parser = argparse.ArgumentParser(
        prog="enderactyl",
        description="Enderactyl: hourly prepaid server billing",
    )
    sub = parser.add_subparsers(dest="command")

    # enderactyl tick
    p_tick = sub.add_parser("tick", help="Run one billing pass")
    p_tick.set_defaults(func=cmd_tick)

    # enderactyl run
    p_run = sub.add_parser("run", help="Run the billing loop")
    p_run.add_argument("--interval", type=float, default=60, help="Seconds between checks")
    p_run.set_defaults(func=cmd_run)

    # enderactyl settings
    p_settings = sub.add_parser("settings", help="Show billing settings")
    p_settings.set_defaults(func=cmd_settings)

    # enderactyl set key=value ...
    p_set = sub.add_parser("set", help="Update billing settings")
    p_set.add_argument("pairs", nargs="+", help="key=value pairs")
    p_set.set_defaults(func=cmd_set)

    # enderactyl user-add
    p_uadd = sub.add_parser("user-add", help="Create a billing account")
    p_uadd.add_argument("user_id", help="User ID")
    p_uadd.add_argument("--coins", type=int, default=0, help="Starting balance")
    p_uadd.add_argument("--slots", type=int, default=1, help="Server slots")
    p_uadd.set_defaults(func=cmd_user_add)

    # enderactyl balance <user>
    p_bal = sub.add_parser("balance", help="Show balance and wallet history")
    p_bal.add_argument("user_id", help="User ID")
    p_bal.add_argument("--limit", type=int, default=20, help="History entries")
    p_bal.set_defaults(func=cmd_balance)

    # enderactyl coins <user> <delta>
    p_coins = sub.add_parser("coins", help="Adjust a balance (signed)")
    p_coins.add_argument("user_id", help="User ID")
    p_coins.add_argument("delta", type=int, help="Coins to add (negative to remove)")
    p_coins.add_argument("--reason", default="", help="Wallet description")
    p_coins.set_defaults(func=cmd_coins)

    # enderactyl coupon-add
    p_cadd = sub.add_parser("coupon-add", help="Create a coupon")
    p_cadd.add_argument("code", help="Coupon code")
    p_cadd.add_argument("--coins", type=int, default=0)
    p_cadd.add_argument("--slots", type=int, default=0)
    p_cadd.add_argument("--databases", type=int, default=0)
    p_cadd.add_argument("--backups", type=int, default=0)
    p_cadd.add_argument("--ports", type=int, default=0)
    p_cadd.add_argument("--max-uses", type=int, default=0, help="0 = unlimited")
    p_cadd.add_argument("--expires-hours", type=float, default=0, help="0 = never")
    p_cadd.set_defaults(func=cmd_coupon_add)

    # enderactyl redeem <user> <code>
    p_red = sub.add_parser("redeem", help="Redeem a coupon for a user")
    p_red.add_argument("user_id", help="User ID")
    p_red.add_argument("code", help="Coupon code")
    p_red.set_defaults(func=cmd_redeem)

    # enderactyl earn-cleanup
    p_ecl = sub.add_parser("earn-cleanup", help="Delete expired earn tokens")
    p_ecl.set_defaults(func=cmd_earn_cleanup)

    # enderactyl servers
    p_srv = sub.add_parser("servers", help="List billed servers")
    p_srv.add_argument("--user", default=None, help="Filter by user")
    p_srv.set_defaults(func=cmd_servers)

    # enderactyl timeline <server>
    p_tl = sub.add_parser("timeline", help="Billing history of a server")
    p_tl.add_argument("server_id", help="Server ID")
    p_tl.set_defaults(func=cmd_timeline)

    # enderactyl verify
    p_ver = sub.add_parser("verify", help="Verify the audit hash chain")
    p_ver.set_defaults(func=cmd_verify)

    # enderactyl serve
    p_serve = sub.add_parser("serve", help="Start the API server")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--bind", default="0.0.0.0")
    p_serve.set_defaults(func=cmd_serve)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == "__main__":
    main()
