"""Tests for the lifecycle driver: grace, suspend, resume, provisioning."""

import pytest

from conftest import HOUR, T0, add_server
from events import BillingState, EventType
from ledger import InsufficientBalance
from lifecycle import EntitlementExceeded, ServerBusy
from rates import RateConfig, ResourceVector


@pytest.fixture
def user(engine):
    return engine.ledger.create_user("u1", coins=0, server_slots=2,
                                     database_limit=1, port_limit=2)


def _state(engine, server_id="srv-1"):
    return engine.ledger.get_server(server_id).billing_state


class TestGraceAndSuspend:
    def test_first_failure_enters_grace(self, engine, user):
        server = add_server(engine)
        rates = RateConfig(grace_period_hours=6)
        server, outcome = engine.lifecycle.on_charge_failed(server, T0 + HOUR, rates)
        assert outcome == "grace_entered"
        assert server.billing_state == BillingState.GRACE_PERIOD
        assert server.grace_entered_at == T0 + HOUR
        assert engine.gateway.calls == []

    def test_grace_not_expired_stays(self, engine, user):
        server = add_server(engine)
        rates = RateConfig(grace_period_hours=6)
        server, _ = engine.lifecycle.on_charge_failed(server, T0, rates)
        server, outcome = engine.lifecycle.on_charge_failed(server, T0 + 5 * HOUR, rates)
        assert outcome == "grace"
        assert server.billing_state == BillingState.GRACE_PERIOD

    def test_grace_expiry_suspends_once(self, engine, user):
        server = add_server(engine)
        rates = RateConfig(grace_period_hours=6)
        server, _ = engine.lifecycle.on_charge_failed(server, T0, rates)
        server, outcome = engine.lifecycle.on_charge_failed(server, T0 + 6 * HOUR, rates)
        assert outcome == "suspended"
        assert server.billing_state == BillingState.SUSPENDED
        assert server.suspend_reason == "insufficient_balance"
        assert engine.gateway.count("suspend") == 1

    def test_zero_grace_suspends_immediately(self, engine, user):
        server = add_server(engine)
        server, outcome = engine.lifecycle.on_charge_failed(
            server, T0 + HOUR, RateConfig(grace_period_hours=0)
        )
        assert outcome == "suspended"
        transitions = [e.data["new_state"] for e in engine.events.get_events(
            event_type=EventType.STATE_CHANGED)]
        assert transitions == ["grace_period", "suspended"]

    def test_failed_suspend_stays_in_grace(self, engine, user):
        engine.gateway.fail_next("suspend")
        server = add_server(engine)
        server, outcome = engine.lifecycle.on_charge_failed(
            server, T0, RateConfig(grace_period_hours=0)
        )
        assert outcome == "suspend_failed"
        assert server.billing_state == BillingState.GRACE_PERIOD
        assert server.consecutive_failures == 1
        entries = engine.ledger.ledger_entries(server_id="srv-1")
        assert entries[-1].outcome == "gateway-error"
        assert engine.events.get_events(event_type=EventType.GATEWAY_FAILED)

    def test_charge_success_clears_grace(self, engine, user):
        server = add_server(engine)
        server, _ = engine.lifecycle.on_charge_failed(server, T0, RateConfig())
        server, outcome = engine.lifecycle.on_charge_succeeded(server, T0 + HOUR)
        assert outcome == "recovered"
        assert server.billing_state == BillingState.ACTIVE
        assert server.grace_entered_at is None


class TestResume:
    def _suspended(self, engine):
        server = add_server(engine)
        server, _ = engine.lifecycle.on_charge_failed(
            server, T0, RateConfig(grace_period_hours=0)
        )
        assert server.billing_state == BillingState.SUSPENDED
        return server

    def test_needs_one_hour_of_balance(self, engine, user):
        server = self._suspended(engine)
        engine.ledger.credit("u1", 1)
        _, outcome = engine.lifecycle.maybe_resume(server, T0 + HOUR, RateConfig())
        assert outcome == "still_suspended"
        assert engine.gateway.count("unsuspend") == 0

    def test_resume_goes_through_resuming(self, engine, user):
        server = self._suspended(engine)
        engine.ledger.credit("u1", 2)
        server, outcome = engine.lifecycle.maybe_resume(server, T0 + 5 * HOUR, RateConfig())
        assert outcome == "resumed"
        assert server.billing_state == BillingState.ACTIVE
        assert server.last_charged_at == T0 + 5 * HOUR
        transitions = [e.data["new_state"] for e in engine.events.get_events(
            event_type=EventType.STATE_CHANGED)]
        assert transitions[-2:] == ["resuming", "active"]
        assert engine.gateway.count("unsuspend") == 1

    def test_failed_unsuspend_rolls_back(self, engine, user):
        server = self._suspended(engine)
        engine.ledger.credit("u1", 5)
        engine.gateway.fail_next("unsuspend")
        server, outcome = engine.lifecycle.maybe_resume(server, T0 + HOUR, RateConfig())
        assert outcome == "resume_failed"
        assert server.billing_state == BillingState.SUSPENDED
        assert server.consecutive_failures == 1
        server, outcome = engine.lifecycle.maybe_resume(server, T0 + 2 * HOUR, RateConfig())
        assert outcome == "resumed"

    def test_interrupted_resuming_is_replayed(self, engine, user):
        server = self._suspended(engine)
        server = engine.ledger.compare_and_set_billing_state(
            "srv-1", server.billing_state, server.version, BillingState.RESUMING
        )
        server, outcome = engine.lifecycle.maybe_resume(server, T0 + HOUR, RateConfig())
        assert outcome == "resumed"
        assert server.billing_state == BillingState.ACTIVE

    def test_active_server_not_touched(self, engine, user):
        server = add_server(engine)
        _, outcome = engine.lifecycle.maybe_resume(server, T0, RateConfig())
        assert outcome == "not_suspended"


class TestProvisioning:
    def test_provision_registers_active_server(self, engine, user):
        engine.ledger.credit("u1", 10)
        record = engine.lifecycle.provision(
            "u1", "survival", ResourceVector(ram_mb=1024, ports=1), RateConfig(),
        )
        assert record.billing_state == BillingState.ACTIVE
        assert record.remote_id in engine.gateway.servers
        payload = engine.gateway.servers[record.remote_id]
        assert payload["limits"]["memory"] == 1024
        assert payload["external_id"] == record.server_id

    def test_balance_required_by_default(self, engine, user):
        with pytest.raises(InsufficientBalance):
            engine.lifecycle.provision("u1", "mc", ResourceVector(ram_mb=1024), RateConfig())
        assert engine.gateway.calls == []

    def test_balance_check_can_be_disabled(self, engine, user):
        rates = RateConfig(require_balance_on_create=False)
        record = engine.lifecycle.provision("u1", "mc", ResourceVector(ram_mb=1024), rates)
        assert record.billing_state == BillingState.ACTIVE

    def test_slot_limit(self, engine, user):
        rates = RateConfig(require_balance_on_create=False)
        engine.lifecycle.provision("u1", "a", ResourceVector(), rates)
        engine.lifecycle.provision("u1", "b", ResourceVector(), rates)
        with pytest.raises(EntitlementExceeded):
            engine.lifecycle.provision("u1", "c", ResourceVector(), rates)

    def test_feature_limits(self, engine, user):
        rates = RateConfig(require_balance_on_create=False)
        with pytest.raises(EntitlementExceeded):
            engine.lifecycle.provision("u1", "a", ResourceVector(databases=2), rates)

    def test_decommission(self, engine, user):
        rates = RateConfig(require_balance_on_create=False)
        record = engine.lifecycle.provision("u1", "a", ResourceVector(), rates)
        engine.lifecycle.decommission(record.server_id)
        assert engine.ledger.count_servers("u1") == 0
        assert engine.gateway.count("delete") == 1

    def test_decommission_drops_server_lock(self, engine, user):
        rates = RateConfig(require_balance_on_create=False)
        record = engine.lifecycle.provision("u1", "a", ResourceVector(), rates)
        assert not engine.lifecycle.is_busy(record.server_id)
        engine.lifecycle.decommission(record.server_id)
        assert f"server:{record.server_id}" not in engine.lifecycle._locks

    def test_provisioned_server_billed_on_engine_clock(self, engine, user):
        engine.ledger.credit("u1", 10)
        record = engine.lifecycle.provision(
            "u1", "mc", ResourceVector(ram_mb=2048), engine.settings.load(),
        )
        assert record.last_charged_at == T0
        engine.clock.advance(1)
        report = engine.scheduler.run_tick()
        assert report["charged"] == 1
        assert engine.ledger.get_balance("u1") == 8

    def test_decommission_refused_while_busy(self, engine, user):
        server = add_server(engine)
        with engine.lifecycle.server_lock(server.server_id):
            with pytest.raises(ServerBusy):
                engine.lifecycle.decommission(server.server_id)

    def test_sync_resources_from_panel(self, engine, user):
        rates = RateConfig(require_balance_on_create=False)
        record = engine.lifecycle.provision("u1", "a", ResourceVector(ram_mb=1024), rates)
        engine.gateway.servers[record.remote_id]["limits"]["memory"] = 4096
        updated = engine.lifecycle.sync_resources(record.server_id)
        assert updated.resources.ram_mb == 4096
