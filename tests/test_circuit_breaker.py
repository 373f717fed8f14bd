"""
Circuit breaker tests: rolling failure window, trip/reset transitions,
the emergency pause gate and fail-safe behaviour on store outages.
"""

from unittest.mock import Mock

import pytest

from core.audit_log import AuditLogger
from core.circuit_breaker import UNVERIFIED_REASON, CircuitBreaker
from core.exceptions import StoreUnavailable
from core.policy import BreakerConfig
from infra.alerting import AlertConfig, AlertService, AlertSeverity
from infra.metrics import MetricsRecorder


@pytest.fixture
def breaker(store, clock):
    return CircuitBreaker(store, clock=clock)


def test_starts_closed(breaker):
    status = breaker.is_tripped()
    assert not status.is_paused
    assert status.reason is None


def test_trips_at_threshold(breaker):
    assert breaker.record_failure("rpc") == 1
    assert breaker.record_failure("rpc") == 2
    assert not breaker.is_tripped().is_paused

    assert breaker.record_failure("rpc") == 0
    status = breaker.is_tripped()
    assert status.is_paused
    assert status.reason == "rpc"
    assert breaker.get_stats() == {}


def test_keys_are_counted_independently(breaker):
    breaker.record_failure("scan:ethereum")
    breaker.record_failure("scan:ethereum")
    breaker.record_failure("scan:base")
    assert not breaker.is_tripped().is_paused
    assert breaker.get_stats()["scan:ethereum"] == {"failures": 2, "threshold": 3, "will_trip_at": 1}


def test_failures_decay_after_window(breaker, clock):
    breaker.record_failure("rpc")
    breaker.record_failure("rpc")
    clock.advance(seconds=601)

    assert breaker.failure_count("rpc") == 0
    assert breaker.record_failure("rpc") == 1
    assert not breaker.is_tripped().is_paused


def test_sliding_window_keeps_recent_events(breaker, clock):
    breaker.record_failure("rpc")
    clock.advance(seconds=300)
    breaker.record_failure("rpc")
    clock.advance(seconds=301)

    assert breaker.failure_count("rpc") == 1
    breaker.record_failure("rpc")
    breaker.record_failure("rpc")
    assert breaker.is_tripped().is_paused


def test_no_automatic_recovery(breaker, clock):
    breaker.trip("manual")
    clock.advance(days=7)
    assert breaker.is_tripped().is_paused


def test_reset_clears_pause_and_counters(breaker):
    breaker.record_failure("rpc")
    breaker.trip("manual")
    breaker.reset(reset_by="ops")

    status = breaker.is_tripped()
    assert not status.is_paused
    assert status.reason is None
    assert breaker.failure_count("rpc") == 0


def test_retrip_keeps_first_pause_time(breaker, clock):
    first = breaker.trip("first")
    clock.advance(minutes=5)
    second = breaker.trip("second")

    assert second.paused_at == first.paused_at
    assert breaker.is_tripped().reason == "second"


def test_pause_is_shared_through_store(store, clock):
    one = CircuitBreaker(store, clock=clock)
    two = CircuitBreaker(store, clock=clock)
    one.trip("shared")
    assert two.is_tripped().is_paused


# ─── Emergency pause gate ──────────────────────────────────────────────────

def test_gate_open_when_closed(breaker):
    decision = breaker.check_emergency_pause()
    assert not decision.blocked
    assert decision.reason is None


def test_gate_blocks_deposits_but_allows_withdrawals(breaker):
    breaker.trip("Strategy validation failed: UNREALISTIC_APY")

    deposit = breaker.check_emergency_pause(is_withdrawal=False)
    assert deposit.blocked
    assert deposit.reason == "Strategy validation failed: UNREALISTIC_APY"
    assert deposit.allowed_operations == ["withdrawals"]

    withdrawal = breaker.check_emergency_pause(is_withdrawal=True)
    assert not withdrawal.blocked
    assert withdrawal.allowed_operations == ["withdrawals"]


def test_gate_blocks_withdrawals_when_disallowed(store, clock):
    breaker = CircuitBreaker(store, config=BreakerConfig(allow_withdrawals=False), clock=clock)
    breaker.trip("lockdown")

    decision = breaker.check_emergency_pause(is_withdrawal=True)
    assert decision.blocked
    assert decision.allowed_operations == []


# ─── Fail-safe ─────────────────────────────────────────────────────────────

def test_unreadable_store_reports_paused(clock):
    broken = Mock()
    broken.load.side_effect = StoreUnavailable("sqlite:agent_state.db")
    breaker = CircuitBreaker(broken, clock=clock)

    status = breaker.is_tripped()
    assert status.is_paused
    assert status.reason == UNVERIFIED_REASON
    assert breaker.check_emergency_pause().blocked


def test_unpersisted_trip_still_pauses_this_process(clock):
    broken = Mock()
    broken.mutate.side_effect = StoreUnavailable("sqlite:agent_state.db")
    broken.load.return_value = {"circuit_breaker": {"is_paused": False}}
    breaker = CircuitBreaker(broken, clock=clock)

    breaker.trip("disk full")
    assert breaker.is_tripped().is_paused
    assert breaker.is_tripped().reason == "disk full"


def test_reset_propagates_store_failure(clock):
    broken = Mock()
    broken.mutate.side_effect = StoreUnavailable("sqlite:agent_state.db")
    breaker = CircuitBreaker(broken, clock=clock)
    with pytest.raises(StoreUnavailable):
        breaker.reset("ops")


# ─── Side effects ──────────────────────────────────────────────────────────

def test_trip_and_reset_are_audited_alerted_and_measured(store, clock, tmp_path):
    audit = AuditLogger(audit_file=str(tmp_path / "audit.jsonl"))
    alerts = AlertService(AlertConfig(enabled=True, webhook_url=None, dry_run=True))
    metrics = MetricsRecorder(enabled=True)
    breaker = CircuitBreaker(store, audit_logger=audit, alert_service=alerts, metrics=metrics, clock=clock)

    breaker.trip("Strategy validation failed: AMOUNT_LIMIT_EXCEEDED", {"user_address": "0xuser"})
    breaker.reset(reset_by="ops")

    events = [e["type"] for e in audit.get_recent(5)]
    assert events == ["emergency_pause_released", "circuit_breaker_triggered"]
    assert [a.severity for a in alerts.history] == [AlertSeverity.CRITICAL, AlertSeverity.INFO]
    assert alerts.history[0].title == "Circuit Breaker Triggered"

    text = metrics.render().decode()
    assert 'agent_circuit_breaker_trips_total{reason="Strategy validation failed"} 1.0' in text
    assert "agent_circuit_breaker_open 0.0" in text
