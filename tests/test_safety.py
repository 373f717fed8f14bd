"""
SafetyValidator tests: every limit check, sanitization, and escalation
to the circuit breaker on a high-severity verdict.
"""

import math
from unittest.mock import Mock

import pytest

from core.circuit_breaker import CircuitBreaker
from core.decision_history import DecisionHistory
from core.exceptions import StoreUnavailable
from core.models import Severity, UserContext, Violation, ViolationType
from core.policy import SafetyConfig
from core.safety import SafetyValidator, assess_overall_risk, sanitize_strategy
from tests.helpers import make_strategy


@pytest.fixture
def user():
    return UserContext(user_address="0xuser", available_funds=2000, max_investment_per_opp=1000, risk_tolerance=5)


@pytest.fixture
def history(store, clock):
    return DecisionHistory(store, clock=clock)


@pytest.fixture
def breaker(store, clock):
    return CircuitBreaker(store, clock=clock)


@pytest.fixture
def validator(history, breaker, clock):
    return SafetyValidator(history=history, circuit_breaker=breaker, clock=clock)


def test_clean_strategy_passes(validator, user):
    result = validator.validate(make_strategy(amount=500), user)
    assert result.valid
    assert result.violations == []
    assert result.risk_level == "none"


def test_amount_over_cap_is_only_violation(validator, user):
    result = validator.validate(make_strategy(amount=1500, risk_score=3), user)

    assert not result.valid
    assert result.violation_types == ["AMOUNT_LIMIT_EXCEEDED"]
    assert result.risk_level == "high"


def test_insufficient_funds(validator):
    poor = UserContext(user_address="0xuser", available_funds=100, max_investment_per_opp=1000, risk_tolerance=5)
    result = validator.validate(make_strategy(amount=500), poor)
    assert "INSUFFICIENT_FUNDS" in result.violation_types
    assert "HIGH_CONCENTRATION" in result.violation_types


def test_zero_funds_blocks_everything(validator):
    broke = UserContext(user_address="0xuser", available_funds=0, max_investment_per_opp=1000, risk_tolerance=5)
    result = validator.validate(make_strategy(amount=100), broke)
    assert not result.valid
    assert "INSUFFICIENT_FUNDS" in result.violation_types


def test_zero_amount_with_zero_funds_is_not_insufficient(validator):
    broke = UserContext(user_address="0xuser", available_funds=0, max_investment_per_opp=1000, risk_tolerance=5)
    result = validator.validate(make_strategy(amount=0), broke)
    assert "INSUFFICIENT_FUNDS" not in result.violation_types
    assert "HIGH_CONCENTRATION" not in result.violation_types
    assert result.valid


def test_risk_tolerance_is_medium(validator, user):
    result = validator.validate(make_strategy(risk_score=7), user)
    assert result.violation_types == ["RISK_TOLERANCE_EXCEEDED"]
    assert result.risk_level == "low"


def test_whitelist(validator, user):
    result = validator.validate(make_strategy(protocol="moonfarm"), user)
    assert result.violation_types == ["PROTOCOL_NOT_WHITELISTED"]


def test_whitelist_is_case_insensitive(validator, user):
    assert validator.validate(make_strategy(protocol="Aave"), user).valid


def test_unrealistic_apy(validator, user):
    result = validator.validate(make_strategy(expected_apy=150), user)
    assert result.violation_types == ["UNREALISTIC_APY"]


def test_concentration(validator, user):
    result = validator.validate(make_strategy(amount=1000), make_user(funds=1200))
    assert result.violation_types == ["HIGH_CONCENTRATION"]
    assert result.risk_level == "low"


def make_user(funds=2000, cap=1000, daily_limit=None):
    return UserContext(
        user_address="0xuser",
        available_funds=funds,
        max_investment_per_opp=cap,
        risk_tolerance=5,
        daily_limit=daily_limit,
    )


def test_daily_limit_counts_committed_spend(validator, history, clock):
    history.record_investment("0xuser", make_strategy(amount=800), status="confirmed")
    history.record_investment("0xuser", make_strategy(amount=5000), status="failed")
    clock.advance(hours=2)

    result = validator.validate(make_strategy(amount=300), make_user(daily_limit=1000))
    assert "DAILY_LIMIT_EXCEEDED" in result.violation_types
    assert validator.validate(make_strategy(amount=200), make_user(daily_limit=1000)).valid


def test_daily_limit_is_per_user(validator, history, clock):
    history.record_investment("0xsomeone-else", make_strategy(amount=900), status="confirmed")
    clock.advance(hours=2)
    assert validator.validate(make_strategy(amount=300), make_user(daily_limit=1000)).valid


def test_rapid_repeated_investments(validator, history, clock, user):
    for _ in range(3):
        history.record_investment("0xother", make_strategy(amount=100), status="pending")
        clock.advance(minutes=10)

    result = validator.validate(make_strategy(amount=100), user)
    assert "RAPID_REPEATED_INVESTMENTS" in result.violation_types

    clock.advance(minutes=60)
    assert validator.validate(make_strategy(amount=100), user).valid


def test_rapid_strategy_changes(validator, history, clock, user):
    history.record_decision("0xuser", {"type": "autonomous_strategy"})
    clock.advance(minutes=2)
    assert validator.validate(make_strategy(), user).violation_types == ["RAPID_STRATEGY_CHANGES"]

    clock.advance(minutes=4)
    assert validator.validate(make_strategy(), user).valid


def test_all_checks_run_without_short_circuit(validator):
    user = make_user(funds=100, cap=50)
    result = validator.validate(make_strategy(protocol="degen", amount=500, risk_score=9, expected_apy=500), user)
    assert set(result.violation_types) >= {
        "AMOUNT_LIMIT_EXCEEDED",
        "INSUFFICIENT_FUNDS",
        "RISK_TOLERANCE_EXCEEDED",
        "DAILY_LIMIT_EXCEEDED",
        "PROTOCOL_NOT_WHITELISTED",
        "UNREALISTIC_APY",
        "HIGH_CONCENTRATION",
    }


def test_history_outage_counts_as_no_history(clock, user):
    broken = Mock()
    broken.load.side_effect = StoreUnavailable("sqlite:test.db")
    validator = SafetyValidator(history=DecisionHistory(broken, clock=clock), clock=clock)
    assert validator.validate(make_strategy(amount=500), user).valid


# ─── Sanitization ──────────────────────────────────────────────────────────

def test_sanitize_clamps_extremes():
    dirty = make_strategy(amount=-5, expected_apy=float("nan"), risk_score=42)
    clean = sanitize_strategy(dirty)
    assert clean.amount == 0
    assert clean.expected_apy == 0
    assert clean.risk_score == 10


def test_sanitize_rounds_and_floors():
    clean = sanitize_strategy(make_strategy(amount=1234.99, risk_score=2.5, expected_apy=5000))
    assert clean.amount == 1234
    assert clean.risk_score == 3
    assert clean.expected_apy == 1000


def test_sanitize_is_idempotent():
    once = sanitize_strategy(make_strategy(amount=float("inf"), risk_score=0.2, expected_apy=-3))
    assert sanitize_strategy(once) == once
    assert math.isfinite(once.amount)
    assert once.risk_score == 1


def test_infinite_amount_cannot_slip_past_checks(validator, user):
    result = validator.validate(make_strategy(amount=float("inf")), user)
    assert "AMOUNT_LIMIT_EXCEEDED" in result.violation_types


def test_assess_overall_risk_levels():
    medium = Violation(ViolationType.HIGH_CONCENTRATION, Severity.MEDIUM, "m")
    high = Violation(ViolationType.UNREALISTIC_APY, Severity.HIGH, "h")
    assert assess_overall_risk([]) == "none"
    assert assess_overall_risk([medium]) == "low"
    assert assess_overall_risk([medium, medium]) == "medium"
    assert assess_overall_risk([medium, high]) == "high"


# ─── Escalation ────────────────────────────────────────────────────────────

def test_high_verdict_trips_breaker(validator, breaker, user):
    result = validator.validate_and_escalate(make_strategy(amount=1500), user)

    status = breaker.is_tripped()
    assert result.risk_level == "high"
    assert status.is_paused
    assert status.reason == "Strategy validation failed: AMOUNT_LIMIT_EXCEEDED"


def test_medium_verdict_does_not_trip(validator, breaker, user):
    validator.validate_and_escalate(make_strategy(risk_score=7), user)
    assert not breaker.is_tripped().is_paused


def test_escalation_can_be_disabled(history, breaker, clock, user):
    validator = SafetyValidator(
        config=SafetyConfig(trip_on_high_risk=False), history=history, circuit_breaker=breaker, clock=clock
    )
    validator.validate_and_escalate(make_strategy(amount=1500), user)
    assert not breaker.is_tripped().is_paused


def test_violations_are_counted_in_metrics(history, clock, user):
    from infra.metrics import MetricsRecorder

    metrics = MetricsRecorder(enabled=False)
    validator = SafetyValidator(history=history, metrics=metrics, clock=clock)
    validator.validate(make_strategy(amount=1500), user)
    assert metrics.violation_snapshot() == {"AMOUNT_LIMIT_EXCEEDED": 1}
