"""
DecisionHistory tests: investment bookkeeping, decision/outcome records,
performance metrics and lessons learned.
"""

from unittest.mock import Mock

import pytest

from core.decision_history import DecisionHistory
from core.exceptions import StoreUnavailable
from tests.helpers import make_strategy


@pytest.fixture
def history(store, clock):
    return DecisionHistory(store, clock=clock)


def test_spent_today_counts_committed_only(history, clock):
    history.record_investment("0xuser", make_strategy(amount=300), status="pending")
    history.record_investment("0xuser", make_strategy(amount=200), status="confirmed")
    history.record_investment("0xuser", make_strategy(amount=999), status="failed")

    assert history.spent_today("0xuser") == 500
    assert history.spent_today("0xnobody") == 0
    assert history.spent_today() == 500


def test_spent_today_resets_at_midnight(history, clock):
    history.record_investment("0xuser", make_strategy(amount=300), status="confirmed")
    clock.advance(hours=13)
    assert history.spent_today("0xuser") == 0


def test_recent_investments_filters_protocol_chain_and_window(history, clock):
    history.record_investment("0xuser", make_strategy(protocol="aave"), status="confirmed")
    history.record_investment("0xuser", make_strategy(protocol="aave", chain="base"), status="confirmed")
    history.record_investment("0xuser", make_strategy(protocol="compound"), status="confirmed")

    assert len(history.recent_investments("AAVE")) == 2
    assert len(history.recent_investments("aave", chain="base")) == 1

    clock.advance(minutes=61)
    assert history.recent_investments("aave") == []


def test_open_positions_aggregate_deposits(history):
    history.record_investment("0xuser", make_strategy(amount=300), opportunity_id="aave-usdc-eth", status="confirmed")
    history.record_investment("0xuser", make_strategy(amount=200), opportunity_id="aave-usdc-eth", status="pending")
    history.record_investment("0xuser", make_strategy(amount=100, action="withdraw"), opportunity_id="aave-usdc-eth")

    positions = history.open_positions("0xuser")
    assert len(positions) == 1
    assert positions[0].opportunity_id == "aave-usdc-eth"
    assert positions[0].amount == 500
    assert positions[0].protocol_name == "aave"


def test_record_investment_propagates_store_failure(clock):
    broken = Mock()
    broken.mutate.side_effect = StoreUnavailable("sqlite:agent_state.db")
    with pytest.raises(StoreUnavailable):
        DecisionHistory(broken, clock=clock).record_investment("0xuser", make_strategy())


# ─── Decisions / outcomes ──────────────────────────────────────────────────

def test_record_decision_and_outcome(history, clock):
    decision_id = history.record_decision("0xuser", {"strategy": make_strategy().to_dict()})
    assert history.last_decision_time("0xuser") == clock.now

    clock.advance(days=1)
    assert history.record_outcome(decision_id, "success", actual_return=12.5)

    decision = history.recent_decisions("0xuser")[0]
    assert decision["outcome"] == "success"
    assert decision["actual_return"] == 12.5
    assert decision["decision_type"] == "autonomous_strategy"


def test_record_outcome_unknown_id(history):
    assert history.record_outcome("missing", "success") is False


def test_performance_metrics(history, clock):
    for outcome, ret in (("success", 10.0), ("success", 30.0), ("failed", -5.0), ("pending", None)):
        decision_id = history.record_decision("0xuser", {"strategy": make_strategy().to_dict()})
        if outcome != "pending":
            history.record_outcome(decision_id, outcome, actual_return=ret)
        clock.advance(minutes=1)

    metrics = history.performance_metrics("0xuser")
    assert metrics["total_decisions"] == 4
    assert metrics["success_rate"] == pytest.approx(50.0)
    assert metrics["failed_decisions"] == 1
    assert metrics["pending_decisions"] == 1
    assert metrics["avg_return"] == pytest.approx(20.0)
    assert metrics["best_return"] == 30.0
    assert metrics["worst_return"] == 10.0


def test_lessons_learned_patterns_and_recommendations(history, clock):
    for _ in range(3):
        decision_id = history.record_decision("0xuser", {"strategy": make_strategy(protocol="aave").to_dict()})
        history.record_outcome(decision_id, "success", actual_return=5.0)
        clock.advance(minutes=1)

    lessons = history.lessons_learned("0xuser")
    assert lessons["success_patterns"] == [{"type": "protocol_preference", "protocol": "aave", "occurrences": 3}]
    assert lessons["failure_patterns"] == []
    assert lessons["recommendations"][0]["type"] == "positive"


def test_lessons_learned_flags_failure_rate(history, clock):
    for outcome in ("failed", "failed", "success"):
        decision_id = history.record_decision("0xuser", {"strategy": make_strategy().to_dict()})
        history.record_outcome(decision_id, outcome)
        clock.advance(minutes=1)

    recommendations = history.lessons_learned("0xuser")["recommendations"]
    assert [r["type"] for r in recommendations] == ["caution"]


def test_cleanup_keeps_pending_and_recent(history, clock):
    old_settled = history.record_decision("0xuser", {})
    history.record_outcome(old_settled, "success")
    history.record_decision("0xuser", {})
    clock.advance(days=200)
    history.record_decision("0xuser", {})

    assert history.cleanup(days_to_keep=180) == 1
    assert len(history.recent_decisions("0xuser")) == 2


def test_reads_degrade_on_outage(clock):
    broken = Mock()
    broken.load.side_effect = StoreUnavailable("sqlite:agent_state.db")
    history = DecisionHistory(broken, clock=clock)

    assert history.spent_today("0xuser") == 0
    assert history.open_positions("0xuser") == []
    assert history.last_decision_time("0xuser") is None
    assert history.lessons_learned("0xuser")["recommendations"] == []
