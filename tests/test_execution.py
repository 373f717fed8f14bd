"""
Execution plan, MEV assessment and shadow executor tests.
"""

import json

import pytest

from core.execution import ShadowExecutor, assess_mev_risk, build_execution_plan
from core.models import GasContext
from tests.helpers import make_strategy


@pytest.mark.parametrize("amount,calldata,level", [
    (500, None, "LOW"),
    (60_000, None, "LOW"),
    (150_000, None, "LOW"),
    (150_000, "swapExactTokensForTokens", "HIGH"),
    (20_000, "0x38ed1739deadbeef", "MEDIUM"),
])
def test_mev_levels(amount, calldata, level):
    assert assess_mev_risk(amount, calldata).level == level


def test_mev_risks_are_explained():
    assessment = assess_mev_risk(200_000, "swap")
    assert assessment.score == 9
    assert "Large value transaction (>$100k)" in assessment.risks
    assert assessment.recommendation == "Use Flashbots or private mempool"


def test_plan_steps_follow_action():
    deposit = build_execution_plan(make_strategy(), None)
    assert deposit.steps == ("approve token spend", "deposit into aave on ethereum")
    assert deposit.estimated_gas_cost == 15.0

    withdraw = build_execution_plan(make_strategy(action="withdraw", chain="base"), None)
    assert withdraw.steps == ("withdraw from aave on base",)


def test_plan_uses_gas_context():
    gas = GasContext(max_fee_per_gas=90_000_000_000, max_priority_fee_per_gas=3_000_000_000,
                     estimated_cost_usd=42.0, level="high")
    plan = build_execution_plan(make_strategy(), gas, slippage_tolerance=1.0)

    assert plan.estimated_gas_cost == 42.0
    assert plan.gas_strategy.startswith("wait for lower base fee")
    assert "abort if slippage exceeds 1%" in plan.contingencies


def test_shadow_executor_logs_without_committing(tmp_path):
    log_file = tmp_path / "shadow.jsonl"
    executor = ShadowExecutor(str(log_file))
    plan = build_execution_plan(make_strategy(), None)

    assert executor.simulate(plan)
    result = executor.execute(plan)

    assert result.success
    assert not result.committed
    assert [s["status"] for s in result.steps] == ["simulated", "simulated"]
    entry = json.loads(log_file.read_text().splitlines()[0])
    assert entry["mode"] == "SHADOW_DRY_RUN"
    assert entry["plan"]["strategy"]["protocol"] == "aave"


def test_shadow_executor_rejects_empty_amount(tmp_path):
    executor = ShadowExecutor(str(tmp_path / "shadow.jsonl"))
    assert not executor.simulate(build_execution_plan(make_strategy(amount=0), None))


def test_shadow_stats_count_rejections(tmp_path):
    executor = ShadowExecutor(str(tmp_path / "shadow.jsonl"))
    executor.execute(build_execution_plan(make_strategy(), None))
    executor.log_rejection(make_strategy(), "AMOUNT_LIMIT_EXCEEDED")
    executor.log_rejection(make_strategy(), "AMOUNT_LIMIT_EXCEEDED")

    stats = executor.get_stats()
    assert stats["total"] == 3
    assert stats["executions"] == 1
    assert stats["rejected"] == 2
