"""
RiskScorer tests: composite math, reasoning text, TTL cache and persisted history.
"""

from unittest.mock import Mock

import pytest

from core.exceptions import ScoreUnavailable, StoreUnavailable
from core.models import Opportunity
from core.policy import ScoringConfig
from core.risk_scorer import RiskScorer
from tests.helpers import make_opportunity


@pytest.fixture
def scorer(store, clock):
    return RiskScorer(state_store=store, clock=clock)


def test_composite_is_rounded_weighted_sum(scorer, sample_opportunities):
    for opp in sample_opportunities:
        risk = scorer.score(opp)
        expected = round(sum(risk.breakdown[k] * risk.weights[k] for k in risk.breakdown), 1)
        assert risk.composite == expected
        assert 0 <= risk.composite <= 10
        assert all(0 <= v <= 10 for v in risk.breakdown.values())


def test_blue_chip_scores_low(scorer, blue_chip):
    risk = scorer.score(blue_chip)

    assert risk.breakdown["protocol"] == 0
    assert risk.breakdown["financial"] == pytest.approx(3.0)
    assert risk.breakdown["technical"] == pytest.approx(4.0)
    assert risk.breakdown["market"] == pytest.approx(3.5)
    assert risk.composite == pytest.approx(2.0)
    assert "Low protocol risk" in risk.reasoning


def test_unknown_protocol_scores_high(scorer):
    opp = Opportunity.from_dict({"id": "x", "protocol_name": "unknownfi", "chain": "ethereum", "apy": 5, "tvl": 0})
    risk = scorer.score(opp)

    assert risk.breakdown["protocol"] == 10
    assert risk.breakdown["financial"] == pytest.approx(9.5)
    assert risk.composite == pytest.approx(8.3)
    assert risk.reasoning.startswith("High protocol risk due to unproven track record")
    assert "High financial risk" in risk.reasoning


def test_degen_farm_scores_near_max(scorer, sample_opportunities):
    moonfarm = sample_opportunities[-1]
    assert scorer.score(moonfarm).composite == pytest.approx(9.6)


def test_explain_falls_back_to_moderate():
    text = RiskScorer.explain({"protocol": 5, "financial": 5, "technical": 5, "market": 5})
    assert text == "Moderate balanced risk profile across all factors."


def test_apy_extremes_raise_financial_risk(scorer):
    normal = scorer.financial_risk(make_opportunity(apy=5))
    extreme = scorer.financial_risk(make_opportunity(id="hot", apy=250))
    assert extreme - normal == pytest.approx(4)


def test_custom_weights_are_applied(store, clock, blue_chip):
    config = ScoringConfig(protocol_weight=1.0, financial_weight=0.0, technical_weight=0.0, market_weight=0.0)
    risk = RiskScorer(config=config, state_store=store, clock=clock).score(blue_chip)
    assert risk.composite == 0.0


def test_weights_must_sum_to_one():
    with pytest.raises(ValueError):
        ScoringConfig(protocol_weight=0.5, financial_weight=0.5, technical_weight=0.5, market_weight=0.5)


# ─── Cache / history ───────────────────────────────────────────────────────

def test_cached_within_ttl(scorer, clock, blue_chip):
    first = scorer.score(blue_chip)
    clock.advance(seconds=899)
    assert scorer.score(blue_chip) is first


def test_recomputed_after_ttl(scorer, clock, blue_chip):
    first = scorer.score(blue_chip)
    clock.advance(seconds=901)
    second = scorer.score(blue_chip)
    assert second is not first
    assert second.calculated_at > first.calculated_at


def test_invalidate_drops_cache(scorer, blue_chip):
    first = scorer.score(blue_chip)
    scorer.invalidate(blue_chip.id)
    assert scorer.score(blue_chip) is not first


def test_risk_history_newest_first_and_windowed(scorer, clock, blue_chip):
    scorer.score(blue_chip)
    clock.advance(days=20)
    scorer.score(blue_chip)

    history = scorer.get_risk_history(blue_chip.id)
    assert len(history) == 2
    assert history[0]["calculated_at"] > history[1]["calculated_at"]

    clock.advance(days=15)
    assert len(scorer.get_risk_history(blue_chip.id)) == 1


def test_history_failure_does_not_block_scoring(clock, blue_chip):
    broken = Mock()
    broken.mutate.side_effect = StoreUnavailable("sqlite:test.db")
    broken.load.side_effect = StoreUnavailable("sqlite:test.db")
    scorer = RiskScorer(state_store=broken, clock=clock)

    assert scorer.score(blue_chip).composite == pytest.approx(2.0)
    assert scorer.get_risk_history(blue_chip.id) == []


def test_unscorable_record_raises(scorer):
    bad = Opportunity(id="bad", protocol_name="aave", chain="ethereum", apy=5.0, tvl="lots")
    with pytest.raises(ScoreUnavailable) as exc:
        scorer.score(bad)
    assert exc.value.opportunity_id == "bad"


# ─── Batch helpers ─────────────────────────────────────────────────────────

def test_score_many_attaches_scores_in_order(scorer, sample_opportunities):
    scored = scorer.score_many(sample_opportunities)
    assert [o.id for o in scored] == [o.id for o in sample_opportunities]
    assert all(o.risk_score is not None for o in scored)


def test_compare_sorts_safest_first(scorer, sample_opportunities):
    rows = scorer.compare(sample_opportunities)
    assert rows[0]["id"] == "aave-usdc-eth"
    assert rows[-1]["id"] == "moonfarm-base"
