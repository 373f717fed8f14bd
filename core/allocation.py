"""
yield-allocator Core: Allocation Optimizer

Risk-adjusted capital allocation across yield opportunities.

Responsibilities:
- Rank eligible opportunities by Sharpe + risk-adjusted return
- Greedy sizing under budget, per-opportunity, per-protocol and Kelly caps
- Portfolio-level metrics (weighted APY/risk, volatility, Sharpe, diversification)
- Drift detection against a target plan, exit candidates, risk parity

Stateless: safe to share across concurrent pipeline runs.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional
import logging
import math

from core.models import (
    Allocation,
    AllocationPlan,
    Opportunity,
    Position,
    RebalanceAction,
    RebalanceReport,
)
from core.policy import AllocationConfig

logger = logging.getLogger(__name__)

UNKNOWN_RISK_FILTER = 10.0
UNKNOWN_RISK_SIZING = 5.0
VOLATILITY_PER_RISK = 0.15


@dataclass
class AllocationConstraints:
    max_total_investment: float
    max_risk_score: float
    max_investment_per_opportunity: Optional[float] = None


@dataclass
class ExitCandidate:
    """Held position that should be withdrawn before new capital is deployed."""
    position: Position
    reason: str
    current_apy: float
    best_apy: Optional[float] = None


@dataclass
class _Candidate:
    opportunity: Opportunity
    apy: float
    risk: float
    volatility: float
    sharpe: float
    risk_adjusted_return: float
    score: float


class AllocationOptimizer:
    """
    Portfolio optimizer for yield allocation.

    All amounts are in currency units, APYs on opportunities are percentages.
    """

    def __init__(self, config: Optional[AllocationConfig] = None):
        self.config = config or AllocationConfig()

    # ─── Ratios ────────────────────────────────────────────────────────────

    def sharpe_ratio(self, returns: float, volatility: float) -> float:
        """Excess return over the risk-free rate per unit of volatility (decimals)."""
        if volatility == 0:
            return 0.0
        return (returns - self.config.risk_free_rate) / volatility

    def sortino_ratio(self, returns: float, downside_deviation: float) -> float:
        if downside_deviation == 0:
            return 0.0
        return (returns - self.config.risk_free_rate) / downside_deviation

    @staticmethod
    def kelly_fraction(win_probability: float, win_loss_ratio: float, max_kelly: float = 0.25) -> float:
        """Kelly bankroll fraction clamped to [0, max_kelly]."""
        if win_loss_ratio <= 0:
            return 0.0
        kelly = (win_probability * win_loss_ratio - (1 - win_probability)) / win_loss_ratio
        return max(0.0, min(kelly, max_kelly))

    # ─── Optimization ──────────────────────────────────────────────────────

    def optimize(self, opportunities: List[Opportunity], constraints: AllocationConstraints) -> AllocationPlan:
        """
        Build a diversified allocation plan.

        Opportunities without a risk score are treated as maximum risk for
        eligibility. Ties in ranking keep input order.
        """
        cfg = self.config
        total = max(0.0, float(constraints.max_total_investment))

        eligible = [
            opp for opp in opportunities
            if self._filter_risk(opp) <= constraints.max_risk_score
        ]
        if not eligible:
            logger.info("No opportunities within risk limit; nothing to allocate")
            return AllocationPlan(remaining=total)

        candidates = [self._score_candidate(opp) for opp in eligible]
        candidates.sort(key=lambda c: c.score, reverse=True)

        kelly = self.kelly_fraction(cfg.kelly_win_probability, cfg.kelly_win_loss_ratio, cfg.kelly_cap)
        per_opp_cap = constraints.max_investment_per_opportunity
        if per_opp_cap is None or per_opp_cap <= 0:
            per_opp_cap = math.inf
        max_for_protocol = total * cfg.max_protocol_allocation

        allocations: List[Allocation] = []
        remaining = total
        per_protocol: Dict[str, float] = {}

        for cand in candidates:
            if remaining < cfg.min_position_size:
                break

            protocol = cand.opportunity.protocol_name
            committed = per_protocol.get(protocol, 0.0)
            headroom = max_for_protocol - committed
            if headroom < cfg.min_position_size:
                continue

            raw = min(remaining, per_opp_cap, headroom, remaining * kelly)
            amount = float(math.floor(raw))
            if amount < cfg.min_position_size:
                continue

            allocations.append(Allocation(
                opportunity=cand.opportunity,
                amount=amount,
                percentage=(amount / total) * 100 if total else 0.0,
                sharpe=cand.sharpe,
                risk_adjusted_return=cand.risk_adjusted_return,
                apy=cand.apy,
                risk=cand.risk,
                volatility=cand.volatility,
            ))
            remaining -= amount
            per_protocol[protocol] = committed + amount

        plan = AllocationPlan(
            allocations=allocations,
            total_allocated=total - remaining,
            remaining=remaining,
        )
        self._apply_portfolio_metrics(plan)

        logger.info(
            f"Allocation plan: {len(allocations)} positions, "
            f"${plan.total_allocated:,.0f} allocated, ${plan.remaining:,.0f} remaining, "
            f"expected {plan.expected_return:.2f}%"
        )
        return plan

    def _score_candidate(self, opp: Opportunity) -> _Candidate:
        apy = float(opp.apy or 0) / 100
        risk_score = opp.risk_score if opp.risk_score is not None else UNKNOWN_RISK_SIZING
        risk = risk_score / 10
        volatility = opp.volatility if opp.volatility else risk * VOLATILITY_PER_RISK
        sharpe = self.sharpe_ratio(apy, volatility)
        rar = apy / (1 + risk)
        return _Candidate(
            opportunity=opp,
            apy=apy,
            risk=risk,
            volatility=volatility,
            sharpe=sharpe,
            risk_adjusted_return=rar,
            score=sharpe * 100 + rar * 50,
        )

    @staticmethod
    def _filter_risk(opp: Opportunity) -> float:
        return opp.risk_score if opp.risk_score is not None else UNKNOWN_RISK_FILTER

    def _apply_portfolio_metrics(self, plan: AllocationPlan) -> None:
        if not plan.allocations:
            return
        invested = sum(a.amount for a in plan.allocations)
        weights = [a.amount / invested for a in plan.allocations]

        expected = sum(w * a.apy for w, a in zip(weights, plan.allocations))
        risk = sum(w * a.risk for w, a in zip(weights, plan.allocations))
        # Positions treated as uncorrelated
        volatility = math.sqrt(sum((w * a.volatility) ** 2 for w, a in zip(weights, plan.allocations)))

        plan.expected_return = expected * 100
        plan.portfolio_risk = risk * 10
        plan.portfolio_volatility = volatility * 100
        plan.sharpe_ratio = self.sharpe_ratio(expected, volatility)
        plan.diversification_score = min(10, 2 * len(plan.allocations))

    # ─── Rebalancing ───────────────────────────────────────────────────────

    def needs_rebalancing(self,
                          current_positions: List[Position],
                          target_allocations: List[Allocation],
                          threshold_percent: Optional[float] = None) -> RebalanceReport:
        """
        Compare held positions against target allocations (pure).

        Drift per target = |current - target| / target * 100.
        """
        threshold = self.config.rebalance_threshold_pct if threshold_percent is None else threshold_percent
        held = {}
        for pos in current_positions:
            held.setdefault(pos.opportunity_id, pos)

        actions: List[RebalanceAction] = []
        total_drift = 0.0
        for target in target_allocations:
            current = held.get(target.opportunity.id)
            current_amount = current.amount if current else 0.0
            target_amount = target.amount
            diff = abs(current_amount - target_amount)
            drift = (diff / target_amount) * 100 if target_amount else 0.0
            total_drift += drift

            if drift > threshold:
                actions.append(RebalanceAction(
                    opportunity_id=target.opportunity.id,
                    protocol=target.opportunity.protocol_name,
                    current_amount=current_amount,
                    target_amount=target_amount,
                    action="increase" if current_amount < target_amount else "decrease",
                    amount=diff,
                    drift_percent=drift,
                ))

        average = total_drift / len(target_allocations) if target_allocations else 0.0
        if actions:
            recommendation = f"Portfolio has drifted {average:.1f}% from target"
        else:
            recommendation = "Portfolio is within rebalancing threshold"

        return RebalanceReport(
            needs_rebalance=bool(actions),
            average_drift=average,
            actions=actions,
            recommendation=recommendation,
        )

    def exit_candidates(self,
                        positions: List[Position],
                        opportunities: List[Opportunity],
                        max_risk_score: float,
                        min_apy_threshold: Optional[float] = None,
                        improvement_threshold: Optional[float] = None) -> List[ExitCandidate]:
        """
        Positions worth withdrawing: opportunity inactive, APY under the floor,
        or beaten on the same chain by at least improvement_threshold APY points.
        """
        floor = self.config.min_apy_threshold if min_apy_threshold is None else min_apy_threshold
        improvement = self.config.improvement_threshold if improvement_threshold is None else improvement_threshold
        by_id = {opp.id: opp for opp in opportunities}

        best_by_chain: Dict[str, Opportunity] = {}
        for opp in opportunities:
            if not opp.is_active or opp.apy < floor:
                continue
            if self._filter_risk(opp) > max_risk_score:
                continue
            best = best_by_chain.get(opp.chain)
            if best is None or opp.apy > best.apy:
                best_by_chain[opp.chain] = opp

        exits = []
        for pos in positions:
            opp = by_id.get(pos.opportunity_id)
            current_apy = opp.apy if opp is not None else pos.expected_apy
            best = best_by_chain.get(pos.chain)
            best_apy = best.apy if best is not None else None

            if opp is not None and not opp.is_active:
                reason = "opportunity inactive"
            elif current_apy < floor:
                reason = f"APY {current_apy:.2f}% below minimum {floor:.2f}%"
            elif (best is not None and best.id != pos.opportunity_id
                    and best.apy - current_apy >= improvement):
                reason = f"{best.protocol_name} offers {best.apy:.2f}% vs {current_apy:.2f}%"
            else:
                continue
            exits.append(ExitCandidate(position=pos, reason=reason, current_apy=current_apy, best_apy=best_apy))
        return exits

    # ─── Alternative views ─────────────────────────────────────────────────

    @staticmethod
    def correlation_matrix(opportunities: List[Opportunity]) -> List[List[float]]:
        """Placeholder correlations: 0.6 for the same protocol type, 0.3 otherwise."""
        n = len(opportunities)
        matrix = [[0.0] * n for _ in range(n)]
        for i in range(n):
            for j in range(n):
                if i == j:
                    matrix[i][j] = 1.0
                elif opportunities[i].protocol_type == opportunities[j].protocol_type:
                    matrix[i][j] = 0.6
                else:
                    matrix[i][j] = 0.3
        return matrix

    @staticmethod
    def risk_parity(opportunities: List[Opportunity], total_investment: float) -> List[Dict]:
        """Allocate inversely to risk score (single opportunity gets everything)."""
        if not opportunities:
            return []
        risks = [opp.risk_score if opp.risk_score is not None else UNKNOWN_RISK_SIZING for opp in opportunities]
        total_risk = sum(risks)
        n = len(opportunities)

        rows = []
        for opp, risk in zip(opportunities, risks):
            if n == 1:
                weight = 1.0
            elif total_risk == 0:
                weight = 1.0 / n
            else:
                weight = (total_risk - risk) / (total_risk * (n - 1))
            amount = float(math.floor(total_investment * weight))
            rows.append({
                "opportunity": opp,
                "amount": amount,
                "percentage": (amount / total_investment) * 100 if total_investment else 0.0,
                "risk_contribution": risk * weight,
            })
        return rows
