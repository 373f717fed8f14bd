"""
yield-allocator Core: Risk Scorer

Multi-dimensional 0-10 risk score for yield opportunities (10 = riskiest).

Four independent sub-scorers (protocol, financial, technical, market) are
combined with the configured weights. Results are cached in-process for
cache_ttl_seconds and every computation is appended to the persisted
risk history for trend queries.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional
import logging
import threading

from core.exceptions import ScoreUnavailable, StoreUnavailable
from core.models import Opportunity, RiskScore
from core.policy import ScoringConfig

logger = logging.getLogger(__name__)

REGULATED_PROTOCOL_TYPES = ("options", "structured_product")


def _clamp(score: float) -> float:
    return max(0.0, min(10.0, score))


class RiskScorer:
    """
    Composite risk scoring with TTL cache and persisted history.

    Cache/history failures never reach the caller: the score is recomputed
    synchronously and the failure is logged.
    """

    def __init__(self,
                 config: Optional[ScoringConfig] = None,
                 state_store=None,
                 metrics=None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.config = config or ScoringConfig()
        self.state_store = state_store
        self.metrics = metrics
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._cache: Dict[str, RiskScore] = {}
        self._lock = threading.Lock()

        logger.info(
            f"Initialized RiskScorer (weights={self.config.weights}, "
            f"ttl={self.config.cache_ttl_seconds:.0f}s)"
        )

    # ─── Public API ────────────────────────────────────────────────────────

    def score(self, opportunity: Opportunity) -> RiskScore:
        """
        Score an opportunity, serving a cached result when it is still fresh.

        Raises:
            ScoreUnavailable: the sub-scorers could not evaluate the record
        """
        cached = self._get_cached(opportunity.id)
        if cached is not None:
            self._record_cache(hit=True)
            return cached
        self._record_cache(hit=False)
        logger.debug(f"Risk cache miss for {opportunity.id}")

        try:
            breakdown = {
                "protocol": self.protocol_risk(opportunity),
                "financial": self.financial_risk(opportunity),
                "technical": self.technical_risk(opportunity),
                "market": self.market_risk(opportunity),
            }
        except (TypeError, ValueError, AttributeError) as e:
            logger.error(f"Risk scoring failed for {opportunity.id}: {e}")
            raise ScoreUnavailable(opportunity.id, e) from e

        weights = self.config.weights
        composite = round(sum(breakdown[k] * weights[k] for k in breakdown), 1)

        result = RiskScore(
            opportunity_id=opportunity.id,
            composite=composite,
            breakdown=breakdown,
            weights=dict(weights),
            reasoning=self.explain(breakdown),
            calculated_at=self._clock(),
        )

        with self._lock:
            self._cache[opportunity.id] = result
        self._append_history(result)
        return result

    def score_many(self, opportunities: List[Opportunity]) -> List[Opportunity]:
        """Score a batch and return copies with risk_score attached (input order kept)."""
        scored = []
        for opp in opportunities:
            risk = self.score(opp)
            scored.append(opp.with_risk(risk.composite))
        return scored

    def compare(self, opportunities: List[Opportunity]) -> List[Dict]:
        """Side-by-side risk profiles, safest first."""
        rows = []
        for opp in opportunities:
            risk = self.score(opp)
            rows.append({
                "id": opp.id,
                "protocol": opp.protocol_name,
                "composite": risk.composite,
                "breakdown": dict(risk.breakdown),
            })
        return sorted(rows, key=lambda r: r["composite"])

    def invalidate(self, opportunity_id: Optional[str] = None) -> None:
        with self._lock:
            if opportunity_id is None:
                self._cache.clear()
            else:
                self._cache.pop(opportunity_id, None)

    def get_risk_history(self, opportunity_id: str, days: int = 30) -> List[Dict]:
        """Persisted score snapshots for one opportunity within the last N days, newest first."""
        if self.state_store is None:
            return []
        try:
            history = self.state_store.load().get("risk_history", {}).get(opportunity_id, [])
        except StoreUnavailable as e:
            logger.error(f"Error fetching risk history for {opportunity_id}: {e}")
            return []

        cutoff = self._clock() - timedelta(days=days)
        rows = []
        for entry in history:
            try:
                calculated_at = datetime.fromisoformat(entry["calculated_at"])
            except (KeyError, TypeError, ValueError):
                continue
            if calculated_at.tzinfo is None:
                calculated_at = calculated_at.replace(tzinfo=timezone.utc)
            if calculated_at > cutoff:
                rows.append(entry)
        rows.sort(key=lambda e: e["calculated_at"], reverse=True)
        return rows

    # ─── Sub-scorers ───────────────────────────────────────────────────────

    def protocol_risk(self, opp: Opportunity) -> float:
        """Protocol maturity, audits and reputation (starts at maximum risk)."""
        attrs = opp.risk_attributes
        score = 10.0

        age = attrs.protocol_age_years
        if age >= 3:
            score -= 3
        elif age >= 2:
            score -= 2
        elif age >= 1:
            score -= 1

        audits = attrs.audit_count
        if audits >= 5:
            score -= 3
        elif audits >= 3:
            score -= 2
        elif audits >= 1:
            score -= 1

        if attrs.has_bug_bounty:
            score -= 1

        if attrs.governance_type == "decentralized":
            score -= 1
        elif attrs.governance_type == "multisig":
            score -= 0.5

        name = (opp.protocol_name or "").lower()
        if any(p in name for p in self.config.reputable_protocols):
            score -= 2

        if attrs.team_doxxed:
            score -= 1

        return _clamp(score)

    def financial_risk(self, opp: Opportunity) -> float:
        """TVL, APY sustainability and liquidity (starts at maximum risk)."""
        attrs = opp.risk_attributes
        score = 10.0

        tvl = float(opp.tvl or 0)
        if tvl > 1_000_000_000:
            score -= 4
        elif tvl > 500_000_000:
            score -= 3.5
        elif tvl > 100_000_000:
            score -= 3
        elif tvl > 50_000_000:
            score -= 2
        elif tvl > 10_000_000:
            score -= 1.5
        elif tvl > 1_000_000:
            score -= 1

        apy = float(opp.apy or 0)
        if apy > 200:
            score += 4
        elif apy > 100:
            score += 3
        elif apy > 50 or apy < 1:
            score += 1

        if attrs.liquidity_depth == "deep":
            score -= 1
        elif attrs.liquidity_depth == "shallow":
            score += 1

        if attrs.has_sustainable_revenue:
            score -= 1

        if attrs.is_inflationary is False:
            score -= 0.5

        vol = attrs.apy_volatility_30d
        if vol < 5:
            score -= 0.5
        elif vol > 20:
            score += 1

        return _clamp(score)

    @staticmethod
    def technical_risk(opp: Opportunity) -> float:
        attrs = opp.risk_attributes
        score = 5.0

        complexity = attrs.contract_complexity
        if complexity == "simple":
            score -= 1.5
        elif complexity == "complex":
            score += 1.5
        elif complexity == "very_complex":
            score += 2.5

        if attrs.is_upgradeable is True:
            score += 1
        elif attrs.is_upgradeable is False:
            score -= 1

        if attrs.oracle_dependencies == 0:
            score -= 0.5
        elif attrs.oracle_dependencies > 2:
            score += 1

        if attrs.protocol_dependencies == 0:
            score -= 0.5
        elif attrs.protocol_dependencies > 3:
            score += 1

        if attrs.high_composability:
            score += 0.5

        return _clamp(score)

    @staticmethod
    def market_risk(opp: Opportunity) -> float:
        attrs = opp.risk_attributes
        score = 5.0

        vol30 = attrs.apy_volatility_30d
        vol90 = attrs.apy_volatility_90d
        if vol30 > 50 or vol90 > 40:
            score += 2
        elif vol30 > 20 or vol90 > 15:
            score += 1
        elif vol30 < 5 and vol90 < 5:
            score -= 1

        if opp.protocol_type in REGULATED_PROTOCOL_TYPES:
            score += 1

        # L2s are neutral
        if (opp.chain or "ethereum") == "ethereum":
            score -= 0.5

        return _clamp(score)

    @staticmethod
    def explain(breakdown: Dict[str, float]) -> str:
        explanations = []

        if breakdown["protocol"] > 7:
            explanations.append("High protocol risk due to unproven track record or limited audits")
        elif breakdown["protocol"] < 3:
            explanations.append("Low protocol risk - established and well-audited")

        if breakdown["financial"] > 7:
            explanations.append("High financial risk due to low TVL or unsustainable APY")
        elif breakdown["financial"] < 3:
            explanations.append("Strong financial health with deep liquidity")

        if breakdown["technical"] > 7:
            explanations.append("High technical complexity with multiple dependencies")

        if breakdown["market"] > 7:
            explanations.append("Significant market volatility or regulatory concerns")

        if not explanations:
            return "Moderate balanced risk profile across all factors."
        return ". ".join(explanations) + "."

    # ─── Cache / history ───────────────────────────────────────────────────

    def _get_cached(self, opportunity_id: str) -> Optional[RiskScore]:
        with self._lock:
            cached = self._cache.get(opportunity_id)
        if cached is None:
            return None
        age = (self._clock() - cached.calculated_at).total_seconds()
        if age < self.config.cache_ttl_seconds:
            return cached
        with self._lock:
            if self._cache.get(opportunity_id) is cached:
                del self._cache[opportunity_id]
        return None

    def _append_history(self, result: RiskScore) -> None:
        if self.state_store is None:
            return
        limit = self.config.history_limit
        entry = {
            "composite": result.composite,
            "breakdown": dict(result.breakdown),
            "calculated_at": result.calculated_at.isoformat(),
        }

        def append(state):
            history = state.setdefault("risk_history", {})
            rows = history.setdefault(result.opportunity_id, [])
            rows.append(entry)
            if len(rows) > limit:
                del rows[:-limit]

        try:
            self.state_store.mutate(append)
        except StoreUnavailable as e:
            logger.debug(f"Risk history write skipped for {result.opportunity_id}: {e}")

    def _record_cache(self, hit: bool) -> None:
        if self.metrics is not None:
            self.metrics.record_risk_cache(hit)
