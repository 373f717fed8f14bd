"""
yield-allocator Core: Data Model

Snapshots exchanged between the risk scorer, allocation optimizer,
safety validator, circuit breaker and decision pipeline.

Opportunity / Strategy are frozen: components return modified copies
(dataclasses.replace) instead of mutating shared records.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import logging
import math

logger = logging.getLogger(__name__)


def _to_float(value: Any, default: float = 0.0) -> float:
    if value is None:
        return default
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(result):
        return default
    return result


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(_to_float(value, default))
    except (OverflowError, ValueError):
        return default


def _to_optional_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in ("true", "yes", "1"):
            return True
        if normalized in ("false", "no", "0"):
            return False
        return None
    return bool(value)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO strings / epoch seconds into aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, (int, float)):
        ts = datetime.fromtimestamp(float(value), tz=timezone.utc)
    else:
        try:
            ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


# ─── Opportunities ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RiskAttributes:
    """Qualitative and quantitative signals consumed by the risk scorer."""
    protocol_age_years: float = 0.0
    audit_count: int = 0
    has_bug_bounty: bool = False
    governance_type: Optional[str] = None        # "decentralized" | "multisig" | other
    team_doxxed: bool = False
    contract_complexity: str = "medium"          # simple | medium | complex | very_complex
    is_upgradeable: Optional[bool] = None        # None = unknown
    oracle_dependencies: int = 0
    protocol_dependencies: int = 0
    liquidity_depth: str = "unknown"             # deep | shallow | unknown
    apy_volatility_30d: float = 0.0
    apy_volatility_90d: float = 0.0
    has_sustainable_revenue: bool = False
    is_inflationary: Optional[bool] = None
    high_composability: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RiskAttributes":
        data = data or {}
        return cls(
            protocol_age_years=_to_float(data.get("protocol_age_years", data.get("age"))),
            audit_count=_to_int(data.get("audit_count")),
            has_bug_bounty=bool(data.get("has_bug_bounty", False)),
            governance_type=data.get("governance_type"),
            team_doxxed=bool(data.get("team_doxxed", False)),
            contract_complexity=str(data.get("contract_complexity") or "medium"),
            is_upgradeable=_to_optional_bool(data.get("is_upgradeable")),
            oracle_dependencies=_to_int(data.get("oracle_dependencies")),
            protocol_dependencies=_to_int(data.get("protocol_dependencies")),
            liquidity_depth=str(data.get("liquidity_depth") or "unknown"),
            apy_volatility_30d=_to_float(data.get("apy_volatility_30d")),
            apy_volatility_90d=_to_float(data.get("apy_volatility_90d")),
            has_sustainable_revenue=bool(data.get("has_sustainable_revenue", False)),
            is_inflationary=_to_optional_bool(data.get("is_inflationary")),
            high_composability=bool(data.get("high_composability", False)),
        )


_RISK_ATTRIBUTE_KEYS = set(RiskAttributes.__dataclass_fields__) | {"age"}


@dataclass(frozen=True)
class Opportunity:
    """
    Yield opportunity snapshot from the opportunity feed.

    apy is a percentage (4.25 == 4.25%), tvl in currency units.
    risk_score carries a pre-computed composite when known.
    """
    id: str
    protocol_name: str
    chain: str
    apy: float
    tvl: float
    risk_attributes: RiskAttributes = field(default_factory=RiskAttributes)
    is_active: bool = True
    protocol_type: str = "other"
    risk_score: Optional[float] = None
    volatility: Optional[float] = None
    pool_address: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Opportunity":
        """
        Build from a feed record.

        Risk attributes may be nested under "risk_attributes" or flat on the record.
        """
        nested = data.get("risk_attributes")
        if isinstance(nested, dict):
            attributes = RiskAttributes.from_dict(nested)
        else:
            attributes = RiskAttributes.from_dict(
                {k: v for k, v in data.items() if k in _RISK_ATTRIBUTE_KEYS}
            )

        risk_score = data.get("risk_score")
        volatility = data.get("volatility")
        protocol = data.get("protocol_name") or data.get("protocol") or ""
        chain = data.get("chain") or data.get("blockchain") or "ethereum"
        opp_id = data.get("id")
        if opp_id is None:
            opp_id = f"{protocol}:{chain}:{data.get('pool_address') or ''}"

        return cls(
            id=str(opp_id),
            protocol_name=str(protocol),
            chain=str(chain).lower(),
            apy=_to_float(data.get("apy")),
            tvl=_to_float(data.get("tvl")),
            risk_attributes=attributes,
            is_active=bool(data.get("is_active", True)),
            protocol_type=str(data.get("protocol_type") or "other"),
            risk_score=_to_float(risk_score) if risk_score is not None else None,
            volatility=_to_float(volatility) if volatility is not None else None,
            pool_address=data.get("pool_address"),
        )

    def with_risk(self, score: float) -> "Opportunity":
        return replace(self, risk_score=score)


@dataclass(frozen=True)
class Position:
    """Currently held position (positions table is authoritative)."""
    opportunity_id: str
    amount: float
    chain: str = "ethereum"
    protocol_name: str = ""
    expected_apy: float = 0.0
    invested_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        return cls(
            opportunity_id=str(data.get("opportunity_id", "")),
            amount=_to_float(data.get("amount")),
            chain=str(data.get("chain") or data.get("blockchain") or "ethereum"),
            protocol_name=str(data.get("protocol_name") or data.get("protocol") or ""),
            expected_apy=_to_float(data.get("expected_apy")),
            invested_at=parse_timestamp(data.get("invested_at")),
        )


# ─── Risk scores ───────────────────────────────────────────────────────────

@dataclass
class RiskScore:
    """Composite 0-10 risk score with per-dimension breakdown (10 = riskiest)."""
    opportunity_id: str
    composite: float
    breakdown: Dict[str, float]
    weights: Dict[str, float]
    reasoning: str
    calculated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "opportunity_id": self.opportunity_id,
            "composite": self.composite,
            "breakdown": dict(self.breakdown),
            "weights": dict(self.weights),
            "reasoning": self.reasoning,
            "calculated_at": self.calculated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RiskScore":
        return cls(
            opportunity_id=str(data["opportunity_id"]),
            composite=float(data["composite"]),
            breakdown={k: float(v) for k, v in (data.get("breakdown") or {}).items()},
            weights={k: float(v) for k, v in (data.get("weights") or {}).items()},
            reasoning=str(data.get("reasoning", "")),
            calculated_at=parse_timestamp(data.get("calculated_at")) or utc_now(),
        )


# ─── Strategies ────────────────────────────────────────────────────────────

class StrategyAction(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    REBALANCE = "rebalance"


@dataclass(frozen=True)
class Strategy:
    """
    Candidate investment action.

    expected_apy in %, risk_score on the 0-10 scale, confidence 0-1.
    score is only set by the selection stage.
    """
    protocol: str
    chain: str
    action: str
    amount: float
    expected_apy: float
    risk_score: float
    rationale: str = ""
    confidence: float = 0.0
    score: Optional[float] = None

    @property
    def is_withdrawal(self) -> bool:
        return self.action == StrategyAction.WITHDRAW.value

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "protocol": self.protocol,
            "chain": self.chain,
            "action": self.action,
            "amount": self.amount,
            "expected_apy": self.expected_apy,
            "risk_score": self.risk_score,
            "rationale": self.rationale,
            "confidence": self.confidence,
        }
        if self.score is not None:
            payload["score"] = round(self.score, 4)
        return payload


# ─── Allocation ────────────────────────────────────────────────────────────

@dataclass
class Allocation:
    """Capital assigned to one opportunity by the optimizer."""
    opportunity: Opportunity
    amount: float
    percentage: float
    sharpe: float
    risk_adjusted_return: float
    apy: float = 0.0          # decimal
    risk: float = 0.0         # normalized 0-1
    volatility: float = 0.0   # decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "opportunity_id": self.opportunity.id,
            "protocol": self.opportunity.protocol_name,
            "chain": self.opportunity.chain,
            "amount": self.amount,
            "percentage": round(self.percentage, 2),
            "sharpe": round(self.sharpe, 4),
            "risk_adjusted_return": round(self.risk_adjusted_return, 6),
        }


@dataclass
class AllocationPlan:
    allocations: List[Allocation] = field(default_factory=list)
    total_allocated: float = 0.0
    remaining: float = 0.0
    expected_return: float = 0.0        # %
    portfolio_risk: float = 0.0         # 0-10
    portfolio_volatility: float = 0.0   # %
    sharpe_ratio: float = 0.0
    diversification_score: float = 0.0

    def protocol_totals(self) -> Dict[str, float]:
        totals: Dict[str, float] = {}
        for allocation in self.allocations:
            name = allocation.opportunity.protocol_name
            totals[name] = totals.get(name, 0.0) + allocation.amount
        return totals

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allocations": [a.to_dict() for a in self.allocations],
            "total_allocated": self.total_allocated,
            "remaining": self.remaining,
            "expected_return": round(self.expected_return, 4),
            "portfolio_risk": round(self.portfolio_risk, 4),
            "portfolio_volatility": round(self.portfolio_volatility, 4),
            "sharpe_ratio": round(self.sharpe_ratio, 4),
            "diversification_score": self.diversification_score,
        }


@dataclass
class RebalanceAction:
    opportunity_id: str
    protocol: str
    current_amount: float
    target_amount: float
    action: str               # "increase" | "decrease"
    amount: float
    drift_percent: float


@dataclass
class RebalanceReport:
    needs_rebalance: bool
    average_drift: float
    actions: List[RebalanceAction]
    recommendation: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "needs_rebalance": self.needs_rebalance,
            "average_drift": round(self.average_drift, 2),
            "actions": [
                {
                    "opportunity_id": a.opportunity_id,
                    "protocol": a.protocol,
                    "action": a.action,
                    "amount": a.amount,
                    "drift_percent": round(a.drift_percent, 2),
                }
                for a in self.actions
            ],
            "recommendation": self.recommendation,
        }


# ─── Safety ────────────────────────────────────────────────────────────────

class ViolationType(str, Enum):
    AMOUNT_LIMIT_EXCEEDED = "AMOUNT_LIMIT_EXCEEDED"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    RISK_TOLERANCE_EXCEEDED = "RISK_TOLERANCE_EXCEEDED"
    DAILY_LIMIT_EXCEEDED = "DAILY_LIMIT_EXCEEDED"
    PROTOCOL_NOT_WHITELISTED = "PROTOCOL_NOT_WHITELISTED"
    RAPID_REPEATED_INVESTMENTS = "RAPID_REPEATED_INVESTMENTS"
    UNREALISTIC_APY = "UNREALISTIC_APY"
    HIGH_CONCENTRATION = "HIGH_CONCENTRATION"
    RAPID_STRATEGY_CHANGES = "RAPID_STRATEGY_CHANGES"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class Violation:
    type: ViolationType
    severity: Severity
    message: str
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            **self.context,
        }


@dataclass
class SafetyResult:
    valid: bool
    violations: List[Violation]
    risk_level: str           # none | low | medium | high

    @property
    def violation_types(self) -> List[str]:
        return [v.type.value for v in self.violations]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "risk_level": self.risk_level,
            "violations": [v.to_dict() for v in self.violations],
        }


@dataclass
class UserContext:
    """Per-user limits the pipeline and safety validator enforce."""
    user_address: str
    available_funds: float
    max_investment_per_opp: float
    risk_tolerance: float
    daily_limit: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserContext":
        daily = data.get("daily_limit")
        return cls(
            user_address=str(data.get("user_address") or "unknown"),
            available_funds=max(0.0, _to_float(data.get("available_funds"))),
            max_investment_per_opp=max(0.0, _to_float(data.get("max_investment_per_opp"))),
            risk_tolerance=_to_float(data.get("risk_tolerance"), 5.0),
            daily_limit=_to_float(daily) if daily is not None else None,
        )


# ─── Circuit breaker / market context ──────────────────────────────────────

@dataclass
class BreakerStatus:
    is_paused: bool
    reason: Optional[str] = None
    paused_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_paused": self.is_paused,
            "reason": self.reason,
            "paused_at": self.paused_at.isoformat() if self.paused_at else None,
        }


@dataclass(frozen=True)
class GasContext:
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    estimated_cost_usd: float
    level: str = "medium"     # low | medium | high

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_fee_per_gas": str(self.max_fee_per_gas),
            "max_priority_fee_per_gas": str(self.max_priority_fee_per_gas),
            "estimated_cost_usd": self.estimated_cost_usd,
            "level": self.level,
        }
