"""
yield-allocator Core: Policy Configuration

Explicit configuration structs for the decision core, built from
config/policy.yaml. Every tunable constant of the scorer, optimizer,
safety validator, circuit breaker and pipeline lives here.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import logging

logger = logging.getLogger(__name__)

DEFAULT_REPUTABLE_PROTOCOLS = ("aave", "compound", "uniswap", "curve", "balancer")
DEFAULT_PROTOCOL_WHITELIST = ("aave", "compound")


def _section(policy: Optional[Dict[str, Any]], name: str) -> Dict[str, Any]:
    if not policy:
        return {}
    return policy.get(name) or {}


@dataclass(frozen=True)
class ScoringConfig:
    protocol_weight: float = 0.40
    financial_weight: float = 0.35
    technical_weight: float = 0.15
    market_weight: float = 0.10
    cache_ttl_seconds: float = 900.0
    reputable_protocols: Tuple[str, ...] = DEFAULT_REPUTABLE_PROTOCOLS
    history_limit: int = 500

    def __post_init__(self):
        total = self.protocol_weight + self.financial_weight + self.technical_weight + self.market_weight
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Risk weights must sum to 1.0, got {total:.4f}")

    @property
    def weights(self) -> Dict[str, float]:
        return {
            "protocol": self.protocol_weight,
            "financial": self.financial_weight,
            "technical": self.technical_weight,
            "market": self.market_weight,
        }

    @classmethod
    def from_policy(cls, policy: Optional[Dict[str, Any]]) -> "ScoringConfig":
        cfg = _section(policy, "risk_scoring")
        weights = cfg.get("weights") or {}
        reputable = cfg.get("reputable_protocols") or DEFAULT_REPUTABLE_PROTOCOLS
        return cls(
            protocol_weight=float(weights.get("protocol", 0.40)),
            financial_weight=float(weights.get("financial", 0.35)),
            technical_weight=float(weights.get("technical", 0.15)),
            market_weight=float(weights.get("market", 0.10)),
            cache_ttl_seconds=float(cfg.get("cache_ttl_seconds", 900)),
            reputable_protocols=tuple(str(p).lower() for p in reputable),
            history_limit=int(cfg.get("history_limit", 500)),
        )


@dataclass(frozen=True)
class AllocationConfig:
    risk_free_rate: float = 0.04
    max_protocol_allocation: float = 0.40
    min_position_size: float = 100.0
    kelly_win_probability: float = 0.7
    kelly_win_loss_ratio: float = 2.0
    kelly_cap: float = 0.25
    rebalance_threshold_pct: float = 5.0
    improvement_threshold: float = 1.0     # absolute APY points
    min_apy_threshold: float = 0.0

    @classmethod
    def from_policy(cls, policy: Optional[Dict[str, Any]]) -> "AllocationConfig":
        cfg = _section(policy, "allocation")
        kelly = cfg.get("kelly") or {}
        return cls(
            risk_free_rate=float(cfg.get("risk_free_rate", 0.04)),
            max_protocol_allocation=float(cfg.get("max_protocol_allocation", 0.40)),
            min_position_size=float(cfg.get("min_position_size", 100)),
            kelly_win_probability=float(kelly.get("win_probability", 0.7)),
            kelly_win_loss_ratio=float(kelly.get("win_loss_ratio", 2.0)),
            kelly_cap=float(kelly.get("cap", 0.25)),
            rebalance_threshold_pct=float(cfg.get("rebalance_threshold_pct", 5.0)),
            improvement_threshold=float(cfg.get("improvement_threshold", 1.0)),
            min_apy_threshold=float(cfg.get("min_apy_threshold", 0.0)),
        )


@dataclass(frozen=True)
class SafetyConfig:
    protocol_whitelist: Tuple[str, ...] = DEFAULT_PROTOCOL_WHITELIST
    max_realistic_apy: float = 100.0
    concentration_fraction: float = 0.8
    daily_limit_multiplier: float = 5.0
    rapid_investment_threshold: int = 3
    rapid_investment_window_minutes: float = 60.0
    min_minutes_between_decisions: float = 5.0
    trip_on_high_risk: bool = True

    @classmethod
    def from_policy(cls, policy: Optional[Dict[str, Any]]) -> "SafetyConfig":
        cfg = _section(policy, "safety")
        whitelist = cfg.get("protocol_whitelist") or DEFAULT_PROTOCOL_WHITELIST
        return cls(
            protocol_whitelist=tuple(str(p).lower() for p in whitelist),
            max_realistic_apy=float(cfg.get("max_realistic_apy", 100)),
            concentration_fraction=float(cfg.get("concentration_pct", 80)) / 100.0,
            daily_limit_multiplier=float(cfg.get("daily_limit_multiplier", 5)),
            rapid_investment_threshold=int(cfg.get("rapid_investment_threshold", 3)),
            rapid_investment_window_minutes=float(cfg.get("rapid_investment_window_minutes", 60)),
            min_minutes_between_decisions=float(cfg.get("min_minutes_between_decisions", 5)),
            trip_on_high_risk=bool(cfg.get("trip_on_high_risk", True)),
        )


@dataclass(frozen=True)
class BreakerConfig:
    threshold: int = 3
    window_seconds: float = 600.0
    allow_withdrawals: bool = True

    @classmethod
    def from_policy(cls, policy: Optional[Dict[str, Any]]) -> "BreakerConfig":
        cfg = _section(policy, "circuit_breaker")
        return cls(
            threshold=int(cfg.get("threshold", 3)),
            window_seconds=float(cfg.get("window_seconds", 600)),
            allow_withdrawals=bool(cfg.get("allow_withdrawals", True)),
        )


@dataclass(frozen=True)
class FallbackConfig:
    """Used by the generate stage when the proposer yields nothing usable."""
    protocol: str = "aave"
    chain: str = "ethereum"
    apy: float = 4.0
    risk_score: float = 5.0
    confidence: float = 0.3


@dataclass(frozen=True)
class PipelineConfig:
    chains: Tuple[str, ...] = ("ethereum", "base")
    min_strategies: int = 3
    max_strategies: int = 5
    proposer_timeout_seconds: float = 5.0
    approval_funds_fraction: float = 0.5
    approval_risk_margin: float = 1.0
    approval_min_confidence: float = 0.5
    slippage_tolerance_pct: float = 0.5
    max_iterations: Optional[int] = None
    fallback: FallbackConfig = field(default_factory=FallbackConfig)

    @classmethod
    def from_policy(cls, policy: Optional[Dict[str, Any]]) -> "PipelineConfig":
        cfg = _section(policy, "pipeline")
        approval = cfg.get("approval") or {}
        fb = cfg.get("fallback") or {}
        max_iterations = cfg.get("max_iterations")
        chains: List[str] = cfg.get("chains") or ["ethereum", "base"]
        return cls(
            chains=tuple(str(c).lower() for c in chains),
            min_strategies=int(cfg.get("min_strategies", 3)),
            max_strategies=int(cfg.get("max_strategies", 5)),
            proposer_timeout_seconds=float(cfg.get("proposer_timeout_seconds", 5.0)),
            approval_funds_fraction=float(approval.get("funds_fraction", 0.5)),
            approval_risk_margin=float(approval.get("risk_margin", 1.0)),
            approval_min_confidence=float(approval.get("min_confidence", 0.5)),
            slippage_tolerance_pct=float(cfg.get("slippage_tolerance_pct", 0.5)),
            max_iterations=int(max_iterations) if max_iterations is not None else None,
            fallback=FallbackConfig(
                protocol=str(fb.get("protocol", "aave")),
                chain=str(fb.get("chain", "ethereum")),
                apy=float(fb.get("apy", 4.0)),
                risk_score=float(fb.get("risk_score", 5.0)),
                confidence=float(fb.get("confidence", 0.3)),
            ),
        )
