"""
Strategy proposer schemas.

Defines the contract between the decision pipeline and the proposer layer.
Model output is untrusted: it is validated and clamped here before any
strategy enters the pipeline.
"""

import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.exceptions import ProposerError
from core.models import Strategy

log = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
MAX_RATIONALE_CHARS = 500


@dataclass
class ProposalContext:
    """Everything the proposer may see when drafting candidate strategies."""
    run_id: str
    analysis: str
    available_funds: float
    max_investment_per_opp: float
    risk_tolerance: float
    opportunities: List[Dict[str, Any]] = field(default_factory=list)   # protocol, chain, apy, tvl, risk_score
    positions: List[Dict[str, Any]] = field(default_factory=list)       # protocol, chain, amount, expected_apy
    lessons: Dict[str, Any] = field(default_factory=dict)
    min_strategies: int = 3
    max_strategies: int = 5

    def to_request(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "analysis": self.analysis,
            "portfolio": {
                "available_funds": self.available_funds,
                "max_investment_per_opp": self.max_investment_per_opp,
                "risk_tolerance": self.risk_tolerance,
                "positions": list(self.positions),
            },
            "opportunities": list(self.opportunities),
            "lessons": dict(self.lessons),
            "min_strategies": self.min_strategies,
            "max_strategies": self.max_strategies,
        }


def _clamped(value: Any, low: float, high: float, default: float) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"not a number: {value!r}")
    if math.isnan(result):
        return default
    return min(high, max(low, result))


class ProposedStrategy(BaseModel):
    """One strategy as returned by a proposer (unknown keys rejected)."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, str_strip_whitespace=True)

    protocol: str = Field(min_length=1)
    chain: str = Field(default="ethereum", validation_alias=AliasChoices("chain", "blockchain"))
    action: Literal["deposit", "withdraw", "rebalance"] = "deposit"
    amount: float
    expected_apy: float = Field(validation_alias=AliasChoices("expected_apy", "expectedAPY", "apy"))
    risk_score: float = Field(default=5.0, validation_alias=AliasChoices("risk_score", "riskScore"))
    rationale: str = ""
    confidence: float = 0.5

    @field_validator("chain", "action", mode="before")
    @classmethod
    def lowercase(cls, v):
        return v.lower() if isinstance(v, str) else v

    @field_validator("amount", mode="before")
    @classmethod
    def clamp_amount(cls, v):
        return _clamped(v, 0.0, 1e18, 0.0)

    @field_validator("expected_apy", mode="before")
    @classmethod
    def clamp_apy(cls, v):
        return _clamped(v, 0.0, 1000.0, 0.0)

    @field_validator("risk_score", mode="before")
    @classmethod
    def clamp_risk(cls, v):
        return _clamped(v, 0.0, 10.0, 10.0)

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v):
        return _clamped(v, 0.0, 1.0, 0.0)

    @field_validator("rationale", mode="before")
    @classmethod
    def truncate_rationale(cls, v):
        return str(v or "")[:MAX_RATIONALE_CHARS]

    def to_strategy(self) -> Strategy:
        return Strategy(
            protocol=self.protocol,
            chain=self.chain,
            action=self.action,
            amount=self.amount,
            expected_apy=self.expected_apy,
            risk_score=self.risk_score,
            rationale=self.rationale,
            confidence=self.confidence,
        )


def _extract_array(text: str) -> Any:
    """Decode the first JSON array in free text (markdown fences and prose tolerated)."""
    candidates = [m.group(1) for m in _FENCE_RE.finditer(text)] + [text]
    decoder = json.JSONDecoder()
    for chunk in candidates:
        start = chunk.find("[")
        while start != -1:
            try:
                value, _ = decoder.raw_decode(chunk, start)
                return value
            except json.JSONDecodeError:
                start = chunk.find("[", start + 1)
        stripped = chunk.strip()
        if stripped.startswith("{"):
            try:
                return json.loads(stripped)
            except json.JSONDecodeError:
                continue
    raise ProposerError("No JSON array found in proposer output")


def parse_strategies(raw: Any) -> List[Strategy]:
    """
    Validate proposer output into strategies.

    Accepts raw text, a list of objects, or {"strategies": [...]}. Entries
    with unknown shapes are dropped; output with no decodable array raises
    ProposerError.
    """
    data = _extract_array(raw) if isinstance(raw, str) else raw
    if isinstance(data, dict):
        data = data.get("strategies")
    if not isinstance(data, list):
        raise ProposerError("Proposer output is not a list of strategies")

    strategies: List[Strategy] = []
    for i, item in enumerate(data):
        if not isinstance(item, dict):
            log.warning(f"Dropping proposed strategy #{i}: not an object")
            continue
        try:
            strategies.append(ProposedStrategy.model_validate(item).to_strategy())
        except ValidationError as e:
            log.warning(f"Dropping proposed strategy #{i}: {e.error_count()} validation errors")
    return strategies


def summarize(strategies: List[Strategy], limit: Optional[int] = None) -> List[Dict[str, Any]]:
    chosen = strategies if limit is None else strategies[:limit]
    return [s.to_dict() for s in chosen]
