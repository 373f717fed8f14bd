"""
yield-allocator Core: Execution

Execution plan metadata, MEV exposure assessment and the transaction
executor boundary. The core never constructs or signs transactions; an
executor receives the plan and reports per-step outcomes.

ShadowExecutor is the DRY_RUN executor: it logs the plan as JSONL and
never commits anything on-chain.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from core.models import GasContext, Strategy

logger = logging.getLogger(__name__)

# swapExactTokensForTokens, swapExactETHForTokens, swapExactTokensForETH, swapETHForExactTokens
MEV_PRONE_SELECTORS = ("0x38ed1739", "0x7ff36ab5", "0x18cbafe5", "0xfb3bdb41")

ACTION_STEPS = {
    "deposit": ("approve token spend", "deposit into {protocol} on {chain}"),
    "withdraw": ("withdraw from {protocol} on {chain}",),
    "rebalance": ("withdraw from current position", "approve token spend", "deposit into {protocol} on {chain}"),
}


@dataclass
class MevAssessment:
    score: float
    level: str                # LOW | MEDIUM | HIGH
    risks: List[str]
    recommendation: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "level": self.level,
            "risks": list(self.risks),
            "recommendation": self.recommendation,
        }


def assess_mev_risk(amount: float, calldata: Optional[str] = None) -> MevAssessment:
    """
    Score MEV exposure of a transaction (0-10).

    Value tiers: >10k +2, >50k +3, >100k +4. Swaps +5, MEV-prone selector +4,
    liquidations +5.
    """
    risks = []
    score = 0.0

    if amount > 100_000:
        risks.append("Large value transaction (>$100k)")
        score += 4
    elif amount > 50_000:
        risks.append("Significant value transaction (>$50k)")
        score += 3
    elif amount > 10_000:
        risks.append("Medium value transaction (>$10k)")
        score += 2

    if calldata:
        if "swap" in calldata.lower():
            risks.append("DEX swap detected - sandwich attack risk")
            score += 5
        if calldata[:10].lower() in MEV_PRONE_SELECTORS:
            risks.append("MEV-prone function detected")
            score += 4
        if "liquidate" in calldata:
            risks.append("Liquidation transaction - front-running risk")
            score += 5

    if score > 7:
        level, recommendation = "HIGH", "Use Flashbots or private mempool"
    elif score > 4:
        level, recommendation = "MEDIUM", "Monitor closely or use private RPC"
    else:
        level, recommendation = "LOW", "Public mempool safe"

    return MevAssessment(score=min(10.0, score), level=level, risks=risks, recommendation=recommendation)


@dataclass(frozen=True)
class ExecutionPlan:
    strategy: Strategy
    steps: Tuple[str, ...]
    gas_strategy: str
    slippage_tolerance: float          # percent
    estimated_gas_cost: float          # USD
    mev_risk: MevAssessment
    contingencies: Tuple[str, ...] = ()
    all_simulations_succeed: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.to_dict(),
            "steps": list(self.steps),
            "gas_strategy": self.gas_strategy,
            "slippage_tolerance": self.slippage_tolerance,
            "estimated_gas_cost": self.estimated_gas_cost,
            "mev_risk": self.mev_risk.to_dict(),
            "contingencies": list(self.contingencies),
            "all_simulations_succeed": self.all_simulations_succeed,
        }


def build_execution_plan(strategy: Strategy,
                         gas: Optional[GasContext],
                         slippage_tolerance: float = 0.5,
                         calldata: Optional[str] = None) -> ExecutionPlan:
    """Plan metadata for a selected strategy; simulation is applied by the caller."""
    templates = ACTION_STEPS.get(strategy.action, ACTION_STEPS["deposit"])
    steps = tuple(t.format(protocol=strategy.protocol, chain=strategy.chain) for t in templates)

    level = gas.level if gas is not None else "medium"
    if level == "high":
        gas_strategy = "wait for lower base fee unless position is at risk"
    elif level == "low":
        gas_strategy = "submit immediately at base fee"
    else:
        gas_strategy = "standard EIP-1559 with modest priority fee"

    mev = assess_mev_risk(strategy.amount, calldata)
    contingencies = [
        f"abort if slippage exceeds {slippage_tolerance:g}%",
        f"abort if {strategy.protocol} APY drops materially before submission",
    ]
    if mev.level != "LOW":
        contingencies.append(mev.recommendation)

    return ExecutionPlan(
        strategy=strategy,
        steps=steps,
        gas_strategy=gas_strategy,
        slippage_tolerance=slippage_tolerance,
        estimated_gas_cost=gas.estimated_cost_usd if gas is not None else 15.0,
        mev_risk=mev,
        contingencies=tuple(contingencies),
    )


@dataclass
class ExecutionResult:
    success: bool
    committed: bool
    steps: List[Dict[str, Any]] = field(default_factory=list)
    message: str = ""
    tx_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "committed": self.committed,
            "steps": list(self.steps),
            "message": self.message,
            "tx_hash": self.tx_hash,
        }


class TransactionExecutor(ABC):
    """Boundary to whatever settles transactions (wallet service, signer, ...)."""

    @abstractmethod
    def simulate(self, plan: ExecutionPlan) -> bool:
        """Return True when every step of the plan simulates successfully."""

    @abstractmethod
    def execute(self, plan: ExecutionPlan) -> ExecutionResult:
        ...


class ShadowExecutor(TransactionExecutor):
    """
    Logs execution plans without submitting anything.

    Purpose:
    - DRY_RUN validation of pipeline decisions
    - Side-by-side comparison before enabling a live executor

    Usage:
        executor = ShadowExecutor("logs/shadow_executions.jsonl")
        result = executor.execute(plan)
    """

    def __init__(self, log_file: str = "logs/shadow_executions.jsonl"):
        self.log_file = Path(log_file)
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        if not self.log_file.exists():
            self.log_file.touch()
            logger.info(f"Created shadow execution log: {self.log_file}")

    def simulate(self, plan: ExecutionPlan) -> bool:
        return plan.strategy.amount > 0 and bool(plan.steps)

    def execute(self, plan: ExecutionPlan) -> ExecutionResult:
        steps = [{"step": step, "status": "simulated"} for step in plan.steps]
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "type": "execution",
            "mode": "SHADOW_DRY_RUN",
            "plan": plan.to_dict(),
            "steps": steps,
        }
        self._append(entry)
        return ExecutionResult(
            success=True,
            committed=False,
            steps=steps,
            message="Transaction execution ready - requires user signature",
        )

    def log_rejection(self, strategy: Strategy, reason: str, context: Optional[Dict[str, Any]] = None) -> None:
        self._append({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "type": "rejection",
            "strategy": strategy.to_dict(),
            "reason": reason,
            "context": context or {},
        })

    def _append(self, entry: Dict[str, Any]) -> None:
        try:
            with open(self.log_file, "a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError as e:
            logger.error(f"Failed to write shadow execution log: {e}")

    def get_stats(self) -> Dict[str, Any]:
        if not self.log_file.exists():
            return {"total": 0, "executions": 0, "rejected": 0}

        total = executions = rejected = 0
        reasons: Dict[str, int] = {}
        try:
            with open(self.log_file, "r") as f:
                for line in f:
                    if not line.strip():
                        continue
                    entry = json.loads(line)
                    total += 1
                    if entry.get("type") == "rejection":
                        rejected += 1
                        reason = entry.get("reason", "unknown")
                        reasons[reason] = reasons.get(reason, 0) + 1
                    else:
                        executions += 1
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read shadow log stats: {e}")
            return {"error": str(e)}

        return {
            "total": total,
            "executions": executions,
            "rejected": rejected,
            "rejection_reasons": reasons,
        }
