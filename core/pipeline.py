"""
yield-allocator Core: Decision Pipeline

Staged decision flow for one (user, request) pair:

    analyze → generate → select → plan → (route) → execute | stop

Each stage is a function RunState -> RunState. Stages never raise: a
failure is appended to RunState.errors (and, where the run can no longer be
trusted, sets circuit_breaker_triggered) and the routing function decides to
stop. The circuit breaker is consulted at entry and again right before
execution.
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union
import logging
import time
import uuid

from ai.proposer import StrategyProposer
from ai.schemas import ProposalContext
from core.allocation import AllocationConstraints, AllocationOptimizer, ExitCandidate
from core.circuit_breaker import CircuitBreaker
from core.exceptions import ProposerError, ScoreUnavailable, StoreUnavailable
from core.execution import ExecutionPlan, ExecutionResult, TransactionExecutor, build_execution_plan
from core.market_data import GasOracle, OpportunityFeed
from core.models import (
    AllocationPlan,
    GasContext,
    Opportunity,
    Position,
    RebalanceReport,
    RiskScore,
    SafetyResult,
    Strategy,
    UserContext,
)
from core.policy import PipelineConfig
from core.risk_scorer import RiskScorer
from core.safety import SafetyValidator

logger = logging.getLogger(__name__)

ROUTE_EXECUTE = "execute"
ROUTE_STOP = "stop"


@dataclass(frozen=True)
class ReasoningStep:
    step: str
    input: Any
    output: Any
    timestamp: datetime
    duration_ms: float
    model: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "input": self.input,
            "output": self.output,
            "timestamp": self.timestamp.isoformat(),
            "duration_ms": round(self.duration_ms, 2),
            "model": self.model,
        }


@dataclass(frozen=True)
class RunState:
    """
    Accumulated state of one pipeline run.

    Frozen: every stage returns a new instance so the trail stays auditable
    and concurrent runs never share mutable state.
    """
    run_id: str
    user: UserContext
    current_positions: Tuple[Position, ...] = ()
    opportunities: Tuple[Opportunity, ...] = ()
    risk_scores: Tuple[RiskScore, ...] = ()
    gas: Optional[GasContext] = None
    analysis: str = ""
    allocation_plan: Optional[AllocationPlan] = None
    rebalance: Optional[RebalanceReport] = None
    exit_candidates: Tuple[ExitCandidate, ...] = ()
    lessons: Dict[str, Any] = field(default_factory=dict)
    strategies: Tuple[Strategy, ...] = ()
    selected_strategy: Optional[Strategy] = None
    execution_plan: Optional[ExecutionPlan] = None
    safety: Optional[SafetyResult] = None
    execution_result: Optional[ExecutionResult] = None
    reasoning: Tuple[ReasoningStep, ...] = ()
    human_approval_required: bool = False
    circuit_breaker_triggered: bool = False
    iteration: int = 0
    errors: Tuple[str, ...] = ()
    stage_durations: Tuple[Tuple[str, float], ...] = ()    # (stage, seconds) in run order

    def with_error(self, message: str, trigger: bool = False) -> "RunState":
        return replace(
            self,
            errors=self.errors + (message,),
            circuit_breaker_triggered=self.circuit_breaker_triggered or trigger,
        )

    def with_step(self, step: ReasoningStep) -> "RunState":
        return replace(self, reasoning=self.reasoning + (step,))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "user_address": self.user.user_address,
            "available_funds": self.user.available_funds,
            "max_investment_per_opp": self.user.max_investment_per_opp,
            "risk_tolerance": self.user.risk_tolerance,
            "opportunities": len(self.opportunities),
            "gas": self.gas.to_dict() if self.gas else None,
            "analysis": self.analysis,
            "allocation_plan": self.allocation_plan.to_dict() if self.allocation_plan else None,
            "rebalance": self.rebalance.to_dict() if self.rebalance else None,
            "exit_candidates": [
                {"opportunity_id": e.position.opportunity_id, "reason": e.reason}
                for e in self.exit_candidates
            ],
            "strategies": [s.to_dict() for s in self.strategies],
            "selected_strategy": self.selected_strategy.to_dict() if self.selected_strategy else None,
            "execution_plan": self.execution_plan.to_dict() if self.execution_plan else None,
            "safety": self.safety.to_dict() if self.safety else None,
            "execution_result": self.execution_result.to_dict() if self.execution_result else None,
            "reasoning": [s.to_dict() for s in self.reasoning],
            "human_approval_required": self.human_approval_required,
            "circuit_breaker_triggered": self.circuit_breaker_triggered,
            "iteration": self.iteration,
            "stage_durations": dict(self.stage_durations),
            "errors": list(self.errors),
        }


def create_initial_state(user_context: Union[UserContext, Dict[str, Any]],
                         current_positions: Optional[Sequence[Union[Position, Dict[str, Any]]]] = None,
                         run_id: Optional[str] = None) -> RunState:
    if not isinstance(user_context, UserContext):
        user_context = UserContext.from_dict(user_context)
    positions = tuple(
        p if isinstance(p, Position) else Position.from_dict(p)
        for p in (current_positions or [])
    )
    return RunState(
        run_id=run_id or uuid.uuid4().hex,
        user=user_context,
        current_positions=positions,
    )


def score_strategy(strategy: Strategy, available_funds: float) -> float:
    """
    Deterministic selection score (0-100).

    confidence 30 pts, APY 25 pts (saturates at 20%), inverse risk 25 pts,
    capital utilization 20 pts.
    """
    utilization = strategy.amount / available_funds if available_funds > 0 else 0.0
    return (
        strategy.confidence * 30
        + min(strategy.expected_apy / 20, 1) * 25
        + ((10 - strategy.risk_score) / 10) * 25
        + min(utilization, 1) * 20
    )


def route(state: RunState) -> str:
    """Pure routing decision after the plan stage."""
    if state.circuit_breaker_triggered:
        logger.warning("Circuit breaker triggered, stopping execution")
        return ROUTE_STOP
    if state.human_approval_required:
        logger.info("Human approval required, pausing for review")
        return ROUTE_STOP
    if state.execution_plan is None:
        logger.warning("No execution plan, stopping execution")
        return ROUTE_STOP
    if not state.execution_plan.all_simulations_succeed:
        logger.warning("Transaction simulation failed, stopping execution")
        return ROUTE_STOP
    if state.errors:
        logger.error(f"Errors detected in state, stopping execution: {list(state.errors)}")
        return ROUTE_STOP
    return ROUTE_EXECUTE


class DecisionPipeline:
    """
    Orchestrates scorer, optimizer, proposer, safety validator, circuit
    breaker and executor over one RunState.

    All collaborators are injected; the pipeline holds no per-run state. The
    proposer call runs on a worker thread and is abandoned after
    config.proposer_timeout_seconds.
    """

    def __init__(self,
                 feed: OpportunityFeed,
                 scorer: RiskScorer,
                 optimizer: AllocationOptimizer,
                 validator: SafetyValidator,
                 circuit_breaker: CircuitBreaker,
                 proposer: StrategyProposer,
                 executor: TransactionExecutor,
                 gas_oracle: Optional[GasOracle] = None,
                 history=None,
                 config: Optional[PipelineConfig] = None,
                 metrics=None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.feed = feed
        self.scorer = scorer
        self.optimizer = optimizer
        self.validator = validator
        self.circuit_breaker = circuit_breaker
        self.proposer = proposer
        self.executor = executor
        self.gas_oracle = gas_oracle
        self.history = history
        self.config = config or PipelineConfig()
        self.metrics = metrics
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._proposer_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="proposer")

        logger.info(
            f"Initialized DecisionPipeline (chains={list(self.config.chains)}, "
            f"proposer_timeout={self.config.proposer_timeout_seconds}s)"
        )

    # ─── Entry point ───────────────────────────────────────────────────────

    def run(self, state: RunState) -> RunState:
        """Run one decision cycle. Always returns a state, never raises."""
        status = self.circuit_breaker.is_tripped()
        if status.is_paused:
            logger.warning(f"Run {state.run_id[:8]} blocked: circuit breaker active ({status.reason})")
            return state.with_error(f"Circuit breaker is active: {status.reason}", trigger=True)

        limit = self.config.max_iterations
        if limit is not None and state.iteration >= limit:
            logger.warning(f"Run {state.run_id[:8]} hit iteration limit {limit}")
            return state.with_error(f"Iteration limit reached ({limit})")

        for name, stage in (
            ("analyze", self.analyze),
            ("generate", self.generate),
            ("select", self.select),
            ("plan", self.plan),
        ):
            state = self._timed(name, stage, state)
            if state.circuit_breaker_triggered:
                logger.warning(f"Circuit breaker triggered during {name}; stopping run")
                break

        if route(state) == ROUTE_EXECUTE:
            state = self._timed("execute", self.execute, state)
        return state

    def _timed(self, name: str, stage: Callable[[RunState], RunState], state: RunState) -> RunState:
        start = time.perf_counter()
        result = stage(state)
        duration = time.perf_counter() - start
        if self.metrics is not None:
            self.metrics.record_stage(name, duration)
        return replace(result, stage_durations=result.stage_durations + ((name, duration),))

    def _step(self, name: str, input: Any, output: Any, start: float, model: Optional[str] = None) -> ReasoningStep:
        return ReasoningStep(
            step=name,
            input=input,
            output=output,
            timestamp=self._clock(),
            duration_ms=(time.perf_counter() - start) * 1000,
            model=model,
        )

    # ─── Stage 1: analyze ──────────────────────────────────────────────────

    def analyze(self, state: RunState) -> RunState:
        logger.info(f"Pipeline analyze (run={state.run_id[:8]}, iteration={state.iteration})")
        start = time.perf_counter()
        user = state.user

        try:
            fetched: List[Opportunity] = []
            for chain in self.config.chains:
                try:
                    fetched.extend(self.feed.fetch(chain))
                except Exception as e:
                    logger.error(f"Opportunity scan failed for {chain}: {e}")
                    self.circuit_breaker.record_failure(f"scan:{chain}", {"error": str(e)})
                    return state.with_error(f"Market analysis failed: scan of {chain} failed: {e}", trigger=True)

            opportunities: List[Opportunity] = []
            scores: List[RiskScore] = []
            for opp in fetched:
                if not opp.is_active or opp.apy <= 0:
                    continue
                try:
                    risk = self.scorer.score(opp)
                except ScoreUnavailable as e:
                    logger.warning(f"Skipping {opp.id}: {e}")
                    continue
                scores.append(risk)
                opportunities.append(opp.with_risk(risk.composite))

            gas = self.gas_oracle.current() if self.gas_oracle is not None else None

            plan = self.optimizer.optimize(opportunities, AllocationConstraints(
                max_total_investment=user.available_funds,
                max_risk_score=user.risk_tolerance,
                max_investment_per_opportunity=user.max_investment_per_opp,
            ))
            positions = list(state.current_positions)
            rebalance = self.optimizer.needs_rebalancing(positions, plan.allocations) if positions else None
            exits = self.optimizer.exit_candidates(positions, opportunities, user.risk_tolerance)
            lessons = self.history.lessons_learned(user.user_address) if self.history is not None else {}

            analysis = self._summarize(opportunities, plan, rebalance, exits, gas, lessons)
        except Exception as e:
            logger.error(f"Analyze stage failed: {e}", exc_info=True)
            return state.with_error(f"Market analysis failed: {e}", trigger=True)

        state = replace(
            state,
            opportunities=tuple(opportunities),
            risk_scores=tuple(scores),
            gas=gas,
            analysis=analysis,
            allocation_plan=plan,
            rebalance=rebalance,
            exit_candidates=tuple(exits),
            lessons=lessons,
            iteration=state.iteration + 1,
        )
        if not opportunities:
            state = state.with_error("No active opportunities found")

        return state.with_step(self._step(
            "market_analysis",
            {"opportunities": len(opportunities), "available_funds": user.available_funds},
            analysis,
            start,
        ))

    def _summarize(self,
                   opportunities: List[Opportunity],
                   plan: AllocationPlan,
                   rebalance: Optional[RebalanceReport],
                   exits: List[ExitCandidate],
                   gas: Optional[GasContext],
                   lessons: Dict[str, Any]) -> str:
        chains = ", ".join(self.config.chains)
        lines = [f"{len(opportunities)} active opportunities across {chains}."]

        ranked = sorted(opportunities, key=lambda o: (o.risk_score if o.risk_score is not None else 10.0) - o.apy / 10)
        for opp in ranked[:5]:
            lines.append(
                f"- {opp.protocol_name} ({opp.chain}): {opp.apy:.2f}% APY, "
                f"TVL ${opp.tvl / 1e6:.1f}M, risk {opp.risk_score:.1f}/10"
            )

        if plan.allocations:
            lines.append(
                f"Optimizer plan: ${plan.total_allocated:,.0f} across {len(plan.allocations)} positions, "
                f"expected return {plan.expected_return:.2f}%, portfolio risk {plan.portfolio_risk:.1f}/10."
            )
        else:
            lines.append("Optimizer plan: no opportunity fits the risk tolerance and sizing limits.")

        if rebalance is not None:
            lines.append(rebalance.recommendation + ".")
        for exit_ in exits:
            lines.append(f"Exit candidate {exit_.position.opportunity_id}: {exit_.reason}.")
        if gas is not None:
            lines.append(f"Gas level {gas.level}, estimated cost ${gas.estimated_cost_usd:.2f}.")
        for rec in lessons.get("recommendations", []):
            lines.append(f"Lesson: {rec.get('message')}")
        return "\n".join(lines)

    # ─── Stage 2: generate ─────────────────────────────────────────────────

    def generate(self, state: RunState) -> RunState:
        logger.info(f"Pipeline generate (run={state.run_id[:8]})")
        start = time.perf_counter()
        context = self._proposal_context(state)
        model = getattr(self.proposer, "model", None)

        strategies: List[Strategy] = []
        fallback_reason = None
        future = self._proposer_pool.submit(self.proposer.propose, context)
        try:
            strategies = list(future.result(timeout=self.config.proposer_timeout_seconds))
        except FuturesTimeout:
            future.cancel()
            fallback_reason = "timeout"
            logger.warning(f"Strategy proposer timed out after {self.config.proposer_timeout_seconds}s")
        except ProposerError as e:
            fallback_reason = "proposer_error"
            logger.warning(f"Strategy proposer failed: {e}")
        except Exception as e:
            fallback_reason = "proposer_error"
            logger.error(f"Strategy proposer raised unexpectedly: {e}", exc_info=True)

        strategies = strategies[:self.config.max_strategies]
        if not strategies:
            fallback_reason = fallback_reason or "empty"
            strategies = [self._fallback_strategy(state)]
            if self.metrics is not None:
                self.metrics.record_proposer_fallback(fallback_reason)
            logger.info(f"Using fallback strategy ({fallback_reason}): {strategies[0].protocol} on {strategies[0].chain}")
        elif len(strategies) < self.config.min_strategies:
            logger.debug(f"Proposer returned {len(strategies)} strategies (< {self.config.min_strategies})")

        state = replace(state, strategies=tuple(strategies))
        return state.with_step(self._step(
            "strategy_generation",
            state.analysis,
            {"strategies": [s.to_dict() for s in strategies], "fallback": fallback_reason},
            start,
            model=model if fallback_reason is None else None,
        ))

    def _proposal_context(self, state: RunState) -> ProposalContext:
        return ProposalContext(
            run_id=state.run_id,
            analysis=state.analysis,
            available_funds=state.user.available_funds,
            max_investment_per_opp=state.user.max_investment_per_opp,
            risk_tolerance=state.user.risk_tolerance,
            opportunities=[
                {
                    "protocol": o.protocol_name,
                    "chain": o.chain,
                    "apy": o.apy,
                    "tvl": o.tvl,
                    "risk_score": o.risk_score,
                }
                for o in state.opportunities
            ],
            positions=[
                {
                    "protocol": p.protocol_name,
                    "chain": p.chain,
                    "amount": p.amount,
                    "expected_apy": p.expected_apy,
                }
                for p in state.current_positions
            ],
            lessons=dict(state.lessons),
            min_strategies=self.config.min_strategies,
            max_strategies=self.config.max_strategies,
        )

    def _fallback_strategy(self, state: RunState) -> Strategy:
        """
        Top eligible opportunity by APY (first wins ties), sized to
        min(funds, per-opp cap). Eligible means whitelisted and scored within
        the user's risk tolerance; with none eligible the configured default
        strategy is used.
        """
        fb = self.config.fallback
        amount = min(state.user.available_funds, state.user.max_investment_per_opp)
        whitelist = self.validator.config.protocol_whitelist
        eligible = [
            o for o in state.opportunities
            if o.protocol_name.lower() in whitelist
            and o.risk_score is not None
            and o.risk_score <= state.user.risk_tolerance
        ]
        top = max(eligible, key=lambda o: o.apy) if eligible else None
        if top is None:
            return Strategy(
                protocol=fb.protocol,
                chain=fb.chain,
                action="deposit",
                amount=amount,
                expected_apy=fb.apy,
                risk_score=fb.risk_score,
                rationale="Fallback strategy - no eligible opportunities available",
                confidence=fb.confidence,
            )
        return Strategy(
            protocol=top.protocol_name,
            chain=top.chain,
            action="deposit",
            amount=amount,
            expected_apy=top.apy,
            risk_score=top.risk_score,
            rationale="Fallback strategy - proposer output unavailable",
            confidence=fb.confidence,
        )

    # ─── Stage 3: select ───────────────────────────────────────────────────

    def select(self, state: RunState) -> RunState:
        logger.info(f"Pipeline select ({len(state.strategies)} candidates)")
        start = time.perf_counter()

        if not state.strategies:
            state = replace(state, selected_strategy=None, human_approval_required=True)
            return state.with_error("No strategies generated")

        user = state.user
        scored = [replace(s, score=score_strategy(s, user.available_funds)) for s in state.strategies]
        best = scored[0]
        for candidate in scored[1:]:
            if candidate.score > best.score:
                best = candidate

        needs_approval = (
            best.amount > user.available_funds * self.config.approval_funds_fraction
            or best.risk_score > user.risk_tolerance + self.config.approval_risk_margin
            or best.confidence < self.config.approval_min_confidence
        )
        if needs_approval:
            logger.info(f"Selected {best.protocol} (score={best.score:.1f}) requires human approval")
        else:
            logger.info(f"Selected {best.protocol} on {best.chain} (score={best.score:.1f})")

        state = replace(state, selected_strategy=best, human_approval_required=needs_approval)
        return state.with_step(self._step(
            "strategy_selection",
            [s.to_dict() for s in scored],
            {"selected": best.to_dict(), "needs_approval": needs_approval},
            start,
        ))

    # ─── Stage 4: plan ─────────────────────────────────────────────────────

    def plan(self, state: RunState) -> RunState:
        logger.info(f"Pipeline plan (strategy={state.selected_strategy.protocol if state.selected_strategy else None})")
        start = time.perf_counter()

        if state.selected_strategy is None:
            return replace(state, execution_plan=None).with_error("No strategy selected")

        strategy = self.validator.sanitize(state.selected_strategy)
        try:
            plan = build_execution_plan(strategy, state.gas, slippage_tolerance=self.config.slippage_tolerance_pct)
        except Exception as e:
            logger.error(f"Execution planning failed: {e}", exc_info=True)
            return state.with_error(f"Execution planning failed: {e}")

        errors: List[str] = []
        try:
            simulated = bool(self.executor.simulate(plan))
        except Exception as e:
            logger.error(f"Simulation failed: {e}")
            simulated = False
            errors.append(f"Transaction simulation failed: {e}")
        plan = replace(plan, all_simulations_succeed=simulated)

        safety = self.validator.validate_and_escalate(strategy, state.user)
        for v in safety.violations:
            errors.append(f"Safety violation {v.type.value}: {v.message}")
        tripped = safety.risk_level == "high" and self.validator.config.trip_on_high_risk

        state = replace(
            state,
            execution_plan=plan,
            safety=safety,
            errors=state.errors + tuple(errors),
            circuit_breaker_triggered=state.circuit_breaker_triggered or tripped,
        )
        return state.with_step(self._step(
            "execution_planning",
            strategy.to_dict(),
            {"plan": plan.to_dict(), "safety": safety.to_dict()},
            start,
        ))

    # ─── Stage 5: execute ──────────────────────────────────────────────────

    def execute(self, state: RunState) -> RunState:
        logger.info(f"Pipeline execute (plan={'ready' if state.execution_plan else 'missing'})")
        start = time.perf_counter()
        plan = state.execution_plan

        if plan is None or state.selected_strategy is None:
            return state.with_error("No execution plan available")

        gate = self.circuit_breaker.check_emergency_pause(is_withdrawal=plan.strategy.is_withdrawal)
        if gate.blocked:
            logger.warning(f"Execution blocked at exit gate: {gate.reason}")
            return state.with_error(f"Circuit breaker is active: {gate.reason}", trigger=True)

        try:
            result = self.executor.execute(plan)
        except Exception as e:
            logger.error(f"Transaction execution raised: {e}", exc_info=True)
            result = ExecutionResult(success=False, committed=False, message=str(e))

        errors: List[str] = []
        if not result.success:
            self.circuit_breaker.record_failure("transaction_execution", {
                "run_id": state.run_id,
                "protocol": plan.strategy.protocol,
                "message": result.message,
            })
            errors.append(f"Transaction execution failed: {result.message}")
        elif result.committed and self.history is not None:
            try:
                self.history.record_investment(
                    state.user.user_address,
                    plan.strategy,
                    opportunity_id=self._match_opportunity(state, plan.strategy),
                    status="confirmed" if result.tx_hash else "pending",
                    tx_hash=result.tx_hash,
                )
            except StoreUnavailable as e:
                logger.error(f"Failed to record investment for run {state.run_id[:8]}: {e}")
                errors.append(f"Investment not recorded: {e}")

        state = replace(state, execution_result=result, errors=state.errors + tuple(errors))
        return state.with_step(self._step(
            "transaction_execution",
            plan.to_dict(),
            result.to_dict(),
            start,
        ))

    @staticmethod
    def _match_opportunity(state: RunState, strategy: Strategy) -> Optional[str]:
        protocol = strategy.protocol.lower()
        for opp in state.opportunities:
            if opp.protocol_name.lower() == protocol and opp.chain == strategy.chain:
                return opp.id
        return None

    def close(self) -> None:
        self._proposer_pool.shutdown(wait=False)
        logger.debug("DecisionPipeline closed")
