"""
yield-allocator Runner: Agent Runner

Wires the decision pipeline from config/app.yaml and config/policy.yaml
and runs single decision cycles on behalf of a user.

Flow per run:
1. Check the circuit breaker (entry gate)
2. Scan and score opportunities, build the allocation plan
3. Ask the proposer for candidate strategies (fallback on failure)
4. Select, sanitize, simulate and validate the best strategy
5. Execute (shadow executor in DRY_RUN) when routing allows it
6. Record the decision, audit entry and metrics
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from ai.model_client import create_model_client
from ai.proposer import ModelStrategyProposer
from core.allocation import AllocationOptimizer
from core.audit_log import AuditLogger
from core.circuit_breaker import CircuitBreaker
from core.decision_history import DecisionHistory
from core.exceptions import StoreUnavailable
from core.execution import ShadowExecutor
from core.market_data import DefiLlamaFeed, DEFILLAMA_POOLS_URL, StaticGasOracle, StaticOpportunityFeed
from core.models import BreakerStatus, Position, UserContext
from core.pipeline import DecisionPipeline, RunState, create_initial_state
from core.policy import AllocationConfig, BreakerConfig, PipelineConfig, SafetyConfig, ScoringConfig
from core.risk_scorer import RiskScorer
from core.safety import SafetyValidator
from infra.alerting import AlertService
from infra.metrics import MetricsRecorder
from infra.state_store import create_state_store_from_config

logger = logging.getLogger(__name__)

GWEI = 1_000_000_000


class AgentRunner:
    """
    Builds every collaborator once and runs decision cycles on demand.

    Responsibilities:
    - Validate and load config
    - Configure logging
    - Construct store, breaker, scorer, optimizer, validator, proposer,
      feed, executor, audit, alerting and metrics
    - Persist each run's decision and audit entry
    """

    def __init__(self, config_dir: str = "config"):
        self.config_dir = Path(config_dir)
        from tools.config_validator import validate_all_configs
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                lines = str(error).splitlines()
                if not lines:
                    continue
                logger.error(f"{idx:>2}. {lines[0]}")
            logger.error("=" * 80)
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.app_config = self._load_yaml("app.yaml")
        self.policy_config = self._load_yaml("policy.yaml")

        self.mode = str((self.app_config.get("app") or {}).get("mode", "DRY_RUN")).upper()
        self._configure_logging(self.app_config.get("logging") or {})
        logger.info(f"Starting yield-agent in mode={self.mode}")

        # Shared state and observability
        self.state_store = create_state_store_from_config(self.app_config.get("state"))
        metrics_cfg = self.app_config.get("metrics") or {}
        self.metrics = MetricsRecorder(
            enabled=bool(metrics_cfg.get("enabled", False)),
            port=int(metrics_cfg.get("port", 9100)),
        )
        self.metrics.start()
        self.alerts = AlertService.from_config(self.app_config.get("alerts"))
        audit_cfg = self.app_config.get("audit") or {}
        self.audit = AuditLogger(audit_file=audit_cfg.get("file"), mode=self.mode)

        # Safety layers
        self.circuit_breaker = CircuitBreaker(
            self.state_store,
            config=BreakerConfig.from_policy(self.policy_config),
            audit_logger=self.audit,
            alert_service=self.alerts,
            metrics=self.metrics,
        )
        self.history = DecisionHistory(self.state_store)
        self.validator = SafetyValidator(
            config=SafetyConfig.from_policy(self.policy_config),
            history=self.history,
            circuit_breaker=self.circuit_breaker,
            metrics=self.metrics,
        )

        # Decision components
        self.scorer = RiskScorer(
            config=ScoringConfig.from_policy(self.policy_config),
            state_store=self.state_store,
            metrics=self.metrics,
        )
        self.optimizer = AllocationOptimizer(AllocationConfig.from_policy(self.policy_config))
        self.proposer = self._build_proposer(self.app_config.get("ai") or {})
        self.feed = self._build_feed(self.app_config.get("feed") or {})
        self.gas_oracle = self._build_gas_oracle(self.app_config.get("gas") or {})
        executor_cfg = self.app_config.get("executor") or {}
        self.executor = ShadowExecutor(log_file=executor_cfg.get("shadow_log", "logs/shadow_executions.jsonl"))

        self.pipeline = DecisionPipeline(
            feed=self.feed,
            scorer=self.scorer,
            optimizer=self.optimizer,
            validator=self.validator,
            circuit_breaker=self.circuit_breaker,
            proposer=self.proposer,
            executor=self.executor,
            gas_oracle=self.gas_oracle,
            history=self.history,
            config=PipelineConfig.from_policy(self.policy_config),
            metrics=self.metrics,
        )
        logger.info(f"Agent ready (state={self.state_store.describe()}, proposer={self.proposer.model})")

    # ─── Setup ─────────────────────────────────────────────────────────────

    def _load_yaml(self, filename: str) -> Dict[str, Any]:
        path = self.config_dir / filename
        if not path.exists():
            raise FileNotFoundError(f"Config not found: {path}")
        with open(path) as f:
            return yaml.safe_load(f) or {}

    @staticmethod
    def _configure_logging(log_cfg: Dict[str, Any]) -> None:
        log_file = log_cfg.get("file", "logs/yield-agent.log")
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(
            level=getattr(logging, str(log_cfg.get("level", "INFO")).upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        )

    def _resolve_path(self, raw: str) -> Path:
        """Relative paths resolve against the CWD first, then the config dir's parent."""
        path = Path(raw)
        if path.is_absolute() or path.exists():
            return path
        return self.config_dir.parent / path

    @staticmethod
    def _build_proposer(ai_cfg: Dict[str, Any]) -> ModelStrategyProposer:
        provider = ai_cfg.get("provider", "mock")
        key_env = ai_cfg.get("api_key_env")
        api_key = os.getenv(key_env) if key_env else None
        client = create_model_client(provider, api_key=api_key, model=ai_cfg.get("model"))
        return ModelStrategyProposer(client, timeout_s=float(ai_cfg.get("timeout_seconds", 5.0)))

    def _build_feed(self, feed_cfg: Dict[str, Any]):
        provider = feed_cfg.get("provider", "static")
        if provider == "static":
            path = self._resolve_path(feed_cfg["path"])
            logger.info(f"Using static opportunity feed from {path}")
            return StaticOpportunityFeed.from_file(path)
        return DefiLlamaFeed(
            url=feed_cfg.get("url") or DEFILLAMA_POOLS_URL,
            projects=feed_cfg.get("projects") or None,
            min_tvl=float(feed_cfg.get("min_tvl", 1_000_000)),
            timeout=float(feed_cfg.get("timeout_seconds", 15.0)),
            refresh_seconds=float(feed_cfg.get("refresh_seconds", 300.0)),
            protocol_map=feed_cfg.get("protocol_map") or None,
        )

    @staticmethod
    def _build_gas_oracle(gas_cfg: Dict[str, Any]) -> StaticGasOracle:
        return StaticGasOracle(
            max_fee_per_gas=int(float(gas_cfg.get("max_fee_gwei", 50)) * GWEI),
            max_priority_fee_per_gas=int(float(gas_cfg.get("priority_fee_gwei", 2)) * GWEI),
            estimated_cost_usd=float(gas_cfg.get("estimated_cost_usd", 15.0)),
            level=gas_cfg.get("level", "medium"),
        )

    # ─── Operations ────────────────────────────────────────────────────────

    def run_pipeline(self,
                     initial_context: Union[UserContext, Dict[str, Any]],
                     current_positions: Optional[List[Union[Position, Dict[str, Any]]]] = None) -> RunState:
        """
        Run one decision cycle for a user.

        Positions default to the user's open positions from decision history.
        The returned state is final: it has been audited and recorded.
        """
        if not isinstance(initial_context, UserContext):
            initial_context = UserContext.from_dict(initial_context)
        if current_positions is None:
            current_positions = self.history.open_positions(initial_context.user_address)

        state = create_initial_state(initial_context, current_positions)
        logger.info(
            f"Run {state.run_id[:8]} starting for {initial_context.user_address} "
            f"(funds={initial_context.available_funds:.2f}, risk_tolerance={initial_context.risk_tolerance})"
        )
        state = self.pipeline.run(state)

        if state.selected_strategy is not None and state.safety is not None and not state.safety.valid:
            self.executor.log_rejection(
                state.selected_strategy,
                ",".join(state.safety.violation_types),
                {"run_id": state.run_id, "risk_level": state.safety.risk_level},
            )

        status = self.audit.determine_status(state)
        try:
            self.history.record_decision(initial_context.user_address, {
                "type": "autonomous_strategy",
                "reasoning": [step.to_dict() for step in state.reasoning],
                "strategy": state.selected_strategy.to_dict() if state.selected_strategy else None,
            })
        except StoreUnavailable as e:
            logger.error(f"Decision for run {state.run_id[:8]} not recorded: {e}")

        self.audit.log_run(state, stage_latencies=dict(state.stage_durations))
        self.metrics.record_run(status.lower())
        logger.info(f"Run {state.run_id[:8]} finished: {status} ({len(state.errors)} error(s))")
        return state

    def breaker_status(self) -> BreakerStatus:
        return self.circuit_breaker.is_tripped()

    def reset_breaker(self, reset_by: str) -> BreakerStatus:
        self.circuit_breaker.reset(reset_by=reset_by)
        return self.circuit_breaker.is_tripped()

    def close(self) -> None:
        self.pipeline.close()
        self.circuit_breaker.close()
        self.state_store.close()


def _summarize_run(state: RunState) -> Dict[str, Any]:
    selected = state.selected_strategy
    return {
        "run_id": state.run_id,
        "selected_strategy": selected.to_dict() if selected else None,
        "human_approval_required": state.human_approval_required,
        "circuit_breaker_triggered": state.circuit_breaker_triggered,
        "violations": [v.to_dict() for v in state.safety.violations] if state.safety else [],
        "execution": state.execution_result.to_dict() if state.execution_result else None,
        "errors": list(state.errors),
    }


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Yield allocation decision agent")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    sub = parser.add_subparsers(dest="command", required=True)

    run_p = sub.add_parser("run", help="Run one decision cycle")
    run_p.add_argument("--user", required=True, help="User address")
    run_p.add_argument("--funds", type=float, required=True, help="Available funds")
    run_p.add_argument("--max-per-opp", type=float, required=True, help="Max investment per opportunity")
    run_p.add_argument("--risk-tolerance", type=float, required=True, help="Risk tolerance (0-10)")
    run_p.add_argument("--daily-limit", type=float, default=None, help="Daily spend limit")

    sub.add_parser("status", help="Show circuit breaker status")

    reset_p = sub.add_parser("reset", help="Reset the circuit breaker")
    reset_p.add_argument("--by", required=True, help="Operator performing the reset")

    args = parser.parse_args(argv)

    # Logging configured in __init__
    runner = AgentRunner(config_dir=args.config_dir)
    try:
        if args.command == "run":
            state = runner.run_pipeline(UserContext(
                user_address=args.user,
                available_funds=args.funds,
                max_investment_per_opp=args.max_per_opp,
                risk_tolerance=args.risk_tolerance,
                daily_limit=args.daily_limit,
            ))
            output = _summarize_run(state)
        elif args.command == "status":
            output = runner.breaker_status().to_dict()
        else:
            output = runner.reset_breaker(args.by).to_dict()
    finally:
        runner.close()

    print(json.dumps(output, indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
