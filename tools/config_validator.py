"""
Configuration Validation Module

Validates app.yaml and policy.yaml against Pydantic schemas.
Ensures config files are correct before the agent starts.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)


# ===== Policy Schema =====
class RiskWeights(BaseModel):
    """Composite risk weights (must sum to 1.0)"""
    protocol: float = Field(ge=0, le=1)
    financial: float = Field(ge=0, le=1)
    technical: float = Field(ge=0, le=1)
    market: float = Field(ge=0, le=1)

    @model_validator(mode="after")
    def weights_sum_to_one(self) -> "RiskWeights":
        total = self.protocol + self.financial + self.technical + self.market
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"weights must sum to 1.0, got {total:.4f}")
        return self


class RiskScoringConfig(BaseModel):
    """Risk scorer parameters"""
    weights: RiskWeights
    cache_ttl_seconds: float = Field(default=900, gt=0, description="Risk score cache TTL")
    reputable_protocols: List[str] = Field(default_factory=list, description="Established protocol names")
    history_limit: int = Field(default=500, gt=0, description="Persisted risk history rows kept")


class KellyConfig(BaseModel):
    """Fixed Kelly multiplier inputs"""
    win_probability: float = Field(ge=0, le=1)
    win_loss_ratio: float = Field(gt=0)
    cap: float = Field(gt=0, le=1)


class AllocationPolicyConfig(BaseModel):
    """Allocation optimizer parameters"""
    risk_free_rate: float = Field(ge=0, lt=1, description="Annual risk-free rate (decimal)")
    max_protocol_allocation: float = Field(gt=0, le=1, description="Max share of budget per protocol")
    min_position_size: float = Field(ge=0, description="Smallest allocation worth making")
    kelly: KellyConfig
    rebalance_threshold_pct: float = Field(default=5.0, gt=0, description="Drift % that triggers rebalance")
    improvement_threshold: float = Field(default=1.0, ge=0, description="APY points a better pool must offer")
    min_apy_threshold: float = Field(default=0.0, ge=0, description="APY floor for held positions")


class SafetyPolicyConfig(BaseModel):
    """Safety validator limits"""
    protocol_whitelist: List[str] = Field(min_length=1, description="Protocols strategies may target")
    max_realistic_apy: float = Field(gt=0, description="APY above this is flagged unrealistic")
    concentration_pct: float = Field(gt=0, le=100, description="Max % of available funds in one strategy")
    daily_limit_multiplier: float = Field(gt=0, description="Default daily limit = per-opp cap x this")
    rapid_investment_threshold: int = Field(gt=0)
    rapid_investment_window_minutes: float = Field(gt=0)
    min_minutes_between_decisions: float = Field(ge=0)
    trip_on_high_risk: bool = True

    @field_validator("protocol_whitelist")
    @classmethod
    def lowercase_names(cls, v: List[str]) -> List[str]:
        return [p.lower() for p in v]


class CircuitBreakerPolicyConfig(BaseModel):
    """Circuit breaker parameters"""
    threshold: int = Field(gt=0, description="Failures within window that trip the breaker")
    window_seconds: float = Field(gt=0, description="Rolling failure window (seconds)")
    allow_withdrawals: bool = Field(default=True, description="Let withdrawals through while paused")


class ApprovalConfig(BaseModel):
    funds_fraction: float = Field(gt=0, le=1)
    risk_margin: float = Field(ge=0)
    min_confidence: float = Field(ge=0, le=1)


class FallbackStrategyConfig(BaseModel):
    protocol: str = "aave"
    chain: str = "ethereum"
    apy: float = Field(default=4.0, ge=0)
    risk_score: float = Field(default=5.0, ge=0, le=10)
    confidence: float = Field(default=0.3, ge=0, le=1)


class PipelinePolicyConfig(BaseModel):
    """Decision pipeline parameters"""
    chains: List[str] = Field(min_length=1)
    min_strategies: int = Field(gt=0)
    max_strategies: int = Field(gt=0)
    proposer_timeout_seconds: float = Field(gt=0, le=120)
    slippage_tolerance_pct: float = Field(gt=0, le=50)
    max_iterations: Optional[int] = Field(default=None, gt=0)
    approval: ApprovalConfig
    fallback: FallbackStrategyConfig = Field(default_factory=FallbackStrategyConfig)

    @field_validator("max_strategies")
    @classmethod
    def validate_strategy_bounds(cls, v: int, info) -> int:
        low = info.data.get("min_strategies", 0)
        if v < low:
            raise ValueError(f"max_strategies ({v}) must be >= min_strategies ({low})")
        return v


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    risk_scoring: RiskScoringConfig
    allocation: AllocationPolicyConfig
    safety: SafetyPolicyConfig
    circuit_breaker: CircuitBreakerPolicyConfig
    pipeline: PipelinePolicyConfig


# ===== App Schema =====
class AppSection(BaseModel):
    mode: Literal["DRY_RUN", "LIVE"] = "DRY_RUN"

    @field_validator("mode", mode="before")
    @classmethod
    def upper(cls, v):
        return v.upper() if isinstance(v, str) else v


class LoggingSection(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    file: str = "logs/yield-agent.log"

    @field_validator("level", mode="before")
    @classmethod
    def upper(cls, v):
        return v.upper() if isinstance(v, str) else v


class StateSection(BaseModel):
    store: Literal["memory", "json", "sqlite"] = "json"
    path: Optional[str] = None


class AuditSection(BaseModel):
    file: str = "logs/audit.jsonl"


class AISection(BaseModel):
    provider: Literal["mock", "openai", "anthropic"] = "mock"
    model: Optional[str] = None
    api_key_env: Optional[str] = None
    timeout_seconds: float = Field(default=5.0, gt=0)


class FeedSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    provider: Literal["static", "defillama"] = "static"
    path: Optional[str] = None
    url: Optional[str] = None
    projects: List[str] = Field(default_factory=list)
    min_tvl: float = Field(default=1_000_000, ge=0)
    timeout_seconds: float = Field(default=15.0, gt=0)
    refresh_seconds: float = Field(default=300.0, gt=0)
    protocol_map: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def static_needs_path(self) -> "FeedSection":
        if self.provider == "static" and not self.path:
            raise ValueError("static feed requires path")
        return self


class GasSection(BaseModel):
    max_fee_gwei: float = Field(default=50, gt=0)
    priority_fee_gwei: float = Field(default=2, ge=0)
    estimated_cost_usd: float = Field(default=15, ge=0)
    level: Literal["low", "medium", "high"] = "medium"


class ExecutorSection(BaseModel):
    shadow_log: str = "logs/shadow_executions.jsonl"


class AlertsSection(BaseModel):
    enabled: bool = False
    webhook_url: Optional[str] = None
    webhook_env: str = "ALERT_WEBHOOK_URL"
    min_severity: Literal["info", "warning", "critical"] = "info"
    dry_run: bool = False
    timeout_seconds: float = Field(default=5.0, gt=0)
    dedupe_seconds: float = Field(default=60.0, ge=0)
    history_limit: int = Field(default=100, ge=1)


class MetricsSection(BaseModel):
    enabled: bool = False
    port: int = Field(default=9100, gt=0, lt=65536)


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    app: AppSection = Field(default_factory=AppSection)
    logging: LoggingSection = Field(default_factory=LoggingSection)
    state: StateSection = Field(default_factory=StateSection)
    audit: AuditSection = Field(default_factory=AuditSection)
    ai: AISection = Field(default_factory=AISection)
    feed: FeedSection
    gas: GasSection = Field(default_factory=GasSection)
    executor: ExecutorSection = Field(default_factory=ExecutorSection)
    alerts: AlertsSection = Field(default_factory=AlertsSection)
    metrics: MetricsSection = Field(default_factory=MetricsSection)


def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return f"Malformed YAML in {file_path}: {error}"
    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / filename)
        schema.model_validate(config)
        logger.info(f"✅ {filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            errors.append(f"{filename}: {field}: {error['msg']}")
    return errors


def validate_policy(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "policy.yaml", PolicySchema)


def validate_app(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Logical consistency checks across configuration files.

    Detects:
    - Fallback strategy targeting a protocol the safety whitelist rejects
    - Fallback strategy on a chain the pipeline never scans
    - LIVE mode with the mock proposer or a static opportunity file
    """
    errors = []
    policy = load_yaml_file(config_dir / "policy.yaml")
    app = load_yaml_file(config_dir / "app.yaml")

    whitelist = [p.lower() for p in policy["safety"]["protocol_whitelist"]]
    fallback = (policy["pipeline"].get("fallback") or {}).get("protocol", "aave").lower()
    if fallback not in whitelist:
        errors.append(
            f"CONTRADICTION: pipeline.fallback.protocol={fallback} is not in "
            f"safety.protocol_whitelist; every fallback strategy would be rejected."
        )

    chains = [c.lower() for c in policy["pipeline"]["chains"]]
    fallback_chain = (policy["pipeline"].get("fallback") or {}).get("chain", "ethereum").lower()
    if fallback_chain not in chains:
        errors.append(
            f"CONTRADICTION: pipeline.fallback.chain={fallback_chain} is not a scanned chain {chains}."
        )

    mode = str((app.get("app") or {}).get("mode", "DRY_RUN")).upper()
    if mode == "LIVE":
        if (app.get("ai") or {}).get("provider", "mock") == "mock":
            errors.append("UNSAFE: app.mode=LIVE with ai.provider=mock.")
        if (app.get("feed") or {}).get("provider") == "static":
            errors.append("UNSAFE: app.mode=LIVE with a static opportunity feed.")

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency), only if the schemas pass

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_policy(config_path))
    all_errors.extend(validate_app(config_path))

    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"
    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
