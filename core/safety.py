"""
yield-allocator Core: Safety Validator

Hard-limit checks on a single proposed strategy before it may execute.

Every check runs (no short-circuit) so callers see the complete violation
set. The strategy is sanitized first so extreme proposer values cannot slip
past a check. A high-severity verdict can escalate to a circuit breaker trip.
"""

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
import logging
import math

from core.models import SafetyResult, Severity, Strategy, UserContext, Violation, ViolationType
from core.policy import SafetyConfig

logger = logging.getLogger(__name__)

MAX_SANITIZED_AMOUNT = 1e18
MAX_SANITIZED_APY = 1000.0
MIN_RISK_SCORE = 1
MAX_RISK_SCORE = 10


def _finite(value: Any, default: float) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(result):
        return default
    return result


def sanitize_strategy(strategy: Strategy) -> Strategy:
    """
    Clamp numeric fields: amount to a non-negative whole unit, APY to
    [0, 1000], risk score to an integer in [1, 10]. Idempotent.
    """
    amount = min(MAX_SANITIZED_AMOUNT, max(0.0, _finite(strategy.amount, 0.0)))
    amount = float(math.floor(amount))

    apy = min(MAX_SANITIZED_APY, max(0.0, _finite(strategy.expected_apy, 0.0)))

    risk = _finite(strategy.risk_score, MIN_RISK_SCORE)
    risk = min(float(MAX_RISK_SCORE), max(float(MIN_RISK_SCORE), risk))
    risk = float(math.floor(risk + 0.5))

    return replace(strategy, amount=amount, expected_apy=apy, risk_score=risk)


def assess_overall_risk(violations: List[Violation]) -> str:
    if not violations:
        return "none"
    high = sum(1 for v in violations if v.severity == Severity.HIGH)
    medium = sum(1 for v in violations if v.severity == Severity.MEDIUM)
    if high > 0:
        return "high"
    if medium > 1:
        return "medium"
    return "low"


class SafetyValidator:
    """
    Validate strategies against user limits and suspicious-pattern heuristics.

    History lookups (daily spend, recent investments, last decision) are
    best-effort: a missing or failing history counts as no history.
    """

    def __init__(self,
                 config: Optional[SafetyConfig] = None,
                 history=None,
                 circuit_breaker=None,
                 metrics=None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.config = config or SafetyConfig()
        self.history = history
        self.circuit_breaker = circuit_breaker
        self.metrics = metrics
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def sanitize(self, strategy: Strategy) -> Strategy:
        return sanitize_strategy(strategy)

    def validate(self, strategy: Strategy, user: UserContext) -> SafetyResult:
        strategy = sanitize_strategy(strategy)

        violations: List[Violation] = []
        for check in (
            self._check_amount_limit,
            self._check_funds,
            self._check_risk_tolerance,
            self._check_daily_limit,
            self._check_whitelist,
            self._check_rapid_investments,
            self._check_apy,
            self._check_concentration,
            self._check_rate_of_change,
        ):
            violation = check(strategy, user)
            if violation is not None:
                violations.append(violation)

        result = SafetyResult(
            valid=not violations,
            violations=violations,
            risk_level=assess_overall_risk(violations),
        )

        for v in violations:
            logger.warning(f"Safety violation [{v.severity.value}] {v.type.value}: {v.message}")
        if self.metrics is not None:
            self.metrics.record_violations(result.violation_types)
        return result

    def validate_and_escalate(self, strategy: Strategy, user: UserContext) -> SafetyResult:
        """Validate, then trip the breaker on a high verdict when configured to."""
        result = self.validate(strategy, user)
        if result.risk_level == "high" and self.config.trip_on_high_risk:
            primary = next(v for v in result.violations if v.severity == Severity.HIGH)
            self.trigger_circuit_breaker(
                f"Strategy validation failed: {primary.type.value}",
                {
                    "strategy": strategy.to_dict(),
                    "violations": [v.to_dict() for v in result.violations],
                    "user_address": user.user_address,
                },
            )
        return result

    def trigger_circuit_breaker(self, reason: str, context: Optional[Dict[str, Any]] = None) -> None:
        logger.error(f"SECURITY EVENT: SAFETY_VIOLATION_CIRCUIT_BREAKER reason={reason}")
        if self.circuit_breaker is None:
            logger.warning("No circuit breaker wired; safety escalation only logged")
            return
        self.circuit_breaker.trip(reason, context or {})

    # ─── Checks ────────────────────────────────────────────────────────────

    @staticmethod
    def _check_amount_limit(strategy: Strategy, user: UserContext) -> Optional[Violation]:
        if strategy.amount > user.max_investment_per_opp:
            return Violation(
                type=ViolationType.AMOUNT_LIMIT_EXCEEDED,
                severity=Severity.HIGH,
                message=f"Amount ${strategy.amount:,.0f} exceeds max per opportunity ${user.max_investment_per_opp:,.0f}",
                context={"limit": user.max_investment_per_opp, "attempted": strategy.amount},
            )
        return None

    @staticmethod
    def _check_funds(strategy: Strategy, user: UserContext) -> Optional[Violation]:
        if strategy.amount > user.available_funds:
            return Violation(
                type=ViolationType.INSUFFICIENT_FUNDS,
                severity=Severity.HIGH,
                message=f"Insufficient funds: have ${user.available_funds:,.0f}, need ${strategy.amount:,.0f}",
                context={"available": user.available_funds, "required": strategy.amount},
            )
        return None

    @staticmethod
    def _check_risk_tolerance(strategy: Strategy, user: UserContext) -> Optional[Violation]:
        if strategy.risk_score > user.risk_tolerance:
            return Violation(
                type=ViolationType.RISK_TOLERANCE_EXCEEDED,
                severity=Severity.MEDIUM,
                message=f"Risk score {strategy.risk_score:g} exceeds tolerance {user.risk_tolerance:g}",
                context={"risk_score": strategy.risk_score, "tolerance": user.risk_tolerance},
            )
        return None

    def _check_daily_limit(self, strategy: Strategy, user: UserContext) -> Optional[Violation]:
        daily_limit = user.daily_limit or user.max_investment_per_opp * self.config.daily_limit_multiplier
        spent_today = 0.0
        if self.history is not None:
            spent_today = self.history.spent_today(user.user_address)

        if spent_today + strategy.amount > daily_limit:
            return Violation(
                type=ViolationType.DAILY_LIMIT_EXCEEDED,
                severity=Severity.HIGH,
                message=(
                    f"Daily limit exceeded: spent ${spent_today:,.0f}, attempting "
                    f"${strategy.amount:,.0f}, limit ${daily_limit:,.0f}"
                ),
                context={"spent_today": spent_today, "attempted": strategy.amount, "daily_limit": daily_limit},
            )
        return None

    def _check_whitelist(self, strategy: Strategy, user: UserContext) -> Optional[Violation]:
        if (strategy.protocol or "").lower() not in self.config.protocol_whitelist:
            return Violation(
                type=ViolationType.PROTOCOL_NOT_WHITELISTED,
                severity=Severity.HIGH,
                message=f"Protocol {strategy.protocol} is not whitelisted",
                context={"protocol": strategy.protocol},
            )
        return None

    def _check_rapid_investments(self, strategy: Strategy, user: UserContext) -> Optional[Violation]:
        if self.history is None:
            return None
        window = self.config.rapid_investment_window_minutes
        recent = self.history.recent_investments(strategy.protocol, strategy.chain, window_minutes=window)
        if len(recent) >= self.config.rapid_investment_threshold:
            return Violation(
                type=ViolationType.RAPID_REPEATED_INVESTMENTS,
                severity=Severity.MEDIUM,
                message=f"{len(recent)} investments to {strategy.protocol} in last {window:g} minutes",
                context={"count": len(recent), "window_minutes": window},
            )
        return None

    def _check_apy(self, strategy: Strategy, user: UserContext) -> Optional[Violation]:
        if strategy.expected_apy > self.config.max_realistic_apy:
            return Violation(
                type=ViolationType.UNREALISTIC_APY,
                severity=Severity.HIGH,
                message=f"APY of {strategy.expected_apy:g}% exceeds realistic threshold",
                context={"apy": strategy.expected_apy},
            )
        return None

    def _check_concentration(self, strategy: Strategy, user: UserContext) -> Optional[Violation]:
        if strategy.amount > user.available_funds * self.config.concentration_fraction:
            pct = (strategy.amount / user.available_funds) * 100 if user.available_funds else 100.0
            return Violation(
                type=ViolationType.HIGH_CONCENTRATION,
                severity=Severity.MEDIUM,
                message=f"Strategy uses {pct:.1f}% of available funds",
                context={"percentage": pct},
            )
        return None

    def _check_rate_of_change(self, strategy: Strategy, user: UserContext) -> Optional[Violation]:
        if self.history is None:
            return None
        last = self.history.last_decision_time(user.user_address)
        if last is None:
            return None
        minutes = (self._clock() - last).total_seconds() / 60
        if minutes < self.config.min_minutes_between_decisions:
            return Violation(
                type=ViolationType.RAPID_STRATEGY_CHANGES,
                severity=Severity.MEDIUM,
                message=f"Strategy changed {minutes:.1f} minutes after last decision",
                context={"time_since_last_minutes": round(minutes, 2)},
            )
        return None
