"""
yield-allocator Core: Circuit Breaker

Pauses all new deployments after repeated failures until an operator resets it.

States:
- Closed: operations proceed
- Paused: new deployments blocked; withdrawals optionally allowed

Failures are kept as timestamped events per key; the rolling count is the
number of events younger than the window. Reaching the threshold trips the
breaker. The paused flag lives in the StateStore so every process sees it.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
import logging
import threading

from core.exceptions import StoreUnavailable
from core.models import BreakerStatus, parse_timestamp
from core.policy import BreakerConfig
from infra.alerting import AlertSeverity

logger = logging.getLogger(__name__)

UNVERIFIED_REASON = "Unable to verify status"


@dataclass
class PauseDecision:
    blocked: bool
    reason: Optional[str] = None
    paused_at: Optional[datetime] = None
    allowed_operations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "blocked": self.blocked,
            "reason": self.reason,
            "paused_at": self.paused_at.isoformat() if self.paused_at else None,
            "allowed_operations": list(self.allowed_operations),
        }


class CircuitBreaker:
    """
    Failure-triggered global pause.

    Explicitly constructed and injected; close() releases in-memory state.
    """

    def __init__(self,
                 state_store,
                 config: Optional[BreakerConfig] = None,
                 audit_logger=None,
                 alert_service=None,
                 metrics=None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.state_store = state_store
        self.config = config or BreakerConfig()
        self.audit_logger = audit_logger
        self.alert_service = alert_service
        self.metrics = metrics
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.RLock()
        self._failures: Dict[str, List[datetime]] = {}
        # Set when a trip could not be persisted; keeps this process paused
        self._unpersisted_trip: Optional[BreakerStatus] = None

        logger.info(
            f"Initialized CircuitBreaker (threshold={self.config.threshold}, "
            f"window={self.config.window_seconds:.0f}s)"
        )

    # ─── Failure accounting ────────────────────────────────────────────────

    def _prune(self, key: str, now: datetime) -> List[datetime]:
        window = timedelta(seconds=self.config.window_seconds)
        events = [ts for ts in self._failures.get(key, []) if now - ts < window]
        if events:
            self._failures[key] = events
        else:
            self._failures.pop(key, None)
        return events

    def failure_count(self, key: str) -> int:
        with self._lock:
            return len(self._prune(key, self._clock()))

    def record_failure(self, key: str, context: Optional[Dict[str, Any]] = None) -> int:
        """
        Record one failure for key and trip when the rolling count reaches the threshold.

        Returns:
            Rolling failure count for key after this event (0 if it tripped)
        """
        now = self._clock()
        with self._lock:
            events = self._prune(key, now)
            events.append(now)
            self._failures[key] = events
            count = len(events)

        logger.warning(f"Circuit breaker failure recorded: {key} ({count}/{self.config.threshold}) {context or {}}")
        if self.metrics is not None:
            self.metrics.record_breaker_failure(key)

        if count >= self.config.threshold:
            self.trip(key, {**(context or {}), "failure_count": count})
            return 0
        return count

    # ─── Transitions ───────────────────────────────────────────────────────

    def trip(self, reason: str, context: Optional[Dict[str, Any]] = None) -> BreakerStatus:
        """Pause operations. Tripping while paused only overwrites the reason."""
        context = context or {}
        now = self._clock()
        logger.error(f"🔴 CIRCUIT BREAKER TRIPPED: {reason} {context}")

        def apply(state):
            record = state.setdefault("circuit_breaker", {})
            if not record.get("is_paused"):
                record["paused_at"] = now.isoformat()
            record["is_paused"] = True
            record["reason"] = reason
            record["paused_by"] = "system"

        status = BreakerStatus(is_paused=True, reason=reason, paused_at=now)
        try:
            written = self.state_store.mutate(apply)
            record = written.get("circuit_breaker", {})
            status.paused_at = parse_timestamp(record.get("paused_at")) or now
            self._unpersisted_trip = None
        except StoreUnavailable as e:
            logger.error(f"Failed to persist circuit breaker trip: {e}")
            self._unpersisted_trip = status

        with self._lock:
            self._failures.clear()

        if self.audit_logger is not None:
            self.audit_logger.log_event("circuit_breaker_triggered", {
                "reason": reason,
                "context": context,
                "threshold": self.config.threshold,
            })
        if self.alert_service is not None:
            self.alert_service.notify(
                severity=AlertSeverity.CRITICAL,
                title="Circuit Breaker Triggered",
                message=f"Agent operations paused due to: {reason}",
                context=context,
            )
        if self.metrics is not None:
            self.metrics.record_breaker_trip(reason)
        return status

    def reset(self, reset_by: str = "admin") -> None:
        """
        Resume operations. The only way out of the paused state.

        Raises:
            StoreUnavailable: the cleared flag could not be persisted
        """
        logger.info(f"✅ Circuit breaker reset by: {reset_by}")

        def apply(state):
            state["circuit_breaker"] = {
                "is_paused": False,
                "reason": None,
                "paused_at": None,
                "paused_by": None,
            }

        self.state_store.mutate(apply)
        self._unpersisted_trip = None
        with self._lock:
            self._failures.clear()

        if self.audit_logger is not None:
            self.audit_logger.log_event("emergency_pause_released", {"reset_by": reset_by})
        if self.alert_service is not None:
            self.alert_service.notify(
                severity=AlertSeverity.INFO,
                title="Circuit Breaker Reset",
                message=f"Agent operations resumed by {reset_by}",
            )
        if self.metrics is not None:
            self.metrics.record_breaker_reset()

    # ─── Gates ─────────────────────────────────────────────────────────────

    def is_tripped(self) -> BreakerStatus:
        """Persisted status; any read failure is reported as paused."""
        if self._unpersisted_trip is not None:
            return self._unpersisted_trip
        try:
            record = self.state_store.load().get("circuit_breaker") or {}
        except StoreUnavailable as e:
            logger.error(f"Error checking circuit breaker: {e}")
            return BreakerStatus(is_paused=True, reason=UNVERIFIED_REASON, paused_at=None)

        return BreakerStatus(
            is_paused=bool(record.get("is_paused", False)),
            reason=record.get("reason"),
            paused_at=parse_timestamp(record.get("paused_at")),
        )

    def check_emergency_pause(self,
                              is_withdrawal: bool = False,
                              allow_withdrawals: Optional[bool] = None) -> PauseDecision:
        """
        Block/allow decision for one request class.

        Withdrawals pass while paused when allowed, so users can always exit.
        """
        if allow_withdrawals is None:
            allow_withdrawals = self.config.allow_withdrawals

        status = self.is_tripped()
        if not status.is_paused:
            return PauseDecision(blocked=False)

        if is_withdrawal and allow_withdrawals:
            return PauseDecision(
                blocked=False,
                reason=status.reason,
                paused_at=status.paused_at,
                allowed_operations=["withdrawals"],
            )

        return PauseDecision(
            blocked=True,
            reason=status.reason,
            paused_at=status.paused_at,
            allowed_operations=["withdrawals"] if allow_withdrawals else [],
        )

    def get_stats(self) -> Dict[str, Dict[str, int]]:
        now = self._clock()
        stats = {}
        with self._lock:
            for key in list(self._failures):
                count = len(self._prune(key, now))
                if count:
                    stats[key] = {
                        "failures": count,
                        "threshold": self.config.threshold,
                        "will_trip_at": self.config.threshold - count,
                    }
        return stats

    def close(self) -> None:
        with self._lock:
            self._failures.clear()
        logger.debug("CircuitBreaker closed")
