"""Prometheus-backed metrics hooks for the decision pipeline and its safety layers."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, generate_latest, start_http_server

logger = logging.getLogger(__name__)


class MetricsRecorder:
    """
    Expose pipeline, breaker and risk-cache stats via Prometheus.

    Each recorder owns its CollectorRegistry, so several recorders (one per
    runner, one per test) never collide on metric registration. When
    disabled, snapshots are still tracked but nothing is observed.
    """

    def __init__(self, enabled: bool = True, port: int = 9100, registry: Optional[CollectorRegistry] = None) -> None:
        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.registry = registry or CollectorRegistry()

        self._last_run_outcome: Optional[str] = None
        self._violation_counts: Dict[str, int] = {}

        self._run_counter = Counter(
            "agent_pipeline_runs_total",
            "Pipeline runs by outcome",
            labelnames=("outcome",),
            registry=self.registry,
        )
        self._stage_summary = Summary(
            "agent_stage_duration_seconds",
            "Duration of pipeline stages",
            labelnames=("stage",),
            registry=self.registry,
        )
        self._violation_counter = Counter(
            "agent_safety_violations_total",
            "Safety violations by type",
            labelnames=("type",),
            registry=self.registry,
        )
        self._breaker_gauge = Gauge(
            "agent_circuit_breaker_open",
            "Circuit breaker state (1=paused, 0=closed)",
            registry=self.registry,
        )
        self._breaker_trips_counter = Counter(
            "agent_circuit_breaker_trips_total",
            "Circuit breaker trips by reason",
            labelnames=("reason",),
            registry=self.registry,
        )
        self._breaker_failures_counter = Counter(
            "agent_circuit_breaker_failures_total",
            "Failures recorded against the circuit breaker by key",
            labelnames=("key",),
            registry=self.registry,
        )
        self._risk_cache_counter = Counter(
            "agent_risk_cache_requests_total",
            "Risk score cache lookups by result",
            labelnames=("result",),
            registry=self.registry,
        )
        self._proposer_fallback_counter = Counter(
            "agent_proposer_fallbacks_total",
            "Deterministic fallback strategies used, by reason",
            labelnames=("reason",),
            registry=self.registry,
        )

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port, registry=self.registry)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    # ─── Pipeline ──────────────────────────────────────────────────────────

    def record_run(self, outcome: str) -> None:
        self._last_run_outcome = outcome
        if self._enabled:
            self._run_counter.labels(outcome=outcome).inc()

    def record_stage(self, stage: str, duration: float) -> None:
        if self._enabled:
            self._stage_summary.labels(stage=stage).observe(duration)

    def record_proposer_fallback(self, reason: str) -> None:
        if self._enabled:
            self._proposer_fallback_counter.labels(reason=reason).inc()

    def record_violations(self, types: Iterable[str]) -> None:
        for violation_type in types:
            self._violation_counts[violation_type] = self._violation_counts.get(violation_type, 0) + 1
            if self._enabled:
                self._violation_counter.labels(type=violation_type).inc()

    def record_risk_cache(self, hit: bool) -> None:
        if self._enabled:
            self._risk_cache_counter.labels(result="hit" if hit else "miss").inc()

    # ─── Circuit breaker ───────────────────────────────────────────────────

    def record_breaker_failure(self, key: str) -> None:
        if self._enabled:
            self._breaker_failures_counter.labels(key=key).inc()

    def record_breaker_trip(self, reason: str) -> None:
        if self._enabled:
            # Bound label cardinality: "Strategy validation failed: X" -> "Strategy validation failed"
            self._breaker_trips_counter.labels(reason=reason.split(":")[0][:64]).inc()
            self._breaker_gauge.set(1)

    def record_breaker_reset(self) -> None:
        if self._enabled:
            self._breaker_gauge.set(0)

    # ─── Snapshots ─────────────────────────────────────────────────────────

    def violation_snapshot(self) -> Dict[str, int]:
        return dict(self._violation_counts)

    def last_run_outcome(self) -> Optional[str]:
        return self._last_run_outcome

    def render(self) -> bytes:
        """Prometheus text exposition of this recorder's registry."""
        return generate_latest(self.registry)
