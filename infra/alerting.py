"""Webhook alerting for circuit breaker trips, resets and other operator events."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional

import requests

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name.lower()

    @classmethod
    def from_string(cls, value: str, default: Optional["AlertSeverity"] = None) -> "AlertSeverity":
        if not value:
            return default or cls.WARNING
        normalized = value.strip().lower()
        for member in cls:
            if member.name.lower() == normalized:
                return member
        return default or cls.WARNING


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity = AlertSeverity.INFO
    dry_run: bool = False
    timeout: float = 5.0
    dedupe_seconds: float = 60.0
    history_limit: int = 100


@dataclass
class SentAlert:
    severity: AlertSeverity
    title: str
    message: str
    context: Dict[str, Any]
    delivered: bool


class AlertService:
    """
    Send notifications for operator-relevant agent events.

    Identical alerts (severity, title, message) within dedupe_seconds are
    suppressed. In dry-run mode alerts are only logged.
    """

    def __init__(self, config: AlertConfig, monotonic: Optional[Callable[[], float]] = None) -> None:
        self._config = config
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Alerting enabled but no webhook URL set; disabling alerts")
        self._monotonic = monotonic or time.monotonic
        self._last_sent: Dict[str, float] = {}
        self.history: Deque[SentAlert] = deque(maxlen=max(1, config.history_limit))

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]]) -> "AlertService":
        raw_config = raw_config or {}

        webhook_url = raw_config.get("webhook_url")
        if webhook_url and "${" in webhook_url:
            webhook_url = os.path.expandvars(webhook_url)
        if not webhook_url:
            env_key = raw_config.get("webhook_env", "ALERT_WEBHOOK_URL")
            webhook_url = os.getenv(env_key, "")

        config = AlertConfig(
            enabled=bool(raw_config.get("enabled", False)),
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.from_string(raw_config.get("min_severity", "info"), default=AlertSeverity.INFO),
            dry_run=bool(raw_config.get("dry_run", False)),
            timeout=float(raw_config.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw_config.get("dedupe_seconds", 60.0)),
            history_limit=int(raw_config.get("history_limit", 100)),
        )
        return cls(config)

    def is_enabled(self) -> bool:
        return self._enabled

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Returns True when the alert was sent (or logged in dry-run)."""
        if not self._enabled:
            return False
        if severity.value < self._config.min_severity.value:
            return False

        fingerprint = self._fingerprint(severity, title, message)
        now = self._monotonic()
        last = self._last_sent.get(fingerprint)
        if last is not None and now - last < self._config.dedupe_seconds:
            logger.debug(f"Alert deduped: {title} (fingerprint={fingerprint[:8]}...)")
            return False
        self._last_sent[fingerprint] = now
        self._prune(now)

        delivered = self._send(severity, title, message, context or {})
        self.history.append(SentAlert(severity, title, message, dict(context or {}), delivered))
        return delivered

    @staticmethod
    def _fingerprint(severity: AlertSeverity, title: str, message: str) -> str:
        content = f"{severity.name}|{title}|{message}"
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    def _prune(self, now: float) -> None:
        horizon = max(self._config.dedupe_seconds, 60.0) * 5
        for fp in [fp for fp, ts in self._last_sent.items() if now - ts > horizon]:
            del self._last_sent[fp]

    def _send(self, severity: AlertSeverity, title: str, message: str, context: Dict[str, Any]) -> bool:
        if self._config.dry_run:
            logger.info("[ALERT:%s] %s - %s | %s", severity.name, title, message, context)
            return True

        payload = self._build_payload(severity, title, message, context)
        try:
            response = requests.post(self._config.webhook_url, json=payload, timeout=self._config.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as exc:
            logger.error("Failed to deliver alert '%s': %s", title, exc)
            return False
        return True

    @staticmethod
    def _build_payload(
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Dict[str, Any],
    ) -> Dict[str, Any]:
        line_items = [f"[{severity.name}] {title}", message]
        if context:
            line_items.append(f"context={json.dumps(context, sort_keys=True, default=str)}")
        return {"text": " | ".join(filter(None, line_items))}


__all__ = ["AlertConfig", "AlertService", "AlertSeverity"]
