"""
yield-allocator Core: Audit Logger

Structured audit trail of pipeline runs and circuit breaker transitions
for compliance, debugging, and analysis.
"""

import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit trail logger.

    Logs every run including:
    - Opportunities scanned and the optimizer's plan
    - Candidate strategies and the selected one
    - Safety verdict and violations
    - Execution outcome
    - Why nothing executed (approval, breaker, errors)

    Output format: JSONL (one JSON object per line)
    """

    def __init__(self, audit_file: Optional[str] = None, mode: str = "DRY_RUN"):
        """
        Args:
            audit_file: Path to audit log file (default: logs/audit.jsonl)
            mode: DRY_RUN or LIVE, recorded on every run entry
        """
        self.audit_file = Path(audit_file) if audit_file else Path("logs/audit.jsonl")
        self.mode = mode
        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def log_run(self, state: Any, stage_latencies: Optional[Dict[str, float]] = None) -> None:
        """Log a completed pipeline run (a RunState)."""
        try:
            plan = state.allocation_plan
            selected = state.selected_strategy
            entry = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "type": "pipeline_run",
                "mode": self.mode,
                "run_id": state.run_id,
                "user_address": state.user.user_address,
                "status": self.determine_status(state),
                "iteration": state.iteration,
                "opportunities": len(state.opportunities),
                "allocation": {
                    "total_allocated": plan.total_allocated,
                    "positions": len(plan.allocations),
                    "expected_return": round(plan.expected_return, 4),
                } if plan is not None else None,
                "strategies": len(state.strategies),
                "selected": selected.to_dict() if selected is not None else None,
                "human_approval_required": state.human_approval_required,
                "circuit_breaker_triggered": state.circuit_breaker_triggered,
                "violations": [v.to_dict() for v in state.safety.violations] if state.safety else [],
                "execution": state.execution_result.to_dict() if state.execution_result else None,
                "errors": list(state.errors),
                "reasoning_steps": [step.step for step in state.reasoning],
            }
            if stage_latencies:
                entry["stage_latencies"] = stage_latencies
            self._write(entry)
            logger.debug(f"Audited run {state.run_id[:8]}: status={entry['status']}")
        except (AttributeError, TypeError) as e:
            logger.error(f"Failed to build audit entry: {e}")

    def log_event(self, event_type: str, payload: Optional[Dict[str, Any]] = None) -> None:
        """Log a standalone event (breaker trip, reset, ...)."""
        self._write({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "type": event_type,
            **(payload or {}),
        })

    @staticmethod
    def determine_status(state: Any) -> str:
        if state.execution_result is not None and state.execution_result.success:
            return "EXECUTED"
        if state.circuit_breaker_triggered:
            return "BLOCKED"
        if state.human_approval_required:
            return "AWAITING_APPROVAL"
        if state.errors:
            return "FAILED"
        return "NO_ACTION"

    def _write(self, entry: Dict[str, Any]) -> None:
        try:
            with open(self.audit_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError as e:
            logger.error(f"Failed to write audit log: {e}")

    def get_recent(self, n: int = 10, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Get the N most recent entries, most recent first.

        Args:
            n: Number of entries to retrieve
            event_type: Only entries of this type
        """
        if not self.audit_file.exists():
            return []

        try:
            with open(self.audit_file, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            logger.error(f"Failed to read audit log: {e}")
            return []

        entries = []
        for line in reversed(lines):
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if event_type is not None and entry.get("type") != event_type:
                continue
            entries.append(entry)
            if len(entries) >= n:
                break
        return entries
