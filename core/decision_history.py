"""
yield-allocator Core: Decision History

Append-only record of committed investments and pipeline decisions,
plus outcome tracking and simple lessons-learned analysis.

Reads are best-effort: a store outage yields empty results so the safety
checks and analysis degrade instead of crashing. Writes propagate
StoreUnavailable to the caller.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
import logging
import uuid

from core.exceptions import StoreUnavailable
from core.models import Position, Strategy, parse_timestamp

logger = logging.getLogger(__name__)

COMMITTED_STATUSES = ("pending", "confirmed")
LESSONS_LOOKBACK = 50
PATTERN_MIN_OCCURRENCES = 2


class DecisionHistory:
    """Investment and decision history backed by the shared StateStore."""

    def __init__(self, state_store, clock: Optional[Callable[[], datetime]] = None):
        self.state_store = state_store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _read(self, key: str) -> List[Dict[str, Any]]:
        try:
            rows = self.state_store.load().get(key) or []
        except StoreUnavailable as e:
            logger.error(f"Failed to read {key} history: {e}")
            return []
        return [r for r in rows if isinstance(r, dict)]

    # ─── Investments ───────────────────────────────────────────────────────

    def record_investment(self,
                          user_address: str,
                          strategy: Strategy,
                          opportunity_id: Optional[str] = None,
                          status: str = "pending",
                          tx_hash: Optional[str] = None) -> Dict[str, Any]:
        entry = {
            "id": uuid.uuid4().hex,
            "user_address": user_address,
            "opportunity_id": opportunity_id or f"{strategy.protocol}:{strategy.chain}",
            "protocol": strategy.protocol,
            "chain": strategy.chain,
            "action": strategy.action,
            "amount": float(strategy.amount),
            "expected_apy": float(strategy.expected_apy),
            "status": status,
            "tx_hash": tx_hash,
            "invested_at": self._clock().isoformat(),
            "withdrawn_at": None,
        }
        self.state_store.mutate(lambda state: state.setdefault("investments", []).append(entry))
        logger.info(
            f"Recorded investment {entry['id'][:8]}: ${entry['amount']:,.0f} "
            f"into {entry['protocol']} on {entry['chain']}"
        )
        return entry

    def investments_since(self, since: datetime, user_address: Optional[str] = None) -> List[Dict[str, Any]]:
        rows = []
        for inv in self._read("investments"):
            if inv.get("status") not in COMMITTED_STATUSES:
                continue
            if user_address is not None and inv.get("user_address") != user_address:
                continue
            ts = parse_timestamp(inv.get("invested_at"))
            if ts is not None and ts >= since:
                rows.append(inv)
        return rows

    def spent_since(self, since: datetime, user_address: Optional[str] = None) -> float:
        return sum(float(inv.get("amount") or 0) for inv in self.investments_since(since, user_address))

    def spent_today(self, user_address: Optional[str] = None) -> float:
        now = self._clock()
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return self.spent_since(start, user_address)

    def recent_investments(self,
                           protocol: str,
                           chain: Optional[str] = None,
                           window_minutes: float = 60) -> List[Dict[str, Any]]:
        """Committed investments into protocol (case-insensitive), optionally on one chain."""
        since = self._clock() - timedelta(minutes=window_minutes)
        needle = (protocol or "").lower()
        rows = []
        for inv in self.investments_since(since):
            if (inv.get("protocol") or "").lower() != needle:
                continue
            if chain is not None and inv.get("chain") != chain:
                continue
            rows.append(inv)
        rows.sort(key=lambda r: r.get("invested_at") or "", reverse=True)
        return rows

    def open_positions(self, user_address: str) -> List[Position]:
        """Aggregate un-withdrawn committed investments into positions per opportunity."""
        totals: Dict[str, Dict[str, Any]] = {}
        for inv in self._read("investments"):
            if inv.get("user_address") != user_address:
                continue
            if inv.get("status") not in COMMITTED_STATUSES or inv.get("withdrawn_at"):
                continue
            if inv.get("action", "deposit") != "deposit":
                continue
            key = inv.get("opportunity_id")
            agg = totals.setdefault(key, {
                "opportunity_id": key,
                "amount": 0.0,
                "chain": inv.get("chain"),
                "protocol_name": inv.get("protocol"),
                "expected_apy": inv.get("expected_apy"),
                "invested_at": inv.get("invested_at"),
            })
            agg["amount"] += float(inv.get("amount") or 0)
        return [Position.from_dict(row) for row in totals.values()]

    # ─── Decisions ─────────────────────────────────────────────────────────

    def record_decision(self, user_address: str, decision: Dict[str, Any]) -> str:
        decision_id = uuid.uuid4().hex
        entry = {
            "id": decision_id,
            "user_address": user_address,
            "decision_type": decision.get("type") or "autonomous_strategy",
            "reasoning": decision.get("reasoning") or [],
            "strategy": decision.get("strategy"),
            "outcome": "pending",
            "actual_return": None,
            "lessons": None,
            "created_at": self._clock().isoformat(),
            "completed_at": None,
        }
        self.state_store.mutate(lambda state: state.setdefault("decisions", []).append(entry))
        logger.info(f"Agent decision stored for {user_address} (id={decision_id[:8]})")
        return decision_id

    def recent_decisions(self, user_address: str, limit: int = 10) -> List[Dict[str, Any]]:
        rows = [d for d in self._read("decisions") if d.get("user_address") == user_address]
        rows.sort(key=lambda d: d.get("created_at") or "", reverse=True)
        return rows[:limit]

    def last_decision_time(self, user_address: str) -> Optional[datetime]:
        recent = self.recent_decisions(user_address, limit=1)
        if not recent:
            return None
        return parse_timestamp(recent[0].get("created_at"))

    def record_outcome(self,
                       decision_id: str,
                       status: str = "completed",
                       actual_return: Optional[float] = None,
                       lessons: Optional[Dict[str, Any]] = None) -> bool:
        found = []
        completed_at = self._clock().isoformat()

        def apply(state):
            for decision in state.get("decisions") or []:
                if decision.get("id") == decision_id:
                    decision["outcome"] = status
                    decision["actual_return"] = actual_return
                    decision["lessons"] = lessons or {}
                    decision["completed_at"] = completed_at
                    found.append(decision_id)
                    break

        try:
            self.state_store.mutate(apply)
        except StoreUnavailable as e:
            logger.error(f"Failed to record outcome for {decision_id}: {e}")
            return False

        if not found:
            logger.warning(f"Decision {decision_id} not found; outcome dropped")
            return False
        logger.info(f"Decision outcome recorded: {decision_id[:8]} -> {status} (return={actual_return})")
        return True

    # ─── Analysis ──────────────────────────────────────────────────────────

    def performance_metrics(self, user_address: str, days: int = 90) -> Dict[str, Any]:
        since = self._clock() - timedelta(days=days)
        decisions = []
        for d in self._read("decisions"):
            if d.get("user_address") != user_address:
                continue
            ts = parse_timestamp(d.get("created_at"))
            if ts is not None and ts > since:
                decisions.append(d)

        total = len(decisions)
        successes = [d for d in decisions if d.get("outcome") == "success"]
        failed = [d for d in decisions if d.get("outcome") == "failed"]
        pending = [d for d in decisions if d.get("outcome") == "pending"]
        success_returns = [float(d["actual_return"]) for d in successes if d.get("actual_return") is not None]
        all_returns = [float(d["actual_return"]) for d in decisions if d.get("actual_return") is not None]
        positive = [r for r in success_returns if r > 0]

        return {
            "total_decisions": total,
            "success_rate": (len(successes) / total) * 100 if total else 0.0,
            "failed_decisions": len(failed),
            "pending_decisions": len(pending),
            "avg_return": sum(success_returns) / len(success_returns) if success_returns else 0.0,
            "total_return": sum(success_returns),
            "best_return": max(all_returns) if all_returns else 0.0,
            "worst_return": min(positive) if positive else 0.0,
        }

    def lessons_learned(self, user_address: str) -> Dict[str, List[Dict[str, Any]]]:
        """Patterns in settled decisions and coarse recommendations."""
        decisions = [
            d for d in self.recent_decisions(user_address, limit=10_000)
            if d.get("outcome") != "pending"
        ][:LESSONS_LOOKBACK]

        successful = [d for d in decisions if d.get("outcome") == "success"]
        failed = [d for d in decisions if d.get("outcome") == "failed"]

        recommendations = []
        if successful and len(successful) > len(failed) * 2:
            recommendations.append({
                "type": "positive",
                "message": "Agent performance is strong - consider increasing allocation",
            })
        if len(failed) > len(successful):
            recommendations.append({
                "type": "caution",
                "message": "High failure rate detected - recommend reducing risk tolerance",
            })

        return {
            "success_patterns": self._extract_patterns(successful),
            "failure_patterns": self._extract_patterns(failed),
            "recommendations": recommendations,
        }

    @staticmethod
    def _extract_patterns(decisions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        counts: Dict[str, int] = {}
        for d in decisions:
            protocol = (d.get("strategy") or {}).get("protocol")
            if protocol:
                counts[protocol] = counts.get(protocol, 0) + 1
        return [
            {"type": "protocol_preference", "protocol": protocol, "occurrences": count}
            for protocol, count in counts.items()
            if count > PATTERN_MIN_OCCURRENCES
        ]

    def cleanup(self, days_to_keep: int = 180) -> int:
        """Drop settled decisions older than days_to_keep; pending ones are kept."""
        cutoff = self._clock() - timedelta(days=days_to_keep)
        removed = []

        def apply(state):
            kept = []
            for d in state.get("decisions") or []:
                ts = parse_timestamp(d.get("created_at"))
                if d.get("outcome") != "pending" and ts is not None and ts < cutoff:
                    removed.append(d.get("id"))
                else:
                    kept.append(d)
            state["decisions"] = kept

        try:
            self.state_store.mutate(apply)
        except StoreUnavailable as e:
            logger.error(f"Cleanup failed: {e}")
            return 0
        logger.info(f"Old decisions cleaned up: {len(removed)}")
        return len(removed)
