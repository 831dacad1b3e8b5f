"""
Contest Engine Core: Settlement Audit Log

Append-only JSONL trail of every settlement decision: state transitions,
winner calculations, reward batches and reconciliation outcomes.
"""

import json
import threading
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
import logging

logger = logging.getLogger(__name__)


class SettlementAuditLog:
    """
    Structured audit trail.

    Output format: JSONL (one JSON object per line). Write failures are logged
    and swallowed; auditing never breaks settlement.
    """

    def __init__(self, audit_file: Optional[str] = None):
        """
        Args:
            audit_file: Path to audit log file (default: logs/settlement_audit.jsonl)
        """
        self.audit_file = Path(audit_file) if audit_file else Path("logs/settlement_audit.jsonl")
        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        logger.info(f"Initialized SettlementAuditLog at {self.audit_file}")

    def _write(self, event: str, payload: Dict[str, Any], ts: Optional[datetime] = None) -> None:
        entry = {
            "timestamp": (ts or datetime.now(timezone.utc)).isoformat(),
            "event": event,
            **payload,
        }
        try:
            line = json.dumps(entry, default=str)
            with self._lock:
                with open(self.audit_file, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
            logger.debug(f"Audited {event}")
        except Exception as e:
            logger.error(f"Failed to write audit log: {e}")

    def log_transition(
        self,
        game_id: int,
        from_status: str,
        to_status: str,
        reason: Optional[str] = None,
        ts: Optional[datetime] = None,
    ) -> None:
        self._write("game_transition", {
            "game_id": game_id,
            "from": from_status,
            "to": to_status,
            "reason": reason,
        }, ts)

    def log_settlement(self, game_id: int, win_condition: str, result: Any, ts: Optional[datetime] = None) -> None:
        """Full ranking with rewards plus the undistributed remainder."""
        self._write("winners_calculated", {
            "game_id": game_id,
            "win_condition": win_condition,
            "prize_pool": str(result.prize_pool),
            "total_awarded": str(result.total_awarded),
            "undistributed": str(result.prize_pool - result.total_awarded),
            "placements": [
                {
                    "portfolio_id": p.portfolio_id,
                    "user_id": p.user_id,
                    "rank": p.rank,
                    "is_winner": p.is_winner,
                    "reward": str(p.reward),
                    "performance": p.performance_percentage,
                    "system_opponent": p.is_system_opponent,
                }
                for p in result.placements
            ],
        }, ts)

    def log_reward_batch(
        self,
        game_id: int,
        portfolio_ids: Sequence[int],
        amounts: Sequence[int],
        ref: Optional[str],
        outcome: str,
        error: Optional[str] = None,
        ts: Optional[datetime] = None,
    ) -> None:
        self._write("reward_batch", {
            "game_id": game_id,
            "portfolio_ids": list(portfolio_ids),
            "amounts": [str(a) for a in amounts],
            "ref": ref,
            "outcome": outcome,
            "error": error,
        }, ts)

    def log_reconciliation(
        self,
        portfolio_id: int,
        game_id: int,
        outcome: str,
        detail: Optional[str] = None,
        ts: Optional[datetime] = None,
    ) -> None:
        self._write("reconciliation", {
            "portfolio_id": portfolio_id,
            "game_id": game_id,
            "outcome": outcome,
            "detail": detail,
        }, ts)

    def get_recent(self, n: int = 10) -> List[Dict[str, Any]]:
        """
        Get the N most recent audit entries (most recent first).
        """
        if not self.audit_file.exists():
            return []

        try:
            with open(self.audit_file, "r", encoding="utf-8") as f:
                lines = f.readlines()

            entries = []
            for line in lines[-n:]:
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    continue

            return list(reversed(entries))

        except Exception as e:
            logger.error(f"Failed to read audit log: {e}")
            return []
