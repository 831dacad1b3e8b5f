"""Operator alerts for settlement incidents, delivered to a webhook."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

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
    min_severity: AlertSeverity
    dry_run: bool
    timeout: float = 5.0
    dedupe_seconds: float = 300.0
    escalation_seconds: float = 900.0
    escalation_webhook_url: Optional[str] = None
    escalation_severity_boost: int = 1


@dataclass
class AlertRecord:
    """One incident: the first time it fired and what has happened since."""
    fingerprint: str
    title: str
    game_id: Optional[int]
    first_seen: float
    last_sent: float
    count: int = 1
    escalated: bool = False
    resolved: bool = False


class AlertService:
    """
    Send notifications for settlement incidents.

    Alerts are fingerprinted on severity and title, so repeats of the same
    incident are suppressed for `dedupe_seconds` even when the message
    carries a changing detail; a game stuck for an hour pages once per
    window rather than once per tick.

    An incident still firing `escalation_seconds` after it first fired is
    escalated once: severity is boosted and the alert goes to the escalation
    webhook when one is set. `resolve_game` closes every open incident for a
    game once it settles.
    """

    def __init__(self, config: AlertConfig) -> None:
        self._config = config
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not config.webhook_url and not config.dry_run:
            logger.warning("Alerting enabled but no webhook URL set; disabling alerts")
        self._history: Dict[str, AlertRecord] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]]) -> "AlertService":
        raw_config = raw_config or {}

        webhook_url = raw_config.get("webhook_url")
        if webhook_url and "${" in webhook_url:
            webhook_url = os.path.expandvars(webhook_url)
        if not webhook_url:
            webhook_url = os.getenv(raw_config.get("webhook_env", "ALERT_WEBHOOK_URL"), "")

        escalation_url = raw_config.get("escalation_webhook_url")
        if escalation_url and "${" in escalation_url:
            escalation_url = os.path.expandvars(escalation_url)

        config = AlertConfig(
            enabled=bool(raw_config.get("enabled", False)),
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.from_string(raw_config.get("min_severity", "warning")),
            dry_run=bool(raw_config.get("dry_run", False)),
            timeout=float(raw_config.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw_config.get("dedupe_seconds", 300.0)),
            escalation_seconds=float(raw_config.get("escalation_seconds", 900.0)),
            escalation_webhook_url=escalation_url or None,
            escalation_severity_boost=int(raw_config.get("escalation_severity_boost", 1)),
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
        """Returns True when the alert was delivered (or logged in dry-run)."""
        if not self._enabled:
            return False
        if severity.value < self._config.min_severity.value:
            return False

        fingerprint = hashlib.sha256(f"{severity.name}|{title}".encode("utf-8")).hexdigest()
        now = time.monotonic()
        with self._lock:
            record = self._history.get(fingerprint)
            if record is None or record.resolved:
                record = AlertRecord(
                    fingerprint=fingerprint,
                    title=title,
                    game_id=(context or {}).get("game_id"),
                    first_seen=now,
                    last_sent=now,
                )
                self._history[fingerprint] = record
                escalate = False
            else:
                record.count += 1
                escalate = not record.escalated and now - record.first_seen >= self._config.escalation_seconds
                if not escalate and now - record.last_sent < self._config.dedupe_seconds:
                    logger.debug(f"Alert deduped: {title} ({record.count} occurrences)")
                    return False
                record.last_sent = now
                if escalate:
                    record.escalated = True
            open_seconds = int(now - record.first_seen)
            count = record.count

        webhook_url = self._config.webhook_url
        if escalate:
            severity = self._boost(severity, self._config.escalation_severity_boost)
            title = f"ESCALATED: {title}"
            message = f"{message} (unresolved for {open_seconds}s, {count} occurrences)"
            context = {**(context or {}), "escalated": True, "occurrence_count": count}
            webhook_url = self._config.escalation_webhook_url or webhook_url
            logger.warning(f"Escalating alert: {title}")

        return self._send(severity, title, message, context, webhook_url)

    def resolve_game(self, game_id: int) -> int:
        """Close open incidents for a game. Returns how many were open."""
        resolved = 0
        with self._lock:
            for record in self._history.values():
                if record.game_id == game_id and not record.resolved:
                    record.resolved = True
                    resolved += 1
        if resolved:
            logger.info(f"Resolved {resolved} alert(s) for game {game_id}")
        return resolved

    def open_incidents(self) -> List[AlertRecord]:
        with self._lock:
            return [r for r in self._history.values() if not r.resolved]

    def _send(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
        webhook_url: Optional[str],
    ) -> bool:
        payload = self._build_payload(severity, title, message, context)
        if self._config.dry_run:
            logger.info("[ALERT:%s] %s - %s | %s", severity.name, title, message, context or {})
            return True

        try:
            response = requests.post(webhook_url, json=payload, timeout=self._config.timeout)
            response.raise_for_status()
            return True
        except requests.exceptions.RequestException as exc:
            logger.error("Failed to deliver alert '%s': %s", title, exc)
            return False

    @staticmethod
    def _boost(severity: AlertSeverity, levels: int) -> AlertSeverity:
        ordered = [AlertSeverity.INFO, AlertSeverity.WARNING, AlertSeverity.CRITICAL]
        index = min(ordered.index(severity) + max(levels, 0), len(ordered) - 1)
        return ordered[index]

    def game_failed(self, game_id: int, reason: str) -> bool:
        return self.notify(
            AlertSeverity.CRITICAL,
            f"Game {game_id} failed",
            reason,
            {"game_id": game_id},
        )

    def distribution_abandoned(self, game_id: int, attempts: int, error: str) -> bool:
        return self.notify(
            AlertSeverity.CRITICAL,
            f"Reward distribution stalled for game {game_id}",
            f"Ledger payout failed after {attempts} attempts: {error}",
            {"game_id": game_id, "attempts": attempts},
        )

    def stuck_game(self, game_id: int, status: str, minutes: float) -> bool:
        return self.notify(
            AlertSeverity.WARNING,
            f"Game {game_id} stuck in {status}",
            "No status change; settlement handlers may be failing",
            {"game_id": game_id, "status": status, "minutes": round(minutes)},
        )

    @staticmethod
    def _build_payload(
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        line_items = [f"[{severity.name}] {title}", message]
        if context:
            try:
                context_json = json.dumps(context, sort_keys=True)
            except TypeError:
                context_json = str(context)
            line_items.append(f"context={context_json}")
        return {"text": " | ".join(filter(None, line_items))}


__all__ = ["AlertService", "AlertSeverity", "AlertConfig", "AlertRecord"]
