"""
contest-engine Runner: Game Lifecycle Scheduler

Drives the contest lifecycle with independent periodic handlers:

    price_refresh             refresh catalog prices from the quote providers
    game_crons                fire due game crons (create + register games)
    game_activation           activate started games, close ended ones
    portfolio_valuation       leaderboard refresh, final valuation, stuck-game report
    winner_calculation        rank and assign rewards
    reward_distribution       pay winners on the ledger, one game per tick
    reconcile_lock_balance    confirm paid entries from their receipts
    reconcile_manual_entries  confirm manual entries from the ledger owner

Each handler runs behind a single-permit guard: a tick that finds the previous
run still going is skipped, never queued. Winner calculation and reward
distribution share one permit so reward-affecting state is only ever touched
by one of them at a time.

State is always re-derived from the store, so a restart resumes correctly.
"""

import random
import signal
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
import logging

import yaml

from core.audit_log import SettlementAuditLog
from core.game_lifecycle import GameLifecycle
from core.game_state import GameStateMachine
from core.models import GameStatus, utc_now
from core.portfolio_locker import PortfolioLocker, PortfolioValuer
from core.reconciler import TransactionReconciler
from core.reward_distributor import RewardDistributor
from core.system_opponent import SystemOpponentFactory
from core.winner_calculator import WinnerCalculator
from infra.alerting import AlertService
from infra.ledger import create_ledger_from_config
from infra.metrics import MetricsRecorder
from infra.notifications import NotificationSink
from infra.price_feed import PriceRefresher, StorePriceFeed, create_price_source_from_config
from infra.run_guard import RunGuard
from infra.state_store import create_state_store_from_config

logger = logging.getLogger(__name__)


DEFAULT_INTERVALS: Dict[str, float] = {
    "price_refresh": 300.0,
    "game_crons": 60.0,
    "game_activation": 60.0,
    "portfolio_valuation": 60.0,
    "winner_calculation": 60.0,
    "reward_distribution": 60.0,
    "reconcile_lock_balance": 60.0,
    "reconcile_manual_entries": 120.0,
}

# Handlers that must never overlap share a permit
GUARD_KEYS: Dict[str, str] = {
    "winner_calculation": "settlement",
    "reward_distribution": "settlement",
}

MAX_JITTER_PCT = 20.0


class GameLifecycleScheduler:
    """
    Periodic driver for the lifecycle handlers.

    Responsibilities:
    - Run each handler on its own interval (threads in run_forever)
    - Enforce the single-permit guard per handler
    - Isolate handler failures and record run metrics
    """

    def __init__(
        self,
        lifecycle: GameLifecycle,
        reconciler: TransactionReconciler,
        refresher: Optional[PriceRefresher] = None,
        store=None,
        run_guard: Optional[RunGuard] = None,
        metrics: Optional[MetricsRecorder] = None,
        intervals: Optional[Dict[str, float]] = None,
        enabled: Optional[Dict[str, bool]] = None,
        jitter_pct: float = 10.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.lifecycle = lifecycle
        self.reconciler = reconciler
        self.refresher = refresher
        self.store = store
        self.run_guard = run_guard or RunGuard()
        self.metrics = metrics
        self.clock = clock
        self.jitter_pct = max(0.0, min(float(jitter_pct), MAX_JITTER_PCT))  # Clamp 0-20%

        self.intervals = dict(DEFAULT_INTERVALS)
        self.intervals.update(intervals or {})

        handlers: Dict[str, Callable[[datetime], Any]] = {
            "price_refresh": self._refresh_prices,
            "game_crons": self.lifecycle.fire_due_crons,
            "game_activation": self._activate_and_close,
            "portfolio_valuation": self._value_portfolios,
            "winner_calculation": self.lifecycle.calculate_winners,
            "reward_distribution": self.lifecycle.distribute_rewards,
            "reconcile_lock_balance": self.reconciler.reconcile_lock_balance,
            "reconcile_manual_entries": self.reconciler.reconcile_manual_entries,
        }
        if self.refresher is None:
            handlers.pop("price_refresh")
        enabled = enabled or {}
        self.handlers = {name: fn for name, fn in handlers.items() if enabled.get(name, True)}

        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

    # ------------------------------------------------------------------
    # Composite handlers
    # ------------------------------------------------------------------

    def _refresh_prices(self, now: datetime) -> int:
        return self.refresher.refresh_all(now)

    def _activate_and_close(self, now: datetime) -> None:
        self.lifecycle.activate_due_games(now)
        self.lifecycle.close_ended_games(now)

    def _value_portfolios(self, now: datetime) -> None:
        self.lifecycle.refresh_active_values(now)
        self.lifecycle.finalize_values(now)
        self.lifecycle.warn_stuck_games(now)
        self._record_game_counts()

    def _record_game_counts(self) -> None:
        if self.metrics is None or self.store is None:
            return
        counts = {status.value: 0 for status in GameStatus}
        for game in self.store.find_games():
            counts[game.status] = counts.get(game.status, 0) + 1
        self.metrics.record_games_by_status(counts)

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def guard_key(self, name: str) -> str:
        return GUARD_KEYS.get(name, name)

    def run_handler(self, name: str, now: Optional[datetime] = None) -> str:
        """
        Run one handler under its permit.

        Returns:
            "ok", "error" or "skipped"
        """
        fn = self.handlers[name]
        with self.run_guard.hold(self.guard_key(name)) as acquired:
            if not acquired:
                if self.metrics:
                    self.metrics.record_handler_skipped(name)
                return "skipped"

            started = time.monotonic()
            status = "ok"
            try:
                fn(now or self.clock())
            except Exception as e:
                status = "error"
                logger.error(f"Handler {name} failed: {e}", exc_info=True)
            duration = time.monotonic() - started
            logger.debug(f"Handler {name} finished in {duration:.2f}s ({status})")
            if self.metrics:
                self.metrics.record_handler_run(name, status, duration)
            return status

    def run_once(self, now: Optional[datetime] = None) -> Dict[str, str]:
        """Run every handler once, sequentially, in lifecycle order."""
        now = now or self.clock()
        results = {name: self.run_handler(name, now) for name in self.handlers}
        logger.info(f"Tick complete: {results}")
        return results

    def _sleep_seconds(self, name: str, elapsed: float) -> float:
        interval = self.intervals.get(name, 60.0)
        jitter = random.uniform(0, self.jitter_pct / 100.0) * interval
        return max(1.0, interval - elapsed + jitter)

    def _handler_loop(self, name: str) -> None:
        logger.info(f"Handler {name} started (interval={self.intervals.get(name)}s)")
        while not self._stop_event.is_set():
            started = time.monotonic()
            self.run_handler(name)
            elapsed = time.monotonic() - started
            self._stop_event.wait(self._sleep_seconds(name, elapsed))
        logger.info(f"Handler {name} stopped")

    def start(self) -> None:
        self._stop_event.clear()
        for name in self.handlers:
            thread = threading.Thread(target=self._handler_loop, args=(name,), name=f"handler-{name}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(f"Started {len(self._threads)} handlers (jitter={self.jitter_pct:.1f}%)")

    def stop(self, timeout: float = 30.0) -> None:
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []

    def is_running(self) -> bool:
        return not self._stop_event.is_set() and any(t.is_alive() for t in self._threads)

    def run_forever(self) -> None:
        self.start()
        try:
            while not self._stop_event.wait(1.0):
                pass
        finally:
            self.stop()
        logger.info("Scheduler stopped cleanly.")

    def _handle_stop(self, *_):
        logger.warning("Shutdown signal received - stopping handlers after their current run")
        self._stop_event.set()


# ----------------------------------------------------------------------
# Construction
# ----------------------------------------------------------------------


def load_app_config(config_dir: str = "config") -> Dict[str, Any]:
    """
    Validate and load config/app.yaml.

    Raises:
        ValueError: when validation reports any error
    """
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

    with open(Path(config_dir) / "app.yaml") as f:
        return yaml.safe_load(f) or {}


def setup_logging(log_cfg: Optional[Dict[str, Any]]) -> None:
    log_cfg = log_cfg or {}
    log_file = log_cfg.get("file", "logs/contest-engine.log")
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, str(log_cfg.get("level", "INFO")).upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
    )


def build_scheduler(
    app_config: Dict[str, Any],
    store=None,
    ledger=None,
    clock: Callable[[], datetime] = utc_now,
) -> GameLifecycleScheduler:
    """Wire every component from a loaded app.yaml."""
    mode = str((app_config.get("app") or {}).get("mode", "DRY_RUN")).upper()
    loop_cfg = app_config.get("loop") or {}
    log_cfg = app_config.get("logging") or {}
    monitoring_cfg = app_config.get("monitoring") or {}
    prices_cfg = app_config.get("prices") or {}
    ledger_cfg = app_config.get("ledger") or {}
    settlement_cfg = app_config.get("settlement") or {}
    opponent_cfg = settlement_cfg.get("system_opponent") or {}

    store = store or create_state_store_from_config(app_config.get("state"), clock=clock)
    ledger = ledger or create_ledger_from_config(ledger_cfg, mode)
    metrics = MetricsRecorder(
        enabled=bool(monitoring_cfg.get("metrics_enabled", False)),
        port=int(monitoring_cfg.get("metrics_port", 9100)),
    )
    alerts = AlertService.from_config(monitoring_cfg.get("alerts"))
    audit = SettlementAuditLog(log_cfg.get("audit_file", "logs/settlement_audit.jsonl"))
    notifier = NotificationSink(store)
    state_machine = GameStateMachine()
    price_feed = StorePriceFeed(store)

    winner_calculator = WinnerCalculator(
        store,
        ledger,
        notifier=notifier,
        price_feed=price_feed,
        stale_after=timedelta(minutes=float(prices_cfg.get("max_age_minutes", 15))),
        audit=audit,
        alerts=alerts,
        state_machine=state_machine,
    )
    distributor = RewardDistributor(
        store,
        ledger,
        batch_size=int(settlement_cfg.get("reward_batch_size", 50)),
        batch_delay_seconds=float(settlement_cfg.get("reward_batch_delay_seconds", 2.0)),
        max_retries=int(settlement_cfg.get("distribution_max_retries", 5)),
        retry_base_seconds=float(settlement_cfg.get("distribution_retry_base_seconds", 1.0)),
        audit=audit,
        alerts=alerts,
        metrics=metrics,
        state_machine=state_machine,
    )
    lifecycle = GameLifecycle(
        store,
        ledger,
        price_feed,
        locker=PortfolioLocker(store),
        valuer=PortfolioValuer(store, max_history=int(settlement_cfg.get("value_history_length", 20))),
        opponents=SystemOpponentFactory(
            store,
            initial_value=int(opponent_cfg.get("initial_value", 100000)),
            asset_count=int(opponent_cfg.get("asset_count", 8)),
        ),
        winner_calculator=winner_calculator,
        distributor=distributor,
        audit=audit,
        alerts=alerts,
        state_machine=state_machine,
        finalize_limit=int(settlement_cfg.get("finalize_games_per_tick", 5)),
        calculate_limit=int(settlement_cfg.get("calculate_games_per_tick", 3)),
        stuck_after=timedelta(minutes=float(monitoring_cfg.get("stuck_game_minutes", 5))),
    )
    reconciler = TransactionReconciler(
        store,
        ledger,
        notifier=notifier,
        audit=audit,
        metrics=metrics,
        max_retries=int(settlement_cfg.get("reconcile_max_retries", 5)),
        retry_interval=timedelta(seconds=float(settlement_cfg.get("reconcile_retry_interval_seconds", 120))),
        admin_fee_pct=int(ledger_cfg.get("admin_fee_pct", 10)),
        contract_address=ledger_cfg.get("contract_address") or None,
    )

    source = create_price_source_from_config(prices_cfg)
    refresher = PriceRefresher(store, source) if source is not None else None

    default_interval = float(loop_cfg.get("interval_seconds", 60.0))
    intervals = {name: default_interval for name in DEFAULT_INTERVALS if name != "price_refresh"}
    intervals["price_refresh"] = DEFAULT_INTERVALS["price_refresh"]
    intervals["reconcile_manual_entries"] = DEFAULT_INTERVALS["reconcile_manual_entries"]
    enabled = {}
    for name, handler_cfg in (loop_cfg.get("handlers") or {}).items():
        handler_cfg = handler_cfg or {}
        if handler_cfg.get("interval_seconds"):
            intervals[name] = float(handler_cfg["interval_seconds"])
        enabled[name] = bool(handler_cfg.get("enabled", True))

    logger.info(f"Scheduler built in {mode} mode (store={store.describe()}, ledger={type(ledger).__name__})")
    return GameLifecycleScheduler(
        lifecycle,
        reconciler,
        refresher=refresher,
        store=store,
        metrics=metrics,
        intervals=intervals,
        enabled=enabled,
        jitter_pct=float(loop_cfg.get("jitter_pct", 10.0)),
        clock=clock,
    )


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="contest-engine game lifecycle scheduler")
    parser.add_argument("--once", action="store_true", help="Run every handler once and exit")
    parser.add_argument("--config-dir", default="config", help="Config directory")

    args = parser.parse_args()

    app_config = load_app_config(args.config_dir)
    setup_logging(app_config.get("logging"))

    # One scheduler per store: concurrent schedulers would sign with the same account
    from infra.instance_lock import check_single_instance
    instance_lock = check_single_instance("contest-engine", lock_dir="data")
    if not instance_lock:
        logger.error("Another scheduler instance is already running; remove data/contest-engine.pid if stale")
        raise RuntimeError("Another scheduler instance is already running")

    try:
        scheduler = build_scheduler(app_config)
        if scheduler.metrics:
            scheduler.metrics.start()
        if args.once:
            scheduler.run_once()
        else:
            signal.signal(signal.SIGINT, scheduler._handle_stop)
            signal.signal(signal.SIGTERM, scheduler._handle_stop)
            scheduler.run_forever()
    finally:
        instance_lock.release()


if __name__ == "__main__":
    main()
