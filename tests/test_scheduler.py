"""
Scheduler tests.

Verifies:
1. A handler whose permit is held is skipped, never queued
2. Winner calculation and reward distribution share one permit
3. Handler failures are isolated and recorded
4. Jitter clamping and sleep computation
5. build_scheduler wires a runnable DRY_RUN scheduler from config
"""

import time
from datetime import timedelta
from unittest.mock import Mock, patch

import pytest

from core.models import CronType, GameCron, GameStatus
from infra.ledger import PaperLedgerClient
from infra.run_guard import RunGuard
from runner.scheduler import (
    DEFAULT_INTERVALS,
    GameLifecycleScheduler,
    build_scheduler,
    load_app_config,
)
from tests.helpers import T0, make_store, win_condition


@pytest.fixture
def lifecycle():
    return Mock()


@pytest.fixture
def reconciler():
    return Mock()


def scheduler_for(lifecycle, reconciler, **kwargs):
    kwargs.setdefault("clock", lambda: T0)
    return GameLifecycleScheduler(lifecycle, reconciler, **kwargs)


class TestPermits:

    def test_held_permit_skips_handler(self, lifecycle, reconciler):
        guard = RunGuard()
        metrics = Mock()
        scheduler = scheduler_for(lifecycle, reconciler, run_guard=guard, metrics=metrics)

        with guard.hold("game_crons"):
            assert scheduler.run_handler("game_crons") == "skipped"

        lifecycle.fire_due_crons.assert_not_called()
        metrics.record_handler_skipped.assert_called_once_with("game_crons")

    def test_settlement_handlers_share_permit(self, lifecycle, reconciler):
        guard = RunGuard()
        scheduler = scheduler_for(lifecycle, reconciler, run_guard=guard)

        with guard.hold("settlement"):
            assert scheduler.run_handler("winner_calculation") == "skipped"
            assert scheduler.run_handler("reward_distribution") == "skipped"
            assert scheduler.run_handler("game_activation") == "ok"

        lifecycle.calculate_winners.assert_not_called()
        lifecycle.distribute_rewards.assert_not_called()

    def test_distribution_during_calculation_is_skipped(self, lifecycle, reconciler):
        scheduler = scheduler_for(lifecycle, reconciler)
        results = []

        def calculate(now):
            results.append(scheduler.run_handler("reward_distribution"))

        lifecycle.calculate_winners.side_effect = calculate

        assert scheduler.run_handler("winner_calculation") == "ok"
        assert results == ["skipped"]


class TestRunning:

    def test_failure_is_isolated(self, lifecycle, reconciler):
        lifecycle.fire_due_crons.side_effect = RuntimeError("store unavailable")
        metrics = Mock()
        scheduler = scheduler_for(lifecycle, reconciler, metrics=metrics)

        results = scheduler.run_once()

        assert results["game_crons"] == "error"
        assert results["winner_calculation"] == "ok"
        assert "price_refresh" not in results
        statuses = {c.args[0]: c.args[1] for c in metrics.record_handler_run.call_args_list}
        assert statuses["game_crons"] == "error"

    def test_run_once_passes_one_timestamp(self, lifecycle, reconciler):
        scheduler = scheduler_for(lifecycle, reconciler)

        scheduler.run_once(T0 + timedelta(minutes=3))

        lifecycle.activate_due_games.assert_called_once_with(T0 + timedelta(minutes=3))
        lifecycle.close_ended_games.assert_called_once_with(T0 + timedelta(minutes=3))
        reconciler.reconcile_manual_entries.assert_called_once_with(T0 + timedelta(minutes=3))

    def test_valuation_handler_runs_all_steps(self, lifecycle, reconciler):
        store = make_store()
        metrics = Mock()
        scheduler = scheduler_for(lifecycle, reconciler, store=store, metrics=metrics)

        assert scheduler.run_handler("portfolio_valuation", T0) == "ok"

        lifecycle.refresh_active_values.assert_called_once_with(T0)
        lifecycle.finalize_values.assert_called_once_with(T0)
        lifecycle.warn_stuck_games.assert_called_once_with(T0)
        counts = metrics.record_games_by_status.call_args.args[0]
        assert counts[GameStatus.ACTIVE.value] == 0

    def test_disabled_handler_is_dropped(self, lifecycle, reconciler):
        refresher = Mock()
        scheduler = scheduler_for(lifecycle, reconciler, refresher=refresher, enabled={"game_crons": False})
        assert "game_crons" not in scheduler.handlers
        assert "price_refresh" in scheduler.handlers

    @pytest.mark.parametrize("configured,expected", [(50.0, 20.0), (-5.0, 0.0), (12.5, 12.5)])
    def test_jitter_is_clamped(self, lifecycle, reconciler, configured, expected):
        assert scheduler_for(lifecycle, reconciler, jitter_pct=configured).jitter_pct == expected

    def test_sleep_accounts_for_elapsed_and_jitter(self, lifecycle, reconciler):
        scheduler = scheduler_for(lifecycle, reconciler, intervals={"game_crons": 60.0}, jitter_pct=10.0)
        with patch("runner.scheduler.random.uniform", return_value=0.1):
            assert scheduler._sleep_seconds("game_crons", 10.0) == pytest.approx(56.0)
        with patch("runner.scheduler.random.uniform", return_value=0.0):
            assert scheduler._sleep_seconds("game_crons", 120.0) == 1.0

    def test_start_and_stop_threads(self, lifecycle, reconciler):
        scheduler = scheduler_for(lifecycle, reconciler, intervals={n: 1.0 for n in DEFAULT_INTERVALS})
        scheduler.start()
        try:
            deadline = time.monotonic() + 5
            while not lifecycle.fire_due_crons.called and time.monotonic() < deadline:
                time.sleep(0.01)
            assert scheduler.is_running()
        finally:
            scheduler.stop(timeout=5)
        assert not scheduler.is_running()
        assert lifecycle.fire_due_crons.called

    def test_stop_signal_sets_event(self, lifecycle, reconciler):
        scheduler = scheduler_for(lifecycle, reconciler)
        scheduler._handle_stop()
        assert scheduler._stop_event.is_set()


def dry_run_config(tmp_path):
    return {
        "app": {"name": "contest-engine", "version": "1.0.0", "mode": "DRY_RUN"},
        "loop": {"handlers": {"reconcile_manual_entries": {"interval_seconds": 30, "enabled": False}}},
        "logging": {"level": "INFO", "file": str(tmp_path / "engine.log"),
                    "audit_file": str(tmp_path / "audit.jsonl")},
        "state": {"store": "memory"},
        "prices": {"refresh_enabled": False},
        "monitoring": {"metrics_enabled": False},
    }


class TestBuildScheduler:

    def test_dry_run_wiring(self, tmp_path):
        store = make_store()
        ledger = PaperLedgerClient()
        store.save_cron(GameCron(
            cron_id="hourly", game_type="DEFI", cron_type=CronType.ONCE.value, entry_price=5.0,
            start_time_hours=1, game_duration_hours=2, entry_cap=10,
            win_condition=win_condition("EQUAL_DISTRIBUTE", top_winners_percentage=10, reward_percentage=90),
            next_execution=T0,
        ))

        scheduler = build_scheduler(dry_run_config(tmp_path), store=store, ledger=ledger, clock=lambda: T0)
        results = scheduler.run_once()

        assert "price_refresh" not in results
        assert "reconcile_manual_entries" not in results
        assert set(results.values()) == {"ok"}
        assert scheduler.intervals["reconcile_manual_entries"] == 30.0
        assert store.get_game(1).status == GameStatus.UPCOMING.value

    def test_load_app_config_rejects_invalid(self, tmp_path):
        (tmp_path / "app.yaml").write_text("app: {mode: SOMETIMES}\n")
        with pytest.raises(ValueError):
            load_app_config(str(tmp_path))
