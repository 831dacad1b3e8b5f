"""
Game lifecycle tests.

Unit tests per scheduler responsibility plus one end-to-end run that takes a
cron through registration, entry reconciliation, activation, valuation,
settlement and payout against the paper ledger.
"""

import random
from datetime import timedelta
from decimal import Decimal
from unittest.mock import Mock, patch

import pytest

from core.game_lifecycle import LEDGER_EXISTING_PREFIX, GameLifecycle
from core.models import (
    CronType,
    GameCron,
    GameStatus,
    PortfolioAsset,
    PortfolioStatus,
    User,
)
from core.portfolio_locker import PortfolioLocker, PortfolioValuer
from core.reconciler import TransactionReconciler
from core.reward_distributor import RewardDistributor
from core.system_opponent import RandomTieredRecommender, SystemOpponentFactory
from core.winner_calculator import WinnerCalculator
from infra.ledger import GameDetails, PaperLedgerClient
from infra.price_feed import StorePriceFeed
from tests.helpers import (
    T0,
    address_for,
    make_assets,
    make_game,
    make_portfolio,
    seed_assets,
    win_condition,
)


def build_lifecycle(store, ledger, alerts=None, audit=None, winner_calculator=None):
    return GameLifecycle(
        store=store,
        ledger=ledger,
        price_feed=StorePriceFeed(store),
        locker=PortfolioLocker(store),
        valuer=PortfolioValuer(store),
        opponents=SystemOpponentFactory(store, fallback=RandomTieredRecommender(store, random.Random(3))),
        winner_calculator=winner_calculator or WinnerCalculator(store, ledger),
        distributor=RewardDistributor(store, ledger, batch_delay_seconds=0),
        audit=audit,
        alerts=alerts,
    )


def make_cron(cron_id="daily", cron_type=CronType.ONCE, condition=None, next_execution=T0, **overrides):
    fields = dict(
        cron_id=cron_id,
        game_type="DEFI",
        cron_type=cron_type.value,
        entry_price=10.0,
        start_time_hours=1,
        game_duration_hours=24,
        entry_cap=50,
        win_condition=condition or win_condition(),
        next_execution=next_execution,
        created_at=T0 - timedelta(days=1),
    )
    fields.update(overrides)
    return GameCron(**fields)


@pytest.fixture
def ledger():
    return PaperLedgerClient()


class TestCrons:

    def test_once_cron_creates_and_registers_game(self, store, ledger, audit):
        store.save_cron(make_cron(custom_name="Friday Night"))
        lifecycle = build_lifecycle(store, ledger, audit=audit)

        summary = lifecycle.fire_due_crons(T0)

        assert summary.processed == [1]
        game = store.get_game(1)
        assert game.status == GameStatus.UPCOMING.value
        assert game.name == "Friday Night"
        assert game.start_time == T0 + timedelta(hours=1)
        assert game.end_time == T0 + timedelta(hours=25)
        assert game.transaction_hash in ledger.receipts
        assert game.game_cron_id == "daily"

        cron = store.get_cron("daily")
        assert not cron.is_active
        assert cron.last_executed == T0
        assert lifecycle.fire_due_crons(T0 + timedelta(hours=1)).processed == []

    def test_recurring_cron_skips_missed_firings(self, store, ledger):
        store.save_cron(make_cron(
            cron_type=CronType.RECURRING,
            recurring_schedule_hours=2,
            next_execution=T0 - timedelta(hours=5),
        ))

        build_lifecycle(store, ledger).fire_due_crons(T0)

        assert len(store.find_games()) == 1
        cron = store.get_cron("daily")
        assert cron.is_active
        assert cron.next_execution == T0 + timedelta(hours=1)

    def test_invalid_win_condition_disables_cron(self, store, ledger):
        bad = win_condition("TIERED", tiers=[{"position": 1, "reward_percentage": 150}])
        store.save_cron(make_cron(condition=bad))

        summary = build_lifecycle(store, ledger).fire_due_crons(T0)

        assert summary.processed == []
        assert store.find_games() == []
        cron = store.get_cron("daily")
        assert not cron.is_active
        assert "reward_percentage" in cron.last_error

    def test_ledger_failure_retries_same_game(self, store):
        store.save_cron(make_cron())
        ledger = Mock()
        ledger.create_game.side_effect = [RuntimeError("rpc unavailable"), "0xregistered"]
        ledger.get_game_details.return_value = GameDetails(total_prize_pool=0, entry_count=0)
        lifecycle = build_lifecycle(store, ledger)

        first = lifecycle.fire_due_crons(T0)
        assert first.errors == {"daily": "rpc unavailable"}
        assert store.get_game(1).status == GameStatus.TRX_PENDING.value
        assert store.get_cron("daily").last_error == "rpc unavailable"

        lifecycle.fire_due_crons(T0 + timedelta(minutes=1))

        games = store.find_games()
        assert len(games) == 1
        assert games[0].status == GameStatus.UPCOMING.value
        assert games[0].transaction_hash == "0xregistered"
        assert store.get_cron("daily").last_error is None

    def test_game_already_on_ledger_is_adopted(self, store, ledger):
        store.save_cron(make_cron())
        register = ledger.create_game

        def register_then_time_out(*args):
            register(*args)
            raise TimeoutError("receipt not found after 120s")

        lifecycle = build_lifecycle(store, ledger)
        with patch.object(ledger, "create_game", side_effect=register_then_time_out) as create_game:
            first = lifecycle.fire_due_crons(T0)
            second = lifecycle.fire_due_crons(T0 + timedelta(minutes=1))

        assert first.errors == {"daily": "receipt not found after 120s"}
        assert second.processed == [1]
        assert create_game.call_count == 1
        game = store.get_game(1)
        assert game.status == GameStatus.UPCOMING.value
        assert game.transaction_hash == f"{LEDGER_EXISTING_PREFIX}:1"
        assert not store.get_cron("daily").is_active


class TestActivation:

    def test_marlowe_banes_game_gets_opponent_and_locks(self, store, ledger):
        seed_assets(store, make_assets(10))
        store.insert_game(make_game(status=GameStatus.UPCOMING))
        store.save_portfolio(make_portfolio(1, status=PortfolioStatus.PENDING, assets=[
            PortfolioAsset("asset-0", "SYM0", 100000),
        ]))

        summary = build_lifecycle(store, ledger).activate_due_games(T0)

        assert summary.processed == [1]
        assert store.get_game(1).status == GameStatus.ACTIVE.value
        portfolios = store.find_portfolios(game_id=1)
        assert len(portfolios) == 2
        assert all(p.is_locked for p in portfolios)
        assert store.get_portfolio(1).assets[0].token_qty == Decimal("1000.000000")

    def test_missing_opponent_assets_skips_activation(self, store, ledger):
        store.insert_game(make_game(status=GameStatus.UPCOMING, game_type="TRADFI"))

        summary = build_lifecycle(store, ledger).activate_due_games(T0)

        assert summary.skipped == [1]
        assert store.get_game(1).status == GameStatus.UPCOMING.value

    def test_future_games_wait(self, store, ledger):
        store.insert_game(make_game(status=GameStatus.UPCOMING, start=T0 + timedelta(minutes=1)))
        assert build_lifecycle(store, ledger).activate_due_games(T0).processed == []

    def test_other_conditions_skip_opponent(self, store, ledger):
        condition = win_condition("EQUAL_DISTRIBUTE", top_winners_percentage=10, reward_percentage=90)
        store.insert_game(make_game(status=GameStatus.UPCOMING, condition=condition, game_type="TRADFI"))

        build_lifecycle(store, ledger).activate_due_games(T0)

        assert store.get_game(1).status == GameStatus.ACTIVE.value
        assert store.find_portfolios(game_id=1, is_ape=True) == []


class TestValuationAndSettlementSteps:

    def test_close_only_ended_games(self, store, ledger):
        store.insert_game(make_game(1, status=GameStatus.ACTIVE, duration_hours=1))
        store.insert_game(make_game(2, status=GameStatus.ACTIVE, duration_hours=48))

        summary = build_lifecycle(store, ledger).close_ended_games(T0 + timedelta(hours=1))

        assert summary.processed == [1]
        assert store.get_game(1).status == GameStatus.UPDATE_VALUES.value
        assert store.get_game(2).status == GameStatus.ACTIVE.value

    def test_refresh_skips_ended_games(self, store, ledger):
        store.insert_game(make_game(1, status=GameStatus.ACTIVE, duration_hours=1))
        store.insert_game(make_game(2, status=GameStatus.ACTIVE, duration_hours=48))

        summary = build_lifecycle(store, ledger).refresh_active_values(T0 + timedelta(hours=2))

        assert summary.processed == [2]

    def test_finalize_moves_to_calculating(self, store, ledger):
        store.insert_game(make_game(status=GameStatus.UPDATE_VALUES, duration_hours=1))

        build_lifecycle(store, ledger).finalize_values(T0 + timedelta(hours=2))

        assert store.get_game(1).status == GameStatus.CALCULATING_WINNERS.value

    def test_calculation_errors_are_isolated(self, store, ledger):
        store.insert_game(make_game(1, status=GameStatus.CALCULATING_WINNERS, duration_hours=1))
        store.insert_game(make_game(2, status=GameStatus.CALCULATING_WINNERS, duration_hours=2))
        calc = Mock()
        calc.calculate.side_effect = [RuntimeError("ledger down"), object()]

        summary = build_lifecycle(store, ledger, winner_calculator=calc).calculate_winners(T0 + timedelta(hours=3))

        assert summary.errors == {"1": "ledger down"}
        assert summary.processed == [2]

    def test_stuck_games_alerted(self, store, ledger, clock):
        store.insert_game(make_game(1, status=GameStatus.UPDATE_VALUES))
        store.insert_game(make_game(2, status=GameStatus.ACTIVE))
        alerts = Mock()

        stuck = build_lifecycle(store, ledger, alerts=alerts).warn_stuck_games(T0 + timedelta(minutes=10))

        assert stuck == [1]
        alerts.stuck_game.assert_called_once_with(1, GameStatus.UPDATE_VALUES.value, 10.0)


class TestEndToEnd:

    def test_cron_to_completed_payout(self, store, ledger, clock):
        seed_assets(store, make_assets(8))
        store.save_cron(make_cron())
        lifecycle = build_lifecycle(store, ledger)
        reconciler = TransactionReconciler(store, ledger)

        lifecycle.fire_due_crons(T0)

        for pid, asset in ((1, "asset-0"), (2, "asset-1")):
            user_id = f"user-{pid}"
            store.save_user(User(user_id=user_id, address=address_for(user_id)))
            tx_hash = ledger.register_entry(1, pid, address_for(user_id))
            store.save_portfolio(make_portfolio(
                pid,
                status=PortfolioStatus.PENDING_LOCK_BALANCE,
                transaction_hash=tx_hash,
                assets=[PortfolioAsset(asset, asset.replace("asset-", "SYM"), 100000)],
            ))
        assert reconciler.reconcile_lock_balance(T0 + timedelta(minutes=5)).confirmed == [1, 2]

        start = T0 + timedelta(hours=1)
        assert lifecycle.activate_due_games(start).processed == [1]

        store.update_asset_prices({"asset-0": 200.0, "asset-1": 100.0}, start + timedelta(hours=12))

        end = start + timedelta(hours=24)
        lifecycle.close_ended_games(end)
        lifecycle.finalize_values(end)
        lifecycle.calculate_winners(end)
        outcome = lifecycle.distribute_rewards(end)

        assert outcome.completed
        game = store.get_game(1)
        assert game.status == GameStatus.COMPLETED.value
        assert game.total_prize_pool == 18 * 10**18
        assert [(w.portfolio_id, w.reward) for w in game.winners] == [(1, 18 * 10**18)]
        assert store.get_portfolio(1).current_value == pytest.approx(200000.0)
        assert store.get_portfolio(2).status == PortfolioStatus.LOST.value
        assert ledger.payouts[0]["amounts"] == [18 * 10**18]
