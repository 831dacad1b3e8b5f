"""
Settlement store tests.

Covers JSON persistence across restarts, atomic update semantics, winners[]
uniqueness, idempotent transaction inserts and the due-item queries used by
the scheduler handlers.
"""

from datetime import timedelta

import pytest

from core.models import (
    CronType,
    GameCron,
    GameStatus,
    PortfolioStatus,
    Transaction,
    TransactionType,
    User,
    Winner,
)
from infra.state_store import (
    JsonFileBackend,
    MemoryBackend,
    SettlementStore,
    create_state_store_from_config,
)
from tests.helpers import T0, FakeClock, make_game, make_portfolio, win_condition


def winner(portfolio_id, reward=100):
    return Winner(user_id=f"user-{portfolio_id}", portfolio_id=portfolio_id,
                  performance_percentage=10.0, reward=reward)


class TestPersistence:

    def test_json_backend_survives_restart(self, tmp_path):
        path = tmp_path / "state" / "contest_state.json"
        store = SettlementStore(JsonFileBackend(path), clock=FakeClock())
        store.insert_game(make_game(condition=win_condition("TIERED", tiers=[
            {"position": 1, "reward_percentage": 70},
        ])))
        store.save_portfolio(make_portfolio(7))
        store.append_winner(1, winner(7, reward=10**18))

        reopened = SettlementStore(JsonFileBackend(path))

        game = reopened.get_game(1)
        assert game.win_condition.tiers()[0].reward_percentage == 70
        assert game.winners[0].reward == 10**18
        assert reopened.get_portfolio(7).user_id == "user-7"

    def test_save_leaves_no_temp_files(self, tmp_path):
        store = SettlementStore(JsonFileBackend(tmp_path / "s.json"))
        store.insert_game(make_game())
        assert [p.name for p in tmp_path.iterdir()] == ["s.json"]

    def test_corrupt_file_is_rejected(self, tmp_path):
        path = tmp_path / "s.json"
        path.write_text("[1, 2, 3]")
        with pytest.raises(ValueError):
            SettlementStore(JsonFileBackend(path))

    def test_factory_selects_backend(self, tmp_path):
        assert create_state_store_from_config({"store": "memory"}).describe() == "memory"
        json_store = create_state_store_from_config({"store": "json", "path": str(tmp_path / "x.json")})
        assert json_store.describe().startswith("json:")
        with pytest.raises(ValueError):
            create_state_store_from_config({"store": "mongo"})


class TestGames:

    def test_reads_are_snapshots(self, store):
        store.insert_game(make_game())
        game = store.get_game(1)
        game.status = GameStatus.FAILED.value
        assert store.get_game(1).status == GameStatus.UPCOMING.value

    def test_insert_rejects_duplicate_id(self, store):
        store.insert_game(make_game())
        with pytest.raises(ValueError):
            store.insert_game(make_game())
        assert store.next_game_id() == 2

    def test_failed_mutator_writes_nothing(self, store):
        store.insert_game(make_game())

        def boom(game):
            game.status = GameStatus.ACTIVE.value
            raise RuntimeError("mid-update failure")

        with pytest.raises(RuntimeError):
            store.update_game(1, boom)
        assert store.get_game(1).status == GameStatus.UPCOMING.value

    def test_update_touches_updated_at(self, store, clock):
        store.insert_game(make_game())
        clock.advance(minutes=3)
        store.update_game(1, lambda g: setattr(g, "name", "Renamed"))
        assert store.get_game(1).updated_at == clock.now

    def test_find_games_filters_and_sorts(self, store):
        store.insert_game(make_game(1, status=GameStatus.ACTIVE, start=T0 + timedelta(hours=2)))
        store.insert_game(make_game(2, status=GameStatus.ACTIVE, start=T0))
        store.insert_game(make_game(3, status=GameStatus.UPCOMING, start=T0))

        active = store.find_games(status=GameStatus.ACTIVE.value)
        assert [g.game_id for g in active] == [2, 1]

        ended = store.find_games(status=[GameStatus.ACTIVE.value], end_before=T0 + timedelta(hours=24),
                                 sort_by="end_time", limit=1)
        assert [g.game_id for g in ended] == [2]

    def test_append_winner_rejects_duplicates(self, store):
        store.insert_game(make_game())
        assert store.append_winner(1, winner(5))
        assert not store.append_winner(1, winner(5, reward=999))
        assert [w.reward for w in store.get_game(1).winners] == [100]

    def test_mark_winner_distributed_once(self, store):
        store.insert_game(make_game())
        store.append_winner(1, winner(5))

        assert store.mark_winner_distributed(1, 5, "0xpaid")
        assert not store.mark_winner_distributed(1, 5, "0xagain")
        assert store.get_game(1).winners[0].distribution_ref == "0xpaid"
        with pytest.raises(KeyError):
            store.mark_winner_distributed(1, 6, "0xnope")


class TestPortfolios:

    def test_find_portfolios_orders_by_creation(self, store):
        store.save_portfolio(make_portfolio(1, created_at=T0))
        store.save_portfolio(make_portfolio(2, created_at=T0 - timedelta(minutes=5)))
        store.save_portfolio(make_portfolio(3, is_ape=True))

        assert [p.portfolio_id for p in store.find_portfolios(game_id=1, is_ape=False)] == [2, 1]

    def test_manual_entries_due_respects_interval_and_cap(self, store):
        interval = timedelta(minutes=2)
        store.save_portfolio(make_portfolio(1, status=PortfolioStatus.PENDING_LOCK_BALANCE))
        store.save_portfolio(make_portfolio(2, status=PortfolioStatus.PENDING_LOCK_BALANCE,
                                            retry_count=1, last_retry_at=T0 - timedelta(minutes=1)))
        store.save_portfolio(make_portfolio(3, status=PortfolioStatus.PENDING_LOCK_BALANCE,
                                            retry_count=2, last_retry_at=T0 - timedelta(minutes=3)))
        store.save_portfolio(make_portfolio(4, status=PortfolioStatus.PENDING_LOCK_BALANCE,
                                            retry_count=5, last_retry_at=T0 - timedelta(hours=1)))
        store.save_portfolio(make_portfolio(5, status=PortfolioStatus.PENDING_LOCK_BALANCE,
                                            transaction_hash="0xreceipt"))

        due = store.find_manual_entries_due(T0, interval, max_retries=5)

        assert sorted(p.portfolio_id for p in due) == [1, 3]


class TestCronsAndTransactions:

    def test_due_crons_skip_inactive_and_future(self, store):
        base = dict(game_type="DEFI", cron_type=CronType.ONCE.value, entry_price=5.0,
                    start_time_hours=1, game_duration_hours=24, entry_cap=10,
                    win_condition=win_condition(), created_at=T0 - timedelta(days=1))
        store.save_cron(GameCron(cron_id="due", next_execution=T0, **base))
        store.save_cron(GameCron(cron_id="future", next_execution=T0 + timedelta(minutes=1), **base))
        store.save_cron(GameCron(cron_id="off", next_execution=T0, is_active=False, **base))
        store.save_cron(GameCron(cron_id="deleted", next_execution=T0, is_deleted=True, **base))

        assert [c.cron_id for c in store.find_due_crons(T0)] == ["due"]

    def test_transaction_insert_is_idempotent(self, store):
        tx = Transaction(transaction_hash="0xabc", user_id="user-1", type=TransactionType.ENTRY_FEE.value,
                         amount=10**19, game_id=1, portfolio_id=1)
        assert store.insert_transaction(tx)
        assert not store.insert_transaction(tx)
        assert len(store.find_transactions(game_id=1)) == 1


class TestUsers:

    def test_record_game_result_once_per_portfolio(self, store):
        store.save_user(User(user_id="user-1", address="0xabc"))

        store.record_game_result("user-1", 1, 10, 12.5, 500, 1)
        store.record_game_result("user-1", 1, 10, 12.5, 500, 1)
        store.record_game_result("user-1", 1, 11, -3.0, 0, 4)

        user = store.get_user("user-1")
        assert user.total_portfolios == 2
        assert user.total_games_played == 1
        assert user.wins == 1
        assert user.total_earnings == 500

    def test_unknown_user_is_ignored(self, store):
        assert store.record_game_result("ghost", 1, 10, 1.0, 0, 2) is None

    def test_memory_backend_isolated_from_caller(self):
        backend = MemoryBackend()
        data = backend.load()
        data["games"]["1"] = {"bogus": True}
        assert backend.load()["games"] == {}
