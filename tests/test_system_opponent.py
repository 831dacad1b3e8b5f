"""Tests for system opponent portfolio creation."""

import random
from unittest.mock import Mock

import pytest

from core.exceptions import DataIntegrityFailure
from core.models import GameStatus, PortfolioStatus
from core.system_opponent import (
    BASE_ALLOCATIONS,
    SYSTEM_USER_ID,
    Recommendation,
    RandomTieredRecommender,
    SystemOpponentFactory,
    normalize_allocations,
    system_portfolio_id,
)
from tests.helpers import T0, make_assets, make_game, seed_assets


@pytest.fixture
def game(store):
    seed_assets(store, make_assets(10))
    return store.insert_game(make_game(status=GameStatus.UPCOMING))


class TestAllocations:

    def test_already_normalized_is_unchanged(self):
        assert normalize_allocations(BASE_ALLOCATIONS, 100000) == BASE_ALLOCATIONS

    def test_scaled_allocations_sum_exactly(self):
        result = normalize_allocations([1, 1, 1], 100000)
        assert sum(result) == 100000
        assert result == [33334, 33333, 33333]

    def test_zero_total_rejected(self):
        with pytest.raises(ValueError):
            normalize_allocations([0, 0], 100000)

    def test_portfolio_id_embeds_game_id(self):
        pid = system_portfolio_id(42, T0)
        assert str(pid).startswith("90042")
        assert len(str(pid)) == 13


class TestFactory:

    def test_creates_opponent_with_fallback(self, store, game):
        factory = SystemOpponentFactory(store, fallback=RandomTieredRecommender(store, random.Random(7)))

        opponent = factory.ensure_for_game(game, T0)

        assert opponent.is_ape
        assert opponent.user_id == SYSTEM_USER_ID
        assert opponent.status == PortfolioStatus.PENDING.value
        assert opponent.allocation_total() == 100000
        assert len(opponent.assets) == 8
        assert len({a.symbol for a in opponent.assets}) == 8
        assert store.get_game(game.game_id).ape_portfolio.portfolio_id == opponent.portfolio_id

    def test_is_idempotent(self, store, game):
        factory = SystemOpponentFactory(store)

        first = factory.ensure_for_game(game, T0)
        second = factory.ensure_for_game(game, T0)

        assert first.portfolio_id == second.portfolio_id
        assert len(store.find_portfolios(game_id=game.game_id, is_ape=True)) == 1

    def test_uses_recommender_and_normalizes(self, store, game):
        recommender = Mock()
        recommender.generate_smart_portfolio.return_value = Recommendation(
            assets=[{"asset_id": "asset-0", "symbol": "SYM0"}, {"asset_id": "asset-1", "symbol": "SYM1"}],
            allocations=[3, 1],
        )
        factory = SystemOpponentFactory(store, recommender=recommender)

        opponent = factory.ensure_for_game(game, T0)

        assert [a.allocation for a in opponent.assets] == [75000, 25000]

    def test_bad_recommendation_falls_back(self, store, game):
        recommender = Mock()
        recommender.generate_smart_portfolio.return_value = Recommendation(
            assets=[{"asset_id": "asset-0", "symbol": "SYM0"}, {"asset_id": "asset-0", "symbol": "SYM0"}],
            allocations=[50000, 50000],
        )
        factory = SystemOpponentFactory(store, recommender=recommender)

        opponent = factory.ensure_for_game(game, T0)

        assert len(opponent.assets) == 8

    def test_no_assets_is_data_integrity_failure(self, store):
        game = store.insert_game(make_game(game_type="TRADFI"))
        with pytest.raises(DataIntegrityFailure):
            SystemOpponentFactory(store).ensure_for_game(game, T0)
