"""
Contest Engine Core: System Opponent

Seeds the non-paying, system-controlled portfolio that players try to beat
under MARLOWE_BANES. Asset choice comes from a pluggable recommender; when it
fails or returns something unusable, a random pick with the players' default
tiered allocations is used instead.
"""

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from core.exceptions import DataIntegrityFailure
from core.models import ApeSummary, Game, Portfolio, PortfolioAsset, PortfolioStatus

logger = logging.getLogger(__name__)


SYSTEM_USER_ID = "system-opponent"
DEFAULT_INITIAL_VALUE = 100000
DEFAULT_ASSET_COUNT = 8
BASE_ALLOCATIONS = [20000, 20000, 15000, 15000, 10000, 10000, 5000, 5000]


@dataclass
class Recommendation:
    assets: List[Dict[str, str]]  # [{asset_id, symbol}]
    allocations: List[int]
    strategy: Dict[str, Any] = field(default_factory=dict)


class PortfolioRecommender(ABC):
    @abstractmethod
    def generate_smart_portfolio(self, game_type: str, asset_count: int) -> Recommendation:
        ...


def normalize_allocations(allocations: List[int], total: int) -> List[int]:
    """Scale to sum exactly to `total`; the rounding difference goes to the first slot."""
    if not allocations:
        return []
    current = sum(allocations)
    if current <= 0:
        raise ValueError("allocations must sum to a positive amount")
    if current == total:
        return list(allocations)
    scaled = [round(a * total / current) for a in allocations]
    scaled[0] += total - sum(scaled)
    return scaled


def system_portfolio_id(game_id: int, now: datetime) -> int:
    """'9' + zero-padded game id + last 8 digits of the epoch milliseconds."""
    millis = str(int(now.timestamp() * 1000))
    return int(f"9{game_id:04d}{millis[-8:]}")


class RandomTieredRecommender(PortfolioRecommender):
    """Random assets from the catalog with the default tiered allocations."""

    def __init__(self, store, rng: Optional[random.Random] = None):
        self.store = store
        self.rng = rng or random.Random()

    def generate_smart_portfolio(self, game_type: str, asset_count: int) -> Recommendation:
        candidates = self.store.list_assets(game_type=game_type, active_only=True, ape_only=True)
        if len(candidates) < asset_count:
            candidates = self.store.list_assets(game_type=game_type, active_only=True)
        if not candidates:
            raise DataIntegrityFailure(f"no active {game_type} assets available for the system opponent")

        pool = list(candidates)
        self.rng.shuffle(pool)
        selected = pool[: min(asset_count, len(pool), len(BASE_ALLOCATIONS))]
        allocations = BASE_ALLOCATIONS[: len(selected)]
        logger.info(f"Fallback selected {len(selected)} assets: {', '.join(a.symbol for a in selected)}")
        return Recommendation(
            assets=[{"asset_id": a.asset_id, "symbol": a.symbol} for a in selected],
            allocations=list(allocations),
            strategy={"type": "Random Fallback", "reasoning": ["Fallback: Random selection"]},
        )


class SystemOpponentFactory:
    """Creates at most one opponent portfolio per game."""

    def __init__(
        self,
        store,
        recommender: Optional[PortfolioRecommender] = None,
        fallback: Optional[PortfolioRecommender] = None,
        initial_value: int = DEFAULT_INITIAL_VALUE,
        asset_count: int = DEFAULT_ASSET_COUNT,
    ):
        self.store = store
        self.recommender = recommender
        self.fallback = fallback or RandomTieredRecommender(store)
        self.initial_value = initial_value
        self.asset_count = asset_count

    def find_existing(self, game_id: int) -> Optional[Portfolio]:
        existing = self.store.find_portfolios(game_id=game_id, is_ape=True, limit=1)
        return existing[0] if existing else None

    def _validated(self, rec: Recommendation) -> Recommendation:
        if not rec.assets or len(rec.assets) != len(rec.allocations):
            raise ValueError("recommendation assets and allocations do not line up")
        symbols = [a["symbol"] for a in rec.assets]
        if len(set(symbols)) != len(symbols):
            raise ValueError(f"duplicate symbols in recommendation: {symbols}")
        return rec

    def _recommend(self, game_type: str) -> Recommendation:
        if self.recommender is not None:
            try:
                return self._validated(self.recommender.generate_smart_portfolio(game_type, self.asset_count))
            except Exception as e:
                logger.warning(f"Recommender failed for {game_type}, using fallback: {e}")
        return self._validated(self.fallback.generate_smart_portfolio(game_type, self.asset_count))

    def ensure_for_game(self, game: Game, now: datetime) -> Portfolio:
        """
        Return the game's opponent portfolio, creating it on first call.

        Raises:
            DataIntegrityFailure: no assets are available to build one
        """
        existing = self.find_existing(game.game_id)
        if existing is not None:
            logger.debug(f"System opponent already exists for game {game.game_id}: {existing.portfolio_id}")
            return existing

        rec = self._recommend(game.game_type)
        allocations = normalize_allocations([int(a) for a in rec.allocations], self.initial_value)
        portfolio = Portfolio(
            portfolio_id=system_portfolio_id(game.game_id, now),
            game_id=game.game_id,
            user_id=SYSTEM_USER_ID,
            name="Marlowe Banes",
            assets=[
                PortfolioAsset(asset_id=a["asset_id"], symbol=a["symbol"], allocation=alloc)
                for a, alloc in zip(rec.assets, allocations)
            ],
            status=PortfolioStatus.PENDING.value,
            is_ape=True,
            initial_value=self.initial_value,
            current_value=float(self.initial_value),
            metadata={"strategy": rec.strategy, "generated_at": now.isoformat()},
            created_at=now,
        )
        saved = self.store.save_portfolio(portfolio)

        summary = ApeSummary(portfolio_id=saved.portfolio_id, current_value=saved.current_value)

        def attach(g: Game) -> None:
            g.ape_portfolio = summary

        self.store.update_game(game.game_id, attach)
        logger.info(f"Created system opponent {saved.portfolio_id} for game {game.game_id}")
        return saved
