"""
Contest Engine Core: Win Conditions

Ranking and payout algorithms. Pure functions of the locked portfolios and the
prize pool: no store or ledger access, so the same inputs always produce the
same placements.

Ranking rule shared by every algorithm: performancePercentage descending,
ties broken by creation time ascending (earlier entry ranks higher), then by
portfolio id so the order is total.

All reward math is integer arithmetic on the prize pool. Percentages are
converted with Fraction(str(pct)) so 0.1 stays exactly one tenth, and the
integer-division remainder stays undistributed.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Any, Dict, List, Optional, Sequence
import logging

from core.exceptions import DataIntegrityFailure, ValidationFailure
from core.models import Portfolio, Tier, WinCondition, WinConditionType, normalize_config

logger = logging.getLogger(__name__)


@dataclass
class Placement:
    portfolio_id: int
    user_id: str
    rank: int
    is_winner: bool
    reward: int
    performance_percentage: float
    current_value: float
    is_system_opponent: bool = False


@dataclass
class SettlementResult:
    prize_pool: int
    placements: List[Placement] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def winners(self) -> List[Placement]:
        return sorted((p for p in self.placements if p.is_winner), key=lambda p: p.rank)

    @property
    def losers(self) -> List[Placement]:
        return [p for p in self.placements if not p.is_winner]

    @property
    def total_awarded(self) -> int:
        return sum(p.reward for p in self.placements if p.is_winner)


def percent(value: Any) -> Fraction:
    return Fraction(str(value))


def share_of(prize_pool: int, pct: Any) -> int:
    """floor(prize_pool * pct / 100) in exact arithmetic."""
    return math.floor(prize_pool * percent(pct) / 100)


def rank_portfolios(portfolios: Sequence[Portfolio]) -> List[Portfolio]:
    return sorted(
        portfolios,
        key=lambda p: (-p.performance_percentage, p.created_at, p.portfolio_id),
    )


def _placement(portfolio: Portfolio, rank: int, is_winner: bool, reward: int) -> Placement:
    return Placement(
        portfolio_id=portfolio.portfolio_id,
        user_id=portfolio.user_id,
        rank=rank,
        is_winner=is_winner,
        reward=reward,
        performance_percentage=portfolio.performance_percentage,
        current_value=portfolio.current_value,
        is_system_opponent=portfolio.is_ape,
    )


class WinConditionCalculator(ABC):
    """One payout algorithm."""

    type: WinConditionType
    requires_opponent = False

    def validate_config(self, config: Dict[str, Any]) -> None:
        """Raise ValidationFailure on malformed configuration."""

    @abstractmethod
    def calculate(
        self,
        players: Sequence[Portfolio],
        prize_pool: int,
        config: Dict[str, Any],
        opponent: Optional[Portfolio] = None,
    ) -> SettlementResult:
        ...


class MarloweBanesCalculator(WinConditionCalculator):
    """
    Beat the system opponent.

    A player wins only with a current value strictly greater than the
    opponent's; equality is a loss. Winners split the pool evenly.
    """

    type = WinConditionType.MARLOWE_BANES
    requires_opponent = True

    def calculate(self, players, prize_pool, config, opponent=None) -> SettlementResult:
        if opponent is None:
            raise DataIntegrityFailure("system opponent portfolio missing")

        result = SettlementResult(prize_pool=prize_pool)
        threshold = opponent.current_value
        ranked = rank_portfolios(players)
        winners = [p for p in ranked if p.current_value > threshold]
        losers = [p for p in ranked if p.current_value <= threshold]

        if not winners:
            # Prize pool stays with the platform
            result.placements.append(_placement(opponent, 1, True, 0))
            for p in losers:
                result.placements.append(_placement(p, 2, False, 0))
            return result

        reward = prize_pool // len(winners)
        for rank, p in enumerate(winners, start=1):
            result.placements.append(_placement(p, rank, True, reward))
        loser_rank = len(winners) + 1
        result.placements.append(_placement(opponent, loser_rank, False, 0))
        for p in losers:
            result.placements.append(_placement(p, loser_rank, False, 0))
        return result


class EqualDistributeCalculator(WinConditionCalculator):
    """Top X% of players split Y% of the pool evenly."""

    type = WinConditionType.EQUAL_DISTRIBUTE

    def validate_config(self, config):
        config = normalize_config(config)
        top = config.get("top_winners_percentage")
        reward_pct = config.get("reward_percentage")
        if top is None or reward_pct is None:
            raise ValidationFailure("EQUAL_DISTRIBUTE requires top_winners_percentage and reward_percentage")
        try:
            top_value = percent(top)
            reward_value = percent(reward_pct)
        except (TypeError, ValueError):
            raise ValidationFailure(f"EQUAL_DISTRIBUTE percentages must be numeric, got {top!r}/{reward_pct!r}")
        if top_value.denominator != 1 or top_value < 1 or top_value > 100:
            raise ValidationFailure(f"top_winners_percentage must be an integer in 1..100, got {top}")
        if reward_value <= 0 or reward_value > 100:
            raise ValidationFailure(f"reward_percentage must be in (0, 100], got {reward_pct}")

    @staticmethod
    def winner_count(top_winners_percentage: Any, population: int) -> int:
        """ceil(topWinnersPercentage / 100 * N)"""
        return math.ceil(percent(top_winners_percentage) * population / 100)

    def calculate(self, players, prize_pool, config, opponent=None) -> SettlementResult:
        config = normalize_config(config)
        self.validate_config(config)
        result = SettlementResult(prize_pool=prize_pool)
        ranked = rank_portfolios(players)
        if not ranked:
            return result

        if prize_pool <= 0:
            for p in ranked:
                result.placements.append(_placement(p, 1, False, 0))
            result.warnings.append("prize pool is empty; every portfolio lost")
            return result

        count = min(self.winner_count(config["top_winners_percentage"], len(ranked)), len(ranked))
        reward_pool = share_of(prize_pool, config["reward_percentage"])
        reward = reward_pool // count

        for rank, p in enumerate(ranked[:count], start=1):
            result.placements.append(_placement(p, rank, True, reward))
        for p in ranked[count:]:
            result.placements.append(_placement(p, count + 1, False, 0))
        return result


class TieredCalculator(WinConditionCalculator):
    """Fixed payout per finishing position."""

    type = WinConditionType.TIERED

    @staticmethod
    def parse_tiers(config: Dict[str, Any]) -> List[Tier]:
        raw = config.get("tiers")
        if not raw:
            raise ValidationFailure("TIERED requires a non-empty tiers list")
        tiers = []
        for item in raw:
            try:
                tier = Tier.from_dict(item)
                position = tier.position
                pct = percent(tier.reward_percentage)
            except (TypeError, ValueError, AttributeError):
                raise ValidationFailure(f"malformed tier {item!r}")
            if isinstance(position, bool) or not isinstance(position, int) or position < 1:
                raise ValidationFailure(f"tier position must be an integer >= 1, got {position!r}")
            if pct < 0 or pct > 100:
                raise ValidationFailure(f"tier reward_percentage must be in [0, 100], got {tier.reward_percentage}")
            tiers.append(tier)
        positions = [t.position for t in tiers]
        if len(set(positions)) != len(positions):
            raise ValidationFailure(f"duplicate tier positions in {positions}")
        return sorted(tiers, key=lambda t: t.position)

    def validate_config(self, config):
        tiers = self.parse_tiers(config)
        total = sum(percent(t.reward_percentage) for t in tiers)
        if total > 100:
            raise ValidationFailure(f"tier reward percentages sum to {float(total)}%, exceeding 100%")

    def calculate(self, players, prize_pool, config, opponent=None) -> SettlementResult:
        config = normalize_config(config)
        self.validate_config(config)
        tiers = self.parse_tiers(config)
        result = SettlementResult(prize_pool=prize_pool)
        ranked = rank_portfolios(players)
        if not ranked:
            return result

        if prize_pool <= 0:
            for p in ranked:
                result.placements.append(_placement(p, 1, False, 0))
            result.warnings.append("prize pool is empty; every portfolio lost")
            return result

        assigned = set()
        for tier in tiers:
            if tier.position > len(ranked):
                message = f"tier position {tier.position} exceeds {len(ranked)} portfolios; skipped"
                logger.warning(message)
                result.warnings.append(message)
                continue
            p = ranked[tier.position - 1]
            result.placements.append(_placement(p, tier.position, True, share_of(prize_pool, tier.reward_percentage)))
            assigned.add(p.portfolio_id)

        loser_rank = len(tiers) + 1
        for p in ranked:
            if p.portfolio_id not in assigned:
                result.placements.append(_placement(p, loser_rank, False, 0))
        return result


CALCULATORS: Dict[WinConditionType, WinConditionCalculator] = {
    WinConditionType.MARLOWE_BANES: MarloweBanesCalculator(),
    WinConditionType.EQUAL_DISTRIBUTE: EqualDistributeCalculator(),
    WinConditionType.TIERED: TieredCalculator(),
}


def get_calculator(win_type: Any) -> WinConditionCalculator:
    try:
        return CALCULATORS[WinConditionType.parse(win_type)]
    except (KeyError, ValueError):
        raise ValidationFailure(f"unknown win condition {win_type!r}")


def validate_win_condition(win_condition: WinCondition) -> None:
    """Raise ValidationFailure if the condition cannot be settled."""
    get_calculator(win_condition.type).validate_config(win_condition.config or {})
