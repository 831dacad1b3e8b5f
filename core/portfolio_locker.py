"""
Contest Engine Core: Portfolio Locking and Valuation

Locking freezes each pending portfolio's token quantities at game start from
one price snapshot. Valuation marks locked portfolios to market afterwards.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_DOWN
from typing import Dict, List, Optional
import logging

from core.models import ApeSummary, Game, Portfolio, PortfolioStatus

logger = logging.getLogger(__name__)


TOKEN_QTY_QUANTUM = Decimal("0.000001")
MAX_VALUE_HISTORY = 20


def compute_token_qty(allocation: int, price: Optional[float]) -> Decimal:
    """allocation / price truncated to 6 decimals; 0 when the price is missing or not positive."""
    if price is None or not math.isfinite(price) or price <= 0:
        return Decimal("0")
    qty = Decimal(allocation) / Decimal(str(price))
    return qty.quantize(TOKEN_QTY_QUANTUM, rounding=ROUND_DOWN)


@dataclass
class LockSummary:
    locked: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    failed: Dict[int, str] = field(default_factory=dict)


class PortfolioLocker:
    """Locks a game's PENDING portfolios in creation order."""

    def __init__(self, store):
        self.store = store

    def lock_game_portfolios(self, game: Game, snapshot, now: datetime) -> LockSummary:
        summary = LockSummary()
        pending = self.store.find_portfolios(
            game_id=game.game_id,
            status=PortfolioStatus.PENDING.value,
            is_locked=False,
        )
        for portfolio in pending:
            try:
                if self.lock_portfolio(portfolio.portfolio_id, snapshot, now):
                    summary.locked.append(portfolio.portfolio_id)
                else:
                    summary.skipped.append(portfolio.portfolio_id)
            except Exception as e:
                logger.error(f"Failed to lock portfolio {portfolio.portfolio_id} in game {game.game_id}: {e}")
                summary.failed[portfolio.portfolio_id] = str(e)
                self._record_error(portfolio.portfolio_id, f"Lock failed: {e}")

        logger.info(
            f"Game {game.game_id}: locked {len(summary.locked)} portfolios "
            f"({len(summary.skipped)} skipped, {len(summary.failed)} failed)"
        )
        return summary

    def lock_portfolio(self, portfolio_id: int, snapshot, now: datetime) -> bool:
        """
        Lock one portfolio. Already-locked portfolios are left untouched.

        Returns:
            True if the portfolio was locked by this call
        """
        changed = {"locked": False}

        def mutate(portfolio: Portfolio) -> None:
            if portfolio.is_locked:
                return
            if portfolio.status != PortfolioStatus.PENDING.value:
                raise ValueError(f"portfolio status is {portfolio.status}, expected PENDING")
            for asset in portfolio.assets:
                price = snapshot.price(asset.asset_id)
                if price is None or price <= 0:
                    logger.warning(
                        f"Portfolio {portfolio.portfolio_id}: no usable price for {asset.symbol}, tokenQty=0"
                    )
                asset.token_qty = compute_token_qty(asset.allocation, price)
            portfolio.is_locked = True
            portfolio.status = PortfolioStatus.LOCKED.value
            portfolio.locked_at = now
            portfolio.error = None
            changed["locked"] = True

        result = self.store.update_portfolio(portfolio_id, mutate)
        if result is None:
            raise KeyError(f"Portfolio {portfolio_id} not found")
        return changed["locked"]

    def _record_error(self, portfolio_id: int, message: str) -> None:
        def mutate(portfolio: Portfolio) -> None:
            portfolio.error = message

        try:
            self.store.update_portfolio(portfolio_id, mutate)
        except Exception as e:
            logger.error(f"Could not record lock error on portfolio {portfolio_id}: {e}")


def calculate_value(portfolio: Portfolio, snapshot, fallback_prices: Optional[Dict[str, float]] = None) -> float:
    """
    Mark-to-market value of a locked portfolio.

    A missing snapshot price falls back to the asset's last known price.

    Raises:
        ValueError: when an asset with a non-zero quantity has no price at all
    """
    fallback_prices = fallback_prices or {}
    total = 0.0
    for asset in portfolio.assets:
        if asset.token_qty == 0:
            continue
        price = snapshot.price(asset.asset_id)
        if price is None:
            price = fallback_prices.get(asset.asset_id)
        if price is None:
            raise ValueError(f"no price available for {asset.symbol} ({asset.asset_id})")
        total += float(asset.token_qty) * price
    return total


def performance_of(current_value: float, initial_value: int) -> float:
    if not initial_value:
        return 0.0
    return (current_value - initial_value) / initial_value * 100.0


@dataclass
class ValuationSummary:
    valued: int = 0
    failed: Dict[int, str] = field(default_factory=dict)


class PortfolioValuer:
    """Revalues every locked portfolio of a game and refreshes the opponent summary."""

    def __init__(self, store, max_history: int = MAX_VALUE_HISTORY):
        self.store = store
        self.max_history = max_history

    def revalue_game(self, game: Game, snapshot, now: datetime) -> ValuationSummary:
        summary = ValuationSummary()
        fallback = {
            a.asset_id: a.current_price
            for a in self.store.list_assets(game_type=game.game_type, active_only=False)
            if a.current_price is not None
        }
        portfolios = self.store.find_portfolios(game_id=game.game_id, is_locked=True)
        opponent: Optional[Portfolio] = None

        for portfolio in portfolios:
            try:
                value = calculate_value(portfolio, snapshot, fallback)
                updated = self.store.update_portfolio(
                    portfolio.portfolio_id, self._apply_value(value, now)
                )
                summary.valued += 1
                if updated is not None and updated.is_ape:
                    opponent = updated
            except Exception as e:
                logger.error(f"Failed to value portfolio {portfolio.portfolio_id} in game {game.game_id}: {e}")
                summary.failed[portfolio.portfolio_id] = str(e)

        if opponent is not None:
            ape = ApeSummary(
                portfolio_id=opponent.portfolio_id,
                current_value=opponent.current_value,
                performance_percentage=opponent.performance_percentage,
            )

            def set_ape(g: Game) -> None:
                g.ape_portfolio = ape

            self.store.update_game(game.game_id, set_ape)

        logger.info(f"Game {game.game_id}: valued {summary.valued} portfolios ({len(summary.failed)} failed)")
        return summary

    def _apply_value(self, value: float, now: datetime):
        def mutate(portfolio: Portfolio) -> None:
            portfolio.current_value = value
            portfolio.performance_percentage = performance_of(value, portfolio.initial_value)
            portfolio.value_history.append({
                "value": value,
                "performance": portfolio.performance_percentage,
                "at": now.isoformat(),
            })
            portfolio.value_history = portfolio.value_history[-self.max_history:]

        return mutate
