"""
Contest Engine Core: Winner Calculator

Settles one CALCULATING_WINNERS game: validates final values, refreshes the
prize pool from the ledger, runs the game's win condition and persists every
placement.

Re-running after a crash is safe: every locked portfolio (including ones that
already carry an outcome) is re-ranked deterministically, and winners[] rejects
duplicate portfolio ids.
"""

import math
from datetime import datetime, timedelta
from typing import List, Optional
import logging

from core.exceptions import DataIntegrityFailure, ValidationFailure
from core.game_state import GameStateMachine
from core.models import (
    Game,
    GameOutcome,
    GameStatus,
    NotificationType,
    Portfolio,
    PortfolioStatus,
    Winner,
)
from core.win_conditions import Placement, SettlementResult, get_calculator

logger = logging.getLogger(__name__)


SETTLED_STATUSES = (
    PortfolioStatus.LOCKED.value,
    PortfolioStatus.WON.value,
    PortfolioStatus.LOST.value,
)


class WinnerCalculator:
    def __init__(
        self,
        store,
        ledger,
        notifier=None,
        price_feed=None,
        stale_after: timedelta = timedelta(minutes=15),
        audit=None,
        alerts=None,
        state_machine: Optional[GameStateMachine] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.notifier = notifier
        self.price_feed = price_feed
        self.stale_after = stale_after
        self.audit = audit
        self.alerts = alerts
        self.state_machine = state_machine or GameStateMachine()

    def calculate(self, game_id: int, now: datetime) -> Optional[SettlementResult]:
        """
        Settle one game.

        Returns:
            The result, or None when the game is not eligible or was failed.

        Raises:
            TransientExternalFailure: ledger unavailable; status left unchanged
        """
        game = self.store.get_game(game_id)
        if game is None:
            logger.error(f"Game {game_id} not found")
            return None
        if game.status != GameStatus.CALCULATING_WINNERS.value or game.has_calculated_winners:
            logger.debug(f"Game {game_id} not eligible for winner calculation ({game.status})")
            return None

        try:
            calculator = get_calculator(game.win_condition.type)
            calculator.validate_config(game.win_condition.config)

            portfolios = self.store.find_portfolios(game_id=game_id, status=SETTLED_STATUSES, is_locked=True)
            players = [p for p in portfolios if not p.is_ape]
            opponent = next((p for p in portfolios if p.is_ape), None)
            if calculator.requires_opponent and opponent is None:
                raise DataIntegrityFailure("system opponent portfolio missing", game_id=game_id)

            self._validate_values(game, players + ([opponent] if opponent else []))
            self._warn_stale_prices(game, portfolios, now)

            # Prize pool is authoritative on the ledger; transient failures propagate
            details = self.ledger.get_game_details(game_id)
            prize_pool = int(details.total_prize_pool)

            result = calculator.calculate(
                players,
                prize_pool,
                game.win_condition.config,
                opponent=opponent if calculator.requires_opponent else None,
            )
        except (ValidationFailure, DataIntegrityFailure) as e:
            self._fail_game(game, e.message, now)
            return None

        self._persist(game, result, now)
        return result

    def _validate_values(self, game: Game, portfolios: List[Portfolio]) -> None:
        for p in portfolios:
            if not math.isfinite(p.current_value) or p.current_value == 0:
                raise DataIntegrityFailure(
                    f"portfolio {p.portfolio_id} has invalid current value {p.current_value}",
                    game_id=game.game_id,
                    portfolio_id=p.portfolio_id,
                )
            if not math.isfinite(p.performance_percentage):
                raise DataIntegrityFailure(
                    f"portfolio {p.portfolio_id} has invalid performance {p.performance_percentage}",
                    game_id=game.game_id,
                    portfolio_id=p.portfolio_id,
                )

    def _warn_stale_prices(self, game: Game, portfolios: List[Portfolio], now: datetime) -> None:
        if self.price_feed is None:
            return
        asset_ids = {a.asset_id for p in portfolios for a in p.assets}
        if not asset_ids:
            return
        snapshot = self.price_feed.snapshot(game.game_type, now=now)
        stale = snapshot.stale_assets(now, self.stale_after, asset_ids)
        if stale:
            logger.warning(
                f"Game {game.game_id}: {len(stale)} asset prices older than "
                f"{self.stale_after.total_seconds() / 60:.0f} minutes: {sorted(stale)}"
            )

    def _persist(self, game: Game, result: SettlementResult, now: datetime) -> None:
        for placement in result.placements:
            self.store.update_portfolio(placement.portfolio_id, self._outcome_mutator(placement, now))

        for placement in result.winners:
            self.store.append_winner(game.game_id, Winner(
                user_id=placement.user_id,
                portfolio_id=placement.portfolio_id,
                performance_percentage=placement.performance_percentage,
                reward=placement.reward,
            ))

        no_winners = not result.winners

        def finish(g: Game) -> None:
            g.total_prize_pool = result.prize_pool
            g.has_calculated_winners = True
            g.error = None
            if no_winners:
                g.is_fully_distributed = True
                self.state_machine.transition(g, GameStatus.COMPLETED, now)

        self.store.update_game(game.game_id, finish)

        logger.info(
            f"Game {game.game_id} ({game.win_condition.type.value}): {len(result.winners)} winners, "
            f"{len(result.losers)} losers, awarded {result.total_awarded} of {result.prize_pool}"
        )
        if self.audit:
            self.audit.log_settlement(game.game_id, game.win_condition.type.value, result, ts=now)
            if no_winners:
                self.audit.log_transition(
                    game.game_id, GameStatus.CALCULATING_WINNERS.value, GameStatus.COMPLETED.value,
                    reason="no winners", ts=now,
                )

        self._emit_side_effects(game, result)

    @staticmethod
    def _outcome_mutator(placement: Placement, now: datetime):
        def mutate(p: Portfolio) -> None:
            p.status = PortfolioStatus.WON.value if placement.is_winner else PortfolioStatus.LOST.value
            previous_ref = p.game_outcome.reward_transaction_ref if p.game_outcome else None
            p.game_outcome = GameOutcome(
                is_winner=placement.is_winner,
                reward=placement.reward,
                rank=placement.rank,
                settled_at=now,
                reward_transaction_ref=previous_ref,
            )

        return mutate

    def _emit_side_effects(self, game: Game, result: SettlementResult) -> None:
        if self.notifier is None:
            return
        for placement in result.placements:
            if placement.is_system_opponent:
                continue
            self.notifier.record_game_result(
                placement.user_id,
                game.game_id,
                placement.portfolio_id,
                placement.performance_percentage,
                placement.reward,
                placement.rank,
            )
            if placement.is_winner:
                self.notifier.emit(
                    placement.user_id,
                    NotificationType.PORTFOLIO_WON,
                    f"Your portfolio finished #{placement.rank} in {game.name or f'Game {game.game_id}'}",
                    {"game_id": game.game_id, "portfolio_id": placement.portfolio_id,
                     "rank": placement.rank, "reward": str(placement.reward)},
                )
            else:
                self.notifier.emit(
                    placement.user_id,
                    NotificationType.PORTFOLIO_LOST,
                    f"Your portfolio did not win {game.name or f'Game {game.game_id}'}",
                    {"game_id": game.game_id, "portfolio_id": placement.portfolio_id, "rank": placement.rank},
                )

    def _fail_game(self, game: Game, reason: str, now: datetime) -> None:
        logger.error(f"Game {game.game_id} failed during winner calculation: {reason}")
        self.store.update_game(game.game_id, self.state_machine.transition_fn(GameStatus.FAILED, now, error=reason))
        if self.audit:
            self.audit.log_transition(game.game_id, game.status, GameStatus.FAILED.value, reason=reason, ts=now)
        if self.alerts:
            self.alerts.game_failed(game.game_id, reason)
        if self.notifier:
            for p in self.store.find_portfolios(game_id=game.game_id, is_ape=False):
                self.notifier.emit(
                    p.user_id,
                    NotificationType.GAME_FAILED,
                    f"{game.name or f'Game {game.game_id}'} could not be settled",
                    {"game_id": game.game_id, "portfolio_id": p.portfolio_id, "reason": reason},
                )
