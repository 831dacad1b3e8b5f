"""
Contest Engine Core: Reward Distributor

Drains one game's computed winners into ledger payouts, in batches, oldest
eligible game first. Callers must serialize invocations process-wide: every
payout is signed by the same account and its nonce order must match call order.

Winners that never need real funds are settled locally with a synthetic
reference instead of a ledger call:
    - the system opponent (SYSTEM_OPPONENT_NO_DISTRIBUTION)
    - a portfolio that no longer exists (PORTFOLIO_NOT_FOUND)
    - a zero reward (ZERO_REWARD)

A batch that keeps failing is retried with exponential backoff; once retries
are exhausted the invocation is abandoned and the game stays in
CALCULATING_WINNERS for the next tick.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple
import logging

from core.game_state import GameStateMachine
from core.models import (
    Game,
    GameStatus,
    Portfolio,
    Transaction,
    TransactionStatus,
    TransactionType,
    Winner,
)

logger = logging.getLogger(__name__)


SYSTEM_OPPONENT_REF = "SYSTEM_OPPONENT_NO_DISTRIBUTION"
PORTFOLIO_NOT_FOUND_REF = "PORTFOLIO_NOT_FOUND"
ZERO_REWARD_REF = "ZERO_REWARD"

LOCAL_PAYOUT_KINDS = {
    SYSTEM_OPPONENT_REF: "system_opponent",
    PORTFOLIO_NOT_FOUND_REF: "not_found",
    ZERO_REWARD_REF: "zero_reward",
}


@dataclass
class DistributionOutcome:
    game_id: int
    ledger_calls: int = 0
    paid: List[int] = field(default_factory=list)
    settled_locally: Dict[int, str] = field(default_factory=dict)
    completed: bool = False
    abandoned: bool = False
    error: Optional[str] = None


class RewardDistributor:
    def __init__(
        self,
        store,
        ledger,
        batch_size: int = 50,
        batch_delay_seconds: float = 2.0,
        max_retries: int = 5,
        retry_base_seconds: float = 1.0,
        audit=None,
        alerts=None,
        metrics=None,
        state_machine: Optional[GameStateMachine] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.store = store
        self.ledger = ledger
        self.batch_size = batch_size
        self.batch_delay_seconds = batch_delay_seconds
        self.max_retries = max(1, max_retries)
        self.retry_base_seconds = retry_base_seconds
        self.audit = audit
        self.alerts = alerts
        self.metrics = metrics
        self.state_machine = state_machine or GameStateMachine()

    def next_eligible_game(self) -> Optional[Game]:
        games = self.store.find_games(
            status=GameStatus.CALCULATING_WINNERS.value,
            has_calculated_winners=True,
            is_fully_distributed=False,
            sort_by="end_time",
            limit=1,
        )
        return games[0] if games else None

    def distribute_next(self, now: datetime) -> Optional[DistributionOutcome]:
        """Distribute the oldest eligible game, if any."""
        game = self.next_eligible_game()
        if game is None:
            return None
        return self.distribute_game(game.game_id, now)

    def distribute_game(self, game_id: int, now: datetime) -> DistributionOutcome:
        outcome = DistributionOutcome(game_id=game_id)
        game = self.store.get_game(game_id)
        if game is None:
            outcome.error = "game not found"
            logger.error(f"Game {game_id} not found for reward distribution")
            return outcome

        if game.status == GameStatus.COMPLETED.value:
            outcome.completed = True
            logger.debug(f"Game {game_id} already completed; nothing to distribute")
            return outcome
        if game.status != GameStatus.CALCULATING_WINNERS.value or not game.has_calculated_winners:
            outcome.error = f"not eligible ({game.status}, calculated={game.has_calculated_winners})"
            logger.debug(f"Game {game_id} {outcome.error}")
            return outcome

        # Every pass settles at least one winner or stops, so this bounds the loop
        max_passes = len(game.undistributed_winners()) // self.batch_size + 2
        for _ in range(max_passes):
            game = self.store.get_game(game_id)
            pending = game.undistributed_winners()
            if not pending:
                self._complete(game, now)
                outcome.completed = True
                return outcome

            payable = self._settle_local(game, pending, outcome)
            if not payable:
                continue

            batch = payable[: self.batch_size]
            if not self._pay_batch(game, batch, now, outcome):
                return outcome

            if len(payable) > len(batch):
                logger.info(
                    f"Game {game_id}: {len(payable) - len(batch)} winners left, "
                    f"waiting {self.batch_delay_seconds}s before next batch"
                )
                time.sleep(self.batch_delay_seconds)

        remaining = len(self.store.get_game(game_id).undistributed_winners())
        if remaining:
            outcome.error = f"stopped with {remaining} winners undistributed"
            logger.warning(f"Game {game_id}: distribution made no progress, {remaining} winners left")
        else:
            self._complete(self.store.get_game(game_id), now)
            outcome.completed = True
        return outcome

    def _settle_local(self, game: Game, pending: List[Winner], outcome: DistributionOutcome) -> List[Tuple[Winner, Portfolio]]:
        """Mark winners that need no ledger call; return the ones that do, in rank order."""
        payable = []
        for winner in pending:
            portfolio = self.store.get_portfolio(winner.portfolio_id)
            if portfolio is None:
                ref = PORTFOLIO_NOT_FOUND_REF
                logger.warning(f"Game {game.game_id}: winner portfolio {winner.portfolio_id} not found")
            elif portfolio.is_ape:
                ref = SYSTEM_OPPONENT_REF
            elif winner.reward <= 0:
                ref = ZERO_REWARD_REF
            else:
                payable.append((winner, portfolio))
                continue

            if self.store.mark_winner_distributed(game.game_id, winner.portfolio_id, ref):
                outcome.settled_locally[winner.portfolio_id] = ref
                if portfolio is not None:
                    self.store.update_portfolio(winner.portfolio_id, self._ref_mutator(ref))
                if self.metrics:
                    self.metrics.record_payout(LOCAL_PAYOUT_KINDS[ref])
        return payable

    def _pay_batch(
        self,
        game: Game,
        batch: List[Tuple[Winner, Portfolio]],
        now: datetime,
        outcome: DistributionOutcome,
    ) -> bool:
        portfolio_ids = [w.portfolio_id for w, _ in batch]
        amounts = [int(w.reward) for w, _ in batch]

        last_error: Optional[Exception] = None
        tx_hash = None
        for attempt in range(self.max_retries):
            try:
                outcome.ledger_calls += 1
                tx_hash = self.ledger.batch_assign_rewards(game.game_id, portfolio_ids, amounts)
                break
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Reward batch for game {game.game_id} failed "
                    f"(attempt {attempt + 1}/{self.max_retries}): {e}"
                )
                if attempt < self.max_retries - 1:
                    delay = self.retry_base_seconds * (2 ** attempt)
                    logger.info(f"Retrying reward batch in {delay:.1f}s...")
                    time.sleep(delay)

        if tx_hash is None:
            outcome.abandoned = True
            outcome.error = str(last_error)
            logger.error(
                f"Reward distribution for game {game.game_id} abandoned after "
                f"{self.max_retries} attempts: {last_error}"
            )
            if self.audit:
                self.audit.log_reward_batch(
                    game.game_id, portfolio_ids, amounts, None, "abandoned", error=str(last_error), ts=now
                )
            if self.alerts:
                self.alerts.distribution_abandoned(game.game_id, self.max_retries, str(last_error))
            if self.metrics:
                self.metrics.record_payout("abandoned")
            return False

        for winner, portfolio in batch:
            self.store.mark_winner_distributed(game.game_id, winner.portfolio_id, tx_hash)
            self.store.update_portfolio(winner.portfolio_id, self._ref_mutator(tx_hash))
            self.store.insert_transaction(Transaction(
                transaction_hash=tx_hash,
                user_id=portfolio.user_id,
                type=TransactionType.REWARD.value,
                amount=int(winner.reward),
                game_id=game.game_id,
                portfolio_id=winner.portfolio_id,
                status=TransactionStatus.COMPLETED.value,
                created_at=now,
            ))
            outcome.paid.append(winner.portfolio_id)
            if self.metrics:
                self.metrics.record_payout("ledger", int(winner.reward))

        logger.info(
            f"Game {game.game_id}: paid {len(batch)} winners, total {sum(amounts)} (tx {tx_hash})"
        )
        if self.audit:
            self.audit.log_reward_batch(game.game_id, portfolio_ids, amounts, tx_hash, "paid", ts=now)
        return True

    @staticmethod
    def _ref_mutator(ref: str):
        def mutate(p: Portfolio) -> None:
            if p.game_outcome is not None:
                p.game_outcome.reward_transaction_ref = ref

        return mutate

    def _complete(self, game: Game, now: datetime) -> None:
        def finish(g: Game) -> None:
            g.is_fully_distributed = True
            if g.status == GameStatus.CALCULATING_WINNERS.value:
                self.state_machine.transition(g, GameStatus.COMPLETED, now)

        self.store.update_game(game.game_id, finish)
        logger.info(f"Game {game.game_id}: all rewards distributed, game completed")
        if self.alerts:
            self.alerts.resolve_game(game.game_id)
        if self.audit:
            self.audit.log_transition(
                game.game_id, GameStatus.CALCULATING_WINNERS.value, GameStatus.COMPLETED.value,
                reason="rewards distributed", ts=now,
            )
