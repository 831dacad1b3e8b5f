"""
Contest Engine Core: Game State Machine

Guarded lifecycle transitions for a contest.

States: TRX_PENDING → UPCOMING → ACTIVE → UPDATE_VALUES → CALCULATING_WINNERS → COMPLETED
Any non-terminal state may move to FAILED. FAILED and COMPLETED are terminal.
"""

from datetime import datetime
from typing import Callable, Dict, Optional, Set
import logging

from core.exceptions import InvalidTransition
from core.models import Game, GameStatus

logger = logging.getLogger(__name__)


class GameStateMachine:
    """
    Validates and applies game status changes.

    Transitions mutate the Game passed in; persistence is the caller's job
    (normally inside SettlementStore.update_game so the read-modify-write is atomic).
    """

    VALID_TRANSITIONS: Dict[GameStatus, Set[GameStatus]] = {
        GameStatus.TRX_PENDING: {GameStatus.UPCOMING, GameStatus.FAILED},
        GameStatus.UPCOMING: {GameStatus.ACTIVE, GameStatus.FAILED},
        GameStatus.ACTIVE: {GameStatus.UPDATE_VALUES, GameStatus.FAILED},
        GameStatus.UPDATE_VALUES: {GameStatus.CALCULATING_WINNERS, GameStatus.FAILED},
        GameStatus.CALCULATING_WINNERS: {GameStatus.COMPLETED, GameStatus.FAILED},
        # Terminal states have no outbound transitions
        GameStatus.COMPLETED: set(),
        GameStatus.FAILED: set(),
    }

    def guard_failure(self, game: Game, target: GameStatus, now: datetime) -> Optional[str]:
        """Return why `target` is not reachable from the game's current state, or None."""
        current = GameStatus(game.status)
        if target not in self.VALID_TRANSITIONS[current]:
            return f"{current.value} → {target.value} is not a lifecycle transition"

        if target == GameStatus.UPCOMING and not game.transaction_hash:
            return "ledger registration has no transaction hash"
        if target == GameStatus.ACTIVE and game.start_time > now:
            return f"start time {game.start_time.isoformat()} not reached"
        if target == GameStatus.UPDATE_VALUES and game.end_time > now:
            return f"end time {game.end_time.isoformat()} not reached"
        if target == GameStatus.COMPLETED and not game.is_fully_distributed:
            return "rewards not fully distributed"
        return None

    def can_transition(self, game: Game, target: GameStatus, now: datetime) -> bool:
        return self.guard_failure(game, target, now) is None

    def transition(
        self,
        game: Game,
        target: GameStatus,
        now: datetime,
        error: Optional[str] = None,
    ) -> Game:
        """
        Move the game to `target`.

        Raises:
            InvalidTransition: if the move is not allowed or its guard fails
        """
        reason = self.guard_failure(game, target, now)
        if reason:
            raise InvalidTransition(f"Game {game.game_id}: {reason}", game_id=game.game_id)

        old_status = game.status
        game.status = target.value

        if target == GameStatus.FAILED:
            game.error = error or game.error or "unrecoverable settlement error"
            game.completed_at = now
        elif target == GameStatus.COMPLETED:
            game.completed_at = now

        logger.info(f"Game {game.game_id} transitioned: {old_status} → {target.value}")
        return game

    def transition_fn(
        self,
        target: GameStatus,
        now: datetime,
        error: Optional[str] = None,
    ) -> Callable[[Game], Game]:
        """Mutator suitable for SettlementStore.update_game."""
        return lambda game: self.transition(game, target, now, error=error)
