"""
Contest Engine Core: Game Lifecycle

One method per scheduler responsibility. Every method re-derives its work
from persisted status, processes items in order and isolates failures per
item, so a crash or an error simply leaves the item for the next tick.

    fire_due_crons         GameCron → TRX_PENDING → UPCOMING
    activate_due_games     UPCOMING → ACTIVE (opponent + lock)
    close_ended_games      ACTIVE → UPDATE_VALUES
    refresh_active_values  leaderboard valuation while ACTIVE
    finalize_values        UPDATE_VALUES → CALCULATING_WINNERS
    calculate_winners      ranking and payout assignment
    distribute_rewards     ledger payouts, one game per call
    warn_stuck_games       report games that stopped moving
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional
import logging

from core.exceptions import ValidationFailure
from core.game_state import GameStateMachine
from core.models import CronType, Game, GameCron, GameStatus, WinConditionType
from core.win_conditions import validate_win_condition

logger = logging.getLogger(__name__)


# Registration ref for a game found on the ledger without a local tx hash
LEDGER_EXISTING_PREFIX = "LEDGER_EXISTING"


@dataclass
class TickSummary:
    processed: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def error_count(self) -> int:
        return len(self.errors)


class GameLifecycle:
    def __init__(
        self,
        store,
        ledger,
        price_feed,
        locker,
        valuer,
        opponents,
        winner_calculator,
        distributor,
        audit=None,
        alerts=None,
        state_machine: Optional[GameStateMachine] = None,
        finalize_limit: int = 5,
        calculate_limit: int = 3,
        stuck_after: timedelta = timedelta(minutes=5),
    ):
        self.store = store
        self.ledger = ledger
        self.price_feed = price_feed
        self.locker = locker
        self.valuer = valuer
        self.opponents = opponents
        self.winner_calculator = winner_calculator
        self.distributor = distributor
        self.audit = audit
        self.alerts = alerts
        self.state_machine = state_machine or GameStateMachine()
        self.finalize_limit = finalize_limit
        self.calculate_limit = calculate_limit
        self.stuck_after = stuck_after

    def _transition(self, game: Game, target: GameStatus, now: datetime, reason: Optional[str] = None) -> Game:
        updated = self.store.update_game(game.game_id, self.state_machine.transition_fn(target, now))
        if self.audit:
            self.audit.log_transition(game.game_id, game.status, target.value, reason=reason, ts=now)
        return updated

    # ------------------------------------------------------------------
    # Game crons
    # ------------------------------------------------------------------

    def fire_due_crons(self, now: datetime) -> TickSummary:
        summary = TickSummary()
        for cron in self.store.find_due_crons(now):
            try:
                game = self.fire_cron(cron, now)
                if game is not None:
                    summary.processed.append(game.game_id)
            except Exception as e:
                logger.error(f"Cron {cron.cron_id} firing failed: {e}")
                summary.errors[cron.cron_id] = str(e)
                self._record_cron_error(cron.cron_id, str(e))
        return summary

    def fire_cron(self, cron: GameCron, now: datetime) -> Optional[Game]:
        """
        Create and register the game for one due firing.

        A TRX_PENDING game left by an earlier failed attempt at the same firing
        is registered again instead of creating a second game. If that earlier
        createGame did land on the ledger, the game is adopted as registered
        rather than created twice.

        Returns:
            The UPCOMING game, or None if the cron was disabled for bad configuration
        """
        try:
            validate_win_condition(cron.win_condition)
        except ValidationFailure as e:
            logger.error(f"Cron {cron.cron_id} has an invalid win condition, disabling: {e.message}")

            def disable(c: GameCron) -> None:
                c.is_active = False
                c.last_error = e.message

            self.store.update_cron(cron.cron_id, disable)
            return None

        slot = cron.next_execution or cron.created_at
        existing = game = self._pending_game_for(cron, slot)
        if game is None:
            game_id = self.store.next_game_id()
            start_time = now + timedelta(hours=cron.start_time_hours)
            game = self.store.insert_game(Game(
                game_id=game_id,
                game_type=cron.game_type,
                start_time=start_time,
                end_time=start_time + timedelta(hours=cron.game_duration_hours),
                entry_price=cron.entry_price,
                entry_cap=cron.entry_cap,
                win_condition=cron.win_condition,
                name=cron.custom_name or f"Game {game_id}",
                game_cron_id=cron.cron_id,
                cron_slot=slot,
                created_at=now,
            ))
            logger.info(f"Cron {cron.cron_id} created game {game.game_id} ({game.win_condition.type.value})")
        else:
            logger.info(f"Cron {cron.cron_id}: re-registering pending game {game.game_id}")

        if existing is not None and self._registered_on_ledger(game.game_id):
            tx_hash = game.transaction_hash or f"{LEDGER_EXISTING_PREFIX}:{game.game_id}"
            logger.warning(
                f"Game {game.game_id} already exists on the ledger; adopting it as registered ({tx_hash})"
            )
        else:
            tx_hash = self.ledger.create_game(
                game.game_id, game.start_time, game.end_time, game.entry_price, game.entry_cap
            )

        def register(g: Game) -> None:
            g.transaction_hash = tx_hash
            g.error = None
            self.state_machine.transition(g, GameStatus.UPCOMING, now)

        game = self.store.update_game(game.game_id, register)
        if self.audit:
            self.audit.log_transition(
                game.game_id, GameStatus.TRX_PENDING.value, GameStatus.UPCOMING.value,
                reason=f"registered {tx_hash}", ts=now,
            )

        self.store.update_cron(cron.cron_id, lambda c: self._advance_cron(c, slot, now))
        return game

    def _registered_on_ledger(self, game_id: int) -> bool:
        # Unknown games read back as an all-zero struct
        details = self.ledger.get_game_details(game_id)
        return details.start_time > 0 or details.end_time > 0

    def _pending_game_for(self, cron: GameCron, slot: datetime) -> Optional[Game]:
        for game in self.store.find_games(status=GameStatus.TRX_PENDING.value, game_cron_id=cron.cron_id):
            if game.cron_slot == slot:
                return game
        return None

    @staticmethod
    def _advance_cron(cron: GameCron, slot: datetime, now: datetime) -> None:
        cron.last_executed = now
        cron.last_error = None
        if cron.cron_type == CronType.RECURRING.value and cron.recurring_schedule_hours:
            interval = timedelta(hours=float(cron.recurring_schedule_hours))
            next_run = slot + interval
            # Missed firings are not replayed
            while next_run <= now:
                next_run += interval
            cron.next_execution = next_run
        else:
            cron.is_active = False

    def _record_cron_error(self, cron_id: str, message: str) -> None:
        def mutate(c: GameCron) -> None:
            c.last_error = message

        try:
            self.store.update_cron(cron_id, mutate)
        except Exception as e:
            logger.error(f"Could not record error on cron {cron_id}: {e}")

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    def activate_due_games(self, now: datetime) -> TickSummary:
        summary = TickSummary()
        for game in self.store.find_games(status=GameStatus.UPCOMING.value, start_before=now):
            try:
                if self.activate_game(game, now):
                    summary.processed.append(game.game_id)
                else:
                    summary.skipped.append(game.game_id)
            except Exception as e:
                logger.error(f"Activation of game {game.game_id} failed: {e}")
                summary.errors[str(game.game_id)] = str(e)
        return summary

    def activate_game(self, game: Game, now: datetime) -> bool:
        if game.win_condition.type == WinConditionType.MARLOWE_BANES:
            try:
                self.opponents.ensure_for_game(game, now)
            except Exception as e:
                logger.error(f"Game {game.game_id}: system opponent unavailable, not activating: {e}")
                return False

        snapshot = self.price_feed.snapshot(game.game_type, now=now)
        lock_summary = self.locker.lock_game_portfolios(game, snapshot, now)
        self._transition(game, GameStatus.ACTIVE, now, reason=f"locked {len(lock_summary.locked)} portfolios")
        return True

    # ------------------------------------------------------------------
    # Valuation
    # ------------------------------------------------------------------

    def close_ended_games(self, now: datetime) -> TickSummary:
        summary = TickSummary()
        for game in self.store.find_games(status=GameStatus.ACTIVE.value, end_before=now, sort_by="end_time"):
            try:
                self._transition(game, GameStatus.UPDATE_VALUES, now, reason="end time reached")
                summary.processed.append(game.game_id)
            except Exception as e:
                logger.error(f"Closing game {game.game_id} failed: {e}")
                summary.errors[str(game.game_id)] = str(e)
        return summary

    def refresh_active_values(self, now: datetime) -> TickSummary:
        summary = TickSummary()
        for game in self.store.find_games(status=GameStatus.ACTIVE.value, start_before=now):
            if game.end_time <= now:
                continue
            try:
                snapshot = self.price_feed.snapshot(game.game_type, now=now)
                self.valuer.revalue_game(game, snapshot, now)
                summary.processed.append(game.game_id)
            except Exception as e:
                logger.error(f"Leaderboard refresh for game {game.game_id} failed: {e}")
                summary.errors[str(game.game_id)] = str(e)
        return summary

    def finalize_values(self, now: datetime) -> TickSummary:
        summary = TickSummary()
        games = self.store.find_games(
            status=GameStatus.UPDATE_VALUES.value, sort_by="updated_at", limit=self.finalize_limit
        )
        for game in games:
            try:
                snapshot = self.price_feed.snapshot(game.game_type, now=now)
                valuation = self.valuer.revalue_game(game, snapshot, now)
                if valuation.failed:
                    logger.warning(
                        f"Game {game.game_id}: {len(valuation.failed)} portfolios kept their previous value"
                    )
                self._transition(
                    game, GameStatus.CALCULATING_WINNERS, now, reason=f"final valuation of {valuation.valued}"
                )
                summary.processed.append(game.game_id)
            except Exception as e:
                logger.error(f"Final valuation of game {game.game_id} failed: {e}")
                summary.errors[str(game.game_id)] = str(e)
        return summary

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def calculate_winners(self, now: datetime) -> TickSummary:
        summary = TickSummary()
        games = self.store.find_games(
            status=GameStatus.CALCULATING_WINNERS.value,
            has_calculated_winners=False,
            sort_by="end_time",
            limit=self.calculate_limit,
        )
        for game in games:
            try:
                if self.winner_calculator.calculate(game.game_id, now) is not None:
                    summary.processed.append(game.game_id)
                else:
                    summary.skipped.append(game.game_id)
            except Exception as e:
                logger.error(f"Winner calculation for game {game.game_id} failed: {e}")
                summary.errors[str(game.game_id)] = str(e)
        return summary

    def distribute_rewards(self, now: datetime):
        return self.distributor.distribute_next(now)

    def warn_stuck_games(self, now: datetime) -> List[int]:
        cutoff = now - self.stuck_after
        stuck = self.store.find_games(
            status=[GameStatus.UPDATE_VALUES.value, GameStatus.CALCULATING_WINNERS.value],
            updated_before=cutoff,
            sort_by="updated_at",
        )
        for game in stuck:
            minutes = (now - game.updated_at).total_seconds() / 60
            logger.warning(f"Game {game.game_id} stuck in {game.status} for {minutes:.0f} minutes")
            if self.alerts:
                self.alerts.stuck_game(game.game_id, game.status, minutes)
        return [g.game_id for g in stuck]
