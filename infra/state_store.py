"""
Contest Engine Infrastructure: Settlement Store

Persistent repository for games, portfolios, crons, transactions, assets,
users and notifications, with atomic JSON writes.

Every read hands back a fresh model built from the stored document, so callers
can never mutate persisted state by accident. Writes go through the update_*
methods, which run read-modify-write under one re-entrant lock.
"""

import copy
import json
import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
import logging

from core.models import (
    Asset,
    Game,
    GameCron,
    Notification,
    Portfolio,
    PortfolioStatus,
    Transaction,
    User,
    Winner,
)

logger = logging.getLogger(__name__)


COLLECTIONS = (
    "games",
    "portfolios",
    "game_crons",
    "transactions",
    "assets",
    "users",
    "notifications",
)

MAX_NOTIFICATIONS = 5000
MAX_GAME_HISTORY = 200


def _empty_state() -> Dict[str, Dict[str, Any]]:
    return {name: {} for name in COLLECTIONS}


class MemoryBackend:
    """Keeps documents in process memory. Used for DRY_RUN and tests."""

    def __init__(self) -> None:
        self._data: Dict[str, Any] = _empty_state()

    def load(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)

    def save(self, data: Dict[str, Any]) -> None:
        self._data = copy.deepcopy(data)

    def describe(self) -> str:
        return "memory"


class JsonFileBackend:
    """Single JSON document on disk, replaced atomically on every save."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            logger.debug("No store file found at %s, starting empty", self.path)
            return _empty_state()

        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Invalid store file format in {self.path}")

        state = _empty_state()
        for name in COLLECTIONS:
            state[name] = data.get(name) or {}
        return state

    def save(self, data: Dict[str, Any]) -> None:
        # Write to temp file first
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.path.parent,
            prefix=".store_",
            suffix=".json.tmp",
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            # Atomic rename
            os.replace(temp_path, self.path)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    def describe(self) -> str:
        return f"json:{self.path}"


class SettlementStore:
    """
    Repository over a pluggable backend.

    Features:
    - Snapshot reads (fresh model per call)
    - Atomic single-document updates via mutator callbacks
    - Append-only winners with unique portfolio ids
    - Idempotent transaction inserts
    - Due-item queries by status and time
    """

    def __init__(self, backend=None, clock: Optional[Callable[[], datetime]] = None):
        self._backend = backend or MemoryBackend()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.RLock()
        self._data = self._backend.load()
        logger.info(f"Initialized SettlementStore ({self._backend.describe()})")

    def describe(self) -> str:
        return self._backend.describe()

    def _persist(self) -> None:
        self._backend.save(self._data)

    def _bucket(self, name: str) -> Dict[str, Any]:
        return self._data.setdefault(name, {})

    # ------------------------------------------------------------------
    # Games
    # ------------------------------------------------------------------

    def next_game_id(self) -> int:
        with self._lock:
            ids = [int(k) for k in self._bucket("games").keys()]
            return max(ids, default=0) + 1

    def insert_game(self, game: Game) -> Game:
        """Store a new game; the id must not be taken."""
        with self._lock:
            key = str(game.game_id)
            if key in self._bucket("games"):
                raise ValueError(f"Game {game.game_id} already exists")
            game.updated_at = self._clock()
            self._bucket("games")[key] = game.to_dict()
            self._persist()
            return Game.from_dict(self._bucket("games")[key])

    def save_game(self, game: Game, touch: bool = True) -> Game:
        with self._lock:
            if touch:
                game.updated_at = self._clock()
            self._bucket("games")[str(game.game_id)] = game.to_dict()
            self._persist()
            return Game.from_dict(self._bucket("games")[str(game.game_id)])

    def get_game(self, game_id: int) -> Optional[Game]:
        with self._lock:
            doc = self._bucket("games").get(str(game_id))
            return Game.from_dict(doc) if doc else None

    def update_game(self, game_id: int, mutate: Callable[[Game], Any]) -> Optional[Game]:
        """
        Apply `mutate` to the stored game atomically.

        If `mutate` raises, nothing is written and the exception propagates.

        Returns:
            Snapshot of the updated game, or None if it does not exist
        """
        with self._lock:
            doc = self._bucket("games").get(str(game_id))
            if doc is None:
                return None
            game = Game.from_dict(doc)
            mutate(game)
            return self.save_game(game)

    def find_games(
        self,
        status: Union[str, Iterable[str], None] = None,
        start_before: Optional[datetime] = None,
        end_before: Optional[datetime] = None,
        updated_before: Optional[datetime] = None,
        has_calculated_winners: Optional[bool] = None,
        is_fully_distributed: Optional[bool] = None,
        game_cron_id: Optional[str] = None,
        sort_by: str = "start_time",
        limit: Optional[int] = None,
    ) -> List[Game]:
        """Query games; time bounds are inclusive (`<=`)."""
        statuses = {status} if isinstance(status, str) else (set(status) if status else None)
        with self._lock:
            games = [Game.from_dict(doc) for doc in self._bucket("games").values()]

        def keep(g: Game) -> bool:
            if statuses is not None and g.status not in statuses:
                return False
            if start_before is not None and g.start_time > start_before:
                return False
            if end_before is not None and g.end_time > end_before:
                return False
            if updated_before is not None and (g.updated_at is None or g.updated_at > updated_before):
                return False
            if has_calculated_winners is not None and g.has_calculated_winners != has_calculated_winners:
                return False
            if is_fully_distributed is not None and g.is_fully_distributed != is_fully_distributed:
                return False
            if game_cron_id is not None and g.game_cron_id != game_cron_id:
                return False
            return True

        epoch = datetime.min.replace(tzinfo=timezone.utc)
        result = sorted(
            (g for g in games if keep(g)),
            key=lambda g: (getattr(g, sort_by) or epoch, g.game_id),
        )
        return result[:limit] if limit is not None else result

    def append_winner(self, game_id: int, winner: Winner) -> bool:
        """Append to winners[]; returns False if the portfolio is already listed."""
        with self._lock:
            doc = self._bucket("games").get(str(game_id))
            if doc is None:
                raise KeyError(f"Game {game_id} not found")
            game = Game.from_dict(doc)
            if game.winner_for(winner.portfolio_id) is not None:
                logger.debug(f"Winner {winner.portfolio_id} already recorded for game {game_id}")
                return False
            game.winners.append(winner)
            self.save_game(game)
            return True

    def mark_winner_distributed(self, game_id: int, portfolio_id: int, ref: str) -> bool:
        """Flag one winner entry as paid. Returns False if it was already flagged."""
        with self._lock:
            doc = self._bucket("games").get(str(game_id))
            if doc is None:
                raise KeyError(f"Game {game_id} not found")
            game = Game.from_dict(doc)
            winner = game.winner_for(portfolio_id)
            if winner is None:
                raise KeyError(f"Portfolio {portfolio_id} is not a winner of game {game_id}")
            if winner.is_reward_distributed:
                return False
            winner.is_reward_distributed = True
            winner.distribution_ref = ref
            self.save_game(game)
            return True

    # ------------------------------------------------------------------
    # Portfolios
    # ------------------------------------------------------------------

    def save_portfolio(self, portfolio: Portfolio, touch: bool = True) -> Portfolio:
        with self._lock:
            if touch:
                portfolio.updated_at = self._clock()
            self._bucket("portfolios")[str(portfolio.portfolio_id)] = portfolio.to_dict()
            self._persist()
            return Portfolio.from_dict(self._bucket("portfolios")[str(portfolio.portfolio_id)])

    def get_portfolio(self, portfolio_id: int) -> Optional[Portfolio]:
        with self._lock:
            doc = self._bucket("portfolios").get(str(portfolio_id))
            return Portfolio.from_dict(doc) if doc else None

    def update_portfolio(self, portfolio_id: int, mutate: Callable[[Portfolio], Any]) -> Optional[Portfolio]:
        with self._lock:
            doc = self._bucket("portfolios").get(str(portfolio_id))
            if doc is None:
                return None
            portfolio = Portfolio.from_dict(doc)
            mutate(portfolio)
            return self.save_portfolio(portfolio)

    def find_portfolios(
        self,
        game_id: Optional[int] = None,
        status: Union[str, Iterable[str], None] = None,
        is_locked: Optional[bool] = None,
        is_ape: Optional[bool] = None,
        has_transaction_hash: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[Portfolio]:
        """Query portfolios ordered by creation time ascending (then id)."""
        statuses = {status} if isinstance(status, str) else (set(status) if status else None)
        with self._lock:
            portfolios = [Portfolio.from_dict(doc) for doc in self._bucket("portfolios").values()]

        def keep(p: Portfolio) -> bool:
            if game_id is not None and p.game_id != game_id:
                return False
            if statuses is not None and p.status not in statuses:
                return False
            if is_locked is not None and p.is_locked != is_locked:
                return False
            if is_ape is not None and p.is_ape != is_ape:
                return False
            if has_transaction_hash is not None and bool(p.transaction_hash) != has_transaction_hash:
                return False
            return True

        result = sorted((p for p in portfolios if keep(p)), key=lambda p: (p.created_at, p.portfolio_id))
        return result[:limit] if limit is not None else result

    def find_manual_entries_due(
        self,
        now: datetime,
        retry_interval: timedelta,
        max_retries: int,
    ) -> List[Portfolio]:
        """PENDING_LOCK_BALANCE portfolios without a hash whose next owner poll is due."""
        candidates = self.find_portfolios(
            status=PortfolioStatus.PENDING_LOCK_BALANCE.value,
            has_transaction_hash=False,
        )
        due = []
        for p in candidates:
            if p.retry_count == 0:
                due.append(p)
            elif p.retry_count < max_retries and (
                p.last_retry_at is None or p.last_retry_at <= now - retry_interval
            ):
                due.append(p)
        return due

    # ------------------------------------------------------------------
    # Game crons
    # ------------------------------------------------------------------

    def save_cron(self, cron: GameCron) -> GameCron:
        with self._lock:
            self._bucket("game_crons")[cron.cron_id] = cron.to_dict()
            self._persist()
            return GameCron.from_dict(self._bucket("game_crons")[cron.cron_id])

    def get_cron(self, cron_id: str) -> Optional[GameCron]:
        with self._lock:
            doc = self._bucket("game_crons").get(cron_id)
            return GameCron.from_dict(doc) if doc else None

    def update_cron(self, cron_id: str, mutate: Callable[[GameCron], Any]) -> Optional[GameCron]:
        with self._lock:
            doc = self._bucket("game_crons").get(cron_id)
            if doc is None:
                return None
            cron = GameCron.from_dict(doc)
            mutate(cron)
            return self.save_cron(cron)

    def find_due_crons(self, now: datetime) -> List[GameCron]:
        with self._lock:
            crons = [GameCron.from_dict(doc) for doc in self._bucket("game_crons").values()]
        due = [
            c for c in crons
            if c.is_active and not c.is_deleted and (c.next_execution or c.created_at) <= now
        ]
        return sorted(due, key=lambda c: (c.next_execution or c.created_at, c.cron_id))

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def insert_transaction(self, tx: Transaction) -> bool:
        """Insert once; returns False when the same ledger effect is already recorded."""
        with self._lock:
            bucket = self._bucket("transactions")
            if tx.key in bucket:
                return False
            bucket[tx.key] = tx.to_dict()
            self._persist()
            return True

    def find_transactions(
        self,
        game_id: Optional[int] = None,
        portfolio_id: Optional[int] = None,
        type: Optional[str] = None,
    ) -> List[Transaction]:
        with self._lock:
            txs = [Transaction.from_dict(doc) for doc in self._bucket("transactions").values()]
        return [
            t for t in txs
            if (game_id is None or t.game_id == game_id)
            and (portfolio_id is None or t.portfolio_id == portfolio_id)
            and (type is None or t.type == type)
        ]

    # ------------------------------------------------------------------
    # Assets
    # ------------------------------------------------------------------

    def save_asset(self, asset: Asset) -> Asset:
        with self._lock:
            self._bucket("assets")[asset.asset_id] = asset.to_dict()
            self._persist()
            return Asset.from_dict(self._bucket("assets")[asset.asset_id])

    def get_asset(self, asset_id: str) -> Optional[Asset]:
        with self._lock:
            doc = self._bucket("assets").get(asset_id)
            return Asset.from_dict(doc) if doc else None

    def list_assets(
        self,
        game_type: Optional[str] = None,
        active_only: bool = True,
        ape_only: bool = False,
    ) -> List[Asset]:
        with self._lock:
            assets = [Asset.from_dict(doc) for doc in self._bucket("assets").values()]
        return sorted(
            (
                a for a in assets
                if (game_type is None or a.type == game_type)
                and (not active_only or a.is_active)
                and (not ape_only or a.ape_eligible)
            ),
            key=lambda a: a.asset_id,
        )

    def update_asset_prices(self, prices: Dict[str, float], at: datetime) -> int:
        """Write fresh prices for known assets in one persist; returns the count updated."""
        with self._lock:
            bucket = self._bucket("assets")
            updated = 0
            for asset_id, price in prices.items():
                doc = bucket.get(asset_id)
                if doc is None:
                    continue
                doc["current_price"] = float(price)
                doc["last_updated"] = at.isoformat()
                updated += 1
            if updated:
                self._persist()
            return updated

    # ------------------------------------------------------------------
    # Users and notifications
    # ------------------------------------------------------------------

    def save_user(self, user: User) -> User:
        with self._lock:
            self._bucket("users")[user.user_id] = user.to_dict()
            self._persist()
            return User.from_dict(self._bucket("users")[user.user_id])

    def get_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            doc = self._bucket("users").get(user_id)
            return User.from_dict(doc) if doc else None

    def record_game_result(
        self,
        user_id: str,
        game_id: int,
        portfolio_id: int,
        performance: float,
        earnings: int,
        rank: int,
    ) -> Optional[User]:
        """Append a settled result to the user's history; one entry per portfolio."""
        with self._lock:
            doc = self._bucket("users").get(user_id)
            if doc is None:
                return None
            user = User.from_dict(doc)
            if any(h.get("portfolio_id") == portfolio_id for h in user.game_history):
                return user

            played_before = any(h.get("game_id") == game_id for h in user.game_history)
            user.game_history.append({
                "game_id": game_id,
                "portfolio_id": portfolio_id,
                "performance": performance,
                "earnings": str(earnings),
                "rank": rank,
                "settled_at": self._clock().isoformat(),
            })
            user.game_history = user.game_history[-MAX_GAME_HISTORY:]
            user.total_portfolios += 1
            if not played_before:
                user.total_games_played += 1
            if earnings > 0:
                user.wins += 1
                user.total_earnings += earnings
            return self.save_user(user)

    def add_notification(self, notification: Notification) -> None:
        with self._lock:
            bucket = self._bucket("notifications")
            bucket[notification.notification_id] = notification.to_dict()
            if len(bucket) > MAX_NOTIFICATIONS:
                oldest = sorted(bucket.items(), key=lambda item: item[1].get("created_at") or "")
                for key, _ in oldest[: len(bucket) - MAX_NOTIFICATIONS]:
                    bucket.pop(key, None)
            self._persist()

    def list_notifications(self, user_id: Optional[str] = None) -> List[Notification]:
        with self._lock:
            items = [Notification.from_dict(doc) for doc in self._bucket("notifications").values()]
        items = [n for n in items if user_id is None or n.user_id == user_id]
        return sorted(items, key=lambda n: n.created_at)


def create_state_store_from_config(cfg: Optional[Dict[str, Any]], clock=None) -> SettlementStore:
    """Build a store from the `state` config section."""
    cfg = cfg or {}
    store_type = str(cfg.get("store", "json")).lower()
    if store_type == "memory":
        backend = MemoryBackend()
    elif store_type == "json":
        path = cfg.get("path") or os.getenv("STATE_FILE", "data/contest_state.json")
        backend = JsonFileBackend(path)
    else:
        raise ValueError(f"Unsupported state store: {store_type}")
    return SettlementStore(backend=backend, clock=clock)
