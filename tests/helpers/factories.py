"""
Test helpers for settlement tests.

Builders for games, portfolios and catalog data that mirror production
records, plus a controllable clock. Use these instead of hand-built dicts so
model changes surface in one place.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from core.models import (
    Asset,
    Game,
    GameStatus,
    Portfolio,
    PortfolioAsset,
    PortfolioStatus,
    User,
    WinCondition,
    WinConditionType,
)
from core.system_opponent import SYSTEM_USER_ID
from infra.ledger import PaperLedgerClient
from infra.state_store import MemoryBackend, SettlementStore

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_store(clock: Optional[FakeClock] = None) -> SettlementStore:
    return SettlementStore(MemoryBackend(), clock=clock or FakeClock())


def win_condition(kind: str = "MARLOWE_BANES", **config) -> WinCondition:
    return WinCondition(type=WinConditionType.parse(kind), config=dict(config))


def make_game(
    game_id: int = 1,
    status: GameStatus = GameStatus.UPCOMING,
    condition: Optional[WinCondition] = None,
    start: datetime = T0,
    duration_hours: float = 24,
    game_type: str = "DEFI",
    **overrides,
) -> Game:
    fields = dict(
        game_id=game_id,
        game_type=game_type,
        start_time=start,
        end_time=start + timedelta(hours=duration_hours),
        entry_price=10.0,
        entry_cap=100,
        win_condition=condition or win_condition(),
        status=status.value,
        name=f"Game {game_id}",
        transaction_hash=f"0xgame{game_id}",
        created_at=start - timedelta(hours=1),
    )
    fields.update(overrides)
    return Game(**fields)


def make_portfolio(
    portfolio_id: int,
    game_id: int = 1,
    user_id: Optional[str] = None,
    current_value: float = 100000.0,
    created_at: datetime = T0 - timedelta(minutes=30),
    status: PortfolioStatus = PortfolioStatus.LOCKED,
    is_ape: bool = False,
    assets: Optional[List[PortfolioAsset]] = None,
    **overrides,
) -> Portfolio:
    fields = dict(
        portfolio_id=portfolio_id,
        game_id=game_id,
        user_id=user_id or (SYSTEM_USER_ID if is_ape else f"user-{portfolio_id}"),
        assets=assets if assets is not None else [],
        status=status.value,
        is_locked=status in (PortfolioStatus.LOCKED, PortfolioStatus.WON, PortfolioStatus.LOST),
        is_ape=is_ape,
        name=f"Portfolio {portfolio_id}",
        initial_value=100000,
        current_value=current_value,
        performance_percentage=(current_value - 100000) / 100000 * 100.0,
        created_at=created_at,
    )
    fields.update(overrides)
    return Portfolio(**fields)


def ranked_portfolios(values: Sequence[float], game_id: int = 1, first_id: int = 1) -> List[Portfolio]:
    """Locked portfolios with the given values, created one minute apart in order."""
    return [
        make_portfolio(
            first_id + i,
            game_id=game_id,
            current_value=value,
            created_at=T0 - timedelta(hours=1) + timedelta(minutes=i),
        )
        for i, value in enumerate(values)
    ]


def make_assets(count: int = 8, game_type: str = "DEFI", price: float = 100.0, at: datetime = T0) -> List[Asset]:
    return [
        Asset(
            asset_id=f"asset-{i}",
            symbol=f"SYM{i}",
            type=game_type,
            name=f"Asset {i}",
            current_price=price * (i + 1),
            last_updated=at,
            is_active=True,
            ape_eligible=True,
        )
        for i in range(count)
    ]


def seed_assets(store: SettlementStore, assets: Sequence[Asset]) -> Dict[str, Asset]:
    return {a.asset_id: store.save_asset(a) for a in assets}


def assets_for(allocations: Sequence[int], assets: Sequence[Asset]) -> List[PortfolioAsset]:
    return [
        PortfolioAsset(asset_id=a.asset_id, symbol=a.symbol, allocation=alloc)
        for a, alloc in zip(assets, allocations)
    ]


def seed_users(store: SettlementStore, portfolios: Sequence[Portfolio]) -> None:
    for p in portfolios:
        if p.is_ape:
            continue
        if store.get_user(p.user_id) is None:
            store.save_user(User(user_id=p.user_id, address=address_for(p.user_id)))


def address_for(user_id: str) -> str:
    digits = "".join(ch for ch in user_id if ch.isdigit()) or "0"
    return "0x" + digits.rjust(40, "a")


def paper_ledger_with_pool(game: Game, entries: int, fee: Decimal = Decimal("10")) -> PaperLedgerClient:
    """Paper ledger holding `game` with `entries` paid entries."""
    ledger = PaperLedgerClient()
    ledger.create_game(game.game_id, game.start_time, game.end_time, fee, game.entry_cap)
    for i in range(entries):
        ledger.register_entry(game.game_id, 10_000 + i, address_for(f"user-{i}"))
    return ledger
