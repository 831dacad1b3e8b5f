"""Test helpers for the contest-engine test suite"""

from tests.helpers.factories import (
    T0,
    FakeClock,
    address_for,
    assets_for,
    make_assets,
    make_game,
    make_portfolio,
    make_store,
    paper_ledger_with_pool,
    ranked_portfolios,
    seed_assets,
    seed_users,
    win_condition,
)

__all__ = [
    "T0",
    "FakeClock",
    "address_for",
    "assets_for",
    "make_assets",
    "make_game",
    "make_portfolio",
    "make_store",
    "paper_ledger_with_pool",
    "ranked_portfolios",
    "seed_assets",
    "seed_users",
    "win_condition",
]
