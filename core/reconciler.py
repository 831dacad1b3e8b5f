"""
Contest Engine Core: Entry Reconciliation

Confirms PENDING_LOCK_BALANCE portfolios against the ledger.

Two paths:
    - with a transaction hash: the receipt's PortfolioCreated event must match
      the local portfolio (id, game, owner address)
    - without one (manual entry): the ledger's owner of the portfolio id is
      polled until it matches the player, with spaced, capped retries

A confirmed entry records an ENTRY_FEE transaction, raises the game's
participant count and prize pool (never lowering them) and returns the
portfolio to PENDING so it is locked at game start.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import logging

from core.exceptions import ReconciliationMismatch
from core.models import (
    Game,
    NotificationType,
    Portfolio,
    PortfolioStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    to_int,
)
from infra.ledger import ZERO_ADDRESS, to_base_units

logger = logging.getLogger(__name__)


MANUAL_ENTRY_PREFIX = "MANUAL_ENTRY"
DEFAULT_ADMIN_FEE_PCT = 10


@dataclass
class ReconcileSummary:
    confirmed: List[int] = field(default_factory=list)
    failed: Dict[int, str] = field(default_factory=dict)
    pending: List[int] = field(default_factory=list)
    errors: Dict[int, str] = field(default_factory=dict)


class TransactionReconciler:
    def __init__(
        self,
        store,
        ledger,
        notifier=None,
        audit=None,
        metrics=None,
        max_retries: int = 5,
        retry_interval: timedelta = timedelta(minutes=2),
        admin_fee_pct: int = DEFAULT_ADMIN_FEE_PCT,
        contract_address: Optional[str] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.notifier = notifier
        self.audit = audit
        self.metrics = metrics
        self.max_retries = max_retries
        self.retry_interval = retry_interval
        self.admin_fee_pct = admin_fee_pct
        self.contract_address = contract_address

    # ------------------------------------------------------------------
    # Entries with a transaction hash
    # ------------------------------------------------------------------

    def reconcile_lock_balance(self, now: datetime) -> ReconcileSummary:
        summary = ReconcileSummary()
        portfolios = self.store.find_portfolios(
            status=PortfolioStatus.PENDING_LOCK_BALANCE.value,
            has_transaction_hash=True,
        )
        for portfolio in portfolios:
            try:
                if self.reconcile_receipt(portfolio, now):
                    summary.confirmed.append(portfolio.portfolio_id)
                else:
                    summary.pending.append(portfolio.portfolio_id)
            except ReconciliationMismatch as e:
                self._fail(portfolio, e.message, now)
                summary.failed[portfolio.portfolio_id] = e.message
            except Exception as e:
                # Receipt not reachable this tick; the portfolio is picked up again next tick
                logger.error(f"Error reconciling portfolio {portfolio.portfolio_id}: {e}")
                summary.errors[portfolio.portfolio_id] = str(e)
        if portfolios:
            logger.info(
                f"Lock-balance reconciliation: {len(summary.confirmed)} confirmed, {len(summary.failed)} failed, "
                f"{len(summary.pending)} pending, {len(summary.errors)} errors"
            )
        return summary

    def reconcile_receipt(self, portfolio: Portfolio, now: datetime) -> bool:
        """
        Returns:
            True once confirmed, False while the receipt is not available yet

        Raises:
            ReconciliationMismatch: receipt failed, event missing or fields disagree
        """
        receipt = self.ledger.get_transaction_receipt(portfolio.transaction_hash)
        if receipt is None:
            logger.debug(f"No receipt yet for portfolio {portfolio.portfolio_id} ({portfolio.transaction_hash})")
            return False

        if not receipt.status:
            raise ReconciliationMismatch(
                "Transaction failed on ledger", portfolio_id=portfolio.portfolio_id, game_id=portfolio.game_id
            )

        created = receipt.find_event("PortfolioCreated")
        if created is None:
            raise ReconciliationMismatch(
                "PortfolioCreated event not found in transaction",
                portfolio_id=portfolio.portfolio_id,
                game_id=portfolio.game_id,
            )

        args = created.args
        owner = str(args.get("owner", ""))
        expected_owner = self._user_address(portfolio)
        if (
            to_int(args.get("portfolioId"), -1) != portfolio.portfolio_id
            or to_int(args.get("gameId"), -1) != portfolio.game_id
            or expected_owner is None
            or owner.lower() != expected_owner.lower()
        ):
            raise ReconciliationMismatch(
                "PortfolioCreated event data does not match portfolio",
                portfolio_id=portfolio.portfolio_id,
                game_id=portfolio.game_id,
            )

        fee = receipt.find_event("PortfolioEntryFeePaid")
        fee_args: Dict[str, Any] = fee.args if fee else {}
        self.store.insert_transaction(Transaction(
            transaction_hash=portfolio.transaction_hash,
            user_id=portfolio.user_id,
            type=TransactionType.ENTRY_FEE.value,
            amount=to_int(fee_args.get("entryFee")),
            admin_fee=to_int(fee_args.get("adminFee")),
            game_id=portfolio.game_id,
            portfolio_id=portfolio.portfolio_id,
            status=TransactionStatus.COMPLETED.value,
            block_number=receipt.block_number,
            from_address=fee_args.get("payer"),
            to_address=self.contract_address,
            gas_used=receipt.gas_used,
            gas_price=receipt.effective_gas_price,
            network_fee=receipt.network_fee,
            created_at=now,
        ))

        self._merge_game_aggregates(
            portfolio.game_id, to_int(args.get("entryCount")), to_int(args.get("prizePool"))
        )
        self._confirm(portfolio, now, "receipt")
        return True

    # ------------------------------------------------------------------
    # Manual entries (no transaction hash)
    # ------------------------------------------------------------------

    def reconcile_manual_entries(self, now: datetime) -> ReconcileSummary:
        summary = ReconcileSummary()
        portfolios = self.store.find_manual_entries_due(now, self.retry_interval, self.max_retries)
        for portfolio in portfolios:
            try:
                result = self.reconcile_owner(portfolio, now)
                if result == "confirmed":
                    summary.confirmed.append(portfolio.portfolio_id)
                elif result == "failed":
                    summary.failed[portfolio.portfolio_id] = "Max retries exceeded"
                else:
                    summary.pending.append(portfolio.portfolio_id)
            except ReconciliationMismatch as e:
                self._fail(portfolio, e.message, now)
                summary.failed[portfolio.portfolio_id] = e.message
            except Exception as e:
                logger.error(f"Error processing manual entry {portfolio.portfolio_id}: {e}")
                summary.errors[portfolio.portfolio_id] = str(e)
                if self._record_retry(portfolio, str(e), now):
                    summary.failed[portfolio.portfolio_id] = "Max retries exceeded"
        if portfolios:
            logger.info(
                f"Manual-entry reconciliation: {len(summary.confirmed)} confirmed, {len(summary.failed)} failed, "
                f"{len(summary.pending)} waiting"
            )
        return summary

    def reconcile_owner(self, portfolio: Portfolio, now: datetime) -> str:
        """
        Returns:
            "confirmed", "retry" (owner not set yet) or "failed" (retries exhausted)

        Raises:
            ReconciliationMismatch: the portfolio belongs to someone else
        """
        owner = str(self.ledger.get_portfolio_owner(portfolio.portfolio_id) or ZERO_ADDRESS)
        expected_owner = self._user_address(portfolio)

        if owner.lower() == ZERO_ADDRESS:
            message = f"Portfolio {portfolio.portfolio_id} owner is zero address"
            logger.info(f"{message} (attempt {portfolio.retry_count + 1}/{self.max_retries})")
            return "failed" if self._record_retry(portfolio, message, now) else "retry"

        if expected_owner is None or owner.lower() != expected_owner.lower():
            raise ReconciliationMismatch(
                f"Ledger owner {owner} does not match portfolio owner",
                portfolio_id=portfolio.portfolio_id,
                game_id=portfolio.game_id,
            )

        game = self.store.get_game(portfolio.game_id)
        if game is None:
            raise ReconciliationMismatch(
                f"Game {portfolio.game_id} not found", portfolio_id=portfolio.portfolio_id, game_id=portfolio.game_id
            )

        details = self.ledger.get_game_details(portfolio.game_id)
        self._merge_game_aggregates(portfolio.game_id, details.entry_count, details.total_prize_pool)

        entry_fee = to_base_units(game.entry_price)
        self.store.insert_transaction(Transaction(
            transaction_hash=f"{MANUAL_ENTRY_PREFIX}:{portfolio.portfolio_id}",
            user_id=portfolio.user_id,
            type=TransactionType.ENTRY_FEE.value,
            amount=entry_fee,
            admin_fee=entry_fee * self.admin_fee_pct // 100,
            game_id=portfolio.game_id,
            portfolio_id=portfolio.portfolio_id,
            status=TransactionStatus.COMPLETED.value,
            block_number=0,
            from_address=owner,
            to_address=self.contract_address,
            created_at=now,
        ))
        self._confirm(portfolio, now, "owner")
        return "confirmed"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _user_address(self, portfolio: Portfolio) -> Optional[str]:
        user = self.store.get_user(portfolio.user_id)
        if user is None or not user.address:
            logger.warning(f"No address on record for user {portfolio.user_id} (portfolio {portfolio.portfolio_id})")
            return None
        return user.address

    def _merge_game_aggregates(self, game_id: int, entry_count: int, prize_pool: int) -> None:
        def merge(g: Game) -> None:
            g.participant_count = max(g.participant_count or 0, int(entry_count))
            g.total_prize_pool = max(g.total_prize_pool or 0, int(prize_pool))

        if self.store.update_game(game_id, merge) is None:
            logger.warning(f"Game {game_id} not found while merging entry aggregates")

    def _confirm(self, portfolio: Portfolio, now: datetime, path: str) -> None:
        def mutate(p: Portfolio) -> None:
            p.status = PortfolioStatus.PENDING.value
            p.error = None
            p.retry_count = 0
            p.last_retry_at = None
            p.retry_error = None

        self.store.update_portfolio(portfolio.portfolio_id, mutate)
        logger.info(f"Portfolio {portfolio.portfolio_id} confirmed on ledger ({path})")
        if self.audit:
            self.audit.log_reconciliation(portfolio.portfolio_id, portfolio.game_id, "confirmed", path, ts=now)
        if self.metrics:
            self.metrics.record_reconciliation("confirmed")
        if self.notifier:
            self.notifier.emit(
                portfolio.user_id,
                NotificationType.PORTFOLIO_CREATED,
                f"Portfolio {portfolio.name or portfolio.portfolio_id} created successfully",
                {"game_id": portfolio.game_id, "portfolio_id": portfolio.portfolio_id},
            )

    def _record_retry(self, portfolio: Portfolio, message: str, now: datetime) -> bool:
        """Count one failed attempt. Returns True when this attempt exhausted the retries."""
        exhausted = {"value": False}

        def mutate(p: Portfolio) -> None:
            p.retry_count += 1
            p.last_retry_at = now
            p.retry_error = message
            if p.retry_count >= self.max_retries:
                p.status = PortfolioStatus.FAILED.value
                p.error = "Max retries exceeded"
                exhausted["value"] = True

        self.store.update_portfolio(portfolio.portfolio_id, mutate)
        if exhausted["value"]:
            logger.error(f"Portfolio {portfolio.portfolio_id} failed: max retries exceeded ({message})")
            self._after_failure(portfolio, "Max retries exceeded", now)
        return exhausted["value"]

    def _fail(self, portfolio: Portfolio, reason: str, now: datetime) -> None:
        def mutate(p: Portfolio) -> None:
            p.status = PortfolioStatus.FAILED.value
            p.error = reason

        self.store.update_portfolio(portfolio.portfolio_id, mutate)
        logger.error(f"Portfolio {portfolio.portfolio_id} failed reconciliation: {reason}")
        self._after_failure(portfolio, reason, now)

    def _after_failure(self, portfolio: Portfolio, reason: str, now: datetime) -> None:
        if self.audit:
            self.audit.log_reconciliation(portfolio.portfolio_id, portfolio.game_id, "failed", reason, ts=now)
        if self.metrics:
            self.metrics.record_reconciliation("failed")
        if self.notifier:
            self.notifier.emit(
                portfolio.user_id,
                NotificationType.TRANSACTION_FAILED,
                f"Transaction failed for portfolio {portfolio.name or portfolio.portfolio_id}",
                {"game_id": portfolio.game_id, "portfolio_id": portfolio.portfolio_id, "reason": reason},
            )
