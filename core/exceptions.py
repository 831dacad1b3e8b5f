"""Shared exception types for contest settlement."""

from typing import Optional


class SettlementError(RuntimeError):
    """Base class for settlement failures tied to a game or portfolio."""

    def __init__(
        self,
        message: str,
        game_id: Optional[int] = None,
        portfolio_id: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.game_id = game_id
        self.portfolio_id = portfolio_id


class ValidationFailure(SettlementError):
    """Malformed win-condition configuration. The game is failed, never retried."""


class DataIntegrityFailure(SettlementError):
    """Non-finite portfolio values or a missing system opponent."""


class ReconciliationMismatch(SettlementError):
    """Ledger event fields disagree with the local portfolio record."""


class InvalidTransition(SettlementError):
    """Attempted game status change not allowed by the lifecycle."""


class LedgerError(RuntimeError):
    """Ledger rejected a call for a reason retrying will not fix."""

    def __init__(self, operation: str, original: Optional[Exception] = None):
        detail = f"{operation}: {original}" if original else operation
        super().__init__(detail)
        self.operation = operation
        self.original = original


class TransientExternalFailure(RuntimeError):
    """Raised when the ledger or price source stays unavailable after retries."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(f"{source}: {original}" if original else source)
        self.source = source
        self.original = original
