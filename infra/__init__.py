"""Infrastructure modules for contest-engine"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .ledger import LedgerClient, PaperLedgerClient, Web3LedgerClient  # noqa: F401
from .metrics import MetricsRecorder  # noqa: F401
from .notifications import NotificationSink  # noqa: F401
from .price_feed import PriceSnapshot, StorePriceFeed  # noqa: F401
from .run_guard import RunGuard  # noqa: F401
from .state_store import SettlementStore  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"LedgerClient",
	"PaperLedgerClient",
	"Web3LedgerClient",
	"MetricsRecorder",
	"NotificationSink",
	"PriceSnapshot",
	"StorePriceFeed",
	"RunGuard",
	"SettlementStore",
]
