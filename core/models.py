"""
Contest Engine Core: Domain Models

Games, portfolios, cron templates, ledger transactions, assets and users.

Monetary amounts (prize pools, rewards, fees) are Python ints in the ledger's
smallest unit and are serialized as strings so JSON never rounds them.
Portfolio values are simulated USD amounts and stay floats.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_dt(value: Any) -> Optional[datetime]:
    """Parse ISO strings (or pass datetimes through), forcing UTC when naive."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, int):
        return value
    return int(Decimal(str(value)))


class GameStatus(Enum):
    """Game lifecycle states"""
    TRX_PENDING = "TRX_PENDING"                  # Saved locally, ledger registration outstanding
    UPCOMING = "UPCOMING"                        # Registered, accepting entries
    ACTIVE = "ACTIVE"                            # Portfolios locked, prices moving
    UPDATE_VALUES = "UPDATE_VALUES"              # Ended, final valuation pending
    CALCULATING_WINNERS = "CALCULATING_WINNERS"  # Ranking and payouts
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class PortfolioStatus(Enum):
    PENDING = "PENDING"
    LOCKED = "LOCKED"
    WON = "WON"
    LOST = "LOST"
    FAILED = "FAILED"
    PENDING_LOCK_BALANCE = "PENDING_LOCK_BALANCE"
    AWAITING_DECISION = "AWAITING_DECISION"


class WinConditionType(Enum):
    MARLOWE_BANES = "MARLOWE_BANES"
    EQUAL_DISTRIBUTE = "EQUAL_DISTRIBUTE"
    TIERED = "TIERED"

    @classmethod
    def parse(cls, value: Any) -> "WinConditionType":
        """Accept enum members and the legacy spellings of the opponent condition."""
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().upper()
        if normalized in {"MARLOW_BANES", "MARLOWE_BAINES", "MARLOW_BAINES"}:
            return cls.MARLOWE_BANES
        return cls(normalized)


class GameType(Enum):
    DEFI = "DEFI"
    TRADFI = "TRADFI"


class CronType(Enum):
    ONCE = "ONCE"
    RECURRING = "RECURRING"


class TransactionType(Enum):
    ENTRY_FEE = "ENTRY_FEE"
    ADMIN_FEE = "ADMIN_FEE"
    REWARD = "REWARD"


class TransactionStatus(Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class NotificationType(Enum):
    PORTFOLIO_WON = "PORTFOLIO_WON"
    PORTFOLIO_LOST = "PORTFOLIO_LOST"
    PORTFOLIO_CREATED = "PORTFOLIO_CREATED"
    TRANSACTION_FAILED = "TRANSACTION_FAILED"
    GAME_FAILED = "GAME_FAILED"


# Crons authored against the API use camelCase keys
CONFIG_KEY_ALIASES = {
    "topWinnersPercentage": "top_winners_percentage",
    "rewardPercentage": "reward_percentage",
}


def normalize_config(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Win-condition config with camelCase keys mapped to snake_case; snake_case wins on conflict."""
    normalized: Dict[str, Any] = {}
    for key, value in (config or {}).items():
        target = CONFIG_KEY_ALIASES.get(key, key)
        if target != key and target in (config or {}):
            continue
        normalized[target] = value
    tiers = normalized.get("tiers")
    if isinstance(tiers, list):
        normalized["tiers"] = [normalize_config(t) if isinstance(t, dict) else t for t in tiers]
    return normalized


@dataclass
class Tier:
    position: int
    reward_percentage: float

    def to_dict(self) -> Dict[str, Any]:
        return {"position": self.position, "reward_percentage": self.reward_percentage}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Tier":
        data = normalize_config(data)
        return cls(position=data.get("position"), reward_percentage=data.get("reward_percentage"))


@dataclass
class WinCondition:
    """
    Pluggable payout rule attached to a game.

    config keys by type:
        EQUAL_DISTRIBUTE: top_winners_percentage, reward_percentage
        TIERED: tiers -> [{position, reward_percentage}]
        MARLOWE_BANES: none
    """
    type: WinConditionType
    config: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.config = normalize_config(self.config)

    def tiers(self) -> List[Tier]:
        return [Tier.from_dict(t) for t in (self.config.get("tiers") or [])]

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "config": dict(self.config)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WinCondition":
        return cls(type=WinConditionType.parse(data.get("type")), config=dict(data.get("config") or {}))


@dataclass
class PortfolioAsset:
    asset_id: str
    symbol: str
    allocation: int
    token_qty: Decimal = Decimal("0")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "symbol": self.symbol,
            "allocation": self.allocation,
            "token_qty": str(self.token_qty),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PortfolioAsset":
        return cls(
            asset_id=str(data["asset_id"]),
            symbol=data.get("symbol", ""),
            allocation=to_int(data.get("allocation")),
            token_qty=Decimal(str(data.get("token_qty", "0"))),
        )


@dataclass
class GameOutcome:
    is_winner: bool
    reward: int
    rank: int
    settled_at: Optional[datetime] = None
    reward_transaction_ref: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_winner": self.is_winner,
            "reward": str(self.reward),
            "rank": self.rank,
            "settled_at": to_iso(self.settled_at),
            "reward_transaction_ref": self.reward_transaction_ref,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GameOutcome":
        return cls(
            is_winner=bool(data.get("is_winner")),
            reward=to_int(data.get("reward")),
            rank=int(data.get("rank", 0)),
            settled_at=parse_dt(data.get("settled_at")),
            reward_transaction_ref=data.get("reward_transaction_ref"),
        )


@dataclass
class Portfolio:
    portfolio_id: int
    game_id: int
    user_id: str
    assets: List[PortfolioAsset] = field(default_factory=list)
    status: str = PortfolioStatus.PENDING.value
    is_locked: bool = False
    is_ape: bool = False
    name: str = ""
    initial_value: int = 100000
    current_value: float = 100000.0
    performance_percentage: float = 0.0
    value_history: List[Dict[str, Any]] = field(default_factory=list)
    game_outcome: Optional[GameOutcome] = None
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None
    retry_error: Optional[str] = None
    transaction_hash: Optional[str] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    locked_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def allocation_total(self) -> int:
        return sum(a.allocation for a in self.assets)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "portfolio_id": self.portfolio_id,
            "game_id": self.game_id,
            "user_id": self.user_id,
            "assets": [a.to_dict() for a in self.assets],
            "status": self.status,
            "is_locked": self.is_locked,
            "is_ape": self.is_ape,
            "name": self.name,
            "initial_value": self.initial_value,
            "current_value": self.current_value,
            "performance_percentage": self.performance_percentage,
            "value_history": list(self.value_history),
            "game_outcome": self.game_outcome.to_dict() if self.game_outcome else None,
            "retry_count": self.retry_count,
            "last_retry_at": to_iso(self.last_retry_at),
            "retry_error": self.retry_error,
            "transaction_hash": self.transaction_hash,
            "error": self.error,
            "metadata": dict(self.metadata),
            "created_at": to_iso(self.created_at),
            "locked_at": to_iso(self.locked_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Portfolio":
        outcome = data.get("game_outcome")
        return cls(
            portfolio_id=int(data["portfolio_id"]),
            game_id=int(data["game_id"]),
            user_id=str(data.get("user_id", "")),
            assets=[PortfolioAsset.from_dict(a) for a in data.get("assets") or []],
            status=data.get("status", PortfolioStatus.PENDING.value),
            is_locked=bool(data.get("is_locked", False)),
            is_ape=bool(data.get("is_ape", False)),
            name=data.get("name", ""),
            initial_value=to_int(data.get("initial_value"), 100000),
            current_value=float(data.get("current_value", 0.0)),
            performance_percentage=float(data.get("performance_percentage", 0.0)),
            value_history=[dict(v) for v in data.get("value_history") or []],
            game_outcome=GameOutcome.from_dict(outcome) if outcome else None,
            retry_count=int(data.get("retry_count", 0)),
            last_retry_at=parse_dt(data.get("last_retry_at")),
            retry_error=data.get("retry_error"),
            transaction_hash=data.get("transaction_hash"),
            error=data.get("error"),
            metadata=dict(data.get("metadata") or {}),
            created_at=parse_dt(data.get("created_at")) or utc_now(),
            locked_at=parse_dt(data.get("locked_at")),
            updated_at=parse_dt(data.get("updated_at")),
        )


@dataclass
class Winner:
    user_id: str
    portfolio_id: int
    performance_percentage: float
    reward: int
    is_reward_distributed: bool = False
    distribution_ref: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "portfolio_id": self.portfolio_id,
            "performance_percentage": self.performance_percentage,
            "reward": str(self.reward),
            "is_reward_distributed": self.is_reward_distributed,
            "distribution_ref": self.distribution_ref,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Winner":
        return cls(
            user_id=str(data.get("user_id", "")),
            portfolio_id=int(data["portfolio_id"]),
            performance_percentage=float(data.get("performance_percentage", 0.0)),
            reward=to_int(data.get("reward")),
            is_reward_distributed=bool(data.get("is_reward_distributed", False)),
            distribution_ref=data.get("distribution_ref"),
        )


@dataclass
class ApeSummary:
    portfolio_id: int
    current_value: float = 0.0
    performance_percentage: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "portfolio_id": self.portfolio_id,
            "current_value": self.current_value,
            "performance_percentage": self.performance_percentage,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApeSummary":
        return cls(
            portfolio_id=int(data["portfolio_id"]),
            current_value=float(data.get("current_value", 0.0)),
            performance_percentage=float(data.get("performance_percentage", 0.0)),
        )


@dataclass
class Game:
    game_id: int
    game_type: str
    start_time: datetime
    end_time: datetime
    entry_price: float
    entry_cap: int
    win_condition: WinCondition
    status: str = GameStatus.TRX_PENDING.value
    name: str = ""
    total_prize_pool: int = 0
    participant_count: int = 0
    winners: List[Winner] = field(default_factory=list)
    has_calculated_winners: bool = False
    is_fully_distributed: bool = False
    ape_portfolio: Optional[ApeSummary] = None
    game_cron_id: Optional[str] = None
    cron_slot: Optional[datetime] = None
    transaction_hash: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def is_terminal(self) -> bool:
        return self.status in {GameStatus.COMPLETED.value, GameStatus.FAILED.value}

    def winner_for(self, portfolio_id: int) -> Optional[Winner]:
        for winner in self.winners:
            if winner.portfolio_id == portfolio_id:
                return winner
        return None

    def undistributed_winners(self) -> List[Winner]:
        return [w for w in self.winners if not w.is_reward_distributed]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "game_id": self.game_id,
            "game_type": self.game_type,
            "start_time": to_iso(self.start_time),
            "end_time": to_iso(self.end_time),
            "entry_price": self.entry_price,
            "entry_cap": self.entry_cap,
            "win_condition": self.win_condition.to_dict(),
            "status": self.status,
            "name": self.name,
            "total_prize_pool": str(self.total_prize_pool),
            "participant_count": self.participant_count,
            "winners": [w.to_dict() for w in self.winners],
            "has_calculated_winners": self.has_calculated_winners,
            "is_fully_distributed": self.is_fully_distributed,
            "ape_portfolio": self.ape_portfolio.to_dict() if self.ape_portfolio else None,
            "game_cron_id": self.game_cron_id,
            "cron_slot": to_iso(self.cron_slot),
            "transaction_hash": self.transaction_hash,
            "error": self.error,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "completed_at": to_iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Game":
        ape = data.get("ape_portfolio")
        return cls(
            game_id=int(data["game_id"]),
            game_type=data.get("game_type", GameType.DEFI.value),
            start_time=parse_dt(data["start_time"]),
            end_time=parse_dt(data["end_time"]),
            entry_price=float(data.get("entry_price", 0.0)),
            entry_cap=int(data.get("entry_cap", 0)),
            win_condition=WinCondition.from_dict(data.get("win_condition") or {}),
            status=data.get("status", GameStatus.TRX_PENDING.value),
            name=data.get("name", ""),
            total_prize_pool=to_int(data.get("total_prize_pool")),
            participant_count=int(data.get("participant_count", 0)),
            winners=[Winner.from_dict(w) for w in data.get("winners") or []],
            has_calculated_winners=bool(data.get("has_calculated_winners", False)),
            is_fully_distributed=bool(data.get("is_fully_distributed", False)),
            ape_portfolio=ApeSummary.from_dict(ape) if ape else None,
            game_cron_id=data.get("game_cron_id"),
            cron_slot=parse_dt(data.get("cron_slot")),
            transaction_hash=data.get("transaction_hash"),
            error=data.get("error"),
            created_at=parse_dt(data.get("created_at")) or utc_now(),
            updated_at=parse_dt(data.get("updated_at")),
            completed_at=parse_dt(data.get("completed_at")),
        )


@dataclass
class GameCron:
    """Operator-defined template; every due firing spawns one game."""
    cron_id: str
    game_type: str
    cron_type: str
    entry_price: float
    start_time_hours: float
    game_duration_hours: float
    entry_cap: int
    win_condition: WinCondition
    next_execution: Optional[datetime] = None
    recurring_schedule_hours: Optional[float] = None
    last_executed: Optional[datetime] = None
    is_active: bool = True
    is_deleted: bool = False
    custom_name: Optional[str] = None
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cron_id": self.cron_id,
            "game_type": self.game_type,
            "cron_type": self.cron_type,
            "entry_price": self.entry_price,
            "start_time_hours": self.start_time_hours,
            "game_duration_hours": self.game_duration_hours,
            "entry_cap": self.entry_cap,
            "win_condition": self.win_condition.to_dict(),
            "next_execution": to_iso(self.next_execution),
            "recurring_schedule_hours": self.recurring_schedule_hours,
            "last_executed": to_iso(self.last_executed),
            "is_active": self.is_active,
            "is_deleted": self.is_deleted,
            "custom_name": self.custom_name,
            "last_error": self.last_error,
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GameCron":
        return cls(
            cron_id=str(data["cron_id"]),
            game_type=data.get("game_type", GameType.DEFI.value),
            cron_type=data.get("cron_type", CronType.ONCE.value),
            entry_price=float(data.get("entry_price", 0.0)),
            start_time_hours=float(data.get("start_time_hours", 0.0)),
            game_duration_hours=float(data.get("game_duration_hours", 0.0)),
            entry_cap=int(data.get("entry_cap", 0)),
            win_condition=WinCondition.from_dict(data.get("win_condition") or {}),
            next_execution=parse_dt(data.get("next_execution")),
            recurring_schedule_hours=data.get("recurring_schedule_hours"),
            last_executed=parse_dt(data.get("last_executed")),
            is_active=bool(data.get("is_active", True)),
            is_deleted=bool(data.get("is_deleted", False)),
            custom_name=data.get("custom_name"),
            last_error=data.get("last_error"),
            created_at=parse_dt(data.get("created_at")) or utc_now(),
        )


@dataclass
class Transaction:
    """Immutable settlement record for one confirmed ledger effect."""
    transaction_hash: str
    user_id: str
    type: str
    amount: int
    game_id: int
    portfolio_id: Optional[int] = None
    status: str = TransactionStatus.COMPLETED.value
    admin_fee: int = 0
    block_number: Optional[int] = None
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    gas_used: int = 0
    gas_price: int = 0
    network_fee: int = 0
    created_at: datetime = field(default_factory=utc_now)

    @property
    def key(self) -> str:
        return f"{self.transaction_hash}:{self.type}:{self.portfolio_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_hash": self.transaction_hash,
            "user_id": self.user_id,
            "type": self.type,
            "amount": str(self.amount),
            "game_id": self.game_id,
            "portfolio_id": self.portfolio_id,
            "status": self.status,
            "admin_fee": str(self.admin_fee),
            "block_number": self.block_number,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "gas_used": str(self.gas_used),
            "gas_price": str(self.gas_price),
            "network_fee": str(self.network_fee),
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transaction":
        portfolio_id = data.get("portfolio_id")
        return cls(
            transaction_hash=data["transaction_hash"],
            user_id=str(data.get("user_id", "")),
            type=data.get("type", TransactionType.ENTRY_FEE.value),
            amount=to_int(data.get("amount")),
            game_id=int(data.get("game_id", 0)),
            portfolio_id=int(portfolio_id) if portfolio_id is not None else None,
            status=data.get("status", TransactionStatus.COMPLETED.value),
            admin_fee=to_int(data.get("admin_fee")),
            block_number=data.get("block_number"),
            from_address=data.get("from_address"),
            to_address=data.get("to_address"),
            gas_used=to_int(data.get("gas_used")),
            gas_price=to_int(data.get("gas_price")),
            network_fee=to_int(data.get("network_fee")),
            created_at=parse_dt(data.get("created_at")) or utc_now(),
        )


@dataclass
class Asset:
    asset_id: str
    symbol: str
    type: str = GameType.DEFI.value
    name: str = ""
    current_price: Optional[float] = None
    last_updated: Optional[datetime] = None
    is_active: bool = True
    ape_eligible: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "symbol": self.symbol,
            "type": self.type,
            "name": self.name,
            "current_price": self.current_price,
            "last_updated": to_iso(self.last_updated),
            "is_active": self.is_active,
            "ape_eligible": self.ape_eligible,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Asset":
        price = data.get("current_price")
        return cls(
            asset_id=str(data["asset_id"]),
            symbol=data.get("symbol", ""),
            type=data.get("type", GameType.DEFI.value),
            name=data.get("name", ""),
            current_price=float(price) if price is not None else None,
            last_updated=parse_dt(data.get("last_updated")),
            is_active=bool(data.get("is_active", True)),
            ape_eligible=bool(data.get("ape_eligible", False)),
        )


@dataclass
class User:
    user_id: str
    address: str
    total_portfolios: int = 0
    total_games_played: int = 0
    wins: int = 0
    total_earnings: int = 0
    game_history: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "address": self.address,
            "total_portfolios": self.total_portfolios,
            "total_games_played": self.total_games_played,
            "wins": self.wins,
            "total_earnings": str(self.total_earnings),
            "game_history": [dict(h) for h in self.game_history],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        return cls(
            user_id=str(data["user_id"]),
            address=data.get("address", ""),
            total_portfolios=int(data.get("total_portfolios", 0)),
            total_games_played=int(data.get("total_games_played", 0)),
            wins=int(data.get("wins", 0)),
            total_earnings=to_int(data.get("total_earnings")),
            game_history=[dict(h) for h in data.get("game_history") or []],
        )


@dataclass
class Notification:
    notification_id: str
    user_id: str
    type: str
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    is_read: bool = False
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notification_id": self.notification_id,
            "user_id": self.user_id,
            "type": self.type,
            "message": self.message,
            "metadata": dict(self.metadata),
            "is_read": self.is_read,
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Notification":
        return cls(
            notification_id=str(data["notification_id"]),
            user_id=str(data.get("user_id", "")),
            type=data.get("type", ""),
            message=data.get("message", ""),
            metadata=dict(data.get("metadata") or {}),
            is_read=bool(data.get("is_read", False)),
            created_at=parse_dt(data.get("created_at")) or utc_now(),
        )
