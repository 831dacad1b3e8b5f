"""
Contest Engine Infrastructure: Ledger Service

Adapters for the contest contract.

- LedgerClient: the contract the settlement core consumes
- Web3LedgerClient: on-chain implementation (web3.py + eth-account)
- PaperLedgerClient: in-process simulation for DRY_RUN and tests

Reads retry network-class failures with exponential backoff and full jitter.
Writes are serialized through one lock that owns the signing account's nonce.
"""

import hashlib
import itertools
import os
import random
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence
import logging

import requests
from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3
from web3.exceptions import TransactionNotFound
from web3.logs import DISCARD

from core.exceptions import LedgerError, TransientExternalFailure

logger = logging.getLogger(__name__)


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
TOKEN_DECIMALS = 18

BASE_REWARD_GAS = 100_000
PER_PORTFOLIO_REWARD_GAS = 50_000
MAX_REWARD_GAS = 3_000_000
CREATE_GAME_GAS = 600_000

EIP712_DOMAIN_NAME = "FusioFantasyGameV2"
EIP712_DOMAIN_VERSION = "1"

NETWORK_ERROR_MARKERS = (
    "timeout",
    "timed out",
    "rate limit",
    "too many requests",
    "429",
    "502",
    "503",
    "504",
    "connection",
    "econnreset",
    "network",
    "temporarily unavailable",
)

RECEIPT_EVENTS = ("GameCreated", "PortfolioCreated", "PortfolioEntryFeePaid")


def _uint(name: str, indexed: bool = False) -> Dict[str, Any]:
    return {"name": name, "type": "uint256", "indexed": indexed}


CONTRACT_ABI: List[Dict[str, Any]] = [
    {
        "type": "function",
        "name": "createGame",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "gameId", "type": "uint256"},
            {"name": "startTime", "type": "uint256"},
            {"name": "endTime", "type": "uint256"},
            {"name": "entryFee", "type": "uint256"},
            {"name": "entryCap", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "getGameDetails",
        "stateMutability": "view",
        "inputs": [{"name": "gameId", "type": "uint256"}],
        "outputs": [
            {"name": "startTime", "type": "uint256"},
            {"name": "endTime", "type": "uint256"},
            {"name": "totalPrizePool", "type": "uint256"},
            {"name": "totalRewardDistributed", "type": "uint256"},
            {"name": "entryCount", "type": "uint256"},
        ],
    },
    {
        "type": "function",
        "name": "getPortfolioOwner",
        "stateMutability": "view",
        "inputs": [{"name": "portfolioId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "type": "function",
        "name": "nonce",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "batchAssignRewards",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "portfolioIds", "type": "uint256[]"},
            {"name": "amounts", "type": "uint256[]"},
            {"name": "signature", "type": "bytes"},
        ],
        "outputs": [],
    },
    {
        "type": "event",
        "name": "GameCreated",
        "anonymous": False,
        "inputs": [
            _uint("gameId", indexed=True),
            _uint("startTime"),
            _uint("endTime"),
            _uint("entryFee"),
            _uint("entryCap"),
        ],
    },
    {
        "type": "event",
        "name": "PortfolioCreated",
        "anonymous": False,
        "inputs": [
            _uint("portfolioId", indexed=True),
            _uint("gameId", indexed=True),
            {"name": "owner", "type": "address", "indexed": True},
            _uint("entryCount"),
            _uint("prizePool"),
        ],
    },
    {
        "type": "event",
        "name": "PortfolioEntryFeePaid",
        "anonymous": False,
        "inputs": [
            _uint("portfolioId", indexed=True),
            _uint("gameId", indexed=True),
            {"name": "payer", "type": "address", "indexed": True},
            _uint("entryFee"),
            _uint("adminFee"),
        ],
    },
]


@dataclass
class GameDetails:
    total_prize_pool: int
    entry_count: int
    total_reward_distributed: int = 0
    start_time: int = 0
    end_time: int = 0


@dataclass
class LedgerEvent:
    name: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LedgerReceipt:
    transaction_hash: str
    status: bool
    events: List[LedgerEvent] = field(default_factory=list)
    block_number: Optional[int] = None
    gas_used: int = 0
    effective_gas_price: int = 0

    def find_event(self, name: str) -> Optional[LedgerEvent]:
        for event in self.events:
            if event.name == name:
                return event
        return None

    @property
    def network_fee(self) -> int:
        return self.gas_used * self.effective_gas_price


def to_base_units(amount: Any, decimals: int = TOKEN_DECIMALS) -> int:
    """Convert a human token amount (e.g. entry price 10.5) to integer base units."""
    return int(Decimal(str(amount)) * (Decimal(10) ** decimals))


def is_network_error(exc: Exception) -> bool:
    if isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError,
                        TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, requests.exceptions.HTTPError) and exc.response is not None:
        status = exc.response.status_code
        return status == 429 or status >= 500
    message = str(exc).lower()
    return any(marker in message for marker in NETWORK_ERROR_MARKERS)


def call_with_retry(
    fn: Callable[[], Any],
    operation: str,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
) -> Any:
    """
    Run a ledger read with exponential backoff and full jitter.

    Retries network-class failures (timeouts, connection errors, 429/5xx).
    Anything else raises LedgerError at once.

    Raises:
        TransientExternalFailure: retries exhausted
        LedgerError: non-retryable failure
    """
    last_exception: Optional[Exception] = None
    for attempt in range(max_retries):
        try:
            return fn()
        except LedgerError:
            raise
        except Exception as exc:
            if not is_network_error(exc):
                logger.error(f"Ledger call {operation} failed: {exc}")
                raise LedgerError(operation, exc) from exc
            last_exception = exc
            logger.warning(f"Network error on {operation}: {exc}, attempt {attempt + 1}/{max_retries}")

        if attempt < max_retries - 1:
            backoff = random.uniform(0, min(max_delay, base_delay * (2 ** attempt)))
            logger.info(f"Retrying {operation} in {backoff:.1f}s...")
            time.sleep(backoff)

    logger.error(f"All {max_retries} retries exhausted for {operation}")
    raise TransientExternalFailure(operation, last_exception)


class LedgerClient(ABC):
    """Observable contract of the contest ledger."""

    @abstractmethod
    def create_game(
        self,
        game_id: int,
        start_time: datetime,
        end_time: datetime,
        entry_price: float,
        entry_cap: int,
    ) -> str:
        """Register a game; returns the transaction hash."""

    @abstractmethod
    def get_game_details(self, game_id: int) -> GameDetails:
        ...

    @abstractmethod
    def get_portfolio_owner(self, portfolio_id: int) -> str:
        """Current owner address, ZERO_ADDRESS if the portfolio is unknown."""

    @abstractmethod
    def batch_assign_rewards(
        self,
        game_id: int,
        portfolio_ids: Sequence[int],
        amounts: Sequence[int],
    ) -> str:
        """Pay a batch of winners in one call; returns the transaction hash."""

    @abstractmethod
    def get_transaction_receipt(self, tx_hash: str) -> Optional[LedgerReceipt]:
        """Decoded receipt, or None while the transaction is unknown or pending."""


class Web3LedgerClient(LedgerClient):
    """Contest contract over JSON-RPC."""

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        private_key: str,
        chain_id: int,
        max_retries: int = 3,
        retry_base_seconds: float = 1.0,
        receipt_timeout_seconds: float = 120.0,
        request_timeout_seconds: float = 20.0,
        w3: Optional[Web3] = None,
    ):
        if not contract_address:
            raise ValueError("Ledger contract address is required")
        if not private_key:
            raise ValueError("Ledger signing key is required")

        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout_seconds}))
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=CONTRACT_ABI,
        )
        self._account = Account.from_key(private_key)
        self.chain_id = int(chain_id)
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self.receipt_timeout_seconds = receipt_timeout_seconds

        self._tx_lock = threading.RLock()
        self._nonce: Optional[int] = None

        logger.info(f"Web3LedgerClient ready (contract={contract_address}, signer={self._account.address})")

    @property
    def address(self) -> str:
        return self._account.address

    def _read(self, fn: Callable[[], Any], operation: str) -> Any:
        return call_with_retry(fn, operation, max_retries=self.max_retries, base_delay=self.retry_base_seconds)

    def _send(self, contract_call, gas: int, operation: str) -> str:
        """Sign and broadcast one write, holding the nonce lock until it is mined."""
        with self._tx_lock:
            if self._nonce is None:
                self._nonce = self._read(
                    lambda: self.w3.eth.get_transaction_count(self._account.address, "pending"),
                    "get_transaction_count",
                )
            nonce = self._nonce
            try:
                tx = contract_call.build_transaction({
                    "from": self._account.address,
                    "nonce": nonce,
                    "gas": gas,
                    "chainId": self.chain_id,
                })
                signed = self._account.sign_transaction(tx)
                tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
            except Exception as exc:
                if "nonce" in str(exc).lower():
                    logger.warning(f"Nonce rejected on {operation} (nonce={nonce}), resyncing")
                    self._nonce = None
                if is_network_error(exc):
                    raise TransientExternalFailure(operation, exc) from exc
                raise LedgerError(operation, exc) from exc

            self._nonce = nonce + 1
            tx_hex = self.w3.to_hex(tx_hash)
            logger.info(f"Sent {operation} tx {tx_hex} (nonce={nonce}, gas={gas})")

            try:
                receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout_seconds)
            except Exception as exc:
                raise TransientExternalFailure(f"{operation} receipt {tx_hex}", exc) from exc

            if receipt["status"] != 1:
                raise LedgerError(f"{operation} reverted in tx {tx_hex}")
            return tx_hex

    def create_game(self, game_id, start_time, end_time, entry_price, entry_cap) -> str:
        call = self.contract.functions.createGame(
            int(game_id),
            int(start_time.timestamp()),
            int(end_time.timestamp()),
            to_base_units(entry_price),
            int(entry_cap),
        )
        return self._send(call, CREATE_GAME_GAS, f"createGame({game_id})")

    def get_game_details(self, game_id: int) -> GameDetails:
        raw = self._read(
            lambda: self.contract.functions.getGameDetails(int(game_id)).call(),
            f"getGameDetails({game_id})",
        )
        return GameDetails(
            start_time=int(raw[0]),
            end_time=int(raw[1]),
            total_prize_pool=int(raw[2]),
            total_reward_distributed=int(raw[3]),
            entry_count=int(raw[4]),
        )

    def get_portfolio_owner(self, portfolio_id: int) -> str:
        owner = self._read(
            lambda: self.contract.functions.getPortfolioOwner(int(portfolio_id)).call(),
            f"getPortfolioOwner({portfolio_id})",
        )
        return str(owner or ZERO_ADDRESS)

    def _sign_reward_batch(self, portfolio_ids: List[int], amounts: List[int], contract_nonce: int) -> bytes:
        typed_data = {
            "types": {
                "EIP712Domain": [
                    {"name": "name", "type": "string"},
                    {"name": "version", "type": "string"},
                    {"name": "chainId", "type": "uint256"},
                    {"name": "verifyingContract", "type": "address"},
                ],
                "BatchAssignRewards": [
                    {"name": "portfolioIds", "type": "uint256[]"},
                    {"name": "amounts", "type": "uint256[]"},
                    {"name": "nonce", "type": "uint256"},
                ],
            },
            "primaryType": "BatchAssignRewards",
            "domain": {
                "name": EIP712_DOMAIN_NAME,
                "version": EIP712_DOMAIN_VERSION,
                "chainId": self.chain_id,
                "verifyingContract": self.contract.address,
            },
            "message": {
                "portfolioIds": portfolio_ids,
                "amounts": amounts,
                "nonce": contract_nonce,
            },
        }
        signable = encode_typed_data(full_message=typed_data)
        return self._account.sign_message(signable).signature

    def batch_assign_rewards(self, game_id, portfolio_ids, amounts) -> str:
        if len(portfolio_ids) != len(amounts):
            raise LedgerError(
                f"batchAssignRewards({game_id}): {len(portfolio_ids)} portfolios, {len(amounts)} amounts"
            )
        if not portfolio_ids:
            raise LedgerError(f"batchAssignRewards({game_id}): empty batch")

        ids = [int(p) for p in portfolio_ids]
        values = [int(a) for a in amounts]
        gas = min(BASE_REWARD_GAS + PER_PORTFOLIO_REWARD_GAS * len(ids), MAX_REWARD_GAS)

        # Contract nonce must be read and signed under the same lock that sends the tx
        with self._tx_lock:
            contract_nonce = self._read(lambda: self.contract.functions.nonce().call(), "nonce")
            signature = self._sign_reward_batch(ids, values, int(contract_nonce))
            call = self.contract.functions.batchAssignRewards(ids, values, signature)
            return self._send(call, gas, f"batchAssignRewards({game_id}, n={len(ids)})")

    def get_transaction_receipt(self, tx_hash: str) -> Optional[LedgerReceipt]:
        def fetch():
            try:
                return self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        raw = self._read(fetch, f"getTransactionReceipt({tx_hash})")
        if raw is None:
            return None

        events: List[LedgerEvent] = []
        for name in RECEIPT_EVENTS:
            for log in self.contract.events[name]().process_receipt(raw, errors=DISCARD):
                events.append(LedgerEvent(name=name, args=dict(log["args"])))

        return LedgerReceipt(
            transaction_hash=tx_hash,
            status=raw["status"] == 1,
            events=events,
            block_number=raw.get("blockNumber"),
            gas_used=int(raw.get("gasUsed", 0)),
            effective_gas_price=int(raw.get("effectiveGasPrice", 0)),
        )


class PaperLedgerClient(LedgerClient):
    """
    In-process stand-in for the contest contract.

    Tracks games, entries, owners and payouts so the whole lifecycle can run
    locally. `register_entry` simulates a player paying into a game.
    """

    def __init__(self, admin_fee_pct: int = 10):
        self.admin_fee_pct = admin_fee_pct
        self.games: Dict[int, Dict[str, Any]] = {}
        self.owners: Dict[int, str] = {}
        self.receipts: Dict[str, LedgerReceipt] = {}
        self.payouts: List[Dict[str, Any]] = []
        self._counter = itertools.count(1)
        self._block = itertools.count(1)
        self._lock = threading.Lock()

    def _next_hash(self, label: str) -> str:
        seed = f"{label}:{next(self._counter)}".encode("utf-8")
        return "0x" + hashlib.sha256(seed).hexdigest()

    def create_game(self, game_id, start_time, end_time, entry_price, entry_cap) -> str:
        with self._lock:
            if game_id in self.games:
                raise LedgerError(f"createGame({game_id}): game already exists")
            tx_hash = self._next_hash(f"createGame:{game_id}")
            self.games[game_id] = {
                "start_time": int(start_time.timestamp()),
                "end_time": int(end_time.timestamp()),
                "entry_fee": to_base_units(entry_price),
                "entry_cap": int(entry_cap),
                "prize_pool": 0,
                "entry_count": 0,
                "distributed": 0,
            }
            self.receipts[tx_hash] = LedgerReceipt(
                transaction_hash=tx_hash,
                status=True,
                events=[LedgerEvent("GameCreated", {"gameId": game_id})],
                block_number=next(self._block),
            )
            logger.info(f"[PAPER] createGame({game_id}) -> {tx_hash}")
            return tx_hash

    def register_entry(self, game_id: int, portfolio_id: int, owner: str) -> str:
        """Simulate a paid entry; returns the entry transaction hash."""
        with self._lock:
            game = self.games.get(game_id)
            if game is None:
                raise LedgerError(f"enter({game_id}): unknown game")
            fee = game["entry_fee"]
            admin_fee = fee * self.admin_fee_pct // 100
            game["entry_count"] += 1
            game["prize_pool"] += fee - admin_fee
            self.owners[portfolio_id] = owner
            tx_hash = self._next_hash(f"enter:{game_id}:{portfolio_id}")
            self.receipts[tx_hash] = LedgerReceipt(
                transaction_hash=tx_hash,
                status=True,
                events=[
                    LedgerEvent("PortfolioCreated", {
                        "portfolioId": portfolio_id,
                        "gameId": game_id,
                        "owner": owner,
                        "entryCount": game["entry_count"],
                        "prizePool": game["prize_pool"],
                    }),
                    LedgerEvent("PortfolioEntryFeePaid", {
                        "portfolioId": portfolio_id,
                        "gameId": game_id,
                        "payer": owner,
                        "entryFee": fee,
                        "adminFee": admin_fee,
                    }),
                ],
                block_number=next(self._block),
                gas_used=21000,
                effective_gas_price=1,
            )
            return tx_hash

    def get_game_details(self, game_id: int) -> GameDetails:
        game = self.games.get(game_id)
        if game is None:
            return GameDetails(total_prize_pool=0, entry_count=0)
        return GameDetails(
            total_prize_pool=game["prize_pool"],
            entry_count=game["entry_count"],
            total_reward_distributed=game["distributed"],
            start_time=game["start_time"],
            end_time=game["end_time"],
        )

    def get_portfolio_owner(self, portfolio_id: int) -> str:
        return self.owners.get(portfolio_id, ZERO_ADDRESS)

    def batch_assign_rewards(self, game_id, portfolio_ids, amounts) -> str:
        if len(portfolio_ids) != len(amounts):
            raise LedgerError(f"batchAssignRewards({game_id}): length mismatch")
        if not portfolio_ids:
            raise LedgerError(f"batchAssignRewards({game_id}): empty batch")
        with self._lock:
            tx_hash = self._next_hash(f"rewards:{game_id}")
            total = sum(int(a) for a in amounts)
            if game_id in self.games:
                self.games[game_id]["distributed"] += total
            self.payouts.append({
                "game_id": game_id,
                "portfolio_ids": list(portfolio_ids),
                "amounts": [int(a) for a in amounts],
                "transaction_hash": tx_hash,
            })
            self.receipts[tx_hash] = LedgerReceipt(
                transaction_hash=tx_hash, status=True, block_number=next(self._block)
            )
            logger.info(f"[PAPER] batchAssignRewards({game_id}) paid {len(portfolio_ids)} portfolios, total={total}")
            return tx_hash

    def get_transaction_receipt(self, tx_hash: str) -> Optional[LedgerReceipt]:
        return self.receipts.get(tx_hash)


def create_ledger_from_config(cfg: Optional[Dict[str, Any]], mode: str) -> LedgerClient:
    """Paper ledger for DRY_RUN, web3 client for LIVE."""
    cfg = cfg or {}
    if str(mode).upper() != "LIVE":
        logger.info("DRY_RUN mode - using paper ledger")
        return PaperLedgerClient(admin_fee_pct=int(cfg.get("admin_fee_pct", 10)))

    rpc_url = cfg.get("rpc_url", "")
    if "${" in rpc_url:
        rpc_url = os.path.expandvars(rpc_url)
    key_env = cfg.get("private_key_env", "LEDGER_PRIVATE_KEY")
    private_key = os.getenv(key_env, "")
    if not private_key:
        raise ValueError(f"LIVE mode requires the signing key in ${key_env}")

    return Web3LedgerClient(
        rpc_url=rpc_url,
        contract_address=cfg.get("contract_address", ""),
        private_key=private_key,
        chain_id=int(cfg.get("chain_id", 1)),
        max_retries=int(cfg.get("max_retries", 3)),
        retry_base_seconds=float(cfg.get("retry_base_seconds", 1.0)),
        receipt_timeout_seconds=float(cfg.get("receipt_timeout_seconds", 120.0)),
        request_timeout_seconds=float(cfg.get("request_timeout_seconds", 20.0)),
    )
