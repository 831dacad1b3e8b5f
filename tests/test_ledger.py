"""
Ledger adapter tests.

Tests:
- call_with_retry backoff and error classification
- PaperLedgerClient pool accounting, receipts and payouts
- Web3LedgerClient against a mocked Web3 instance (nonce handling, reverts,
  receipt decoding, reward batch gas)
"""

from decimal import Decimal
from unittest.mock import MagicMock, Mock, patch

import pytest
import requests
from web3.exceptions import TransactionNotFound

from core.exceptions import LedgerError, TransientExternalFailure
from infra.ledger import (
    BASE_REWARD_GAS,
    MAX_REWARD_GAS,
    PER_PORTFOLIO_REWARD_GAS,
    ZERO_ADDRESS,
    PaperLedgerClient,
    Web3LedgerClient,
    call_with_retry,
    create_ledger_from_config,
    is_network_error,
    to_base_units,
)
from tests.helpers import T0, make_game

CONTRACT = "0x" + "12" * 20
TEST_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"


class TestRetry:

    def test_network_error_retried_then_succeeds(self):
        fn = Mock(side_effect=[requests.exceptions.Timeout("read timed out"), 42])
        with patch("infra.ledger.time.sleep") as sleep:
            assert call_with_retry(fn, "getGameDetails(1)", max_retries=3) == 42
        assert fn.call_count == 2
        sleep.assert_called_once()

    def test_exhaustion_raises_transient(self):
        fn = Mock(side_effect=ConnectionError("connection reset"))
        with patch("infra.ledger.time.sleep") as sleep:
            with pytest.raises(TransientExternalFailure):
                call_with_retry(fn, "nonce", max_retries=4)
        assert fn.call_count == 4
        assert sleep.call_count == 3

    def test_non_network_error_is_not_retried(self):
        fn = Mock(side_effect=ValueError("execution reverted: unknown game"))
        with patch("infra.ledger.time.sleep") as sleep:
            with pytest.raises(LedgerError):
                call_with_retry(fn, "getGameDetails(9)")
        assert fn.call_count == 1
        sleep.assert_not_called()

    def test_backoff_is_capped(self):
        fn = Mock(side_effect=TimeoutError("timeout"))
        with patch("infra.ledger.time.sleep") as sleep:
            with pytest.raises(TransientExternalFailure):
                call_with_retry(fn, "x", max_retries=6, base_delay=10.0, max_delay=15.0)
        assert all(call.args[0] <= 15.0 for call in sleep.call_args_list)

    @pytest.mark.parametrize("exc,expected", [
        (requests.exceptions.ConnectionError(), True),
        (RuntimeError("429 Too Many Requests"), True),
        (RuntimeError("503 Service Unavailable"), True),
        (RuntimeError("execution reverted"), False),
    ])
    def test_is_network_error(self, exc, expected):
        assert is_network_error(exc) is expected

    def test_to_base_units(self):
        assert to_base_units(10) == 10 * 10**18
        assert to_base_units(0.1) == 10**17
        assert to_base_units("2.5", decimals=6) == 2_500_000


class TestPaperLedger:

    def test_entries_grow_prize_pool_net_of_admin_fee(self):
        ledger = PaperLedgerClient(admin_fee_pct=10)
        game = make_game()
        ledger.create_game(1, game.start_time, game.end_time, Decimal("10"), 100)

        tx_hash = ledger.register_entry(1, 501, "0xowner")
        ledger.register_entry(1, 502, "0xother")

        details = ledger.get_game_details(1)
        assert details.entry_count == 2
        assert details.total_prize_pool == 2 * 9 * 10**18
        receipt = ledger.get_transaction_receipt(tx_hash)
        assert receipt.status
        assert receipt.find_event("PortfolioCreated").args["owner"] == "0xowner"
        assert receipt.find_event("PortfolioEntryFeePaid").args["adminFee"] == 10**18
        assert ledger.get_portfolio_owner(501) == "0xowner"
        assert ledger.get_portfolio_owner(999) == ZERO_ADDRESS

    def test_duplicate_game_rejected(self):
        ledger = PaperLedgerClient()
        ledger.create_game(1, T0, T0, 1, 10)
        with pytest.raises(LedgerError):
            ledger.create_game(1, T0, T0, 1, 10)

    def test_batch_payout_recorded(self):
        ledger = PaperLedgerClient()
        ledger.create_game(1, T0, T0, 1, 10)

        ledger.batch_assign_rewards(1, [5, 6], [300, 200])

        assert ledger.get_game_details(1).total_reward_distributed == 500
        assert ledger.payouts[0]["portfolio_ids"] == [5, 6]
        with pytest.raises(LedgerError):
            ledger.batch_assign_rewards(1, [5], [1, 2])
        with pytest.raises(LedgerError):
            ledger.batch_assign_rewards(1, [], [])

    def test_unknown_game_details_are_empty(self):
        assert PaperLedgerClient().get_game_details(77).total_prize_pool == 0

    def test_factory(self, monkeypatch):
        assert isinstance(create_ledger_from_config({}, "DRY_RUN"), PaperLedgerClient)
        monkeypatch.delenv("LEDGER_PRIVATE_KEY", raising=False)
        with pytest.raises(ValueError):
            create_ledger_from_config({"contract_address": CONTRACT}, "LIVE")


@pytest.fixture
def w3():
    mock = MagicMock()
    mock.to_hex.side_effect = lambda b: "0x" + bytes(b).hex()
    mock.eth.send_raw_transaction.return_value = b"\xab\xcd"
    mock.eth.wait_for_transaction_receipt.return_value = {"status": 1}
    mock.eth.get_transaction_count.return_value = 7
    return mock


@pytest.fixture
def client(w3):
    c = Web3LedgerClient(
        rpc_url="http://localhost:8545",
        contract_address=CONTRACT,
        private_key=TEST_KEY,
        chain_id=31337,
        w3=w3,
    )
    c._account = Mock(address="0x" + "ab" * 20)
    c._account.sign_transaction.return_value = Mock(raw_transaction=b"signed")
    return c


def contract_call():
    call = Mock()
    call.build_transaction.side_effect = lambda params: dict(params)
    return call


class TestWeb3Ledger:

    def test_requires_contract_and_key(self, w3):
        with pytest.raises(ValueError):
            Web3LedgerClient("http://x", "", TEST_KEY, 1, w3=w3)
        with pytest.raises(ValueError):
            Web3LedgerClient("http://x", CONTRACT, "", 1, w3=w3)

    def test_game_details_decoding(self, client):
        client.contract.functions.getGameDetails.return_value.call.return_value = (100, 200, 9000, 10, 3)

        details = client.get_game_details(1)

        assert details.total_prize_pool == 9000
        assert details.total_reward_distributed == 10
        assert details.entry_count == 3
        assert details.start_time == 100

    def test_send_tracks_nonce_locally(self, client, w3):
        assert client._send(contract_call(), 21000, "op") == "0xabcd"
        client._send(contract_call(), 21000, "op")

        nonces = [c.args[0]["nonce"] for c in client._account.sign_transaction.call_args_list]
        assert nonces == [7, 8]
        w3.eth.get_transaction_count.assert_called_once()

    def test_nonce_error_forces_resync(self, client, w3):
        w3.eth.send_raw_transaction.side_effect = [ValueError("nonce too low"), b"\x01"]

        with pytest.raises(LedgerError):
            client._send(contract_call(), 21000, "op")
        assert client._nonce is None

        client._send(contract_call(), 21000, "op")
        assert w3.eth.get_transaction_count.call_count == 2

    def test_network_error_on_send_is_transient(self, client, w3):
        w3.eth.send_raw_transaction.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(TransientExternalFailure):
            client._send(contract_call(), 21000, "op")

    def test_reverted_transaction_raises(self, client, w3):
        w3.eth.wait_for_transaction_receipt.return_value = {"status": 0}
        with pytest.raises(LedgerError, match="reverted"):
            client._send(contract_call(), 21000, "op")

    def test_batch_assign_rewards_gas_and_signature(self, client):
        client.contract.functions.nonce.return_value.call.return_value = 3
        with patch.object(client, "_sign_reward_batch", return_value=b"sig") as sign, \
                patch.object(client, "_send", return_value="0xpaid") as send:
            assert client.batch_assign_rewards(1, [10, 11], [500, 400]) == "0xpaid"

        sign.assert_called_once_with([10, 11], [500, 400], 3)
        client.contract.functions.batchAssignRewards.assert_called_once_with([10, 11], [500, 400], b"sig")
        assert send.call_args.args[1] == BASE_REWARD_GAS + 2 * PER_PORTFOLIO_REWARD_GAS

    def test_batch_gas_is_capped(self, client):
        client.contract.functions.nonce.return_value.call.return_value = 0
        ids = list(range(100))
        with patch.object(client, "_sign_reward_batch", return_value=b"sig"), \
                patch.object(client, "_send", return_value="0x1") as send:
            client.batch_assign_rewards(1, ids, [1] * 100)
        assert send.call_args.args[1] == MAX_REWARD_GAS

    def test_batch_length_mismatch(self, client):
        with pytest.raises(LedgerError):
            client.batch_assign_rewards(1, [1, 2], [1])

    def test_unknown_receipt_is_none(self, client, w3):
        w3.eth.get_transaction_receipt.side_effect = TransactionNotFound("unknown")
        assert client.get_transaction_receipt("0xmissing") is None

    def test_receipt_events_decoded(self, client, w3):
        w3.eth.get_transaction_receipt.return_value = {
            "status": 1, "blockNumber": 55, "gasUsed": 21000, "effectiveGasPrice": 2,
        }
        logs = {
            "GameCreated": [],
            "PortfolioCreated": [{"args": {"portfolioId": 5, "gameId": 1, "owner": "0xabc"}}],
            "PortfolioEntryFeePaid": [{"args": {"portfolioId": 5, "entryFee": 10, "adminFee": 1}}],
        }

        def event(name):
            factory = Mock()
            factory.return_value.process_receipt.return_value = logs[name]
            return factory

        client.contract.events.__getitem__.side_effect = event

        receipt = client.get_transaction_receipt("0xentry")

        assert receipt.status
        assert receipt.block_number == 55
        assert receipt.network_fee == 42000
        assert [e.name for e in receipt.events] == ["PortfolioCreated", "PortfolioEntryFeePaid"]
        assert receipt.find_event("PortfolioCreated").args["owner"] == "0xabc"
