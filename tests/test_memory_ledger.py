"""Tests for the in-memory ledger — receipt states, logs, outage switches."""

import pytest

from held.errors import LedgerUnavailableError, TransactionRejectedError
from held.ledger.client import AnchorPayload
from held.ledger.memory import InMemoryLedger


def _payload(version: int = 1, digest_byte: str = "ab") -> AnchorPayload:
    return AnchorPayload(
        passport_id="0x" + "616263".ljust(64, "0"),
        digest="0x" + digest_byte * 32,
        uri="https://held.example/passport/abc",
        version=version,
    )


class TestReceipts:
    def test_unmined_is_not_confirmed(self) -> None:
        ledger = InMemoryLedger()
        tx = ledger.submit(_payload())
        receipt = ledger.get_receipt(tx)
        assert not receipt.confirmed
        assert receipt.status is None

    def test_mined_success(self) -> None:
        ledger = InMemoryLedger()
        tx = ledger.submit(_payload())
        ledger.mine(tx, block_number=500)
        receipt = ledger.get_receipt(tx)
        assert receipt.succeeded
        assert receipt.block_number == 500

    def test_mined_failure(self) -> None:
        ledger = InMemoryLedger()
        tx = ledger.submit(_payload())
        ledger.mine(tx, status=0)
        receipt = ledger.get_receipt(tx)
        assert receipt.reverted
        assert not receipt.succeeded

    def test_receipt_is_repeatable(self) -> None:
        ledger = InMemoryLedger()
        tx = ledger.submit(_payload())
        ledger.mine(tx)
        assert ledger.get_receipt(tx) == ledger.get_receipt(tx)

    def test_unknown_tx_not_confirmed(self) -> None:
        assert not InMemoryLedger().get_receipt("0x" + "00" * 32).confirmed

    def test_auto_mine(self) -> None:
        ledger = InMemoryLedger(auto_mine_after=2)
        tx = ledger.submit(_payload())
        assert not ledger.get_receipt(tx).confirmed
        assert ledger.get_receipt(tx).succeeded

    def test_each_submission_gets_new_hash(self) -> None:
        ledger = InMemoryLedger()
        assert ledger.submit(_payload()) != ledger.submit(_payload())


class TestMining:
    def test_default_block_follows_head(self) -> None:
        ledger = InMemoryLedger(start_block=100)
        tx = ledger.submit(_payload())
        assert ledger.mine(tx) == 101
        assert ledger.get_block_number() == 101

    def test_cannot_mine_twice(self) -> None:
        ledger = InMemoryLedger()
        tx = ledger.submit(_payload())
        ledger.mine(tx)
        with pytest.raises(ValueError, match="already mined"):
            ledger.mine(tx)

    def test_unknown_tx(self) -> None:
        with pytest.raises(KeyError):
            InMemoryLedger().mine("0xdead")


class TestLogs:
    def test_only_successful_txs_emit(self) -> None:
        ledger = InMemoryLedger(start_block=100)
        ok = ledger.submit(_payload(version=1))
        bad = ledger.submit(_payload(version=2, digest_byte="cd"))
        ledger.mine(ok, block_number=110)
        ledger.mine(bad, status=0, block_number=111)
        assert [log.tx_hash for log in ledger.anchored_logs(100, 120)] == [ok]
        assert ledger.anchored_logs_in_tx(bad) == []
        assert ledger.anchored_logs_in_tx(ok)[0].version == 1

    def test_range_is_inclusive(self) -> None:
        ledger = InMemoryLedger(start_block=100)
        tx = ledger.submit(_payload())
        ledger.mine(tx, block_number=105)
        assert len(ledger.anchored_logs(105, 105)) == 1
        assert ledger.anchored_logs(106, 120) == []


class TestFailureSwitches:
    def test_unavailable(self) -> None:
        ledger = InMemoryLedger()
        ledger.unavailable = True
        with pytest.raises(LedgerUnavailableError):
            ledger.submit(_payload())
        with pytest.raises(LedgerUnavailableError):
            ledger.get_receipt("0x01")

    def test_rejected(self) -> None:
        ledger = InMemoryLedger()
        ledger.reject_submissions = True
        with pytest.raises(TransactionRejectedError):
            ledger.submit(_payload())
        assert ledger.submissions == []
