"""In-memory ledger — a deterministic LedgerClient for local runs and tests.

Transactions stay unmined until mine() is called (or auto_mine_after is
set), so the pending window that a real chain produces can be exercised
step by step. Outages and rejections can be switched on to drive the
error paths.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from web3 import Web3

from held.errors import LedgerUnavailableError, TransactionRejectedError
from held.ledger.client import AnchoredLog, AnchorPayload, LedgerClient
from held.models.anchoring import Receipt


@dataclass
class _Tx:
    payload: AnchorPayload
    polls: int = 0
    status: Optional[int] = None
    block_number: Optional[int] = None


class InMemoryLedger(LedgerClient):
    """Ledger simulation with explicit mining.

    Usage:
        ledger = InMemoryLedger()
        tx_hash = ledger.submit(payload)
        ledger.get_receipt(tx_hash).confirmed   # False
        ledger.mine(tx_hash, block_number=500)
        ledger.get_receipt(tx_hash).succeeded   # True
    """

    def __init__(
        self,
        explorer_base_url: str = "https://polygonscan.com",
        start_block: int = 100,
        auto_mine_after: Optional[int] = None,
    ) -> None:
        self.explorer_base_url = explorer_base_url
        self.head = start_block
        self.auto_mine_after = auto_mine_after
        self.unavailable = False
        self.reject_submissions = False
        self.submissions: list[str] = []
        self.receipt_calls = 0
        self._txs: dict[str, _Tx] = {}

    # ------------------------------------------------------------------
    # Simulation controls
    # ------------------------------------------------------------------

    def mine(
        self,
        tx_hash: str,
        status: int = 1,
        block_number: Optional[int] = None,
    ) -> int:
        """Include a submitted transaction in a block; returns the block number."""
        tx = self._txs.get(tx_hash)
        if tx is None:
            raise KeyError(f"Unknown transaction: {tx_hash}")
        if tx.block_number is not None:
            raise ValueError(f"Transaction already mined: {tx_hash}")
        if block_number is None:
            block_number = self.head + 1
        self.head = max(self.head, block_number)
        tx.status = status
        tx.block_number = block_number
        return block_number

    def mine_all(self, status: int = 1) -> None:
        for tx_hash, tx in self._txs.items():
            if tx.block_number is None:
                self.mine(tx_hash, status=status)

    def payload_of(self, tx_hash: str) -> AnchorPayload:
        return self._txs[tx_hash].payload

    # ------------------------------------------------------------------
    # LedgerClient
    # ------------------------------------------------------------------

    def submit(self, payload: AnchorPayload) -> str:
        self._check_available()
        if self.reject_submissions:
            raise TransactionRejectedError("anchor submission rejected: execution reverted")
        seed = f"{len(self.submissions)}|{payload.passport_id}|{payload.digest}|{payload.version}"
        tx_hash = Web3.to_hex(Web3.keccak(text=seed))
        self._txs[tx_hash] = _Tx(payload=payload)
        self.submissions.append(tx_hash)
        return tx_hash

    def get_receipt(self, tx_hash: str) -> Receipt:
        self._check_available()
        self.receipt_calls += 1
        tx = self._txs.get(tx_hash)
        if tx is None:
            return Receipt(tx_hash=tx_hash, confirmed=False)
        tx.polls += 1
        if (
            tx.block_number is None
            and self.auto_mine_after is not None
            and tx.polls >= self.auto_mine_after
        ):
            self.mine(tx_hash)
        if tx.block_number is None:
            return Receipt(tx_hash=tx_hash, confirmed=False)
        return Receipt(
            tx_hash=tx_hash,
            confirmed=True,
            status=tx.status,
            block_number=tx.block_number,
        )

    def get_block_number(self) -> int:
        self._check_available()
        return self.head

    def anchored_logs_in_tx(self, tx_hash: str) -> list[AnchoredLog]:
        self._check_available()
        tx = self._txs.get(tx_hash)
        if tx is None or tx.block_number is None or tx.status != 1:
            return []
        return [self._log(tx_hash, tx)]

    def anchored_logs(self, from_block: int, to_block: int) -> list[AnchoredLog]:
        self._check_available()
        logs = [
            self._log(tx_hash, tx)
            for tx_hash, tx in self._txs.items()
            if tx.status == 1
            and tx.block_number is not None
            and from_block <= tx.block_number <= to_block
        ]
        return sorted(logs, key=lambda log: log.block_number)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _check_available(self) -> None:
        if self.unavailable:
            raise LedgerUnavailableError("ledger call failed: connection refused")

    @staticmethod
    def _log(tx_hash: str, tx: _Tx) -> AnchoredLog:
        return AnchoredLog(
            passport_id=tx.payload.passport_id,
            digest=tx.payload.digest,
            algorithm=tx.payload.algorithm,
            uri=tx.payload.uri,
            version=tx.payload.version,
            tx_hash=tx_hash,
            block_number=tx.block_number or 0,
        )
