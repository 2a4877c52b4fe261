"""Ledger client — submits anchor transactions and reads receipts and logs.

Anchors are calls to the anchor registry contract:

    anchor(bytes32 passportId, bytes32 digest, string algo, string uri, uint256 version)

which emits Anchored(passportId, digest, algo, uri, version). The
contract keeps no state; the event log is the public record.

submit() is a single best-effort network call and never waits for
mining. get_receipt() is read-only and safe to repeat: a transaction the
node does not know about yet is reported as not confirmed, not as an
error.

Failure translation (no web3 exception escapes this module):
- transport / RPC failures      → LedgerUnavailableError (retry later)
- reverts / invalid transactions → TransactionRejectedError (permanent)
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3Exception
from web3.logs import DISCARD

from held.config import AnchoringSettings
from held.errors import (
    AnchoringError,
    ConfigurationError,
    LedgerUnavailableError,
    TransactionRejectedError,
)
from held.ledger.provider import connect_first_working
from held.models.anchoring import Receipt


logger = logging.getLogger(__name__)

T = TypeVar("T")


ANCHOR_REGISTRY_ABI: list[dict[str, Any]] = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": False, "internalType": "bytes32", "name": "passportId", "type": "bytes32"},
            {"indexed": False, "internalType": "bytes32", "name": "digest", "type": "bytes32"},
            {"indexed": False, "internalType": "string", "name": "algo", "type": "string"},
            {"indexed": False, "internalType": "string", "name": "uri", "type": "string"},
            {"indexed": False, "internalType": "uint256", "name": "version", "type": "uint256"},
        ],
        "name": "Anchored",
        "type": "event",
    },
    {
        "inputs": [
            {"internalType": "bytes32", "name": "passportId", "type": "bytes32"},
            {"internalType": "bytes32", "name": "digest", "type": "bytes32"},
            {"internalType": "string", "name": "algo", "type": "string"},
            {"internalType": "string", "name": "uri", "type": "string"},
            {"internalType": "uint256", "name": "version", "type": "uint256"},
        ],
        "name": "anchor",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

# RPC error text that means the transaction itself is unacceptable
_REJECTION_MARKERS = (
    "revert",
    "invalid sender",
    "invalid transaction",
    "intrinsic gas too low",
    "exceeds block gas limit",
    "transaction rejected",
)


@dataclass(frozen=True)
class AnchorPayload:
    """Transaction data for one anchoring: {digest, uri, version} for a passport."""
    passport_id: str  # 0x-prefixed bytes32
    digest: str       # 0x-prefixed bytes32
    uri: str
    version: int
    algorithm: str = "keccak256"

    def contract_args(self) -> tuple[bytes, bytes, str, str, int]:
        return (
            bytes(Web3.to_bytes(hexstr=self.passport_id)),
            bytes(Web3.to_bytes(hexstr=self.digest)),
            self.algorithm,
            self.uri,
            self.version,
        )


@dataclass(frozen=True)
class AnchoredLog:
    """A decoded Anchored event."""
    passport_id: str
    digest: str
    algorithm: str
    uri: str
    version: int
    tx_hash: str
    block_number: int

    def matches(self, passport_id: str, digest: Optional[str] = None) -> bool:
        if self.passport_id.lower() != passport_id.lower():
            return False
        return digest is None or self.digest.lower() == digest.lower()


def explorer_url(
    base_url: str,
    tx_hash: Optional[str] = None,
    block_number: Optional[int] = None,
) -> str:
    """Human-viewable link for a transaction or a block."""
    base = base_url.rstrip("/")
    if tx_hash:
        return f"{base}/tx/{tx_hash}"
    if block_number is not None:
        return f"{base}/block/{block_number}"
    raise ValueError("explorer_url needs a tx_hash or a block_number")


def classify_error(exc: BaseException, context: str = "ledger call") -> AnchoringError:
    """Map a web3 / transport exception onto the anchoring taxonomy."""
    if isinstance(exc, AnchoringError):
        return exc
    message = str(exc) or type(exc).__name__
    if isinstance(exc, ContractLogicError):
        return TransactionRejectedError(f"{context} reverted: {message}")
    if isinstance(exc, (Web3Exception, ValueError)):
        lowered = message.lower()
        if any(marker in lowered for marker in _REJECTION_MARKERS):
            return TransactionRejectedError(f"{context} rejected: {message}")
    return LedgerUnavailableError(f"{context} failed: {message}")


class LedgerClient(abc.ABC):
    """Chain-agnostic view of the ledger used by the anchoring core."""

    explorer_base_url: str = ""

    @abc.abstractmethod
    def submit(self, payload: AnchorPayload) -> str:
        """Send the anchor transaction; return its hash without waiting."""

    @abc.abstractmethod
    def get_receipt(self, tx_hash: str) -> Receipt:
        """Return the current receipt view of a transaction."""

    @abc.abstractmethod
    def get_block_number(self) -> int:
        """Return the latest block number."""

    @abc.abstractmethod
    def anchored_logs_in_tx(self, tx_hash: str) -> list[AnchoredLog]:
        """Return Anchored events emitted by a mined, successful transaction."""

    @abc.abstractmethod
    def anchored_logs(self, from_block: int, to_block: int) -> list[AnchoredLog]:
        """Return Anchored events in an inclusive block range, oldest first."""

    def explorer_url(
        self,
        tx_hash: Optional[str] = None,
        block_number: Optional[int] = None,
    ) -> str:
        return explorer_url(self.explorer_base_url, tx_hash=tx_hash, block_number=block_number)


class Web3LedgerClient(LedgerClient):
    """LedgerClient over web3.py and a local signing account.

    Usage:
        client = Web3LedgerClient.connect(settings)      # read + submit
        tx_hash = client.submit(payload)
        receipt = client.get_receipt(tx_hash)
    """

    def __init__(
        self,
        w3: Web3,
        settings: AnchoringSettings,
        account: Optional[LocalAccount] = None,
    ) -> None:
        self._w3 = w3
        self._settings = settings
        self._account = account
        self._contract = w3.eth.contract(
            address=Web3.to_checksum_address(settings.contract_address),
            abi=ANCHOR_REGISTRY_ABI,
        )
        self.explorer_base_url = settings.explorer_base_url

    @classmethod
    def connect(cls, settings: AnchoringSettings) -> Web3LedgerClient:
        """Connect to the first answering endpoint; sign with PRIVATE_KEY if set."""
        w3, _ = connect_first_working(
            settings.rpc_endpoints,
            timeout=settings.connect_timeout_seconds,
        )
        account = Account.from_key(settings.private_key) if settings.private_key else None
        return cls(w3, settings, account=account)

    @property
    def can_submit(self) -> bool:
        return self._account is not None

    def encode_call(self, payload: AnchorPayload) -> str:
        """Return the ABI-encoded calldata for the anchor call."""
        return self._contract.encode_abi("anchor", args=list(payload.contract_args()))

    # ------------------------------------------------------------------
    # LedgerClient
    # ------------------------------------------------------------------

    def submit(self, payload: AnchorPayload) -> str:
        account = self._require_account()

        def send() -> str:
            nonce = self._w3.eth.get_transaction_count(account.address, "pending")
            tx = self._contract.functions.anchor(*payload.contract_args()).build_transaction({
                "from": account.address,
                "nonce": nonce,
                "chainId": self._settings.chain_id,
                "gas": self._settings.gas_limit,
            })
            signed = account.sign_transaction(tx)
            return Web3.to_hex(self._w3.eth.send_raw_transaction(signed.raw_transaction))

        tx_hash = self._call("anchor submission", send)
        logger.info(
            "Submitted anchor tx %s (passport %s, version %d)",
            tx_hash, payload.passport_id, payload.version,
        )
        return tx_hash

    def get_receipt(self, tx_hash: str) -> Receipt:
        raw = self._fetch_receipt(tx_hash)
        if raw is None or raw.get("blockNumber") is None:
            return Receipt(tx_hash=tx_hash, confirmed=False)
        status = 1 if int(raw.get("status", 0)) == 1 else 0
        return Receipt(
            tx_hash=tx_hash,
            confirmed=True,
            status=status,
            block_number=int(raw["blockNumber"]),
        )

    def get_block_number(self) -> int:
        return int(self._call("block number", lambda: self._w3.eth.block_number))

    def anchored_logs_in_tx(self, tx_hash: str) -> list[AnchoredLog]:
        raw = self._fetch_receipt(tx_hash)
        if raw is None or int(raw.get("status", 0)) != 1:
            return []
        events = self._call(
            "receipt decode",
            lambda: self._contract.events.Anchored().process_receipt(raw, errors=DISCARD),
        )
        address = self._contract.address.lower()
        return [
            self._decode(event)
            for event in events
            if str(event["address"]).lower() == address
        ]

    def anchored_logs(self, from_block: int, to_block: int) -> list[AnchoredLog]:
        if to_block < from_block:
            return []
        events = self._call(
            f"log query {from_block}-{to_block}",
            lambda: self._contract.events.Anchored.get_logs(
                from_block=from_block, to_block=to_block,
            ),
        )
        return [self._decode(event) for event in events]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _require_account(self) -> LocalAccount:
        if self._account is None:
            raise ConfigurationError(
                "PRIVATE_KEY not configured: ledger client cannot sign transactions"
            )
        return self._account

    def _fetch_receipt(self, tx_hash: str) -> Optional[Any]:
        def fetch() -> Optional[Any]:
            try:
                return self._w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        return self._call(f"receipt {tx_hash}", fetch)

    @staticmethod
    def _call(context: str, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except AnchoringError:
            raise
        except (Web3Exception, ValueError, OSError) as exc:
            error = classify_error(exc, context)
            logger.debug("%s raised %s: %s", context, type(exc).__name__, exc)
            raise error from exc

    @staticmethod
    def _decode(event: Any) -> AnchoredLog:
        args = event["args"]
        return AnchoredLog(
            passport_id=Web3.to_hex(args["passportId"]),
            digest=Web3.to_hex(args["digest"]),
            algorithm=str(args["algo"]),
            uri=str(args["uri"]),
            version=int(args["version"]),
            tx_hash=Web3.to_hex(event["transactionHash"]),
            block_number=int(event["blockNumber"]),
        )
