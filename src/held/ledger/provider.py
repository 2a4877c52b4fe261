"""RPC endpoint failover — pick the first endpoint that answers.

Public RPC endpoints come and go. Each candidate is probed with
eth_blockNumber under a timeout; the first one that answers is used for
the rest of the process. If none answers the ledger is unavailable.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable

from web3 import Web3
from web3.exceptions import Web3Exception

from held.errors import LedgerUnavailableError


logger = logging.getLogger(__name__)

Web3Factory = Callable[[str, float], Web3]


def http_web3(url: str, timeout: float) -> Web3:
    return Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": timeout}))


def probe(w3: Web3) -> int:
    """Return the head block number; raises on any transport failure."""
    return int(w3.eth.block_number)


def connect_first_working(
    endpoints: Iterable[str],
    timeout: float = 10.0,
    factory: Web3Factory = http_web3,
) -> tuple[Web3, str]:
    """Return (web3, url) for the first endpoint answering a block-number probe."""
    tried = 0
    for url in endpoints:
        tried += 1
        try:
            w3 = factory(url, timeout)
            head = probe(w3)
        except (Web3Exception, ValueError, OSError) as exc:
            logger.warning("RPC endpoint %s failed probe: %s", _redact(url), exc)
            continue
        logger.info("Using RPC endpoint %s (head block %d)", _redact(url), head)
        return w3, url

    raise LedgerUnavailableError(
        f"No working RPC endpoint found after testing {tried} endpoint(s)"
    )


def _redact(url: str) -> str:
    """Hide vendor API keys carried in the URL path."""
    for marker in ("/v2/", "/v3/"):
        if marker in url:
            return url.split(marker, 1)[0] + marker + "***"
    return url
