"""Held CLI — command-line interface for passport anchoring.

Usage:
    python -m held.cli digest --object item.json --fidelity core
    python -m held.cli anchor --object item.json [--sync] [--premium --fidelity full]
    python -m held.cli reconcile [--batch 5] [--loop --interval 60]
    python -m held.cli verify --object item.json
    python -m held.cli events --object item.json [--latest]
    python -m held.cli tx-status 0xabc...
    python -m held.cli status
    python -m held.cli check-config

Objects are JSON documents with at least an "id" field; "-" reads stdin.
Secrets (PRIVATE_KEY, RPC endpoints) come from the environment or .env.
HELD_CONFIG_DIR and HELD_DATA_DIR replace the default config/ and data/.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Optional

from held.config import AnchoringSettings, default_config_dir
from held.crypto.digest import compute_digest, compute_uri, object_id, passport_id
from held.errors import AnchoringError, LedgerUnavailableError
from held.ledger.client import Web3LedgerClient
from held.models.anchoring import AnchorMode, Fidelity
from held.persistence.event_index import AnchoringEventIndex
from held.persistence.record_store import JsonRecordStore
from held.service import PassportAnchoringService, ServiceResult


DEFAULT_DATA = Path(__file__).resolve().parents[2] / "data"
DATA_DIR_ENV = "HELD_DATA_DIR"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger(__name__)


def default_data_dir() -> Path:
    """HELD_DATA_DIR when set, else data/ beside the source tree."""
    override = os.environ.get(DATA_DIR_ENV)
    return Path(override) if override else DEFAULT_DATA


def _load_settings(args: argparse.Namespace) -> AnchoringSettings:
    return AnchoringSettings.load(args.config, env_file=args.env_file)


def _make_service(
    args: argparse.Namespace,
    settings: Optional[AnchoringSettings] = None,
) -> PassportAnchoringService:
    """Create a PassportAnchoringService with durable local persistence."""
    settings = settings or _load_settings(args)
    data_dir: Path = args.data or default_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)
    return PassportAnchoringService(
        settings,
        ledger=Web3LedgerClient.connect(settings),
        store=JsonRecordStore(storage_path=data_dir / "anchoring_records.json"),
        event_index=AnchoringEventIndex(storage_path=data_dir / "anchoring_events.jsonl"),
    )


def _read_object(path: str) -> dict[str, Any]:
    if path == "-":
        return json.load(sys.stdin)
    with Path(path).open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _emit(result: ServiceResult) -> int:
    if result.success:
        print(json.dumps(result.data, indent=2, default=str))
        return 0
    print(f"Failed: {'; '.join(result.errors)}", file=sys.stderr)
    if result.data.get("retryable"):
        print("This error is transient; try again later.", file=sys.stderr)
    return 1


def cmd_digest(args: argparse.Namespace) -> int:
    """Print the digest, passport id and URI without touching the ledger."""
    settings = _load_settings(args)
    obj = _read_object(args.object)
    fidelity = Fidelity(args.fidelity)
    data = {
        "objectId": object_id(obj),
        "passportId": passport_id(obj),
        "fidelity": fidelity.value,
        "digest": compute_digest(obj, fidelity),
        "uri": compute_uri(obj, settings.base_url),
    }
    print(json.dumps(data, indent=2))
    return 0


def cmd_anchor(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    settings.require_private_key()
    service = _make_service(args, settings)
    obj = _read_object(args.object)
    fidelity = Fidelity(args.fidelity) if args.fidelity else service.fidelity_for(args.premium)
    mode = AnchorMode.SYNC if args.sync else AnchorMode.ASYNC
    return _emit(service.request_anchor(
        obj,
        fidelity=fidelity,
        mode=mode,
        is_premium=args.premium,
        timeout=args.timeout,
    ))


def cmd_reconcile(args: argparse.Namespace) -> int:
    """Worker trigger: one pass, or a loop of passes."""
    service = _make_service(args)
    if args.loop:
        reports = service.worker.run_periodic(
            interval=args.interval,
            iterations=args.iterations,
        )
        print(json.dumps([r.to_dict() for r in reports], indent=2))
        return 0
    return _emit(service.run_worker_pass(batch_size=args.batch))


def cmd_verify(args: argparse.Namespace) -> int:
    service = _make_service(args)
    obj = _read_object(args.object)
    fidelity = Fidelity(args.fidelity) if args.fidelity else None
    result = service.verify(obj, expected_digest=args.digest, fidelity=fidelity)
    code = _emit(result)
    if code == 0 and not result.data.get("isAnchored"):
        return 2
    return code


def cmd_events(args: argparse.Namespace) -> int:
    service = _make_service(args)
    obj = _read_object(args.object)
    if args.latest:
        return _emit(service.latest_event(obj))
    return _emit(service.history(object_id(obj)))


def cmd_tx_status(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.tx_status(args.tx_hash))


def cmd_status(args: argparse.Namespace) -> int:
    """Report configured / not_configured / unavailable."""
    settings = _load_settings(args)
    if not settings.has_private_key:
        print(json.dumps({
            "status": "not_configured",
            "network": settings.chain_name,
            "message": "PRIVATE_KEY not configured: blockchain anchoring is not enabled",
        }, indent=2))
        return 0
    try:
        service = _make_service(args, settings)
    except LedgerUnavailableError as exc:
        print(json.dumps({
            "status": "unavailable",
            "network": settings.chain_name,
            "message": str(exc),
        }, indent=2))
        return 0
    return _emit(service.service_status())


def cmd_check_config(args: argparse.Namespace) -> int:
    """Validate the anchoring parameters."""
    settings = AnchoringSettings.from_config_dir(
        args.config or default_config_dir(), validate=False,
    )
    errors = settings.validate()
    if errors:
        for error in errors:
            print(f"FAIL: {error}", file=sys.stderr)
        return 1
    print(
        f"Anchoring config OK: {settings.chain_name} (chain {settings.chain_id}), "
        f"{len(settings.rpc_endpoints)} default RPC endpoint(s)"
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="held",
        description="Held — passport anchoring CLI",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config directory (default: $HELD_CONFIG_DIR or config/)",
    )
    parser.add_argument(
        "--data",
        type=Path,
        default=None,
        help="Directory for anchoring records and the event index "
        "(default: $HELD_DATA_DIR or data/)",
    )
    parser.add_argument("--env-file", type=Path, default=None, help="Path to a .env file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")
    fidelities = [f.value for f in Fidelity]

    # digest
    p_digest = sub.add_parser("digest", help="Compute an object's digest and URI")
    p_digest.add_argument("--object", required=True, help="Object JSON file, or - for stdin")
    p_digest.add_argument("--fidelity", choices=fidelities, default=Fidelity.CORE.value)

    # anchor
    p_anchor = sub.add_parser("anchor", help="Anchor an object's current state")
    p_anchor.add_argument("--object", required=True, help="Object JSON file, or - for stdin")
    p_anchor.add_argument("--fidelity", choices=fidelities, default=None,
                          help="Default: full for premium accounts, else core")
    p_anchor.add_argument("--premium", action="store_true", help="Account has premium access")
    p_anchor.add_argument("--sync", action="store_true", help="Wait for the receipt")
    p_anchor.add_argument("--timeout", type=float, default=None,
                          help="Sync mode poll timeout in seconds")

    # reconcile
    p_rec = sub.add_parser("reconcile", help="Run the reconciliation worker")
    p_rec.add_argument("--batch", type=int, default=None, help="Pending records per pass")
    p_rec.add_argument("--loop", action="store_true", help="Keep running passes")
    p_rec.add_argument("--interval", type=float, default=None, help="Seconds between passes")
    p_rec.add_argument("--iterations", type=int, default=None,
                       help="Stop after this many passes (with --loop)")

    # verify
    p_verify = sub.add_parser("verify", help="Check whether an object is anchored")
    p_verify.add_argument("--object", required=True, help="Object JSON file, or - for stdin")
    p_verify.add_argument("--fidelity", choices=fidelities, default=None,
                          help="Default: core, falling back to full")
    p_verify.add_argument("--digest", default=None, help="Precomputed digest to look for")

    # events
    p_events = sub.add_parser("events", help="Show an object's anchoring events")
    p_events.add_argument("--object", required=True, help="Object JSON file, or - for stdin")
    p_events.add_argument("--latest", action="store_true",
                          help="Only the latest event, searching the ledger if needed")

    # tx-status
    p_tx = sub.add_parser("tx-status", help="Show a transaction's receipt status")
    p_tx.add_argument("tx_hash", help="Transaction hash")

    # status
    sub.add_parser("status", help="Show anchoring availability")

    # check-config
    sub.add_parser("check-config", help="Validate anchoring parameters")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format=LOG_FORMAT,
    )

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "digest": cmd_digest,
        "anchor": cmd_anchor,
        "reconcile": cmd_reconcile,
        "verify": cmd_verify,
        "events": cmd_events,
        "tx-status": cmd_tx_status,
        "status": cmd_status,
        "check-config": cmd_check_config,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    try:
        return handler(args)
    except AnchoringError as exc:
        logger.debug("%s failed", args.command, exc_info=True)
        print(f"Failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
