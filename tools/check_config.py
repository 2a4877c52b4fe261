#!/usr/bin/env python3
"""Anchoring config checks against config/anchoring_params.json."""

import sys
from pathlib import Path

from held.config import AnchoringSettings
from held.errors import ConfigurationError


ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR = ROOT / "config"


def check(config_dir: Path = CONFIG_DIR) -> int:
    try:
        settings = AnchoringSettings.from_config_dir(config_dir, validate=False)
    except ConfigurationError as exc:
        print(f"Config check failed: {exc}")
        return 1

    errors = settings.validate()
    if not settings.rpc_endpoints:
        errors.append("rpc.default_endpoints is empty; anchoring depends on env endpoints")

    if errors:
        print("Config check failed:")
        for err in errors:
            print(f"  - {err}")
        return 1

    print(
        f"Config checks passed: {settings.chain_name} chain {settings.chain_id}, "
        f"contract {settings.contract_address}, "
        f"{len(settings.rpc_endpoints)} RPC endpoint(s)."
    )
    return 0


if __name__ == "__main__":
    sys.exit(check(Path(sys.argv[1]) if len(sys.argv) > 1 else CONFIG_DIR))
