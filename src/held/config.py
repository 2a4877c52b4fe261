"""Anchoring settings — JSON parameters plus secrets from the environment.

Non-secret parameters live in config/anchoring_params.json. Secrets and
deployment overrides come from environment variables, optionally read
from a .env file:

    PRIVATE_KEY                      signing key for submissions
    POLYGON_RPC / POLYGON_RPC_URL    comma-separated RPC endpoints
    ALCHEMY_API_KEY                  adds the Alchemy Polygon endpoint
    INFURA_PROJECT_ID / INFURA_API_KEY
    HELD_ANCHORS_FROM_BLOCK          first block for log scans
    ANCHOR_LOGS_WINDOW_BLOCKS        log scan window when no from-block
    ANCHOR_WORKER_BATCH              pending records per worker pass
    HELD_BASE_URL                    public site root for passport URIs
    HELD_CONFIG_DIR                  directory holding anchoring_params.json

Loaded settings are validated; an invalid parameter raises
ConfigurationError. A missing private key is not a load error: verification and
reconciliation are read-only. Submission calls require_private_key().
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping, Optional

from dotenv import load_dotenv

from held.errors import ConfigurationError


DEFAULT_CONFIG_DIR = Path(__file__).resolve().parents[2] / "config"
CONFIG_DIR_ENV = "HELD_CONFIG_DIR"
PARAMS_FILENAME = "anchoring_params.json"

_PRIVATE_KEY_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def normalize_private_key(raw: str) -> str:
    """Add the 0x prefix when missing and check the key shape."""
    key = raw.strip()
    if not key.startswith("0x"):
        key = f"0x{key}"
    if not _PRIVATE_KEY_RE.match(key):
        raise ConfigurationError(
            "Invalid PRIVATE_KEY format: expected 64 hex characters "
            "(with or without 0x prefix)"
        )
    return key


def build_endpoint_list(
    env_urls: str = "",
    alchemy_key: Optional[str] = None,
    infura_id: Optional[str] = None,
    defaults: tuple[str, ...] = (),
) -> tuple[str, ...]:
    """Assemble RPC endpoints: env first, then vendors, then defaults.

    Duplicates are dropped, first occurrence wins.
    """
    from_env = [u.strip() for u in env_urls.split(",") if u.strip()]
    from_vendors: list[str] = []
    if alchemy_key:
        from_vendors.append(f"https://polygon-mainnet.g.alchemy.com/v2/{alchemy_key}")
    if infura_id:
        from_vendors.append(f"https://polygon-mainnet.infura.io/v3/{infura_id}")

    seen: set[str] = set()
    ordered: list[str] = []
    for url in [*from_env, *from_vendors, *defaults]:
        if url not in seen:
            seen.add(url)
            ordered.append(url)
    return tuple(ordered)


def default_config_dir(environ: Optional[Mapping[str, str]] = None) -> Path:
    """HELD_CONFIG_DIR when set, else config/ beside the source tree."""
    environ = os.environ if environ is None else environ
    override = environ.get(CONFIG_DIR_ENV)
    return Path(override) if override else DEFAULT_CONFIG_DIR


@dataclass(frozen=True)
class AnchoringSettings:
    """Resolved anchoring parameters.

    Usage:
        settings = AnchoringSettings.load()          # config/ + .env
        settings = AnchoringSettings.from_config_dir(path)  # JSON only
    """
    chain_name: str
    chain_id: int
    contract_address: str
    explorer_base_url: str
    digest_algorithm: str
    rpc_endpoints: tuple[str, ...]
    connect_timeout_seconds: float
    sync_timeout_seconds: float
    sync_poll_interval_seconds: float
    worker_batch_size: int
    worker_interval_seconds: float
    stale_after_hours: float
    logs_window_blocks: int
    logs_page_blocks: int
    from_block: int
    base_url: str
    gas_limit: int
    private_key: Optional[str] = field(default=None, repr=False)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> AnchoringSettings:
        """Build settings from a parsed anchoring_params document."""
        try:
            chain = params["chain"]
            rpc = params["rpc"]
            sync = params["sync_mode"]
            worker = params["worker"]
            verification = params["verification"]
            return cls(
                chain_name=str(chain["name"]),
                chain_id=int(chain["chain_id"]),
                contract_address=str(chain["contract_address"]),
                explorer_base_url=str(chain["explorer_base_url"]).rstrip("/"),
                digest_algorithm=str(chain.get("digest_algorithm", "keccak256")),
                rpc_endpoints=tuple(rpc.get("default_endpoints", [])),
                connect_timeout_seconds=float(rpc["connect_timeout_seconds"]),
                sync_timeout_seconds=float(sync["timeout_seconds"]),
                sync_poll_interval_seconds=float(sync["poll_interval_seconds"]),
                worker_batch_size=int(worker["batch_size"]),
                worker_interval_seconds=float(worker["interval_seconds"]),
                stale_after_hours=float(worker["stale_after_hours"]),
                logs_window_blocks=int(verification["logs_window_blocks"]),
                logs_page_blocks=int(verification["logs_page_blocks"]),
                from_block=int(verification.get("from_block", 0)),
                base_url=str(params["passport"]["base_url"]).rstrip("/"),
                gas_limit=int(params["transaction"]["gas_limit"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigurationError(f"Malformed anchoring parameters: {exc}") from exc

    @classmethod
    def from_config_dir(cls, config_dir: Path, validate: bool = True) -> AnchoringSettings:
        """Read anchoring_params.json; validate=False returns it unchecked."""
        path = Path(config_dir) / PARAMS_FILENAME
        if not path.exists():
            raise ConfigurationError(f"Anchoring parameters not found: {path}")
        with path.open("r", encoding="utf-8") as handle:
            settings = cls.from_params(json.load(handle))
        return settings.ensure_valid() if validate else settings

    @classmethod
    def load(
        cls,
        config_dir: Optional[Path] = None,
        env_file: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> AnchoringSettings:
        """Load JSON parameters and overlay environment variables.

        When environ is None, the process environment is used after
        reading env_file (or a .env found from the working directory).
        Without config_dir, HELD_CONFIG_DIR or config/ is used.
        """
        if environ is None:
            if env_file is not None:
                load_dotenv(env_file)
            else:
                load_dotenv()
            environ = os.environ
        if config_dir is None:
            config_dir = default_config_dir(environ)
        base = cls.from_config_dir(config_dir, validate=False)
        return base.with_environment(environ)

    def with_environment(self, environ: Mapping[str, str]) -> AnchoringSettings:
        changes: dict[str, Any] = {}

        raw_key = environ.get("PRIVATE_KEY")
        if raw_key:
            changes["private_key"] = normalize_private_key(raw_key)

        changes["rpc_endpoints"] = build_endpoint_list(
            env_urls=environ.get("POLYGON_RPC") or environ.get("POLYGON_RPC_URL") or "",
            alchemy_key=environ.get("ALCHEMY_API_KEY"),
            infura_id=environ.get("INFURA_PROJECT_ID") or environ.get("INFURA_API_KEY"),
            defaults=self.rpc_endpoints,
        )

        int_overrides = {
            "HELD_ANCHORS_FROM_BLOCK": "from_block",
            "ANCHOR_LOGS_WINDOW_BLOCKS": "logs_window_blocks",
            "ANCHOR_WORKER_BATCH": "worker_batch_size",
        }
        for env_name, attr in int_overrides.items():
            value = environ.get(env_name)
            if value:
                try:
                    changes[attr] = int(value)
                except ValueError as exc:
                    raise ConfigurationError(
                        f"{env_name} must be an integer, got {value!r}"
                    ) from exc

        base_url = environ.get("HELD_BASE_URL")
        if base_url:
            changes["base_url"] = base_url.rstrip("/")

        return replace(self, **changes).ensure_valid()

    def with_overrides(self, **changes: Any) -> AnchoringSettings:
        return replace(self, **changes)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def has_private_key(self) -> bool:
        return bool(self.private_key)

    def require_private_key(self) -> str:
        if not self.private_key:
            raise ConfigurationError(
                "PRIVATE_KEY not configured: blockchain anchoring is not enabled"
            )
        return self.private_key

    def validate(self) -> list[str]:
        """Return configuration invariant violations (empty = OK)."""
        errors: list[str] = []
        if self.chain_id <= 0:
            errors.append(f"chain_id must be positive, got {self.chain_id}")
        if not re.match(r"^0x[0-9a-fA-F]{40}$", self.contract_address):
            errors.append(f"contract_address is not a 20-byte hex address: {self.contract_address}")
        if not self.explorer_base_url.startswith("https://"):
            errors.append("explorer_base_url must use https")
        if self.digest_algorithm != "keccak256":
            errors.append(f"unsupported digest_algorithm: {self.digest_algorithm}")
        for url in self.rpc_endpoints:
            if not url.startswith(("https://", "http://")):
                errors.append(f"rpc endpoint is not an http(s) URL: {url}")
        if len(set(self.rpc_endpoints)) != len(self.rpc_endpoints):
            errors.append("rpc.default_endpoints contains duplicates")
        if self.connect_timeout_seconds <= 0:
            errors.append("rpc.connect_timeout_seconds must be > 0")
        if self.sync_timeout_seconds <= 0:
            errors.append("sync_mode.timeout_seconds must be > 0")
        if not 0 < self.sync_poll_interval_seconds < self.sync_timeout_seconds:
            errors.append("sync_mode.poll_interval_seconds must be > 0 and below timeout_seconds")
        if self.worker_batch_size < 1:
            errors.append("worker.batch_size must be >= 1")
        if self.worker_interval_seconds <= 0:
            errors.append("worker.interval_seconds must be > 0")
        if self.stale_after_hours <= 0:
            errors.append("worker.stale_after_hours must be > 0")
        if self.logs_page_blocks < 1:
            errors.append("verification.logs_page_blocks must be >= 1")
        if self.logs_page_blocks > self.logs_window_blocks:
            errors.append("verification.logs_page_blocks cannot exceed logs_window_blocks")
        if self.from_block < 0:
            errors.append("verification.from_block must be >= 0")
        if not self.base_url.startswith(("https://", "http://")):
            errors.append("passport.base_url must be an http(s) URL")
        if self.gas_limit <= 0:
            errors.append("transaction.gas_limit must be > 0")
        return errors

    def ensure_valid(self) -> AnchoringSettings:
        """Return self, or raise ConfigurationError listing every violation."""
        errors = self.validate()
        if errors:
            raise ConfigurationError("Invalid anchoring parameters: " + "; ".join(errors))
        return self
