# src/vaultgate/runtime/gate_config.py
from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

Json = Dict[str, Any]

BASE_CHAIN_ID = 8453

DEFAULT_BASE_RPCS: Tuple[str, ...] = (
    "https://base-mainnet.public.blastapi.io",
    "https://base.llamarpc.com",
    "https://mainnet.base.org",
)


def _as_int(v: Any, default: int) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return int(default)


def _as_float(v: Any, default: float) -> float:
    try:
        return float(v)
    except (TypeError, ValueError):
        return float(default)


def _as_bool(v: Any, default: bool) -> bool:
    if isinstance(v, bool):
        return v
    if v is None:
        return bool(default)
    s = str(v).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _env_bool(name: str, default: bool) -> bool:
    return _as_bool(os.environ.get(name), default)


def _as_str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    s = str(v)
    return s if s.strip() else str(default)


def normalize_rpc_url(raw: str) -> Optional[str]:
    t = (raw or "").strip()
    if not t:
        return None
    if not t.startswith("http://") and not t.startswith("https://"):
        return f"https://{t}"
    return t


def parse_rpc_urls(raw: Any) -> List[str]:
    """Parse operator RPC endpoints and append the built-in Base fallbacks.

    Accepts a comma/whitespace separated string or a JSON list. Order is kept
    (operator endpoints first) and duplicates are dropped.
    """
    if isinstance(raw, (list, tuple)):
        parts = [str(x) for x in raw]
    else:
        parts = re.split(r"[\s,]+", str(raw or ""))

    urls = [u for u in (normalize_rpc_url(p) for p in parts) if u]
    urls.extend(DEFAULT_BASE_RPCS)

    out: List[str] = []
    for u in urls:
        if u not in out:
            out.append(u)
    return out


@dataclass(frozen=True)
class GateConfig:
    mode: str  # "dev" | "testnet" | "prod"

    # Single SQLite DB file for vaults, nonces, actions, join requests, audit.
    db_path: str

    supported_chain_id: int
    rpc_urls: Tuple[str, ...]
    rpc_timeout_s: float

    # Accept contract-wallet signatures via isValidSignature (EIP-1271).
    eip1271_enabled: bool

    nonce_ttl_s: int
    message_max_age_s: int
    watch_interval_s: int

    command_prefix: str

    api_host: str
    api_port: int

    log_level: str

    # Guards PUT /v1/gate/vaults. Empty disables config ingestion over HTTP.
    admin_token: str


_ALLOWED_MODES = {"dev", "testnet", "prod"}


def validate_gate_config(cfg: GateConfig) -> None:
    """Fail-fast validation for operator config."""

    mode = str(cfg.mode or "").strip().lower()
    if mode not in _ALLOWED_MODES:
        raise ValueError(f"mode must be one of {_ALLOWED_MODES}; got: {cfg.mode!r}")

    if not isinstance(cfg.db_path, str) or not cfg.db_path.strip():
        raise ValueError("db_path must be a non-empty string")

    if int(cfg.supported_chain_id) <= 0:
        raise ValueError(f"supported_chain_id must be > 0; got: {cfg.supported_chain_id}")

    if not cfg.rpc_urls:
        raise ValueError("rpc_urls must contain at least one endpoint")

    # A stuck endpoint must read as a failure quickly, never stall a join.
    if not (0 < float(cfg.rpc_timeout_s) <= 10):
        raise ValueError(f"rpc_timeout_s must be in (0, 10]; got: {cfg.rpc_timeout_s}")

    if int(cfg.nonce_ttl_s) <= 0:
        raise ValueError(f"nonce_ttl_s must be > 0; got: {cfg.nonce_ttl_s}")

    if int(cfg.message_max_age_s) < int(cfg.nonce_ttl_s):
        raise ValueError("message_max_age_s must be >= nonce_ttl_s")

    if int(cfg.watch_interval_s) <= 0:
        raise ValueError(f"watch_interval_s must be > 0; got: {cfg.watch_interval_s}")

    prefix = str(cfg.command_prefix or "").strip()
    if not prefix or not prefix.isalnum():
        raise ValueError(f"command_prefix must be a non-empty alphanumeric word; got: {cfg.command_prefix!r}")

    if int(cfg.api_port) <= 0 or int(cfg.api_port) > 65535:
        raise ValueError(f"api_port must be 1..65535; got: {cfg.api_port}")


def default_gate_config() -> GateConfig:
    return GateConfig(
        mode="prod",
        db_path=os.environ.get("VAULTGATE_DB_PATH", "./data/vaultgate.db"),
        supported_chain_id=_as_int(os.environ.get("VAULTGATE_CHAIN_ID"), BASE_CHAIN_ID),
        rpc_urls=tuple(parse_rpc_urls(os.environ.get("VAULTGATE_RPC_URLS", ""))),
        rpc_timeout_s=_as_float(os.environ.get("VAULTGATE_RPC_TIMEOUT_S"), 10.0),
        eip1271_enabled=_env_bool("VAULTGATE_EIP1271_ENABLED", True),
        nonce_ttl_s=10 * 60,
        message_max_age_s=15 * 60,
        watch_interval_s=2 * 60,
        command_prefix="gate",
        api_host="0.0.0.0",
        api_port=8000,
        log_level=os.environ.get("VAULTGATE_LOG_LEVEL", "INFO"),
        admin_token=os.environ.get("VAULTGATE_ADMIN_TOKEN", ""),
    )


def read_gate_config_file(path: str) -> GateConfig:
    p = Path(path)
    raw = json.loads(p.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("gate config must be a JSON object")

    d = default_gate_config()

    rpc_raw = raw.get("rpc_urls")
    cfg = GateConfig(
        mode=_as_str(raw.get("mode"), d.mode).strip().lower(),
        db_path=_as_str(raw.get("db_path"), d.db_path),
        supported_chain_id=_as_int(raw.get("supported_chain_id"), d.supported_chain_id),
        rpc_urls=tuple(parse_rpc_urls(rpc_raw)) if rpc_raw else d.rpc_urls,
        rpc_timeout_s=_as_float(raw.get("rpc_timeout_s"), d.rpc_timeout_s),
        eip1271_enabled=_as_bool(raw.get("eip1271_enabled"), d.eip1271_enabled),
        nonce_ttl_s=_as_int(raw.get("nonce_ttl_s"), d.nonce_ttl_s),
        message_max_age_s=_as_int(raw.get("message_max_age_s"), d.message_max_age_s),
        watch_interval_s=_as_int(raw.get("watch_interval_s"), d.watch_interval_s),
        command_prefix=_as_str(raw.get("command_prefix"), d.command_prefix).strip().lower(),
        api_host=_as_str(raw.get("api_host"), d.api_host),
        api_port=_as_int(raw.get("api_port"), d.api_port),
        log_level=_as_str(raw.get("log_level"), d.log_level),
        admin_token=_as_str(raw.get("admin_token"), d.admin_token),
    )

    validate_gate_config(cfg)
    return cfg


def load_gate_config(*, config_path: Optional[str] = None) -> GateConfig:
    p = config_path or os.environ.get("VAULTGATE_CONFIG_PATH")
    if p:
        return read_gate_config_file(p)

    cfg = default_gate_config()
    validate_gate_config(cfg)
    return cfg
