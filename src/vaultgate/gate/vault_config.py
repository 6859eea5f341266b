# src/vaultgate/gate/vault_config.py
from __future__ import annotations

import copy
import hashlib
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from vaultgate.gate.errors import InvalidConfig

Json = Dict[str, Any]

GATING_MODES: Tuple[str, ...] = ("shares", "none", "deposit", "allowlist")

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def is_address_like(value: Any) -> bool:
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value.strip()))


def normalize_address(value: Any) -> Optional[str]:
    """Lowercased 0x address, or None if the value is not address-like."""
    if not is_address_like(value):
        return None
    return str(value).strip().lower()


def _sort_keys_deep(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _sort_keys_deep(value[k]) for k in sorted(value.keys(), key=str)}
    if isinstance(value, list):
        return [_sort_keys_deep(v) for v in value]
    return value


def canonical_json(doc: Any) -> str:
    return json.dumps(_sort_keys_deep(doc), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_config_hash(doc: Json) -> str:
    """sha256 hex of the recursively key-sorted compact JSON of `doc`."""
    return hashlib.sha256(canonical_json(doc).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class GatingPolicy:
    enabled: bool = True
    join_locked: bool = False
    mode: str = "shares"
    min_shares: Optional[int] = None
    fail_closed: bool = True


@dataclass(frozen=True)
class Roles:
    owner: str
    admins: Tuple[str, ...] = ()
    operators: Tuple[str, ...] = ()


@dataclass(frozen=True)
class VaultConfig:
    vault_address: str
    chain_id: int
    group_id: str
    creator_coin_address: str
    canonical_owner_address: str
    share_token_address: Optional[str]
    gating: GatingPolicy
    roles: Roles
    behavior: Json
    rate_limits: Json
    config_version: int
    config: Json
    config_hash: str
    updated_ms: int = 0

    def summary(self) -> Json:
        return {
            "vault_address": self.vault_address,
            "chain_id": self.chain_id,
            "group_id": self.group_id,
            "creator_coin_address": self.creator_coin_address,
            "canonical_owner_address": self.canonical_owner_address,
            "share_token_address": self.share_token_address,
            "gating": {
                "enabled": self.gating.enabled,
                "join_locked": self.gating.join_locked,
                "mode": self.gating.mode,
                "min_shares": None if self.gating.min_shares is None else str(self.gating.min_shares),
                "fail_closed": self.gating.fail_closed,
            },
            "roles": {
                "owner": self.roles.owner,
                "admins": list(self.roles.admins),
                "operators": list(self.roles.operators),
            },
            "config_version": self.config_version,
            "config_hash": self.config_hash,
            "updated_ms": self.updated_ms,
        }


def _obj(doc: Json, key: str) -> Json:
    v = doc.get(key)
    if v is None:
        return {}
    if not isinstance(v, dict):
        raise InvalidConfig(f"invalid_{key}", {"expected": "object"})
    return v


def _bool(v: Any, default: bool, reason: str) -> bool:
    if v is None:
        return default
    if not isinstance(v, bool):
        raise InvalidConfig(reason, {"value": v})
    return v


def _parse_chain_id(v: Any) -> int:
    if isinstance(v, bool):
        raise InvalidConfig("invalid_chain_id", {"value": v})
    if isinstance(v, int):
        return v
    if isinstance(v, str) and v.strip().isdigit():
        return int(v.strip())
    raise InvalidConfig("invalid_chain_id", {"value": v})


def _parse_min_shares(v: Any) -> Optional[int]:
    """Integer share amount. Accepts ints and decimal strings of any size."""
    if v is None or v == "":
        return None
    if isinstance(v, bool):
        raise InvalidConfig("invalid_min_shares", {"value": v})
    if isinstance(v, int):
        n = v
    elif isinstance(v, str) and re.fullmatch(r"\s*\d+\s*", v):
        n = int(v)
    else:
        raise InvalidConfig("invalid_min_shares", {"value": v})
    if n < 0:
        raise InvalidConfig("invalid_min_shares", {"value": v})
    return n


def _parse_address_list(v: Any, reason: str) -> Tuple[str, ...]:
    if v is None:
        return ()
    if not isinstance(v, list):
        raise InvalidConfig(reason, {"expected": "list"})
    out: List[str] = []
    for item in v:
        a = normalize_address(item)
        if a is None:
            raise InvalidConfig(reason, {"value": item})
        if a not in out:
            out.append(a)
    return tuple(out)


def parse_vault_config(doc: Any, *, updated_ms: int = 0) -> VaultConfig:
    """Validate a config document and project it onto a VaultConfig.

    The raw document is kept verbatim as `config`; `config_hash` is computed
    from it. Raises InvalidConfig with a stable reason on the first problem.
    """
    if not isinstance(doc, dict):
        raise InvalidConfig("invalid_document", {"expected": "object"})

    vault = _obj(doc, "vault")
    vault_address = normalize_address(vault.get("vaultAddress"))
    if vault_address is None:
        raise InvalidConfig("invalid_vault_address", {"value": vault.get("vaultAddress")})

    chain_id = _parse_chain_id(doc.get("chainId"))

    group = _obj(doc, "group")
    group_id = str(group.get("groupId") or "").strip()
    if not group_id:
        raise InvalidConfig("missing_group_id")

    creator_coin = normalize_address(vault.get("creatorCoinAddress"))
    if creator_coin is None:
        raise InvalidConfig("invalid_creator_coin_address", {"value": vault.get("creatorCoinAddress")})

    canonical_owner = normalize_address(vault.get("canonicalOwnerAddress"))
    if canonical_owner is None:
        raise InvalidConfig("invalid_owner_address", {"value": vault.get("canonicalOwnerAddress")})

    share_raw = vault.get("shareTokenAddress")
    share_token: Optional[str] = None
    if share_raw not in (None, ""):
        share_token = normalize_address(share_raw)
        if share_token is None:
            raise InvalidConfig("invalid_share_token_address", {"value": share_raw})

    gating_doc = _obj(doc, "gating")
    mode = str(gating_doc.get("mode") or "shares").strip().lower()
    if mode not in GATING_MODES:
        raise InvalidConfig("invalid_gating_mode", {"value": gating_doc.get("mode"), "allowed": list(GATING_MODES)})

    thresholds = gating_doc.get("thresholds") or {}
    if not isinstance(thresholds, dict):
        raise InvalidConfig("invalid_thresholds", {"expected": "object"})

    gating = GatingPolicy(
        enabled=_bool(gating_doc.get("enabled"), True, "invalid_gating_enabled"),
        join_locked=_bool(gating_doc.get("joinLocked"), False, "invalid_join_locked"),
        mode=mode,
        min_shares=_parse_min_shares(thresholds.get("minShares")),
        fail_closed=_bool(gating_doc.get("failClosed"), True, "invalid_fail_closed"),
    )

    roles_doc = _obj(doc, "roles")
    owner_raw = roles_doc.get("owner")
    if owner_raw in (None, ""):
        owner = canonical_owner
    else:
        owner = normalize_address(owner_raw)
        if owner is None:
            raise InvalidConfig("invalid_role_address", {"role": "owner", "value": owner_raw})

    roles = Roles(
        owner=owner,
        admins=_parse_address_list(roles_doc.get("admins"), "invalid_role_address"),
        operators=_parse_address_list(roles_doc.get("operators"), "invalid_role_address"),
    )

    version_raw = doc.get("version", 1)
    if isinstance(version_raw, bool) or not isinstance(version_raw, int):
        raise InvalidConfig("invalid_version", {"value": version_raw})

    blob = copy.deepcopy(doc)
    return VaultConfig(
        vault_address=vault_address,
        chain_id=chain_id,
        group_id=group_id,
        creator_coin_address=creator_coin,
        canonical_owner_address=canonical_owner,
        share_token_address=share_token,
        gating=gating,
        roles=roles,
        behavior=dict(_obj(doc, "behavior")),
        rate_limits=dict(_obj(doc, "rateLimits")),
        config_version=int(version_raw),
        config=blob,
        config_hash=compute_config_hash(blob),
        updated_ms=int(updated_ms),
    )


def with_join_locked(doc: Json, locked: bool) -> Json:
    """Copy of `doc` with gating.joinLocked set."""
    out = copy.deepcopy(doc)
    gating = out.get("gating")
    if not isinstance(gating, dict):
        gating = {}
        out["gating"] = gating
    gating["joinLocked"] = bool(locked)
    return out
