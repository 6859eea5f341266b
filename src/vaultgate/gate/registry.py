# src/vaultgate/gate/registry.py
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from vaultgate.gate.errors import InvalidConfig, VaultNotConfigured
from vaultgate.gate.vault_config import VaultConfig, normalize_address, parse_vault_config, with_join_locked
from vaultgate.runtime.log_events import log_event
from vaultgate.store.store import AuditDraft, AuditEntry, GateStore, StoredVault

Json = Dict[str, Any]

log = logging.getLogger("vaultgate.registry")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _actor(actor_wallet: Optional[str]) -> Optional[str]:
    return str(actor_wallet).strip().lower() if actor_wallet else None


class VaultRegistry:
    """Authoritative per-vault gating configuration.

    Rows are keyed by vault address, last writer wins, never deleted. Every
    mutation recomputes the config hash and writes its audit row in the same
    store transaction.
    """

    def __init__(self, *, store: GateStore, clock: Callable[[], int] = _now_ms) -> None:
        self._store = store
        self._clock = clock

    @staticmethod
    def _parse(stored: StoredVault) -> VaultConfig:
        return parse_vault_config(stored.config, updated_ms=stored.updated_ms)

    @classmethod
    def _load(cls, stored: Optional[StoredVault]) -> Optional[VaultConfig]:
        return None if stored is None else cls._parse(stored)

    def upsert_vault_config(self, config: Json, actor_wallet: Optional[str] = None) -> VaultConfig:
        parsed = parse_vault_config(config)
        now = self._clock()

        stored = self._store.save_vault(
            StoredVault(
                vault_address=parsed.vault_address,
                chain_id=parsed.chain_id,
                group_id=parsed.group_id,
                config=parsed.config,
                config_hash=parsed.config_hash,
                created_ms=now,
                updated_ms=now,
            ),
            audit=AuditDraft(
                vault_address=parsed.vault_address,
                event_type="config_upsert",
                actor_wallet=_actor(actor_wallet),
                details={
                    "config_hash": parsed.config_hash,
                    "group_id": parsed.group_id,
                    "chain_id": parsed.chain_id,
                    "gating_enabled": parsed.gating.enabled,
                    "join_locked": parsed.gating.join_locked,
                    "gating_mode": parsed.gating.mode,
                },
            ),
        )
        log_event(
            log,
            "vault_config_upserted",
            vault=parsed.vault_address,
            group_id=parsed.group_id,
            config_hash=parsed.config_hash,
        )
        return self._parse(stored)

    def get_vault_config(
        self,
        vault_address: Optional[str] = None,
        *,
        group_id: Optional[str] = None,
    ) -> Optional[VaultConfig]:
        """Look up by vault address or by group id (exactly one of them)."""
        if (vault_address is None) == (group_id is None):
            raise ValueError("pass exactly one of vault_address or group_id")
        if vault_address is not None:
            va = normalize_address(vault_address)
            if va is None:
                return None
            return self._load(self._store.get_vault(va))
        return self._load(self._store.get_vault_by_group(str(group_id)))

    def set_join_locked(self, vault_address: str, locked: bool, actor_wallet: Optional[str] = None) -> VaultConfig:
        va = normalize_address(vault_address)
        if va is None:
            raise VaultNotConfigured("vault_not_registered", {"vault_address": vault_address})
        locked = bool(locked)

        def mut(blob: Json) -> Optional[Json]:
            try:
                current = parse_vault_config(blob).gating.join_locked
            except InvalidConfig:
                current = None
            if current == locked:
                return None
            return with_join_locked(blob, locked)

        stored = self._store.update_vault_config(
            va,
            mut,
            audit=AuditDraft(
                vault_address=va,
                event_type="join_locked" if locked else "join_unlocked",
                actor_wallet=_actor(actor_wallet),
                details={"join_locked": locked},
            ),
            now_ms=self._clock(),
        )
        if stored is None:
            raise VaultNotConfigured("vault_not_registered", {"vault_address": va})

        log_event(log, "vault_join_lock_set", vault=va, join_locked=locked, config_hash=stored.config_hash)
        return self._parse(stored)

    def record(
        self,
        vault_address: str,
        event_type: str,
        *,
        actor_wallet: Optional[str] = None,
        details: Optional[Json] = None,
    ) -> int:
        return self._store.append_audit(
            AuditDraft(
                vault_address=str(vault_address).lower(),
                event_type=str(event_type),
                actor_wallet=_actor(actor_wallet),
                details=dict(details or {}),
            ),
            now_ms=self._clock(),
        )

    def list_audit(self, vault_address: str, limit: int = 50) -> List[AuditEntry]:
        return self._store.list_audit(str(vault_address).lower(), limit=max(1, min(int(limit), 500)))
