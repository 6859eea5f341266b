# src/vaultgate/gate/roles.py
from __future__ import annotations

from enum import Enum

from vaultgate.gate.vault_config import VaultConfig, normalize_address


class Role(str, Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


def resolve_role(wallet: str, config: VaultConfig) -> Role:
    """OWNER if wallet is the configured owner, ADMIN if listed as admin, else MEMBER.

    Pure. A malformed wallet is never privileged.
    """
    w = normalize_address(wallet)
    if w is None:
        return Role.MEMBER
    if w == config.roles.owner:
        return Role.OWNER
    if w in config.roles.admins:
        return Role.ADMIN
    return Role.MEMBER


def is_privileged(role: Role) -> bool:
    return role in (Role.OWNER, Role.ADMIN)
