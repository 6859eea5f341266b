from __future__ import annotations

import pytest

from conftest import ADMIN, OWNER, SHARE_TOKEN, VAULT, make_vault_doc
from vaultgate.gate.errors import InvalidConfig
from vaultgate.gate.vault_config import (
    canonical_json,
    compute_config_hash,
    parse_vault_config,
    with_join_locked,
)


def test_config_hash_ignores_key_order() -> None:
    a = {"b": 1, "a": {"y": [1, 2], "x": "é"}}
    b = {"a": {"x": "é", "y": [1, 2]}, "b": 1}
    assert canonical_json(a) == canonical_json(b)
    assert compute_config_hash(a) == compute_config_hash(b)
    assert len(compute_config_hash(a)) == 64


def test_config_hash_changes_with_content() -> None:
    doc = make_vault_doc()
    assert compute_config_hash(doc) != compute_config_hash(with_join_locked(doc, True))


def test_parse_projects_fields_and_lowercases_addresses() -> None:
    doc = make_vault_doc(vault=VAULT.upper().replace("0X", "0x"))
    v = parse_vault_config(doc)

    assert v.vault_address == VAULT
    assert v.chain_id == 8453
    assert v.group_id == "group-1"
    assert v.share_token_address == SHARE_TOKEN
    assert v.gating.min_shares == 100
    assert v.roles.owner == OWNER
    assert v.roles.admins == (ADMIN,)
    assert v.config == doc
    assert v.config_hash == compute_config_hash(doc)


def test_parse_defaults_enabled_and_fail_closed() -> None:
    doc = make_vault_doc()
    del doc["gating"]["enabled"]
    del doc["gating"]["failClosed"]
    doc["roles"] = {}

    v = parse_vault_config(doc)
    assert v.gating.enabled is True
    assert v.gating.fail_closed is True
    # owner falls back to the canonical owner
    assert v.roles.owner == OWNER


def test_min_shares_accepts_large_decimal_strings() -> None:
    big = "1" + "0" * 30
    v = parse_vault_config(make_vault_doc(min_shares=big))
    assert v.gating.min_shares == 10**30
    assert v.summary()["gating"]["min_shares"] == big


@pytest.mark.parametrize(
    "mutate,reason",
    [
        (lambda d: d["vault"].update(vaultAddress="0x1234"), "invalid_vault_address"),
        (lambda d: d.update(chainId="base"), "invalid_chain_id"),
        (lambda d: d["group"].update(groupId=""), "missing_group_id"),
        (lambda d: d["vault"].update(canonicalOwnerAddress=None), "invalid_owner_address"),
        (lambda d: d["gating"].update(mode="nft"), "invalid_gating_mode"),
        (lambda d: d["gating"]["thresholds"].update(minShares="-5"), "invalid_min_shares"),
        (lambda d: d["gating"].update(enabled="yes"), "invalid_gating_enabled"),
        (lambda d: d["roles"].update(admins=["nope"]), "invalid_role_address"),
        (lambda d: d.update(roles=[]), "invalid_roles"),
    ],
)
def test_parse_rejects_with_stable_reason(mutate, reason: str) -> None:
    doc = make_vault_doc()
    mutate(doc)
    with pytest.raises(InvalidConfig) as ei:
        parse_vault_config(doc)
    assert ei.value.reason == reason
    assert ei.value.code == "invalid_config"


def test_with_join_locked_returns_copy() -> None:
    doc = make_vault_doc(join_locked=False)
    locked = with_join_locked(doc, True)
    assert locked["gating"]["joinLocked"] is True
    assert doc["gating"]["joinLocked"] is False
