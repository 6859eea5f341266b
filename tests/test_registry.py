from __future__ import annotations

import pytest

from conftest import OWNER, VAULT, make_vault_doc
from vaultgate.gate.errors import InvalidConfig, VaultNotConfigured
from vaultgate.gate.registry import VaultRegistry
from vaultgate.store.store import GateStore


def test_store_backends_satisfy_protocol(store) -> None:
    assert isinstance(store, GateStore)


def test_upsert_then_lookup_by_vault_and_group(store, clock) -> None:
    reg = VaultRegistry(store=store, clock=clock)
    saved = reg.upsert_vault_config(make_vault_doc(group_id="g-42"), actor_wallet=OWNER)

    by_vault = reg.get_vault_config(VAULT.upper().replace("0X", "0x"))
    by_group = reg.get_vault_config(group_id="g-42")

    assert by_vault is not None and by_group is not None
    assert by_vault.config_hash == saved.config_hash == by_group.config_hash
    assert by_vault.updated_ms == clock.now_ms
    assert reg.get_vault_config(group_id="unknown") is None
    assert reg.get_vault_config("not-an-address") is None


def test_lookup_requires_exactly_one_key(store) -> None:
    reg = VaultRegistry(store=store)
    with pytest.raises(ValueError):
        reg.get_vault_config()
    with pytest.raises(ValueError):
        reg.get_vault_config(VAULT, group_id="g")


def test_upsert_is_last_writer_wins_and_audited(store, clock) -> None:
    reg = VaultRegistry(store=store, clock=clock)
    first = reg.upsert_vault_config(make_vault_doc(min_shares="100"))
    clock.advance(5)
    second = reg.upsert_vault_config(make_vault_doc(min_shares="250"), actor_wallet=OWNER)

    cur = reg.get_vault_config(VAULT)
    assert cur is not None
    assert cur.gating.min_shares == 250
    assert cur.config_hash == second.config_hash != first.config_hash

    audit = reg.list_audit(VAULT)
    assert [a.event_type for a in audit] == ["config_upsert", "config_upsert"]
    assert audit[0].actor_wallet == OWNER
    assert audit[0].details["config_hash"] == second.config_hash


def test_invalid_config_is_not_stored(store) -> None:
    reg = VaultRegistry(store=store)
    with pytest.raises(InvalidConfig):
        reg.upsert_vault_config(make_vault_doc(mode="bogus"))
    assert reg.get_vault_config(VAULT) is None
    assert reg.list_audit(VAULT) == []


def test_set_join_locked_is_idempotent_but_always_audited(store, clock) -> None:
    reg = VaultRegistry(store=store, clock=clock)
    reg.upsert_vault_config(make_vault_doc(join_locked=False))

    a = reg.set_join_locked(VAULT, True, actor_wallet=OWNER)
    clock.advance(1)
    b = reg.set_join_locked(VAULT, True, actor_wallet=OWNER)

    assert a.gating.join_locked is True
    assert b.config_hash == a.config_hash
    assert b.config["gating"]["joinLocked"] is True

    c = reg.set_join_locked(VAULT, False)
    assert c.gating.join_locked is False
    assert c.config_hash != a.config_hash

    events = [e.event_type for e in reg.list_audit(VAULT)]
    assert events == ["join_unlocked", "join_locked", "join_locked", "config_upsert"]


def test_set_join_locked_unknown_vault(store) -> None:
    reg = VaultRegistry(store=store)
    with pytest.raises(VaultNotConfigured) as ei:
        reg.set_join_locked(VAULT, True)
    assert ei.value.reason == "vault_not_registered"


def test_audit_limit_is_capped(store) -> None:
    reg = VaultRegistry(store=store)
    reg.upsert_vault_config(make_vault_doc())
    for i in range(5):
        reg.record(VAULT, "note", details={"i": i})
    assert len(reg.list_audit(VAULT, limit=3)) == 3
    assert len(reg.list_audit(VAULT, limit=0)) == 1


OTHER_VAULT = "0x" + "dd" * 20


def test_group_cannot_be_bound_to_two_vaults(store, clock) -> None:
    reg = VaultRegistry(store=store, clock=clock)
    reg.upsert_vault_config(make_vault_doc(group_id="g"))

    with pytest.raises(InvalidConfig) as ei:
        reg.upsert_vault_config(make_vault_doc(vault=OTHER_VAULT, group_id="g"))
    assert ei.value.reason == "group_already_bound"
    assert ei.value.details["vault_address"] == VAULT

    assert reg.get_vault_config(OTHER_VAULT) is None
    assert reg.list_audit(OTHER_VAULT) == []
    by_group = reg.get_vault_config(group_id="g")
    assert by_group is not None and by_group.vault_address == VAULT


def test_group_is_free_again_after_its_vault_moves(store, clock) -> None:
    reg = VaultRegistry(store=store, clock=clock)
    reg.upsert_vault_config(make_vault_doc(group_id="g"))
    reg.upsert_vault_config(make_vault_doc(group_id="g2"))

    moved = reg.upsert_vault_config(make_vault_doc(vault=OTHER_VAULT, group_id="g"))
    assert moved.vault_address == OTHER_VAULT
    by_group = reg.get_vault_config(group_id="g")
    assert by_group is not None and by_group.vault_address == OTHER_VAULT
