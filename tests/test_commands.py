from __future__ import annotations

from types import SimpleNamespace

import pytest

from conftest import ADMIN, MEMBER, OWNER, RPC_A, RPC_B, VAULT, make_vault_doc
from vaultgate.gate.action_queue import ActionQueue
from vaultgate.gate.commands import (
    CancelCommand,
    CheckCommand,
    CommandInterpreter,
    HelpCommand,
    LockCommand,
    StatusCommand,
    SyncCommand,
    UnknownCommand,
    authorize,
    parse_command,
)
from vaultgate.gate.eligibility import EligibilityEvaluator
from vaultgate.gate.join_requests import JoinRequestTracker
from vaultgate.gate.registry import VaultRegistry
from vaultgate.gate.roles import Role, resolve_role
from vaultgate.gate.vault_config import parse_vault_config
from vaultgate.store.store_memory import InMemoryGateStore


@pytest.mark.parametrize(
    "text,expected",
    [
        ("gate status", StatusCommand()),
        ("/gate status", StatusCommand()),
        ("!GATE Status", StatusCommand()),
        (".gate", HelpCommand()),
        ("@gate help", HelpCommand()),
        ("/gate lock", LockCommand(locked=True)),
        ("/gate unlock", LockCommand(locked=False)),
        ("/gate check", CheckCommand(wallet=None)),
        ("/gate check 0xABC", CheckCommand(wallet="0xABC")),
        ("/gate sync", SyncCommand()),
        ("/gate cancel 0xabc", CancelCommand(wallet="0xabc")),
        ("/gate dance", UnknownCommand(verb="dance")),
    ],
)
def test_parse_command(text: str, expected) -> None:
    assert parse_command(text) == expected


@pytest.mark.parametrize("text", ["", "   ", "hello gate", "/gateway status", "#gate status"])
def test_parse_ignores_messages_not_for_the_bot(text: str) -> None:
    assert parse_command(text) is None


def test_custom_prefix() -> None:
    assert parse_command("/vault rules", prefix="vault") is not None
    assert parse_command("/gate rules", prefix="vault") is None


def test_resolve_role() -> None:
    cfg = parse_vault_config(make_vault_doc())
    assert resolve_role(OWNER.upper().replace("0X", "0x"), cfg) == Role.OWNER
    assert resolve_role(ADMIN, cfg) == Role.ADMIN
    assert resolve_role(MEMBER, cfg) == Role.MEMBER
    assert resolve_role("", cfg) == Role.MEMBER


def test_authorize_matrix() -> None:
    lock = LockCommand(locked=True)
    assert authorize(lock, Role.OWNER, OWNER) is None
    assert authorize(lock, Role.ADMIN, ADMIN) == "owner_only"
    assert authorize(lock, Role.MEMBER, MEMBER) == "owner_only"

    assert authorize(SyncCommand(), Role.ADMIN, ADMIN) is None
    assert authorize(SyncCommand(), Role.MEMBER, MEMBER) == "admin_only"
    assert authorize(CancelCommand(wallet=MEMBER), Role.MEMBER, MEMBER) == "admin_only"

    assert authorize(CheckCommand(), Role.MEMBER, MEMBER) is None
    assert authorize(CheckCommand(wallet=MEMBER.upper().replace("0X", "0x")), Role.MEMBER, MEMBER) is None
    assert authorize(CheckCommand(wallet=ADMIN), Role.MEMBER, MEMBER) == "admin_only"
    assert authorize(CheckCommand(wallet=MEMBER), Role.ADMIN, ADMIN) is None

    assert authorize(StatusCommand(), Role.MEMBER, MEMBER) is None


@pytest.fixture
def bot(clock, balances) -> SimpleNamespace:
    store = InMemoryGateStore()
    registry = VaultRegistry(store=store, clock=clock)
    queue = ActionQueue(store=store, clock=clock)
    tracker = JoinRequestTracker(store=store, clock=clock)
    interp = CommandInterpreter(
        registry=registry,
        evaluator=EligibilityEvaluator(source=balances, rpc_urls=[RPC_A, RPC_B]),
        queue=queue,
        tracker=tracker,
        prefix="gate",
    )
    return SimpleNamespace(registry=registry, queue=queue, tracker=tracker, interp=interp, balances=balances)


def test_not_addressed_returns_none(bot) -> None:
    assert bot.interp.handle("group-1", MEMBER, "good morning") is None


def test_unconfigured_group(bot) -> None:
    r = bot.interp.handle("group-x", MEMBER, "/gate status")
    assert r.ok is True
    assert "configured: no" in r.response

    r = bot.interp.handle("group-x", OWNER, "/gate lock")
    assert r.ok is False
    assert r.response == "Vaultgate is not configured for this group."


def test_status_and_rules(bot) -> None:
    cfg = bot.registry.upsert_vault_config(make_vault_doc())
    status = bot.interp.handle("group-1", MEMBER, "/gate status")
    assert status.ok is True
    assert f"configHash: {cfg.config_hash}" in status.response
    assert f"vaultAddress: {VAULT}" in status.response

    rules = bot.interp.handle("group-1", MEMBER, "gate rules")
    assert "minShares: 100" in rules.response
    assert "locked: false" in rules.response

    help_ = bot.interp.handle("group-1", MEMBER, "/gate")
    assert "gate lock (OWNER)" in help_.response


def test_owner_lock_flips_config_and_enqueues(bot) -> None:
    bot.registry.upsert_vault_config(make_vault_doc())

    r = bot.interp.handle("group-1", OWNER, "/gate lock")
    assert r.ok is True
    assert r.command == "lock"
    assert r.response == "Joins locked."
    assert bot.registry.get_vault_config(VAULT).gating.join_locked is True

    action = bot.queue.get(r.action_id)
    assert action.action_type == "vault.lock"

    # Same command again: same open action, config unchanged.
    again = bot.interp.handle("group-1", OWNER, "/gate lock")
    assert again.action_id == r.action_id

    unlock = bot.interp.handle("group-1", OWNER, "/gate unlock")
    assert unlock.response == "Joins unlocked."
    assert bot.registry.get_vault_config(VAULT).gating.join_locked is False


def test_admin_cannot_lock(bot) -> None:
    bot.registry.upsert_vault_config(make_vault_doc())
    r = bot.interp.handle("group-1", ADMIN, "/gate lock")
    assert r.ok is False
    assert r.response == "Denied: OWNER only."
    assert bot.registry.get_vault_config(VAULT).gating.join_locked is False
    assert bot.queue.list_ready() == []


def test_member_check_self(bot) -> None:
    bot.registry.upsert_vault_config(make_vault_doc(min_shares="100"))
    bot.balances.default = 250

    r = bot.interp.handle("group-1", MEMBER, "/gate check")
    assert r.ok is True
    assert r.response.startswith("Eligible: yes")
    assert f"wallet: {MEMBER}" in r.response
    assert "shareBalance: 250" in r.response
    # check is a single read
    assert len(bot.balances.calls) == 1


def test_member_cannot_check_others(bot) -> None:
    bot.registry.upsert_vault_config(make_vault_doc())
    r = bot.interp.handle("group-1", MEMBER, f"/gate check {ADMIN}")
    assert r.ok is False
    assert r.response == "Denied: ADMIN or OWNER only."


def test_check_invalid_wallet(bot) -> None:
    bot.registry.upsert_vault_config(make_vault_doc())
    r = bot.interp.handle("group-1", ADMIN, "/gate check 0x123")
    assert r.ok is False
    assert r.response == "Invalid wallet address."


def test_admin_cancel_writes_audit(bot) -> None:
    bot.registry.upsert_vault_config(make_vault_doc())
    bot.tracker.enter_watching(VAULT, "group-1", MEMBER, "ineligible")

    r = bot.interp.handle("group-1", ADMIN, f"/gate cancel {MEMBER}")
    assert r.ok is True
    assert r.response == f"Join request cancelled for {MEMBER}."
    assert bot.tracker.join_status(VAULT, MEMBER).status == "cancelled"

    latest = bot.registry.list_audit(VAULT, limit=1)[0]
    assert latest.event_type == "join_cancelled"
    assert latest.actor_wallet == ADMIN
    assert latest.details == {"wallet": MEMBER, "rows": 1}


def test_unknown_command(bot) -> None:
    bot.registry.upsert_vault_config(make_vault_doc())
    r = bot.interp.handle("group-1", MEMBER, "/gate dance")
    assert r.ok is False
    assert r.response == "Unknown command. Try `/gate help`."
