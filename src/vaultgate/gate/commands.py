# src/vaultgate/gate/commands.py
"""
Group-chat command surface.

Text form: `<prefix> <command> [arg]`. The prefix may carry one leading symbol
(`/gate`, `!gate`, `.gate`, `@gate`) and matching is case-insensitive.

Parsing, role resolution and authorization are pure functions; only
CommandInterpreter.handle touches the registry, the chain and the queue.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Union

from vaultgate.gate.action_queue import ActionQueue
from vaultgate.gate.eligibility import EligibilityEvaluator
from vaultgate.gate.join_requests import JoinRequestTracker
from vaultgate.gate.registry import VaultRegistry
from vaultgate.gate.roles import Role, is_privileged, resolve_role
from vaultgate.gate.vault_config import VaultConfig, normalize_address
from vaultgate.runtime.log_events import log_event

log = logging.getLogger("vaultgate.commands")

DEFAULT_PREFIX = "gate"
PREFIX_SYMBOLS = "/!.@"


# ---------------------------------------------------------------------
# Parsed commands
# ---------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class HelpCommand:
    name: str = "help"


@dataclass(frozen=True, slots=True)
class StatusCommand:
    name: str = "status"


@dataclass(frozen=True, slots=True)
class RulesCommand:
    name: str = "rules"


@dataclass(frozen=True, slots=True)
class LockCommand:
    locked: bool
    name: str = "lock"


@dataclass(frozen=True, slots=True)
class CheckCommand:
    wallet: Optional[str] = None
    name: str = "check"


@dataclass(frozen=True, slots=True)
class SyncCommand:
    name: str = "sync"


@dataclass(frozen=True, slots=True)
class CancelCommand:
    wallet: Optional[str] = None
    name: str = "cancel"


@dataclass(frozen=True, slots=True)
class UnknownCommand:
    verb: str
    name: str = "unknown"


Command = Union[
    HelpCommand,
    StatusCommand,
    RulesCommand,
    LockCommand,
    CheckCommand,
    SyncCommand,
    CancelCommand,
    UnknownCommand,
]


def parse_command(text: str, prefix: str = DEFAULT_PREFIX) -> Optional[Command]:
    """Parse chat text. None means the text is not addressed to the bot."""
    parts = str(text or "").split()
    if not parts:
        return None

    head = parts[0].lower()
    if head and head[0] in PREFIX_SYMBOLS:
        head = head[1:]
    if head != prefix.lower():
        return None

    verb = parts[1].lower() if len(parts) > 1 else "help"
    arg = parts[2] if len(parts) > 2 else None

    if verb == "help":
        return HelpCommand()
    if verb == "status":
        return StatusCommand()
    if verb == "rules":
        return RulesCommand()
    if verb in ("lock", "unlock"):
        return LockCommand(locked=verb == "lock")
    if verb == "check":
        return CheckCommand(wallet=arg)
    if verb == "sync":
        return SyncCommand()
    if verb == "cancel":
        return CancelCommand(wallet=arg)
    return UnknownCommand(verb=verb)


def authorize(command: Command, role: Role, sender: str) -> Optional[str]:
    """None if `role` may run `command`, else a denial code.

    `check` on your own wallet is open to everyone; on another wallet it needs
    ADMIN or OWNER.
    """
    if isinstance(command, LockCommand):
        return None if role == Role.OWNER else "owner_only"
    if isinstance(command, (SyncCommand, CancelCommand)):
        return None if is_privileged(role) else "admin_only"
    if isinstance(command, CheckCommand) and command.wallet is not None:
        target = normalize_address(command.wallet)
        if target != str(sender or "").lower() and not is_privileged(role):
            return "admin_only"
    return None


# ---------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------

_DENIALS = {
    "owner_only": "Denied: OWNER only.",
    "admin_only": "Denied: ADMIN or OWNER only.",
}


def render_help(prefix: str) -> str:
    return "\n".join(
        [
            "Vaultgate commands",
            "",
            "Tip: you can type with or without a leading slash.",
            "",
            f"- {prefix} help",
            f"- {prefix} status",
            f"- {prefix} rules",
            f"- {prefix} check",
            f"- {prefix} check 0x... (ADMIN/OWNER)",
            f"- {prefix} lock (OWNER)",
            f"- {prefix} unlock (OWNER)",
            f"- {prefix} sync (ADMIN/OWNER)",
            f"- {prefix} cancel 0x... (ADMIN/OWNER)",
        ]
    )


def _min_shares_text(v: VaultConfig) -> str:
    return str(v.gating.min_shares) if v.gating.min_shares is not None else "n/a"


def render_status(v: Optional[VaultConfig]) -> str:
    if v is None:
        return "\n".join(
            [
                "Vaultgate status",
                "",
                "- configured: no",
                "- next: ask the creator to connect this group to a vault",
            ]
        )
    return "\n".join(
        [
            "Vaultgate status",
            "",
            "- configured: yes",
            f"- vaultAddress: {v.vault_address}",
            f"- chainId: {v.chain_id}",
            f"- groupId: {v.group_id}",
            f"- canonicalOwner: {v.canonical_owner_address}",
            "- gating:",
            f"  - enabled: {str(v.gating.enabled).lower()}",
            f"  - mode: {v.gating.mode}",
            f"  - joinLocked: {str(v.gating.join_locked).lower()}",
            f"  - minShares: {_min_shares_text(v)}",
            f"  - failClosed: {str(v.gating.fail_closed).lower()}",
            f"- configHash: {v.config_hash}",
        ]
    )


def render_rules(v: VaultConfig) -> str:
    return "\n".join(
        [
            "Vaultgate rules",
            "",
            "- joins:",
            f"  - locked: {str(v.gating.join_locked).lower()}",
            "- gating:",
            f"  - enabled: {str(v.gating.enabled).lower()}",
            f"  - mode: {v.gating.mode}",
            f"  - minShares: {_min_shares_text(v)}",
            f"  - failClosed: {str(v.gating.fail_closed).lower()}",
        ]
    )


@dataclass(frozen=True)
class CommandResult:
    ok: bool
    response: str
    command: str
    action_id: Optional[int] = None


# ---------------------------------------------------------------------
# Interpreter
# ---------------------------------------------------------------------

class CommandInterpreter:
    def __init__(
        self,
        *,
        registry: VaultRegistry,
        evaluator: EligibilityEvaluator,
        queue: ActionQueue,
        tracker: JoinRequestTracker,
        prefix: str = DEFAULT_PREFIX,
    ) -> None:
        self._registry = registry
        self._evaluator = evaluator
        self._queue = queue
        self._tracker = tracker
        self._prefix = str(prefix).lower()

    @property
    def prefix(self) -> str:
        return self._prefix

    def handle(self, group_id: str, sender_wallet: str, text: str) -> Optional[CommandResult]:
        cmd = parse_command(text, self._prefix)
        if cmd is None:
            return None

        sender = str(sender_wallet or "").strip().lower()
        vault = self._registry.get_vault_config(group_id=str(group_id))

        if vault is None:
            if isinstance(cmd, (HelpCommand, StatusCommand, RulesCommand)):
                return CommandResult(ok=True, response=render_status(None), command=cmd.name)
            return CommandResult(ok=False, response="Vaultgate is not configured for this group.", command=cmd.name)

        role = resolve_role(sender, vault)
        denial = authorize(cmd, role, sender)
        if denial is not None:
            log_event(log, "command_denied", command=cmd.name, role=role.value, sender=sender, group_id=vault.group_id)
            return CommandResult(ok=False, response=_DENIALS[denial], command=cmd.name)

        result = self._dispatch(cmd, vault, sender)
        log_event(
            log,
            "command_handled",
            command=cmd.name,
            role=role.value,
            sender=sender,
            group_id=vault.group_id,
            ok=result.ok,
        )
        return result

    def _dispatch(self, cmd: Command, vault: VaultConfig, sender: str) -> CommandResult:
        if isinstance(cmd, HelpCommand):
            return CommandResult(ok=True, response=render_help(self._prefix), command=cmd.name)

        if isinstance(cmd, StatusCommand):
            return CommandResult(ok=True, response=render_status(vault), command=cmd.name)

        if isinstance(cmd, RulesCommand):
            return CommandResult(ok=True, response=render_rules(vault), command=cmd.name)

        if isinstance(cmd, LockCommand):
            return self._lock(cmd, vault, sender)

        if isinstance(cmd, CheckCommand):
            return self._check(cmd, vault, sender)

        if isinstance(cmd, SyncCommand):
            return CommandResult(
                ok=True,
                response="Sync requested. The runtime will process this shortly.",
                command=cmd.name,
            )

        if isinstance(cmd, CancelCommand):
            return self._cancel(cmd, vault, sender)

        return CommandResult(ok=False, response=f"Unknown command. Try `/{self._prefix} help`.", command=cmd.name)

    def _lock(self, cmd: LockCommand, vault: VaultConfig, sender: str) -> CommandResult:
        verb = "lock" if cmd.locked else "unlock"
        self._registry.set_join_locked(vault.vault_address, cmd.locked, actor_wallet=sender)
        res = self._queue.enqueue(
            vault.vault_address,
            vault.group_id,
            {
                "action": f"vault.{verb}",
                "vault_address": vault.vault_address,
                "group_id": vault.group_id,
                "reason": "owner_command",
                "evidence": {"actor": sender},
            },
            action_type=f"vault.{verb}",
            dedupe_key=f"command:{verb}:{vault.vault_address}",
        )
        return CommandResult(
            ok=True,
            response="Joins locked." if cmd.locked else "Joins unlocked.",
            command=verb,
            action_id=res.id,
        )

    def _check(self, cmd: CheckCommand, vault: VaultConfig, sender: str) -> CommandResult:
        target = sender
        if cmd.wallet is not None:
            target_opt = normalize_address(cmd.wallet)
            if target_opt is None:
                return CommandResult(ok=False, response="Invalid wallet address.", command=cmd.name)
            target = target_opt

        if not vault.gating.enabled or vault.gating.mode == "none":
            return CommandResult(ok=True, response="Eligible: yes\n- reason: gating_disabled", command=cmd.name)

        if vault.gating.mode != "shares":
            return CommandResult(ok=False, response="Unsupported gating mode.", command=cmd.name)

        if not vault.share_token_address or not vault.gating.min_shares:
            return CommandResult(
                ok=False,
                response="Misconfigured: missing share token or minShares.",
                command=cmd.name,
            )

        r = self._evaluator.check_eligibility(target, vault.share_token_address, vault.gating.min_shares)
        lines: List[str] = [
            f"Eligible: {'yes' if r.eligible else 'no'}",
            f"- wallet: {target}",
            f"- reason: {r.reason}",
            f"- shareBalance: {r.evidence.get('share_balance')}",
            f"- threshold: {r.evidence.get('threshold')}",
            f"- blockNumber: {r.evidence.get('block_number') if r.evidence.get('block_number') is not None else 'n/a'}",
        ]
        return CommandResult(ok=True, response="\n".join(lines), command=cmd.name)

    def _cancel(self, cmd: CancelCommand, vault: VaultConfig, sender: str) -> CommandResult:
        target = normalize_address(cmd.wallet) if cmd.wallet else None
        if target is None:
            return CommandResult(ok=False, response=f"Usage: {self._prefix} cancel 0x...", command=cmd.name)

        n = self._tracker.cancel(vault.vault_address, target)
        self._registry.record(
            vault.vault_address,
            "join_cancelled",
            actor_wallet=sender,
            details={"wallet": target, "rows": n},
        )
        if n == 0:
            return CommandResult(ok=True, response=f"No open join request for {target}.", command=cmd.name)
        return CommandResult(ok=True, response=f"Join request cancelled for {target}.", command=cmd.name)
