# src/vaultgate/gate/join_flow.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from vaultgate.gate.action_queue import ActionQueue
from vaultgate.gate.eligibility import DoubleReadResult, EligibilityEvaluator
from vaultgate.gate.errors import (
    GateError,
    UnsupportedChain,
    UnsupportedGatingMode,
    VaultMisconfigured,
    VaultNotConfigured,
)
from vaultgate.gate.join_requests import JoinRequestTracker
from vaultgate.gate.proof import ProofVerifier
from vaultgate.gate.registry import VaultRegistry
from vaultgate.gate.vault_config import VaultConfig
from vaultgate.runtime.log_events import log_event

Json = Dict[str, Any]

log = logging.getLogger("vaultgate.join")

ADD_MEMBER_ACTION = "group.add_member"

RECHECK_AFTER_VERIFICATION_FAILED_S = 120
RECHECK_AFTER_INELIGIBLE_S = 300

_NEXT_STEPS: Dict[str, List[str]] = {
    "eligible": [],
    "gating_disabled": [],
    "join_locked": ["Joins are currently locked by the owner. Try again later."],
    "verification_failed": ["Try again in a minute. If this persists, contact the creator."],
    "ineligible": ["Acquire the required vault shares", "You will be added automatically once you qualify"],
}


def add_member_dedupe_key(vault_address: str, group_id: str, wallet: str) -> str:
    return f"join:add_member:{vault_address.lower()}:{group_id}:{wallet.lower()}"


@dataclass(frozen=True)
class JoinDecision:
    eligible: bool
    reason: str
    wallet: str
    vault_address: str
    action_status: Optional[str] = None  # queued | watching | None
    action_id: Optional[int] = None
    action: Optional[Json] = None
    evidence: Optional[Json] = None
    next_steps: List[str] = field(default_factory=list)

    def to_json(self) -> Json:
        return {
            "eligible": self.eligible,
            "reason": self.reason,
            "wallet": self.wallet,
            "vault_address": self.vault_address,
            "action_status": self.action_status,
            "action_id": self.action_id,
            "action": self.action,
            "evidence": self.evidence,
            "next_steps": list(self.next_steps),
        }


@dataclass
class RecheckSummary:
    checked: int = 0
    queued: int = 0
    rescheduled: int = 0
    failed: int = 0

    def to_json(self) -> Json:
        return {"checked": self.checked, "queued": self.queued, "rescheduled": self.rescheduled, "failed": self.failed}


class JoinService:
    """Join attempt orchestration: proof -> vault -> policy -> queue or watch."""

    def __init__(
        self,
        *,
        verifier: ProofVerifier,
        registry: VaultRegistry,
        evaluator: EligibilityEvaluator,
        queue: ActionQueue,
        tracker: JoinRequestTracker,
        supported_chain_id: int,
    ) -> None:
        self._verifier = verifier
        self._registry = registry
        self._evaluator = evaluator
        self._queue = queue
        self._tracker = tracker
        self._chain_id = int(supported_chain_id)

    # ---- policy ----

    def _check_static_policy(self, vault: VaultConfig) -> Optional[str]:
        """Config-only gates, in order. Returns a short-circuit reason or None.

        Raises for configuration problems the wallet cannot fix.
        """
        if vault.chain_id != self._chain_id:
            raise UnsupportedChain(
                "unsupported_chain",
                {"chain_id": vault.chain_id, "supported_chain_id": self._chain_id},
            )
        if vault.gating.join_locked:
            return "join_locked"
        if not vault.gating.enabled or vault.gating.mode == "none":
            return "gating_disabled"
        if vault.gating.mode != "shares":
            raise UnsupportedGatingMode("unsupported_gating_mode", {"mode": vault.gating.mode})
        if not vault.share_token_address or not vault.gating.min_shares or vault.gating.min_shares <= 0:
            raise VaultMisconfigured(
                "vault_misconfigured",
                {"share_token_address": vault.share_token_address, "min_shares": vault.gating.min_shares},
            )
        return None

    def _read_chain(self, vault: VaultConfig, wallet: str) -> DoubleReadResult:
        token = vault.share_token_address
        min_shares = vault.gating.min_shares
        if not token or not min_shares:
            raise VaultMisconfigured(
                "vault_misconfigured",
                {"share_token_address": token, "min_shares": min_shares},
            )
        return self._evaluator.check_eligibility_double_read(
            wallet,
            token,
            min_shares,
            fail_closed=vault.gating.fail_closed,
        )

    def _admit(self, vault: VaultConfig, wallet: str, reason: str, evidence: Json) -> Tuple[int, Json]:
        action: Json = {
            "action": ADD_MEMBER_ACTION,
            "group_id": vault.group_id,
            "wallet": wallet,
            "reason": reason,
            "evidence": evidence,
        }
        res = self._queue.enqueue(
            vault.vault_address,
            vault.group_id,
            action,
            action_type=ADD_MEMBER_ACTION,
            dedupe_key=add_member_dedupe_key(vault.vault_address, vault.group_id, wallet),
        )
        watching = self._tracker.find_watching(vault.vault_address, wallet)
        if watching is not None:
            self._tracker.mark_queued(watching.id, res.id)
        return res.id, action

    def _audit(self, vault_address: str, wallet: str, reason: str, evidence: Optional[Json], **extra: Any) -> None:
        details: Json = {"wallet": wallet, "reason": reason, "evidence": evidence}
        details.update(extra)
        self._registry.record(vault_address, "join_decision", actor_wallet=wallet, details=details)

    # ---- entry points ----

    def join(self, vault_address: str, message: str, signature: str) -> JoinDecision:
        proof = self._verifier.verify_join_proof(message, signature, vault_address)
        wallet = proof.wallet

        vault = self._registry.get_vault_config(vault_address)
        if vault is None:
            raise VaultNotConfigured("vault_not_registered", {"vault_address": str(vault_address).lower()})

        try:
            short = self._check_static_policy(vault)
        except GateError as e:
            self._audit(vault.vault_address, wallet, e.reason, None, error=e.code)
            raise

        if short == "join_locked":
            decision = JoinDecision(
                eligible=False,
                reason="join_locked",
                wallet=wallet,
                vault_address=vault.vault_address,
                next_steps=list(_NEXT_STEPS["join_locked"]),
            )
        elif short == "gating_disabled":
            evidence: Json = {"block_number": None}
            aid, action = self._admit(vault, wallet, "gating_disabled", evidence)
            decision = JoinDecision(
                eligible=True,
                reason="gating_disabled",
                wallet=wallet,
                vault_address=vault.vault_address,
                action_status="queued",
                action_id=aid,
                action=action,
                evidence=evidence,
            )
        else:
            reads = self._read_chain(vault, wallet)
            if reads.allowed:
                aid, action = self._admit(vault, wallet, "eligible", reads.evidence)
                decision = JoinDecision(
                    eligible=True,
                    reason="eligible",
                    wallet=wallet,
                    vault_address=vault.vault_address,
                    action_status="queued",
                    action_id=aid,
                    action=action,
                    evidence=reads.evidence,
                )
            elif reads.verification_failed:
                decision = JoinDecision(
                    eligible=False,
                    reason="verification_failed",
                    wallet=wallet,
                    vault_address=vault.vault_address,
                    evidence=reads.evidence,
                    next_steps=list(_NEXT_STEPS["verification_failed"]),
                )
            else:
                self._tracker.enter_watching(vault.vault_address, vault.group_id, wallet, "ineligible")
                decision = JoinDecision(
                    eligible=False,
                    reason="ineligible",
                    wallet=wallet,
                    vault_address=vault.vault_address,
                    action_status="watching",
                    evidence=reads.evidence,
                    next_steps=list(_NEXT_STEPS["ineligible"]),
                )

        self._audit(
            vault.vault_address,
            wallet,
            decision.reason,
            decision.evidence,
            action_id=decision.action_id,
            action_status=decision.action_status,
        )
        log_event(
            log,
            "join_decision",
            vault=vault.vault_address,
            wallet=wallet,
            reason=decision.reason,
            action_id=decision.action_id,
        )
        return decision

    def recheck_watching(self, limit: int = 50) -> RecheckSummary:
        """One pass over due watching requests.

        Eligible wallets are queued; the rest are rescheduled, or failed when
        the vault itself can no longer admit anyone.
        """
        summary = RecheckSummary()
        for row in self._tracker.list_due(limit):
            summary.checked += 1

            vault = self._registry.get_vault_config(row.vault_address)
            if vault is None:
                self._tracker.mark_failed(row.id, "vault_not_registered")
                summary.failed += 1
                continue

            try:
                short = self._check_static_policy(vault)
            except GateError as e:
                self._tracker.mark_failed(row.id, e.reason)
                self._audit(vault.vault_address, row.wallet, e.reason, None, source="recheck", error=e.code)
                summary.failed += 1
                continue

            if short == "join_locked":
                self._tracker.mark_checked(row.id, "join_locked", RECHECK_AFTER_INELIGIBLE_S)
                summary.rescheduled += 1
                continue

            if short == "gating_disabled":
                aid, _ = self._admit(vault, row.wallet, "gating_disabled", {"block_number": None})
                self._audit(vault.vault_address, row.wallet, "gating_disabled", None, source="recheck", action_id=aid)
                summary.queued += 1
                continue

            reads = self._read_chain(vault, row.wallet)
            if reads.allowed:
                aid, _ = self._admit(vault, row.wallet, "eligible", reads.evidence)
                self._audit(vault.vault_address, row.wallet, "eligible", reads.evidence, source="recheck", action_id=aid)
                summary.queued += 1
            elif reads.verification_failed:
                self._tracker.mark_checked(row.id, "verification_failed", RECHECK_AFTER_VERIFICATION_FAILED_S)
                summary.rescheduled += 1
            else:
                self._tracker.mark_checked(row.id, "ineligible", RECHECK_AFTER_INELIGIBLE_S)
                summary.rescheduled += 1

        if summary.checked:
            log_event(log, "join_recheck_pass", **summary.to_json())
        return summary
