"""
Gate store: abstract persistence layer.

Every gate component talks to storage through GateStore so the rules stay
testable against the in-memory backend and run in production on SQLite.

Each method is one atomic unit. Callers never compose multi-step transactions
themselves; anything that must be atomic (vault write + audit row, nonce
consume, dedupe-aware enqueue, watch upsert) is a single store call.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

Json = Dict[str, Any]


# ---------------------------------------------------------------------
# Statuses
# ---------------------------------------------------------------------

ACTION_STATUSES = ("pending", "retry", "executing", "executed", "failed")
OPEN_ACTION_STATUSES = ("pending", "retry", "executing")

JOIN_STATUSES = ("watching", "queued", "added", "failed", "cancelled")
# Rows a new ineligible attempt may move back to watching.
REWATCHABLE_JOIN_STATUSES = ("watching", "failed", "cancelled")
CANCELLABLE_JOIN_STATUSES = ("watching", "queued", "failed")

# Columns update_join_request() may change.
JOIN_REQUEST_MUTABLE = ("status", "last_reason", "last_checked_ms", "next_check_ms", "action_id")


# ---------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class StoredVault:
    vault_address: str
    chain_id: int
    group_id: str
    config: Json
    config_hash: str
    created_ms: int
    updated_ms: int


@dataclass(frozen=True, slots=True)
class AuditDraft:
    vault_address: str
    event_type: str
    actor_wallet: Optional[str] = None
    details: Optional[Json] = None


@dataclass(frozen=True, slots=True)
class AuditEntry:
    id: int
    vault_address: str
    actor_wallet: Optional[str]
    event_type: str
    details: Json
    created_ms: int

    def to_json(self) -> Json:
        return {
            "id": self.id,
            "vault_address": self.vault_address,
            "actor_wallet": self.actor_wallet,
            "event_type": self.event_type,
            "details": self.details,
            "created_ms": self.created_ms,
        }


@dataclass(frozen=True, slots=True)
class NonceRecord:
    nonce: str
    purpose: str
    wallet: str
    vault_address: str
    issued_ms: int
    expires_ms: int
    used_ms: Optional[int] = None


@dataclass(frozen=True, slots=True)
class ActionDraft:
    vault_address: str
    group_id: str
    action_type: str
    payload: Json
    dedupe_key: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ActionRecord:
    id: int
    vault_address: str
    group_id: str
    action_type: str
    payload: Json
    dedupe_key: Optional[str]
    status: str
    attempt_count: int
    last_error: Optional[str]
    next_attempt_ms: Optional[int]
    created_ms: int
    updated_ms: int

    def to_json(self) -> Json:
        return {
            "id": self.id,
            "vault_address": self.vault_address,
            "group_id": self.group_id,
            "action_type": self.action_type,
            "action": self.payload,
            "dedupe_key": self.dedupe_key,
            "status": self.status,
            "attempt_count": self.attempt_count,
            "last_error": self.last_error,
            "next_attempt_ms": self.next_attempt_ms,
            "created_ms": self.created_ms,
            "updated_ms": self.updated_ms,
        }


@dataclass(frozen=True, slots=True)
class JoinRequestRecord:
    id: int
    vault_address: str
    group_id: str
    wallet: str
    status: str
    last_reason: Optional[str]
    last_checked_ms: Optional[int]
    next_check_ms: Optional[int]
    action_id: Optional[int]
    created_ms: int
    updated_ms: int


# ---------------------------------------------------------------------
# Store interface
# ---------------------------------------------------------------------

VaultMutator = Callable[[Json], Optional[Json]]


@runtime_checkable
class GateStore(Protocol):
    # ---- vaults + audit ----

    def get_vault(self, vault_address: str) -> Optional[StoredVault]: ...

    def get_vault_by_group(self, group_id: str) -> Optional[StoredVault]: ...

    def save_vault(self, vault: StoredVault, *, audit: AuditDraft) -> StoredVault:
        """Upsert by vault address and append `audit` in the same transaction.

        Raises InvalidConfig("group_already_bound") when another vault holds
        `vault.group_id`; nothing is written in that case.
        """
        ...

    def update_vault_config(
        self, vault_address: str, mut: VaultMutator, *, audit: AuditDraft, now_ms: int
    ) -> Optional[StoredVault]:
        """Read-modify-write of the config blob plus an audit row.

        `mut` receives a copy of the blob and returns the new blob, or None to
        leave the row untouched (the audit row is still written). Returns None
        when the vault does not exist.
        """
        ...

    def append_audit(self, entry: AuditDraft, *, now_ms: int) -> int: ...

    def list_audit(self, vault_address: str, *, limit: int) -> List[AuditEntry]: ...

    # ---- nonces ----

    def issue_nonce(self, candidate: NonceRecord, *, now_ms: int) -> NonceRecord:
        """Return the newest open nonce for the same owner+purpose, else store `candidate`."""
        ...

    def consume_nonce(self, *, nonce: str, purpose: str, wallet: str, vault_address: str, now_ms: int) -> bool: ...

    # ---- actions ----

    def enqueue_action(self, draft: ActionDraft, *, now_ms: int) -> Tuple[int, bool]:
        """Insert a pending action. Returns (id, deduped)."""
        ...

    def get_action(self, action_id: int) -> Optional[ActionRecord]: ...

    def update_action(
        self,
        action_id: int,
        *,
        expect_statuses: Sequence[str],
        status: str,
        attempt_count: int,
        last_error: Optional[str],
        next_attempt_ms: Optional[int],
        now_ms: int,
    ) -> bool:
        """Compare-and-set on status. False when the row is missing or moved on."""
        ...

    def list_ready_actions(self, *, now_ms: int, limit: int) -> List[ActionRecord]: ...

    # ---- join requests ----

    def upsert_watching(
        self,
        *,
        vault_address: str,
        group_id: str,
        wallet: str,
        reason: str,
        now_ms: int,
        next_check_ms: int,
    ) -> JoinRequestRecord: ...

    def get_join_request(self, request_id: int) -> Optional[JoinRequestRecord]: ...

    def latest_join_request(self, vault_address: str, wallet: str) -> Optional[JoinRequestRecord]: ...

    def update_join_request(
        self,
        request_id: int,
        changes: Json,
        *,
        expect_statuses: Sequence[str],
        now_ms: int,
    ) -> bool: ...

    def list_join_requests(
        self,
        *,
        status: str,
        limit: int,
        due_before_ms: Optional[int] = None,
    ) -> List[JoinRequestRecord]: ...

    def cancel_join_requests(self, vault_address: str, wallet: str, *, now_ms: int) -> int: ...


def check_join_changes(changes: Json) -> None:
    bad = [k for k in changes.keys() if k not in JOIN_REQUEST_MUTABLE]
    if bad:
        raise ValueError(f"join request columns are not mutable: {sorted(bad)}")
    st = changes.get("status")
    if st is not None and st not in JOIN_STATUSES:
        raise ValueError(f"unknown join request status: {st!r}")
