from __future__ import annotations

import copy
import threading
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Tuple

from vaultgate.gate.errors import InvalidConfig
from vaultgate.gate.vault_config import compute_config_hash
from vaultgate.store.store import (
    OPEN_ACTION_STATUSES,
    REWATCHABLE_JOIN_STATUSES,
    CANCELLABLE_JOIN_STATUSES,
    ActionDraft,
    ActionRecord,
    AuditDraft,
    AuditEntry,
    JoinRequestRecord,
    Json,
    NonceRecord,
    StoredVault,
    VaultMutator,
    check_join_changes,
)


class InMemoryGateStore:
    """
    In-process GateStore used for unit tests and embedding.

    - No durability
    - One re-entrant lock makes every method atomic, mirroring one SQLite
      write transaction per call
    - Records are immutable; updates replace them
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._vaults: Dict[str, StoredVault] = {}
        self._audit: List[AuditEntry] = []
        self._nonces: Dict[str, NonceRecord] = {}
        self._actions: Dict[int, ActionRecord] = {}
        self._join: Dict[int, JoinRequestRecord] = {}
        self._next_action_id = 1
        self._next_join_id = 1

    # ---- vaults + audit ----

    def get_vault(self, vault_address: str) -> Optional[StoredVault]:
        with self._lock:
            v = self._vaults.get(vault_address.lower())
            return None if v is None else replace(v, config=copy.deepcopy(v.config))

    def get_vault_by_group(self, group_id: str) -> Optional[StoredVault]:
        with self._lock:
            for v in self._vaults.values():
                if v.group_id == group_id:
                    return replace(v, config=copy.deepcopy(v.config))
            return None

    def save_vault(self, vault: StoredVault, *, audit: AuditDraft) -> StoredVault:
        with self._lock:
            for other in self._vaults.values():
                if other.group_id == vault.group_id and other.vault_address != vault.vault_address:
                    raise InvalidConfig(
                        "group_already_bound",
                        {"group_id": vault.group_id, "vault_address": other.vault_address},
                    )
            prev = self._vaults.get(vault.vault_address)
            stored = replace(
                vault,
                config=copy.deepcopy(vault.config),
                created_ms=prev.created_ms if prev is not None else vault.created_ms,
            )
            self._vaults[vault.vault_address] = stored
            self._append_audit_locked(audit, vault.updated_ms)
            return stored

    def update_vault_config(
        self, vault_address: str, mut: VaultMutator, *, audit: AuditDraft, now_ms: int
    ) -> Optional[StoredVault]:
        with self._lock:
            cur = self._vaults.get(vault_address.lower())
            if cur is None:
                return None
            new_blob = mut(copy.deepcopy(cur.config))
            if new_blob is not None:
                cur = replace(cur, config=new_blob, config_hash=compute_config_hash(new_blob), updated_ms=now_ms)
                self._vaults[cur.vault_address] = cur
            self._append_audit_locked(audit, now_ms)
            return replace(cur, config=copy.deepcopy(cur.config))

    def append_audit(self, entry: AuditDraft, *, now_ms: int) -> int:
        with self._lock:
            return self._append_audit_locked(entry, now_ms)

    def _append_audit_locked(self, entry: AuditDraft, now_ms: int) -> int:
        row = AuditEntry(
            id=len(self._audit) + 1,
            vault_address=entry.vault_address.lower(),
            actor_wallet=entry.actor_wallet.lower() if entry.actor_wallet else None,
            event_type=entry.event_type,
            details=copy.deepcopy(dict(entry.details or {})),
            created_ms=now_ms,
        )
        self._audit.append(row)
        return row.id

    def list_audit(self, vault_address: str, *, limit: int) -> List[AuditEntry]:
        with self._lock:
            rows = [a for a in self._audit if a.vault_address == vault_address.lower()]
            return list(reversed(rows))[: max(0, int(limit))]

    # ---- nonces ----

    def issue_nonce(self, candidate: NonceRecord, *, now_ms: int) -> NonceRecord:
        with self._lock:
            open_rows = [
                n
                for n in self._nonces.values()
                if n.purpose == candidate.purpose
                and n.wallet == candidate.wallet
                and n.vault_address == candidate.vault_address
                and n.used_ms is None
                and n.expires_ms >= now_ms
            ]
            if open_rows:
                return max(open_rows, key=lambda n: n.issued_ms)
            self._nonces[candidate.nonce] = candidate
            return candidate

    def consume_nonce(self, *, nonce: str, purpose: str, wallet: str, vault_address: str, now_ms: int) -> bool:
        with self._lock:
            n = self._nonces.get(nonce)
            if (
                n is None
                or n.purpose != purpose
                or n.wallet != wallet
                or n.vault_address != vault_address
                or n.used_ms is not None
                or n.expires_ms < now_ms
            ):
                return False
            self._nonces[nonce] = replace(n, used_ms=now_ms)
            return True

    # ---- actions ----

    def enqueue_action(self, draft: ActionDraft, *, now_ms: int) -> Tuple[int, bool]:
        with self._lock:
            if draft.dedupe_key:
                for a in self._actions.values():
                    if a.dedupe_key == draft.dedupe_key and a.status in OPEN_ACTION_STATUSES:
                        return a.id, True

            aid = self._next_action_id
            self._next_action_id += 1
            self._actions[aid] = ActionRecord(
                id=aid,
                vault_address=draft.vault_address,
                group_id=draft.group_id,
                action_type=draft.action_type,
                payload=copy.deepcopy(draft.payload),
                dedupe_key=draft.dedupe_key,
                status="pending",
                attempt_count=0,
                last_error=None,
                next_attempt_ms=None,
                created_ms=now_ms,
                updated_ms=now_ms,
            )
            return aid, False

    def get_action(self, action_id: int) -> Optional[ActionRecord]:
        with self._lock:
            return self._actions.get(int(action_id))

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
        with self._lock:
            a = self._actions.get(int(action_id))
            if a is None or a.status not in expect_statuses:
                return False
            self._actions[a.id] = replace(
                a,
                status=status,
                attempt_count=int(attempt_count),
                last_error=last_error,
                next_attempt_ms=next_attempt_ms,
                updated_ms=now_ms,
            )
            return True

    def list_ready_actions(self, *, now_ms: int, limit: int) -> List[ActionRecord]:
        with self._lock:
            ready = [
                a
                for a in sorted(self._actions.values(), key=lambda r: r.id)
                if a.status == "pending" or (a.status == "retry" and (a.next_attempt_ms or 0) <= now_ms)
            ]
            return ready[: max(0, int(limit))]

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
    ) -> JoinRequestRecord:
        with self._lock:
            touched: Optional[JoinRequestRecord] = None
            for r in list(self._join.values()):
                if r.vault_address == vault_address and r.wallet == wallet and r.status in REWATCHABLE_JOIN_STATUSES:
                    r = replace(
                        r,
                        status="watching",
                        group_id=group_id,
                        last_reason=reason,
                        last_checked_ms=now_ms,
                        next_check_ms=next_check_ms,
                        updated_ms=now_ms,
                    )
                    self._join[r.id] = r
                    touched = r

            if touched is not None:
                return touched

            rid = self._next_join_id
            self._next_join_id += 1
            row = JoinRequestRecord(
                id=rid,
                vault_address=vault_address,
                group_id=group_id,
                wallet=wallet,
                status="watching",
                last_reason=reason,
                last_checked_ms=now_ms,
                next_check_ms=next_check_ms,
                action_id=None,
                created_ms=now_ms,
                updated_ms=now_ms,
            )
            self._join[rid] = row
            return row

    def get_join_request(self, request_id: int) -> Optional[JoinRequestRecord]:
        with self._lock:
            return self._join.get(int(request_id))

    def latest_join_request(self, vault_address: str, wallet: str) -> Optional[JoinRequestRecord]:
        with self._lock:
            rows = [r for r in self._join.values() if r.vault_address == vault_address and r.wallet == wallet]
            if not rows:
                return None
            return max(rows, key=lambda r: (r.updated_ms, r.id))

    def update_join_request(
        self,
        request_id: int,
        changes: Json,
        *,
        expect_statuses: Sequence[str],
        now_ms: int,
    ) -> bool:
        check_join_changes(changes)
        with self._lock:
            r = self._join.get(int(request_id))
            if r is None or r.status not in expect_statuses:
                return False
            self._join[r.id] = replace(r, updated_ms=now_ms, **changes)
            return True

    def list_join_requests(
        self,
        *,
        status: str,
        limit: int,
        due_before_ms: Optional[int] = None,
    ) -> List[JoinRequestRecord]:
        with self._lock:
            rows = [r for r in self._join.values() if r.status == status]
            if due_before_ms is not None:
                rows = [r for r in rows if r.next_check_ms is None or r.next_check_ms <= due_before_ms]
            rows.sort(key=lambda r: (r.next_check_ms or 0, r.id))
            return rows[: max(0, int(limit))]

    def cancel_join_requests(self, vault_address: str, wallet: str, *, now_ms: int) -> int:
        with self._lock:
            n = 0
            for r in list(self._join.values()):
                if r.vault_address == vault_address and r.wallet == wallet and r.status in CANCELLABLE_JOIN_STATUSES:
                    self._join[r.id] = replace(r, status="cancelled", last_reason="cancelled", updated_ms=now_ms)
                    n += 1
            return n
