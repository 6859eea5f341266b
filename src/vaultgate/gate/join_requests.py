# src/vaultgate/gate/join_requests.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from vaultgate.runtime.log_events import log_event
from vaultgate.store.store import ActionRecord, GateStore, JoinRequestRecord

Json = Dict[str, Any]

log = logging.getLogger("vaultgate.join")

DEFAULT_WATCH_INTERVAL_S = 2 * 60


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class JoinStatus:
    status: str  # none | watching | queued | added | failed | cancelled
    vault_address: str
    wallet: str
    request: Optional[JoinRequestRecord] = None
    action: Optional[ActionRecord] = None

    def to_json(self) -> Json:
        out: Json = {"status": self.status, "vault_address": self.vault_address, "wallet": self.wallet}
        if self.request is None:
            return out
        out.update(
            {
                "last_reason": self.request.last_reason,
                "last_checked_ms": self.request.last_checked_ms,
                "next_check_ms": self.request.next_check_ms,
                "updated_ms": self.request.updated_ms,
                "action": None,
            }
        )
        if self.request.action_id is not None:
            out["action"] = {
                "id": self.request.action_id,
                "status": self.action.status if self.action is not None else "unknown",
                "last_error": self.action.last_error if self.action is not None else None,
                "updated_ms": self.action.updated_ms if self.action is not None else None,
            }
        return out


class JoinRequestTracker:
    """Durable memory of wallets that tried to join and were not admitted yet.

    Upserts are written so an in-flight (queued) or finished (added) request
    is never pulled back into watching.
    """

    def __init__(
        self,
        *,
        store: GateStore,
        watch_interval_s: int = DEFAULT_WATCH_INTERVAL_S,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self._watch_interval_ms = int(watch_interval_s) * 1000
        self._clock = clock

    def enter_watching(self, vault_address: str, group_id: str, wallet: str, reason: str) -> JoinRequestRecord:
        now = self._clock()
        row = self._store.upsert_watching(
            vault_address=vault_address.lower(),
            group_id=str(group_id),
            wallet=wallet.lower(),
            reason=str(reason),
            now_ms=now,
            next_check_ms=now + self._watch_interval_ms,
        )
        log_event(log, "join_request_watching", request_id=row.id, vault=row.vault_address, wallet=row.wallet, reason=reason)
        return row

    def find_watching(self, vault_address: str, wallet: str) -> Optional[JoinRequestRecord]:
        row = self._store.latest_join_request(vault_address.lower(), wallet.lower())
        if row is None or row.status != "watching":
            return None
        return row

    def mark_queued(self, request_id: int, action_id: int) -> bool:
        now = self._clock()
        ok = self._store.update_join_request(
            request_id,
            {"status": "queued", "action_id": int(action_id), "last_reason": "eligible", "last_checked_ms": now},
            expect_statuses=("watching",),
            now_ms=now,
        )
        if ok:
            log_event(log, "join_request_queued", request_id=request_id, action_id=action_id)
        return ok

    def mark_checked(self, request_id: int, reason: str, delay_s: int) -> bool:
        now = self._clock()
        return self._store.update_join_request(
            request_id,
            {"last_reason": str(reason), "last_checked_ms": now, "next_check_ms": now + int(delay_s) * 1000},
            expect_statuses=("watching",),
            now_ms=now,
        )

    def mark_failed(self, request_id: int, reason: str) -> bool:
        now = self._clock()
        ok = self._store.update_join_request(
            request_id,
            {"status": "failed", "last_reason": str(reason), "last_checked_ms": now, "next_check_ms": None},
            expect_statuses=("watching", "queued"),
            now_ms=now,
        )
        if ok:
            log_event(log, "join_request_failed", request_id=request_id, reason=reason)
        return ok

    def cancel(self, vault_address: str, wallet: str) -> int:
        n = self._store.cancel_join_requests(vault_address.lower(), wallet.lower(), now_ms=self._clock())
        log_event(log, "join_request_cancelled", vault=vault_address.lower(), wallet=wallet.lower(), rows=n)
        return n

    def list_due(self, limit: int = 50) -> List[JoinRequestRecord]:
        return self._store.list_join_requests(status="watching", limit=max(1, int(limit)), due_before_ms=self._clock())

    def join_status(self, vault_address: str, wallet: str) -> JoinStatus:
        va = vault_address.lower()
        w = wallet.lower()
        row = self._store.latest_join_request(va, w)
        if row is None:
            return JoinStatus(status="none", vault_address=va, wallet=w)

        action = self._store.get_action(row.action_id) if row.action_id is not None else None
        # An executed add is reported as added even before reconciliation runs.
        status = "added" if action is not None and action.status == "executed" else row.status
        return JoinStatus(status=status, vault_address=va, wallet=w, request=row, action=action)

    def reconcile_actions(self, limit: int = 100) -> int:
        """Settle queued requests whose action finished. Returns rows changed."""
        changed = 0
        now = self._clock()
        for row in self._store.list_join_requests(status="queued", limit=max(1, int(limit))):
            if row.action_id is None:
                continue
            action = self._store.get_action(row.action_id)
            if action is None:
                continue
            if action.status == "executed":
                patch: Json = {"status": "added", "last_reason": "added"}
            elif action.status == "failed":
                patch = {"status": "failed", "last_reason": action.last_error or "action_failed"}
            else:
                continue
            if self._store.update_join_request(row.id, patch, expect_statuses=("queued",), now_ms=now):
                changed += 1
                log_event(log, "join_request_reconciled", request_id=row.id, status=patch["status"], action_id=action.id)
        return changed
