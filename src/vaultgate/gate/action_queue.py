# src/vaultgate/gate/action_queue.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from vaultgate.gate.errors import ActionTransitionError
from vaultgate.runtime.log_events import log_event
from vaultgate.runtime.scoped_locks import ScopedLockTable
from vaultgate.store.store import ACTION_STATUSES, ActionDraft, ActionRecord, GateStore

Json = Dict[str, Any]

log = logging.getLogger("vaultgate.queue")

# status -> statuses it may move to
_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "executing": ("pending", "retry"),
    "executed": ("executing",),
    "failed": ("executing",),
    "retry": ("executing",),
}

RETRY_BASE_S = 10
RETRY_MAX_S = 810


def _now_ms() -> int:
    return int(time.time() * 1000)


def retry_delay_s(attempt_count: int) -> int:
    """10s, 30s, 90s, 270s, then 810s for every later attempt."""
    n = max(0, int(attempt_count))
    if n >= 6:
        return RETRY_MAX_S
    return min(RETRY_MAX_S, max(RETRY_BASE_S, RETRY_BASE_S * (3 ** n)))


@dataclass(frozen=True, slots=True)
class EnqueueResult:
    id: int
    deduped: bool


class ActionQueue:
    """Durable queue of side-effect intents for the external runtime.

    With a dedupe key at most one action per key is open (pending, retry or
    executing). Concurrent enqueues of one key serialize on a scoped lock
    in-process; the store enforces the same rule across processes.
    """

    def __init__(
        self,
        *,
        store: GateStore,
        locks: Optional[ScopedLockTable] = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self._locks = locks or ScopedLockTable()
        self._clock = clock

    def enqueue(
        self,
        vault_address: str,
        group_id: str,
        action: Json,
        *,
        action_type: Optional[str] = None,
        dedupe_key: Optional[str] = None,
    ) -> EnqueueResult:
        kind = str(action_type or action.get("action") or "").strip()
        if not kind:
            raise ValueError("action_type is required (or action['action'])")

        draft = ActionDraft(
            vault_address=str(vault_address).lower(),
            group_id=str(group_id),
            action_type=kind,
            payload=dict(action),
            dedupe_key=str(dedupe_key) if dedupe_key else None,
        )

        if draft.dedupe_key is None:
            aid, deduped = self._store.enqueue_action(draft, now_ms=self._clock())
        else:
            with self._locks.hold(draft.dedupe_key):
                aid, deduped = self._store.enqueue_action(draft, now_ms=self._clock())

        log_event(
            log,
            "action_enqueued",
            action_id=aid,
            action_type=kind,
            vault=draft.vault_address,
            deduped=deduped,
            dedupe_key=draft.dedupe_key,
        )
        return EnqueueResult(id=aid, deduped=deduped)

    def get(self, action_id: int) -> Optional[ActionRecord]:
        return self._store.get_action(int(action_id))

    def mark_status(self, action_id: int, status: str, error: Optional[str] = None) -> ActionRecord:
        """Move an action along its lifecycle.

        pending|retry -> executing; executing -> executed|failed|retry.
        Entering `retry` counts an attempt and schedules the next one.
        """
        if status not in ACTION_STATUSES or status not in _TRANSITIONS:
            raise ActionTransitionError("unknown_target_status", {"status": status})

        cur = self._store.get_action(int(action_id))
        if cur is None:
            raise ActionTransitionError("action_not_found", {"action_id": action_id})

        allowed_from = _TRANSITIONS[status]
        if cur.status not in allowed_from:
            raise ActionTransitionError(
                "transition_not_allowed",
                {"action_id": cur.id, "from": cur.status, "to": status},
            )

        now = self._clock()
        attempt_count = cur.attempt_count
        next_attempt_ms: Optional[int] = None
        last_error = cur.last_error
        if status == "retry":
            next_attempt_ms = now + retry_delay_s(attempt_count) * 1000
            attempt_count += 1
        if status in ("retry", "failed"):
            last_error = (str(error) if error else "unknown_error")[:1000]
        elif status == "executed":
            last_error = None

        ok = self._store.update_action(
            cur.id,
            expect_statuses=(cur.status,),
            status=status,
            attempt_count=attempt_count,
            last_error=last_error,
            next_attempt_ms=next_attempt_ms,
            now_ms=now,
        )
        if not ok:
            raise ActionTransitionError("concurrent_update", {"action_id": cur.id, "to": status})

        log_event(log, "action_status", action_id=cur.id, status=status, attempt_count=attempt_count)
        out = self._store.get_action(cur.id)
        if out is None:
            raise ActionTransitionError("action_not_found", {"action_id": cur.id})
        return out

    def list_ready(self, limit: int = 50) -> List[ActionRecord]:
        return self._store.list_ready_actions(now_ms=self._clock(), limit=max(1, int(limit)))
