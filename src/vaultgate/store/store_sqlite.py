# src/vaultgate/store/store_sqlite.py
from __future__ import annotations

import json
import sqlite3
from typing import Any, List, Optional, Sequence, Tuple

from vaultgate.gate.errors import InvalidConfig
from vaultgate.gate.vault_config import compute_config_hash
from vaultgate.runtime.sqlite_db import SqliteDB, _canon_json
from vaultgate.store.store import (
    CANCELLABLE_JOIN_STATUSES,
    OPEN_ACTION_STATUSES,
    REWATCHABLE_JOIN_STATUSES,
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

# Attempts at a dedupe-aware insert before giving up on a conflicting writer.
_ENQUEUE_CONFLICT_RETRIES = 5


def _placeholders(values: Sequence[Any]) -> str:
    return ",".join("?" for _ in values)


def _opt_int(v: Any) -> Optional[int]:
    return None if v is None else int(v)


def _load_obj(raw: Any) -> Json:
    obj = json.loads(str(raw or "{}"))
    if not isinstance(obj, dict):
        raise ValueError("stored JSON is not an object")
    return obj


def _vault_from_row(row: sqlite3.Row) -> StoredVault:
    return StoredVault(
        vault_address=str(row["vault_address"]),
        chain_id=int(row["chain_id"]),
        group_id=str(row["group_id"]),
        config=_load_obj(row["config_json"]),
        config_hash=str(row["config_hash"]),
        created_ms=int(row["created_ms"]),
        updated_ms=int(row["updated_ms"]),
    )


def _action_from_row(row: sqlite3.Row) -> ActionRecord:
    return ActionRecord(
        id=int(row["id"]),
        vault_address=str(row["vault_address"]),
        group_id=str(row["group_id"]),
        action_type=str(row["action_type"]),
        payload=_load_obj(row["payload_json"]),
        dedupe_key=row["dedupe_key"],
        status=str(row["status"]),
        attempt_count=int(row["attempt_count"]),
        last_error=row["last_error"],
        next_attempt_ms=_opt_int(row["next_attempt_ms"]),
        created_ms=int(row["created_ms"]),
        updated_ms=int(row["updated_ms"]),
    )


def _join_from_row(row: sqlite3.Row) -> JoinRequestRecord:
    return JoinRequestRecord(
        id=int(row["id"]),
        vault_address=str(row["vault_address"]),
        group_id=str(row["group_id"]),
        wallet=str(row["wallet"]),
        status=str(row["status"]),
        last_reason=row["last_reason"],
        last_checked_ms=_opt_int(row["last_checked_ms"]),
        next_check_ms=_opt_int(row["next_check_ms"]),
        action_id=_opt_int(row["action_id"]),
        created_ms=int(row["created_ms"]),
        updated_ms=int(row["updated_ms"]),
    )


def _nonce_from_row(row: sqlite3.Row) -> NonceRecord:
    return NonceRecord(
        nonce=str(row["nonce"]),
        purpose=str(row["purpose"]),
        wallet=str(row["wallet"]),
        vault_address=str(row["vault_address"]),
        issued_ms=int(row["issued_ms"]),
        expires_ms=int(row["expires_ms"]),
        used_ms=_opt_int(row["used_ms"]),
    )


class SqliteGateStore:
    """GateStore persisted in one SQLite file.

    Every method runs in its own connection; mutating methods run inside a
    single write_tx() so multi-statement units commit or roll back together.
    Safe to share one DB file between threads and processes.
    """

    def __init__(self, *, db: SqliteDB) -> None:
        self._db = db
        self._db.init_schema()

    # ---- vaults + audit ----

    def get_vault(self, vault_address: str) -> Optional[StoredVault]:
        with self._db.connection() as con:
            row = con.execute(
                "SELECT * FROM vaults WHERE vault_address=? LIMIT 1;", (vault_address.lower(),)
            ).fetchone()
            return _vault_from_row(row) if row is not None else None

    def get_vault_by_group(self, group_id: str) -> Optional[StoredVault]:
        with self._db.connection() as con:
            row = con.execute(
                "SELECT * FROM vaults WHERE group_id=? ORDER BY updated_ms DESC LIMIT 1;", (str(group_id),)
            ).fetchone()
            return _vault_from_row(row) if row is not None else None

    def save_vault(self, vault: StoredVault, *, audit: AuditDraft) -> StoredVault:
        with self._db.write_tx() as con:
            bound = con.execute(
                "SELECT vault_address FROM vaults WHERE group_id=? AND vault_address<>? LIMIT 1;",
                (vault.group_id, vault.vault_address),
            ).fetchone()
            if bound is not None:
                raise InvalidConfig(
                    "group_already_bound",
                    {"group_id": vault.group_id, "vault_address": str(bound["vault_address"])},
                )
            con.execute(
                """
                INSERT INTO vaults(vault_address, chain_id, group_id, config_json, config_hash, created_ms, updated_ms)
                VALUES(?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(vault_address) DO UPDATE SET
                  chain_id=excluded.chain_id,
                  group_id=excluded.group_id,
                  config_json=excluded.config_json,
                  config_hash=excluded.config_hash,
                  updated_ms=excluded.updated_ms;
                """,
                (
                    vault.vault_address,
                    int(vault.chain_id),
                    vault.group_id,
                    _canon_json(vault.config),
                    vault.config_hash,
                    int(vault.created_ms),
                    int(vault.updated_ms),
                ),
            )
            self._insert_audit(con, audit, int(vault.updated_ms))
            row = con.execute("SELECT * FROM vaults WHERE vault_address=?;", (vault.vault_address,)).fetchone()
            return _vault_from_row(row)

    def update_vault_config(
        self, vault_address: str, mut: VaultMutator, *, audit: AuditDraft, now_ms: int
    ) -> Optional[StoredVault]:
        va = vault_address.lower()
        with self._db.write_tx() as con:
            row = con.execute("SELECT * FROM vaults WHERE vault_address=?;", (va,)).fetchone()
            if row is None:
                return None
            cur = _vault_from_row(row)
            new_blob = mut(cur.config)
            if new_blob is not None:
                con.execute(
                    "UPDATE vaults SET config_json=?, config_hash=?, updated_ms=? WHERE vault_address=?;",
                    (_canon_json(new_blob), compute_config_hash(new_blob), int(now_ms), va),
                )
            self._insert_audit(con, audit, now_ms)
            row = con.execute("SELECT * FROM vaults WHERE vault_address=?;", (va,)).fetchone()
            return _vault_from_row(row)

    @staticmethod
    def _insert_audit(con: sqlite3.Connection, entry: AuditDraft, now_ms: int) -> int:
        cur = con.execute(
            """
            INSERT INTO audit_log(vault_address, actor_wallet, event_type, details_json, created_ms)
            VALUES(?, ?, ?, ?, ?);
            """,
            (
                entry.vault_address.lower(),
                entry.actor_wallet.lower() if entry.actor_wallet else None,
                entry.event_type,
                _canon_json(dict(entry.details or {})),
                int(now_ms),
            ),
        )
        return int(cur.lastrowid)

    def append_audit(self, entry: AuditDraft, *, now_ms: int) -> int:
        with self._db.write_tx() as con:
            return self._insert_audit(con, entry, now_ms)

    def list_audit(self, vault_address: str, *, limit: int) -> List[AuditEntry]:
        with self._db.connection() as con:
            rows = con.execute(
                "SELECT * FROM audit_log WHERE vault_address=? ORDER BY id DESC LIMIT ?;",
                (vault_address.lower(), max(0, int(limit))),
            ).fetchall()
        return [
            AuditEntry(
                id=int(r["id"]),
                vault_address=str(r["vault_address"]),
                actor_wallet=r["actor_wallet"],
                event_type=str(r["event_type"]),
                details=_load_obj(r["details_json"]),
                created_ms=int(r["created_ms"]),
            )
            for r in rows
        ]

    # ---- nonces ----

    def issue_nonce(self, candidate: NonceRecord, *, now_ms: int) -> NonceRecord:
        with self._db.write_tx() as con:
            row = con.execute(
                """
                SELECT * FROM nonces
                WHERE purpose=? AND wallet=? AND vault_address=? AND used_ms IS NULL AND expires_ms>=?
                ORDER BY issued_ms DESC
                LIMIT 1;
                """,
                (candidate.purpose, candidate.wallet, candidate.vault_address, int(now_ms)),
            ).fetchone()
            if row is not None:
                return _nonce_from_row(row)
            con.execute(
                """
                INSERT INTO nonces(nonce, purpose, wallet, vault_address, issued_ms, expires_ms, used_ms)
                VALUES(?, ?, ?, ?, ?, ?, NULL);
                """,
                (
                    candidate.nonce,
                    candidate.purpose,
                    candidate.wallet,
                    candidate.vault_address,
                    int(candidate.issued_ms),
                    int(candidate.expires_ms),
                ),
            )
            return candidate

    def consume_nonce(self, *, nonce: str, purpose: str, wallet: str, vault_address: str, now_ms: int) -> bool:
        with self._db.write_tx() as con:
            cur = con.execute(
                """
                UPDATE nonces SET used_ms=?
                WHERE nonce=? AND purpose=? AND wallet=? AND vault_address=?
                  AND used_ms IS NULL AND expires_ms>=?;
                """,
                (int(now_ms), nonce, purpose, wallet, vault_address, int(now_ms)),
            )
            return cur.rowcount == 1

    # ---- actions ----

    def enqueue_action(self, draft: ActionDraft, *, now_ms: int) -> Tuple[int, bool]:
        attempt = 0
        while True:
            try:
                return self._enqueue_once(draft, now_ms)
            except sqlite3.IntegrityError:
                # Another writer inserted the same open dedupe key between our
                # read and insert; the next pass will find its row.
                attempt += 1
                if not draft.dedupe_key or attempt >= _ENQUEUE_CONFLICT_RETRIES:
                    raise

    def _enqueue_once(self, draft: ActionDraft, now_ms: int) -> Tuple[int, bool]:
        with self._db.write_tx() as con:
            if draft.dedupe_key:
                row = con.execute(
                    f"""
                    SELECT id FROM actions
                    WHERE dedupe_key=? AND status IN ({_placeholders(OPEN_ACTION_STATUSES)})
                    ORDER BY id DESC
                    LIMIT 1;
                    """,
                    (draft.dedupe_key, *OPEN_ACTION_STATUSES),
                ).fetchone()
                if row is not None:
                    return int(row["id"]), True

            cur = con.execute(
                """
                INSERT INTO actions(
                  vault_address, group_id, action_type, payload_json, dedupe_key,
                  status, attempt_count, last_error, next_attempt_ms, created_ms, updated_ms
                )
                VALUES(?, ?, ?, ?, ?, 'pending', 0, NULL, NULL, ?, ?);
                """,
                (
                    draft.vault_address,
                    draft.group_id,
                    draft.action_type,
                    _canon_json(draft.payload),
                    draft.dedupe_key,
                    int(now_ms),
                    int(now_ms),
                ),
            )
            return int(cur.lastrowid), False

    def get_action(self, action_id: int) -> Optional[ActionRecord]:
        with self._db.connection() as con:
            row = con.execute("SELECT * FROM actions WHERE id=?;", (int(action_id),)).fetchone()
            return _action_from_row(row) if row is not None else None

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
        statuses = tuple(expect_statuses)
        with self._db.write_tx() as con:
            cur = con.execute(
                f"""
                UPDATE actions
                SET status=?, attempt_count=?, last_error=?, next_attempt_ms=?, updated_ms=?
                WHERE id=? AND status IN ({_placeholders(statuses)});
                """,
                (status, int(attempt_count), last_error, next_attempt_ms, int(now_ms), int(action_id), *statuses),
            )
            return cur.rowcount == 1

    def list_ready_actions(self, *, now_ms: int, limit: int) -> List[ActionRecord]:
        with self._db.connection() as con:
            rows = con.execute(
                """
                SELECT * FROM actions
                WHERE status='pending'
                   OR (status='retry' AND COALESCE(next_attempt_ms, 0)<=?)
                ORDER BY id ASC
                LIMIT ?;
                """,
                (int(now_ms), max(0, int(limit))),
            ).fetchall()
        return [_action_from_row(r) for r in rows]

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
        with self._db.write_tx() as con:
            con.execute(
                f"""
                UPDATE join_requests
                SET status='watching', group_id=?, last_reason=?, last_checked_ms=?, next_check_ms=?, updated_ms=?
                WHERE vault_address=? AND wallet=? AND status IN ({_placeholders(REWATCHABLE_JOIN_STATUSES)});
                """,
                (group_id, reason, int(now_ms), int(next_check_ms), int(now_ms), vault_address, wallet, *REWATCHABLE_JOIN_STATUSES),
            )
            con.execute(
                """
                INSERT INTO join_requests(
                  vault_address, group_id, wallet, status, last_reason,
                  last_checked_ms, next_check_ms, action_id, created_ms, updated_ms
                )
                SELECT ?, ?, ?, 'watching', ?, ?, ?, NULL, ?, ?
                WHERE NOT EXISTS (
                  SELECT 1 FROM join_requests
                  WHERE vault_address=? AND wallet=? AND status='watching'
                );
                """,
                (
                    vault_address,
                    group_id,
                    wallet,
                    reason,
                    int(now_ms),
                    int(next_check_ms),
                    int(now_ms),
                    int(now_ms),
                    vault_address,
                    wallet,
                ),
            )
            row = con.execute(
                """
                SELECT * FROM join_requests
                WHERE vault_address=? AND wallet=? AND status='watching'
                ORDER BY updated_ms DESC, id DESC
                LIMIT 1;
                """,
                (vault_address, wallet),
            ).fetchone()
            return _join_from_row(row)

    def get_join_request(self, request_id: int) -> Optional[JoinRequestRecord]:
        with self._db.connection() as con:
            row = con.execute("SELECT * FROM join_requests WHERE id=?;", (int(request_id),)).fetchone()
            return _join_from_row(row) if row is not None else None

    def latest_join_request(self, vault_address: str, wallet: str) -> Optional[JoinRequestRecord]:
        with self._db.connection() as con:
            row = con.execute(
                """
                SELECT * FROM join_requests
                WHERE vault_address=? AND wallet=?
                ORDER BY updated_ms DESC, id DESC
                LIMIT 1;
                """,
                (vault_address, wallet),
            ).fetchone()
            return _join_from_row(row) if row is not None else None

    def update_join_request(
        self,
        request_id: int,
        changes: Json,
        *,
        expect_statuses: Sequence[str],
        now_ms: int,
    ) -> bool:
        check_join_changes(changes)
        cols = sorted(changes.keys())
        statuses = tuple(expect_statuses)
        assignments = "".join(f"{c}=?, " for c in cols)
        with self._db.write_tx() as con:
            cur = con.execute(
                f"""
                UPDATE join_requests
                SET {assignments}updated_ms=?
                WHERE id=? AND status IN ({_placeholders(statuses)});
                """,
                (*[changes[c] for c in cols], int(now_ms), int(request_id), *statuses),
            )
            return cur.rowcount == 1

    def list_join_requests(
        self,
        *,
        status: str,
        limit: int,
        due_before_ms: Optional[int] = None,
    ) -> List[JoinRequestRecord]:
        sql = "SELECT * FROM join_requests WHERE status=?"
        params: List[Any] = [status]
        if due_before_ms is not None:
            sql += " AND (next_check_ms IS NULL OR next_check_ms<=?)"
            params.append(int(due_before_ms))
        sql += " ORDER BY COALESCE(next_check_ms, 0) ASC, id ASC LIMIT ?;"
        params.append(max(0, int(limit)))
        with self._db.connection() as con:
            rows = con.execute(sql, params).fetchall()
        return [_join_from_row(r) for r in rows]

    def cancel_join_requests(self, vault_address: str, wallet: str, *, now_ms: int) -> int:
        with self._db.write_tx() as con:
            cur = con.execute(
                f"""
                UPDATE join_requests
                SET status='cancelled', last_reason='cancelled', updated_ms=?
                WHERE vault_address=? AND wallet=? AND status IN ({_placeholders(CANCELLABLE_JOIN_STATUSES)});
                """,
                (int(now_ms), vault_address, wallet, *CANCELLABLE_JOIN_STATUSES),
            )
            return int(cur.rowcount)
