# src/vaultgate/runtime/sqlite_db.py
from __future__ import annotations

import json
import os
import random
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator

Json = Dict[str, Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _canon_json(obj: Any) -> str:
    """Canonical JSON encoding.

    Used for config hashes and persisted payloads, so it must stay stable.
    """
    # Do not coerce unknown types (e.g. default=str): a config hash built from
    # a silently stringified value would not be reproducible.
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _env_int(name: str, default: int) -> int:
    try:
        raw = str(os.environ.get(name, "")).strip()
        return int(raw) if raw else int(default)
    except ValueError:
        return int(default)


class SqliteDB:
    """SQLite manager for the gate runtime.

    Design goals:
      - single durable DB file for vaults, nonces, actions, join requests, audit
      - cross-process safe (SQLite locks)
      - cross-thread safe by never sharing connections

    SQLite allows only one writer at a time. Under multi-process workloads
    BEGIN IMMEDIATE can transiently fail with "database is locked", so
    write_tx() retries with bounded backoff.
    """

    SCHEMA_VERSION = 1

    def __init__(self, *, path: str) -> None:
        self.path = str(path)

    @staticmethod
    def _sqlite_synchronous_pragma() -> str:
        """Return a safe PRAGMA synchronous value.

        Defaults:
          - prod        -> FULL
          - dev/testnet -> NORMAL

        Override with VAULTGATE_SQLITE_SYNCHRONOUS in {OFF,NORMAL,FULL,EXTRA}.
        """
        mode = (os.environ.get("VAULTGATE_MODE") or "prod").strip().lower()
        default = "FULL" if mode == "prod" else "NORMAL"
        raw = (os.environ.get("VAULTGATE_SQLITE_SYNCHRONOUS") or default).strip().upper()

        if raw not in {"OFF", "NORMAL", "FULL", "EXTRA"}:
            raw = default
        return raw

    def ensure_parent_dir(self) -> None:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        self.ensure_parent_dir()

        connect_timeout_s = float(_env_int("VAULTGATE_SQLITE_CONNECT_TIMEOUT_MS", 30_000)) / 1000.0

        con = sqlite3.connect(
            self.path,
            timeout=connect_timeout_s,
            isolation_level=None,  # BEGIN/COMMIT are issued explicitly
            check_same_thread=False,
        )
        con.row_factory = sqlite3.Row

        # Pragmas are per-connection so reads and writes behave the same.
        allow_non_wal = (os.environ.get("VAULTGATE_SQLITE_ALLOW_NON_WAL") or "").strip() in {"1", "true", "TRUE"}
        row = con.execute("PRAGMA journal_mode=WAL;").fetchone()
        journal = str(row[0]).strip().lower() if row is not None else ""
        if journal and journal != "wal" and not allow_non_wal:
            con.close()
            raise RuntimeError(f"sqlite journal_mode is '{journal}', expected 'wal'")

        con.execute(f"PRAGMA synchronous={self._sqlite_synchronous_pragma()};")
        con.execute("PRAGMA foreign_keys=ON;")
        con.execute("PRAGMA temp_store=MEMORY;")

        wal_ckpt = max(1, _env_int("VAULTGATE_SQLITE_WAL_AUTOCHECKPOINT", 1000))
        con.execute(f"PRAGMA wal_autocheckpoint={wal_ckpt};")

        jsl = max(0, _env_int("VAULTGATE_SQLITE_JOURNAL_SIZE_LIMIT", 64 * 1024 * 1024))
        con.execute(f"PRAGMA journal_size_limit={jsl};")

        # Negative means KiB.
        cache_kib = max(0, _env_int("VAULTGATE_SQLITE_CACHE_SIZE_KIB", 16 * 1024))
        con.execute(f"PRAGMA cache_size={-cache_kib};")

        busy_ms = max(0, _env_int("VAULTGATE_SQLITE_BUSY_TIMEOUT_MS", int(connect_timeout_s * 1000)))
        con.execute(f"PRAGMA busy_timeout={busy_ms};")

        return con

    def init_schema(self) -> None:
        with self.write_tx() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS vaults (
                  vault_address TEXT PRIMARY KEY,
                  chain_id INTEGER NOT NULL,
                  group_id TEXT NOT NULL,
                  config_json TEXT NOT NULL,
                  config_hash TEXT NOT NULL,
                  created_ms INTEGER NOT NULL,
                  updated_ms INTEGER NOT NULL
                );
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_vaults_group ON vaults(group_id);")

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS nonces (
                  nonce TEXT PRIMARY KEY,
                  purpose TEXT NOT NULL,
                  wallet TEXT NOT NULL,
                  vault_address TEXT NOT NULL,
                  issued_ms INTEGER NOT NULL,
                  expires_ms INTEGER NOT NULL,
                  used_ms INTEGER
                );
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_nonces_owner ON nonces(wallet, vault_address, purpose);")

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS actions (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  vault_address TEXT NOT NULL,
                  group_id TEXT NOT NULL,
                  action_type TEXT NOT NULL,
                  payload_json TEXT NOT NULL,
                  dedupe_key TEXT,
                  status TEXT NOT NULL,
                  attempt_count INTEGER NOT NULL DEFAULT 0,
                  last_error TEXT,
                  next_attempt_ms INTEGER,
                  created_ms INTEGER NOT NULL,
                  updated_ms INTEGER NOT NULL
                );
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_actions_ready ON actions(status, next_attempt_ms);")
            con.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS uq_actions_open_dedupe
                ON actions(dedupe_key)
                WHERE dedupe_key IS NOT NULL AND status IN ('pending','retry','executing');
                """
            )

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS join_requests (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  vault_address TEXT NOT NULL,
                  group_id TEXT NOT NULL,
                  wallet TEXT NOT NULL,
                  status TEXT NOT NULL,
                  last_reason TEXT,
                  last_checked_ms INTEGER,
                  next_check_ms INTEGER,
                  action_id INTEGER,
                  created_ms INTEGER NOT NULL,
                  updated_ms INTEGER NOT NULL
                );
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_join_requests_owner ON join_requests(vault_address, wallet);")
            con.execute("CREATE INDEX IF NOT EXISTS idx_join_requests_due ON join_requests(status, next_check_ms);")

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  vault_address TEXT NOT NULL,
                  actor_wallet TEXT,
                  event_type TEXT NOT NULL,
                  details_json TEXT NOT NULL,
                  created_ms INTEGER NOT NULL
                );
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_audit_vault ON audit_log(vault_address, id);")

            row = con.execute("SELECT value FROM meta WHERE key='schema_version' LIMIT 1;").fetchone()
            if row is None:
                con.execute("INSERT INTO meta(key, value) VALUES('schema_version', ?);", (str(self.SCHEMA_VERSION),))
            else:
                try:
                    v = int(str(row["value"]))
                except ValueError:
                    v = 0
                if v != self.SCHEMA_VERSION:
                    raise RuntimeError(
                        f"sqlite schema_version mismatch: have={v} want={self.SCHEMA_VERSION}. "
                        "Refuse to start to avoid corrupting data."
                    )

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        con = self._connect()
        try:
            yield con
        finally:
            con.close()

    @staticmethod
    def _is_locked_error(e: Exception) -> bool:
        msg = str(e).lower()
        return ("database is locked" in msg) or ("database is busy" in msg)

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        """Open a write transaction with bounded retry on writer-lock contention.

        Policy:
          - retry BEGIN IMMEDIATE until a deadline
          - exponential backoff with jitter
          - then raise if the lock cannot be acquired within the deadline
        """
        deadline_ms = max(250, _env_int("VAULTGATE_SQLITE_WRITE_DEADLINE_MS", 30_000))
        deadline_ts = _now_ms() + deadline_ms

        base_sleep = max(0.001, float(_env_int("VAULTGATE_SQLITE_WRITE_BACKOFF_BASE_MS", 5)) / 1000.0)
        max_sleep = max(base_sleep, float(_env_int("VAULTGATE_SQLITE_WRITE_BACKOFF_MAX_MS", 250)) / 1000.0)

        def _backoff(attempt: int) -> None:
            sleep_s = min(max_sleep, base_sleep * (2.0 ** min(attempt, 8)))
            time.sleep(sleep_s * (0.5 + random.random()))

        with self.connection() as con:
            attempt = 0
            while True:
                try:
                    con.execute("BEGIN IMMEDIATE;")
                    break
                except sqlite3.OperationalError as e:
                    if not self._is_locked_error(e) or _now_ms() >= deadline_ts:
                        raise
                    _backoff(attempt)
                    attempt += 1

            try:
                yield con

                c_attempt = 0
                while True:
                    try:
                        con.execute("COMMIT;")
                        break
                    except sqlite3.OperationalError as e:
                        if not self._is_locked_error(e) or _now_ms() >= deadline_ts:
                            raise
                        _backoff(c_attempt)
                        c_attempt += 1
            except BaseException:
                if con.in_transaction:
                    con.execute("ROLLBACK;")
                raise
