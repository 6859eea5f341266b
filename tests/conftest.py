from __future__ import annotations

import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

# Ensure local "src/" takes precedence over any globally-installed "vaultgate" package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

src_str = str(SRC)
if src_str not in sys.path:
    sys.path.insert(0, src_str)

from vaultgate.gate.eligibility import BalanceRead  # noqa: E402
from vaultgate.runtime.gate_config import GateConfig, default_gate_config  # noqa: E402

OWNER = "0x" + "11" * 20
ADMIN = "0x" + "22" * 20
MEMBER = "0x" + "33" * 20
VAULT = "0x" + "aa" * 20
SHARE_TOKEN = "0x" + "bb" * 20
CREATOR_COIN = "0x" + "cc" * 20

RPC_A = "https://rpc-a.example"
RPC_B = "https://rpc-b.example"
RPC_C = "https://rpc-c.example"


class FakeClock:
    """Manually advanced epoch-ms clock."""

    def __init__(self, now_ms: int = 1_750_000_000_000) -> None:
        self.now_ms = int(now_ms)

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)


class FakeBalanceSource:
    """Per-endpoint scripted balances. An Exception value makes that endpoint fail."""

    def __init__(self, default: Any = 0, *, block_number: int = 1000) -> None:
        self.default = default
        self.by_url: Dict[str, Any] = {}
        self.block_number = block_number
        self.calls: List[Tuple[str, str, str]] = []

    def set(self, rpc_url: str, value: Any) -> None:
        self.by_url[rpc_url] = value

    def read_balance(self, rpc_url: str, token: str, wallet: str) -> BalanceRead:
        self.calls.append((rpc_url, token, wallet))
        v = self.by_url.get(rpc_url, self.default)
        if isinstance(v, Exception):
            raise v
        return BalanceRead(balance=int(v), block_number=self.block_number)


def make_vault_doc(
    *,
    vault: str = VAULT,
    group_id: str = "group-1",
    chain_id: Any = 8453,
    enabled: bool = True,
    join_locked: bool = False,
    mode: str = "shares",
    min_shares: Any = "100",
    fail_closed: bool = True,
    share_token: Optional[str] = SHARE_TOKEN,
    admins: Optional[List[str]] = None,
) -> Dict[str, Any]:
    vault_obj: Dict[str, Any] = {
        "vaultAddress": vault,
        "creatorCoinAddress": CREATOR_COIN,
        "canonicalOwnerAddress": OWNER,
    }
    if share_token is not None:
        vault_obj["shareTokenAddress"] = share_token
    return {
        "version": 1,
        "chainId": chain_id,
        "vault": vault_obj,
        "group": {"groupId": group_id},
        "gating": {
            "enabled": enabled,
            "joinLocked": join_locked,
            "mode": mode,
            "thresholds": {"minShares": min_shares},
            "failClosed": fail_closed,
        },
        "roles": {"owner": OWNER, "admins": list(admins if admins is not None else [ADMIN]), "operators": []},
    }


def gate_config_for(tmp_path: Path, **overrides: Any) -> GateConfig:
    base = replace(
        default_gate_config(),
        mode="dev",
        db_path=str(tmp_path / "vaultgate.db"),
        rpc_urls=(RPC_A, RPC_B, RPC_C),
        rpc_timeout_s=2.0,
        eip1271_enabled=False,
        admin_token="t0ken",
    )
    return replace(base, **overrides)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def balances() -> FakeBalanceSource:
    return FakeBalanceSource(default=0)


@pytest.fixture
def vault_doc() -> Callable[..., Dict[str, Any]]:
    return make_vault_doc


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path):
    from vaultgate.runtime.sqlite_db import SqliteDB
    from vaultgate.store.store_memory import InMemoryGateStore
    from vaultgate.store.store_sqlite import SqliteGateStore

    if request.param == "memory":
        return InMemoryGateStore()
    return SqliteGateStore(db=SqliteDB(path=str(tmp_path / "gate.db")))
