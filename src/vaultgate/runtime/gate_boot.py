# src/vaultgate/runtime/gate_boot.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from vaultgate.gate.action_queue import ActionQueue
from vaultgate.gate.commands import CommandInterpreter
from vaultgate.gate.eligibility import BalanceSource, EligibilityEvaluator, Web3BalanceSource
from vaultgate.gate.join_flow import JoinService
from vaultgate.gate.join_requests import JoinRequestTracker
from vaultgate.gate.proof import ContractSignatureChecker, Eip1271Checker, ProofVerifier
from vaultgate.gate.registry import VaultRegistry
from vaultgate.runtime.gate_config import GateConfig, load_gate_config
from vaultgate.runtime.scoped_locks import ScopedLockTable
from vaultgate.runtime.sqlite_db import SqliteDB
from vaultgate.store.store import GateStore
from vaultgate.store.store_sqlite import SqliteGateStore


@dataclass
class GateRuntime:
    """Every gate component wired over one store."""

    config: GateConfig
    store: GateStore
    registry: VaultRegistry
    verifier: ProofVerifier
    evaluator: EligibilityEvaluator
    queue: ActionQueue
    tracker: JoinRequestTracker
    joins: JoinService
    commands: CommandInterpreter


def build_gate_runtime(
    cfg: Optional[GateConfig] = None,
    *,
    store: Optional[GateStore] = None,
    balance_source: Optional[BalanceSource] = None,
    contract_checker: Optional[ContractSignatureChecker] = None,
) -> GateRuntime:
    """
    Build the runtime from an explicit config or, if omitted, from
    VAULTGATE_CONFIG_PATH / environment.

    Tests pass an in-memory store and a fake balance source; production gets
    SQLite at cfg.db_path and web3 reads against cfg.rpc_urls.
    """
    c = cfg or load_gate_config()

    st: GateStore = store if store is not None else SqliteGateStore(db=SqliteDB(path=c.db_path))
    source = balance_source if balance_source is not None else Web3BalanceSource(timeout_s=c.rpc_timeout_s)
    checker = contract_checker
    if checker is None and c.eip1271_enabled:
        checker = Eip1271Checker(rpc_urls=c.rpc_urls, timeout_s=c.rpc_timeout_s)

    registry = VaultRegistry(store=st)
    verifier = ProofVerifier(
        store=st,
        nonce_ttl_s=c.nonce_ttl_s,
        message_max_age_s=c.message_max_age_s,
        contract_checker=checker,
    )
    evaluator = EligibilityEvaluator(source=source, rpc_urls=c.rpc_urls)
    queue = ActionQueue(store=st, locks=ScopedLockTable())
    tracker = JoinRequestTracker(store=st, watch_interval_s=c.watch_interval_s)
    joins = JoinService(
        verifier=verifier,
        registry=registry,
        evaluator=evaluator,
        queue=queue,
        tracker=tracker,
        supported_chain_id=c.supported_chain_id,
    )
    commands = CommandInterpreter(
        registry=registry,
        evaluator=evaluator,
        queue=queue,
        tracker=tracker,
        prefix=c.command_prefix,
    )
    return GateRuntime(
        config=c,
        store=st,
        registry=registry,
        verifier=verifier,
        evaluator=evaluator,
        queue=queue,
        tracker=tracker,
        joins=joins,
        commands=commands,
    )
