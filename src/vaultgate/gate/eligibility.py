# src/vaultgate/gate/eligibility.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from web3 import Web3

from vaultgate.runtime.log_events import log_event

Json = Dict[str, Any]

log = logging.getLogger("vaultgate.eligibility")

REASON_ELIGIBLE = "eligible"
REASON_INELIGIBLE = "ineligible"
REASON_READ_FAILED = "onchain_read_failed"

# Endpoints tried by the confirming read.
SECOND_READ_MAX_ENDPOINTS = 3

ERC20_BALANCE_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
        "stateMutability": "view",
    }
]


@dataclass(frozen=True, slots=True)
class BalanceRead:
    balance: int
    block_number: Optional[int]


class BalanceSource(Protocol):
    """One ERC-20 balance read against one endpoint. Raises on any failure."""

    def read_balance(self, rpc_url: str, token: str, wallet: str) -> BalanceRead: ...


class Web3BalanceSource:
    """BalanceSource over JSON-RPC with web3.py.

    The balance is read at the block number observed just before, so the
    evidence names the exact block the answer came from.
    """

    def __init__(self, *, timeout_s: float = 10.0) -> None:
        self._timeout_s = float(timeout_s)

    def read_balance(self, rpc_url: str, token: str, wallet: str) -> BalanceRead:
        w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": self._timeout_s}))
        block_number = int(w3.eth.block_number)
        contract = w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_BALANCE_ABI)
        balance = contract.functions.balanceOf(Web3.to_checksum_address(wallet)).call(block_identifier=block_number)
        return BalanceRead(balance=int(balance), block_number=block_number)


@dataclass(frozen=True)
class EligibilityResult:
    eligible: bool
    reason: str
    evidence: Json = field(default_factory=dict)

    @property
    def rpc_url(self) -> Optional[str]:
        v = self.evidence.get("rpc_url")
        return str(v) if v else None


@dataclass(frozen=True)
class DoubleReadResult:
    allowed: bool
    verification_failed: bool
    primary: EligibilityResult
    secondary: EligibilityResult

    @property
    def reason(self) -> str:
        if self.allowed:
            return REASON_ELIGIBLE
        if self.verification_failed:
            return "verification_failed"
        return REASON_INELIGIBLE

    @property
    def evidence(self) -> Json:
        return {"primary": dict(self.primary.evidence), "secondary": dict(self.secondary.evidence)}


class EligibilityEvaluator:
    """Decides share-threshold eligibility from live chain reads.

    Never raises on a read failure: a failed read is a result with reason
    `onchain_read_failed`, so callers can apply their fail-closed policy.
    """

    def __init__(self, *, source: BalanceSource, rpc_urls: Sequence[str]) -> None:
        self._source = source
        self._rpc_urls = [str(u) for u in rpc_urls]

    @property
    def rpc_urls(self) -> List[str]:
        return list(self._rpc_urls)

    def check_eligibility(
        self,
        wallet: str,
        token: str,
        threshold: int,
        rpc_urls: Optional[Sequence[str]] = None,
    ) -> EligibilityResult:
        urls = list(self._rpc_urls if rpc_urls is None else rpc_urls)
        errors: List[str] = []

        for url in urls:
            try:
                read = self._source.read_balance(url, token, wallet)
            except Exception as e:  # transport, decode and node errors all count as a failed read
                errors.append(f"{url}: {type(e).__name__}: {e}"[:300])
                continue

            eligible = int(read.balance) >= int(threshold)
            evidence: Json = {
                "share_balance": str(int(read.balance)),
                "threshold": str(int(threshold)),
                "rpc_url": url,
                "block_number": read.block_number,
            }
            if errors:
                evidence["errors"] = list(errors)
            return EligibilityResult(
                eligible=eligible,
                reason=REASON_ELIGIBLE if eligible else REASON_INELIGIBLE,
                evidence=evidence,
            )

        log_event(log, "eligibility_read_failed", wallet=wallet.lower(), token=token.lower(), endpoints=len(urls))
        return EligibilityResult(
            eligible=False,
            reason=REASON_READ_FAILED,
            evidence={
                "share_balance": "0",
                "threshold": str(int(threshold)),
                "rpc_url": None,
                "block_number": None,
                "errors": errors or ["no_rpc_endpoints"],
            },
        )

    def check_eligibility_double_read(
        self,
        wallet: str,
        token: str,
        threshold: int,
        *,
        fail_closed: bool,
    ) -> DoubleReadResult:
        """Two independent reads; allowed only if both say eligible.

        The confirming read skips the endpoint that answered the first one and
        tries at most SECOND_READ_MAX_ENDPOINTS of the rest. With a single
        configured endpoint it re-reads that endpoint.
        """
        primary = self.check_eligibility(wallet, token, threshold)

        used = primary.rpc_url
        remaining = [u for u in self._rpc_urls if u != used] if used else list(self._rpc_urls)
        if not remaining:
            remaining = list(self._rpc_urls)
        secondary = self.check_eligibility(wallet, token, threshold, rpc_urls=remaining[:SECOND_READ_MAX_ENDPOINTS])

        allowed = primary.eligible and secondary.eligible
        read_failed = REASON_READ_FAILED in (primary.reason, secondary.reason)
        out = DoubleReadResult(
            allowed=allowed,
            verification_failed=(not allowed) and read_failed and bool(fail_closed),
            primary=primary,
            secondary=secondary,
        )
        log_event(
            log,
            "eligibility_double_read",
            wallet=wallet.lower(),
            token=token.lower(),
            reason=out.reason,
            primary=primary.reason,
            secondary=secondary.reason,
        )
        return out
