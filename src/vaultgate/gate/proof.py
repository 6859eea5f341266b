# src/vaultgate/gate/proof.py
"""
Join proof: a wallet signs a short plain-text challenge (EIP-191 personal_sign)
binding itself to one vault and one single-use nonce.

Message layout, one field per line:

    Vaultgate Join Request

    Wallet: 0x...
    Vault: 0x...
    Nonce: <hex>
    Issued At: <ISO-8601 UTC>
    Expires At: <ISO-8601 UTC>

Any failure here means "not authenticated" and raises InvalidProof. It is never
an eligibility answer.
"""

from __future__ import annotations

import hashlib
import logging
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol, Sequence

from eth_account import Account
from eth_account.messages import defunct_hash_message, encode_defunct
from web3 import Web3

from vaultgate.gate.errors import InvalidProof
from vaultgate.gate.vault_config import normalize_address
from vaultgate.runtime.log_events import log_event
from vaultgate.store.store import GateStore, NonceRecord

log = logging.getLogger("vaultgate.proof")

JOIN_MESSAGE_TITLE = "Vaultgate Join Request"
JOIN_PURPOSE = "join"

DEFAULT_NONCE_TTL_S = 10 * 60
DEFAULT_MESSAGE_MAX_AGE_S = 15 * 60

_SIG_RE = re.compile(r"^0x[0-9a-fA-F]+$")

EIP1271_MAGIC_VALUE = bytes.fromhex("1626ba7e")
EIP1271_ABI = [
    {
        "type": "function",
        "name": "isValidSignature",
        "stateMutability": "view",
        "inputs": [
            {"name": "hash", "type": "bytes32"},
            {"name": "signature", "type": "bytes"},
        ],
        "outputs": [{"name": "magicValue", "type": "bytes4"}],
    }
]


def _now_ms() -> int:
    return int(time.time() * 1000)


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def format_iso_ms(ts_ms: int) -> str:
    """Epoch ms -> ISO-8601 UTC with millisecond precision and a Z suffix."""
    dt = _EPOCH + timedelta(milliseconds=int(ts_ms))
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso_ms(raw: str) -> Optional[int]:
    s = str(raw or "").strip()
    if not s:
        return None
    if s.endswith("Z") or s.endswith("z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - _EPOCH) // timedelta(milliseconds=1)


@dataclass(frozen=True, slots=True)
class JoinMessageFields:
    wallet: str
    vault_address: str
    nonce: str
    issued_at: str
    expires_at: str


@dataclass(frozen=True, slots=True)
class JoinChallenge:
    wallet: str
    vault_address: str
    nonce: str
    issued_at: str
    expires_at: str
    message: str


@dataclass(frozen=True, slots=True)
class VerifiedProof:
    wallet: str
    message_hash: str


def build_join_message(fields: JoinMessageFields) -> str:
    return "\n".join(
        [
            JOIN_MESSAGE_TITLE,
            "",
            f"Wallet: {fields.wallet}",
            f"Vault: {fields.vault_address}",
            f"Nonce: {fields.nonce}",
            f"Issued At: {fields.issued_at}",
            f"Expires At: {fields.expires_at}",
        ]
    )


def parse_join_message(message: str) -> Optional[JoinMessageFields]:
    """Parse a join message. Returns None when any field is missing or malformed.

    Field labels match case-insensitively. Addresses come back lowercased.
    """
    if not isinstance(message, str) or not message.strip():
        return None
    lines = [ln.strip() for ln in message.split("\n")]
    if lines[0] != JOIN_MESSAGE_TITLE:
        return None

    def field(label: str) -> Optional[str]:
        for ln in lines:
            if ln.lower().startswith(label.lower()):
                v = ln[len(label):].strip()
                return v or None
        return None

    wallet = normalize_address(field("Wallet:"))
    vault = normalize_address(field("Vault:"))
    nonce = field("Nonce:")
    issued_at = field("Issued At:")
    expires_at = field("Expires At:")
    if not wallet or not vault or not nonce or not issued_at or not expires_at:
        return None
    return JoinMessageFields(
        wallet=wallet,
        vault_address=vault,
        nonce=nonce,
        issued_at=issued_at,
        expires_at=expires_at,
    )


def recover_signer(message: str, signature: str) -> Optional[str]:
    """Lowercased EIP-191 signer of `message`, or None if the signature is malformed."""
    try:
        addr = Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as e:  # eth_keys/eth_account raise several unrelated types
        log.debug("signature recovery failed: %s", e)
        return None
    return str(addr).lower()


class ContractSignatureChecker(Protocol):
    def is_valid_signature(self, contract: str, message: str, signature: str) -> bool: ...


class Eip1271Checker:
    """Validate contract-wallet signatures through `isValidSignature` (EIP-1271).

    Endpoints are tried in order. An endpoint that errors is skipped; a wallet
    with no deployed code is rejected without trying further endpoints.
    """

    def __init__(self, *, rpc_urls: Sequence[str], timeout_s: float = 10.0) -> None:
        self._rpc_urls = [str(u) for u in rpc_urls]
        self._timeout_s = float(timeout_s)

    def is_valid_signature(self, contract: str, message: str, signature: str) -> bool:
        try:
            sig_bytes = bytes.fromhex(signature[2:])
        except ValueError:
            return False
        digest = defunct_hash_message(text=message)
        for url in self._rpc_urls:
            try:
                w3 = Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": self._timeout_s}))
                address = Web3.to_checksum_address(contract)
                code = w3.eth.get_code(address)
                if not code:
                    return False
                wallet = w3.eth.contract(address=address, abi=EIP1271_ABI)
                magic = wallet.functions.isValidSignature(bytes(digest), sig_bytes).call()
                return bytes(magic) == EIP1271_MAGIC_VALUE
            except Exception as e:  # any transport or ABI failure: try the next endpoint
                log_event(log, "eip1271_rpc_failed", rpc_url=url, error=str(e)[:200])
                continue
        return False


class ProofVerifier:
    """Issues join challenges and verifies signed join proofs."""

    def __init__(
        self,
        *,
        store: GateStore,
        nonce_ttl_s: int = DEFAULT_NONCE_TTL_S,
        message_max_age_s: int = DEFAULT_MESSAGE_MAX_AGE_S,
        contract_checker: Optional[ContractSignatureChecker] = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self._nonce_ttl_ms = int(nonce_ttl_s) * 1000
        self._max_age_ms = int(message_max_age_s) * 1000
        self._contract_checker = contract_checker
        self._clock = clock

    def issue_join_challenge(self, wallet: str, vault_address: str) -> JoinChallenge:
        w = normalize_address(wallet)
        v = normalize_address(vault_address)
        if w is None:
            raise InvalidProof("invalid_wallet", {"wallet": wallet})
        if v is None:
            raise InvalidProof("invalid_vault_address", {"vault_address": vault_address})

        now = self._clock()
        candidate = NonceRecord(
            nonce=secrets.token_hex(16),
            purpose=JOIN_PURPOSE,
            wallet=w,
            vault_address=v,
            issued_ms=now,
            expires_ms=now + self._nonce_ttl_ms,
        )
        rec = self._store.issue_nonce(candidate, now_ms=now)

        fields = JoinMessageFields(
            wallet=w,
            vault_address=v,
            nonce=rec.nonce,
            issued_at=format_iso_ms(rec.issued_ms),
            expires_at=format_iso_ms(rec.expires_ms),
        )
        log_event(log, "join_challenge_issued", wallet=w, vault=v, reused=rec.nonce != candidate.nonce)
        return JoinChallenge(
            wallet=w,
            vault_address=v,
            nonce=rec.nonce,
            issued_at=fields.issued_at,
            expires_at=fields.expires_at,
            message=build_join_message(fields),
        )

    def _signature_ok(self, wallet: str, message: str, signature: str) -> bool:
        if recover_signer(message, signature) == wallet:
            return True
        if self._contract_checker is None:
            return False
        return bool(self._contract_checker.is_valid_signature(wallet, message, signature))

    def verify_join_proof(self, message: str, signature: str, expected_vault: str) -> VerifiedProof:
        """Authenticate a signed join message for `expected_vault`.

        Check order is fixed and each failure has a stable reason:
        invalid_message, vault_mismatch, message_too_old, invalid_signature,
        signature_invalid, nonce_invalid_or_used, message_expired.
        The nonce is consumed only after the signature checks out.
        """
        try:
            return self._verify(message, signature, expected_vault)
        except InvalidProof as e:
            log_event(log, "join_proof_rejected", reason=e.reason, vault=str(expected_vault or "").lower())
            raise

    def _verify(self, message: str, signature: str, expected_vault: str) -> VerifiedProof:
        parsed = parse_join_message(message)
        if parsed is None:
            raise InvalidProof("invalid_message")

        if parsed.vault_address != str(expected_vault or "").strip().lower():
            raise InvalidProof("vault_mismatch")

        now = self._clock()
        issued_ms = parse_iso_ms(parsed.issued_at)
        if issued_ms is None or now - issued_ms > self._max_age_ms:
            raise InvalidProof("message_too_old")

        if not isinstance(signature, str) or not _SIG_RE.match(signature):
            raise InvalidProof("invalid_signature")

        if not self._signature_ok(parsed.wallet, message, signature):
            raise InvalidProof("signature_invalid")

        consumed = self._store.consume_nonce(
            nonce=parsed.nonce,
            purpose=JOIN_PURPOSE,
            wallet=parsed.wallet,
            vault_address=parsed.vault_address,
            now_ms=now,
        )
        if not consumed:
            raise InvalidProof("nonce_invalid_or_used")

        expires_ms = parse_iso_ms(parsed.expires_at)
        if expires_ms is None or expires_ms < now:
            raise InvalidProof("message_expired")

        log_event(log, "join_proof_verified", wallet=parsed.wallet, vault=parsed.vault_address)
        return VerifiedProof(
            wallet=parsed.wallet,
            message_hash=hashlib.sha256(message.encode("utf-8")).hexdigest(),
        )
