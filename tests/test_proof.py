from __future__ import annotations

from typing import List, Tuple

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from conftest import VAULT, FakeClock
from vaultgate.gate.errors import InvalidProof
from vaultgate.gate.proof import (
    JoinMessageFields,
    ProofVerifier,
    build_join_message,
    format_iso_ms,
    parse_iso_ms,
    parse_join_message,
    recover_signer,
)
from vaultgate.store.store_memory import InMemoryGateStore

SIGNER = Account.from_key("0x" + "01" * 32)
OTHER = Account.from_key("0x" + "02" * 32)
WALLET = SIGNER.address.lower()


def sign(acct, message: str) -> str:
    signed = acct.sign_message(encode_defunct(text=message))
    return "0x" + bytes(signed.signature).hex()


class _RecordingChecker:
    def __init__(self, answer: bool) -> None:
        self.answer = answer
        self.calls: List[Tuple[str, str, str]] = []

    def is_valid_signature(self, contract: str, message: str, signature: str) -> bool:
        self.calls.append((contract, message, signature))
        return self.answer


@pytest.fixture
def verifier(clock: FakeClock) -> ProofVerifier:
    return ProofVerifier(store=InMemoryGateStore(), clock=clock)


def test_iso_roundtrip_keeps_milliseconds() -> None:
    ts = 1_750_000_000_123
    s = format_iso_ms(ts)
    assert s.endswith("Z")
    assert ".123" in s
    assert parse_iso_ms(s) == ts
    assert parse_iso_ms("yesterday") is None


def test_message_layout_parses_back() -> None:
    fields = JoinMessageFields(
        wallet=WALLET,
        vault_address=VAULT,
        nonce="abc123",
        issued_at="2025-01-01T00:00:00.000Z",
        expires_at="2025-01-01T00:10:00.000Z",
    )
    msg = build_join_message(fields)
    assert msg.splitlines()[0] == "Vaultgate Join Request"
    assert parse_join_message(msg) == fields
    assert parse_join_message("hello") is None
    assert parse_join_message(msg.replace("Nonce: abc123", "Nonce:")) is None


def test_recover_signer_lowercases_and_tolerates_garbage() -> None:
    assert recover_signer("hi", sign(SIGNER, "hi")) == WALLET
    assert recover_signer("hi", "0x1234") is None


def test_valid_proof_consumes_nonce_once(verifier: ProofVerifier) -> None:
    ch = verifier.issue_join_challenge(SIGNER.address, VAULT)
    assert ch.wallet == WALLET
    sig = sign(SIGNER, ch.message)

    proof = verifier.verify_join_proof(ch.message, sig, VAULT)
    assert proof.wallet == WALLET
    assert len(proof.message_hash) == 64

    with pytest.raises(InvalidProof) as ei:
        verifier.verify_join_proof(ch.message, sig, VAULT)
    assert ei.value.reason == "nonce_invalid_or_used"


def test_open_nonce_is_reused_until_consumed(verifier: ProofVerifier, clock: FakeClock) -> None:
    a = verifier.issue_join_challenge(WALLET, VAULT)
    clock.advance(30)
    b = verifier.issue_join_challenge(WALLET, VAULT)
    assert a.nonce == b.nonce
    assert a.message == b.message

    verifier.verify_join_proof(a.message, sign(SIGNER, a.message), VAULT)
    c = verifier.issue_join_challenge(WALLET, VAULT)
    assert c.nonce != a.nonce


def test_challenge_rejects_bad_addresses(verifier: ProofVerifier) -> None:
    with pytest.raises(InvalidProof) as ei:
        verifier.issue_join_challenge("alice", VAULT)
    assert ei.value.reason == "invalid_wallet"
    with pytest.raises(InvalidProof) as ei:
        verifier.issue_join_challenge(WALLET, "0xdead")
    assert ei.value.reason == "invalid_vault_address"


def test_wrong_vault_is_rejected_before_signature_checks(verifier: ProofVerifier) -> None:
    ch = verifier.issue_join_challenge(WALLET, VAULT)
    with pytest.raises(InvalidProof) as ei:
        verifier.verify_join_proof(ch.message, sign(SIGNER, ch.message), "0x" + "ab" * 20)
    assert ei.value.reason == "vault_mismatch"


def test_signature_from_other_key_is_rejected(verifier: ProofVerifier) -> None:
    ch = verifier.issue_join_challenge(WALLET, VAULT)
    with pytest.raises(InvalidProof) as ei:
        verifier.verify_join_proof(ch.message, sign(OTHER, ch.message), VAULT)
    assert ei.value.reason == "signature_invalid"

    # The nonce survives a bad attempt.
    assert verifier.verify_join_proof(ch.message, sign(SIGNER, ch.message), VAULT).wallet == WALLET


@pytest.mark.parametrize("sig", ["", "deadbeef", "0xnothex", None])
def test_malformed_signature(verifier: ProofVerifier, sig) -> None:
    ch = verifier.issue_join_challenge(WALLET, VAULT)
    with pytest.raises(InvalidProof) as ei:
        verifier.verify_join_proof(ch.message, sig, VAULT)
    assert ei.value.reason == "invalid_signature"


def test_unparseable_message(verifier: ProofVerifier) -> None:
    with pytest.raises(InvalidProof) as ei:
        verifier.verify_join_proof("please let me in", sign(SIGNER, "please let me in"), VAULT)
    assert ei.value.reason == "invalid_message"
    assert ei.value.code == "invalid_proof"


def test_old_message_is_rejected(verifier: ProofVerifier, clock: FakeClock) -> None:
    ch = verifier.issue_join_challenge(WALLET, VAULT)
    clock.advance(16 * 60)
    with pytest.raises(InvalidProof) as ei:
        verifier.verify_join_proof(ch.message, sign(SIGNER, ch.message), VAULT)
    assert ei.value.reason == "message_too_old"


def test_expired_nonce_is_rejected(verifier: ProofVerifier, clock: FakeClock) -> None:
    ch = verifier.issue_join_challenge(WALLET, VAULT)
    clock.advance(11 * 60)
    with pytest.raises(InvalidProof) as ei:
        verifier.verify_join_proof(ch.message, sign(SIGNER, ch.message), VAULT)
    assert ei.value.reason == "nonce_invalid_or_used"


def test_contract_wallet_fallback(clock: FakeClock) -> None:
    contract_wallet = "0x" + "77" * 20
    checker = _RecordingChecker(answer=True)
    v = ProofVerifier(store=InMemoryGateStore(), contract_checker=checker, clock=clock)

    ch = v.issue_join_challenge(contract_wallet, VAULT)
    sig = sign(OTHER, ch.message)
    proof = v.verify_join_proof(ch.message, sig, VAULT)

    assert proof.wallet == contract_wallet
    assert checker.calls == [(contract_wallet, ch.message, sig)]


def test_contract_checker_not_consulted_for_eoa_match(clock: FakeClock) -> None:
    checker = _RecordingChecker(answer=False)
    v = ProofVerifier(store=InMemoryGateStore(), contract_checker=checker, clock=clock)
    ch = v.issue_join_challenge(WALLET, VAULT)
    v.verify_join_proof(ch.message, sign(SIGNER, ch.message), VAULT)
    assert checker.calls == []
