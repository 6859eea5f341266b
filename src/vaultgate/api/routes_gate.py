# src/vaultgate/api/routes_gate.py
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Request

from vaultgate.api.errors import ApiError
from vaultgate.api.schemas import ActionStatusRequest, CommandRequest, JoinRequest, NonceRequest, VaultConfigRequest
from vaultgate.api.security import require_admin_token
from vaultgate.gate.vault_config import normalize_address
from vaultgate.runtime.gate_boot import GateRuntime

Json = Dict[str, Any]

router = APIRouter()


def _gate(request: Request) -> GateRuntime:
    rt = getattr(request.app.state, "gate", None)
    if rt is None:
        raise ApiError.internal("not_ready", "gate runtime not attached to app.state", {})
    return rt


def _admin(request: Request, rt: GateRuntime) -> None:
    require_admin_token(request, rt.config.admin_token)


def _address_param(name: str, raw: Optional[str]) -> str:
    addr = normalize_address(raw)
    if addr is None:
        raise ApiError.bad_request(f"invalid_{name}", f"{name} must be 0x + 40 hex", {name: raw})
    return addr


@router.get("/health")
def health(request: Request) -> Json:
    rt = getattr(request.app.state, "gate", None)
    out: Json = {"ok": True, "service": "vaultgate", "runtime": rt is not None}
    if rt is not None:
        out["mode"] = rt.config.mode
        out["chain_id"] = rt.config.supported_chain_id
    return out


# ---- join flow ----

@router.post("/gate/nonce")
def issue_nonce(req: NonceRequest, request: Request) -> Json:
    rt = _gate(request)
    ch = rt.verifier.issue_join_challenge(req.wallet, req.vault_address)
    return {
        "ok": True,
        "wallet": ch.wallet,
        "vault_address": ch.vault_address,
        "nonce": ch.nonce,
        "issued_at": ch.issued_at,
        "expires_at": ch.expires_at,
        "message": ch.message,
    }


@router.post("/gate/join")
def join(req: JoinRequest, request: Request) -> Json:
    rt = _gate(request)
    decision = rt.joins.join(req.vault_address, req.message, req.signature)
    return {"ok": True, **decision.to_json()}


@router.get("/gate/join-status")
def join_status(request: Request, vault_address: str = "", wallet: str = "") -> Json:
    rt = _gate(request)
    va = _address_param("vault_address", vault_address)
    w = _address_param("wallet", wallet)
    return {"ok": True, **rt.tracker.join_status(va, w).to_json()}


# ---- vault config ----

@router.put("/gate/vaults")
def upsert_vault(req: VaultConfigRequest, request: Request) -> Json:
    rt = _gate(request)
    _admin(request, rt)
    vault = rt.registry.upsert_vault_config(req.config, actor_wallet=req.actor_wallet)
    return {"ok": True, "vault": vault.summary()}


@router.get("/gate/vaults/{vault_address}")
def get_vault(vault_address: str, request: Request) -> Json:
    rt = _gate(request)
    va = _address_param("vault_address", vault_address)
    vault = rt.registry.get_vault_config(va)
    if vault is None:
        raise ApiError.not_found("vault_not_configured", "vault is not registered", {"vault_address": va})
    return {"ok": True, "vault": vault.summary()}


@router.get("/gate/vaults/{vault_address}/audit")
def vault_audit(vault_address: str, request: Request, limit: int = 50) -> Json:
    rt = _gate(request)
    _admin(request, rt)
    va = _address_param("vault_address", vault_address)
    return {"ok": True, "entries": [e.to_json() for e in rt.registry.list_audit(va, limit=limit)]}


# ---- command surface ----

# Called by the chat transport bridge, which has already authenticated the
# sender; sender_wallet is taken on its word, so the bridge must hold the token.
@router.post("/gate/commands")
def run_command(req: CommandRequest, request: Request) -> Json:
    rt = _gate(request)
    _admin(request, rt)
    result = rt.commands.handle(req.group_id, req.sender_wallet, req.text)
    if result is None:
        return {"ok": True, "handled": False}
    return {
        "ok": result.ok,
        "handled": True,
        "command": result.command,
        "response": result.response,
        "action_id": result.action_id,
    }


# ---- execution runtime ----

@router.get("/gate/actions/ready")
def ready_actions(request: Request, limit: int = 50) -> Json:
    rt = _gate(request)
    _admin(request, rt)
    return {"ok": True, "actions": [a.to_json() for a in rt.queue.list_ready(limit=max(1, min(int(limit), 500)))]}


@router.post("/gate/actions/{action_id}/status")
def mark_action(action_id: int, req: ActionStatusRequest, request: Request) -> Json:
    rt = _gate(request)
    _admin(request, rt)
    action = rt.queue.mark_status(action_id, req.status, req.error)
    reconciled = rt.tracker.reconcile_actions() if action.status in ("executed", "failed") else 0
    return {"ok": True, "action": action.to_json(), "reconciled": reconciled}


@router.post("/gate/watch/recheck")
def recheck(request: Request, limit: int = 50) -> Json:
    rt = _gate(request)
    _admin(request, rt)
    summary = rt.joins.recheck_watching(limit=max(1, min(int(limit), 500)))
    return {"ok": True, **summary.to_json()}
