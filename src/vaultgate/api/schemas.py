# src/vaultgate/api/schemas.py
"""Pydantic request schemas for the gate API.

These exist only for HTTP input validation. Addresses are validated by the
gate itself so errors keep their stable reason codes.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class NonceRequest(BaseModel):
    wallet: str = Field(..., description="Wallet address, 0x + 40 hex")
    vault_address: str = Field(..., description="Vault the wallet wants to join")

    model_config = {"extra": "allow"}


class JoinRequest(BaseModel):
    vault_address: str = Field(..., description="Vault the wallet wants to join")
    message: str = Field(..., description="Exact challenge text that was signed")
    signature: str = Field(..., description="0x-prefixed hex signature")

    model_config = {"extra": "allow"}


class VaultConfigRequest(BaseModel):
    config: Dict[str, Any] = Field(..., description="Vault config document (camelCase keys)")
    actor_wallet: Optional[str] = Field(default=None, description="Wallet recorded in the audit row")

    model_config = {"extra": "allow"}


class CommandRequest(BaseModel):
    group_id: str = Field(..., description="Group the message was posted in")
    sender_wallet: str = Field(..., description="Wallet bound to the sender")
    text: str = Field(..., description="Raw chat text")

    model_config = {"extra": "allow"}


class ActionStatusRequest(BaseModel):
    status: str = Field(..., description="executing | executed | failed | retry")
    error: Optional[str] = Field(default=None, description="Failure detail for failed/retry")

    model_config = {"extra": "allow"}
