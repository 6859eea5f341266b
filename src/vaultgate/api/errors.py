# src/vaultgate/api/errors.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from vaultgate.gate.errors import (
    ActionTransitionError,
    GateError,
    InvalidConfig,
    InvalidProof,
    UnsupportedChain,
    UnsupportedGatingMode,
    VaultMisconfigured,
    VaultNotConfigured,
)

Json = Dict[str, Any]


# Not frozen: raising through context managers assigns __traceback__.
@dataclass(eq=False)
class ApiError(Exception):
    status_code: int
    code: str
    message: str
    details: Dict[str, Any]

    @staticmethod
    def bad_request(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(400, code, message, details or {})

    @staticmethod
    def unauthorized(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(401, code, message, details or {})

    @staticmethod
    def forbidden(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(403, code, message, details or {})

    @staticmethod
    def not_found(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(404, code, message, details or {})

    @staticmethod
    def internal(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(500, code, message, details or {})

    def to_json(self) -> Json:
        return {"ok": False, "error": {"code": self.code, "message": self.message, "details": dict(self.details)}}


# Most specific first; isinstance walks this in order.
_GATE_STATUS = (
    (InvalidProof, 401),
    (VaultNotConfigured, 404),
    (ActionTransitionError, 409),
    (InvalidConfig, 400),
    (UnsupportedChain, 400),
    (UnsupportedGatingMode, 400),
    (VaultMisconfigured, 400),
)


def gate_status_code(err: GateError) -> int:
    for cls, status in _GATE_STATUS:
        if isinstance(err, cls):
            return status
    return 500


def from_gate_error(err: GateError) -> ApiError:
    status = gate_status_code(err)
    if status == 500:
        return ApiError.internal("internal_error", "internal error", {})
    return ApiError(status, err.code, err.reason, dict(err.details))
