from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass(eq=False)
class GateError(Exception):
    """Canonical error type for gate failures.

    `reason` is a stable machine string surfaced to callers verbatim.
    """

    reason: str
    details: Dict[str, Any] = field(default_factory=dict)

    code = "gate_error"

    def __str__(self) -> str:  # pragma: no cover
        if not self.details:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"


class InvalidProof(GateError):
    """Caller is not authenticated. Never a policy denial."""

    code = "invalid_proof"


class InvalidConfig(GateError):
    code = "invalid_config"


class VaultNotConfigured(GateError):
    code = "vault_not_configured"


class UnsupportedChain(GateError):
    code = "unsupported_chain"


class UnsupportedGatingMode(GateError):
    code = "unsupported_gating_mode"


class VaultMisconfigured(GateError):
    code = "vault_misconfigured"


class ActionTransitionError(GateError):
    code = "invalid_transition"
