"""
Error taxonomy for cl-treasury-ops

Every failure the decision engine can surface is a TreasuryError subclass.
The RPC layer turns them into dicts via to_dict(); nothing here knows about
lightningd or JSON transport.

- ConfigurationError: a required setting is missing (e.g. fee base not set)
- GuardrailViolation: a capital policy limit would be breached
- LossCapExceeded: trailing 24h rebalance spend would reach the cap
- ViabilityError: no usable channel pair / insufficient liquidity
- ExternalCallFailure: the node RPC failed mid-execution
- InvalidTransition: an execution record was asked to leave a terminal state
"""

from typing import Any, Dict, Optional


class TreasuryError(Exception):
    """Base class for all treasury errors."""

    error_type = "treasury_error"
    # Policy outcomes are expected operational refusals, not faults
    policy = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def details(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "status": "error",
            "error_type": self.error_type,
            "error": self.message,
        }
        if self.policy:
            result["policy"] = True
        result.update(self.details())
        return result


class ConfigurationError(TreasuryError):
    error_type = "configuration"


class GuardrailViolation(TreasuryError):
    """
    A capital guardrail check failed.

    Carries the name of the check plus the limit, the current value and the
    value the proposed action would have produced, so callers can report
    exactly which dimension was breached.
    """

    error_type = "guardrail_violation"
    policy = True

    def __init__(self, check: str, message: str, limit: Optional[int] = None,
                 current: Optional[int] = None, would_be: Optional[int] = None):
        super().__init__(message)
        self.check = check
        self.limit = limit
        self.current = current
        self.would_be = would_be

    def details(self) -> Dict[str, Any]:
        return {
            "check": self.check,
            "limit": self.limit,
            "current": self.current,
            "would_be": self.would_be,
        }


class LossCapExceeded(TreasuryError):
    """Daily loss cap reached; automation halts until spend rolls off."""

    error_type = "loss_cap_exceeded"
    policy = True

    def __init__(self, spent: int, projected: int, cap: int):
        total = spent + projected
        super().__init__(
            f"Daily loss cap reached: {spent} sats spent + {projected} projected = "
            f"{total} >= {cap} sats limit. Automation halted."
        )
        self.spent = spent
        self.projected = projected
        self.cap = cap

    def details(self) -> Dict[str, Any]:
        return {"spent": self.spent, "projected": self.projected, "cap": self.cap}


class ViabilityError(TreasuryError):
    """A rebalance pair was rejected; `side` names the deficient channel."""

    error_type = "viability"

    INCOMING_HINT = " This channel cannot receive inbound; pick a channel with higher remote."
    OUTGOING_HINT = " This channel cannot spend outbound; pick one with higher local."

    def __init__(self, message: str, side: Optional[str] = None,
                 shortfall: Optional[int] = None):
        if side == "incoming":
            message += self.INCOMING_HINT
        elif side == "outgoing":
            message += self.OUTGOING_HINT
        super().__init__(message)
        self.side = side
        self.shortfall = shortfall

    def details(self) -> Dict[str, Any]:
        return {"side": self.side, "shortfall": self.shortfall}


class ExternalCallFailure(TreasuryError):
    """A node RPC call failed. `method` is the RPC command that failed."""

    error_type = "external_call_failure"

    def __init__(self, method: str, message: str):
        super().__init__(f"{method} failed: {message}")
        self.method = method

    def details(self) -> Dict[str, Any]:
        return {"method": self.method}


class InvalidTransition(TreasuryError):
    error_type = "invalid_transition"
