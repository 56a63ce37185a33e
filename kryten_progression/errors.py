"""Error taxonomy for kryten-progression.

Every failure surfaced to a caller derives from ``ProgressionError`` and
carries a short stable ``error_code`` plus structured ``details``. The
command handler turns these into ``success: false`` replies; anything else
is treated as an unexpected fault and logged with a traceback.

Purchase and claim errors must never be retried automatically by callers.
"""

from __future__ import annotations

from typing import Any


class ProgressionError(Exception):
    """Base class for all domain errors."""

    error_code: str = "progression_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details: dict[str, Any] = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(ProgressionError):
    """Missing or invalid level settings. Callers fall back to defaults."""

    error_code = "configuration_error"


class ValidationError(ProgressionError):
    """Non-numeric, negative or otherwise malformed input."""

    error_code = "validation_error"


class NotFound(ProgressionError):
    """Unknown student, category or item key."""

    error_code = "not_found"

    def __init__(self, resource: str, identifier: Any = None) -> None:
        if identifier is not None:
            message = f"{resource} not found: {identifier}"
        else:
            message = f"{resource} not found"
        super().__init__(message, {"resource": resource, "identifier": identifier})


class GateDenied(ProgressionError):
    """Level or purchase requirement unmet, or the item is disabled."""

    error_code = "gate_denied"


class InsufficientBalance(ProgressionError):
    """Purchase attempted without enough spendable points."""

    error_code = "insufficient_balance"

    def __init__(self, required: float, current: float) -> None:
        super().__init__(
            f"Need {required:,g} points (you have {current:,g}).",
            {"required": required, "current": current, "deficit": required - current},
        )


class NotReady(ProgressionError):
    """Daily bonus still cooling down."""

    error_code = "not_ready"


class NoBonusConfigured(ProgressionError):
    """The equipped avatar has no daily bonus."""

    error_code = "no_bonus_configured"


class RoleNotPermitted(ProgressionError):
    """Caller role may not perform this operation."""

    error_code = "role_not_permitted"

    def __init__(self, role: str | None, allowed: list[str] | set[str]) -> None:
        super().__init__(
            f"Role '{role or 'anonymous'}' is not permitted for this action.",
            {"role": role, "allowed": sorted(allowed)},
        )


class ConcurrencyConflict(ProgressionError):
    """A write was rejected because state changed underneath it."""

    error_code = "concurrency_conflict"
