"""
Domain errors for the earnings ledger.

Every error carries a stable machine-readable ``reason`` code alongside a
human-readable message. The HTTP layer maps the error class to a status code
and never exposes the underlying exception.
"""
from typing import Optional


class LedgerError(Exception):
    """Base class for all ledger errors."""

    reason = "LEDGER_ERROR"
    status_code = 400

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if reason:
            self.reason = reason

    def to_dict(self) -> dict:
        return {"reason": self.reason, "message": self.message}


# ------------------------------------------------------------------
# Validation errors: bad input, reported synchronously, no side effects
# ------------------------------------------------------------------

class ValidationError(LedgerError):
    """Input failed validation."""
    reason = "VALIDATION_ERROR"
    status_code = 422


class DistributionValidationError(ValidationError):
    """Harvest or holder set cannot be distributed as given."""
    reason = "INVALID_DISTRIBUTION_INPUT"


class PayoutValidationError(ValidationError):
    """Claim or withdrawal request is invalid."""
    reason = "INVALID_PAYOUT_REQUEST"


# ------------------------------------------------------------------
# Lookup errors
# ------------------------------------------------------------------

class NotFoundError(LedgerError):
    status_code = 404


class HarvestNotFoundError(NotFoundError):
    reason = "HARVEST_NOT_FOUND"


class GroveNotFoundError(NotFoundError):
    reason = "GROVE_NOT_FOUND"


class PayoutNotFoundError(NotFoundError):
    reason = "PAYOUT_NOT_FOUND"


# ------------------------------------------------------------------
# Concurrency conflicts
# ------------------------------------------------------------------

class ConflictError(LedgerError):
    status_code = 409


class PayoutInFlightError(ConflictError):
    """Referenced records are already reserved by another payout."""
    reason = "PAYOUT_IN_FLIGHT"


class ConcurrentModificationError(ConflictError):
    """Another writer changed the beneficiary's account first."""
    reason = "CONCURRENT_MODIFICATION"


# ------------------------------------------------------------------
# Invariant violations: ledger corruption, block further mutation
# ------------------------------------------------------------------

class LedgerInvariantError(LedgerError):
    reason = "LEDGER_INVARIANT_VIOLATION"
    status_code = 500


class LedgerHoldError(LedgerError):
    """Beneficiary is frozen until the ledger is reconciled."""
    reason = "LEDGER_ON_HOLD"
    status_code = 423


# ------------------------------------------------------------------
# External dependency errors
# ------------------------------------------------------------------

class DistributionFailedError(LedgerError):
    """The distribution transaction could not be committed. Retryable."""
    reason = "DISTRIBUTION_FAILED"
    status_code = 503


class TransferGatewayError(LedgerError):
    """The external ledger gateway rejected or failed a call."""
    reason = "TRANSFER_GATEWAY_ERROR"
    status_code = 502

    def __init__(self, message: str, reason: Optional[str] = None, upstream_status: Optional[int] = None):
        super().__init__(message, reason)
        self.upstream_status = upstream_status
