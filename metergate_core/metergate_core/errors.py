"""Exception taxonomy for the metered execution core."""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class MeterError(Exception):
    """Base exception for all metering errors."""


class Unauthenticated(MeterError):
    """The caller has no resolved user identity."""


class InvalidRequest(MeterError):
    """The request is malformed (unknown feature, missing key, bad payload)."""


class InsufficientCredit(MeterError):
    """The credit balance is below the cost of the operation."""

    def __init__(self, required: int, balance: int) -> None:
        super().__init__(f"Insufficient credit: required={required} balance={balance}")
        self.required = required
        self.balance = balance


class WorkerFailure(MeterError):
    """The generation worker reported a failed execution."""

    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(f"{code}: {message}" if message else code)
        self.code = code
        self.message = message


class PersistenceFailure(MeterError):
    """A ledger or job write did not apply.

    Raised when a guarded update loses its guard or the database rejects
    the write.  The surrounding transaction must be rolled back.
    """
