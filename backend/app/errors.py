"""
errors.py — AppError hierarchy and error code registry.

Every error returned by the ledger API must use a code defined here.
Do not raise strings or generic exceptions from service or route code.

Taxonomy (one subclass per failure class, each with a default HTTP status):
  ValidationError           422  malformed or inconsistent input
  NotFoundError             404  referenced row missing or soft-deleted
  ConflictError             409  a concurrent or earlier write already claimed the row
  InternalConsistencyError  500  a ledger invariant was violated (a bug, not bad input)

Error codes are a versioned contract. Messages are human-readable prose and
may be improved at any time.
"""

from __future__ import annotations


class AppError(Exception):

    default_status = 400

    def __init__(
            self,
            code: str,
            message: str,
            http_status: int | None = None,
            field: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code        = code
        self.message     = message
        self.http_status = http_status if http_status is not None else self.default_status
        self.field       = field  # which request field caused the error

    def to_dict(self) -> dict:
        payload = {
            "code":    self.code,
            "message": self.message,
        }
        if self.field is not None:
            payload["field"] = self.field
        return {"error": payload}

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(code={self.code!r}, "
            f"http_status={self.http_status}, "
            f"message={self.message!r})"
        )


class ValidationError(AppError):
    """Input is malformed or inconsistent with the ledger rules."""

    default_status = 422


class NotFoundError(AppError):
    """A referenced expense, split, settlement or group does not exist."""

    default_status = 404


class ConflictError(AppError):
    """The target row was already claimed or is in a terminal state."""

    default_status = 409


class InternalConsistencyError(AppError):
    """
    A balance invariant does not hold. Never expected in correct operation;
    callers must let it propagate so it can be alerted on.
    """

    default_status = 500

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(ErrorCode.INTERNAL_CONSISTENCY_ERROR, message, 500, field)


# ── Error Code Registry ────────────────────────────────────────────────────
#
# IMPORTANT: these are the string values sent in the API response.
# Do not rename them without a major version bump.
# ──────────────────────────────────────────────────────────────────────────

class ErrorCode:

    # ── Schema / Input Errors (400) ────────────────────────────────────────
    MISSING_FIELD              = "MISSING_FIELD"
    INVALID_FIELD              = "INVALID_FIELD"
    INVALID_SPLIT_METHOD       = "INVALID_SPLIT_METHOD"
    INVALID_CURRENCY           = "INVALID_CURRENCY"
    INVALID_STATUS             = "INVALID_STATUS"
    DUPLICATE_SPLIT_USER       = "DUPLICATE_SPLIT_USER"

    # ── Not Found Errors (404) ─────────────────────────────────────────────
    GROUP_NOT_FOUND            = "GROUP_NOT_FOUND"
    EXPENSE_NOT_FOUND          = "EXPENSE_NOT_FOUND"
    SPLIT_NOT_FOUND            = "SPLIT_NOT_FOUND"
    SETTLEMENT_NOT_FOUND       = "SETTLEMENT_NOT_FOUND"

    # ── Business Rule Violations (422) ────────────────────────────────────
    INVALID_AMOUNT             = "INVALID_AMOUNT"
    AMOUNT_TOO_LARGE           = "AMOUNT_TOO_LARGE"
    NO_PARTICIPANTS            = "NO_PARTICIPANTS"
    SPLIT_PARAMS_MISMATCH      = "SPLIT_PARAMS_MISMATCH"
    PERCENTAGE_SUM_MISMATCH    = "PERCENTAGE_SUM_MISMATCH"
    SPLIT_SUM_MISMATCH         = "SPLIT_SUM_MISMATCH"
    PAYER_NOT_MEMBER           = "PAYER_NOT_MEMBER"
    SPLIT_USER_NOT_MEMBER      = "SPLIT_USER_NOT_MEMBER"
    RECIPIENT_NOT_MEMBER       = "RECIPIENT_NOT_MEMBER"
    CURRENCY_MISMATCH          = "CURRENCY_MISMATCH"
    SELF_SETTLEMENT            = "SELF_SETTLEMENT"
    SAME_USER                  = "SAME_USER"
    SPLIT_RELATIONSHIP_MISMATCH = "SPLIT_RELATIONSHIP_MISMATCH"
    SETTLEMENT_AMOUNT_MISMATCH = "SETTLEMENT_AMOUNT_MISMATCH"
    DUPLICATE_BALANCE_USER     = "DUPLICATE_BALANCE_USER"
    EXPENSE_DELETED            = "EXPENSE_DELETED"

    # ── Conflict Errors (409) ──────────────────────────────────────────────
    SPLIT_ALREADY_SETTLED      = "SPLIT_ALREADY_SETTLED"
    CONCURRENT_SETTLEMENT      = "CONCURRENT_SETTLEMENT"
    SETTLEMENT_NOT_PENDING     = "SETTLEMENT_NOT_PENDING"
    EXPENSE_HAS_SETTLED_SPLITS = "EXPENSE_HAS_SETTLED_SPLITS"

    # ── System Errors (500) ────────────────────────────────────────────────
    INTERNAL_ERROR             = "INTERNAL_ERROR"
    INTERNAL_CONSISTENCY_ERROR = "INTERNAL_CONSISTENCY_ERROR"


# ── Warning Code Registry ──────────────────────────────────────────────────
#
# Warnings are returned alongside a 2xx response in the `warnings` array.
# They do not block the request.
# ──────────────────────────────────────────────────────────────────────────

class WarningCode:

    # Settlement amount exceeds current outstanding debt between the parties.
    # Still recorded; pre-payment is valid.
    OVERPAYMENT = "OVERPAYMENT"

    # Every referenced split was already settled; nothing new was recorded.
    ALREADY_SETTLED = "ALREADY_SETTLED"
