"""
errors.py — AppError base class, ledger error types and the error code registry.

Every error raised by the ledger must use a code defined here.
Do not raise strings or generic exceptions from service code.

Rules:
  - Error codes are a versioned contract. They do not change once published.
  - Error messages are human-readable prose. They may be improved at any time.
  - http_status is carried for callers that expose the ledger over HTTP;
    the ledger itself never builds responses.
"""

from __future__ import annotations


class AppError(Exception):

    def __init__(
            self,
            code: str,
            message: str,
            http_status: int,
            field: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code        = code
        self.message     = message
        self.http_status = http_status
        self.field       = field  # which input field caused the error

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


class InvalidSplitError(AppError):
    """Malformed or inconsistent split request. Never retried."""

    def __init__(self, code: str, message: str, field: str | None = None) -> None:
        super().__init__(code, message, 422, field=field)


class AlreadySettledError(AppError):
    """A different user tried to settle a split that is already settled (strict mode)."""

    def __init__(self, split_id: int, settled_by_user_id: int | None) -> None:
        super().__init__(
            ErrorCode.ALREADY_SETTLED,
            f"Split {split_id} was already settled by user {settled_by_user_id}.",
            409,
        )
        self.split_id = split_id
        self.settled_by_user_id = settled_by_user_id


class UnsupportedCurrencyError(AppError):
    """The currency has no configured minor-unit precision."""

    def __init__(self, currency: str) -> None:
        super().__init__(
            ErrorCode.UNSUPPORTED_CURRENCY,
            f"Currency {currency!r} is not configured. "
            f"Add it to CURRENCY_MINOR_UNITS with its minor-unit exponent.",
            422,
            field="currency",
        )
        self.currency = currency


# ── Error Code Registry ────────────────────────────────────────────────────
#
# Organised by category. HTTP status is indicated in the comment.
# IMPORTANT: these are the string values callers match on.
# ──────────────────────────────────────────────────────────────────────────

class ErrorCode:

    # ── Split request errors (422, InvalidSplitError) ─────────────────────
    EMPTY_PARTICIPANTS         = "EMPTY_PARTICIPANTS"
    INVALID_PARTICIPANT        = "INVALID_PARTICIPANT"
    DUPLICATE_SPLIT_USER       = "DUPLICATE_SPLIT_USER"
    INVALID_AMOUNT             = "INVALID_AMOUNT"
    INVALID_AMOUNT_PRECISION   = "INVALID_AMOUNT_PRECISION"
    INVALID_SPLIT_TYPE         = "INVALID_SPLIT_TYPE"
    SPLIT_SUM_MISMATCH         = "SPLIT_SUM_MISMATCH"
    PERCENTAGE_SUM_MISMATCH    = "PERCENTAGE_SUM_MISMATCH"
    MISSING_SPLIT_WEIGHT       = "MISSING_SPLIT_WEIGHT"
    UNEXPECTED_SPLIT_WEIGHT    = "UNEXPECTED_SPLIT_WEIGHT"
    INVALID_SPLIT_WEIGHT       = "INVALID_SPLIT_WEIGHT"
    WEIGHTS_SENT_FOR_EQUAL     = "WEIGHTS_SENT_FOR_EQUAL"
    PAYER_NOT_PARTICIPANT      = "PAYER_NOT_PARTICIPANT"

    # ── Currency (422) ─────────────────────────────────────────────────────
    UNSUPPORTED_CURRENCY       = "UNSUPPORTED_CURRENCY"

    # ── Conflict Errors (409) ──────────────────────────────────────────────
    ALREADY_SETTLED            = "ALREADY_SETTLED"

    # ── Not Found Errors (404) ─────────────────────────────────────────────
    GROUP_NOT_FOUND            = "GROUP_NOT_FOUND"
    EXPENSE_NOT_FOUND          = "EXPENSE_NOT_FOUND"
    SPLIT_NOT_FOUND            = "SPLIT_NOT_FOUND"

    # ── Business Rule Violations (422) ────────────────────────────────────
    PAYER_NOT_MEMBER           = "PAYER_NOT_MEMBER"
    SPLIT_USER_NOT_MEMBER      = "SPLIT_USER_NOT_MEMBER"
    EXPENSE_CANCELLED          = "EXPENSE_CANCELLED"
    EXPENSE_FULLY_SETTLED      = "EXPENSE_FULLY_SETTLED"
    EXPENSE_NOT_CONFIRMED      = "EXPENSE_NOT_CONFIRMED"
    INVALID_STATUS_TRANSITION  = "INVALID_STATUS_TRANSITION"

    # ── Authorization (403) ────────────────────────────────────────────────
    FORBIDDEN                  = "FORBIDDEN"

    # ── System Errors (500) ────────────────────────────────────────────────
    INTERNAL_ERROR             = "INTERNAL_ERROR"
