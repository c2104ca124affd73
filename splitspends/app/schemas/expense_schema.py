"""
schemas/expense_schema.py — Marshmallow schemas for ledger input and output.

Validation responsibility:
  - This file:
      - Field types, lengths, enum values
      - Amount strictly positive and at most 4 decimal places
      - WEIGHTS_SENT_FOR_EQUAL / MISSING_SPLIT_WEIGHT — request shape rules
      - DUPLICATE_SPLIT_USER in the participants list
      - Weight values coerced per strategy (Decimal, or int for SHARE)
  - services/split_calculator.py:
      - Currency-specific precision (INVALID_AMOUNT_PRECISION)
      - Weight sums (SPLIT_SUM_MISMATCH, PERCENTAGE_SUM_MISMATCH)
      - Weight keys matching participants
  - services/expense_service.py:
      - Membership checks (PAYER_NOT_MEMBER, SPLIT_USER_NOT_MEMBER)

Callers:
  - SplitRequestSchema loads `flask ledger preview` input.
  - SettleSplitSchema loads `flask ledger settle` input (--note, --at).
  - CreateExpenseSchema is the request contract for the embedding
    application's create-expense endpoint; its output is the `data` dict
    expense_service.create_expense takes.
  - The dump schemas render service results for both.

IMPORTANT: Inherits from marshmallow.Schema directly, so schemas can be used
           without a Flask application context.
"""

from __future__ import annotations

from decimal import Decimal

from marshmallow import (
    Schema,
    ValidationError,
    fields,
    post_load,
    validate,
    validates_schema,
)

from splitspends.app.errors import ErrorCode
from splitspends.app.models.expense import Category, ExpenseStatus
from splitspends.app.models.expense_split import SplitType


# Largest minor-unit exponent any configured currency may use (see config.py).
_MAX_PLACES = 4


def _validate_monetary_amount(value: Decimal) -> None:
    """
    Strictly positive, at most four decimal places.

    The currency's own scale (2 for USD, 0 for JPY) is enforced by the
    split calculator once the currency is known.
    """
    if value <= Decimal("0"):
        raise ValidationError("Amount must be greater than zero.")

    # Decimal("10.123").as_tuple().exponent == -3 → 3 dp
    if value.as_tuple().exponent < -_MAX_PLACES:
        raise ValidationError(ErrorCode.INVALID_AMOUNT_PRECISION)


def _validate_non_empty_after_trim(value: str) -> None:
    """validate.Length(min=1) alone lets "   " through."""
    if not value.strip():
        raise ValidationError("This field must not be blank or contain only whitespace.")


def _weight_field(strategy: SplitType) -> fields.Field:
    if strategy == SplitType.SHARE:
        return fields.Int(strict=True)
    return fields.Decimal()


# ── Split request ──────────────────────────────────────────────────────────

class SplitRequestSchema(Schema):
    """
    The transient SplitRequest: strategy + participants + weights.

    weights keys are participant ids; JSON object keys arrive as strings and
    are converted to ints here.
    """

    strategy = fields.Enum(
        SplitType,
        required=True,
        by_value=True,
        error_messages={"unknown": ErrorCode.INVALID_SPLIT_TYPE},
    )

    # Optional for EQUAL (all group members) and for weighted strategies
    # (the weight keys).
    participants = fields.List(
        fields.Int(
            strict=True,
            validate=validate.Range(min=1, error="Participant ids must be positive integers."),
        ),
        load_default=None,
    )

    weights = fields.Dict(
        keys=fields.Int(validate=validate.Range(min=1)),
        values=fields.Raw(),
        load_default=None,
    )

    @validates_schema
    def validate_split_shape(self, data: dict, **kwargs) -> None:
        strategy = data.get("strategy")
        weights = data.get("weights")
        participants = data.get("participants")

        if strategy == SplitType.EQUAL:
            if weights:
                raise ValidationError({"weights": [ErrorCode.WEIGHTS_SENT_FOR_EQUAL]})
        elif strategy is not None and not weights:
            raise ValidationError({"weights": [ErrorCode.MISSING_SPLIT_WEIGHT]})

        if participants is not None and len(participants) != len(set(participants)):
            raise ValidationError({"participants": [ErrorCode.DUPLICATE_SPLIT_USER]})

    @post_load
    def coerce_weights(self, data: dict, **kwargs) -> dict:
        weights = data.get("weights")
        if not weights:
            data["weights"] = None
            return data

        field = _weight_field(data["strategy"])
        converted = {}
        for participant_id, raw in weights.items():
            try:
                converted[participant_id] = field.deserialize(raw)
            except ValidationError as err:
                raise ValidationError(
                    {"weights": [f"Invalid weight for participant {participant_id}: {err.messages[0]}"]}
                ) from err
        data["weights"] = converted
        return data


# ── Create expense ─────────────────────────────────────────────────────────

class CreateExpenseSchema(Schema):
    """
    Input for expense_service.create_expense.

    status may be 'draft' or 'confirmed'; an expense is never born cancelled.
    currency defaults to the group's default currency when omitted.
    """

    paid_by_user_id = fields.Int(
        required=True,
        strict=True,
        validate=validate.Range(min=1, error="paid_by_user_id must be a positive integer."),
    )

    description = fields.Str(
        required=True,
        validate=[
            validate.Length(
                min=1,
                max=500,
                error="Description must be between 1 and 500 characters.",
            ),
            _validate_non_empty_after_trim,
        ],
    )

    amount = fields.Decimal(
        required=True,
        validate=_validate_monetary_amount,
    )

    currency = fields.Str(
        load_default=None,
        validate=validate.Regexp(r"^[A-Za-z]{3}$", error="currency must be a 3-letter ISO 4217 code."),
    )

    category = fields.Enum(
        Category,
        load_default=Category.OTHER,
        by_value=True,
        error_messages={"unknown": "The category value is not valid."},
    )

    status = fields.Enum(
        ExpenseStatus,
        load_default=ExpenseStatus.CONFIRMED,
        by_value=True,
        validate=validate.OneOf(
            [ExpenseStatus.DRAFT, ExpenseStatus.CONFIRMED],
            error="An expense is created as 'draft' or 'confirmed'.",
        ),
    )

    notes = fields.Str(
        load_default=None,
        allow_none=True,
        validate=validate.Length(max=1000),
    )

    split = fields.Nested(SplitRequestSchema, required=True)


# ── Settle split ───────────────────────────────────────────────────────────

class SettleSplitSchema(Schema):
    """Optional settlement details. The acting user comes from the auth context."""

    note = fields.Str(
        load_default=None,
        allow_none=True,
        validate=validate.Length(max=500),
    )

    occurred_at = fields.AwareDateTime(load_default=None, allow_none=True)


# ── Output ─────────────────────────────────────────────────────────────────
# Amounts are dumped as strings so no consumer ever sees a float.

class SplitShareSchema(Schema):
    participant_id = fields.Raw()
    share_amount = fields.Decimal(as_string=True)
    percentage = fields.Decimal(as_string=True, allow_none=True)
    share_count = fields.Int(allow_none=True)


class ExpenseSplitSchema(Schema):
    id = fields.Int()
    expense_id = fields.Int()
    user_id = fields.Int()
    split_type = fields.Enum(SplitType, by_value=True)
    share_amount = fields.Decimal(as_string=True)
    percentage = fields.Decimal(as_string=True, allow_none=True)
    share_count = fields.Int(allow_none=True)
    settled = fields.Bool()
    settled_at = fields.DateTime(allow_none=True)
    settled_by_user_id = fields.Int(allow_none=True)
    settlement_note = fields.Str(allow_none=True)


class ExpenseSchema(Schema):
    id = fields.Int()
    group_id = fields.Int()
    paid_by_user_id = fields.Int()
    description = fields.Str()
    amount = fields.Decimal(as_string=True)
    currency = fields.Str()
    category = fields.Enum(Category, by_value=True)
    status = fields.Enum(ExpenseStatus, by_value=True)
    notes = fields.Str(allow_none=True)
    created_at = fields.DateTime()
    updated_at = fields.DateTime(allow_none=True)
    splits = fields.List(fields.Nested(ExpenseSplitSchema))
