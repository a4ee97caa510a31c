"""
schemas/expense_schema.py — Marshmallow schemas for expense and split endpoints.

Validation responsibility:
  - This file (request shape → 400):
      - Field types, lengths, enum values
      - Amounts are integers in minor units (strict: 10.5 and "10" are rejected)
      - Percentages have at most 2 decimal places
      - DUPLICATE_SPLIT_USER — same user twice in participants or splits
      - splits required for 'percentage' / 'exact' on create, absent for 'equal'
      - Non-empty-after-trim enforcement for description
  - services/split_calculator.py (ledger rules → 422):
      - SPLIT_SUM_MISMATCH, PERCENTAGE_SUM_MISMATCH, SPLIT_PARAMS_MISMATCH
  - services/expense_service.py (needs the DB → 422 / 409):
      - PAYER_NOT_MEMBER, SPLIT_USER_NOT_MEMBER, CURRENCY_MISMATCH
      - EXPENSE_DELETED, EXPENSE_HAS_SETTLED_SPLITS

IMPORTANT: Inherits from marshmallow.Schema directly — never ma.Schema.
           See extensions.py for the full explanation.
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

from backend.app.errors import ErrorCode
from backend.app.models.expense import SplitMethod


# ── Shared validators ──────────────────────────────────────────────────────

def _validate_percentage(value: Decimal) -> None:
    """
    0 <= value <= 100 with at most 2 decimal places. Input with more places
    is rejected, never rounded.
    """
    if not value.is_finite() or value < Decimal("0") or value > Decimal("100"):
        raise ValidationError("Percentage must be between 0 and 100.")
    if value.as_tuple().exponent < -2:
        raise ValidationError("Percentage must have at most 2 decimal places.")


def _validate_non_empty_after_trim(value: str) -> None:
    """
    Raises ValidationError if the string is blank or contains only whitespace.
    Mirrors the DB CHECK(LENGTH(TRIM(...)) > 0) constraint at the API layer.
    """
    if not value.strip():
        raise ValidationError("This field must not be blank or contain only whitespace.")


def _positive_id(name: str) -> validate.Range:
    return validate.Range(min=1, error=f"{name} must be a positive integer.")


def _amount_field(**kwargs) -> fields.Int:
    # Minor units; strict rejects floats like 10.5 and numeric strings.
    return fields.Int(
        strict=True,
        validate=validate.Range(min=1, error=ErrorCode.INVALID_AMOUNT),
        **kwargs,
    )


def _currency_field(**kwargs) -> fields.Str:
    return fields.Str(
        validate=validate.Regexp(r"^[A-Za-z]{3}$", error=ErrorCode.INVALID_CURRENCY),
        **kwargs,
    )


def _check_no_duplicates(data: dict) -> None:
    participants = data.get("participants")
    if participants is not None and len(participants) != len(set(participants)):
        raise ValidationError({"participants": [ErrorCode.DUPLICATE_SPLIT_USER]})

    splits = data.get("splits")
    if splits is not None:
        user_ids = [s["user_id"] for s in splits]
        if len(user_ids) != len(set(user_ids)):
            raise ValidationError({"splits": [ErrorCode.DUPLICATE_SPLIT_USER]})


# ── Sub-schema: one entry in the `splits` array ───────────────────────────

class SplitInputSchema(Schema):
    """
    One entry of the `splits` array.

    percentage is read for split_method='percentage', amount for 'exact'.
    Which one must be present is checked by expense_service.py once the
    effective split method is known.
    """

    user_id = fields.Int(
        required=True,
        strict=True,
        validate=_positive_id("user_id"),
    )

    percentage = fields.Decimal(
        load_default=None,
        allow_none=True,
        validate=_validate_percentage,
    )

    # Zero is allowed: someone can be listed on an exact split without owing.
    amount = fields.Int(
        load_default=None,
        allow_none=True,
        strict=True,
        validate=validate.Range(min=0, error=ErrorCode.INVALID_AMOUNT),
    )


# ── Create expense ─────────────────────────────────────────────────────────

class CreateExpenseSchema(Schema):
    """
    POST /expenses

    group_id absent → personal expense; participants (or splits) required.
    group_id present → participants default to every active member.
    currency absent → the group's currency, or DEFAULT_CURRENCY for
    personal expenses.
    """

    paid_by_user_id = fields.Int(
        required=True,
        strict=True,
        validate=_positive_id("paid_by_user_id"),
    )

    group_id = fields.Int(
        load_default=None,
        allow_none=True,
        strict=True,
        validate=_positive_id("group_id"),
    )

    description = fields.Str(
        required=True,
        validate=[
            validate.Length(
                min=1,
                max=255,
                error="Description must be between 1 and 255 characters.",
            ),
            _validate_non_empty_after_trim,
        ],
    )

    amount = _amount_field(required=True)

    currency = _currency_field(load_default=None, allow_none=True)

    split_method = fields.Enum(
        SplitMethod,
        load_default=SplitMethod.EQUAL,
        by_value=True,
        error_messages={"unknown": ErrorCode.INVALID_SPLIT_METHOD},
    )

    participants = fields.List(
        fields.Int(strict=True, validate=_positive_id("participant")),
        load_default=None,
    )

    splits = fields.List(
        fields.Nested(SplitInputSchema),
        load_default=None,
    )

    @validates_schema
    def validate_splits_coherence(self, data: dict, **kwargs) -> None:
        """
        1. No duplicate users in participants or splits (DUPLICATE_SPLIT_USER).
        2. 'equal' takes no splits array; the server computes the shares.
        3. 'percentage' / 'exact' need a splits array.
        4. A personal expense must name who shares it.
        """
        _check_no_duplicates(data)

        split_method = data.get("split_method", SplitMethod.EQUAL)
        splits = data.get("splits")

        if split_method == SplitMethod.EQUAL:
            if splits is not None:
                raise ValidationError(
                    {"splits": ["Do not send a splits array when split_method is 'equal'."]}
                )
        elif splits is None:
            raise ValidationError(
                {"splits": [f"splits is required when split_method is '{split_method.value}'."]}
            )

        if data.get("group_id") is None and not data.get("participants") and not splits:
            raise ValidationError(
                {"participants": [ErrorCode.NO_PARTICIPANTS]}
            )

    @post_load
    def normalise_currency(self, data: dict, **kwargs) -> dict:
        if data.get("currency"):
            data["currency"] = data["currency"].upper()
        return data


# ── Patch expense ──────────────────────────────────────────────────────────

class PatchExpenseSchema(Schema):
    """
    PATCH /expenses/:id

    All fields are optional. Only provided fields are updated. Anything other
    than description regenerates the splits (see expense_service.update_expense).
    """

    paid_by_user_id = fields.Int(
        strict=True,
        validate=_positive_id("paid_by_user_id"),
    )

    description = fields.Str(
        validate=[
            validate.Length(
                min=1,
                max=255,
                error="Description must be between 1 and 255 characters.",
            ),
            _validate_non_empty_after_trim,
        ],
    )

    amount = _amount_field()

    split_method = fields.Enum(
        SplitMethod,
        by_value=True,
        error_messages={"unknown": ErrorCode.INVALID_SPLIT_METHOD},
    )

    participants = fields.List(
        fields.Int(strict=True, validate=_positive_id("participant")),
    )

    splits = fields.List(
        fields.Nested(SplitInputSchema),
    )

    @validates_schema
    def validate_patch_coherence(self, data: dict, **kwargs) -> None:
        _check_no_duplicates(data)

        if data.get("split_method") == SplitMethod.EQUAL and data.get("splits") is not None:
            raise ValidationError(
                {"splits": ["Do not send a splits array when split_method is 'equal'."]}
            )

        if "participants" in data and not data["participants"]:
            raise ValidationError({"participants": [ErrorCode.NO_PARTICIPANTS]})


# ── Split preview ──────────────────────────────────────────────────────────

class SplitPreviewSchema(Schema):
    """POST /splits/preview — the calculator inputs, nothing persisted."""

    amount = _amount_field(required=True)

    split_method = fields.Enum(
        SplitMethod,
        load_default=SplitMethod.EQUAL,
        by_value=True,
        error_messages={"unknown": ErrorCode.INVALID_SPLIT_METHOD},
    )

    paid_by_user_id = fields.Int(
        load_default=None,
        allow_none=True,
        strict=True,
        validate=_positive_id("paid_by_user_id"),
    )

    participants = fields.List(
        fields.Int(strict=True, validate=_positive_id("participant")),
        load_default=None,
    )

    splits = fields.List(
        fields.Nested(SplitInputSchema),
        load_default=None,
    )

    @validates_schema
    def validate_preview(self, data: dict, **kwargs) -> None:
        _check_no_duplicates(data)
        if not data.get("participants") and not data.get("splits"):
            raise ValidationError({"participants": [ErrorCode.NO_PARTICIPANTS]})


# ── List expenses ──────────────────────────────────────────────────────────

class ListExpensesQuerySchema(Schema):
    """
    GET /expenses query string. Values arrive as strings, so no strict ints.

    user_id matches the payer or any participant. min_amount / max_amount
    bound the expense amount in minor units, both inclusive.
    """

    user_id = fields.Int(load_default=None, validate=_positive_id("user_id"))
    group_id = fields.Int(load_default=None, validate=_positive_id("group_id"))
    currency = _currency_field(load_default=None)
    is_settled = fields.Bool(load_default=None)
    min_amount = fields.Int(
        load_default=None,
        validate=validate.Range(min=1, error=ErrorCode.INVALID_AMOUNT),
    )
    max_amount = fields.Int(
        load_default=None,
        validate=validate.Range(min=1, error=ErrorCode.INVALID_AMOUNT),
    )
    limit = fields.Int(load_default=None, validate=validate.Range(min=1, max=100))
    offset = fields.Int(load_default=0, validate=validate.Range(min=0))

    @validates_schema
    def validate_amount_range(self, data: dict, **kwargs) -> None:
        low, high = data.get("min_amount"), data.get("max_amount")
        if low is not None and high is not None and low > high:
            raise ValidationError({"max_amount": [ErrorCode.INVALID_AMOUNT]})

    @post_load
    def normalise_currency(self, data: dict, **kwargs) -> dict:
        if data.get("currency"):
            data["currency"] = data["currency"].upper()
        return data
