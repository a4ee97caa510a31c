"""
schemas/settlement_schema.py — Marshmallow schemas for settlement endpoints.

Validation responsibility:
  - This file: field types, positive integer amounts, currency format,
    status values, duplicate split ids, paging bounds.
  - services/settlement_service.py:
      - SELF_SETTLEMENT (422)
      - PAYER_NOT_MEMBER / RECIPIENT_NOT_MEMBER / CURRENCY_MISMATCH (422)
      - SPLIT_NOT_FOUND (404), SPLIT_RELATIONSHIP_MISMATCH (422)
      - SETTLEMENT_AMOUNT_MISMATCH (422)
      - SPLIT_ALREADY_SETTLED / CONCURRENT_SETTLEMENT (409)
      - OVERPAYMENT warning (201, still recorded)
  - services/settlement_optimizer.py:
      - DUPLICATE_BALANCE_USER (422), non-zero-sum vector (500)

IMPORTANT: Inherits from marshmallow.Schema directly — never ma.Schema.
           See extensions.py for the full explanation.
"""

from __future__ import annotations

from marshmallow import Schema, ValidationError, fields, post_load, validate, validates_schema

from backend.app.errors import ErrorCode
from backend.app.models.settlement import SettlementStatus


def _positive_id(name: str) -> validate.Range:
    return validate.Range(min=1, error=f"{name} must be a positive integer.")


# ── Apply settlement ───────────────────────────────────────────────────────

class ApplySettlementSchema(Schema):
    """
    POST /settlements

    Field rules:
      paid_by_user_id / paid_to_user_id : required, positive integers.
                        Self-settlement and membership are checked in the
                        service, which also owns the DB lookups.
      amount          : required, positive integer (minor units).
      currency        : required, three letters; upper-cased on load.
      split_ids       : optional; when present, amount must equal their sum.
      status          : 'completed' (default) or 'pending'.
    """

    paid_by_user_id = fields.Int(
        required=True,
        strict=True,
        validate=_positive_id("paid_by_user_id"),
    )

    paid_to_user_id = fields.Int(
        required=True,
        strict=True,
        validate=_positive_id("paid_to_user_id"),
    )

    amount = fields.Int(
        required=True,
        strict=True,
        validate=validate.Range(min=1, error=ErrorCode.INVALID_AMOUNT),
    )

    currency = fields.Str(
        required=True,
        validate=validate.Regexp(r"^[A-Za-z]{3}$", error=ErrorCode.INVALID_CURRENCY),
    )

    group_id = fields.Int(
        load_default=None,
        allow_none=True,
        strict=True,
        validate=_positive_id("group_id"),
    )

    split_ids = fields.List(
        fields.Int(strict=True, validate=_positive_id("split_id")),
        load_default=None,
    )

    status = fields.Enum(
        SettlementStatus,
        load_default=SettlementStatus.COMPLETED,
        by_value=True,
        error_messages={"unknown": ErrorCode.INVALID_STATUS},
    )

    payment_method = fields.Str(
        load_default=None,
        allow_none=True,
        validate=validate.Length(max=50),
    )

    notes = fields.Str(
        load_default=None,
        allow_none=True,
        validate=validate.Length(max=1000),
    )

    @validates_schema
    def validate_split_ids(self, data: dict, **kwargs) -> None:
        split_ids = data.get("split_ids")
        if split_ids is not None and len(split_ids) != len(set(split_ids)):
            raise ValidationError({"split_ids": ["The same split id appears more than once."]})
        if data.get("status") == SettlementStatus.CANCELLED:
            raise ValidationError({"status": [ErrorCode.INVALID_STATUS]})

    @post_load
    def normalise_currency(self, data: dict, **kwargs) -> dict:
        data["currency"] = data["currency"].upper()
        return data


# ── Recommendations over a posted balance vector ──────────────────────────

class BalanceEntrySchema(Schema):
    user_id = fields.Int(required=True, strict=True, validate=_positive_id("user_id"))
    # Signed: positive = is owed, negative = owes.
    amount = fields.Int(required=True, strict=True)


class RecommendSettlementsSchema(Schema):
    """POST /settlements/recommendations"""

    balances = fields.List(
        fields.Nested(BalanceEntrySchema),
        required=True,
    )


# ── Listing ────────────────────────────────────────────────────────────────

class ListSettlementsQuerySchema(Schema):
    """GET /settlements query string. Values arrive as strings, so no strict ints."""

    user_id = fields.Int(load_default=None, validate=_positive_id("user_id"))
    group_id = fields.Int(load_default=None, validate=_positive_id("group_id"))
    status = fields.Enum(
        SettlementStatus,
        load_default=None,
        by_value=True,
        error_messages={"unknown": ErrorCode.INVALID_STATUS},
    )
    limit = fields.Int(load_default=None, validate=validate.Range(min=1, max=100))
    offset = fields.Int(load_default=0, validate=validate.Range(min=0))
