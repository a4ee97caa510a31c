"""
schemas/balance_schema.py — Query-string schemas for balance endpoints.

Query values arrive as strings, so integer fields are not strict here.

IMPORTANT: Inherits from marshmallow.Schema directly — never ma.Schema.
"""

from __future__ import annotations

from marshmallow import Schema, fields, post_load, validate

from backend.app.errors import ErrorCode


def _currency_field() -> fields.Str:
    return fields.Str(
        load_default=None,
        validate=validate.Regexp(r"^[A-Za-z]{3}$", error=ErrorCode.INVALID_CURRENCY),
    )


class _CurrencyQuerySchema(Schema):

    @post_load
    def normalise_currency(self, data: dict, **kwargs) -> dict:
        if data.get("currency"):
            data["currency"] = data["currency"].upper()
        return data


class PairwiseBalanceQuerySchema(_CurrencyQuerySchema):
    """GET /balances/pairwise?user_a=&user_b=&group_id=&currency="""

    user_a = fields.Int(required=True, validate=validate.Range(min=1))
    user_b = fields.Int(required=True, validate=validate.Range(min=1))
    group_id = fields.Int(load_default=None, validate=validate.Range(min=1))
    currency = _currency_field()


class UserBalancesQuerySchema(_CurrencyQuerySchema):
    """GET /users/:id/balances?currency="""

    currency = _currency_field()
