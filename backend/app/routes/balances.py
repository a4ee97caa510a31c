"""
routes/balances.py — Balance route handlers.

Layer rules:
  - Parse query params, call ONE service, return envelope.
  - No business logic. No DB queries. No bare SQL.
  - Read-only: no unit of work, nothing is committed.

Endpoints (base url_prefix=/api/v1):
  GET /groups/:id/balances            → 200  balances + recommended settlements
  GET /groups/:id/balances/detailed   → 200  pairwise debts before simplification
  GET /balances/pairwise              → 200  net between two users
  GET /users/:id/balances             → 200  a user's position per counterparty

The service asserts balance_sum == 0 for every group read and raises
INTERNAL_CONSISTENCY_ERROR (500) if it is not.
"""

from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from backend.app.extensions import db
from backend.app.schemas.balance_schema import (
    PairwiseBalanceQuerySchema,
    UserBalancesQuerySchema,
)
from backend.app.services import balance_service

balances_bp = Blueprint("balances", __name__)


@balances_bp.route("/groups/<int:group_id>/balances", methods=["GET"])
def get_balances(group_id: int):
    """GET /groups/:id/balances"""
    result = balance_service.get_balance_response(group_id=group_id, session=db.session)
    return jsonify({"data": result, "warnings": []}), 200


@balances_bp.route("/groups/<int:group_id>/balances/detailed", methods=["GET"])
def get_detailed_balances(group_id: int):
    """GET /groups/:id/balances/detailed — who owes whom, one row per pair."""
    rows = balance_service.get_detailed_balances(group_id=group_id, session=db.session)
    return jsonify({
        "data": {
            "group_id": group_id,
            "debts": [
                {
                    "from_user_id": r.debtor_id,
                    "to_user_id": r.creditor_id,
                    "amount": r.amount,
                }
                for r in rows
            ],
        },
        "warnings": [],
    }), 200


@balances_bp.route("/balances/pairwise", methods=["GET"])
def get_pairwise_balance():
    """
    GET /balances/pairwise?user_a=&user_b=&group_id=&currency=

    amount > 0 means user_b owes user_a. Without group_id the currency
    defaults to DEFAULT_CURRENCY.
    """
    args = PairwiseBalanceQuerySchema().load(request.args)
    currency = args["currency"]
    if args["group_id"] is None and currency is None:
        currency = current_app.config["DEFAULT_CURRENCY"]

    amount = balance_service.get_pairwise_balance(
        args["user_a"],
        args["user_b"],
        db.session,
        group_id=args["group_id"],
        currency=currency,
    )
    return jsonify({
        "data": {
            "user_a": args["user_a"],
            "user_b": args["user_b"],
            "group_id": args["group_id"],
            "amount": amount,
        },
        "warnings": [],
    }), 200


@balances_bp.route("/users/<int:user_id>/balances", methods=["GET"])
def get_user_balances(user_id: int):
    """GET /users/:id/balances?currency= — across all groups and personal expenses."""
    args = UserBalancesQuerySchema().load(request.args)
    result = balance_service.get_user_balances(
        user_id,
        db.session,
        currency=args["currency"] or current_app.config["DEFAULT_CURRENCY"],
    )
    return jsonify({"data": result, "warnings": []}), 200
