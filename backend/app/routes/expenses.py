"""
routes/expenses.py — Expense and split-preview route handlers.

Registered at url_prefix=/api/v1 because this blueprint owns both the
expense paths (/expenses, /expenses/:id) and /splits/preview.

Layer rules:
  - Parse, validate, call ONE service inside one unit of work, return envelope.
  - No business logic. No DB queries. No bare SQL.
  - _serialize_expense() is a pure data-shape helper — not business logic.

Endpoints:
  POST   /expenses          → 201  create expense + splits
  GET    /expenses          → 200  list, newest first
  GET    /expenses/:id      → 200  get expense + splits
  PATCH  /expenses/:id      → 200  partial update (may regenerate splits)
  DELETE /expenses/:id      → 200  soft-delete
  POST   /splits/preview    → 200  run the split calculator, persist nothing
"""

from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from backend.app.extensions import db
from backend.app.models.expense import Expense
from backend.app.schemas.expense_schema import (
    CreateExpenseSchema,
    ListExpensesQuerySchema,
    PatchExpenseSchema,
    SplitPreviewSchema,
)
from backend.app.services import expense_service
from backend.app.unit_of_work import unit_of_work

expenses_bp = Blueprint("expenses", __name__)


# ── Serialization helpers ──────────────────────────────────────────────────
# Pure data-shaping — no DB access, no logic. Amounts are integer minor units.

def _isoformat(value):
    return value.isoformat() if value is not None else None


def _serialize_expense(expense: Expense) -> dict:
    """Converts an Expense ORM object to a plain dict for JSON output."""
    return {
        "id": expense.id,
        "group_id": expense.group_id,
        "paid_by_user_id": expense.paid_by_user_id,
        "description": expense.description,
        "amount": expense.amount,
        "currency": expense.currency,
        "split_method": expense.split_method.value,
        "is_settled": expense.is_settled,
        "settled_at": _isoformat(expense.settled_at),
        "created_at": _isoformat(expense.created_at),
        "updated_at": _isoformat(expense.updated_at),
        "deleted_at": _isoformat(expense.deleted_at),
        "splits": [
            {
                "id": s.id,
                "user_id": s.user_id,
                "amount": s.amount,
                "percentage": s.percentage,  # Decimal → string via DecimalJSONProvider
                "is_settled": s.is_settled,
                "settlement_id": s.settlement_id,
            }
            for s in expense.splits
        ],
    }


def _serialize_share(share) -> dict:
    return {
        "user_id": share.user_id,
        "amount": share.amount,
        "percentage": share.percentage,
    }


# ── Expense routes ─────────────────────────────────────────────────────────

@expenses_bp.route("/expenses", methods=["POST"])
def create_expense():
    """
    POST /expenses — Record a new expense.

    Splits are computed server-side for 'equal'; 'percentage' and 'exact'
    take a splits array. Expense and splits are committed together.
    """
    data = CreateExpenseSchema().load(request.get_json(force=True) or {})
    with unit_of_work(db.session) as session:
        expense = expense_service.create_expense(
            data=data,
            session=session,
            default_currency=current_app.config["DEFAULT_CURRENCY"],
            max_amount=current_app.config["MAX_EXPENSE_AMOUNT"],
        )
    return jsonify({"data": _serialize_expense(expense), "warnings": []}), 201


@expenses_bp.route("/expenses", methods=["GET"])
def list_expenses():
    """GET /expenses?user_id=&group_id=&currency=&is_settled=&min_amount=&max_amount=&limit=&offset="""
    args = ListExpensesQuerySchema().load(request.args)
    expenses, total = expense_service.list_expenses(
        db.session,
        user_id=args["user_id"],
        group_id=args["group_id"],
        currency=args["currency"],
        is_settled=args["is_settled"],
        min_amount=args["min_amount"],
        max_amount=args["max_amount"],
        limit=args["limit"] or current_app.config["EXPENSE_PAGE_SIZE"],
        offset=args["offset"],
    )
    return jsonify({
        "data": {
            "expenses": [_serialize_expense(e) for e in expenses],
            "total": total,
        },
        "warnings": [],
    }), 200


@expenses_bp.route("/expenses/<int:expense_id>", methods=["GET"])
def get_expense(expense_id: int):
    """GET /expenses/:id — Get expense detail including splits."""
    expense = expense_service.get_expense(expense_id=expense_id, session=db.session)
    return jsonify({"data": _serialize_expense(expense), "warnings": []}), 200


@expenses_bp.route("/expenses/<int:expense_id>", methods=["PATCH"])
def update_expense(expense_id: int):
    """
    PATCH /expenses/:id — Partial update.
    Any change besides description regenerates the splits atomically.
    """
    data = PatchExpenseSchema().load(request.get_json(force=True) or {})
    with unit_of_work(db.session) as session:
        expense = expense_service.update_expense(
            expense_id=expense_id,
            data=data,
            session=session,
            max_amount=current_app.config["MAX_EXPENSE_AMOUNT"],
        )
    return jsonify({"data": _serialize_expense(expense), "warnings": []}), 200


@expenses_bp.route("/expenses/<int:expense_id>", methods=["DELETE"])
def delete_expense(expense_id: int):
    """
    DELETE /expenses/:id — Soft-delete (sets deleted_at = NOW()).
    Row stays in DB. Splits remain for audit. Balances exclude it.
    """
    with unit_of_work(db.session) as session:
        expense = expense_service.delete_expense(expense_id=expense_id, session=session)
    return jsonify({
        "data": {
            "deleted": True,
            "expense_id": expense_id,
            "deleted_at": _isoformat(expense.deleted_at),
        },
        "warnings": [],
    }), 200


# ── Split preview ──────────────────────────────────────────────────────────

@expenses_bp.route("/splits/preview", methods=["POST"])
def preview_splits():
    """POST /splits/preview — What each participant would owe. Nothing is stored."""
    data = SplitPreviewSchema().load(request.get_json(force=True) or {})
    result = expense_service.preview_splits(data)
    return jsonify({
        "data": {
            "amount": data["amount"],
            "split_method": data["split_method"].value,
            "shares": [_serialize_share(s) for s in result["shares"]],
            "obligations": [_serialize_share(s) for s in result["obligations"]],
        },
        "warnings": [],
    }), 200
