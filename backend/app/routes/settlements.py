"""
routes/settlements.py — Settlement route handlers.

Layer rules:
  - Parse, validate, call ONE service inside one unit of work, return envelope.
  - No business logic. No DB queries. No bare SQL.

Special: apply_settlement returns a SettlementResult.
  - Warnings (e.g. OVERPAYMENT) are included in the envelope; the status is
    still 201 because overpayment does not block the request.
  - A no-op (every split already settled) answers 200 with an
    ALREADY_SETTLED warning and the existing settlement.

Endpoints (base url_prefix=/api/v1/settlements):
  POST   /settlements                   → 201  record a payment
  GET    /settlements                   → 200  list, newest first
  GET    /settlements/:id               → 200  one settlement
  POST   /settlements/:id/complete      → 200  pending → completed
  POST   /settlements/:id/cancel        → 200  pending → cancelled
  POST   /settlements/recommendations   → 200  optimizer over a posted vector
"""

from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from backend.app.errors import WarningCode
from backend.app.extensions import db
from backend.app.models.settlement import Settlement
from backend.app.schemas.settlement_schema import (
    ApplySettlementSchema,
    ListSettlementsQuerySchema,
    RecommendSettlementsSchema,
)
from backend.app.services import settlement_optimizer, settlement_service
from backend.app.unit_of_work import unit_of_work

settlements_bp = Blueprint("settlements", __name__)


# ── Serialization helper ───────────────────────────────────────────────────

def _serialize_settlement(s: Settlement) -> dict:
    """Converts a Settlement ORM object to a plain dict for JSON output."""
    return {
        "id": s.id,
        "group_id": s.group_id,
        "paid_by_user_id": s.paid_by_user_id,
        "paid_to_user_id": s.paid_to_user_id,
        "amount": s.amount,
        "currency": s.currency,
        "status": s.status.value,
        "payment_method": s.payment_method,
        "notes": s.notes,
        "split_ids": sorted(split.id for split in s.splits),
        "created_at": s.created_at.isoformat() if s.created_at else None,
        "settled_at": s.settled_at.isoformat() if s.settled_at else None,
    }


# ── Route handlers ─────────────────────────────────────────────────────────

@settlements_bp.route("", methods=["POST"])
def apply_settlement():
    """
    POST /settlements — Record a payment, optionally against specific splits.

    Re-sending a request whose splits are all settled is safe: nothing new is
    recorded and the existing settlement comes back with ALREADY_SETTLED.
    """
    data = ApplySettlementSchema().load(request.get_json(force=True) or {})
    with unit_of_work(db.session) as session:
        result = settlement_service.apply_settlement(session=session, **data)

    warnings = list(result.warnings)
    if result.noop:
        warnings.append({
            "code": WarningCode.ALREADY_SETTLED,
            "message": "Every referenced split was already settled. Nothing new was recorded.",
        })

    payload = {
        "settlement": _serialize_settlement(result.settlement) if result.settlement else None,
        "settled_split_count": result.settled_split_count,
        "settled_expense_ids": result.settled_expense_ids,
    }
    return jsonify({"data": payload, "warnings": warnings}), 200 if result.noop else 201


@settlements_bp.route("", methods=["GET"])
def list_settlements():
    """GET /settlements?user_id=&group_id=&status=&limit=&offset="""
    args = ListSettlementsQuerySchema().load(request.args)
    settlements, total = settlement_service.list_settlements(
        db.session,
        user_id=args["user_id"],
        group_id=args["group_id"],
        status=args["status"],
        limit=args["limit"] or current_app.config["SETTLEMENT_PAGE_SIZE"],
        offset=args["offset"],
    )
    return jsonify({
        "data": {
            "settlements": [_serialize_settlement(s) for s in settlements],
            "total": total,
        },
        "warnings": [],
    }), 200


@settlements_bp.route("/<int:settlement_id>", methods=["GET"])
def get_settlement(settlement_id: int):
    settlement = settlement_service.get_settlement(settlement_id, db.session)
    return jsonify({"data": _serialize_settlement(settlement), "warnings": []}), 200


@settlements_bp.route("/<int:settlement_id>/complete", methods=["POST"])
def complete_settlement(settlement_id: int):
    """POST /settlements/:id/complete — pending → completed."""
    with unit_of_work(db.session) as session:
        settlement = settlement_service.complete_settlement(settlement_id, session)
    return jsonify({"data": _serialize_settlement(settlement), "warnings": []}), 200


@settlements_bp.route("/<int:settlement_id>/cancel", methods=["POST"])
def cancel_settlement(settlement_id: int):
    """POST /settlements/:id/cancel — pending → cancelled; its splits are released."""
    with unit_of_work(db.session) as session:
        settlement = settlement_service.cancel_settlement(settlement_id, session)
    return jsonify({"data": _serialize_settlement(settlement), "warnings": []}), 200


@settlements_bp.route("/recommendations", methods=["POST"])
def recommend_settlements():
    """
    POST /settlements/recommendations — greedy plan for an arbitrary vector.
    For a group's live balances use GET /groups/:id/balances instead.
    """
    data = RecommendSettlementsSchema().load(request.get_json(force=True) or {})
    plan = settlement_optimizer.recommend_settlements(
        (entry["user_id"], entry["amount"]) for entry in data["balances"]
    )
    return jsonify({
        "data": [
            {
                "from_user_id": r.payer_id,
                "to_user_id": r.recipient_id,
                "amount": r.amount,
            }
            for r in plan
        ],
        "warnings": [],
    }), 200
