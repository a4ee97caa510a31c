"""
services/balance_service.py — Balance aggregation.

This file is the SINGLE SOURCE OF TRUTH for how balances are derived.
Balances are never stored; every read recomputes them from expenses, splits
and completed settlements. Any change to how balances work must be made
here; everything else (recommendations, overpayment warnings) follows.

Layer rules:
  - No Flask imports. No current_app, request, g, or HTTP knowledge.
  - Receives ids and a SQLAlchemy Session as arguments.
  - Read-only: nothing here adds, flushes, or commits.

Deleted expenses:
  - Every helper that reads expense or split amounts filters
    Expense.deleted_at IS NULL. Direct queries on Expense without that filter
    are forbidden in any balance-related context.

Zero-sum guarantee:
  - Within a group every expense credits its payer exactly what its splits
    debit, and every settlement credits and debits the same amount, so
    sum(compute_balances(...).values()) == 0. get_group_balances() checks
    this on every read and raises InternalConsistencyError instead of
    returning (or repairing) a broken vector.

Sign convention: positive = the user is owed money, negative = the user owes.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import NamedTuple

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from backend.app.errors import ErrorCode, InternalConsistencyError, NotFoundError, ValidationError
from backend.app.models.expense import Expense
from backend.app.models.group import Group
from backend.app.models.membership import Membership
from backend.app.models.settlement import Settlement, SettlementStatus
from backend.app.models.split import ExpenseSplit
from backend.app.models.user import User
from backend.app.services.settlement_optimizer import Recommendation, recommend_settlements

logger = logging.getLogger(__name__)


class MemberBalance(NamedTuple):
    user_id: int
    display_name: str
    balance: int


class PairwiseDebt(NamedTuple):
    debtor_id: int
    creditor_id: int
    amount: int


# ── Data access helpers ────────────────────────────────────────────────────
# The ONLY sanctioned ways to read expense/split/settlement data for balance
# purposes. Unit tests patch these.

def get_active_expenses(group_id: int, session: Session) -> list[Expense]:
    """Returns a group's expenses WHERE deleted_at IS NULL."""
    stmt = (
        select(Expense)
        .where(
            Expense.group_id == group_id,
            Expense.deleted_at.is_(None),
        )
    )
    return list(session.execute(stmt).scalars().all())


def get_splits_for_active_expenses(group_id: int, session: Session) -> list[ExpenseSplit]:
    """
    Returns splits belonging to active (non-deleted) expenses in a group.

    Includes each payer's own split. It is debited here and offset by the
    payer's credit for the full amount, so it never creates a debt.
    """
    stmt = (
        select(ExpenseSplit)
        .join(Expense, ExpenseSplit.expense_id == Expense.id)
        .where(
            Expense.group_id == group_id,
            Expense.deleted_at.is_(None),
        )
    )
    return list(session.execute(stmt).scalars().all())


def get_settlements(group_id: int, session: Session) -> list[Settlement]:
    """Returns a group's COMPLETED settlements. Pending and cancelled ones move no money."""
    stmt = select(Settlement).where(
        Settlement.group_id == group_id,
        Settlement.status == SettlementStatus.COMPLETED,
    )
    return list(session.execute(stmt).scalars().all())


def get_member_ids(group_id: int, session: Session) -> list[int]:
    """Returns the user_ids of all active members of a group."""
    stmt = select(Membership.user_id).where(
        Membership.group_id == group_id,
        Membership.is_active.is_(True),
    )
    return list(session.execute(stmt).scalars().all())


def get_members(user_ids: list[int], session: Session) -> list[User]:
    """Returns User rows for the given ids (members or former members)."""
    if not user_ids:
        return []
    stmt = select(User).where(User.id.in_(user_ids))
    return list(session.execute(stmt).scalars().all())


def _get_group_or_404(group_id: int, session: Session) -> Group:
    """Returns the Group or raises GROUP_NOT_FOUND (404)."""
    group = session.get(Group, group_id)
    if group is None:
        raise NotFoundError(
            ErrorCode.GROUP_NOT_FOUND,
            f"Group {group_id} does not exist.",
        )
    return group


def _name_map(user_ids, session: Session) -> dict[int, str]:
    return {u.id: u.display_name for u in get_members(sorted(set(user_ids)), session)}


# ── Group balances ─────────────────────────────────────────────────────────

def compute_balances(group_id: int, session: Session) -> dict[int, int]:
    """
    Canonical balance computation for a group.

    Returns {user_id: net_balance} in minor units for every active member,
    plus any former member who still has a non-zero position.

    Algorithm:
      1. Credit each payer the full amount of every active expense they paid.
      2. Debit each split user their split amount.
      3. Net completed settlements (payer +amount, recipient -amount).
      4. Ensure every active member appears, even at exactly zero.
    """
    balances: dict[int, int] = defaultdict(int)

    for expense in get_active_expenses(group_id, session):
        balances[expense.paid_by_user_id] += expense.amount

    for split in get_splits_for_active_expenses(group_id, session):
        balances[split.user_id] -= split.amount

    for settlement in get_settlements(group_id, session):
        balances[settlement.paid_by_user_id] += settlement.amount
        balances[settlement.paid_to_user_id] -= settlement.amount

    for member_id in get_member_ids(group_id, session):
        balances.setdefault(member_id, 0)

    return dict(balances)


def get_group_balances(group_id: int, session: Session) -> list[MemberBalance]:
    """
    Net balance of every member of a group, largest creditor first
    (ties by user id).

    Raises:
        NotFoundError(GROUP_NOT_FOUND)  — group does not exist.
        InternalConsistencyError        — balances do not sum to zero. The
                                          data is corrupt; nothing is returned.
    """
    _get_group_or_404(group_id, session)

    balances = compute_balances(group_id, session)

    balance_sum = sum(balances.values())
    if balance_sum != 0:
        logger.critical(
            "Balance integrity check failed for group %s: sum=%s balances=%s",
            group_id, balance_sum, balances,
        )
        raise InternalConsistencyError(
            f"Balance integrity check failed: sum was {balance_sum} (expected 0). "
            f"Group {group_id} has inconsistent financial data."
        )

    names = _name_map(balances.keys(), session)
    result = [
        MemberBalance(uid, names.get(uid, f"user_{uid}"), amount)
        for uid, amount in balances.items()
    ]
    result.sort(key=lambda b: (-b.balance, b.user_id))
    return result


def recommend_group_settlements(group_id: int, session: Session) -> list[Recommendation]:
    """Runs the optimizer over a group's current balances. Advisory only."""
    balances = get_group_balances(group_id, session)
    return recommend_settlements((b.user_id, b.balance) for b in balances)


def get_detailed_balances(group_id: int, session: Session) -> list[PairwiseDebt]:
    """
    Who owes whom inside a group, before simplification.

    One row per pair with a non-zero net debt, largest first. Unlike
    recommend_group_settlements(), every row reflects real expenses between
    exactly those two users.
    """
    _get_group_or_404(group_id, session)

    payer_by_expense = {
        e.id: e.paid_by_user_id for e in get_active_expenses(group_id, session)
    }

    # owed[(debtor, creditor)] accumulates gross debt in that direction.
    owed: dict[tuple[int, int], int] = defaultdict(int)

    for split in get_splits_for_active_expenses(group_id, session):
        payer_id = payer_by_expense.get(split.expense_id)
        if payer_id is None or split.user_id == payer_id:
            continue
        owed[(split.user_id, payer_id)] += split.amount

    for settlement in get_settlements(group_id, session):
        owed[(settlement.paid_by_user_id, settlement.paid_to_user_id)] -= settlement.amount

    rows: list[PairwiseDebt] = []
    seen: set[frozenset[int]] = set()
    for debtor, creditor in list(owed):
        pair = frozenset((debtor, creditor))
        if pair in seen:
            continue
        seen.add(pair)
        net = owed.get((debtor, creditor), 0) - owed.get((creditor, debtor), 0)
        if net > 0:
            rows.append(PairwiseDebt(debtor, creditor, net))
        elif net < 0:
            rows.append(PairwiseDebt(creditor, debtor, -net))

    rows.sort(key=lambda r: (-r.amount, r.debtor_id, r.creditor_id))
    return rows


def get_balance_response(group_id: int, session: Session) -> dict:
    """
    Builds the payload for GET /groups/:id/balances.

    Balances, the recommended settlement plan, and balance_sum (always "0"
    when this returns; a non-zero sum raises instead).
    """
    group = _get_group_or_404(group_id, session)
    balances = get_group_balances(group_id, session)
    plan = recommend_settlements((b.user_id, b.balance) for b in balances)
    names = {b.user_id: b.display_name for b in balances}

    return {
        "group_id": group_id,
        "currency": group.currency,
        "balances": [
            {
                "user_id": b.user_id,
                "name": b.display_name,
                "balance": b.balance,
            }
            for b in balances
        ],
        "recommended_settlements": [
            {
                "from_user_id": r.payer_id,
                "from_name": names.get(r.payer_id, f"user_{r.payer_id}"),
                "to_user_id": r.recipient_id,
                "to_name": names.get(r.recipient_id, f"user_{r.recipient_id}"),
                "amount": r.amount,
            }
            for r in plan
        ],
        "balance_sum": sum(b.balance for b in balances),
    }


# ── Pairwise balances ──────────────────────────────────────────────────────

def _get_pair_split_rows(
        user_a: int,
        user_b: int,
        session: Session,
        group_id: int | None,
        currency: str,
) -> list[tuple[int, int, int]]:
    """
    (split_user_id, payer_id, amount) for every split one of the pair owes
    on an active expense the other one paid.
    """
    stmt = (
        select(ExpenseSplit.user_id, Expense.paid_by_user_id, ExpenseSplit.amount)
        .join(Expense, ExpenseSplit.expense_id == Expense.id)
        .where(
            Expense.deleted_at.is_(None),
            Expense.currency == currency,
            or_(
                and_(ExpenseSplit.user_id == user_b, Expense.paid_by_user_id == user_a),
                and_(ExpenseSplit.user_id == user_a, Expense.paid_by_user_id == user_b),
            ),
        )
    )
    if group_id is not None:
        stmt = stmt.where(Expense.group_id == group_id)
    return [tuple(row) for row in session.execute(stmt).all()]


def _get_pair_settlement_rows(
        user_a: int,
        user_b: int,
        session: Session,
        group_id: int | None,
        currency: str,
) -> list[tuple[int, int, int]]:
    """(payer_id, recipient_id, amount) for completed settlements between the pair."""
    stmt = select(
        Settlement.paid_by_user_id, Settlement.paid_to_user_id, Settlement.amount
    ).where(
        Settlement.status == SettlementStatus.COMPLETED,
        Settlement.currency == currency,
        or_(
            and_(Settlement.paid_by_user_id == user_a, Settlement.paid_to_user_id == user_b),
            and_(Settlement.paid_by_user_id == user_b, Settlement.paid_to_user_id == user_a),
        ),
    )
    if group_id is not None:
        stmt = stmt.where(Settlement.group_id == group_id)
    return [tuple(row) for row in session.execute(stmt).all()]


def _resolve_currency(
        group_id: int | None,
        currency: str | None,
        session: Session,
) -> str:
    if group_id is not None:
        group = _get_group_or_404(group_id, session)
        if currency is not None and currency != group.currency:
            raise ValidationError(
                ErrorCode.CURRENCY_MISMATCH,
                f"Group {group_id} keeps its ledger in {group.currency}, not {currency}.",
                field="currency",
            )
        return group.currency
    if not currency:
        raise ValidationError(
            ErrorCode.INVALID_CURRENCY,
            "A currency is required when no group is given.",
            field="currency",
        )
    return currency


def get_pairwise_balance(
        user_a: int,
        user_b: int,
        session: Session,
        group_id: int | None = None,
        currency: str | None = None,
) -> int:
    """
    Net balance between two users. Positive means user_b owes user_a;
    negative means user_a owes user_b; zero means they are square.

    Scope: one group when group_id is given (in the group's currency),
    otherwise every group and personal expense in the given currency.

    Raises:
        ValidationError(SAME_USER)         — user_a == user_b.
        NotFoundError(GROUP_NOT_FOUND)     — group_id given but missing.
    """
    if user_a == user_b:
        raise ValidationError(
            ErrorCode.SAME_USER,
            "A pairwise balance needs two different users.",
            field="user_b",
        )

    currency = _resolve_currency(group_id, currency, session)

    net = 0
    for split_user, payer_id, amount in _get_pair_split_rows(user_a, user_b, session, group_id, currency):
        # b owes a on a's expenses; a owes b on b's expenses.
        if split_user == user_b and payer_id == user_a:
            net += amount
        else:
            net -= amount

    for payer_id, recipient_id, amount in _get_pair_settlement_rows(user_a, user_b, session, group_id, currency):
        # b paying a reduces what b owes a.
        if payer_id == user_b:
            net -= amount
        else:
            net += amount

    return net


def get_user_balances(user_id: int, session: Session, currency: str) -> dict:
    """
    A user's position against every counterparty, across all groups and
    personal expenses in one currency.

    Returns:
        {
          "user_id": ..., "currency": ...,
          "balances": [{"user_id": counterparty, "name": ..., "amount": net}, ...],
          "total_owed": what others owe this user,
          "total_due":  what this user owes others,
          "net_balance": total_owed - total_due,
        }
        amount > 0 means the counterparty owes this user.
    """
    net: dict[int, int] = defaultdict(int)

    split_rows = session.execute(
        select(ExpenseSplit.user_id, Expense.paid_by_user_id, ExpenseSplit.amount)
        .join(Expense, ExpenseSplit.expense_id == Expense.id)
        .where(
            Expense.deleted_at.is_(None),
            Expense.currency == currency,
            ExpenseSplit.user_id != Expense.paid_by_user_id,
            or_(ExpenseSplit.user_id == user_id, Expense.paid_by_user_id == user_id),
        )
    ).all()
    for split_user, payer_id, amount in split_rows:
        if payer_id == user_id:
            net[split_user] += amount
        else:
            net[payer_id] -= amount

    settlement_rows = session.execute(
        select(Settlement.paid_by_user_id, Settlement.paid_to_user_id, Settlement.amount)
        .where(
            Settlement.status == SettlementStatus.COMPLETED,
            Settlement.currency == currency,
            or_(Settlement.paid_by_user_id == user_id, Settlement.paid_to_user_id == user_id),
        )
    ).all()
    for payer_id, recipient_id, amount in settlement_rows:
        if payer_id == user_id:
            net[recipient_id] += amount
        else:
            net[payer_id] -= amount

    names = _name_map(net.keys(), session)
    rows = [
        {"user_id": uid, "name": names.get(uid, f"user_{uid}"), "amount": amount}
        for uid, amount in sorted(net.items())
        if amount != 0
    ]
    total_owed = sum(r["amount"] for r in rows if r["amount"] > 0)
    total_due = -sum(r["amount"] for r in rows if r["amount"] < 0)

    return {
        "user_id": user_id,
        "currency": currency,
        "balances": rows,
        "total_owed": total_owed,
        "total_due": total_due,
        "net_balance": total_owed - total_due,
    }
