"""
services/expense_service.py — Expense business logic.

Rules enforced here:
  AMOUNT_TOO_LARGE (422)            amount <= MAX_EXPENSE_AMOUNT
  PAYER_NOT_MEMBER (422)            group expense: payer is an active member
  SPLIT_USER_NOT_MEMBER (422)       group expense: every participant is an active member
  CURRENCY_MISMATCH (422)           group expense: currency == group currency
  SPLIT_SUM_MISMATCH (422) & co.    delegated to split_calculator.compute_splits
  EXPENSE_DELETED (422)             a soft-deleted expense cannot be edited
  EXPENSE_HAS_SETTLED_SPLITS (409)  splits cannot be regenerated, nor the expense
                                    deleted, once someone has paid towards it

Every share the calculator returns is stored as one ExpenseSplit row, so the
stored splits always sum to the expense amount. The payer's own row is
created already settled: it is what the payer consumed, not a debt.
A zero share is created settled too: no settlement can pay it.

Participants:
  - Group expense with no participants and no splits → every active member.
  - Personal expense (no group) → participants (or split entries) required.
  - When split entries are given without a participant list, their user ids
    are the participants.

Layer rules:
  - No Flask imports. No current_app, request, g, or HTTP knowledge.
  - Receives plain ints and dicts; returns ORM objects or raises AppError.
  - Commits are the caller's responsibility (unit_of_work) — only flush here.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from backend.app.errors import (
    ConflictError,
    ErrorCode,
    InternalConsistencyError,
    NotFoundError,
    ValidationError,
)
from backend.app.models.expense import Expense, SplitMethod
from backend.app.models.group import Group
from backend.app.models.membership import Membership
from backend.app.models.split import ExpenseSplit
from backend.app.services.split_calculator import (
    SplitShare,
    compute_splits,
    outstanding_obligations,
)

logger = logging.getLogger(__name__)


# ── Private helpers ────────────────────────────────────────────────────────

def _get_group_or_404(group_id: int, session: Session) -> Group:
    """Returns the Group or raises GROUP_NOT_FOUND (404)."""
    group = session.get(Group, group_id)
    if group is None:
        raise NotFoundError(
            ErrorCode.GROUP_NOT_FOUND,
            f"Group {group_id} does not exist.",
        )
    return group


def _get_expense_or_404(expense_id: int, session: Session) -> Expense:
    """Returns the Expense (active or deleted) or raises EXPENSE_NOT_FOUND (404)."""
    expense = session.get(Expense, expense_id)
    if expense is None:
        raise NotFoundError(
            ErrorCode.EXPENSE_NOT_FOUND,
            f"Expense {expense_id} does not exist.",
        )
    return expense


def _get_member_ids(group_id: int, session: Session) -> list[int]:
    """Returns the user_ids of all active members of a group, ascending."""
    stmt = (
        select(Membership.user_id)
        .where(
            Membership.group_id == group_id,
            Membership.is_active.is_(True),
        )
        .order_by(Membership.user_id)
    )
    return list(session.execute(stmt).scalars().all())


def _validate_amount_limit(amount: int, max_amount: int | None) -> None:
    if max_amount is not None and amount > max_amount:
        raise ValidationError(
            ErrorCode.AMOUNT_TOO_LARGE,
            f"Expense amount {amount} exceeds the maximum of {max_amount}.",
            field="amount",
        )


def _validate_payer_is_member(payer_id: int, group_id: int, member_ids: list[int]) -> None:
    if payer_id not in member_ids:
        raise ValidationError(
            ErrorCode.PAYER_NOT_MEMBER,
            f"User {payer_id} is not a member of group {group_id}.",
            field="paid_by_user_id",
        )


def _validate_participants_are_members(
        participants: list[int],
        group_id: int,
        member_ids: list[int],
) -> None:
    outsiders = sorted(set(participants) - set(member_ids))
    if outsiders:
        raise ValidationError(
            ErrorCode.SPLIT_USER_NOT_MEMBER,
            f"User(s) {outsiders} are not members of group {group_id}.",
            field="participants",
        )


def _split_params(method: SplitMethod, splits: list[dict] | None) -> dict | None:
    """
    Turns the request's split entries into calculator params:
    {user_id: percentage} or {user_id: amount}. None when not supplied.
    """
    if splits is None or method is SplitMethod.EQUAL:
        return None
    key = "percentage" if method is SplitMethod.PERCENTAGE else "amount"
    params = {}
    for entry in splits:
        if entry.get(key) is None:
            raise ValidationError(
                ErrorCode.SPLIT_PARAMS_MISMATCH,
                f"Every split entry needs '{key}' when split_method is '{method.value}'.",
                field="splits",
            )
        params[entry["user_id"]] = entry[key]
    return params


def _resolve_participants(
        data: dict,
        default: list[int] | None,
) -> list[int]:
    if data.get("participants"):
        return list(data["participants"])
    if data.get("splits"):
        return [entry["user_id"] for entry in data["splits"]]
    return list(default or [])


def _build_split_rows(
        expense: Expense,
        shares: list[SplitShare],
        now: datetime,
) -> list[ExpenseSplit]:
    rows = []
    for share in shares:
        # Nothing is owed on the payer's own row or on a zero share.
        pre_settled = share.user_id == expense.paid_by_user_id or share.amount == 0
        rows.append(ExpenseSplit(
            user_id=share.user_id,
            amount=share.amount,
            percentage=share.percentage,
            is_settled=pre_settled,
            settled_at=now if pre_settled else None,
        ))
    return rows


def _verify_split_sum(expense: Expense, shares: list[SplitShare]) -> None:
    """Last check before the write. A failure here is a bug, not bad input."""
    total = sum(s.amount for s in shares)
    if total != expense.amount:
        raise InternalConsistencyError(
            f"Splits for expense {expense.id} sum to {total}, expected {expense.amount}."
        )


def _settled_obligations(expense: Expense) -> list[ExpenseSplit]:
    """Non-payer splits that someone has already paid."""
    return [
        s for s in expense.splits
        if s.is_settled and s.amount > 0 and s.user_id != expense.paid_by_user_id
    ]


def _mark_expense_settled_if_complete(expense: Expense, now: datetime) -> None:
    if expense.splits and all(s.is_settled for s in expense.splits):
        expense.is_settled = True
        expense.settled_at = now
    else:
        expense.is_settled = False
        expense.settled_at = None


# ── Public service functions ───────────────────────────────────────────────

def preview_splits(data: dict) -> dict:
    """
    Runs the split calculator without touching the database.

    Returns {"shares": [...], "obligations": [...]} where obligations leave
    out the payer's own share when paid_by_user_id is given.
    """
    method = SplitMethod(data["split_method"])
    participants = _resolve_participants(data, None)
    shares = compute_splits(
        data["amount"],
        method,
        participants,
        _split_params(method, data.get("splits")),
    )
    payer_id = data.get("paid_by_user_id")
    obligations = outstanding_obligations(shares, payer_id) if payer_id is not None else shares
    return {"shares": shares, "obligations": obligations}


def create_expense(
        data: dict,
        session: Session,
        default_currency: str = "INR",
        max_amount: int | None = None,
) -> Expense:
    """
    Records a new expense and all of its splits.

    Args:
        data:             Validated dict from CreateExpenseSchema.
        default_currency: Currency for personal expenses that name none.
        max_amount:       Upper bound on the amount (minor units), or None.

    Returns:
        The newly created Expense with its splits loaded.
    """
    amount: int = data["amount"]
    payer_id: int = data["paid_by_user_id"]
    method = SplitMethod(data.get("split_method", SplitMethod.EQUAL))
    group_id: int | None = data.get("group_id")

    _validate_amount_limit(amount, max_amount)

    if group_id is not None:
        group = _get_group_or_404(group_id, session)
        currency = data.get("currency") or group.currency
        if currency != group.currency:
            raise ValidationError(
                ErrorCode.CURRENCY_MISMATCH,
                f"Group {group_id} keeps its ledger in {group.currency}, not {currency}.",
                field="currency",
            )
        member_ids = _get_member_ids(group_id, session)
        _validate_payer_is_member(payer_id, group_id, member_ids)
        participants = _resolve_participants(data, member_ids)
        _validate_participants_are_members(participants, group_id, member_ids)
    else:
        currency = data.get("currency") or default_currency
        participants = _resolve_participants(data, None)

    # Compute the splits before writing anything.
    shares = compute_splits(amount, method, participants, _split_params(method, data.get("splits")))

    now = datetime.now(timezone.utc)
    expense = Expense(
        group_id=group_id,
        paid_by_user_id=payer_id,
        description=data["description"],
        amount=amount,
        currency=currency,
        split_method=method,
    )
    _verify_split_sum(expense, shares)
    expense.splits = _build_split_rows(expense, shares, now)
    _mark_expense_settled_if_complete(expense, now)

    session.add(expense)
    session.flush()

    logger.info(
        "Created expense %s: %s %s paid by %s, %s split across %s",
        expense.id, amount, currency, payer_id, method.value,
        [s.user_id for s in shares],
    )
    return expense


def get_expense(expense_id: int, session: Session) -> Expense:
    """
    Returns a single expense including its splits.

    Returns the expense even if soft-deleted; deleted_at is part of the
    response so the client can display the deletion state.
    """
    return _get_expense_or_404(expense_id, session)


def list_expenses(
        session: Session,
        user_id: int | None = None,
        group_id: int | None = None,
        currency: str | None = None,
        is_settled: bool | None = None,
        min_amount: int | None = None,
        max_amount: int | None = None,
        limit: int = 50,
        offset: int = 0,
) -> tuple[list[Expense], int]:
    """
    Returns (expenses, total) newest first. Soft-deleted expenses are left
    out. user_id matches the payer or anyone holding a split.
    """
    filters = [Expense.deleted_at.is_(None)]
    if group_id is not None:
        _get_group_or_404(group_id, session)
        filters.append(Expense.group_id == group_id)
    if user_id is not None:
        participant = select(ExpenseSplit.expense_id).where(ExpenseSplit.user_id == user_id)
        filters.append(or_(Expense.paid_by_user_id == user_id, Expense.id.in_(participant)))
    if currency is not None:
        filters.append(Expense.currency == currency)
    if is_settled is not None:
        filters.append(Expense.is_settled.is_(is_settled))
    if min_amount is not None:
        filters.append(Expense.amount >= min_amount)
    if max_amount is not None:
        filters.append(Expense.amount <= max_amount)

    total = session.execute(
        select(func.count(Expense.id)).where(*filters)
    ).scalar_one()

    stmt = (
        select(Expense)
        .where(*filters)
        .order_by(Expense.created_at.desc(), Expense.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(session.execute(stmt).scalars().all()), total


def update_expense(
        expense_id: int,
        data: dict,
        session: Session,
        max_amount: int | None = None,
) -> Expense:
    """
    Partially updates an expense.

    A description-only edit touches nothing else. Any change to amount,
    split_method, participants, splits or paid_by_user_id regenerates every
    split from scratch inside the same unit of work:
      - participants default to the current split users,
      - percentage / exact values default to the stored ones,
    so e.g. an amount-only edit of a percentage expense re-applies the same
    percentages, while an amount-only edit of an exact expense fails with
    SPLIT_SUM_MISMATCH until new amounts are sent.

    Raises:
        NotFoundError(EXPENSE_NOT_FOUND)
        ValidationError(EXPENSE_DELETED)
        ConflictError(EXPENSE_HAS_SETTLED_SPLITS) — regeneration would
            discard splits that have already been paid.
    """
    expense = _get_expense_or_404(expense_id, session)

    if expense.is_deleted:
        raise ValidationError(
            ErrorCode.EXPENSE_DELETED,
            f"Expense {expense_id} has been deleted and cannot be edited.",
        )

    if "description" in data:
        expense.description = data["description"]

    regenerate = any(
        key in data
        for key in ("amount", "split_method", "participants", "splits", "paid_by_user_id")
    )

    now = datetime.now(timezone.utc)

    if regenerate:
        settled = _settled_obligations(expense)
        if settled:
            raise ConflictError(
                ErrorCode.EXPENSE_HAS_SETTLED_SPLITS,
                f"Expense {expense_id} has settled splits {[s.id for s in settled]}; "
                f"cancel their settlements before changing amounts or participants.",
            )

        amount = data.get("amount", expense.amount)
        payer_id = data.get("paid_by_user_id", expense.paid_by_user_id)
        method = SplitMethod(data.get("split_method", expense.split_method))
        _validate_amount_limit(amount, max_amount)

        current_users = [s.user_id for s in expense.splits]
        participants = _resolve_participants(data, current_users)

        if expense.group_id is not None:
            member_ids = _get_member_ids(expense.group_id, session)
            _validate_payer_is_member(payer_id, expense.group_id, member_ids)
            _validate_participants_are_members(participants, expense.group_id, member_ids)

        if data.get("splits") is not None:
            params = _split_params(method, data["splits"])
        elif method is expense.split_method and method is SplitMethod.PERCENTAGE:
            params = {s.user_id: s.percentage for s in expense.splits}
        elif method is expense.split_method and method is SplitMethod.EXACT:
            params = {s.user_id: s.amount for s in expense.splits}
        else:
            params = None

        shares = compute_splits(amount, method, participants, params)

        expense.amount = amount
        expense.paid_by_user_id = payer_id
        expense.split_method = method
        _verify_split_sum(expense, shares)

        # Old rows must be gone before the new ones hit UNIQUE(expense_id, user_id).
        expense.splits.clear()
        session.flush()
        expense.splits.extend(_build_split_rows(expense, shares, now))
        _mark_expense_settled_if_complete(expense, now)

        logger.info(
            "Regenerated splits for expense %s: %s %s, %s across %s",
            expense_id, amount, expense.currency, method.value,
            [s.user_id for s in shares],
        )

    expense.updated_at = now
    session.flush()
    return expense


def delete_expense(expense_id: int, session: Session) -> Expense:
    """
    Soft-deletes an expense by setting deleted_at = NOW().

    The row and its splits stay in the database for audit; every balance
    query excludes them. Idempotent: deleting twice is not an error.

    Raises:
        NotFoundError(EXPENSE_NOT_FOUND)
        ConflictError(EXPENSE_HAS_SETTLED_SPLITS) — somebody already paid
            towards it; removing it would orphan that settlement.
    """
    expense = _get_expense_or_404(expense_id, session)

    if expense.is_deleted:
        return expense

    settled = _settled_obligations(expense)
    if settled:
        raise ConflictError(
            ErrorCode.EXPENSE_HAS_SETTLED_SPLITS,
            f"Expense {expense_id} has settled splits {[s.id for s in settled]} "
            f"and cannot be deleted.",
        )

    expense.deleted_at = datetime.now(timezone.utc)
    session.flush()

    logger.info("Soft-deleted expense %s", expense_id)
    return expense
