"""
services/settlement_service.py — Settlement business logic.

Rules enforced here:
  SELF_SETTLEMENT (422)             paid_by_user_id must not equal paid_to_user_id
  INVALID_AMOUNT (422)              amount must be a positive integer (minor units)
  PAYER_NOT_MEMBER (422)            paid_by must be an active group member
  RECIPIENT_NOT_MEMBER (422)        paid_to must be an active group member
  CURRENCY_MISMATCH (422)           settlement currency == group currency
  SPLIT_NOT_FOUND (404)             referenced split missing or on a deleted expense
  SPLIT_RELATIONSHIP_MISMATCH (422) each split is owed BY the payer on an
                                    expense paid BY the recipient
                                    and all splits share one group (or none)
  SETTLEMENT_AMOUNT_MISMATCH (422)  amount == sum of the referenced splits
  SPLIT_ALREADY_SETTLED (409)       some (not all) referenced splits already settled
  CONCURRENT_SETTLEMENT (409)       another unit of work claimed a split first
  SETTLEMENT_NOT_PENDING (409)      transition out of completed/cancelled

Double-settlement protection:
  Splits are claimed with one conditional UPDATE

      UPDATE expense_splits
         SET is_settled = true, settlement_id = :new, settled_at = :now
       WHERE id IN (:ids) AND is_settled = false

  and the affected row count is compared with the number of ids. A short
  count means a concurrent writer got there first; ConflictError is raised
  and the caller's unit of work rolls the new settlement back with it.

Idempotence:
  Re-applying a settlement whose splits are all already settled is a no-op
  that returns the existing settlement. The route reports it with an
  ALREADY_SETTLED warning.

Notes on overpayment:
  A free-standing settlement (no split ids) larger than the payer's current
  pairwise debt is still recorded (pre-payment is valid business logic), but
  an OVERPAYMENT warning is returned alongside it.

Layer rules:
  - No Flask imports. Pure Python with a SQLAlchemy session parameter.
  - Commits are the caller's responsibility (unit_of_work) — only flush here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from backend.app.errors import (
    ConflictError,
    ErrorCode,
    NotFoundError,
    ValidationError,
    WarningCode,
)
from backend.app.models.expense import Expense
from backend.app.models.group import Group
from backend.app.models.membership import Membership
from backend.app.models.settlement import Settlement, SettlementStatus
from backend.app.models.split import ExpenseSplit
from backend.app.services import balance_service

logger = logging.getLogger(__name__)


@dataclass
class SettlementResult:
    settlement: Settlement | None
    settled_split_count: int = 0
    settled_expense_ids: list[int] = field(default_factory=list)
    noop: bool = False
    warnings: list[dict] = field(default_factory=list)


# ── Private helpers ────────────────────────────────────────────────────────

def _now() -> datetime:
    return datetime.now(timezone.utc)


def _get_group_or_404(group_id: int, session: Session) -> Group:
    """Returns the Group or raises GROUP_NOT_FOUND (404)."""
    group = session.get(Group, group_id)
    if group is None:
        raise NotFoundError(
            ErrorCode.GROUP_NOT_FOUND,
            f"Group {group_id} does not exist.",
        )
    return group


def _get_settlement_or_404(settlement_id: int, session: Session) -> Settlement:
    """Returns the Settlement or raises SETTLEMENT_NOT_FOUND (404)."""
    settlement = session.get(Settlement, settlement_id)
    if settlement is None:
        raise NotFoundError(
            ErrorCode.SETTLEMENT_NOT_FOUND,
            f"Settlement {settlement_id} does not exist.",
        )
    return settlement


def _is_active_member(group_id: int, user_id: int, session: Session) -> bool:
    membership = session.execute(
        select(Membership).where(
            Membership.group_id == group_id,
            Membership.user_id == user_id,
            Membership.is_active.is_(True),
        )
    ).scalar_one_or_none()
    return membership is not None


def _validate_group_scope(
        group: Group,
        paid_by_user_id: int,
        paid_to_user_id: int,
        currency: str,
        session: Session,
) -> None:
    """Both parties must be active members and the currency must match the group's."""
    if not _is_active_member(group.id, paid_by_user_id, session):
        raise ValidationError(
            ErrorCode.PAYER_NOT_MEMBER,
            f"User {paid_by_user_id} is not a member of group {group.id}.",
            field="paid_by_user_id",
        )
    if not _is_active_member(group.id, paid_to_user_id, session):
        raise ValidationError(
            ErrorCode.RECIPIENT_NOT_MEMBER,
            f"User {paid_to_user_id} is not a member of group {group.id}.",
            field="paid_to_user_id",
        )
    if currency != group.currency:
        raise ValidationError(
            ErrorCode.CURRENCY_MISMATCH,
            f"Group {group.id} settles in {group.currency}, not {currency}.",
            field="currency",
        )


def _load_splits(split_ids: list[int], session: Session) -> list[ExpenseSplit]:
    """
    Loads the referenced splits. A split on a soft-deleted expense is
    treated exactly like a missing one.
    """
    rows = session.execute(
        select(ExpenseSplit)
        .join(Expense, ExpenseSplit.expense_id == Expense.id)
        .where(
            ExpenseSplit.id.in_(split_ids),
            Expense.deleted_at.is_(None),
        )
        .order_by(ExpenseSplit.id)
    ).scalars().all()

    found = {s.id for s in rows}
    missing = [sid for sid in split_ids if sid not in found]
    if missing:
        raise NotFoundError(
            ErrorCode.SPLIT_NOT_FOUND,
            f"Split(s) {missing} do not exist or belong to a deleted expense.",
            field="split_ids",
        )
    return list(rows)


def _validate_split_relationship(
        splits: list[ExpenseSplit],
        paid_by_user_id: int,
        paid_to_user_id: int,
        currency: str,
        group_id: int | None,
) -> None:
    for split in splits:
        expense = split.expense
        if split.user_id != paid_by_user_id or expense.paid_by_user_id != paid_to_user_id:
            raise ValidationError(
                ErrorCode.SPLIT_RELATIONSHIP_MISMATCH,
                f"Split {split.id} is owed by user {split.user_id} to user "
                f"{expense.paid_by_user_id}, not by {paid_by_user_id} to {paid_to_user_id}.",
                field="split_ids",
            )
        if expense.currency != currency:
            raise ValidationError(
                ErrorCode.SPLIT_RELATIONSHIP_MISMATCH,
                f"Split {split.id} is in {expense.currency}, not {currency}.",
                field="split_ids",
            )
        if group_id is not None and expense.group_id != group_id:
            raise ValidationError(
                ErrorCode.SPLIT_RELATIONSHIP_MISMATCH,
                f"Split {split.id} does not belong to group {group_id}.",
                field="split_ids",
            )


def _mark_settled_expenses(expense_ids: set[int], session: Session) -> list[int]:
    """Flags each expense whose splits are now all settled. Returns their ids."""
    settled: list[int] = []
    now = _now()
    for expense_id in sorted(expense_ids):
        open_splits = session.execute(
            select(func.count(ExpenseSplit.id)).where(
                ExpenseSplit.expense_id == expense_id,
                ExpenseSplit.is_settled.is_(False),
            )
        ).scalar_one()
        if open_splits == 0:
            expense = session.get(Expense, expense_id)
            expense.is_settled = True
            expense.settled_at = now
            settled.append(expense_id)
    return settled


def _overpayment_warning(
        paid_by_user_id: int,
        paid_to_user_id: int,
        amount: int,
        currency: str,
        group_id: int | None,
        session: Session,
) -> dict | None:
    # Positive = paid_by owes paid_to.
    current_debt = max(
        balance_service.get_pairwise_balance(
            paid_to_user_id, paid_by_user_id, session,
            group_id=group_id, currency=currency,
        ),
        0,
    )
    if amount <= current_debt:
        return None
    return {
        "code": WarningCode.OVERPAYMENT,
        "message": (
            f"Settlement of {amount} exceeds current outstanding debt of "
            f"{current_debt} from user {paid_by_user_id} to user {paid_to_user_id}. "
            f"Recording anyway — pre-payment is valid."
        ),
    }


# ── Public service functions ───────────────────────────────────────────────

def apply_settlement(
        paid_by_user_id: int,
        paid_to_user_id: int,
        amount: int,
        currency: str,
        session: Session,
        split_ids: list[int] | None = None,
        group_id: int | None = None,
        status: SettlementStatus | str = SettlementStatus.COMPLETED,
        payment_method: str | None = None,
        notes: str | None = None,
) -> SettlementResult:
    """
    Records a payment from paid_by_user_id to paid_to_user_id and, when
    split ids are given, marks exactly those splits settled.

    Must run inside one unit of work: on any raised error the caller rolls
    back, so no settlement row exists without its split updates and vice
    versa.

    Returns:
        SettlementResult. For an already-applied split set: noop=True,
        settled_split_count=0, settlement=the settlement the splits are
        linked to (None if they were settled by differing settlements).
    """
    if paid_by_user_id == paid_to_user_id:
        raise ValidationError(
            ErrorCode.SELF_SETTLEMENT,
            "A settlement cannot be made to yourself.",
            field="paid_to_user_id",
        )

    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(
            ErrorCode.INVALID_AMOUNT,
            f"Settlement amount must be a positive integer number of minor units, got {amount!r}.",
            field="amount",
        )

    try:
        status = SettlementStatus(status)
    except ValueError:
        status = None
    if status is None or status is SettlementStatus.CANCELLED:
        raise ValidationError(
            ErrorCode.INVALID_STATUS,
            "A new settlement must be 'pending' or 'completed'.",
            field="status",
        )

    if group_id is not None:
        group = _get_group_or_404(group_id, session)
        _validate_group_scope(group, paid_by_user_id, paid_to_user_id, currency, session)

    warnings: list[dict] = []
    splits: list[ExpenseSplit] = []
    unique_ids = sorted(set(split_ids or []))

    if unique_ids:
        splits = _load_splits(unique_ids, session)
        _validate_split_relationship(splits, paid_by_user_id, paid_to_user_id, currency, group_id)

        # One settlement row carries one group, so every split must share it.
        split_groups = {s.expense.group_id for s in splits}
        if len(split_groups) > 1:
            raise ValidationError(
                ErrorCode.SPLIT_RELATIONSHIP_MISMATCH,
                f"Splits {unique_ids} span more than one ledger "
                f"(groups {sorted(split_groups, key=lambda g: (g is None, g))}); "
                f"settle each group and the personal splits separately.",
                field="split_ids",
            )

        if group_id is None:
            split_group = split_groups.pop()
            if split_group is not None:
                group_id = split_group
                group = _get_group_or_404(group_id, session)
                _validate_group_scope(group, paid_by_user_id, paid_to_user_id, currency, session)

        split_total = sum(s.amount for s in splits)
        if amount != split_total:
            raise ValidationError(
                ErrorCode.SETTLEMENT_AMOUNT_MISMATCH,
                f"Settlement amount ({amount}) does not equal the referenced splits ({split_total}).",
                field="amount",
            )

        already = [s for s in splits if s.is_settled]
        if already and len(already) == len(splits):
            linked_ids = {s.settlement_id for s in splits}
            existing = None
            if len(linked_ids) == 1 and None not in linked_ids:
                existing = session.get(Settlement, linked_ids.pop())
            logger.warning(
                "Settlement for splits %s already applied (settlement=%s); no-op",
                unique_ids, existing.id if existing is not None else None,
            )
            return SettlementResult(settlement=existing, noop=True)

        if already:
            raise ConflictError(
                ErrorCode.SPLIT_ALREADY_SETTLED,
                f"Split(s) {[s.id for s in already]} are already settled; "
                f"recording this settlement would over-settle them.",
                field="split_ids",
            )
    else:
        warning = _overpayment_warning(
            paid_by_user_id, paid_to_user_id, amount, currency, group_id, session,
        )
        if warning is not None:
            warnings.append(warning)

    now = _now()
    settlement = Settlement(
        group_id=group_id,
        paid_by_user_id=paid_by_user_id,
        paid_to_user_id=paid_to_user_id,
        amount=amount,
        currency=currency,
        status=status,
        payment_method=payment_method,
        notes=notes,
        settled_at=now if status is SettlementStatus.COMPLETED else None,
    )
    session.add(settlement)
    session.flush()

    settled_expense_ids: list[int] = []
    if splits:
        result = session.execute(
            update(ExpenseSplit)
            .where(
                ExpenseSplit.id.in_(unique_ids),
                ExpenseSplit.is_settled.is_(False),
            )
            .values(is_settled=True, settlement_id=settlement.id, settled_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(unique_ids):
            logger.warning(
                "Concurrent settlement detected: claimed %s of %s splits %s",
                result.rowcount, len(unique_ids), unique_ids,
            )
            raise ConflictError(
                ErrorCode.CONCURRENT_SETTLEMENT,
                "One or more splits were settled by another request. Nothing was recorded.",
                field="split_ids",
            )

        for split in splits:
            session.expire(split)
        settled_expense_ids = _mark_settled_expenses({s.expense_id for s in splits}, session)
        session.flush()

    logger.info(
        "Recorded settlement %s: %s -> %s %s %s (%s), splits=%s",
        settlement.id, paid_by_user_id, paid_to_user_id, amount, currency,
        status.value, unique_ids,
    )

    return SettlementResult(
        settlement=settlement,
        settled_split_count=len(splits),
        settled_expense_ids=settled_expense_ids,
        warnings=warnings,
    )


def get_settlement(settlement_id: int, session: Session) -> Settlement:
    return _get_settlement_or_404(settlement_id, session)


def _require_pending(settlement: Settlement, target: SettlementStatus) -> None:
    if settlement.status.is_terminal:
        raise ConflictError(
            ErrorCode.SETTLEMENT_NOT_PENDING,
            f"Settlement {settlement.id} is already {settlement.status.value} "
            f"and cannot become {target.value}.",
            field="status",
        )


def complete_settlement(settlement_id: int, session: Session) -> Settlement:
    """pending → completed. From then on the payment counts towards balances."""
    settlement = _get_settlement_or_404(settlement_id, session)
    _require_pending(settlement, SettlementStatus.COMPLETED)

    now = _now()
    settlement.status = SettlementStatus.COMPLETED
    settlement.settled_at = now
    settlement.updated_at = now
    session.flush()

    logger.info("Settlement %s completed", settlement_id)
    return settlement


def cancel_settlement(settlement_id: int, session: Session) -> Settlement:
    """
    pending → cancelled. Releases every split the settlement claimed and
    clears the settled flag of their expenses, so they can be settled again.
    """
    settlement = _get_settlement_or_404(settlement_id, session)
    _require_pending(settlement, SettlementStatus.CANCELLED)

    expense_ids = set(session.execute(
        select(ExpenseSplit.expense_id).where(ExpenseSplit.settlement_id == settlement_id)
    ).scalars().all())

    session.execute(
        update(ExpenseSplit)
        .where(ExpenseSplit.settlement_id == settlement_id)
        .values(is_settled=False, settlement_id=None, settled_at=None)
        .execution_options(synchronize_session="fetch")
    )

    for expense_id in expense_ids:
        expense = session.get(Expense, expense_id)
        expense.is_settled = False
        expense.settled_at = None

    settlement.status = SettlementStatus.CANCELLED
    settlement.updated_at = _now()
    session.flush()

    logger.info(
        "Settlement %s cancelled; released splits of expenses %s",
        settlement_id, sorted(expense_ids),
    )
    return settlement


def list_settlements(
        session: Session,
        user_id: int | None = None,
        group_id: int | None = None,
        status: SettlementStatus | str | None = None,
        limit: int = 20,
        offset: int = 0,
) -> tuple[list[Settlement], int]:
    """
    Returns (settlements, total) newest first. user_id matches either side
    of the payment.
    """
    filters = []
    if group_id is not None:
        _get_group_or_404(group_id, session)
        filters.append(Settlement.group_id == group_id)
    if user_id is not None:
        filters.append(
            (Settlement.paid_by_user_id == user_id) | (Settlement.paid_to_user_id == user_id)
        )
    if status is not None:
        filters.append(Settlement.status == SettlementStatus(status))

    total = session.execute(
        select(func.count(Settlement.id)).where(*filters)
    ).scalar_one()

    stmt = (
        select(Settlement)
        .where(*filters)
        .order_by(Settlement.created_at.desc(), Settlement.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(session.execute(stmt).scalars().all()), total
