"""
services/settlement_optimizer.py — Greedy debt simplification.

Pure function over a balance vector. No database, no Flask.

Repeatedly matches the largest remaining debtor with the largest remaining
creditor, transfers min(debt, credit), and puts whichever side still has a
remainder back in line. Every step zeroes at least one party, so n non-zero
balances produce at most n - 1 transactions.

This is a greedy approximation. Finding the true minimum number of
transactions is NP-hard (it reduces to partitioning the vector into the most
zero-sum subsets), and is not attempted here.

Ordering is fully deterministic: heap entries are keyed on
(-remaining, user_id), so equal magnitudes are served lowest user id first.
"""

from __future__ import annotations

import heapq
import logging
from typing import Iterable, Mapping, NamedTuple

from backend.app.errors import ErrorCode, InternalConsistencyError, ValidationError

logger = logging.getLogger(__name__)


class Recommendation(NamedTuple):
    payer_id: int
    recipient_id: int
    amount: int


def _as_items(balances: Mapping[int, int] | Iterable[tuple[int, int]]) -> list[tuple[int, int]]:
    if isinstance(balances, Mapping):
        items = list(balances.items())
    else:
        items = [tuple(b) for b in balances]

    seen: set[int] = set()
    for user_id, _ in items:
        if user_id in seen:
            raise ValidationError(
                ErrorCode.DUPLICATE_BALANCE_USER,
                f"User {user_id} appears more than once in the balance vector.",
                field="balances",
            )
        seen.add(user_id)
    return items


def recommend_settlements(
        balances: Mapping[int, int] | Iterable[tuple[int, int]],
) -> list[Recommendation]:
    """
    Returns payer → recipient transfers that zero every balance.

    Args:
        balances: {user_id: amount} or [(user_id, amount), ...] in minor
                  units; positive = is owed, negative = owes. Must sum to 0.

    Raises:
        InternalConsistencyError — the vector does not sum to zero. A plan
            built on such input would be wrong, so none is produced.
        ValidationError — a user appears twice.
    """
    items = _as_items(balances)

    total = sum(amount for _, amount in items)
    if total != 0:
        logger.error("Refusing to plan settlements for non-zero-sum vector (sum=%s)", total)
        raise InternalConsistencyError(
            f"Balance vector sums to {total}, expected 0. "
            f"Settlement recommendations were not computed."
        )

    creditors = [(-amount, uid) for uid, amount in items if amount > 0]
    debtors = [(amount, uid) for uid, amount in items if amount < 0]
    heapq.heapify(creditors)
    heapq.heapify(debtors)

    plan: list[Recommendation] = []

    while creditors and debtors:
        neg_credit, creditor = heapq.heappop(creditors)
        neg_debt, debtor = heapq.heappop(debtors)
        credit, debt = -neg_credit, -neg_debt

        transfer = min(credit, debt)
        plan.append(Recommendation(debtor, creditor, transfer))

        if credit > transfer:
            heapq.heappush(creditors, (-(credit - transfer), creditor))
        if debt > transfer:
            heapq.heappush(debtors, (-(debt - transfer), debtor))

    # Exact integers plus the zero-sum precondition mean both sides drain together.
    if creditors or debtors:
        raise InternalConsistencyError(
            "Settlement plan left unmatched balances: "
            f"creditors={[(uid, -a) for a, uid in creditors]}, "
            f"debtors={[(uid, a) for a, uid in debtors]}."
        )

    return plan
