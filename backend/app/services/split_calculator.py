"""
services/split_calculator.py — Expense → per-participant shares.

Pure functions. No database, no Flask. Every result satisfies:

    sum(share.amount for share in result) == total      (exactly)

Amounts are integer minor units. Percentages are Decimal and only ever
multiply an integer before a single rounding step; no float is involved.

Methods:
  equal       floor(total / n) for everyone, the remainder to the participant
              with the highest user id (last in user-id order).
  percentage  round(total * pct / 100) with ROUND_HALF_UP per participant;
              the rounding discrepancy goes to the largest share (ties →
              lowest user id). A negative discrepancy the largest share
              cannot absorb continues to the next largest.
  exact       caller-supplied amounts, validated against the total and never
              corrected.

Payer policy: the payer is a participant like anyone else when listed. The
payer's own share is what they consumed; only the other shares are debts
(see outstanding_obligations).
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping, NamedTuple, Sequence

from backend.app.errors import ErrorCode, InternalConsistencyError, ValidationError
from backend.app.models.expense import SplitMethod

_HUNDRED = Decimal("100")
_CENT = Decimal("0.01")


class SplitShare(NamedTuple):
    user_id: int
    amount: int
    percentage: Decimal | None = None


# ── Input validation ───────────────────────────────────────────────────────

def _validate_total(total: int) -> None:
    if isinstance(total, bool) or not isinstance(total, int):
        raise ValidationError(
            ErrorCode.INVALID_AMOUNT,
            f"Expense amount must be an integer number of minor units, got {total!r}.",
            field="amount",
        )
    if total <= 0:
        raise ValidationError(
            ErrorCode.INVALID_AMOUNT,
            f"Expense amount must be greater than zero, got {total}.",
            field="amount",
        )


def _validate_participants(participants: Sequence[int]) -> list[int]:
    """Returns participants sorted by user id; rejects empty or duplicate lists."""
    if not participants:
        raise ValidationError(
            ErrorCode.NO_PARTICIPANTS,
            "An expense needs at least one participant.",
            field="participants",
        )
    ordered = sorted(participants)
    if len(set(ordered)) != len(ordered):
        raise ValidationError(
            ErrorCode.DUPLICATE_SPLIT_USER,
            "The same user appears more than once in the participant list.",
            field="participants",
        )
    return ordered


def _validate_params_cover(
        params: Mapping[int, object] | None,
        participants: list[int],
        method: SplitMethod,
) -> Mapping[int, object]:
    """Params must name exactly the participant set — no missing, no extra users."""
    if params is None:
        raise ValidationError(
            ErrorCode.SPLIT_PARAMS_MISMATCH,
            f"Split method '{method.value}' requires a value for every participant.",
            field="splits",
        )
    missing = set(participants) - set(params)
    extra = set(params) - set(participants)
    if missing or extra:
        raise ValidationError(
            ErrorCode.SPLIT_PARAMS_MISMATCH,
            f"Split values must cover exactly the participants "
            f"(missing: {sorted(missing)}, unexpected: {sorted(extra)}).",
            field="splits",
        )
    return params


# ── Methods ────────────────────────────────────────────────────────────────

def split_equal(total: int, participants: Sequence[int]) -> list[SplitShare]:
    """
    Divides total evenly. The participant with the highest user id holds the
    remainder, so the result never depends on the order the caller listed
    participants in.
    """
    _validate_total(total)
    ordered = _validate_participants(participants)

    n = len(ordered)
    base = total // n
    percentage = (_HUNDRED / n).quantize(_CENT, rounding=ROUND_HALF_UP)

    shares = [SplitShare(uid, base, percentage) for uid in ordered[:-1]]
    shares.append(SplitShare(ordered[-1], total - base * (n - 1), percentage))
    return shares


def split_by_percentage(
        total: int,
        participants: Sequence[int],
        percentages: Mapping[int, Decimal] | None,
) -> list[SplitShare]:
    """
    Rounds each share ROUND_HALF_UP, then hands the whole rounding discrepancy
    to the largest share (ties → lowest user id).

    Example: 101 at 33/33/34 → raw [33, 33, 34] (sum 100) → [33, 33, 35].
    Example: 2 at 25/25/25/25 → raw [1, 1, 1, 1] (sum 4) → [0, 0, 1, 1].
    """
    _validate_total(total)
    ordered = _validate_participants(participants)
    params = _validate_params_cover(percentages, ordered, SplitMethod.PERCENTAGE)

    pcts: dict[int, Decimal] = {}
    for uid in ordered:
        pct = Decimal(str(params[uid]))
        if not pct.is_finite() or pct < 0 or pct > _HUNDRED:
            raise ValidationError(
                ErrorCode.SPLIT_PARAMS_MISMATCH,
                f"Percentage for user {uid} must be between 0 and 100, got {pct}.",
                field="splits",
            )
        pcts[uid] = pct

    pct_sum = sum(pcts.values(), Decimal("0"))
    if pct_sum != _HUNDRED:
        raise ValidationError(
            ErrorCode.PERCENTAGE_SUM_MISMATCH,
            f"Percentages must sum to exactly 100, got {pct_sum}.",
            field="splits",
        )

    raw = {
        uid: int((Decimal(total) * pcts[uid] / _HUNDRED).to_integral_value(rounding=ROUND_HALF_UP))
        for uid in ordered
    }

    discrepancy = total - sum(raw.values())
    # Largest first, ties → lowest user id (sort is stable over ascending ids).
    by_size = sorted(ordered, key=lambda uid: -raw[uid])
    if discrepancy > 0:
        raw[by_size[0]] += discrepancy
    else:
        # Over-rounding: take it back from the largest share, spilling to the
        # next largest only if a share would go below zero.
        for uid in by_size:
            if discrepancy == 0:
                break
            taken = min(raw[uid], -discrepancy)
            raw[uid] -= taken
            discrepancy += taken

    if discrepancy != 0 or any(v < 0 for v in raw.values()):
        raise InternalConsistencyError(
            f"Percentage reconciliation failed for total {total}: {raw}."
        )

    return [SplitShare(uid, raw[uid], pcts[uid]) for uid in ordered]


def split_exact(
        total: int,
        participants: Sequence[int],
        amounts: Mapping[int, int] | None,
) -> list[SplitShare]:
    """Validates caller-supplied amounts. Never corrects them."""
    _validate_total(total)
    ordered = _validate_participants(participants)
    params = _validate_params_cover(amounts, ordered, SplitMethod.EXACT)

    shares = []
    for uid in ordered:
        amount = params[uid]
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise ValidationError(
                ErrorCode.INVALID_AMOUNT,
                f"Split amount for user {uid} must be a non-negative integer, got {amount!r}.",
                field="splits",
            )
        shares.append(SplitShare(uid, amount, None))

    split_sum = sum(s.amount for s in shares)
    if split_sum != total:
        raise ValidationError(
            ErrorCode.SPLIT_SUM_MISMATCH,
            f"Split amounts ({split_sum}) do not equal expense amount ({total}).",
            field="splits",
        )
    return shares


# ── Public entry point ─────────────────────────────────────────────────────

def compute_splits(
        total: int,
        method: SplitMethod | str,
        participants: Sequence[int],
        params: Mapping[int, object] | None = None,
) -> list[SplitShare]:
    """
    Turns one expense into per-participant shares, ordered by user id.

    Args:
        total:        Expense amount in minor units (> 0).
        method:       SplitMethod or its string value.
        participants: User ids sharing the expense (payer included if they
                      consumed part of it).
        params:       {user_id: percentage} for percentage,
                      {user_id: amount} for exact, ignored for equal.

    Raises:
        ValidationError — nothing is computed or applied partially.
    """
    try:
        method = SplitMethod(method)
    except ValueError:
        raise ValidationError(
            ErrorCode.INVALID_SPLIT_METHOD,
            f"'{method}' is not a split method. "
            f"Valid values: {', '.join(m.value for m in SplitMethod)}.",
            field="split_method",
        )

    if method is SplitMethod.EQUAL:
        shares = split_equal(total, participants)
    elif method is SplitMethod.PERCENTAGE:
        shares = split_by_percentage(total, participants, params)
    else:
        shares = split_exact(total, participants, params)

    computed = sum(s.amount for s in shares)
    if computed != total:
        raise InternalConsistencyError(
            f"{method.value} split produced sum {computed} for total {total}."
        )
    return shares


def outstanding_obligations(
        shares: Iterable[SplitShare],
        payer_id: int,
) -> list[SplitShare]:
    """The shares that are owed to the payer, i.e. everyone else's."""
    return [s for s in shares if s.user_id != payer_id]
