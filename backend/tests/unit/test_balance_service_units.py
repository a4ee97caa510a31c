"""
Unit tests for balance_service data-access helpers, pairwise and detailed
balances, and get_balance_response.

These tests intentionally avoid Flask and real DB access. Every DB interaction is
mocked through a fake SQLAlchemy session object or by patching the helpers.
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from backend.app.errors import ErrorCode, NotFoundError, ValidationError
from backend.app.services import balance_service
from backend.app.services.balance_service import MemberBalance, PairwiseDebt

_PATCH_BASE = "backend.app.services.balance_service"


def _mock_scalars_all(session: MagicMock, rows: list) -> None:
    session.execute.return_value.scalars.return_value.all.return_value = rows


def _group_session(currency: str = "INR") -> MagicMock:
    session = MagicMock()
    session.get.return_value = SimpleNamespace(id=1, currency=currency)
    return session


# ── Data access helpers ────────────────────────────────────────────────────

def test_get_active_expenses_returns_rows():
    session = MagicMock()
    rows = [SimpleNamespace(id=1), SimpleNamespace(id=2)]
    _mock_scalars_all(session, rows)

    assert balance_service.get_active_expenses(group_id=10, session=session) == rows
    session.execute.assert_called_once()


def test_get_settlements_returns_rows():
    session = MagicMock()
    rows = [SimpleNamespace(id=101)]
    _mock_scalars_all(session, rows)

    assert balance_service.get_settlements(group_id=3, session=session) == rows


def test_get_member_ids_returns_scalars():
    session = MagicMock()
    _mock_scalars_all(session, [1, 2, 5])

    assert balance_service.get_member_ids(group_id=9, session=session) == [1, 2, 5]


def test_get_members_skips_query_for_no_ids():
    session = MagicMock()

    assert balance_service.get_members([], session) == []
    session.execute.assert_not_called()


# ── Pairwise ───────────────────────────────────────────────────────────────

def test_pairwise_same_user_is_rejected():
    with pytest.raises(ValidationError) as exc_info:
        balance_service.get_pairwise_balance(3, 3, MagicMock(), currency="INR")

    assert exc_info.value.code == ErrorCode.SAME_USER


def test_pairwise_without_group_or_currency_is_rejected():
    with pytest.raises(ValidationError) as exc_info:
        balance_service.get_pairwise_balance(1, 2, MagicMock())

    assert exc_info.value.code == ErrorCode.INVALID_CURRENCY


def test_pairwise_currency_must_match_group():
    with pytest.raises(ValidationError) as exc_info:
        balance_service.get_pairwise_balance(1, 2, _group_session("INR"), group_id=1, currency="USD")

    assert exc_info.value.code == ErrorCode.CURRENCY_MISMATCH


def test_pairwise_missing_group_raises_not_found():
    session = MagicMock()
    session.get.return_value = None

    with pytest.raises(NotFoundError):
        balance_service.get_pairwise_balance(1, 2, session, group_id=404)


@patch(f"{_PATCH_BASE}._get_pair_settlement_rows")
@patch(f"{_PATCH_BASE}._get_pair_split_rows")
def test_pairwise_nets_splits_and_settlements(mock_splits, mock_settlements):
    """
    B owes A 100 (A's expense) and A owes B 30 (B's expense): B owes A 70.
    B has paid A 20 and A paid B 5: B owes A 55.
    """
    a, b = 1, 2
    mock_splits.return_value = [(b, a, 100), (a, b, 30)]
    mock_settlements.return_value = [(b, a, 20), (a, b, 5)]

    assert balance_service.get_pairwise_balance(a, b, MagicMock(), currency="INR") == 55
    assert balance_service.get_pairwise_balance(b, a, MagicMock(), currency="INR") == -55


@patch(f"{_PATCH_BASE}._get_pair_settlement_rows", return_value=[])
@patch(f"{_PATCH_BASE}._get_pair_split_rows", return_value=[])
def test_pairwise_group_scope_uses_group_currency(mock_splits, mock_settlements):
    session = _group_session("EUR")

    assert balance_service.get_pairwise_balance(1, 2, session, group_id=1) == 0
    assert mock_splits.call_args.args[-1] == "EUR"
    assert mock_settlements.call_args.args[-2] == 1


# ── Detailed ───────────────────────────────────────────────────────────────

@patch(f"{_PATCH_BASE}.get_settlements")
@patch(f"{_PATCH_BASE}.get_splits_for_active_expenses")
@patch(f"{_PATCH_BASE}.get_active_expenses")
def test_detailed_balances_net_each_pair(mock_expenses, mock_splits, mock_settlements):
    mock_expenses.return_value = [
        SimpleNamespace(id=10, paid_by_user_id=1),
        SimpleNamespace(id=11, paid_by_user_id=2),
    ]
    mock_splits.return_value = [
        SimpleNamespace(expense_id=10, user_id=1, amount=100),  # payer's own share
        SimpleNamespace(expense_id=10, user_id=2, amount=100),
        SimpleNamespace(expense_id=10, user_id=3, amount=100),
        SimpleNamespace(expense_id=11, user_id=1, amount=40),
        SimpleNamespace(expense_id=11, user_id=2, amount=40),
    ]
    mock_settlements.return_value = [
        SimpleNamespace(paid_by_user_id=3, paid_to_user_id=1, amount=25),
    ]

    rows = balance_service.get_detailed_balances(group_id=1, session=_group_session())

    assert rows == [
        PairwiseDebt(3, 1, 75),
        PairwiseDebt(2, 1, 60),
    ]


# ── get_balance_response ───────────────────────────────────────────────────

def test_get_balance_response_raises_group_not_found():
    session = MagicMock()
    session.get.return_value = None

    with pytest.raises(NotFoundError) as exc_info:
        balance_service.get_balance_response(group_id=999, session=session)

    assert exc_info.value.code == ErrorCode.GROUP_NOT_FOUND


@patch(f"{_PATCH_BASE}.get_group_balances")
def test_get_balance_response_includes_plan_and_zero_sum(mock_balances):
    mock_balances.return_value = [
        MemberBalance(1, "ana", 300),
        MemberBalance(2, "ben", -100),
        MemberBalance(3, "cy", -200),
    ]

    result = balance_service.get_balance_response(group_id=1, session=_group_session())

    assert result["balance_sum"] == 0
    assert result["currency"] == "INR"
    assert [b["user_id"] for b in result["balances"]] == [1, 2, 3]
    assert result["recommended_settlements"] == [
        {"from_user_id": 3, "from_name": "cy", "to_user_id": 1, "to_name": "ana", "amount": 200},
        {"from_user_id": 2, "from_name": "ben", "to_user_id": 1, "to_name": "ana", "amount": 100},
    ]
