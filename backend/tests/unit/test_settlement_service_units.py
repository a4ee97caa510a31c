"""
Unit tests for settlement_service branches that need no real database:
input validation, status transitions, and the guards in front of the
conditional split update.
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from backend.app.errors import ConflictError, ErrorCode, NotFoundError, ValidationError
from backend.app.models.settlement import SettlementStatus
from backend.app.services import settlement_service

_PATCH_BASE = "backend.app.services.settlement_service"


def _apply(**overrides):
    kwargs = dict(
        paid_by_user_id=2,
        paid_to_user_id=1,
        amount=100,
        currency="INR",
        session=MagicMock(),
    )
    kwargs.update(overrides)
    return settlement_service.apply_settlement(**kwargs)


def _split(split_id: int, is_settled: bool, settlement_id=None) -> SimpleNamespace:
    return SimpleNamespace(
        id=split_id,
        user_id=2,
        amount=50,
        expense_id=10,
        is_settled=is_settled,
        settlement_id=settlement_id,
        expense=SimpleNamespace(paid_by_user_id=1, currency="INR", group_id=None),
    )


# ── apply_settlement: input validation ─────────────────────────────────────

def test_self_settlement_is_rejected():
    with pytest.raises(ValidationError) as exc_info:
        _apply(paid_by_user_id=5, paid_to_user_id=5)

    assert exc_info.value.code == ErrorCode.SELF_SETTLEMENT
    assert exc_info.value.http_status == 422


@pytest.mark.parametrize("amount", [0, -1, 10.5, True])
def test_non_positive_or_non_integer_amount_is_rejected(amount):
    with pytest.raises(ValidationError) as exc_info:
        _apply(amount=amount)

    assert exc_info.value.code == ErrorCode.INVALID_AMOUNT


@pytest.mark.parametrize("status", ["cancelled", "refunded"])
def test_new_settlement_must_be_pending_or_completed(status):
    with pytest.raises(ValidationError) as exc_info:
        _apply(status=status)

    assert exc_info.value.code == ErrorCode.INVALID_STATUS


def test_missing_group_raises_not_found():
    session = MagicMock()
    session.get.return_value = None

    with pytest.raises(NotFoundError) as exc_info:
        _apply(group_id=99999, session=session)

    assert exc_info.value.code == ErrorCode.GROUP_NOT_FOUND


@patch(f"{_PATCH_BASE}._is_active_member", side_effect=[True, False])
def test_recipient_must_be_active_member(mock_member):
    session = MagicMock()
    session.get.return_value = SimpleNamespace(id=3, currency="INR")

    with pytest.raises(ValidationError) as exc_info:
        _apply(group_id=3, session=session)

    assert exc_info.value.code == ErrorCode.RECIPIENT_NOT_MEMBER


@patch(f"{_PATCH_BASE}._is_active_member", return_value=True)
def test_currency_must_match_group(mock_member):
    session = MagicMock()
    session.get.return_value = SimpleNamespace(id=3, currency="EUR")

    with pytest.raises(ValidationError) as exc_info:
        _apply(group_id=3, session=session, currency="INR")

    assert exc_info.value.code == ErrorCode.CURRENCY_MISMATCH


# ── apply_settlement: split set states ─────────────────────────────────────

@patch(f"{_PATCH_BASE}._load_splits")
def test_all_splits_settled_is_a_noop(mock_load):
    mock_load.return_value = [_split(1, True, settlement_id=7), _split(2, True, settlement_id=7)]
    existing = SimpleNamespace(id=7)
    session = MagicMock()
    session.get.return_value = existing

    result = _apply(split_ids=[1, 2], session=session)

    assert result.noop is True
    assert result.settled_split_count == 0
    assert result.settlement is existing
    session.add.assert_not_called()
    session.execute.assert_not_called()


@patch(f"{_PATCH_BASE}._load_splits")
def test_partially_settled_split_set_conflicts(mock_load):
    mock_load.return_value = [_split(1, True, settlement_id=7), _split(2, False)]
    session = MagicMock()

    with pytest.raises(ConflictError) as exc_info:
        _apply(split_ids=[1, 2], session=session)

    assert exc_info.value.code == ErrorCode.SPLIT_ALREADY_SETTLED
    assert exc_info.value.http_status == 409
    session.add.assert_not_called()


@patch(f"{_PATCH_BASE}._load_splits")
def test_amount_must_equal_split_total(mock_load):
    mock_load.return_value = [_split(1, False), _split(2, False)]

    with pytest.raises(ValidationError) as exc_info:
        _apply(split_ids=[1, 2], amount=99)

    assert exc_info.value.code == ErrorCode.SETTLEMENT_AMOUNT_MISMATCH


@patch(f"{_PATCH_BASE}._load_splits")
def test_split_owed_by_someone_else_is_rejected(mock_load):
    other = _split(1, False)
    other.user_id = 9
    mock_load.return_value = [other]

    with pytest.raises(ValidationError) as exc_info:
        _apply(split_ids=[1], amount=50)

    assert exc_info.value.code == ErrorCode.SPLIT_RELATIONSHIP_MISMATCH


@pytest.mark.parametrize("group_ids", [(3, 4), (3, None)])
@patch(f"{_PATCH_BASE}._load_splits")
def test_splits_from_different_ledgers_are_rejected(mock_load, group_ids):
    first, second = _split(1, False), _split(2, False)
    first.expense.group_id, second.expense.group_id = group_ids
    mock_load.return_value = [first, second]
    session = MagicMock()

    with pytest.raises(ValidationError) as exc_info:
        _apply(split_ids=[1, 2], session=session)

    assert exc_info.value.code == ErrorCode.SPLIT_RELATIONSHIP_MISMATCH
    assert exc_info.value.field == "split_ids"
    session.add.assert_not_called()
    session.execute.assert_not_called()


@patch(f"{_PATCH_BASE}._load_splits")
def test_short_update_rowcount_raises_concurrent_conflict(mock_load):
    """Another writer claimed one of the splits between the read and the update."""
    mock_load.return_value = [_split(1, False), _split(2, False)]
    session = MagicMock()
    session.execute.return_value.rowcount = 1

    with pytest.raises(ConflictError) as exc_info:
        _apply(split_ids=[1, 2], session=session)

    assert exc_info.value.code == ErrorCode.CONCURRENT_SETTLEMENT


@patch(f"{_PATCH_BASE}.balance_service.get_pairwise_balance", return_value=40)
def test_overpayment_is_recorded_with_warning(mock_pairwise):
    session = MagicMock()

    result = _apply(session=session, amount=100)

    assert result.noop is False
    assert [w["code"] for w in result.warnings] == ["OVERPAYMENT"]
    session.add.assert_called_once()
    mock_pairwise.assert_called_once_with(1, 2, session, group_id=None, currency="INR")


@patch(f"{_PATCH_BASE}.balance_service.get_pairwise_balance", return_value=100)
def test_exact_payment_has_no_warning(mock_pairwise):
    result = _apply(amount=100)

    assert result.warnings == []


# ── Status transitions ─────────────────────────────────────────────────────

def test_complete_unknown_settlement_raises_not_found():
    session = MagicMock()
    session.get.return_value = None

    with pytest.raises(NotFoundError) as exc_info:
        settlement_service.complete_settlement(404, session)

    assert exc_info.value.code == ErrorCode.SETTLEMENT_NOT_FOUND


@pytest.mark.parametrize("status", [SettlementStatus.COMPLETED, SettlementStatus.CANCELLED])
def test_terminal_settlement_cannot_transition(status):
    session = MagicMock()
    session.get.return_value = SimpleNamespace(id=1, status=status)

    with pytest.raises(ConflictError) as exc_info:
        settlement_service.cancel_settlement(1, session)

    assert exc_info.value.code == ErrorCode.SETTLEMENT_NOT_PENDING


def test_complete_pending_settlement_sets_settled_at():
    settlement = SimpleNamespace(id=1, status=SettlementStatus.PENDING, settled_at=None, updated_at=None)
    session = MagicMock()
    session.get.return_value = settlement

    result = settlement_service.complete_settlement(1, session)

    assert result.status is SettlementStatus.COMPLETED
    assert result.settled_at is not None
    session.flush.assert_called_once()


def test_list_settlements_raises_group_not_found():
    session = MagicMock()
    session.get.return_value = None

    with pytest.raises(NotFoundError) as exc_info:
        settlement_service.list_settlements(session, group_id=99999)

    assert exc_info.value.code == ErrorCode.GROUP_NOT_FOUND
    assert exc_info.value.http_status == 404
