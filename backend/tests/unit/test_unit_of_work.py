"""Unit tests for unit_of_work: commit on success, rollback and re-raise on failure."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from backend.app.errors import ConflictError, ErrorCode
from backend.app.unit_of_work import unit_of_work


def test_commits_on_normal_exit():
    session = MagicMock()

    with unit_of_work(session) as s:
        assert s is session

    session.commit.assert_called_once()
    session.rollback.assert_not_called()


def test_rolls_back_and_reraises_app_error():
    session = MagicMock()

    with pytest.raises(ConflictError) as exc_info:
        with unit_of_work(session):
            raise ConflictError(ErrorCode.CONCURRENT_SETTLEMENT, "claimed elsewhere")

    assert exc_info.value.code == ErrorCode.CONCURRENT_SETTLEMENT
    session.rollback.assert_called_once()
    session.commit.assert_not_called()


def test_failed_commit_is_rolled_back():
    session = MagicMock()
    session.commit.side_effect = RuntimeError("connection lost")

    with pytest.raises(RuntimeError):
        with unit_of_work(session):
            pass

    session.rollback.assert_called_once()
