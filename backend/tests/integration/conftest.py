"""
tests/integration/conftest.py — Fixtures and helpers for all integration tests.

Design:
  - Tests run against the TestingConfig database: in-memory SQLite by default,
    or TEST_DATABASE_URL (e.g. a PostgreSQL ledger_test database) when set.
  - The app is created once per session using create_app("testing").
  - All tables are created once via db.create_all() at session start.
  - Between tests, all rows are deleted in FK-safe order so tests are isolated.

Helper functions (not fixtures) are provided for common operations:
  - make_user(app, ...)           → user id
  - make_group(app, ...)          → group id
  - add_member(app, ...)          → None
  - make_expense(client, ...)     → HTTP response
  - settle(client, ...)           → HTTP response

Users, groups and memberships are owned by other services, so they are
inserted directly; everything the ledger owns goes through the HTTP API.

These are plain functions (not pytest fixtures) so they can be called with
arbitrary arguments in any test without fixture parameterization overhead.
"""

from __future__ import annotations

import pytest
from sqlalchemy import text

from backend.app import create_app
from backend.app.extensions import db as _db
from backend.app.models.group import Group
from backend.app.models.membership import Membership
from backend.app.models.user import User


# ═══════════════════════════════════════════════════════════════════════════
# Session-scoped app fixture
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(scope="session")
def app():
    """
    Creates the Flask application in 'testing' mode once for the entire test
    session, creates every table, and drops them at teardown.
    """
    flask_app = create_app("testing")

    with flask_app.app_context():
        _db.create_all()

    yield flask_app

    with flask_app.app_context():
        _db.drop_all()


# ═══════════════════════════════════════════════════════════════════════════
# Function-scoped test isolation
# ═══════════════════════════════════════════════════════════════════════════

_TABLES_IN_DELETE_ORDER = (
    "expense_splits",
    "settlements",
    "expenses",
    "memberships",
    "groups",
    "users",
)


@pytest.fixture(autouse=True)
def clean_tables(app):
    """
    Deletes all rows after every test.

    Splits reference settlements, and both reference expenses and users, so
    they go first; users go last.
    """
    yield  # run the test

    with app.app_context():
        _db.session.rollback()  # discard any uncommitted state from a failed test
        for table in _TABLES_IN_DELETE_ORDER:
            _db.session.execute(text(f"DELETE FROM {table}"))
        _db.session.commit()


# ═══════════════════════════════════════════════════════════════════════════
# Client fixture
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def client(app):
    """Flask test client. Each test gets a fresh client (function-scoped)."""
    return app.test_client()


# ═══════════════════════════════════════════════════════════════════════════
# Shared helper functions (not fixtures)
# ═══════════════════════════════════════════════════════════════════════════

def make_user(app, display_name: str = "alice") -> int:
    """Inserts a user and returns its id."""
    with app.app_context():
        user = User(display_name=display_name)
        _db.session.add(user)
        _db.session.commit()
        return user.id


def make_group(app, name: str = "Trip", currency: str = "INR", member_ids=()) -> int:
    """Inserts a group, adds member_ids as active members, and returns its id."""
    with app.app_context():
        group = Group(name=name, currency=currency)
        _db.session.add(group)
        _db.session.flush()
        for user_id in member_ids:
            _db.session.add(Membership(user_id=user_id, group_id=group.id, is_active=True))
        _db.session.commit()
        return group.id


def add_member(app, group_id: int, user_id: int, is_active: bool = True) -> None:
    with app.app_context():
        _db.session.add(Membership(user_id=user_id, group_id=group_id, is_active=is_active))
        _db.session.commit()


def make_expense(
    client,
    paid_by: int,
    amount: int,
    group_id: int | None = None,
    description: str = "Test expense",
    **extra,
):
    """
    POSTs an expense and returns the raw response.

    extra is merged into the body, e.g. split_method="exact", splits=[...],
    participants=[...], currency="EUR".
    """
    body = {
        "paid_by_user_id": paid_by,
        "description": description,
        "amount": amount,
    }
    if group_id is not None:
        body["group_id"] = group_id
    body.update(extra)
    return client.post("/api/v1/expenses", json=body)


def settle(client, paid_by: int, paid_to: int, amount: int, currency: str = "INR", **extra):
    """POSTs a settlement and returns the raw response."""
    body = {
        "paid_by_user_id": paid_by,
        "paid_to_user_id": paid_to,
        "amount": amount,
        "currency": currency,
    }
    body.update(extra)
    return client.post("/api/v1/settlements", json=body)


def split_ids_owed_by(expense_json: dict, user_id: int) -> list[int]:
    return [s["id"] for s in expense_json["splits"] if s["user_id"] == user_id]


def group_balances(client, group_id: int) -> dict[int, int]:
    resp = client.get(f"/api/v1/groups/{group_id}/balances")
    assert resp.status_code == 200, resp.get_json()
    return {b["user_id"]: b["balance"] for b in resp.get_json()["data"]["balances"]}
