"""
tests/integration/test_balances.py — Integration tests for balance reads.

Endpoints covered:
  GET /groups/:id/balances            → 200
  GET /groups/:id/balances/detailed   → 200
  GET /balances/pairwise              → 200
  GET /users/:id/balances             → 200

Rules verified:
  - balance_sum is 0 after every write, including a random mixed sequence
  - soft-deleted expenses and non-completed settlements do not count
  - recommended settlements zero every balance in at most n-1 transfers
  - pairwise and per-user views agree with group balances
"""

from __future__ import annotations

import random

import pytest

from .conftest import (
    add_member,
    group_balances,
    make_expense,
    make_group,
    make_user,
    settle,
    split_ids_owed_by,
)


@pytest.fixture
def trio(app):
    alice = make_user(app, "alice")
    bob = make_user(app, "bob")
    carol = make_user(app, "carol")
    group_id = make_group(app, "Flat", "INR", member_ids=[alice, bob, carol])
    return alice, bob, carol, group_id


# ═══════════════════════════════════════════════════════════════════════════
# Group balances
# ═══════════════════════════════════════════════════════════════════════════

class TestGroupBalances:

    def test_empty_group_all_zero(self, client, trio):
        alice, bob, carol, group_id = trio

        data = client.get(f"/api/v1/groups/{group_id}/balances").get_json()["data"]

        assert data["group_id"] == group_id
        assert data["currency"] == "INR"
        assert data["balance_sum"] == 0
        assert data["recommended_settlements"] == []
        assert {b["user_id"] for b in data["balances"]} == {alice, bob, carol}

    def test_one_payer_two_debtors(self, client, trio):
        alice, bob, carol, group_id = trio
        make_expense(client, alice, 9000, group_id)

        data = client.get(f"/api/v1/groups/{group_id}/balances").get_json()["data"]

        assert [(b["user_id"], b["name"], b["balance"]) for b in data["balances"]] == [
            (alice, "alice", 6000),
            (bob, "bob", -3000),
            (carol, "carol", -3000),
        ]
        assert data["recommended_settlements"] == [
            {"from_user_id": bob, "from_name": "bob", "to_user_id": alice,
             "to_name": "alice", "amount": 3000},
            {"from_user_id": carol, "from_name": "carol", "to_user_id": alice,
             "to_name": "alice", "amount": 3000},
        ]

    def test_completed_settlement_is_netted(self, client, trio):
        alice, bob, carol, group_id = trio
        make_expense(client, alice, 9000, group_id)
        settle(client, bob, alice, 1000, group_id=group_id)

        assert group_balances(client, group_id) == {alice: 5000, bob: -2000, carol: -3000}

    def test_pending_settlement_is_not_counted_until_completed(self, client, trio):
        alice, bob, carol, group_id = trio
        make_expense(client, alice, 9000, group_id)
        pending = settle(client, bob, alice, 3000, group_id=group_id, status="pending")
        settlement_id = pending.get_json()["data"]["settlement"]["id"]

        assert group_balances(client, group_id)[bob] == -3000

        client.post(f"/api/v1/settlements/{settlement_id}/complete")

        assert group_balances(client, group_id)[bob] == 0

    def test_deleted_expense_excluded(self, client, trio):
        alice, bob, carol, group_id = trio
        kept = make_expense(client, alice, 300, group_id)
        dropped = make_expense(client, bob, 600, group_id).get_json()["data"]
        assert kept.status_code == 201

        client.delete(f"/api/v1/expenses/{dropped['id']}")

        assert group_balances(client, group_id) == {alice: 200, bob: -100, carol: -100}

    def test_former_member_with_debt_still_listed(self, app, client):
        alice = make_user(app, "alice")
        bob = make_user(app, "bob")
        group_id = make_group(app, "Old flat", "INR", member_ids=[alice])
        add_member(app, group_id, bob)
        make_expense(client, alice, 200, group_id)
        with app.app_context():
            from backend.app.extensions import db
            from backend.app.models.membership import Membership
            db.session.query(Membership).filter_by(user_id=bob).update({"is_active": False})
            db.session.commit()

        assert group_balances(client, group_id) == {alice: 100, bob: -100}

    def test_unknown_group_is_404(self, client):
        resp = client.get("/api/v1/groups/99999/balances")

        assert resp.status_code == 404
        assert resp.get_json()["error"]["code"] == "GROUP_NOT_FOUND"

    def test_plan_settles_everyone(self, app, client):
        """Settling along the recommended plan leaves every balance at zero."""
        users = [make_user(app, f"user{i}") for i in range(5)]
        group_id = make_group(app, "Big trip", "INR", member_ids=users)
        make_expense(client, users[0], 10_000, group_id)
        make_expense(client, users[1], 7_001, group_id)
        make_expense(client, users[2], 333, group_id, participants=users[2:])

        plan = client.get(f"/api/v1/groups/{group_id}/balances").get_json()["data"][
            "recommended_settlements"
        ]
        non_zero = sum(1 for v in group_balances(client, group_id).values() if v != 0)
        assert len(plan) <= non_zero - 1

        for step in plan:
            resp = settle(client, step["from_user_id"], step["to_user_id"], step["amount"],
                          group_id=group_id)
            assert resp.status_code == 201

        assert set(group_balances(client, group_id).values()) == {0}


# ═══════════════════════════════════════════════════════════════════════════
# Zero-sum over a random sequence of writes
# ═══════════════════════════════════════════════════════════════════════════

def test_balance_sum_stays_zero_over_random_operations(app, client):
    rng = random.Random(4242)
    users = [make_user(app, f"member{i}") for i in range(6)]
    group_id = make_group(app, "Chaos", "INR", member_ids=users)
    expense_ids: list[int] = []

    for _ in range(40):
        op = rng.choice(["equal", "exact", "percentage", "settle", "delete"])
        payer = rng.choice(users)

        if op == "equal":
            resp = make_expense(
                client, payer, rng.randint(1, 50_000), group_id,
                participants=rng.sample(users, rng.randint(1, len(users))),
            )
        elif op == "exact":
            parts = rng.sample(users, rng.randint(1, len(users)))
            amounts = [rng.randint(0, 5_000) for _ in parts]
            amounts[-1] += 1
            resp = make_expense(
                client, payer, sum(amounts), group_id,
                split_method="exact",
                splits=[{"user_id": u, "amount": a} for u, a in zip(parts, amounts)],
            )
        elif op == "percentage":
            parts = rng.sample(users, 3)
            resp = make_expense(
                client, payer, rng.randint(1, 99_999), group_id,
                split_method="percentage",
                splits=[
                    {"user_id": parts[0], "percentage": "33.33"},
                    {"user_id": parts[1], "percentage": "33.33"},
                    {"user_id": parts[2], "percentage": "33.34"},
                ],
            )
        elif op == "settle":
            recipient = rng.choice([u for u in users if u != payer])
            resp = settle(client, payer, recipient, rng.randint(1, 2_000), group_id=group_id)
        else:
            if not expense_ids:
                continue
            resp = client.delete(f"/api/v1/expenses/{expense_ids.pop(rng.randrange(len(expense_ids)))}")

        assert resp.status_code in (200, 201), resp.get_json()
        if op in ("equal", "exact", "percentage"):
            expense_ids.append(resp.get_json()["data"]["id"])

        data = client.get(f"/api/v1/groups/{group_id}/balances").get_json()["data"]
        assert data["balance_sum"] == 0
        assert sum(b["balance"] for b in data["balances"]) == 0


# ═══════════════════════════════════════════════════════════════════════════
# Detailed / pairwise / per-user
# ═══════════════════════════════════════════════════════════════════════════

class TestDetailedBalances:

    def test_pairs_are_netted(self, client, trio):
        alice, bob, carol, group_id = trio
        make_expense(client, alice, 300, group_id)                    # bob, carol owe alice 100
        make_expense(client, bob, 60, group_id, participants=[alice, bob])  # alice owes bob 30

        data = client.get(f"/api/v1/groups/{group_id}/balances/detailed").get_json()["data"]

        assert data["debts"] == [
            {"from_user_id": carol, "to_user_id": alice, "amount": 100},
            {"from_user_id": bob, "to_user_id": alice, "amount": 70},
        ]


class TestPairwiseBalance:

    def test_positive_means_user_b_owes_user_a(self, client, trio):
        alice, bob, _, group_id = trio
        make_expense(client, alice, 300, group_id)

        resp = client.get(f"/api/v1/balances/pairwise?user_a={alice}&user_b={bob}&group_id={group_id}")

        assert resp.status_code == 200
        assert resp.get_json()["data"]["amount"] == 100

        reverse = client.get(f"/api/v1/balances/pairwise?user_a={bob}&user_b={alice}&group_id={group_id}")
        assert reverse.get_json()["data"]["amount"] == -100

    def test_settlement_reduces_pairwise_debt(self, client, trio):
        alice, bob, _, group_id = trio
        make_expense(client, alice, 300, group_id)
        settle(client, bob, alice, 40, group_id=group_id)

        resp = client.get(f"/api/v1/balances/pairwise?user_a={alice}&user_b={bob}&group_id={group_id}")

        assert resp.get_json()["data"]["amount"] == 60

    def test_personal_expenses_use_default_currency(self, app, client):
        alice = make_user(app, "alice")
        bob = make_user(app, "bob")
        make_expense(client, alice, 500, participants=[alice, bob])
        make_expense(client, alice, 500, participants=[alice, bob], currency="USD")

        inr = client.get(f"/api/v1/balances/pairwise?user_a={alice}&user_b={bob}")
        usd = client.get(f"/api/v1/balances/pairwise?user_a={alice}&user_b={bob}&currency=usd")

        assert inr.get_json()["data"]["amount"] == 250
        assert usd.get_json()["data"]["amount"] == 250

    def test_same_user_rejected(self, client, trio):
        alice, _, _, _ = trio

        resp = client.get(f"/api/v1/balances/pairwise?user_a={alice}&user_b={alice}")

        assert resp.status_code == 422
        assert resp.get_json()["error"]["code"] == "SAME_USER"

    def test_missing_user_b_is_400(self, client):
        resp = client.get("/api/v1/balances/pairwise?user_a=1")

        assert resp.status_code == 400
        assert resp.get_json()["error"]["code"] == "MISSING_FIELD"


class TestUserBalances:

    def test_user_position_across_groups_and_personal(self, app, client, trio):
        alice, bob, carol, group_id = trio
        make_expense(client, alice, 300, group_id)
        make_expense(client, bob, 1000, participants=[alice, bob])

        data = client.get(f"/api/v1/users/{alice}/balances").get_json()["data"]

        assert data["currency"] == "INR"
        assert data["balances"] == [
            {"user_id": bob, "name": "bob", "amount": -400},
            {"user_id": carol, "name": "carol", "amount": 100},
        ]
        assert data["total_owed"] == 100
        assert data["total_due"] == 400
        assert data["net_balance"] == -300
