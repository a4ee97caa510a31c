"""Add split sum integrity trigger.

Revision: 002_add_split_sum_trigger
Created:  2026-10-18

The split calculator and expense_service both guarantee
sum(expense_splits.amount) == expenses.amount. This trigger is the database
backstop for writes that bypass the service layer.

Why a trigger and not a CHECK constraint:
  A CHECK constraint is evaluated per row and cannot aggregate sibling rows
  against a parent column. A row-level constraint trigger can.

Trigger design:
  Function : fn_check_split_sum()
    - Resolves the affected expense_id from NEW (INSERT/UPDATE) or OLD (DELETE).
    - Compares SUM(amount) of its splits with expenses.amount.
    - Skips expenses that no longer exist (cascade delete of the parent).
    - Raises SQLSTATE 23514 (check_violation) on a mismatch.

  Trigger  : trg_expense_splits_sum_check
    - AFTER INSERT OR UPDATE OR DELETE ON expense_splits, FOR EACH ROW
    - DEFERRABLE INITIALLY DEFERRED: it runs at COMMIT, so an expense edit
      that deletes every split and inserts new ones in one unit of work is
      only checked once the final rows are in place.

Append-only: never edit after it has been applied; add a new migration instead.
"""

from __future__ import annotations

from alembic import op

# ── Alembic revision identifiers ──────────────────────────────────────────
revision: str = "002_add_split_sum_trigger"
down_revision: str | None = "001_initial_schema"
branch_labels: tuple | None = None
depends_on: tuple | None = None


# ── SQL definitions ────────────────────────────────────────────────────────

_CREATE_FUNCTION = """
CREATE OR REPLACE FUNCTION fn_check_split_sum()
RETURNS TRIGGER
LANGUAGE plpgsql
AS $$
DECLARE
    v_expense_id  INTEGER;
    v_split_sum   BIGINT;
    v_expense_amt BIGINT;
BEGIN
    IF TG_OP = 'DELETE' THEN
        v_expense_id := OLD.expense_id;
    ELSE
        v_expense_id := NEW.expense_id;
    END IF;

    SELECT amount
      INTO v_expense_amt
      FROM expenses
     WHERE id = v_expense_id;

    -- Parent already gone (cascade delete): nothing to compare.
    IF NOT FOUND THEN
        RETURN NULL;
    END IF;

    SELECT COALESCE(SUM(amount), 0)
      INTO v_split_sum
      FROM expense_splits
     WHERE expense_id = v_expense_id;

    IF v_split_sum <> v_expense_amt THEN
        RAISE EXCEPTION
            'split sum (%) does not equal expense amount (%) for expense id=%',
            v_split_sum, v_expense_amt, v_expense_id
            USING ERRCODE = '23514';  -- check_violation
    END IF;

    RETURN NULL;
END;
$$;
"""

_CREATE_TRIGGER = """
CREATE CONSTRAINT TRIGGER trg_expense_splits_sum_check
    AFTER INSERT OR UPDATE OR DELETE
    ON expense_splits
    DEFERRABLE INITIALLY DEFERRED
    FOR EACH ROW
    EXECUTE FUNCTION fn_check_split_sum();
"""

_DROP_TRIGGER = "DROP TRIGGER IF EXISTS trg_expense_splits_sum_check ON expense_splits;"
_DROP_FUNCTION = "DROP FUNCTION IF EXISTS fn_check_split_sum();"


def upgrade() -> None:
    """Creates fn_check_split_sum() and then the trigger that calls it."""
    op.execute(_CREATE_FUNCTION)
    op.execute(_CREATE_TRIGGER)


def downgrade() -> None:
    """Drops the trigger first (it references the function), then the function."""
    op.execute(_DROP_TRIGGER)
    op.execute(_DROP_FUNCTION)
