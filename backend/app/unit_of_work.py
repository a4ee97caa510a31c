"""
unit_of_work.py — Commit-or-rollback boundary for ledger writes.

Services only flush(). Whoever calls a service (a route handler, a script,
a test) opens exactly one unit of work around it:

    with unit_of_work(db.session) as session:
        result = settlement_service.apply_settlement(..., session=session)

On normal exit the transaction is committed. On any exception it is rolled
back and the exception propagates unchanged, so an aborted operation leaves
no partial expense, split, or settlement behind.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


@contextmanager
def unit_of_work(session: Session) -> Iterator[Session]:
    try:
        yield session
        session.commit()
    except Exception:
        logger.debug("Rolling back unit of work", exc_info=True)
        session.rollback()
        raise
