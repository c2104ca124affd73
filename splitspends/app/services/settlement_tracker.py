"""
services/settlement_tracker.py — Settlement state of individual expense splits.

State machine for a split:

    UNSETTLED ──mark_settled──▶ SETTLED   (terminal)

There is no way back through this module. Reversal is an administrative
operation owned elsewhere.

mark_settled semantics:
  - unsettled                      → settled, settled_at, settled_by recorded
  - settled by the same user       → no-op; returns the split unchanged
                                     (settled_at is NOT refreshed)
  - settled by a different user    → AlreadySettledError (409) in strict mode,
                                     no-op in lenient mode
  - split of a cancelled expense   → EXPENSE_CANCELLED (422)

Concurrency:
  The storage layer serializes concurrent attempts on the same row (row locks
  or optimistic versioning). This module takes no locks of its own.

Layer rules:
  - No Flask imports. Receives plain ints and a SQLAlchemy session.
  - Authorization (who may settle) is checked by the caller beforehand;
    see access_policy.py.
  - Commits are the caller's responsibility — only flush here.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy.orm import Session

from splitspends.app.errors import AlreadySettledError, AppError, ErrorCode
from splitspends.app.models.expense import ExpenseStatus
from splitspends.app.models.expense_split import ExpenseSplit

log = logging.getLogger(__name__)


def _get_split_or_404(split_id: int, session: Session) -> ExpenseSplit:
    """Returns the ExpenseSplit or raises SPLIT_NOT_FOUND (404)."""
    split = session.get(ExpenseSplit, split_id)
    if split is None:
        raise AppError(
            ErrorCode.SPLIT_NOT_FOUND,
            f"Split {split_id} does not exist.",
            404,
        )
    return split


def _normalise_timestamp(occurred_at: datetime | None) -> datetime:
    """Defaults to now. Naive timestamps are taken to be UTC; others are converted."""
    if occurred_at is None:
        return datetime.now(timezone.utc)
    if occurred_at.tzinfo is None:
        return occurred_at.replace(tzinfo=timezone.utc)
    return occurred_at.astimezone(timezone.utc)


def mark_settled(
        split_id: int,
        settled_by_user_id: int,
        occurred_at: datetime | None,
        session: Session,
        *,
        strict: bool = True,
        note: str | None = None,
) -> ExpenseSplit:
    """
    Transitions a split from UNSETTLED to SETTLED.

    Args:
        split_id:           The split to settle.
        settled_by_user_id: The authenticated acting user (audit attribution).
        occurred_at:        When the settlement happened; now (UTC) if None.
        strict:             Reject a settlement by a second, different user.
        note:               Optional free text, e.g. "Paid via UPI".

    Returns:
        The split in its current state.

    Raises:
        AppError(SPLIT_NOT_FOUND, 404)
        AppError(EXPENSE_CANCELLED, 422)
        AlreadySettledError (409) — strict mode, settled by someone else.
    """
    split = _get_split_or_404(split_id, session)

    if split.expense is not None and split.expense.status == ExpenseStatus.CANCELLED:
        raise AppError(
            ErrorCode.EXPENSE_CANCELLED,
            f"Expense {split.expense_id} is cancelled; its splits cannot be settled.",
            422,
        )

    if split.settled:
        if split.settled_by_user_id == settled_by_user_id:
            log.debug("Split %s already settled by user %s; no-op", split_id, settled_by_user_id)
            return split
        if strict:
            raise AlreadySettledError(split_id, split.settled_by_user_id)
        log.debug(
            "Split %s already settled by user %s; ignoring user %s (lenient mode)",
            split_id, split.settled_by_user_id, settled_by_user_id,
        )
        return split

    split.settled = True
    split.settled_at = _normalise_timestamp(occurred_at)
    split.settled_by_user_id = settled_by_user_id
    split.settlement_note = note
    session.flush()

    log.info(
        "Split %s of expense %s settled by user %s",
        split.id, split.expense_id, settled_by_user_id,
    )
    return split


def mark_many_settled(
        split_ids: Iterable[int],
        settled_by_user_id: int,
        occurred_at: datetime | None,
        session: Session,
        *,
        strict: bool = True,
        note: str | None = None,
) -> list[ExpenseSplit]:
    """
    Settles several splits in ascending id order.

    Stops at the first error and lets it propagate; whether the splits
    settled before that point persist is decided by the caller's transaction.
    Duplicate ids are settled once.
    """
    timestamp = _normalise_timestamp(occurred_at)
    return [
        mark_settled(
            split_id,
            settled_by_user_id,
            timestamp,
            session,
            strict=strict,
            note=note,
        )
        for split_id in sorted(set(split_ids))
    ]
