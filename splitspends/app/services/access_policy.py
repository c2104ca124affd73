"""
services/access_policy.py — Capability checks evaluated before the ledger core.

The split calculator and the settlement tracker know nothing about who is
asking. Callers decide first, using the predicates here, and only then call
into the core:

    allowed = access_policy.can_settle_split(split, expense, group, caller_id, session)
    access_policy.require(allowed, "Only the debtor, the payer or the group owner ...")
    settlement_tracker.mark_settled(...)

Rules:
  - Group data: members only.
  - Expense status changes: the payer or the group owner.
  - Settling a split: the debtor (split.user_id), the creditor (the expense
    payer) or the group owner — and they must still be a group member.

Non-members receive FORBIDDEN (403), never a 404.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from splitspends.app.errors import AppError, ErrorCode
from splitspends.app.models.membership import Membership


def is_member(group_id: int, user_id: int, session: Session) -> bool:
    membership = session.execute(
        select(Membership).where(
            Membership.group_id == group_id,
            Membership.user_id == user_id,
        )
    ).scalar_one_or_none()
    return membership is not None


def require(allowed: bool, message: str) -> None:
    """Raises FORBIDDEN (403) unless `allowed`."""
    if not allowed:
        raise AppError(ErrorCode.FORBIDDEN, message, 403)


def require_member(group_id: int, user_id: int, session: Session) -> None:
    require(
        is_member(group_id, user_id, session),
        f"You are not a member of group {group_id}.",
    )


def can_manage_expense(expense, group, user_id: int) -> bool:
    """The original payer or the group owner."""
    return user_id in (expense.paid_by_user_id, group.owner_user_id)


def can_settle_split(split, expense, group, user_id: int, session: Session) -> bool:
    if user_id not in (split.user_id, expense.paid_by_user_id, group.owner_user_id):
        return False
    return is_member(group.id, user_id, session)
