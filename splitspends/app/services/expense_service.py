"""
services/expense_service.py — Expense business logic; the caller of the ledger core.

Flow for a new expense:
  1. Look up the group, check the caller and payer are members.
  2. Resolve participants (EQUAL without participants → all current members)
     and check every participant is a member.
  3. Resolve the currency's minor unit (UnsupportedCurrencyError if unknown).
  4. split_calculator.compute(...) → shares summing exactly to the amount.
  5. Write the expense and all of its splits in one flush.

Rules enforced here:
  PAYER_NOT_MEMBER (422)          — paid_by_user_id must be a group member
  SPLIT_USER_NOT_MEMBER (422)     — every participant must be a group member
  FORBIDDEN (403)                 — caller must be a member; status changes need
                                    payer/owner; settling needs debtor/payer/owner
  INVALID_STATUS_TRANSITION (422) — draft → confirmed | cancelled,
                                    confirmed → cancelled, nothing else
  EXPENSE_FULLY_SETTLED (422)     — a fully settled expense cannot be cancelled
  EXPENSE_NOT_CONFIRMED (422)     — only confirmed expenses can be settled

Layer rules:
  - No Flask imports. No current_app, request, g, or HTTP knowledge.
  - Receives plain ints and dicts; returns ORM objects or raises AppError.
  - Commits are the caller's responsibility — only flush here.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from splitspends.app.errors import AppError, ErrorCode
from splitspends.app.models.expense import Category, Expense, ExpenseStatus
from splitspends.app.models.expense_split import ExpenseSplit, SplitType
from splitspends.app.models.group import Group
from splitspends.app.models.membership import Membership
from splitspends.app.services import access_policy, settlement_tracker
from splitspends.app.services.split_calculator import SplitShare, compute, resolve_places
from splitspends.config import LedgerSettings

log = logging.getLogger(__name__)

_DEFAULT_SETTINGS = LedgerSettings()
_AVERAGE_QUANTUM = Decimal("0.01")

_ALLOWED_TRANSITIONS: dict[ExpenseStatus, frozenset[ExpenseStatus]] = {
    ExpenseStatus.DRAFT:     frozenset({ExpenseStatus.CONFIRMED, ExpenseStatus.CANCELLED}),
    ExpenseStatus.CONFIRMED: frozenset({ExpenseStatus.CANCELLED}),
    ExpenseStatus.CANCELLED: frozenset(),
}


# ── Private helpers ────────────────────────────────────────────────────────

def _get_group_or_404(group_id: int, session: Session) -> Group:
    """Returns the Group or raises GROUP_NOT_FOUND (404)."""
    group = session.get(Group, group_id)
    if group is None:
        raise AppError(
            ErrorCode.GROUP_NOT_FOUND,
            f"Group {group_id} does not exist.",
            404,
        )
    return group


def _get_expense_or_404(expense_id: int, session: Session) -> Expense:
    """Returns the Expense (any status) or raises EXPENSE_NOT_FOUND (404)."""
    expense = session.get(Expense, expense_id)
    if expense is None:
        raise AppError(
            ErrorCode.EXPENSE_NOT_FOUND,
            f"Expense {expense_id} does not exist.",
            404,
        )
    return expense


def _get_split_or_404(split_id: int, session: Session) -> ExpenseSplit:
    split = session.get(ExpenseSplit, split_id)
    if split is None:
        raise AppError(
            ErrorCode.SPLIT_NOT_FOUND,
            f"Split {split_id} does not exist.",
            404,
        )
    return split


def _get_member_ids(group_id: int, session: Session) -> list[int]:
    """Returns the user_ids of all current members of a group, ascending."""
    stmt = (
        select(Membership.user_id)
        .where(Membership.group_id == group_id)
        .order_by(Membership.user_id)
    )
    return list(session.execute(stmt).scalars().all())


def _validate_payer_is_member(
        paid_by_user_id: int,
        group_id: int,
        member_ids: list[int],
) -> None:
    if paid_by_user_id not in member_ids:
        raise AppError(
            ErrorCode.PAYER_NOT_MEMBER,
            f"User {paid_by_user_id} is not a member of group {group_id}.",
            422,
            field="paid_by_user_id",
        )


def _validate_split_users_are_members(
        participant_ids: Iterable[int],
        group_id: int,
        member_ids: list[int],
) -> None:
    """Raises SPLIT_USER_NOT_MEMBER (422) for the first participant not in the group."""
    member_set = set(member_ids)
    for user_id in participant_ids:
        if user_id not in member_set:
            raise AppError(
                ErrorCode.SPLIT_USER_NOT_MEMBER,
                f"User {user_id} is not a member of group {group_id}.",
                422,
                field="participants",
            )


def _resolve_participants(split_request: dict, member_ids: list[int]) -> list[int]:
    """
    Participants named in the request; otherwise all members for EQUAL,
    or the weight keys for the weighted strategies.
    """
    participants = split_request.get("participants")
    if participants:
        return list(participants)
    if split_request["strategy"] == SplitType.EQUAL:
        return list(member_ids)
    return list((split_request.get("weights") or {}).keys())


def _create_split_rows(
        expense: Expense,
        split_type: SplitType,
        shares: list[SplitShare],
        session: Session,
) -> None:
    """Creates ExpenseSplit rows for an expense from computed shares."""
    for share in shares:
        session.add(ExpenseSplit(
            expense_id=expense.id,
            user_id=share.participant_id,
            split_type=split_type,
            share_amount=share.share_amount,
            percentage=share.percentage,
            share_count=share.share_count,
            settled=False,
        ))
    session.flush()


def _transition(
        expense: Expense,
        target: ExpenseStatus,
        caller_id: int,
        session: Session,
) -> Expense:
    access_policy.require_member(expense.group_id, caller_id, session)

    group = _get_group_or_404(expense.group_id, session)
    access_policy.require(
        access_policy.can_manage_expense(expense, group, caller_id),
        "Only the original payer or group owner may change this expense's status.",
    )

    if target not in _ALLOWED_TRANSITIONS[expense.status]:
        raise AppError(
            ErrorCode.INVALID_STATUS_TRANSITION,
            f"Expense {expense.id} cannot move from "
            f"{expense.status.value} to {target.value}.",
            422,
            field="status",
        )

    previous = expense.status
    expense.status = target
    expense.updated_at = datetime.now(timezone.utc)
    session.flush()

    log.info(
        "Expense %s moved %s -> %s by user %s",
        expense.id, previous.value, target.value, caller_id,
    )
    return expense


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; they were written as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _unsettled_debts_query(user_id: int):
    """Unsettled splits owed by user_id on confirmed expenses someone else paid."""
    return (
        select(ExpenseSplit)
        .join(Expense, ExpenseSplit.expense_id == Expense.id)
        .where(
            ExpenseSplit.user_id == user_id,
            ExpenseSplit.settled.is_(False),
            Expense.status == ExpenseStatus.CONFIRMED,
            Expense.paid_by_user_id != user_id,
        )
    )


# ── Public service functions ───────────────────────────────────────────────

def create_expense(
        group_id: int,
        caller_id: int,
        data: dict,
        session: Session,
        settings: LedgerSettings = _DEFAULT_SETTINGS,
) -> Expense:
    """
    Records a new expense and its splits.

    Args:
        group_id:  The group this expense belongs to.
        caller_id: The authenticated user creating the expense.
        data:      Validated dict from CreateExpenseSchema. The nested "split"
                   dict carries strategy, participants and weights.
        settings:  Ledger policy (currency registry, external payer flag).

    Returns:
        The newly created Expense ORM object (with splits loaded).
    """
    group = _get_group_or_404(group_id, session)
    access_policy.require_member(group_id, caller_id, session)

    paid_by_user_id: int = data["paid_by_user_id"]
    amount: Decimal = data["amount"]
    status: ExpenseStatus = data.get("status", ExpenseStatus.CONFIRMED)
    split_request: dict = data["split"]
    strategy: SplitType = split_request["strategy"]

    if status == ExpenseStatus.CANCELLED:
        raise AppError(
            ErrorCode.INVALID_STATUS_TRANSITION,
            "An expense cannot be created in the cancelled state.",
            422,
            field="status",
        )

    member_ids = _get_member_ids(group_id, session)
    _validate_payer_is_member(paid_by_user_id, group_id, member_ids)

    participants = _resolve_participants(split_request, member_ids)
    _validate_split_users_are_members(participants, group_id, member_ids)

    currency = (data.get("currency") or group.default_currency or settings.default_currency).upper()
    places = resolve_places(currency, settings.currency_minor_units)

    # Compute before writing anything so a rejected split leaves no rows.
    shares = compute(
        amount,
        strategy,
        participants,
        split_request.get("weights"),
        payer_id=paid_by_user_id,
        allow_external_payer=settings.allow_external_payer,
        places=places,
    )

    expense = Expense(
        group_id=group_id,
        paid_by_user_id=paid_by_user_id,
        description=data["description"],
        amount=amount,
        currency=currency,
        category=data.get("category", Category.OTHER),
        status=status,
        notes=data.get("notes"),
    )
    session.add(expense)
    session.flush()  # populate expense.id before creating splits

    _create_split_rows(expense, strategy, shares, session)
    session.refresh(expense)

    log.info(
        "Expense %s created in group %s: %s %s split %s over %d participant(s)",
        expense.id, group_id, expense.amount, currency, strategy.value, len(shares),
    )
    return expense


def get_expense(
        expense_id: int,
        caller_id: int,
        session: Session,
) -> Expense:
    """Returns a single expense including its splits. Members only."""
    expense = _get_expense_or_404(expense_id, session)
    access_policy.require_member(expense.group_id, caller_id, session)
    return expense


def list_expenses(
        group_id: int,
        caller_id: int,
        session: Session,
        include_cancelled: bool = False,
) -> list[Expense]:
    """Returns a group's expenses, newest first. Cancelled ones only on request."""
    _get_group_or_404(group_id, session)
    access_policy.require_member(group_id, caller_id, session)

    stmt = select(Expense).where(Expense.group_id == group_id)
    if not include_cancelled:
        stmt = stmt.where(Expense.status != ExpenseStatus.CANCELLED)
    stmt = stmt.order_by(Expense.created_at.desc(), Expense.id.desc())
    return list(session.execute(stmt).scalars().all())


def confirm_expense(expense_id: int, caller_id: int, session: Session) -> Expense:
    """draft → confirmed. Payer or group owner only."""
    expense = _get_expense_or_404(expense_id, session)
    return _transition(expense, ExpenseStatus.CONFIRMED, caller_id, session)


def cancel_expense(expense_id: int, caller_id: int, session: Session) -> Expense:
    """
    draft | confirmed → cancelled. Payer or group owner only.

    Splits are kept for audit; the settlement tracker refuses to settle them.
    A fully settled expense cannot be cancelled.
    """
    expense = _get_expense_or_404(expense_id, session)

    if expense.is_fully_settled:
        raise AppError(
            ErrorCode.EXPENSE_FULLY_SETTLED,
            f"Expense {expense_id} is fully settled and cannot be cancelled.",
            422,
        )

    return _transition(expense, ExpenseStatus.CANCELLED, caller_id, session)


def settle_split(
        split_id: int,
        caller_id: int,
        session: Session,
        settings: LedgerSettings = _DEFAULT_SETTINGS,
        note: str | None = None,
        occurred_at: datetime | None = None,
) -> ExpenseSplit:
    """
    Marks one split as settled on behalf of caller_id.

    The capability check happens here, before the settlement tracker runs.
    """
    split = _get_split_or_404(split_id, session)
    _require_can_settle(split, caller_id, session)

    return settlement_tracker.mark_settled(
        split_id,
        caller_id,
        occurred_at,
        session,
        strict=settings.strict_settlement,
        note=note,
    )


def settle_splits(
        split_ids: Iterable[int],
        caller_id: int,
        session: Session,
        settings: LedgerSettings = _DEFAULT_SETTINGS,
        note: str | None = None,
        occurred_at: datetime | None = None,
) -> list[ExpenseSplit]:
    """
    Bulk settle. Every split is authorised before any of them is touched,
    so a FORBIDDEN on the last id leaves the earlier ones unsettled.
    """
    ids = sorted(set(split_ids))
    for split_id in ids:
        _require_can_settle(_get_split_or_404(split_id, session), caller_id, session)

    return settlement_tracker.mark_many_settled(
        ids,
        caller_id,
        occurred_at,
        session,
        strict=settings.strict_settlement,
        note=note,
    )


def _require_can_settle(split: ExpenseSplit, caller_id: int, session: Session) -> None:
    expense = split.expense
    group = _get_group_or_404(expense.group_id, session)

    access_policy.require(
        access_policy.can_settle_split(split, expense, group, caller_id, session),
        "Only the debtor, the payer or the group owner may settle this split.",
    )

    if expense.status == ExpenseStatus.DRAFT:
        raise AppError(
            ErrorCode.EXPENSE_NOT_CONFIRMED,
            f"Expense {expense.id} is still a draft; confirm it before settling.",
            422,
        )


def expense_summary(expense_id: int, caller_id: int, session: Session) -> dict:
    """
    Totals for one expense: settled vs. unsettled amounts and participant count.
    """
    expense = get_expense(expense_id, caller_id, session)

    settled = sum((s.share_amount for s in expense.splits if s.settled), Decimal("0"))
    unsettled = sum((s.share_amount for s in expense.splits if not s.settled), Decimal("0"))

    return {
        "expense_id": expense.id,
        "currency": expense.currency,
        "total_amount": expense.amount,
        "settled_amount": settled,
        "unsettled_amount": unsettled,
        "participant_count": len(expense.splits),
        "fully_settled": expense.is_fully_settled,
    }


def outstanding_for_user(
        group_id: int,
        user_id: int,
        session: Session,
) -> dict[str, Decimal]:
    """
    What user_id still owes in a group, per currency.

    Counts unsettled splits of confirmed expenses paid by someone else.
    Amounts are summed in Python so they stay exact Decimals on every backend.
    """
    _get_group_or_404(group_id, session)

    stmt = (
        _unsettled_debts_query(user_id)
        .where(Expense.group_id == group_id)
        .order_by(ExpenseSplit.id)
    )
    totals: dict[str, Decimal] = {}
    for split in session.execute(stmt).scalars().all():
        currency = split.expense.currency
        totals[currency] = totals.get(currency, Decimal("0")) + split.share_amount
    return totals


def list_overdue_splits(
        user_id: int,
        session: Session,
        now: datetime | None = None,
        threshold_days: int | None = None,
        settings: LedgerSettings = _DEFAULT_SETTINGS,
) -> list[ExpenseSplit]:
    """
    Unsettled debts of user_id whose expense is older than the threshold.

    threshold_days defaults to settings.overdue_threshold_days (30).
    """
    days = settings.overdue_threshold_days if threshold_days is None else threshold_days
    cutoff = _as_utc(now or datetime.now(timezone.utc)) - timedelta(days=days)

    stmt = _unsettled_debts_query(user_id).order_by(ExpenseSplit.id)
    return [
        split
        for split in session.execute(stmt).scalars().all()
        if _as_utc(split.expense.created_at) < cutoff
    ]


def _stats_by_currency(expenses: Iterable[Expense]) -> dict[str, dict]:
    stats: dict[str, dict] = {}
    for expense in expenses:
        entry = stats.setdefault(expense.currency, {
            "total_expenses": 0,
            "total_amount": Decimal("0"),
            "settled_amount": Decimal("0"),
        })
        entry["total_expenses"] += 1
        entry["total_amount"] += expense.amount
        if expense.is_fully_settled:
            entry["settled_amount"] += expense.amount

    for entry in stats.values():
        entry["average_amount"] = (
            entry["total_amount"] / entry["total_expenses"]
        ).quantize(_AVERAGE_QUANTUM, rounding=ROUND_HALF_UP)
    return stats


def expense_stats_for_user(user_id: int, session: Session) -> dict[str, dict]:
    """
    Count, total, settled total and average of the expenses user_id is part of.

    An expense counts when user_id paid it or holds a split on it; cancelled
    expenses are left out. Keyed by currency, each value holds
    total_expenses, total_amount, settled_amount and average_amount (the
    average rounded half-up to 2 places).
    """
    stmt = (
        select(Expense)
        .where(
            Expense.status != ExpenseStatus.CANCELLED,
            or_(
                Expense.paid_by_user_id == user_id,
                Expense.splits.any(ExpenseSplit.user_id == user_id),
            ),
        )
        .order_by(Expense.id)
    )
    return _stats_by_currency(session.execute(stmt).scalars().all())


def expense_stats_for_group(group_id: int, caller_id: int, session: Session) -> dict[str, dict]:
    """Same figures as expense_stats_for_user, over every live expense of a group."""
    _get_group_or_404(group_id, session)
    access_policy.require_member(group_id, caller_id, session)

    stmt = (
        select(Expense)
        .where(
            Expense.group_id == group_id,
            Expense.status != ExpenseStatus.CANCELLED,
        )
        .order_by(Expense.id)
    )
    return _stats_by_currency(session.execute(stmt).scalars().all())


def net_balance_between(
        group_id: int,
        user_a: int,
        user_b: int,
        session: Session,
) -> dict[str, Decimal]:
    """
    Net unsettled balance between two members of a group, per currency.

    Positive: user_b owes user_a. Negative: user_a owes user_b. Only unsettled
    splits of confirmed expenses one of them paid for the other count.
    """
    _get_group_or_404(group_id, session)
    if user_a == user_b:
        return {}

    stmt = (
        select(ExpenseSplit)
        .join(Expense, ExpenseSplit.expense_id == Expense.id)
        .where(
            Expense.group_id == group_id,
            Expense.status == ExpenseStatus.CONFIRMED,
            ExpenseSplit.settled.is_(False),
            or_(
                and_(Expense.paid_by_user_id == user_a, ExpenseSplit.user_id == user_b),
                and_(Expense.paid_by_user_id == user_b, ExpenseSplit.user_id == user_a),
            ),
        )
        .order_by(ExpenseSplit.id)
    )
    balances: dict[str, Decimal] = {}
    for split in session.execute(stmt).scalars().all():
        currency = split.expense.currency
        signed = split.share_amount if split.user_id == user_b else -split.share_amount
        balances[currency] = balances.get(currency, Decimal("0")) + signed
    return balances
