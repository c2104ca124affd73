"""
Unit tests for expense_service helpers and the paths that fail before any write.

DB-free: session.get / session.execute are mocked.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from splitspends.app.errors import AppError, ErrorCode, InvalidSplitError
from splitspends.app.models.expense import ExpenseStatus
from splitspends.app.models.expense_split import SplitType
from splitspends.app.services import expense_service


def _mock_scalars_all(session: MagicMock, rows: list) -> None:
    session.execute.return_value.scalars.return_value.all.return_value = rows


def _member_session(member_ids: list[int], group=None) -> MagicMock:
    """Every membership lookup succeeds; the member list is `member_ids`."""
    session = MagicMock()
    session.get.return_value = group or SimpleNamespace(id=1, owner_user_id=1, default_currency="USD")
    session.execute.return_value.scalar_one_or_none.return_value = object()
    _mock_scalars_all(session, member_ids)
    return session


def _expense_data(**overrides) -> dict:
    data = {
        "paid_by_user_id": 1,
        "description": "Dinner",
        "amount": Decimal("100.00"),
        "status": ExpenseStatus.CONFIRMED,
        "split": {"strategy": SplitType.EQUAL, "participants": None, "weights": None},
    }
    data.update(overrides)
    return data


# ── Lookups ────────────────────────────────────────────────────────────────

def test_get_group_or_404_raises_when_missing():
    session = MagicMock()
    session.get.return_value = None

    with pytest.raises(AppError) as exc_info:
        expense_service._get_group_or_404(group_id=404, session=session)

    assert exc_info.value.code == ErrorCode.GROUP_NOT_FOUND
    assert exc_info.value.http_status == 404


def test_get_expense_or_404_raises_when_missing():
    session = MagicMock()
    session.get.return_value = None

    with pytest.raises(AppError) as exc_info:
        expense_service._get_expense_or_404(expense_id=404, session=session)

    assert exc_info.value.code == ErrorCode.EXPENSE_NOT_FOUND


def test_every_not_found_code_has_a_lookup():
    session = MagicMock()
    session.get.return_value = None
    raised = set()
    for lookup in (
        expense_service._get_group_or_404,
        expense_service._get_expense_or_404,
        expense_service._get_split_or_404,
    ):
        with pytest.raises(AppError) as exc_info:
            lookup(404, session)
        raised.add(exc_info.value.code)

    registered = {
        value for name, value in vars(ErrorCode).items()
        if name.endswith("_NOT_FOUND")
    }
    assert registered == raised


def test_get_member_ids_reads_scalars():
    session = MagicMock()
    _mock_scalars_all(session, [1, 2, 3])

    assert expense_service._get_member_ids(group_id=7, session=session) == [1, 2, 3]
    session.execute.assert_called_once()


# ── Membership validation ──────────────────────────────────────────────────

def test_validate_payer_is_member_raises():
    with pytest.raises(AppError) as exc_info:
        expense_service._validate_payer_is_member(9, 1, [1, 2])

    assert exc_info.value.code == ErrorCode.PAYER_NOT_MEMBER
    assert exc_info.value.field == "paid_by_user_id"


def test_validate_split_users_are_members_raises_for_first_outsider():
    with pytest.raises(AppError) as exc_info:
        expense_service._validate_split_users_are_members([1, 8, 9], 1, [1, 2])

    assert exc_info.value.code == ErrorCode.SPLIT_USER_NOT_MEMBER
    assert "User 8" in exc_info.value.message


# ── Participant resolution ─────────────────────────────────────────────────

def test_resolve_participants_prefers_explicit_list():
    request = {"strategy": SplitType.EQUAL, "participants": [2, 3]}

    assert expense_service._resolve_participants(request, [1, 2, 3]) == [2, 3]


def test_resolve_participants_equal_defaults_to_all_members():
    request = {"strategy": SplitType.EQUAL, "participants": None}

    assert expense_service._resolve_participants(request, [1, 2, 3]) == [1, 2, 3]


def test_resolve_participants_weighted_uses_weight_keys():
    request = {"strategy": SplitType.SHARE, "participants": None, "weights": {3: 1, 1: 2}}

    assert sorted(expense_service._resolve_participants(request, [1, 2, 3])) == [1, 3]


# ── create_expense failure paths ───────────────────────────────────────────

def test_create_expense_rejects_cancelled_status():
    session = _member_session([1, 2])

    with pytest.raises(AppError) as exc_info:
        expense_service.create_expense(1, 1, _expense_data(status=ExpenseStatus.CANCELLED), session)

    assert exc_info.value.code == ErrorCode.INVALID_STATUS_TRANSITION
    session.add.assert_not_called()


def test_create_expense_rejected_split_writes_nothing():
    session = _member_session([1, 2])
    data = _expense_data(split={
        "strategy": SplitType.CUSTOM,
        "participants": [1, 2],
        "weights": {1: Decimal("30.00"), 2: Decimal("69.99")},
    })

    with pytest.raises(InvalidSplitError) as exc_info:
        expense_service.create_expense(1, 1, data, session)

    assert exc_info.value.code == ErrorCode.SPLIT_SUM_MISMATCH
    session.add.assert_not_called()
    session.flush.assert_not_called()


def test_create_expense_unknown_currency_writes_nothing():
    session = _member_session([1, 2])

    with pytest.raises(AppError) as exc_info:
        expense_service.create_expense(1, 1, _expense_data(currency="XYZ"), session)

    assert exc_info.value.code == ErrorCode.UNSUPPORTED_CURRENCY
    session.add.assert_not_called()


def test_create_expense_payer_must_be_member():
    session = _member_session([1, 2])

    with pytest.raises(AppError) as exc_info:
        expense_service.create_expense(1, 1, _expense_data(paid_by_user_id=5), session)

    assert exc_info.value.code == ErrorCode.PAYER_NOT_MEMBER


# ── Status transitions ─────────────────────────────────────────────────────

def _expense(status, splits=()):
    return SimpleNamespace(
        id=10,
        group_id=1,
        paid_by_user_id=2,
        status=status,
        splits=list(splits),
        updated_at=None,
        is_fully_settled=bool(splits) and all(s.settled for s in splits),
    )


def test_transition_confirmed_to_draft_is_invalid():
    expense = _expense(ExpenseStatus.CONFIRMED)
    session = _member_session([1, 2])

    with pytest.raises(AppError) as exc_info:
        expense_service._transition(expense, ExpenseStatus.DRAFT, 2, session)

    assert exc_info.value.code == ErrorCode.INVALID_STATUS_TRANSITION
    assert expense.status == ExpenseStatus.CONFIRMED


def test_transition_from_cancelled_is_invalid():
    expense = _expense(ExpenseStatus.CANCELLED)

    with pytest.raises(AppError) as exc_info:
        expense_service._transition(expense, ExpenseStatus.CONFIRMED, 2, _member_session([1, 2]))

    assert exc_info.value.code == ErrorCode.INVALID_STATUS_TRANSITION


def test_transition_requires_payer_or_owner():
    expense = _expense(ExpenseStatus.DRAFT)

    with pytest.raises(AppError) as exc_info:
        expense_service._transition(expense, ExpenseStatus.CONFIRMED, 3, _member_session([1, 2, 3]))

    assert exc_info.value.code == ErrorCode.FORBIDDEN


def test_transition_draft_to_confirmed_stamps_updated_at():
    expense = _expense(ExpenseStatus.DRAFT)
    session = _member_session([1, 2])

    expense_service._transition(expense, ExpenseStatus.CONFIRMED, 2, session)

    assert expense.status == ExpenseStatus.CONFIRMED
    assert expense.updated_at is not None
    session.flush.assert_called_once()


def test_cancel_fully_settled_expense_rejected():
    expense = _expense(ExpenseStatus.CONFIRMED, splits=[SimpleNamespace(settled=True)])
    session = MagicMock()
    session.get.return_value = expense

    with pytest.raises(AppError) as exc_info:
        expense_service.cancel_expense(10, 2, session)

    assert exc_info.value.code == ErrorCode.EXPENSE_FULLY_SETTLED


# ── Settlement guards ──────────────────────────────────────────────────────

def test_require_can_settle_rejects_draft():
    expense = _expense(ExpenseStatus.DRAFT)
    split = SimpleNamespace(id=100, user_id=3, expense=expense)
    session = _member_session([1, 2, 3], group=SimpleNamespace(id=1, owner_user_id=1))

    with pytest.raises(AppError) as exc_info:
        expense_service._require_can_settle(split, 3, session)

    assert exc_info.value.code == ErrorCode.EXPENSE_NOT_CONFIRMED


def test_require_can_settle_rejects_bystander():
    expense = _expense(ExpenseStatus.CONFIRMED)
    split = SimpleNamespace(id=100, user_id=3, expense=expense)
    session = _member_session([1, 2, 3, 4], group=SimpleNamespace(id=1, owner_user_id=1))

    with pytest.raises(AppError) as exc_info:
        expense_service._require_can_settle(split, 4, session)

    assert exc_info.value.code == ErrorCode.FORBIDDEN


# ── Overdue ────────────────────────────────────────────────────────────────

def test_list_overdue_splits_filters_by_threshold():
    now = datetime(2024, 6, 1, tzinfo=timezone.utc)
    old = SimpleNamespace(id=1, expense=SimpleNamespace(created_at=datetime(2024, 4, 1)))
    recent = SimpleNamespace(id=2, expense=SimpleNamespace(created_at=now - timedelta(days=3)))
    session = MagicMock()
    _mock_scalars_all(session, [old, recent])

    assert expense_service.list_overdue_splits(7, session, now=now) == [old]
    assert expense_service.list_overdue_splits(7, session, now=now, threshold_days=1) == [old, recent]
