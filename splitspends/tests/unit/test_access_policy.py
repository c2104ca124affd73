"""
Unit tests for access_policy.

Membership lookups are served by a mocked session; everything else is plain
SimpleNamespace rows.
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from splitspends.app.errors import AppError, ErrorCode
from splitspends.app.services import access_policy


GROUP = SimpleNamespace(id=1, owner_user_id=1)
EXPENSE = SimpleNamespace(id=10, group_id=1, paid_by_user_id=2)
SPLIT = SimpleNamespace(id=100, expense_id=10, user_id=3)


def _session(member: bool) -> MagicMock:
    session = MagicMock()
    session.execute.return_value.scalar_one_or_none.return_value = object() if member else None
    return session


def test_require_passes_when_allowed():
    access_policy.require(True, "nope")


def test_require_raises_forbidden():
    with pytest.raises(AppError) as exc_info:
        access_policy.require(False, "nope")

    assert exc_info.value.code == ErrorCode.FORBIDDEN
    assert exc_info.value.http_status == 403
    assert exc_info.value.message == "nope"


def test_require_member_raises_for_non_member():
    with pytest.raises(AppError) as exc_info:
        access_policy.require_member(1, 99, _session(member=False))

    assert exc_info.value.code == ErrorCode.FORBIDDEN


def test_is_member():
    assert access_policy.is_member(1, 2, _session(member=True)) is True
    assert access_policy.is_member(1, 2, _session(member=False)) is False


@pytest.mark.parametrize("user_id, expected", [(1, True), (2, True), (3, False)])
def test_can_manage_expense(user_id, expected):
    assert access_policy.can_manage_expense(EXPENSE, GROUP, user_id) is expected


@pytest.mark.parametrize("user_id", [1, 2, 3])
def test_debtor_payer_and_owner_can_settle(user_id):
    assert access_policy.can_settle_split(SPLIT, EXPENSE, GROUP, user_id, _session(member=True))


def test_bystander_cannot_settle():
    session = _session(member=True)

    assert not access_policy.can_settle_split(SPLIT, EXPENSE, GROUP, 4, session)
    session.execute.assert_not_called()


def test_former_member_cannot_settle():
    assert not access_policy.can_settle_split(SPLIT, EXPENSE, GROUP, 3, _session(member=False))
