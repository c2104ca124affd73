"""
Unit tests for settlement_tracker.

DB-free: splits are SimpleNamespace rows served by a mocked session.get.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from splitspends.app.errors import AlreadySettledError, AppError, ErrorCode
from splitspends.app.models.expense import ExpenseStatus
from splitspends.app.services import settlement_tracker


def _split(split_id=1, status=ExpenseStatus.CONFIRMED, **overrides):
    values = dict(
        id=split_id,
        expense_id=10,
        user_id=2,
        expense=SimpleNamespace(id=10, status=status),
        settled=False,
        settled_at=None,
        settled_by_user_id=None,
        settlement_note=None,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def _session_for(*splits) -> MagicMock:
    by_id = {s.id: s for s in splits}
    session = MagicMock()
    session.get.side_effect = lambda _model, split_id: by_id.get(split_id)
    return session


def test_mark_settled_records_settlement():
    split = _split()
    session = _session_for(split)
    when = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    result = settlement_tracker.mark_settled(1, 2, when, session, note="Paid via UPI")

    assert result is split
    assert split.settled is True
    assert split.settled_at == when
    assert split.settled_by_user_id == 2
    assert split.settlement_note == "Paid via UPI"
    session.flush.assert_called_once()


def test_mark_settled_defaults_timestamp_to_now_utc():
    split = _split()
    before = datetime.now(timezone.utc)

    settlement_tracker.mark_settled(1, 2, None, _session_for(split))

    assert split.settled_at.tzinfo is not None
    assert before <= split.settled_at <= datetime.now(timezone.utc)


def test_mark_settled_treats_naive_timestamp_as_utc():
    split = _split()

    settlement_tracker.mark_settled(1, 2, datetime(2024, 1, 1, 9, 30), _session_for(split))

    assert split.settled_at == datetime(2024, 1, 1, 9, 30, tzinfo=timezone.utc)


def test_mark_settled_converts_offset_timestamp_to_utc():
    split = _split()
    ist = timezone(timedelta(hours=5, minutes=30))

    settlement_tracker.mark_settled(1, 2, datetime(2024, 1, 1, 15, 0, tzinfo=ist), _session_for(split))

    assert split.settled_at.utcoffset() == timedelta(0)
    assert split.settled_at == datetime(2024, 1, 1, 9, 30, tzinfo=timezone.utc)


def test_mark_settled_same_user_is_noop():
    original = datetime(2024, 1, 1, tzinfo=timezone.utc)
    split = _split(settled=True, settled_at=original, settled_by_user_id=2, settlement_note="cash")
    session = _session_for(split)

    result = settlement_tracker.mark_settled(1, 2, original + timedelta(days=5), session, note="again")

    assert result is split
    assert split.settled_at == original
    assert split.settlement_note == "cash"
    session.flush.assert_not_called()


def test_mark_settled_by_other_user_raises_in_strict_mode():
    split = _split(settled=True, settled_by_user_id=2)

    with pytest.raises(AlreadySettledError) as exc_info:
        settlement_tracker.mark_settled(1, 3, None, _session_for(split), strict=True)

    err = exc_info.value
    assert err.code == ErrorCode.ALREADY_SETTLED
    assert err.http_status == 409
    assert err.settled_by_user_id == 2
    assert split.settled_by_user_id == 2


def test_mark_settled_by_other_user_is_noop_in_lenient_mode():
    original = datetime(2024, 1, 1, tzinfo=timezone.utc)
    split = _split(settled=True, settled_at=original, settled_by_user_id=2)
    session = _session_for(split)

    result = settlement_tracker.mark_settled(1, 3, None, session, strict=False)

    assert result is split
    assert split.settled_by_user_id == 2
    assert split.settled_at == original
    session.flush.assert_not_called()


def test_mark_settled_rejects_cancelled_expense():
    split = _split(status=ExpenseStatus.CANCELLED)

    with pytest.raises(AppError) as exc_info:
        settlement_tracker.mark_settled(1, 2, None, _session_for(split))

    assert exc_info.value.code == ErrorCode.EXPENSE_CANCELLED
    assert split.settled is False


def test_mark_settled_unknown_split():
    with pytest.raises(AppError) as exc_info:
        settlement_tracker.mark_settled(404, 2, None, _session_for())

    assert exc_info.value.code == ErrorCode.SPLIT_NOT_FOUND
    assert exc_info.value.http_status == 404


def test_mark_many_settled_sorted_unique_with_shared_timestamp():
    splits = [_split(3), _split(1), _split(2)]
    session = _session_for(*splits)

    result = settlement_tracker.mark_many_settled([3, 1, 2, 3], 2, None, session)

    assert [s.id for s in result] == [1, 2, 3]
    assert len({s.settled_at for s in result}) == 1
    assert all(s.settled for s in result)


def test_mark_many_settled_stops_at_first_error():
    first = _split(1)
    conflicting = _split(2, settled=True, settled_by_user_id=9)
    last = _split(3)
    session = _session_for(first, conflicting, last)

    with pytest.raises(AlreadySettledError):
        settlement_tracker.mark_many_settled([1, 2, 3], 2, None, session)

    assert first.settled is True
    assert last.settled is False
