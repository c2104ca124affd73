"""
tests/integration/conftest.py — Fixtures and helpers for all integration tests.

Design:
  - Tests run against a real database through SQLAlchemy. TestingConfig uses
    in-memory SQLite unless TEST_DATABASE_URL points somewhere else.
  - The app is created once per session using create_app("testing").
  - All tables are created once via db.create_all() at session start.
  - Every test runs inside an application context, so db.session is usable
    directly. Between tests all rows are deleted in FK-safe order.

Helper functions (not fixtures) are provided for common operations:
  - make_user(username)               → User
  - make_group(owner, ...)            → Group (owner is added as a member)
  - add_member(group, user)           → Membership
  - make_expense(group, payer, ...)   → Expense via expense_service.create_expense
  - split_for(expense, user)          → that user's ExpenseSplit

These are plain functions (not pytest fixtures) so they can be called with
arbitrary arguments in any test without fixture parameterization overhead.
"""

from __future__ import annotations

from decimal import Decimal

import pytest
from flask import current_app
from sqlalchemy import text

from splitspends.app import create_app, get_ledger_settings
from splitspends.app.extensions import db as _db
from splitspends.app.models.expense import Expense
from splitspends.app.models.expense_split import ExpenseSplit, SplitType
from splitspends.app.models.group import Group
from splitspends.app.models.membership import Membership
from splitspends.app.models.user import User
from splitspends.app.services import expense_service


# ═══════════════════════════════════════════════════════════════════════════
# Session-scoped app fixture
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(scope="session")
def app():
    """
    Creates the Flask application in 'testing' mode once for the entire test session.
    Tables are created up front and dropped at teardown.
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

@pytest.fixture(autouse=True)
def clean_tables(app):
    """
    Runs each test inside an app context and deletes all rows afterwards.

    Delete order respects FK RESTRICT constraints:
      expense_splits and expenses before memberships, groups and users.
    """
    with app.app_context():
        yield  # run the test

        _db.session.rollback()  # discard any uncommitted state from a failed test

        with _db.engine.connect() as conn:
            conn.execute(text("DELETE FROM expense_splits"))
            conn.execute(text("DELETE FROM expenses"))
            conn.execute(text("DELETE FROM memberships"))
            conn.execute(text("DELETE FROM groups"))
            conn.execute(text("DELETE FROM users"))
            conn.commit()


@pytest.fixture
def settings(app):
    return get_ledger_settings(app)


# ═══════════════════════════════════════════════════════════════════════════
# Shared helper functions (not fixtures)
# ═══════════════════════════════════════════════════════════════════════════

def make_user(username: str = "alice", email: str | None = None) -> User:
    user = User(username=username, email=email or f"{username}@example.com")
    _db.session.add(user)
    _db.session.flush()
    return user


def make_group(owner: User, name: str = "Goa trip", default_currency: str = "USD") -> Group:
    group = Group(name=name, owner_user_id=owner.id, default_currency=default_currency)
    _db.session.add(group)
    _db.session.flush()
    add_member(group, owner)
    return group


def add_member(group: Group, user: User) -> Membership:
    membership = Membership(group_id=group.id, user_id=user.id)
    _db.session.add(membership)
    _db.session.flush()
    return membership


def make_expense(
    group: Group,
    payer: User,
    amount: str = "100.00",
    strategy: SplitType = SplitType.EQUAL,
    participants: list[User] | None = None,
    weights: dict | None = None,
    settings=None,
    **extra,
) -> Expense:
    """Creates an expense as `payer` through the service layer."""
    data = {
        "paid_by_user_id": payer.id,
        "description": extra.pop("description", "Dinner"),
        "amount": Decimal(amount),
        "split": {
            "strategy": strategy,
            "participants": [u.id for u in participants] if participants else None,
            "weights": weights,
        },
        **extra,
    }
    settings = settings or get_ledger_settings(current_app)
    return expense_service.create_expense(group.id, payer.id, data, _db.session, settings)


def split_for(expense: Expense, user: User) -> ExpenseSplit:
    return next(s for s in expense.splits if s.user_id == user.id)


def three_member_group(**group_kwargs) -> tuple[User, User, User, Group]:
    """Alice (owner) + Bob + Carol."""
    alice = make_user("alice")
    bob = make_user("bob")
    carol = make_user("carol")
    group = make_group(alice, **group_kwargs)
    add_member(group, bob)
    add_member(group, carol)
    return alice, bob, carol, group
