"""
models/expense_split.py — ExpenseSplit table definition.

One row per participant per expense. After creation only the settlement
columns (settled, settled_at, settled_by_user_id, settlement_note) change,
and they change exactly once: UNSETTLED -> SETTLED.

Key design points:
  - `share_amount` uses Numeric(16, 4), the same scale as Expense.amount, so
    three-place currencies store exactly. Never Float. Zero is allowed: an
    equal split of 0.01 between three people leaves two of them owing nothing.
  - expense_id is ON DELETE CASCADE — splits are owned by their expense.
  - UNIQUE(expense_id, user_id) — a participant appears once per expense.
  - `percentage` / `share_count` record the weight the share was derived from
    for PERCENTAGE / SHARE splits; they are NULL otherwise.

sum(share_amount) == expense.amount is guaranteed by split_calculator.py at
creation time; nothing here recomputes it.
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    false,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from splitspends.app.extensions import db


class SplitType(str, enum.Enum):
    EQUAL      = "equal"
    CUSTOM     = "custom"
    PERCENTAGE = "percentage"
    SHARE      = "share"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class ExpenseSplit(db.Model):
    __tablename__ = "expense_splits"

    __table_args__ = (
        UniqueConstraint("expense_id", "user_id", name="uq_expense_splits_expense_user"),
        CheckConstraint("share_amount >= 0", name="ck_expense_splits_amount_non_negative"),
        CheckConstraint(
            "percentage IS NULL OR (percentage >= 0 AND percentage <= 100)",
            name="ck_expense_splits_percentage_range",
        ),
        CheckConstraint(
            "share_count IS NULL OR share_count > 0",
            name="ck_expense_splits_share_count_positive",
        ),
        Index("idx_expense_splits_user_settled", "user_id", "settled"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    expense_id: Mapped[int] = mapped_column(
        ForeignKey("expenses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )

    split_type: Mapped[SplitType] = mapped_column(
        Enum(
            SplitType,
            name="split_type_enum",
            values_callable=_enum_values,
        ),
        nullable=False,
        default=SplitType.EQUAL,
    )

    share_amount: Mapped[Decimal] = mapped_column(
        Numeric(16, 4),
        nullable=False,
    )

    percentage: Mapped[Decimal | None] = mapped_column(
        Numeric(7, 4),
        nullable=True,
    )

    share_count: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )

    # ── Settlement state ───────────────────────────────────────────────────

    settled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=false(),
    )

    settled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    settled_by_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=True,
    )

    # e.g. "Paid via UPI"
    settlement_note: Mapped[str | None] = mapped_column(
        String(500),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # ── Relationships ──────────────────────────────────────────────────────

    expense: Mapped["Expense"] = relationship(  # noqa: F821
        "Expense",
        back_populates="splits",
    )

    user: Mapped["User"] = relationship(  # noqa: F821
        "User",
        foreign_keys=[user_id],
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<ExpenseSplit id={self.id} "
            f"expense_id={self.expense_id} "
            f"user_id={self.user_id} "
            f"share_amount={self.share_amount} "
            f"settled={self.settled}>"
        )
