"""
models/expense.py — Expense table definition.

No business logic. No imports from services.

Key design points:
  - `amount` uses Numeric(16, 4), never Float. Four places covers every
    currency exponent the config accepts (0-4).
  - `status` drives the lifecycle: draft -> confirmed -> cancelled.
    Cancelled expenses keep their splits for audit but can no longer be settled.
  - Once confirmed, amount/currency/payer are not edited; only status moves.
  - ExpenseStatus and Category are Python enums so the service layer can use
    them without repeating string literals.
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from splitspends.app.extensions import db


# ── Enum Definitions ───────────────────────────────────────────────────────

class ExpenseStatus(str, enum.Enum):
    DRAFT     = "draft"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class Category(str, enum.Enum):
    FOOD          = "food"
    GROCERIES     = "groceries"
    TRANSPORT     = "transport"
    ACCOMMODATION = "accommodation"
    ENTERTAINMENT = "entertainment"
    SHOPPING      = "shopping"
    UTILITIES     = "utilities"
    HEALTHCARE    = "healthcare"
    TRAVEL        = "travel"
    OTHER         = "other"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Ensure SQLAlchemy stores enum values (e.g., 'confirmed'), not names ('CONFIRMED')."""
    return [member.value for member in enum_cls]


# ── Model ──────────────────────────────────────────────────────────────────

class Expense(db.Model):
    __tablename__ = "expenses"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_expenses_amount_positive"),
        CheckConstraint(
            "LENGTH(TRIM(description)) > 0",
            name="ck_expenses_description_nonempty",
        ),
        Index("idx_expenses_group_status", "group_id", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    group_id: Mapped[int] = mapped_column(
        ForeignKey("groups.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    paid_by_user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    description: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
    )

    # NUMERIC(16, 4). Never Float. Wide enough for any accepted exponent
    # (JPY:0 .. BHD:3); the calculator enforces the currency's own scale.
    amount: Mapped[Decimal] = mapped_column(
        Numeric(16, 4),
        nullable=False,
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="USD",
        server_default="USD",
    )

    category: Mapped[Category] = mapped_column(
        Enum(
            Category,
            name="category_enum",
            values_callable=_enum_values,
        ),
        nullable=False,
        default=Category.OTHER,
        server_default=Category.OTHER.value,
    )

    status: Mapped[ExpenseStatus] = mapped_column(
        Enum(
            ExpenseStatus,
            name="expense_status_enum",
            values_callable=_enum_values,
        ),
        nullable=False,
        default=ExpenseStatus.CONFIRMED,
        server_default=ExpenseStatus.CONFIRMED.value,
    )

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Set on every status transition.
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # ── Relationships ──────────────────────────────────────────────────────

    group: Mapped["Group"] = relationship(  # noqa: F821
        "Group",
        back_populates="expenses",
    )

    payer: Mapped["User"] = relationship(  # noqa: F821
        "User",
        foreign_keys=[paid_by_user_id],
    )

    # ON DELETE CASCADE — splits are owned by their expense.
    splits: Mapped[list["ExpenseSplit"]] = relationship(  # noqa: F821
        "ExpenseSplit",
        back_populates="expense",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ExpenseSplit.user_id",
    )

    # ── Convenience properties ─────────────────────────────────────────────
    # Read-only; they only inspect loaded column values.

    @property
    def is_cancelled(self) -> bool:
        return self.status == ExpenseStatus.CANCELLED

    @property
    def is_fully_settled(self) -> bool:
        """True when the expense has splits and every one of them is settled."""
        return bool(self.splits) and all(s.settled for s in self.splits)

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<Expense id={self.id} "
            f"group_id={self.group_id} "
            f"amount={self.amount} {self.currency} "
            f"status={self.status.value if self.status else None}>"
        )
