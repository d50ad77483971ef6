from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


UNCATEGORIZED = "Uncategorized"


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class PeriodType(str, Enum):
    weekly = "weekly"
    bi_weekly = "bi_weekly"
    monthly = "monthly"
    quarterly = "quarterly"
    bi_annually = "bi_annually"
    annually = "annually"

    @property
    def is_native(self) -> bool:
        return self in (PeriodType.weekly, PeriodType.monthly)


MONEY = Numeric(12, 2)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account"
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_account_tenant_name"),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "type", "name", name="uq_category_tenant_type_name"
        ),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)

    account: Mapped["Account"] = relationship("Account", back_populates="transactions")
    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="transactions"
    )

    __table_args__ = (
        Index("ix_transactions_tenant_date", "tenant_id", "date"),
        Index("ix_transactions_tenant_category_date", "tenant_id", "category_id", "date"),
        Index("ix_transactions_tenant_account_date", "tenant_id", "account_id", "date"),
    )


class FinancialCube(Base, TimestampMixin):
    """One pre-aggregated coordinate of a native period."""

    __tablename__ = "financial_cube"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    period_type: Mapped[PeriodType] = mapped_column(SAEnum(PeriodType), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    transaction_type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL")
    )
    category_name: Mapped[str] = mapped_column(String(100), nullable=False)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    account_name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(
        MONEY, nullable=False, default=Decimal("0.00")
    )
    transaction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    @property
    def average_amount(self) -> Decimal:
        if self.transaction_count > 0:
            return self.total_amount / self.transaction_count
        return Decimal("0")

    __table_args__ = (
        Index(
            "ix_financial_cube_tenant_category_start",
            "tenant_id",
            "category_id",
            "period_start",
        ),
        Index(
            "ix_financial_cube_tenant_account_start",
            "tenant_id",
            "account_id",
            "period_start",
        ),
        Index(
            "ix_financial_cube_tenant_type_start",
            "tenant_id",
            "transaction_type",
            "period_start",
        ),
        Index("ix_financial_cube_updated_at", "updated_at"),
    )


# NULL categories must collide too, hence the coalesce.
Index(
    "uq_financial_cube_coordinate",
    FinancialCube.tenant_id,
    FinancialCube.period_type,
    FinancialCube.period_start,
    FinancialCube.transaction_type,
    func.coalesce(FinancialCube.category_id, -1),
    FinancialCube.account_id,
    FinancialCube.is_recurring,
    unique=True,
)
