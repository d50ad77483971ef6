from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.orm import Session

from database import insert_ignoring_duplicates
from models import FinancialCube, PeriodType, TransactionType
from periods import Period

# Rows per INSERT statement; keeps SQLite under its bound-parameter limit.
INSERT_CHUNK_SIZE = 500


@dataclass(frozen=True)
class CubeCoordinate:
    """A (type, category, recurring) slice of a period, across all accounts."""

    transaction_type: TransactionType
    category_id: Optional[int]
    is_recurring: bool


@dataclass(frozen=True)
class RegenerationTarget:
    tenant_id: str
    period_type: PeriodType
    period_start: date
    transaction_type: TransactionType
    category_id: Optional[int]
    is_recurring: bool
    period_end: date = field(compare=False)

    @property
    def coordinate(self) -> CubeCoordinate:
        return CubeCoordinate(self.transaction_type, self.category_id, self.is_recurring)

    @property
    def period(self) -> Period:
        return Period(self.period_type, self.period_start, self.period_end)

    @classmethod
    def for_period(
        cls, tenant_id: str, period: Period, coordinate: CubeCoordinate
    ) -> "RegenerationTarget":
        return cls(
            tenant_id=tenant_id,
            period_type=period.period_type,
            period_start=period.start,
            transaction_type=coordinate.transaction_type,
            category_id=coordinate.category_id,
            is_recurring=coordinate.is_recurring,
            period_end=period.end,
        )


@dataclass(frozen=True)
class DimensionFilter:
    """Restricts an aggregation to named coordinates and/or one account."""

    coordinates: tuple[CubeCoordinate, ...] = ()
    account_id: Optional[int] = None


@dataclass
class CubeRow:
    tenant_id: str
    period_type: PeriodType
    period_start: date
    period_end: date
    transaction_type: TransactionType
    category_id: Optional[int]
    category_name: str
    account_id: int
    account_name: str
    is_recurring: bool
    total_amount: Decimal
    transaction_count: int

    def as_insert_params(self, now: datetime) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "period_type": self.period_type,
            "period_start": self.period_start,
            "period_end": self.period_end,
            "transaction_type": self.transaction_type,
            "category_id": self.category_id,
            "category_name": self.category_name,
            "account_id": self.account_id,
            "account_name": self.account_name,
            "is_recurring": self.is_recurring,
            "total_amount": self.total_amount,
            "transaction_count": self.transaction_count,
            "created_at": now,
            "updated_at": now,
        }


def category_matches(column, category_id: Optional[int]):
    if category_id is None:
        return column.is_(None)
    return column == category_id


class CubeStore:
    """Persistence for ``financial_cube``. Rows are deleted and re-inserted, never updated."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def insert_many(self, rows: Sequence[CubeRow]) -> None:
        if not rows:
            return
        now = datetime.utcnow()
        params = [row.as_insert_params(now) for row in rows]
        for offset in range(0, len(params), INSERT_CHUNK_SIZE):
            chunk = params[offset : offset + INSERT_CHUNK_SIZE]
            self.session.execute(
                insert_ignoring_duplicates(self.session, FinancialCube, chunk)
            )

    def delete_coordinates(
        self,
        tenant_id: str,
        keys: Iterable[tuple[PeriodType, date, TransactionType, Optional[int], bool]],
    ) -> int:
        conditions = [
            and_(
                FinancialCube.period_type == period_type,
                FinancialCube.period_start == period_start,
                FinancialCube.transaction_type == transaction_type,
                category_matches(FinancialCube.category_id, category_id),
                FinancialCube.is_recurring == is_recurring,
            )
            for period_type, period_start, transaction_type, category_id, is_recurring in keys
        ]
        if not conditions:
            return 0
        result = self.session.execute(
            delete(FinancialCube).where(
                FinancialCube.tenant_id == tenant_id, or_(*conditions)
            )
        )
        return result.rowcount or 0

    def delete_period(
        self, tenant_id: str, period: Period, account_id: Optional[int] = None
    ) -> int:
        stmt = delete(FinancialCube).where(
            FinancialCube.tenant_id == tenant_id,
            FinancialCube.period_type == period.period_type,
            FinancialCube.period_start == period.start,
        )
        if account_id is not None:
            stmt = stmt.where(FinancialCube.account_id == account_id)
        return self.session.execute(stmt).rowcount or 0

    def clear_tenant(self, tenant_id: str, account_id: Optional[int] = None) -> int:
        stmt = delete(FinancialCube).where(FinancialCube.tenant_id == tenant_id)
        if account_id is not None:
            stmt = stmt.where(FinancialCube.account_id == account_id)
        return self.session.execute(stmt).rowcount or 0

    def count(
        self,
        tenant_id: str,
        period_type: Optional[PeriodType] = None,
        period_start: Optional[date] = None,
        account_id: Optional[int] = None,
    ) -> int:
        stmt = select(func.count(FinancialCube.id)).where(
            FinancialCube.tenant_id == tenant_id
        )
        if period_type is not None:
            stmt = stmt.where(FinancialCube.period_type == period_type)
        if period_start is not None:
            stmt = stmt.where(FinancialCube.period_start == period_start)
        if account_id is not None:
            stmt = stmt.where(FinancialCube.account_id == account_id)
        return int(self.session.execute(stmt).scalar_one() or 0)

    def tenants(self) -> list[str]:
        stmt = (
            select(FinancialCube.tenant_id)
            .distinct()
            .order_by(FinancialCube.tenant_id)
        )
        return list(self.session.scalars(stmt).all())

    def rows_for_period(self, tenant_id: str, period: Period) -> list[FinancialCube]:
        stmt = (
            select(FinancialCube)
            .where(
                FinancialCube.tenant_id == tenant_id,
                FinancialCube.period_type == period.period_type,
                FinancialCube.period_start == period.start,
            )
            .order_by(FinancialCube.id)
            .execution_options(populate_existing=True)
        )
        return list(self.session.scalars(stmt).all())

    def period_totals(
        self, tenant_id: str, period_type: PeriodType, start: date, end: date
    ) -> dict[date, tuple[Decimal, int]]:
        stmt = (
            select(
                FinancialCube.period_start,
                func.coalesce(func.sum(FinancialCube.total_amount), 0),
                func.coalesce(func.sum(FinancialCube.transaction_count), 0),
            )
            .where(
                FinancialCube.tenant_id == tenant_id,
                FinancialCube.period_type == period_type,
                FinancialCube.period_start.between(start, end),
            )
            .group_by(FinancialCube.period_start)
        )
        return {
            row[0]: (Decimal(row[1]), int(row[2]))
            for row in self.session.execute(stmt).all()
        }
