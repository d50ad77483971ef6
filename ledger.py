from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from cube_store import CubeCoordinate, DimensionFilter, category_matches
from models import UNCATEGORIZED, Account, Category, Transaction, TransactionType


@dataclass
class LedgerGroup:
    transaction_type: TransactionType
    category_id: Optional[int]
    category_name: str
    account_id: int
    account_name: str
    is_recurring: bool
    total_amount: Decimal
    transaction_count: int


def _coordinate_condition(coordinate: CubeCoordinate):
    return and_(
        Transaction.type == coordinate.transaction_type,
        category_matches(Transaction.category_id, coordinate.category_id),
        Transaction.is_recurring == coordinate.is_recurring,
    )


class LedgerReader:
    """Read-only queries over the transaction ledger."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def aggregate(
        self,
        tenant_id: str,
        start: date,
        end: date,
        dimension_filter: Optional[DimensionFilter] = None,
    ) -> list[LedgerGroup]:
        """Sum ledger rows in ``[start, end]`` per (type, category, account, recurring).

        Groups without rows are never returned. Amounts keep their sign.
        """
        stmt = (
            select(
                Transaction.type,
                Transaction.category_id,
                func.min(Category.name),
                Transaction.account_id,
                func.min(Account.name),
                Transaction.is_recurring,
                func.sum(Transaction.amount),
                func.count(Transaction.id),
            )
            .join(Account, Transaction.account_id == Account.id)
            .outerjoin(Category, Transaction.category_id == Category.id)
            .where(
                Transaction.tenant_id == tenant_id,
                Transaction.date.between(start, end),
            )
            .group_by(
                Transaction.type,
                Transaction.category_id,
                Transaction.account_id,
                Transaction.is_recurring,
            )
            .having(func.count(Transaction.id) > 0)
        )
        if dimension_filter is not None:
            if dimension_filter.coordinates:
                stmt = stmt.where(
                    or_(
                        *[
                            _coordinate_condition(coordinate)
                            for coordinate in dimension_filter.coordinates
                        ]
                    )
                )
            if dimension_filter.account_id is not None:
                stmt = stmt.where(Transaction.account_id == dimension_filter.account_id)

        groups: list[LedgerGroup] = []
        for row in self.session.execute(stmt).all():
            groups.append(
                LedgerGroup(
                    transaction_type=row[0],
                    category_id=row[1],
                    category_name=row[2] or UNCATEGORIZED,
                    account_id=row[3],
                    account_name=row[4],
                    is_recurring=bool(row[5]),
                    total_amount=Decimal(row[6]),
                    transaction_count=int(row[7]),
                )
            )
        return groups

    def totals_between(
        self, tenant_id: str, start: date, end: date
    ) -> tuple[Decimal, int]:
        stmt = select(
            func.coalesce(func.sum(Transaction.amount), 0),
            func.count(Transaction.id),
        ).where(
            Transaction.tenant_id == tenant_id,
            Transaction.date.between(start, end),
        )
        total, count = self.session.execute(stmt).one()
        return Decimal(total), int(count or 0)

    def earliest_date(
        self, tenant_id: str, account_id: Optional[int] = None
    ) -> Optional[date]:
        stmt = select(func.min(Transaction.date)).where(
            Transaction.tenant_id == tenant_id
        )
        if account_id is not None:
            stmt = stmt.where(Transaction.account_id == account_id)
        return self.session.execute(stmt).scalar_one_or_none()

    def date_bounds_for_ids(
        self, tenant_id: str, transaction_ids: Sequence[int]
    ) -> Optional[tuple[date, date]]:
        if not transaction_ids:
            return None
        stmt = select(func.min(Transaction.date), func.max(Transaction.date)).where(
            Transaction.tenant_id == tenant_id,
            Transaction.id.in_(transaction_ids),
        )
        earliest, latest = self.session.execute(stmt).one()
        if earliest is None:
            return None
        return earliest, latest

    def coordinates_for_ids(
        self, tenant_id: str, transaction_ids: Sequence[int]
    ) -> set[CubeCoordinate]:
        """Distinct (type, category, recurring) triples present among the rows."""
        if not transaction_ids:
            return set()
        stmt = (
            select(Transaction.type, Transaction.category_id, Transaction.is_recurring)
            .where(
                Transaction.tenant_id == tenant_id,
                Transaction.id.in_(transaction_ids),
            )
            .distinct()
        )
        return {
            CubeCoordinate(row[0], row[1], bool(row[2]))
            for row in self.session.execute(stmt).all()
        }

    def tenants(self) -> list[str]:
        stmt = (
            select(Transaction.tenant_id).distinct().order_by(Transaction.tenant_id)
        )
        return list(self.session.scalars(stmt).all())

    def account_count(self, tenant_id: str) -> int:
        stmt = select(func.count(Account.id)).where(Account.tenant_id == tenant_id)
        return int(self.session.execute(stmt).scalar_one() or 0)
