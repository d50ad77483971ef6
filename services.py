from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from cube_store import (
    CubeCoordinate,
    CubeRow,
    CubeStore,
    DimensionFilter,
    RegenerationTarget,
)
from ledger import LedgerReader
from models import (
    Account,
    Category,
    FinancialCube,
    PeriodType,
    Transaction,
    TransactionType,
)
from periods import (
    Period,
    base_period_type,
    native_periods_between,
    native_periods_for,
    native_period_types,
    period_for,
    periods_between,
)
from schemas import (
    AccountIn,
    AuditDiscrepancy,
    BulkUpdateMetadata,
    CategoryIn,
    CubeRelevantFields,
    CubeStatistics,
    DateRangeIn,
    FieldChange,
    PopulateOptions,
    PopulateResult,
    TransactionIn,
    TransactionUpdateIn,
    TrendsFilters,
)


logger = logging.getLogger(__name__)

CUBE_FIELDS = ("account_id", "category_id", "amount", "date", "type", "is_recurring")
# Fields whose change moves a row to another (type, category, recurring) slice.
COORDINATE_FIELDS = ("type", "category_id", "is_recurring")


class CubeError(Exception):
    pass


class UnsupportedCubeOperation(CubeError, ValueError):
    pass


def get_current_tenant_id() -> str:
    return get_settings().default_tenant


def snapshot(txn: Transaction) -> CubeRelevantFields:
    return CubeRelevantFields.model_validate(txn)


def coordinate_of(values: CubeRelevantFields) -> CubeCoordinate:
    return CubeCoordinate(values.type, values.category_id, values.is_recurring)


def deduplicate_targets(
    targets: Iterable[RegenerationTarget],
) -> list[RegenerationTarget]:
    """Drop exact duplicates, keeping first-seen order.

    Equality covers tenant, period type, period start, type, category and
    recurring flag; ``period_end`` follows from type and start.
    """
    return list(dict.fromkeys(targets))


class DeltaOperation(str, Enum):
    insert = "insert"
    update = "update"
    delete = "delete"


@dataclass(frozen=True)
class TransactionDelta:
    transaction_id: int
    tenant_id: str
    operation: DeltaOperation
    old_values: Optional[CubeRelevantFields] = None
    new_values: Optional[CubeRelevantFields] = None

    @classmethod
    def insert(
        cls, tenant_id: str, transaction_id: int, new_values: CubeRelevantFields
    ) -> "TransactionDelta":
        return cls(transaction_id, tenant_id, DeltaOperation.insert, None, new_values)

    @classmethod
    def update(
        cls,
        tenant_id: str,
        transaction_id: int,
        old_values: CubeRelevantFields,
        new_values: CubeRelevantFields,
    ) -> "TransactionDelta":
        return cls(
            transaction_id, tenant_id, DeltaOperation.update, old_values, new_values
        )

    @classmethod
    def delete(
        cls, tenant_id: str, transaction_id: int, old_values: CubeRelevantFields
    ) -> "TransactionDelta":
        return cls(transaction_id, tenant_id, DeltaOperation.delete, old_values, None)


@dataclass
class RegenerationResult:
    targets: list[RegenerationTarget] = field(default_factory=list)
    affected_periods: list[Period] = field(default_factory=list)
    groups_processed: int = 0
    groups_failed: int = 0
    rows_written: int = 0
    total_deltas: int = 0
    processed_at: datetime = field(default_factory=datetime.utcnow)


class AggregationBuilder:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.reader = LedgerReader(session)
        self.store = CubeStore(session)

    def aggregate(
        self,
        tenant_id: str,
        period: Period,
        dimension_filter: Optional[DimensionFilter] = None,
    ) -> list[CubeRow]:
        groups = self.reader.aggregate(
            tenant_id, period.start, period.end, dimension_filter
        )
        return [
            CubeRow(
                tenant_id=tenant_id,
                period_type=period.period_type,
                period_start=period.start,
                period_end=period.end,
                transaction_type=group.transaction_type,
                category_id=group.category_id,
                category_name=group.category_name,
                account_id=group.account_id,
                account_name=group.account_name,
                is_recurring=group.is_recurring,
                total_amount=group.total_amount,
                transaction_count=group.transaction_count,
            )
            for group in groups
        ]

    def build(
        self,
        tenant_id: str,
        period: Period,
        dimension_filter: Optional[DimensionFilter] = None,
    ) -> list[CubeRow]:
        """Aggregate the ledger for ``period`` and write the rows.

        Rows whose key already exists are left untouched.
        """
        if not period.period_type.is_native:
            raise CubeError(f"{period.period_type.value} periods are not stored")
        rows = self.aggregate(tenant_id, period, dimension_filter)
        self.store.insert_many(rows)
        return rows


def _coerce_field_value(field_name: str, value: Any) -> Any:
    if field_name == "type":
        return TransactionType(value)
    if field_name == "is_recurring":
        return bool(value)
    if field_name == "category_id" and value is not None:
        return int(value)
    return value


class ChangeImpactCalculator:
    """Works out which cube coordinates a ledger change makes stale."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self.reader = LedgerReader(session)

    @staticmethod
    def changed_fields(
        old: CubeRelevantFields, new: CubeRelevantFields
    ) -> list[FieldChange]:
        changes: list[FieldChange] = []
        for name in CUBE_FIELDS:
            old_value = getattr(old, name)
            new_value = getattr(new, name)
            if old_value != new_value:
                changes.append(
                    FieldChange(field_name=name, old_value=old_value, new_value=new_value)
                )
        return changes

    @staticmethod
    def ensure_supported(changes: Iterable[FieldChange]) -> None:
        if any(change.field_name == "date" for change in changes):
            raise UnsupportedCubeOperation(
                "Date changes are not supported by incremental cube updates; "
                "delete the transaction and insert it again with the new date"
            )

    def for_delta(self, delta: TransactionDelta) -> list[RegenerationTarget]:
        if delta.operation == DeltaOperation.insert:
            values = delta.new_values
            if values is None:
                raise CubeError("Insert delta requires new values")
            return self._targets_for_day(delta.tenant_id, values.date, [coordinate_of(values)])

        if delta.operation == DeltaOperation.delete:
            values = delta.old_values
            if values is None:
                raise CubeError("Delete delta requires old values")
            return self._targets_for_day(delta.tenant_id, values.date, [coordinate_of(values)])

        if delta.old_values is None or delta.new_values is None:
            raise CubeError("Update delta requires old and new values")
        changes = self.changed_fields(delta.old_values, delta.new_values)
        self.ensure_supported(changes)
        if not changes:
            return []
        coordinates = [coordinate_of(delta.old_values)]
        moved = {change.field_name for change in changes} - {"amount"}
        if moved:
            coordinates.append(coordinate_of(delta.new_values))
        return self._targets_for_day(
            delta.tenant_id, delta.old_values.date, coordinates
        )

    def for_bulk(self, bulk: BulkUpdateMetadata) -> list[RegenerationTarget]:
        self.ensure_supported(bulk.changed_fields)
        if not bulk.affected_transaction_ids:
            return []
        changes = [c for c in bulk.changed_fields if c.field_name in CUBE_FIELDS]
        if not changes:
            return []

        periods = self.periods_for_bulk(bulk)
        if not periods:
            return []

        present = self.reader.coordinates_for_ids(
            bulk.tenant_id, bulk.affected_transaction_ids
        )
        coordinates = self.coordinates_for_changes(present, changes)
        targets = [
            RegenerationTarget.for_period(bulk.tenant_id, period, coordinate)
            for period in periods
            for coordinate in coordinates
        ]
        return deduplicate_targets(targets)

    def periods_for_bulk(self, bulk: BulkUpdateMetadata) -> list[Period]:
        if bulk.date_range is not None:
            start, end = bulk.date_range.start_date, bulk.date_range.end_date
        else:
            bounds = self.reader.date_bounds_for_ids(
                bulk.tenant_id, bulk.affected_transaction_ids
            )
            if bounds is None:
                return []
            start, end = bounds
        return native_periods_between(start, end)

    @staticmethod
    def coordinates_for_changes(
        present: Iterable[CubeCoordinate], changes: Sequence[FieldChange]
    ) -> list[CubeCoordinate]:
        """Expand the slices present on the rows by every old and new value.

        Account and amount changes leave a row in its slice, so they only
        contribute the present slices. A change to type, category or recurring
        flag adds the slice with the old value and the slice with the new value
        substituted, crossed with whatever else is present on the rows.
        """
        values_by_field: dict[str, set] = {}
        for change in changes:
            if change.field_name not in COORDINATE_FIELDS:
                continue
            values = values_by_field.setdefault(change.field_name, set())
            values.add(_coerce_field_value(change.field_name, change.old_value))
            values.add(_coerce_field_value(change.field_name, change.new_value))

        result: set[CubeCoordinate] = set()
        for coordinate in present:
            options = {
                "type": {coordinate.transaction_type},
                "category_id": {coordinate.category_id},
                "is_recurring": {coordinate.is_recurring},
            }
            for name, values in values_by_field.items():
                options[name] = options[name] | values
            for kind, category_id, recurring in itertools.product(
                options["type"], options["category_id"], options["is_recurring"]
            ):
                result.add(CubeCoordinate(kind, category_id, recurring))

        return sorted(
            result,
            key=lambda c: (
                c.transaction_type.value,
                c.category_id is not None,
                c.category_id or 0,
                c.is_recurring,
            ),
        )

    def _targets_for_day(
        self, tenant_id: str, day: date, coordinates: Sequence[CubeCoordinate]
    ) -> list[RegenerationTarget]:
        targets = [
            RegenerationTarget.for_period(tenant_id, period, coordinate)
            for period in native_periods_for(day)
            for coordinate in coordinates
        ]
        return deduplicate_targets(targets)


class RegenerationOrchestrator:
    """Deletes stale slices and rebuilds exactly those slices, one period at a time."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self.store = CubeStore(session)
        self.builder = AggregationBuilder(session)

    @staticmethod
    def group_by_period(
        targets: Iterable[RegenerationTarget],
    ) -> dict[tuple[str, PeriodType, date], list[RegenerationTarget]]:
        groups: dict[tuple[str, PeriodType, date], list[RegenerationTarget]] = {}
        for target in targets:
            key = (target.tenant_id, target.period_type, target.period_start)
            groups.setdefault(key, []).append(target)
        return groups

    def regenerate(
        self, targets: Sequence[RegenerationTarget], total_deltas: int = 0
    ) -> RegenerationResult:
        unique = deduplicate_targets(targets)
        result = RegenerationResult(targets=unique, total_deltas=total_deltas)

        for (tenant_id, period_type, period_start), group in self.group_by_period(
            unique
        ).items():
            period = group[0].period
            result.affected_periods.append(period)
            coordinates = tuple(dict.fromkeys(target.coordinate for target in group))
            try:
                self.store.delete_coordinates(
                    tenant_id,
                    [
                        (
                            period_type,
                            period_start,
                            c.transaction_type,
                            c.category_id,
                            c.is_recurring,
                        )
                        for c in coordinates
                    ],
                )
                rows = self.builder.build(
                    tenant_id, period, DimensionFilter(coordinates=coordinates)
                )
                self.session.commit()
            except SQLAlchemyError:
                self.session.rollback()
                result.groups_failed += 1
                logger.exception(
                    f"cube_regenerate_failed: tenant={tenant_id} "
                    f"period_type={period_type.value} period_start={period_start} "
                    f"coordinates={[(c.transaction_type.value, c.category_id, c.is_recurring) for c in coordinates]}"
                )
                continue
            result.groups_processed += 1
            result.rows_written += len(rows)

        logger.info(
            f"cube_regenerate: targets={len(unique)} groups={result.groups_processed} "
            f"failed={result.groups_failed} rows={result.rows_written}"
        )
        return result


class CubeMaintenanceHooks:
    """Best-effort cube upkeep invoked after a ledger mutation has committed.

    Failures are logged and swallowed so the ledger write never fails because
    of the cube. Unsupported changes are still raised to the caller.
    """

    def __init__(self, session: Session) -> None:
        self.session = session
        self.calculator = ChangeImpactCalculator(session)
        self.orchestrator = RegenerationOrchestrator(session)

    def on_transaction_inserted(
        self, tenant_id: str, transaction_id: int, values: CubeRelevantFields
    ) -> Optional[RegenerationResult]:
        return self._apply_delta(TransactionDelta.insert(tenant_id, transaction_id, values))

    def on_transaction_deleted(
        self, tenant_id: str, transaction_id: int, values: CubeRelevantFields
    ) -> Optional[RegenerationResult]:
        return self._apply_delta(TransactionDelta.delete(tenant_id, transaction_id, values))

    def on_transaction_updated(
        self,
        tenant_id: str,
        transaction_id: int,
        old_values: CubeRelevantFields,
        new_values: CubeRelevantFields,
    ) -> Optional[RegenerationResult]:
        return self._apply_delta(
            TransactionDelta.update(tenant_id, transaction_id, old_values, new_values)
        )

    def on_bulk_transactions_updated(
        self, bulk: BulkUpdateMetadata
    ) -> Optional[RegenerationResult]:
        try:
            targets = self.calculator.for_bulk(bulk)
            return self.orchestrator.regenerate(
                targets, total_deltas=len(bulk.affected_transaction_ids)
            )
        except UnsupportedCubeOperation:
            raise
        except Exception:
            self.session.rollback()
            logger.warning(
                f"cube_hook_failed: tenant={bulk.tenant_id} operation=bulk_update "
                f"transactions={len(bulk.affected_transaction_ids)}",
                exc_info=True,
            )
            return None

    def on_transactions_changed_in_range(
        self, tenant_id: str, start: date, end: date
    ) -> Optional[int]:
        try:
            return PopulationService(self.session, tenant_id).regenerate_for_date_range(
                start, end
            )
        except Exception:
            self.session.rollback()
            logger.warning(
                f"cube_hook_failed: tenant={tenant_id} operation=range "
                f"start={start} end={end}",
                exc_info=True,
            )
            return None

    def _apply_delta(self, delta: TransactionDelta) -> Optional[RegenerationResult]:
        try:
            targets = self.calculator.for_delta(delta)
            return self.orchestrator.regenerate(targets, total_deltas=1)
        except UnsupportedCubeOperation:
            raise
        except Exception:
            self.session.rollback()
            logger.warning(
                f"cube_hook_failed: tenant={delta.tenant_id} "
                f"operation={delta.operation.value} transaction={delta.transaction_id}",
                exc_info=True,
            )
            return None


class PopulationService:
    def __init__(
        self,
        session: Session,
        tenant_id: Optional[str] = None,
        *,
        batch_pause_secs: Optional[float] = None,
    ) -> None:
        self.session = session
        self.tenant_id = tenant_id or get_current_tenant_id()
        settings = get_settings()
        self.batch_size = settings.populate_batch_size
        self.batch_pause_secs = (
            settings.populate_batch_pause_secs
            if batch_pause_secs is None
            else batch_pause_secs
        )
        self.reader = LedgerReader(session)
        self.store = CubeStore(session)
        self.builder = AggregationBuilder(session)

    def populate(self, options: Optional[PopulateOptions] = None) -> PopulateResult:
        """(Re)build every native period in a date range.

        Safe to re-run: each period is cleared and rebuilt from the ledger.
        A period that fails is logged and skipped.
        """
        options = options or PopulateOptions()
        started = time.perf_counter()
        account_id = options.account_id

        start_date = options.start_date or self.reader.earliest_date(
            self.tenant_id, account_id
        )
        end_date = options.end_date or date.today()
        logger.info(
            f"cube_populate: tenant={self.tenant_id} start={start_date} "
            f"end={end_date} account={account_id} clear={options.clear_existing}"
        )
        if start_date is None:
            return PopulateResult(time_elapsed_ms=_elapsed_ms(started))

        if options.clear_existing:
            self.store.clear_tenant(self.tenant_id, account_id)
            self.session.commit()

        periods = native_periods_between(start_date, end_date)
        batch_size = options.batch_size or self.batch_size
        periods_processed = 0
        records_created = 0

        for offset in range(0, len(periods), batch_size):
            for period in periods[offset : offset + batch_size]:
                try:
                    before = self.store.count(
                        self.tenant_id, period.period_type, period.start, account_id
                    )
                    self._rebuild_period(period, account_id)
                    after = self.store.count(
                        self.tenant_id, period.period_type, period.start, account_id
                    )
                    self.session.commit()
                except SQLAlchemyError:
                    self.session.rollback()
                    logger.exception(
                        f"cube_populate_failed: tenant={self.tenant_id} "
                        f"period_type={period.period_type.value} "
                        f"period_start={period.start} period_end={period.end}"
                    )
                    continue
                records_created += after - before
                periods_processed += 1

            if offset + batch_size < len(periods) and self.batch_pause_secs > 0:
                time.sleep(self.batch_pause_secs)

        result = PopulateResult(
            periods_processed=periods_processed,
            records_created=records_created,
            time_elapsed_ms=_elapsed_ms(started),
            accounts_processed=(
                1 if account_id is not None else self.reader.account_count(self.tenant_id)
            ),
        )
        logger.info(
            f"cube_populate: tenant={self.tenant_id} "
            f"periods={result.periods_processed} records={result.records_created} "
            f"elapsed_ms={result.time_elapsed_ms:.1f}"
        )
        return result

    def rebuild_for_period(
        self,
        start: date,
        end: date,
        period_type: PeriodType = PeriodType.monthly,
        account_id: Optional[int] = None,
    ) -> int:
        if not period_type.is_native:
            raise CubeError(f"{period_type.value} periods are not stored")
        rows = 0
        try:
            for period in periods_between(start, end, period_type):
                rows += self._rebuild_period(period, account_id)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return rows

    def regenerate_for_date_range(self, start: date, end: date) -> int:
        rows = 0
        for period_type in native_period_types():
            rows += self.rebuild_for_period(start, end, period_type)
        return rows

    def clear_all(self) -> int:
        deleted = self.store.clear_tenant(self.tenant_id)
        self.session.commit()
        logger.info(f"cube_clear: tenant={self.tenant_id} deleted={deleted}")
        return deleted

    def _rebuild_period(self, period: Period, account_id: Optional[int]) -> int:
        self.store.delete_period(self.tenant_id, period, account_id)
        dimension_filter = (
            DimensionFilter(account_id=account_id) if account_id is not None else None
        )
        return len(self.builder.build(self.tenant_id, period, dimension_filter))


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


@dataclass
class TrendRecord:
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

    @property
    def average_amount(self) -> Decimal:
        if self.transaction_count > 0:
            return self.total_amount / self.transaction_count
        return Decimal("0")

    @classmethod
    def from_cube(cls, row: FinancialCube) -> "TrendRecord":
        return cls(
            period_type=row.period_type,
            period_start=row.period_start,
            period_end=row.period_end,
            transaction_type=row.transaction_type,
            category_id=row.category_id,
            category_name=row.category_name,
            account_id=row.account_id,
            account_name=row.account_name,
            is_recurring=row.is_recurring,
            total_amount=Decimal(row.total_amount),
            transaction_count=row.transaction_count,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "period_type": self.period_type.value,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "transaction_type": self.transaction_type.value,
            "category_id": self.category_id,
            "category_name": self.category_name,
            "account_id": self.account_id,
            "account_name": self.account_name,
            "is_recurring": self.is_recurring,
            "total_amount": str(self.total_amount),
            "transaction_count": self.transaction_count,
            "average_amount": str(self.average_amount.quantize(Decimal("0.01"))),
        }


def _trend_sort_key(record: TrendRecord):
    return (
        record.period_start,
        record.category_name,
        record.account_name,
        record.transaction_type.value,
        record.is_recurring,
    )


def _sortable(value: Any):
    if isinstance(value, Enum):
        value = value.value
    return (value is None, value if value is not None else 0)


GROUPABLE_COLUMNS = {
    "period_type": FinancialCube.period_type,
    "period_start": FinancialCube.period_start,
    "transaction_type": FinancialCube.transaction_type,
    "category_id": FinancialCube.category_id,
    "category_name": FinancialCube.category_name,
    "account_id": FinancialCube.account_id,
    "account_name": FinancialCube.account_name,
    "is_recurring": FinancialCube.is_recurring,
}


class TrendsService:
    """Read API over the cube. Derived period types are folded from native rows."""

    def __init__(self, session: Session, tenant_id: Optional[str] = None) -> None:
        self.session = session
        self.tenant_id = tenant_id or get_current_tenant_id()
        self.store = CubeStore(session)
        self.reader = LedgerReader(session)

    def get_trends(self, filters: Optional[TrendsFilters] = None) -> list[TrendRecord]:
        filters = filters or TrendsFilters()
        period_type = filters.period_type
        if period_type is None or period_type.is_native:
            return self._native_trends(filters)

        base_filters = filters.model_copy(
            update={
                "period_type": base_period_type(period_type),
                "start_date": (
                    period_for(filters.start_date, period_type).start
                    if filters.start_date
                    else None
                ),
                "end_date": (
                    period_for(filters.end_date, period_type).end
                    if filters.end_date
                    else None
                ),
            }
        )
        return self._fold(self._native_trends(base_filters), period_type)

    def get_aggregated_totals(
        self, group_by: Sequence[str], filters: Optional[TrendsFilters] = None
    ) -> list[dict[str, Any]]:
        """Sum totals and counts over any subset of cube dimensions.

        Without a period type the monthly rows are used, so weekly and monthly
        figures are never added together.
        """
        if not group_by:
            raise ValueError("At least one dimension is required")
        unknown = [name for name in group_by if name not in GROUPABLE_COLUMNS]
        if unknown:
            raise ValueError(f"Unknown dimension(s): {', '.join(unknown)}")
        dimensions = list(dict.fromkeys(group_by))

        filters = filters or TrendsFilters()
        if filters.period_type is None:
            filters = filters.model_copy(update={"period_type": PeriodType.monthly})

        if not filters.period_type.is_native:
            return self._fold_totals(self.get_trends(filters), dimensions)

        columns = [GROUPABLE_COLUMNS[name] for name in dimensions]
        stmt = (
            select(
                *[column.label(name) for name, column in zip(dimensions, columns)],
                func.sum(FinancialCube.total_amount).label("total_amount"),
                func.sum(FinancialCube.transaction_count).label("transaction_count"),
            )
            .where(*self._conditions(filters))
            .group_by(*columns)
            .order_by(*columns)
        )
        results: list[dict[str, Any]] = []
        for row in self.session.execute(stmt).mappings().all():
            item = {name: row[name] for name in dimensions}
            item["total_amount"] = Decimal(row["total_amount"])
            item["transaction_count"] = int(row["transaction_count"])
            results.append(item)
        return results

    def get_category_trends(
        self, start: date, end: date, period_type: PeriodType = PeriodType.monthly
    ) -> list[dict[str, Any]]:
        return self.get_aggregated_totals(
            ["period_start", "category_name"],
            TrendsFilters(
                period_type=period_type,
                start_date=start,
                end_date=end,
                transaction_type=TransactionType.expense,
            ),
        )

    def get_account_trends(
        self, start: date, end: date, period_type: PeriodType = PeriodType.monthly
    ) -> list[dict[str, Any]]:
        return self.get_aggregated_totals(
            ["period_start", "account_name"],
            TrendsFilters(period_type=period_type, start_date=start, end_date=end),
        )

    def get_income_expense_trends(
        self, start: date, end: date, period_type: PeriodType = PeriodType.monthly
    ) -> list[dict[str, Any]]:
        return self.get_aggregated_totals(
            ["period_start", "transaction_type"],
            TrendsFilters(period_type=period_type, start_date=start, end_date=end),
        )

    def get_cube_statistics(self) -> CubeStatistics:
        tenant_filter = FinancialCube.tenant_id == self.tenant_id
        earliest, latest, last_updated = self.session.execute(
            select(
                func.min(FinancialCube.period_start),
                func.max(FinancialCube.period_start),
                func.max(FinancialCube.created_at),
            ).where(tenant_filter)
        ).one()
        account_count = self.session.execute(
            select(func.count(func.distinct(FinancialCube.account_id))).where(
                tenant_filter
            )
        ).scalar_one()
        category_count = self.session.execute(
            select(func.count(func.distinct(FinancialCube.category_id))).where(
                tenant_filter, FinancialCube.category_id.isnot(None)
            )
        ).scalar_one()
        return CubeStatistics(
            total_records=self.store.count(self.tenant_id),
            weekly_records=self.store.count(self.tenant_id, PeriodType.weekly),
            monthly_records=self.store.count(self.tenant_id, PeriodType.monthly),
            earliest_period=earliest,
            latest_period=latest,
            account_count=int(account_count or 0),
            category_count=int(category_count or 0),
            last_updated=last_updated,
        )

    def audit(
        self, start: date, end: date, period_type: PeriodType = PeriodType.monthly
    ) -> list[AuditDiscrepancy]:
        """Compare cube and ledger totals per period. Nothing is corrected."""
        if not period_type.is_native:
            raise CubeError(f"{period_type.value} periods are not stored")
        periods = periods_between(start, end, period_type)
        if not periods:
            return []
        cube_totals = self.store.period_totals(
            self.tenant_id, period_type, periods[0].start, periods[-1].start
        )
        discrepancies: list[AuditDiscrepancy] = []
        for period in periods:
            cube_total, cube_count = cube_totals.get(period.start, (Decimal("0"), 0))
            ledger_total, ledger_count = self.reader.totals_between(
                self.tenant_id, period.start, period.end
            )
            if cube_total != ledger_total or cube_count != ledger_count:
                discrepancies.append(
                    AuditDiscrepancy(
                        period_type=period_type,
                        period_start=period.start,
                        period_end=period.end,
                        cube_total=cube_total,
                        ledger_total=ledger_total,
                        cube_count=cube_count,
                        ledger_count=ledger_count,
                    )
                )
        if discrepancies:
            logger.warning(
                f"cube_audit: tenant={self.tenant_id} period_type={period_type.value} "
                f"discrepancies={len(discrepancies)}"
            )
        return discrepancies

    def _conditions(self, filters: TrendsFilters) -> list:
        conditions = [FinancialCube.tenant_id == self.tenant_id]
        if filters.period_type is not None:
            conditions.append(FinancialCube.period_type == filters.period_type)
        if filters.start_date is not None:
            conditions.append(FinancialCube.period_start >= filters.start_date)
        if filters.end_date is not None:
            conditions.append(FinancialCube.period_start <= filters.end_date)
        if filters.transaction_type is not None:
            conditions.append(FinancialCube.transaction_type == filters.transaction_type)
        if filters.category_ids is not None:
            conditions.append(FinancialCube.category_id.in_(filters.category_ids))
        if filters.account_ids is not None:
            conditions.append(FinancialCube.account_id.in_(filters.account_ids))
        if filters.is_recurring is not None:
            conditions.append(FinancialCube.is_recurring == filters.is_recurring)
        return conditions

    def _native_trends(self, filters: TrendsFilters) -> list[TrendRecord]:
        stmt = (
            select(FinancialCube)
            .where(*self._conditions(filters))
            .order_by(
                FinancialCube.period_start,
                FinancialCube.category_name,
                FinancialCube.account_name,
                FinancialCube.transaction_type,
                FinancialCube.is_recurring,
            )
            .execution_options(populate_existing=True)
        )
        return [TrendRecord.from_cube(row) for row in self.session.scalars(stmt).all()]

    @staticmethod
    def _fold(records: Iterable[TrendRecord], period_type: PeriodType) -> list[TrendRecord]:
        buckets: dict[tuple, TrendRecord] = {}
        for record in records:
            period = period_for(record.period_start, period_type)
            key = (
                period.start,
                record.transaction_type,
                record.category_id,
                record.account_id,
                record.is_recurring,
            )
            bucket = buckets.get(key)
            if bucket is None:
                buckets[key] = TrendRecord(
                    period_type=period_type,
                    period_start=period.start,
                    period_end=period.end,
                    transaction_type=record.transaction_type,
                    category_id=record.category_id,
                    category_name=record.category_name,
                    account_id=record.account_id,
                    account_name=record.account_name,
                    is_recurring=record.is_recurring,
                    total_amount=record.total_amount,
                    transaction_count=record.transaction_count,
                )
            else:
                bucket.total_amount += record.total_amount
                bucket.transaction_count += record.transaction_count
        return sorted(buckets.values(), key=_trend_sort_key)

    @staticmethod
    def _fold_totals(
        records: Iterable[TrendRecord], dimensions: Sequence[str]
    ) -> list[dict[str, Any]]:
        totals: dict[tuple, dict[str, Any]] = {}
        for record in records:
            key = tuple(getattr(record, name) for name in dimensions)
            item = totals.get(key)
            if item is None:
                item = {name: getattr(record, name) for name in dimensions}
                item["total_amount"] = Decimal("0")
                item["transaction_count"] = 0
                totals[key] = item
            item["total_amount"] += record.total_amount
            item["transaction_count"] += record.transaction_count
        return [
            totals[key]
            for key in sorted(totals, key=lambda k: tuple(_sortable(v) for v in k))
        ]


class AccountService:
    def __init__(self, session: Session, tenant_id: Optional[str] = None) -> None:
        self.session = session
        self.tenant_id = tenant_id or get_current_tenant_id()

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.tenant_id == self.tenant_id)
            .order_by(Account.name)
        )
        return list(self.session.scalars(stmt).all())

    def create(self, data: AccountIn) -> Account:
        existing = self.session.scalar(
            select(Account).where(
                Account.tenant_id == self.tenant_id,
                func.lower(Account.name) == data.name.strip().lower(),
            )
        )
        if existing:
            raise ValueError("Account with this name already exists")
        account = Account(tenant_id=self.tenant_id, name=data.name.strip())
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account


class CategoryService:
    def __init__(self, session: Session, tenant_id: Optional[str] = None) -> None:
        self.session = session
        self.tenant_id = tenant_id or get_current_tenant_id()

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.tenant_id == self.tenant_id)
            .order_by(Category.type, Category.name)
        )
        return list(self.session.scalars(stmt).all())

    def create(self, data: CategoryIn) -> Category:
        existing = self.session.scalar(
            select(Category).where(
                Category.tenant_id == self.tenant_id,
                Category.type == data.type,
                func.lower(Category.name) == data.name.strip().lower(),
            )
        )
        if existing:
            raise ValueError("Category with this name already exists")
        category = Category(
            tenant_id=self.tenant_id, name=data.name.strip(), type=data.type
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category


NON_NULLABLE_FIELDS = ("account_id", "amount", "date", "type", "is_recurring")


class TransactionService:
    """Ledger write path. Every mutation commits first, then updates the cube."""

    def __init__(self, session: Session, tenant_id: Optional[str] = None) -> None:
        self.session = session
        self.tenant_id = tenant_id or get_current_tenant_id()
        self.hooks = CubeMaintenanceHooks(session)

    def create(self, data: TransactionIn) -> Transaction:
        self._check_references(data.account_id, data.category_id)
        txn = Transaction(
            tenant_id=self.tenant_id,
            account_id=data.account_id,
            category_id=data.category_id,
            amount=data.amount,
            date=data.date,
            type=data.type,
            is_recurring=data.is_recurring,
            description=data.description,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        self.hooks.on_transaction_inserted(self.tenant_id, txn.id, snapshot(txn))
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.tenant_id == self.tenant_id,
                Transaction.id == transaction_id,
            )
        )
        if not txn:
            raise ValueError("Transaction not found")
        return txn

    def update(self, transaction_id: int, data: TransactionUpdateIn) -> Transaction:
        """Apply the explicitly set fields of ``data``.

        Changing the date is rejected: delete the transaction and create it
        again instead.
        """
        txn = self.get(transaction_id)
        old_values = snapshot(txn)
        updates = self._explicit_updates(data)
        new_values = old_values.model_copy(
            update={k: v for k, v in updates.items() if k in CUBE_FIELDS}
        )
        ChangeImpactCalculator.ensure_supported(
            ChangeImpactCalculator.changed_fields(old_values, new_values)
        )
        self._check_references(
            updates.get("account_id"), updates.get("category_id")
        )

        for name, value in updates.items():
            setattr(txn, name, value)
        self.session.commit()
        self.session.refresh(txn)
        self.hooks.on_transaction_updated(
            self.tenant_id, txn.id, old_values, snapshot(txn)
        )
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        old_values = snapshot(txn)
        self.session.delete(txn)
        self.session.commit()
        self.hooks.on_transaction_deleted(self.tenant_id, transaction_id, old_values)

    def bulk_create(self, items: Sequence[TransactionIn]) -> list[Transaction]:
        if not items:
            return []
        for item in items:
            self._check_references(item.account_id, item.category_id)
        txns = [
            Transaction(
                tenant_id=self.tenant_id,
                account_id=item.account_id,
                category_id=item.category_id,
                amount=item.amount,
                date=item.date,
                type=item.type,
                is_recurring=item.is_recurring,
                description=item.description,
            )
            for item in items
        ]
        self.session.add_all(txns)
        self.session.commit()
        dates = [item.date for item in items]
        self.hooks.on_transactions_changed_in_range(
            self.tenant_id, min(dates), max(dates)
        )
        return txns

    def bulk_update(
        self, transaction_ids: Sequence[int], data: TransactionUpdateIn
    ) -> int:
        rows = self._rows_for_ids(transaction_ids)
        if not rows:
            raise ValueError("No transactions found for bulk update")
        updates = self._explicit_updates(data)
        if "date" in updates:
            ChangeImpactCalculator.ensure_supported(
                [FieldChange(field_name="date", new_value=updates["date"])]
            )
        self._check_references(updates.get("account_id"), updates.get("category_id"))

        changes: list[FieldChange] = []
        for name, new_value in updates.items():
            if name not in CUBE_FIELDS:
                continue
            old_values = dict.fromkeys(getattr(row, name) for row in rows)
            for old_value in old_values:
                if old_value != new_value:
                    changes.append(
                        FieldChange(
                            field_name=name, old_value=old_value, new_value=new_value
                        )
                    )

        ids = [row.id for row in rows]
        dates = [row.date for row in rows]
        if updates:
            self.session.execute(
                update(Transaction)
                .where(Transaction.tenant_id == self.tenant_id, Transaction.id.in_(ids))
                .values(**updates, updated_at=datetime.utcnow())
                .execution_options(synchronize_session="fetch")
            )
            self.session.commit()
        if changes:
            self.hooks.on_bulk_transactions_updated(
                BulkUpdateMetadata(
                    tenant_id=self.tenant_id,
                    affected_transaction_ids=ids,
                    changed_fields=changes,
                    date_range=DateRangeIn(start_date=min(dates), end_date=max(dates)),
                )
            )
        return len(ids)

    def bulk_delete(self, transaction_ids: Sequence[int]) -> int:
        rows = self._rows_for_ids(transaction_ids)
        if not rows:
            return 0
        ids = [row.id for row in rows]
        dates = [row.date for row in rows]
        self.session.execute(
            delete(Transaction)
            .where(Transaction.tenant_id == self.tenant_id, Transaction.id.in_(ids))
            .execution_options(synchronize_session="fetch")
        )
        self.session.commit()
        self.hooks.on_transactions_changed_in_range(
            self.tenant_id, min(dates), max(dates)
        )
        return len(ids)

    def _rows_for_ids(self, transaction_ids: Sequence[int]) -> list[Transaction]:
        if not transaction_ids:
            return []
        stmt = select(Transaction).where(
            Transaction.tenant_id == self.tenant_id,
            Transaction.id.in_(list(transaction_ids)),
        )
        return list(self.session.scalars(stmt).all())

    @staticmethod
    def _explicit_updates(data: TransactionUpdateIn) -> dict[str, Any]:
        updates = {name: getattr(data, name) for name in data.model_fields_set}
        for name in NON_NULLABLE_FIELDS:
            if name in updates and updates[name] is None:
                raise ValueError(f"{name} cannot be null")
        return updates

    def _check_references(
        self, account_id: Optional[int], category_id: Optional[int]
    ) -> None:
        if account_id is not None:
            account = self.session.get(Account, account_id)
            if not account or account.tenant_id != self.tenant_id:
                raise ValueError("Account not found")
        if category_id is not None:
            category = self.session.get(Category, category_id)
            if not category or category.tenant_id != self.tenant_id:
                raise ValueError("Category not found")
