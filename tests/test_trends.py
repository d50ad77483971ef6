from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import Account, Category, PeriodType, Transaction, TransactionType
from periods import BI_WEEKLY_EPOCH, period_for
from schemas import PopulateOptions, TrendsFilters
from services import PopulationService, TrendsService

TENANT = "acme"


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed_ledger(session):
    checking = Account(tenant_id=TENANT, name="Checking")
    card = Account(tenant_id=TENANT, name="Card")
    food = Category(tenant_id=TENANT, name="Food", type=TransactionType.expense)
    bills = Category(tenant_id=TENANT, name="Bills", type=TransactionType.expense)
    salary = Category(tenant_id=TENANT, name="Salary", type=TransactionType.income)
    session.add_all([checking, card, food, bills, salary])
    session.commit()

    def txn(account, category, amount, day, kind=TransactionType.expense, recurring=False):
        return Transaction(
            tenant_id=TENANT,
            account_id=account.id,
            category_id=category.id if category else None,
            amount=Decimal(amount),
            date=day,
            type=kind,
            is_recurring=recurring,
        )

    session.add_all(
        [
            txn(checking, food, "-10.00", date(2025, 1, 5)),
            txn(checking, food, "-20.00", date(2025, 2, 10)),
            txn(checking, food, "-30.00", date(2025, 3, 15)),
            txn(card, food, "-5.50", date(2025, 3, 16)),
            txn(checking, bills, "-100.00", date(2025, 1, 1), recurring=True),
            txn(checking, bills, "-100.00", date(2025, 2, 1), recurring=True),
            txn(checking, bills, "-100.00", date(2025, 3, 1), recurring=True),
            txn(checking, salary, "2000.00", date(2025, 1, 28), TransactionType.income, True),
            txn(checking, salary, "2000.00", date(2025, 2, 28), TransactionType.income, True),
            txn(checking, salary, "2000.00", date(2025, 3, 28), TransactionType.income, True),
            txn(card, None, "-1.00", date(2025, 4, 2)),
        ]
    )
    session.commit()
    PopulationService(session, TENANT, batch_pause_secs=0).populate(
        PopulateOptions(start_date=date(2025, 1, 1), end_date=date(2025, 4, 30))
    )
    return checking, card, food, bills, salary


def test_quarterly_trends_fold_monthly_rows() -> None:
    session = make_session()
    checking, card, food, bills, salary = seed_ledger(session)

    records = TrendsService(session, TENANT).get_trends(
        TrendsFilters(
            period_type=PeriodType.quarterly,
            start_date=date(2025, 1, 1),
            end_date=date(2025, 3, 31),
        )
    )

    assert {(r.period_start, r.period_end) for r in records} == {
        (date(2025, 1, 1), date(2025, 3, 31))
    }
    by_key = {(r.category_id, r.account_id): r for r in records}
    assert len(by_key) == len(records) == 4
    assert by_key[(food.id, checking.id)].total_amount == Decimal("-60.00")
    assert by_key[(food.id, checking.id)].transaction_count == 3
    assert by_key[(food.id, card.id)].total_amount == Decimal("-5.50")
    assert by_key[(bills.id, checking.id)].total_amount == Decimal("-300.00")
    assert by_key[(salary.id, checking.id)].total_amount == Decimal("6000.00")
    assert by_key[(salary.id, checking.id)].average_amount == Decimal("2000")
    assert all(r.period_type == PeriodType.quarterly for r in records)


def test_derived_query_widens_to_whole_periods() -> None:
    session = make_session()
    seed_ledger(session)

    records = TrendsService(session, TENANT).get_trends(
        TrendsFilters(
            period_type=PeriodType.quarterly,
            start_date=date(2025, 2, 15),
            end_date=date(2025, 2, 20),
        )
    )

    assert sum(r.transaction_count for r in records) == 10


def test_annual_trends_include_every_month() -> None:
    session = make_session()
    seed_ledger(session)

    records = TrendsService(session, TENANT).get_trends(
        TrendsFilters(period_type=PeriodType.annually, start_date=date(2025, 6, 1))
    )

    assert sum(r.transaction_count for r in records) == 11
    assert {r.period_start for r in records} == {date(2025, 1, 1)}


def test_bi_weekly_trends_fold_weekly_rows() -> None:
    session = make_session()
    seed_ledger(session)
    service = TrendsService(session, TENANT)

    weekly = service.get_trends(TrendsFilters(period_type=PeriodType.weekly))
    bi_weekly = service.get_trends(TrendsFilters(period_type=PeriodType.bi_weekly))

    assert sum(r.total_amount for r in bi_weekly) == sum(r.total_amount for r in weekly)
    for record in bi_weekly:
        assert (record.period_start - BI_WEEKLY_EPOCH).days % 14 == 0
        assert (record.period_end - record.period_start).days == 13
        assert period_for(record.period_start, PeriodType.bi_weekly).start == record.period_start


def test_native_trends_are_ordered_and_filtered() -> None:
    session = make_session()
    checking, card, food, bills, salary = seed_ledger(session)
    service = TrendsService(session, TENANT)

    monthly = service.get_trends(TrendsFilters(period_type=PeriodType.monthly))
    keys = [(r.period_start, r.category_name, r.account_name) for r in monthly]
    assert keys == sorted(keys)
    assert monthly[-1].category_name == "Uncategorized"

    expenses = service.get_trends(
        TrendsFilters(
            period_type=PeriodType.monthly, transaction_type=TransactionType.expense
        )
    )
    assert all(r.transaction_type == TransactionType.expense for r in expenses)

    card_only = service.get_trends(
        TrendsFilters(period_type=PeriodType.monthly, account_ids=[card.id])
    )
    assert {r.account_id for r in card_only} == {card.id}

    recurring = service.get_trends(
        TrendsFilters(
            period_type=PeriodType.monthly,
            is_recurring=True,
            category_ids=[bills.id, salary.id],
        )
    )
    assert len(recurring) == 6

    march = service.get_trends(
        TrendsFilters(
            period_type=PeriodType.monthly,
            start_date=date(2025, 3, 1),
            end_date=date(2025, 3, 31),
        )
    )
    assert {r.period_start for r in march} == {date(2025, 3, 1)}


def test_aggregated_totals_group_by_any_dimensions() -> None:
    session = make_session()
    seed_ledger(session)
    service = TrendsService(session, TENANT)

    by_type = service.get_aggregated_totals(["transaction_type"])
    totals = {row["transaction_type"]: row for row in by_type}
    assert totals[TransactionType.income]["total_amount"] == Decimal("6000.00")
    assert totals[TransactionType.expense]["total_amount"] == Decimal("-366.50")
    assert totals[TransactionType.expense]["transaction_count"] == 8

    by_category = service.get_aggregated_totals(
        ["category_name", "is_recurring"],
        TrendsFilters(transaction_type=TransactionType.expense),
    )
    assert [(row["category_name"], row["is_recurring"]) for row in by_category] == [
        ("Bills", True),
        ("Food", False),
        ("Uncategorized", False),
    ]


def test_aggregated_totals_for_derived_periods() -> None:
    session = make_session()
    seed_ledger(session)

    rows = TrendsService(session, TENANT).get_aggregated_totals(
        ["period_start", "transaction_type"],
        TrendsFilters(period_type=PeriodType.quarterly),
    )

    assert [(row["period_start"], row["transaction_type"]) for row in rows] == [
        (date(2025, 1, 1), TransactionType.expense),
        (date(2025, 1, 1), TransactionType.income),
        (date(2025, 4, 1), TransactionType.expense),
    ]
    assert rows[0]["total_amount"] == Decimal("-365.50")


def test_aggregated_totals_reject_unknown_dimensions() -> None:
    session = make_session()
    service = TrendsService(session, TENANT)

    with pytest.raises(ValueError):
        service.get_aggregated_totals(["category_name; DROP TABLE financial_cube"])
    with pytest.raises(ValueError):
        service.get_aggregated_totals(["amount"])
    with pytest.raises(ValueError):
        service.get_aggregated_totals([])


def test_convenience_trend_helpers() -> None:
    session = make_session()
    seed_ledger(session)
    service = TrendsService(session, TENANT)
    start, end = date(2025, 1, 1), date(2025, 3, 31)

    categories = service.get_category_trends(start, end)
    assert {row["category_name"] for row in categories} == {"Food", "Bills"}
    assert len(categories) == 6

    accounts = service.get_account_trends(start, end)
    assert {row["account_name"] for row in accounts} == {"Checking", "Card"}

    flows = service.get_income_expense_trends(start, end, PeriodType.quarterly)
    assert {row["transaction_type"]: row["total_amount"] for row in flows} == {
        TransactionType.expense: Decimal("-365.50"),
        TransactionType.income: Decimal("6000.00"),
    }


def test_cube_statistics() -> None:
    session = make_session()
    seed_ledger(session)

    stats = TrendsService(session, TENANT).get_cube_statistics()

    assert stats.total_records == stats.weekly_records + stats.monthly_records
    assert stats.monthly_records == 11
    assert stats.account_count == 2
    assert stats.category_count == 3
    assert stats.earliest_period <= date(2025, 1, 1)
    assert stats.latest_period == date(2025, 4, 1)
    assert stats.last_updated is not None


def test_empty_statistics_for_unknown_tenant() -> None:
    session = make_session()
    seed_ledger(session)

    stats = TrendsService(session, "nobody").get_cube_statistics()

    assert stats.total_records == 0
    assert stats.earliest_period is None
    assert TrendsService(session, "nobody").get_trends() == []


def test_audit_reports_ledger_writes_that_bypassed_the_cube() -> None:
    session = make_session()
    checking, _, food, _, _ = seed_ledger(session)
    session.add(
        Transaction(
            tenant_id=TENANT,
            account_id=checking.id,
            category_id=food.id,
            amount=Decimal("-9.00"),
            date=date(2025, 2, 11),
            type=TransactionType.expense,
        )
    )
    session.commit()

    (discrepancy,) = TrendsService(session, TENANT).audit(date(2025, 1, 1), date(2025, 3, 31))

    assert discrepancy.period_start == date(2025, 2, 1)
    assert discrepancy.ledger_total - discrepancy.cube_total == Decimal("-9.00")
    assert discrepancy.ledger_count == discrepancy.cube_count + 1
