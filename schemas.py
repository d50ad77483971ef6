import datetime as dt
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import PeriodType, TransactionType


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType


class TransactionIn(BaseModel):
    account_id: int
    category_id: Optional[int] = None
    amount: Decimal = Field(..., max_digits=12, decimal_places=2)
    date: date
    type: TransactionType
    is_recurring: bool = False
    description: Optional[str] = Field(default=None, max_length=500)


class TransactionUpdateIn(BaseModel):
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    amount: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    date: Optional[dt.date] = None
    type: Optional[TransactionType] = None
    is_recurring: Optional[bool] = None
    description: Optional[str] = Field(default=None, max_length=500)


class BulkUpdateIn(BaseModel):
    transaction_ids: list[int] = Field(..., min_length=1)
    changes: TransactionUpdateIn


class BulkDeleteIn(BaseModel):
    transaction_ids: list[int] = Field(..., min_length=1)


class CubeRelevantFields(BaseModel):
    """Snapshot of the transaction fields that place a row in the cube."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    account_id: int
    category_id: Optional[int] = None
    amount: Decimal
    date: date
    type: TransactionType
    is_recurring: bool = False


class FieldChange(BaseModel):
    field_name: str
    old_value: Any = None
    new_value: Any = None


class DateRangeIn(BaseModel):
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def _check_order(self) -> "DateRangeIn":
        if self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class BulkUpdateMetadata(BaseModel):
    tenant_id: str
    affected_transaction_ids: list[int] = Field(default_factory=list)
    changed_fields: list[FieldChange] = Field(default_factory=list)
    date_range: Optional[DateRangeIn] = None


class TrendsFilters(BaseModel):
    period_type: Optional[PeriodType] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    transaction_type: Optional[TransactionType] = None
    category_ids: Optional[list[int]] = None
    account_ids: Optional[list[int]] = None
    is_recurring: Optional[bool] = None


class PopulateOptions(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    clear_existing: bool = False
    batch_size: Optional[int] = Field(default=None, ge=1, le=10_000)
    account_id: Optional[int] = None


class PopulateResult(BaseModel):
    periods_processed: int = 0
    records_created: int = 0
    time_elapsed_ms: float = 0.0
    accounts_processed: int = 0


class RebuildIn(BaseModel):
    start_date: date
    end_date: date
    period_type: PeriodType = PeriodType.monthly
    account_id: Optional[int] = None

    @model_validator(mode="after")
    def _check_range(self) -> "RebuildIn":
        if not self.period_type.is_native:
            raise ValueError("Only weekly or monthly periods can be rebuilt")
        if self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        if (self.end_date - self.start_date).days > 730:
            raise ValueError("Date range too large: maximum 2 years allowed")
        return self


class CubeStatistics(BaseModel):
    total_records: int
    weekly_records: int
    monthly_records: int
    earliest_period: Optional[date] = None
    latest_period: Optional[date] = None
    account_count: int
    category_count: int
    last_updated: Optional[dt.datetime] = None


class AuditDiscrepancy(BaseModel):
    period_type: PeriodType
    period_start: date
    period_end: date
    cube_total: Decimal
    ledger_total: Decimal
    cube_count: int
    ledger_count: int
