import logging
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from models import Account, Category, PeriodType, Transaction, TransactionType
from periods import resolve_range
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    BulkDeleteIn,
    BulkUpdateIn,
    CategoryIn,
    PopulateOptions,
    RebuildIn,
    TransactionIn,
    TransactionUpdateIn,
    TrendsFilters,
)
from services import (
    AccountService,
    CategoryService,
    PopulationService,
    TransactionService,
    TrendsService,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Trends Cube")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_tenant_id(x_tenant_id: Optional[str] = Header(default=None)) -> str:
    tenant_id = (x_tenant_id or "").strip()
    return tenant_id or get_settings().default_tenant


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"detail": errors})


def _parse_date(value: Optional[str], name: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name}") from exc


def _parse_ids(request: Request, name: str) -> Optional[list[int]]:
    raw = request.query_params.getlist(name)
    if not raw:
        return None
    ids: list[int] = []
    for value in raw:
        for part in value.split(","):
            part = part.strip()
            if not part:
                continue
            try:
                ids.append(int(part))
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=f"Invalid {name}") from exc
    return ids


def _parse_bool(value: Optional[str], name: str) -> Optional[bool]:
    if value is None or value == "":
        return None
    lowered = value.lower()
    if lowered in ("1", "true", "yes"):
        return True
    if lowered in ("0", "false", "no"):
        return False
    raise HTTPException(status_code=400, detail=f"Invalid {name}")


def filters_from_request(request: Request) -> TrendsFilters:
    params = request.query_params
    period_type = None
    if params.get("period_type"):
        try:
            period_type = PeriodType(params["period_type"])
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid period_type") from exc
    txn_type = None
    if params.get("transaction_type"):
        try:
            txn_type = TransactionType(params["transaction_type"])
        except ValueError as exc:
            raise HTTPException(
                status_code=400, detail="Invalid transaction_type"
            ) from exc

    start_date = _parse_date(params.get("start_date"), "start_date")
    end_date = _parse_date(params.get("end_date"), "end_date")
    if params.get("range"):
        try:
            resolved = resolve_range(params["range"], params.get("start"), params.get("end"))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        start_date = start_date or resolved.start
        end_date = end_date or resolved.end
    if start_date and end_date and start_date > end_date:
        raise HTTPException(status_code=400, detail="start_date must not be after end_date")

    return TrendsFilters(
        period_type=period_type,
        start_date=start_date,
        end_date=end_date,
        transaction_type=txn_type,
        category_ids=_parse_ids(request, "category_ids"),
        account_ids=_parse_ids(request, "account_ids"),
        is_recurring=_parse_bool(params.get("is_recurring"), "is_recurring"),
    )


def _required_range(request: Request) -> tuple[date, date]:
    filters = filters_from_request(request)
    if filters.start_date is None or filters.end_date is None:
        raise HTTPException(status_code=400, detail="start_date and end_date are required")
    return filters.start_date, filters.end_date


def _period_type_param(request: Request) -> PeriodType:
    value = request.query_params.get("period_type") or PeriodType.monthly.value
    try:
        return PeriodType(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid period_type") from exc


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


def _totals_payload(rows: list[dict[str, Any]]) -> dict[str, Any]:
    return {
        "items": [{key: _jsonable(value) for key, value in row.items()} for row in rows],
        "count": len(rows),
    }


def _transaction_payload(txn: Transaction) -> dict[str, Any]:
    return {
        "id": txn.id,
        "account_id": txn.account_id,
        "category_id": txn.category_id,
        "amount": str(txn.amount),
        "date": txn.date.isoformat(),
        "type": txn.type.value,
        "is_recurring": txn.is_recurring,
        "description": txn.description,
    }


def _account_payload(account: Account) -> dict[str, Any]:
    return {"id": account.id, "name": account.name}


def _category_payload(category: Category) -> dict[str, Any]:
    return {"id": category.id, "name": category.name, "type": category.type.value}


@app.get("/api/accounts")
def api_accounts(
    db: Session = Depends(get_db), tenant_id: str = Depends(get_tenant_id)
):
    return {"items": [_account_payload(a) for a in AccountService(db, tenant_id).list_all()]}


@app.post("/api/accounts", status_code=201)
def api_create_account(
    payload: AccountIn,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    try:
        account = AccountService(db, tenant_id).create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _account_payload(account)


@app.get("/api/categories")
def api_categories(
    db: Session = Depends(get_db), tenant_id: str = Depends(get_tenant_id)
):
    items = CategoryService(db, tenant_id).list_all()
    return {"items": [_category_payload(c) for c in items]}


@app.post("/api/categories", status_code=201)
def api_create_category(
    payload: CategoryIn,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    try:
        category = CategoryService(db, tenant_id).create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _category_payload(category)


@app.post("/api/transactions", status_code=201)
def api_create_transaction(
    payload: TransactionIn,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    try:
        txn = TransactionService(db, tenant_id).create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _transaction_payload(txn)


@app.patch("/api/transactions/{transaction_id}")
def api_update_transaction(
    transaction_id: int,
    payload: TransactionUpdateIn,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    service = TransactionService(db, tenant_id)
    try:
        service.get(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    try:
        txn = service.update(transaction_id, payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _transaction_payload(txn)


@app.delete("/api/transactions/{transaction_id}")
def api_delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    try:
        TransactionService(db, tenant_id).delete(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"deleted": transaction_id}


@app.post("/api/transactions/bulk", status_code=201)
def api_bulk_create_transactions(
    payload: list[TransactionIn],
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    try:
        txns = TransactionService(db, tenant_id).bulk_create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"items": [_transaction_payload(txn) for txn in txns], "count": len(txns)}


@app.post("/api/transactions/bulk-update")
def api_bulk_update_transactions(
    payload: BulkUpdateIn,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    try:
        updated = TransactionService(db, tenant_id).bulk_update(
            payload.transaction_ids, payload.changes
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"updated": updated}


@app.post("/api/transactions/bulk-delete")
def api_bulk_delete_transactions(
    payload: BulkDeleteIn,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    deleted = TransactionService(db, tenant_id).bulk_delete(payload.transaction_ids)
    return {"deleted": deleted}


@app.get("/api/trends")
def api_trends(
    request: Request,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    filters = filters_from_request(request)
    records = TrendsService(db, tenant_id).get_trends(filters)
    return {"items": [record.to_dict() for record in records], "count": len(records)}


@app.get("/api/trends/totals")
def api_trend_totals(
    request: Request,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    group_by = [
        part.strip()
        for part in request.query_params.get("group_by", "").split(",")
        if part.strip()
    ]
    filters = filters_from_request(request)
    try:
        rows = TrendsService(db, tenant_id).get_aggregated_totals(group_by, filters)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _totals_payload(rows)


@app.get("/api/trends/categories")
def api_category_trends(
    request: Request,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    start, end = _required_range(request)
    rows = TrendsService(db, tenant_id).get_category_trends(
        start, end, _period_type_param(request)
    )
    return _totals_payload(rows)


@app.get("/api/trends/accounts")
def api_account_trends(
    request: Request,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    start, end = _required_range(request)
    rows = TrendsService(db, tenant_id).get_account_trends(
        start, end, _period_type_param(request)
    )
    return _totals_payload(rows)


@app.get("/api/trends/income-expense")
def api_income_expense_trends(
    request: Request,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    start, end = _required_range(request)
    rows = TrendsService(db, tenant_id).get_income_expense_trends(
        start, end, _period_type_param(request)
    )
    return _totals_payload(rows)


@app.get("/api/cube/status")
def api_cube_status(
    db: Session = Depends(get_db), tenant_id: str = Depends(get_tenant_id)
):
    stats = TrendsService(db, tenant_id).get_cube_statistics()
    payload = stats.model_dump(mode="json")
    payload["populated"] = stats.total_records > 0
    return payload


@app.get("/api/cube/audit")
def api_cube_audit(
    request: Request,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    start, end = _required_range(request)
    period_type = _period_type_param(request)
    if not period_type.is_native:
        raise HTTPException(status_code=400, detail="Only weekly or monthly periods can be audited")
    discrepancies = TrendsService(db, tenant_id).audit(start, end, period_type)
    return {
        "items": [item.model_dump(mode="json") for item in discrepancies],
        "consistent": not discrepancies,
    }


@app.post("/api/cube/populate")
def api_cube_populate(
    payload: Optional[PopulateOptions] = None,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    result = PopulationService(db, tenant_id).populate(payload or PopulateOptions())
    return result.model_dump()


@app.post("/api/cube/rebuild")
def api_cube_rebuild(
    payload: RebuildIn,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    rows = PopulationService(db, tenant_id).rebuild_for_period(
        payload.start_date, payload.end_date, payload.period_type, payload.account_id
    )
    logger.info(
        f"cube_rebuild: tenant={tenant_id} period_type={payload.period_type.value} "
        f"start={payload.start_date} end={payload.end_date} rows={rows}"
    )
    return {"rows_written": rows}


@app.post("/api/cube/clear")
def api_cube_clear(
    db: Session = Depends(get_db), tenant_id: str = Depends(get_tenant_id)
):
    deleted = PopulationService(db, tenant_id).clear_all()
    return {"deleted": deleted}
