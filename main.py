import logging
import tomllib
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import get_db
from fx_rates import FxRateService
from models import Transaction, TransactionType
from periods import open_date_range, utc_day
from schemas import (
    PaginationOut,
    StatisticsOut,
    TagOut,
    TransactionIn,
    TransactionListOut,
    TransactionOut,
)
from services import (
    StatisticsService,
    TagService,
    TransactionFilters,
    TransactionService,
    normalize_currency,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 10_000

app = FastAPI(title="Finance Tracker")


def _load_app_version() -> str:
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"


APP_VERSION = _load_app_version()


@app.on_event("startup")
def startup_event():
    app.state.fx_rates = FxRateService()


def get_rate_service(request: Request) -> FxRateService:
    return request.app.state.fx_rates


def transaction_payload(txn: Transaction) -> TransactionOut:
    return TransactionOut(
        id=txn.id,
        profile=txn.profile,
        # Date-only string so clients do not shift it into their own zone.
        occurred_at=utc_day(txn.occurred_at),
        type=txn.type,
        amount_minor=txn.amount_minor,
        currency=txn.currency,
        tags=[tag.name for tag in txn.tags],
        note=txn.note,
        created_at=txn.created_at,
        updated_at=txn.updated_at,
    )


def filters_from_request(request: Request) -> TransactionFilters:
    params = request.query_params
    type_param = params.get("type")
    txn_type = None
    if type_param:
        try:
            txn_type = TransactionType(type_param)
        except ValueError:
            txn_type = None
    currency_param = (params.get("currency") or "").strip()
    currency = None
    if currency_param:
        try:
            currency = normalize_currency(currency_param)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    return TransactionFilters(
        profile=(params.get("profile") or "").strip() or None,
        type=txn_type,
        currency=currency,
        tag=(params.get("tag") or "").strip() or None,
    )


@app.get("/api/health")
def api_health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check failed")
        return JSONResponse(
            status_code=500,
            content={
                "ok": False,
                "database": "unreachable",
                "version": APP_VERSION,
            },
        )
    return {"ok": True, "database": "connected", "version": APP_VERSION}


@app.get("/api/statistics", response_model=StatisticsOut)
def api_statistics(
    profile: Optional[str] = Query(None),
    currency: Optional[str] = Query(None),
    start: Optional[str] = Query(None, alias="from"),
    end: Optional[str] = Query(None, alias="to"),
    include_converted: Optional[str] = Query(None, alias="includeConverted"),
    db: Session = Depends(get_db),
    rate_service: FxRateService = Depends(get_rate_service),
):
    service = StatisticsService(db, rate_service)
    # Only the exact string "true" turns conversion on.
    converted = include_converted == "true"
    try:
        return service.compute(
            profile, currency, start, end, include_converted=converted
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Error computing statistics")
        raise HTTPException(
            status_code=500, detail=f"Unable to load statistics: {exc}"
        ) from exc


@app.get("/api/transactions", response_model=TransactionListOut)
def api_transactions(
    request: Request,
    start: Optional[str] = Query(None, alias="from"),
    end: Optional[str] = Query(None, alias="to"),
    limit: Optional[int] = Query(None),
    offset: int = Query(0),
    db: Session = Depends(get_db),
):
    filters = filters_from_request(request)
    try:
        window = open_date_range(start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if limit is not None:
        limit = min(max(limit, 1), MAX_LIST_LIMIT)
    offset = max(offset, 0)

    items, total = TransactionService(db).list(
        window, filters, limit=limit, offset=offset
    )
    return TransactionListOut(
        transactions=[transaction_payload(txn) for txn in items],
        pagination=PaginationOut(
            total=total,
            limit=limit if limit is not None else total,
            offset=offset,
            has_more=limit is not None and offset + limit < total,
        ),
    )


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def api_create_transaction(data: TransactionIn, db: Session = Depends(get_db)):
    try:
        txn = TransactionService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return transaction_payload(txn)


@app.get("/api/tags", response_model=list[TagOut])
def api_tags(db: Session = Depends(get_db)):
    return TagService(db).list_all()


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def api_delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        TransactionService(db).delete(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)
