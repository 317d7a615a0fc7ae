from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from models import TransactionType

MAX_AMOUNT_MINOR = 2**63 - 1


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TagOut(CamelModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str


class TransactionIn(CamelModel):
    profile: str = Field(..., min_length=1, max_length=100)
    occurred_at: date
    type: TransactionType
    amount_minor: int = Field(..., gt=0, le=MAX_AMOUNT_MINOR)
    currency: str = Field(..., min_length=1, max_length=8)
    tags: list[str] = Field(default_factory=list)
    note: Optional[str] = Field(default=None, max_length=500)


class TransactionOut(CamelModel):
    id: int
    profile: str
    occurred_at: str
    type: TransactionType
    amount_minor: int
    currency: str
    tags: list[str]
    note: Optional[str]
    created_at: datetime
    updated_at: datetime


class PaginationOut(CamelModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class TransactionListOut(CamelModel):
    transactions: list[TransactionOut]
    pagination: PaginationOut


class AmountOut(CamelModel):
    amount_minor: int
    currency: str


class StatisticsSummaryOut(CamelModel):
    total_income: AmountOut
    total_expense: AmountOut
    net_balance: AmountOut


class TagBreakdownOut(CamelModel):
    tag: str
    amount_minor: int
    currency: str
    percentage: int = Field(..., ge=0)


class StatisticsPeriodOut(CamelModel):
    from_: str = Field(..., alias="from")
    to: str
    currency: str


class StatisticsMetaOut(CamelModel):
    skipped_currencies: list[str] = Field(default_factory=list)


class StatisticsOut(CamelModel):
    summary: StatisticsSummaryOut
    expense_breakdown: list[TagBreakdownOut]
    income_breakdown: list[TagBreakdownOut]
    period: StatisticsPeriodOut
    meta: StatisticsMetaOut
