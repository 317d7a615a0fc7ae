from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from models import UNCATEGORIZED_TAG, TransactionType


@dataclass(frozen=True)
class TransactionRecord:
    type: TransactionType
    amount_minor: int
    currency: str
    tags: frozenset[str]
    occurred_at: datetime


@dataclass
class AggregateBucket:
    """Running totals for one statistics call.

    Every tag on a transaction receives the full amount, so per-tag sums for
    a type may exceed the type total. Untagged amounts go to
    ``Uncategorized``.
    """

    total_income_minor: int = 0
    total_expense_minor: int = 0
    income_by_tag: dict[str, int] = field(default_factory=dict)
    expense_by_tag: dict[str, int] = field(default_factory=dict)

    def add(
        self, txn_type: TransactionType, amount_minor: int, tags: Iterable[str]
    ) -> None:
        if not amount_minor:
            return
        if txn_type == TransactionType.income:
            self.total_income_minor += amount_minor
            by_tag = self.income_by_tag
        else:
            self.total_expense_minor += amount_minor
            by_tag = self.expense_by_tag

        names = list(dict.fromkeys(tags)) or [UNCATEGORIZED_TAG]
        for name in names:
            by_tag[name] = by_tag.get(name, 0) + amount_minor

    @property
    def net_balance_minor(self) -> int:
        return self.total_income_minor - self.total_expense_minor


def aggregate(
    records: Iterable[TransactionRecord], bucket: AggregateBucket | None = None
) -> AggregateBucket:
    bucket = bucket if bucket is not None else AggregateBucket()
    for record in records:
        bucket.add(record.type, record.amount_minor, record.tags)
    return bucket


def percentage_of(amount_minor: int, total_minor: int) -> int:
    if total_minor <= 0:
        return 0
    share = Decimal(amount_minor) * 100 / Decimal(total_minor)
    return int(share.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def build_breakdown(
    by_tag: dict[str, int], total_minor: int, currency: str
) -> list[dict[str, object]]:
    breakdown = [
        {
            "tag": tag,
            "amount_minor": amount,
            "currency": currency,
            "percentage": percentage_of(amount, total_minor),
        }
        for tag, amount in by_tag.items()
    ]
    breakdown.sort(key=lambda item: int(item["amount_minor"]), reverse=True)
    return breakdown
