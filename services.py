from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, time
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload

from aggregation import AggregateBucket, TransactionRecord, aggregate, build_breakdown
from config import get_settings
from fx_rates import CurrencyConverter, FxRateService
from models import Tag, Transaction, TransactionType
from periods import DateWindow, normalize_date_range
from schemas import (
    AmountOut,
    StatisticsMetaOut,
    StatisticsOut,
    StatisticsPeriodOut,
    StatisticsSummaryOut,
    TagBreakdownOut,
    TransactionIn,
)

logger = logging.getLogger(__name__)

CURRENCY_PATTERN = re.compile(r"[A-Z]{3}")


def get_current_user_id() -> int:
    return get_settings().default_user_id


def normalize_currency(value: Optional[str]) -> str:
    code = (value or "").strip().upper()
    if not CURRENCY_PATTERN.fullmatch(code):
        raise ValueError("Currency code must be 3 letters")
    return code


def to_record(txn: Transaction) -> TransactionRecord:
    return TransactionRecord(
        type=txn.type,
        amount_minor=int(txn.amount_minor),
        currency=txn.currency,
        tags=frozenset(tag.name for tag in txn.tags),
        occurred_at=txn.occurred_at,
    )


@dataclass
class TransactionFilters:
    profile: Optional[str] = None
    type: Optional[TransactionType] = None
    currency: Optional[str] = None
    tag: Optional[str] = None


class TagService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Tag]:
        stmt = select(Tag).where(Tag.user_id == self.user_id).order_by(Tag.name)
        return self.session.scalars(stmt).all()

    def get_or_create(self, name: str) -> Tag:
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Tag name cannot be empty")

        stmt = select(Tag).where(
            Tag.user_id == self.user_id, func.lower(Tag.name) == clean_name.lower()
        )
        existing = self.session.scalar(stmt)
        if existing:
            return existing

        tag = Tag(user_id=self.user_id, name=clean_name)
        self.session.add(tag)
        self.session.flush()
        return tag


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def create(self, data: TransactionIn) -> Transaction:
        profile = data.profile.strip()
        if not profile:
            raise ValueError("Profile is required")
        currency = normalize_currency(data.currency)
        note = data.note.strip() if data.note and data.note.strip() else None

        txn = Transaction(
            user_id=self.user_id,
            profile=profile,
            occurred_at=datetime.combine(data.occurred_at, time.min),
            type=data.type,
            amount_minor=data.amount_minor,
            currency=currency,
            note=note,
        )
        tag_service = TagService(self.session, self.user_id)
        tags: list[Tag] = []
        tag_ids: set[int] = set()
        for name in data.tags:
            if not name.strip():
                continue
            tag = tag_service.get_or_create(name)
            if tag.id not in tag_ids:
                tags.append(tag)
                tag_ids.add(tag.id)
        txn.tags = tags

        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: id={txn.id} profile={profile} currency={currency}"
        )
        return txn

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.tags))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalars(stmt).unique().first()
        if not txn:
            raise ValueError("Transaction not found")
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()

    def _windowed(self, window: Optional[DateWindow], filters: TransactionFilters):
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.tags))
            .where(Transaction.user_id == self.user_id)
        )
        if window is not None:
            stmt = stmt.where(
                Transaction.occurred_at.between(window.fetch_start, window.fetch_end)
            )
        if filters.profile:
            stmt = stmt.where(Transaction.profile == filters.profile)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.currency:
            stmt = stmt.where(Transaction.currency == filters.currency)
        if filters.tag:
            stmt = stmt.where(Transaction.tags.any(Tag.name == filters.tag))
        return stmt

    def list(
        self,
        window: Optional[DateWindow],
        filters: TransactionFilters,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> tuple[list[Transaction], int]:
        stmt = self._windowed(window, filters).order_by(
            Transaction.occurred_at.desc(), Transaction.created_at.desc()
        )
        rows = self.session.scalars(stmt).unique().all()
        if window is not None:
            rows = [txn for txn in rows if window.contains(txn.occurred_at)]
        total = len(rows)
        if limit is None:
            return rows[offset:], total
        return rows[offset : offset + limit], total

    def list_records(
        self,
        profile: str,
        currency: str,
        window: DateWindow,
        *,
        exclude_currency: bool = False,
    ) -> list[TransactionRecord]:
        stmt = self._windowed(window, TransactionFilters(profile=profile))
        if exclude_currency:
            stmt = stmt.where(Transaction.currency != currency)
        else:
            stmt = stmt.where(Transaction.currency == currency)
        rows = self.session.scalars(stmt).unique().all()
        return [to_record(txn) for txn in rows if window.contains(txn.occurred_at)]


class StatisticsService:
    def __init__(
        self,
        session: Session,
        rate_service: FxRateService,
        user_id: Optional[int] = None,
    ) -> None:
        self.session = session
        self.rate_service = rate_service
        self.user_id = user_id or get_current_user_id()

    def compute(
        self,
        profile: Optional[str],
        currency: Optional[str],
        start: Optional[str],
        end: Optional[str],
        include_converted: bool = False,
    ) -> StatisticsOut:
        profile = (profile or "").strip()
        currency = (currency or "").strip().upper()
        if not profile or not currency or not start or not end:
            raise ValueError("Profile, currency, from, and to parameters are required.")
        currency = normalize_currency(currency)
        window = normalize_date_range(start, end)

        txn_service = TransactionService(self.session, self.user_id)
        bucket = aggregate(txn_service.list_records(profile, currency, window))

        skipped: set[str] = set()
        if include_converted:
            skipped = self._fold_converted(
                txn_service, bucket, profile, currency, window
            )

        logger.info(
            f"statistics: profile={profile} currency={currency} "
            f"from={window.exact_from} to={window.exact_to} "
            f"include_converted={include_converted} skipped={sorted(skipped)}"
        )
        return self._format(bucket, currency, window, skipped)

    def _fold_converted(
        self,
        txn_service: TransactionService,
        bucket: AggregateBucket,
        profile: str,
        currency: str,
        window: DateWindow,
    ) -> set[str]:
        foreign = txn_service.list_records(
            profile, currency, window, exclude_currency=True
        )
        if not foreign:
            return set()

        converter = CurrencyConverter(currency, self.rate_service.get_rates(currency))
        for record in foreign:
            converted = converter.convert(record.amount_minor, record.currency)
            if converted is None:
                continue
            bucket.add(record.type, converted, record.tags)
        return converter.skipped

    @staticmethod
    def _format(
        bucket: AggregateBucket,
        currency: str,
        window: DateWindow,
        skipped: set[str],
    ) -> StatisticsOut:
        expense_breakdown = build_breakdown(
            bucket.expense_by_tag, bucket.total_expense_minor, currency
        )
        income_breakdown = build_breakdown(
            bucket.income_by_tag, bucket.total_income_minor, currency
        )
        return StatisticsOut(
            summary=StatisticsSummaryOut(
                total_income=AmountOut(
                    amount_minor=bucket.total_income_minor, currency=currency
                ),
                total_expense=AmountOut(
                    amount_minor=bucket.total_expense_minor, currency=currency
                ),
                net_balance=AmountOut(
                    amount_minor=bucket.net_balance_minor, currency=currency
                ),
            ),
            expense_breakdown=[TagBreakdownOut(**item) for item in expense_breakdown],
            income_breakdown=[TagBreakdownOut(**item) for item in income_breakdown],
            period=StatisticsPeriodOut(
                from_=window.exact_from, to=window.exact_to, currency=currency
            ),
            meta=StatisticsMetaOut(skipped_currencies=sorted(skipped)),
        )
