from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from http.client import HTTPException
from typing import Callable, Mapping, Optional
from urllib.request import Request, urlopen

from config import Settings, get_settings

logger = logging.getLogger(__name__)


class RateFetchError(RuntimeError):
    pass


@dataclass(frozen=True)
class RateSnapshot:
    """Conversion rates for one base currency.

    ``rates[code]`` is units of ``code`` per 1 unit of ``base_currency``.
    An unavailable snapshot has an empty rate table and is never cached.
    """

    base_currency: str
    rates: Mapping[str, Decimal]
    fetched_at: datetime
    available: bool = True

    @classmethod
    def unavailable(cls, base_currency: str) -> "RateSnapshot":
        return cls(
            base_currency=base_currency,
            rates={},
            fetched_at=datetime.now(timezone.utc),
            available=False,
        )


@dataclass
class RateCache:
    ttl_secs: float = 3600.0
    clock: Callable[[], float] = time.monotonic
    _entries: dict[str, tuple[RateSnapshot, float]] = field(default_factory=dict)

    def get(self, base_currency: str) -> Optional[RateSnapshot]:
        entry = self._entries.get(base_currency)
        if entry is None or self.is_stale(base_currency):
            return None
        return entry[0]

    def put(self, snapshot: RateSnapshot) -> None:
        self._entries[snapshot.base_currency] = (snapshot, self.clock())

    def is_stale(self, base_currency: str) -> bool:
        entry = self._entries.get(base_currency)
        if entry is None:
            return True
        return self.clock() - entry[1] >= self.ttl_secs


class FxRateService:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        cache: Optional[RateCache] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.cache = cache or RateCache(ttl_secs=self.settings.fx_cache_ttl_secs)
        self._lock = threading.Lock()

    def get_rates(self, base_currency: str) -> RateSnapshot:
        base = base_currency.strip().upper()
        # Concurrent misses for one base share a single outbound request.
        with self._lock:
            return self._get_or_fetch(base)

    def _get_or_fetch(self, base: str) -> RateSnapshot:
        cached = self.cache.get(base)
        if cached is not None:
            return cached

        try:
            payload = _fetch_latest_rates(
                base,
                base_url=self.settings.fx_base_url,
                timeout=self.settings.fx_timeout_secs,
            )
            rates = _parse_rates(payload)
        except RateFetchError as exc:
            logger.warning(f"fx_fetch: base={base} status=unavailable reason={exc}")
            return RateSnapshot.unavailable(base)

        snapshot = RateSnapshot(
            base_currency=base,
            rates=rates,
            fetched_at=datetime.now(timezone.utc),
        )
        self.cache.put(snapshot)
        logger.info(f"fx_fetch: base={base} status=ok rates={len(rates)}")
        return snapshot


def _fetch_latest_rates(base: str, *, base_url: str, timeout: float) -> object:
    url = f"{base_url}/{base}"
    req = Request(url, headers={"Accept": "application/json"})
    try:
        with urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode("utf-8"))
    except (OSError, HTTPException, ValueError) as exc:
        # OSError covers URLError, HTTPError and timeouts; ValueError covers
        # JSON and UTF-8 decoding.
        raise RateFetchError(f"request to {url} failed: {exc}") from exc


def _parse_rates(payload: object) -> dict[str, Decimal]:
    if not isinstance(payload, dict):
        raise RateFetchError("unexpected payload type")
    if payload.get("error") or payload.get("error-type"):
        raise RateFetchError(
            f"provider error {payload.get('error') or payload.get('error-type')}"
        )
    raw_rates = payload.get("rates")
    if payload.get("result") != "success" or not isinstance(raw_rates, dict):
        raise RateFetchError("payload not marked successful")

    rates: dict[str, Decimal] = {}
    for code, value in raw_rates.items():
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            continue
        try:
            rate = Decimal(str(value))
        except InvalidOperation:
            continue
        if rate.is_finite() and rate > 0:
            rates[str(code).upper()] = rate
    return rates


def convert_minor(
    amount_minor: int,
    source_currency: str,
    target_currency: str,
    rates: Mapping[str, Decimal],
) -> Optional[int]:
    """Convert ``amount_minor`` into ``target_currency`` minor units.

    Returns ``None`` when ``source_currency`` has no positive rate. The rate
    table is quoted against the target, so the amount is divided by it and
    rounded half away from zero.
    """
    if source_currency == target_currency:
        return amount_minor
    raw_rate = rates.get(source_currency)
    if raw_rate is None:
        return None
    rate = Decimal(str(raw_rate))
    if not rate.is_finite() or rate <= 0:
        return None
    converted = (Decimal(amount_minor) / rate).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return int(converted)


class CurrencyConverter:
    def __init__(self, target_currency: str, snapshot: RateSnapshot) -> None:
        self.target_currency = target_currency
        self.snapshot = snapshot
        self.skipped: set[str] = set()

    def convert(self, amount_minor: int, source_currency: str) -> Optional[int]:
        converted = convert_minor(
            amount_minor, source_currency, self.target_currency, self.snapshot.rates
        )
        if converted is None:
            self.skipped.add(source_currency)
        return converted
