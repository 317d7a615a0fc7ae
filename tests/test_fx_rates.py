import io
import json
import threading
from decimal import Decimal
from urllib.error import HTTPError, URLError

import pytest

from config import Settings
from fx_rates import (
    CurrencyConverter,
    FxRateService,
    RateCache,
    RateSnapshot,
    convert_minor,
)


def make_settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        default_user_id=1,
        fx_base_url="https://rates.test/v6/latest",
        fx_timeout_secs=2.5,
        fx_cache_ttl_secs=3600,
    )


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def install_response(monkeypatch, payload, calls=None):
    def fake_urlopen(req, timeout):
        if calls is not None:
            calls.append((req.full_url, timeout))
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        return io.BytesIO(body)

    monkeypatch.setattr("fx_rates.urlopen", fake_urlopen)


def install_error(monkeypatch, exc):
    def fake_urlopen(req, timeout):
        raise exc

    monkeypatch.setattr("fx_rates.urlopen", fake_urlopen)


def test_successful_payload_becomes_decimal_rate_table(monkeypatch) -> None:
    calls = []
    install_response(
        monkeypatch,
        {"result": "success", "base_code": "USD", "rates": {"USD": 1, "EUR": 0.92}},
        calls,
    )

    snapshot = FxRateService(make_settings()).get_rates("usd")

    assert snapshot.available
    assert snapshot.base_currency == "USD"
    assert snapshot.rates["EUR"] == Decimal("0.92")
    assert calls == [("https://rates.test/v6/latest/USD", 2.5)]


def test_unusable_rate_entries_are_dropped(monkeypatch) -> None:
    install_response(
        monkeypatch,
        {
            "result": "success",
            "rates": {"EUR": 0.9, "XXX": 0, "YYY": -1, "ZZZ": "abc", "BBB": True},
        },
    )

    snapshot = FxRateService(make_settings()).get_rates("USD")

    assert dict(snapshot.rates) == {"EUR": Decimal("0.9")}


@pytest.mark.parametrize(
    "payload",
    [
        {"result": "error", "error-type": "unsupported-code"},
        {"result": "success", "error": "quota", "rates": {"EUR": 0.9}},
        {"result": "success", "rates": None},
        {"rates": {"EUR": 0.9}},
        ["not", "a", "dict"],
        b"<html>not json</html>",
    ],
)
def test_bad_payloads_yield_unavailable_snapshot(monkeypatch, payload) -> None:
    install_response(monkeypatch, payload)

    snapshot = FxRateService(make_settings()).get_rates("USD")

    assert not snapshot.available
    assert snapshot.rates == {}


@pytest.mark.parametrize(
    "exc",
    [
        HTTPError("https://rates.test", 503, "Service Unavailable", {}, None),
        URLError("name resolution failed"),
        TimeoutError("timed out"),
        ConnectionResetError("reset"),
    ],
)
def test_transport_failures_never_raise(monkeypatch, exc) -> None:
    install_error(monkeypatch, exc)

    snapshot = FxRateService(make_settings()).get_rates("USD")

    assert not snapshot.available
    assert snapshot.rates == {}


def test_rates_cached_per_base_until_stale(monkeypatch) -> None:
    calls = []
    install_response(monkeypatch, {"result": "success", "rates": {"EUR": 0.9}}, calls)
    clock = FakeClock()
    service = FxRateService(make_settings(), RateCache(ttl_secs=3600, clock=clock))

    first = service.get_rates("USD")
    clock.now += 3599
    assert service.get_rates("USD") is first
    assert len(calls) == 1

    service.get_rates("EUR")
    assert len(calls) == 2

    clock.now += 1
    refreshed = service.get_rates("USD")
    assert refreshed is not first
    assert len(calls) == 3


def test_unavailable_snapshot_is_not_cached(monkeypatch) -> None:
    install_error(monkeypatch, URLError("down"))
    cache = RateCache(ttl_secs=3600, clock=FakeClock())
    service = FxRateService(make_settings(), cache)

    assert not service.get_rates("USD").available
    assert cache.get("USD") is None
    assert cache.is_stale("USD")

    install_response(monkeypatch, {"result": "success", "rates": {"EUR": 0.9}})
    assert service.get_rates("USD").available
    assert not cache.is_stale("USD")


def test_convert_same_currency_is_identity() -> None:
    assert convert_minor(12_345, "USD", "USD", {}) == 12_345


def test_convert_divides_by_rate_to_base() -> None:
    rates = {"EUR": Decimal("0.9")}

    assert convert_minor(5_000, "EUR", "USD", rates) == 5_556
    assert convert_minor(20_000, "EUR", "USD", {"EUR": Decimal("0.92")}) == 21_739


def test_convert_rounds_half_away_from_zero() -> None:
    assert convert_minor(5, "JPY", "USD", {"JPY": Decimal("2")}) == 3
    assert convert_minor(7, "JPY", "USD", {"JPY": Decimal("2")}) == 4


def test_convert_without_positive_rate_is_skipped() -> None:
    assert convert_minor(5_000, "EUR", "USD", {}) is None
    assert convert_minor(5_000, "EUR", "USD", {"EUR": Decimal("0")}) is None
    assert convert_minor(5_000, "EUR", "USD", {"EUR": Decimal("-1")}) is None


def test_converter_collects_skipped_currencies() -> None:
    snapshot = RateSnapshot(
        base_currency="USD",
        rates={"EUR": Decimal("0.9")},
        fetched_at=RateSnapshot.unavailable("USD").fetched_at,
    )
    converter = CurrencyConverter("USD", snapshot)

    assert converter.convert(900, "EUR") == 1_000
    assert converter.convert(100, "GBP") is None
    assert converter.convert(100, "USD") == 100
    assert converter.skipped == {"GBP"}


def test_concurrent_misses_fetch_once(monkeypatch) -> None:
    calls = []
    started = threading.Event()
    release = threading.Event()

    def slow_urlopen(req, timeout):
        calls.append(req.full_url)
        started.set()
        release.wait(timeout=5)
        payload = {"result": "success", "rates": {"EUR": 0.9}}
        return io.BytesIO(json.dumps(payload).encode())

    monkeypatch.setattr("fx_rates.urlopen", slow_urlopen)
    service = FxRateService(settings=make_settings())
    results = []

    def worker() -> None:
        results.append(service.get_rates("USD"))

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    assert started.wait(timeout=5)
    release.set()
    for thread in threads:
        thread.join(timeout=5)

    assert len(calls) == 1
    assert len(results) == 4
    assert all(snapshot is results[0] for snapshot in results)
