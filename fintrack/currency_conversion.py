from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from http.client import HTTPException
import json
import threading
from typing import Callable, Iterable, Mapping, Protocol
from urllib.request import urlopen

import structlog

from fintrack.errors import NotFoundError, UpstreamFetchError, ValidationError

logger = structlog.get_logger()

SUPPORTED_CURRENCIES: tuple[str, ...] = (
    "USD", "EUR", "GBP", "JPY", "CAD", "AUD", "CHF", "CNY", "SEK", "NZD",
    "MXN", "SGD", "HKD", "NOK", "TRY", "RUB", "INR", "BRL", "ZAR", "KRW",
)

# code -> (display name, symbol)
CURRENCY_DETAILS: dict[str, tuple[str, str]] = {
    "USD": ("US Dollar", "$"),
    "EUR": ("Euro", "€"),
    "GBP": ("British Pound", "£"),
    "JPY": ("Japanese Yen", "¥"),
    "CAD": ("Canadian Dollar", "C$"),
    "AUD": ("Australian Dollar", "A$"),
    "CHF": ("Swiss Franc", "CHF"),
    "CNY": ("Chinese Yuan", "¥"),
    "SEK": ("Swedish Krona", "kr"),
    "NZD": ("New Zealand Dollar", "NZ$"),
    "MXN": ("Mexican Peso", "$"),
    "SGD": ("Singapore Dollar", "S$"),
    "HKD": ("Hong Kong Dollar", "HK$"),
    "NOK": ("Norwegian Krone", "kr"),
    "TRY": ("Turkish Lira", "₺"),
    "RUB": ("Russian Ruble", "₽"),
    "INR": ("Indian Rupee", "₹"),
    "BRL": ("Brazilian Real", "R$"),
    "ZAR": ("South African Rand", "R"),
    "KRW": ("South Korean Won", "₩"),
}

CACHE_TTL = timedelta(hours=1)
CENT = Decimal("0.01")

SOURCE_SAME_CURRENCY = "Same Currency"
SOURCE_LIVE = "Live Rates"
SOURCE_CACHED = "Cached Rates"


class RateClient(Protocol):
    def fetch_latest(self, base_currency: str) -> Mapping[str, Decimal]:
        ...


@dataclass(frozen=True)
class RateTable:
    base: str
    rates: Mapping[str, Decimal]
    fetched_at: datetime
    source: str = SOURCE_LIVE

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates))


@dataclass(frozen=True)
class ConversionResult:
    original_amount: Decimal
    from_currency: str
    converted_amount: Decimal
    to_currency: str
    exchange_rate: Decimal
    timestamp: datetime
    source: str


@dataclass(frozen=True)
class CurrencyInfo:
    code: str
    name: str
    symbol: str


@dataclass
class OpenExchangeRatesClient:
    """Fetches the latest rate table from the Open Exchange Rates API.

    Rates are expressed as target currency per 1 unit of the base currency.
    """

    app_id: str = ""
    base_url: str = "https://openexchangerates.org/api"
    timeout: float = 8

    def fetch_latest(self, base_currency: str) -> dict[str, Decimal]:
        url = f"{self.base_url}/latest.json?app_id={self.app_id}&base={base_currency}"
        # URLError and dropped connections are both OSError subclasses.
        try:
            with urlopen(url, timeout=self.timeout) as response:
                payload = json.load(response, parse_float=Decimal)
        except (OSError, HTTPException, ValueError) as exc:
            raise UpstreamFetchError("Open Exchange Rates API unavailable") from exc

        rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict):
            raise UpstreamFetchError("Open Exchange Rates response missing rates")

        try:
            parsed = {
                str(code).strip().upper(): Decimal(str(value))
                for code, value in rates.items()
            }
        except InvalidOperation as exc:
            raise UpstreamFetchError("Open Exchange Rates response has a non-numeric rate") from exc
        if any(not value.is_finite() or value <= 0 for value in parsed.values()):
            raise UpstreamFetchError("Open Exchange Rates response has an invalid rate")
        return parsed


@dataclass
class CurrencyConverter:
    """Live currency conversion with a fallback cache of the last good rates.

    Every lookup re-fetches from the provider. The cache is only read when
    the provider fails, and only for the base currency being requested.
    One instance is shared by all request handlers; the cache map and the
    refresh timestamp are only touched while holding ``_lock``.
    """

    client: RateClient
    clock: Callable[[], datetime] = datetime.now
    cache_ttl: timedelta = CACHE_TTL
    _fallback: dict[str, RateTable] = field(default_factory=dict, repr=False)
    _last_refresh: datetime | None = field(default=None, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def last_refresh(self) -> datetime | None:
        with self._lock:
            return self._last_refresh

    def supported_currencies(self) -> list[str]:
        return list(SUPPORTED_CURRENCIES)

    def fetch_rates(self, base_currency: str) -> RateTable:
        base = validate_currency(base_currency)
        try:
            fetched = dict(self.client.fetch_latest(base))
        except UpstreamFetchError as exc:
            return self._cached_rates(base, exc)

        now = self.clock()
        with self._lock:
            previous = self._fallback.get(base)
            merged = dict(previous.rates) if previous else {}
            merged.update(fetched)
            self._fallback[base] = RateTable(base=base, rates=merged, fetched_at=now, source=SOURCE_CACHED)
            self._last_refresh = now
        logger.info("exchange_rates_fetched", base=base, count=len(fetched))
        return RateTable(base=base, rates=fetched, fetched_at=now)

    def convert(
        self,
        amount: Decimal | int | float | str,
        from_currency: str,
        to_currency: str,
    ) -> ConversionResult:
        source = validate_currency(from_currency)
        target = validate_currency(to_currency)
        coerced_amount = coerce_amount(amount)

        if source == target:
            return ConversionResult(
                original_amount=coerced_amount,
                from_currency=source,
                converted_amount=coerced_amount,
                to_currency=target,
                exchange_rate=Decimal("1"),
                timestamp=self.clock(),
                source=SOURCE_SAME_CURRENCY,
            )

        table = self.fetch_rates(source)
        rate = _lookup_rate(table, target)
        converted = (coerced_amount * rate).quantize(CENT, rounding=ROUND_HALF_UP)
        return ConversionResult(
            original_amount=coerced_amount,
            from_currency=source,
            converted_amount=converted,
            to_currency=target,
            exchange_rate=rate,
            timestamp=self.clock(),
            source=table.source,
        )

    def rate(self, from_currency: str, to_currency: str) -> Decimal:
        source = validate_currency(from_currency)
        target = validate_currency(to_currency)
        if source == target:
            return Decimal("1")
        return _lookup_rate(self.fetch_rates(source), target)

    def convert_many(
        self,
        amount: Decimal | int | float | str,
        from_currency: str,
        to_currencies: Iterable[str],
    ) -> list[ConversionResult]:
        # Any failing target aborts the batch.
        return [self.convert(amount, from_currency, target) for target in to_currencies]

    def is_stale(self) -> bool:
        with self._lock:
            last_refresh = self._last_refresh
        if last_refresh is None:
            return True
        return last_refresh < self.clock() - self.cache_ttl

    def clear(self) -> None:
        with self._lock:
            self._fallback.clear()
            self._last_refresh = None
        logger.info("exchange_rate_cache_cleared")

    def currency_info(self, currency: str) -> CurrencyInfo:
        code = validate_currency(currency)
        name, symbol = CURRENCY_DETAILS.get(code, (f"{code} Currency", code))
        return CurrencyInfo(code=code, name=name, symbol=symbol)

    def _cached_rates(self, base: str, error: UpstreamFetchError) -> RateTable:
        with self._lock:
            cached = self._fallback.get(base)
        if cached is None:
            logger.error("exchange_rates_unavailable", base=base, error=str(error))
            raise UpstreamFetchError(f"Error retrieving exchange rates: {error}") from error
        logger.warning(
            "exchange_rates_fallback",
            base=base,
            error=str(error),
            cached_at=cached.fetched_at.isoformat(),
        )
        return RateTable(base=base, rates=cached.rates, fetched_at=cached.fetched_at, source=SOURCE_CACHED)


def validate_currency(value: str | None) -> str:
    if value is None or not value.strip():
        raise ValidationError("Currency code cannot be null or empty")
    normalized = value.strip().upper()
    if len(normalized) != 3:
        raise ValidationError("Currency code must be 3 characters long")
    if normalized not in SUPPORTED_CURRENCIES:
        raise ValidationError(f"Unsupported currency: {normalized}")
    return normalized


def _lookup_rate(table: RateTable, target: str) -> Decimal:
    try:
        return table.rates[target]
    except KeyError as exc:
        raise NotFoundError(f"Exchange rate not found for {target}") from exc


def coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    try:
        return Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid amount: {amount}") from exc
