"""USDT/RUB exchange rate with an explicit TTL cache."""

import time
from decimal import Decimal, InvalidOperation

from storepay.common.errors import PaymentServiceUnavailable
from storepay.common.logging import logger


class ExchangeRateCache:
    """Caches the gateway's USDT->RUB rate for `ttl_seconds`.

    Lookup order: valid USDT/RUB pair, then USD/RUB, then `fallback`. A failed
    fetch returns the fallback without caching it, so the next call retries.
    """

    def __init__(
        self, fetch_rates, ttl_seconds: float = 300, fallback: Decimal = Decimal("90"), clock=time.monotonic
    ) -> None:
        self.fetch_rates = fetch_rates
        self.ttl_seconds = ttl_seconds
        self.fallback = Decimal(fallback)
        self.clock = clock
        self._rate: Decimal | None = None
        self._fetched_at = 0.0

    def get(self) -> Decimal:
        if self._rate is not None and self.clock() - self._fetched_at < self.ttl_seconds:
            return self._rate
        try:
            rates = self.fetch_rates()
        except PaymentServiceUnavailable:
            logger.warning("exchange rate fetch failed, using fallback rate=%s", self.fallback)
            return self.fallback
        rate = self._pick(rates, "USDT") or self._pick(rates, "USD") or self.fallback
        self._rate = rate
        self._fetched_at = self.clock()
        return rate

    def invalidate(self) -> None:
        self._rate = None
        self._fetched_at = 0.0

    @staticmethod
    def _pick(rates: list[dict], source: str) -> Decimal | None:
        for row in rates:
            if row.get("source") != source or row.get("target") != "RUB" or row.get("is_valid") is False:
                continue
            try:
                rate = Decimal(str(row.get("rate")))
            except (InvalidOperation, ValueError):
                continue
            if rate.is_finite() and rate > 0:
                return rate
        return None
