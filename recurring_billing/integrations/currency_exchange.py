from __future__ import annotations

import math
from datetime import UTC, datetime
from time import monotonic
from typing import Any

import httpx

from recurring_billing.billing.errors import ConversionError
from recurring_billing.billing.models import CurrencyConversion
from recurring_billing.core.logging import get_logger
from recurring_billing.core.settings import Settings
from recurring_billing.worker.retry import sanitize_error

logger = get_logger("integrations.currency_exchange")

RIAL_PER_TOMAN = 10
_ROUNDING_STEPS = (
    (1_000, 100),
    (10_000, 500),
    (100_000, 1_000),
    (1_000_000, 5_000),
)
_LARGE_AMOUNT_STEP = 10_000


def smart_round_toman(amount: float) -> int:
    """Round a Toman amount up to a price-friendly step that grows with magnitude."""
    if amount <= 0:
        return 0
    for upper_bound, step in _ROUNDING_STEPS:
        if amount < upper_bound:
            return int(math.ceil(amount / step) * step)
    return int(math.ceil(amount / _LARGE_AMOUNT_STEP) * _LARGE_AMOUNT_STEP)


class CurrencyExchangeService:
    """USD -> Toman conversion. There is no fallback rate: an unavailable API blocks billing."""

    def __init__(
        self,
        *,
        base_url: str = "https://services.chatqt.com/public",
        timeout_seconds: float = 5.0,
        cache_seconds: int = 600,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.cache_seconds = max(0, cache_seconds)
        self._cached_rate: float | None = None
        self._fetched_at: float = 0.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "CurrencyExchangeService":
        return cls(
            base_url=settings.CURRENCY_API_BASE_URL,
            timeout_seconds=settings.CURRENCY_TIMEOUT_SECONDS,
            cache_seconds=settings.CURRENCY_CACHE_SECONDS,
        )

    async def get_exchange_rate(self) -> float:
        now = monotonic()
        if self._cached_rate is not None and (now - self._fetched_at) < self.cache_seconds:
            return self._cached_rate

        try:
            rate = await self._fetch_rate()
        except ConversionError as exc:
            self._cached_rate = None
            self._fetched_at = 0.0
            logger.error(
                "currency.rate_unavailable",
                extra={
                    "component": "currency",
                    "error": sanitize_error(exc, default_message="exchange rate unavailable"),
                },
            )
            raise

        self._cached_rate = rate
        self._fetched_at = now
        return rate

    async def convert(self, amount: float) -> CurrencyConversion:
        converted_at = datetime.now(UTC)
        if amount <= 0:
            return CurrencyConversion(
                original_amount=0.0,
                converted_amount=0,
                exchange_rate=0.0,
                converted_at=converted_at,
            )

        exchange_rate = await self.get_exchange_rate()
        toman_amount = amount * exchange_rate / RIAL_PER_TOMAN
        return CurrencyConversion(
            original_amount=amount,
            converted_amount=smart_round_toman(toman_amount),
            exchange_rate=exchange_rate,
            converted_at=converted_at,
        )

    async def _fetch_rate(self) -> float:
        headers = {"Accept": "application/json", "User-Agent": "RecurringBilling/1.0"}
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds)) as client:
                response = await client.get(f"{self.base_url}/exchange/rate", headers=headers)
                response.raise_for_status()
                payload: Any = response.json()
        except httpx.HTTPError as exc:
            raise ConversionError(f"Exchange rate API unavailable: {type(exc).__name__}") from exc
        except ValueError as exc:
            raise ConversionError("Exchange rate API returned invalid JSON") from exc

        rate = payload.get("rate") if isinstance(payload, dict) else None
        if isinstance(rate, bool) or not isinstance(rate, int | float) or rate <= 0:
            raise ConversionError("Invalid exchange rate received from API")
        return float(rate)
