from __future__ import annotations

import asyncio
import json
import logging
from decimal import Decimal
from typing import Any

import aiohttp

from rebalancer.common import log_event

from .errors import DataUnavailable
from .types import PriceSample, PriceSignal, now_epoch, to_decimal, to_int

DEFAULT_PRICE_API_URL = "https://www.bitstamp.net/api/v2/ohlc"
SECONDS_PER_DAY = 24 * 60 * 60


def compute_signal(samples: list[PriceSample]) -> PriceSignal:
    """Latest close and the unweighted mean of every close, the latest included."""
    if len(samples) < 2:
        raise DataUnavailable(
            f"Price history returned {len(samples)} sample(s); at least 2 are required",
            details={"sample_count": len(samples)},
        )

    ordered = sorted(samples, key=lambda sample: sample.timestamp)
    total = sum((sample.close for sample in ordered), Decimal(0))
    average = total / Decimal(len(ordered))

    return PriceSignal(
        latest=ordered[-1].close,
        average=average,
        sample_count=len(ordered),
        window_start=ordered[0].timestamp,
        window_end=ordered[-1].timestamp,
    )


def parse_ohlc_payload(payload: Any) -> list[PriceSample]:
    if not isinstance(payload, dict):
        raise DataUnavailable(f"Unexpected price history response: {payload!r}")

    data = payload.get("data")
    if not isinstance(data, dict):
        raise DataUnavailable(f"Price history response has no data section: {payload!r}")

    raw_rows = data.get("ohlc")
    if not isinstance(raw_rows, list):
        raise DataUnavailable(f"Price history response has no ohlc rows: {payload!r}")

    samples: list[PriceSample] = []
    for index, row in enumerate(raw_rows):
        if not isinstance(row, dict):
            raise DataUnavailable(f"ohlc[{index}] is not an object: {row!r}")
        timestamp = to_int(row.get("timestamp"), -1)
        close = to_decimal(row.get("close"))
        if timestamp < 0 or close is None or close <= 0:
            raise DataUnavailable(f"ohlc[{index}] has no usable timestamp/close: {row!r}")
        samples.append(PriceSample(timestamp=timestamp, close=close))

    return samples


class BitstampPriceSource:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        api_base_url: str = DEFAULT_PRICE_API_URL,
        pair: str = "ethusd",
        max_samples: int = 365,
        period_seconds: int = SECONDS_PER_DAY,
        timeout_seconds: float = 10.0,
        max_retries: int = 2,
        retry_backoff_seconds: float = 0.5,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._logger = logger
        self._api_base_url = api_base_url.rstrip("/")
        self._pair = pair.strip().lower()
        self._max_samples = max(2, int(max_samples))
        self._period_seconds = max(60, int(period_seconds))
        self._timeout_seconds = timeout_seconds
        self._max_retries = max(0, int(max_retries))
        self._retry_backoff_seconds = max(0.0, float(retry_backoff_seconds))
        self._session = session
        self._owns_session = session is None

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _endpoint(self) -> str:
        return f"{self._api_base_url}/{self._pair}/"

    def _params(self, lookback_days: int, *, now: float) -> dict[str, str]:
        start = int(now) - max(1, lookback_days) * SECONDS_PER_DAY
        return {
            "step": str(self._period_seconds),
            "limit": str(self._max_samples),
            "start": str(start),
        }

    async def fetch_samples(self, lookback_days: int, *, now: float | None = None) -> list[PriceSample]:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("Price history HTTP session is not initialized.")

        params = self._params(lookback_days, now=now_epoch() if now is None else now)
        endpoint = self._endpoint()
        max_attempts = self._max_retries + 1
        last_error: Exception | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                async with self._session.get(endpoint, params=params) as response:
                    status = response.status
                    body = await response.text()
            except (aiohttp.ClientError, asyncio.TimeoutError) as error:
                last_error = error
                if attempt < max_attempts:
                    log_event(
                        self._logger,
                        level="warning",
                        event="price_history_network_retry",
                        message="Price history request failed; retrying",
                        attempt=attempt,
                        max_attempts=max_attempts,
                        error=str(error),
                    )
                    await asyncio.sleep(self._retry_backoff_seconds * attempt)
                    continue
                raise DataUnavailable(f"Price history request failed: {error}") from error

            if status in {429, 500, 502, 503, 504} and attempt < max_attempts:
                log_event(
                    self._logger,
                    level="warning",
                    event="price_history_retry",
                    message="Price history endpoint returned retryable status",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    status=status,
                )
                await asyncio.sleep(self._retry_backoff_seconds * attempt)
                continue

            if status >= 400:
                raise DataUnavailable(
                    f"Price history request failed: status={status} body={body[:240]!r}",
                    details={"status": status},
                )

            try:
                payload = json.loads(body)
            except json.JSONDecodeError as error:
                raise DataUnavailable(f"Price history returned non-JSON body: {body[:240]!r}") from error

            samples = parse_ohlc_payload(payload)
            self._log_window(samples, lookback_days=lookback_days)
            return samples

        raise DataUnavailable(f"Price history request exhausted retries: {last_error}")

    async def compute(self, lookback_days: int) -> PriceSignal:
        return compute_signal(await self.fetch_samples(lookback_days))

    def _log_window(self, samples: list[PriceSample], *, lookback_days: int) -> None:
        if not samples:
            return
        timestamps = [sample.timestamp for sample in samples]
        covered_days = (max(timestamps) - min(timestamps)) / SECONDS_PER_DAY
        level = "info"
        if len(samples) < lookback_days:
            # Accepted as-is; the average is taken over whatever the source returned.
            level = "warning"
        log_event(
            self._logger,
            level=level,
            event="price_history_window",
            message="Price history fetched",
            pair=self._pair,
            lookback_days=lookback_days,
            sample_count=len(samples),
            covered_days=round(covered_days, 2),
        )
