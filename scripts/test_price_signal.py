from __future__ import annotations

import json
import logging
import unittest
from decimal import Decimal

import aiohttp

from rebalancer.trading.errors import DataUnavailable
from rebalancer.trading.pricing import BitstampPriceSource, compute_signal, parse_ohlc_payload
from rebalancer.trading.types import PriceSample


class _FakeResponse:
    def __init__(self, status: int, body: str) -> None:
        self.status = status
        self._body = body

    async def text(self) -> str:
        return self._body

    async def __aenter__(self) -> "_FakeResponse":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None


class _FakeSession:
    def __init__(self, responses: list[object]) -> None:
        self._responses = list(responses)
        self.calls: list[dict[str, object]] = []

    def get(self, url: str, **kwargs: object) -> _FakeResponse:
        self.calls.append({"url": url, **kwargs})
        response = self._responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response  # type: ignore[return-value]

    async def close(self) -> None:
        return None


def _ohlc_body(closes: list[str]) -> str:
    rows = [
        {"timestamp": str(1_700_000_000 + index * 86_400), "open": close, "close": close}
        for index, close in enumerate(closes)
    ]
    return json.dumps({"data": {"pair": "ETH/USD", "ohlc": rows}})


class ComputeSignalTests(unittest.TestCase):
    def test_average_includes_latest_close(self) -> None:
        samples = [
            PriceSample(timestamp=3, close=Decimal("1500")),
            PriceSample(timestamp=1, close=Decimal("2000")),
            PriceSample(timestamp=2, close=Decimal("1900")),
        ]
        signal = compute_signal(samples)
        self.assertEqual(signal.latest, Decimal("1500"))
        self.assertEqual(signal.average, Decimal("1800"))
        self.assertEqual(signal.sample_count, 3)
        self.assertEqual((signal.window_start, signal.window_end), (1, 3))

    def test_fewer_than_two_samples_is_data_unavailable(self) -> None:
        with self.assertRaises(DataUnavailable):
            compute_signal([PriceSample(timestamp=1, close=Decimal("1"))])
        with self.assertRaises(DataUnavailable):
            compute_signal([])

    def test_malformed_rows_are_rejected(self) -> None:
        with self.assertRaises(DataUnavailable):
            parse_ohlc_payload({"data": {"ohlc": [{"timestamp": "1", "close": "abc"}]}})
        with self.assertRaises(DataUnavailable):
            parse_ohlc_payload({"errors": ["bad pair"]})
        with self.assertRaises(DataUnavailable):
            parse_ohlc_payload({"data": {"ohlc": [{"timestamp": "1", "close": "0"}]}})


class BitstampPriceSourceTests(unittest.IsolatedAsyncioTestCase):
    def _source(self, session: _FakeSession, **kwargs: object) -> BitstampPriceSource:
        return BitstampPriceSource(
            logger=logging.getLogger("test.pricing"),
            session=session,  # type: ignore[arg-type]
            retry_backoff_seconds=0.0,
            **kwargs,  # type: ignore[arg-type]
        )

    async def test_fetch_samples_requests_daily_window(self) -> None:
        session = _FakeSession([_FakeResponse(200, _ohlc_body(["2000", "1900", "1500"]))])
        source = self._source(session)

        samples = await source.fetch_samples(30, now=1_710_000_000)

        self.assertEqual([sample.close for sample in samples], [Decimal("2000"), Decimal("1900"), Decimal("1500")])
        call = session.calls[0]
        self.assertEqual(call["url"], "https://www.bitstamp.net/api/v2/ohlc/ethusd/")
        self.assertEqual(
            call["params"],
            {"step": "86400", "limit": "365", "start": str(1_710_000_000 - 30 * 86_400)},
        )

    async def test_partial_window_is_accepted(self) -> None:
        session = _FakeSession([_FakeResponse(200, _ohlc_body(["1800", "1700"]))])
        source = self._source(session)

        with self.assertLogs("test.pricing", level="WARNING") as captured:
            signal = await source.compute(200)

        self.assertEqual(signal.sample_count, 2)
        self.assertEqual(signal.average, Decimal("1750"))
        self.assertTrue(any("Price history fetched" in line for line in captured.output))

    async def test_retryable_status_then_success(self) -> None:
        session = _FakeSession(
            [
                _FakeResponse(503, "unavailable"),
                _FakeResponse(200, _ohlc_body(["1", "2"])),
            ]
        )
        source = self._source(session, max_retries=1)

        samples = await source.fetch_samples(2)

        self.assertEqual(len(samples), 2)
        self.assertEqual(len(session.calls), 2)

    async def test_transport_failure_is_data_unavailable(self) -> None:
        session = _FakeSession([aiohttp.ClientConnectionError("reset"), aiohttp.ClientConnectionError("reset")])
        source = self._source(session, max_retries=1)

        with self.assertRaises(DataUnavailable):
            await source.fetch_samples(10)

    async def test_client_error_status_is_data_unavailable(self) -> None:
        session = _FakeSession([_FakeResponse(404, "{}")])
        source = self._source(session)

        with self.assertRaises(DataUnavailable) as ctx:
            await source.fetch_samples(10)
        self.assertEqual(ctx.exception.details["status"], 404)


if __name__ == "__main__":
    unittest.main()
