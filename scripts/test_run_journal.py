from __future__ import annotations

import json
import logging
import unittest
from unittest.mock import AsyncMock, MagicMock

from rebalancer.common import close_all
from rebalancer.storage import RunJournal, StorageSettings


def _settings(redis_url: str = "redis://localhost:6379/0") -> StorageSettings:
    return StorageSettings(redis_url=redis_url, journal_key="rebalancer:runs", journal_max_entries=50)


class RunJournalTests(unittest.IsolatedAsyncioTestCase):
    async def test_report_is_pushed_and_trimmed(self) -> None:
        pipeline = MagicMock()
        pipeline.execute = AsyncMock(return_value=[3, True])
        client = MagicMock()
        client.pipeline.return_value = pipeline
        journal = RunJournal(_settings(), logging.getLogger("test.journal"), client=client)

        recorded = await journal.record_run({"run_id": "abc", "exit_code": 0, "private_key": "0xdead"})

        self.assertTrue(recorded)
        key, payload = pipeline.lpush.call_args.args
        self.assertEqual(key, "rebalancer:runs")
        self.assertEqual(json.loads(payload)["private_key"], "***")
        pipeline.ltrim.assert_called_once_with("rebalancer:runs", 0, 49)

    async def test_publish_failure_is_logged_not_raised(self) -> None:
        pipeline = MagicMock()
        pipeline.execute = AsyncMock(side_effect=ConnectionError("redis down"))
        client = MagicMock()
        client.pipeline.return_value = pipeline
        journal = RunJournal(_settings(), logging.getLogger("test.journal"), client=client)

        with self.assertLogs("test.journal", level="WARNING"):
            recorded = await journal.record_run({"run_id": "abc"})

        self.assertFalse(recorded)

    async def test_disabled_journal_is_a_no_op(self) -> None:
        journal = RunJournal(_settings(redis_url=""), logging.getLogger("test.journal"))
        await journal.connect()
        self.assertFalse(await journal.record_run({"run_id": "abc"}))


class CloseAllTests(unittest.IsolatedAsyncioTestCase):
    async def test_failing_close_does_not_skip_the_rest(self) -> None:
        first = AsyncMock(side_effect=RuntimeError("socket already closed"))
        second = AsyncMock()

        with self.assertLogs("test.close", level="WARNING") as captured:
            await close_all((("route quoter", first), ("web3 provider", second)), logger=logging.getLogger("test.close"))

        second.assert_awaited_once()
        self.assertIn("Failed to close route quoter", captured.output[0])


if __name__ == "__main__":
    unittest.main()
