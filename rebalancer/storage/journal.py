from __future__ import annotations

import json
import logging
from typing import Any

from redis import asyncio as redis
from redis.asyncio.client import Redis

from rebalancer.common import guarded_call, log_event, sanitize_value

from .settings import StorageSettings


def serialize_report(report: dict[str, Any]) -> str:
    return json.dumps(sanitize_value(report), ensure_ascii=False, separators=(",", ":"), default=str)


class RunJournal:
    """Write-only Redis list of run reports for operators; never read back by the bot."""

    def __init__(self, settings: StorageSettings, logger: logging.Logger, client: Redis | None = None) -> None:
        self.settings = settings
        self._logger = logger
        self._redis = client

    async def connect(self) -> None:
        if not self.settings.enabled or self._redis is not None:
            return
        self._redis = redis.from_url(self.settings.redis_url, decode_responses=True)
        await self._redis.ping()
        log_event(
            self._logger,
            level="info",
            event="redis_connected",
            message="Connected to Redis run journal",
            key=self.settings.journal_key,
        )

    async def close(self) -> None:
        if self._redis is not None:
            close = getattr(self._redis, "aclose", None)
            if close:
                await close()
            else:
                await self._redis.close()
            self._redis = None

    async def _push(self, payload: str) -> int:
        redis_client = self._require_redis()
        pipeline = redis_client.pipeline(transaction=True)
        pipeline.lpush(self.settings.journal_key, payload)
        pipeline.ltrim(self.settings.journal_key, 0, self.settings.journal_max_entries - 1)
        results = await pipeline.execute()
        return int(results[0])

    async def record_run(self, report: dict[str, Any]) -> bool:
        if self._redis is None:
            return False
        length = await guarded_call(
            lambda: self._push(serialize_report(report)),
            logger=self._logger,
            event="run_journal_failed",
            message="Failed to publish run report to Redis",
            run_id=report.get("run_id"),
        )
        if length is None:
            return False
        log_event(
            self._logger,
            level="debug",
            event="run_journal_recorded",
            message="Run report published to Redis",
            run_id=report.get("run_id"),
            key=self.settings.journal_key,
            length=length,
        )
        return True

    def _require_redis(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("Redis client is not initialized.")
        return self._redis
