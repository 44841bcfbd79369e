from __future__ import annotations

import os
from dataclasses import dataclass

from rebalancer.trading.types import to_int


@dataclass(slots=True, frozen=True)
class StorageSettings:
    redis_url: str
    journal_key: str
    journal_max_entries: int

    @property
    def enabled(self) -> bool:
        return bool(self.redis_url)

    @classmethod
    def from_env(cls) -> "StorageSettings":
        return cls(
            redis_url=(os.getenv("REDIS_URL") or "").strip(),
            journal_key=(os.getenv("REDIS_JOURNAL_KEY") or "rebalancer:runs").strip() or "rebalancer:runs",
            journal_max_entries=max(1, to_int(os.getenv("REDIS_JOURNAL_MAX_ENTRIES"), 500)),
        )
