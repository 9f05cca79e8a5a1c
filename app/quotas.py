"""Usage quota for query executions, metered per app per calendar month."""

from __future__ import annotations

import logging
import os
import threading
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict

logger = logging.getLogger("quarry.quotas")


class QuotaExceededError(RuntimeError):
    pass


def _period() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m")


class QueryQuota:
    def __init__(self, limit: int | None = None) -> None:
        if limit is None:
            limit = int(os.getenv("QUARRY_QUERY_QUOTA", "0"))
        self.limit = limit
        self._usage: Dict[tuple[str, str], int] = {}
        self._lock = threading.Lock()

    def usage(self, app_id: str) -> int:
        with self._lock:
            return self._usage.get((app_id, _period()), 0)

    def _reserve(self, app_id: str) -> tuple[str, str]:
        # check and count under one lock
        with self._lock:
            key = (app_id, _period())
            used = self._usage.get(key, 0)
            if self.limit and used >= self.limit:
                logger.warning("query_quota_exceeded app_id=%s limit=%s", app_id, self.limit)
                raise QuotaExceededError(f"Query usage limit of {self.limit} reached for this month")
            self._usage[key] = used + 1
            return key

    def _release(self, key: tuple[str, str]) -> None:
        with self._lock:
            self._usage[key] = max(self._usage.get(key, 0) - 1, 0)

    async def add_query(self, app_id: str, run_fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``run_fn`` if the app is under its limit; only successful runs stay counted."""
        key = self._reserve(app_id)
        try:
            return await run_fn()
        except BaseException:
            self._release(key)
            raise

    def reset(self) -> None:
        with self._lock:
            self._usage.clear()
