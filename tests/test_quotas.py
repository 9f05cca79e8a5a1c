import asyncio
import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from app.quotas import QueryQuota, QuotaExceededError


class TestQueryQuota(unittest.TestCase):
    def test_counts_successful_runs(self) -> None:
        quota = QueryQuota(limit=2)

        async def ok() -> str:
            return "ok"

        self.assertEqual(asyncio.run(quota.add_query("app_1", ok)), "ok")
        self.assertEqual(quota.usage("app_1"), 1)
        self.assertEqual(quota.usage("app_2"), 0)

    def test_limit_blocks_further_runs(self) -> None:
        quota = QueryQuota(limit=1)
        calls = []

        async def run() -> None:
            calls.append(1)

        asyncio.run(quota.add_query("app_1", run))
        with self.assertRaises(QuotaExceededError):
            asyncio.run(quota.add_query("app_1", run))
        self.assertEqual(len(calls), 1)

    def test_failed_runs_are_not_counted(self) -> None:
        quota = QueryQuota(limit=5)

        async def broken() -> None:
            raise RuntimeError("down")

        with self.assertRaises(RuntimeError):
            asyncio.run(quota.add_query("app_1", broken))
        self.assertEqual(quota.usage("app_1"), 0)

    def test_concurrent_runs_respect_limit(self) -> None:
        quota = QueryQuota(limit=2)

        async def slow() -> str:
            await asyncio.sleep(0.01)
            return "ok"

        async def run_all() -> list:
            return await asyncio.gather(*(quota.add_query("app_1", slow) for _ in range(3)), return_exceptions=True)

        results = asyncio.run(run_all())
        refused = [r for r in results if isinstance(r, QuotaExceededError)]
        self.assertEqual(len(refused), 1)
        self.assertEqual(results.count("ok"), 2)
        self.assertEqual(quota.usage("app_1"), 2)

    def test_zero_limit_is_unlimited(self) -> None:
        quota = QueryQuota(limit=0)

        async def ok() -> None:
            return None

        for _ in range(5):
            asyncio.run(quota.add_query("app_1", ok))
        self.assertEqual(quota.usage("app_1"), 5)
        quota.reset()
        self.assertEqual(quota.usage("app_1"), 0)


if __name__ == "__main__":
    unittest.main()
