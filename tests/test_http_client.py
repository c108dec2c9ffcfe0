from __future__ import annotations

import unittest

import aiohttp
from aioresponses import aioresponses

from utils.http_client import INVALID_JSON_ERROR, SharedHttpClient

EXECUTOR_BUY_URL = "http://executor.test/buy"


class SharedHttpClientTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.client = SharedHttpClient(timeout_seconds=5.0, source_limits={"executor": 2})

    async def asyncTearDown(self) -> None:
        await self.client.close()

    async def test_json_reply_is_parsed(self) -> None:
        with aioresponses() as mocked:
            mocked.post(EXECUTOR_BUY_URL, payload={"tx_hash": "0xabc", "status": 1})
            result = await self.client.post_json(EXECUTOR_BUY_URL, {"target_token": "0x1"}, source="executor")
        self.assertTrue(result.ok)
        self.assertEqual(result.status, 200)
        self.assertEqual(result.data, {"tx_hash": "0xabc", "status": 1})

    async def test_error_status_with_json_body_is_still_a_document(self) -> None:
        with aioresponses() as mocked:
            mocked.post(EXECUTOR_BUY_URL, status=500, payload={"error": "reverted"})
            result = await self.client.post_json(EXECUTOR_BUY_URL, {}, source="executor")
        self.assertTrue(result.ok)
        self.assertEqual(result.status, 500)
        self.assertEqual(result.data, {"error": "reverted"})

    async def test_plain_text_reply_is_invalid_json(self) -> None:
        with aioresponses() as mocked:
            mocked.post(EXECUTOR_BUY_URL, status=200, body="Transaction pending (no receipt yet)")
            result = await self.client.post_json(EXECUTOR_BUY_URL, {}, source="executor")
        self.assertFalse(result.ok)
        self.assertEqual(result.error, INVALID_JSON_ERROR)
        stats = self.client.snapshot_stats()["executor"]
        self.assertEqual(stats["malformed"], 1)

    async def test_transport_error_is_returned_not_raised(self) -> None:
        with aioresponses() as mocked:
            mocked.post(EXECUTOR_BUY_URL, exception=aiohttp.ClientConnectionError("refused"))
            result = await self.client.post_json(EXECUTOR_BUY_URL, {}, source="executor")
        self.assertFalse(result.ok)
        self.assertTrue(result.error.startswith("http_error:"))
        stats = self.client.snapshot_stats(reset=True)["executor"]
        self.assertEqual(stats["fail"], 1)
        self.assertEqual(self.client.snapshot_stats(), {})


if __name__ == "__main__":
    unittest.main()
