"""Shared HTTP client with per-source concurrency limits and latency stats."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any

import aiohttp

import config

logger = logging.getLogger(__name__)

INVALID_JSON_ERROR = "invalid json response"


@dataclass
class HttpResult:
    ok: bool
    status: int
    data: Any | None
    error: str = ""


@dataclass
class HttpSourceStats:
    ok: int = 0
    fail: int = 0
    malformed: int = 0
    latency_total_ms: float = 0.0
    latency_max_ms: float = 0.0
    latency_count: int = 0


class SharedHttpClient:
    """One aiohttp session per process. Requests are sent once; callers own retry policy."""

    def __init__(
        self,
        timeout_seconds: float,
        headers: dict[str, str] | None = None,
        source_limits: dict[str, int] | None = None,
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self._headers = dict(headers or {})
        self._source_limits = dict(source_limits or {})
        self._session: aiohttp.ClientSession | None = None
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._stats: dict[str, HttpSourceStats] = {}

    async def close(self) -> None:
        session = self._session
        self._session = None
        if session is not None and not session.closed:
            await session.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector_limit = max(1, int(getattr(config, "HTTP_CONNECTOR_LIMIT", 30) or 30))
            connector = aiohttp.TCPConnector(limit=connector_limit)
            self._session = aiohttp.ClientSession(timeout=self._timeout, connector=connector)
        return self._session

    @staticmethod
    def _source_key(source: str) -> str:
        return str(source or "default").strip().lower() or "default"

    def _get_semaphore(self, source_key: str) -> asyncio.Semaphore:
        sem = self._semaphores.get(source_key)
        if sem is not None:
            return sem
        limit = max(1, int(self._source_limits.get(source_key, 8)))
        sem = asyncio.Semaphore(limit)
        self._semaphores[source_key] = sem
        return sem

    def _stats_row(self, source_key: str) -> HttpSourceStats:
        row = self._stats.get(source_key)
        if row is None:
            row = HttpSourceStats()
            self._stats[source_key] = row
        return row

    @staticmethod
    def _record_latency(stats: HttpSourceStats, started: float) -> None:
        elapsed_ms = max(0.0, (time.perf_counter() - started) * 1000.0)
        stats.latency_total_ms += elapsed_ms
        stats.latency_count += 1
        stats.latency_max_ms = max(stats.latency_max_ms, elapsed_ms)

    def snapshot_stats(self, reset: bool = False) -> dict[str, dict[str, int | float]]:
        out: dict[str, dict[str, int | float]] = {}
        for source, row in self._stats.items():
            total = int(row.ok + row.fail + row.malformed)
            err_pct = (float(row.fail + row.malformed) / total * 100.0) if total > 0 else 0.0
            out[source] = {
                "ok": int(row.ok),
                "fail": int(row.fail),
                "malformed": int(row.malformed),
                "total": total,
                "error_percent": round(err_pct, 2),
                "latency_avg_ms": round((row.latency_total_ms / row.latency_count), 2) if row.latency_count > 0 else 0.0,
                "latency_max_ms": round(float(row.latency_max_ms), 2),
            }
        if reset:
            self._stats = {}
        return out

    async def post_json(
        self,
        url: str,
        payload: dict[str, Any],
        *,
        source: str = "default",
        headers: dict[str, str] | None = None,
    ) -> HttpResult:
        """POST a JSON body and parse the reply as JSON whatever the status code.

        Transport failures and unparseable bodies come back as ``ok=False``
        results; nothing here raises for a bad peer.
        """
        req_headers = dict(self._headers)
        if headers:
            req_headers.update(headers)

        source_key = self._source_key(source)
        sem = self._get_semaphore(source_key)
        stats = self._stats_row(source_key)
        status = 0
        async with sem:
            started = time.perf_counter()
            try:
                session = await self._get_session()
                async with session.post(url, json=payload, headers=req_headers) as response:
                    status = int(response.status or 0)
                    body = await response.text()
            except (aiohttp.ClientError, asyncio.TimeoutError, TimeoutError) as exc:
                self._record_latency(stats, started)
                stats.fail += 1
                logger.debug("HTTP_FAIL source=%s url=%s error=%s", source_key, url, exc)
                return HttpResult(ok=False, status=status, data=None, error=f"http_error:{exc.__class__.__name__}:{exc}")
            self._record_latency(stats, started)

        try:
            data = json.loads(body)
        except ValueError:
            stats.malformed += 1
            logger.debug("HTTP_MALFORMED source=%s url=%s status=%s body=%.200s", source_key, url, status, body)
            return HttpResult(ok=False, status=status, data=None, error=INVALID_JSON_ERROR)
        stats.ok += 1
        return HttpResult(ok=True, status=status, data=data)
