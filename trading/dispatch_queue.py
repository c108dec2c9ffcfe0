"""Bounded-concurrency FIFO dispatcher of buy requests to the executor service."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import config
from utils.http_client import SharedHttpClient

logger = logging.getLogger(__name__)

EXECUTOR_SOURCE = "executor"
QUEUE_FULL_ERROR = "dispatch queue full"

ResultCallback = Callable[["BuyTask", Any], "Awaitable[None] | None"]


@dataclass(frozen=True)
class BuyTask:
    token_address: str
    amount_native: str
    slippage_fraction: float
    deadline_seconds: int

    def to_payload(self) -> dict[str, Any]:
        return {
            "target_token": self.token_address,
            "buy_amount_bnb": str(self.amount_native),
            "slippage": float(self.slippage_fraction),
            "deadline_secs": int(self.deadline_seconds),
        }


class DispatchQueue:
    """Admits queued BuyTasks in submission order, never more than ``concurrency`` at once.

    The pending deque and the active counter are only touched between awaits,
    so a single event loop needs no lock around them. Completion order is
    whatever order the executor answers in.
    """

    def __init__(
        self,
        http: SharedHttpClient | None = None,
        *,
        executor_url: str | None = None,
        concurrency: int | None = None,
        poll_interval_seconds: float | None = None,
        max_pending: int | None = None,
        on_result: ResultCallback | None = None,
    ) -> None:
        self.executor_url = str(executor_url if executor_url is not None else config.EXECUTOR_URL).rstrip("/")
        self.concurrency = max(1, int(concurrency if concurrency is not None else config.DISPATCH_CONCURRENCY))
        self.poll_interval_seconds = max(
            0.0,
            float(poll_interval_seconds if poll_interval_seconds is not None else config.DISPATCH_POLL_INTERVAL_SECONDS),
        )
        self.max_pending = max(0, int(max_pending if max_pending is not None else config.DISPATCH_QUEUE_MAX))
        self.on_result = on_result
        self._owns_http = http is None
        self._http = http or SharedHttpClient(
            timeout_seconds=config.EXECUTOR_TIMEOUT_SECONDS,
            source_limits={EXECUTOR_SOURCE: self.concurrency},
        )

        self._pending: deque[BuyTask] = deque()
        self._active = 0
        self._running = False
        self._loop_task: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[None]] = set()

        self.loop_starts = 0
        self.submitted = 0
        self.admitted = 0
        self.completed = 0
        self.failed = 0
        self.rejected = 0

    @property
    def active(self) -> int:
        return self._active

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def running(self) -> bool:
        return self._running

    def snapshot(self) -> dict[str, int]:
        return {
            "pending": len(self._pending),
            "active": self._active,
            "concurrency": self.concurrency,
            "submitted": self.submitted,
            "admitted": self.admitted,
            "completed": self.completed,
            "failed": self.failed,
            "rejected": self.rejected,
        }

    def submit(self, task: BuyTask) -> bool:
        """Queue a task; starts the admission loop if it is idle.

        Returns False when a configured depth bound rejects the task. The
        rejection is reported through the result callback like any other
        failed dispatch.
        """
        if self.max_pending and len(self._pending) >= self.max_pending:
            self.rejected += 1
            logger.warning(
                "DISPATCH_REJECTED token=%s pending=%s max_pending=%s",
                task.token_address,
                len(self._pending),
                self.max_pending,
            )
            self._spawn(self._report(task, {"error": QUEUE_FULL_ERROR}))
            return False

        self._pending.append(task)
        self.submitted += 1
        logger.info(
            "DISPATCH_QUEUED token=%s amount=%s pending=%s active=%s",
            task.token_address,
            task.amount_native,
            len(self._pending),
            self._active,
        )
        if not self._running:
            self._running = True
            self.loop_starts += 1
            self._loop_task = asyncio.get_running_loop().create_task(self._run_loop())
        return True

    async def wait_idle(self) -> None:
        """Wait until the admission loop has drained every pending and active task."""
        while self._running and self._loop_task is not None:
            await asyncio.shield(self._loop_task)

    async def close(self) -> None:
        if self._loop_task is not None and not self._loop_task.done():
            self._loop_task.cancel()
        for task in list(self._inflight):
            task.cancel()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        if self._owns_http:
            await self._http.close()

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _run_loop(self) -> None:
        try:
            while self._pending or self._active > 0:
                while self._active < self.concurrency and self._pending:
                    task = self._pending.popleft()
                    self._active += 1
                    self.admitted += 1
                    self._spawn(self._run_task(task))
                await asyncio.sleep(self.poll_interval_seconds)
        finally:
            self._running = False
            self._loop_task = None

    async def _run_task(self, task: BuyTask) -> None:
        url = f"{self.executor_url}/buy"
        try:
            try:
                result = await self._http.post_json(url, task.to_payload(), source=EXECUTOR_SOURCE)
            except Exception as exc:  # pragma: no cover - defensive
                logger.exception("DISPATCH_ERROR token=%s", task.token_address)
                data: Any = {"error": f"unexpected_error:{exc.__class__.__name__}:{exc}"}
                self.failed += 1
            else:
                if result.ok:
                    data = result.data
                    self.completed += 1
                    logger.info(
                        "DISPATCH_DONE token=%s status=%s result=%s",
                        task.token_address,
                        result.status,
                        data,
                    )
                else:
                    data = {"error": result.error}
                    self.failed += 1
                    logger.warning(
                        "DISPATCH_FAIL token=%s status=%s error=%s",
                        task.token_address,
                        result.status,
                        result.error,
                    )
            await self._report(task, data)
        finally:
            self._active -= 1

    async def _report(self, task: BuyTask, data: Any) -> None:
        if self.on_result is None:
            return
        try:
            outcome = self.on_result(task, data)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("DISPATCH_CALLBACK_ERROR token=%s", task.token_address)
