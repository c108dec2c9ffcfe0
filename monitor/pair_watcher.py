"""Per-pair lifecycle: wait for first liquidity, run pre-buy checks, dispatch at most one buy."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from web3 import Web3

import config
from monitor.chain_connection import MINT_TOPIC, TRANSFER_TOPIC, ChainEvent, Subscription
from monitor.onchain_factory import PairCandidate
from monitor.prebuy_pipeline import PreBuyPipeline
from trading.dispatch_queue import QUEUE_FULL_ERROR, BuyTask, DispatchQueue
from utils.addressing import normalize_address

logger = logging.getLogger(__name__)


class WatchState(str, Enum):
    WATCHING = "watching"
    TRIGGERED = "triggered"
    CHECKING = "checking"
    DISPATCHED = "dispatched"
    ABORTED = "aborted"
    CLOSED = "closed"


@dataclass
class PairWatch:
    pair_address: str
    token0: str
    token1: str
    target_token: str
    state: WatchState
    created_at: float
    timeout_at: float


def select_target_token(token0: str, token1: str, base_asset: str | None) -> str | None:
    """Return the non-base side of a pair, or None when the base-asset filter rejects it.

    Without a base asset configured every pair passes and token0 is the target.
    """
    t0 = normalize_address(token0)
    t1 = normalize_address(token1)
    base = normalize_address(base_asset)
    if not base:
        return t0 or None
    t0_is_base = t0 == base
    t1_is_base = t1 == base
    if t0_is_base == t1_is_base:
        return None
    return t1 if t0_is_base else t0


class PairWatcher:
    def __init__(
        self,
        watch: PairWatch,
        chain: Any,
        pipeline: PreBuyPipeline,
        queue: DispatchQueue,
        *,
        buy_amount_native: str,
        slippage_fraction: float,
        deadline_seconds: int,
        on_closed: Callable[["PairWatcher"], None] | None = None,
    ) -> None:
        self.watch = watch
        self.chain = chain
        self.pipeline = pipeline
        self.queue = queue
        self.buy_amount_native = buy_amount_native
        self.slippage_fraction = slippage_fraction
        self.deadline_seconds = deadline_seconds
        self.on_closed = on_closed
        self.pipeline_runs = 0
        self.outcome: WatchState | None = None
        self.close_reason = ""
        self._subscriptions: list[Subscription] = []
        self._timeout_handle: asyncio.TimerHandle | None = None
        self._evaluation: asyncio.Task[None] | None = None
        self._closed = asyncio.Event()

    @property
    def state(self) -> WatchState:
        return self.watch.state

    def start(self) -> None:
        pair = self.watch.pair_address
        self._subscriptions = [
            self.chain.subscribe(pair, MINT_TOPIC, self._on_liquidity),
            self.chain.subscribe(pair, TRANSFER_TOPIC, self._on_liquidity),
        ]
        delay = max(0.0, self.watch.timeout_at - time.time())
        self._timeout_handle = asyncio.get_running_loop().call_later(delay, self._on_timeout)
        logger.info(
            "WATCH_START pair=%s target=%s timeout=%.0fs",
            pair,
            self.watch.target_token,
            delay,
        )

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def _unsubscribe_all(self) -> None:
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions = []

    def _on_liquidity(self, event: ChainEvent) -> None:
        # Runs synchronously on delivery: the first event flips the state and
        # tears down both listeners before any other handler can observe WATCHING.
        if self.watch.state is not WatchState.WATCHING:
            logger.debug("WATCH_EVENT_IGNORED pair=%s state=%s", self.watch.pair_address, self.watch.state.value)
            return
        self.watch.state = WatchState.TRIGGERED
        self._unsubscribe_all()
        kind = "mint" if event.topic == MINT_TOPIC else "transfer"
        logger.info(
            "WATCH_TRIGGERED pair=%s target=%s kind=%s block=%s",
            self.watch.pair_address,
            self.watch.target_token,
            kind,
            event.block_number,
        )
        self._evaluation = asyncio.get_running_loop().create_task(self._evaluate())

    async def _evaluate(self) -> None:
        self.watch.state = WatchState.CHECKING
        self.pipeline_runs += 1
        result = await self.pipeline.run(self.watch.target_token, holder_address=self.watch.pair_address)
        if self.watch.state is WatchState.CLOSED:
            logger.info(
                "WATCH_LATE_RESULT pair=%s passed=%s (closed before checks finished)",
                self.watch.pair_address,
                result.passed,
            )
            return
        if result.passed:
            task = self._build_task(result.metadata)
            if not self.queue.submit(task):
                self.watch.state = WatchState.ABORTED
                self.close(QUEUE_FULL_ERROR)
                return
            self.watch.state = WatchState.DISPATCHED
            self.close("dispatched")
        else:
            self.watch.state = WatchState.ABORTED
            self.close("checks_failed: " + "; ".join(result.reasons))

    def _build_task(self, metadata: dict[str, Any]) -> BuyTask:
        token = normalize_address(metadata.get("token_address") or self.watch.target_token)
        return BuyTask(
            token_address=Web3.to_checksum_address(token),
            amount_native=str(self.buy_amount_native),
            slippage_fraction=float(self.slippage_fraction),
            deadline_seconds=int(self.deadline_seconds),
        )

    def _on_timeout(self) -> None:
        self._timeout_handle = None
        if self.watch.state is WatchState.CLOSED:
            return
        logger.info("WATCH_TIMEOUT pair=%s state=%s", self.watch.pair_address, self.watch.state.value)
        self.close("timeout")

    def close(self, reason: str) -> None:
        if self.watch.state is WatchState.CLOSED:
            return
        self.outcome = self.watch.state
        self.close_reason = reason
        self.watch.state = WatchState.CLOSED
        self._unsubscribe_all()
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None
        logger.info(
            "WATCH_CLOSED pair=%s outcome=%s reason=%s",
            self.watch.pair_address,
            self.outcome.value,
            reason,
        )
        self._closed.set()
        if self.on_closed is not None:
            self.on_closed(self)


class PairWatchRegistry:
    """Turns pair-creation events into watchers; at most one active watcher per pair."""

    def __init__(
        self,
        chain: Any,
        pipeline: PreBuyPipeline,
        queue: DispatchQueue,
        *,
        base_asset_address: str | None = None,
        timeout_seconds: float | None = None,
        buy_amount_native: str | None = None,
        slippage_fraction: float | None = None,
        deadline_seconds: int | None = None,
    ) -> None:
        self.chain = chain
        self.pipeline = pipeline
        self.queue = queue
        self.base_asset_address = normalize_address(
            base_asset_address if base_asset_address is not None else config.BASE_ASSET_ADDRESS
        )
        self.timeout_seconds = float(timeout_seconds if timeout_seconds is not None else config.WATCH_TIMEOUT_SECONDS)
        self.buy_amount_native = str(buy_amount_native if buy_amount_native is not None else config.BUY_AMOUNT_BNB)
        self.slippage_fraction = float(slippage_fraction if slippage_fraction is not None else config.SLIPPAGE)
        self.deadline_seconds = int(deadline_seconds if deadline_seconds is not None else config.DEADLINE_SECS)
        self._active: dict[str, PairWatcher] = {}
        self.created = 0
        self.skipped = 0
        self.duplicates = 0
        self.outcomes: dict[str, int] = {}

    def get(self, pair_address: str) -> PairWatcher | None:
        return self._active.get(normalize_address(pair_address))

    @property
    def active_count(self) -> int:
        return len(self._active)

    def snapshot(self) -> dict[str, Any]:
        return {
            "active": len(self._active),
            "created": self.created,
            "skipped": self.skipped,
            "duplicates": self.duplicates,
            "outcomes": dict(self.outcomes),
        }

    def on_pair_created(self, candidate: PairCandidate) -> PairWatcher | None:
        pair = normalize_address(candidate.pair_address)
        if pair in self._active:
            self.duplicates += 1
            return None
        target = select_target_token(candidate.token0, candidate.token1, self.base_asset_address)
        if not target:
            self.skipped += 1
            logger.debug(
                "WATCH_SKIP pair=%s token0=%s token1=%s base=%s",
                pair,
                candidate.token0,
                candidate.token1,
                self.base_asset_address,
            )
            return None

        now = time.time()
        watch = PairWatch(
            pair_address=pair,
            token0=normalize_address(candidate.token0),
            token1=normalize_address(candidate.token1),
            target_token=target,
            state=WatchState.WATCHING,
            created_at=now,
            timeout_at=now + self.timeout_seconds,
        )
        watcher = PairWatcher(
            watch,
            self.chain,
            self.pipeline,
            self.queue,
            buy_amount_native=self.buy_amount_native,
            slippage_fraction=self.slippage_fraction,
            deadline_seconds=self.deadline_seconds,
            on_closed=self._on_closed,
        )
        self._active[pair] = watcher
        self.created += 1
        watcher.start()
        return watcher

    def _on_closed(self, watcher: PairWatcher) -> None:
        pair = watcher.watch.pair_address
        if self._active.get(pair) is watcher:
            self._active.pop(pair, None)
        key = watcher.outcome.value if watcher.outcome is not None else "unknown"
        self.outcomes[key] = int(self.outcomes.get(key, 0)) + 1

    def close(self) -> None:
        for watcher in list(self._active.values()):
            watcher.close("shutdown")
