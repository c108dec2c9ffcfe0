"""Per-pair swap volume accumulator with threshold alerts and inactivity eviction."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from web3 import Web3

import config
from monitor.chain_connection import SWAP_TOPIC, ChainEvent, Subscription
from monitor.onchain_factory import PairCandidate
from utils.addressing import normalize_address

logger = logging.getLogger(__name__)

AlertCallback = Callable[[str, float], "Awaitable[None] | None"]


@dataclass
class PairVolumeRecord:
    pair_address: str
    cumulative_volume: float = 0.0
    last_updated: float = 0.0


def swap_inflow(event: ChainEvent) -> float:
    """Larger of amount0In/amount1In in base units (18 decimals)."""
    amount0_in = event.word(0)
    amount1_in = event.word(1)
    return float(Web3.from_wei(max(amount0_in, amount1_in), "ether"))


class VolumeAggregator:
    """Counts swap inflow per pair and fires an alert once a pair crosses the threshold.

    The counter resets to zero after each alert; volume never expires on its
    own. The window only decides how long an idle pair's record is kept.
    """

    def __init__(
        self,
        chain: Any,
        *,
        threshold: float | None = None,
        window_seconds: float | None = None,
        on_alert: AlertCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.chain = chain
        self.threshold = float(threshold if threshold is not None else config.VOLUME_ALERT_THRESHOLD)
        self.window_seconds = float(window_seconds if window_seconds is not None else config.VOLUME_WINDOW_SECONDS)
        self.on_alert = on_alert
        self._clock = clock
        self.records: dict[str, PairVolumeRecord] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._cleanup_task: asyncio.Task[None] | None = None
        self._alert_tasks: set[asyncio.Future[Any]] = set()
        self.alerts_fired = 0
        self.evicted = 0

    def snapshot(self) -> dict[str, int]:
        return {
            "monitored_pairs": len(self._subscriptions),
            "records": len(self.records),
            "alerts": self.alerts_fired,
            "evicted": self.evicted,
        }

    def start(self) -> None:
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())
        logger.info(
            "VOLUME_MONITOR_START threshold=%s window=%ss",
            self.threshold,
            self.window_seconds,
        )

    async def stop(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        for sub in self._subscriptions.values():
            sub.unsubscribe()
        self._subscriptions.clear()

    def on_pair_created(self, candidate: PairCandidate) -> None:
        self.watch_pair(candidate.pair_address)

    def watch_pair(self, pair_address: str) -> None:
        pair = normalize_address(pair_address)
        if not pair or pair in self._subscriptions:
            return
        self._subscriptions[pair] = self.chain.subscribe(pair, SWAP_TOPIC, self._on_swap)
        # Starts the idle clock, so a pair that never trades is swept too.
        self.records.setdefault(pair, PairVolumeRecord(pair_address=pair, last_updated=self._clock()))
        logger.debug("VOLUME_WATCH pair=%s", pair)

    def _on_swap(self, event: ChainEvent) -> None:
        self.add_volume(event.address, swap_inflow(event))

    def add_volume(self, pair_address: str, amount: float) -> PairVolumeRecord:
        pair = normalize_address(pair_address)
        now = self._clock()
        record = self.records.get(pair)
        if record is None:
            record = PairVolumeRecord(pair_address=pair, last_updated=now)
            self.records[pair] = record
        record.cumulative_volume += float(amount)
        record.last_updated = now

        if record.cumulative_volume >= self.threshold:
            volume = record.cumulative_volume
            record.cumulative_volume = 0.0
            self.alerts_fired += 1
            logger.info("VOLUME_ALERT pair=%s volume=%.3f threshold=%s", pair, volume, self.threshold)
            self._fire_alert(pair, volume)
        return record

    def _fire_alert(self, pair: str, volume: float) -> None:
        if self.on_alert is None:
            return
        try:
            outcome = self.on_alert(pair, volume)
        except Exception:
            logger.exception("VOLUME_ALERT_CALLBACK_ERROR pair=%s", pair)
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._alert_tasks.add(task)
            task.add_done_callback(self._alert_tasks.discard)

    def cleanup(self) -> int:
        """Evict records idle for longer than the window; returns how many were dropped."""
        now = self._clock()
        stale = [
            pair
            for pair, record in self.records.items()
            if (now - record.last_updated) > self.window_seconds
        ]
        for pair in stale:
            self.records.pop(pair, None)
            sub = self._subscriptions.pop(pair, None)
            if sub is not None:
                sub.unsubscribe()
        if stale:
            self.evicted += len(stale)
            logger.info("VOLUME_CLEANUP evicted=%s remaining=%s", len(stale), len(self.records))
        return len(stale)

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.window_seconds)
            self.cleanup()
