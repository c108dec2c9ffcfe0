"""On-chain PairCreated listener for UniswapV2-style factory contracts."""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import config
from monitor.chain_connection import PAIR_CREATED_TOPIC, ChainEvent, Subscription
from utils.addressing import normalize_address

logger = logging.getLogger(__name__)

PairHandler = Callable[["PairCandidate"], "Awaitable[None] | None"]


@dataclass
class PairCandidate:
    pair_address: str
    token0: str
    token1: str
    created_block: int
    detected_ts: str
    factory_address: str


def parse_pair_created(event: ChainEvent) -> PairCandidate | None:
    if event.topic != PAIR_CREATED_TOPIC or len(event.topics) < 3:
        return None
    token0 = event.topic_address(1).lower()
    token1 = event.topic_address(2).lower()
    pair_address = event.word_address(0).lower()
    if not pair_address:
        return None
    return PairCandidate(
        pair_address=pair_address,
        token0=token0,
        token1=token1,
        created_block=event.block_number,
        detected_ts=datetime.now(timezone.utc).isoformat(),
        factory_address=event.address,
    )


class FactoryListener:
    """Decodes PairCreated logs and fans each new pair out to the registered handlers once."""

    def __init__(
        self,
        connection: Any,
        factory_address: str | None = None,
        *,
        seen_pair_ttl_seconds: float = 3600.0,
    ) -> None:
        self.connection = connection
        self.factory_address = normalize_address(
            factory_address if factory_address is not None else config.FACTORY_ADDRESS
        )
        self.seen_pair_ttl_seconds = max(60.0, float(seen_pair_ttl_seconds))
        self.seen_pairs: dict[str, float] = {}
        self._handlers: list[PairHandler] = []
        self._subscription: Subscription | None = None
        self.pairs_detected = 0
        self.duplicates = 0

    def add_handler(self, handler: PairHandler) -> None:
        self._handlers.append(handler)

    def start(self) -> None:
        if not self.factory_address:
            raise ValueError("FACTORY_ADDRESS is not configured")
        if self._subscription is not None:
            return
        self._subscription = self.connection.subscribe(self.factory_address, PAIR_CREATED_TOPIC, self.on_event)
        logger.info("FACTORY_LISTEN factory=%s handlers=%s", self.factory_address, len(self._handlers))

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _prune_seen_pairs(self) -> None:
        now_ts = time.time()
        self.seen_pairs = {
            pair: ts
            for pair, ts in self.seen_pairs.items()
            if (now_ts - float(ts)) <= self.seen_pair_ttl_seconds
        }

    def _is_seen_pair(self, pair_address: str) -> bool:
        self._prune_seen_pairs()
        return pair_address in self.seen_pairs

    def _mark_pair_seen(self, pair_address: str) -> None:
        self.seen_pairs[pair_address] = time.time()

    async def on_event(self, event: ChainEvent) -> None:
        candidate = parse_pair_created(event)
        if candidate is None:
            return
        if self.factory_address and candidate.factory_address and candidate.factory_address != self.factory_address:
            return
        if self._is_seen_pair(candidate.pair_address):
            self.duplicates += 1
            logger.debug("PAIR_DUPLICATE pair=%s", candidate.pair_address)
            return
        self._mark_pair_seen(candidate.pair_address)
        self.pairs_detected += 1
        logger.info(
            "PAIR_DETECTED pair=%s token0=%s token1=%s block=%s factory=%s",
            candidate.pair_address,
            candidate.token0,
            candidate.token1,
            candidate.created_block,
            candidate.factory_address,
        )
        for handler in list(self._handlers):
            try:
                outcome = handler(candidate)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("PAIR_HANDLER_ERROR pair=%s", candidate.pair_address)
