"""Entry point for the pair sniper orchestrator."""

import argparse
import asyncio
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any

import config
from config import APP_LOG_FILE, LOG_DIR, LOG_LEVEL
from monitor.chain_connection import ChainConnection, ChainConnectionLost
from monitor.onchain_factory import FactoryListener
from monitor.pair_watcher import PairWatchRegistry
from monitor.prebuy_pipeline import PreBuyPipeline
from monitor.volume_aggregator import VolumeAggregator
from trading.dispatch_queue import BuyTask, DispatchQueue


def configure_logging() -> None:
    os.makedirs(LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    # web3 logs every request body at DEBUG.
    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


def log_dispatch_result(task: BuyTask, result: Any) -> None:
    if isinstance(result, dict) and result.get("error"):
        logger.warning("BUY_RESULT token=%s error=%s", task.token_address, result.get("error"))
        return
    logger.info("BUY_RESULT token=%s result=%s", task.token_address, result)


def log_volume_alert(pair_address: str, volume: float) -> None:
    logger.info("HIGH_VOLUME pair=%s volume=%.3f", pair_address, volume)


class Orchestrator:
    def __init__(self, *, enable_sniper: bool, enable_volume: bool) -> None:
        self.chain = ChainConnection()
        self.factory = FactoryListener(self.chain)
        self.queue: DispatchQueue | None = None
        self.pipeline: PreBuyPipeline | None = None
        self.registry: PairWatchRegistry | None = None
        self.volume: VolumeAggregator | None = None

        if enable_sniper:
            self.queue = DispatchQueue(on_result=log_dispatch_result)
            self.pipeline = PreBuyPipeline(self.chain)
            self.registry = PairWatchRegistry(self.chain, self.pipeline, self.queue)
            self.factory.add_handler(self.registry.on_pair_created)
        if enable_volume:
            self.volume = VolumeAggregator(self.chain, on_alert=log_volume_alert)
            self.factory.add_handler(self.volume.on_pair_created)

    def status_line(self) -> str:
        parts = [f"chain={self.chain.snapshot()}", f"factory_pairs={self.factory.pairs_detected}"]
        if self.registry is not None:
            parts.append(f"watches={self.registry.snapshot()}")
        if self.queue is not None:
            parts.append(f"queue={self.queue.snapshot()}")
        if self.pipeline is not None:
            parts.append(f"prebuy={self.pipeline.runtime_stats()}")
        if self.volume is not None:
            parts.append(f"volume={self.volume.snapshot()}")
        return " ".join(parts)

    async def _status_loop(self) -> None:
        while True:
            await asyncio.sleep(config.STATUS_LOG_INTERVAL_SECONDS)
            logger.info("STATUS %s", self.status_line())

    async def run(self) -> int:
        self.factory.start()
        if self.volume is not None:
            self.volume.start()
        status_task = asyncio.create_task(self._status_loop())
        try:
            await self.chain.run()
        except ChainConnectionLost as exc:
            logger.critical("CHAIN_CONNECTION_LOST error=%s", exc)
            return 1
        finally:
            status_task.cancel()
            await self.shutdown()
        return 0

    async def shutdown(self) -> None:
        self.factory.stop()
        if self.registry is not None:
            self.registry.close()
        if self.volume is not None:
            await self.volume.stop()
        if self.queue is not None:
            await self.queue.close()
        await self.chain.close()


def main() -> int:
    parser = argparse.ArgumentParser(description="On-chain pair sniper orchestrator")
    parser.add_argument("--no-sniper", action="store_true", help="Do not watch new pairs for buys")
    parser.add_argument("--no-volume", action="store_true", help="Do not aggregate swap volume")
    args = parser.parse_args()

    configure_logging()
    enable_sniper = config.ENABLE_SNIPER and not args.no_sniper
    enable_volume = config.ENABLE_VOLUME_MONITOR and not args.no_volume
    if not enable_sniper and not enable_volume:
        logger.error("Nothing to run: sniper and volume monitor are both disabled.")
        return 2

    logger.info(
        "STARTUP sniper=%s volume=%s factory=%s base_asset=%s executor=%s",
        enable_sniper,
        enable_volume,
        config.FACTORY_ADDRESS,
        config.BASE_ASSET_ADDRESS or "-",
        config.EXECUTOR_URL,
    )
    orchestrator = Orchestrator(enable_sniper=enable_sniper, enable_volume=enable_volume)
    try:
        return asyncio.run(orchestrator.run())
    except KeyboardInterrupt:
        logger.info("Stopped by user.")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
